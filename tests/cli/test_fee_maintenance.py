from scripts import fee_maintenance


class TestMaintenanceCli:

    def test_serve_runs_the_app_with_uvicorn(self, monkeypatch):
        calls = []
        monkeypatch.setattr(fee_maintenance.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

        assert fee_maintenance.main(["serve", "--port", "8081", "--reload"]) == 0
        assert calls == [("fee_ledger.main:app", {"host": "127.0.0.1", "port": 8081, "reload": True})]

    def test_jobs_on_a_fresh_database(self, tmp_path, capsys):
        database_url = f"sqlite+aiosqlite:///{tmp_path / 'maintenance.db'}"

        assert fee_maintenance.main(["--database-url", database_url, "init-db"]) == 0
        assert fee_maintenance.main(["--database-url", database_url, "reconcile", "--dry-run"]) == 0
        assert fee_maintenance.main(["--database-url", database_url, "flag-overdue", "--as-of", "2026-01-31"]) == 0

        output = capsys.readouterr().out
        assert "Tables created." in output
        assert "'dry_run': True" in output

    def test_unreachable_database_exits_nonzero(self, tmp_path):
        database_url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'maintenance.db'}"
        assert fee_maintenance.main(["--database-url", database_url, "reconcile"]) == 1
