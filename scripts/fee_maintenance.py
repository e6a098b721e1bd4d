'''
Maintenance jobs for the fee ledger.

    python scripts/fee_maintenance.py reconcile [--shards N] [--batch-size N] [--dry-run]
    python scripts/fee_maintenance.py flag-overdue [--as-of 2026-01-31]
    python scripts/fee_maintenance.py init-db
    python scripts/fee_maintenance.py serve [--port 5000] [--reload]
'''
import argparse
import asyncio
import sys
from datetime import datetime
from pprint import pprint

import uvicorn
from dotenv import load_dotenv

from fee_ledger.common.exceptions import FeeLedgerError, ReconciliationBatchError
from fee_ledger.common.logger import log
from fee_ledger.database import engine as db_engine
from fee_ledger.services.audit_service import AuditService
from fee_ledger.services.overdue_service import OverdueService
from fee_ledger.services.reconciliation_service import ReconciliationService


async def run_reconcile(args) -> int:
    audit = AuditService(db_engine.AsyncSessionLocal)
    service = ReconciliationService(db_engine.AsyncSessionLocal, audit)
    if args.batch_size:
        service.batch_size = args.batch_size
    try:
        if args.shards > 1:
            report = await service.reconcile_sharded(args.shards, dry_run=args.dry_run)
        else:
            report = await service.reconcile(dry_run=args.dry_run)
    except ReconciliationBatchError as e:
        print(f"Reconciliation aborted: {e}")
        pprint(e.report.model_dump())
        return 1
    pprint(report.model_dump())
    return 0


async def run_flag_overdue(args) -> int:
    audit = AuditService(db_engine.AsyncSessionLocal)
    service = OverdueService(db_engine.AsyncSessionLocal, audit)
    as_of = datetime.fromisoformat(args.as_of) if args.as_of else None
    report = await service.flag_overdue(as_of)
    pprint(report.model_dump())
    return 0


async def run_init_db(args) -> int:
    await db_engine.create_all_tables()
    print("Tables created.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fee ledger maintenance jobs.")
    parser.add_argument("--database-url", help="Overrides the configured database URL.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile = subparsers.add_parser("reconcile", help="Rebuild fee statuses from the payment ledger.")
    reconcile.add_argument("--shards", type=int, default=1, help="Number of disjoint student-ID ranges to run in parallel.")
    reconcile.add_argument("--batch-size", type=int, default=None, help="Maximum fee statuses written per transaction.")
    reconcile.add_argument("--dry-run", action="store_true", help="Report what would change without writing.")
    reconcile.set_defaults(handler=run_reconcile)

    overdue = subparsers.add_parser("flag-overdue", help="Mark fee statuses past their due date as overdue.")
    overdue.add_argument("--as-of", default=None, help="ISO date or datetime; defaults to now.")
    overdue.set_defaults(handler=run_flag_overdue)

    init_db = subparsers.add_parser("init-db", help="Create missing tables.")
    init_db.set_defaults(handler=run_init_db)

    serve = subparsers.add_parser("serve", help="Run the API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=5000)
    serve.add_argument("--reload", action="store_true", help="Restart on source changes.")
    serve.set_defaults(handler=run_serve)
    return parser


def run_serve(args) -> int:
    # the app creates its own engine in its lifespan
    uvicorn.run("fee_ledger.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


async def run_job(args) -> int:
    db_engine.create_db_engine_and_session_factory(args.database_url)
    try:
        return await args.handler(args)
    except FeeLedgerError as e:
        log.error(f"{args.command} failed: {e}")
        return 1
    finally:
        await db_engine.dispose_db_engine()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return run_serve(args)
    return asyncio.run(run_job(args))


if __name__ == "__main__":
    load_dotenv()
    sys.exit(main())
