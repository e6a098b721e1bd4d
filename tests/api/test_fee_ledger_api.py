from decimal import Decimal
from pprint import pprint

import httpx
import pytest
from sqlalchemy import update

from fee_ledger.database import models as db_models
from fee_ledger.database.engine import get_session_factory
from fee_ledger.main import app

from tests.constants import (
    TEST_BURSAR,
    TEST_CLASS_ID,
    TEST_CLASS_NAME,
    TEST_DUE_DATE,
    TEST_SESSION,
    TEST_SESSION_DASHED,
    TEST_STUDENT_B_ID,
    TEST_STUDENT_ID,
    TEST_TERM,
    TEST_UNKNOWN_STUDENT_ID,
)

PERIOD_QUERY = {"term": TEST_TERM, "session": TEST_SESSION}


def payment_body(student_id=TEST_STUDENT_ID, amount="50000", details=None) -> dict:
    return {
        "student_id": str(student_id),
        "term": TEST_TERM,
        "session": TEST_SESSION,
        "amount": amount,
        "details": details or {"method": "cash"},
        "recorded_by": TEST_BURSAR,
    }


@pytest.mark.anyio
class TestHealth:

    async def test_health_check(self, client: httpx.AsyncClient):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


@pytest.mark.anyio
class TestFeeStructuresAPI:

    async def test_put_opens_class_statuses(self, client: httpx.AsyncClient, students):
        response = await client.put("/fee-structures/", json={
            "class_id": TEST_CLASS_ID,
            "class_name": TEST_CLASS_NAME,
            "term": TEST_TERM,
            "session": TEST_SESSION,
            "items": [
                {"category": "tuition", "description": "Tuition", "amount": "120000"},
                {"category": "exam", "description": "Exam fee", "amount": "30000"},
            ],
            "due_date": TEST_DUE_DATE.isoformat(),
            "created_by": TEST_BURSAR,
        })
        pprint(response.json())
        assert response.status_code == 200
        assert Decimal(response.json()["total_amount"]) == Decimal("150000")

        statuses = await client.get(f"/fee-status/class/{TEST_CLASS_ID}", params=PERIOD_QUERY)
        assert statuses.status_code == 200
        assert len(statuses.json()) == len(students)
        assert all(s["status"] == "unpaid" for s in statuses.json())

    async def test_put_rejects_empty_items(self, client: httpx.AsyncClient, students):
        response = await client.put("/fee-structures/", json={
            "class_id": TEST_CLASS_ID, "term": TEST_TERM, "session": TEST_SESSION,
            "items": [], "due_date": TEST_DUE_DATE.isoformat(), "created_by": TEST_BURSAR,
        })
        assert response.status_code == 422

    async def test_get_structure(self, client: httpx.AsyncClient, fee_structure):
        response = await client.get(
            f"/fee-structures/{TEST_CLASS_ID}", params={"term": TEST_TERM, "session": TEST_SESSION_DASHED}
        )
        assert response.status_code == 200
        assert response.json()["id"] == fee_structure.id

        missing = await client.get("/fee-structures/ss3", params=PERIOD_QUERY)
        assert missing.status_code == 404


@pytest.mark.anyio
class TestPaymentsAPI:

    async def test_record_payment(self, client: httpx.AsyncClient, fee_structure):
        response = await client.post("/payments/", json=payment_body())
        pprint(response.json())

        assert response.status_code == 201
        data = response.json()
        assert data["receipt_number"].startswith("RCP/")
        assert data["fee_status"]["status"] == "partial"
        assert Decimal(data["fee_status"]["balance"]) == Decimal("100000")

    @pytest.mark.parametrize("body", [
        payment_body(amount="0"),
        payment_body(amount="-20"),
        payment_body(details={"method": "cheque"}),
        payment_body(details={"method": "cash", "extra": "x"}),
        {**payment_body(), "term": "   "},
        {**payment_body(), "session": ""},
    ])
    async def test_invalid_payment_is_422(self, client: httpx.AsyncClient, fee_structure, body):
        response = await client.post("/payments/", json=body)
        assert response.status_code == 422

    async def test_unknown_student_is_404(self, client: httpx.AsyncClient, fee_structure):
        response = await client.post("/payments/", json=payment_body(student_id=TEST_UNKNOWN_STUDENT_ID))
        assert response.status_code == 404
        assert response.json()["error"] == "AccountNotFoundError"

    async def test_missing_fee_structure_is_409(self, client: httpx.AsyncClient, students):
        response = await client.post("/payments/", json=payment_body())
        assert response.status_code == 409
        assert response.json()["error"] == "FeeStructureMissingError"

    async def test_database_down_is_503(self, client: httpx.AsyncClient, unreachable_session_factory):
        app.dependency_overrides[get_session_factory] = lambda: unreachable_session_factory
        response = await client.post("/payments/", json=payment_body())
        assert response.status_code == 503
        assert response.json()["error"] == "StorageUnavailableError"

    async def test_list_student_payments(self, client: httpx.AsyncClient, fee_structure):
        await client.post("/payments/", json=payment_body(amount="1000"))
        await client.post("/payments/", json=payment_body(amount="2000", details={
            "method": "paystack", "payment_reference": "PSK_88121",
        }))

        response = await client.get(f"/payments/student/{TEST_STUDENT_ID}", params=PERIOD_QUERY)
        assert response.status_code == 200
        payments = response.json()
        assert [Decimal(p["amount"]) for p in payments] == [Decimal("2000"), Decimal("1000")]
        assert payments[0]["details"] == {"method": "paystack", "payment_reference": "PSK_88121"}


@pytest.mark.anyio
class TestFeeStatusAPI:

    async def test_get_fee_status(self, client: httpx.AsyncClient, fee_structure):
        await client.post("/payments/", json=payment_body(amount="150000"))

        response = await client.get(
            f"/fee-status/{TEST_STUDENT_ID}", params={"term": TEST_TERM, "session": TEST_SESSION_DASHED}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert response.json()["is_overdue"] is False

    async def test_blank_period_query_is_422(self, client: httpx.AsyncClient, students):
        response = await client.get(f"/fee-status/{TEST_STUDENT_ID}", params={"term": "  ", "session": TEST_SESSION})
        assert response.status_code == 422

        response = await client.get(f"/payments/student/{TEST_STUDENT_ID}", params={"term": " ", "session": " "})
        assert response.status_code == 422

    async def test_missing_fee_status_is_404(self, client: httpx.AsyncClient, students):
        response = await client.get(f"/fee-status/{TEST_STUDENT_ID}", params=PERIOD_QUERY)
        assert response.status_code == 404

    async def test_defaulters(self, client: httpx.AsyncClient, fee_structure):
        await client.post("/payments/", json=payment_body(amount="150000"))
        await client.post("/payments/", json=payment_body(student_id=TEST_STUDENT_B_ID, amount="10000"))

        response = await client.get("/fee-status/defaulters", params={**PERIOD_QUERY, "class_id": TEST_CLASS_ID})
        assert response.status_code == 200
        assert [d["student_id"] for d in response.json()] == [str(TEST_STUDENT_B_ID)]


@pytest.mark.anyio
class TestReconciliationAPI:

    async def test_run_is_accepted_and_repairs(self, client: httpx.AsyncClient, session_factory, fee_structure):
        await client.post("/payments/", json=payment_body(amount="80000"))
        key = f"{TEST_STUDENT_ID}-first-2025-2026"
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(db_models.FeeStatusSnapshots)
                    .where(db_models.FeeStatusSnapshots.id == key)
                    .values(total_paid=Decimal("50000"), version=db_models.FeeStatusSnapshots.version + 1)
                    .execution_options(synchronize_session=False)
                )

        response = await client.post("/reconciliation/runs", params={"shards": 2})
        assert response.status_code == 202
        assert response.json()["shards"] == 2

        # the in-process transport finishes background tasks before returning
        status = await client.get(f"/fee-status/{TEST_STUDENT_ID}", params=PERIOD_QUERY)
        assert Decimal(status.json()["total_paid"]) == Decimal("80000")

    async def test_rejects_bad_shard_count(self, client: httpx.AsyncClient, students):
        response = await client.post("/reconciliation/runs", params={"shards": 0})
        assert response.status_code == 422

    async def test_failed_run_is_still_accepted(self, client: httpx.AsyncClient, unreachable_session_factory):
        app.dependency_overrides[get_session_factory] = lambda: unreachable_session_factory
        # the background failure is logged and audited, never raised to the server
        response = await client.post("/reconciliation/runs")
        assert response.status_code == 202
