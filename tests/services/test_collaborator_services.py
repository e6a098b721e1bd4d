from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from fee_ledger.common.exceptions import AccountNotFoundError, StorageUnavailableError
from fee_ledger.database import models as db_models
from fee_ledger.database.db_enums import AuditActionEnum
from fee_ledger.services.account_service import AccountService
from fee_ledger.services.audit_service import AuditService

from tests.constants import (
    TEST_BURSAR,
    TEST_CLASS_ID,
    TEST_INACTIVE_STUDENT_ID,
    TEST_STUDENT_ID,
    TEST_UNKNOWN_STUDENT_ID,
)


@pytest.mark.anyio
class TestAccountService:

    async def test_get_account(self, account_service: AccountService, students):
        account = await account_service.get_account(TEST_STUDENT_ID)
        assert account is not None
        assert account.class_id == TEST_CLASS_ID
        assert await account_service.get_account(TEST_UNKNOWN_STUDENT_ID) is None

    async def test_resolve_rejects_inactive(self, account_service: AccountService, students):
        inactive = await account_service.get_account(TEST_INACTIVE_STUDENT_ID)
        assert inactive is not None
        with pytest.raises(AccountNotFoundError):
            await account_service.resolve_account(TEST_INACTIVE_STUDENT_ID)

    async def test_list_active_in_class(self, account_service: AccountService, students):
        active = await account_service.list_active_in_class(TEST_CLASS_ID)
        assert {s.id for s in active} == {s.id for s in students}
        assert TEST_INACTIVE_STUDENT_ID not in {s.id for s in active}

    async def test_lookup_with_database_down(self, unreachable_session_factory):
        service = AccountService(unreachable_session_factory)
        with pytest.raises(StorageUnavailableError):
            await service.get_account(TEST_STUDENT_ID)
        with pytest.raises(StorageUnavailableError):
            await service.list_active_in_class(TEST_CLASS_ID)


@pytest.mark.anyio
class TestAuditService:

    async def test_emit_writes_event(self, audit_service: AuditService, session_factory):
        await audit_service.emit(
            AuditActionEnum.FEE_STRUCTURE_SET,
            entity_type="fee_structure",
            entity_id="jss1-first-2025-2026",
            actor=TEST_BURSAR,
            details={"total_amount": 150000},
        )
        async with session_factory() as session:
            event = (await session.execute(select(db_models.AuditEvents))).scalar_one()
        assert event.action == "fee_structure.set"
        assert event.details == {"total_amount": 150000}
        assert event.success is True

    async def test_delivery_failure_is_swallowed(self):
        """A broken sink never reaches the caller."""
        broken_factory = MagicMock(side_effect=RuntimeError("audit store is down"))
        service = AuditService(broken_factory)

        await service.emit(AuditActionEnum.PAYMENT_RECORDED, entity_type="fee_payment")

        broken_factory.assert_called_once()
