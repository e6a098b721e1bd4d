'''
Fee structures per class and billing period. This is where a student's
total due comes from when their fee status is first established.
'''
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from fastapi import Depends
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.engine import get_session_factory
from ..database.utils import read_session, transaction
from ..database import models as db_models
from ..database.db_enums import AuditActionEnum
from ..models import fees as fee_models
from ..core.keys import derive_structure_id
from ..common.time_utils import utc_now, ensure_utc
from ..common.logger import log
from .audit_service import AuditService


class FeeStructureService:
    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
        audit_service: Annotated[AuditService, Depends(AuditService)]
    ):
        self.session_factory = session_factory
        self.audit_service = audit_service

    async def _get_structure_orm(self, class_id: str, period: fee_models.BillingPeriod) -> Optional[db_models.FeeStructures]:
        structure_id = derive_structure_id(class_id, period.term, period.session)
        async with read_session(self.session_factory) as session:
            structure = await session.get(db_models.FeeStructures, structure_id)
        if structure is None or not structure.is_active:
            return None
        return structure

    async def get_fee_structure(self, class_id: str, period: fee_models.BillingPeriod) -> Optional[fee_models.FeeStructureRead]:
        structure = await self._get_structure_orm(class_id, period)
        if structure is None:
            return None
        return fee_models.FeeStructureRead.model_validate(structure)

    async def resolve_total_due(
        self,
        account: db_models.Students,
        period: fee_models.BillingPeriod
    ) -> Optional[tuple[Decimal, datetime]]:
        """
        Returns (total_due, due_date) for the student's class in this period,
        or None when the class has no fee structure.
        """
        if not account.class_id:
            log.warning(f"Student {account.id} has no class; cannot resolve a fee structure.")
            return None
        structure = await self._get_structure_orm(account.class_id, period)
        if structure is None:
            log.info(f"No fee structure for class {account.class_id} in {period.term} {period.session}.")
            return None
        return Decimal(structure.total_amount), ensure_utc(structure.due_date)

    async def set_fee_structure(self, structure_data: dict) -> fee_models.FeeStructureRead:
        """
        Creates or replaces the fee structure of a class for one period.
        Fee statuses that already exist keep their total due.
        """
        try:
            input_model = fee_models.FeeStructureCreate.model_validate(structure_data)
        except ValidationError as e:
            log.error(f"Pydantic validation failed for fee structure. Data: {structure_data}, Error: {e}")
            raise

        structure_id = derive_structure_id(input_model.class_id, input_model.term, input_model.session)
        total_amount = sum((item.amount for item in input_model.items), Decimal("0"))
        items = [item.model_dump(mode="json") for item in input_model.items]
        log.info(f"Setting fee structure {structure_id} (total {total_amount}) by {input_model.created_by}.")

        async with transaction(self.session_factory) as session:
            structure = await session.get(db_models.FeeStructures, structure_id)
            if structure is None:
                structure = db_models.FeeStructures(id=structure_id, created_at=utc_now())
                session.add(structure)
            else:
                structure.updated_at = utc_now()
            structure.class_id = input_model.class_id
            structure.class_name = input_model.class_name
            structure.term = input_model.term
            structure.session = input_model.session
            structure.items = items
            structure.total_amount = total_amount
            structure.due_date = input_model.due_date
            structure.created_by = input_model.created_by
            structure.is_active = True

        await self.audit_service.emit(
            AuditActionEnum.FEE_STRUCTURE_SET,
            entity_type="fee_structure",
            entity_id=structure_id,
            actor=input_model.created_by,
            details={"total_amount": total_amount, "items": len(items)}
        )
        return fee_models.FeeStructureRead.model_validate(structure)
