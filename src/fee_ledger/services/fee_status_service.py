'''
Read side of the fee status cache. Dashboards and parent views only ever
come through here; there is no write path in this service.
'''
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.engine import get_session_factory
from ..database.utils import read_session
from ..database import models as db_models
from ..database.db_enums import FeeStatusEnum
from ..models import fees as fee_models
from ..core.keys import derive_key
from ..common.logger import log

DEFAULTER_STATUSES = [FeeStatusEnum.UNPAID.value, FeeStatusEnum.PARTIAL.value, FeeStatusEnum.OVERDUE.value]


class FeeStatusService:
    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
    ):
        self.session_factory = session_factory

    async def get_by_key(self, key: str) -> Optional[fee_models.FeeStatusRead]:
        async with read_session(self.session_factory) as session:
            snapshot = await session.get(db_models.FeeStatusSnapshots, key)
        if snapshot is None:
            return None
        return fee_models.FeeStatusRead.model_validate(snapshot)

    async def get(self, account_id: UUID, period: fee_models.BillingPeriod) -> Optional[fee_models.FeeStatusRead]:
        """Fee status of one student for one period, or None if it was never established."""
        return await self.get_by_key(period.key_for(account_id))

    async def _list_matching_period(self, stmt, period: fee_models.BillingPeriod) -> list[fee_models.FeeStatusRead]:
        async with read_session(self.session_factory) as session:
            result = await session.execute(stmt)
            snapshots = list(result.scalars().all())
        # period spellings differ between rows; compare normalized keys
        return [
            fee_models.FeeStatusRead.model_validate(s)
            for s in snapshots
            if s.id == derive_key(s.student_id, period.term, period.session)
        ]

    async def list_for_class(self, class_id: str, period: fee_models.BillingPeriod) -> list[fee_models.FeeStatusRead]:
        log.info(f"Fetching fee statuses for class {class_id} in {period.term} {period.session}.")
        stmt = select(db_models.FeeStatusSnapshots).filter(
            db_models.FeeStatusSnapshots.class_id == class_id
        ).order_by(db_models.FeeStatusSnapshots.id)
        return await self._list_matching_period(stmt, period)

    async def list_defaulters(
        self,
        period: fee_models.BillingPeriod,
        class_id: Optional[str] = None
    ) -> list[fee_models.FeeStatusRead]:
        """Students with an outstanding balance in the period, largest balance first."""
        log.info(f"Fetching fee defaulters for {period.term} {period.session} (class: {class_id or 'all'}).")
        stmt = select(db_models.FeeStatusSnapshots).filter(
            db_models.FeeStatusSnapshots.status.in_(DEFAULTER_STATUSES)
        )
        if class_id:
            stmt = stmt.filter(db_models.FeeStatusSnapshots.class_id == class_id)
        defaulters = await self._list_matching_period(stmt, period)
        return sorted(defaulters, key=lambda s: s.balance, reverse=True)
