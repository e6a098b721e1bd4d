'''
Time-based overdue flagging. Amount-driven rules cannot tell when a due
date has passed, so this sweep is the only thing that sets `overdue`.
'''
from datetime import datetime
from typing import Annotated, Optional

from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.engine import get_session_factory
from ..database.utils import read_session, transaction
from ..database import models as db_models
from ..database.db_enums import AuditActionEnum, FeeStatusEnum
from ..models import fees as fee_models
from ..common.config import settings
from ..common.time_utils import utc_now, ensure_utc
from ..common.logger import log
from .audit_service import AuditService

OPEN_STATUSES = [FeeStatusEnum.UNPAID.value, FeeStatusEnum.PARTIAL.value, FeeStatusEnum.OVERDUE.value]


class OverdueService:
    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
        audit_service: Annotated[AuditService, Depends(AuditService)]
    ):
        self.session_factory = session_factory
        self.audit_service = audit_service
        self.batch_size = settings.RECONCILE_BATCH_SIZE

    async def flag_overdue(self, as_of: Optional[datetime] = None) -> fee_models.OverdueSweepReport:
        """
        Marks every open fee status whose due date has passed as overdue and
        refreshes days_overdue. Rows changed concurrently are left alone.
        """
        as_of = ensure_utc(as_of) or utc_now()
        report = fee_models.OverdueSweepReport()
        log.info(f"Flagging overdue fee statuses as of {as_of.isoformat()}.")

        async with read_session(self.session_factory) as session:
            stmt = select(
                db_models.FeeStatusSnapshots.id,
                db_models.FeeStatusSnapshots.status,
                db_models.FeeStatusSnapshots.due_date,
                db_models.FeeStatusSnapshots.days_overdue,
                db_models.FeeStatusSnapshots.version,
            ).filter(
                db_models.FeeStatusSnapshots.status.in_(OPEN_STATUSES),
                db_models.FeeStatusSnapshots.due_date.is_not(None),
                db_models.FeeStatusSnapshots.balance > 0,
            ).order_by(db_models.FeeStatusSnapshots.id)
            rows = (await session.execute(stmt)).all()

        pending = []
        for row in rows:
            report.scanned += 1
            due_date = ensure_utc(row.due_date)
            if due_date >= as_of:
                continue
            days = (as_of - due_date).days
            if row.status == FeeStatusEnum.OVERDUE.value and row.days_overdue == days:
                continue
            pending.append((row, days))

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            async with transaction(self.session_factory) as session:
                for row, days in batch:
                    result = await session.execute(
                        update(db_models.FeeStatusSnapshots)
                        .where(
                            db_models.FeeStatusSnapshots.id == row.id,
                            db_models.FeeStatusSnapshots.version == row.version,
                        )
                        .values(
                            status=FeeStatusEnum.OVERDUE.value,
                            days_overdue=days,
                            version=row.version + 1,
                            last_updated=utc_now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        report.contended += 1
                    elif row.status == FeeStatusEnum.OVERDUE.value:
                        report.refreshed += 1
                    else:
                        report.flagged += 1

        log.info(f"Overdue sweep done: {report.model_dump()}")
        await self.audit_service.emit(
            AuditActionEnum.OVERDUE_FLAGGED,
            entity_type="fee_status",
            details={"as_of": as_of, **report.model_dump()}
        )
        return report
