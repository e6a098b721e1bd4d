'''
Audit sink. Delivery is best effort: a failure here is logged and never
reaches the payment or reconciliation that triggered it.
'''
from typing import Annotated, Any, Optional

from fastapi import Depends
from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.engine import get_session_factory
from ..database import models as db_models
from ..database.db_enums import AuditActionEnum
from ..common.logger import log


class AuditService:
    """Writes structured audit events to the audit_events table."""

    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
    ):
        self.session_factory = session_factory

    async def emit(
        self,
        action: AuditActionEnum,
        entity_type: str,
        entity_id: Optional[str] = None,
        actor: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None
    ) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(db_models.AuditEvents(
                        action=AuditActionEnum(action).value,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        actor=actor,
                        details=to_jsonable_python(details or {}),
                        success=success,
                        error_message=error_message,
                    ))
        except Exception as e:
            # Never let audit delivery break the caller.
            log.warning(f"Audit delivery failed for {action} on {entity_type}:{entity_id}: {e}")
