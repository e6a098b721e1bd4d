'''
Account directory lookups used by the payment recorder.
'''
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.engine import get_session_factory
from ..database.utils import read_session
from ..database import models as db_models
from ..common.exceptions import AccountNotFoundError
from ..common.logger import log


class AccountService:
    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
    ):
        self.session_factory = session_factory

    async def get_account(self, account_id: UUID) -> Optional[db_models.Students]:
        """Fetches a student by ID, or None."""
        async with read_session(self.session_factory) as session:
            return await session.get(db_models.Students, account_id)

    async def resolve_account(self, account_id: UUID) -> db_models.Students:
        """
        Fetches an active student by ID.
        Raises AccountNotFoundError when the ID is unknown or inactive.
        """
        account = await self.get_account(account_id)
        if account is None or not account.is_active:
            log.warning(f"Account lookup failed for student {account_id}.")
            raise AccountNotFoundError(f"Student {account_id} not found.")
        return account

    async def list_active_in_class(self, class_id: str) -> list[db_models.Students]:
        async with read_session(self.session_factory) as session:
            stmt = select(db_models.Students).filter(
                db_models.Students.class_id == class_id,
                db_models.Students.is_active.is_(True)
            ).order_by(db_models.Students.id)
            result = await session.execute(stmt)
            return list(result.scalars().all())
