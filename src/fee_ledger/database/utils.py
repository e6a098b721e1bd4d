'''
Session helpers shared by the services. Database errors leave here as
domain errors.
'''
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ..common.exceptions import ConcurrencyConflictError, StorageUnavailableError
from ..common.logger import log


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """
    Opens a session, begins a transaction and commits on exit.
    Everything inside either commits together or is rolled back.

    Lost optimistic races and duplicate first-inserts come out as
    ConcurrencyConflictError; connectivity failures as StorageUnavailableError.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except StaleDataError as e:
        log.warning(f"Optimistic concurrency check failed: {e}")
        raise ConcurrencyConflictError("The fee status was changed by a concurrent writer.") from e
    except IntegrityError as e:
        log.warning(f"Integrity conflict while writing: {e.orig}")
        raise ConcurrencyConflictError("A concurrent writer created the same record.") from e
    except (OperationalError, InterfaceError) as e:
        log.error(f"Database unavailable: {e}")
        raise StorageUnavailableError("The fee ledger database is unavailable.") from e


@asynccontextmanager
async def read_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """
    Opens a session for reads only. Connectivity failures come out as
    StorageUnavailableError, the same as they do for writes.
    """
    try:
        async with session_factory() as session:
            yield session
    except (OperationalError, InterfaceError) as e:
        log.error(f"Database unavailable while reading: {e}")
        raise StorageUnavailableError("The fee ledger database is unavailable.") from e
