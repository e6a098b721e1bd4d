'''
Database Engine file.
1- Engine: creates and manages TCP Pool connections
2- AsyncSessionLocal: Session Creator (with engine as bind)
3- get_session_factory: Dependency for services that own their transactions
   (payment recording retries, reconciliation batches).
'''
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from typing import Optional
from ..common.config import settings
from ..common.logger import log
from .models import Base

# We define them as None. They will be created by the app's lifespan.
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None

def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """The one place session options are decided."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

def create_db_engine_and_session_factory(database_url: Optional[str] = None):
    """
    Creates the engine and session factory.
    This is called by the app's lifespan event.
    """
    global engine, AsyncSessionLocal

    url = database_url or settings.database_url
    log.info("Creating database engine for URL...")
    try:
        engine_kwargs = {"echo": False, "pool_pre_ping": True}
        if not url.startswith("sqlite"):
            engine_kwargs.update(pool_size=5, max_overflow=10, pool_timeout=30, pool_recycle=-1)

        # 1. Create the asynchronous engine
        engine = create_async_engine(url, **engine_kwargs)

        # 2. Create the AsyncSessionLocal factory
        AsyncSessionLocal = build_session_factory(engine)
        log.info("Async database engine and session factory created successfully.")
    except Exception as e:
        log.critical(f"Failed to create async database engine: {e}", exc_info=True)
        raise

async def create_all_tables(bind: Optional[AsyncEngine] = None):
    """Creates missing tables. Used by the test suite and local development."""
    target = bind or engine
    if target is None:
        raise RuntimeError("Database engine is not available.")
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def dispose_db_engine():
    """Disposes of the engine. Called by the app's lifespan."""
    global engine, AsyncSessionLocal
    if engine:
        await engine.dispose()
        log.info("Database engine disposed.")
    engine = None
    AsyncSessionLocal = None

def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    FastAPI dependency for services that open their own transactions.
    """
    if AsyncSessionLocal is None:
        log.error("AsyncSessionLocal is not initialized. App lifespan may not have run.")
        raise RuntimeError("Database session factory is not available.")
    return AsyncSessionLocal
