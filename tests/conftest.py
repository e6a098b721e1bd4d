'''
Pytest configuration for the fee ledger.

This file sets up fixtures for:
1. Forcing the application into TEST_MODE before any code is imported.
2. A throwaway SQLite database per test, with every table created.
3. Instances of all service classes, wired to that database.
4. Seeded students and a fee structure for the default class and period.
5. An httpx client talking to the FastAPI app in-process.
'''
import os

os.environ["TEST_MODE"] = "True"

import pytest
from typing import AsyncGenerator

import httpx
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker

# --- Application Imports ---
from fee_ledger.main import app
from fee_ledger.common.config import settings
from fee_ledger.database.engine import build_session_factory, create_all_tables, get_session_factory
from fee_ledger.database import models as db_models
from fee_ledger.models import fees as fee_models
from fee_ledger.services.audit_service import AuditService
from fee_ledger.services.account_service import AccountService
from fee_ledger.services.fee_structure_service import FeeStructureService
from fee_ledger.services.fee_status_service import FeeStatusService
from fee_ledger.services.payment_service import PaymentRecorderService
from fee_ledger.services.reconciliation_service import ReconciliationService
from fee_ledger.services.overdue_service import OverdueService

# --- Test Helpers ---
from tests.database import factories
from tests.constants import (
    TEST_CLASS_ID,
    TEST_CLASS_NAME,
    TEST_TERM,
    TEST_SESSION,
    TEST_DUE_DATE,
    TEST_BURSAR,
    TEST_STUDENT_ID,
    TEST_STUDENT_B_ID,
    TEST_STUDENT_C_ID,
    TEST_STUDENT_D_ID,
    TEST_INACTIVE_STUDENT_ID,
)


@pytest.fixture(scope="session")
def anyio_backend():
    """
    Override the default 'anyio_backend' fixture.
    1. Forces the backend to 'asyncio' (solves 'trio' error).
    2. Promotes the scope to 'session' (solves 'ScopeMismatch').
    """
    return "asyncio"


# --- Database Fixtures ---

@pytest.fixture(scope="function")
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    A file-backed SQLite database per test. A file (not :memory:) so that
    concurrent sessions get their own connections, like they would on Postgres.
    """
    assert settings.TEST_MODE is True, \
        "TEST_MODE was not set to True! Check your .env file or environment."

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fee_ledger_test.db'}")
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture(scope="function")
async def unreachable_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Sessions on a database file that cannot be opened; every query fails to connect."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'fee_ledger.db'}")
    yield build_session_factory(engine)
    await engine.dispose()


# --- Service Fixtures ---

@pytest.fixture(scope="function")
def audit_service(session_factory) -> AuditService:
    return AuditService(session_factory)

@pytest.fixture(scope="function")
def account_service(session_factory) -> AccountService:
    return AccountService(session_factory)

@pytest.fixture(scope="function")
def fee_structure_service(session_factory, audit_service) -> FeeStructureService:
    return FeeStructureService(session_factory, audit_service)

@pytest.fixture(scope="function")
def fee_status_service(session_factory) -> FeeStatusService:
    return FeeStatusService(session_factory)

@pytest.fixture(scope="function")
def payment_service(
    session_factory,
    account_service: AccountService,
    fee_structure_service: FeeStructureService,
    audit_service: AuditService
) -> PaymentRecorderService:
    return PaymentRecorderService(session_factory, account_service, fee_structure_service, audit_service)

@pytest.fixture(scope="function")
def reconciliation_service(session_factory, audit_service) -> ReconciliationService:
    return ReconciliationService(session_factory, audit_service)

@pytest.fixture(scope="function")
def overdue_service(session_factory, audit_service) -> OverdueService:
    return OverdueService(session_factory, audit_service)


# --- Data Fixtures ---

@pytest.fixture(scope="function")
def period() -> fee_models.BillingPeriod:
    return fee_models.BillingPeriod(term=TEST_TERM, session=TEST_SESSION)


@pytest.fixture(scope="function")
async def students(session_factory) -> list[db_models.Students]:
    """Four active students in the default class and one inactive one."""
    def build():
        active = [
            factories.StudentFactory.create(id=student_id)
            for student_id in (TEST_STUDENT_ID, TEST_STUDENT_B_ID, TEST_STUDENT_C_ID, TEST_STUDENT_D_ID)
        ]
        factories.StudentFactory.create(id=TEST_INACTIVE_STUDENT_ID, is_active=False)
        return active
    return await factories.seed(session_factory, build)


@pytest.fixture(scope="function")
async def fee_structure(
    students,
    fee_structure_service: FeeStructureService
) -> fee_models.FeeStructureRead:
    """Default class structure: tuition 120000 + development 30000 = 150000."""
    return await fee_structure_service.set_fee_structure({
        "class_id": TEST_CLASS_ID,
        "class_name": TEST_CLASS_NAME,
        "term": TEST_TERM,
        "session": TEST_SESSION,
        "items": [
            {"category": "tuition", "description": "Tuition", "amount": "120000"},
            {"category": "development", "description": "Development levy", "amount": "30000"},
        ],
        "due_date": TEST_DUE_DATE,
        "created_by": TEST_BURSAR,
    })


# --- API Fixtures ---

@pytest.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    An in-process client for the app. Services get the test database
    through an override of `get_session_factory`.
    """
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
