"""Pytest fixtures for paie engine tests."""

from __future__ import annotations

from datetime import date
from typing import Any, AsyncGenerator
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from paie_engine.api.app import create_app
from paie_engine.calculators.policy_provider import (
    leave_policy_from_row,
    overtime_spec_from_row,
    payroll_policy_from_row,
    rate_spec_from_row,
)
from paie_engine.calculators.types import PolicySnapshot
from paie_engine.config import Settings
from paie_engine.database import create_session_factory, get_engine
from paie_engine.events.emitter import AsyncEventEmitter
from paie_engine.models import Base, Employee, EmployeeSalary, PayrollRun, Tenant
from paie_engine.policies import defaults, seed_country_policies
from paie_engine.services.orchestrator import PayrollRunOrchestrator
from paie_engine.services.payroll_run_service import PayrollRunService
from paie_engine.services.task_runner import DeferredTaskRunner

MARCH_START = date(2024, 3, 1)
MARCH_END = date(2024, 3, 31)
MARCH_PAYMENT = date(2024, 3, 29)


def salary_components(
    base: str = "300000", extras: dict[str, str] | None = None
) -> list[dict[str, Any]]:
    """Compensation record components: base salary plus custom ones by code."""
    components: list[dict[str, Any]] = [
        {
            "code": "11",
            "name": "Salaire de base",
            "amount": base,
            "source_type": "standard",
            "taxable": True,
        }
    ]
    for code, amount in (extras or {}).items():
        components.append(
            {
                "code": code,
                "name": f"Composante {code}",
                "amount": amount,
                "source_type": "custom",
                "taxable": True,
            }
        )
    return components


def ci_snapshot(as_of: date = MARCH_END) -> PolicySnapshot:
    """Policy snapshot built from the default tables, without a database."""
    return PolicySnapshot(
        country_code=defaults.COUNTRY_CODE,
        as_of=as_of,
        rates=tuple(rate_spec_from_row(r) for r in defaults.rate_definitions()),
        overtime_rates=tuple(overtime_spec_from_row(r) for r in defaults.overtime_rates()),
        payroll_policy=payroll_policy_from_row(defaults.payroll_policy()),
        leave_policy=leave_policy_from_row(defaults.leave_policy()),
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite file, with small chunks."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/paie_test.db",
        engine_version="test",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="DEBUG",
        chunk_size=2,
        max_retries=2,
        retry_backoff_seconds=0.0,
        default_country_code="CI",
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine."""
    engine = get_engine(settings.database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def ci_policies(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Seed the Côte d'Ivoire policy tables."""
    async with session_factory() as session:
        await seed_country_policies(session)
        await session.commit()


@pytest.fixture
async def tenant(
    session_factory: async_sessionmaker[AsyncSession], ci_policies: None
) -> Tenant:
    """Create a test employer in Côte d'Ivoire."""
    async with session_factory() as session:
        tenant = Tenant(name="Société Ivoirienne de Test", country_code="CI")
        session.add(tenant)
        await session.commit()
    return tenant


async def add_employee(
    session_factory: async_sessionmaker[AsyncSession],
    tenant: Tenant,
    number: str,
    base: str | None = "300000",
    hire_date: date = date(2023, 1, 15),
    components: list[dict[str, Any]] | None = None,
    **fields: Any,
) -> Employee:
    """Create an employee with a compensation record effective since hire.

    ``base=None`` creates the employee without any compensation record.
    """
    async with session_factory() as session:
        employee = Employee(
            tenant_id=tenant.id,
            employee_number=number,
            first_name="Awa",
            last_name=f"Koné {number}",
            hire_date=hire_date,
            **fields,
        )
        session.add(employee)
        await session.flush()
        if base is not None or components is not None:
            session.add(
                EmployeeSalary(
                    employee_id=employee.id,
                    effective_from=hire_date,
                    components=components or salary_components(base or "300000"),
                )
            )
        await session.commit()
    return employee


@pytest.fixture
async def employee(
    session_factory: async_sessionmaker[AsyncSession], tenant: Tenant
) -> Employee:
    """Single CDI employee on 300,000 XOF, hired in 2023."""
    return await add_employee(session_factory, tenant, "E001")


@pytest.fixture
async def employees(
    session_factory: async_sessionmaker[AsyncSession], tenant: Tenant
) -> list[Employee]:
    """Five employees with distinct salaries."""
    return [
        await add_employee(session_factory, tenant, f"E00{i}", base=str(200000 + i * 50000))
        for i in range(1, 6)
    ]


@pytest.fixture
def task_runner() -> DeferredTaskRunner:
    return DeferredTaskRunner()


@pytest.fixture
def emitter() -> AsyncEventEmitter:
    return AsyncEventEmitter()


@pytest.fixture
def orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    task_runner: DeferredTaskRunner,
    emitter: AsyncEventEmitter,
    settings: Settings,
) -> PayrollRunOrchestrator:
    return PayrollRunOrchestrator(session_factory, task_runner, emitter=emitter, settings=settings)


async def create_run(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: UUID,
    period_start: date = MARCH_START,
    period_end: date = MARCH_END,
    payment_date: date = MARCH_PAYMENT,
) -> PayrollRun:
    async with session_factory() as session:
        run = await PayrollRunService(session).create_run(
            tenant_id, period_start, period_end, payment_date
        )
        await session.commit()
    return run


@pytest.fixture
async def march_run(
    session_factory: async_sessionmaker[AsyncSession], tenant: Tenant
) -> PayrollRun:
    """Draft run for March 2024."""
    return await create_run(session_factory, tenant.id)


async def calculate(
    orchestrator: PayrollRunOrchestrator,
    task_runner: DeferredTaskRunner,
    tenant_id: UUID,
    run_id: UUID,
) -> None:
    """Trigger calculation and run the background work to completion."""
    await orchestrator.start_calculation(tenant_id, run_id, actor_id="tester")
    await task_runner.drain()


@pytest.fixture
async def client(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    task_runner: DeferredTaskRunner,
    emitter: AsyncEventEmitter,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app sharing the test database."""
    app = create_app(
        settings=settings,
        session_factory=session_factory,
        task_runner=task_runner,
        emitter=emitter,
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def tenant_headers(tenant: Tenant, actor: str | None = "rh-001") -> dict[str, str]:
    headers = {"X-Tenant-ID": str(tenant.id)}
    if actor:
        headers["X-Actor-ID"] = actor
        headers["X-Actor-Role"] = "payroll_admin"
    return headers

