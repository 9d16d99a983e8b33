"""Shared test fixtures for all test groups."""

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from phasegate.core.config import Settings
from phasegate.core.locking import PhaseLocks
from phasegate.db.base import Base
from phasegate.domain.phases import LifecycleStatus, Phase
from phasegate.domain.rules import PredicateKind, Rule, RuleSet, default_rule_set
from phasegate.services.facts import StaticFactProvider
from phasegate.services.gate_service import GateService
from phasegate.services.phases import StaticPhaseDirectory
from phasegate.services.rule_catalog import RuleCatalog

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)

# J1 gates on progress of the previous phase; J2 uses the default invoice rule
J1 = "J1"
J2 = "J2"


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test, schema created from the ORM models."""
    import phasegate.db.models  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'phasegate.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def phases() -> StaticPhaseDirectory:
    return StaticPhaseDirectory(
        [
            Phase(J1, 1, name="Foundations", lifecycle_status=LifecycleStatus.COMPLETED),
            Phase(J1, 2, name="Structure", lifecycle_status=LifecycleStatus.IN_PROGRESS),
            Phase(J1, 3, name="Enclosure"),
            Phase(J1, 4, name="Finishes"),
            Phase(J2, 1, name="Design", lifecycle_status=LifecycleStatus.COMPLETED),
            Phase(J2, 2, name="Permits"),
        ]
    )


@pytest.fixture
def facts(clock) -> StaticFactProvider:
    return StaticFactProvider(
        {
            J1: {
                "phase.1.progress": 100,
                "phase.2.progress": 75,
                "invoice.phase.1.status": "paid",
                "invoice.phase.2.status": "paid",
            },
            J2: {"invoice.phase.1.status": "pending"},
        },
        clock=clock,
    )


@pytest.fixture
def rules(settings) -> RuleCatalog:
    catalog = RuleCatalog(default_rule_set(settings.override_roles))
    catalog.publish(
        RuleSet(
            project_id=J1,
            version=2,
            rules=(
                Rule(
                    id="prior-phase-complete",
                    phase_selector=">=2",
                    kind=PredicateKind.PRIOR_PHASE_COMPLETE,
                    parameters={"required_percent": 100},
                    description="Phase {previous_phase} is not complete",
                    priority=5,
                ),
                *default_rule_set(settings.override_roles).rules,
            ),
            override_policy=settings.override_roles,
        )
    )
    return catalog


@pytest.fixture
def gate_service(session_factory, phases, rules, facts, settings, clock) -> GateService:
    return GateService(
        session_factory,
        phases,
        rules,
        facts,
        settings=settings,
        locks=PhaseLocks(timeout=5.0),
        clock=clock,
    )
