"""FastAPI dependencies that assemble the GateService.

Override these in tests via app.dependency_overrides.
"""

from functools import lru_cache

from fastapi import Depends

from phasegate.core.config import get_settings
from phasegate.db.base import get_session_factory
from phasegate.services.facts import FactProvider, HttpFactProvider
from phasegate.services.gate_service import GateService
from phasegate.services.phases import PhaseDirectory, SqlPhaseDirectory
from phasegate.services.rule_catalog import RuleCatalog


@lru_cache
def get_rule_catalog() -> RuleCatalog:
    """Rule sets are loaded once per process from settings."""
    return RuleCatalog.from_settings(get_settings())


def get_fact_provider() -> FactProvider:
    settings = get_settings()
    return HttpFactProvider(settings.fact_service_url, timeout=settings.fact_service_timeout)


def get_phase_directory() -> PhaseDirectory:
    return SqlPhaseDirectory(get_session_factory())


def get_gate_service(
    facts: FactProvider = Depends(get_fact_provider),
    phases: PhaseDirectory = Depends(get_phase_directory),
    rules: RuleCatalog = Depends(get_rule_catalog),
) -> GateService:
    return GateService(get_session_factory(), phases, rules, facts)
