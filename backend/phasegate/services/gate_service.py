"""GateService: orchestrates the phase gate for the API layer."""

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phasegate.core.config import Settings, get_settings
from phasegate.core.exceptions import StaleError, StorageError
from phasegate.core.locking import PhaseLocks, get_phase_locks
from phasegate.db.models.audit_entry import GateAuditEntry
from phasegate.db.models.gate_state import GateState
from phasegate.domain.gates import GateEvaluation
from phasegate.services.audit_log import AuditLog
from phasegate.services.evaluator import BlockedPhase, GateEvaluator
from phasegate.services.facts import FactProvider
from phasegate.services.override import OverrideAuthority, OverrideRequest, OverrideResult
from phasegate.services.phases import PhaseDirectory
from phasegate.services.rule_catalog import RuleCatalog
from phasegate.services.state_store import GateStateStore

logger = structlog.get_logger(__name__)


class GateService:
    """Service layer for phase gate operations.

    Wires evaluation, forced override, audit trail and sealing together.
    All collaborators are injected so tests can run without global state.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        phases: PhaseDirectory,
        rules: RuleCatalog,
        facts: FactProvider,
        settings: Settings | None = None,
        locks: PhaseLocks | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize with dependency injection.

        Args:
            session_factory: SQLAlchemy async session factory
            phases: Source of phase identity and lifecycle status
            rules: Published rule sets
            facts: External fact provider
            settings: Override policy settings (defaults to get_settings())
            locks: Per-phase locks shared by every writer in the process
            clock: Time source, injectable for deterministic tests
        """
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.locks = locks if locks is not None else get_phase_locks()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.evaluator = GateEvaluator(session_factory, phases, rules, facts, clock=self.clock)
        self.audit_log = AuditLog(session_factory, page_size=self.settings.audit_page_size)
        self.authority = OverrideAuthority(
            session_factory,
            self.evaluator,
            self.audit_log,
            locks=self.locks,
            settings=self.settings,
            clock=self.clock,
        )

    async def check_phase(self, project_id: str, phase_number: int) -> GateEvaluation:
        return await self.evaluator.check_phase(project_id, phase_number)

    def list_blocked_phases(self, project_id: str) -> AsyncIterator[BlockedPhase]:
        return self.evaluator.list_blocked_phases(project_id)

    async def override(self, request: OverrideRequest) -> OverrideResult:
        return await self.authority.override(request)

    def audit_trail(self, project_id: str, phase_number: int) -> AsyncIterator[GateAuditEntry]:
        return self.audit_log.query_by_phase(project_id, phase_number)

    def project_audit_trail(self, project_id: str) -> AsyncIterator[GateAuditEntry]:
        """Every override attempt on a project, grouped by phase in sequence order."""
        return self.audit_log.query_by_project(project_id)

    async def seal_phase(self, project_id: str, phase_number: int) -> GateState:
        """Freeze the gate of a phase that has left ``pending``.

        Called by the project aggregate after it starts the phase. Idempotent.

        Raises:
            PhaseNotFoundError: Unknown phase
            StaleError: The phase is still pending
            StorageError: The seal could not be committed
        """
        async with self.locks.hold(project_id, phase_number):
            phase = await self.evaluator.phases.get_phase(project_id, phase_number)
            if phase.is_pending:
                raise StaleError(f"Phase {phase_number} has not started yet; its gate cannot be sealed")
            now = self.clock()
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        state = await GateStateStore(session).seal(project_id, phase_number, at=now)
            except SQLAlchemyError as exc:
                logger.error(
                    "gate_seal_failed",
                    project_id=project_id,
                    phase_number=phase_number,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise StorageError("The gate could not be sealed") from exc

        logger.info(
            "gate_sealed",
            project_id=project_id,
            phase_number=phase_number,
            lifecycle_status=str(phase.lifecycle_status),
            overridden=bool(state.overridden),
        )
        return state
