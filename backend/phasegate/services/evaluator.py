"""GateEvaluator: answers "can phase P of project J start?".

Read-only: loads the phase, its GateState and (only when needed) a fact
snapshot, then delegates to the pure domain evaluation. Never writes and
never takes the override lock, so it is safe to call from any number of
concurrent readers.
"""

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phasegate.core.exceptions import FactProviderError
from phasegate.domain.gates import GateEvaluation, evaluate_gate, open_gate
from phasegate.domain.phases import Phase
from phasegate.domain.rules import FactSnapshot, RuleSet
from phasegate.services.facts import FactProvider
from phasegate.services.phases import PhaseDirectory
from phasegate.services.rule_catalog import RuleCatalog
from phasegate.services.state_store import GateStateStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BlockedPhase:
    phase_number: int
    reason: str


class GateEvaluator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        phases: PhaseDirectory,
        rules: RuleCatalog,
        facts: FactProvider,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.phases = phases
        self.rules = rules
        self.facts = facts
        self.clock = clock or (lambda: datetime.now(UTC))

    def rule_set_for(self, project_id: str) -> RuleSet:
        return self.rules.get(project_id)

    async def check_phase(self, project_id: str, phase_number: int) -> GateEvaluation:
        """Evaluate the gate of one phase.

        Raises:
            PhaseNotFoundError: Unknown (project, phase)
            FactProviderError: Facts could not be fetched; treat as blocked
        """
        phase = await self.phases.get_phase(project_id, phase_number)
        return await self.evaluate(phase)

    async def evaluate(self, phase: Phase) -> GateEvaluation:
        now = self.clock()
        rule_set = self.rule_set_for(phase.project_id)

        async with self.session_factory() as session:
            state = await GateStateStore(session).get(phase.project_id, phase.phase_number)

        if not phase.is_pending or state.sealed:
            return open_gate(
                phase,
                now,
                overridden=bool(state.overridden),
                sealed=state.sealed,
                rule_set_version=rule_set.version,
            )
        if state.overridden:
            return open_gate(phase, now, overridden=True, rule_set_version=rule_set.version)

        facts = await self._snapshot(phase)
        evaluation = evaluate_gate(phase, rule_set, facts, now)

        if evaluation.rule_error:
            logger.warning(
                "predicate_failed",
                project_id=phase.project_id,
                phase_number=phase.phase_number,
                rule_id=evaluation.failing_rule.id,
                error=evaluation.rule_error,
            )
        logger.debug(
            "gate_evaluated",
            project_id=phase.project_id,
            phase_number=phase.phase_number,
            blocked=evaluation.blocked,
            failing_rule=evaluation.failing_rule.id if evaluation.failing_rule else None,
            rule_set_version=rule_set.version,
        )
        return evaluation

    async def _snapshot(self, phase: Phase) -> FactSnapshot:
        try:
            facts = await self.facts.snapshot(phase.project_id, phase.phase_number)
        except FactProviderError:
            raise
        except Exception as exc:
            logger.error(
                "fact_snapshot_failed",
                project_id=phase.project_id,
                phase_number=phase.phase_number,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise FactProviderError(
                f"Facts unavailable for phase {phase.phase_number} of project '{phase.project_id}'"
            ) from exc

        if facts.project_id != phase.project_id or facts.phase_number != phase.phase_number:
            raise FactProviderError(
                f"Fact snapshot for ({facts.project_id}, {facts.phase_number}) returned "
                f"when ({phase.project_id}, {phase.phase_number}) was requested"
            )
        return facts

    async def list_blocked_phases(self, project_id: str) -> AsyncIterator[BlockedPhase]:
        """Yield every pending phase of the project that is currently blocked, in phase order."""
        for phase in await self.phases.list_phases(project_id):
            if not phase.is_pending:
                continue
            evaluation = await self.evaluate(phase)
            if evaluation.blocked:
                yield BlockedPhase(phase_number=phase.phase_number, reason=evaluation.reason or "")
