"""OverrideAuthority: forced, audited unlock of a blocked phase gate.

Every attempt that reaches a known phase leaves exactly one audit entry:
``approved`` when the unlock is committed, ``rejected`` (with the error code)
otherwise. The approved entry and the GateState flip share one transaction.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import NoReturn

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phasegate.core.config import Settings, get_settings
from phasegate.core.exceptions import (
    AlreadyOverriddenError,
    OverrideError,
    StaleError,
    StorageError,
    UnauthorizedError,
    ValidationFailedError,
)
from phasegate.core.locking import PhaseLocks, get_phase_locks
from phasegate.db.models.audit_entry import GateAuditEntry
from phasegate.db.models.gate_state import GateState
from phasegate.domain.audit import AuditOutcome
from phasegate.domain.gates import GateEvaluation, actor_may_override, override_input_problem
from phasegate.services.audit_log import AuditDraft, AuditLog, retry_on_write_conflict
from phasegate.services.evaluator import GateEvaluator
from phasegate.services.state_store import GateStateStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OverrideRequest:
    project_id: str
    phase_number: int
    actor: str
    reason: str
    confirmation_token: str
    actor_roles: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, "actor_roles", frozenset(self.actor_roles))


@dataclass(frozen=True)
class OverrideResult:
    audit_entry: GateAuditEntry
    state: GateState


class OverrideAuthority:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        evaluator: GateEvaluator,
        audit_log: AuditLog,
        locks: PhaseLocks | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.evaluator = evaluator
        self.audit_log = audit_log
        self.locks = locks if locks is not None else get_phase_locks()
        self.settings = settings or get_settings()
        self.clock = clock or (lambda: datetime.now(UTC))

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        return now.astimezone(UTC)

    async def override(self, request: OverrideRequest) -> OverrideResult:
        """Force-unlock a blocked phase.

        Args:
            request: Actor, roles, reason and the typed confirmation phrase

        Returns:
            OverrideResult with the approved audit entry and the new GateState

        Raises:
            PhaseNotFoundError: Unknown phase (no audit entry is written)
            UnauthorizedError: Actor lacks the role for the failing rule's category
            ValidationFailedError: Reason too short or confirmation phrase mismatch
            AlreadyOverriddenError: The phase was already unlocked (race lost)
            StaleError: The phase is not pending and blocked any more
            StorageError: The transaction failed; nothing was changed
            FactProviderError: Facts unavailable, so the gate cannot be re-checked
        """
        async with self.locks.hold(request.project_id, request.phase_number):
            phase = await self.evaluator.phases.get_phase(request.project_id, request.phase_number)
            # Re-evaluate now instead of trusting whatever the caller saw
            evaluation = await self.evaluator.evaluate(phase)
            rule_set = self.evaluator.rule_set_for(request.project_id)

            if not actor_may_override(evaluation, rule_set, request.actor_roles):
                target = f"{evaluation.failing_rule.category} gates" if evaluation.failing_rule else "phase gates"
                await self._reject(
                    request, evaluation, UnauthorizedError(f"'{request.actor}' is not allowed to override {target}")
                )

            problem = override_input_problem(
                request.reason,
                request.confirmation_token,
                phrase=self.settings.override_confirmation_phrase,
                min_reason_length=self.settings.override_min_reason_length,
            )
            if problem:
                await self._reject(request, evaluation, ValidationFailedError(problem))

            if evaluation.overridden:
                await self._reject(
                    request,
                    evaluation,
                    AlreadyOverriddenError(f"Phase {request.phase_number} has already been unlocked"),
                )
            if not phase.is_pending or evaluation.sealed:
                await self._reject(
                    request, evaluation, StaleError(f"Phase {request.phase_number} has already started")
                )
            if not evaluation.blocked:
                await self._reject(
                    request, evaluation, StaleError(f"Phase {request.phase_number} is no longer blocked")
                )

            return await self._commit(request, evaluation)

    async def _commit(self, request: OverrideRequest, evaluation: GateEvaluation) -> OverrideResult:
        now = self._now()
        draft = AuditDraft.for_attempt(
            project_id=request.project_id,
            phase_number=request.phase_number,
            actor=request.actor,
            reason=request.reason.strip(),
            outcome=AuditOutcome.APPROVED,
            timestamp=now,
            evaluation=evaluation,
        )
        try:
            state, entry = await self._write_override(draft)
        except AlreadyOverriddenError as exc:
            # Another process won the compare-and-set; our transaction rolled back
            await self._reject(request, evaluation, exc)
        except SQLAlchemyError as exc:
            logger.error(
                "gate_override_storage_failed",
                project_id=request.project_id,
                phase_number=request.phase_number,
                actor=request.actor,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StorageError("The override could not be committed; nothing was changed") from exc

        logger.info(
            "gate_override_approved",
            project_id=request.project_id,
            phase_number=request.phase_number,
            actor=request.actor,
            failing_rule=draft.failing_rule_id,
            rule_set_version=draft.rule_set_version,
            audit_entry_id=entry.id,
        )
        return OverrideResult(audit_entry=entry, state=state)

    @retry_on_write_conflict
    async def _write_override(self, draft: AuditDraft) -> tuple[GateState, GateAuditEntry]:
        """Flip the state row and append the approved entry in one transaction."""
        async with self.session_factory() as session:
            async with session.begin():
                state = await GateStateStore(session).mark_overridden(
                    draft.project_id,
                    draft.phase_number,
                    actor=draft.actor,
                    reason=draft.reason,
                    at=draft.timestamp,
                )
                entry = await self.audit_log.append(draft, session=session)
        return state, entry

    async def _reject(self, request: OverrideRequest, evaluation: GateEvaluation, error: OverrideError) -> NoReturn:
        """Record a rejected attempt, then raise ``error``."""
        await self.audit_log.append(
            AuditDraft.for_attempt(
                project_id=request.project_id,
                phase_number=request.phase_number,
                actor=request.actor,
                reason=request.reason,
                outcome=AuditOutcome.REJECTED,
                timestamp=self._now(),
                evaluation=evaluation,
                error_code=error.code,
            )
        )
        logger.warning(
            "gate_override_rejected",
            project_id=request.project_id,
            phase_number=request.phase_number,
            actor=request.actor,
            code=error.code,
            detail=error.message,
        )
        raise error

