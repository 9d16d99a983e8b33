"""AuditLog: append-only, hash-chained record of override attempts.

No update or delete method exists here, and the ORM model refuses updates
and deletes at flush time.
"""

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from phasegate.core.exceptions import StorageError
from phasegate.db.models.audit_entry import GateAuditEntry
from phasegate.domain.audit import AuditOutcome, compute_entry_hash
from phasegate.domain.gates import GateEvaluation

logger = structlog.get_logger(__name__)

# Two writers can read the same tail and race for the next sequence number; the
# unique (project_id, phase_number, sequence) constraint rejects the loser, which
# then re-reads the tail. SQLite "database is locked" surfaces as OperationalError.
retry_on_write_conflict = retry(
    retry=retry_if_exception_type((IntegrityError, OperationalError)),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.05, max=1),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "storage_write_retrying",
        operation=rs.fn.__name__,
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)


@dataclass(frozen=True)
class AuditDraft:
    """Everything about an attempt except its position in the chain."""

    project_id: str
    phase_number: int
    actor: str
    reason: str
    outcome: AuditOutcome
    timestamp: datetime
    error_code: str | None = None
    failing_rule_id: str | None = None
    failing_rule_description: str | None = None
    rule_set_version: int | None = None

    @classmethod
    def for_attempt(
        cls,
        *,
        project_id: str,
        phase_number: int,
        actor: str,
        reason: str,
        outcome: AuditOutcome,
        timestamp: datetime,
        evaluation: GateEvaluation | None = None,
        error_code: str | None = None,
    ) -> "AuditDraft":
        rule = evaluation.failing_rule if evaluation else None
        return cls(
            project_id=project_id,
            phase_number=phase_number,
            actor=actor,
            reason=reason or "",
            outcome=outcome,
            timestamp=timestamp,
            error_code=error_code,
            failing_rule_id=rule.id if rule else None,
            failing_rule_description=evaluation.reason if rule else None,
            rule_set_version=evaluation.rule_set_version if evaluation else None,
        )


class AuditLog:
    """Write-once store of GateAuditEntry rows, ordered per phase by sequence."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], page_size: int = 100):
        self.session_factory = session_factory
        self.page_size = page_size

    async def _last_entry(self, session: AsyncSession, project_id: str, phase_number: int) -> GateAuditEntry | None:
        result = await session.execute(
            select(GateAuditEntry)
            .where(GateAuditEntry.project_id == project_id, GateAuditEntry.phase_number == phase_number)
            .order_by(GateAuditEntry.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _append_in(self, session: AsyncSession, draft: AuditDraft) -> GateAuditEntry:
        last = await self._last_entry(session, draft.project_id, draft.phase_number)
        fields = {
            "id": str(uuid.uuid4()),
            "project_id": draft.project_id,
            "phase_number": draft.phase_number,
            "sequence": (last.sequence + 1) if last else 1,
            "actor": draft.actor,
            "reason": draft.reason,
            "timestamp": draft.timestamp,
            "outcome": AuditOutcome(draft.outcome).value,
            "error_code": draft.error_code,
            "failing_rule_id": draft.failing_rule_id,
            "failing_rule_description": draft.failing_rule_description,
            "rule_set_version": draft.rule_set_version,
        }
        prev_hash = last.entry_hash if last else None
        entry = GateAuditEntry(**fields, prev_hash=prev_hash, entry_hash=compute_entry_hash(fields, prev_hash))
        session.add(entry)
        await session.flush()
        return entry

    @retry_on_write_conflict
    async def _append_own(self, draft: AuditDraft) -> GateAuditEntry:
        async with self.session_factory() as session:
            async with session.begin():
                return await self._append_in(session, draft)

    async def append(self, draft: AuditDraft, session: AsyncSession | None = None) -> GateAuditEntry:
        """Append one entry.

        Args:
            draft: The attempt to record
            session: Caller-owned session inside an open transaction; when
                given, the entry commits or rolls back with the caller's
                other writes. Otherwise the entry is committed on its own.

        Raises:
            StorageError: If the entry could not be written (own-transaction mode)
        """
        if session is not None:
            return await self._append_in(session, draft)

        try:
            return await self._append_own(draft)
        except SQLAlchemyError as exc:
            logger.error(
                "audit_append_failed",
                project_id=draft.project_id,
                phase_number=draft.phase_number,
                outcome=str(draft.outcome),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StorageError("Could not write the audit entry") from exc

    async def query_by_phase(self, project_id: str, phase_number: int) -> AsyncIterator[GateAuditEntry]:
        """Yield a phase's entries in sequence (commit) order.

        Each call starts a fresh query, so iteration can be restarted by calling
        again. Entries are fetched in pages of ``page_size``.
        """
        last_sequence = 0
        async with self.session_factory() as session:
            while True:
                result = await session.execute(
                    select(GateAuditEntry)
                    .where(
                        GateAuditEntry.project_id == project_id,
                        GateAuditEntry.phase_number == phase_number,
                        GateAuditEntry.sequence > last_sequence,
                    )
                    .order_by(GateAuditEntry.sequence)
                    .limit(self.page_size)
                )
                page = result.scalars().all()
                for entry in page:
                    yield entry
                if len(page) < self.page_size:
                    return
                last_sequence = page[-1].sequence

    async def query_by_project(self, project_id: str) -> AsyncIterator[GateAuditEntry]:
        """Yield every entry of a project, ordered by phase and then by sequence.

        Paged like ``query_by_phase``, keyed on (phase_number, sequence).
        """
        last_key = (0, 0)
        async with self.session_factory() as session:
            while True:
                last_phase, last_sequence = last_key
                result = await session.execute(
                    select(GateAuditEntry)
                    .where(
                        GateAuditEntry.project_id == project_id,
                        or_(
                            GateAuditEntry.phase_number > last_phase,
                            and_(
                                GateAuditEntry.phase_number == last_phase,
                                GateAuditEntry.sequence > last_sequence,
                            ),
                        ),
                    )
                    .order_by(GateAuditEntry.phase_number, GateAuditEntry.sequence)
                    .limit(self.page_size)
                )
                page = result.scalars().all()
                for entry in page:
                    yield entry
                if len(page) < self.page_size:
                    return
                last_key = (page[-1].phase_number, page[-1].sequence)
