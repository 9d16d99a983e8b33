"""Tests for forced override: authorization, validation, atomicity and audit.

Uses a temporary SQLite database. Each test gets a fresh GateService with its
own PhaseLocks instance.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from phasegate.core.exceptions import (
    AlreadyOverriddenError,
    AuditImmutableError,
    FactProviderError,
    PhaseNotFoundError,
    StaleError,
    StorageError,
    UnauthorizedError,
    ValidationFailedError,
)
from phasegate.core.locking import PhaseLocks
from phasegate.db.models.audit_entry import GateAuditEntry
from phasegate.db.models.gate_state import GateState
from phasegate.domain.audit import verify_chain
from phasegate.domain.phases import LifecycleStatus
from phasegate.services.gate_service import GateService
from phasegate.services.override import OverrideRequest
from phasegate.services.state_store import GateStateStore

REASON = "Client authorized start with pending balance"


def _request(**overrides) -> OverrideRequest:
    values = {
        "project_id": "J1",
        "phase_number": 3,
        "actor": "A1",
        "actor_roles": {"admin"},
        "reason": REASON,
        "confirmation_token": "DESBLOQUEAR",
    }
    values.update(overrides)
    return OverrideRequest(**values)


async def _trail(service, project_id: str = "J1", phase_number: int = 3) -> list[GateAuditEntry]:
    return [entry async for entry in service.audit_trail(project_id, phase_number)]


async def _state(session_factory, project_id: str = "J1", phase_number: int = 3) -> GateState | None:
    async with session_factory() as session:
        return await session.get(GateState, (project_id, phase_number))


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


async def test_admin_unlocks_blocked_phase(gate_service):
    """J1 phase 3 is blocked at 75% progress; A1 unlocks it with DESBLOQUEAR."""
    before = await gate_service.check_phase("J1", 3)
    assert before.blocked is True
    assert before.failing_rule.id == "prior-phase-complete"

    result = await gate_service.override(_request())

    assert result.state.overridden is True
    assert result.state.overridden_by == "A1"
    assert result.state.override_reason == REASON
    assert result.audit_entry.outcome == "approved"
    assert result.audit_entry.error_code is None

    after = await gate_service.check_phase("J1", 3)
    assert after.blocked is False
    assert after.overridden is True

    trail = await _trail(gate_service)
    assert len(trail) == 1
    entry = trail[0]
    assert entry.outcome == "approved"
    assert entry.actor == "A1"
    assert entry.reason == REASON
    assert entry.sequence == 1
    assert entry.failing_rule_id == "prior-phase-complete"
    assert entry.failing_rule_description == "Phase 2 is not complete"
    assert entry.rule_set_version == 2
    assert verify_chain(trail) == []


async def test_cost_controller_unlocks_financial_gate(gate_service):
    result = await gate_service.override(
        _request(project_id="J2", phase_number=2, actor="cc-1", actor_roles={"cost_controller"})
    )

    assert result.audit_entry.failing_rule_id == "invoice-prior-phase"
    assert result.audit_entry.failing_rule_description == "Pending payment for phase 1"


async def test_override_is_monotonic(gate_service, facts):
    """Once unlocked, later fact changes never re-block the phase."""
    await gate_service.override(_request())

    facts.set_fact("J1", "phase.2.progress", 10)
    facts.remove_fact("J1", "invoice.phase.2.status")

    evaluation = await gate_service.check_phase("J1", 3)
    assert evaluation.blocked is False
    assert evaluation.overridden is True


async def test_overridden_phase_skips_fact_lookup(gate_service, facts):
    await gate_service.override(_request())
    calls = facts.calls

    await gate_service.check_phase("J1", 3)

    assert facts.calls == calls


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


async def test_role_without_category_is_unauthorized(gate_service, session_factory):
    with pytest.raises(UnauthorizedError) as exc_info:
        await gate_service.override(_request(actor="pm-1", actor_roles={"project_manager"}))

    assert exc_info.value.code == "unauthorized"
    assert "contractual" in exc_info.value.message
    assert await _state(session_factory) is None

    trail = await _trail(gate_service)
    assert [(e.outcome, e.error_code, e.actor) for e in trail] == [("rejected", "unauthorized", "pm-1")]


async def test_unauthorized_is_checked_before_input(gate_service):
    with pytest.raises(UnauthorizedError):
        await gate_service.override(_request(actor_roles=set(), confirmation_token="unlock"))


@pytest.mark.parametrize("confirmation", ["unlock", "desbloquear", "DESBLOQUEAR "])
async def test_wrong_confirmation_is_rejected(gate_service, confirmation):
    with pytest.raises(ValidationFailedError) as exc_info:
        await gate_service.override(_request(confirmation_token=confirmation))

    assert exc_info.value.code == "validation_failed"
    assert (await gate_service.check_phase("J1", 3)).blocked is True

    trail = await _trail(gate_service)
    assert [(e.outcome, e.error_code) for e in trail] == [("rejected", "validation_failed")]


async def test_short_reason_is_rejected(gate_service):
    with pytest.raises(ValidationFailedError, match="at least 10 characters"):
        await gate_service.override(_request(reason="because"))

    trail = await _trail(gate_service)
    assert trail[0].reason == "because"


async def test_second_override_is_already_overridden(gate_service):
    await gate_service.override(_request())

    with pytest.raises(AlreadyOverriddenError):
        await gate_service.override(_request(actor="A2"))

    trail = await _trail(gate_service)
    assert [(e.outcome, e.error_code) for e in trail] == [("approved", None), ("rejected", "already_overridden")]


async def test_phase_no_longer_blocked_is_stale(gate_service, facts, session_factory):
    facts.set_fact("J1", "phase.2.progress", 100)

    with pytest.raises(StaleError, match="no longer blocked"):
        await gate_service.override(_request())

    assert await _state(session_factory) is None
    trail = await _trail(gate_service)
    assert [(e.outcome, e.error_code) for e in trail] == [("rejected", "stale")]
    assert trail[0].failing_rule_id is None


async def test_started_phase_is_stale(gate_service, phases):
    phases.set_status("J1", 3, LifecycleStatus.IN_PROGRESS)

    with pytest.raises(StaleError, match="already started"):
        await gate_service.override(_request())


async def test_unknown_phase_writes_no_audit_entry(gate_service):
    with pytest.raises(PhaseNotFoundError):
        await gate_service.override(_request(phase_number=9))

    assert await _trail(gate_service, phase_number=9) == []


async def test_fact_provider_failure_writes_no_audit_entry(gate_service, session_factory):
    gate_service.evaluator.facts = AsyncMock()
    gate_service.evaluator.facts.snapshot.side_effect = TimeoutError("fact service timed out")

    with pytest.raises(FactProviderError):
        await gate_service.override(_request())

    assert await _trail(gate_service) == []
    assert await _state(session_factory) is None


# ---------------------------------------------------------------------------
# Atomicity and concurrency
# ---------------------------------------------------------------------------


async def test_concurrent_overrides_exactly_one_wins(gate_service):
    """N simultaneous requests: one approved entry, N-1 already_overridden."""
    requests = [_request(actor=f"A{i}") for i in range(6)]

    results = await asyncio.gather(*(gate_service.override(r) for r in requests), return_exceptions=True)

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 5
    assert all(isinstance(f, AlreadyOverriddenError) for f in failures)

    trail = await _trail(gate_service)
    assert len(trail) == 6
    assert [e.outcome for e in trail].count("approved") == 1
    assert [e.sequence for e in trail] == [1, 2, 3, 4, 5, 6]
    assert verify_chain(trail) == []


async def test_concurrent_overrides_across_workers_exactly_one_wins(
    session_factory, phases, rules, facts, settings, clock
):
    """Separate services (one per worker) share only the database, not the locks."""
    workers = [
        GateService(
            session_factory,
            phases,
            rules,
            facts,
            settings=settings,
            locks=PhaseLocks(timeout=5.0),
            clock=clock,
        )
        for _ in range(5)
    ]
    assert len({id(worker.authority.locks) for worker in workers}) == 5

    results = await asyncio.gather(
        *(worker.override(_request(actor=f"W{i}")) for i, worker in enumerate(workers)),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 4
    assert all(isinstance(f, AlreadyOverriddenError) for f in failures), failures

    trail = await _trail(workers[0])
    assert len(trail) == 5
    assert [e.outcome for e in trail].count("approved") == 1
    assert [e.sequence for e in trail] == [1, 2, 3, 4, 5]
    assert verify_chain(trail) == []
    state = await _state(session_factory)
    assert state.overridden is True
    assert state.overridden_by == successes[0].audit_entry.actor


async def test_state_row_creation_tolerates_existing_row(session_factory):
    """A row created by another writer between the read and the insert is kept."""
    async with session_factory() as session:
        async with session.begin():
            await GateStateStore(session)._ensure_row("J1", 3)
    async with session_factory() as session:
        async with session.begin():
            await GateStateStore(session)._ensure_row("J1", 3)
            state = await GateStateStore(session).mark_overridden(
                "J1", 3, actor="A1", reason=REASON, at=datetime(2026, 3, 2, 9, 30, tzinfo=UTC)
            )

    assert state.overridden is True
    async with session_factory() as session:
        rows = (await session.execute(select(GateState).where(GateState.project_id == "J1"))).scalars().all()
    assert len(rows) == 1


async def test_rejected_entry_retries_sequence_collision(gate_service):
    """A writer that lost the race for the next sequence re-reads the tail and retries."""
    append_in = gate_service.audit_log._append_in
    attempts = []

    async def collide_once(session, draft):
        attempts.append(draft)
        if len(attempts) == 1:
            raise IntegrityError("INSERT INTO gate_audit_entries", {}, Exception("UNIQUE constraint failed"))
        return await append_in(session, draft)

    with patch.object(gate_service.audit_log, "_append_in", collide_once):
        with pytest.raises(ValidationFailedError):
            await gate_service.override(_request(confirmation_token="unlock"))

    assert len(attempts) == 2
    trail = await _trail(gate_service)
    assert [(e.outcome, e.sequence) for e in trail] == [("rejected", 1)]


async def test_lost_compare_and_set_is_recorded_as_already_overridden(gate_service, session_factory):
    """A writer that evaluated before another process committed loses the CAS."""
    stale_evaluation = await gate_service.check_phase("J1", 3)
    async with session_factory() as session:
        async with session.begin():
            await GateStateStore(session).mark_overridden(
                "J1", 3, actor="other-process", reason=REASON, at=stale_evaluation.evaluated_at
            )

    with patch.object(gate_service.evaluator, "evaluate", AsyncMock(return_value=stale_evaluation)):
        with pytest.raises(AlreadyOverriddenError):
            await gate_service.override(_request())

    trail = await _trail(gate_service)
    assert [(e.outcome, e.error_code) for e in trail] == [("rejected", "already_overridden")]
    state = await _state(session_factory)
    assert state.overridden_by == "other-process"


async def test_storage_failure_leaves_nothing_behind(gate_service, session_factory):
    failure = OperationalError("UPDATE gate_states", {}, Exception("disk I/O error"))

    with patch.object(GateStateStore, "mark_overridden", AsyncMock(side_effect=failure)):
        with pytest.raises(StorageError) as exc_info:
            await gate_service.override(_request())

    assert exc_info.value.code == "storage_error"
    assert await _trail(gate_service) == []
    assert (await gate_service.check_phase("J1", 3)).blocked is True


async def test_audit_failure_rolls_back_state_flip(gate_service, session_factory):
    failure = OperationalError("INSERT INTO gate_audit_entries", {}, Exception("disk full"))

    with patch.object(gate_service.audit_log, "append", AsyncMock(side_effect=failure)):
        with pytest.raises(StorageError):
            await gate_service.override(_request())

    state = await _state(session_factory)
    assert state is None or state.overridden is False
    assert (await gate_service.check_phase("J1", 3)).blocked is True


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


async def test_audit_trail_only_grows(gate_service):
    """Every later trail is the earlier trail plus new entries, unchanged."""
    snapshots = []
    attempts = [
        _request(confirmation_token="unlock"),
        _request(actor_roles={"viewer"}),
        _request(),
        _request(actor="A2"),
    ]
    for attempt in attempts:
        try:
            await gate_service.override(attempt)
        except (ValidationFailedError, UnauthorizedError, AlreadyOverriddenError):
            pass
        snapshots.append([(e.id, e.entry_hash) for e in await _trail(gate_service)])

    for earlier, later in zip(snapshots, snapshots[1:]):
        assert later[: len(earlier)] == earlier
        assert len(later) == len(earlier) + 1


async def test_audit_entries_cannot_be_updated(gate_service, session_factory):
    await gate_service.override(_request())

    async with session_factory() as session:
        entry = (await session.execute(select(GateAuditEntry))).scalar_one()
        entry.reason = "Nothing happened"
        with pytest.raises(AuditImmutableError):
            await session.commit()


async def test_audit_entries_cannot_be_deleted(gate_service, session_factory):
    await gate_service.override(_request())

    async with session_factory() as session:
        entry = (await session.execute(select(GateAuditEntry))).scalar_one()
        await session.delete(entry)
        with pytest.raises(AuditImmutableError):
            await session.commit()

    assert len(await _trail(gate_service)) == 1


async def test_audit_trail_pages_in_sequence_order(gate_service):
    gate_service.audit_log.page_size = 2
    for _ in range(5):
        with pytest.raises(ValidationFailedError):
            await gate_service.override(_request(confirmation_token="unlock"))

    trail = await _trail(gate_service)
    assert [e.sequence for e in trail] == [1, 2, 3, 4, 5]
    assert verify_chain(trail) == []


async def test_audit_trail_is_restartable(gate_service):
    with pytest.raises(ValidationFailedError):
        await gate_service.override(_request(reason="short"))

    first = [e.id for e in await _trail(gate_service)]
    second = [e.id for e in await _trail(gate_service)]
    assert first == second


async def test_project_audit_trail_spans_phases(gate_service):
    """Forced unlocks across phases of J1 come back together; J2 stays separate."""
    gate_service.audit_log.page_size = 2
    await gate_service.override(_request(phase_number=4, actor="A1"))
    with pytest.raises(ValidationFailedError):
        await gate_service.override(_request(phase_number=3, actor="A2", confirmation_token="unlock"))
    await gate_service.override(_request(phase_number=3, actor="A3"))
    with pytest.raises(AlreadyOverriddenError):
        await gate_service.override(_request(phase_number=4, actor="A4"))
    await gate_service.override(
        _request(project_id="J2", phase_number=2, actor="cc-1", actor_roles={"cost_controller"})
    )

    trail = [entry async for entry in gate_service.project_audit_trail("J1")]

    assert [(e.phase_number, e.sequence, e.actor, e.outcome) for e in trail] == [
        (3, 1, "A2", "rejected"),
        (3, 2, "A3", "approved"),
        (4, 1, "A1", "approved"),
        (4, 2, "A4", "rejected"),
    ]
    assert all(e.reason == REASON for e in trail)
    assert verify_chain([e for e in trail if e.phase_number == 3]) == []
    assert verify_chain([e for e in trail if e.phase_number == 4]) == []

    other = [entry async for entry in gate_service.project_audit_trail("J2")]
    assert [(e.phase_number, e.actor) for e in other] == [(2, "cc-1")]
    assert [entry async for entry in gate_service.project_audit_trail("J9")] == []


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------


async def test_pending_phase_cannot_be_sealed(gate_service):
    with pytest.raises(StaleError, match="has not started"):
        await gate_service.seal_phase("J1", 3)


async def test_seal_freezes_gate(gate_service, phases):
    await gate_service.override(_request())
    phases.set_status("J1", 3, LifecycleStatus.IN_PROGRESS)

    state = await gate_service.seal_phase("J1", 3)
    again = await gate_service.seal_phase("J1", 3)

    assert state.sealed is True
    assert state.overridden is True
    assert again.sealed_at == state.sealed_at

    evaluation = await gate_service.check_phase("J1", 3)
    assert evaluation.sealed is True
    assert evaluation.blocked is False


async def test_sealed_row_rejects_compare_and_set(gate_service, phases, session_factory):
    phases.set_status("J1", 4, LifecycleStatus.IN_PROGRESS)
    await gate_service.seal_phase("J1", 4)

    async with session_factory() as session:
        async with session.begin():
            with pytest.raises(AlreadyOverriddenError):
                await GateStateStore(session).mark_overridden(
                    "J1", 4, actor="A1", reason=REASON, at=datetime.now(UTC)
                )
