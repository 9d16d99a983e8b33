"""GateStateStore: reads and writes gate_states inside a caller-owned session.

Writes only happen on the override and seal paths, always inside a
transaction started by the caller.
"""

from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from phasegate.core.exceptions import AlreadyOverriddenError
from phasegate.db.models.gate_state import GateState

_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class GateStateStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, project_id: str, phase_number: int) -> GateState:
        """Return the stored state, or an unsaved default when no row exists yet.

        The default is not added to the session, so reads never write.
        """
        state = await self.session.get(GateState, (project_id, phase_number))
        if state is None:
            return GateState(project_id=project_id, phase_number=phase_number, overridden=False)
        return state

    async def _ensure_row(self, project_id: str, phase_number: int) -> None:
        """Create the state row if it is missing; a concurrent creator wins silently."""
        values = {
            "project_id": project_id,
            "phase_number": phase_number,
            "overridden": False,
            "created_at": datetime.now(UTC),
        }
        dialect = self.session.get_bind().dialect.name
        if dialect in _UPSERT_INSERTS:
            stmt = (
                _UPSERT_INSERTS[dialect](GateState)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["project_id", "phase_number"])
            )
            await self.session.execute(stmt)
            return

        if await self.session.get(GateState, (project_id, phase_number)) is not None:
            return
        try:
            async with self.session.begin_nested():
                self.session.add(GateState(**values))
        except IntegrityError:
            pass

    async def mark_overridden(
        self, project_id: str, phase_number: int, *, actor: str, reason: str, at: datetime
    ) -> GateState:
        """Flip overridden false -> true with a compare-and-set update.

        Raises:
            AlreadyOverriddenError: If the row was already overridden (or sealed)
        """
        await self._ensure_row(project_id, phase_number)
        result = await self.session.execute(
            update(GateState)
            .where(
                GateState.project_id == project_id,
                GateState.phase_number == phase_number,
                GateState.overridden.is_(False),
                GateState.sealed_at.is_(None),
            )
            .values(overridden=True, overridden_at=at, overridden_by=actor, override_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyOverriddenError(f"Phase {phase_number} of project '{project_id}' was already unlocked")
        return await self.session.get(GateState, (project_id, phase_number), populate_existing=True)

    async def seal(self, project_id: str, phase_number: int, *, at: datetime) -> GateState:
        """Freeze the row once the phase has left pending. Idempotent."""
        await self._ensure_row(project_id, phase_number)
        await self.session.execute(
            update(GateState)
            .where(
                GateState.project_id == project_id,
                GateState.phase_number == phase_number,
                GateState.sealed_at.is_(None),
            )
            .values(sealed_at=at)
            .execution_options(synchronize_session=False)
        )
        return await self.session.get(GateState, (project_id, phase_number), populate_existing=True)
