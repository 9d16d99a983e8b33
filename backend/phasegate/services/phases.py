"""Read-only access to phase identity and lifecycle status."""

from collections.abc import Iterable
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phasegate.core.exceptions import PhaseNotFoundError
from phasegate.db.models.project_phase import ProjectPhase
from phasegate.domain.phases import LifecycleStatus, Phase


class PhaseDirectory(Protocol):
    async def get_phase(self, project_id: str, phase_number: int) -> Phase:
        """Return the phase or raise PhaseNotFoundError."""
        ...

    async def list_phases(self, project_id: str) -> list[Phase]:
        """Return all phases of a project ordered by phase number (empty if unknown)."""
        ...


class StaticPhaseDirectory:
    """In-memory phase directory for tests and local development."""

    def __init__(self, phases: Iterable[Phase] = ()):
        self._phases: dict[tuple[str, int], Phase] = {}
        for phase in phases:
            self.put(phase)

    def put(self, phase: Phase) -> None:
        self._phases[(phase.project_id, phase.phase_number)] = phase

    def set_status(self, project_id: str, phase_number: int, status: LifecycleStatus) -> None:
        phase = self._phases[(project_id, phase_number)]
        self.put(
            Phase(
                project_id=phase.project_id,
                phase_number=phase.phase_number,
                name=phase.name,
                planned_amount=phase.planned_amount,
                lifecycle_status=status,
            )
        )

    async def get_phase(self, project_id: str, phase_number: int) -> Phase:
        phase = self._phases.get((project_id, phase_number))
        if phase is None:
            raise PhaseNotFoundError(project_id, phase_number)
        return phase

    async def list_phases(self, project_id: str) -> list[Phase]:
        return sorted(
            (p for (pid, _), p in self._phases.items() if pid == project_id),
            key=lambda p: p.phase_number,
        )


def _to_phase(row: ProjectPhase) -> Phase:
    return Phase(
        project_id=row.project_id,
        phase_number=row.phase_number,
        name=row.name or "",
        planned_amount=Decimal(row.planned_amount or 0),
        lifecycle_status=LifecycleStatus(row.lifecycle_status),
    )


class SqlPhaseDirectory:
    """Reads the project_phases table maintained by the project aggregate."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_phase(self, project_id: str, phase_number: int) -> Phase:
        async with self.session_factory() as session:
            row = await session.get(ProjectPhase, (project_id, phase_number))
            if row is None:
                raise PhaseNotFoundError(project_id, phase_number)
            return _to_phase(row)

    async def list_phases(self, project_id: str) -> list[Phase]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProjectPhase)
                .where(ProjectPhase.project_id == project_id)
                .order_by(ProjectPhase.phase_number)
            )
            return [_to_phase(row) for row in result.scalars().all()]
