"""Phase identity and lifecycle as seen by the gate (read-only)."""

from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum


class LifecycleStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Phase:
    project_id: str
    phase_number: int
    name: str = ""
    planned_amount: Decimal = Decimal("0")
    lifecycle_status: LifecycleStatus = LifecycleStatus.PENDING

    @property
    def is_pending(self) -> bool:
        return self.lifecycle_status == LifecycleStatus.PENDING
