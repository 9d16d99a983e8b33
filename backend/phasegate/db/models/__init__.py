"""Re-export all models so Base.metadata sees them."""

from phasegate.db.models.audit_entry import GateAuditEntry
from phasegate.db.models.gate_state import GateState
from phasegate.db.models.project_phase import ProjectPhase

__all__ = [
    "GateAuditEntry",
    "GateState",
    "ProjectPhase",
]
