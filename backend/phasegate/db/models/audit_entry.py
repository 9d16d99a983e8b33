"""GateAuditEntry model: append-only record of every override attempt."""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, UniqueConstraint, event, text

from phasegate.core.exceptions import AuditImmutableError
from phasegate.db.base import Base


class GateAuditEntry(Base):
    __tablename__ = "gate_audit_entries"
    __table_args__ = (
        UniqueConstraint("project_id", "phase_number", "sequence", name="uq_gate_audit_sequence"),
        # At most one entry may claim the false -> true transition of a phase
        Index(
            "uq_gate_audit_single_approval",
            "project_id",
            "phase_number",
            unique=True,
            sqlite_where=text("outcome = 'approved'"),
            postgresql_where=text("outcome = 'approved'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = Column(String(100), nullable=False, index=True)
    phase_number = Column(Integer, nullable=False)
    sequence = Column(Integer, nullable=False)  # 1-based, per (project, phase)

    actor = Column(String(255), nullable=False)
    reason = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime(timezone=True), nullable=False)
    outcome = Column(String(20), nullable=False)  # approved, rejected
    error_code = Column(String(50), nullable=True)  # rejection kind, null when approved

    # Snapshot of what was bypassed, as worded when the attempt was made
    failing_rule_id = Column(String(100), nullable=True)
    failing_rule_description = Column(Text, nullable=True)
    rule_set_version = Column(Integer, nullable=True)

    prev_hash = Column(String(64), nullable=True)
    entry_hash = Column(String(64), nullable=False)
    # NO updated_at -- entries are immutable (append-only)


@event.listens_for(GateAuditEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise AuditImmutableError(f"Audit entry {target.id} is immutable")


@event.listens_for(GateAuditEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise AuditImmutableError(f"Audit entry {target.id} cannot be deleted")
