"""GateState model: the only mutable record of the phase gate."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from phasegate.db.base import Base


class GateState(Base):
    __tablename__ = "gate_states"

    project_id = Column(String(100), primary_key=True)
    phase_number = Column(Integer, primary_key=True)

    # Only ever flips false -> true (compare-and-set in GateStateStore)
    overridden = Column(Boolean, nullable=False, default=False)
    overridden_at = Column(DateTime(timezone=True), nullable=True)
    overridden_by = Column(String(255), nullable=True)
    override_reason = Column(Text, nullable=True)

    # Set once the phase leaves "pending"; the row is frozen from then on
    sealed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    @property
    def sealed(self) -> bool:
        return self.sealed_at is not None
