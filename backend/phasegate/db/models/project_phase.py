"""ProjectPhase model: read model of phase identity and lifecycle.

Owned and written by the project aggregate; the gate only reads it.
"""

from sqlalchemy import Column, Integer, Numeric, String

from phasegate.db.base import Base


class ProjectPhase(Base):
    __tablename__ = "project_phases"

    project_id = Column(String(100), primary_key=True)
    phase_number = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, default="")
    planned_amount = Column(Numeric(14, 2), nullable=False, default=0)
    lifecycle_status = Column(String(20), nullable=False, default="pending")  # pending, in_progress, completed
