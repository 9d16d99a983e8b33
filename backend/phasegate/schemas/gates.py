"""Phase gate Pydantic schemas for API requests and responses."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from phasegate.db.models.audit_entry import GateAuditEntry
from phasegate.db.models.gate_state import GateState
from phasegate.domain.gates import GateEvaluation
from phasegate.services.evaluator import BlockedPhase


class FailingRuleResponse(BaseModel):
    id: str
    kind: str
    category: str
    description: str


class GateEvaluationResponse(BaseModel):
    """Answer to "can this phase start?"."""

    project_id: str
    phase_number: int
    blocked: bool
    lifecycle_status: str
    reason: str | None = None
    failing_rule: FailingRuleResponse | None = None
    overridable: bool
    overridable_by: list[str]
    overridden: bool
    sealed: bool
    rule_set_version: int | None = None
    evaluated_at: datetime

    @classmethod
    def from_evaluation(cls, evaluation: GateEvaluation) -> "GateEvaluationResponse":
        rule = evaluation.failing_rule
        return cls(
            project_id=evaluation.project_id,
            phase_number=evaluation.phase_number,
            blocked=evaluation.blocked,
            lifecycle_status=str(evaluation.lifecycle_status),
            reason=evaluation.reason,
            failing_rule=(
                FailingRuleResponse(
                    id=rule.id,
                    kind=rule.kind,
                    category=str(rule.category),
                    description=rule.reason_for(evaluation.phase_number),
                )
                if rule
                else None
            ),
            overridable=evaluation.overridable,
            overridable_by=sorted(evaluation.overridable_by),
            overridden=evaluation.overridden,
            sealed=evaluation.sealed,
            rule_set_version=evaluation.rule_set_version,
            evaluated_at=evaluation.evaluated_at,
        )


class BlockedPhaseResponse(BaseModel):
    phase_number: int
    reason: str

    @classmethod
    def from_blocked(cls, blocked: BlockedPhase) -> "BlockedPhaseResponse":
        return cls(phase_number=blocked.phase_number, reason=blocked.reason)


class BlockedPhasesResponse(BaseModel):
    project_id: str
    phases: list[BlockedPhaseResponse]


class OverrideGateRequest(BaseModel):
    """Forced unlock request. The confirmation phrase travels in the body only."""

    reason: str = Field(..., description="Why the phase must start despite the failing rule")
    confirmation: str = Field(..., description="Exact confirmation phrase, e.g. DESBLOQUEAR")


class AuditEntryResponse(BaseModel):
    id: str
    phase_number: int
    sequence: int
    actor: str
    reason: str
    timestamp: datetime
    outcome: Literal["approved", "rejected"]
    error_code: str | None = None
    failing_rule_id: str | None = None
    failing_rule_description: str | None = None
    rule_set_version: int | None = None
    prev_hash: str | None = None
    entry_hash: str

    @classmethod
    def from_entry(cls, entry: GateAuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            phase_number=entry.phase_number,
            sequence=entry.sequence,
            actor=entry.actor,
            reason=entry.reason,
            timestamp=entry.timestamp,
            outcome=entry.outcome,
            error_code=entry.error_code,
            failing_rule_id=entry.failing_rule_id,
            failing_rule_description=entry.failing_rule_description,
            rule_set_version=entry.rule_set_version,
            prev_hash=entry.prev_hash,
            entry_hash=entry.entry_hash,
        )


class GateStateResponse(BaseModel):
    project_id: str
    phase_number: int
    overridden: bool
    overridden_at: datetime | None = None
    overridden_by: str | None = None
    override_reason: str | None = None
    sealed_at: datetime | None = None

    @classmethod
    def from_state(cls, state: GateState) -> "GateStateResponse":
        return cls(
            project_id=state.project_id,
            phase_number=state.phase_number,
            overridden=bool(state.overridden),
            overridden_at=state.overridden_at,
            overridden_by=state.overridden_by,
            override_reason=state.override_reason,
            sealed_at=state.sealed_at,
        )


class OverrideGateResponse(BaseModel):
    project_id: str
    phase_number: int
    status: Literal["unlocked"] = "unlocked"
    audit_entry: AuditEntryResponse
    state: GateStateResponse


class AuditTrailResponse(BaseModel):
    project_id: str
    phase_number: int
    entries: list[AuditEntryResponse]
    chain_valid: bool
    chain_problems: list[str] = Field(default_factory=list)


class ProjectAuditTrailResponse(BaseModel):
    """Audit entries of every phase of a project; each phase is its own chain."""

    project_id: str
    entries: list[AuditEntryResponse]
    chain_valid: bool
    chain_problems: list[str] = Field(default_factory=list)
