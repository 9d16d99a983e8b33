"""Phase gate decisions.

Pure domain functions for deciding whether a phase may start and whether a
forced override request is acceptable. No DB access, fully deterministic.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from phasegate.domain.phases import LifecycleStatus, Phase
from phasegate.domain.rules import FactSnapshot, Rule, RuleSet, evaluate


@dataclass(frozen=True)
class GateEvaluation:
    """Result of checking a phase gate. Derived, never stored."""

    project_id: str
    phase_number: int
    blocked: bool
    lifecycle_status: LifecycleStatus
    evaluated_at: datetime
    rule_set_version: int | None = None
    failing_rule: Rule | None = None
    reason: str | None = None
    overridable: bool = False
    overridable_by: frozenset[str] = frozenset()
    overridden: bool = False
    sealed: bool = False
    rule_error: str | None = None  # predicate crash or unknown kind, failed closed


def open_gate(
    phase: Phase,
    evaluated_at: datetime,
    *,
    overridden: bool = False,
    sealed: bool = False,
    rule_set_version: int | None = None,
) -> GateEvaluation:
    """Gate for a phase that is already started or has been overridden."""
    return GateEvaluation(
        project_id=phase.project_id,
        phase_number=phase.phase_number,
        blocked=False,
        lifecycle_status=phase.lifecycle_status,
        evaluated_at=evaluated_at,
        rule_set_version=rule_set_version,
        overridden=overridden,
        sealed=sealed,
    )


def evaluate_gate(phase: Phase, rule_set: RuleSet, facts: FactSnapshot, evaluated_at: datetime) -> GateEvaluation:
    """Evaluate the rules that apply to a pending, non-overridden phase.

    Args:
        phase: The phase being checked
        rule_set: Rule set in force for the phase's project
        facts: Snapshot for exactly this (project, phase)
        evaluated_at: Timestamp to stamp on the evaluation

    Returns:
        GateEvaluation; overridable only if the failing rule allows it and the
        rule set grants at least one role for its category
    """
    outcome = evaluate(rule_set.rules_for(phase.phase_number), facts)
    if not outcome.blocked:
        return open_gate(phase, evaluated_at, rule_set_version=rule_set.version)

    rule = outcome.failing_rule
    roles = rule_set.roles_for(rule.category) if rule.overridable else frozenset()
    return GateEvaluation(
        project_id=phase.project_id,
        phase_number=phase.phase_number,
        blocked=True,
        lifecycle_status=phase.lifecycle_status,
        evaluated_at=evaluated_at,
        rule_set_version=rule_set.version,
        failing_rule=rule,
        reason=rule.reason_for(phase.phase_number),
        overridable=bool(roles),
        overridable_by=roles,
        rule_error=outcome.error,
    )


def actor_may_override(evaluation: GateEvaluation, rule_set: RuleSet, actor_roles: Iterable[str]) -> bool:
    """Check the actor's roles against the override policy.

    For a blocked gate the roles must cover the failing rule's category. For a
    gate that is not blocked there is nothing to bypass, so any override role
    is enough to be told the request is stale.
    """
    roles = set(actor_roles)
    if evaluation.blocked:
        return bool(roles & evaluation.overridable_by)
    return bool(roles & rule_set.override_roles())


def override_input_problem(reason: str, confirmation_token: str, *, phrase: str, min_reason_length: int) -> str | None:
    """Return a human-readable validation message, or None if the input is acceptable.

    The confirmation must equal the phrase exactly (case sensitive).
    """
    if len((reason or "").strip()) < min_reason_length:
        return f"A reason of at least {min_reason_length} characters is required to force the unlock"
    if confirmation_token != phrase:
        return f'Type "{phrase}" exactly to confirm the unlock'
    return None
