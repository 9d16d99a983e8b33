"""Gate rules, rule sets and the predicate evaluator.

Pure domain code: no DB access, no clock reads, no I/O. Any time value a
predicate needs comes from the FactSnapshot.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class RuleCategory(StrEnum):
    """Override capabilities are granted per category."""

    FINANCIAL = "financial"
    DOCUMENTARY = "documentary"
    CONTRACTUAL = "contractual"


class PredicateKind:
    """Built-in predicate kinds. The set is open: see register_predicate()."""

    PRIOR_PHASE_COMPLETE = "prior_phase_complete"
    INVOICE_SETTLED = "invoice_settled"
    DOCUMENT_PRESENT = "document_present"
    CLIENT_APPROVAL = "client_approval"
    BEFORE_DEADLINE = "before_deadline"


_MISSING = object()


@dataclass(frozen=True)
class FactSnapshot:
    """Point-in-time facts for one phase, as supplied by a FactProvider."""

    project_id: str
    phase_number: int
    values: Mapping[str, Any] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, key: str, default: Any = _MISSING) -> Any:
        return self.values.get(key, default)


Predicate = Callable[[FactSnapshot, Mapping[str, Any]], bool]


@dataclass(frozen=True)
class _PredicateSpec:
    fn: Predicate
    category: RuleCategory


_PREDICATES: dict[str, _PredicateSpec] = {}


def register_predicate(kind: str, category: RuleCategory) -> Callable[[Predicate], Predicate]:
    """Register a pure predicate function under ``kind``.

    Usage::

        @register_predicate("retention_released", RuleCategory.FINANCIAL)
        def retention_released(facts, params):
            return facts.get("retention.released") is True
    """

    def decorator(fn: Predicate) -> Predicate:
        _PREDICATES[kind] = _PredicateSpec(fn=fn, category=RuleCategory(category))
        return fn

    return decorator


def registered_kinds() -> frozenset[str]:
    return frozenset(_PREDICATES)


# ──────────────────────────────────────────────────────────────────────────────
# Phase selectors
#
# "*" any phase, "3" a single phase, "2-5" an inclusive range, ">=2" open
# range; comma-separated combinations are allowed ("1,4-6").
# ──────────────────────────────────────────────────────────────────────────────


def parse_phase_selector(selector: str) -> tuple[tuple[int, int | None], ...]:
    """Parse a selector into inclusive (low, high) ranges; high=None means unbounded.

    Raises:
        ValueError: If the selector is empty or malformed
    """
    ranges: list[tuple[int, int | None]] = []
    for part in (p.strip() for p in selector.split(",")):
        if not part:
            raise ValueError(f"Invalid phase selector: {selector!r}")
        try:
            if part == "*":
                ranges.append((1, None))
            elif part.startswith(">="):
                ranges.append((int(part[2:]), None))
            elif "-" in part:
                low, high = part.split("-", 1)
                ranges.append((int(low), int(high)))
            else:
                n = int(part)
                ranges.append((n, n))
        except ValueError as exc:
            raise ValueError(f"Invalid phase selector: {selector!r}") from exc
    for low, high in ranges:
        if low < 1 or (high is not None and high < low):
            raise ValueError(f"Invalid phase selector: {selector!r}")
    return tuple(ranges)


@dataclass(frozen=True)
class Rule:
    """A single named precondition. Immutable: policy changes create new rules."""

    id: str
    phase_selector: str
    kind: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""
    priority: int = 100
    category: RuleCategory | None = None
    overridable: bool = True

    def __post_init__(self):
        parse_phase_selector(self.phase_selector)
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))
        if self.category is None:
            spec = _PREDICATES.get(self.kind)
            if spec is None:
                raise ValueError(f"category is required for unregistered predicate kind '{self.kind}'")
            object.__setattr__(self, "category", spec.category)
        else:
            object.__setattr__(self, "category", RuleCategory(self.category))

    def applies_to(self, phase_number: int) -> bool:
        return any(
            low <= phase_number and (high is None or phase_number <= high)
            for low, high in parse_phase_selector(self.phase_selector)
        )

    def reason_for(self, phase_number: int) -> str:
        """Render the description for a phase; supports {phase} and {previous_phase}."""
        text = self.description or f"Rule '{self.id}' is not satisfied"
        try:
            return text.format(phase=phase_number, previous_phase=phase_number - 1)
        except (KeyError, IndexError, ValueError):
            return text


@dataclass(frozen=True)
class RuleOutcome:
    blocked: bool
    failing_rule: Rule | None = None
    error: str | None = None  # predicate crash or unknown kind (both fail closed)


def _sort_key(rule: Rule) -> tuple[int, str]:
    return (rule.priority, rule.id)


def evaluate(rules: Iterable[Rule], facts: FactSnapshot) -> RuleOutcome:
    """AND all rules against the facts, in (priority, id) order.

    Pure and total: the first unsatisfied rule is the failing rule. Missing
    facts, malformed facts, unknown predicate kinds and predicate exceptions
    all count as "not satisfied".
    """
    for rule in sorted(rules, key=_sort_key):
        spec = _PREDICATES.get(rule.kind)
        if spec is None:
            return RuleOutcome(blocked=True, failing_rule=rule, error=f"unknown predicate kind '{rule.kind}'")
        try:
            satisfied = spec.fn(facts, rule.parameters) is True
        except Exception as exc:
            return RuleOutcome(blocked=True, failing_rule=rule, error=f"{type(exc).__name__}: {exc}")
        if not satisfied:
            return RuleOutcome(blocked=True, failing_rule=rule)
    return RuleOutcome(blocked=False)


# ──────────────────────────────────────────────────────────────────────────────
# Rule sets
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RuleSet:
    """Versioned, immutable rules for a project (project_id=None is the default set)."""

    project_id: str | None
    version: int
    rules: tuple[Rule, ...] = ()
    override_policy: Mapping[str, frozenset[str]] = field(default_factory=dict)

    def __post_init__(self):
        if self.version < 1:
            raise ValueError("RuleSet version must be >= 1")
        ids = [r.id for r in self.rules]
        if len(ids) != len(set(ids)):
            raise ValueError("Rule ids must be unique within a rule set")
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(
            self,
            "override_policy",
            MappingProxyType({RuleCategory(k): frozenset(v) for k, v in self.override_policy.items()}),
        )

    def rules_for(self, phase_number: int) -> tuple[Rule, ...]:
        return tuple(sorted((r for r in self.rules if r.applies_to(phase_number)), key=_sort_key))

    def roles_for(self, category: RuleCategory) -> frozenset[str]:
        return self.override_policy.get(category, frozenset())

    def override_roles(self) -> frozenset[str]:
        """Every role that may override something under this policy."""
        roles: set[str] = set()
        for allowed in self.override_policy.values():
            roles |= allowed
        return frozenset(roles)


def default_rule_set(override_policy: Mapping[str, Iterable[str]], project_id: str | None = None) -> RuleSet:
    """Rule set used when no policy was published for a project.

    A phase may only start once the invoice linked to the previous phase has
    been collected; phase 1 has no predecessor and is never gated.
    """
    return RuleSet(
        project_id=project_id,
        version=1,
        rules=(
            Rule(
                id="invoice-prior-phase",
                phase_selector=">=2",
                kind=PredicateKind.INVOICE_SETTLED,
                description="Pending payment for phase {previous_phase}",
                priority=10,
            ),
        ),
        override_policy={k: frozenset(v) for k, v in override_policy.items()},
    )


# ──────────────────────────────────────────────────────────────────────────────
# Built-in predicates
# ──────────────────────────────────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _target_phase(facts: FactSnapshot, params: Mapping[str, Any], offset: int) -> int | None:
    """Phase a predicate looks at: params["phase"] or the evaluated phase + offset."""
    if "phase" in params:
        phase = params["phase"]
        if not isinstance(phase, int) or isinstance(phase, bool):
            return None
        return phase
    return facts.phase_number + offset


@register_predicate(PredicateKind.PRIOR_PHASE_COMPLETE, RuleCategory.CONTRACTUAL)
def prior_phase_complete(facts: FactSnapshot, params: Mapping[str, Any]) -> bool:
    target = _target_phase(facts, params, -1)
    if target is None:
        return False
    if target < 1:
        return True
    required = params.get("required_percent", 100)
    progress = facts.get(f"phase.{target}.progress")
    if not _is_number(progress) or not _is_number(required):
        return False
    return progress >= required


@register_predicate(PredicateKind.INVOICE_SETTLED, RuleCategory.FINANCIAL)
def invoice_settled(facts: FactSnapshot, params: Mapping[str, Any]) -> bool:
    target = _target_phase(facts, params, -1)
    if target is None:
        return False
    if target < 1:
        return True
    settled = params.get("settled_statuses", ("paid", "cobrada"))
    # A bare string would match its substrings
    if not isinstance(settled, (list, tuple, set, frozenset)):
        return False
    status = facts.get(f"invoice.phase.{target}.status")
    return isinstance(status, str) and status in settled


@register_predicate(PredicateKind.DOCUMENT_PRESENT, RuleCategory.DOCUMENTARY)
def document_present(facts: FactSnapshot, params: Mapping[str, Any]) -> bool:
    document_type = params.get("document_type")
    if not isinstance(document_type, str) or not document_type:
        return False
    return facts.get(f"document.{document_type}.present") is True


@register_predicate(PredicateKind.CLIENT_APPROVAL, RuleCategory.CONTRACTUAL)
def client_approval(facts: FactSnapshot, params: Mapping[str, Any]) -> bool:
    target = _target_phase(facts, params, 0)
    if target is None:
        return False
    return facts.get(f"client_approval.phase.{target}") is True


@register_predicate(PredicateKind.BEFORE_DEADLINE, RuleCategory.CONTRACTUAL)
def before_deadline(facts: FactSnapshot, params: Mapping[str, Any]) -> bool:
    deadline = params.get("deadline")
    if isinstance(deadline, str):
        try:
            deadline = datetime.fromisoformat(deadline)
        except ValueError:
            return False
    if not isinstance(deadline, datetime):
        return False
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=UTC)
    taken_at = facts.taken_at if facts.taken_at.tzinfo else facts.taken_at.replace(tzinfo=UTC)
    return taken_at <= deadline
