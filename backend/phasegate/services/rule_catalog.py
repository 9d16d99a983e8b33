"""Rule catalog: published rule set versions per project.

Rule sets are configured by policy administrators, outside the gate's write
path. A project without its own rule set falls back to the default set.
"""

from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

from phasegate.core.config import Settings
from phasegate.domain.rules import Rule, RuleCategory, RuleSet, default_rule_set

logger = structlog.get_logger(__name__)


class RuleConfig(BaseModel):
    """A rule as written in the JSON policy file."""

    id: str
    phase_selector: str = "*"
    kind: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    priority: int = 100
    category: RuleCategory | None = None
    overridable: bool = True

    def to_rule(self) -> Rule:
        return Rule(
            id=self.id,
            phase_selector=self.phase_selector,
            kind=self.kind,
            parameters=self.parameters,
            description=self.description,
            priority=self.priority,
            category=self.category,
            overridable=self.overridable,
        )


class RuleSetConfig(BaseModel):
    project_id: str | None = None
    version: int = Field(default=1, ge=1)
    rules: list[RuleConfig] = Field(default_factory=list)
    override_roles: dict[RuleCategory, list[str]] | None = None

    def to_rule_set(self, fallback_roles: dict[str, list[str]]) -> RuleSet:
        roles = self.override_roles if self.override_roles is not None else fallback_roles
        return RuleSet(
            project_id=self.project_id,
            version=self.version,
            rules=tuple(r.to_rule() for r in self.rules),
            override_policy={k: frozenset(v) for k, v in roles.items()},
        )


class PolicyFile(BaseModel):
    default: RuleSetConfig | None = None
    projects: list[RuleSetConfig] = Field(default_factory=list)


class RuleCatalog:
    """Holds the latest published RuleSet per project."""

    def __init__(self, default: RuleSet):
        self._default = default
        self._by_project: dict[str, RuleSet] = {}

    @property
    def default(self) -> RuleSet:
        return self._default

    def get(self, project_id: str) -> RuleSet:
        return self._by_project.get(project_id, self._default)

    def publish(self, rule_set: RuleSet) -> None:
        """Publish a new rule set version.

        Raises:
            ValueError: If the version does not increase over the current one
        """
        if rule_set.project_id is None:
            current = self._default
        else:
            current = self._by_project.get(rule_set.project_id)
        if current is not None and rule_set.version <= current.version:
            raise ValueError(
                f"Rule set version {rule_set.version} must be greater than current version {current.version}"
            )
        if rule_set.project_id is None:
            self._default = rule_set
        else:
            self._by_project[rule_set.project_id] = rule_set
        logger.info(
            "rule_set_published",
            project_id=rule_set.project_id,
            version=rule_set.version,
            rules=[r.id for r in rule_set.rules],
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RuleCatalog":
        """Build the catalog from settings, loading ``rules_file`` when configured."""
        catalog = cls(default_rule_set(settings.override_roles))
        if not settings.rules_file:
            return catalog

        policy = PolicyFile.model_validate_json(Path(settings.rules_file).read_text(encoding="utf-8"))
        if policy.default is not None:
            catalog._default = policy.default.model_copy(update={"project_id": None}).to_rule_set(
                settings.override_roles
            )
        for config in policy.projects:
            if not config.project_id:
                raise ValueError("Project rule sets in the policy file need a project_id")
            catalog.publish(config.to_rule_set(settings.override_roles))
        return catalog
