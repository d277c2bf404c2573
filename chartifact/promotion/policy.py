"""Promotion policy-as-code.

Policies decide which promotions may proceed, which need a recorded approval
and which are refused outright. They are evaluated by the promotion gate
before anything is written to the target tree.

Example ``promotion-policy.yaml``::

    name: release-rules
    rules:
      - name: prod-needs-approval
        scope: environment
        action: require_approval
        patterns: ["prod"]
      - name: freeze-billing
        scope: channel
        action: deny
        patterns: ["billing-*"]
        conditions: {target: prod}
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from chartifact.errors import ConfigurationMissingError


class PolicyAction(Enum):
    """What happens when a policy rule matches."""

    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"


class PolicyScope(Enum):
    """What a policy rule applies to."""

    ENVIRONMENT = "environment"  # target environment, or "source->target"
    CHANNEL = "channel"  # channel ids or names
    ALL = "all"


@dataclass
class PolicyRule:
    name: str
    description: str = ""
    scope: PolicyScope = PolicyScope.ALL
    action: PolicyAction = PolicyAction.ALLOW
    patterns: list[str] = field(default_factory=list)
    conditions: dict[str, str] = field(default_factory=dict)  # source / target globs
    rationale: str = ""


@dataclass
class PolicyContext:
    """The promotion being proposed."""

    source_env: str
    target_env: str
    channel_ids: list[str] = field(default_factory=list)
    channel_names: list[str] = field(default_factory=list)


@dataclass
class PolicyDecision:
    action: PolicyAction
    applied_rules: list[PolicyRule] = field(default_factory=list)
    context: PolicyContext | None = None

    @property
    def allowed(self) -> bool:
        return self.action == PolicyAction.ALLOW

    @property
    def denied(self) -> bool:
        return self.action == PolicyAction.DENY

    @property
    def reasons(self) -> list[str]:
        return [
            f"[{r.action.value}] {r.name}: {r.description}" if r.description else f"[{r.action.value}] {r.name}"
            for r in self.applied_rules
        ]


@dataclass
class PolicySet:
    """A collection of rules; deny wins over require_approval, which wins over allow."""

    name: str = "default"
    version: str = "1.0.0"
    rules: list[PolicyRule] = field(default_factory=list)

    def evaluate(self, context: PolicyContext) -> PolicyDecision:
        applied = [rule for rule in self.rules if _rule_matches(rule, context)]
        actions = {rule.action for rule in applied}

        if PolicyAction.DENY in actions:
            action = PolicyAction.DENY
        elif PolicyAction.REQUIRE_APPROVAL in actions:
            action = PolicyAction.REQUIRE_APPROVAL
        else:
            action = PolicyAction.ALLOW
        return PolicyDecision(action=action, applied_rules=applied, context=context)


def parse_policy(data: dict) -> PolicySet:
    rules = []
    for rule_data in data.get("rules") or []:
        rules.append(
            PolicyRule(
                name=rule_data["name"],
                description=rule_data.get("description", ""),
                scope=PolicyScope(rule_data.get("scope", "all")),
                action=PolicyAction(rule_data.get("action", "allow")),
                patterns=[str(p) for p in rule_data.get("patterns", [])],
                conditions={str(k): str(v) for k, v in (rule_data.get("conditions") or {}).items()},
                rationale=rule_data.get("rationale", ""),
            )
        )
    return PolicySet(
        name=data.get("name", "unnamed"),
        version=str(data.get("version", "1.0.0")),
        rules=rules,
    )


def load_policy(path: str | Path) -> PolicySet:
    """Load a policy set from a YAML file.

    Raises:
        ConfigurationMissingError: the file does not exist.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationMissingError(str(path))
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return parse_policy(data)


def _rule_matches(rule: PolicyRule, context: PolicyContext) -> bool:
    source_cond = rule.conditions.get("source")
    if source_cond and not fnmatch.fnmatch(context.source_env, source_cond):
        return False
    target_cond = rule.conditions.get("target")
    if target_cond and not fnmatch.fnmatch(context.target_env, target_cond):
        return False

    if rule.scope == PolicyScope.ALL:
        return True

    if rule.scope == PolicyScope.ENVIRONMENT:
        route = f"{context.source_env}->{context.target_env}"
        return any(
            fnmatch.fnmatch(context.target_env, p) or fnmatch.fnmatch(route, p) for p in rule.patterns
        )

    if rule.scope == PolicyScope.CHANNEL:
        candidates = [*context.channel_ids, *context.channel_names]
        return any(fnmatch.fnmatch(c, p) for p in rule.patterns for c in candidates)

    return False
