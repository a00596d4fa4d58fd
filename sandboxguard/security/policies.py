"""Policy storage and evaluation of events against policy rules."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sandboxguard.security.models import (
    PolicyEvaluation,
    RuleCondition,
    SecurityEvent,
    SecurityPolicy,
    SecurityRule,
)

logger = logging.getLogger(__name__)

_SEVERITY_LEVELS = {"low": 1, "medium": 2, "high": 3, "critical": 4}
_ACTION_RESTRICTIVENESS = {"allow": 0, "alert": 1, "deny": 2, "quarantine": 3}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _severity_matches(event_severity: str, rule_severity: str) -> bool:
    return _SEVERITY_LEVELS.get(event_severity, 0) >= _SEVERITY_LEVELS.get(rule_severity, 0)


def _more_restrictive(action: str, than: str) -> bool:
    return _ACTION_RESTRICTIVENESS.get(action, 0) > _ACTION_RESTRICTIVENESS.get(than, 0)


def _matches_rule(event: SecurityEvent, rule: SecurityRule) -> bool:
    """Check an event against a rule; raises ``re.error`` for a malformed pattern."""
    condition = rule.condition
    if condition.event_type is not None and event.event_type != condition.event_type:
        return False
    if condition.severity is not None and not _severity_matches(
        event.severity, condition.severity
    ):
        return False
    if condition.pattern is not None:
        if re.search(condition.pattern, event.model_dump_json()) is None:
            return False
    # Threshold and time window are accepted but not counted: the rule is taken as met.
    return True


def _default_policies() -> list[SecurityPolicy]:
    now = _now()
    basic = SecurityPolicy(
        id="policy_basic",
        name="Basic Security Policy",
        description="Standard security policy for general sandbox protection",
        enabled=True,
        tier="basic",
        rules=[
            SecurityRule(
                id="rule_basic_1",
                name="Block Critical File Access",
                description="Prevent access to critical system files",
                condition=RuleCondition(
                    event_type="file_access",
                    pattern="(/etc/passwd|/etc/shadow|/root/.*)",
                ),
                action="deny",
            ),
            SecurityRule(
                id="rule_basic_2",
                name="Alert on Privilege Escalation",
                description="Alert when privilege escalation is detected",
                condition=RuleCondition(event_type="privilege_escalation"),
                action="alert",
            ),
        ],
        created_at=now,
        updated_at=now,
    )
    shield = SecurityPolicy(
        id="policy_shield",
        name="Shield Security Policy",
        description="Enhanced security policy with auto-quarantine",
        enabled=True,
        tier="shield",
        rules=[
            SecurityRule(
                id="rule_shield_1",
                name="Auto-Quarantine Critical Events",
                description="Automatically quarantine sandboxes with critical security events",
                condition=RuleCondition(severity="critical"),
                action="quarantine",
                notifications=["[email]"],
            ),
            SecurityRule(
                id="rule_shield_2",
                name="Block Suspicious Behavior",
                description="Block and quarantine suspicious behavior patterns",
                condition=RuleCondition(event_type="suspicious_behavior"),
                action="quarantine",
            ),
        ],
        created_at=now,
        updated_at=now,
    )
    return [basic, shield]


class PolicyEngine:
    """Holds security policies by id and decides the action for an event."""

    def __init__(self) -> None:
        self._policies: dict[str, SecurityPolicy] = {}

    def load_default_policies(self) -> None:
        """Install the built-in basic and shield tier policies."""
        for policy in _default_policies():
            self._policies[policy.id] = policy
        logger.info("Loaded %d default policies", len(self._policies))

    def add_policy(self, policy: SecurityPolicy) -> str:
        """Store a policy under its own id, replacing any previous one; return the id."""
        self._policies[policy.id] = policy.model_copy(deep=True)
        return policy.id

    def update_policy(self, policy_id: str, policy: SecurityPolicy) -> None:
        """Store ``policy`` under ``policy_id`` with a fresh ``updated_at``."""
        self._policies[policy_id] = policy.model_copy(deep=True, update={"updated_at": _now()})

    def remove_policy(self, policy_id: str) -> None:
        """Remove a policy; removing an unknown id does nothing."""
        self._policies.pop(policy_id, None)

    def get_policy(self, policy_id: str) -> SecurityPolicy | None:
        policy = self._policies.get(policy_id)
        return None if policy is None else policy.model_copy(deep=True)

    def list_policies(self) -> list[SecurityPolicy]:
        return [policy.model_copy(deep=True) for policy in self._policies.values()]

    def evaluate(self, event: SecurityEvent) -> PolicyEvaluation:
        """Match the event against every enabled rule and pick the most restrictive action."""
        matched_rules: list[str] = []
        action = "allow"
        reason = ""
        confidence = 0.0

        for policy in self._policies.values():
            if not policy.enabled:
                continue
            for rule in policy.rules:
                if not _matches_rule(event, rule):
                    continue
                matched_rules.append(rule.name)
                if _more_restrictive(rule.action, action):
                    action = rule.action
                    reason = f"Rule '{rule.name}' triggered"
                    confidence = 0.9

        return PolicyEvaluation(
            action=action,
            reason=reason,
            matched_rules=matched_rules,
            confidence=confidence,
        )