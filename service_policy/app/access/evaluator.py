"""
Access control evaluation.

Blacklists are checked first and any hit denies. When one or more
whitelists are in scope the request is allowed only if its attribute is
listed in at least one of them; with no whitelist in scope it is allowed.
"""

import ipaddress
from datetime import datetime
from typing import Iterable, List, Optional

from shared.logging import get_logger
from ..rules.models import (
    AccessControlRule, AccessRuleType, AccessTarget, Decision, PolicyRequest, RuleRef, utcnow
)
from ..rules.patterns import any_endpoint_matches, any_method_matches


def _ip_matches(candidate: str, value: str) -> bool:
    try:
        address = ipaddress.ip_address(candidate.strip())
    except ValueError:
        return candidate == value
    try:
        if "/" in value:
            return address in ipaddress.ip_network(value.strip(), strict=False)
        return address == ipaddress.ip_address(value.strip())
    except ValueError:
        return False


def value_matches(target: AccessTarget, candidate: Optional[str], values: Iterable[str]) -> bool:
    """True when the request attribute is listed in the rule values."""
    if not candidate:
        return False
    if target == AccessTarget.IP:
        return any(_ip_matches(candidate, value) for value in values)
    if target == AccessTarget.COUNTRY:
        wanted = candidate.strip().casefold()
        return any(value.strip().casefold() == wanted for value in values)
    return candidate in values


def rule_sort_key(rule: AccessControlRule):
    return (rule.created_at.timestamp(), rule.rule_id)


class AccessControlEvaluator:
    """Evaluates whitelist and blacklist rules against a request."""

    def __init__(self):
        self.logger = get_logger("policy.access_control")

    @staticmethod
    def rules_in_scope(
        rules: Iterable[AccessControlRule],
        request: PolicyRequest,
        now: Optional[datetime] = None
    ) -> List[AccessControlRule]:
        now = now or utcnow()
        scoped = [
            rule for rule in rules
            if rule.is_active(now)
            and any_endpoint_matches(rule.endpoints, request.endpoint)
            and any_method_matches(rule.methods, request.method)
        ]
        scoped.sort(key=rule_sort_key)
        return scoped

    def evaluate(
        self,
        request: PolicyRequest,
        rules: Iterable[AccessControlRule],
        now: Optional[datetime] = None
    ) -> Decision:
        scoped = self.rules_in_scope(rules, request, now)
        blacklists = [rule for rule in scoped if rule.rule_type == AccessRuleType.BLACKLIST]
        whitelists = [rule for rule in scoped if rule.rule_type == AccessRuleType.WHITELIST]

        for rule in blacklists:
            if value_matches(rule.target, request.attribute(rule.target), rule.values):
                self.logger.info(
                    "Request blocked by blacklist",
                    rule_id=rule.rule_id,
                    endpoint=request.endpoint,
                    method=request.method
                )
                return Decision.deny(
                    reason=f"Blocked by blacklist rule: {rule.name}",
                    matched_rule=RuleRef(rule.rule_id, rule.name)
                )

        if not whitelists:
            return Decision.allow()

        for rule in whitelists:
            if value_matches(rule.target, request.attribute(rule.target), rule.values):
                return Decision.allow(
                    reason="whitelisted",
                    matched_rule=RuleRef(rule.rule_id, rule.name)
                )

        first = whitelists[0]
        self.logger.info(
            "Request not in any whitelist",
            rule_id=first.rule_id,
            endpoint=request.endpoint,
            method=request.method
        )
        return Decision.deny(
            reason=f"Not in whitelist rule: {first.name}",
            matched_rule=RuleRef(first.rule_id, first.name)
        )
