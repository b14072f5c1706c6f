"""
Rate limit rule matching.

Every enabled rule whose endpoint pattern and method match the request is
applied at once; each keeps its own fixed-window counter per subject. The
request is denied when any matched rule's counter is over its limit.
"""

import hashlib
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, List, Optional, TYPE_CHECKING

from shared.errors import StoreUnavailable
from shared.logging import get_logger
from ..rules.models import (
    Decision, KeyGenerator, PolicyRequest, RateLimitRule, RateLimitViolation, RuleRef
)
from ..rules.patterns import endpoint_matches, method_matches
from .counters import CounterStore
from .violations import ViolationLog

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


def rule_sort_key(rule: RateLimitRule):
    """Priority desc, newer first, then id."""
    return (-rule.priority, -rule.created_at.timestamp(), rule.rule_id)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RateLimitMatcher:
    """Applies rate limit rules to requests using a shared counter store."""

    def __init__(
        self,
        counters: CounterStore,
        violations: ViolationLog,
        metrics: Optional["MetricsCollector"] = None
    ):
        self.counters = counters
        self.violations = violations
        self.metrics = metrics
        self.logger = get_logger("policy.rate_limit")

    @staticmethod
    def matching_rules(rules: Iterable[RateLimitRule], request: PolicyRequest) -> List[RateLimitRule]:
        matched = [
            rule for rule in rules
            if rule.enabled
            and endpoint_matches(rule.endpoint, request.endpoint)
            and method_matches(rule.method, request.method)
        ]
        matched.sort(key=rule_sort_key)
        return matched

    @staticmethod
    def subject_key(rule: RateLimitRule, request: PolicyRequest) -> str:
        """Counter subject for a request; user and apiKey rules fall back to the IP."""
        if rule.key_generator == KeyGenerator.USER and request.user_id:
            return f"user:{request.user_id}"
        if rule.key_generator == KeyGenerator.API_KEY and request.api_key:
            return f"api_key:{hash_api_key(request.api_key)}"
        return f"ip:{request.ip}"

    async def check(
        self,
        request: PolicyRequest,
        rules: Iterable[RateLimitRule],
        now_ms: Optional[int] = None
    ) -> Decision:
        """Count the request against every matching rule and decide."""
        matched = self.matching_rules(rules, request)
        if not matched:
            return Decision.allow(reason="no matching rule")

        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        denial: Optional[Decision] = None
        tightest: Optional[Decision] = None
        degraded = False

        for rule in matched:
            subject = self.subject_key(rule, request)
            try:
                state = await self.counters.hit(rule.rule_id, subject, rule.window_ms, now_ms)
            except StoreUnavailable as e:
                self.logger.warning(
                    "Counter store unavailable, skipping rule",
                    rule_id=rule.rule_id,
                    error=e.message
                )
                if self.metrics:
                    self.metrics.record_fail_open("rate_limit")
                degraded = True
                continue

            ref = RuleRef(rule_id=rule.rule_id, name=rule.name)
            if state.count > rule.limit:
                if state.count == rule.limit + 1:
                    self._emit_violation(rule, subject, request, state.window_start_ms, state.count)
                if denial is None:
                    retry_after = max(1, state.window_start_ms + rule.window_ms - now_ms)
                    denial = Decision.deny(
                        reason="rate limit exceeded",
                        matched_rule=ref,
                        retry_after_ms=retry_after,
                        limit=rule.limit
                    )
                continue

            remaining = rule.limit - state.count
            if tightest is None or remaining < tightest.remaining:
                tightest = Decision.allow(matched_rule=ref, limit=rule.limit, remaining=remaining)

        if denial is not None:
            return replace(denial, degraded=degraded)
        if tightest is None:
            return Decision.allow(reason="counter store unavailable", degraded=True)
        return replace(tightest, degraded=degraded)

    def _emit_violation(
        self,
        rule: RateLimitRule,
        subject: str,
        request: PolicyRequest,
        window_start_ms: int,
        attempts: int
    ) -> None:
        violation = RateLimitViolation(
            violation_id=str(uuid.uuid4()),
            rule_id=rule.rule_id,
            rule_name=rule.name,
            subject_key=subject,
            endpoint=request.endpoint,
            method=request.method.upper(),
            limit=rule.limit,
            attempts=attempts,
            window_start=_from_ms(window_start_ms),
            window_end=_from_ms(window_start_ms + rule.window_ms),
            ip_address=request.ip,
            user_id=request.user_id,
            user_agent=request.user_agent,
        )
        self.violations.record(violation)
        if self.metrics:
            self.metrics.record_violation(rule.rule_id)
