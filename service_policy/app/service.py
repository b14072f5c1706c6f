"""
Policy service: the composition root behind the enforcer middleware and
the check endpoints.

Resolved results and rule lists are cached in the injected PolicyCache
under the version of the rule set they were built from. A background task
polls the store's version counters and drops entries built from versions
that are no longer current; local writes invalidate immediately.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from shared.errors import ConfigurationUnavailable, InvalidRegion, NotFoundError, StoreUnavailable
from shared.logging import get_logger, set_request_context
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation
from .access.evaluator import AccessControlEvaluator
from .cache.policy_cache import PolicyCache
from .ratelimit.matcher import RateLimitMatcher
from .regions.hierarchy import RegionHierarchy, RegionRef
from .regions.resolver import RegionOverrideResolver
from .rules.models import (
    AccessControlRule, Decision, EffectiveConfig, FeatureResolution, PlatformConfig, PolicyRequest,
    RateLimitRule, RegionType, RuleSet, parse_region_type
)
from .store.base import RuleStore


PLATFORM_CONFIG_NS = "platform_config"
REGION_NS = "region"
RATE_LIMIT_RULES_NS = "rate_limit_rules"
ACCESS_RULES_NS = "access_rules"

_ALL = ("all",)


class PolicyService:
    """Resolves feature configuration and evaluates rate-limit and access rules."""

    def __init__(
        self,
        store: RuleStore,
        hierarchy: RegionHierarchy,
        cache: PolicyCache,
        matcher: RateLimitMatcher,
        evaluator: Optional[AccessControlEvaluator] = None,
        metrics: Optional[MetricsCollector] = None,
        *,
        poll_interval: float = 5.0,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.hierarchy = hierarchy
        self.cache = cache
        self.matcher = matcher
        self.evaluator = evaluator or AccessControlEvaluator()
        self.resolver = RegionOverrideResolver(hierarchy)
        self.metrics = metrics
        self.poll_interval = poll_interval
        self.clock = clock
        self.logger = get_logger("policy.service")

        self._versions: Optional[Dict[RuleSet, int]] = None
        self._region_generation = 0
        self._watch_task: Optional[asyncio.Task] = None

    # Lifecycle

    async def start(self):
        try:
            await self.refresh_versions()
        except StoreUnavailable as e:
            self.logger.warning("Rule versions unavailable at startup", error=e.message)

        if self.poll_interval > 0 and self._watch_task is None:
            self._watch_task = asyncio.create_task(self._watch_versions())
        self.logger.info("Policy service started", poll_interval=self.poll_interval)

    async def stop(self):
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None
        self.logger.info("Policy service stopped")

    async def _watch_versions(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.refresh_versions()
            except StoreUnavailable as e:
                self.logger.warning("Version poll failed", error=e.message)
            except Exception as e:
                self.logger.error("Version poll crashed", error=str(e), exc_info=True)

    # Versions and invalidation

    async def refresh_versions(self) -> List[RuleSet]:
        """Fetch version counters and invalidate entries built from older ones."""
        versions = await self.store.get_versions()
        return self._apply_versions(versions)

    def _apply_versions(self, versions: Dict[RuleSet, int]) -> List[RuleSet]:
        previous = self._versions
        self._versions = dict(versions)
        if previous is None:
            return []

        changed = [rule_set for rule_set, version in versions.items() if previous.get(rule_set) != version]
        for rule_set in changed:
            version = versions[rule_set]
            if rule_set == RuleSet.PLATFORM_CONFIG:
                self.cache.invalidate_stale(PLATFORM_CONFIG_NS, version)
                self.cache.invalidate_stale(REGION_NS, version)
            elif rule_set == RuleSet.REGION_OVERRIDES:
                self._region_generation += 1
                self.cache.invalidate(REGION_NS)
            elif rule_set == RuleSet.RATE_LIMITS:
                self.cache.invalidate_stale(RATE_LIMIT_RULES_NS, version)
            elif rule_set == RuleSet.ACCESS_CONTROL:
                self.cache.invalidate_stale(ACCESS_RULES_NS, version)

        if changed:
            self.logger.info(
                "Rule set versions changed",
                rule_sets=[rule_set.value for rule_set in changed]
            )
        return changed

    async def _version(self, rule_set: RuleSet) -> int:
        if self._versions is None:
            await self.refresh_versions()
        return self._versions[rule_set]

    async def rules_changed(
        self,
        rule_set: RuleSet,
        regions: Iterable[RegionRef] = (),
        writes: int = 1
    ) -> None:
        """Called after a local write so readers see it without waiting for the poll."""
        if rule_set == RuleSet.REGION_OVERRIDES:
            self.invalidate_regions(regions)

        try:
            versions = await self.store.get_versions()
        except StoreUnavailable as e:
            self.logger.warning("Version refresh after write failed", error=e.message)
            if rule_set != RuleSet.REGION_OVERRIDES:
                self.cache.invalidate(self._namespace_for(rule_set))
            return

        known = self._versions
        if (
            rule_set == RuleSet.REGION_OVERRIDES
            and known is not None
            and versions.get(rule_set) == known.get(rule_set, 0) + writes
        ):
            # Only our own writes happened; the targeted invalidation above covers them.
            known[rule_set] = versions[rule_set]
        self._apply_versions(versions)

    def invalidate_regions(self, regions: Iterable[RegionRef]) -> None:
        """Drop cached effective configs of the given regions and every region below them."""
        self._region_generation += 1
        affected = set()
        for region in regions:
            affected.add(region.key)
            try:
                affected.update(ref.key for ref in self.hierarchy.descendants(region.name, region.region_type))
            except InvalidRegion:
                self.cache.invalidate(REGION_NS)
                return
        if affected:
            self.cache.invalidate(REGION_NS, lambda lookup: lookup in affected)

    @staticmethod
    def _namespace_for(rule_set: RuleSet) -> str:
        return {
            RuleSet.PLATFORM_CONFIG: PLATFORM_CONFIG_NS,
            RuleSet.REGION_OVERRIDES: REGION_NS,
            RuleSet.RATE_LIMITS: RATE_LIMIT_RULES_NS,
            RuleSet.ACCESS_CONTROL: ACCESS_RULES_NS,
        }[rule_set]

    # Feature configuration

    async def get_platform_config(self) -> PlatformConfig:
        version = await self._version(RuleSet.PLATFORM_CONFIG)
        config = self.cache.get(PLATFORM_CONFIG_NS, version, _ALL)
        if config is None:
            config = await self.store.get_platform_config()
            self.cache.set(PLATFORM_CONFIG_NS, config.version, _ALL, config)
        return config

    async def get_effective_config(self, region: str, region_type: Any) -> Dict[str, FeatureResolution]:
        """Effective feature map for a region; raises InvalidRegion or ConfigurationUnavailable."""
        resolved = await self.resolve_effective_config(region, region_type)
        return resolved.features

    async def resolve_effective_config(self, region: str, region_type: Any) -> EffectiveConfig:
        """Effective feature map together with the platform config version it was resolved from."""
        rtype = parse_region_type(region_type)
        target = self.hierarchy.lookup(region, rtype)

        try:
            version = await self._version(RuleSet.PLATFORM_CONFIG)
        except StoreUnavailable as e:
            raise ConfigurationUnavailable("Rule store unavailable", {"region": region}) from e

        cached = self.cache.get(REGION_NS, version, target.key)
        if cached is not None:
            return cached

        generation = self._region_generation
        with trace_operation("policy.effective_config", region=target.name, region_type=rtype.value):
            try:
                config = await self.get_platform_config()
                overrides = await self.store.list_region_overrides()
            except StoreUnavailable as e:
                self.logger.error("Cannot load configuration", region=target.name, error=e.message)
                raise ConfigurationUnavailable("Rule store unavailable", {"region": target.name}) from e

            effective = EffectiveConfig(
                region=target.name,
                region_type=target.region_type,
                config_version=config.version,
                features=self.resolver.resolve(target.name, target.region_type, config.features, overrides)
            )

        # A write during the awaits above may already have invalidated this region.
        if generation == self._region_generation:
            self.cache.set(REGION_NS, version, target.key, effective)
        return effective

    async def get_feature(self, feature: str, region: str, region_type: Any) -> FeatureResolution:
        effective = await self.get_effective_config(region, region_type)
        if feature not in effective:
            raise NotFoundError("Feature", feature)
        return effective[feature]

    async def is_feature_enabled(
        self,
        feature: str,
        region: Optional[str] = None,
        region_type: Optional[RegionType] = None
    ) -> bool:
        """Truthiness of a feature, region-resolved when a region is given. Unknown features are off."""
        if region:
            effective = await self.get_effective_config(region, region_type or RegionType.COUNTRY)
            resolution = effective.get(feature)
            return bool(resolution.value) if resolution else False

        try:
            config = await self.get_platform_config()
        except StoreUnavailable as e:
            raise ConfigurationUnavailable("Rule store unavailable") from e
        return bool(config.features.get(feature, False))

    # Rate limiting

    async def _rate_limit_rules(self) -> List[RateLimitRule]:
        version = await self._version(RuleSet.RATE_LIMITS)
        rules = self.cache.get(RATE_LIMIT_RULES_NS, version, _ALL)
        if rules is None:
            rules = [rule for rule in await self.store.list_rate_limit_rules() if rule.enabled]
            self.cache.set(RATE_LIMIT_RULES_NS, version, _ALL, rules)
        return rules

    async def check_rate_limit(self, request: PolicyRequest, now_ms: Optional[int] = None) -> Decision:
        start_time = time.time()
        now_ms = int(self.clock() * 1000) if now_ms is None else now_ms

        with trace_operation("policy.rate_limit", endpoint=request.endpoint, method=request.method):
            try:
                rules = await self._rate_limit_rules()
            except StoreUnavailable as e:
                self.logger.warning("Rule store unavailable, allowing request", check="rate_limit", error=e.message)
                if self.metrics:
                    self.metrics.record_fail_open("rate_limit")
                decision = Decision.allow(reason="rule store unavailable", degraded=True)
            else:
                decision = await self.matcher.check(request, rules, now_ms)

        if not decision.allowed:
            set_request_context(subject=request.user_id or request.ip)
            self.logger.info(
                "Rate limit denied request",
                rule_id=decision.matched_rule.rule_id if decision.matched_rule else None,
                endpoint=request.endpoint,
                retry_after_ms=decision.retry_after_ms
            )
        if self.metrics:
            self.metrics.record_decision("rate_limit", decision.allowed, time.time() - start_time)
        return decision

    # Access control

    async def _access_rules(self) -> List[AccessControlRule]:
        version = await self._version(RuleSet.ACCESS_CONTROL)
        rules = self.cache.get(ACCESS_RULES_NS, version, _ALL)
        if rules is None:
            rules = [rule for rule in await self.store.list_access_control_rules() if rule.enabled]
            self.cache.set(ACCESS_RULES_NS, version, _ALL, rules)
        return rules

    async def check_access(self, request: PolicyRequest, now: Optional[datetime] = None) -> Decision:
        start_time = time.time()
        now = now or datetime.fromtimestamp(self.clock(), tz=timezone.utc)

        with trace_operation("policy.access_control", endpoint=request.endpoint, method=request.method):
            try:
                rules = await self._access_rules()
            except StoreUnavailable as e:
                self.logger.error("Rule store unavailable, denying request", check="access_control", error=e.message)
                if self.metrics:
                    self.metrics.record_fail_closed("access_control")
                decision = Decision.deny(reason="access control unavailable", degraded=True)
            else:
                decision = self.evaluator.evaluate(request, rules, now)

        if self.metrics:
            self.metrics.record_decision("access_control", decision.allowed, time.time() - start_time)
        return decision

    # Reporting

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "counters": self.matcher.counters.stats(),
            "violations": len(self.matcher.violations),
            "versions": {rule_set.value: version for rule_set, version in (self._versions or {}).items()},
            "regions": len(self.hierarchy),
        }
