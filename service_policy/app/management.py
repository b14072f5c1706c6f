"""
Administrative rule management.

Every mutation goes through the RuleManager: it validates the change,
persists it, records an audit entry and tells the policy service which
cached results it invalidates.
"""

import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shared.errors import NotFoundError, StoreUnavailable, ValidationError
from shared.logging import get_logger, set_request_context
from .audit.trail import AuditTrail
from .ratelimit.counters import CounterStore
from .regions.hierarchy import RegionHierarchy, RegionRef
from .rules.models import (
    AccessControlRule, PlatformConfig, RateLimitRule, RegionOverride, RuleSet,
    audit_action, parse_region_type, utcnow
)
from .rules.schemas import (
    AccessControlRuleCreateRequest, AccessControlRuleResponse, AccessControlRuleUpdateRequest,
    RateLimitRuleCreateRequest, RateLimitRuleResponse,
    RateLimitRuleUpdateRequest, RegionOverrideCreateRequest, RegionOverrideResponse,
    RegionOverrideUpdateRequest
)
from .service import PolicyService
from .store.base import RuleStore


RATE_LIMIT_RULE = "rateLimitRule"
ACCESS_CONTROL_RULE = "accessControlRule"
PLATFORM_CONFIG = "platformConfig"
REGION_OVERRIDE = "regionOverride"

# Edits to these fields change what a counter means, so existing counters are dropped.
_COUNTER_FIELDS = {"endpoint", "method", "limit", "window_ms", "key_generator"}
_NULLABLE_FIELDS = {"description", "expires_at", "reason"}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _changes(update: Any) -> Dict[str, Any]:
    """Fields explicitly set on an update request; null is only allowed for optional fields."""
    changes = update.model_dump(exclude_unset=True)
    nulls = sorted(key for key, value in changes.items() if value is None and key not in _NULLABLE_FIELDS)
    if nulls:
        raise ValidationError("Fields may not be null", {"fields": nulls})
    return changes


def _diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: {"from": before.get(key), "to": value}
        for key, value in after.items()
        if before.get(key) != value and key not in ("updatedAt",)
    }


class RuleManager:
    """Validated CRUD over rules, platform config and region overrides."""

    def __init__(
        self,
        store: RuleStore,
        policy: PolicyService,
        hierarchy: RegionHierarchy,
        counters: CounterStore,
        audit: AuditTrail
    ):
        self.store = store
        self.policy = policy
        self.hierarchy = hierarchy
        self.counters = counters
        self.audit = audit
        self.logger = get_logger("policy.management")

    def _audit(self, admin_id: str, entity_type: str, verb: str, entity_id: str,
               changes: Dict[str, Any], ip_address: Optional[str]) -> None:
        set_request_context(admin_id=admin_id)
        self.audit.record(
            admin_id=admin_id,
            action=audit_action(entity_type, verb),
            entity_type=entity_type,
            entity_id=entity_id,
            changes=changes,
            ip_address=ip_address,
        )

    async def _reset_counters(self, rule_id: str) -> None:
        try:
            await self.counters.reset_rule(rule_id)
        except StoreUnavailable as e:
            # Stale counters expire with their window.
            self.logger.warning("Could not reset rate limit counters", rule_id=rule_id, error=e.message)

    # Rate limit rules

    async def list_rate_limit_rules(self, enabled: Optional[bool] = None) -> List[RateLimitRule]:
        rules = await self.store.list_rate_limit_rules()
        if enabled is not None:
            rules = [rule for rule in rules if rule.enabled == enabled]
        rules.sort(key=lambda rule: (-rule.priority, rule.created_at, rule.rule_id))
        return rules

    async def get_rate_limit_rule(self, rule_id: str) -> RateLimitRule:
        rule = await self.store.get_rate_limit_rule(rule_id)
        if rule is None:
            raise NotFoundError("Rate limit rule", rule_id)
        return rule

    async def create_rate_limit_rule(self, request: RateLimitRuleCreateRequest, admin_id: str,
                                     ip_address: Optional[str] = None) -> RateLimitRule:
        now = utcnow()
        rule = RateLimitRule(
            rule_id=str(uuid.uuid4()),
            created_by=admin_id,
            created_at=now,
            updated_at=now,
            **request.model_dump()
        )
        await self.store.save_rate_limit_rule(rule)
        await self.policy.rules_changed(RuleSet.RATE_LIMITS)

        snapshot = RateLimitRuleResponse.from_rule(rule).model_dump(mode="json", by_alias=True)
        self._audit(admin_id, RATE_LIMIT_RULE, "created", rule.rule_id, {"created": snapshot}, ip_address)
        self.logger.info("Rate limit rule created", rule_id=rule.rule_id, endpoint=rule.endpoint, limit=rule.limit)
        return rule

    async def update_rate_limit_rule(self, rule_id: str, request: RateLimitRuleUpdateRequest, admin_id: str,
                                     ip_address: Optional[str] = None) -> RateLimitRule:
        existing = await self.get_rate_limit_rule(rule_id)
        changes = _changes(request)
        updated = replace(existing, updated_at=utcnow(), **changes)
        await self.store.save_rate_limit_rule(updated)

        if any(getattr(existing, key) != getattr(updated, key) for key in _COUNTER_FIELDS):
            await self._reset_counters(rule_id)
        await self.policy.rules_changed(RuleSet.RATE_LIMITS)

        before = RateLimitRuleResponse.from_rule(existing).model_dump(mode="json", by_alias=True)
        after = RateLimitRuleResponse.from_rule(updated).model_dump(mode="json", by_alias=True)
        self._audit(admin_id, RATE_LIMIT_RULE, "updated", rule_id, _diff(before, after), ip_address)
        self.logger.info("Rate limit rule updated", rule_id=rule_id, fields=sorted(changes))
        return updated

    async def toggle_rate_limit_rule(self, rule_id: str, admin_id: str,
                                     ip_address: Optional[str] = None) -> RateLimitRule:
        existing = await self.get_rate_limit_rule(rule_id)
        updated = replace(existing, enabled=not existing.enabled, updated_at=utcnow())
        await self.store.save_rate_limit_rule(updated)
        await self.policy.rules_changed(RuleSet.RATE_LIMITS)
        self._audit(admin_id, RATE_LIMIT_RULE, "toggled", rule_id,
                    {"enabled": {"from": existing.enabled, "to": updated.enabled}}, ip_address)
        return updated

    async def delete_rate_limit_rule(self, rule_id: str, admin_id: str,
                                     ip_address: Optional[str] = None) -> None:
        existing = await self.get_rate_limit_rule(rule_id)
        if not await self.store.delete_rate_limit_rule(rule_id):
            raise NotFoundError("Rate limit rule", rule_id)
        await self._reset_counters(rule_id)
        await self.policy.rules_changed(RuleSet.RATE_LIMITS)
        self._audit(admin_id, RATE_LIMIT_RULE, "deleted", rule_id, {"name": existing.name}, ip_address)
        self.logger.info("Rate limit rule deleted", rule_id=rule_id)

    # Access control rules

    async def list_access_control_rules(self, enabled: Optional[bool] = None) -> List[AccessControlRule]:
        rules = await self.store.list_access_control_rules()
        if enabled is not None:
            rules = [rule for rule in rules if rule.enabled == enabled]
        rules.sort(key=lambda rule: (rule.created_at, rule.rule_id))
        return rules

    async def get_access_control_rule(self, rule_id: str) -> AccessControlRule:
        rule = await self.store.get_access_control_rule(rule_id)
        if rule is None:
            raise NotFoundError("Access control rule", rule_id)
        return rule

    async def create_access_control_rule(self, request: AccessControlRuleCreateRequest, admin_id: str,
                                         ip_address: Optional[str] = None) -> AccessControlRule:
        now = utcnow()
        fields = request.model_dump()
        fields["expires_at"] = _as_utc(fields.get("expires_at"))
        rule = AccessControlRule(
            rule_id=str(uuid.uuid4()),
            created_by=admin_id,
            created_at=now,
            updated_at=now,
            **fields
        )
        await self.store.save_access_control_rule(rule)
        await self.policy.rules_changed(RuleSet.ACCESS_CONTROL)

        # Listed values stay out of the audit trail; only their count is kept.
        self._audit(admin_id, ACCESS_CONTROL_RULE, "created", rule.rule_id, {
            "name": rule.name,
            "type": rule.rule_type.value,
            "target": rule.target.value,
            "valueCount": len(rule.values),
            "endpoints": rule.endpoints,
            "methods": rule.methods,
        }, ip_address)
        self.logger.info("Access control rule created", rule_id=rule.rule_id, rule_type=rule.rule_type.value)
        return rule

    async def update_access_control_rule(self, rule_id: str, request: AccessControlRuleUpdateRequest,
                                         admin_id: str, ip_address: Optional[str] = None) -> AccessControlRule:
        existing = await self.get_access_control_rule(rule_id)
        changes = _changes(request)
        if "expires_at" in changes:
            changes["expires_at"] = _as_utc(changes["expires_at"])
        updated = replace(existing, updated_at=utcnow(), **changes)
        await self.store.save_access_control_rule(updated)
        await self.policy.rules_changed(RuleSet.ACCESS_CONTROL)

        before = AccessControlRuleResponse.from_rule(existing).model_dump(mode="json", by_alias=True)
        after = AccessControlRuleResponse.from_rule(updated).model_dump(mode="json", by_alias=True)
        diff = _diff(before, after)
        if "values" in diff:
            diff["values"] = {"from": len(existing.values), "to": len(updated.values)}
        self._audit(admin_id, ACCESS_CONTROL_RULE, "updated", rule_id, diff, ip_address)
        self.logger.info("Access control rule updated", rule_id=rule_id, fields=sorted(changes))
        return updated

    async def toggle_access_control_rule(self, rule_id: str, admin_id: str,
                                         ip_address: Optional[str] = None) -> AccessControlRule:
        existing = await self.get_access_control_rule(rule_id)
        updated = replace(existing, enabled=not existing.enabled, updated_at=utcnow())
        await self.store.save_access_control_rule(updated)
        await self.policy.rules_changed(RuleSet.ACCESS_CONTROL)
        self._audit(admin_id, ACCESS_CONTROL_RULE, "toggled", rule_id,
                    {"enabled": {"from": existing.enabled, "to": updated.enabled}}, ip_address)
        return updated

    async def delete_access_control_rule(self, rule_id: str, admin_id: str,
                                         ip_address: Optional[str] = None) -> None:
        existing = await self.get_access_control_rule(rule_id)
        if not await self.store.delete_access_control_rule(rule_id):
            raise NotFoundError("Access control rule", rule_id)
        await self.policy.rules_changed(RuleSet.ACCESS_CONTROL)
        self._audit(admin_id, ACCESS_CONTROL_RULE, "deleted", rule_id, {"name": existing.name}, ip_address)
        self.logger.info("Access control rule deleted", rule_id=rule_id)

    # Platform configuration

    async def get_platform_config(self) -> PlatformConfig:
        return await self.store.get_platform_config()

    async def get_platform_config_history(self) -> List[PlatformConfig]:
        return await self.store.get_platform_config_history()

    async def update_platform_config(self, features: Dict[str, Any], admin_id: str,
                                     ip_address: Optional[str] = None) -> PlatformConfig:
        """Merge a partial feature map into the current config as a new version."""
        if not features:
            raise ValidationError("At least one feature is required")
        current = await self.store.get_platform_config()
        merged = dict(current.features)
        merged.update(features)
        config = await self.store.save_platform_config(merged, admin_id)
        await self.policy.rules_changed(RuleSet.PLATFORM_CONFIG)

        changes = {
            name: {"from": current.features.get(name), "to": value}
            for name, value in features.items()
            if current.features.get(name) != value
        }
        self._audit(admin_id, PLATFORM_CONFIG, "updated", config.config_id,
                    {"version": config.version, "features": changes}, ip_address)
        self.logger.info("Platform config updated", version=config.version, features=sorted(features))
        return config

    async def _config_version(self, version: int) -> Tuple[PlatformConfig, PlatformConfig]:
        """The requested version and the current one."""
        history = await self.store.get_platform_config_history()
        target = next((config for config in history if config.version == version), None)
        if target is None:
            raise NotFoundError("Platform config version", str(version))
        return target, history[0]

    @staticmethod
    def _feature_diff(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "added": {name: new[name] for name in sorted(new.keys() - old.keys())},
            "removed": {name: old[name] for name in sorted(old.keys() - new.keys())},
            "changed": {
                name: {"from": old[name], "to": new[name]}
                for name in sorted(old.keys() & new.keys())
                if old[name] != new[name]
            },
        }

    async def compare_platform_config_versions(self, from_version: int, to_version: int) -> Dict[str, Any]:
        """Features added, removed and changed going from one config version to another."""
        old, _ = await self._config_version(from_version)
        new, _ = await self._config_version(to_version)
        diff = self._feature_diff(old.features, new.features)
        return {
            "fromVersion": from_version,
            "toVersion": to_version,
            **diff,
            "totalChanges": sum(len(part) for part in diff.values()),
        }

    async def check_rollback_safety(self, version: int) -> Dict[str, Any]:
        """What rolling back to `version` would change; blocked when it is already current."""
        target, current = await self._config_version(version)
        diff = self._feature_diff(current.features, target.features)
        blockers = []
        warnings = []
        if target.version == current.version:
            blockers.append(f"Version {version} is already the current configuration")
        elif not any(diff.values()):
            warnings.append("Rollback does not change any feature")
        if target.features.get("maintenanceMode") and not current.features.get("maintenanceMode"):
            warnings.append("Rollback will enable maintenance mode")
        return {
            "currentVersion": current.version,
            "targetVersion": version,
            "isSafe": not blockers,
            "blockers": blockers,
            "warnings": warnings,
            "affectedFeatures": sorted(set().union(*(part.keys() for part in diff.values()))),
        }

    async def rollback_platform_config(self, version: int, admin_id: str,
                                       ip_address: Optional[str] = None) -> PlatformConfig:
        """Store the feature map of an earlier version as a new version."""
        safety = await self.check_rollback_safety(version)
        if not safety["isSafe"]:
            raise ValidationError("Rollback refused", {"version": version, "blockers": safety["blockers"]})
        target, current = await self._config_version(version)

        config = await self.store.save_platform_config(dict(target.features), admin_id)
        await self.policy.rules_changed(RuleSet.PLATFORM_CONFIG)
        self._audit(admin_id, PLATFORM_CONFIG, "rolled_back", config.config_id,
                    {"fromVersion": current.version, "toVersion": version, "newVersion": config.version},
                    ip_address)
        self.logger.info("Platform config rolled back", restored_version=version, version=config.version,
                         warnings=safety["warnings"])
        return config

    # Region overrides

    def _canonical_region(self, region: str, region_type: Any) -> RegionRef:
        return self.hierarchy.lookup(region, region_type)

    async def list_region_overrides(
        self,
        region: Optional[str] = None,
        region_type: Optional[str] = None,
        enabled: Optional[bool] = None
    ) -> List[RegionOverride]:
        overrides = await self.store.list_region_overrides()
        if region_type is not None:
            wanted_type = parse_region_type(region_type)
            overrides = [o for o in overrides if o.region_type == wanted_type]
        if region is not None:
            wanted = region.strip().casefold()
            overrides = [o for o in overrides if o.region.casefold() == wanted]
        if enabled is not None:
            overrides = [o for o in overrides if o.enabled == enabled]
        overrides.sort(key=lambda o: (-o.priority, -o.region_type.specificity, o.created_at, o.override_id))
        return overrides

    async def get_region_override(self, override_id: str) -> RegionOverride:
        override = await self.store.get_region_override(override_id)
        if override is None:
            raise NotFoundError("Region override", override_id)
        return override

    def _build_override(self, request: RegionOverrideCreateRequest) -> RegionOverride:
        target = self._canonical_region(request.region, request.region_type)
        now = utcnow()
        return RegionOverride(
            override_id=str(uuid.uuid4()),
            config_id=self.store.config_id,
            region=target.name,
            region_type=target.region_type,
            feature_overrides=dict(request.feature_overrides),
            priority=request.priority,
            enabled=request.enabled,
            reason=request.reason,
            created_at=now,
            updated_at=now,
        )

    async def create_region_override(self, request: RegionOverrideCreateRequest, admin_id: str,
                                     ip_address: Optional[str] = None) -> RegionOverride:
        return (await self.bulk_create_region_overrides([request], admin_id, ip_address))[0]

    async def bulk_create_region_overrides(self, requests: Iterable[RegionOverrideCreateRequest],
                                           admin_id: str, ip_address: Optional[str] = None
                                           ) -> List[RegionOverride]:
        """Validate every override before storing any of them."""
        overrides = [self._build_override(request) for request in requests]
        for override in overrides:
            await self.store.save_region_override(override)
        await self.policy.rules_changed(
            RuleSet.REGION_OVERRIDES,
            regions=[RegionRef(o.region, o.region_type) for o in overrides],
            writes=len(overrides)
        )

        for override in overrides:
            snapshot = RegionOverrideResponse.from_override(override).model_dump(mode="json", by_alias=True)
            self._audit(admin_id, REGION_OVERRIDE, "created", override.override_id,
                        {"created": snapshot}, ip_address)
        self.logger.info("Region overrides created", count=len(overrides),
                         regions=sorted({o.region for o in overrides}))
        return overrides

    async def update_region_override(self, override_id: str, request: RegionOverrideUpdateRequest,
                                     admin_id: str, ip_address: Optional[str] = None) -> RegionOverride:
        existing = await self.get_region_override(override_id)
        changes = _changes(request)
        if "region" in changes or "region_type" in changes:
            target = self._canonical_region(
                changes.get("region", existing.region),
                changes.get("region_type", existing.region_type)
            )
            changes["region"] = target.name
            changes["region_type"] = target.region_type

        updated = replace(existing, updated_at=utcnow(), **changes)
        await self.store.save_region_override(updated)
        await self.policy.rules_changed(
            RuleSet.REGION_OVERRIDES,
            regions=[RegionRef(existing.region, existing.region_type), RegionRef(updated.region, updated.region_type)]
        )

        before = RegionOverrideResponse.from_override(existing).model_dump(mode="json", by_alias=True)
        after = RegionOverrideResponse.from_override(updated).model_dump(mode="json", by_alias=True)
        self._audit(admin_id, REGION_OVERRIDE, "updated", override_id, _diff(before, after), ip_address)
        return updated

    async def delete_region_override(self, override_id: str, admin_id: str,
                                     ip_address: Optional[str] = None) -> None:
        existing = await self.get_region_override(override_id)
        if not await self.store.delete_region_override(override_id):
            raise NotFoundError("Region override", override_id)
        await self.policy.rules_changed(
            RuleSet.REGION_OVERRIDES, regions=[RegionRef(existing.region, existing.region_type)]
        )
        self._audit(admin_id, REGION_OVERRIDE, "deleted", override_id,
                    {"region": existing.region, "regionType": existing.region_type.value}, ip_address)

    async def region_override_stats(self) -> Dict[str, Any]:
        overrides = await self.store.list_region_overrides()
        by_type = Counter(o.region_type.value for o in overrides)
        by_priority = Counter(o.priority for o in overrides)
        features = Counter(feature for o in overrides for feature in o.feature_overrides)
        top: List[Tuple[str, int]] = sorted(features.items(), key=lambda item: (-item[1], item[0]))[:10]
        return {
            "totalOverrides": len(overrides),
            "enabledOverrides": sum(1 for o in overrides if o.enabled),
            "overridesByRegionType": dict(by_type),
            "overridesByPriority": {str(priority): count for priority, count in sorted(by_priority.items())},
            "mostOverriddenFeatures": [{"feature": name, "count": count} for name, count in top],
        }

