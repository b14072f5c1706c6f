"""
Unit tests for administrative rule management.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_policy.app.audit.trail import AuditTrail
from service_policy.app.cache.policy_cache import PolicyCache
from service_policy.app.management import RuleManager
from service_policy.app.ratelimit.counters import InMemoryCounterStore
from service_policy.app.ratelimit.matcher import RateLimitMatcher
from service_policy.app.ratelimit.violations import ViolationLog
from service_policy.app.regions.hierarchy import RegionHierarchy
from service_policy.app.rules.models import KeyGenerator, PolicyRequest, RegionType
from service_policy.app.rules.schemas import (
    AccessControlRuleCreateRequest, AccessControlRuleUpdateRequest, RateLimitRuleCreateRequest,
    RateLimitRuleUpdateRequest, RegionOverrideCreateRequest, RegionOverrideUpdateRequest
)
from service_policy.app.service import PolicyService
from service_policy.app.store.memory import MemoryRuleStore
from shared.errors import InvalidRegion, NotFoundError, ValidationError


@pytest.fixture
def counters():
    return InMemoryCounterStore()


@pytest.fixture
def store():
    return MemoryRuleStore("default", {"instantBooking": False, "hourlyBookings": True})


@pytest.fixture
def audit():
    return AuditTrail()


@pytest.fixture
def policy(store, counters):
    return PolicyService(
        store=store,
        hierarchy=RegionHierarchy.default(),
        cache=PolicyCache(),
        matcher=RateLimitMatcher(counters, ViolationLog()),
        poll_interval=0
    )


@pytest.fixture
def manager(store, policy, counters, audit):
    return RuleManager(store, policy, policy.hierarchy, counters, audit)


def rate_limit_request(**overrides):
    fields = {"name": "Bookings", "endpoint": "/api/bookings", "limit": 2, "windowMs": 60000}
    fields.update(overrides)
    return RateLimitRuleCreateRequest(**fields)


class TestRateLimitRuleManagement:
    """Test cases for rate limit rule CRUD."""

    @pytest.mark.asyncio
    async def test_create_records_audit(self, manager, audit):
        rule = await manager.create_rate_limit_rule(
            rate_limit_request(keyGenerator="api_key"), "admin-1", "192.0.2.1"
        )

        assert rule.key_generator == KeyGenerator.API_KEY
        assert rule.created_by == "admin-1"
        logs, total, _ = audit.query(entity_id=rule.rule_id)
        assert total == 1
        assert logs[0].action == "RATE_LIMIT_RULE_CREATED"
        assert logs[0].ip_address == "192.0.2.1"

    @pytest.mark.asyncio
    async def test_limit_change_resets_counters(self, manager, policy, counters):
        rule = await manager.create_rate_limit_rule(rate_limit_request(), "admin-1")
        request = PolicyRequest(endpoint="/api/bookings", method="GET", ip="10.0.0.1")
        await policy.check_rate_limit(request, now_ms=0)

        await manager.update_rate_limit_rule(rule.rule_id, RateLimitRuleUpdateRequest(name="Renamed"), "admin-1")
        assert counters.peek(rule.rule_id, "ip:10.0.0.1") is not None

        await manager.update_rate_limit_rule(rule.rule_id, RateLimitRuleUpdateRequest(limit=10), "admin-1")
        assert counters.peek(rule.rule_id, "ip:10.0.0.1") is None

    @pytest.mark.asyncio
    async def test_update_is_partial(self, manager):
        rule = await manager.create_rate_limit_rule(rate_limit_request(description="first"), "admin-1")

        updated = await manager.update_rate_limit_rule(
            rule.rule_id, RateLimitRuleUpdateRequest(priority=5), "admin-2"
        )

        assert updated.priority == 5
        assert updated.description == "first"
        assert updated.limit == 2

    @pytest.mark.asyncio
    async def test_update_rejects_null_required_field(self, manager):
        rule = await manager.create_rate_limit_rule(rate_limit_request(), "admin-1")

        with pytest.raises(ValidationError):
            await manager.update_rate_limit_rule(rule.rule_id, RateLimitRuleUpdateRequest(limit=None), "admin-1")

    @pytest.mark.asyncio
    async def test_update_diff_in_audit(self, manager, audit):
        rule = await manager.create_rate_limit_rule(rate_limit_request(), "admin-1")

        await manager.update_rate_limit_rule(rule.rule_id, RateLimitRuleUpdateRequest(limit=9), "admin-1")

        logs, _, _ = audit.query(action="RATE_LIMIT_RULE_UPDATED")
        assert logs[0].changes == {"limit": {"from": 2, "to": 9}}

    @pytest.mark.asyncio
    async def test_toggle(self, manager):
        rule = await manager.create_rate_limit_rule(rate_limit_request(), "admin-1")

        toggled = await manager.toggle_rate_limit_rule(rule.rule_id, "admin-1")

        assert toggled.enabled is False
        assert await manager.list_rate_limit_rules(enabled=True) == []

    @pytest.mark.asyncio
    async def test_delete(self, manager, policy, counters):
        rule = await manager.create_rate_limit_rule(rate_limit_request(), "admin-1")
        await policy.check_rate_limit(PolicyRequest(endpoint="/api/bookings", method="GET", ip="10.0.0.1"), now_ms=0)

        await manager.delete_rate_limit_rule(rule.rule_id, "admin-1")

        assert counters.peek(rule.rule_id, "ip:10.0.0.1") is None
        with pytest.raises(NotFoundError):
            await manager.get_rate_limit_rule(rule.rule_id)
        with pytest.raises(NotFoundError):
            await manager.delete_rate_limit_rule(rule.rule_id, "admin-1")

    @pytest.mark.asyncio
    async def test_list_sorted_by_priority(self, manager):
        await manager.create_rate_limit_rule(rate_limit_request(name="low", priority=1), "admin-1")
        await manager.create_rate_limit_rule(rate_limit_request(name="high", priority=50), "admin-1")

        rules = await manager.list_rate_limit_rules()

        assert [rule.name for rule in rules] == ["high", "low"]


class TestAccessControlRuleManagement:
    """Test cases for access control rule CRUD."""

    @pytest.fixture
    def create_request(self):
        return AccessControlRuleCreateRequest(
            name="Office only",
            type="whitelist",
            target="ip",
            values=["192.0.2.0/24", "198.51.100.7"],
            endpoints=["/api/admin/*"],
        )

    @pytest.mark.asyncio
    async def test_audit_keeps_values_out(self, manager, audit, create_request):
        rule = await manager.create_access_control_rule(create_request, "admin-1")

        logs, _, _ = audit.query(entity_id=rule.rule_id)
        changes = logs[0].changes
        assert changes["valueCount"] == 2
        assert "192.0.2.0/24" not in str(changes)

    @pytest.mark.asyncio
    async def test_update_values_recorded_as_counts(self, manager, audit, create_request):
        rule = await manager.create_access_control_rule(create_request, "admin-1")

        await manager.update_access_control_rule(
            rule.rule_id, AccessControlRuleUpdateRequest(values=["203.0.113.9"]), "admin-1"
        )

        logs, _, _ = audit.query(action="ACCESS_CONTROL_RULE_UPDATED")
        assert logs[0].changes["values"] == {"from": 2, "to": 1}

    @pytest.mark.asyncio
    async def test_new_rule_enforced(self, manager, policy, create_request):
        await manager.create_access_control_rule(create_request, "admin-1")

        outsider = PolicyRequest(endpoint="/api/admin/users", method="GET", ip="203.0.113.9")
        insider = PolicyRequest(endpoint="/api/admin/users", method="GET", ip="192.0.2.44")

        assert (await policy.check_access(outsider)).allowed is False
        assert (await policy.check_access(insider)).allowed is True

    @pytest.mark.asyncio
    async def test_toggle_and_delete(self, manager, create_request):
        rule = await manager.create_access_control_rule(create_request, "admin-1")

        toggled = await manager.toggle_access_control_rule(rule.rule_id, "admin-1")
        assert toggled.enabled is False

        await manager.delete_access_control_rule(rule.rule_id, "admin-1")
        with pytest.raises(NotFoundError):
            await manager.get_access_control_rule(rule.rule_id)


class TestPlatformConfigManagement:
    """Test cases for platform config versions."""

    @pytest.mark.asyncio
    async def test_update_merges(self, manager):
        config = await manager.update_platform_config({"instantBooking": True}, "admin-1")

        assert config.version == 2
        assert config.features == {"instantBooking": True, "hourlyBookings": True}

    @pytest.mark.asyncio
    async def test_update_requires_features(self, manager):
        with pytest.raises(ValidationError):
            await manager.update_platform_config({}, "admin-1")

    @pytest.mark.asyncio
    async def test_rollback_creates_new_version(self, manager, policy, audit):
        await manager.update_platform_config({"instantBooking": True}, "admin-1")

        config = await manager.rollback_platform_config(1, "admin-2")
        history = await manager.get_platform_config_history()

        assert config.version == 3
        assert config.features["instantBooking"] is False
        assert [c.version for c in history] == [3, 2, 1]
        assert await policy.is_feature_enabled("instantBooking") is False
        logs, _, _ = audit.query(action="PLATFORM_CONFIG_ROLLED_BACK")
        assert logs[0].changes == {"fromVersion": 2, "toVersion": 1, "newVersion": 3}

    @pytest.mark.asyncio
    async def test_rollback_unknown_version(self, manager):
        with pytest.raises(NotFoundError):
            await manager.rollback_platform_config(42, "admin-1")

    @pytest.mark.asyncio
    async def test_rollback_to_current_version_refused(self, manager, audit):
        await manager.update_platform_config({"instantBooking": True}, "admin-1")

        with pytest.raises(ValidationError):
            await manager.rollback_platform_config(2, "admin-1")

        assert (await manager.get_platform_config()).version == 2
        logs, _, _ = audit.query(action="PLATFORM_CONFIG_ROLLED_BACK")
        assert logs == []

    @pytest.mark.asyncio
    async def test_compare_versions(self, manager):
        await manager.update_platform_config({"instantBooking": True, "maintenanceMode": False}, "admin-1")

        diff = await manager.compare_platform_config_versions(1, 2)

        assert diff["added"] == {"maintenanceMode": False}
        assert diff["removed"] == {}
        assert diff["changed"] == {"instantBooking": {"from": False, "to": True}}
        assert diff["totalChanges"] == 2

        reverse = await manager.compare_platform_config_versions(2, 1)
        assert reverse["removed"] == {"maintenanceMode": False}

    @pytest.mark.asyncio
    async def test_compare_unknown_version(self, manager):
        with pytest.raises(NotFoundError):
            await manager.compare_platform_config_versions(1, 9)

    @pytest.mark.asyncio
    async def test_rollback_safety_warns_about_maintenance(self, manager):
        await manager.update_platform_config({"maintenanceMode": True}, "admin-1")
        await manager.update_platform_config({"maintenanceMode": False}, "admin-1")

        safety = await manager.check_rollback_safety(2)

        assert safety["isSafe"] is True
        assert safety["currentVersion"] == 3
        assert safety["warnings"] == ["Rollback will enable maintenance mode"]
        assert safety["affectedFeatures"] == ["maintenanceMode"]


class TestRegionOverrideManagement:
    """Test cases for region overrides."""

    @pytest.mark.asyncio
    async def test_create_canonicalizes_region(self, manager):
        override = await manager.create_region_override(
            RegionOverrideCreateRequest(region="oslo", regionType="Fylke", featureOverrides={"instantBooking": True}),
            "admin-1"
        )

        assert override.region == "Oslo"
        assert override.region_type == RegionType.FYLKE

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_region(self, manager):
        with pytest.raises(InvalidRegion):
            await manager.create_region_override(
                RegionOverrideCreateRequest(region="Atlantis", regionType="kommune",
                                            featureOverrides={"instantBooking": True}),
                "admin-1"
            )

    @pytest.mark.asyncio
    async def test_bulk_is_all_or_nothing(self, manager, store):
        requests = [
            RegionOverrideCreateRequest(region="Oslo", regionType="fylke", featureOverrides={"a": 1}),
            RegionOverrideCreateRequest(region="Oslo", regionType="county", featureOverrides={"a": 1}),
        ]

        with pytest.raises(InvalidRegion):
            await manager.bulk_create_region_overrides(requests, "admin-1")

        assert await store.list_region_overrides() == []

    @pytest.mark.asyncio
    async def test_created_override_applies_immediately(self, manager, policy):
        before = await policy.get_effective_config("Oslo", "kommune")
        assert before["instantBooking"].value is False

        await manager.create_region_override(
            RegionOverrideCreateRequest(region="Oslo", regionType="fylke", featureOverrides={"instantBooking": True}),
            "admin-1"
        )

        after = await policy.get_effective_config("Oslo", "kommune")
        assert after["instantBooking"].value is True

    @pytest.mark.asyncio
    async def test_update_moves_override(self, manager, policy):
        override = await manager.create_region_override(
            RegionOverrideCreateRequest(region="Oslo", regionType="fylke", featureOverrides={"instantBooking": True}),
            "admin-1"
        )
        await policy.get_effective_config("Oslo", "kommune")

        await manager.update_region_override(
            override.override_id,
            RegionOverrideUpdateRequest(region="Vestland"),
            "admin-1"
        )

        oslo = await policy.get_effective_config("Oslo", "kommune")
        bergen = await policy.get_effective_config("Bergen", "kommune")
        assert oslo["instantBooking"].value is False
        assert bergen["instantBooking"].value is True

    @pytest.mark.asyncio
    async def test_delete_and_not_found(self, manager):
        override = await manager.create_region_override(
            RegionOverrideCreateRequest(region="Bergen", regionType="kommune", featureOverrides={"a": 1}),
            "admin-1"
        )

        await manager.delete_region_override(override.override_id, "admin-1")

        with pytest.raises(NotFoundError):
            await manager.get_region_override(override.override_id)

    @pytest.mark.asyncio
    async def test_list_filters(self, manager):
        await manager.bulk_create_region_overrides([
            RegionOverrideCreateRequest(region="Oslo", regionType="fylke", featureOverrides={"a": 1}),
            RegionOverrideCreateRequest(region="Oslo", regionType="kommune", featureOverrides={"a": 2}),
            RegionOverrideCreateRequest(region="Bergen", regionType="kommune", featureOverrides={"b": 1},
                                        enabled=False),
        ], "admin-1")

        assert len(await manager.list_region_overrides(region="oslo")) == 2
        assert len(await manager.list_region_overrides(region_type="kommune")) == 2
        assert len(await manager.list_region_overrides(enabled=False)) == 1
        with pytest.raises(InvalidRegion):
            await manager.list_region_overrides(region_type="county")

    @pytest.mark.asyncio
    async def test_stats(self, manager):
        await manager.bulk_create_region_overrides([
            RegionOverrideCreateRequest(region="Oslo", regionType="fylke", featureOverrides={"a": 1, "b": 1},
                                        priority=10),
            RegionOverrideCreateRequest(region="Bergen", regionType="kommune", featureOverrides={"a": 2}),
        ], "admin-1")

        stats = await manager.region_override_stats()

        assert stats["totalOverrides"] == 2
        assert stats["enabledOverrides"] == 2
        assert stats["overridesByRegionType"] == {"fylke": 1, "kommune": 1}
        assert stats["overridesByPriority"] == {"1": 1, "10": 1}
        assert stats["mostOverriddenFeatures"][0] == {"feature": "a", "count": 2}
