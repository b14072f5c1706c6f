"""
Unit tests for region override resolution.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_policy.app.regions.hierarchy import RegionHierarchy, RegionRef
from service_policy.app.regions.resolver import RegionOverrideResolver, override_sort_key
from service_policy.app.rules.models import RegionOverride, RegionType
from shared.errors import ConfigurationUnavailable, InvalidRegion


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_override(override_id, region, region_type, features, priority=1, enabled=True, age_minutes=0):
    created = BASE_TIME - timedelta(minutes=age_minutes)
    return RegionOverride(
        override_id=override_id,
        config_id="default",
        region=region,
        region_type=region_type,
        feature_overrides=features,
        priority=priority,
        enabled=enabled,
        created_at=created,
        updated_at=created,
    )


class TestRegionOverrideResolver:
    """Test cases for RegionOverrideResolver."""

    @pytest.fixture
    def resolver(self):
        """Create resolver over the Norway hierarchy."""
        return RegionOverrideResolver(RegionHierarchy.default())

    @pytest.fixture
    def global_config(self):
        """Global feature map."""
        return {"instantBooking": False, "hourlyBookings": True}

    def test_oslo_and_bergen(self, resolver, global_config):
        """Oslo fylke override applies to Oslo kommune but not to Bergen."""
        overrides = [make_override("o-1", "Oslo", RegionType.FYLKE, {"instantBooking": True}, priority=10)]

        oslo = resolver.resolve("Oslo", RegionType.KOMMUNE, global_config, overrides)
        bergen = resolver.resolve("Bergen", RegionType.KOMMUNE, global_config, overrides)

        assert oslo["instantBooking"].value is True
        assert oslo["instantBooking"].source == "region"
        assert oslo["instantBooking"].source_region == "Oslo"
        assert oslo["instantBooking"].region_type == RegionType.FYLKE
        assert oslo["instantBooking"].priority == 10
        assert bergen["instantBooking"].value is False
        assert bergen["instantBooking"].source == "global"

    def test_no_overrides_returns_global(self, resolver, global_config):
        """Empty override set leaves the global config unchanged."""
        result = resolver.resolve("Bergen", RegionType.KOMMUNE, global_config, [])

        assert {name: r.value for name, r in result.items()} == global_config
        assert all(r.source == "global" for r in result.values())

    def test_higher_priority_wins(self, resolver, global_config):
        """Higher priority override wins regardless of specificity."""
        overrides = [
            make_override("kommune", "Oslo", RegionType.KOMMUNE, {"instantBooking": False}, priority=5),
            make_override("country", "Norway", RegionType.COUNTRY, {"instantBooking": True}, priority=50),
        ]

        result = resolver.resolve("Oslo", RegionType.KOMMUNE, global_config, overrides)

        assert result["instantBooking"].value is True
        assert result["instantBooking"].source_region == "Norway"

    def test_specificity_breaks_priority_ties(self, resolver, global_config):
        """Kommune beats Fylke beats Country at equal priority."""
        overrides = [
            make_override("country", "Norway", RegionType.COUNTRY, {"hourlyBookings": "country"}, priority=3),
            make_override("fylke", "Vestland", RegionType.FYLKE, {"hourlyBookings": "fylke"}, priority=3),
            make_override("kommune", "Bergen", RegionType.KOMMUNE, {"hourlyBookings": "kommune"}, priority=3),
        ]

        result = resolver.resolve("Bergen", RegionType.KOMMUNE, global_config, overrides)

        assert result["hourlyBookings"].value == "kommune"

    def test_newer_override_wins_full_tie(self, resolver, global_config):
        """Newest creation wins when priority and specificity tie."""
        overrides = [
            make_override("old", "Bergen", RegionType.KOMMUNE, {"instantBooking": "old"}, age_minutes=30),
            make_override("new", "Bergen", RegionType.KOMMUNE, {"instantBooking": "new"}, age_minutes=1),
        ]

        result = resolver.resolve("Bergen", RegionType.KOMMUNE, global_config, overrides)

        assert result["instantBooking"].value == "new"

    def test_disabled_override_ignored(self, resolver, global_config):
        """Disabled overrides never apply."""
        overrides = [make_override("o-1", "Bergen", RegionType.KOMMUNE, {"instantBooking": True}, enabled=False)]

        result = resolver.resolve("Bergen", RegionType.KOMMUNE, global_config, overrides)

        assert result["instantBooking"].value is False

    def test_override_can_add_new_feature(self, resolver, global_config):
        """Features absent from the global map can be introduced by a region."""
        overrides = [make_override("o-1", "Norway", RegionType.COUNTRY, {"betaSearch": True})]

        result = resolver.resolve("Tromsø", RegionType.KOMMUNE, global_config, overrides)

        assert result["betaSearch"].value is True

    def test_descendant_override_does_not_apply_upwards(self, resolver, global_config):
        """A kommune override does not change its fylke."""
        overrides = [make_override("o-1", "Bergen", RegionType.KOMMUNE, {"instantBooking": True})]

        result = resolver.resolve("Vestland", RegionType.FYLKE, global_config, overrides)

        assert result["instantBooking"].value is False

    def test_resolution_is_deterministic(self, resolver, global_config):
        """Input order of overrides does not change the result."""
        overrides = [
            make_override("a", "Oslo", RegionType.FYLKE, {"instantBooking": "a"}, priority=7),
            make_override("b", "Oslo", RegionType.KOMMUNE, {"instantBooking": "b"}, priority=7),
            make_override("c", "Norway", RegionType.COUNTRY, {"instantBooking": "c"}, priority=7),
        ]

        first = resolver.resolve("Oslo", RegionType.KOMMUNE, global_config, overrides)
        second = resolver.resolve("Oslo", RegionType.KOMMUNE, global_config, list(reversed(overrides)))

        assert first == second
        assert first["instantBooking"].value == "b"

    def test_sort_key_orders_by_id_last(self):
        """Identical overrides are ordered by id."""
        a = make_override("a", "Oslo", RegionType.KOMMUNE, {})
        b = make_override("b", "Oslo", RegionType.KOMMUNE, {})

        assert sorted([b, a], key=override_sort_key) == [a, b]

    def test_unknown_region_raises(self, resolver, global_config):
        """Regions missing from the hierarchy are rejected."""
        with pytest.raises(InvalidRegion):
            resolver.resolve("Atlantis", RegionType.KOMMUNE, global_config, [])

    def test_unknown_region_type_raises(self, resolver, global_config):
        """Unknown region types are rejected."""
        with pytest.raises(InvalidRegion):
            resolver.resolve("Oslo", "county", global_config, [])

    def test_region_name_case_insensitive(self, resolver, global_config):
        """Region lookups ignore case."""
        overrides = [make_override("o-1", "Oslo", RegionType.FYLKE, {"instantBooking": True})]

        result = resolver.resolve("OSLO", "Kommune", global_config, overrides)

        assert result["instantBooking"].value is True

    def test_hierarchy_failure_maps_to_configuration_unavailable(self, global_config):
        """Broken containment data surfaces as ConfigurationUnavailable."""
        hierarchy = RegionHierarchy({"Norway": {"Oslo": ["Oslo"]}})
        # Corrupt the table into a cycle.
        fylke = RegionRef("Oslo", RegionType.FYLKE).key
        country = RegionRef("Norway", RegionType.COUNTRY).key
        hierarchy._parents[country] = fylke
        resolver = RegionOverrideResolver(hierarchy)

        with pytest.raises(ConfigurationUnavailable):
            resolver.resolve("Oslo", RegionType.KOMMUNE, global_config, [])
