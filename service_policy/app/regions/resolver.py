"""
Region override resolution.

Merges the global feature map with the region overrides that apply to a
region (exact match or an ancestor in the containment table). Overrides
are ranked by priority, then specificity (Kommune > Fylke > Country), then
recency; the first override to touch a feature wins.
"""

from typing import Any, Dict, Iterable, List

from shared.errors import ConfigurationUnavailable
from shared.logging import get_logger
from ..rules.models import FeatureResolution, RegionOverride, RegionType
from .hierarchy import RegionHierarchy, RegionHierarchyError, RegionRef


def override_sort_key(override: RegionOverride):
    """Total order: priority desc, specificity desc, newest first, id."""
    return (
        -override.priority,
        -override.region_type.specificity,
        -override.created_at.timestamp(),
        override.override_id,
    )


def global_resolution(features: Dict[str, Any]) -> Dict[str, FeatureResolution]:
    return {
        name: FeatureResolution(feature=name, value=value, source="global")
        for name, value in features.items()
    }


class RegionOverrideResolver:
    """Computes effective feature configuration for a region."""

    def __init__(self, hierarchy: RegionHierarchy):
        self.hierarchy = hierarchy
        self.logger = get_logger("policy.region_resolver")

    def applicable_overrides(
        self,
        region: RegionRef,
        overrides: Iterable[RegionOverride]
    ) -> List[RegionOverride]:
        """Enabled overrides scoped to the region or one of its ancestors, in rank order."""
        try:
            scope = {region.key}
            scope.update(ref.key for ref in self.hierarchy.ancestors(region.name, region.region_type))
        except RegionHierarchyError as e:
            self.logger.error("Region hierarchy lookup failed", region=region.name, error=str(e))
            raise ConfigurationUnavailable(
                "Region hierarchy lookup failed",
                {"region": region.name, "region_type": region.region_type.value}
            ) from e

        applicable = [
            override for override in overrides
            if override.enabled
            and RegionRef(override.region, override.region_type).key in scope
        ]
        applicable.sort(key=override_sort_key)
        return applicable

    def resolve(
        self,
        region: str,
        region_type: RegionType,
        global_config: Dict[str, Any],
        overrides: Iterable[RegionOverride]
    ) -> Dict[str, FeatureResolution]:
        """Effective configuration for `region`; raises InvalidRegion for unknown regions."""
        target = self.hierarchy.lookup(region, region_type)
        effective = global_resolution(global_config)

        touched = set()
        for override in self.applicable_overrides(target, overrides):
            for feature, value in override.feature_overrides.items():
                if feature in touched:
                    continue
                touched.add(feature)
                effective[feature] = FeatureResolution(
                    feature=feature,
                    value=value,
                    source="region",
                    source_region=override.region,
                    region_type=override.region_type,
                    priority=override.priority,
                )

        self.logger.debug(
            "Region configuration resolved",
            region=target.name,
            region_type=target.region_type.value,
            overridden=sorted(touched)
        )
        return effective

