"""
Rule store interface.

The store hands out raw records and a version counter per rule set; it
never interprets rules. Every write bumps the version of the rule set it
touches, which is what the policy cache keys on.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..rules.models import (
    AccessControlRule, PlatformConfig, RateLimitRule, RegionOverride, RuleSet
)


class RuleStore(ABC):
    """Durable storage for platform config and rule sets.

    Implementations raise `StoreUnavailable` when the backend cannot be reached.
    """

    def __init__(self, config_id: str, initial_features: Optional[Dict[str, Any]] = None):
        self.config_id = config_id
        self.initial_features = dict(initial_features or {})

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def get_versions(self) -> Dict[RuleSet, int]:
        """Current version of every rule set."""

    # Platform configuration

    @abstractmethod
    async def get_platform_config(self) -> PlatformConfig:
        """Latest platform configuration."""

    @abstractmethod
    async def get_platform_config_history(self) -> List[PlatformConfig]:
        """Every stored version, newest first."""

    @abstractmethod
    async def save_platform_config(self, features: Dict[str, Any], updated_by: str) -> PlatformConfig:
        """Store a new version holding `features` and return it."""

    # Region overrides

    @abstractmethod
    async def list_region_overrides(self) -> List[RegionOverride]:
        """Overrides of the owning config."""

    @abstractmethod
    async def get_region_override(self, override_id: str) -> Optional[RegionOverride]:
        ...

    @abstractmethod
    async def save_region_override(self, override: RegionOverride) -> RegionOverride:
        ...

    @abstractmethod
    async def delete_region_override(self, override_id: str) -> bool:
        ...

    # Rate limit rules

    @abstractmethod
    async def list_rate_limit_rules(self) -> List[RateLimitRule]:
        ...

    @abstractmethod
    async def get_rate_limit_rule(self, rule_id: str) -> Optional[RateLimitRule]:
        ...

    @abstractmethod
    async def save_rate_limit_rule(self, rule: RateLimitRule) -> RateLimitRule:
        ...

    @abstractmethod
    async def delete_rate_limit_rule(self, rule_id: str) -> bool:
        ...

    # Access control rules

    @abstractmethod
    async def list_access_control_rules(self) -> List[AccessControlRule]:
        ...

    @abstractmethod
    async def get_access_control_rule(self, rule_id: str) -> Optional[AccessControlRule]:
        ...

    @abstractmethod
    async def save_access_control_rule(self, rule: AccessControlRule) -> AccessControlRule:
        ...

    @abstractmethod
    async def delete_access_control_rule(self, rule_id: str) -> bool:
        ...
