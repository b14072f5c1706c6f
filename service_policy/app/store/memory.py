"""
In-memory rule store for local development and tests.
"""

import copy
import threading
from typing import Any, Dict, List, Optional

from shared.logging import get_logger
from ..rules.models import (
    AccessControlRule, PlatformConfig, RateLimitRule, RegionOverride, RuleSet, utcnow
)
from .base import RuleStore


class MemoryRuleStore(RuleStore):
    """Keeps every rule set in process memory. Records are copied on the way in and out."""

    def __init__(self, config_id: str = "default", initial_features: Optional[Dict[str, Any]] = None):
        super().__init__(config_id, initial_features)
        self.logger = get_logger("policy.store.memory")
        self._lock = threading.Lock()
        self._versions: Dict[RuleSet, int] = {rule_set: 1 for rule_set in RuleSet}
        self._config_history: List[PlatformConfig] = [
            PlatformConfig(config_id=config_id, features=dict(self.initial_features), version=1)
        ]
        self._region_overrides: Dict[str, RegionOverride] = {}
        self._rate_limit_rules: Dict[str, RateLimitRule] = {}
        self._access_control_rules: Dict[str, AccessControlRule] = {}

    def _bump(self, rule_set: RuleSet) -> int:
        self._versions[rule_set] += 1
        return self._versions[rule_set]

    async def get_versions(self) -> Dict[RuleSet, int]:
        with self._lock:
            return dict(self._versions)

    async def get_platform_config(self) -> PlatformConfig:
        with self._lock:
            return copy.deepcopy(self._config_history[-1])

    async def get_platform_config_history(self) -> List[PlatformConfig]:
        with self._lock:
            return [copy.deepcopy(config) for config in reversed(self._config_history)]

    async def save_platform_config(self, features: Dict[str, Any], updated_by: str) -> PlatformConfig:
        with self._lock:
            config = PlatformConfig(
                config_id=self.config_id,
                features=copy.deepcopy(features),
                version=self._bump(RuleSet.PLATFORM_CONFIG),
                updated_at=utcnow(),
                updated_by=updated_by,
            )
            self._config_history.append(config)
            result = copy.deepcopy(config)
        self.logger.info("Platform config saved", version=result.version, updated_by=updated_by)
        return result

    def _list(self, records: Dict[str, Any]) -> List[Any]:
        with self._lock:
            return [copy.deepcopy(record) for record in records.values()]

    def _get(self, records: Dict[str, Any], record_id: str) -> Optional[Any]:
        with self._lock:
            record = records.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def _save(self, records: Dict[str, Any], record_id: str, record: Any, rule_set: RuleSet) -> Any:
        with self._lock:
            records[record_id] = copy.deepcopy(record)
            self._bump(rule_set)
        return record

    def _delete(self, records: Dict[str, Any], record_id: str, rule_set: RuleSet) -> bool:
        with self._lock:
            if records.pop(record_id, None) is None:
                return False
            self._bump(rule_set)
            return True

    async def list_region_overrides(self) -> List[RegionOverride]:
        return [o for o in self._list(self._region_overrides) if o.config_id == self.config_id]

    async def get_region_override(self, override_id: str) -> Optional[RegionOverride]:
        return self._get(self._region_overrides, override_id)

    async def save_region_override(self, override: RegionOverride) -> RegionOverride:
        return self._save(self._region_overrides, override.override_id, override, RuleSet.REGION_OVERRIDES)

    async def delete_region_override(self, override_id: str) -> bool:
        return self._delete(self._region_overrides, override_id, RuleSet.REGION_OVERRIDES)

    async def list_rate_limit_rules(self) -> List[RateLimitRule]:
        return self._list(self._rate_limit_rules)

    async def get_rate_limit_rule(self, rule_id: str) -> Optional[RateLimitRule]:
        return self._get(self._rate_limit_rules, rule_id)

    async def save_rate_limit_rule(self, rule: RateLimitRule) -> RateLimitRule:
        return self._save(self._rate_limit_rules, rule.rule_id, rule, RuleSet.RATE_LIMITS)

    async def delete_rate_limit_rule(self, rule_id: str) -> bool:
        return self._delete(self._rate_limit_rules, rule_id, RuleSet.RATE_LIMITS)

    async def list_access_control_rules(self) -> List[AccessControlRule]:
        return self._list(self._access_control_rules)

    async def get_access_control_rule(self, rule_id: str) -> Optional[AccessControlRule]:
        return self._get(self._access_control_rules, rule_id)

    async def save_access_control_rule(self, rule: AccessControlRule) -> AccessControlRule:
        return self._save(self._access_control_rules, rule.rule_id, rule, RuleSet.ACCESS_CONTROL)

    async def delete_access_control_rule(self, rule_id: str) -> bool:
        return self._delete(self._access_control_rules, rule_id, RuleSet.ACCESS_CONTROL)
