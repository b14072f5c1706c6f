"""
Rule data models for the Policy Service.
"""

import re
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from shared.errors import InvalidRegion


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _snake_to_camel(value: str) -> str:
    head, *tail = value.strip().split("_")
    return head.lower() + "".join(part.capitalize() for part in tail)


class _WireEnum(str, Enum):
    """String enum accepting camelCase, snake_case and any casing on input."""

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        wanted = _snake_to_camel(value).lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        return None


class RegionType(_WireEnum):
    """Region granularity, broadest first."""
    COUNTRY = "country"
    FYLKE = "fylke"
    KOMMUNE = "kommune"

    @property
    def specificity(self) -> int:
        return REGION_SPECIFICITY[self]


REGION_SPECIFICITY = {
    RegionType.COUNTRY: 1,
    RegionType.FYLKE: 2,
    RegionType.KOMMUNE: 3,
}


def parse_region_type(value: Any) -> RegionType:
    """Parse a region type, raising InvalidRegion for unknown values."""
    if isinstance(value, RegionType):
        return value
    try:
        return RegionType(value)
    except ValueError:
        raise InvalidRegion(
            f"Unknown region type '{value}'",
            {"allowed": [t.value for t in RegionType]}
        )


class KeyGenerator(_WireEnum):
    """Identity a rate-limit rule counts requests against."""
    IP = "ip"
    USER = "user"
    API_KEY = "apiKey"


class AccessRuleType(_WireEnum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"


class AccessTarget(_WireEnum):
    """Request attribute an access-control rule inspects."""
    IP = "ip"
    USER = "user"
    API_KEY = "apiKey"
    USER_AGENT = "userAgent"
    COUNTRY = "country"


class RuleSet(str, Enum):
    """Independently versioned rule sets held by the rule store."""
    PLATFORM_CONFIG = "platform_config"
    REGION_OVERRIDES = "region_overrides"
    RATE_LIMITS = "rate_limits"
    ACCESS_CONTROL = "access_control"


@dataclass
class PlatformConfig:
    """Global feature map. Every administrative update bumps the version."""
    config_id: str
    features: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    updated_at: datetime = field(default_factory=utcnow)
    updated_by: Optional[str] = None


@dataclass
class RegionOverride:
    """Feature overrides scoped to one region."""
    override_id: str
    config_id: str
    region: str
    region_type: RegionType
    feature_overrides: Dict[str, Any] = field(default_factory=dict)
    priority: int = 1
    enabled: bool = True
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RateLimitRule:
    """Rate limit rule."""
    rule_id: str
    name: str
    endpoint: str
    method: str = "*"
    limit: int = 100
    window_ms: int = 60000
    priority: int = 1
    enabled: bool = True
    key_generator: KeyGenerator = KeyGenerator.IP
    description: Optional[str] = None
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AccessControlRule:
    """Whitelist or blacklist rule scoped by endpoint and method."""
    rule_id: str
    name: str
    rule_type: AccessRuleType
    target: AccessTarget
    values: List[str] = field(default_factory=list)
    endpoints: List[str] = field(default_factory=lambda: ["*"])
    methods: List[str] = field(default_factory=lambda: ["*"])
    enabled: bool = True
    expires_at: Optional[datetime] = None
    description: Optional[str] = None
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        """Enabled and not expired. A rule expiring exactly at `now` is still active."""
        if not self.enabled:
            return False
        return self.expires_at is None or self.expires_at >= now


@dataclass(frozen=True)
class RuleRef:
    """Rule identity returned with decisions. Never carries rule values."""
    rule_id: str
    name: str


@dataclass(frozen=True)
class PolicyRequest:
    """Attributes of an inbound request relevant to policy checks."""
    endpoint: str
    method: str
    ip: str
    user_id: Optional[str] = None
    api_key: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None

    def attribute(self, target: AccessTarget) -> Optional[str]:
        if target == AccessTarget.IP:
            return self.ip
        if target == AccessTarget.USER:
            return self.user_id
        if target == AccessTarget.API_KEY:
            return self.api_key
        if target == AccessTarget.USER_AGENT:
            return self.user_agent
        if target == AccessTarget.COUNTRY:
            return self.country
        return None


@dataclass(frozen=True)
class Decision:
    """Outcome of a rate-limit or access-control check."""
    allowed: bool
    matched_rule: Optional[RuleRef] = None
    retry_after_ms: Optional[int] = None
    reason: Optional[str] = None
    degraded: bool = False
    limit: Optional[int] = None
    remaining: Optional[int] = None

    @classmethod
    def allow(cls, reason: Optional[str] = None, matched_rule: Optional[RuleRef] = None,
              degraded: bool = False, limit: Optional[int] = None,
              remaining: Optional[int] = None) -> "Decision":
        return cls(allowed=True, matched_rule=matched_rule, reason=reason, degraded=degraded,
                   limit=limit, remaining=remaining)

    @classmethod
    def deny(cls, reason: str, matched_rule: Optional[RuleRef] = None,
             retry_after_ms: Optional[int] = None, degraded: bool = False,
             limit: Optional[int] = None) -> "Decision":
        return cls(allowed=False, matched_rule=matched_rule, reason=reason,
                   retry_after_ms=retry_after_ms, degraded=degraded,
                   limit=limit, remaining=0 if limit is not None else None)


@dataclass(frozen=True)
class FeatureResolution:
    """Effective value of one feature and where it came from."""
    feature: str
    value: Any
    source: str = "global"
    source_region: Optional[str] = None
    region_type: Optional[RegionType] = None
    priority: Optional[int] = None


@dataclass(frozen=True)
class EffectiveConfig:
    """Feature map resolved for one region, with the config version it was built on."""
    region: str
    region_type: RegionType
    config_version: int
    features: Dict[str, FeatureResolution]


@dataclass(frozen=True)
class RateLimitViolation:
    """Audit record emitted the first time a counter exceeds its limit in a window."""
    violation_id: str
    rule_id: str
    rule_name: str
    subject_key: str
    endpoint: str
    method: str
    limit: int
    attempts: int
    window_start: datetime
    window_end: datetime
    ip_address: str
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuditEntry:
    """Append-only admin audit record."""
    entry_id: str
    admin_id: str
    action: str
    entity_type: str
    entity_id: str
    changes: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def audit_action(entity_type: str, verb: str) -> str:
    """`("rateLimitRule", "created")` -> `RATE_LIMIT_RULE_CREATED`."""
    return f"{_CAMEL_BOUNDARY.sub('_', entity_type).upper()}_{verb.upper()}"
