"""
HTTP request and response models. Wire format is camelCase JSON.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import (
    AccessControlRule, AccessRuleType, AccessTarget, AuditEntry, Decision, FeatureResolution,
    KeyGenerator, PlatformConfig, RateLimitRule, RateLimitViolation, RegionOverride
)
from .patterns import is_valid_pattern


HTTP_METHODS = {"*", "GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


def _check_method(value: str) -> str:
    method = value.strip().upper()
    if method not in HTTP_METHODS:
        raise ValueError(f"unsupported method '{value}'")
    return method


def _check_pattern(value: str) -> str:
    pattern = value.strip()
    if not is_valid_pattern(pattern):
        raise ValueError("endpoint must be '*' or start with '/'")
    return pattern


def _check_values(values: List[str]) -> List[str]:
    cleaned = [value.strip() for value in values]
    if any(not value for value in cleaned):
        raise ValueError("values may not contain empty entries")
    return cleaned


class ApiModel(BaseModel):
    """Base for wire models: camelCase aliases, snake_case accepted too."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Rate limit rules

class RateLimitRuleCreateRequest(ApiModel):
    """Request model for creating a rate limit rule."""
    name: str = Field(..., min_length=1, description="Rule name")
    description: Optional[str] = Field(None, description="Rule description")
    endpoint: str = Field(..., description="Endpoint pattern, e.g. /api/bookings/:id or /api/*")
    method: str = Field("*", description="HTTP method or *")
    limit: int = Field(..., gt=0, description="Requests allowed per window (inclusive)")
    window_ms: int = Field(..., gt=0, description="Window length in milliseconds")
    priority: int = Field(1, description="Higher priority rules are evaluated first")
    enabled: bool = Field(True, description="Whether the rule is enabled")
    key_generator: KeyGenerator = Field(KeyGenerator.IP, description="Counter subject: ip, user or apiKey")

    @field_validator("method")
    @classmethod
    def _method(cls, value: str) -> str:
        return _check_method(value)

    @field_validator("endpoint")
    @classmethod
    def _endpoint(cls, value: str) -> str:
        return _check_pattern(value)

    @field_validator("key_generator", mode="before")
    @classmethod
    def _key_generator(cls, value: Any) -> Any:
        return KeyGenerator(value) if isinstance(value, str) else value


class RateLimitRuleUpdateRequest(ApiModel):
    """Request model for updating a rate limit rule."""
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    limit: Optional[int] = Field(None, gt=0)
    window_ms: Optional[int] = Field(None, gt=0)
    priority: Optional[int] = None
    enabled: Optional[bool] = None
    key_generator: Optional[KeyGenerator] = None

    @field_validator("method")
    @classmethod
    def _method(cls, value: Optional[str]) -> Optional[str]:
        return _check_method(value) if value is not None else None

    @field_validator("endpoint")
    @classmethod
    def _endpoint(cls, value: Optional[str]) -> Optional[str]:
        return _check_pattern(value) if value is not None else None

    @field_validator("key_generator", mode="before")
    @classmethod
    def _key_generator(cls, value: Any) -> Any:
        return KeyGenerator(value) if isinstance(value, str) else value


class RateLimitRuleResponse(ApiModel):
    id: str
    name: str
    description: Optional[str]
    endpoint: str
    method: str
    limit: int
    window_ms: int
    priority: int
    enabled: bool
    key_generator: KeyGenerator
    created_by: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_rule(cls, rule: RateLimitRule) -> "RateLimitRuleResponse":
        return cls(
            id=rule.rule_id,
            name=rule.name,
            description=rule.description,
            endpoint=rule.endpoint,
            method=rule.method,
            limit=rule.limit,
            window_ms=rule.window_ms,
            priority=rule.priority,
            enabled=rule.enabled,
            key_generator=rule.key_generator,
            created_by=rule.created_by,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


# Access control rules

class AccessControlRuleCreateRequest(ApiModel):
    """Request model for creating an access control rule."""
    name: str = Field(..., min_length=1, description="Rule name")
    description: Optional[str] = Field(None, description="Rule description")
    rule_type: AccessRuleType = Field(..., alias="type", description="whitelist or blacklist")
    target: AccessTarget = Field(..., description="ip, user, apiKey, userAgent or country")
    values: List[str] = Field(..., min_length=1, description="Listed attribute values")
    endpoints: List[str] = Field(default_factory=lambda: ["*"], min_length=1)
    methods: List[str] = Field(default_factory=lambda: ["*"], min_length=1)
    enabled: bool = True
    expires_at: Optional[datetime] = Field(None, description="Rule is ignored after this instant")

    @field_validator("rule_type", mode="before")
    @classmethod
    def _rule_type(cls, value: Any) -> Any:
        return AccessRuleType(value) if isinstance(value, str) else value

    @field_validator("target", mode="before")
    @classmethod
    def _target(cls, value: Any) -> Any:
        return AccessTarget(value) if isinstance(value, str) else value

    @field_validator("values")
    @classmethod
    def _values(cls, values: List[str]) -> List[str]:
        return _check_values(values)

    @field_validator("endpoints")
    @classmethod
    def _endpoints(cls, values: List[str]) -> List[str]:
        return [_check_pattern(value) for value in values]

    @field_validator("methods")
    @classmethod
    def _methods(cls, values: List[str]) -> List[str]:
        return [_check_method(value) for value in values]


class AccessControlRuleUpdateRequest(ApiModel):
    """Request model for updating an access control rule."""
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    rule_type: Optional[AccessRuleType] = Field(None, alias="type")
    target: Optional[AccessTarget] = None
    values: Optional[List[str]] = Field(None, min_length=1)
    endpoints: Optional[List[str]] = Field(None, min_length=1)
    methods: Optional[List[str]] = Field(None, min_length=1)
    enabled: Optional[bool] = None
    expires_at: Optional[datetime] = None

    @field_validator("rule_type", mode="before")
    @classmethod
    def _rule_type(cls, value: Any) -> Any:
        return AccessRuleType(value) if isinstance(value, str) else value

    @field_validator("target", mode="before")
    @classmethod
    def _target(cls, value: Any) -> Any:
        return AccessTarget(value) if isinstance(value, str) else value

    @field_validator("values")
    @classmethod
    def _values(cls, values: Optional[List[str]]) -> Optional[List[str]]:
        return _check_values(values) if values is not None else None

    @field_validator("endpoints")
    @classmethod
    def _endpoints(cls, values: Optional[List[str]]) -> Optional[List[str]]:
        return [_check_pattern(value) for value in values] if values is not None else None

    @field_validator("methods")
    @classmethod
    def _methods(cls, values: Optional[List[str]]) -> Optional[List[str]]:
        return [_check_method(value) for value in values] if values is not None else None


class AccessControlRuleResponse(ApiModel):
    id: str
    name: str
    description: Optional[str]
    rule_type: AccessRuleType = Field(alias="type")
    target: AccessTarget
    values: List[str]
    endpoints: List[str]
    methods: List[str]
    enabled: bool
    expires_at: Optional[datetime]
    created_by: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_rule(cls, rule: AccessControlRule) -> "AccessControlRuleResponse":
        return cls(
            id=rule.rule_id,
            name=rule.name,
            description=rule.description,
            rule_type=rule.rule_type,
            target=rule.target,
            values=list(rule.values),
            endpoints=list(rule.endpoints),
            methods=list(rule.methods),
            enabled=rule.enabled,
            expires_at=rule.expires_at,
            created_by=rule.created_by,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


# Platform config and region overrides

class PlatformConfigUpdateRequest(ApiModel):
    """Partial feature map merged into the current configuration."""
    features: Dict[str, Any] = Field(..., min_length=1)


class PlatformConfigResponse(ApiModel):
    id: str
    features: Dict[str, Any]
    version: int
    updated_at: datetime
    updated_by: Optional[str]

    @classmethod
    def from_config(cls, config: PlatformConfig) -> "PlatformConfigResponse":
        return cls(
            id=config.config_id,
            features=dict(config.features),
            version=config.version,
            updated_at=config.updated_at,
            updated_by=config.updated_by,
        )


class RegionOverrideCreateRequest(ApiModel):
    """Request model for creating a region override."""
    region: str = Field(..., min_length=1, description="Region name, e.g. Oslo")
    region_type: str = Field(..., description="country, fylke or kommune")
    feature_overrides: Dict[str, Any] = Field(..., min_length=1)
    priority: int = Field(1, ge=1, le=100)
    enabled: bool = True
    reason: Optional[str] = None


class BulkRegionOverrideRequest(ApiModel):
    overrides: List[RegionOverrideCreateRequest] = Field(..., min_length=1)


class RegionOverrideUpdateRequest(ApiModel):
    """Request model for updating a region override."""
    region: Optional[str] = Field(None, min_length=1)
    region_type: Optional[str] = None
    feature_overrides: Optional[Dict[str, Any]] = Field(None, min_length=1)
    priority: Optional[int] = Field(None, ge=1, le=100)
    enabled: Optional[bool] = None
    reason: Optional[str] = None


class RegionOverrideResponse(ApiModel):
    id: str
    config_id: str
    region: str
    region_type: str
    feature_overrides: Dict[str, Any]
    priority: int
    enabled: bool
    reason: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_override(cls, override: RegionOverride) -> "RegionOverrideResponse":
        return cls(
            id=override.override_id,
            config_id=override.config_id,
            region=override.region,
            region_type=override.region_type.value,
            feature_overrides=dict(override.feature_overrides),
            priority=override.priority,
            enabled=override.enabled,
            reason=override.reason,
            created_at=override.created_at,
            updated_at=override.updated_at,
        )


# Resolution

class FeatureResolutionResponse(ApiModel):
    feature: str
    value: Any
    source: str
    source_region: Optional[str] = None
    region_type: Optional[str] = None
    priority: Optional[int] = None

    @classmethod
    def from_resolution(cls, resolution: FeatureResolution) -> "FeatureResolutionResponse":
        return cls(
            feature=resolution.feature,
            value=resolution.value,
            source=resolution.source,
            source_region=resolution.source_region,
            region_type=resolution.region_type.value if resolution.region_type else None,
            priority=resolution.priority,
        )


class EffectiveConfigResponse(ApiModel):
    region: str
    region_type: str
    config_version: int
    features: Dict[str, Any]
    sources: Dict[str, FeatureResolutionResponse]


class RuleRefResponse(ApiModel):
    id: str
    name: str


class DecisionResponse(ApiModel):
    """Check outcome. Carries the matched rule identity, never its values."""
    allowed: bool
    matched_rule: Optional[RuleRefResponse] = None
    retry_after_ms: Optional[int] = None
    reason: Optional[str] = None
    degraded: bool = False
    limit: Optional[int] = None
    remaining: Optional[int] = None

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionResponse":
        matched = decision.matched_rule
        return cls(
            allowed=decision.allowed,
            matched_rule=RuleRefResponse(id=matched.rule_id, name=matched.name) if matched else None,
            retry_after_ms=decision.retry_after_ms,
            reason=decision.reason,
            degraded=decision.degraded,
            limit=decision.limit,
            remaining=decision.remaining,
        )


class RateLimitCheckRequest(ApiModel):
    endpoint: str = Field(..., min_length=1)
    method: str = "GET"
    ip: Optional[str] = Field(None, description="Defaults to the caller's address")
    user_id: Optional[str] = None
    api_key: Optional[str] = None
    user_agent: Optional[str] = None


class AccessCheckRequest(RateLimitCheckRequest):
    country: Optional[str] = None


# Reporting

class ViolationResponse(ApiModel):
    id: str
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
    user_id: Optional[str]
    user_agent: Optional[str]
    timestamp: datetime

    @classmethod
    def from_violation(cls, violation: RateLimitViolation) -> "ViolationResponse":
        return cls(
            id=violation.violation_id,
            rule_id=violation.rule_id,
            rule_name=violation.rule_name,
            subject_key=violation.subject_key,
            endpoint=violation.endpoint,
            method=violation.method,
            limit=violation.limit,
            attempts=violation.attempts,
            window_start=violation.window_start,
            window_end=violation.window_end,
            ip_address=violation.ip_address,
            user_id=violation.user_id,
            user_agent=violation.user_agent,
            timestamp=violation.timestamp,
        )


class ViolationListResponse(ApiModel):
    violations: List[ViolationResponse]
    total: int


class AuditEntryResponse(ApiModel):
    id: str
    admin_id: str
    action: str
    entity_type: str
    entity_id: str
    changes: Dict[str, Any]
    timestamp: datetime
    ip_address: Optional[str]

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.entry_id,
            admin_id=entry.admin_id,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            changes=dict(entry.changes),
            timestamp=entry.timestamp,
            ip_address=entry.ip_address,
        )


class AuditLogResponse(ApiModel):
    logs: List[AuditEntryResponse]
    total: int
    has_more: bool
