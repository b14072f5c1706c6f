"""
Policy service for the booking platform.

Serves the rule administration API, region-resolved feature configuration
and remote policy checks. Routes under the protected prefixes pass through
the policy enforcer.
"""

from datetime import datetime
from typing import Optional

from fastapi import Body, Query, Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from .audit.trail import AuditTrail
from .cache.policy_cache import PolicyCache
from .management import RuleManager
from .middleware import PolicyEnforcer, client_ip
from .ratelimit.counters import CounterStore, InMemoryCounterStore, RedisCounterStore
from .ratelimit.matcher import RateLimitMatcher
from .ratelimit.violations import ViolationLog
from .regions.hierarchy import RegionHierarchy
from .rules.models import PolicyRequest
from .rules.schemas import (
    AccessCheckRequest, AccessControlRuleCreateRequest, AccessControlRuleResponse,
    AccessControlRuleUpdateRequest, AuditEntryResponse, AuditLogResponse,
    BulkRegionOverrideRequest, DecisionResponse, EffectiveConfigResponse,
    FeatureResolutionResponse, PlatformConfigResponse, PlatformConfigUpdateRequest,
    RateLimitCheckRequest, RateLimitRuleCreateRequest, RateLimitRuleResponse,
    RateLimitRuleUpdateRequest, RegionOverrideCreateRequest, RegionOverrideResponse,
    RegionOverrideUpdateRequest, ViolationListResponse, ViolationResponse
)
from .service import PolicyService
from .store.base import RuleStore
from .store.memory import MemoryRuleStore
from .store.postgres import PostgresRuleStore


SERVICE_NAME = "policy"
SERVICE_PORT = 8013


def admin_id(request: Request) -> str:
    return request.headers.get("X-Admin-Id") or "anonymous"


class PolicyApp(BaseService):
    """Policy service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))
        self._setup_rate_limit_routes()
        self._setup_access_control_routes()
        self._setup_platform_config_routes()
        self._setup_policy_routes()

    def _setup_middleware(self):
        # Registered before the base middleware so request timing and ids wrap enforcement.
        self._build_components()
        self.app.middleware("http")(self.enforcer)
        super()._setup_middleware()

    def _build_components(self):
        config = self.config
        self.store = self._create_rule_store()
        self.counters = self._create_counter_store()
        self.hierarchy = (
            RegionHierarchy.from_file(config.region_hierarchy_file)
            if config.region_hierarchy_file else RegionHierarchy.default()
        )
        self.cache = PolicyCache(
            ttl_seconds=config.policy_cache_ttl_seconds,
            max_entries=config.policy_cache_max_entries,
            metrics=self.metrics
        )
        self.violations = ViolationLog(config.max_violations)
        self.audit = AuditTrail(config.max_audit_entries)
        self.policy = PolicyService(
            store=self.store,
            hierarchy=self.hierarchy,
            cache=self.cache,
            matcher=RateLimitMatcher(self.counters, self.violations, self.metrics),
            metrics=self.metrics,
            poll_interval=config.version_poll_interval_seconds
        )
        self.manager = RuleManager(self.store, self.policy, self.hierarchy, self.counters, self.audit)
        self.enforcer = PolicyEnforcer(self.policy, config.protected_path_prefixes)

    def _create_rule_store(self) -> RuleStore:
        if self.config.rule_store == "postgres":
            return PostgresRuleStore(self.config.postgres_dsn, self.config.config_id, self.config.feature_toggles)
        return MemoryRuleStore(self.config.config_id, self.config.feature_toggles)

    def _create_counter_store(self) -> CounterStore:
        if self.config.counter_store == "redis":
            return RedisCounterStore(self.config.redis_url)
        return InMemoryCounterStore(shards=self.config.counter_shards)

    def _setup_rate_limit_routes(self):
        """Set up rate limit rule routes."""

        @self.app.post("/rate-limits/rules", status_code=201, response_model=RateLimitRuleResponse)
        async def create_rate_limit_rule(request: Request, body: RateLimitRuleCreateRequest):
            rule = await self.manager.create_rate_limit_rule(body, admin_id(request), client_ip(request))
            return RateLimitRuleResponse.from_rule(rule)

        @self.app.get("/rate-limits/rules")
        async def list_rate_limit_rules(enabled: Optional[bool] = Query(None, description="Filter by state")):
            rules = await self.manager.list_rate_limit_rules(enabled)
            return {"rules": [RateLimitRuleResponse.from_rule(rule) for rule in rules], "total": len(rules)}

        @self.app.get("/rate-limits/rules/{rule_id}", response_model=RateLimitRuleResponse)
        async def get_rate_limit_rule(rule_id: str):
            return RateLimitRuleResponse.from_rule(await self.manager.get_rate_limit_rule(rule_id))

        @self.app.put("/rate-limits/rules/{rule_id}", response_model=RateLimitRuleResponse)
        async def update_rate_limit_rule(rule_id: str, request: Request, body: RateLimitRuleUpdateRequest):
            rule = await self.manager.update_rate_limit_rule(rule_id, body, admin_id(request), client_ip(request))
            return RateLimitRuleResponse.from_rule(rule)

        @self.app.post("/rate-limits/rules/{rule_id}/toggle", response_model=RateLimitRuleResponse)
        async def toggle_rate_limit_rule(rule_id: str, request: Request):
            rule = await self.manager.toggle_rate_limit_rule(rule_id, admin_id(request), client_ip(request))
            return RateLimitRuleResponse.from_rule(rule)

        @self.app.delete("/rate-limits/rules/{rule_id}")
        async def delete_rate_limit_rule(rule_id: str, request: Request):
            await self.manager.delete_rate_limit_rule(rule_id, admin_id(request), client_ip(request))
            return {"message": "Rate limit rule deleted", "id": rule_id}

        @self.app.get("/api-usage/violations", response_model=ViolationListResponse)
        async def list_violations(
            limit: int = Query(100, ge=1, le=10000, description="Maximum violations returned"),
            rule_id: Optional[str] = Query(None, alias="ruleId", description="Filter by rule")
        ):
            violations = self.violations.list(limit=limit, rule_id=rule_id)
            return ViolationListResponse(
                violations=[ViolationResponse.from_violation(v) for v in violations],
                total=len(violations)
            )

    def _setup_access_control_routes(self):
        """Set up access control rule routes."""

        @self.app.post("/access-control/rules", status_code=201, response_model=AccessControlRuleResponse)
        async def create_access_control_rule(request: Request, body: AccessControlRuleCreateRequest):
            rule = await self.manager.create_access_control_rule(body, admin_id(request), client_ip(request))
            return AccessControlRuleResponse.from_rule(rule)

        @self.app.get("/access-control/rules")
        async def list_access_control_rules(enabled: Optional[bool] = Query(None)):
            rules = await self.manager.list_access_control_rules(enabled)
            return {"rules": [AccessControlRuleResponse.from_rule(rule) for rule in rules], "total": len(rules)}

        @self.app.get("/access-control/rules/{rule_id}", response_model=AccessControlRuleResponse)
        async def get_access_control_rule(rule_id: str):
            return AccessControlRuleResponse.from_rule(await self.manager.get_access_control_rule(rule_id))

        @self.app.put("/access-control/rules/{rule_id}", response_model=AccessControlRuleResponse)
        async def update_access_control_rule(rule_id: str, request: Request, body: AccessControlRuleUpdateRequest):
            rule = await self.manager.update_access_control_rule(rule_id, body, admin_id(request), client_ip(request))
            return AccessControlRuleResponse.from_rule(rule)

        @self.app.post("/access-control/rules/{rule_id}/toggle", response_model=AccessControlRuleResponse)
        async def toggle_access_control_rule(rule_id: str, request: Request):
            rule = await self.manager.toggle_access_control_rule(rule_id, admin_id(request), client_ip(request))
            return AccessControlRuleResponse.from_rule(rule)

        @self.app.delete("/access-control/rules/{rule_id}")
        async def delete_access_control_rule(rule_id: str, request: Request):
            await self.manager.delete_access_control_rule(rule_id, admin_id(request), client_ip(request))
            return {"message": "Access control rule deleted", "id": rule_id}

        @self.app.get("/system/audit/logs", response_model=AuditLogResponse)
        async def get_audit_logs(
            admin: Optional[str] = Query(None, alias="adminId"),
            action: Optional[str] = Query(None),
            entity_type: Optional[str] = Query(None, alias="entityType"),
            entity_id: Optional[str] = Query(None, alias="entityId"),
            start_date: Optional[datetime] = Query(None, alias="startDate"),
            end_date: Optional[datetime] = Query(None, alias="endDate"),
            limit: int = Query(50, ge=1, le=1000),
            offset: int = Query(0, ge=0)
        ):
            logs, total, has_more = self.audit.query(
                admin_id=admin,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                start_date=start_date,
                end_date=end_date,
                limit=limit,
                offset=offset
            )
            return AuditLogResponse(
                logs=[AuditEntryResponse.from_entry(entry) for entry in logs],
                total=total,
                has_more=has_more
            )

    def _setup_platform_config_routes(self):
        """Set up platform configuration and region override routes."""

        @self.app.get("/platform-config", response_model=PlatformConfigResponse)
        async def get_platform_config():
            return PlatformConfigResponse.from_config(await self.manager.get_platform_config())

        @self.app.put("/platform-config", response_model=PlatformConfigResponse)
        async def update_platform_config(request: Request, body: PlatformConfigUpdateRequest):
            config = await self.manager.update_platform_config(body.features, admin_id(request), client_ip(request))
            return PlatformConfigResponse.from_config(config)

        @self.app.get("/platform-config/history")
        async def get_platform_config_history():
            history = await self.manager.get_platform_config_history()
            return {"history": [PlatformConfigResponse.from_config(c) for c in history], "total": len(history)}

        @self.app.get("/platform-config/history/compare")
        async def compare_platform_config_versions(
            from_version: int = Query(..., alias="from", ge=1),
            to_version: int = Query(..., alias="to", ge=1)
        ):
            return await self.manager.compare_platform_config_versions(from_version, to_version)

        @self.app.get("/platform-config/rollback/{version}/safety")
        async def check_rollback_safety(version: int):
            return await self.manager.check_rollback_safety(version)

        @self.app.post("/platform-config/rollback/{version}", response_model=PlatformConfigResponse)
        async def rollback_platform_config(version: int, request: Request):
            config = await self.manager.rollback_platform_config(version, admin_id(request), client_ip(request))
            return PlatformConfigResponse.from_config(config)

        @self.app.post("/platform-config/region-overrides", status_code=201, response_model=RegionOverrideResponse)
        async def create_region_override(request: Request, body: RegionOverrideCreateRequest):
            override = await self.manager.create_region_override(body, admin_id(request), client_ip(request))
            return RegionOverrideResponse.from_override(override)

        @self.app.post("/platform-config/region-overrides/bulk", status_code=201)
        async def bulk_create_region_overrides(request: Request, body: BulkRegionOverrideRequest):
            overrides = await self.manager.bulk_create_region_overrides(
                body.overrides, admin_id(request), client_ip(request)
            )
            return {
                "overrides": [RegionOverrideResponse.from_override(o) for o in overrides],
                "total": len(overrides)
            }

        @self.app.get("/platform-config/region-overrides")
        async def list_region_overrides(
            region: Optional[str] = Query(None),
            region_type: Optional[str] = Query(None, alias="regionType"),
            enabled: Optional[bool] = Query(None)
        ):
            overrides = await self.manager.list_region_overrides(region, region_type, enabled)
            return {
                "overrides": [RegionOverrideResponse.from_override(o) for o in overrides],
                "total": len(overrides)
            }

        @self.app.get("/platform-config/region-overrides/stats")
        async def region_override_stats():
            return await self.manager.region_override_stats()

        @self.app.get("/platform-config/region-overrides/{override_id}", response_model=RegionOverrideResponse)
        async def get_region_override(override_id: str):
            return RegionOverrideResponse.from_override(await self.manager.get_region_override(override_id))

        @self.app.put("/platform-config/region-overrides/{override_id}", response_model=RegionOverrideResponse)
        async def update_region_override(override_id: str, request: Request, body: RegionOverrideUpdateRequest):
            override = await self.manager.update_region_override(
                override_id, body, admin_id(request), client_ip(request)
            )
            return RegionOverrideResponse.from_override(override)

        @self.app.delete("/platform-config/region-overrides/{override_id}")
        async def delete_region_override(override_id: str, request: Request):
            await self.manager.delete_region_override(override_id, admin_id(request), client_ip(request))
            return {"message": "Region override deleted", "id": override_id}

    def _setup_policy_routes(self):
        """Set up resolution and remote check routes."""

        @self.app.get("/policy/effective-config", response_model=EffectiveConfigResponse)
        async def get_effective_config(
            region: str = Query(..., description="Region name"),
            region_type: str = Query(..., alias="regionType", description="country, fylke or kommune")
        ):
            effective = await self.policy.resolve_effective_config(region, region_type)
            return EffectiveConfigResponse(
                region=effective.region,
                region_type=effective.region_type.value,
                config_version=effective.config_version,
                features={name: resolution.value for name, resolution in effective.features.items()},
                sources={
                    name: FeatureResolutionResponse.from_resolution(resolution)
                    for name, resolution in effective.features.items()
                }
            )

        @self.app.get("/policy/features/{feature}")
        async def get_feature(
            feature: str,
            region: str = Query(...),
            region_type: str = Query(..., alias="regionType")
        ):
            resolution = await self.policy.get_feature(feature, region, region_type)
            body = FeatureResolutionResponse.from_resolution(resolution).model_dump(mode="json", by_alias=True)
            body["enabled"] = bool(resolution.value)
            return body

        @self.app.post("/policy/rate-limit/check", response_model=DecisionResponse)
        async def check_rate_limit(request: Request, body: RateLimitCheckRequest = Body(...)):
            decision = await self.policy.check_rate_limit(PolicyRequest(
                endpoint=body.endpoint,
                method=body.method,
                ip=body.ip or client_ip(request),
                user_id=body.user_id,
                api_key=body.api_key,
                user_agent=body.user_agent,
            ))
            return DecisionResponse.from_decision(decision)

        @self.app.post("/policy/access/check", response_model=DecisionResponse)
        async def check_access(request: Request, body: AccessCheckRequest = Body(...)):
            decision = await self.policy.check_access(PolicyRequest(
                endpoint=body.endpoint,
                method=body.method,
                ip=body.ip or client_ip(request),
                user_id=body.user_id,
                api_key=body.api_key,
                user_agent=body.user_agent,
                country=body.country,
            ))
            return DecisionResponse.from_decision(decision)

        @self.app.get("/policy/stats")
        async def get_policy_stats():
            stats = self.policy.stats()
            stats["auditEntries"] = len(self.audit)
            return stats

    async def _check_dependencies(self):
        """Check rule and counter store health."""
        return {
            "rule_store": "ok" if await self.store.health_check() else "error",
            "counter_store": "ok" if await self.counters.health_check() else "error",
        }

    async def start(self):
        """Start policy service components."""
        await self.store.start()
        await self.counters.start()
        await self.policy.start()
        self.logger.info("Policy service started", rule_store=self.config.rule_store,
                         counter_store=self.config.counter_store, regions=len(self.hierarchy))

    async def stop(self):
        """Stop policy service components."""
        await self.policy.stop()
        await self.counters.stop()
        await self.store.stop()
        self.logger.info("Policy service stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create policy service application."""
    service = PolicyApp(config)
    return service.app


if __name__ == "__main__":
    service = PolicyApp()
    service.run()
