"""
Policy enforcement for inbound HTTP requests.
"""

import math
from typing import Iterable, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse

from shared.errors import (
    AccessDeniedError, FeatureDisabledError, InvalidRegion, MaintenanceModeError,
    PolicyEngineException, RateLimitError
)
from shared.logging import get_logger
from .rules.models import Decision, PolicyRequest
from .service import PolicyService


MAINTENANCE_FEATURE = "maintenanceMode"


def client_ip(request: Request) -> str:
    """Caller address, honouring proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if isinstance(forwarded_for, str) and forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if isinstance(real_ip, str) and real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


def request_user_id(request: Request) -> Optional[str]:
    # Set by an upstream auth middleware when present
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict) and user_info.get("user_id"):
        return str(user_info["user_id"])
    return request.headers.get("X-User-Id")


def request_region(request: Request) -> Tuple[Optional[str], Optional[str]]:
    return request.headers.get("X-Region"), request.headers.get("X-Region-Type")


def build_policy_request(request: Request) -> PolicyRequest:
    return PolicyRequest(
        endpoint=request.url.path,
        method=request.method,
        ip=client_ip(request),
        user_id=request_user_id(request),
        api_key=request.headers.get("X-API-Key"),
        user_agent=request.headers.get("User-Agent"),
        country=request.headers.get("X-Country"),
    )


def error_response(exc: PolicyEngineException, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
        headers=headers
    )


def rate_limit_headers(decision: Decision) -> dict:
    headers = {}
    if decision.limit is not None:
        headers["X-RateLimit-Limit"] = str(decision.limit)
        headers["X-RateLimit-Remaining"] = str(decision.remaining or 0)
    if decision.retry_after_ms is not None:
        headers["Retry-After"] = str(math.ceil(decision.retry_after_ms / 1000))
    return headers


def _rule_details(decision: Decision) -> dict:
    if decision.matched_rule is None:
        return {}
    return {"matchedRule": {"id": decision.matched_rule.rule_id, "name": decision.matched_rule.name}}


class PolicyEnforcer:
    """HTTP middleware: maintenance mode, then access control, then rate limiting.

    Only paths under one of `protected_prefixes` are policed. Rejections are
    returned as responses; exceptions raised here would bypass the app's
    exception handlers.
    """

    def __init__(self, policy: PolicyService, protected_prefixes: Iterable[str] = ("/api/",)):
        self.policy = policy
        self.protected_prefixes = tuple(protected_prefixes)
        self.logger = get_logger("policy.enforcer")

    def is_protected(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.protected_prefixes)

    async def in_maintenance(self, request: Request) -> bool:
        region, region_type = request_region(request)
        if region:
            try:
                return await self.policy.is_feature_enabled(MAINTENANCE_FEATURE, region, region_type)
            except InvalidRegion:
                self.logger.debug("Ignoring unknown region header", region=region)
        return await self.policy.is_feature_enabled(MAINTENANCE_FEATURE)

    async def __call__(self, request: Request, call_next):
        if not self.is_protected(request.url.path):
            return await call_next(request)

        policy_request = build_policy_request(request)
        try:
            if await self.in_maintenance(request):
                return error_response(MaintenanceModeError())
        except PolicyEngineException as e:
            # Serve traffic when the maintenance flag cannot be read.
            self.logger.warning("Maintenance check failed", code=e.code, error=e.message)

        access = await self.policy.check_access(policy_request)
        if not access.allowed:
            return error_response(AccessDeniedError(access.reason or "Access denied", _rule_details(access)))

        limit = await self.policy.check_rate_limit(policy_request)
        if not limit.allowed:
            details = _rule_details(limit)
            details["retry_after_ms"] = limit.retry_after_ms
            return error_response(RateLimitError(details=details), rate_limit_headers(limit))

        response = await call_next(request)
        for name, value in rate_limit_headers(limit).items():
            response.headers[name] = value
        return response


def require_feature(policy: PolicyService, feature: str):
    """FastAPI dependency rejecting requests when `feature` is off for the caller's region."""

    async def dependency(request: Request) -> None:
        region, region_type = request_region(request)
        if not await policy.is_feature_enabled(feature, region, region_type):
            raise FeatureDisabledError(feature, {"feature": feature, "region": region})

    return dependency
