"""
Policy Service package.

Resolves region-scoped feature configuration and evaluates rate-limit and
access-control rules for the booking platform. It provides:

- app.main: HTTP API for rule administration, resolution and checks.
- app.service: PolicyService composing the resolvers and the policy cache.
- app.management: validated, audited rule and configuration changes.
- app.middleware: request enforcement and feature gating for FastAPI apps.
- app.regions, app.ratelimit, app.access: the three resolvers.
- app.store, app.cache, app.audit: storage, caching and audit trail.
"""
