"""
Rules package.

- models: domain dataclasses and enums for rules, decisions and audit records
- patterns: endpoint and method matching shared by rate-limit and access rules
- schemas: pydantic request/response models for the HTTP surface
"""
