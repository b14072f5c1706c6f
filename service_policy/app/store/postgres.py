"""
PostgreSQL rule store.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import StoreUnavailable
from shared.logging import get_logger
from shared.retry import Backoff, RetryError, retry_async
from ..rules.models import (
    AccessControlRule, AccessRuleType, AccessTarget, KeyGenerator, PlatformConfig,
    RateLimitRule, RegionOverride, RegionType, RuleSet, utcnow
)
from .base import RuleStore


_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS rule_set_versions (
        rule_set VARCHAR(50) PRIMARY KEY,
        version BIGINT NOT NULL DEFAULT 1
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS platform_configs (
        config_id VARCHAR(255) NOT NULL,
        version INTEGER NOT NULL,
        features JSONB NOT NULL DEFAULT '{}',
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_by VARCHAR(255),
        PRIMARY KEY (config_id, version)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS region_overrides (
        override_id VARCHAR(255) PRIMARY KEY,
        config_id VARCHAR(255) NOT NULL,
        region VARCHAR(255) NOT NULL,
        region_type VARCHAR(20) NOT NULL,
        feature_overrides JSONB NOT NULL DEFAULT '{}',
        priority INTEGER NOT NULL DEFAULT 1,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        reason TEXT,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limit_rules (
        rule_id VARCHAR(255) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        endpoint VARCHAR(500) NOT NULL,
        method VARCHAR(10) NOT NULL DEFAULT '*',
        request_limit INTEGER NOT NULL,
        window_ms BIGINT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 1,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        key_generator VARCHAR(20) NOT NULL DEFAULT 'ip',
        created_by VARCHAR(255) NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS access_control_rules (
        rule_id VARCHAR(255) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        rule_type VARCHAR(20) NOT NULL,
        target VARCHAR(20) NOT NULL,
        rule_values TEXT[] NOT NULL,
        endpoints TEXT[] NOT NULL,
        methods TEXT[] NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        expires_at TIMESTAMP WITH TIME ZONE,
        created_by VARCHAR(255) NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_region_overrides_config ON region_overrides(config_id);",
    "CREATE INDEX IF NOT EXISTS idx_region_overrides_region ON region_overrides(region_type, region);",
    "CREATE INDEX IF NOT EXISTS idx_rate_limit_rules_enabled ON rate_limit_rules(enabled);",
    "CREATE INDEX IF NOT EXISTS idx_access_control_rules_enabled ON access_control_rules(enabled);",
]


def _row_to_platform_config(row) -> PlatformConfig:
    return PlatformConfig(
        config_id=row["config_id"],
        features=dict(row["features"]),
        version=row["version"],
        updated_at=row["updated_at"],
        updated_by=row["updated_by"],
    )


def _row_to_region_override(row) -> RegionOverride:
    return RegionOverride(
        override_id=row["override_id"],
        config_id=row["config_id"],
        region=row["region"],
        region_type=RegionType(row["region_type"]),
        feature_overrides=dict(row["feature_overrides"]),
        priority=row["priority"],
        enabled=row["enabled"],
        reason=row["reason"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_rate_limit_rule(row) -> RateLimitRule:
    return RateLimitRule(
        rule_id=row["rule_id"],
        name=row["name"],
        description=row["description"],
        endpoint=row["endpoint"],
        method=row["method"],
        limit=row["request_limit"],
        window_ms=row["window_ms"],
        priority=row["priority"],
        enabled=row["enabled"],
        key_generator=KeyGenerator(row["key_generator"]),
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_access_control_rule(row) -> AccessControlRule:
    return AccessControlRule(
        rule_id=row["rule_id"],
        name=row["name"],
        description=row["description"],
        rule_type=AccessRuleType(row["rule_type"]),
        target=AccessTarget(row["target"]),
        values=list(row["rule_values"]),
        endpoints=list(row["endpoints"]),
        methods=list(row["methods"]),
        enabled=row["enabled"],
        expires_at=row["expires_at"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresRuleStore(RuleStore):
    """Rule sets persisted in PostgreSQL through an asyncpg pool."""

    def __init__(self, dsn: str, config_id: str = "default",
                 initial_features: Optional[Dict[str, Any]] = None,
                 connect_backoff: Optional[Backoff] = None):
        super().__init__(config_id, initial_features)
        self.dsn = dsn
        self.connect_backoff = connect_backoff or Backoff()
        self.logger = get_logger("policy.store.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    @staticmethod
    async def _init_connection(conn: asyncpg.Connection) -> None:
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def start(self):
        """Open the pool, create tables and seed the first config version."""
        async def create_pool():
            return await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30,
                init=self._init_connection
            )

        try:
            self.pool = await retry_async(create_pool, _DB_ERRORS, self.connect_backoff, name="postgres_connect")
            await self._create_tables()
            await self._seed()
            self.logger.info("PostgreSQL rule store started")
        except RetryError as e:
            self.logger.error("Failed to start PostgreSQL rule store", error=str(e.last_exception))
            raise StoreUnavailable("rule_store", str(e.last_exception)) from e
        except _DB_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL rule store", error=str(e))
            raise StoreUnavailable("rule_store", str(e)) from e

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL rule store stopped")

    async def health_check(self) -> bool:
        try:
            async with self._connection() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except StoreUnavailable:
            return False

    @asynccontextmanager
    async def _connection(self, transaction: bool = False):
        if self.pool is None:
            raise StoreUnavailable("rule_store", "not started")
        try:
            async with self.pool.acquire() as conn:
                if transaction:
                    async with conn.transaction():
                        yield conn
                else:
                    yield conn
        except _DB_ERRORS as e:
            self.logger.error("Rule store query failed", error=str(e))
            raise StoreUnavailable("rule_store", str(e)) from e

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)

    async def _seed(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    "INSERT INTO rule_set_versions (rule_set, version) VALUES ($1, 1) "
                    "ON CONFLICT (rule_set) DO NOTHING",
                    [(rule_set.value,) for rule_set in RuleSet]
                )
                await conn.execute("""
                    INSERT INTO platform_configs (config_id, version, features, updated_by)
                    SELECT $1, 1, $2, 'system'
                    WHERE NOT EXISTS (SELECT 1 FROM platform_configs WHERE config_id = $1)
                """, self.config_id, self.initial_features)

    @staticmethod
    async def _bump(conn: asyncpg.Connection, rule_set: RuleSet) -> int:
        return await conn.fetchval("""
            INSERT INTO rule_set_versions (rule_set, version) VALUES ($1, 1)
            ON CONFLICT (rule_set) DO UPDATE SET version = rule_set_versions.version + 1
            RETURNING version
        """, rule_set.value)

    async def get_versions(self) -> Dict[RuleSet, int]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT rule_set, version FROM rule_set_versions")
        versions = {rule_set: 1 for rule_set in RuleSet}
        for row in rows:
            try:
                versions[RuleSet(row["rule_set"])] = row["version"]
            except ValueError:
                continue
        return versions

    # Platform configuration

    async def get_platform_config(self) -> PlatformConfig:
        async with self._connection() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM platform_configs WHERE config_id = $1
                ORDER BY version DESC LIMIT 1
            """, self.config_id)
        if row is None:
            return PlatformConfig(config_id=self.config_id, features=dict(self.initial_features))
        return _row_to_platform_config(row)

    async def get_platform_config_history(self) -> List[PlatformConfig]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM platform_configs WHERE config_id = $1 ORDER BY version DESC",
                self.config_id
            )
        return [_row_to_platform_config(row) for row in rows]

    async def save_platform_config(self, features: Dict[str, Any], updated_by: str) -> PlatformConfig:
        async with self._connection(transaction=True) as conn:
            version = await self._bump(conn, RuleSet.PLATFORM_CONFIG)
            row = await conn.fetchrow("""
                INSERT INTO platform_configs (config_id, version, features, updated_at, updated_by)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
            """, self.config_id, version, features, utcnow(), updated_by)
        self.logger.info("Platform config saved", version=version, updated_by=updated_by)
        return _row_to_platform_config(row)

    # Region overrides

    async def list_region_overrides(self) -> List[RegionOverride]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM region_overrides WHERE config_id = $1", self.config_id
            )
        return [_row_to_region_override(row) for row in rows]

    async def get_region_override(self, override_id: str) -> Optional[RegionOverride]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM region_overrides WHERE override_id = $1", override_id
            )
        return _row_to_region_override(row) if row else None

    async def save_region_override(self, override: RegionOverride) -> RegionOverride:
        async with self._connection(transaction=True) as conn:
            await conn.execute("""
                INSERT INTO region_overrides (
                    override_id, config_id, region, region_type, feature_overrides,
                    priority, enabled, reason, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (override_id) DO UPDATE SET
                    region = EXCLUDED.region,
                    region_type = EXCLUDED.region_type,
                    feature_overrides = EXCLUDED.feature_overrides,
                    priority = EXCLUDED.priority,
                    enabled = EXCLUDED.enabled,
                    reason = EXCLUDED.reason,
                    updated_at = EXCLUDED.updated_at
            """,
                override.override_id, override.config_id, override.region,
                override.region_type.value, override.feature_overrides, override.priority,
                override.enabled, override.reason, override.created_at, override.updated_at
            )
            await self._bump(conn, RuleSet.REGION_OVERRIDES)
        return override

    async def delete_region_override(self, override_id: str) -> bool:
        return await self._delete("region_overrides", "override_id", override_id, RuleSet.REGION_OVERRIDES)

    # Rate limit rules

    async def list_rate_limit_rules(self) -> List[RateLimitRule]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT * FROM rate_limit_rules")
        return [_row_to_rate_limit_rule(row) for row in rows]

    async def get_rate_limit_rule(self, rule_id: str) -> Optional[RateLimitRule]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM rate_limit_rules WHERE rule_id = $1", rule_id)
        return _row_to_rate_limit_rule(row) if row else None

    async def save_rate_limit_rule(self, rule: RateLimitRule) -> RateLimitRule:
        async with self._connection(transaction=True) as conn:
            await conn.execute("""
                INSERT INTO rate_limit_rules (
                    rule_id, name, description, endpoint, method, request_limit, window_ms,
                    priority, enabled, key_generator, created_by, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                ON CONFLICT (rule_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    endpoint = EXCLUDED.endpoint,
                    method = EXCLUDED.method,
                    request_limit = EXCLUDED.request_limit,
                    window_ms = EXCLUDED.window_ms,
                    priority = EXCLUDED.priority,
                    enabled = EXCLUDED.enabled,
                    key_generator = EXCLUDED.key_generator,
                    updated_at = EXCLUDED.updated_at
            """,
                rule.rule_id, rule.name, rule.description, rule.endpoint, rule.method,
                rule.limit, rule.window_ms, rule.priority, rule.enabled,
                rule.key_generator.value, rule.created_by, rule.created_at, rule.updated_at
            )
            await self._bump(conn, RuleSet.RATE_LIMITS)
        self.logger.info("Rate limit rule saved", rule_id=rule.rule_id, name=rule.name)
        return rule

    async def delete_rate_limit_rule(self, rule_id: str) -> bool:
        return await self._delete("rate_limit_rules", "rule_id", rule_id, RuleSet.RATE_LIMITS)

    # Access control rules

    async def list_access_control_rules(self) -> List[AccessControlRule]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT * FROM access_control_rules")
        return [_row_to_access_control_rule(row) for row in rows]

    async def get_access_control_rule(self, rule_id: str) -> Optional[AccessControlRule]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM access_control_rules WHERE rule_id = $1", rule_id)
        return _row_to_access_control_rule(row) if row else None

    async def save_access_control_rule(self, rule: AccessControlRule) -> AccessControlRule:
        async with self._connection(transaction=True) as conn:
            await conn.execute("""
                INSERT INTO access_control_rules (
                    rule_id, name, description, rule_type, target, rule_values, endpoints,
                    methods, enabled, expires_at, created_by, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                ON CONFLICT (rule_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    rule_type = EXCLUDED.rule_type,
                    target = EXCLUDED.target,
                    rule_values = EXCLUDED.rule_values,
                    endpoints = EXCLUDED.endpoints,
                    methods = EXCLUDED.methods,
                    enabled = EXCLUDED.enabled,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = EXCLUDED.updated_at
            """,
                rule.rule_id, rule.name, rule.description, rule.rule_type.value,
                rule.target.value, rule.values, rule.endpoints, rule.methods, rule.enabled,
                rule.expires_at, rule.created_by, rule.created_at, rule.updated_at
            )
            await self._bump(conn, RuleSet.ACCESS_CONTROL)
        self.logger.info("Access control rule saved", rule_id=rule.rule_id, name=rule.name)
        return rule

    async def delete_access_control_rule(self, rule_id: str) -> bool:
        return await self._delete("access_control_rules", "rule_id", rule_id, RuleSet.ACCESS_CONTROL)

    async def _delete(self, table: str, id_column: str, record_id: str, rule_set: RuleSet) -> bool:
        async with self._connection(transaction=True) as conn:
            result = await conn.execute(f"DELETE FROM {table} WHERE {id_column} = $1", record_id)
            deleted = result.split()[-1] != "0"
            if deleted:
                await self._bump(conn, rule_set)
        if deleted:
            self.logger.info("Record deleted", table=table, record_id=record_id)
        return deleted
