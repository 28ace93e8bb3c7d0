"""
TenantGuard configuration.

GuardConfig collects every tunable of the isolation guard and the connection
gateway: database connection, pool sizing, timeouts, profiler thresholds and
the policy switches that decide how strictly tenant parameters are treated.

Environment Variables (default TENANTGUARD prefix):
    TENANTGUARD_DATABASE_URL: PostgreSQL DSN (falls back to DATABASE_URL)
    TENANTGUARD_DATABASE_SSL: Require SSL (true/false, or PGSSLMODE=require)
    TENANTGUARD_POOL_MIN_SIZE / TENANTGUARD_POOL_MAX_SIZE: Pool bounds
    TENANTGUARD_STATEMENT_TIMEOUT: Seconds for a single statement
    TENANTGUARD_TRANSACTION_TIMEOUT: Seconds for a whole transaction
    TENANTGUARD_PROFILER_CAPACITY: Query metrics kept in memory
    TENANTGUARD_SLOW_QUERY_MS: Slow-query warning threshold
    TENANTGUARD_ANALYSIS_SLOW_QUERY_MS: Threshold used by performance reports
    TENANTGUARD_SYSTEM_TABLES: Comma-separated tables without tenant data
    TENANTGUARD_AUTO_INJECT: Add missing tenant predicates instead of rejecting
    TENANTGUARD_STRICT_TENANT_PARAMETERS: Reject mismatched tenant parameters

Usage:
    from tenantguard.core.config import GuardConfig

    config = GuardConfig.from_env()
    config = GuardConfig(database_url="postgresql://localhost/app", max_pool_size=20)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

logger = logging.getLogger(__name__)

# Tables that never hold tenant data
DEFAULT_SYSTEM_TABLES: FrozenSet[str] = frozenset(
    {"migrations", "schema_versions", "system_config", "audit_logs"}
)

DEFAULT_STATEMENT_TIMEOUT = 5.0
DEFAULT_TRANSACTION_TIMEOUT = 30.0
DEFAULT_PROFILER_CAPACITY = 1000
DEFAULT_SLOW_QUERY_MS = 1000.0
DEFAULT_ANALYSIS_SLOW_QUERY_MS = 500.0


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.lower().strip() in ("true", "1", "yes", "on")


def _parse_number(name: str, value: Optional[str], default, cast):
    if value is None or not value.strip():
        return default
    try:
        return cast(value)
    except ValueError:
        logger.warning(f"Invalid value '{value}' for {name}, using default {default}")
        return default


@dataclass
class GuardConfig:
    """Configuration for the isolation guard and connection gateway.

    Attributes:
        database_url: PostgreSQL DSN used by the process-wide pool.
        min_pool_size: Connections opened eagerly by the pool.
        max_pool_size: Upper bound on pooled connections.
        ssl: Require SSL without certificate verification.
        statement_timeout: Default deadline in seconds for execute_sql.
        transaction_timeout: Default deadline in seconds for transactions.
        profiler_capacity: Size of the query metrics ring buffer.
        slow_query_threshold_ms: Queries slower than this are logged.
        analysis_slow_threshold_ms: Queries slower than this appear in
            performance reports.
        system_tables: Tables that never hold tenant data.
        auto_inject_tenant_predicate: Add ``tenant_id = $N`` to multi-tenant
            SELECT/UPDATE/DELETE statements that lack it instead of
            rejecting them.
        strict_tenant_parameters: Reject a statement whose bound tenant
            parameter differs from the request tenant instead of
            overwriting it.
    """

    database_url: Optional[str] = None
    min_pool_size: int = 1
    max_pool_size: int = 10
    ssl: bool = False
    statement_timeout: float = DEFAULT_STATEMENT_TIMEOUT
    transaction_timeout: float = DEFAULT_TRANSACTION_TIMEOUT
    profiler_capacity: int = DEFAULT_PROFILER_CAPACITY
    slow_query_threshold_ms: float = DEFAULT_SLOW_QUERY_MS
    analysis_slow_threshold_ms: float = DEFAULT_ANALYSIS_SLOW_QUERY_MS
    system_tables: FrozenSet[str] = field(default_factory=lambda: DEFAULT_SYSTEM_TABLES)
    auto_inject_tenant_predicate: bool = False
    strict_tenant_parameters: bool = False

    def __post_init__(self) -> None:
        self.system_tables = frozenset(t.lower() for t in self.system_tables)
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If a size or timeout is out of range.
        """
        if self.min_pool_size < 0:
            raise ValueError("min_pool_size must be >= 0")
        if self.max_pool_size < 1:
            raise ValueError("max_pool_size must be >= 1")
        if self.min_pool_size > self.max_pool_size:
            raise ValueError(
                f"min_pool_size ({self.min_pool_size}) cannot exceed "
                f"max_pool_size ({self.max_pool_size})"
            )
        if self.statement_timeout <= 0:
            raise ValueError("statement_timeout must be positive")
        if self.transaction_timeout <= 0:
            raise ValueError("transaction_timeout must be positive")
        if self.profiler_capacity < 1:
            raise ValueError("profiler_capacity must be >= 1")

    @classmethod
    def from_env(cls, prefix: str = "TENANTGUARD") -> "GuardConfig":
        """Create configuration from environment variables.

        Args:
            prefix: Environment variable prefix (default: TENANTGUARD)

        Returns:
            GuardConfig instance configured from environment.
        """
        database_url = os.getenv(f"{prefix}_DATABASE_URL") or os.getenv("DATABASE_URL")
        ssl = _parse_bool(
            os.getenv(f"{prefix}_DATABASE_SSL"),
            os.getenv("PGSSLMODE", "").lower() == "require",
        )

        system_tables = DEFAULT_SYSTEM_TABLES
        extra_tables = os.getenv(f"{prefix}_SYSTEM_TABLES")
        if extra_tables:
            system_tables = system_tables | frozenset(
                t.strip().lower() for t in extra_tables.split(",") if t.strip()
            )

        return cls(
            database_url=database_url,
            min_pool_size=_parse_number(
                "min_pool_size", os.getenv(f"{prefix}_POOL_MIN_SIZE"), 1, int
            ),
            max_pool_size=_parse_number(
                "max_pool_size", os.getenv(f"{prefix}_POOL_MAX_SIZE"), 10, int
            ),
            ssl=ssl,
            statement_timeout=_parse_number(
                "statement_timeout",
                os.getenv(f"{prefix}_STATEMENT_TIMEOUT"),
                DEFAULT_STATEMENT_TIMEOUT,
                float,
            ),
            transaction_timeout=_parse_number(
                "transaction_timeout",
                os.getenv(f"{prefix}_TRANSACTION_TIMEOUT"),
                DEFAULT_TRANSACTION_TIMEOUT,
                float,
            ),
            profiler_capacity=_parse_number(
                "profiler_capacity",
                os.getenv(f"{prefix}_PROFILER_CAPACITY"),
                DEFAULT_PROFILER_CAPACITY,
                int,
            ),
            slow_query_threshold_ms=_parse_number(
                "slow_query_threshold_ms",
                os.getenv(f"{prefix}_SLOW_QUERY_MS"),
                DEFAULT_SLOW_QUERY_MS,
                float,
            ),
            analysis_slow_threshold_ms=_parse_number(
                "analysis_slow_threshold_ms",
                os.getenv(f"{prefix}_ANALYSIS_SLOW_QUERY_MS"),
                DEFAULT_ANALYSIS_SLOW_QUERY_MS,
                float,
            ),
            system_tables=system_tables,
            auto_inject_tenant_predicate=_parse_bool(
                os.getenv(f"{prefix}_AUTO_INJECT"), False
            ),
            strict_tenant_parameters=_parse_bool(
                os.getenv(f"{prefix}_STRICT_TENANT_PARAMETERS"), False
            ),
        )
