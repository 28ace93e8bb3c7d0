"""
TenantGuard - tenant isolation for shared-schema PostgreSQL

Every statement an application sends passes through one gateway that:

- isolation/: parses the statement, detects OR/UNION bypasses, classifies
  risk and enforces the isolation policy
- isolation/injector.py: binds the authoritative tenant into the statement
- gateway/: executes on a pooled asyncpg connection, in single statements or
  transactions, and profiles execution
- isolation/audit.py: optional signed audit trail of isolation decisions
- nodes/: Kailash workflow nodes over the gateway (install the "workflow"
  extra and import tenantguard.nodes)
"""

from .core.config import GuardConfig
from .core.logging_config import LoggingConfig, SensitiveMaskingFilter, mask_sensitive_values
from .core.tenant_context import atenant_scope, get_current_tenant_id, tenant_scope
from .gateway import (
    Operation,
    QueryResult,
    SecuredClient,
    TenantGateway,
    configure_gateway,
    execute_sql,
    execute_transaction,
    get_gateway,
    shutdown_gateway,
    with_transaction,
)
from .isolation import (
    AuditDecision,
    GatewayError,
    MissingTenantContext,
    ParsedQuery,
    QueryTimeout,
    RiskLevel,
    SecurityAuditStore,
    StatementType,
    TenantGuardError,
    TenantIsolationError,
    TransactionAborted,
    ensure_tenant_context,
    parse_query,
    validate_sql_query,
)
from .utils.suppress_warnings import (
    configure_tenantguard_logging,
    get_tenantguard_logger,
    is_logging_configured,
    restore_tenantguard_logging,
    suppress_core_sdk_warnings,
    tenantguard_logging_context,
)

__version__ = "0.1.0"

__all__ = [
    "GuardConfig",
    "LoggingConfig",
    "SensitiveMaskingFilter",
    "mask_sensitive_values",
    "tenant_scope",
    "atenant_scope",
    "get_current_tenant_id",
    "TenantGateway",
    "Operation",
    "QueryResult",
    "SecuredClient",
    "configure_gateway",
    "get_gateway",
    "shutdown_gateway",
    "execute_sql",
    "execute_transaction",
    "with_transaction",
    "parse_query",
    "ParsedQuery",
    "StatementType",
    "RiskLevel",
    "validate_sql_query",
    "ensure_tenant_context",
    "AuditDecision",
    "SecurityAuditStore",
    "TenantGuardError",
    "TenantIsolationError",
    "MissingTenantContext",
    "GatewayError",
    "QueryTimeout",
    "TransactionAborted",
    "configure_tenantguard_logging",
    "restore_tenantguard_logging",
    "tenantguard_logging_context",
    "get_tenantguard_logger",
    "is_logging_configured",
]
