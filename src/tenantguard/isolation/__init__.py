"""Tenant isolation: parsing, bypass detection, policy and tenant binding."""

from .audit import AuditDecision, SecurityAuditRecord, SecurityAuditStore
from .detector import BypassAnalysis, UnionBranch, analyze_bypass
from .exceptions import (
    CriticalRiskBlocked,
    DangerousOperationBlocked,
    EnhancedBypassPatternDetected,
    GatewayError,
    MissingTenantColumn,
    MissingTenantContext,
    MissingTenantPredicate,
    OrBypassDetected,
    QueryTimeout,
    TenantGuardError,
    TenantIsolationError,
    TenantParameterMismatch,
    TransactionAborted,
    TruncateProhibited,
    UnionBranchUnprotected,
)
from .injector import TenantContextResult, ensure_tenant_context
from .parser import ParsedQuery, StatementType, is_system_table, parse_query
from .policy import is_query_allowed, validate_sql_query
from .risk import RiskLevel, classify_risk

__all__ = [
    # Parsing and analysis
    "parse_query",
    "ParsedQuery",
    "StatementType",
    "is_system_table",
    "analyze_bypass",
    "BypassAnalysis",
    "UnionBranch",
    "classify_risk",
    "RiskLevel",
    # Enforcement
    "validate_sql_query",
    "is_query_allowed",
    "ensure_tenant_context",
    "TenantContextResult",
    # Audit
    "AuditDecision",
    "SecurityAuditRecord",
    "SecurityAuditStore",
    # Errors
    "TenantGuardError",
    "TenantIsolationError",
    "DangerousOperationBlocked",
    "OrBypassDetected",
    "UnionBranchUnprotected",
    "CriticalRiskBlocked",
    "MissingTenantPredicate",
    "MissingTenantColumn",
    "TruncateProhibited",
    "EnhancedBypassPatternDetected",
    "TenantParameterMismatch",
    "MissingTenantContext",
    "GatewayError",
    "QueryTimeout",
    "TransactionAborted",
]
