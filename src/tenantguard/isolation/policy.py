"""Policy enforcement for tenant-scoped SQL.

:func:`validate_sql_query` is the single gate every statement passes before
it may be rewritten or executed. Checks run in a fixed order and the first
failing check raises:

1. Absolute denylist (destructive, privilege, catalog and comment patterns)
2. OR-bypass around a tenant predicate
3. UNION branch without its own tenant predicate
4. CRITICAL risk
5. Statement-type rules for multi-tenant tables
6. Enhanced bypass sweep (negation, inequality, IN lists, tautologies)
7. Surviving non-SAFE risk is logged, not blocked

All pattern checks run over a copy of the statement whose string literals
are blanked, so ``WHERE note = 'DROP TABLE x'`` is not mistaken for DDL and
a literal can never hide a pattern.
"""

import logging
import re
from typing import List, Optional, Pattern, Tuple

from ..core.config import GuardConfig
from .exceptions import (
    CriticalRiskBlocked,
    DangerousOperationBlocked,
    EnhancedBypassPatternDetected,
    MissingTenantColumn,
    MissingTenantPredicate,
    OrBypassDetected,
    TenantIsolationError,
    TruncateProhibited,
    UnionBranchUnprotected,
    sql_excerpt,
)
from .lexer import code_view
from .parser import ParsedQuery, StatementType, parse_query
from .risk import RiskLevel

logger = logging.getLogger(__name__)

_CHAINED = r";\s*(drop|truncate|delete\s+from|update|create\s+user|alter\s+user|grant|revoke)\b"

# (pattern, description) pairs matched against the lower-cased code view
DANGEROUS_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"^\s*drop\b"), "DROP statement"),
    (re.compile(r"^\s*create\s+user\b"), "CREATE USER statement"),
    (re.compile(r"^\s*alter\s+user\b"), "ALTER USER statement"),
    (re.compile(r"^\s*grant\b"), "GRANT statement"),
    (re.compile(r"^\s*revoke\b"), "REVOKE statement"),
    (re.compile(_CHAINED), "chained destructive statement"),
    (re.compile(r"\binformation_schema\b"), "information_schema access"),
    (re.compile(r"\bpg_catalog\b"), "pg_catalog access"),
    (re.compile(r"\bpg_roles\b"), "pg_roles access"),
    (re.compile(r"\bpg_user\b"), "pg_user access"),
    (re.compile(r"\bpg_shadow\b"), "pg_shadow access"),
    (re.compile(r"--"), "SQL line comment"),
    (re.compile(r"/\*"), "SQL block comment"),
    (re.compile(r"\bxp_cmdshell\b"), "xp_cmdshell"),
    (re.compile(r"\bsp_executesql\b"), "sp_executesql"),
]

_TRUNCATE = re.compile(r"^\s*truncate\b")

_COLUMN = r"(?:\b\w+\.)?\btenant_id\b"

ENHANCED_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(_COLUMN + r"\s+is\s+null\b"), "tenant_id IS NULL"),
    (re.compile(_COLUMN + r"\s*(!=|<>)"), "tenant_id inequality"),
    (re.compile(r"\bor\s+" + _COLUMN + r"\s*="), "OR before tenant_id comparison"),
    (
        re.compile(_COLUMN + r"\s*=\s*\$\d+(\s*::\s*\w+)?\s+or\b"),
        "OR after tenant_id comparison",
    ),
    (re.compile(_COLUMN + r"\s+in\s*\("), "tenant_id IN list"),
    (re.compile(_COLUMN + r"\s*=\s*any\s*\("), "tenant_id = ANY(...)"),
    (re.compile(r"\bor\s+true\b"), "OR TRUE"),
    (re.compile(r"\bor\s+1\s*=\s*1\b"), "OR 1=1"),
]


def _block(error_class, query: str, detail: str, tenant_id: Optional[str]):
    error = error_class(query, detail=detail, tenant_id=tenant_id)
    logger.warning(
        f"Blocked query for tenant {tenant_id}: {error.category} ({detail}): "
        f"{sql_excerpt(query)}"
    )
    return error


def find_dangerous_pattern(code: str) -> Optional[str]:
    """Description of the first denylist pattern in ``code``, or None."""
    lowered = code.lower()
    for pattern, description in DANGEROUS_PATTERNS:
        if pattern.search(lowered):
            return description
    return None


def find_enhanced_patterns(code: str, parsed: Optional[ParsedQuery] = None) -> List[str]:
    """Descriptions of every enhanced bypass pattern present."""
    lowered = code.lower()
    found = [description for pattern, description in ENHANCED_PATTERNS if pattern.search(lowered)]
    if parsed is not None and parsed.has_negated_tenant_predicate:
        found.append("negated tenant_id predicate")
    return found


def validate_sql_query(
    query: str,
    tenant_id: Optional[str] = None,
    config: Optional[GuardConfig] = None,
) -> ParsedQuery:
    """Validate one statement against the tenant isolation policy.

    Args:
        query: SQL text with ``$n`` placeholders.
        tenant_id: Tenant the statement is issued for; used for logging.
        config: Guard configuration (system tables, auto-injection).

    Returns:
        The ParsedQuery when the statement is allowed.

    Raises:
        DangerousOperationBlocked: Denylisted operation or pattern.
        OrBypassDetected: An OR can reach around the tenant predicate.
        UnionBranchUnprotected: A UNION branch lacks its own tenant predicate.
        CriticalRiskBlocked: Risk classified CRITICAL.
        MissingTenantPredicate: Multi-tenant SELECT/UPDATE/DELETE without
            an AND-scoped ``tenant_id = $n``.
        MissingTenantColumn: Multi-tenant INSERT without tenant_id.
        TruncateProhibited: TRUNCATE of a multi-tenant table.
        EnhancedBypassPatternDetected: Negation, inequality, IN list or
            tautology involving tenant_id.
    """
    config = config or GuardConfig()
    parsed = parse_query(query, config.system_tables)
    code = code_view(query)

    # Step 1: absolute denylist. TRUNCATE of a tenant table is reported by
    # the statement-type rules so callers get the specific error.
    dangerous = find_dangerous_pattern(code)
    if dangerous is None and _TRUNCATE.match(code.lower()) and not (
        parsed.statement_type is StatementType.TRUNCATE and parsed.is_multi_tenant
    ):
        dangerous = "TRUNCATE statement"
    if dangerous is not None:
        raise _block(
            DangerousOperationBlocked,
            query,
            f"Dangerous operation detected ({dangerous})",
            tenant_id,
        )

    # Step 2
    if parsed.has_or_bypass_pattern:
        raise _block(
            OrBypassDetected,
            query,
            f"OR-based tenant isolation bypass detected ({'; '.join(parsed.bypass_reasons)})",
            tenant_id,
        )

    # Step 3
    unprotected = [b for b in parsed.union_branches if not b.has_valid_tenant_predicate]
    if unprotected:
        raise _block(
            UnionBranchUnprotected,
            query,
            f"UNION query has {len(unprotected)} branch(es) without tenant isolation",
            tenant_id,
        )

    # Step 4
    if parsed.security_risk is RiskLevel.CRITICAL:
        raise _block(
            CriticalRiskBlocked, query, "Critical isolation risk detected", tenant_id
        )

    # Step 5
    if parsed.is_multi_tenant:
        statement = parsed.statement_type
        if (
            statement in (StatementType.SELECT, StatementType.UPDATE, StatementType.DELETE)
            and not parsed.has_tenant_predicate
            and not config.auto_inject_tenant_predicate
        ):
            raise _block(
                MissingTenantPredicate,
                query,
                f"Multi-tenant {statement.value} without tenant_id predicate",
                tenant_id,
            )
        if statement is StatementType.INSERT and "tenant_id" not in parsed.normalized_query:
            raise _block(
                MissingTenantColumn,
                query,
                "INSERT into multi-tenant table without tenant_id",
                tenant_id,
            )
        if statement is StatementType.TRUNCATE:
            raise _block(
                TruncateProhibited,
                query,
                "TRUNCATE not allowed on multi-tenant tables",
                tenant_id,
            )

    # Step 6
    patterns = find_enhanced_patterns(code, parsed)
    if patterns:
        raise _block(
            EnhancedBypassPatternDetected,
            query,
            f"Bypass pattern detected ({', '.join(patterns)})",
            tenant_id,
        )

    # Step 7
    if parsed.security_risk is not RiskLevel.SAFE:
        logger.warning(
            f"Query risk {parsed.security_risk} allowed for tenant {tenant_id}: "
            f"{sql_excerpt(query)}"
        )

    return parsed


def is_query_allowed(query: str, config: Optional[GuardConfig] = None) -> bool:
    """Boolean form of :func:`validate_sql_query` for callers that only need a verdict."""
    try:
        validate_sql_query(query, config=config)
    except TenantIsolationError:
        return False
    return True
