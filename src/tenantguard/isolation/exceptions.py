"""Error taxonomy for tenant isolation enforcement.

Every security rejection derives from :class:`TenantIsolationError`. Its
message starts with ``"SECURITY BLOCK: "`` and ends with an excerpt of at most
100 characters of the offending SQL, which is meant for logs. Client-facing
layers should use :attr:`TenantIsolationError.client_message` instead, which
never contains SQL.

Operational failures (timeouts, aborted transactions) derive from
:class:`GatewayError` and are never mistaken for security decisions.
"""

from typing import Optional

SECURITY_BLOCK_PREFIX = "SECURITY BLOCK: "
EXCERPT_LENGTH = 100


def sql_excerpt(query: Optional[str], length: int = EXCERPT_LENGTH) -> str:
    """Return the first ``length`` characters of a stripped query."""
    if not query:
        return ""
    return query.strip()[:length]


class TenantGuardError(Exception):
    """Base class for all TenantGuard errors."""


class TenantIsolationError(TenantGuardError):
    """A statement was rejected because it could violate tenant isolation.

    Attributes:
        category: Short category label used in logs and audit records.
        query_excerpt: At most 100 characters of the rejected SQL.
        detail: Human-readable reason for the rejection.
        tenant_id: Tenant the statement was issued for, when known.
    """

    category = "tenant_isolation"
    default_detail = "Query violates tenant isolation policy"

    def __init__(
        self,
        query: Optional[str] = None,
        detail: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ):
        self.query_excerpt = sql_excerpt(query)
        self.detail = detail or self.default_detail
        self.tenant_id = tenant_id
        truncated = bool(query) and len(query.strip()) > EXCERPT_LENGTH
        message = f"{SECURITY_BLOCK_PREFIX}{self.detail}: {self.query_excerpt}"
        if truncated:
            message += "..."
        super().__init__(message)

    @property
    def client_message(self) -> str:
        """Generic message safe to return to end users."""
        return "Request blocked by tenant isolation policy"


class DangerousOperationBlocked(TenantIsolationError):
    category = "dangerous_operation"
    default_detail = "Dangerous operation detected"


class OrBypassDetected(TenantIsolationError):
    category = "or_bypass"
    default_detail = "OR-based tenant isolation bypass detected"


class UnionBranchUnprotected(TenantIsolationError):
    category = "union_branch_unprotected"
    default_detail = "UNION query has a branch without tenant isolation"


class CriticalRiskBlocked(TenantIsolationError):
    category = "critical_risk"
    default_detail = "Query classified as critical isolation risk"


class MissingTenantPredicate(TenantIsolationError):
    category = "missing_tenant_predicate"
    default_detail = "Multi-tenant query without tenant_id predicate"


class MissingTenantColumn(TenantIsolationError):
    category = "missing_tenant_column"
    default_detail = "INSERT into multi-tenant table without tenant_id column"


class TruncateProhibited(DangerousOperationBlocked):
    """TRUNCATE of a multi-tenant table.

    Also catchable as DangerousOperationBlocked.
    """

    category = "truncate_prohibited"
    default_detail = "TRUNCATE is not allowed on multi-tenant tables"


class EnhancedBypassPatternDetected(TenantIsolationError):
    category = "bypass_pattern"
    default_detail = "Tenant isolation bypass pattern detected"


class TenantParameterMismatch(TenantIsolationError):
    """A bound tenant parameter disagreed with the authoritative tenant.

    Only raised when strict tenant parameters are enabled; otherwise the
    parameter is corrected and a warning is logged.
    """

    category = "tenant_parameter_mismatch"
    default_detail = "Bound tenant_id parameter does not match request tenant"


class MissingTenantContext(TenantGuardError, ValueError):
    """No tenant was supplied and none is active in the current context."""


class GatewayError(TenantGuardError):
    """Operational failure inside the connection gateway."""


class QueryTimeout(GatewayError):
    """A statement or transaction exceeded its deadline."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s")


class TransactionAborted(GatewayError):
    """A driver error aborted a transaction; it was rolled back.

    The original driver exception is available as ``__cause__``.

    Attributes:
        operation_index: Zero-based index of the failing operation, or None
            when the failure happened outside a numbered operation.
    """

    def __init__(self, message: str, operation_index: Optional[int] = None):
        self.operation_index = operation_index
        super().__init__(message)
