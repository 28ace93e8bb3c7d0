"""TenantGuard core: configuration, logging and ambient tenant context."""

from .config import DEFAULT_SYSTEM_TABLES, GuardConfig
from .logging_config import (
    DEFAULT_SENSITIVE_PATTERNS,
    LoggingConfig,
    SensitiveMaskingFilter,
    describe_params,
    mask_sensitive_values,
)
from .tenant_context import (
    atenant_scope,
    get_current_tenant_id,
    resolve_tenant_id,
    tenant_scope,
    validate_tenant_id,
)

__all__ = [
    "GuardConfig",
    "DEFAULT_SYSTEM_TABLES",
    "LoggingConfig",
    "SensitiveMaskingFilter",
    "DEFAULT_SENSITIVE_PATTERNS",
    "mask_sensitive_values",
    "describe_params",
    "tenant_scope",
    "atenant_scope",
    "get_current_tenant_id",
    "resolve_tenant_id",
    "validate_tenant_id",
]
