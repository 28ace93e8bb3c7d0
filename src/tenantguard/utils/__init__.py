"""TenantGuard Utilities."""

from .suppress_warnings import (
    configure_tenantguard_logging,
    get_tenantguard_logger,
    is_logging_configured,
    restore_core_sdk_warnings,
    restore_tenantguard_logging,
    suppress_core_sdk_warnings,
    tenantguard_logging_context,
)

__all__ = [
    # Logging utilities
    "configure_tenantguard_logging",
    "restore_tenantguard_logging",
    "is_logging_configured",
    "get_tenantguard_logger",
    "tenantguard_logging_context",
    # Core SDK warning management
    "suppress_core_sdk_warnings",
    "restore_core_sdk_warnings",
]
