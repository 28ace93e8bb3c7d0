"""Kailash workflow nodes backed by the tenant gateway."""

from ..utils.suppress_warnings import suppress_core_sdk_warnings
from .guarded_sql_nodes import TenantGuardedSQLNode, TenantGuardedTransactionNode

# Suppress verbose Core SDK warnings on import
suppress_core_sdk_warnings()

__all__ = ["TenantGuardedSQLNode", "TenantGuardedTransactionNode"]
