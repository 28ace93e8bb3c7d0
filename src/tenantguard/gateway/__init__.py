"""Connection gateway: pooled, tenant-guarded SQL execution."""

from .client import QueryResult, SecuredClient, TransactionScope, TransactionState
from .gateway import (
    Operation,
    TenantGateway,
    configure_gateway,
    execute_sql,
    execute_transaction,
    get_gateway,
    shutdown_gateway,
    with_transaction,
)
from .pool import DatabasePool
from .profiler import PerformanceReport, QueryMetrics, QueryProfiler

__all__ = [
    "TenantGateway",
    "Operation",
    "QueryResult",
    "SecuredClient",
    "TransactionScope",
    "TransactionState",
    "DatabasePool",
    "QueryProfiler",
    "QueryMetrics",
    "PerformanceReport",
    "configure_gateway",
    "get_gateway",
    "shutdown_gateway",
    "execute_sql",
    "execute_transaction",
    "with_transaction",
]
