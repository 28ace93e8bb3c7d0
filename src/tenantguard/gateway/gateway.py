"""Tenant-guarded connection gateway.

TenantGateway is the only path from application code to the database. Every
statement is validated by the isolation policy, bound to the authoritative
tenant and only then executed on a pooled asyncpg connection.

Entry points:
    - execute_sql: one statement, one round trip
    - execute_transaction: a list of statements, all validated before any
      runs, executed in one transaction
    - with_transaction: a callback receives a SecuredClient and runs
      arbitrary tenant-guarded statements inside one transaction

A process-wide gateway is available through :func:`get_gateway`, configured
with :func:`configure_gateway` and closed with :func:`shutdown_gateway`. The
module-level :func:`execute_sql`, :func:`execute_transaction` and
:func:`with_transaction` delegate to it.

Example:
    gateway = TenantGateway(GuardConfig(database_url="postgresql://localhost/app"))
    async with gateway:
        result = await gateway.execute_sql(
            "SELECT * FROM orders WHERE tenant_id = $1 AND status = $2",
            ["tenant-a", "open"],
            tenant_id="tenant-a",
        )
"""

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from ..core.config import GuardConfig
from ..core.logging_config import describe_params
from ..core.tenant_context import resolve_tenant_id
from ..isolation.audit import AuditDecision, SecurityAuditStore
from ..isolation.exceptions import (
    GatewayError,
    QueryTimeout,
    TenantIsolationError,
    TransactionAborted,
    sql_excerpt,
)
from ..isolation.injector import ensure_tenant_context
from ..isolation.policy import validate_sql_query
from ..isolation.risk import RiskLevel
from .client import (
    DRIVER_ERRORS,
    PreparedStatement,
    QueryResult,
    SecuredClient,
    TransactionScope,
    TransactionState,
    run_statement,
)
from .pool import DatabasePool
from .profiler import PerformanceReport, QueryMetrics, QueryProfiler

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Tenant recorded for gateway-internal statements such as health checks
SYSTEM_TENANT = "system"


@dataclass(frozen=True)
class Operation:
    """One statement of a transaction."""

    query: str
    params: Optional[Sequence[Any]] = None


OperationLike = Union[Operation, Mapping, Sequence]


def _to_operation(operation: OperationLike, index: int) -> Operation:
    if isinstance(operation, Operation):
        return operation
    if isinstance(operation, Mapping):
        if "query" not in operation:
            raise ValueError(f"Operation {index} has no 'query'")
        return Operation(operation["query"], operation.get("params"))
    if isinstance(operation, (tuple, list)) and 1 <= len(operation) <= 2:
        return Operation(*operation)
    raise ValueError(
        f"Operation {index} must be an Operation, a mapping or a (query, params) tuple"
    )


def _check_statement_args(query: Any, params: Any) -> None:
    if not isinstance(query, str) or not query.strip():
        raise ValueError("query must be a non-empty string")
    if params is not None and (
        isinstance(params, (str, bytes)) or not isinstance(params, Sequence)
    ):
        raise ValueError("params must be a list or tuple")


def _resolve_timeout(timeout: Optional[float], default: float) -> float:
    if timeout is None:
        return default
    if timeout <= 0:
        raise ValueError("timeout must be positive")
    return timeout


async def _driver_step(awaitable: Awaitable[T], action: str) -> T:
    try:
        return await awaitable
    except DRIVER_ERRORS as e:
        raise TransactionAborted(f"{action} failed: {type(e).__name__}: {e}") from e


class TenantGateway:
    """Validated, tenant-bound SQL execution over a pooled connection.

    Args:
        config: Guard configuration; read from the environment when omitted.
        pool: Connection pool; built from ``config`` when omitted.
        profiler: Query profiler; built from ``config`` when omitted.
        audit_store: Optional audit trail for isolation decisions.
    """

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        pool: Optional[DatabasePool] = None,
        profiler: Optional[QueryProfiler] = None,
        audit_store: Optional[SecurityAuditStore] = None,
    ):
        self.config = config or GuardConfig.from_env()
        self.pool = pool or DatabasePool(self.config)
        self.profiler = profiler or QueryProfiler(
            capacity=self.config.profiler_capacity,
            slow_query_threshold_ms=self.config.slow_query_threshold_ms,
            analysis_slow_threshold_ms=self.config.analysis_slow_threshold_ms,
        )
        self.audit_store = audit_store

    # === Lifecycle ===

    async def start(self) -> None:
        await self.pool.open()

    async def close(self) -> None:
        await self.pool.close()

    async def __aenter__(self) -> "TenantGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # === Guard ===

    def _audit(
        self,
        tenant_id: Optional[str],
        decision: AuditDecision,
        category: str,
        query: str,
        risk: RiskLevel = RiskLevel.SAFE,
    ) -> None:
        if self.audit_store is not None:
            self.audit_store.record_decision(
                tenant_id=tenant_id,
                decision=decision,
                category=category,
                query=query,
                risk=str(risk),
            )

    def prepare(
        self, query: str, params: Optional[Sequence[Any]], tenant_id: str
    ) -> PreparedStatement:
        """Validate ``query`` and bind it to ``tenant_id`` without executing it.

        Raises:
            ValueError: If the query or params are malformed.
            TenantIsolationError: If the statement is rejected.
        """
        _check_statement_args(query, params)
        try:
            parsed = validate_sql_query(query, tenant_id, self.config)
            context = ensure_tenant_context(query, params, tenant_id, parsed, self.config)
        except TenantIsolationError as e:
            self._audit(tenant_id, AuditDecision.BLOCKED, e.category, query)
            raise

        if parsed.security_risk is not RiskLevel.SAFE:
            self._audit(
                tenant_id, AuditDecision.WARNED, "risk", query, parsed.security_risk
            )
        if context.corrected_positions:
            self._audit(
                tenant_id, AuditDecision.CORRECTED, "tenant_parameter_corrected", query
            )
        if context.was_rewritten:
            self._audit(
                tenant_id, AuditDecision.INJECTED, "tenant_predicate_injected", query
            )
        return PreparedStatement(
            query=context.query,
            params=context.params,
            parsed=parsed,
            original_query=query,
        )

    def record_execution(
        self,
        statement: PreparedStatement,
        result: QueryResult,
        tenant_id: str,
        request_id: Optional[str] = None,
    ) -> None:
        """Attach ``request_id`` to ``result`` and record its timing."""
        result.request_id = request_id
        self.profiler.log_query(
            QueryMetrics(
                query=statement.query,
                execution_time_ms=result.execution_time_ms,
                row_count=result.row_count,
                tenant_id=tenant_id,
                request_id=request_id,
            )
        )
        logger.debug(
            f"Executed {statement.parsed.statement_type.value} for tenant {tenant_id} "
            f"in {result.execution_time_ms:.1f}ms ({result.row_count} rows)"
        )

    # === Execution ===

    async def _execute(self, statement: PreparedStatement) -> QueryResult:
        async with self.pool.acquire() as connection:
            try:
                return await run_statement(connection, statement)
            except DRIVER_ERRORS as e:
                logger.error(
                    f"Statement failed ({type(e).__name__}) with params "
                    f"{describe_params(statement.params)}: {sql_excerpt(statement.query)}"
                )
                raise

    async def execute_sql(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        tenant_id: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> QueryResult:
        """Validate, tenant-bind and execute one statement.

        Args:
            query: SQL with ``$n`` placeholders.
            params: Positional parameters.
            tenant_id: Request tenant; falls back to the active tenant scope.
            timeout: Seconds before QueryTimeout; defaults to
                ``config.statement_timeout``.
            request_id: Correlation id stored with the query metrics.

        Returns:
            QueryResult with rows and affected row count.

        Raises:
            MissingTenantContext: If no tenant is available.
            TenantIsolationError: If the statement is rejected.
            QueryTimeout: If the statement exceeds its deadline.
        """
        tenant_id = resolve_tenant_id(tenant_id)
        timeout = _resolve_timeout(timeout, self.config.statement_timeout)
        statement = self.prepare(query, params, tenant_id)

        try:
            result = await asyncio.wait_for(self._execute(statement), timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"Statement for tenant {tenant_id} timed out after {timeout:g}s: "
                f"{sql_excerpt(query)}"
            )
            raise QueryTimeout("execute_sql", timeout) from e

        self.record_execution(statement, result, tenant_id, request_id)
        return result

    async def _in_transaction(
        self, work: Callable[[TransactionScope], Awaitable[T]]
    ) -> T:
        async with self.pool.acquire() as connection:
            scope = TransactionScope(connection)
            try:
                await _driver_step(scope.begin(), "BEGIN")
                outcome = await work(scope)
                await _driver_step(scope.commit(), "COMMIT")
                return outcome
            except (Exception, asyncio.CancelledError) as e:
                await scope.rollback_after_error(e)
                if scope.state is TransactionState.ROLLED_BACK:
                    logger.info(f"Transaction rolled back after {type(e).__name__}")
                raise
            finally:
                scope.release()

    async def execute_transaction(
        self,
        operations: Iterable[OperationLike],
        tenant_id: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> List[QueryResult]:
        """Execute statements atomically for one tenant.

        Every operation is validated and tenant-bound before the first one
        runs; a rejected operation means nothing is executed.

        Args:
            operations: Operation objects, ``{"query", "params"}`` mappings
                or ``(query, params)`` tuples.
            tenant_id: Request tenant; falls back to the active tenant scope.
            timeout: Seconds for the whole transaction; defaults to
                ``config.transaction_timeout``.
            request_id: Correlation id stored with the query metrics.

        Returns:
            One QueryResult per operation, in order.

        Raises:
            TenantIsolationError: If any operation is rejected.
            TransactionAborted: If the driver fails an operation; the
                transaction is rolled back.
            QueryTimeout: If the transaction exceeds its deadline.
        """
        tenant_id = resolve_tenant_id(tenant_id)
        timeout = _resolve_timeout(timeout, self.config.transaction_timeout)
        ops = [_to_operation(op, i) for i, op in enumerate(operations)]
        if not ops:
            raise ValueError("execute_transaction requires at least one operation")
        statements = [self.prepare(op.query, op.params, tenant_id) for op in ops]

        async def run(scope: TransactionScope) -> List[QueryResult]:
            results = []
            for index, statement in enumerate(statements):
                try:
                    result = await scope.execute(statement)
                except DRIVER_ERRORS as e:
                    logger.error(
                        f"Transaction operation {index} failed ({type(e).__name__}) "
                        f"with params {describe_params(statement.params)}"
                    )
                    raise TransactionAborted(
                        f"Operation {index} failed: {type(e).__name__}: {e}",
                        operation_index=index,
                    ) from e
                self.record_execution(statement, result, tenant_id, request_id)
                results.append(result)
            return results

        try:
            return await asyncio.wait_for(self._in_transaction(run), timeout)
        except asyncio.TimeoutError as e:
            raise QueryTimeout("execute_transaction", timeout) from e

    async def with_transaction(
        self,
        work: Callable[[SecuredClient], Any],
        tenant_id: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        """Run ``work(client)`` inside one tenant-guarded transaction.

        ``work`` may be a coroutine function or a plain function returning an
        awaitable. The transaction commits when it returns and rolls back
        when it raises; its exception propagates unchanged.

        Returns:
            Whatever ``work`` returned.
        """
        tenant_id = resolve_tenant_id(tenant_id)
        timeout = _resolve_timeout(timeout, self.config.transaction_timeout)

        async def run(scope: TransactionScope) -> Any:
            client = SecuredClient(self, scope, tenant_id, request_id)
            outcome = work(client)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return outcome

        try:
            return await asyncio.wait_for(self._in_transaction(run), timeout)
        except asyncio.TimeoutError as e:
            raise QueryTimeout("with_transaction", timeout) from e

    # === Operations ===

    async def health(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Check connectivity with guarded ``SELECT 1`` and ``SELECT version()``.

        Returns:
            ``{"status": "healthy", "version": ..., "response_time_ms": ...}``
            or ``{"status": "unhealthy", "error": ...}``.
        """
        started = time.perf_counter()
        try:
            await self.execute_sql(
                "SELECT 1 AS health_check", tenant_id=SYSTEM_TENANT, timeout=timeout
            )
            version = await self.execute_sql(
                "SELECT version()", tenant_id=SYSTEM_TENANT, timeout=timeout
            )
        except (GatewayError, *DRIVER_ERRORS) as e:
            logger.warning(f"Health check failed: {type(e).__name__}: {e}")
            return {"status": "unhealthy", "error": f"{type(e).__name__}: {e}"}

        row = version.rows[0] if version.rows else {}
        return {
            "status": "healthy",
            "version": next(iter(row.values()), None),
            "response_time_ms": (time.perf_counter() - started) * 1000,
        }

    def get_performance_metrics(self, tenant_id: Optional[str] = None) -> PerformanceReport:
        return self.profiler.analyze_performance(tenant_id)

    def get_index_suggestions(
        self, tenant_id: Optional[str] = None, table_prefix: Optional[str] = None
    ) -> List[str]:
        return self.profiler.get_index_suggestions(tenant_id, table_prefix)

    def clear_metrics(self, tenant_id: Optional[str] = None) -> int:
        return self.profiler.clear_metrics(tenant_id)


# === Process-wide gateway ===

_gateway: Optional[TenantGateway] = None
_gateway_lock = threading.Lock()


def configure_gateway(
    config: Optional[GuardConfig] = None,
    audit_store: Optional[SecurityAuditStore] = None,
) -> TenantGateway:
    """Replace the process-wide gateway.

    The previous gateway, if any, is not closed; call :func:`shutdown_gateway`
    first when replacing an open one.
    """
    global _gateway
    with _gateway_lock:
        _gateway = TenantGateway(config, audit_store=audit_store)
        return _gateway


def get_gateway() -> TenantGateway:
    """Process-wide gateway, created from the environment on first use."""
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = TenantGateway()
        return _gateway


async def shutdown_gateway() -> None:
    """Close and forget the process-wide gateway."""
    global _gateway
    with _gateway_lock:
        gateway, _gateway = _gateway, None
    if gateway is not None:
        await gateway.close()


async def execute_sql(
    query: str,
    params: Optional[Sequence[Any]] = None,
    tenant_id: Optional[str] = None,
    *,
    timeout: Optional[float] = None,
    request_id: Optional[str] = None,
) -> QueryResult:
    return await get_gateway().execute_sql(
        query, params, tenant_id, timeout=timeout, request_id=request_id
    )


async def execute_transaction(
    operations: Iterable[OperationLike],
    tenant_id: Optional[str] = None,
    *,
    timeout: Optional[float] = None,
    request_id: Optional[str] = None,
) -> List[QueryResult]:
    return await get_gateway().execute_transaction(
        operations, tenant_id, timeout=timeout, request_id=request_id
    )


async def with_transaction(
    work: Callable[[SecuredClient], Any],
    tenant_id: Optional[str] = None,
    *,
    timeout: Optional[float] = None,
    request_id: Optional[str] = None,
) -> Any:
    return await get_gateway().with_transaction(
        work, tenant_id, timeout=timeout, request_id=request_id
    )
