"""
Unit tests for TenantGateway.

The gateway runs against the in-memory connection and pool fakes from
tests/conftest.py, so validation, tenant binding, transaction handling and
connection release are checked without a database.
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import asyncpg
import pytest

from tenantguard.core.config import GuardConfig
from tenantguard.core.tenant_context import tenant_scope
from tenantguard.gateway import gateway as gateway_module
from tenantguard.gateway.client import QueryResult, SecuredClient
from tenantguard.gateway.gateway import (
    Operation,
    TenantGateway,
    configure_gateway,
    get_gateway,
    shutdown_gateway,
)
from tenantguard.isolation.audit import AuditDecision
from tenantguard.isolation.exceptions import (
    GatewayError,
    MissingTenantContext,
    MissingTenantPredicate,
    OrBypassDetected,
    QueryTimeout,
    TransactionAborted,
)

SELECT_ORDERS = "SELECT * FROM orders WHERE tenant_id = $1"
INSERT_ORDER = "INSERT INTO orders (tenant_id, total) VALUES ($1, $2)"


# === execute_sql ===


@pytest.mark.unit
class TestExecuteSql:
    @pytest.mark.asyncio
    async def test_returns_rows(self, gateway, fake_connection, fake_pool):
        fake_connection.handler = lambda q, p: ([{"id": 1, "tenant_id": "A"}], "SELECT 1")

        result = await gateway.execute_sql(SELECT_ORDERS, ["A"], "A", request_id="req-1")

        assert isinstance(result, QueryResult)
        assert result.rows == [{"id": 1, "tenant_id": "A"}]
        assert result.row_count == 1
        assert result.request_id == "req-1"
        assert fake_connection.executed == [(SELECT_ORDERS, ["A"])]
        assert fake_pool.acquired == fake_pool.released == 1

    @pytest.mark.asyncio
    async def test_row_count_from_status(self, gateway, fake_connection):
        fake_connection.handler = lambda q, p: ([], "UPDATE 3")

        result = await gateway.execute_sql(
            "UPDATE orders SET status = $1 WHERE tenant_id = $2", ["paid", "A"], "A"
        )
        assert result.row_count == 3
        assert result.rows == []

    @pytest.mark.asyncio
    async def test_tenant_parameter_corrected(self, gateway, fake_connection, audit_store):
        await gateway.execute_sql(SELECT_ORDERS, ["B"], "A")

        assert fake_connection.executed[0][1] == ["A"]
        corrected = audit_store.get_records(decision=AuditDecision.CORRECTED)
        assert len(corrected) == 1
        assert corrected[0].tenant_id == "A"

    @pytest.mark.asyncio
    async def test_rejected_query_never_reaches_pool(
        self, gateway, fake_connection, pool_factory, audit_store
    ):
        with pytest.raises(OrBypassDetected):
            await gateway.execute_sql(
                "SELECT * FROM orders WHERE tenant_id = $1 OR id = $2", ["A", 1], "A"
            )

        pool_factory.assert_not_awaited()
        assert fake_connection.executed == []
        blocked = audit_store.get_records(decision=AuditDecision.BLOCKED)
        assert [r.category for r in blocked] == ["or_bypass"]

    @pytest.mark.asyncio
    async def test_tenant_from_scope(self, gateway, fake_connection):
        with tenant_scope("A"):
            await gateway.execute_sql(SELECT_ORDERS, ["B"])
        assert fake_connection.executed[0][1] == ["A"]

    @pytest.mark.asyncio
    async def test_missing_tenant(self, gateway):
        with pytest.raises(MissingTenantContext):
            await gateway.execute_sql(SELECT_ORDERS, ["A"])

    @pytest.mark.asyncio
    async def test_auto_injected_predicate(self, pool_factory, audit_store, fake_connection):
        config = GuardConfig(database_url="postgresql://localhost/t", auto_inject_tenant_predicate=True)
        gw = TenantGateway(
            config,
            pool=gateway_module.DatabasePool(config, pool_factory=pool_factory),
            audit_store=audit_store,
        )

        await gw.execute_sql("DELETE FROM orders WHERE id = $1", ["42"], "A")

        assert fake_connection.executed == [
            ("DELETE FROM orders WHERE tenant_id = $2 AND (id = $1)", ["42", "A"])
        ]
        decisions = {r.decision for r in audit_store.get_records()}
        assert AuditDecision.INJECTED in decisions
        assert AuditDecision.WARNED in decisions

    @pytest.mark.asyncio
    async def test_timeout(self, gateway, fake_connection, fake_pool):
        async def slow(query, params):
            await asyncio.sleep(1)
            return [], "SELECT 0"

        fake_connection.handler = slow

        with pytest.raises(QueryTimeout) as exc_info:
            await gateway.execute_sql(SELECT_ORDERS, ["A"], "A", timeout=0.05)

        assert exc_info.value.operation == "execute_sql"
        assert exc_info.value.timeout == 0.05
        assert fake_pool.released == fake_pool.acquired == 1

    @pytest.mark.asyncio
    async def test_driver_error_propagates(self, gateway, fake_connection, caplog):
        def fail(query, params):
            raise asyncpg.UniqueViolationError("duplicate key value")

        fake_connection.handler = fail
        caplog.set_level(logging.ERROR, logger="tenantguard.gateway.gateway")

        with pytest.raises(asyncpg.UniqueViolationError):
            await gateway.execute_sql(INSERT_ORDER, ["A", "secret-total"], "A")

        assert "[str(1), str(12)]" in caplog.text
        assert "secret-total" not in caplog.text

    @pytest.mark.parametrize(
        "query,params",
        [("", None), ("   ", None), (SELECT_ORDERS, "A"), (SELECT_ORDERS, {"a": 1})],
    )
    @pytest.mark.asyncio
    async def test_malformed_arguments(self, gateway, query, params):
        with pytest.raises(ValueError):
            await gateway.execute_sql(query, params, "A")

    @pytest.mark.asyncio
    async def test_non_positive_timeout(self, gateway):
        with pytest.raises(ValueError):
            await gateway.execute_sql(SELECT_ORDERS, ["A"], "A", timeout=0)

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, gateway):
        await gateway.execute_sql(SELECT_ORDERS, ["A"], "A")
        await gateway.execute_sql(SELECT_ORDERS, ["B"], "B")

        report = gateway.get_performance_metrics("A")
        assert report.total_queries == 1
        assert gateway.get_performance_metrics().total_queries == 2
        assert gateway.clear_metrics("A") == 1
        assert gateway.get_performance_metrics().total_queries == 1


# === execute_transaction ===


@pytest.mark.unit
class TestExecuteTransaction:
    @pytest.mark.asyncio
    async def test_commits_all_operations(self, gateway, fake_connection, fake_pool):
        results = await gateway.execute_transaction(
            [
                Operation(INSERT_ORDER, ["A", 10]),
                {"query": INSERT_ORDER, "params": ["A", 20]},
                (SELECT_ORDERS, ["A"]),
            ],
            "A",
        )

        assert len(results) == 3
        assert [r.row_count for r in results[:2]] == [1, 1]
        assert fake_connection.transactions[0].events == ["start", "commit"]
        assert fake_pool.acquired == fake_pool.released == 1

    @pytest.mark.asyncio
    async def test_failure_rolls_back_and_stops(self, gateway, fake_connection, fake_pool):
        def handler(query, params):
            if params[1] == 3:
                raise asyncpg.UniqueViolationError("duplicate key value")
            return [], "INSERT 0 1"

        fake_connection.handler = handler
        operations = [(INSERT_ORDER, ["A", i]) for i in range(1, 6)]

        with pytest.raises(TransactionAborted) as exc_info:
            await gateway.execute_transaction(operations, "A")

        assert exc_info.value.operation_index == 2
        assert isinstance(exc_info.value.__cause__, asyncpg.UniqueViolationError)
        assert [p[1] for _, p in fake_connection.executed] == [1, 2, 3]
        assert fake_connection.transactions[0].events == ["start", "rollback"]
        assert fake_pool.acquired == fake_pool.released == 1

    @pytest.mark.asyncio
    async def test_rejected_operation_runs_nothing(self, gateway, fake_connection, pool_factory):
        with pytest.raises(MissingTenantPredicate):
            await gateway.execute_transaction(
                [(INSERT_ORDER, ["A", 1]), ("DELETE FROM orders", None)], "A"
            )

        pool_factory.assert_not_awaited()
        assert fake_connection.executed == []

    @pytest.mark.asyncio
    async def test_tenant_bound_in_every_operation(self, gateway, fake_connection):
        await gateway.execute_transaction(
            [(INSERT_ORDER, ["B", 1]), (SELECT_ORDERS, ["C"])], "A"
        )
        assert [p[0] for _, p in fake_connection.executed] == ["A", "A"]

    @pytest.mark.asyncio
    async def test_commit_failure(self, gateway, fake_connection):
        fake_connection.commit_error = OSError("connection reset")

        with pytest.raises(TransactionAborted) as exc_info:
            await gateway.execute_transaction([(INSERT_ORDER, ["A", 1])], "A")

        assert exc_info.value.operation_index is None
        assert "COMMIT failed" in str(exc_info.value)
        assert fake_connection.transactions[0].events == ["start", "rollback"]

    @pytest.mark.asyncio
    async def test_empty_operations(self, gateway):
        with pytest.raises(ValueError):
            await gateway.execute_transaction([], "A")

    @pytest.mark.asyncio
    async def test_malformed_operation(self, gateway):
        with pytest.raises(ValueError):
            await gateway.execute_transaction([42], "A")
        with pytest.raises(ValueError):
            await gateway.execute_transaction([{"params": []}], "A")

    @pytest.mark.asyncio
    async def test_timeout(self, gateway, fake_connection):
        async def slow(query, params):
            await asyncio.sleep(1)
            return [], "INSERT 0 1"

        fake_connection.handler = slow

        with pytest.raises(QueryTimeout) as exc_info:
            await gateway.execute_transaction([(INSERT_ORDER, ["A", 1])], "A", timeout=0.05)

        assert exc_info.value.operation == "execute_transaction"
        assert "rollback" in fake_connection.transactions[0].events


# === with_transaction ===


@pytest.mark.unit
class TestWithTransaction:
    @pytest.mark.asyncio
    async def test_commits_and_returns(self, gateway, fake_connection):
        async def work(client):
            assert isinstance(client, SecuredClient)
            assert client.tenant_id == "A"
            await client.query(INSERT_ORDER, ["A", 1])
            await client.query(SELECT_ORDERS, ["B"])
            return "done"

        assert await gateway.with_transaction(work, "A") == "done"
        assert fake_connection.transactions[0].events == ["start", "commit"]
        assert [p[0] for _, p in fake_connection.executed] == ["A", "A"]

    @pytest.mark.asyncio
    async def test_plain_function_returning_awaitable(self, gateway):
        result = await gateway.with_transaction(
            lambda client: client.query(SELECT_ORDERS, ["A"]), "A"
        )
        assert isinstance(result, QueryResult)

    @pytest.mark.asyncio
    async def test_callback_error_rolls_back_and_propagates(self, gateway, fake_connection, fake_pool):
        async def work(client):
            await client.query(INSERT_ORDER, ["A", 1])
            raise RuntimeError("business rule failed")

        with pytest.raises(RuntimeError, match="business rule failed"):
            await gateway.with_transaction(work, "A")

        assert fake_connection.transactions[0].events == ["start", "rollback"]
        assert fake_pool.acquired == fake_pool.released == 1

    @pytest.mark.asyncio
    async def test_rejected_statement_rolls_back(self, gateway, fake_connection):
        async def work(client):
            await client.query(INSERT_ORDER, ["A", 1])
            await client.query("UPDATE orders SET status = $1", ["x"])

        with pytest.raises(MissingTenantPredicate):
            await gateway.with_transaction(work, "A")

        assert len(fake_connection.executed) == 1
        assert fake_connection.transactions[0].events == ["start", "rollback"]

    @pytest.mark.asyncio
    async def test_driver_error_reports_statement_index(self, gateway, fake_connection):
        calls = []

        def handler(query, params):
            calls.append(query)
            if len(calls) == 2:
                raise OSError("connection reset")
            return [], "INSERT 0 1"

        fake_connection.handler = handler

        async def work(client):
            await client.query(INSERT_ORDER, ["A", 1])
            await client.query(INSERT_ORDER, ["A", 2])

        with pytest.raises(TransactionAborted) as exc_info:
            await gateway.with_transaction(work, "A")

        assert exc_info.value.operation_index == 1
        assert fake_connection.transactions[0].events == ["start", "rollback"]

    @pytest.mark.asyncio
    async def test_client_unusable_after_transaction(self, gateway):
        captured = {}

        async def work(client):
            captured["client"] = client

        await gateway.with_transaction(work, "A")

        client = captured["client"]
        assert client.is_open is False
        with pytest.raises(GatewayError, match="outside its transaction"):
            await client.query(SELECT_ORDERS, ["A"])

    @pytest.mark.asyncio
    async def test_timeout(self, gateway, fake_connection):
        async def work(client):
            await asyncio.sleep(1)

        with pytest.raises(QueryTimeout) as exc_info:
            await gateway.with_transaction(work, "A", timeout=0.05)

        assert exc_info.value.operation == "with_transaction"
        assert "rollback" in fake_connection.transactions[0].events


# === Health and lifecycle ===


@pytest.mark.unit
class TestHealthAndLifecycle:
    @pytest.mark.asyncio
    async def test_healthy(self, gateway, fake_connection):
        def handler(query, params):
            if "version" in query:
                return [{"version": "PostgreSQL 16.2"}], "SELECT 1"
            return [{"health_check": 1}], "SELECT 1"

        fake_connection.handler = handler

        status = await gateway.health()

        assert status["status"] == "healthy"
        assert status["version"] == "PostgreSQL 16.2"
        assert status["response_time_ms"] >= 0
        assert gateway.profiler.get_metrics("system")

    @pytest.mark.asyncio
    async def test_unhealthy_on_driver_error(self, gateway, fake_connection):
        def fail(query, params):
            raise OSError("connection refused")

        fake_connection.handler = fail

        status = await gateway.health()
        assert status["status"] == "unhealthy"
        assert "OSError" in status["error"]

    @pytest.mark.asyncio
    async def test_unhealthy_without_database_url(self):
        gw = TenantGateway(GuardConfig())
        status = await gw.health()
        assert status["status"] == "unhealthy"
        assert "GatewayError" in status["error"]

    @pytest.mark.asyncio
    async def test_context_manager_opens_and_closes_pool(self, gateway, pool_factory, fake_pool):
        async with gateway as gw:
            assert gw.pool.is_open
        pool_factory.assert_awaited_once()
        assert fake_pool.closed is True
        assert gateway.pool.is_open is False

    @pytest.mark.asyncio
    async def test_index_suggestions_delegate(self, gateway):
        gateway.profiler.get_index_suggestions = lambda tenant, prefix: ["CREATE INDEX x"]
        assert gateway.get_index_suggestions("A", "ord") == ["CREATE INDEX x"]


# === Process-wide gateway ===


@pytest.mark.unit
class TestProcessWideGateway:
    def setup_method(self):
        gateway_module._gateway = None

    def teardown_method(self):
        gateway_module._gateway = None

    def test_configure_and_get(self):
        configured = configure_gateway(GuardConfig(database_url="postgresql://localhost/t"))
        assert get_gateway() is configured

    def test_get_creates_lazily(self, monkeypatch):
        monkeypatch.delenv("TENANTGUARD_DATABASE_URL", raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/lazy")
        gw = get_gateway()
        assert gw.config.database_url == "postgresql://localhost/lazy"
        assert get_gateway() is gw

    @pytest.mark.asyncio
    async def test_shutdown_closes_and_forgets(self):
        gw = configure_gateway(GuardConfig(database_url="postgresql://localhost/t"))
        gw.close = AsyncMock()

        await shutdown_gateway()

        gw.close.assert_awaited_once()
        assert gateway_module._gateway is None

    @pytest.mark.asyncio
    async def test_module_functions_delegate(self):
        gw = configure_gateway(GuardConfig(database_url="postgresql://localhost/t"))
        gw.execute_sql = AsyncMock(return_value="result")
        gw.execute_transaction = AsyncMock(return_value=["r"])
        gw.with_transaction = AsyncMock(return_value="w")

        assert await gateway_module.execute_sql(SELECT_ORDERS, ["A"], "A") == "result"
        assert await gateway_module.execute_transaction([(SELECT_ORDERS, ["A"])], "A") == ["r"]
        assert await gateway_module.with_transaction(lambda c: None, "A") == "w"
        gw.execute_sql.assert_awaited_once_with(
            SELECT_ORDERS, ["A"], "A", timeout=None, request_id=None
        )
