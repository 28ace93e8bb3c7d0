"""
Unit tests for the tenant isolation policy.

Each test feeds one statement through validate_sql_query and checks that it
is allowed or rejected with the specific error class.
"""

import logging

import pytest

from tenantguard.core.config import GuardConfig
from tenantguard.isolation.exceptions import (
    DangerousOperationBlocked,
    EnhancedBypassPatternDetected,
    MissingTenantColumn,
    MissingTenantPredicate,
    OrBypassDetected,
    TenantIsolationError,
    TruncateProhibited,
    UnionBranchUnprotected,
)
from tenantguard.isolation.parser import StatementType
from tenantguard.isolation.policy import (
    find_dangerous_pattern,
    find_enhanced_patterns,
    is_query_allowed,
    validate_sql_query,
)
from tenantguard.isolation.risk import RiskLevel


@pytest.mark.unit
class TestAllowedQueries:
    def test_or_nested_under_tenant_and(self):
        parsed = validate_sql_query(
            "SELECT * FROM users WHERE tenant_id = $1 "
            "AND (status = 'active' OR status = 'pending')",
            tenant_id="tenant-a",
        )
        assert parsed.security_risk is RiskLevel.SAFE

    def test_protected_update_and_delete(self):
        validate_sql_query("UPDATE orders SET status = $1 WHERE tenant_id = $2")
        validate_sql_query("DELETE FROM orders WHERE tenant_id = $1 AND id = $2")

    def test_insert_with_tenant_column(self):
        parsed = validate_sql_query(
            "INSERT INTO orders (tenant_id, total) VALUES ($1, $2)"
        )
        assert parsed.statement_type is StatementType.INSERT

    def test_health_check_and_system_tables(self):
        validate_sql_query("SELECT 1")
        validate_sql_query("SELECT version()")
        validate_sql_query("SELECT * FROM migrations")
        validate_sql_query("SELECT * FROM schema_versions ORDER BY applied_at DESC")

    def test_literals_cannot_trigger_denylist(self):
        validate_sql_query(
            "SELECT * FROM notes WHERE body = 'DROP TABLE x; -- /*' AND tenant_id = $1"
        )

    def test_is_null_on_other_column(self):
        validate_sql_query(
            "SELECT * FROM orders WHERE tenant_id = $1 AND deleted_at IS NULL"
        )

    def test_missing_predicate_allowed_with_auto_inject(self):
        config = GuardConfig(auto_inject_tenant_predicate=True)
        parsed = validate_sql_query("SELECT * FROM orders", "tenant-a", config)
        assert parsed.security_risk is RiskLevel.HIGH

    def test_surviving_risk_is_logged(self, caplog):
        caplog.set_level(logging.WARNING, logger="tenantguard.isolation.policy")
        validate_sql_query(
            "INSERT INTO orders (tenant_id, total) VALUES ($1, $2)", tenant_id="tenant-a"
        )
        assert any("Query risk HIGH allowed" in r.getMessage() for r in caplog.records)


@pytest.mark.unit
class TestRejectedQueries:
    def test_or_bypass(self):
        with pytest.raises(OrBypassDetected):
            validate_sql_query("SELECT * FROM orders WHERE tenant_id = $1 OR id = $2")

    def test_parenthesized_or_tautology(self):
        with pytest.raises(OrBypassDetected):
            validate_sql_query("SELECT * FROM orders WHERE (tenant_id = $1) OR (1 = 1)")

    @pytest.mark.parametrize("tail", ["OR TRUE", "OR 1=1", "OR 1 = 1"])
    def test_or_always_true(self, tail):
        with pytest.raises(OrBypassDetected):
            validate_sql_query(f"SELECT * FROM orders WHERE tenant_id = $1 {tail}")

    @pytest.mark.parametrize(
        "group", ["(status = $2 OR deleted_at IS NULL)", "(status = $2 OR TRUE)"]
    )
    def test_always_true_in_nested_or(self, group):
        sql = f"SELECT * FROM orders WHERE tenant_id = $1 AND {group}"
        with pytest.raises(OrBypassDetected):
            validate_sql_query(sql)
        assert is_query_allowed(sql) is False

    def test_union_branch_without_tenant(self):
        with pytest.raises(UnionBranchUnprotected):
            validate_sql_query(
                "SELECT id FROM orders WHERE tenant_id = $1 "
                "UNION SELECT id FROM orders WHERE status = $2"
            )

    def test_union_branch_with_inequality(self):
        with pytest.raises(UnionBranchUnprotected):
            validate_sql_query(
                "SELECT id FROM orders WHERE tenant_id = $1 "
                "UNION SELECT id FROM orders WHERE tenant_id != $1"
            )

    @pytest.mark.parametrize(
        "sql",
        [
            "DROP TABLE orders",
            "drop table orders",
            "GRANT ALL ON orders TO public",
            "REVOKE SELECT ON orders FROM app",
            "CREATE USER intruder",
            "ALTER USER app WITH SUPERUSER",
            "SELECT * FROM orders WHERE tenant_id = $1; DROP TABLE orders",
            "SELECT * FROM orders WHERE tenant_id = $1 -- AND deleted = false",
            "SELECT * FROM orders WHERE tenant_id = $1 /* hidden */",
            "SELECT * FROM information_schema.tables",
            "SELECT * FROM pg_catalog.pg_tables",
            "SELECT usename FROM pg_user",
            "SELECT * FROM pg_shadow",
            "EXEC xp_cmdshell 'dir'",
        ],
    )
    def test_denylist(self, sql):
        with pytest.raises(DangerousOperationBlocked):
            validate_sql_query(sql)

    def test_update_without_tenant(self):
        with pytest.raises(MissingTenantPredicate):
            validate_sql_query("UPDATE orders SET status = $1")

    def test_delete_without_tenant(self):
        with pytest.raises(MissingTenantPredicate):
            validate_sql_query("DELETE FROM orders WHERE id = $1")

    def test_select_with_tenant_only_in_subquery(self):
        with pytest.raises(MissingTenantPredicate):
            validate_sql_query(
                "SELECT * FROM orders WHERE id IN "
                "(SELECT order_id FROM items WHERE tenant_id = $1)"
            )

    def test_insert_without_tenant_column(self):
        with pytest.raises(MissingTenantColumn):
            validate_sql_query("INSERT INTO orders (id, total) VALUES ($1, $2)")

    def test_truncate_tenant_table(self):
        with pytest.raises(TruncateProhibited) as exc_info:
            validate_sql_query("TRUNCATE TABLE orders")
        assert isinstance(exc_info.value, DangerousOperationBlocked)

    def test_truncate_system_table_is_dangerous(self):
        with pytest.raises(DangerousOperationBlocked) as exc_info:
            validate_sql_query("TRUNCATE migrations")
        assert not isinstance(exc_info.value, TruncateProhibited)

    def test_tenant_in_list(self):
        with pytest.raises(EnhancedBypassPatternDetected):
            validate_sql_query(
                "SELECT * FROM orders WHERE tenant_id = $1 AND tenant_id IN ($2, $3)"
            )

    def test_tenant_any_array(self):
        with pytest.raises(EnhancedBypassPatternDetected):
            validate_sql_query(
                "SELECT * FROM orders WHERE tenant_id = $1 AND tenant_id = ANY($2)"
            )

    def test_negated_tenant_predicate(self):
        with pytest.raises(EnhancedBypassPatternDetected):
            validate_sql_query(
                "SELECT * FROM orders WHERE tenant_id = $1 AND NOT tenant_id = $2"
            )

    def test_tenant_is_null(self):
        with pytest.raises(EnhancedBypassPatternDetected):
            validate_sql_query(
                "SELECT * FROM orders WHERE tenant_id = $1 AND tenant_id IS NULL"
            )


@pytest.mark.unit
class TestErrorMessages:
    def test_security_block_prefix_and_excerpt(self):
        sql = "SELECT * FROM orders WHERE tenant_id = $1 OR id = $2"
        with pytest.raises(OrBypassDetected) as exc_info:
            validate_sql_query(sql, tenant_id="tenant-a")

        error = exc_info.value
        assert str(error).startswith("SECURITY BLOCK: ")
        assert str(error).endswith(sql)
        assert error.tenant_id == "tenant-a"
        assert error.category == "or_bypass"
        assert "SELECT" not in error.client_message

    def test_long_query_is_truncated(self):
        sql = "UPDATE orders SET note = $1 WHERE id = $2 " + "AND x = 1 " * 20
        with pytest.raises(MissingTenantPredicate) as exc_info:
            validate_sql_query(sql)

        error = exc_info.value
        assert len(error.query_excerpt) == 100
        assert str(error).endswith("...")

    def test_all_rejections_share_base_class(self):
        with pytest.raises(TenantIsolationError):
            validate_sql_query("DELETE FROM orders")

    def test_rejection_is_logged(self, caplog):
        caplog.set_level(logging.WARNING, logger="tenantguard.isolation.policy")
        with pytest.raises(MissingTenantPredicate):
            validate_sql_query("DELETE FROM orders", tenant_id="tenant-a")
        assert any(
            "Blocked query for tenant tenant-a" in r.getMessage() for r in caplog.records
        )


@pytest.mark.unit
class TestPatternHelpers:
    def test_find_dangerous_pattern(self):
        assert find_dangerous_pattern("DROP TABLE orders") == "DROP statement"
        assert find_dangerous_pattern("SELECT 1") is None

    def test_find_enhanced_patterns(self):
        found = find_enhanced_patterns("select * from t where tenant_id <> $1")
        assert found == ["tenant_id inequality"]

    def test_is_query_allowed(self):
        assert is_query_allowed("SELECT * FROM orders WHERE tenant_id = $1") is True
        assert is_query_allowed("SELECT * FROM orders") is False
