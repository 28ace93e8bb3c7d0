"""
Unit tests for GuardConfig.
"""

import logging

import pytest

from tenantguard.core.config import DEFAULT_SYSTEM_TABLES, GuardConfig

ENV_VARS = [
    "TENANTGUARD_DATABASE_URL",
    "DATABASE_URL",
    "TENANTGUARD_DATABASE_SSL",
    "PGSSLMODE",
    "TENANTGUARD_POOL_MIN_SIZE",
    "TENANTGUARD_POOL_MAX_SIZE",
    "TENANTGUARD_STATEMENT_TIMEOUT",
    "TENANTGUARD_TRANSACTION_TIMEOUT",
    "TENANTGUARD_PROFILER_CAPACITY",
    "TENANTGUARD_SLOW_QUERY_MS",
    "TENANTGUARD_ANALYSIS_SLOW_QUERY_MS",
    "TENANTGUARD_SYSTEM_TABLES",
    "TENANTGUARD_AUTO_INJECT",
    "TENANTGUARD_STRICT_TENANT_PARAMETERS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.mark.unit
class TestGuardConfigDefaults:
    def test_defaults(self):
        config = GuardConfig()

        assert config.database_url is None
        assert config.min_pool_size == 1
        assert config.max_pool_size == 10
        assert config.ssl is False
        assert config.statement_timeout == 5.0
        assert config.transaction_timeout == 30.0
        assert config.profiler_capacity == 1000
        assert config.slow_query_threshold_ms == 1000.0
        assert config.analysis_slow_threshold_ms == 500.0
        assert config.system_tables == DEFAULT_SYSTEM_TABLES
        assert config.auto_inject_tenant_predicate is False
        assert config.strict_tenant_parameters is False

    def test_system_tables_lower_cased(self):
        config = GuardConfig(system_tables={"Feature_Flags"})
        assert config.system_tables == frozenset({"feature_flags"})

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_pool_size": -1},
            {"max_pool_size": 0},
            {"min_pool_size": 5, "max_pool_size": 2},
            {"statement_timeout": 0},
            {"transaction_timeout": -1},
            {"profiler_capacity": 0},
        ],
    )
    def test_validation(self, kwargs):
        with pytest.raises(ValueError):
            GuardConfig(**kwargs)


@pytest.mark.unit
class TestGuardConfigFromEnv:
    def test_empty_environment(self, clean_env):
        config = GuardConfig.from_env()
        assert config.database_url is None
        assert config.max_pool_size == 10

    def test_reads_prefixed_variables(self, clean_env):
        clean_env.setenv("TENANTGUARD_DATABASE_URL", "postgresql://db/app")
        clean_env.setenv("TENANTGUARD_POOL_MIN_SIZE", "2")
        clean_env.setenv("TENANTGUARD_POOL_MAX_SIZE", "20")
        clean_env.setenv("TENANTGUARD_STATEMENT_TIMEOUT", "1.5")
        clean_env.setenv("TENANTGUARD_AUTO_INJECT", "true")
        clean_env.setenv("TENANTGUARD_STRICT_TENANT_PARAMETERS", "yes")

        config = GuardConfig.from_env()

        assert config.database_url == "postgresql://db/app"
        assert config.min_pool_size == 2
        assert config.max_pool_size == 20
        assert config.statement_timeout == 1.5
        assert config.auto_inject_tenant_predicate is True
        assert config.strict_tenant_parameters is True

    def test_database_url_fallback(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgresql://fallback/app")
        assert GuardConfig.from_env().database_url == "postgresql://fallback/app"

    def test_pgsslmode_require(self, clean_env):
        clean_env.setenv("PGSSLMODE", "require")
        assert GuardConfig.from_env().ssl is True

    def test_explicit_ssl_overrides_pgsslmode(self, clean_env):
        clean_env.setenv("PGSSLMODE", "require")
        clean_env.setenv("TENANTGUARD_DATABASE_SSL", "false")
        assert GuardConfig.from_env().ssl is False

    def test_extra_system_tables(self, clean_env):
        clean_env.setenv("TENANTGUARD_SYSTEM_TABLES", "Feature_Flags, countries,")
        config = GuardConfig.from_env()

        assert "feature_flags" in config.system_tables
        assert "countries" in config.system_tables
        assert DEFAULT_SYSTEM_TABLES <= config.system_tables

    def test_invalid_number_uses_default(self, clean_env, caplog):
        clean_env.setenv("TENANTGUARD_POOL_MAX_SIZE", "many")
        caplog.set_level(logging.WARNING, logger="tenantguard.core.config")

        config = GuardConfig.from_env()

        assert config.max_pool_size == 10
        assert "Invalid value 'many' for max_pool_size" in caplog.text

    def test_custom_prefix(self, clean_env):
        clean_env.setenv("APP_DATABASE_URL", "postgresql://custom/app")
        assert GuardConfig.from_env(prefix="APP").database_url == "postgresql://custom/app"
