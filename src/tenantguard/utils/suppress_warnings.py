"""
Configure TenantGuard logging and quiet noisy Core SDK warnings.

This module provides utilities to:
1. Configure TenantGuard logger levels centrally, per category
2. Attach sensitive-value masking to TenantGuard handlers
3. Suppress Core SDK warnings that flood the output when workflow nodes
   are registered
4. Apply a logging configuration temporarily via a context manager
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from ..core.logging_config import LoggingConfig, SensitiveMaskingFilter

ROOT_LOGGER = "tenantguard"

# Logger name to category mapping
_LOGGER_CATEGORIES: Dict[str, str] = {
    "tenantguard.isolation": "policy",
    "tenantguard.isolation.audit": "audit",
    "tenantguard.gateway": "gateway",
    "tenantguard.gateway.profiler": "profiler",
    "tenantguard.nodes": "nodes",
}

_SDK_LOGGERS = ("kailash.nodes.base", "kailash.resources.registry")

# Original logger state (level, handlers, propagate, filters) for restore
_original_logger_state: Dict[str, Dict[str, Any]] = {}

_logging_configured: bool = False


def suppress_core_sdk_warnings() -> None:
    """Suppress Core SDK registration warnings.

    Warnings suppressed:
    - kailash.nodes.base: "Overwriting existing node registration"
    - kailash.resources.registry: "Overwriting existing factory for resource"
    """
    for name in _SDK_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def restore_core_sdk_warnings() -> None:
    """Restore Core SDK warning levels to WARNING."""
    for name in _SDK_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _save_state(name: str, logger: logging.Logger) -> None:
    if name not in _original_logger_state:
        _original_logger_state[name] = {
            "level": logger.level,
            "propagate": logger.propagate,
            "handlers": list(logger.handlers),
            "filters": list(logger.filters),
        }


def configure_tenantguard_logging(
    config: Optional[LoggingConfig] = None,
    level: Optional[int] = None,
) -> None:
    """Configure all TenantGuard loggers.

    Args:
        config: LoggingConfig to apply. Defaults to LoggingConfig.from_env()
            unless ``level`` is given.
        level: Explicit level; overrides the global and category levels.

    Usage:
        configure_tenantguard_logging()
        configure_tenantguard_logging(LoggingConfig(level=logging.INFO,
                                                    loggers={"policy": logging.DEBUG}))
        configure_tenantguard_logging(level=logging.DEBUG)
    """
    global _logging_configured

    if config is None:
        config = LoggingConfig.from_env() if level is None else LoggingConfig(level=level)
    effective_level = level if level is not None else config.level

    root = logging.getLogger(ROOT_LOGGER)
    _save_state(ROOT_LOGGER, root)
    root.setLevel(effective_level)
    root.propagate = config.propagate

    if config.mask_sensitive:
        masking_filter = SensitiveMaskingFilter(config)
        for handler in root.handlers:
            if not any(isinstance(f, SensitiveMaskingFilter) for f in handler.filters):
                handler.addFilter(masking_filter)

    for logger_name, category in _LOGGER_CATEGORIES.items():
        logger = logging.getLogger(logger_name)
        _save_state(logger_name, logger)
        logger.setLevel(level if level is not None else config.get_level_for_category(category))

    suppress_core_sdk_warnings()
    _logging_configured = True

    root.debug(
        f"TenantGuard logging configured: level={logging.getLevelName(effective_level)}"
    )


def restore_tenantguard_logging() -> None:
    """Restore logger levels and propagation saved by the last configure call.

    Masking filters added during configuration are removed. Safe to call
    multiple times.
    """
    global _logging_configured

    for logger_name, state in _original_logger_state.items():
        logger = logging.getLogger(logger_name)
        logger.setLevel(state["level"])
        logger.propagate = state["propagate"]
        for handler in logger.handlers:
            for f in [f for f in handler.filters if isinstance(f, SensitiveMaskingFilter)]:
                handler.removeFilter(f)

    _original_logger_state.clear()
    _logging_configured = False
    restore_core_sdk_warnings()


def is_logging_configured() -> bool:
    return _logging_configured


def get_tenantguard_logger(name: str) -> logging.Logger:
    """Logger under the ``tenantguard`` namespace.

    >>> get_tenantguard_logger("gateway").name
    'tenantguard.gateway'
    >>> get_tenantguard_logger("").name
    'tenantguard'
    """
    if not name or name == ROOT_LOGGER:
        return logging.getLogger(ROOT_LOGGER)
    if name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


@contextmanager
def tenantguard_logging_context(
    config: Optional[LoggingConfig] = None,
    level: Optional[int] = None,
) -> Iterator[None]:
    """Apply a logging configuration for the duration of a block.

    The previous configuration is restored on exit, including when the block
    raises. Nested contexts restore the outer configuration.

    Usage:
        with tenantguard_logging_context(level=logging.DEBUG):
            await gateway.execute_sql(...)
    """
    global _original_logger_state, _logging_configured

    saved_state = dict(_original_logger_state)
    saved_configured = _logging_configured
    _original_logger_state = {}
    _logging_configured = False

    try:
        configure_tenantguard_logging(config=config, level=level)
        yield
    finally:
        restore_tenantguard_logging()
        _original_logger_state.update(saved_state)
        _logging_configured = saved_configured
        if saved_configured:
            suppress_core_sdk_warnings()
