"""Ambient tenant context for request-scoped code.

The gateway takes the tenant explicitly on every call. Code that cannot pass
it down (workflow nodes, deeply nested helpers) can instead run inside a
tenant scope; the gateway falls back to the scoped tenant when a call omits
``tenant_id``. The tenant is never inferred from SQL text.

Scopes use contextvars, so each asyncio task and each thread sees its own
tenant and nested scopes restore the outer tenant on exit.

Example:
    with tenant_scope("tenant-a"):
        await gateway.execute_sql("SELECT * FROM orders WHERE tenant_id = $1", ["tenant-a"])

    async with atenant_scope("tenant-b"):
        ...
"""

import logging
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Iterator, Optional

from ..isolation.exceptions import MissingTenantContext

logger = logging.getLogger(__name__)

# Thread/async-safe context variable for current tenant
_current_tenant: ContextVar[Optional[str]] = ContextVar("_current_tenant", default=None)

MAX_TENANT_ID_LENGTH = 255


def validate_tenant_id(tenant_id: Optional[str]) -> str:
    """Check that a tenant identifier is usable.

    Tenant identifiers are opaque: any non-empty string without surrounding
    whitespace, up to 255 characters.

    Raises:
        MissingTenantContext: If tenant_id is None or empty.
        ValueError: If tenant_id is not a string or is malformed.
    """
    if tenant_id is None or tenant_id == "":
        raise MissingTenantContext("tenant_id is required")
    if not isinstance(tenant_id, str):
        raise ValueError(f"tenant_id must be a string, got {type(tenant_id).__name__}")
    if tenant_id != tenant_id.strip():
        raise ValueError("tenant_id must not have leading or trailing whitespace")
    if len(tenant_id) > MAX_TENANT_ID_LENGTH:
        raise ValueError(f"tenant_id exceeds {MAX_TENANT_ID_LENGTH} characters")
    return tenant_id


def get_current_tenant_id() -> Optional[str]:
    """Tenant of the innermost active scope, or None."""
    return _current_tenant.get()


def resolve_tenant_id(tenant_id: Optional[str] = None) -> str:
    """Return the explicit tenant, else the scoped tenant.

    Raises:
        MissingTenantContext: If neither is available.
    """
    if tenant_id is None:
        tenant_id = _current_tenant.get()
        if tenant_id is None:
            raise MissingTenantContext(
                "No tenant_id supplied and no tenant scope is active"
            )
    return validate_tenant_id(tenant_id)


@contextmanager
def tenant_scope(tenant_id: str) -> Iterator[str]:
    """Run a block with ``tenant_id`` as the ambient tenant.

    Yields:
        The tenant id.
    """
    validate_tenant_id(tenant_id)
    token = _current_tenant.set(tenant_id)
    logger.debug(f"Entered tenant scope {tenant_id}")
    try:
        yield tenant_id
    finally:
        _current_tenant.reset(token)
        logger.debug(f"Left tenant scope {tenant_id}")


@asynccontextmanager
async def atenant_scope(tenant_id: str) -> AsyncIterator[str]:
    """Async version of :func:`tenant_scope`."""
    with tenant_scope(tenant_id) as scoped:
        yield scoped
