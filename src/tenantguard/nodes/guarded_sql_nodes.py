"""Tenant-guarded SQL nodes for Kailash workflows.

These nodes run SQL through a TenantGateway, so statements issued from a
workflow pass the same isolation policy and tenant binding as direct gateway
calls. Each node extends AsyncNode and implements async_run().

The gateway is taken from the workflow context key ``tenant_gateway`` when
present, otherwise the process-wide gateway is used. The tenant comes from
the ``tenant_id`` parameter or, when omitted, the active tenant scope.

Nodes:
    TenantGuardedSQLNode -> executes one statement
    TenantGuardedTransactionNode -> executes a list of statements atomically
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from kailash.nodes.base import NodeParameter
from kailash.nodes.base_async import AsyncNode
from kailash.sdk_exceptions import NodeExecutionError

from ..gateway.gateway import TenantGateway, get_gateway

logger = logging.getLogger(__name__)

GATEWAY_CONTEXT_KEY = "tenant_gateway"


def _get_gateway_from_context(node: AsyncNode) -> TenantGateway:
    """Gateway stored in the workflow context, or the process-wide gateway."""
    gateway = node.get_workflow_context(GATEWAY_CONTEXT_KEY)
    if gateway is None:
        gateway = get_gateway()
    return gateway


def _request_id(value: Optional[str]) -> str:
    return value or f"req_{uuid.uuid4().hex[:12]}"


class TenantGuardedSQLNode(AsyncNode):
    """Node that executes one tenant-guarded SQL statement.

    The statement is validated and bound to the tenant before it reaches
    the database; a rejected statement fails the node.
    """

    def __init__(
        self,
        query: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ):
        self.query = query
        self.tenant_id = tenant_id
        self.timeout = timeout
        super().__init__(**kwargs)

    def get_parameters(self) -> Dict[str, NodeParameter]:
        return {
            "query": NodeParameter(
                name="query",
                type=str,
                description="SQL statement with $n placeholders",
                required=False,
            ),
            "params": NodeParameter(
                name="params",
                type=list,
                description="Positional parameters for the statement",
                default=[],
                required=False,
            ),
            "tenant_id": NodeParameter(
                name="tenant_id",
                type=str,
                description="Tenant the statement runs for",
                required=False,
            ),
            "timeout": NodeParameter(
                name="timeout",
                type=float,
                description="Statement timeout in seconds",
                required=False,
            ),
            "request_id": NodeParameter(
                name="request_id",
                type=str,
                description="Correlation id recorded with query metrics",
                required=False,
            ),
        }

    async def async_run(self, **kwargs) -> Dict[str, Any]:
        """Execute the statement through the gateway."""
        query = kwargs.get("query") or self.query
        params = kwargs.get("params") or []
        tenant_id = kwargs.get("tenant_id") or self.tenant_id
        timeout = kwargs.get("timeout") or self.timeout
        request_id = _request_id(kwargs.get("request_id"))

        if not query:
            raise NodeExecutionError("TenantGuardedSQLNode requires a 'query' parameter")

        gateway = _get_gateway_from_context(self)
        try:
            result = await gateway.execute_sql(
                query, params, tenant_id, timeout=timeout, request_id=request_id
            )
        except Exception as e:
            logger.error(f"Guarded SQL failed ({request_id}): {e}")
            raise NodeExecutionError(f"Guarded SQL failed: {e}") from e

        return {
            "rows": result.rows,
            "row_count": result.row_count,
            "execution_time_ms": result.execution_time_ms,
            "request_id": request_id,
        }


class TenantGuardedTransactionNode(AsyncNode):
    """Node that executes several tenant-guarded statements in one transaction.

    Every operation is validated before any runs. A driver failure rolls the
    whole transaction back and fails the node.
    """

    def __init__(
        self,
        tenant_id: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ):
        self.tenant_id = tenant_id
        self.timeout = timeout
        super().__init__(**kwargs)

    def get_parameters(self) -> Dict[str, NodeParameter]:
        return {
            "operations": NodeParameter(
                name="operations",
                type=list,
                description="List of {'query': ..., 'params': [...]} operations",
                default=[],
                required=False,
            ),
            "tenant_id": NodeParameter(
                name="tenant_id",
                type=str,
                description="Tenant the transaction runs for",
                required=False,
            ),
            "timeout": NodeParameter(
                name="timeout",
                type=float,
                description="Transaction timeout in seconds",
                required=False,
            ),
            "request_id": NodeParameter(
                name="request_id",
                type=str,
                description="Correlation id recorded with query metrics",
                required=False,
            ),
        }

    async def async_run(self, **kwargs) -> Dict[str, Any]:
        """Execute all operations atomically through the gateway."""
        operations: List[Any] = kwargs.get("operations") or []
        tenant_id = kwargs.get("tenant_id") or self.tenant_id
        timeout = kwargs.get("timeout") or self.timeout
        request_id = _request_id(kwargs.get("request_id"))

        if not operations:
            raise NodeExecutionError(
                "TenantGuardedTransactionNode requires at least one operation"
            )

        gateway = _get_gateway_from_context(self)
        try:
            results = await gateway.execute_transaction(
                operations, tenant_id, timeout=timeout, request_id=request_id
            )
        except Exception as e:
            logger.error(f"Guarded transaction failed ({request_id}): {e}")
            raise NodeExecutionError(f"Guarded transaction failed: {e}") from e

        logger.info(
            f"Guarded transaction {request_id} committed {len(results)} operation(s)"
        )
        return {
            "status": "committed",
            "results": [r.to_dict() for r in results],
            "operation_count": len(results),
            "request_id": request_id,
        }
