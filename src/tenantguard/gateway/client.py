"""Statement execution on leased connections.

Contains the pieces the gateway runs statements with:

- PreparedStatement: a validated, tenant-bound statement ready to execute
- QueryResult: rows plus affected row count
- TransactionScope: explicit transaction state machine over one connection
- SecuredClient: the only handle ``with_transaction`` callbacks receive;
  every statement it runs is validated and tenant-bound again

Statements are executed as asyncpg prepared statements, which carry exactly
one SQL command, so stacked statements can never reach the server.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import asyncpg

from ..isolation.exceptions import GatewayError, TransactionAborted
from ..isolation.parser import ParsedQuery

if TYPE_CHECKING:
    from .gateway import TenantGateway

logger = logging.getLogger(__name__)

# Failures raised by the driver or the network, as opposed to security
# decisions and caller errors
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


@dataclass(frozen=True)
class PreparedStatement:
    """A statement that passed validation and tenant binding.

    Attributes:
        query: SQL to execute (rewritten if a predicate was injected).
        params: Parameters to bind.
        parsed: ParsedQuery of the caller's original SQL.
        original_query: SQL as the caller supplied it.
    """

    query: str
    params: List[Any]
    parsed: ParsedQuery
    original_query: str


@dataclass
class QueryResult:
    """Result of one statement."""

    rows: List[Dict[str, Any]]
    row_count: int
    execution_time_ms: float = 0.0
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"rows": self.rows, "rowCount": self.row_count}


def row_count_from_status(status: Optional[str]) -> int:
    """Affected rows from a command status such as ``"UPDATE 3"`` or ``"INSERT 0 2"``."""
    if not status:
        return 0
    last = status.split()[-1]
    return int(last) if last.isdigit() else 0


async def run_statement(connection: Any, statement: PreparedStatement) -> QueryResult:
    """Execute one statement on ``connection`` and time it."""
    started = time.perf_counter()
    prepared = await connection.prepare(statement.query)
    records = await prepared.fetch(*statement.params)
    elapsed_ms = (time.perf_counter() - started) * 1000

    rows = [dict(record) for record in records]
    if statement.parsed.returns_rows:
        row_count = len(rows)
    else:
        row_count = row_count_from_status(prepared.get_statusmsg())
    return QueryResult(rows=rows, row_count=row_count, execution_time_ms=elapsed_ms)


class TransactionState(Enum):
    IDLE = "idle"
    BEGAN = "began"
    EXECUTING = "executing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    RELEASED = "released"


_TRANSITIONS = {
    TransactionState.IDLE: {TransactionState.BEGAN, TransactionState.RELEASED},
    TransactionState.BEGAN: {
        TransactionState.EXECUTING,
        TransactionState.COMMITTED,
        TransactionState.ROLLED_BACK,
    },
    TransactionState.EXECUTING: {
        TransactionState.EXECUTING,
        TransactionState.COMMITTED,
        TransactionState.ROLLED_BACK,
    },
    TransactionState.COMMITTED: {TransactionState.RELEASED},
    TransactionState.ROLLED_BACK: {TransactionState.RELEASED},
    TransactionState.RELEASED: set(),
}


class TransactionScope:
    """One transaction on one leased connection.

    States move IDLE -> BEGAN -> EXECUTING* -> COMMITTED | ROLLED_BACK ->
    RELEASED. Any other transition raises GatewayError before touching the
    connection.
    """

    def __init__(self, connection: Any):
        self._connection = connection
        self._transaction: Optional[Any] = None
        self.state = TransactionState.IDLE
        self.history: List[TransactionState] = [TransactionState.IDLE]

    def _check(self, target: TransactionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise GatewayError(
                f"Illegal transaction transition {self.state.name} -> {target.name}"
            )

    def _set(self, target: TransactionState) -> None:
        self.state = target
        self.history.append(target)

    @property
    def is_active(self) -> bool:
        return self.state in (TransactionState.BEGAN, TransactionState.EXECUTING)

    async def begin(self) -> None:
        self._check(TransactionState.BEGAN)
        self._transaction = self._connection.transaction()
        await self._transaction.start()
        self._set(TransactionState.BEGAN)

    async def execute(self, statement: PreparedStatement) -> QueryResult:
        self._check(TransactionState.EXECUTING)
        self._set(TransactionState.EXECUTING)
        return await run_statement(self._connection, statement)

    async def commit(self) -> None:
        self._check(TransactionState.COMMITTED)
        await self._transaction.commit()
        self._set(TransactionState.COMMITTED)

    async def rollback(self) -> None:
        self._check(TransactionState.ROLLED_BACK)
        await self._transaction.rollback()
        self._set(TransactionState.ROLLED_BACK)

    async def rollback_after_error(self, error: BaseException) -> None:
        """Roll back an active transaction while ``error`` propagates.

        A failing rollback is logged; the original error is what the caller
        re-raises.
        """
        if not self.is_active:
            return
        try:
            await self.rollback()
        except Exception as rollback_error:
            logger.error(
                f"Rollback failed after {type(error).__name__}: {rollback_error}"
            )

    def release(self) -> None:
        if self.is_active:
            # The pool resets connections that come back mid-transaction
            logger.warning("Releasing connection with an open transaction")
            self._set(TransactionState.RELEASED)
            return
        if self.state is not TransactionState.RELEASED:
            self._check(TransactionState.RELEASED)
            self._set(TransactionState.RELEASED)


class SecuredClient:
    """Tenant-bound query handle for one ``with_transaction`` call.

    ``query`` validates and tenant-binds every statement exactly like
    ``execute_sql`` and runs it inside the surrounding transaction. The
    underlying connection is not exposed, and the client refuses to run
    anything once the transaction has committed, rolled back or been
    released.
    """

    def __init__(
        self,
        gateway: "TenantGateway",
        scope: TransactionScope,
        tenant_id: str,
        request_id: Optional[str] = None,
    ):
        self._gateway = gateway
        self._scope = scope
        self._tenant_id = tenant_id
        self._request_id = request_id
        self._operations = 0

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def is_open(self) -> bool:
        return self._scope.is_active

    async def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> QueryResult:
        """Validate, tenant-bind and run one statement in the transaction.

        Raises:
            GatewayError: If the transaction is no longer active.
            TenantIsolationError: If the statement is rejected.
            TransactionAborted: If the driver fails the statement.
        """
        if not self._scope.is_active:
            raise GatewayError("SecuredClient used outside its transaction")
        index = self._operations
        self._operations += 1
        statement = self._gateway.prepare(sql, params, self._tenant_id)
        try:
            result = await self._scope.execute(statement)
        except DRIVER_ERRORS as e:
            raise TransactionAborted(
                f"Statement {index} failed: {type(e).__name__}: {e}", operation_index=index
            ) from e
        self._gateway.record_execution(statement, result, self._tenant_id, self._request_id)
        return result
