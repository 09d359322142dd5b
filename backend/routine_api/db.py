# ---------------------------------------------------------------------------
# db.py
#
# Stored-routine database gateway.
#
# This module defines:
# - `RoutineCall` / `Routine`: a named routine, its parameters and the shape
#   the caller expects back (single row, several result sets, nothing)
# - `Database`: owns the SQLAlchemy asyncio engine (the connection pool),
#   created lazily on first use, and executes routines on it
# - `Transaction`: an explicitly begun, explicitly committed or rolled back
#   unit of work bound to one pool checkout
#
# The gateway never builds SQL from caller data. The only statement text it
# emits is the fixed `EXEC [schema].[routine] @name = ?, ...` template built
# from validated identifiers; every value is bound by the driver.
#
# All modules should go through `Database` for database access so pooling,
# timeouts and error translation stay consistent.
# ---------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import enum
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Tuple

from fastapi import Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction, create_async_engine
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import DatabaseSettings
from .errors import (
    DatabaseConnectionError,
    DatabaseError,
    InvalidStateError,
    TransactionError,
)
from .utils import redact_parameters

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
ResultSet = List[Row]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ROUTINE_PART = re.compile(r"^(?:\[([A-Za-z_][A-Za-z0-9_]*)\]|([A-Za-z_][A-Za-z0-9_]*))$")


class ExpectedReturn(str, enum.Enum):
    """Shape a routine's raw result is reduced to."""

    SINGLE = "Single"
    MULTI = "Multi"
    NONE = "None"


def quote_routine_name(name: str) -> str:
    """Validate a (schema-)qualified routine name and return it bracket-quoted.

    Accepts one to three dot-separated identifiers, each optionally wrapped in
    brackets: `spItemList`, `dbo.spItemList`, `[app].[dbo].[spItemList]`.
    """
    parts = str(name).split(".")
    if not 1 <= len(parts) <= 3:
        raise ValueError(f"Invalid routine name: {name!r}")

    quoted: list[str] = []
    for part in parts:
        match = _ROUTINE_PART.match(part.strip())
        if not match:
            raise ValueError(f"Invalid routine name: {name!r}")
        quoted.append(f"[{match.group(1) or match.group(2)}]")
    return ".".join(quoted)


# ---------------------------------------------------------------------------
# Routine calls
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoutineCall:
    """One invocation: routine name, named parameters, expected result shape.

    `params` may be a mapping or a pydantic model (dumped to a dict). Parameter
    order is preserved. `labels` name the result sets of a `MULTI` call,
    positionally; they are ignored for the other shapes.
    """

    routine: str
    params: Mapping[str, Any] = field(default_factory=dict)
    expected: ExpectedReturn = ExpectedReturn.NONE
    labels: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        quote_routine_name(self.routine)

        raw = self.params.model_dump() if isinstance(self.params, BaseModel) else dict(self.params or {})
        for name in raw:
            if not isinstance(name, str) or not _IDENTIFIER.match(name):
                raise ValueError(f"Invalid parameter name for {self.routine}: {name!r}")

        labels = tuple(self.labels or ())
        if len(set(labels)) != len(labels):
            raise ValueError(f"Duplicate result set labels for {self.routine}: {labels!r}")

        object.__setattr__(self, "params", raw)
        object.__setattr__(self, "expected", ExpectedReturn(self.expected))
        object.__setattr__(self, "labels", labels)


@dataclass(frozen=True)
class Routine:
    """A routine declared once with its result shape, used to build calls.

        ITEM_LIST = Routine("[dbo].[spItemList]", ExpectedReturn.MULTI, ("items", "total"))
        await db.execute(ITEM_LIST.call({"idAccount": 1}))
    """

    name: str
    expected: ExpectedReturn = ExpectedReturn.NONE
    labels: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        quote_routine_name(self.name)

    def call(self, params: Mapping[str, Any] | BaseModel | None = None) -> RoutineCall:
        return RoutineCall(self.name, params if params is not None else {}, self.expected, self.labels)


def render_call(call: RoutineCall) -> Tuple[str, Tuple[Any, ...]]:
    """Return the EXEC statement for `call` and its positional bind values."""
    statement = f"SET NOCOUNT ON; EXEC {quote_routine_name(call.routine)}"
    assignments = ", ".join(f"@{name} = ?" for name in call.params)
    if assignments:
        statement = f"{statement} {assignments}"
    return statement, tuple(call.params.values())


def shape_result(call: RoutineCall, result_sets: List[ResultSet]) -> Any:
    """Reduce raw result sets to the shape `call` declared."""
    if call.expected is ExpectedReturn.SINGLE:
        first = result_sets[0] if result_sets else []
        return first[0] if first else None

    if call.expected is ExpectedReturn.MULTI:
        if call.labels:
            # Labels without a matching result set map to None.
            return {
                label: (result_sets[index] if index < len(result_sets) else None)
                for index, label in enumerate(call.labels)
            }
        return result_sets

    return None


def _fetch_result_sets(sync_conn, statement: str, values: Tuple[Any, ...]) -> List[ResultSet]:
    """Run `statement` on the raw driver cursor and collect every result set.

    Runs under `AsyncConnection.run_sync`. Driver errors are re-raised as
    SQLAlchemy `DBAPIError` so callers only deal with one hierarchy.
    """
    dbapi_error = sync_conn.dialect.loaded_dbapi.Error
    cursor = sync_conn.connection.cursor()
    try:
        cursor.execute(statement, values)
        result_sets: List[ResultSet] = []
        while True:
            # Row-count notices come through as sets without a description.
            if cursor.description is not None:
                columns = [column[0] for column in cursor.description]
                result_sets.append([dict(zip(columns, row)) for row in cursor.fetchall()])
            if not cursor.nextset():
                break
        return result_sets
    except dbapi_error as exc:
        raise DBAPIError.instance(statement, values, exc, dbapi_error) from exc
    finally:
        cursor.close()


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionState(str, enum.Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled back"


class Transaction:
    """A unit of work on one pooled connection.

    Created only by `Database.begin_transaction()` and usable only with the
    `Database` that created it. It belongs to the operation that began it:
    pass it explicitly to `Database.execute`, never share it between requests.
    Exactly one of `commit()` / `rollback()` ends it; any later use raises
    `InvalidStateError`. The connection goes back to the pool either way.
    """

    def __init__(self, owner: "Database", connection: AsyncConnection, transaction: AsyncTransaction) -> None:
        self._owner = owner
        self._connection = connection
        self._transaction = transaction
        self.state = TransactionState.ACTIVE

    def __repr__(self) -> str:
        return f"Transaction(state={self.state.value!r})"

    @property
    def is_active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    def _require_active(self, action: str) -> None:
        if not self.is_active:
            raise InvalidStateError(f"Cannot {action} a transaction that is already {self.state.value}")

    def _check_owner(self, owner: "Database") -> None:
        if owner is not self._owner:
            raise InvalidStateError("Transaction belongs to a different database")

    def _connection_for(self, owner: "Database") -> AsyncConnection:
        self._check_owner(owner)
        self._require_active("execute on")
        return self._connection

    async def commit(self) -> None:
        self._require_active("commit")
        try:
            await self._transaction.commit()
        except SQLAlchemyError as exc:
            self.state = TransactionState.ROLLED_BACK
            raise TransactionError("Transaction commit failed") from exc
        else:
            self.state = TransactionState.COMMITTED
        finally:
            await self._connection.close()

    async def rollback(self) -> None:
        self._require_active("roll back")
        try:
            await self._transaction.rollback()
        except SQLAlchemyError as exc:
            raise TransactionError("Transaction rollback failed") from exc
        finally:
            self.state = TransactionState.ROLLED_BACK
            await self._connection.close()

    async def __aenter__(self) -> "Transaction":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.is_active:
            return
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


def create_engine_for(settings: DatabaseSettings) -> AsyncEngine:
    """Default engine factory: pooled asyncio engine for the configured server."""
    # pool_pre_ping proactively checks connections to avoid stale sockets.
    return create_async_engine(
        settings.url,
        pool_pre_ping=True,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
    )


EngineFactory = Callable[[DatabaseSettings], AsyncEngine]


class Database:
    """Executes stored routines on a lazily created, shared connection pool.

    One instance is owned by the application (see `main.create_app`) and
    disposed at shutdown. The pool is created on the first call that needs
    it; concurrent first callers share a single initialization task, so only
    one engine ever exists per instance. A failed initialization is not
    remembered and the next caller tries again.
    """

    def __init__(self, settings: DatabaseSettings, *, engine_factory: Optional[EngineFactory] = None) -> None:
        self.settings = settings
        self._engine_factory = engine_factory or create_engine_for
        self._engine: Optional[AsyncEngine] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._engine is not None

    # -- pool ---------------------------------------------------------------

    async def acquire_pool(self) -> AsyncEngine:
        if self._engine is not None:
            return self._engine

        pending = self._pending
        if pending is None or pending.done():
            pending = self._pending = asyncio.get_running_loop().create_task(self._connect())

        try:
            # shield: a cancelled waiter must not cancel the shared attempt.
            return await asyncio.shield(pending)
        finally:
            if self._pending is pending and pending.done():
                self._pending = None

    async def _connect(self) -> AsyncEngine:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.connect_attempts),
            wait=wait_exponential(multiplier=self.settings.connect_backoff, max=10),
            retry=retry_if_exception_type(DatabaseConnectionError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                engine = await self._open_engine()
        self._engine = engine
        logger.info("Database pool ready")
        return engine

    async def _open_engine(self) -> AsyncEngine:
        try:
            engine = self._engine_factory(self.settings)
        except SQLAlchemyError as exc:
            raise DatabaseConnectionError() from exc

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Database connect attempt failed: %s", exc)
            await engine.dispose()
            raise DatabaseConnectionError() from exc
        return engine

    async def dispose(self) -> None:
        """Close every pooled connection. The next call reconnects."""
        engine, self._engine = self._engine, None
        if engine is not None:
            await engine.dispose()
            logger.info("Database pool disposed")

    # -- routines -----------------------------------------------------------

    async def execute(self, call: RoutineCall, txn: Optional[Transaction] = None) -> Any:
        """Run `call`, on `txn`'s connection if given, and shape its result.

        Without a transaction the call runs in its own unit of work on a fresh
        checkout and is committed when it succeeds.
        """
        if txn is not None:
            result_sets = await self._run(txn._connection_for(self), call)
            return shape_result(call, result_sets)

        engine = await self.acquire_pool()
        try:
            async with engine.begin() as conn:
                result_sets = await self._run(conn, call)
        except SQLAlchemyError as exc:
            raise DatabaseError(call.routine, call.params, cause=exc) from exc
        return shape_result(call, result_sets)

    async def _run(self, conn: AsyncConnection, call: RoutineCall) -> List[ResultSet]:
        statement, values = render_call(call)
        logger.debug("EXEC %s %s", call.routine, redact_parameters(call.params))
        try:
            return await asyncio.wait_for(
                conn.run_sync(_fetch_result_sets, statement, values),
                timeout=self.settings.command_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DatabaseError(call.routine, call.params, code="DATABASE_TIMEOUT", cause=exc) from exc
        except SQLAlchemyError as exc:
            raise DatabaseError(call.routine, call.params, cause=exc) from exc

    # -- transactions -------------------------------------------------------

    async def begin_transaction(self) -> Transaction:
        engine = await self.acquire_pool()

        conn = engine.connect()
        try:
            await conn.start()
        except SQLAlchemyError as exc:
            raise DatabaseConnectionError() from exc

        try:
            trans = await conn.begin()
        except SQLAlchemyError as exc:
            await conn.close()
            raise TransactionError("Could not begin transaction") from exc
        return Transaction(self, conn, trans)

    async def commit(self, txn: Transaction) -> None:
        txn._check_owner(self)
        await txn.commit()

    async def rollback(self, txn: Transaction) -> None:
        txn._check_owner(self)
        await txn.rollback()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """`async with db.transaction() as txn:` commits on success, rolls back on error."""
        txn = await self.begin_transaction()
        try:
            yield txn
        except BaseException:
            if txn.is_active:
                await txn.rollback()
            raise
        if txn.is_active:
            await txn.commit()


def get_database(request: Request) -> Database:
    """FastAPI dependency returning the application's `Database`."""
    return request.app.state.database
