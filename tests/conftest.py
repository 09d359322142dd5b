"""Shared fixtures: an in-memory stand-in for the SQL Server driver.

`FakeServer` plays the database: routines are Python callables registered by
name that read and write `tables`. `FakeEngine` / `FakeConnection` implement
the slice of SQLAlchemy's asyncio engine API the gateway uses, including
snapshot-based transactions so rollback behaviour can be observed.
"""

from __future__ import annotations

import asyncio
import copy
import json
import re
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
from sqlalchemy.exc import OperationalError
from starlette.requests import Request

from routine_api.config import DatabaseSettings, Settings
from routine_api.db import Database

_EXEC = re.compile(r"^SET NOCOUNT ON; EXEC (\S+)(?: (.*))?$")
_ASSIGNMENT = re.compile(r"@(\w+) = \?")


class FakeDriverError(Exception):
    """Plays the driver's base DBAPI `Error` class."""


class FakeServer:
    def __init__(self) -> None:
        self.tables: Dict[str, List[dict]] = {"items": []}
        self.routines: Dict[str, Callable[[Dict[str, List[dict]], dict], list]] = {}
        self.statements: List[tuple] = []
        self.engines_created = 0
        self.fail_connects = 0
        self.connect_delay = 0.0
        self.command_delay = 0.0

    def routine(self, name: str):
        def register(fn):
            self.routines[name] = fn
            return fn

        return register

    def engine_factory(self, settings: DatabaseSettings) -> "FakeEngine":
        self.engines_created += 1
        return FakeEngine(self)

    async def check_connect(self) -> None:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise OperationalError("connect", {}, FakeDriverError("Login timeout expired"))


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn
        self._sets: list = []
        self._index = 0

    def execute(self, statement: str, values: tuple) -> None:
        self.conn.server.statements.append((statement, values))
        match = _EXEC.match(statement)
        if not match:
            raise FakeDriverError(f"Incorrect syntax: {statement}")
        routine = match.group(1)
        names = _ASSIGNMENT.findall(match.group(2) or "")
        fn = self.conn.server.routines.get(routine)
        if fn is None:
            raise FakeDriverError(f"Could not find stored procedure '{routine}'")
        self._sets = fn(self.conn.tables, dict(zip(names, values))) or []
        self._index = 0

    @property
    def description(self):
        if not self._sets or self._sets[self._index] is None:
            return None
        columns, _rows = self._sets[self._index]
        return [(column, None, None, None, None, None, None) for column in columns]

    def fetchall(self) -> list:
        _columns, rows = self._sets[self._index]
        return list(rows)

    def nextset(self) -> Optional[bool]:
        if self._index + 1 < len(self._sets):
            self._index += 1
            return True
        return None

    def close(self) -> None:
        pass


class FakeTransaction:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn

    async def commit(self) -> None:
        self.conn.server.tables = self.conn.working
        self.conn.working = None

    async def rollback(self) -> None:
        self.conn.working = None


class FakeConnection:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.working: Optional[Dict[str, List[dict]]] = None
        self.closed = False

    @property
    def tables(self) -> Dict[str, List[dict]]:
        return self.working if self.working is not None else self.server.tables

    async def start(self) -> "FakeConnection":
        await self.server.check_connect()
        return self

    async def __aenter__(self) -> "FakeConnection":
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def execute(self, statement) -> None:
        return None

    async def begin(self) -> FakeTransaction:
        self.working = copy.deepcopy(self.server.tables)
        return FakeTransaction(self)

    async def run_sync(self, fn, *args):
        if self.server.command_delay:
            await asyncio.sleep(self.server.command_delay)
        sync_conn = SimpleNamespace(
            dialect=SimpleNamespace(loaded_dbapi=SimpleNamespace(Error=FakeDriverError)),
            connection=SimpleNamespace(cursor=lambda: FakeCursor(self)),
        )
        return fn(sync_conn, *args)

    async def close(self) -> None:
        self.closed = True


class FakeEngine:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.disposed = False

    def connect(self) -> FakeConnection:
        return FakeConnection(self.server)

    @asynccontextmanager
    async def begin(self):
        conn = await FakeConnection(self.server).start()
        trans = await conn.begin()
        try:
            yield conn
        except BaseException:
            await trans.rollback()
            raise
        else:
            await trans.commit()
        finally:
            await conn.close()

    async def dispose(self) -> None:
        self.disposed = True


def install_item_routines(server: FakeServer) -> None:
    @server.routine("[dbo].[spItemCreate]")
    def item_create(tables, params):
        row = {"idItem": len(tables["items"]) + 1, **params}
        tables["items"].append(row)
        return [(list(row), [tuple(row.values())])]

    @server.routine("[dbo].[spItemCreateThenFail]")
    def item_create_then_fail(tables, params):
        tables["items"].append({"idItem": 999, **params})
        raise FakeDriverError("Violation of UNIQUE KEY constraint 'uq_item_name'")

    @server.routine("[dbo].[spItemGet]")
    def item_get(tables, params):
        rows = [row for row in tables["items"] if row["idItem"] == params.get("idItem")]
        columns = ["idItem", "name"]
        return [(columns, [(row["idItem"], row["name"]) for row in rows])]

    @server.routine("[dbo].[spItemList]")
    def item_list(tables, params):
        rows = tables["items"]
        return [
            None,  # row-count notice
            (["idItem", "name"], [(row["idItem"], row["name"]) for row in rows]),
            (["total"], [(len(rows),)]),
        ]

    @server.routine("[dbo].[spItemDelete]")
    def item_delete(tables, params):
        tables["items"] = [row for row in tables["items"] if row["idItem"] != params.get("idItem")]
        return [None]


@pytest.fixture
def server() -> FakeServer:
    fake = FakeServer()
    install_item_routines(fake)
    return fake


@pytest.fixture
def db_settings() -> DatabaseSettings:
    return DatabaseSettings(connect_attempts=1, connect_backoff=0.0, command_timeout=5.0)


@pytest.fixture
def database(server: FakeServer, db_settings: DatabaseSettings) -> Database:
    return Database(db_settings, engine_factory=server.engine_factory)


@pytest.fixture
def settings(db_settings: DatabaseSettings) -> Settings:
    return Settings(app_env="production", database=db_settings, log_level="WARNING")


def make_request(
    *,
    path_params: Optional[dict] = None,
    query: str = "",
    body: Any = None,
    method: str = "POST",
    path: str = "/api/v1/external/item",
) -> Request:
    """Build a Starlette request with the given inputs, outside any app."""
    if body is None:
        raw = b""
    elif isinstance(body, bytes):
        raw = body
    else:
        raw = json.dumps(body).encode("utf-8")

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "root_path": "",
        "query_string": query.encode("utf-8"),
        "headers": [(b"content-type", b"application/json"), (b"content-length", str(len(raw)).encode())],
        "path_params": path_params or {},
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    sent = False

    async def receive():
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": raw, "more_body": False}

    return Request(scope, receive)
