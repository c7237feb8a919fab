import re
from copy import deepcopy
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import psycopg
import psycopg_pool
import pytest
from psycopg import pq

from pqtx import Connection

SAVEPOINT = re.compile(r'^SAVEPOINT "(?P<name>[^"]+)"$', re.I)
RELEASE = re.compile(r'^RELEASE SAVEPOINT "(?P<name>[^"]+)"$', re.I)
ROLLBACK_TO = re.compile(r'^ROLLBACK TO "(?P<name>[^"]+)"$', re.I)
CREATE = re.compile(
    r"^CREATE TABLE (?P<table>\w+)\s*\((?P<columns>.*)\)$", re.I
)
DROP = re.compile(r"^DROP TABLE (IF EXISTS )?(?P<table>\w+)$", re.I)
INSERT = re.compile(
    r"^INSERT INTO (?P<table>\w+) VALUES \((?P<values>.*)\)$", re.I
)
SELECT = re.compile(r"^SELECT .* FROM (?P<table>\w+)", re.I)
COPY = re.compile(r"^COPY (?P<table>\w+)( \(.*\))? FROM STDIN$", re.I)
DEALLOCATE = re.compile(r'^DEALLOCATE "(?P<name>[^"]+)"$', re.I)


class FakeResult:
    def __init__(
        self,
        status: pq.ExecStatus,
        error: str = "",
        sqlstate: str = "",
        ntuples: int = 0,
        columns: Tuple[str, ...] = (),
        command_tuples: Optional[int] = None,
    ):
        self.status = status
        self.error_message = error.encode()
        self.sqlstate = sqlstate
        self.ntuples = ntuples
        self.columns = columns
        self.nfields = len(columns)
        self.command_tuples = command_tuples
        self.command_status = b""

    def error_field(self, field):
        if field == pq.DiagnosticField.SQLSTATE and self.sqlstate:
            return self.sqlstate.encode()
        return None

    def fname(self, index):
        return self.columns[index].encode()


def ok(**kwargs) -> FakeResult:
    return FakeResult(pq.ExecStatus.COMMAND_OK, **kwargs)


class FakeServer:
    """Tables shared by every session, plus knobs to inject failures"""

    def __init__(self):
        self.tables: Dict[str, List[tuple]] = {}
        self.primary_keys: Dict[str, bool] = {}
        self.failures: Dict[str, Tuple[str, str]] = {}
        self.refuse = False
        self.sessions: List["FakeRawConnection"] = []
        self.pools: List["FakePool"] = []

    def connect(self, conninfo: str) -> "FakeRawConnection":
        if self.refuse:
            raise psycopg.OperationalError("connection refused")
        raw = FakeRawConnection(self, conninfo)
        self.sessions.append(raw)
        return raw

    def fail(self, pattern: str, sqlstate="XX000", message="injected error"):
        self.failures[pattern] = (sqlstate, message)


class FakePGconn:
    """Just enough of psycopg.pq.PGconn, with transaction snapshots"""

    def __init__(self, server: FakeServer):
        self.server = server
        self.status = pq.ConnStatus.OK
        self.nonblocking = 1
        self.statements: List[str] = []
        self.prepared: Dict[str, str] = {}
        self.copied: List[str] = []
        self._snapshots: List[Tuple[str, dict]] = []
        self._failed = False
        self._copy: Optional[Tuple[str, List[str]]] = None
        self._pending: List[FakeResult] = []

    @property
    def transaction_status(self):
        if self.status == pq.ConnStatus.BAD:
            return pq.TransactionStatus.UNKNOWN
        if self._failed:
            return pq.TransactionStatus.INERROR
        if self._snapshots:
            return pq.TransactionStatus.INTRANS
        return pq.TransactionStatus.IDLE

    def finish(self):
        self.status = pq.ConnStatus.BAD

    def exec_params(
        self,
        command,
        param_values,
        param_types=None,
        param_formats=None,
        result_format=0,
    ):
        return self._run(command.decode(), param_values)

    def exec_prepared(
        self, name, param_values, param_formats=None, result_format=0
    ):
        statement = self.prepared.get(name.decode())
        if statement is None:
            return self._error("26000", f"prepared statement {name} missing")
        return self._run(statement, param_values)

    def prepare(self, name, command, param_types=None):
        self._check_alive()
        self.statements.append(f"PREPARE {name.decode()}")
        text = command.decode()
        for pattern, (sqlstate, message) in self.server.failures.items():
            if re.search(pattern, text):
                return self._error(sqlstate, message)
        self.prepared[name.decode()] = text
        return ok()

    def put_copy_data(self, buffer):
        self._check_alive()
        self._copy[1].extend(bytes(buffer).decode().splitlines())
        return 1

    def put_copy_end(self, error=None):
        self._check_alive()
        table, lines = self._copy
        self._copy = None
        if error is not None:
            self._pending = [
                self._error("57014", f"COPY from stdin failed: {error}")
            ]
            return 1
        for line in lines:
            self.server.tables[table].append(
                tuple(_value(field) for field in line.split("\t"))
            )
        self.copied.extend(lines)
        self._pending = [ok(command_tuples=len(lines))]
        return 1

    def get_result(self):
        return self._pending.pop(0) if self._pending else None

    def _check_alive(self):
        if self.status == pq.ConnStatus.BAD:
            raise psycopg.OperationalError("server closed the connection")

    def _error(self, sqlstate: str, message: str) -> FakeResult:
        if sqlstate == "57P01":
            self.status = pq.ConnStatus.BAD
        if self._snapshots:
            self._failed = True
        return FakeResult(
            pq.ExecStatus.FATAL_ERROR, f"ERROR:  {message}\n", sqlstate
        )

    def _restore(self, snapshot: dict):
        self.server.tables.clear()
        self.server.tables.update(deepcopy(snapshot))

    def _run(self, sql: str, param_values) -> FakeResult:
        self._check_alive()
        self.statements.append(sql)
        params = [
            None if value is None else bytes(value).decode()
            for value in (param_values or ())
        ]
        upper = sql.upper()

        if self._failed and not upper.startswith(("ROLLBACK", "COMMIT")):
            return self._error(
                "25P02",
                "current transaction is aborted, commands ignored until "
                "end of transaction block",
            )
        for pattern, (sqlstate, message) in self.server.failures.items():
            if re.search(pattern, sql):
                return self._error(sqlstate, message)

        if upper.startswith("START TRANSACTION"):
            self._snapshots.append(("", deepcopy(self.server.tables)))
            return ok()
        if upper in ("COMMIT TRANSACTION", "ROLLBACK TRANSACTION"):
            rollback = upper.startswith("ROLLBACK") or self._failed
            if self._snapshots and rollback:
                self._restore(self._snapshots[0][1])
            self._snapshots.clear()
            self._failed = False
            return ok()

        match = SAVEPOINT.match(sql)
        if match:
            if not self._snapshots:
                return self._error(
                    "25P01", "SAVEPOINT can only be used in transaction blocks"
                )
            self._snapshots.append(
                (match["name"], deepcopy(self.server.tables))
            )
            return ok()
        match = RELEASE.match(sql) or ROLLBACK_TO.match(sql)
        if match:
            names = [name for name, _ in self._snapshots]
            if match["name"] not in names:
                return self._error(
                    "3B001", f"savepoint \"{match['name']}\" does not exist"
                )
            index = len(names) - 1 - names[::-1].index(match["name"])
            if upper.startswith("RELEASE"):
                del self._snapshots[index:]
            else:
                self._restore(self._snapshots[index][1])
                del self._snapshots[index + 1 :]
                self._failed = False
            return ok()

        match = CREATE.match(sql)
        if match:
            self.server.tables[match["table"]] = []
            self.server.primary_keys[match["table"]] = (
                "PRIMARY KEY" in match["columns"].upper()
            )
            return ok()
        match = DROP.match(sql)
        if match:
            self.server.tables.pop(match["table"], None)
            return ok()
        match = INSERT.match(sql)
        if match:
            rows = self._table(match["table"])
            if rows is None:
                return self._missing(match["table"])
            row = tuple(
                _value(params[int(token[1:]) - 1])
                if token.startswith("$")
                else _value(token.strip("'"))
                for token in (t.strip() for t in match["values"].split(","))
            )
            if self.server.primary_keys.get(match["table"]) and any(
                existing[0] == row[0] for existing in rows
            ):
                return self._error(
                    "23505", "duplicate key value violates unique constraint"
                )
            rows.append(row)
            return ok(command_tuples=1)
        match = SELECT.match(sql)
        if match:
            rows = self._table(match["table"])
            if rows is None:
                return self._missing(match["table"])
            return FakeResult(
                pq.ExecStatus.TUPLES_OK,
                ntuples=len(rows),
                columns=("a",),
                command_tuples=len(rows),
            )
        match = COPY.match(sql)
        if match:
            if self._table(match["table"]) is None:
                return self._missing(match["table"])
            self._copy = (match["table"], [])
            return FakeResult(pq.ExecStatus.COPY_IN)
        match = DEALLOCATE.match(sql)
        if match:
            if self.prepared.pop(match["name"], None) is None:
                return self._error(
                    "26000", f"prepared statement {match['name']} missing"
                )
            return ok()
        return ok()

    def _table(self, name: str) -> Optional[List[tuple]]:
        return self.server.tables.get(name)

    def _missing(self, name: str) -> FakeResult:
        return self._error("42P01", f'relation "{name}" does not exist')


def _value(text):
    if text is None or text == "NULL":
        return None
    return int(text) if text.lstrip("-").isdigit() else text


class FakeRawConnection:
    """Stands in for psycopg.Connection"""

    adapters = psycopg.adapters
    connection = None

    def __init__(self, server: FakeServer, conninfo: str):
        self.conninfo = conninfo
        self.pgconn = FakePGconn(server)
        self.info = SimpleNamespace(encoding="utf-8")

    @property
    def closed(self) -> bool:
        return self.pgconn.status == pq.ConnStatus.BAD

    def close(self):
        self.pgconn.finish()


class FakePool:
    """Stands in for psycopg_pool.ConnectionPool"""

    def __init__(
        self,
        server: FakeServer,
        conninfo: str = "",
        *,
        kwargs=None,
        min_size=4,
        max_size=None,
        timeout=30.0,
        open=None,
        **_,
    ):
        self.server = server
        self.conninfo = conninfo
        self.kwargs = kwargs
        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self.opened = False
        self.closed = False
        self.idle: List[FakeRawConnection] = []
        self.leased: List[FakeRawConnection] = []
        self.created: List[FakeRawConnection] = []
        self.discarded: List[FakeRawConnection] = []
        server.pools.append(self)

    def open(self, wait=False, timeout=30.0):
        self.opened = True

    def close(self, timeout=5.0):
        self.closed = True
        for raw in self.idle:
            raw.close()

    def getconn(self, timeout=None):
        if self.closed or not self.opened:
            raise psycopg_pool.PoolClosed("the pool is closed")
        if self.server.refuse:
            raise psycopg_pool.PoolTimeout(
                "couldn't get a connection after 30.00 sec"
            )
        if self.idle:
            raw = self.idle.pop()
        else:
            raw = self.server.connect(self.conninfo)
            self.created.append(raw)
        self.leased.append(raw)
        return raw

    def putconn(self, raw):
        self.leased.remove(raw)
        if raw.closed:
            self.discarded.append(raw)
            return
        if raw.pgconn.transaction_status != pq.TransactionStatus.IDLE:
            raw.pgconn.exec_params(b"ROLLBACK TRANSACTION", [])
        self.idle.append(raw)


@pytest.fixture
def server(monkeypatch):
    server = FakeServer()

    def connect(conninfo, autocommit=False, **kwargs):
        assert autocommit
        return server.connect(conninfo)

    def make_pool(*args, **kwargs):
        return FakePool(server, *args, **kwargs)

    monkeypatch.setattr(psycopg.Connection, "connect", connect)
    monkeypatch.setattr(psycopg_pool, "ConnectionPool", make_pool)
    return server


@pytest.fixture
def conn(server):
    connection = Connection.open("dbname=test")
    yield connection
    connection.close()


@pytest.fixture
def pgconn(conn):
    return conn.raw.pgconn


@pytest.fixture
def table(conn):
    conn.execute("CREATE TABLE t (a INT PRIMARY KEY)")
    return "t"
