from __future__ import annotations

import logging
import re
import weakref
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence, Union

import psycopg
from psycopg import pq

from pqtx.conninfo import ConnectionInfo
from pqtx.exception import ConnectionError, ExecutionError, StatementError
from pqtx.params import BoundParameters
from pqtx.result import Result
from pqtx.transaction import IsolationLevel, Transaction

if TYPE_CHECKING:
    from psycopg.pq.abc import PGresult

logger = logging.getLogger(__name__)

PREPARED_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
RESULT_OK = (pq.ExecStatus.COMMAND_OK, pq.ExecStatus.TUPLES_OK)


class Connection:
    """A single session with the server.

    Statements executed directly on the connection run in autocommit mode.
    Use ``transaction()`` to group statements, and ``subtransaction()`` on a
    transaction to nest them.

    Example:

    ```python
    with Connection.open("dbname=template1") as conn:
        conn.execute("CREATE TABLE t (a INT PRIMARY KEY)")
        with conn.transaction() as tr:
            tr.execute("INSERT INTO t VALUES ($1)", 1)
            tr.commit()
    ```
    """

    def __init__(
        self,
        raw: psycopg.Connection,
        info: Optional[ConnectionInfo] = None,
        prepared: Optional[Dict[str, str]] = None,
    ) -> None:
        self._raw = raw
        self._info = info
        self._prepared: Dict[str, str] = {} if prepared is None else prepared
        self._current: Optional[weakref.ref[Transaction]] = None
        self._released = False
        # Every libpq call made here waits for the server to answer
        raw.pgconn.nonblocking = 0

    @classmethod
    def open(
        cls, dsn: Union[str, ConnectionInfo, None] = None, **kwargs: Any
    ) -> Connection:
        """Open a new session

        Args:
            dsn (Union[str, ConnectionInfo], optional): The connection recipe
            **kwargs: Passed to ``ConnectionInfo`` when ``dsn`` is not one

        Raises:
            ConnectionError: If the server cannot be reached or rejects
                the session

        Returns:
            Connection: An open connection
        """
        info = (
            dsn
            if isinstance(dsn, ConnectionInfo)
            else ConnectionInfo(dsn, **kwargs)
        )
        logger.debug("Opening connection to %s", info)
        try:
            raw = psycopg.Connection.connect(info.full_dsn, autocommit=True)
        except psycopg.Error as e:
            raise ConnectionError(f"Unable to connect to {info}: {e}") from e
        logger.info("Opened connection to %s", info)
        return cls(raw, info)

    def __repr__(self) -> str:
        status = "open" if self.is_open() else "closed"
        return f"<{self.__class__.__name__} {self._info or ''} ({status})>"

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def info(self) -> Optional[ConnectionInfo]:
        return self._info

    @property
    def raw(self) -> psycopg.Connection:
        """The underlying psycopg connection"""
        self._check_released()
        return self._raw

    @property
    def current_transaction(self) -> Optional[Transaction]:
        """The transaction currently allowed to execute statements

        The connection only holds a weak reference: a transaction dropped
        while still active is rolled back and stops being current.
        """
        return self._current() if self._current is not None else None

    def _set_current_transaction(
        self, transaction: Optional[Transaction]
    ) -> None:
        self._current = None if transaction is None else transaction._ref

    @property
    def _encoding(self) -> str:
        return self._raw.info.encoding

    def is_open(self) -> bool:
        return not self._released and not self._raw.closed

    def close(self) -> None:
        if self._released or self._raw.closed:
            return
        self._raw.close()
        logger.info("Closed connection to %s", self._info or "server")

    def direct(self) -> Transaction:
        """Start an autocommit transaction"""
        return Transaction.direct(self)

    def transaction(
        self, isolation_level: IsolationLevel = IsolationLevel.DEFAULT
    ) -> Transaction:
        """Start a top-level transaction"""
        return Transaction.begin(self, isolation_level)

    def execute(self, statement: str, *args: Any) -> Result:
        """Execute one statement in autocommit mode"""
        with self.direct() as transaction:
            return transaction.execute(statement, *args)

    def is_prepared(self, name: str) -> bool:
        return name in self._prepared

    @staticmethod
    def _check_prepared_name(name: str) -> None:
        if not isinstance(name, str) or not PREPARED_NAME.match(name):
            raise StatementError(f"Invalid prepared statement name: {name!r}")

    def prepare(self, name: str, statement: str) -> None:
        """Register a named statement with the server

        Preparing the same name with identical text again does nothing.

        Raises:
            StatementError: If the name is invalid, already used for another
                statement, or the server rejects the statement
        """
        self._check_prepared_name(name)
        existing = self._prepared.get(name)
        if existing is not None:
            if existing == statement:
                logger.debug("Statement %s already prepared", name)
                return
            raise StatementError(
                f"Prepared statement {name} already exists "
                "with a different statement"
            )

        self._check_open()
        logger.debug("Preparing statement %s: %s", name, statement)
        try:
            pgresult = self._raw.pgconn.prepare(
                name.encode(self._encoding), statement.encode(self._encoding)
            )
        except psycopg.OperationalError as e:
            raise self._lost(e) from e

        if pgresult.status != pq.ExecStatus.COMMAND_OK:
            raise StatementError(
                f"Failed to prepare statement {name}: "
                f"{self._error_message(pgresult)}"
            )
        self._prepared[name] = statement

    def deallocate(self, name: str) -> None:
        """Remove a prepared statement, if it exists"""
        self._check_prepared_name(name)
        if name not in self._prepared:
            return

        try:
            self._execute(f'DEALLOCATE "{name}"', BoundParameters.empty())
        except ExecutionError as e:
            raise StatementError(
                f"Failed to deallocate statement {name}: {e}"
            ) from e
        del self._prepared[name]
        logger.debug("Deallocated statement %s", name)

    def execute_params(
        self, statement: str, params: Optional[BoundParameters] = None
    ) -> Result:
        """Execute a statement, or a prepared statement by name, with
        already bound positional parameters.

        Raises:
            ConnectionError: If the connection is closed or lost
            ExecutionError: If the server rejects the statement
        """
        return self._execute(statement, params or BoundParameters.empty())

    def _execute(
        self,
        statement: str,
        params: BoundParameters,
        expected: Sequence[int] = RESULT_OK,
    ) -> Result:
        self._check_open()
        pgconn = self._raw.pgconn
        try:
            if self.is_prepared(statement):
                logger.debug(
                    "Executing prepared %s with %d parameter(s)",
                    statement,
                    len(params),
                )
                pgresult = pgconn.exec_prepared(
                    statement.encode(self._encoding),
                    params.values,
                    params.formats,
                )
            else:
                logger.debug(
                    "Executing '%s' with %d parameter(s), %d bytes",
                    statement,
                    len(params),
                    params.size,
                )
                pgresult = pgconn.exec_params(
                    statement.encode(self._encoding),
                    params.values,
                    params.types,
                    params.formats,
                )
        except psycopg.OperationalError as e:
            raise self._lost(e) from e

        self._check_result(pgresult, expected)
        return Result(pgresult, self._raw, self._encoding)

    def _put_copy_data(self, data: bytes) -> None:
        self._check_open()
        try:
            self._raw.pgconn.put_copy_data(data)
        except psycopg.OperationalError as e:
            raise self._lost(e) from e

    def _end_copy(self, error: Optional[str] = None) -> int:
        """Finish, or abort when ``error`` is given, a running COPY"""
        self._check_open()
        pgconn = self._raw.pgconn
        try:
            pgconn.put_copy_end(
                error.encode(self._encoding) if error is not None else None
            )
            rows = 0
            failure: Optional[PGresult] = None
            while True:
                pgresult = pgconn.get_result()
                if pgresult is None:
                    break
                if pgresult.status == pq.ExecStatus.COMMAND_OK:
                    rows += pgresult.command_tuples or 0
                elif failure is None:
                    failure = pgresult
        except psycopg.OperationalError as e:
            raise self._lost(e) from e

        if failure is not None and error is None:
            self._check_result(failure, RESULT_OK)
        return rows

    def _detach(self) -> None:
        """Give up the session, which now belongs to its pool again"""
        self._released = True
        self._current = None

    def _check_released(self) -> None:
        if self._released:
            raise ConnectionError(
                f"Connection to {self._info or 'server'} was returned "
                "to its pool"
            )

    def _check_open(self) -> None:
        self._check_released()
        if self._raw.closed:
            raise ConnectionError("Connection is closed")

    def _check_result(self, pgresult: PGresult, expected: Sequence[int]):
        if pgresult.status in expected:
            return

        message = self._error_message(pgresult)
        if not self.is_open():
            raise ConnectionError(f"Connection lost: {message}")

        sqlstate = pgresult.error_field(pq.DiagnosticField.SQLSTATE)
        raise ExecutionError(
            message, sqlstate.decode("ascii") if sqlstate else ""
        )

    def _error_message(self, pgresult: PGresult) -> str:
        message = pgresult.error_message.decode(self._encoding, "replace")
        return message.strip() or (
            "unexpected result status "
            f"{pq.ExecStatus(pgresult.status).name}"
        )

    def _lost(self, error: Exception) -> ConnectionError:
        return ConnectionError(
            f"Connection to {self._info or 'server'} lost: {error}"
        )
