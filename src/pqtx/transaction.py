from __future__ import annotations

import logging
import weakref
from enum import Enum, auto
from itertools import count
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    NamedTuple,
    Optional,
)
from uuid import uuid4

from pqtx.exception import OrderError
from pqtx.params import bind

if TYPE_CHECKING:
    from pqtx.connection import Connection
    from pqtx.result import Result

logger = logging.getLogger(__name__)

_savepoint_ids = count(1)


class IsolationLevel(Enum):
    """SQL transaction isolation levels"""

    DEFAULT = ""
    SERIALIZABLE = "SERIALIZABLE"
    REPEATABLE_READ = "REPEATABLE READ"
    READ_COMMITTED = "READ COMMITTED"
    READ_UNCOMMITTED = "READ UNCOMMITTED"

    @property
    def statement(self) -> str:
        if self is IsolationLevel.DEFAULT:
            return "START TRANSACTION"
        return f"START TRANSACTION ISOLATION LEVEL {self.value}"


class TransactionState(Enum):
    """Transaction state machine states"""

    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class TransactionKind(Enum):
    AUTOCOMMIT = auto()  # No BEGIN, each statement commits on its own
    TOP_LEVEL = auto()  # BEGIN / COMMIT / ROLLBACK
    TOP_LEVEL_NESTED = auto()  # Subtransaction of an autocommit transaction
    SAVEPOINT_NESTED = auto()  # Subtransaction using a savepoint


StatementBuilder = Callable[["Transaction"], Optional[str]]


class Statements(NamedTuple):
    begin: StatementBuilder
    commit: StatementBuilder
    rollback: StatementBuilder


def _no_statement(_: Transaction) -> Optional[str]:
    return None


STATEMENTS: Dict[TransactionKind, Statements] = {
    TransactionKind.AUTOCOMMIT: Statements(
        begin=_no_statement,
        commit=_no_statement,
        rollback=_no_statement,
    ),
    TransactionKind.TOP_LEVEL: Statements(
        begin=lambda transaction: transaction.isolation_level.statement,
        commit=lambda _: "COMMIT TRANSACTION",
        rollback=lambda _: "ROLLBACK TRANSACTION",
    ),
    TransactionKind.TOP_LEVEL_NESTED: Statements(
        begin=lambda _: "START TRANSACTION",
        commit=lambda _: "COMMIT TRANSACTION",
        rollback=lambda _: "ROLLBACK TRANSACTION",
    ),
    TransactionKind.SAVEPOINT_NESTED: Statements(
        begin=lambda transaction: f'SAVEPOINT "{transaction.savepoint}"',
        commit=lambda transaction: (
            f'RELEASE SAVEPOINT "{transaction.savepoint}"'
        ),
        rollback=lambda transaction: f'ROLLBACK TO "{transaction.savepoint}"',
    ),
}


class Transaction:
    """A unit of work bound to one connection.

    Transactions on a connection form a stack: only the transaction on top
    (the connection's current transaction) may execute statements, commit,
    roll back or open a subtransaction. Resolving a transaction pops it and
    makes the previous one current again.

    A transaction that is not explicitly committed is rolled back when it is
    closed, which ``with`` does on exit:

    ```python
    with conn.transaction() as tr:
        tr.execute("INSERT INTO t VALUES (1)")
        with tr.subtransaction() as sub:
            sub.execute("INSERT INTO t VALUES (2)")
        tr.commit()
    ```

    Use the factories ``Transaction.direct``, ``Transaction.begin`` and
    ``Transaction.subtransaction`` rather than the initializer.
    """

    def __init__(
        self,
        connection: Connection,
        kind: TransactionKind,
        previous: Optional[Transaction] = None,
        isolation_level: IsolationLevel = IsolationLevel.DEFAULT,
    ) -> None:
        self.transaction_id = f"txn_{uuid4().hex[:8]}"
        self._ref = weakref.ref(self)
        self._connection = connection
        self._kind = kind
        self._previous = previous
        self._isolation_level = isolation_level
        self._savepoint = (
            f"PQTX_{next(_savepoint_ids)}"
            if kind is TransactionKind.SAVEPOINT_NESTED
            else None
        )
        self._state = TransactionState.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.transaction_id} "
            f"{self._kind.name} ({self._state.value})>"
        )

    @classmethod
    def direct(cls, connection: Connection) -> Transaction:
        """Start an autocommit transaction on ``connection``"""
        return cls._start(connection, TransactionKind.AUTOCOMMIT)

    @classmethod
    def begin(
        cls,
        connection: Connection,
        isolation_level: IsolationLevel = IsolationLevel.DEFAULT,
    ) -> Transaction:
        """Start a top-level transaction on ``connection``

        Raises:
            OrderError: If the connection already has a current transaction
        """
        return cls._start(
            connection,
            TransactionKind.TOP_LEVEL,
            isolation_level=isolation_level,
        )

    def subtransaction(self) -> Transaction:
        """Start a transaction nested in this one

        Raises:
            OrderError: If this transaction is not the current one
        """
        self._check_current()
        kind = (
            TransactionKind.TOP_LEVEL_NESTED
            if self.is_direct
            else TransactionKind.SAVEPOINT_NESTED
        )
        return self._start(self._connection, kind, previous=self)

    @classmethod
    def _start(
        cls,
        connection: Connection,
        kind: TransactionKind,
        previous: Optional[Transaction] = None,
        isolation_level: IsolationLevel = IsolationLevel.DEFAULT,
    ) -> Transaction:
        connection._check_open()
        expected = None if previous is None else previous._ref
        if connection._current is not expected:
            raise OrderError(
                "transaction order error: connection already has "
                f"current transaction {connection.current_transaction}"
            )

        transaction = cls(connection, kind, previous, isolation_level)
        connection._set_current_transaction(transaction)
        statement = STATEMENTS[kind].begin(transaction)
        if statement:
            try:
                connection.execute_params(statement)
            except Exception:
                transaction._reset(TransactionState.ROLLED_BACK)
                raise

        logger.debug(
            "Transaction %s started (%s)",
            transaction.transaction_id,
            kind.name,
        )
        return transaction

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        if getattr(self, "_state", None) is not TransactionState.ACTIVE:
            return
        if not self._is_top:
            self._state = TransactionState.ROLLED_BACK
            return
        logger.warning(
            "Transaction %s dropped while active", self.transaction_id
        )
        self._close()

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def kind(self) -> TransactionKind:
        return self._kind

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def previous(self) -> Optional[Transaction]:
        """The transaction that is made current again once this one ends"""
        return self._previous

    @property
    def isolation_level(self) -> IsolationLevel:
        return self._isolation_level

    @property
    def savepoint(self) -> Optional[str]:
        return self._savepoint

    @property
    def is_direct(self) -> bool:
        return self._kind is TransactionKind.AUTOCOMMIT

    @property
    def is_active(self) -> bool:
        return self._state is TransactionState.ACTIVE

    @property
    def is_committed(self) -> bool:
        return self._state is TransactionState.COMMITTED

    @property
    def is_rolled_back(self) -> bool:
        return self._state is TransactionState.ROLLED_BACK

    @property
    def is_current(self) -> bool:
        return self.is_active and self._is_top

    @property
    def _is_top(self) -> bool:
        return self._connection._current is self._ref

    def _check_current(self) -> None:
        if not self.is_active:
            raise OrderError(
                f"transaction order error: transaction {self.transaction_id} "
                f"already {self._state.value}"
            )
        if not self._is_top:
            raise OrderError(
                f"transaction order error: transaction {self.transaction_id} "
                "is not the current transaction"
            )

    def execute(self, statement: str, *args: Any) -> Result:
        """Execute a statement, or a prepared statement by name

        Args:
            statement (str): SQL text with ``$1``, ``$2``... placeholders,
                or the name of a prepared statement
            *args: Positional parameters, ``None`` is sent as NULL

        Raises:
            OrderError: If this transaction is not the current one
            ExecutionError: If the server rejects the statement
        """
        self._check_current()
        params = bind(self._connection.raw, args)
        return self._connection.execute_params(statement, params)

    def commit(self) -> None:
        self._finish(TransactionState.COMMITTED)

    def rollback(self) -> None:
        self._finish(TransactionState.ROLLED_BACK)

    def _finish(self, state: TransactionState) -> None:
        self._check_current()
        statements = STATEMENTS[self._kind]
        if state is TransactionState.COMMITTED:
            statement = statements.commit(self)
        else:
            statement = statements.rollback(self)

        if statement is None:
            self._reset(state)
            return

        logger.debug("Transaction %s: %s", self.transaction_id, statement)
        try:
            self._connection.execute_params(statement)
        except Exception as e:
            self._reset(TransactionState.ROLLED_BACK)
            logger.error(
                "Transaction %s failed on %s: %s",
                self.transaction_id,
                statement,
                e,
            )
            raise
        self._reset(state)
        logger.info("Transaction %s %s", self.transaction_id, state.value)

    def _reset(self, state: TransactionState) -> None:
        self._connection._set_current_transaction(self._previous)
        self._state = state

    def close(self) -> None:
        """Resolve this transaction if it is still active.

        Subtransactions that are still active are closed first, newest
        first. An autocommit transaction simply ends; any other kind is
        rolled back while the connection is open. Failures are logged and
        never raised.
        """
        if not self.is_active:
            return

        descendants: List[Transaction] = []
        current = self._connection.current_transaction
        while current is not None and current is not self:
            descendants.append(current)
            current = current.previous
        if current is None:
            self._state = TransactionState.ROLLED_BACK
            return

        for transaction in descendants:
            transaction._close()
        self._close()

    def _close(self) -> None:
        if not self._connection.is_open():
            self._reset(TransactionState.ROLLED_BACK)
            return

        try:
            if self.is_direct:
                self.commit()
            else:
                self.rollback()
        except Exception as e:
            logger.warning(
                "Unable to rollback transaction %s, swallowing exception: %s",
                self.transaction_id,
                e,
            )
