from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from psycopg import pq

from pqtx.exception import OrderError, PqtxError
from pqtx.params import BoundParameters

if TYPE_CHECKING:
    from pqtx.transaction import Transaction

logger = logging.getLogger(__name__)


class TableWriter:
    """Stream text rows into a table using ``COPY ... FROM STDIN``.

    ```python
    with conn.transaction() as tr:
        with TableWriter(tr, "COPY t (a, b) FROM STDIN") as writer:
            writer.insert("1\\tfoo")
            writer.insert("2\\tbar")
            writer.finish()
        tr.commit()
    ```

    A writer left without ``finish()`` aborts the copy, so the transaction
    can still be rolled back.
    """

    def __init__(self, transaction: Transaction, statement: str) -> None:
        transaction._check_current()
        self._transaction = transaction
        self._connection = transaction.connection
        self._finished = False
        self._connection._execute(
            statement, BoundParameters.empty(), (pq.ExecStatus.COPY_IN,)
        )
        logger.debug(
            "Transaction %s: %s", transaction.transaction_id, statement
        )

    def __enter__(self) -> TableWriter:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._finished:
            self.abort(
                "table writer abandoned"
                if exc_type is None
                else f"table writer failed: {exc_val}"
            )
        return False

    @property
    def transaction(self) -> Transaction:
        return self._transaction

    @property
    def is_finished(self) -> bool:
        return self._finished

    def _check_running(self) -> None:
        if self._finished:
            raise OrderError("table writer already finished")

    def insert(self, data: str) -> None:
        """Send one row, in the text format of the COPY statement"""
        self._check_running()
        if not data.endswith("\n"):
            data += "\n"
        try:
            self._connection._put_copy_data(
                data.encode(self._connection._encoding)
            )
        except PqtxError as e:
            self.abort(str(e))
            raise

    def finish(self) -> int:
        """End the copy and return the number of rows written"""
        self._check_running()
        self._finished = True
        rows = self._connection._end_copy()
        logger.debug(
            "Transaction %s: copied %d row(s)",
            self._transaction.transaction_id,
            rows,
        )
        return rows

    def abort(self, reason: str = "cancelled") -> None:
        """Cancel a running copy, discarding the rows sent so far"""
        if self._finished:
            return
        self._finished = True
        if not self._connection.is_open():
            return
        try:
            self._connection._end_copy(reason)
        except PqtxError as e:
            logger.warning(
                "Unable to abort copy in transaction %s: %s",
                self._transaction.transaction_id,
                e,
            )
