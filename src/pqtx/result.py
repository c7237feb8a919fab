from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple

from psycopg import pq

from pqtx.exception import ExecutionError
from pqtx.params import loader

if TYPE_CHECKING:
    from psycopg.abc import AdaptContext
    from psycopg.pq.abc import PGresult

Row = Tuple[Any, ...]


class Result:
    """The outcome of one statement executed on the server.

    Rows are decoded on first access.
    """

    def __init__(
        self,
        pgresult: PGresult,
        context: Optional[AdaptContext],
        encoding: str = "utf-8",
    ) -> None:
        self._pgresult = pgresult
        self._context = context
        self._encoding = encoding
        self._rows: Optional[List[Row]] = None

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} status={self.status.name} "
            f"rows={len(self)}>"
        )

    @property
    def status(self) -> pq.ExecStatus:
        return pq.ExecStatus(self._pgresult.status)

    @property
    def command(self) -> str:
        """The command tag reported by the server, e.g. ``INSERT 0 1``"""
        tag = self._pgresult.command_status
        return tag.decode(self._encoding) if tag else ""

    @property
    def rows_affected(self) -> int:
        return self._pgresult.command_tuples or 0

    @property
    def columns(self) -> List[str]:
        return [
            (self._pgresult.fname(index) or b"").decode(self._encoding)
            for index in range(self._pgresult.nfields)
        ]

    @property
    def rows(self) -> List[Row]:
        if self._rows is None:
            ntuples = self._pgresult.ntuples
            if not ntuples:
                self._rows = []
            else:
                transformer = loader(self._context)
                transformer.set_pgresult(self._pgresult)
                self._rows = transformer.load_rows(0, ntuples, tuple)
        return self._rows

    def __len__(self) -> int:
        return self._pgresult.ntuples

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def __getitem__(self, index: int) -> Row:
        return self.rows[index]

    def one(self) -> Row:
        if len(self) != 1:
            raise ExecutionError(
                f"Expected exactly one row, got {len(self)}"
            )
        return self.rows[0]

    def scalar(self) -> Any:
        return self.one()[0]

    def as_dicts(self) -> List[Dict[str, Any]]:
        columns = self.columns
        return [dict(zip(columns, row)) for row in self.rows]
