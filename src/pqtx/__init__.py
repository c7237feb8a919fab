from importlib.metadata import version

from .connection import Connection
from .conninfo import ConnectionInfo
from .exception import (
    ConnectionError,
    ExecutionError,
    OrderError,
    PoolError,
    PqtxError,
    StatementError,
)
from .pool import ConnectionPool
from .result import Result
from .table_writer import TableWriter
from .transaction import (
    IsolationLevel,
    Transaction,
    TransactionKind,
    TransactionState,
)

__version__ = version("pqtx")

connect = Connection.open

__all__ = (
    "connect",
    "Connection",
    "ConnectionInfo",
    "ConnectionPool",
    "IsolationLevel",
    "Result",
    "TableWriter",
    "Transaction",
    "TransactionKind",
    "TransactionState",
    "ConnectionError",
    "ExecutionError",
    "OrderError",
    "PoolError",
    "PqtxError",
    "StatementError",
)
