class PqtxError(Exception):
    """Base exception for pqtx errors"""

    pass


class ConnectionError(PqtxError):
    """Raised when a session cannot be opened, was lost, or is closed"""

    pass


class OrderError(PqtxError):
    """Raised when a transaction is used out of sequence"""

    pass


class StatementError(PqtxError):
    """Raised when preparing or deallocating a statement fails"""

    pass


class ExecutionError(PqtxError):
    """Raised when the server rejects a bound statement"""

    def __init__(self, message: str, sqlstate: str = "") -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


class PoolError(PqtxError):
    """Raised when no connection can be obtained from a pool"""

    pass
