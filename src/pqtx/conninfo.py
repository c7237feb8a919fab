from __future__ import annotations

from typing import Any, Optional

from psycopg import ProgrammingError
from psycopg.conninfo import conninfo_to_dict, make_conninfo

from pqtx.exception import PqtxError


class ConnectionInfo:
    """The recipe used to open server sessions.

    The recipe is opaque to the rest of the library: it is validated here and
    handed verbatim to the server when a connection is opened.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        db: Optional[str] = None,
        **options: Any,
    ) -> None:
        """Connection recipe initialization.

        Args:
            dsn (str, optional): DB data source name, either a URL or a
                libpq keyword/value string
            host (str, optional): DB address URL or IP
            port (int, optional): DB port
            user (str, optional): DB user
            password (str, optional): DB password
            db (str, optional): DB name
            **options: Any other libpq connection parameter

        Raises:
            PqtxError: If the recipe is inconsistent or invalid
        """

        if dsn and host:
            raise PqtxError("Cannot connect to DB using host and dsn")

        if port is not None and (
            not isinstance(port, int) or port not in range(0, 65536)
        ):
            raise PqtxError("port: must be an integer between 0 and 65535")

        if host is not None and (
            not isinstance(host, str) or not len(host) > 0
        ):
            raise PqtxError("host: must be a string at least 1 character long")

        if password is not None and (
            not isinstance(password, str) or not len(password) > 0
        ):
            raise PqtxError(
                "password: must be a string at least 1 character long"
            )

        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._db = db

        try:
            self._full_dsn = make_conninfo(
                dsn or "",
                host=host,
                port=port,
                user=user,
                password=password,
                dbname=db,
                **options,
            )
            params = conninfo_to_dict(self._full_dsn)
        except ProgrammingError as e:
            raise PqtxError(f"Invalid connection info: {e}") from e

        if params.get("password"):
            params["password"] = "..."
        self._dsn = make_conninfo("", **params) if params else ""

    def __str__(self) -> str:
        return self.dsn

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.dsn!r}>"

    @property
    def dsn(self) -> str:
        """The recipe with its password masked"""
        return self._dsn

    @property
    def full_dsn(self) -> str:
        return self._full_dsn

    @property
    def host(self):
        return self._host

    @property
    def port(self):
        return self._port

    @property
    def user(self):
        return self._user

    @property
    def password(self):
        return self._password

    @property
    def db(self):
        return self._db
