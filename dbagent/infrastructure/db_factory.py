"""
Database connection and statement utilities for dbagent workers.

Each worker holds exactly one connection, opened with retry on transient failures,
and compiles every named query once at startup. Two statement kinds exist:

- ``PreparedStatement``: a server-side ``PREPARE``d statement, executed with
  ``EXECUTE`` and streamed row by row (libpq single-row mode).
- ``RawStatement``: SQL kept as text and never sent to the server. Used for
  data-modifying queries when dry-run writes are enabled.

Query text uses PostgreSQL positional placeholders (``$1``, ``$2``, ...).
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterator, Mapping, Sequence, Union

import psycopg
from psycopg import ClientCursor, Connection
from psycopg.rows import dict_row, tuple_row
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from dbagent.domain.models import Row, RowShape

WRITE_PATTERN = re.compile(r"\b(insert|update|delete)\b", re.IGNORECASE)
PLACEHOLDER_PATTERN = re.compile(r"\$(\d+)")
STATEMENT_PREFIX = "dbagent_"


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def connect_database(dsn: str) -> Connection:
    """
    Open the worker's connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection errors.
    The connection runs in autocommit mode, and its cursors bind parameters
    client-side, which ``EXECUTE`` of a prepared statement requires.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    return psycopg.connect(dsn, autocommit=True, cursor_factory=ClientCursor)


class PreparedStatement:
    """
    A named query prepared on the worker's connection under ``server_name``.
    """

    def __init__(self, name: str, text: str, server_name: str) -> None:
        self.name = name
        self.text = text
        self.server_name = server_name

    def __repr__(self) -> str:
        return f"PreparedStatement({self.name!r}, server_name={self.server_name!r})"

    def prepare(self, conn: Connection) -> None:
        """Compile the statement server-side; raises ``psycopg.Error`` on bad SQL."""
        conn.execute(f"PREPARE {self.server_name} AS {self.text}")

    def execute_sql(self, param_count: int) -> str:
        """``EXECUTE`` statement with one client-side placeholder per parameter."""
        if not param_count:
            return f"EXECUTE {self.server_name}"
        return f"EXECUTE {self.server_name} ({', '.join(['%s'] * param_count)})"

    def stream(
        self, conn: Connection, params: Sequence[Any], row_shape: RowShape
    ) -> Iterator[Row]:
        """
        Execute with ``params`` and yield rows as the server produces them.

        Statements without a result set yield nothing. Driver errors surface as
        ``psycopg.Error`` from the first ``next()``.
        """
        named = row_shape is RowShape.NAMED
        factory = dict_row if named else tuple_row
        with conn.cursor(row_factory=factory) as cur:
            for row in cur.stream(self.execute_sql(len(params)), list(params)):
                yield dict(row) if named else list(row)


class RawStatement:
    """
    SQL kept as text. Rendering substitutes parameters for inspection only.
    """

    def __init__(self, name: str, text: str) -> None:
        self.name = name
        self.text = text

    def __repr__(self) -> str:
        return f"RawStatement({self.name!r})"

    def render(self, params: Sequence[Any]) -> str:
        def _substitute(match: re.Match) -> str:
            index = int(match.group(1)) - 1
            if 0 <= index < len(params):
                return repr(params[index])
            return match.group(0)

        return PLACEHOLDER_PATTERN.sub(_substitute, self.text)


Statement = Union[PreparedStatement, RawStatement]


def compile_statements(
    conn: Connection, queries: Mapping[str, str], dry_run_writes: bool = False
) -> Dict[str, Statement]:
    """
    Prepare every query definition on ``conn``.

    Parameters
    ----------
    conn : Connection
        The worker's connection.
    queries : Mapping[str, str]
        Query name to SQL text.
    dry_run_writes : bool
        Keep INSERT/UPDATE/DELETE statements as ``RawStatement`` instead of preparing.

    Raises
    ------
    psycopg.Error
        On the first statement the server refuses to prepare.
    """
    statements: Dict[str, Statement] = {}
    for index, (name, text) in enumerate(queries.items(), start=1):
        if dry_run_writes and WRITE_PATTERN.search(text):
            statements[name] = RawStatement(name, text)
            continue
        statement = PreparedStatement(name, text, f"{STATEMENT_PREFIX}{index}")
        statement.prepare(conn)
        statements[name] = statement
    return statements


__all__ = [
    "PreparedStatement",
    "RawStatement",
    "Statement",
    "compile_statements",
    "connect_database",
]
