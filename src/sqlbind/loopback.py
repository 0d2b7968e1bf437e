"""
In-process protocol endpoint backed by SQLite.

`LoopbackServer.handle()` takes a framed request and returns the framed
reply. Prepared statements live in a table keyed by statement id; executing
one buffers its rows server-side and STMT_FETCH hands them out one at a
time in the binary row format.

Column types of a result set are derived from the buffered values:
integers → LONGLONG, reals → DOUBLE, text → VAR_STRING, bytes → BLOB,
all NULL → NULL. Integers outside the signed 64-bit range are stored as a
BLOB of their decimal digits, which column affinity leaves untouched.
"""
import collections
import logging
import sqlite3
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlbind.exceptions import OperationError
from sqlbind.wire import codec
from sqlbind.wire.codec import ColumnDefinition
from sqlbind.wire.constants import BINARY_FLAG, ER_BAD_FIELD_ERROR, ER_BAD_NULL_ERROR
from sqlbind.wire.constants import ER_DUP_ENTRY, ER_MAX_PREPARED_STMT_COUNT_REACHED
from sqlbind.wire.constants import ER_NO_REFERENCED_ROW, ER_NO_SUCH_TABLE, ER_PARSE_ERROR
from sqlbind.wire.constants import ER_STMT_HAS_NO_OPEN_CURSOR, ER_TABLE_EXISTS_ERROR
from sqlbind.wire.constants import ER_UNKNOWN_COM_ERROR, ER_UNKNOWN_ERROR
from sqlbind.wire.constants import ER_UNKNOWN_STMT_HANDLER, ER_WRONG_ARGUMENTS
from sqlbind.wire.constants import Command, FieldType

__all__ = ['LoopbackServer', 'count_params', 'map_sqlite_error']

logger = logging.getLogger(__name__)

# opening quote → closing quote
QUOTES = {"'": "'", '"': '"', '`': '`', '[': ']'}

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

# (exception type, lowercase message fragment, code, sqlstate), first match wins
SQLITE_ERRORS = [
    (sqlite3.IntegrityError, 'unique constraint', ER_DUP_ENTRY, '23000'),
    (sqlite3.IntegrityError, 'not null constraint', ER_BAD_NULL_ERROR, '23000'),
    (sqlite3.IntegrityError, '', ER_NO_REFERENCED_ROW, '23000'),
    (sqlite3.OperationalError, 'no such table', ER_NO_SUCH_TABLE, '42S02'),
    (sqlite3.OperationalError, 'no such column', ER_BAD_FIELD_ERROR, '42S22'),
    (sqlite3.OperationalError, 'already exists', ER_TABLE_EXISTS_ERROR, '42S01'),
    (sqlite3.OperationalError, 'syntax error', ER_PARSE_ERROR, '42000'),
    (sqlite3.OperationalError, 'incomplete input', ER_PARSE_ERROR, '42000'),
    (sqlite3.ProgrammingError, '', ER_WRONG_ARGUMENTS, 'HY000'),
]


def count_params(sql: str) -> int:
    """Count `?` placeholders outside quoted literals, identifiers and comments.

    A doubled quote inside a quoted run is an escaped quote character.
    """
    count = 0
    index = 0
    while index < len(sql):
        char = sql[index]
        if char in QUOTES:
            close = sql.find(QUOTES[char], index + 1)
            while close != -1 and char != '[' and sql[close + 1:close + 2] == char:
                close = sql.find(char, close + 2)
            index = len(sql) if close == -1 else close + 1
        elif sql.startswith('--', index):
            newline = sql.find('\n', index)
            index = len(sql) if newline == -1 else newline + 1
        elif sql.startswith('/*', index):
            end = sql.find('*/', index + 2)
            index = len(sql) if end == -1 else end + 2
        else:
            count += char == '?'
            index += 1
    return count


def map_sqlite_error(exc: Exception) -> OperationError:
    """Translate a sqlite3 error into a server error code and SQLSTATE.
    """
    message = str(exc)
    lowered = message.lower()
    for error_type, fragment, code, sqlstate in SQLITE_ERRORS:
        if isinstance(exc, error_type) and fragment in lowered:
            return OperationError(code, message, sqlstate)
    return OperationError(ER_UNKNOWN_ERROR, message)


def _sqlite_value(field_type: FieldType, value: Any) -> Any:
    if value is None:
        return None
    if field_type in {FieldType.STRING, FieldType.VAR_STRING}:
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            return value
    if isinstance(value, int) and not INT64_MIN <= value <= INT64_MAX:
        return str(value).encode('ascii')
    return value


def _text_value(value: Any) -> bytes | None:
    if value is None or isinstance(value, bytes):
        return value
    if isinstance(value, float):
        return repr(value).encode('ascii')
    return str(value).encode('utf-8')


def _column_type(values: Sequence) -> tuple[FieldType, int]:
    kinds = {type(value) for value in values if value is not None}
    if not kinds:
        return FieldType.NULL, 0
    if kinds <= {int}:
        return FieldType.LONGLONG, 0
    if kinds <= {int, float}:
        return FieldType.DOUBLE, 0
    if bytes in kinds:
        return FieldType.BLOB, BINARY_FLAG
    return FieldType.VAR_STRING, 0


def _describe_columns(names: Sequence[str], rows: Sequence[tuple]) -> list[ColumnDefinition]:
    columns = []
    for index, name in enumerate(names):
        field_type, flags = _column_type([row[index] for row in rows])
        columns.append(ColumnDefinition(name, field_type, flags))
    return columns


def _binary_value(column: ColumnDefinition, value: Any) -> Any:
    if value is None:
        return None
    if column.field_type is FieldType.DOUBLE:
        return float(value)
    if column.field_type.variable:
        return _text_value(value)
    return value


@dataclass
class _ServerStatement:
    sql: str
    param_count: int
    column_count: int
    columns: list[ColumnDefinition] = field(default_factory=list)
    rows: collections.deque | None = None


class LoopbackServer:
    """Protocol endpoint executing statements on a SQLite connection.

    Args:
        sa_connection: SQLAlchemy connection; its DBAPI connection runs the SQL
        max_prepared_statements: open statements allowed at once
    """

    def __init__(self, sa_connection: Any, max_prepared_statements: int = 16382):
        self.sa_connection = sa_connection
        self.dbapi_connection = sa_connection.connection
        self.max_prepared_statements = max_prepared_statements
        self._statements: dict[int, _ServerStatement] = {}
        self._next_id = 1
        self._commands: dict[int, Callable[[bytes], list[bytes]]] = {
            Command.QUERY: self._query,
            Command.PING: self._ping,
            Command.STMT_PREPARE: self._prepare,
            Command.STMT_EXECUTE: self._execute,
            Command.STMT_FETCH: self._fetch,
            Command.STMT_RESET: self._reset,
            Command.STMT_CLOSE: self._close_statement,
        }

    @property
    def statement_count(self) -> int:
        return len(self._statements)

    def handle(self, stream: bytes) -> bytes:
        """Answer one framed request with a framed reply (possibly empty)."""
        packets = codec.unframe(stream)
        payload = packets[0] if packets else b''
        handler = self._commands.get(payload[0]) if payload else None
        if handler is None:
            replies = [codec.encode_error(ER_UNKNOWN_COM_ERROR, 'Unknown command', '08S01')]
        else:
            try:
                replies = handler(payload)
            except OperationError as exc:
                replies = [codec.encode_error(exc.code, exc.message, exc.sqlstate)]
            except (sqlite3.Error, sqlite3.Warning) as exc:
                error = map_sqlite_error(exc)
                logger.debug(f'SQLite error mapped to {error.code}: {exc}')
                replies = [codec.encode_error(error.code, error.message, error.sqlstate)]
        return codec.frame(replies, sequence=1)

    def close(self) -> None:
        self._statements.clear()
        self.sa_connection.close()

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        cursor = self.dbapi_connection.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    def _statement(self, statement_id: int, command: str) -> _ServerStatement:
        try:
            return self._statements[statement_id]
        except KeyError:
            raise OperationError(ER_UNKNOWN_STMT_HANDLER,
                                 f'Unknown prepared statement handler ({statement_id}) given to {command}') from None

    def _run(self, cursor: sqlite3.Cursor) -> list[bytes] | None:
        """OK reply for statements without rows, None when rows are pending."""
        if cursor.description is not None:
            return None
        self.dbapi_connection.commit()
        return [codec.encode_ok(max(cursor.rowcount, 0), cursor.lastrowid or 0)]

    def _query(self, payload: bytes) -> list[bytes]:
        sql = codec.decode_text_command(payload)
        with self._cursor() as cursor:
            cursor.execute(sql)
            reply = self._run(cursor)
            if reply is not None:
                return reply
            rows = cursor.fetchall()
            names = [column[0] for column in cursor.description]
        columns = _describe_columns(names, rows)
        text_rows = [codec.encode_text_row(_text_value(value) for value in row) for row in rows]
        return [*codec.encode_result_header(columns), *text_rows, codec.encode_eof()]

    def _ping(self, payload: bytes) -> list[bytes]:
        return [codec.encode_ok()]

    def _prepare(self, payload: bytes) -> list[bytes]:
        sql = codec.decode_text_command(payload)
        if len(self._statements) >= self.max_prepared_statements:
            raise OperationError(ER_MAX_PREPARED_STMT_COUNT_REACHED,
                                 "Can't create more than max_prepared_stmt_count statements "
                                 f'(current value: {self.max_prepared_statements})', '42000')
        param_count = count_params(sql)
        with self._cursor() as cursor:
            cursor.execute(f'EXPLAIN {sql}', [None] * param_count)
            program = cursor.fetchall()
        # ResultRow's P2 operand is the number of result columns
        column_count = next((row[3] for row in program if row[1] == 'ResultRow'), 0)
        statement_id = self._next_id
        self._next_id += 1
        self._statements[statement_id] = _ServerStatement(sql, param_count, column_count)
        logger.debug(f'Statement {statement_id} prepared: {sql}')
        return [codec.encode_prepare_ok(statement_id, column_count, param_count)]

    def _execute(self, payload: bytes) -> list[bytes]:
        statement_id = codec.peek_statement_id(payload)
        statement = self._statement(statement_id, 'mysqld_stmt_execute')
        _, _, params = codec.decode_execute(payload, statement.param_count)
        statement.rows = None
        with self._cursor() as cursor:
            cursor.execute(statement.sql, [_sqlite_value(tag, value) for tag, value in params])
            reply = self._run(cursor)
            if reply is not None:
                return reply
            rows = cursor.fetchall()
            names = [column[0] for column in cursor.description]
        statement.columns = _describe_columns(names, rows)
        statement.rows = collections.deque(rows)
        return codec.encode_result_header(statement.columns)

    def _fetch(self, payload: bytes) -> list[bytes]:
        statement_id, count = codec.decode_fetch(payload)
        statement = self._statement(statement_id, 'mysqld_stmt_fetch')
        if statement.rows is None:
            raise OperationError(ER_STMT_HAS_NO_OPEN_CURSOR,
                                 f'The statement ({statement_id}) has no open cursor.')
        if not statement.rows:
            return [codec.encode_eof()]
        replies = []
        while statement.rows and len(replies) < max(count, 1):
            row = statement.rows.popleft()
            values = [_binary_value(column, value) for column, value in zip(statement.columns, row)]
            replies.append(codec.encode_binary_row(statement.columns, values))
        return replies

    def _reset(self, payload: bytes) -> list[bytes]:
        statement = self._statement(codec.peek_statement_id(payload), 'mysqld_stmt_reset')
        statement.rows = None
        return [codec.encode_ok()]

    def _close_statement(self, payload: bytes) -> list[bytes]:
        statement_id = codec.peek_statement_id(payload)
        self._statements.pop(statement_id, None)
        logger.debug(f'Statement {statement_id} closed')
        return []
