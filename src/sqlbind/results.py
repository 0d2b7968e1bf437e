"""
Buffered text result sets and cursors over them.

`Results` holds the complete reply of a non-prepared query: column
definitions plus every row as a tuple of optional byte strings. It tracks
one current position (`seek`/`tell`/`current_row_fields`).

`ResultCursor` is a random-access view over a `Results`. Dereferencing
(`row`) seeks the result set, converts each text field to the requested
type and caches the tuple until the cursor moves. A field whose text does
not convert becomes None and its index is listed in `Row.failed`; the rest
of the row is still decoded.
"""
import functools
import logging
from collections.abc import Iterator, Sequence
from typing import Any, Self

import pandas as pd
from sqlbind.exceptions import BindIndexOutOfRange, OperationError
from sqlbind.types import Blob, Double, Int64, SqlType, Text, resolve_sqltype
from sqlbind.wire.codec import ColumnDefinition
from sqlbind.wire.constants import FieldType

__all__ = ['Row', 'Results', 'ResultCursor', 'ResultContainer']

logger = logging.getLogger(__name__)

_COLUMN_TYPES = {
    FieldType.TINY: Int64,
    FieldType.SHORT: Int64,
    FieldType.LONG: Int64,
    FieldType.LONGLONG: Int64,
    FieldType.FLOAT: Double,
    FieldType.DOUBLE: Double,
    FieldType.BLOB: Blob,
}


def column_sqltype(column: ColumnDefinition) -> SqlType:
    """Default conversion type of a text column."""
    return _COLUMN_TYPES.get(column.field_type, Text)


class Row(tuple):
    """Decoded row; `failed` lists the indices of fields that did not convert.
    """

    failed: tuple[int, ...]

    def __new__(cls, values=(), failed=()):
        row = super().__new__(cls, values)
        row.failed = tuple(failed)
        return row

    @property
    def ok(self) -> bool:
        return not self.failed


class Results:
    """Fully buffered result of a text query.

    Args:
        columns: column definitions
        rows: each row a tuple of optional byte strings, one per column
        affected_rows: rows changed by a statement without a result set
        insert_id: auto-increment value assigned by the statement
    """

    def __init__(self, columns: Sequence[ColumnDefinition] = (), rows: Sequence[tuple] = (),
                 affected_rows: int = 0, insert_id: int = 0, error: OperationError | None = None):
        self.columns = list(columns)
        self.rows = list(rows)
        self.affected_rows = affected_rows
        self.insert_id = insert_id
        self._error = error
        self._position = 0

    @classmethod
    def from_error(cls, error: OperationError) -> Self:
        return cls(error=error)

    def __repr__(self):
        if self._error:
            return f'Results(error={self._error})'
        return f'Results({self.fields}, {len(self.rows)} rows)'

    def __bool__(self):
        return self._error is None

    def __len__(self):
        return self.row_count()

    @property
    def fields(self) -> list[str]:
        return [column.name for column in self.columns]

    def field_count(self) -> int:
        return len(self.columns)

    def row_count(self) -> int:
        return len(self.rows)

    def is_empty(self) -> bool:
        return not self.rows

    def error_code(self) -> int:
        return self._error.code if self._error else 0

    def error_message(self) -> str:
        return self._error.message if self._error else ''

    def seek(self, index: int) -> None:
        if index < 0:
            raise IndexError(f'Row index {index} is negative')
        self._position = index

    def tell(self) -> int:
        return self._position

    def current_row_fields(self) -> tuple[bytes | None, ...]:
        """Raw fields at the current position.

        Raises
            IndexError: the position is past the last row
        """
        if self._position >= len(self.rows):
            raise IndexError(f'Row index {self._position} out of range for {len(self.rows)} rows')
        return self.rows[self._position]

    def cursor(self, *types: Any, index: int = 0) -> 'ResultCursor':
        """Cursor decoding each row into `types` (column types by default)."""
        return ResultCursor(self, types or None, index)

    def as_container(self, *types: Any) -> 'ResultContainer':
        return ResultContainer(self, types or None)


@functools.total_ordering
class ResultCursor:
    """Random-access position in a `Results`.

    Args:
        results: the buffered result set
        types: one SQL type (or Python/NumPy type) per decoded column; may
            cover a leading subset of the columns
        index: starting row

    Raises
        BindIndexOutOfRange: more types than result columns
    """

    def __init__(self, results: Results, types: Sequence[Any] | None = None, index: int = 0):
        if types is None:
            types = [column_sqltype(column) for column in results.columns]
        if len(types) > results.field_count():
            raise BindIndexOutOfRange(f'{len(types)} types for {results.field_count()} columns')
        if index < 0:
            raise IndexError(f'Row index {index} is negative')
        self.results = results
        self.types = tuple(resolve_sqltype(sqltype) for sqltype in types)
        self._index = index
        self._cache: Row | None = None

    def __repr__(self):
        return f'ResultCursor({self._index}/{self.results.row_count()})'

    @property
    def index(self) -> int:
        return self._index

    @property
    def valid(self) -> bool:
        return 0 <= self._index < self.results.row_count()

    def seek(self, index: int) -> Self:
        if index < 0:
            raise IndexError(f'Row index {index} is negative')
        if index != self._index:
            self._index = index
            self._cache = None
        return self

    def next(self) -> Self:
        return self.seek(self._index + 1)

    def prev(self) -> Self:
        return self.seek(self._index - 1)

    @property
    def row(self) -> Row | None:
        """Decoded row at the current index, None past the end."""
        if self._cache is None and self.valid:
            self._cache = self._decode()
        return self._cache

    def _decode(self) -> Row:
        self.results.seek(self._index)
        fields = self.results.current_row_fields()
        values, failed = [], []
        for position, (sqltype, raw) in enumerate(zip(self.types, fields)):
            if raw is None:
                values.append(None)
                continue
            try:
                values.append(sqltype.parse_text(raw))
            except ValueError as exc:
                logger.debug(f'Row {self._index} field {position} not a {sqltype.name}: {exc}')
                values.append(None)
                failed.append(position)
        return Row(values, failed)

    def _moved(self, index: int) -> 'ResultCursor':
        return ResultCursor(self.results, self.types, index)

    def __add__(self, offset: int) -> 'ResultCursor':
        return self._moved(self._index + offset)

    __radd__ = __add__

    def __sub__(self, other):
        if isinstance(other, ResultCursor):
            return self._index - other._index
        return self._moved(self._index - other)

    def __iadd__(self, offset: int) -> Self:
        return self.seek(self._index + offset)

    def __isub__(self, offset: int) -> Self:
        return self.seek(self._index - offset)

    def __eq__(self, other):
        if not isinstance(other, ResultCursor):
            return NotImplemented
        return self.results is other.results and self._index == other._index

    def __lt__(self, other):
        if not isinstance(other, ResultCursor) or self.results is not other.results:
            return NotImplemented
        return self._index < other._index

    __hash__ = None


class ResultContainer:
    """Iterable view of a `Results` decoding every row into the same types.
    """

    def __init__(self, results: Results, types: Sequence[Any] | None = None):
        self.results = results
        self.types = types

    def __len__(self):
        return self.results.row_count()

    def begin(self) -> ResultCursor:
        return ResultCursor(self.results, self.types, 0)

    def end(self) -> ResultCursor:
        return ResultCursor(self.results, self.types, self.results.row_count())

    def __iter__(self) -> Iterator[Row]:
        cursor, end = self.begin(), self.end()
        while cursor < end:
            yield cursor.row
            cursor.next()

    def to_frame(self) -> pd.DataFrame:
        """Decoded rows as a DataFrame named after the result columns."""
        width = len(self.begin().types)
        return pd.DataFrame.from_records([tuple(row) for row in self], columns=self.results.fields[:width])
