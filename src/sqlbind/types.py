"""
SQL scalar types and value holders.

A `SqlType` couples a protocol type tag with the Python type an application
sees. A `Var` is caller-owned storage for one bound value: binders read
parameters from it before execute and write fetched column values into it.

Type conversion principles:
1. Python → wire: `TypeConverter` normalizes NumPy/pandas scalars, then the
   `SqlType` range-checks and packs the value.
2. Wire → Python: fixed-width buffers are unpacked by the `SqlType`; text
   fields of buffered result sets are parsed with `SqlType.parse_text`.
"""
import logging
import math
import struct
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from sqlbind.exceptions import TypeConversionError
from sqlbind.wire.constants import FieldType

__all__ = [
    'SqlType',
    'Var',
    'TypeConverter',
    'Int8', 'UInt8', 'Int16', 'UInt16', 'Int32', 'UInt32', 'Int64', 'UInt64',
    'Float', 'Double', 'Bool', 'Text', 'Blob',
    'resolve_sqltype',
    'infer_sqltype',
    'as_var',
]

logger = logging.getLogger(__name__)

FLOAT_MAX = 3.4028234663852886e38


@dataclass(frozen=True)
class SqlType:
    """Wire type of a bound value.

    `fmt` is the struct format of fixed-width types and None for the
    variable-length ones.
    """

    name: str
    field_type: FieldType
    python_type: type
    unsigned: bool = False
    fmt: str | None = None

    def __repr__(self):
        return self.name

    @property
    def fixed(self) -> bool:
        return self.fmt is not None

    @property
    def size(self) -> int:
        return struct.calcsize('<' + self.fmt) if self.fixed else 0

    @property
    def bounds(self) -> tuple[int, int] | None:
        """Inclusive integer range, None for non-integer types."""
        if self.python_type is not int:
            return None
        bits = self.size * 8
        if self.unsigned:
            return 0, (1 << bits) - 1
        return -(1 << (bits - 1)), (1 << (bits - 1)) - 1

    @property
    def default(self) -> Any:
        return self.python_type()

    def check(self, value: Any) -> Any:
        """Validate a fixed-width parameter value and return it ready to pack.
        """
        if self.python_type is bool:
            return bool(value)
        if self.python_type is int:
            if not isinstance(value, int):
                raise TypeConversionError(f'{self.name} expects an integer, got {type(value).__name__}')
            low, high = self.bounds
            if not low <= value <= high:
                raise TypeConversionError(f'{value} is out of range for {self.name}')
            return int(value)
        if self.python_type is float:
            if not isinstance(value, int | float):
                raise TypeConversionError(f'{self.name} expects a number, got {type(value).__name__}')
            if self.field_type is FieldType.FLOAT and math.isfinite(value) and abs(value) > FLOAT_MAX:
                raise TypeConversionError(f'{value} is out of range for {self.name}')
            return float(value)
        raise TypeConversionError(f'{self.name} is not a fixed-width type')

    def pack_into(self, buffer: bytearray, value: Any) -> None:
        try:
            struct.pack_into('<' + self.fmt, buffer, 0, self.check(value))
        except (struct.error, OverflowError) as exc:
            raise TypeConversionError(f'Cannot pack {value!r} as {self.name}: {exc}') from exc

    def unpack(self, buffer: bytearray) -> Any:
        return struct.unpack_from('<' + self.fmt, buffer, 0)[0]

    def encode(self, value: Any) -> bytes | bytearray | memoryview:
        """Bytes of a variable-length value; bytes-like values are not copied.
        """
        if isinstance(value, str):
            return value.encode('utf-8', 'surrogateescape')
        if isinstance(value, bytes | bytearray | memoryview):
            return value
        raise TypeConversionError(f'{self.name} expects str or bytes, got {type(value).__name__}')

    def decode(self, data: bytes) -> str | bytes:
        if self.python_type is str:
            return data.decode('utf-8', 'surrogateescape')
        return bytes(data)

    def parse_text(self, raw: bytes) -> Any:
        """Convert one text-protocol field.

        Raises ValueError (or UnicodeDecodeError) when the text is malformed
        or the number does not fit the type.
        """
        if self.python_type is bool:
            return int(raw) != 0
        if self.python_type is int:
            value = int(raw)
            low, high = self.bounds
            if not low <= value <= high:
                raise ValueError(f'{value} is out of range for {self.name}')
            return value
        if self.python_type is float:
            return float(raw)
        if self.python_type is str:
            return raw.decode('utf-8')
        return bytes(raw)


Int8 = SqlType('Int8', FieldType.TINY, int, False, 'b')
UInt8 = SqlType('UInt8', FieldType.TINY, int, True, 'B')
Int16 = SqlType('Int16', FieldType.SHORT, int, False, 'h')
UInt16 = SqlType('UInt16', FieldType.SHORT, int, True, 'H')
Int32 = SqlType('Int32', FieldType.LONG, int, False, 'i')
UInt32 = SqlType('UInt32', FieldType.LONG, int, True, 'I')
Int64 = SqlType('Int64', FieldType.LONGLONG, int, False, 'q')
UInt64 = SqlType('UInt64', FieldType.LONGLONG, int, True, 'Q')
Float = SqlType('Float', FieldType.FLOAT, float, False, 'f')
Double = SqlType('Double', FieldType.DOUBLE, float, False, 'd')
Bool = SqlType('Bool', FieldType.TINY, bool, False, '?')
Text = SqlType('Text', FieldType.STRING, str)
Blob = SqlType('Blob', FieldType.BLOB, bytes)

_PYTHON_TYPES: dict[type, SqlType] = {
    bool: Bool,
    int: Int64,
    float: Double,
    str: Text,
    bytes: Blob,
}

_NUMPY_TYPES: dict[np.dtype, SqlType] = {
    np.dtype('bool'): Bool,
    np.dtype('int8'): Int8,
    np.dtype('uint8'): UInt8,
    np.dtype('int16'): Int16,
    np.dtype('uint16'): UInt16,
    np.dtype('int32'): Int32,
    np.dtype('uint32'): UInt32,
    np.dtype('int64'): Int64,
    np.dtype('uint64'): UInt64,
    np.dtype('float32'): Float,
    np.dtype('float64'): Double,
}


def resolve_sqltype(target: Any) -> SqlType:
    """Map a SqlType, Python type or NumPy scalar type/dtype to a SqlType.
    """
    if isinstance(target, SqlType):
        return target
    if target in _PYTHON_TYPES:
        return _PYTHON_TYPES[target]
    try:
        sqltype = _NUMPY_TYPES.get(np.dtype(target))
    except TypeError:
        sqltype = None
    if sqltype is None:
        raise TypeConversionError(f'No SQL type for {target!r}')
    return sqltype


def infer_sqltype(value: Any) -> SqlType:
    """Pick the SqlType for a plain parameter value.

    NumPy scalars keep their width; Python ints bind as Int64 unless they
    only fit the unsigned range.
    """
    if isinstance(value, np.generic):
        sqltype = _NUMPY_TYPES.get(value.dtype)
        if sqltype is not None:
            return sqltype
        value = value.item()
    if isinstance(value, bool):
        return Bool
    if isinstance(value, int):
        return UInt64 if value > Int64.bounds[1] else Int64
    if isinstance(value, float):
        return Double
    if isinstance(value, str):
        return Text
    if isinstance(value, bytes | bytearray | memoryview):
        return Blob
    raise TypeConversionError(f'Cannot bind value of type {type(value).__name__}')


class Var:
    """Caller-owned storage for one bound value.

    Args:
        sqltype: SqlType, or a Python/NumPy type resolvable to one
        value: initial value (parameters) or last fetched value (results)
        nullable: whether NULL is a legal value; non-nullable result
            targets receive the type's zero value for NULL columns
    """

    def __init__(self, sqltype: Any, value: Any = None, nullable: bool = False):
        self.sqltype = resolve_sqltype(sqltype)
        self.value = value
        self.nullable = nullable

    def __repr__(self):
        nullable = ', nullable=True' if self.nullable else ''
        return f'Var({self.sqltype.name}, {self.value!r}{nullable})'


class TypeConverter:
    """Parameter value normalization"""

    @staticmethod
    def convert_value(value: Any) -> Any:
        """Convert a single value to a plain Python value

        NumPy scalars become their Python equivalents; NaN and pandas
        missing-value markers become None.

        Args:
            value: Any Python, NumPy or pandas scalar

        Returns
            Converted value suitable for a wire type
        """
        if value is None:
            return None

        if isinstance(value, float) and math.isnan(value):
            return None

        if isinstance(value, np.generic):
            if isinstance(value, np.floating) and np.isnan(value):
                return None
            return value.item()

        if pd.api.types.is_scalar(value) and pd.isna(value):
            return None

        return value


def as_var(value: Any) -> Var:
    """Wrap a plain parameter value in a Var; Vars pass through.
    """
    if isinstance(value, Var):
        return value
    converted = TypeConverter.convert_value(value)
    if converted is None:
        return Var(Text, None, nullable=True)
    return Var(infer_sqltype(value), converted)
