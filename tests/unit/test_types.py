import math

import numpy as np
import pandas as pd
import pytest
from sqlbind.exceptions import TypeConversionError
from sqlbind.types import Blob, Bool, Double, Float, Int8, Int16, Int64, Text
from sqlbind.types import TypeConverter, UInt8, UInt64, Var, as_var, infer_sqltype
from sqlbind.types import resolve_sqltype
from sqlbind.wire.constants import FieldType


class TestSqlType:
    """Fixed-width packing and text parsing"""

    def test_sizes_and_bounds(self):
        """Bounds follow the width and signedness"""
        assert Int8.size == 1
        assert Int8.bounds == (-128, 127)
        assert UInt8.bounds == (0, 255)
        assert UInt64.bounds == (0, 2**64 - 1)
        assert Double.size == 8
        assert Double.bounds is None
        assert not Text.fixed
        assert Text.size == 0

    def test_pack_round_trip(self):
        """Packing then unpacking yields the value"""
        buf = bytearray(Int16.size)
        Int16.pack_into(buf, -32768)
        assert Int16.unpack(buf) == -32768

    def test_out_of_range(self):
        """Values outside the range are refused"""
        with pytest.raises(TypeConversionError):
            Int8.check(128)
        with pytest.raises(TypeConversionError):
            UInt8.check(-1)
        with pytest.raises(TypeConversionError):
            Float.check(1e39)

    def test_wrong_python_type(self):
        """Non-numbers do not pack into numeric types"""
        with pytest.raises(TypeConversionError):
            Int64.check('12')
        with pytest.raises(TypeConversionError):
            Double.check(b'1.0')

    def test_float_accepts_int(self):
        """Integers are accepted by floating-point types"""
        assert Double.check(3) == 3.0

    def test_defaults(self):
        """Zero values used for NULL in non-nullable targets"""
        assert Int64.default == 0
        assert Double.default == 0.0
        assert Bool.default is False
        assert Text.default == ''
        assert Blob.default == b''

    def test_parse_text(self):
        """Text fields convert per type"""
        assert Int64.parse_text(b'-12') == -12
        assert Double.parse_text(b'2.5') == 2.5
        assert Bool.parse_text(b'0') is False
        assert Text.parse_text('é'.encode()) == 'é'
        assert Blob.parse_text(b'\x00\x01') == b'\x00\x01'

    def test_parse_text_failures(self):
        """Malformed or out-of-range text raises ValueError"""
        with pytest.raises(ValueError):
            Int64.parse_text(b'abc')
        with pytest.raises(ValueError):
            UInt8.parse_text(b'300')
        with pytest.raises(ValueError):
            Text.parse_text(b'\xff\xfe')

    def test_encode_keeps_bytes(self):
        """Bytes-like values are passed through without a copy"""
        data = bytearray(b'abc')
        assert Blob.encode(data) is data
        assert Text.encode('ü') == 'ü'.encode()
        with pytest.raises(TypeConversionError):
            Text.encode(12)


class TestResolution:
    """Mapping Python and NumPy types to SQL types"""

    def test_resolve_python_types(self):
        """Builtin types map to their SQL counterparts"""
        assert resolve_sqltype(int) is Int64
        assert resolve_sqltype(float) is Double
        assert resolve_sqltype(bool) is Bool
        assert resolve_sqltype(str) is Text
        assert resolve_sqltype(bytes) is Blob
        assert resolve_sqltype(Int8) is Int8

    def test_resolve_numpy_types(self):
        """NumPy types keep their width"""
        assert resolve_sqltype(np.int16) is Int16
        assert resolve_sqltype(np.dtype('uint8')) is UInt8
        assert resolve_sqltype(np.float32) is Float

    def test_resolve_unknown(self):
        """Unknown types are refused"""
        with pytest.raises(TypeConversionError):
            resolve_sqltype(object)
        with pytest.raises(TypeConversionError):
            resolve_sqltype('no-such-type')

    def test_infer_from_values(self, value_dict):
        """Parameter values pick a SQL type"""
        assert infer_sqltype(value_dict['int_value']) is Int64
        assert infer_sqltype(value_dict['big_int']) is Int64
        assert infer_sqltype(value_dict['huge_uint']) is UInt64
        assert infer_sqltype(value_dict['bool_true']) is Bool
        assert infer_sqltype(value_dict['float_value']) is Double
        assert infer_sqltype(value_dict['text_value']) is Text
        assert infer_sqltype(value_dict['blob_value']) is Blob
        assert infer_sqltype(np.int8(3)) is Int8

    def test_infer_unsupported(self):
        """Values without a wire type are refused"""
        with pytest.raises(TypeConversionError):
            infer_sqltype([1, 2])


class TestTypeConverter:
    """Parameter value normalization"""

    def test_missing_values(self):
        """NaN and pandas missing markers become None"""
        assert TypeConverter.convert_value(None) is None
        assert TypeConverter.convert_value(float('nan')) is None
        assert TypeConverter.convert_value(np.float64('nan')) is None
        assert TypeConverter.convert_value(pd.NA) is None

    def test_numpy_scalars(self):
        """NumPy scalars become plain Python values"""
        value = TypeConverter.convert_value(np.int32(7))
        assert value == 7
        assert type(value) is int

    def test_plain_values_unchanged(self):
        """Other values pass through"""
        assert TypeConverter.convert_value('x') == 'x'
        assert TypeConverter.convert_value(math.pi) == math.pi


class TestVar:
    """Value holders"""

    def test_as_var_wraps(self):
        """Plain values get a Var of the inferred type"""
        var = as_var(np.uint8(200))
        assert var.sqltype is UInt8
        assert var.value == 200

    def test_as_var_passes_var(self):
        """Vars pass through untouched"""
        var = Var(Int8, 1)
        assert as_var(var) is var

    def test_as_var_null(self):
        """Missing values become nullable NULL Vars"""
        var = as_var(np.nan)
        assert var.value is None
        assert var.nullable

    def test_var_resolves_type(self):
        """A Var accepts Python types"""
        var = Var(str, nullable=True)
        assert var.sqltype is Text
        assert var.sqltype.field_type is FieldType.STRING
        assert repr(var) == 'Var(Text, None, nullable=True)'


if __name__ == '__main__':
    __import__('pytest').main([__file__])
