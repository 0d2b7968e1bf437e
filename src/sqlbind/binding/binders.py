"""
Type binders: translate between a `Var` and its wire descriptor.

The set of binder kinds is closed, fixed by the protocol:

- FIXED: fixed-width numeric (or boolean), never NULL on the write side
- NULLABLE_FIXED: fixed-width numeric that may be NULL
- TEXT: variable-length text or blob
- NULLABLE_TEXT: variable-length text or blob that may be NULL

Each kind is a row of `_OPERATIONS`; `TypeBinder` dispatches on its kind.
Every binder owns a staging buffer. Fixed-width binders size it to the type
once; text binders keep a 1-byte placeholder for reads and grow it to the
length the server reports, which is what drives the column refetch.
"""
import enum
import logging
from collections import namedtuple

from sqlbind.exceptions import TypeConversionError
from sqlbind.types import TypeConverter, Var
from sqlbind.wire.constants import FieldType
from sqlbind.wire.descriptor import SENTINEL_CAPACITY, WireDescriptor

__all__ = ['BinderKind', 'TypeBinder', 'binder_kind']

logger = logging.getLogger(__name__)


class BinderKind(enum.Enum):
    FIXED = 'fixed'
    NULLABLE_FIXED = 'nullable_fixed'
    TEXT = 'text'
    NULLABLE_TEXT = 'nullable_text'


def binder_kind(target: Var) -> BinderKind:
    if target.sqltype.fixed:
        return BinderKind.NULLABLE_FIXED if target.nullable else BinderKind.FIXED
    return BinderKind.NULLABLE_TEXT if target.nullable else BinderKind.TEXT


def _describe(d: WireDescriptor, buffer, protocol_type: FieldType, unsigned: bool,
              is_null: bool, length: int) -> None:
    d.buffer = buffer
    d.capacity = max(len(buffer), SENTINEL_CAPACITY)
    d.protocol_type = protocol_type
    d.is_unsigned = unsigned
    d.is_null = is_null
    d.reported_length = length
    d.error = False


class TypeBinder:
    """Binds one `Var` to one wire descriptor.

    Hooks, in protocol order:

    - `prepare_for_write()` before the parameters are sent
    - `post_execute()` after a successful execute
    - `prepare_for_read()` before each row fetch
    - `needs_refetch()` after the primary fetch; commits values that are
      already complete and reports whether a column refetch is required
    - `finalize_refetch()` after the column refetch wrote the full value
    """

    def __init__(self, target: Var, descriptor: WireDescriptor):
        self.target = target
        self.descriptor = descriptor
        self.kind = binder_kind(target)
        sqltype = target.sqltype
        self._staging = bytearray(sqltype.size if sqltype.fixed else SENTINEL_CAPACITY)

    def __repr__(self):
        return f'TypeBinder({self.kind.name}, {self.target!r})'

    def prepare_for_write(self) -> None:
        _OPERATIONS[self.kind].write(self)

    def post_execute(self) -> None:
        _OPERATIONS[self.kind].post_execute(self)

    def prepare_for_read(self) -> None:
        _OPERATIONS[self.kind].read(self)

    def needs_refetch(self) -> bool:
        return _OPERATIONS[self.kind].needs_refetch(self)

    def finalize_refetch(self) -> None:
        _OPERATIONS[self.kind].finalize(self)


def _value(binder: TypeBinder):
    return TypeConverter.convert_value(binder.target.value)


def _fixed_write(binder: TypeBinder) -> None:
    sqltype = binder.target.sqltype
    value = _value(binder)
    if value is None:
        if binder.kind is BinderKind.FIXED:
            raise TypeConversionError(f'{sqltype.name} parameter has no value; bind a nullable Var for NULL')
        _describe(binder.descriptor, binder._staging, sqltype.field_type, sqltype.unsigned, True, 0)
        return
    sqltype.pack_into(binder._staging, value)
    _describe(binder.descriptor, binder._staging, sqltype.field_type, sqltype.unsigned, False, sqltype.size)


def _fixed_read(binder: TypeBinder) -> None:
    sqltype = binder.target.sqltype
    _describe(binder.descriptor, binder._staging, sqltype.field_type, sqltype.unsigned, False, 0)


def _fixed_needs_refetch(binder: TypeBinder) -> bool:
    sqltype = binder.target.sqltype
    if binder.descriptor.is_null:
        binder.target.value = None if binder.kind is BinderKind.NULLABLE_FIXED else sqltype.default
    else:
        binder.target.value = sqltype.unpack(binder._staging)
    return False


def _text_write(binder: TypeBinder) -> None:
    sqltype = binder.target.sqltype
    value = _value(binder)
    if value is None:
        # non-nullable text without a value goes out as the NULL type
        protocol_type = sqltype.field_type if binder.kind is BinderKind.NULLABLE_TEXT else FieldType.NULL
        _describe(binder.descriptor, binder._staging, protocol_type, False, True, 0)
        return
    data = sqltype.encode(value)
    if not len(data):
        _describe(binder.descriptor, binder._staging, sqltype.field_type, False, False, 0)
        return
    _describe(binder.descriptor, data, sqltype.field_type, False, False, len(data))


def _text_post_execute(binder: TypeBinder) -> None:
    d = binder.descriptor
    d.buffer = binder._staging
    d.capacity = len(binder._staging)


def _text_read(binder: TypeBinder) -> None:
    del binder._staging[SENTINEL_CAPACITY:]
    sqltype = binder.target.sqltype
    _describe(binder.descriptor, binder._staging, sqltype.field_type, False, False, 0)


def _text_needs_refetch(binder: TypeBinder) -> bool:
    d = binder.descriptor
    sqltype = binder.target.sqltype
    if d.is_null:
        binder.target.value = None if binder.kind is BinderKind.NULLABLE_TEXT else sqltype.default
        return False
    if d.reported_length == 0:
        binder.target.value = sqltype.default
        return False
    binder._staging.extend(bytes(d.reported_length - len(binder._staging)))
    d.buffer = binder._staging
    d.capacity = d.reported_length
    logger.debug(f'Column needs refetch: {d.reported_length} bytes')
    return True


def _text_finalize(binder: TypeBinder) -> None:
    d = binder.descriptor
    binder.target.value = binder.target.sqltype.decode(bytes(binder._staging[:d.reported_length]))


def _noop(binder: TypeBinder) -> None:
    pass


_Operations = namedtuple('_Operations', 'write post_execute read needs_refetch finalize')

_FIXED_OPERATIONS = _Operations(_fixed_write, _noop, _fixed_read, _fixed_needs_refetch, _noop)
_TEXT_OPERATIONS = _Operations(_text_write, _text_post_execute, _text_read, _text_needs_refetch,
                               _text_finalize)

_OPERATIONS: dict[BinderKind, _Operations] = {
    BinderKind.FIXED: _FIXED_OPERATIONS,
    BinderKind.NULLABLE_FIXED: _FIXED_OPERATIONS,
    BinderKind.TEXT: _TEXT_OPERATIONS,
    BinderKind.NULLABLE_TEXT: _TEXT_OPERATIONS,
}
