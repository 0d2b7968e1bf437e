"""
Client side of the prepared-statement protocol.

Every call takes the `Channel` of an exclusive-access block and a
`StatementHandle`. Server-reported failures raise `OperationError`;
transport and framing failures raise `ConnectionFailure` or `ProtocolError`.

The primary row fetch writes each column into its result descriptor,
converting between the column type and the descriptor type where they
differ. Variable-length values longer than the descriptor capacity are cut
off and flagged as truncated; the decoded row stays with the handle so
`stmt_fetch_column` can deliver the full value into an enlarged buffer.
"""
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlbind.exceptions import OperationError, ProtocolError
from sqlbind.wire import codec
from sqlbind.wire.constants import CR_COMMANDS_OUT_OF_SYNC, CR_INVALID_PARAMETER_NO
from sqlbind.wire.constants import CR_MALFORMED_PACKET, CR_NO_DATA, CR_PARAMS_NOT_BOUND
from sqlbind.wire.constants import OK_HEADER, Command, FetchStatus, FieldType
from sqlbind.wire.descriptor import WireDescriptor

__all__ = [
    'StatementHandle',
    'ExecuteResult',
    'stmt_prepare',
    'stmt_execute',
    'stmt_fetch',
    'stmt_fetch_column',
    'stmt_reset',
    'stmt_close',
    'store_column',
]

logger = logging.getLogger(__name__)

FLOAT_MAX = 3.4028234663852886e38


@dataclass
class StatementHandle:
    """Client-side state of one server-side statement."""

    statement_id: int
    param_count: int
    column_count: int
    columns: list[codec.ColumnDefinition] = field(default_factory=list)
    row: list | None = None
    cursor_open: bool = False
    closed: bool = False


@dataclass(frozen=True)
class ExecuteResult:
    affected_rows: int = 0
    insert_id: int = 0
    has_result_set: bool = False


def stmt_prepare(channel, query: str) -> StatementHandle:
    packets = channel.call(codec.encode_text_command(Command.STMT_PREPARE, query))
    codec.raise_for_error(packets)
    statement_id, column_count, param_count = codec.decode_prepare_ok(packets[0])
    logger.debug(f'Prepared statement {statement_id}: {param_count} params, {column_count} columns')
    return StatementHandle(statement_id, param_count, column_count)


def stmt_execute(channel, handle: StatementHandle,
                 descriptors: Sequence[WireDescriptor]) -> ExecuteResult:
    if len(descriptors) != handle.param_count:
        raise OperationError(CR_PARAMS_NOT_BOUND,
                             f'Statement expects {handle.param_count} parameters, got {len(descriptors)}')
    handle.row = None
    handle.cursor_open = False
    packets = channel.call(codec.encode_execute(handle.statement_id, descriptors))
    codec.raise_for_error(packets)
    if packets[0][:1] == bytes([OK_HEADER]):
        ok = codec.decode_ok(packets[0])
        return ExecuteResult(ok.affected_rows, ok.insert_id)
    handle.columns, _ = codec.decode_result_header(packets)
    handle.cursor_open = True
    return ExecuteResult(has_result_set=True)


def stmt_fetch(channel, handle: StatementHandle,
               descriptors: Sequence[WireDescriptor]) -> FetchStatus:
    """Request the next row and write it into the result descriptors."""
    if not handle.cursor_open:
        raise OperationError(CR_COMMANDS_OUT_OF_SYNC,
                             "Commands out of sync; you can't run this command now")
    packets = channel.call(codec.encode_fetch(handle.statement_id))
    codec.raise_for_error(packets)
    if codec.is_eof(packets[0]):
        handle.row = None
        handle.cursor_open = False
        return FetchStatus.NO_DATA
    row = codec.decode_binary_row(packets[0], handle.columns)
    if len(row) != len(descriptors):
        raise ProtocolError(CR_MALFORMED_PACKET,
                            f'Row has {len(row)} columns, {len(descriptors)} descriptors bound')
    handle.row = row
    truncated = False
    for descriptor, value in zip(descriptors, row):
        truncated |= store_column(descriptor, value)
    return FetchStatus.TRUNCATED if truncated else FetchStatus.ROW


def stmt_fetch_column(channel, handle: StatementHandle, descriptor: WireDescriptor,
                      column: int, offset: int = 0) -> None:
    """Deliver one column of the current row into `descriptor` again."""
    channel.check()
    if handle.row is None:
        raise OperationError(CR_NO_DATA, 'Attempt to read column without prior row fetch')
    if not 0 <= column < len(handle.row):
        raise OperationError(CR_INVALID_PARAMETER_NO, f'Invalid parameter number {column}')
    store_column(descriptor, handle.row[column], offset)


def stmt_reset(channel, handle: StatementHandle) -> None:
    packets = channel.call(codec.encode_statement_command(Command.STMT_RESET, handle.statement_id))
    codec.raise_for_error(packets)
    handle.row = None
    handle.cursor_open = False


def stmt_close(channel, handle: StatementHandle) -> None:
    if handle.closed:
        return
    channel.call(codec.encode_statement_command(Command.STMT_CLOSE, handle.statement_id))
    handle.closed = True
    handle.row = None
    handle.cursor_open = False
    logger.debug(f'Closed statement {handle.statement_id}')


def store_column(descriptor: WireDescriptor, value: Any, offset: int = 0) -> bool:
    """Write one decoded column value into a result descriptor.

    Returns True when the value did not fit: a variable-length value longer
    than the capacity, or a number the descriptor type cannot hold.
    """
    descriptor.error = False
    if value is None:
        descriptor.is_null = True
        descriptor.reported_length = 0
        return False
    descriptor.is_null = False
    fmt = codec.fixed_format(descriptor.protocol_type, descriptor.is_unsigned)
    if fmt is not None:
        number, exact = _coerce_number(value, descriptor.protocol_type, fmt.size, descriptor.is_unsigned)
        fmt.pack_into(descriptor.buffer, 0, number)
        descriptor.reported_length = fmt.size
        descriptor.error = not exact
        return not exact
    data = _column_bytes(value)
    descriptor.reported_length = len(data)
    chunk = data[offset:offset + descriptor.capacity]
    descriptor.buffer[:len(chunk)] = chunk
    return len(data) - offset > descriptor.capacity


def _column_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, float):
        return repr(value).encode('ascii')
    return str(value).encode('utf-8')


def _coerce_number(value: Any, field_type: FieldType, size: int, unsigned: bool) -> tuple[Any, bool]:
    """Convert a column value to the descriptor's numeric type.

    Out-of-range integers saturate; unparsable text becomes zero. The flag
    is False whenever the stored number differs from the column value.
    """
    if isinstance(value, bytes):
        try:
            value = int(value)
        except ValueError:
            try:
                value = float(value)
            except ValueError:
                return 0, False
    if field_type in (FieldType.FLOAT, FieldType.DOUBLE):
        value = float(value)
        if field_type is FieldType.FLOAT and math.isfinite(value) and abs(value) > FLOAT_MAX:
            return math.copysign(FLOAT_MAX, value), False
        return value, True
    exact = True
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0, False
        rounded = round(value)
        exact = rounded == value
        value = rounded
    bits = size * 8
    low, high = (0, (1 << bits) - 1) if unsigned else (-(1 << (bits - 1)), (1 << (bits - 1)) - 1)
    if value < low or value > high:
        return max(low, min(high, value)), False
    return value, exact
