"""
Packet framing and (de)serialization.

Little-endian throughout. Every packet on the wire is a 3-byte payload
length, a 1-byte sequence id and the payload; a request is one packet and a
response is one or more.
"""
import struct
from collections.abc import Iterable, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from sqlbind.exceptions import OperationError, ProtocolError
from sqlbind.wire.constants import CR_MALFORMED_PACKET, CR_NET_PACKET_TOO_LARGE
from sqlbind.wire.constants import CR_UNSUPPORTED_PARAM_TYPE
from sqlbind.wire.constants import CURSOR_TYPE_READ_ONLY, EOF_HEADER, ERR_HEADER
from sqlbind.wire.constants import MAX_PAYLOAD_LENGTH, NULL_COLUMN, OK_HEADER
from sqlbind.wire.constants import SERVER_STATUS_AUTOCOMMIT, UNSIGNED_FLAG
from sqlbind.wire.constants import UNSIGNED_PARAM_FLAG, VARIABLE_TYPES
from sqlbind.wire.constants import Command, FieldType
from sqlbind.wire.descriptor import WireDescriptor

__all__ = [
    'ColumnDefinition',
    'OkPacket',
    'frame',
    'unframe',
    'fixed_format',
    'encode_execute',
    'decode_execute',
    'encode_binary_row',
    'decode_binary_row',
    'decode_text_resultset',
    'raise_for_error',
]

FIXED_FORMATS: dict[tuple[FieldType, bool], struct.Struct] = {
    (FieldType.TINY, False): struct.Struct('<b'),
    (FieldType.TINY, True): struct.Struct('<B'),
    (FieldType.SHORT, False): struct.Struct('<h'),
    (FieldType.SHORT, True): struct.Struct('<H'),
    (FieldType.LONG, False): struct.Struct('<i'),
    (FieldType.LONG, True): struct.Struct('<I'),
    (FieldType.LONGLONG, False): struct.Struct('<q'),
    (FieldType.LONGLONG, True): struct.Struct('<Q'),
    (FieldType.FLOAT, False): struct.Struct('<f'),
    (FieldType.FLOAT, True): struct.Struct('<f'),
    (FieldType.DOUBLE, False): struct.Struct('<d'),
    (FieldType.DOUBLE, True): struct.Struct('<d'),
}

PREPARE_OK = struct.Struct('<BIHHxH')
EXECUTE_HEADER = struct.Struct('<BIBI')
FETCH_REQUEST = struct.Struct('<BII')
STATEMENT_COMMAND = struct.Struct('<BI')
TYPE_PAIR = struct.Struct('<BB')
COLUMN_TAIL = struct.Struct('<BH')
ERR_PREFIX = struct.Struct('<BH')
STATUS = struct.Struct('<HH')


@contextmanager
def _decoding(what: str):
    try:
        yield
    except (struct.error, IndexError, ValueError) as exc:
        raise ProtocolError(CR_MALFORMED_PACKET, f'Malformed {what} packet: {exc}') from exc


def frame(payloads: Iterable[bytes], sequence: int = 0) -> bytes:
    """Concatenate payloads into a packet stream."""
    stream = bytearray()
    for payload in payloads:
        if len(payload) >= MAX_PAYLOAD_LENGTH:
            raise ProtocolError(CR_NET_PACKET_TOO_LARGE,
                                f'Packet of {len(payload)} bytes exceeds the protocol limit')
        stream.extend(len(payload).to_bytes(3, 'little'))
        stream.append(sequence & 0xff)
        stream.extend(payload)
        sequence += 1
    return bytes(stream)


def unframe(stream: bytes) -> list[bytes]:
    """Split a packet stream into payloads."""
    packets = []
    pos = 0
    while pos < len(stream):
        if pos + 4 > len(stream):
            raise ProtocolError(CR_MALFORMED_PACKET, 'Truncated packet header')
        length = int.from_bytes(stream[pos:pos + 3], 'little')
        start = pos + 4
        end = start + length
        if end > len(stream):
            raise ProtocolError(CR_MALFORMED_PACKET,
                                f'Packet declares {length} bytes, {len(stream) - start} available')
        packets.append(bytes(stream[start:end]))
        pos = end
    return packets


def write_lenenc_int(buf: bytearray, value: int) -> None:
    if value < 0xfb:
        buf.append(value)
    elif value < 1 << 16:
        buf.append(0xfc)
        buf.extend(struct.pack('<H', value))
    elif value < 1 << 24:
        buf.append(0xfd)
        buf.extend(value.to_bytes(3, 'little'))
    else:
        buf.append(0xfe)
        buf.extend(struct.pack('<Q', value))


def read_lenenc_int(buf: bytes, pos: int) -> tuple[int, int]:
    """Read a length-encoded integer, return it and the next position."""
    if pos >= len(buf):
        raise ProtocolError(CR_MALFORMED_PACKET, 'Length-encoded integer past end of packet')
    first = buf[pos]
    if first < 0xfb:
        return first, pos + 1
    if first == 0xfc:
        return struct.unpack_from('<H', buf, pos + 1)[0], pos + 3
    if first == 0xfd:
        if pos + 4 > len(buf):
            raise ProtocolError(CR_MALFORMED_PACKET, 'Length-encoded integer past end of packet')
        return int.from_bytes(buf[pos + 1:pos + 4], 'little'), pos + 4
    if first == 0xfe:
        return struct.unpack_from('<Q', buf, pos + 1)[0], pos + 9
    raise ProtocolError(CR_MALFORMED_PACKET, f'Invalid length-encoded integer prefix {first:#x}')


def write_lenenc_bytes(buf: bytearray, data) -> None:
    write_lenenc_int(buf, len(data))
    buf.extend(data)


def read_lenenc_bytes(buf: bytes, pos: int) -> tuple[bytes, int]:
    length, pos = read_lenenc_int(buf, pos)
    end = pos + length
    if end > len(buf):
        raise ProtocolError(CR_MALFORMED_PACKET,
                            f'Length-encoded string of {length} bytes overruns packet')
    return bytes(buf[pos:end]), end


def fixed_format(field_type: FieldType, unsigned: bool = False) -> struct.Struct | None:
    """Struct for a fixed-width type tag, None for variable-length tags."""
    return FIXED_FORMATS.get((field_type, bool(unsigned)))


def write_value(buf: bytearray, field_type: FieldType, unsigned: bool, value) -> None:
    fmt = fixed_format(field_type, unsigned)
    if fmt is not None:
        buf.extend(fmt.pack(value))
    elif field_type in VARIABLE_TYPES:
        write_lenenc_bytes(buf, value)
    else:
        raise ProtocolError(CR_UNSUPPORTED_PARAM_TYPE, f'Cannot encode values of type {field_type!r}')


def read_value(buf: bytes, pos: int, field_type: FieldType, unsigned: bool) -> tuple:
    fmt = fixed_format(field_type, unsigned)
    if fmt is not None:
        return fmt.unpack_from(buf, pos)[0], pos + fmt.size
    if field_type in VARIABLE_TYPES:
        return read_lenenc_bytes(buf, pos)
    raise ProtocolError(CR_UNSUPPORTED_PARAM_TYPE, f'Cannot decode values of type {field_type!r}')


def null_bitmap(nulls: Sequence[bool], offset: int = 0) -> bytearray:
    bitmap = bytearray((len(nulls) + offset + 7) // 8)
    for index, is_null in enumerate(nulls):
        if is_null:
            bit = index + offset
            bitmap[bit // 8] |= 1 << (bit % 8)
    return bitmap


def is_null_bit(bitmap: bytes, index: int, offset: int = 0) -> bool:
    bit = index + offset
    return bool(bitmap[bit // 8] & (1 << (bit % 8)))


@dataclass(frozen=True)
class OkPacket:
    affected_rows: int = 0
    insert_id: int = 0
    status: int = 0
    warnings: int = 0


@dataclass(frozen=True)
class ColumnDefinition:
    """Column metadata sent ahead of the rows of a result set."""

    name: str
    field_type: FieldType
    flags: int = 0

    @property
    def unsigned(self) -> bool:
        return bool(self.flags & UNSIGNED_FLAG)


def is_error(payload: bytes) -> bool:
    return payload[:1] == bytes([ERR_HEADER])


def is_eof(payload: bytes) -> bool:
    return payload[:1] == bytes([EOF_HEADER]) and len(payload) < 9


def encode_ok(affected_rows: int = 0, insert_id: int = 0,
              status: int = SERVER_STATUS_AUTOCOMMIT, warnings: int = 0) -> bytes:
    buf = bytearray([OK_HEADER])
    write_lenenc_int(buf, affected_rows)
    write_lenenc_int(buf, insert_id)
    buf.extend(STATUS.pack(status, warnings))
    return bytes(buf)


def decode_ok(payload: bytes) -> OkPacket:
    with _decoding('OK'):
        if payload[0] != OK_HEADER:
            raise ValueError(f'unexpected header {payload[0]:#x}')
        affected_rows, pos = read_lenenc_int(payload, 1)
        insert_id, pos = read_lenenc_int(payload, pos)
        status, warnings = STATUS.unpack_from(payload, pos)
    return OkPacket(affected_rows, insert_id, status, warnings)


def encode_error(code: int, message: str, sqlstate: str = 'HY000') -> bytes:
    return (ERR_PREFIX.pack(ERR_HEADER, code) + b'#' + sqlstate.encode('ascii')
            + message.encode('utf-8'))


def decode_error(payload: bytes) -> OperationError:
    """Turn an ERR packet into the exception it describes (not raised)."""
    with _decoding('ERR'):
        _, code = ERR_PREFIX.unpack_from(payload, 0)
        pos = ERR_PREFIX.size
        sqlstate = 'HY000'
        if payload[pos:pos + 1] == b'#':
            sqlstate = payload[pos + 1:pos + 6].decode('ascii')
            pos += 6
        message = payload[pos:].decode('utf-8', errors='replace')
    return OperationError(code, message, sqlstate)


def encode_eof(status: int = SERVER_STATUS_AUTOCOMMIT, warnings: int = 0) -> bytes:
    return bytes([EOF_HEADER]) + STATUS.pack(warnings, status)


def raise_for_error(packets: Sequence[bytes]) -> None:
    if not packets:
        raise ProtocolError(CR_MALFORMED_PACKET, 'Empty response')
    for packet in packets:
        if is_error(packet):
            raise decode_error(packet)


def encode_text_command(command: Command, text: str) -> bytes:
    return bytes([command]) + text.encode('utf-8')


def decode_text_command(payload: bytes) -> str:
    with _decoding('command'):
        return payload[1:].decode('utf-8')


def encode_statement_command(command: Command, statement_id: int) -> bytes:
    return STATEMENT_COMMAND.pack(command, statement_id)


def peek_statement_id(payload: bytes) -> int:
    with _decoding('statement command'):
        return STATEMENT_COMMAND.unpack_from(payload, 0)[1]


def encode_prepare_ok(statement_id: int, column_count: int, param_count: int,
                      warnings: int = 0) -> bytes:
    return PREPARE_OK.pack(OK_HEADER, statement_id, column_count, param_count, warnings)


def decode_prepare_ok(payload: bytes) -> tuple[int, int, int]:
    """Return statement id, column count and parameter count."""
    with _decoding('PREPARE reply'):
        header, statement_id, column_count, param_count, _ = PREPARE_OK.unpack_from(payload, 0)
        if header != OK_HEADER:
            raise ValueError(f'unexpected header {header:#x}')
    return statement_id, column_count, param_count


def encode_execute(statement_id: int, descriptors: Sequence[WireDescriptor],
                   flags: int = CURSOR_TYPE_READ_ONLY) -> bytes:
    """Build an EXECUTE request carrying one value per parameter descriptor."""
    buf = bytearray(EXECUTE_HEADER.pack(Command.STMT_EXECUTE, statement_id, flags, 1))
    if not descriptors:
        return bytes(buf)
    nulls = [d.is_null or d.protocol_type is FieldType.NULL for d in descriptors]
    buf.extend(null_bitmap(nulls))
    buf.append(1)
    for d in descriptors:
        buf.extend(TYPE_PAIR.pack(d.protocol_type, UNSIGNED_PARAM_FLAG if d.is_unsigned else 0))
    for index, (d, is_null) in enumerate(zip(descriptors, nulls)):
        if is_null:
            continue
        data = d.buffer[:d.reported_length]
        if d.protocol_type in VARIABLE_TYPES:
            write_lenenc_bytes(buf, data)
            continue
        fmt = fixed_format(d.protocol_type, d.is_unsigned)
        if fmt is None or len(data) != fmt.size:
            raise ProtocolError(CR_UNSUPPORTED_PARAM_TYPE,
                                f'Parameter {index} has no valid {d.protocol_type!r} value')
        buf.extend(data)
    return bytes(buf)


def decode_execute(payload: bytes, param_count: int) -> tuple[int, int, list]:
    """Return statement id, cursor flags and (type tag, value) per parameter."""
    with _decoding('EXECUTE'):
        _, statement_id, flags, _ = EXECUTE_HEADER.unpack_from(payload, 0)
        pos = EXECUTE_HEADER.size
        params = []
        if param_count:
            size = (param_count + 7) // 8
            bitmap = payload[pos:pos + size]
            pos += size
            if payload[pos] != 1:
                raise ValueError('parameter types were not sent')
            pos += 1
            types = []
            for _ in range(param_count):
                tag, tag_flags = TYPE_PAIR.unpack_from(payload, pos)
                pos += TYPE_PAIR.size
                types.append((FieldType(tag), bool(tag_flags & UNSIGNED_PARAM_FLAG)))
            for index, (field_type, unsigned) in enumerate(types):
                if is_null_bit(bitmap, index) or field_type is FieldType.NULL:
                    params.append((field_type, None))
                    continue
                value, pos = read_value(payload, pos, field_type, unsigned)
                params.append((field_type, value))
    return statement_id, flags, params


def encode_fetch(statement_id: int, rows: int = 1) -> bytes:
    return FETCH_REQUEST.pack(Command.STMT_FETCH, statement_id, rows)


def decode_fetch(payload: bytes) -> tuple[int, int]:
    with _decoding('FETCH'):
        _, statement_id, rows = FETCH_REQUEST.unpack_from(payload, 0)
    return statement_id, rows


def encode_column(column: ColumnDefinition) -> bytes:
    buf = bytearray()
    write_lenenc_bytes(buf, column.name.encode('utf-8'))
    buf.extend(COLUMN_TAIL.pack(column.field_type, column.flags))
    return bytes(buf)


def decode_column(payload: bytes) -> ColumnDefinition:
    with _decoding('column definition'):
        name, pos = read_lenenc_bytes(payload, 0)
        tag, flags = COLUMN_TAIL.unpack_from(payload, pos)
        return ColumnDefinition(name.decode('utf-8'), FieldType(tag), flags)


def encode_result_header(columns: Sequence[ColumnDefinition]) -> list[bytes]:
    count = bytearray()
    write_lenenc_int(count, len(columns))
    return [bytes(count), *(encode_column(column) for column in columns), encode_eof()]


def decode_result_header(packets: Sequence[bytes]) -> tuple[list[ColumnDefinition], int]:
    """Return the columns and the index of the first packet after the header."""
    with _decoding('result set header'):
        count, _ = read_lenenc_int(packets[0], 0)
        columns = [decode_column(packet) for packet in packets[1:1 + count]]
        if len(columns) != count or not is_eof(packets[1 + count]):
            raise ValueError(f'expected {count} column definitions followed by EOF')
    return columns, count + 2


def encode_binary_row(columns: Sequence[ColumnDefinition], values: Sequence) -> bytes:
    buf = bytearray([OK_HEADER])
    buf.extend(null_bitmap([value is None for value in values], offset=2))
    for column, value in zip(columns, values):
        if value is not None:
            write_value(buf, column.field_type, column.unsigned, value)
    return bytes(buf)


def decode_binary_row(payload: bytes, columns: Sequence[ColumnDefinition]) -> list:
    with _decoding('binary row'):
        if payload[0] != OK_HEADER:
            raise ValueError(f'unexpected header {payload[0]:#x}')
        size = (len(columns) + 9) // 8
        bitmap = payload[1:1 + size]
        pos = 1 + size
        values = []
        for index, column in enumerate(columns):
            if is_null_bit(bitmap, index, offset=2) or column.field_type is FieldType.NULL:
                values.append(None)
                continue
            value, pos = read_value(payload, pos, column.field_type, column.unsigned)
            values.append(value)
    return values


def encode_text_row(values: Iterable[bytes | None]) -> bytes:
    buf = bytearray()
    for value in values:
        if value is None:
            buf.append(NULL_COLUMN)
        else:
            write_lenenc_bytes(buf, value)
    return bytes(buf)


def decode_text_row(payload: bytes, count: int) -> tuple[bytes | None, ...]:
    with _decoding('text row'):
        fields = []
        pos = 0
        for _ in range(count):
            if payload[pos] == NULL_COLUMN:
                fields.append(None)
                pos += 1
                continue
            value, pos = read_lenenc_bytes(payload, pos)
            fields.append(value)
    return tuple(fields)


def decode_text_resultset(packets: Sequence[bytes]) -> tuple[list[ColumnDefinition], list[tuple]]:
    """Decode a QUERY reply holding a text result set."""
    columns, pos = decode_result_header(packets)
    rows = []
    for packet in packets[pos:]:
        if is_eof(packet):
            break
        rows.append(decode_text_row(packet, len(columns)))
    return columns, rows
