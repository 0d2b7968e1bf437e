"""
Wire descriptor: the fixed-layout record exchanged with the protocol.
"""
from dataclasses import dataclass, field

from sqlbind.wire.constants import FieldType

SENTINEL_CAPACITY = 1


def _sentinel() -> bytearray:
    return bytearray(SENTINEL_CAPACITY)


@dataclass
class WireDescriptor:
    """One parameter or column slot.

    `buffer` is owned by the binder (or, for text parameters, borrows the
    application's bytes until the execute call completes). `capacity` is
    never less than one. `reported_length` holds the data length on the
    write side and the full column length reported by the server on the
    read side, which may exceed `capacity` after truncation.
    """

    buffer: bytes | bytearray | memoryview = field(default_factory=_sentinel)
    capacity: int = SENTINEL_CAPACITY
    protocol_type: FieldType = FieldType.NULL
    is_unsigned: bool = False
    is_null: bool = False
    reported_length: int = 0
    error: bool = False

    @property
    def truncated(self) -> bool:
        return self.reported_length > self.capacity

    def data(self) -> bytes:
        """Bytes currently described: the first `reported_length` bytes that fit."""
        return bytes(self.buffer[:min(self.reported_length, self.capacity)])
