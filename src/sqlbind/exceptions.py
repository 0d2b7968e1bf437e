"""
Binding-layer exception classes.

Programmer errors (bad bind index, unbound slot, value that does not fit
its wire type) and construction failures raise. Runtime failures of
execute/fetch are recorded as a `StatementError` and reported through a
boolean return instead.
"""
import enum
from dataclasses import dataclass


class DatabaseError(Exception):
    """Base class for all sqlbind errors.
    """


class OperationError(DatabaseError):
    """A protocol call failed with an error code.
    """

    def __init__(self, code: int, message: str, sqlstate: str = 'HY000'):
        super().__init__(code, message, sqlstate)
        self.code = code
        self.message = message
        self.sqlstate = sqlstate

    def __str__(self):
        return f'({self.code}) {self.message}'


class ConnectionFailure(OperationError):
    """Error establishing or maintaining the connection.
    """


class ProtocolError(OperationError):
    """Malformed or unexpected packet.
    """


class PrepareError(OperationError):
    """Server rejected the statement text.
    """


class ConstructionFailure(OperationError):
    """Statement handle could not be allocated.
    """


class BindError(DatabaseError):
    """Binding contract violated by the caller.
    """


class BindIndexOutOfRange(BindError, IndexError):
    """Binding index beyond the slot count, or argument count mismatch.
    """


class TypeConversionError(DatabaseError):
    """Error converting a value to or from its wire type.
    """


class ErrorKind(enum.Enum):
    """Kind of a recorded (non-raised) statement error."""

    EXECUTE = 'execute'
    FETCH = 'fetch'
    COLUMN_REFETCH = 'column_refetch'


@dataclass(frozen=True)
class StatementError:
    """Last failing protocol call of a statement."""

    kind: ErrorKind
    code: int
    message: str
    sqlstate: str = 'HY000'

    @classmethod
    def from_exception(cls, kind: ErrorKind, exc: OperationError) -> 'StatementError':
        return cls(kind, exc.code, exc.message, exc.sqlstate)


# Fatal for the statement: it can only be inspected afterwards.
UnrecoverableError = (
    ConnectionFailure,
    ProtocolError,
    )
