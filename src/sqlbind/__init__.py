"""
Prepared-statement binding over a MySQL-style binary protocol.

All statement operations can be called either as:
- Module functions: sqlbind.prepare(cn, sql), sqlbind.query(cn, sql)
- Connection methods: cn.prepare(sql), cn.query(sql)

The module functions are facades over the connection methods.
"""
__version__ = '0.1.0'

from sqlbind.connection import Connection, connect
from sqlbind.exceptions import BindError, BindIndexOutOfRange, ConnectionFailure
from sqlbind.exceptions import ConstructionFailure, DatabaseError, ErrorKind
from sqlbind.exceptions import OperationError, PrepareError, ProtocolError
from sqlbind.exceptions import StatementError, TypeConversionError
from sqlbind.options import ConnectOptions
from sqlbind.results import ResultContainer, ResultCursor, Results, Row
from sqlbind.statement import PreparedStatement, StatementState
from sqlbind.types import Blob, Bool, Double, Float, Int8, Int16, Int32, Int64
from sqlbind.types import SqlType, Text, UInt8, UInt16, UInt32, UInt64, Var


def prepare(cn: Connection, sql: str) -> PreparedStatement:
    """Prepare a statement on the server.

    Raises PrepareError when the server rejects the text.
    """
    return cn.prepare(sql)


def query(cn: Connection, sql: str) -> Results:
    """Run a text query and return its buffered result.
    """
    return cn.query(sql)


def execute(cn: Connection, sql: str) -> bool:
    """Run a text statement; False when the server rejects it.
    """
    return cn.execute(sql)


__all__ = [
    'Connection',
    'ConnectOptions',
    'connect',
    'prepare',
    'query',
    'execute',
    'PreparedStatement',
    'StatementState',
    'Results',
    'ResultCursor',
    'ResultContainer',
    'Row',
    'SqlType',
    'Var',
    'Int8', 'UInt8', 'Int16', 'UInt16', 'Int32', 'UInt32', 'Int64', 'UInt64',
    'Float', 'Double', 'Bool', 'Text', 'Blob',
    'DatabaseError',
    'OperationError',
    'ConnectionFailure',
    'ProtocolError',
    'PrepareError',
    'ConstructionFailure',
    'BindError',
    'BindIndexOutOfRange',
    'TypeConversionError',
    'ErrorKind',
    'StatementError',
]
