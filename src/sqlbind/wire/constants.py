"""
Protocol constants: type tags, commands, flags and error codes.
"""
import enum


class FieldType(enum.IntEnum):
    """Protocol type tag of a parameter or column."""

    TINY = 0x01
    SHORT = 0x02
    LONG = 0x03
    FLOAT = 0x04
    DOUBLE = 0x05
    NULL = 0x06
    LONGLONG = 0x08
    BLOB = 0xfc
    VAR_STRING = 0xfd
    STRING = 0xfe

    @property
    def variable(self) -> bool:
        return self in VARIABLE_TYPES


VARIABLE_TYPES = frozenset({FieldType.BLOB, FieldType.VAR_STRING, FieldType.STRING})


class Command(enum.IntEnum):
    QUERY = 0x03
    PING = 0x0e
    STMT_PREPARE = 0x16
    STMT_EXECUTE = 0x17
    STMT_CLOSE = 0x19
    STMT_RESET = 0x1a
    STMT_FETCH = 0x1c


class FetchStatus(enum.Enum):
    """Outcome of a primary row fetch."""

    ROW = 'row'
    TRUNCATED = 'truncated'
    NO_DATA = 'no_data'


OK_HEADER = 0x00
EOF_HEADER = 0xfe
ERR_HEADER = 0xff
NULL_COLUMN = 0xfb

# execute flags
CURSOR_TYPE_NO_CURSOR = 0x00
CURSOR_TYPE_READ_ONLY = 0x01

# parameter type flag
UNSIGNED_PARAM_FLAG = 0x80

# column definition flags
UNSIGNED_FLAG = 0x20
BINARY_FLAG = 0x80

# server status
SERVER_STATUS_AUTOCOMMIT = 0x0002
SERVER_STATUS_CURSOR_EXISTS = 0x0040
SERVER_STATUS_LAST_ROW_SENT = 0x0080

MAX_PAYLOAD_LENGTH = 0xffffff

# server error codes
ER_OUT_OF_RESOURCES = 1041
ER_UNKNOWN_COM_ERROR = 1047
ER_BAD_NULL_ERROR = 1048
ER_TABLE_EXISTS_ERROR = 1050
ER_BAD_FIELD_ERROR = 1054
ER_DUP_ENTRY = 1062
ER_PARSE_ERROR = 1064
ER_UNKNOWN_ERROR = 1105
ER_NO_SUCH_TABLE = 1146
ER_WRONG_ARGUMENTS = 1210
ER_UNKNOWN_STMT_HANDLER = 1243
ER_STMT_HAS_NO_OPEN_CURSOR = 1421
ER_NO_REFERENCED_ROW = 1452
ER_MAX_PREPARED_STMT_COUNT_REACHED = 1461

# client error codes
CR_UNKNOWN_ERROR = 2000
CR_CONNECTION_ERROR = 2002
CR_SERVER_GONE_ERROR = 2006
CR_OUT_OF_MEMORY = 2008
CR_SERVER_LOST = 2013
CR_COMMANDS_OUT_OF_SYNC = 2014
CR_NET_PACKET_TOO_LARGE = 2020
CR_MALFORMED_PACKET = 2027
CR_NO_PREPARE_STMT = 2030
CR_PARAMS_NOT_BOUND = 2031
CR_INVALID_PARAMETER_NO = 2034
CR_UNSUPPORTED_PARAM_TYPE = 2036
CR_NO_DATA = 2051
CR_NO_RESULT_SET = 2053

# statement handle could not be allocated
HANDLE_ALLOCATION_ERRORS = frozenset({
    ER_OUT_OF_RESOURCES,
    ER_MAX_PREPARED_STMT_COUNT_REACHED,
    CR_OUT_OF_MEMORY,
    })
