"""
Wire protocol package.

- constants: type tags, commands, flags and error codes
- descriptor: WireDescriptor, one parameter or column slot
- codec: packet framing and (de)serialization
- protocol: client side of the prepared-statement calls
"""

from sqlbind.wire.constants import FetchStatus, FieldType
from sqlbind.wire.descriptor import WireDescriptor
