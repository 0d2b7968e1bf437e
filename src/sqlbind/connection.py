"""
Connection handling.

This module provides:
1. The `connect()` function for creating new connections
2. The `Connection` class: framed protocol calls, exclusive access and
   call statistics, plus text queries returning buffered `Results`
3. Engine creation and management through a thread-safe registry

A `Connection` talks to an endpoint exposing `handle(stream) -> stream` and
`close()`; `connect()` builds a `LoopbackServer` over a SQLAlchemy-managed
SQLite connection.

Every protocol call happens inside `with cn.exclusive() as channel:`. The
lock is held for the block only; the `Channel` token refuses calls once the
block has exited.
"""
import atexit
import logging
import threading
import time
import weakref
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import fields
from typing import Any, Self

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlbind.exceptions import ConnectionFailure, DatabaseError, OperationError
from sqlbind.exceptions import UnrecoverableError
from sqlbind.loopback import LoopbackServer
from sqlbind.options import ConnectOptions
from sqlbind.results import Results
from sqlbind.statement import PreparedStatement
from sqlbind.utils import dumpsql
from sqlbind.wire import codec, protocol
from sqlbind.wire.constants import CR_CONNECTION_ERROR, CR_SERVER_GONE_ERROR
from sqlbind.wire.constants import CR_SERVER_LOST, OK_HEADER, Command

from libb import load_options

__all__ = [
    'Channel',
    'Connection',
    'connect',
    'create_url_from_options',
    'get_engine_for_options',
    'dispose_all_engines',
]

logger = logging.getLogger(__name__)

_engine_registry: dict[str, Engine] = {}
_engine_registry_lock = threading.RLock()


def create_url_from_options(options: ConnectOptions,
                            url_creator: Callable[..., sa.URL] = sa.URL.create) -> sa.URL:
    """Convert ConnectOptions to SQLAlchemy URL.
    """
    if options.drivername == 'sqlite':
        return url_creator(
            drivername='sqlite',
            database=options.database
        )

    raise ValueError(f'Unsupported database type: {options.drivername}')


def get_engine_for_options(options: ConnectOptions,
                           engine_factory: Callable[..., Engine] = sa.create_engine,
                           **kwargs: Any) -> Engine:
    """Get or create a SQLAlchemy engine for the given options.
    """
    key = str(options)

    with _engine_registry_lock:
        if key in _engine_registry:
            logger.debug(f'Using existing engine for {options.drivername}')
            return _engine_registry[key]

        url = create_url_from_options(options)

        # statements may be driven from any thread; Connection serializes access
        connect_args: dict[str, Any] = {'check_same_thread': False}
        if options.timeout:
            connect_args['timeout'] = options.timeout

        engine_kwargs: dict[str, Any] = {
            'echo': False,
            'poolclass': NullPool,
            'connect_args': connect_args,
        }
        engine_kwargs.update(kwargs)

        engine = engine_factory(url, **engine_kwargs)

        _engine_registry[key] = engine
        logger.debug(f'Created new engine for {options.drivername}')

        return engine


def dispose_all_engines() -> None:
    """Dispose all engines in the registry.
    """
    with _engine_registry_lock:
        for engine in _engine_registry.values():
            engine.dispose()
        _engine_registry.clear()
        logger.debug('All engines disposed')


atexit.register(dispose_all_engines)


class Channel:
    """Exclusive-access token handed out by `Connection.exclusive()`.
    """

    def __init__(self, connection: 'Connection'):
        self._connection = connection
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def check(self) -> None:
        if not self._active:
            raise DatabaseError('Channel used outside of its exclusive-access block')

    def call(self, payload: bytes) -> list[bytes]:
        self.check()
        return self._connection._transmit(payload)

    def release(self) -> None:
        self._active = False


class Connection:
    """Client side of one protocol session.

    Args:
        endpoint: object answering framed requests via `handle(stream)`
        options: the options the connection was made with

    Tracks protocol calls and their total time (`calls`, `time`).
    """

    def __init__(self, endpoint: Any, options: ConnectOptions | None = None):
        self.endpoint = endpoint
        self.options = options
        self.calls = 0
        self.time = 0
        self._lock = threading.Lock()
        self._closed = False
        self._last_error: OperationError | None = None
        self._statements: weakref.WeakSet[PreparedStatement] = weakref.WeakSet()
        self._released: deque = deque()

    def __repr__(self):
        state = 'closed' if self._closed else 'open'
        return f'Connection({state}, {self.calls} calls)'

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return not self._closed

    @contextmanager
    def exclusive(self) -> Iterator[Channel]:
        """Hold the connection lock for one protocol call.
        """
        with self._lock:
            while self._released and not self._closed:
                self._close_handle(self._released.popleft())
            channel = Channel(self)
            try:
                yield channel
            finally:
                channel.release()

    acquire_exclusive_access = exclusive

    def execute_protocol_call(self, payload: bytes) -> list[bytes]:
        """Send one request payload and return the reply payloads.
        """
        with self.exclusive() as channel:
            return channel.call(payload)

    def _transmit(self, payload: bytes) -> list[bytes]:
        if self._closed:
            raise ConnectionFailure(CR_SERVER_GONE_ERROR, 'Server has gone away', '08S01')
        start = time.time()
        try:
            reply = self.endpoint.handle(codec.frame([payload]))
        except OSError as exc:
            raise ConnectionFailure(CR_SERVER_LOST, f'Lost connection to server: {exc}', '08S01') from exc
        finally:
            self.addcall(time.time() - start)
        packets = codec.unframe(reply)
        errors = [packet for packet in packets if codec.is_error(packet)]
        self._last_error = codec.decode_error(errors[-1]) if errors else None
        return packets

    def last_error_code(self) -> int:
        return self._last_error.code if self._last_error else 0

    def last_error_message(self) -> str:
        return self._last_error.message if self._last_error else ''

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def register(self, statement: PreparedStatement) -> None:
        self._statements.add(statement)

    def release(self, handle: protocol.StatementHandle, blocking: bool = False) -> None:
        """Close a statement handle on the server.

        Collected statements release without blocking: when the lock is
        held (possibly by the collecting thread itself) the handle is
        queued and closed at the start of the next exclusive block.
        """
        if handle.closed or self._closed:
            return
        if not self._lock.acquire(blocking=blocking):
            self._released.append(handle)
            return
        try:
            self._close_handle(handle)
        finally:
            self._lock.release()

    def _close_handle(self, handle: protocol.StatementHandle) -> None:
        channel = Channel(self)
        try:
            protocol.stmt_close(channel, handle)
        except UnrecoverableError as exc:
            logger.debug(f'Statement {handle.statement_id} not closed on server: {exc}')
        finally:
            channel.release()

    def prepare(self, query: str) -> PreparedStatement:
        return PreparedStatement(self, query)

    @dumpsql
    def query(self, sql: str) -> Results:
        """Run a text query and buffer its complete result.

        Server errors are reported through the returned `Results`;
        connection and protocol failures raise.
        """
        try:
            packets = self.execute_protocol_call(codec.encode_text_command(Command.QUERY, sql))
            codec.raise_for_error(packets)
            if packets[0][:1] == bytes([OK_HEADER]):
                ok = codec.decode_ok(packets[0])
                return Results(affected_rows=ok.affected_rows, insert_id=ok.insert_id)
            columns, rows = codec.decode_text_resultset(packets)
        except UnrecoverableError:
            raise
        except OperationError as exc:
            logger.warning(f'Query failed: {exc}')
            return Results.from_error(exc)
        logger.debug(f'Query returned {len(rows)} rows')
        return Results(columns, rows)

    def execute(self, sql: str) -> bool:
        """Run a text statement; False when the server rejects it."""
        return bool(self.query(sql))

    def ping(self) -> bool:
        try:
            codec.raise_for_error(self.execute_protocol_call(codec.encode_text_command(Command.PING, '')))
        except OperationError as exc:
            logger.debug(f'Ping failed: {exc}')
            return False
        return True

    def close(self) -> None:
        """Close open statements, then the endpoint
        """
        if self._closed:
            return
        for statement in list(self._statements):
            statement.close()
        self._released.clear()
        self.endpoint.close()
        self._closed = True
        logger.debug(f'Connection closed: {self.calls} calls in {self.time:.2f}s')


@load_options(cls=ConnectOptions)
def connect(options: ConnectOptions | dict[str, Any] | str,
            config: Any | None = None, **kw: Any) -> Connection:
    """Connect to an in-process statement endpoint

    Args:
        options: Can be:
                - ConnectOptions object
                - String path to configuration
                - Dictionary of options
                - Options specified as keyword arguments
        config: Configuration object (for loading from config files)
        **kw: Additional keyword arguments to override options

    Returns
        Connection object

    Raises
        ConnectionFailure: the database cannot be opened or `init_command` fails
    """
    if isinstance(options, ConnectOptions):
        for field in fields(options):
            kw.pop(field.name, None)
    else:
        options_func = load_options(cls=ConnectOptions)(lambda o, c: o)
        options = options_func(options, config, **kw)

    engine = get_engine_for_options(options)

    try:
        sa_connection = engine.connect()
    except sa.exc.SQLAlchemyError as exc:
        raise ConnectionFailure(CR_CONNECTION_ERROR, f"Can't connect to {options.database}: {exc}") from exc

    endpoint = LoopbackServer(sa_connection, options.max_prepared_statements)
    cn = Connection(endpoint, options)
    logger.debug(f'Connected to {options.database} as {options.appname}')

    if options.init_command and not cn.execute(options.init_command):
        error = ConnectionFailure(cn.last_error_code(), f'init_command failed: {cn.last_error_message()}')
        cn.close()
        raise error

    return cn
