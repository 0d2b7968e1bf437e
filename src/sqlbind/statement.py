"""
Prepared statements.

A `PreparedStatement` owns one server-side statement handle, a parameter
`BindSet` and a result `BindSet`, and drives the execute/fetch protocol:

    PREPARED → READY → EXECUTING → FETCH_PENDING → ROW_READY / EXHAUSTED

Construction failures raise (`ConstructionFailure`, `PrepareError`) and
binding mistakes raise (`BindIndexOutOfRange`, `BindError`,
`TypeConversionError`). Everything the server or the connection can get
wrong at execute/fetch time is recorded instead: the call returns False and
`error_code()`/`error_message()`/`last_error` describe the failure. A lost
connection or a malformed reply leaves the statement FAILED.

Each protocol call takes the connection lock on its own, so statements
sharing a connection interleave call by call. A statement object itself is
not synchronized.
"""
import enum
import logging
import weakref
from collections.abc import Iterator
from typing import Any, Self

from sqlbind.binding.bindset import BindSet
from sqlbind.exceptions import ConstructionFailure, ErrorKind, OperationError
from sqlbind.exceptions import PrepareError, StatementError, UnrecoverableError
from sqlbind.types import SqlType, Var
from sqlbind.utils import dumpstmt
from sqlbind.wire import protocol
from sqlbind.wire.constants import CR_COMMANDS_OUT_OF_SYNC, CR_NO_PREPARE_STMT
from sqlbind.wire.constants import CR_NO_RESULT_SET, HANDLE_ALLOCATION_ERRORS
from sqlbind.wire.constants import FetchStatus

__all__ = ['PreparedStatement', 'StatementState']

logger = logging.getLogger(__name__)


class StatementState(enum.Enum):
    PREPARED = 'prepared'
    READY = 'ready'
    EXECUTING = 'executing'
    FETCH_PENDING = 'fetch_pending'
    ROW_READY = 'row_ready'
    EXHAUSTED = 'exhausted'
    CLOSED = 'closed'
    FAILED = 'failed'


TERMINAL_STATES = frozenset({StatementState.CLOSED, StatementState.FAILED})


def _result_target(target: Any) -> Var:
    if isinstance(target, Var):
        return target
    if isinstance(target, SqlType | type):
        return Var(target)
    raise TypeError(f'Result targets must be Var instances or types, got {target!r}')


class PreparedStatement:
    """Server-side prepared statement bound to one connection.

    Args:
        connection: connection exposing `exclusive()`, `register()` and `release()`
        query: statement text with `?` placeholders

    Raises
        ConstructionFailure: the server could not allocate a statement handle
        PrepareError: the server rejected the statement text
        ConnectionFailure: the connection is gone
    """

    def __init__(self, connection: Any, query: str):
        self.connection = connection
        self.query = query
        self._handle = None
        self._error: StatementError | None = None
        self._affected_rows = 0
        self._insert_id = 0
        self._state = StatementState.FAILED
        with connection.exclusive() as channel:
            try:
                self._handle = protocol.stmt_prepare(channel, query)
            except UnrecoverableError:
                raise
            except OperationError as exc:
                if exc.code in HANDLE_ALLOCATION_ERRORS:
                    raise ConstructionFailure(exc.code, exc.message, exc.sqlstate) from exc
                raise PrepareError(exc.code, f'Failed to prepare stmt: {exc.message}', exc.sqlstate) from exc
        self._params = BindSet(self._handle.param_count)
        self._results = BindSet(self._handle.column_count)
        self._state = StatementState.PREPARED
        self._update_ready()
        connection.register(self)
        self._finalizer = weakref.finalize(self, connection.release, self._handle)
        self._finalizer.atexit = False

    @classmethod
    def prepare(cls, connection: Any, query: str) -> Self:
        return cls(connection, query)

    def __repr__(self):
        return f'PreparedStatement({self.statement_id}, {self._state.name}, {self.query!r})'

    def __copy__(self):
        raise TypeError(f'{type(self).__name__} cannot be copied')

    def __deepcopy__(self, memo):
        raise TypeError(f'{type(self).__name__} cannot be copied')

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __iter__(self) -> Iterator[tuple]:
        """Fetch rows until exhaustion (or failure), yielding `row`."""
        while self.fetch():
            yield self.row

    @property
    def state(self) -> StatementState:
        return self._state

    @property
    def statement_id(self) -> int | None:
        return self._handle.statement_id if self._handle else None

    @property
    def param_count(self) -> int:
        return len(self._params)

    @property
    def column_count(self) -> int:
        return len(self._results)

    @property
    def columns(self) -> list:
        """Column definitions of the last result set."""
        return list(self._handle.columns)

    @property
    def param_binds(self) -> BindSet:
        return self._params

    @property
    def result_binds(self) -> BindSet:
        return self._results

    @property
    def affected_rows(self) -> int:
        return self._affected_rows

    @property
    def insert_id(self) -> int:
        return self._insert_id

    @property
    def row(self) -> tuple:
        """Current values of the result targets."""
        return tuple(target.value if target is not None else None for target in self._results.targets)

    @property
    def last_error(self) -> StatementError | None:
        return self._error

    def error_code(self) -> int:
        return self._error.code if self._error else 0

    def error_message(self) -> str:
        return self._error.message if self._error else ''

    def sqlstate(self) -> str:
        return self._error.sqlstate if self._error else '00000'

    def bind_param(self, *values: Any) -> None:
        """Bind all parameters positionally; plain values are wrapped in `Var`s.
        """
        self._params.bind_many(*values)
        self._update_ready()

    def bind_result(self, *targets: Any) -> None:
        """Bind all result columns to `Var`s (or types, allocating the `Var`).
        """
        self._results.bind_many(*(_result_target(target) for target in targets))
        self._update_ready()

    def _update_ready(self) -> None:
        if self._state is StatementState.PREPARED and self._params.is_bound and self._results.is_bound:
            self._state = StatementState.READY

    def _fail(self, kind: ErrorKind, exc: OperationError) -> bool:
        self._error = StatementError.from_exception(kind, exc)
        if isinstance(exc, UnrecoverableError):
            self._state = StatementState.FAILED
            logger.error(f'Statement {self.statement_id} failed: {exc}')
        else:
            logger.warning(f'Statement {self.statement_id} {kind.value} error: {exc}')
        return False

    def _terminal(self, kind: ErrorKind) -> bool:
        """Record why a call on a terminal statement did nothing."""
        if self._state is StatementState.CLOSED:
            self._error = StatementError(kind, CR_NO_PREPARE_STMT, 'Statement not prepared')
        return False

    @dumpstmt
    def execute(self) -> bool:
        """Send the bound parameters and run the statement.

        Returns
            True on success; False with the error recorded otherwise
        """
        if self._state in TERMINAL_STATES:
            return self._terminal(ErrorKind.EXECUTE)
        with self.connection.exclusive() as channel:
            self._params.pre_execute()
            self._state = StatementState.EXECUTING
            try:
                result = protocol.stmt_execute(channel, self._handle, self._params.descriptors)
            except OperationError as exc:
                self._state = StatementState.READY
                return self._fail(ErrorKind.EXECUTE, exc)
        self._params.post_execute()
        self._error = None
        self._affected_rows = result.affected_rows
        self._insert_id = result.insert_id
        self._state = StatementState.FETCH_PENDING if result.has_result_set else StatementState.READY
        return True

    def fetch(self) -> bool:
        """Fetch the next row into the result targets.

        Returns
            True when a row was delivered. False when the rows are exhausted
            (error cleared) or on failure (error recorded)
        """
        if self._state in TERMINAL_STATES:
            return self._terminal(ErrorKind.FETCH)
        if self._state is StatementState.EXHAUSTED:
            self._error = None
            return False
        if not len(self._results):
            return self._fail(ErrorKind.FETCH, OperationError(
                CR_NO_RESULT_SET, 'Attempt to read a row while there is no result set associated with the statement'))
        if self._state not in {StatementState.FETCH_PENDING, StatementState.ROW_READY}:
            return self._fail(ErrorKind.FETCH, OperationError(
                CR_COMMANDS_OUT_OF_SYNC, "Commands out of sync; you can't run this command now"))

        with self.connection.exclusive() as channel:
            self._results.pre_fetch()
            try:
                status = protocol.stmt_fetch(channel, self._handle, self._results.descriptors)
            except OperationError as exc:
                return self._fail(ErrorKind.FETCH, exc)
        if status is FetchStatus.NO_DATA:
            self._state = StatementState.EXHAUSTED
            self._error = None
            return False

        indices = self._results.collect_refetch_indices()
        for index in indices:
            with self.connection.exclusive() as channel:
                try:
                    protocol.stmt_fetch_column(channel, self._handle, self._results.descriptors[index], index)
                except OperationError as exc:
                    self._state = StatementState.FETCH_PENDING
                    return self._fail(ErrorKind.COLUMN_REFETCH, exc)
        self._results.finalize_refetch(indices)
        self._error = None
        self._state = StatementState.ROW_READY
        return True

    def reset(self) -> bool:
        """Discard any pending rows; the statement can be executed again.
        """
        if self._state in TERMINAL_STATES:
            return self._terminal(ErrorKind.EXECUTE)
        with self.connection.exclusive() as channel:
            try:
                protocol.stmt_reset(channel, self._handle)
            except OperationError as exc:
                return self._fail(ErrorKind.EXECUTE, exc)
        self._error = None
        if self._state is not StatementState.PREPARED:
            self._state = StatementState.READY
        return True

    def close(self) -> None:
        """Release the server-side handle; later calls are no-ops.
        """
        if self._state is StatementState.CLOSED:
            return
        if self._finalizer.detach() and self.connection.is_open:
            self.connection.release(self._handle, blocking=True)
        self._handle.closed = True
        self._state = StatementState.CLOSED
