import copy
import gc
import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
import sqlbind
from sqlbind import Blob, Bool, Double, Float, Int8, Int16, Int32, Int64, Text
from sqlbind import UInt8, UInt16, UInt32, UInt64, Var
from sqlbind.exceptions import BindError, BindIndexOutOfRange, ConnectionFailure
from sqlbind.exceptions import ConstructionFailure, ErrorKind, OperationError
from sqlbind.exceptions import PrepareError
from sqlbind.statement import PreparedStatement, StatementState
from sqlbind.wire import protocol
from sqlbind.wire.constants import CR_COMMANDS_OUT_OF_SYNC, CR_NO_DATA
from sqlbind.wire.constants import CR_NO_PREPARE_STMT, CR_NO_RESULT_SET, CR_SERVER_LOST
from sqlbind.wire.constants import ER_DUP_ENTRY, ER_MAX_PREPARED_STMT_COUNT_REACHED
from sqlbind.wire.constants import ER_NO_SUCH_TABLE, ER_PARSE_ERROR, FieldType


def select_one(cn, value, target):
    """Round trip one parameter through `SELECT ?` into `target`"""
    stmt = cn.prepare('SELECT ?')
    stmt.bind_param(value)
    stmt.bind_result(target)
    assert stmt.execute(), stmt.error_message()
    assert stmt.fetch(), stmt.error_message()
    return stmt.row[0]


class TestPrepare:
    """Statement construction"""

    def test_counts(self, pair_cn):
        """Parameter and column counts come from the server"""
        insert = pair_cn.prepare('INSERT INTO t (a, b) VALUES (?, ?)')
        assert insert.param_count == 2
        assert insert.column_count == 0
        select = pair_cn.prepare("SELECT a, b, '?' FROM t WHERE a = ?")
        assert select.param_count == 1
        assert select.column_count == 3

    def test_mixed_quotes(self, cn):
        """A literal holding the other quote character hides no placeholder"""
        stmt = cn.prepare("SELECT ?, '\"'")
        assert stmt.param_count == 1
        stmt.bind_param(7)
        stmt.bind_result(int, str)
        assert stmt.execute()
        assert stmt.fetch()
        assert stmt.row == (7, '"')

    def test_initial_state(self, cn):
        """Statements with unbound slots start PREPARED, others READY"""
        assert cn.prepare('SELECT ?').state is StatementState.PREPARED
        assert cn.prepare('CREATE TABLE x (a INTEGER)').state is StatementState.READY

    def test_syntax_error(self, cn):
        """Rejected statement text raises PrepareError"""
        with pytest.raises(PrepareError) as exc_info:
            cn.prepare('SELEC 1')
        assert exc_info.value.code == ER_PARSE_ERROR
        assert exc_info.value.sqlstate == '42000'

    def test_missing_table(self, cn):
        """Unknown tables are reported at prepare time"""
        with pytest.raises(PrepareError) as exc_info:
            sqlbind.prepare(cn, 'SELECT * FROM nope')
        assert exc_info.value.code == ER_NO_SUCH_TABLE

    def test_handle_allocation_failure(self):
        """Running out of statement handles raises ConstructionFailure"""
        cn = sqlbind.connect({'database': ':memory:', 'max_prepared_statements': 1})
        try:
            first = cn.prepare('SELECT 1')
            with pytest.raises(ConstructionFailure) as exc_info:
                cn.prepare('SELECT 2')
            assert exc_info.value.code == ER_MAX_PREPARED_STMT_COUNT_REACHED
            first.close()
            assert cn.prepare('SELECT 2').column_count == 1
        finally:
            cn.close()

    def test_prepare_on_closed_connection(self, cn):
        """A closed connection cannot prepare"""
        cn.close()
        with pytest.raises(ConnectionFailure):
            PreparedStatement.prepare(cn, 'SELECT 1')


class TestBinding:
    """Parameter and result binding"""

    def test_param_count_mismatch(self, pair_cn):
        """Binding fewer values than parameters is refused"""
        stmt = pair_cn.prepare('INSERT INTO t (a, b) VALUES (?, ?)')
        with pytest.raises(BindIndexOutOfRange):
            stmt.bind_param(1)
        assert stmt.state is StatementState.PREPARED

    def test_result_count_mismatch(self, cn):
        """Result targets must match the column count"""
        stmt = cn.prepare('SELECT 1, 2')
        with pytest.raises(BindIndexOutOfRange):
            stmt.bind_result(int)

    def test_bad_result_target(self, cn):
        """Result targets are Vars or types"""
        stmt = cn.prepare('SELECT 1')
        with pytest.raises(TypeError):
            stmt.bind_result(5)

    def test_unbound_params_raise(self, cn):
        """Executing with unbound parameters is a programmer error"""
        stmt = cn.prepare('SELECT ?')
        stmt.bind_result(int)
        with pytest.raises(BindError):
            stmt.execute()
        assert stmt.state is StatementState.PREPARED


class TestRoundTrip:
    """Values through `SELECT ?`"""

    def test_integers(self, cn, value_dict):
        """Integers keep their value"""
        assert select_one(cn, value_dict['int_value'], int) == 42
        assert select_one(cn, value_dict['big_int'], Int64) == value_dict['big_int']
        assert select_one(cn, value_dict['small_int'], Var(Int64)) == -32768

    def test_unsigned_64(self, cn, value_dict):
        """Values beyond the signed range survive as unsigned"""
        assert select_one(cn, value_dict['huge_uint'], UInt64) == value_dict['huge_uint']

    def test_narrow_target_saturates(self, cn):
        """A value too wide for the target saturates"""
        assert select_one(cn, 300, Int8) == 127

    def test_numpy_parameters(self, cn):
        """NumPy scalars bind with their own width"""
        assert select_one(cn, np.int16(-7), int) == -7
        assert select_one(cn, np.float32(0.5), Double) == 0.5

    @pytest.mark.parametrize('sqltype', [Int8, UInt8, Int16, UInt16, Int32, UInt32, Int64, UInt64])
    def test_integer_bounds(self, cn, sqltype):
        """The smallest and largest value of each integer type survive"""
        for value in sqltype.bounds:
            assert select_one(cn, Var(sqltype, value), sqltype) == value

    def test_unsigned_64_in_integer_column(self, cn):
        """Wide unsigned values survive an INTEGER column"""
        assert cn.execute('CREATE TABLE u (v INTEGER)')
        insert = cn.prepare('INSERT INTO u VALUES (?)')
        for value in (2**64 - 2, 2**64 - 1):
            insert.bind_param(Var(UInt64, value))
            assert insert.execute(), insert.error_message()
        select = cn.prepare('SELECT v FROM u ORDER BY rowid')
        select.bind_result(UInt64)
        assert select.execute()
        assert [row[0] for row in select] == [2**64 - 2, 2**64 - 1]

    def test_floats(self, cn, value_dict):
        """Doubles are exact, floats are single precision"""
        assert select_one(cn, value_dict['float_value'], Double) == math.pi
        assert select_one(cn, value_dict['float_value'], Float) == pytest.approx(math.pi, rel=1e-6)

    def test_float_exact(self, cn):
        """Values a single-precision float holds exactly come back unchanged"""
        assert select_one(cn, Var(Float, -1234.5625), Float) == -1234.5625
        assert select_one(cn, Var(Float, 2.0**-20), Float) == 2.0**-20

    def test_booleans(self, cn, value_dict):
        """Booleans travel as 1-byte integers"""
        assert select_one(cn, value_dict['bool_true'], Bool) is True
        assert select_one(cn, value_dict['bool_false'], bool) is False

    def test_text(self, cn, value_dict):
        """Text of any length comes back unchanged"""
        for key in ('char_value', 'varchar_value', 'text_value', 'long_text', 'unicode_value'):
            assert select_one(cn, value_dict[key], str) == value_dict[key]

    def test_empty_text(self, cn, mocker):
        """Empty text needs no refetch"""
        spy = mocker.spy(protocol, 'stmt_fetch_column')
        assert select_one(cn, '', Text) == ''
        assert spy.call_count == 0

    def test_single_character_refetched(self, cn, mocker):
        """A 1-byte value is refetched"""
        spy = mocker.spy(protocol, 'stmt_fetch_column')
        assert select_one(cn, 'Z', Text) == 'Z'
        assert spy.call_count == 1

    def test_blob(self, cn, value_dict):
        """Blobs come back byte for byte"""
        assert select_one(cn, value_dict['blob_value'], Blob) == value_dict['blob_value']

    def test_null_into_nullable(self, cn):
        """NULL clears nullable targets"""
        assert select_one(cn, None, Var(Int64, 5, nullable=True)) is None
        assert select_one(cn, None, Var(Text, 'x', nullable=True)) is None

    def test_null_into_non_nullable(self, cn):
        """NULL gives non-nullable targets their zero value"""
        assert select_one(cn, None, Int64) == 0
        assert select_one(cn, None, Text) == ''
        assert select_one(cn, Var(Double, None, nullable=True), Double) == 0.0

    def test_caller_owned_target(self, cn):
        """Fetches write into the Var the caller bound"""
        target = Var(Text)
        select_one(cn, 'owned', target)
        assert target.value == 'owned'


class TestExecuteFetch:
    """Execute and fetch state machine"""

    def test_insert_then_select_long_text(self, pair_cn, mocker, value_dict):
        """A 300-character value is inserted and read back through one refetch"""
        text = value_dict['long_text']
        insert = pair_cn.prepare('INSERT INTO t (a, b) VALUES (?, ?)')
        with pytest.raises(BindIndexOutOfRange):
            insert.bind_param(1)
        insert.bind_param(1, text)
        assert insert.execute()
        assert insert.affected_rows == 1
        assert insert.state is StatementState.READY

        select = pair_cn.prepare('SELECT a, b FROM t')
        a, b = Var(Int64), Var(Text)
        select.bind_result(a, b)
        assert select.execute()
        assert select.state is StatementState.FETCH_PENDING

        spy = mocker.spy(protocol, 'stmt_fetch_column')
        assert select.fetch()
        assert select.state is StatementState.ROW_READY
        assert (a.value, b.value) == (1, text)
        assert spy.call_count == 1
        assert spy.call_args.args[3] == 1

    def test_exhausted(self, people_cn):
        """Fetch after the last row keeps returning False without error"""
        stmt = people_cn.prepare('SELECT name FROM people ORDER BY id')
        stmt.bind_result(str)
        assert stmt.execute()
        assert [row[0] for row in stmt] == ['Alice', 'Bob', 'Charlie']
        for _ in range(3):
            assert not stmt.fetch()
            assert stmt.state is StatementState.EXHAUSTED
            assert stmt.error_code() == 0
            assert stmt.last_error is None

        assert stmt.execute()
        assert stmt.fetch()
        assert stmt.row == ('Alice',)

    def test_iteration_with_nulls(self, people_cn):
        """Iterating yields every row with NULLs as None"""
        stmt = people_cn.prepare('SELECT name, age, score FROM people ORDER BY id')
        stmt.bind_result(str, Var(Int64, nullable=True), Var(Double, nullable=True))
        stmt.execute()
        assert list(stmt) == [
            ('Alice', 30, 91.5),
            ('Bob', 25, None),
            ('Charlie', None, 77.25),
        ]

    def test_columns_after_execute(self, people_cn):
        """Column definitions describe the executed result"""
        stmt = people_cn.prepare('SELECT name, age FROM people WHERE id = ?')
        stmt.bind_param(1)
        stmt.bind_result(str, int)
        stmt.execute()
        assert [column.name for column in stmt.columns] == ['name', 'age']
        assert stmt.columns[1].field_type is FieldType.LONGLONG

    def test_reexecute_with_new_values(self, people_cn):
        """Parameters are read from the Var at every execute"""
        key = Var(Int64, 1)
        stmt = people_cn.prepare('SELECT name FROM people WHERE id = ?')
        stmt.bind_param(key)
        stmt.bind_result(str)
        names = []
        for value in (1, 3):
            key.value = value
            assert stmt.execute()
            assert stmt.fetch()
            names.append(stmt.row[0])
        assert names == ['Alice', 'Charlie']

    def test_insert_id(self, people_cn):
        """The auto-increment value is echoed after execute"""
        stmt = people_cn.prepare('INSERT INTO people (name, age) VALUES (?, ?)')
        stmt.bind_param('Dana', None)
        assert stmt.execute()
        assert stmt.insert_id == 4
        assert stmt.affected_rows == 1

    def test_duplicate_key(self, people_cn):
        """Server errors are recorded, not raised"""
        stmt = people_cn.prepare('INSERT INTO people (name) VALUES (?)')
        stmt.bind_param('Alice')
        assert not stmt.execute()
        assert stmt.error_code() == ER_DUP_ENTRY
        assert 'UNIQUE' in stmt.error_message()
        assert stmt.sqlstate() == '23000'
        assert stmt.last_error.kind is ErrorKind.EXECUTE
        assert stmt.state is StatementState.READY

        stmt.bind_param('Eve')
        assert stmt.execute()
        assert stmt.error_code() == 0

    def test_fetch_before_execute(self, cn):
        """Fetching without a result set is out of sync"""
        stmt = cn.prepare('SELECT 1')
        stmt.bind_result(int)
        assert not stmt.fetch()
        assert stmt.error_code() == CR_COMMANDS_OUT_OF_SYNC
        assert stmt.last_error.kind is ErrorKind.FETCH

    def test_fetch_without_columns(self, pair_cn):
        """Statements without columns have nothing to fetch"""
        stmt = pair_cn.prepare('DELETE FROM t')
        assert stmt.execute()
        assert not stmt.fetch()
        assert stmt.error_code() == CR_NO_RESULT_SET

    def test_reset(self, people_cn):
        """Reset drops the pending rows"""
        stmt = people_cn.prepare('SELECT name FROM people')
        stmt.bind_result(str)
        stmt.execute()
        assert stmt.fetch()
        assert stmt.reset()
        assert stmt.state is StatementState.READY
        assert not stmt.fetch()
        assert stmt.error_code() == CR_COMMANDS_OUT_OF_SYNC

    def test_column_refetch_failure(self, cn, mocker):
        """A failed column refetch aborts the row"""
        stmt = cn.prepare("SELECT 'abc'")
        stmt.bind_result(str)
        stmt.execute()
        mocker.patch.object(protocol, 'stmt_fetch_column',
                            side_effect=OperationError(CR_NO_DATA, 'no data'))
        assert not stmt.fetch()
        assert stmt.last_error.kind is ErrorKind.COLUMN_REFETCH
        assert stmt.error_code() == CR_NO_DATA
        assert stmt.state is StatementState.FETCH_PENDING

    def test_lost_connection_fails_statement(self, cn, mocker):
        """Connection failures leave the statement FAILED"""
        stmt = cn.prepare('SELECT ?')
        stmt.bind_param(1)
        stmt.bind_result(int)
        mocker.patch.object(cn, '_transmit', side_effect=ConnectionFailure(CR_SERVER_LOST, 'lost'))
        assert not stmt.execute()
        assert stmt.state is StatementState.FAILED
        assert stmt.error_code() == CR_SERVER_LOST
        assert not stmt.execute()
        assert not stmt.fetch()
        assert stmt.error_code() == CR_SERVER_LOST


class TestLifecycle:
    """Closing, copying and sharing statements"""

    def test_close_idempotent(self, cn):
        """Close releases the handle once"""
        stmt = cn.prepare('SELECT 1')
        assert cn.endpoint.statement_count == 1
        stmt.close()
        stmt.close()
        assert stmt.state is StatementState.CLOSED
        assert cn.endpoint.statement_count == 0

    def test_collected_statement_releases_handle(self):
        """Dropping a statement frees its server handle"""
        cn = sqlbind.connect({'database': ':memory:', 'max_prepared_statements': 2})
        try:
            for _ in range(3):
                stmt = cn.prepare('SELECT 1')
                assert cn.endpoint.statement_count == 1
                del stmt
                gc.collect()
                assert cn.endpoint.statement_count == 0
        finally:
            cn.close()

    def test_release_while_connection_busy(self, cn):
        """A statement collected during another call is closed by the next one"""
        stmt = cn.prepare('SELECT 1')
        with cn.exclusive():
            del stmt
            gc.collect()
            assert cn.endpoint.statement_count == 1
        assert cn.ping()
        assert cn.endpoint.statement_count == 0

    def test_close_then_collect(self, cn, mocker):
        """CLOSE is sent once for a closed and then collected statement"""
        spy = mocker.spy(protocol, 'stmt_close')
        stmt = cn.prepare('SELECT 1')
        stmt.close()
        del stmt
        gc.collect()
        cn.close()
        assert spy.call_count == 1

    def test_repr_after_failed_prepare(self, cn):
        """A statement whose prepare failed still has a repr"""
        stmt = PreparedStatement.__new__(PreparedStatement)
        with pytest.raises(PrepareError):
            stmt.__init__(cn, 'SELEC 1')
        assert 'FAILED' in repr(stmt)

    def test_calls_after_close(self, cn):
        """Closed statements report CR_NO_PREPARE_STMT"""
        stmt = cn.prepare('SELECT 1')
        stmt.bind_result(int)
        stmt.close()
        assert not stmt.execute()
        assert stmt.error_code() == CR_NO_PREPARE_STMT
        assert not stmt.fetch()
        assert not stmt.reset()

    def test_context_manager(self, cn):
        """Leaving the block closes the statement"""
        with cn.prepare('SELECT 1') as stmt:
            stmt.bind_result(int)
            assert stmt.execute()
        assert stmt.state is StatementState.CLOSED

    def test_connection_close_closes_statements(self, cn):
        """Closing the connection closes its statements"""
        stmt = cn.prepare('SELECT 1')
        cn.close()
        assert stmt.state is StatementState.CLOSED

    def test_not_copyable(self, cn):
        """Statements own their handle exclusively"""
        stmt = cn.prepare('SELECT 1')
        with pytest.raises(TypeError):
            copy.copy(stmt)
        with pytest.raises(TypeError):
            copy.deepcopy(stmt)

    def test_statements_share_connection_across_threads(self, cn):
        """Statements on one connection interleave safely from several threads"""

        def run(offset):
            stmt = cn.prepare('SELECT ?, ?')
            value = Var(Int64)
            stmt.bind_result(Int64, Text)
            results = []
            for index in range(50):
                value.value = offset + index
                stmt.bind_param(value, f'row {offset + index}')
                assert stmt.execute()
                assert stmt.fetch()
                results.append(stmt.row)
            stmt.close()
            return results

        with ThreadPoolExecutor(max_workers=4) as executor:
            outcomes = list(executor.map(run, [0, 1000, 2000, 3000]))

        for offset, rows in zip([0, 1000, 2000, 3000], outcomes):
            assert rows == [(offset + i, f'row {offset + i}') for i in range(50)]


if __name__ == '__main__':
    __import__('pytest').main([__file__])
