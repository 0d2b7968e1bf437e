import sqlite3

import pytest
from sqlbind.loopback import count_params, map_sqlite_error
from sqlbind.wire import codec
from sqlbind.wire.constants import ER_BAD_FIELD_ERROR, ER_BAD_NULL_ERROR, ER_DUP_ENTRY
from sqlbind.wire.constants import ER_NO_SUCH_TABLE, ER_PARSE_ERROR, ER_STMT_HAS_NO_OPEN_CURSOR
from sqlbind.wire.constants import ER_UNKNOWN_ERROR, ER_UNKNOWN_STMT_HANDLER, Command


@pytest.mark.parametrize(('sql', 'expected'), [
    ('SELECT 1', 0),
    ('SELECT ?', 1),
    ('INSERT INTO t VALUES (?, ?, ?)', 3),
    ("SELECT '?' || ?", 1),
    ('SELECT "a?b" FROM t WHERE x = ?', 1),
    ("SELECT 'it''s ?', ?", 1),
    ("SELECT ?, \"it's\"", 1),
    ("SELECT ?, 'say \"hi\"', ?", 2),
    ("SELECT ? -- why?\n, ?", 2),
    ('SELECT /* ? */ ?', 1),
    ('SELECT [a?], `b?` FROM t WHERE x = ?', 1),
])
def test_count_params(sql, expected):
    """Placeholders inside quotes are not parameters"""
    assert count_params(sql) == expected


@pytest.mark.parametrize(('exc', 'code'), [
    (sqlite3.IntegrityError('UNIQUE constraint failed: t.a'), ER_DUP_ENTRY),
    (sqlite3.IntegrityError('NOT NULL constraint failed: t.a'), ER_BAD_NULL_ERROR),
    (sqlite3.OperationalError('no such table: t'), ER_NO_SUCH_TABLE),
    (sqlite3.OperationalError('no such column: z'), ER_BAD_FIELD_ERROR),
    (sqlite3.OperationalError('near "SELEC": syntax error'), ER_PARSE_ERROR),
    (sqlite3.DatabaseError('file is not a database'), ER_UNKNOWN_ERROR),
])
def test_map_sqlite_error(exc, code):
    """SQLite errors map onto server error codes"""
    assert map_sqlite_error(exc).code == code


class TestEndpoint:
    """Requests answered by the endpoint directly"""

    def call(self, cn, payload):
        packets = codec.unframe(cn.endpoint.handle(codec.frame([payload])))
        return packets

    def test_prepare_reply(self, cn):
        """PREPARE answers with id and counts"""
        packets = self.call(cn, codec.encode_text_command(Command.STMT_PREPARE, 'SELECT ?, ?, 3'))
        statement_id, columns, params = codec.decode_prepare_ok(packets[0])
        assert statement_id >= 1
        assert (columns, params) == (3, 2)
        assert cn.endpoint.statement_count == 1

    def test_unknown_statement(self, cn):
        """Statement commands on unknown ids fail"""
        packets = self.call(cn, codec.encode_statement_command(Command.STMT_RESET, 99))
        assert codec.decode_error(packets[0]).code == ER_UNKNOWN_STMT_HANDLER

    def test_fetch_without_cursor(self, cn):
        """Fetching before execute fails"""
        packets = self.call(cn, codec.encode_text_command(Command.STMT_PREPARE, 'SELECT 1'))
        statement_id, _, _ = codec.decode_prepare_ok(packets[0])
        packets = self.call(cn, codec.encode_fetch(statement_id))
        assert codec.decode_error(packets[0]).code == ER_STMT_HAS_NO_OPEN_CURSOR

    def test_close_sends_no_reply(self, cn):
        """STMT_CLOSE frees the statement silently"""
        packets = self.call(cn, codec.encode_text_command(Command.STMT_PREPARE, 'SELECT 1'))
        statement_id, _, _ = codec.decode_prepare_ok(packets[0])
        assert self.call(cn, codec.encode_statement_command(Command.STMT_CLOSE, statement_id)) == []
        assert cn.endpoint.statement_count == 0

    def test_reply_sequence_starts_at_one(self, cn):
        """Replies continue the request's sequence"""
        stream = cn.endpoint.handle(codec.frame([codec.encode_text_command(Command.PING, '')]))
        assert stream[3] == 1


if __name__ == '__main__':
    __import__('pytest').main([__file__])
