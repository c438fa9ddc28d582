"""
Tests for SQL Apply Module

These tests validate statement filtering, the already-exists rule and that
a failed statement does not stop the statements after it.
"""

import psycopg2
import pytest
from unittest.mock import MagicMock

from supabase_pg_migration.descriptors import ObjectKind, RunStatistics
from supabase_pg_migration.errors import MigrationConnectionError
from supabase_pg_migration.sql_applier import SQLApplier


class FakePgError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def mock_target(cursor):
    target = MagicMock()
    conn = target.connection.return_value.__enter__.return_value
    conn.cursor.return_value.__enter__.return_value = cursor
    return target


class TestSQLApplier:
    """Test SQLApplier class."""

    def test_all_statements_succeed(self, mock_target, cursor):
        result = SQLApplier(mock_target).apply_statements(['SELECT 1', 'SELECT 2'])

        assert result.total == 2
        assert result.succeeded == 2
        assert result.failed == 0
        mock_target.connection.assert_called_once_with(autocommit=True)

    def test_comments_and_empty_filtered(self, mock_target, cursor):
        result = SQLApplier(mock_target).apply_statements(['', '-- note', 'SELECT 1'])

        assert result.total == 1
        cursor.execute.assert_called_once_with('SELECT 1')

    def test_already_exists_counts_as_success(self, mock_target, cursor):
        cursor.execute.side_effect = [FakePgError('relation "users" already exists', '42P07'), None]

        result = SQLApplier(mock_target).apply_statements(['CREATE TABLE users ()', 'SELECT 1'])

        assert result.ignored == 1
        assert result.success_count == 2
        assert result.failed == 0

    def test_failure_does_not_stop_later_statements(self, mock_target, cursor):
        cursor.execute.side_effect = [None, FakePgError('syntax error at or near "FOO"', '42601'), None]
        stats = RunStatistics()

        result = SQLApplier(mock_target, stats).apply_statements(['SELECT 1', 'FOO BAR', 'SELECT 3'])

        assert cursor.execute.call_count == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert result.errors == [('FOO BAR', 'syntax error at or near "FOO"')]
        assert stats.objects[ObjectKind.STATEMENT].applied == 2
        assert stats.objects[ObjectKind.STATEMENT].failed == 1

    def test_connection_loss_is_fatal(self, mock_target, cursor):
        cursor.execute.side_effect = psycopg2.OperationalError('server closed the connection unexpectedly')

        with pytest.raises(MigrationConnectionError):
            SQLApplier(mock_target).apply_statements(['SELECT 1', 'SELECT 2'])

        assert cursor.execute.call_count == 1

    def test_apply_text_uses_segmenter(self, mock_target, cursor):
        text = (
            "-- header\n"
            "CREATE FUNCTION f() RETURNS int AS $$\n"
            "BEGIN RETURN 1; END;\n"
            "$$ LANGUAGE plpgsql;\n"
            "SELECT f();\n"
        )

        result = SQLApplier(mock_target).apply_text(text)

        assert result.total == 2
        first_statement = cursor.execute.call_args_list[0][0][0]
        assert first_statement.endswith('$$ LANGUAGE plpgsql')

    def test_apply_file(self, mock_target, cursor, tmp_path):
        sql_file = tmp_path / 'migration-complete.sql'
        sql_file.write_text('CREATE SCHEMA IF NOT EXISTS "public";\n', encoding='utf-8')

        result = SQLApplier(mock_target).apply_file(str(sql_file))

        assert result.succeeded == 1
        cursor.execute.assert_called_once_with('CREATE SCHEMA IF NOT EXISTS "public"')

    def test_apply_missing_file(self, mock_target, tmp_path):
        with pytest.raises(FileNotFoundError):
            SQLApplier(mock_target).apply_file(str(tmp_path / 'missing.sql'))
        mock_target.connection.assert_not_called()
