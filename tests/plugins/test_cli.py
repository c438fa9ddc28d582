"""
Tests for the command line entry point.
"""

import pytest
from unittest.mock import Mock, patch

from supabase_pg_migration.cli import build_parser, main, resolve_mode, selected_stages
from supabase_pg_migration.descriptors import RunStatistics
from supabase_pg_migration.errors import MigrationConnectionError
from supabase_pg_migration.orchestrator import RunMode, Stage
from supabase_pg_migration.sql_exporter import COMPLETE_FILE


def parse(*argv):
    return build_parser().parse_args(list(argv))


class TestArguments:
    """Test flag parsing."""

    def test_no_flags_selects_all_stages(self):
        assert selected_stages(parse()) == Stage.canonical()

    def test_all_flag(self):
        assert selected_stages(parse('--all', '--data')) == Stage.canonical()

    def test_selected_stages_in_canonical_order(self):
        assert selected_stages(parse('--verify', '--schema')) == [Stage.SCHEMA, Stage.VERIFY]

    @pytest.mark.parametrize('argv,expected', [
        ((), RunMode.LIVE),
        (('--export-sql',), RunMode.EXPORT),
        (('--apply-sql',), RunMode.APPLY),
        (('--dry-run', '--export-sql'), RunMode.PLAN),
        (('--export-sql', '--apply-sql', 'x.sql'), RunMode.EXPORT),
    ])
    def test_mode_priority(self, argv, expected):
        assert resolve_mode(parse(*argv)) is expected

    def test_apply_sql_default_file(self):
        assert parse('--apply-sql').apply_sql == COMPLETE_FILE
        assert parse('--apply-sql', 'dump.sql').apply_sql == 'dump.sql'


@pytest.fixture
def providers():
    return Mock(), Mock()


@pytest.fixture
def patched(providers):
    with patch('supabase_pg_migration.cli.load_config') as load_config, \
            patch('supabase_pg_migration.cli.create_providers', return_value=providers), \
            patch('supabase_pg_migration.cli.MigrationOrchestrator') as MockOrchestrator:
        MockOrchestrator.return_value.run.return_value = RunStatistics().finish()
        yield load_config, MockOrchestrator


class TestMain:
    """Test main() exit codes and provider lifecycle."""

    def test_success(self, patched, providers):
        _, MockOrchestrator = patched
        source, target = providers

        assert main(['--schema']) == 0

        source.initialize.assert_called_once()
        target.initialize.assert_called_once()
        MockOrchestrator.return_value.run.assert_called_once_with(
            [Stage.SCHEMA], mode=RunMode.LIVE, apply_file=None,
        )
        source.close.assert_called_once()
        target.close.assert_called_once()

    def test_export_does_not_connect_to_target(self, patched, providers):
        source, target = providers

        assert main(['--export-sql']) == 0

        source.initialize.assert_called_once()
        target.initialize.assert_not_called()

    def test_apply_does_not_connect_to_source(self, patched, providers):
        source, target = providers

        assert main(['--apply-sql']) == 0

        source.initialize.assert_not_called()
        target.initialize.assert_called_once()

    def test_connection_error_exits_1(self, patched, providers):
        source, target = providers
        source.initialize.side_effect = MigrationConnectionError('source unreachable')

        assert main([]) == 1

        source.close.assert_called_once()
        target.close.assert_called_once()

    def test_missing_apply_file_exits_1(self, patched, providers):
        _, MockOrchestrator = patched
        MockOrchestrator.return_value.run.side_effect = FileNotFoundError('migration-complete.sql')

        assert main(['--apply-sql']) == 1

    def test_invalid_config_exits_1(self, patched):
        load_config, _ = patched
        load_config.side_effect = ValueError('BATCH_SIZE must be an integer')

        assert main([]) == 1

    def test_output_dir_passed_to_config(self, patched):
        load_config, _ = patched

        main(['--export-sql', '--output-dir', 'out'])

        load_config.assert_called_once_with(output_dir='out')
