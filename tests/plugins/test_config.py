"""
Tests for Migration Configuration

These tests validate environment parsing, the auth/storage schema guard and
how source and target connection providers are resolved.
"""

import pytest
from unittest.mock import Mock

from supabase_pg_migration.config import (
    DEFAULT_EXCLUDE_TABLES,
    DatabaseSettings,
    MigrationConfig,
    create_providers,
    load_config,
)


class TestLoadConfig:
    """Test load_config function."""

    def test_defaults(self):
        config = load_config(env={})
        assert config.schemas == ['public']
        assert config.batch_size == 1000
        assert config.exclude_tables == list(DEFAULT_EXCLUDE_TABLES)
        assert config.target.host == 'localhost'
        assert config.target.port == 54322
        assert config.output_dir == '.'

    def test_reserved_schemas_removed(self):
        """Test auth and storage are never migrated even when requested."""
        config = load_config(env={'MIGRATE_SCHEMAS': 'public, auth, app, storage'})
        assert config.schemas == ['public', 'app']

    def test_only_reserved_schemas_rejected(self):
        with pytest.raises(ValueError):
            load_config(env={'MIGRATE_SCHEMAS': 'auth,storage'})

    def test_batch_size(self):
        assert load_config(env={'BATCH_SIZE': '250'}).batch_size == 250

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError, match='BATCH_SIZE'):
            load_config(env={'BATCH_SIZE': 'lots'})
        with pytest.raises(ValueError):
            load_config(env={'BATCH_SIZE': '0'})

    def test_exclude_tables_extend_defaults(self):
        config = load_config(env={'EXCLUDE_TABLES': 'audit_log, schema_migrations'})
        assert config.exclude_tables == list(DEFAULT_EXCLUDE_TABLES) + ['audit_log']

    def test_source_settings(self):
        config = load_config(env={
            'SOURCE_SUPABASE_URL': 'https://abc.supabase.co',
            'SOURCE_SUPABASE_SERVICE_KEY': 'key',
            'SOURCE_DB_PASSWORD': 'secret',
            'SOURCE_DB_HOST': 'db.abc.supabase.co',
        })
        assert config.source.password == 'secret'
        assert config.source.host == 'db.abc.supabase.co'
        assert config.source.has_api_credentials
        assert config.source.ssl

    def test_local_target_ssl_flag(self):
        env = {'TARGET_SUPABASE_URL': 'http://localhost:54321', 'TARGET_DB_SSL': 'true'}
        assert load_config(env=env).target.ssl is True
        env['TARGET_DB_SSL'] = 'false'
        assert load_config(env=env).target.ssl is False

    def test_overrides_take_precedence(self):
        config = load_config(env={'BATCH_SIZE': '10'}, batch_size=20, output_dir=None)
        assert config.batch_size == 20
        assert config.output_dir == '.'


class TestDatabaseSettings:
    """Test DatabaseSettings class."""

    def test_connect_kwargs_with_ssl(self):
        settings = DatabaseSettings(host='h', password='pw')
        assert settings.connect_kwargs() == {
            'host': 'h', 'port': 5432, 'dbname': 'postgres', 'user': 'postgres',
            'password': 'pw', 'sslmode': 'require',
        }

    def test_connect_kwargs_without_ssl(self):
        settings = DatabaseSettings(host='localhost', port=54322, ssl=False)
        assert 'sslmode' not in settings.connect_kwargs()
        assert 'password' not in settings.connect_kwargs()

    def test_is_localhost(self):
        assert DatabaseSettings(supabase_url='http://127.0.0.1:54321').is_localhost
        assert not DatabaseSettings(supabase_url='https://abc.supabase.co').is_localhost


class TestCreateProviders:
    """Test create_providers function."""

    def test_explicit_urls(self):
        config = MigrationConfig(
            source=DatabaseSettings(url='postgresql://src'),
            target=DatabaseSettings(url='postgresql://tgt', supabase_url='http://localhost:54321', ssl=False),
        )
        can_connect = Mock()
        source, target = create_providers(config, can_connect=can_connect)

        assert source.dsn == 'postgresql://src'
        assert target.dsn == 'postgresql://tgt'
        assert source.label == 'source' and target.label == 'target'
        assert not source.is_initialized and not target.is_initialized
        can_connect.assert_not_called()

    def test_source_detected_from_project(self):
        config = MigrationConfig(
            source=DatabaseSettings(supabase_url='https://abc.supabase.co', password='pw'),
        )
        can_connect = Mock(return_value=True)
        source, _ = create_providers(config, can_connect=can_connect)

        assert source.dsn.startswith('postgresql://postgres.abc:pw@aws-1-ap-northeast-2.pooler')
        assert can_connect.call_count == 1

    def test_source_falls_back_to_parameters(self):
        """Test host/port parameters are used when no URL can be built."""
        config = MigrationConfig(source=DatabaseSettings(host='db.example.com', password='pw'))
        source, _ = create_providers(config, can_connect=Mock())

        assert source.dsn is None
        assert source._connect_kwargs['host'] == 'db.example.com'
        assert source._connect_kwargs['sslmode'] == 'require'

    def test_local_target_never_checks_regions(self):
        config = MigrationConfig(
            target=DatabaseSettings(
                host='localhost', port=54322, password='postgres', ssl=False,
                supabase_url='http://localhost:54321',
            ),
        )
        can_connect = Mock(return_value=True)
        _, target = create_providers(config, can_connect=can_connect)

        assert target.dsn is None
        assert target._connect_kwargs['port'] == 54322
        assert 'sslmode' not in target._connect_kwargs
        can_connect.assert_not_called()
