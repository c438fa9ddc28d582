"""
Migration configuration.

Settings come from environment variables, optionally loaded from a ``.env``
file with python-dotenv. Database connections for the source and target
are resolved here into ConnectionProvider instances:

- Source: SOURCE_DB_URL, else a Supabase connection string detected from
  SOURCE_SUPABASE_URL / SOURCE_SUPABASE_SERVICE_KEY and SOURCE_DB_PASSWORD,
  else the SOURCE_DB_HOST/PORT/NAME/USER/PASSWORD parameters.
- Target: a local instance (TARGET_SUPABASE_URL on localhost) connects
  directly with TARGET_DB_URL or the TARGET_DB_* parameters (port 54322 by
  default, SSL only when TARGET_DB_SSL=true). Any other target goes
  through the same detection as the source.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
import logging
import os

from dotenv import load_dotenv

from supabase_pg_migration.connections import (
    ConnectionProvider,
    build_supabase_db_url,
    psycopg2_can_connect,
)
from supabase_pg_migration.utils import parse_csv_list

logger = logging.getLogger(__name__)

# Managed by the platform; never migrated as user schemas
RESERVED_SCHEMAS = ('auth', 'storage')

DEFAULT_EXCLUDE_TABLES = ('schema_migrations', 'supabase_migrations')

DEFAULT_BATCH_SIZE = 1000
DEFAULT_OUTPUT_DIR = '.'


@dataclass
class DatabaseSettings:
    """Connection settings for one side of the migration."""
    url: Optional[str] = None
    host: Optional[str] = None
    port: int = 5432
    name: str = 'postgres'
    user: str = 'postgres'
    password: Optional[str] = None
    ssl: bool = True
    supabase_url: Optional[str] = None
    service_key: Optional[str] = None

    @property
    def is_localhost(self) -> bool:
        url = self.supabase_url or ''
        return 'localhost' in url or '127.0.0.1' in url

    @property
    def has_api_credentials(self) -> bool:
        return bool(self.supabase_url and self.service_key)

    def connect_kwargs(self) -> Dict[str, Any]:
        """psycopg2 keyword arguments used when no URL is available."""
        kwargs: Dict[str, Any] = {
            'host': self.host,
            'port': self.port,
            'dbname': self.name,
            'user': self.user,
            'password': self.password,
        }
        kwargs = {k: v for k, v in kwargs.items() if v is not None}
        if self.ssl:
            kwargs['sslmode'] = 'require'
        return kwargs


@dataclass
class MigrationConfig:
    """All settings of one migration run."""
    schemas: List[str] = field(default_factory=lambda: ['public'])
    batch_size: int = DEFAULT_BATCH_SIZE
    exclude_tables: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_TABLES))
    source: DatabaseSettings = field(default_factory=DatabaseSettings)
    target: DatabaseSettings = field(default_factory=lambda: DatabaseSettings(port=54322, ssl=False))
    output_dir: str = DEFAULT_OUTPUT_DIR

    def __post_init__(self):
        self.schemas = [s for s in self.schemas if s not in RESERVED_SCHEMAS]
        if not self.schemas:
            raise ValueError("No schemas left to migrate after removing auth/storage")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")


def _int_setting(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}")


def _database_settings(env: Mapping[str, str], prefix: str, local_port: int) -> DatabaseSettings:
    supabase_url = env.get(f'{prefix}_SUPABASE_URL')
    settings = DatabaseSettings(
        url=env.get(f'{prefix}_DB_URL') or None,
        host=env.get(f'{prefix}_DB_HOST') or None,
        port=_int_setting(env, f'{prefix}_DB_PORT', 5432),
        name=env.get(f'{prefix}_DB_NAME') or 'postgres',
        user=env.get(f'{prefix}_DB_USER') or 'postgres',
        password=env.get(f'{prefix}_DB_PASSWORD') or None,
        supabase_url=supabase_url or None,
        service_key=env.get(f'{prefix}_SUPABASE_SERVICE_KEY') or None,
    )
    if prefix == 'TARGET':
        settings.port = _int_setting(env, 'TARGET_DB_PORT', local_port)
        settings.host = settings.host or 'localhost'
        settings.ssl = (env.get('TARGET_DB_SSL', '').lower() == 'true') if settings.is_localhost else False
    return settings


def load_config(
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[str] = None,
    **overrides,
) -> MigrationConfig:
    """
    Build a MigrationConfig from environment variables.

    Args:
        env: Mapping to read from; defaults to os.environ after loading .env
        dotenv_path: Explicit .env file (default: search from the CWD)
        **overrides: MigrationConfig fields that take precedence

    Returns:
        MigrationConfig
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    extra_excludes = parse_csv_list(env.get('EXCLUDE_TABLES', ''))
    values: Dict[str, Any] = {
        'schemas': parse_csv_list(env.get('MIGRATE_SCHEMAS') or 'public', exclude=RESERVED_SCHEMAS),
        'batch_size': _int_setting(env, 'BATCH_SIZE', DEFAULT_BATCH_SIZE),
        'exclude_tables': list(DEFAULT_EXCLUDE_TABLES) + [
            t for t in extra_excludes if t not in DEFAULT_EXCLUDE_TABLES
        ],
        'source': _database_settings(env, 'SOURCE', 5432),
        'target': _database_settings(env, 'TARGET', 54322),
        'output_dir': env.get('OUTPUT_DIR') or DEFAULT_OUTPUT_DIR,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})

    config = MigrationConfig(**values)
    logger.info(
        f"Loaded configuration: schemas={config.schemas}, batch_size={config.batch_size}, "
        f"excluded tables={config.exclude_tables}"
    )
    return config


def _provider_args(
    settings: DatabaseSettings,
    can_connect: Callable[[str, int], bool],
    direct: bool,
) -> Tuple[Optional[str], Dict[str, Any]]:
    if direct:
        if settings.url:
            return settings.url, ({'sslmode': 'require'} if settings.ssl else {})
        return None, settings.connect_kwargs()

    url = build_supabase_db_url(
        settings.supabase_url,
        settings.service_key,
        settings.password,
        settings.url,
        can_connect=can_connect,
    )
    if url:
        return url, {'sslmode': 'require'}
    return None, settings.connect_kwargs()


def create_providers(
    config: MigrationConfig,
    can_connect: Callable[[str, int], bool] = psycopg2_can_connect,
    pool_factory: Optional[Callable[..., Any]] = None,
) -> Tuple[ConnectionProvider, ConnectionProvider]:
    """
    Resolve connection settings into (source, target) providers.

    Providers are returned uninitialized; the caller owns their lifecycle.
    """
    extra = {'pool_factory': pool_factory} if pool_factory is not None else {}

    source_dsn, source_kwargs = _provider_args(config.source, can_connect, direct=False)
    source = ConnectionProvider(source_dsn, label='source', connect_kwargs=source_kwargs, **extra)

    target_dsn, target_kwargs = _provider_args(
        config.target, can_connect, direct=config.target.is_localhost
    )
    target = ConnectionProvider(target_dsn, label='target', connect_kwargs=target_kwargs, **extra)

    return source, target
