"""
PostgreSQL Connection Management

This module provides the connection provider passed to every component that
talks to a database, and the Supabase pooler region detection used when only
a project URL/key and a database password are configured.

A ConnectionProvider wraps a psycopg2 ThreadedConnectionPool with an explicit
initialize()/close() lifecycle. Components check a connection out with the
``connection()`` context manager, which always hands it back to the pool.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import quote
import contextlib
import logging
import re

import jwt
import psycopg2
from psycopg2 import pool as pg_pool

from supabase_pg_migration.errors import MigrationConnectionError

logger = logging.getLogger(__name__)


class ConnectionProvider:
    """
    Pooled access to one PostgreSQL database.

    Mirrors the small hook interface used throughout the package
    (get_records, get_first) on top of psycopg2 connections.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        label: str = 'database',
        minconn: int = 1,
        maxconn: int = 4,
        connect_kwargs: Optional[Dict[str, Any]] = None,
        pool_factory: Callable[..., Any] = pg_pool.ThreadedConnectionPool,
    ):
        """
        Initialize the provider. No connection is opened until initialize().

        Args:
            dsn: libpq connection string or URL
            label: Name used in log and error messages ("source", "target")
            minconn: Connections opened up front
            maxconn: Upper bound of pooled connections
            connect_kwargs: Extra psycopg2.connect keyword arguments
                            (host/port/... when no DSN is given, sslmode, ...)
            pool_factory: Pool class, replaceable in tests
        """
        self.dsn = dsn
        self.label = label
        self._minconn = minconn
        self._maxconn = maxconn
        self._connect_kwargs = dict(connect_kwargs or {})
        self._pool_factory = pool_factory
        self._pool = None

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    def initialize(self) -> 'ConnectionProvider':
        """Create the pool. Raises MigrationConnectionError on failure."""
        if self._pool is not None:
            return self
        try:
            if self.dsn:
                self._pool = self._pool_factory(
                    self._minconn, self._maxconn, self.dsn, **self._connect_kwargs
                )
            else:
                self._pool = self._pool_factory(
                    self._minconn, self._maxconn, **self._connect_kwargs
                )
        except psycopg2.Error as e:
            raise MigrationConnectionError(f"{self.label} DB connection failed: {e}") from e
        logger.info(f"Initialized {self.label} connection pool (max {self._maxconn})")
        return self

    def close(self) -> None:
        if self._pool is None:
            return
        try:
            self._pool.closeall()
        finally:
            self._pool = None
            logger.info(f"Closed {self.label} connection pool")

    def _acquire(self):
        if self._pool is None:
            raise RuntimeError(f"{self.label} connection provider is not initialized")
        try:
            return self._pool.getconn()
        except psycopg2.Error as e:
            raise MigrationConnectionError(f"{self.label} DB connection failed: {e}") from e

    def _release(self, conn) -> None:
        if conn is None or self._pool is None:
            return
        self._pool.putconn(conn)

    @contextlib.contextmanager
    def connection(self, autocommit: bool = True):
        """
        Check out a connection for the duration of a ``with`` block.

        Args:
            autocommit: Run each statement in its own transaction. The
                        migration relies on this so one failed statement
                        does not abort the statements after it.
        """
        conn = self._acquire()
        try:
            conn.autocommit = autocommit
            yield conn
        finally:
            if getattr(conn, "autocommit", False) is False:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    logger.exception(f"Exception occurred during {self.label} connection rollback")
            self._release(conn)

    def get_records(self, query, parameters: Optional[Iterable[Any]] = None) -> List[Tuple[Any, ...]]:
        """Execute a query and return all rows."""
        with self.connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, parameters)
                return cursor.fetchall()

    def get_first(self, query, parameters: Optional[Iterable[Any]] = None) -> Optional[Tuple[Any, ...]]:
        """Execute a query and return the first row, or None."""
        with self.connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, parameters)
                return cursor.fetchone()

    def test_connection(self) -> str:
        """
        Verify the database answers and return its version banner.

        Raises:
            MigrationConnectionError: If the database cannot be reached
        """
        try:
            row = self.get_first('SELECT version()')
        except MigrationConnectionError:
            raise
        except psycopg2.Error as e:
            raise MigrationConnectionError(f"{self.label} DB connection failed: {e}") from e
        version = row[0].split(',')[0] if row and row[0] else 'unknown'
        logger.info(f"✓ {self.label.capitalize()} DB connected: {version}")
        return version

    def __enter__(self) -> 'ConnectionProvider':
        return self.initialize()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# Supabase Cloud pooler regions, newer aws-1 hosts first
POOLER_REGIONS: Tuple[str, ...] = (
    'aws-1-ap-northeast-2',  # Seoul
    'aws-1-us-east-1',       # N. Virginia
    'aws-1-us-west-1',       # N. California
    'aws-1-eu-west-1',       # Ireland
    'aws-1-eu-central-1',    # Frankfurt
    'aws-1-ap-southeast-1',  # Singapore
    'aws-1-ap-northeast-1',  # Tokyo
    'aws-0-ap-northeast-2',
    'aws-0-us-east-1',
    'aws-0-us-west-1',
    'aws-0-eu-west-1',
    'aws-0-eu-central-1',
    'aws-0-ap-southeast-1',
    'aws-0-ap-northeast-1',
)

POOLER_PORT = 6543
CONNECT_TIMEOUT_SECONDS = 5


def extract_project_ref(supabase_url: Optional[str]) -> Optional[str]:
    """
    Extract the project ref from a Supabase project URL.

    Examples:
        >>> extract_project_ref("https://abcd1234.supabase.co")
        'abcd1234'
        >>> extract_project_ref("http://localhost:8000") is None
        True
    """
    if not supabase_url:
        return None
    match = re.match(r'^https?://([^.]+)\.supabase\.co', supabase_url)
    return match.group(1) if match else None


def extract_ref_from_jwt(service_key: Optional[str]) -> Optional[str]:
    """
    Read the ``ref`` claim from a Supabase service key.

    Only the payload is read; the signature is not verified.
    """
    if not service_key:
        return None
    try:
        claims = jwt.decode(service_key, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    if not isinstance(claims, dict):
        return None
    return claims.get('ref')


@dataclass(frozen=True)
class PoolerCandidates:
    """
    Ordered, restartable sequence of pooler connection URLs for a project.

    Iterating builds the URLs lazily; iterating again starts from the first
    region.
    """
    project_ref: str
    password: str
    regions: Tuple[str, ...] = POOLER_REGIONS
    port: int = POOLER_PORT

    def __iter__(self) -> Iterator[str]:
        password = quote(self.password, safe='')
        for region in self.regions:
            yield (
                f"postgresql://postgres.{self.project_ref}:{password}"
                f"@{region}.pooler.supabase.com:{self.port}/postgres"
            )


def direct_connection_url(project_ref: str, password: str) -> str:
    return f"postgresql://postgres:{quote(password, safe='')}@db.{project_ref}.supabase.co:5432/postgres"


def psycopg2_can_connect(url: str, timeout: int = CONNECT_TIMEOUT_SECONDS) -> bool:
    """Try to open (and immediately close) a connection to ``url``."""
    try:
        conn = psycopg2.connect(url, connect_timeout=timeout, sslmode='require')
    except psycopg2.Error as e:
        message = str(e).lower()
        if 'password' in message or 'authentication' in message:
            host = url.split('@')[-1].split(':')[0]
            logger.warning(f"Authentication failed on {host}")
        return False
    conn.close()
    return True


def first_reachable(
    candidates: Iterable[str],
    can_connect: Callable[[str, int], bool] = psycopg2_can_connect,
    timeout: int = CONNECT_TIMEOUT_SECONDS,
) -> Optional[str]:
    """
    Return the first candidate URL that accepts a connection.

    Candidates are tried one at a time, in order, each with a bounded
    timeout. The search stops at the first success.
    """
    for url in candidates:
        if can_connect(url, timeout):
            host = url.split('@')[-1].split(':')[0]
            logger.info(f"Detected Supabase pooler host: {host}")
            return url
    return None


def build_supabase_db_url(
    supabase_url: Optional[str] = None,
    service_key: Optional[str] = None,
    db_password: Optional[str] = None,
    explicit_url: Optional[str] = None,
    can_connect: Callable[[str, int], bool] = psycopg2_can_connect,
    regions: Tuple[str, ...] = POOLER_REGIONS,
) -> Optional[str]:
    """
    Work out a database URL for a Supabase project.

    Priority: an explicit URL, then a detected pooler region, then the
    project's direct database host. Returns None when there is not enough
    information (no password or no project ref).
    """
    if explicit_url:
        return explicit_url

    if not db_password:
        logger.warning("DB password not set, cannot auto-detect connection")
        return None

    project_ref = extract_project_ref(supabase_url) or extract_ref_from_jwt(service_key)
    if not project_ref:
        logger.warning("Could not extract project ref from URL or service key")
        return None

    logger.info(f"Project ref: {project_ref}; detecting pooler region...")
    detected = first_reachable(PoolerCandidates(project_ref, db_password, regions), can_connect)
    if detected:
        return detected

    logger.warning("No pooler region detected, falling back to direct connection")
    return direct_connection_url(project_ref, db_password)
