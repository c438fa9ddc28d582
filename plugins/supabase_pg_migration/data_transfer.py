"""
Data Transfer Module

This module copies table rows from the source to the target in pages.

Each table is handled independently: the target table is truncated, the
source is read with LIMIT/OFFSET ordered by the primary key (or by ctid
when the table has none) and every page is written with a single
multi-row parameterised INSERT. A failure in one table is recorded in its
result and the next table proceeds.

The whole multi-table transfer runs on one target connection inside
``suspended_triggers``, which sets ``session_replication_role = replica``
so foreign keys and user triggers do not fire while tables load in an
order that may not satisfy every reference.
"""

from typing import Any, Iterator, List, Optional, Sequence, Tuple
import contextlib
import logging
import time

import psycopg2
from psycopg2 import sql
from psycopg2.extensions import encodings
from psycopg2.extras import Json

from supabase_pg_migration.descriptors import (
    RunStatistics,
    TableDescriptor,
    TableTransferResult,
    TransferCursor,
    TransferStatus,
)
from supabase_pg_migration.errors import ErrorClass, TransferBatchError, classify_error
from supabase_pg_migration.utils import qualified_name

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000

REPLICA_ROLE_SQL = "SET session_replication_role = replica"
DEFAULT_ROLE_SQL = "SET session_replication_role = DEFAULT"


@contextlib.contextmanager
def suspended_triggers(conn):
    """
    Disable triggers and foreign key enforcement on ``conn`` for a block.

    The setting is per session, so every statement that should run without
    triggers must use this same connection. The DEFAULT role is restored on
    every exit path.
    """
    with conn.cursor() as cursor:
        cursor.execute(REPLICA_ROLE_SQL)
    logger.info("Triggers suspended (session_replication_role = replica)")

    completed = False
    try:
        yield conn
        completed = True
    finally:
        try:
            with conn.cursor() as cursor:
                cursor.execute(DEFAULT_ROLE_SQL)
            logger.info("Triggers restored (session_replication_role = DEFAULT)")
        except psycopg2.Error:
            logger.exception("Failed to restore session_replication_role")
            if completed:
                raise


class BatchTransferEngine:
    """Page rows from the source into the target, one table at a time."""

    def __init__(self, source, target, batch_size: int = DEFAULT_BATCH_SIZE):
        """
        Initialize the transfer engine.

        Args:
            source: ConnectionProvider for the source database
            target: ConnectionProvider for the target database
            batch_size: Rows per page
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.source = source
        self.target = target
        self.batch_size = batch_size

    def _order_by(self, table: TableDescriptor) -> Tuple[str, ...]:
        return tuple(table.primary_key)

    def _select_query(self, table: TableDescriptor, cursor: TransferCursor) -> sql.Composed:
        columns = sql.SQL(', ').join([sql.Identifier(c) for c in table.column_names])
        if cursor.order_by:
            order_by = sql.SQL(', ').join([sql.Identifier(c) for c in cursor.order_by])
        else:
            # Physical order is stable while nothing writes to the table
            order_by = sql.SQL('ctid')
        return sql.SQL('SELECT {columns} FROM {table} ORDER BY {order_by} LIMIT {limit} OFFSET {offset}').format(
            columns=columns,
            table=sql.Identifier(table.schema, table.name),
            order_by=order_by,
            limit=sql.Literal(cursor.page_size),
            offset=sql.Literal(cursor.offset),
        )

    def _row_count(self, table: TableDescriptor) -> int:
        if table.row_count is not None:
            return table.row_count
        query = sql.SQL('SELECT COUNT(*) FROM {}').format(sql.Identifier(table.schema, table.name))
        row = self.source.get_first(query)
        return int(row[0]) if row else 0

    def iter_pages(self, table: TableDescriptor, total_rows: Optional[int] = None) -> Iterator[Tuple[TransferCursor, List[Tuple[Any, ...]]]]:
        """
        Yield (cursor, rows) pages read from the source.

        Stops on an empty or short page, or once ``total_rows`` rows have
        been read.
        """
        if total_rows is None:
            total_rows = self._row_count(table)

        cursor = TransferCursor(table.qualified_name, 0, self.batch_size, self._order_by(table))
        while cursor.offset < total_rows:
            rows = self.source.get_records(self._select_query(table, cursor))
            if not rows:
                break
            yield cursor, rows
            cursor = cursor.advance(len(rows))
            if len(rows) < cursor.page_size:
                break

    def _adapt_row(self, table: TableDescriptor, row: Sequence[Any]) -> List[Any]:
        # dicts and lists bound to json/jsonb columns have to be wrapped
        adapted = []
        for column, value in zip(table.columns, row):
            if value is not None and column.is_json:
                adapted.append(Json(value))
            else:
                adapted.append(value)
        return adapted

    def _insert_query(self, table: TableDescriptor, row_count: int) -> sql.Composed:
        columns = table.column_names
        row_placeholder = sql.SQL('({})').format(
            sql.SQL(', ').join([sql.Placeholder()] * len(columns))
        )
        return sql.SQL('INSERT INTO {table} ({columns}) VALUES {values}').format(
            table=sql.Identifier(table.schema, table.name),
            columns=sql.SQL(', ').join([sql.Identifier(c) for c in columns]),
            values=sql.SQL(', ').join([row_placeholder] * row_count),
        )

    def insert_rows(self, conn, table: TableDescriptor, rows: Sequence[Sequence[Any]]) -> int:
        """
        Insert a page of rows with one multi-row parameterised INSERT.

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        # Flatten row tuples for parameter binding
        params: List[Any] = []
        for row in rows:
            params.extend(self._adapt_row(table, row))

        with conn.cursor() as cursor:
            cursor.execute(self._insert_query(table, len(rows)), params)
        return len(rows)

    def truncate(self, conn, table: TableDescriptor) -> None:
        query = sql.SQL('TRUNCATE {} CASCADE').format(sql.Identifier(table.schema, table.name))
        with conn.cursor() as cursor:
            cursor.execute(query)

    def transfer_table(self, conn, table: TableDescriptor) -> TableTransferResult:
        """
        Transfer one table over an already open target connection.

        Args:
            conn: Target connection (autocommit)
            table: Table descriptor with columns, primary key and row count

        Returns:
            TableTransferResult; failures are reported in the result
            unless they are connection-level, which propagate
        """
        start_time = time.time()
        result = TableTransferResult(table=table.qualified_name, total_rows=table.row_count or 0)

        offset = 0
        try:
            total_rows = self._row_count(table)
            result.total_rows = total_rows
            if total_rows == 0:
                result.status = TransferStatus.SKIPPED
                result.duration_seconds = time.time() - start_time
                logger.info(f"{table.qualified_name}: skipped (empty)")
                return result

            self.truncate(conn, table)
            for cursor, rows in self.iter_pages(table, total_rows):
                offset = cursor.offset
                result.migrated_rows += self.insert_rows(conn, table, rows)
                result.pages += 1
                progress = round(result.migrated_rows / total_rows * 100)
                logger.info(f"{table.qualified_name}: {result.migrated_rows:,}/{total_rows:,} ({progress}%)")
        except Exception as e:
            if classify_error(e) is ErrorClass.FATAL:
                raise
            error = TransferBatchError(table.qualified_name, offset, str(e).strip())
            result.status = TransferStatus.FAILED
            result.error = str(error)
            logger.error(f"{table.qualified_name}: failed - {error}")
        else:
            logger.info(
                f"{table.qualified_name}: {result.migrated_rows:,} rows in "
                f"{time.time() - start_time:.2f}s"
            )

        result.duration_seconds = time.time() - start_time
        return result

    def transfer_tables(
        self,
        tables: Sequence[TableDescriptor],
        stats: Optional[RunStatistics] = None,
    ) -> List[TableTransferResult]:
        """
        Transfer every table in the given order with triggers suspended.

        Args:
            tables: Tables in dependency order
            stats: Run statistics to record per-table results into

        Returns:
            One TableTransferResult per table, in input order
        """
        total = sum(t.row_count or 0 for t in tables)
        logger.info(f"Found {len(tables)} tables to migrate ({total:,} rows)")

        results: List[TableTransferResult] = []
        with self.target.connection(autocommit=True) as conn:
            with suspended_triggers(conn):
                for table in tables:
                    result = self.transfer_table(conn, table)
                    results.append(result)
                    if stats is not None:
                        stats.record_table(result)

        succeeded = sum(1 for r in results if r.status is TransferStatus.SUCCESS)
        failed = sum(1 for r in results if r.status is TransferStatus.FAILED)
        skipped = sum(1 for r in results if r.status is TransferStatus.SKIPPED)
        migrated = sum(r.migrated_rows for r in results)
        logger.info(
            f"Data migration summary: {succeeded} success, {failed} failed, {skipped} skipped; "
            f"{migrated:,} rows migrated"
        )
        return results

    def iter_data_sql(self, tables: Sequence[TableDescriptor]) -> Iterator[str]:
        """
        Yield the data export script line by line.

        Rows are rendered as literal INSERT statements between the same
        replication-role toggles used by the live transfer. Values are
        rendered with ``cursor.mogrify`` on a source connection, using the same
        adaptation as the live INSERT. Text containing newlines spans several
        lines of the script.
        """
        yield '-- Disable triggers for faster import'
        yield f'{REPLICA_ROLE_SQL};'
        yield ''

        with self.source.connection() as conn:
            encoding = encodings.get(conn.encoding, 'utf-8')
            with conn.cursor() as cursor:
                for table in tables:
                    total_rows = self._row_count(table)
                    if total_rows == 0:
                        continue

                    table_name = qualified_name(table.schema, table.name)
                    insert_query = self._insert_query(table, 1)
                    yield f'-- Table: {table_name} ({total_rows} rows)'
                    yield f'TRUNCATE {table_name} CASCADE;'

                    exported = 0
                    for _page, rows in self.iter_pages(table, total_rows):
                        for row in rows:
                            statement = cursor.mogrify(insert_query, self._adapt_row(table, row))
                            yield f'{statement.decode(encoding)};'
                        exported += len(rows)
                    logger.info(f"{table.qualified_name}: exported {exported:,}/{total_rows:,} rows")
                    yield ''

        yield '-- Re-enable triggers'
        yield f'{DEFAULT_ROLE_SQL};'
        yield ''

    def export_data_sql(self, tables: Sequence[TableDescriptor]) -> str:
        return '\n'.join(self.iter_data_sql(tables))
