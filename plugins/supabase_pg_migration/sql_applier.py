"""
SQL Apply Module

Replays an exported SQL document against the target database. Statements
are segmented with the dollar-quote aware splitter and executed one by one
on a single autocommit connection, so a failed statement never blocks the
ones after it.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple
import logging
import os

from supabase_pg_migration.descriptors import ObjectKind, RunStatistics
from supabase_pg_migration.errors import ErrorClass, MigrationConnectionError, classify_error
from supabase_pg_migration.sql_segmenter import split_sql_statements
from supabase_pg_migration.utils import statement_preview

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 100


@dataclass
class ApplyResult:
    """Outcome of applying a batch of statements."""
    total: int = 0
    succeeded: int = 0
    ignored: int = 0
    failed: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        """Executed statements plus the ones that already existed."""
        return self.succeeded + self.ignored


class SQLApplier:
    """Execute SQL statements on the target with error classification."""

    def __init__(self, target, stats: Optional[RunStatistics] = None):
        """
        Args:
            target: ConnectionProvider for the target database
            stats: Run statistics receiving per-statement counts
        """
        self.target = target
        self.stats = stats

    def apply_statements(self, statements: Iterable[str]) -> ApplyResult:
        statements = [s for s in statements if s and not s.lstrip().startswith('--')]
        result = ApplyResult(total=len(statements))

        with self.target.connection(autocommit=True) as conn:
            for index, statement in enumerate(statements, start=1):
                try:
                    with conn.cursor() as cursor:
                        cursor.execute(statement)
                    result.succeeded += 1
                    self._record(True)
                except Exception as e:
                    error_class = classify_error(e)
                    if error_class is ErrorClass.FATAL:
                        raise MigrationConnectionError(f"target DB connection lost: {e}") from e
                    if error_class is ErrorClass.IGNORABLE:
                        result.ignored += 1
                        self._record(True)
                    else:
                        result.failed += 1
                        message = str(e).strip()
                        result.errors.append((statement_preview(statement), message))
                        self._record(False)
                        logger.warning(f"{statement_preview(statement)} - Error: {message}")

                if index % PROGRESS_INTERVAL == 0:
                    logger.info(f"Progress: {index}/{result.total}")

        logger.info(
            f"SQL applied: {result.success_count} succeeded "
            f"({result.ignored} already existed), {result.failed} failed"
        )
        return result

    def _record(self, ok: bool) -> None:
        if self.stats is None:
            return
        if ok:
            self.stats.record_applied(ObjectKind.STATEMENT)
        else:
            self.stats.record_failed(ObjectKind.STATEMENT)

    def apply_text(self, sql_text: str) -> ApplyResult:
        statements = split_sql_statements(sql_text)
        logger.info(f"Found {len(statements)} SQL statements")
        return self.apply_statements(statements)

    def apply_file(self, file_path: str) -> ApplyResult:
        """
        Apply an SQL file to the target.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        if not os.path.isfile(file_path):
            raise FileNotFoundError(f"File not found: {file_path}")

        logger.info(f"Applying SQL file: {file_path}")
        with open(file_path, encoding='utf-8') as f:
            sql_text = f.read()
        return self.apply_text(sql_text)
