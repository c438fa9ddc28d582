"""
Data Migration Validation Module

This module verifies a migration by comparing per-table row counts between
source and target, and renders the human-readable run report.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Sequence
import logging

import psycopg2
from psycopg2 import sql

from supabase_pg_migration.descriptors import RunStatistics, TableDescriptor, TransferStatus
from supabase_pg_migration.utils import format_bytes

logger = logging.getLogger(__name__)


class MigrationValidator:
    """Validate data migrated between two PostgreSQL databases."""

    def __init__(self, source, target):
        """
        Initialize the migration validator.

        Args:
            source: ConnectionProvider for the source database
            target: ConnectionProvider for the target database
        """
        self.source = source
        self.target = target

    @staticmethod
    def _count(provider, schema_name: str, table_name: str) -> int:
        query = sql.SQL('SELECT COUNT(*) FROM {}').format(sql.Identifier(schema_name, table_name))
        row = provider.get_first(query)
        return int(row[0] or 0) if row else 0

    def validate_row_count(self, table: TableDescriptor) -> Dict[str, Any]:
        """
        Compare row counts between source and target for one table.

        Args:
            table: Table descriptor; its row_count is reused as the source
                   count when already known

        Returns:
            Validation result dictionary
        """
        if table.row_count is not None:
            source_count = table.row_count
        else:
            source_count = self._count(self.source, table.schema, table.name)

        try:
            target_count: Optional[int] = self._count(self.target, table.schema, table.name)
        except psycopg2.ProgrammingError as e:
            # Table missing on the target
            logger.warning(f"✗ {table.qualified_name}: cannot count target rows ({str(e).strip()})")
            target_count = None

        row_difference = (target_count or 0) - source_count
        validation_result = {
            'table_name': table.qualified_name,
            'source_count': source_count,
            'target_count': target_count,
            'row_difference': row_difference,
            'validation_passed': target_count == source_count,
            'validation_time': datetime.now().isoformat(),
        }

        if validation_result['validation_passed']:
            logger.info(f"✓ {table.qualified_name}: {source_count:,} rows (match)")
        elif target_count is not None:
            logger.warning(
                f"✗ Row count mismatch for {table.qualified_name}: "
                f"Source={source_count:,}, Target={target_count:,}, Difference={row_difference:+,}"
            )

        return validation_result

    def validate_tables_batch(self, tables: Sequence[TableDescriptor]) -> Dict[str, Any]:
        """
        Validate row counts of multiple tables.

        Returns:
            Batch validation results
        """
        results: Dict[str, Any] = {
            'total_tables': len(tables),
            'passed_tables': [],
            'failed_tables': [],
            'row_count_results': [],
            'overall_success': True,
            'validation_time': datetime.now().isoformat(),
        }

        for table in tables:
            row_count_result = self.validate_row_count(table)
            results['row_count_results'].append(row_count_result)

            if row_count_result['validation_passed']:
                results['passed_tables'].append(table.qualified_name)
            else:
                results['failed_tables'].append(table.qualified_name)
                results['overall_success'] = False

        results['passed_count'] = len(results['passed_tables'])
        results['failed_count'] = len(results['failed_tables'])
        results['success_rate'] = (
            results['passed_count'] / results['total_tables'] * 100
            if results['total_tables'] > 0 else 0
        )

        if results['overall_success']:
            logger.info("All table row counts match")
        else:
            logger.warning(f"Row count mismatches in {results['failed_count']} tables")

        return results


def generate_migration_report(
    validation_results: Optional[Dict[str, Any]] = None,
    run_stats: Optional[RunStatistics] = None,
    storage_results: Optional[Dict[str, Dict[str, Any]]] = None,
) -> str:
    """
    Generate a human-readable migration report.

    Args:
        validation_results: Results from validate_tables_batch
        run_stats: Statistics of the run (objects, tables, storage)
        storage_results: Per-bucket file count comparison

    Returns:
        Formatted report string
    """
    report_lines = [
        "=" * 80,
        "SUPABASE MIGRATION REPORT",
        "=" * 80,
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
    ]

    if run_stats is not None:
        summary = run_stats.summary()
        report_lines.extend([
            "SUMMARY",
            "-" * 40,
            f"Stages: {', '.join(summary['stages']) or 'none'}",
            f"Objects applied: {summary['objects_applied']}",
            f"Objects failed: {summary['objects_failed']}",
            f"Elapsed: {summary['elapsed_seconds']:.2f} seconds",
            "",
        ])
        for kind, counts in summary['by_kind'].items():
            report_lines.append(f"  {kind:<16} applied {counts['applied']:>6}  failed {counts['failed']:>6}")
        if summary['by_kind']:
            report_lines.append("")
        for error in run_stats.object_errors:
            report_lines.append(f"  • {error}")
        if run_stats.object_errors:
            report_lines.append("")

        if run_stats.tables:
            total_time = sum(t.duration_seconds for t in run_stats.tables)
            avg_rate = run_stats.migrated_rows / total_time if total_time > 0 else 0
            report_lines.extend([
                "TRANSFER STATISTICS",
                "-" * 40,
                f"Tables: {summary['tables_success']} success, {summary['tables_failed']} failed, "
                f"{summary['tables_skipped']} skipped",
                f"Total Rows Transferred: {run_stats.migrated_rows:,}",
                f"Total Time: {total_time:.2f} seconds",
                f"Average Transfer Rate: {avg_rate:,.0f} rows/second",
                "",
            ])
            failed = run_stats.tables_with_status(TransferStatus.FAILED)
            for result in failed:
                report_lines.append(f"  • {result.table}: {result.error}")
            if failed:
                report_lines.append("")

        if run_stats.storage is not None:
            storage = run_stats.storage
            report_lines.extend([
                "STORAGE",
                "-" * 40,
            ])
            if storage.skipped:
                report_lines.append("Skipped (missing credentials)")
            else:
                report_lines.extend([
                    f"Buckets: {storage.buckets_created} created, {storage.buckets_failed} failed",
                    f"Files: {storage.files_uploaded} uploaded, {storage.files_failed} failed",
                    f"Total size: {format_bytes(storage.total_bytes)}",
                ])
            report_lines.append("")

    if validation_results:
        report_lines.extend([
            "TABLE DETAILS",
            "-" * 40,
        ])
        for result in validation_results.get('row_count_results', []):
            status = "✓ PASS" if result['validation_passed'] else "✗ FAIL"
            table_name = result['table_name']
            source_count = result['source_count']
            target_count = result['target_count']

            if result['validation_passed']:
                report_lines.append(f"{status} | {table_name:<30} | {source_count:>10,} rows")
            elif target_count is None:
                report_lines.append(f"{status} | {table_name:<30} | missing on target")
            else:
                report_lines.append(
                    f"{status} | {table_name:<30} | Source: {source_count:>10,} | "
                    f"Target: {target_count:>10,} | Diff: {result['row_difference']:>+10,}"
                )

        if validation_results.get('failed_tables'):
            report_lines.extend([
                "",
                "FAILED TABLES REQUIRING ATTENTION",
                "-" * 40,
            ])
            for table in validation_results['failed_tables']:
                report_lines.append(f"  • {table}")
        report_lines.append("")

    if storage_results:
        report_lines.extend([
            "STORAGE VERIFICATION",
            "-" * 40,
        ])
        for bucket_id, result in storage_results.items():
            if result['target'] is None:
                report_lines.append(f"✗ FAIL | {bucket_id:<30} | bucket missing in target")
            else:
                status = "✓ PASS" if result['match'] else "✗ FAIL"
                report_lines.append(
                    f"{status} | {bucket_id:<30} | {result['target']}/{result['source']} files"
                )
        report_lines.append("")

    report_lines.extend([
        "=" * 80,
        "END OF REPORT",
        "=" * 80,
    ])

    return "\n".join(report_lines)
