"""
SQL Export Module

Writes the migration as reviewable SQL files instead of applying it:

- migration-schema.sql: schemas, extensions, enum types, sequences, tables,
  constraints, indexes, foreign keys, views
- migration-functions.sql: functions and triggers
- migration-rls.sql: RLS enablement and policies
- migration-grants.sql: roles and grants
- migration-data.sql: table data as INSERT statements
- migration-complete.sql: everything except data
- migration-complete-with-data.sql: everything, data before RLS and grants

Every statement ends with ';' so the files can be replayed with SQLApplier
(or psql).
"""

from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence
import logging
import os

from supabase_pg_migration.ddl_generator import SUPABASE_ROLES, DDLGenerator
from supabase_pg_migration.dependency_resolver import resolve_table_order
from supabase_pg_migration.descriptors import ObjectDescriptor

logger = logging.getLogger(__name__)

SCHEMA_FILE = 'migration-schema.sql'
FUNCTIONS_FILE = 'migration-functions.sql'
RLS_FILE = 'migration-rls.sql'
GRANTS_FILE = 'migration-grants.sql'
DATA_FILE = 'migration-data.sql'
COMPLETE_FILE = 'migration-complete.sql'
COMPLETE_WITH_DATA_FILE = 'migration-complete-with-data.sql'

RULE = '-- ' + '=' * 42
DOCUMENT_SEPARATOR = '\n' + RULE + '\n'


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def banner(title: str, generated_at: str) -> List[str]:
    return [
        RULE,
        f'-- {title}',
        '-- Generated by supabase-pg-migrate',
        f'-- Date: {generated_at}',
        RULE,
        '',
    ]


def section(title: str) -> List[str]:
    return [RULE, f'-- {title}', RULE]


def terminate(statement: str) -> str:
    return statement.rstrip().rstrip(';').rstrip() + ';'


class SQLExporter:
    """Render extracted objects into the migration SQL documents."""

    def __init__(
        self,
        extractor,
        schemas: Sequence[str],
        transfer_engine=None,
        ddl_generator: Optional[DDLGenerator] = None,
        clock: Callable[[], str] = _utc_now,
    ):
        """
        Initialize the exporter.

        Args:
            extractor: SchemaExtractor reading the source
            schemas: Schemas being migrated
            transfer_engine: BatchTransferEngine used for the data document;
                             without it no data document is produced
            ddl_generator: Statement renderer
            clock: Returns the generation timestamp written in banners
        """
        self.extractor = extractor
        self.schemas = list(schemas)
        self.transfer_engine = transfer_engine
        self.ddl = ddl_generator or DDLGenerator()
        self.clock = clock

    def _render(self, descriptors: Iterable[ObjectDescriptor], blank_line: bool = False) -> List[str]:
        lines = []
        for descriptor in descriptors:
            lines.extend(terminate(stmt) for stmt in self.ddl.statements_for(descriptor))
            if blank_line:
                lines.append('')
        return lines

    def build_schema_sql(self) -> str:
        generated_at = self.clock()
        lines = banner('SCHEMA MIGRATION SCRIPT', generated_at)

        lines += section('SCHEMAS')
        lines += [terminate(self.ddl.generate_create_schema(schema)) for schema in self.schemas]
        lines.append('')

        lines += section('EXTENSIONS')
        lines += self._render(self.extractor.get_extensions())
        lines.append('')

        lines += section('ENUM TYPES')
        lines += self._render(self.extractor.get_enums(), blank_line=True)

        lines += section('SEQUENCES')
        lines += self._render(self.extractor.get_sequences(), blank_line=True)

        lines += section('TABLES')
        tables = resolve_table_order(self.extractor.get_tables(), self.extractor.get_foreign_key_edges())
        lines += self._render(tables, blank_line=True)

        constraints = self.extractor.get_constraints()
        lines += section('CONSTRAINTS (Primary Keys, Unique, Check)')
        lines += self._render(c for c in constraints if not c.is_foreign_key)
        lines.append('')

        lines += section('INDEXES')
        lines += self._render(self.extractor.get_indexes())
        lines.append('')

        lines += section('FOREIGN KEYS')
        lines += self._render(c for c in constraints if c.is_foreign_key)
        lines.append('')

        lines += section('VIEWS')
        lines += self._render(self.extractor.get_views(), blank_line=True)

        return '\n'.join(lines)

    def build_functions_sql(self) -> str:
        lines = banner('FUNCTIONS AND TRIGGERS MIGRATION SCRIPT', self.clock())

        lines += section('FUNCTIONS')
        for function in self.extractor.get_functions():
            lines.append(f'-- Function: {function.signature}')
            lines += self._render([function], blank_line=True)

        lines += section('TRIGGERS')
        for trigger in self.extractor.get_triggers():
            lines.append(f'-- Trigger: {trigger.qualified_name}')
            lines += self._render([trigger], blank_line=True)

        return '\n'.join(lines)

    def build_rls_sql(self) -> str:
        lines = banner('RLS MIGRATION SCRIPT', self.clock())

        lines += section('ENABLE RLS')
        lines += self._render(t for t in self.extractor.get_table_security() if t.rls_enabled)
        lines.append('')

        lines += section('POLICIES')
        for policy in self.extractor.get_policies():
            lines.append(f'-- Policy: {policy.qualified_name}')
            lines += self._render([policy], blank_line=True)

        return '\n'.join(lines)

    def build_grants_sql(self) -> str:
        lines = banner('GRANTS MIGRATION SCRIPT', self.clock())

        lines += section('ROLES')
        lines += [terminate(self.ddl.generate_create_role(role)) for role in SUPABASE_ROLES]
        lines.append('')

        lines += section('SCHEMA USAGE')
        lines += [terminate(stmt) for stmt in self.ddl.generate_schema_usage_grants(self.schemas)]
        lines.append('')

        lines += section('TABLE GRANTS')
        lines += self._render(self.extractor.get_grants())
        lines.append('')

        lines += section('SEQUENCE GRANTS')
        lines += [terminate(stmt) for stmt in self.ddl.generate_sequence_grants(self.schemas)]
        lines.append('')

        lines += section('FUNCTION GRANTS')
        lines += [terminate(stmt) for stmt in self.ddl.generate_function_grants(self.schemas)]
        lines.append('')

        return '\n'.join(lines)

    def build_data_sql(self) -> Optional[str]:
        if self.transfer_engine is None:
            return None
        tables = resolve_table_order(
            self.extractor.get_tables_for_data_migration(),
            self.extractor.get_foreign_key_edges(),
        )
        lines = banner('DATA EXPORT', self.clock())
        lines += self.transfer_engine.iter_data_sql(tables)
        return '\n'.join(lines)

    def build_documents(self, include_data: bool = True) -> Dict[str, str]:
        """
        Build every document in memory.

        Returns:
            Mapping of file name to document text
        """
        logger.info("Exporting schema...")
        schema_sql = self.build_schema_sql()
        logger.info("Exporting functions and triggers...")
        functions_sql = self.build_functions_sql()
        logger.info("Exporting RLS policies...")
        rls_sql = self.build_rls_sql()
        logger.info("Exporting grants...")
        grants_sql = self.build_grants_sql()

        documents = {
            SCHEMA_FILE: schema_sql,
            FUNCTIONS_FILE: functions_sql,
            RLS_FILE: rls_sql,
            GRANTS_FILE: grants_sql,
        }

        generated_at = self.clock()
        documents[COMPLETE_FILE] = '\n'.join(
            banner('COMPLETE SCHEMA MIGRATION SCRIPT', generated_at)
        ) + DOCUMENT_SEPARATOR.join([schema_sql, functions_sql, rls_sql, grants_sql])

        data_sql = self.build_data_sql() if include_data else None
        if data_sql is not None:
            logger.info("Exported data")
            documents[DATA_FILE] = data_sql
            documents[COMPLETE_WITH_DATA_FILE] = '\n'.join(
                banner('COMPLETE MIGRATION SCRIPT WITH DATA', generated_at)
            ) + DOCUMENT_SEPARATOR.join([schema_sql, functions_sql, data_sql, rls_sql, grants_sql])

        return documents

    def write_documents(self, output_dir: str = '.', include_data: bool = True) -> Dict[str, str]:
        """
        Build and write every document to ``output_dir``.

        Returns:
            Mapping of file name to written path
        """
        os.makedirs(output_dir, exist_ok=True)
        written = {}
        for file_name, content in self.build_documents(include_data).items():
            path = os.path.join(output_dir, file_name)
            with open(path, 'w', encoding='utf-8') as f:
                f.write(content)
            written[file_name] = path
            logger.info(f"✓ {path}")
        return written
