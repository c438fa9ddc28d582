"""
PostgreSQL Schema Extraction Module

This module reads catalog metadata from the source database and returns it
as typed descriptors (see descriptors.py) for the configured schemas.

All catalog queries are parameterised with ``= ANY(%s)`` over the schema
list. Aggregated columns (enum labels, privileges, policy roles) can come
back either as Python lists or as ``{a,b,c}`` array literals depending on
the driver's type registration; both go through ``normalize_pg_array``.
"""

from collections import defaultdict
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from psycopg2 import sql

from supabase_pg_migration.ddl_generator import SUPABASE_ROLES, DDLGenerator
from supabase_pg_migration.descriptors import (
    ColumnInfo,
    ConstraintDescriptor,
    ConstraintType,
    EnumDescriptor,
    ExtensionDescriptor,
    FunctionDescriptor,
    GrantDescriptor,
    IndexDescriptor,
    PolicyDescriptor,
    SequenceDescriptor,
    TableDescriptor,
    TableSecurityDescriptor,
    TriggerDescriptor,
    ViewDescriptor,
)
from supabase_pg_migration.utils import strip_default_values

logger = logging.getLogger(__name__)


def normalize_pg_array(value: Any) -> Tuple[str, ...]:
    """
    Normalize an aggregated catalog value into a tuple of strings.

    Accepts a native list, a PostgreSQL array literal (with or without
    quoted elements) or None.

    Examples:
        >>> normalize_pg_array(['a', 'b'])
        ('a', 'b')
        >>> normalize_pg_array('{a,b,c}')
        ('a', 'b', 'c')
        >>> normalize_pg_array('{"a b",c}')
        ('a b', 'c')
        >>> normalize_pg_array('{}')
        ()
        >>> normalize_pg_array(None)
        ()
    """
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value if item is not None)

    text = str(value).strip()
    if text.startswith('{') and text.endswith('}'):
        text = text[1:-1]
    if not text:
        return ()

    items: List[Tuple[str, bool]] = []
    current: List[str] = []
    in_quotes = False
    was_quoted = False
    escaped = False
    for char in text:
        if escaped:
            current.append(char)
            escaped = False
        elif char == '\\' and in_quotes:
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
            was_quoted = True
        elif char == ',' and not in_quotes:
            items.append((''.join(current), was_quoted))
            current = []
            was_quoted = False
        else:
            current.append(char)
    items.append((''.join(current), was_quoted))

    # Quoted elements keep their whitespace; empty unquoted elements are dropped
    return tuple(
        item if quoted else item.strip()
        for item, quoted in items
        if quoted or item.strip()
    )


class SchemaExtractor:
    """Extract catalog metadata from a PostgreSQL database."""

    def __init__(
        self,
        source,
        schemas: Sequence[str],
        exclude_tables: Sequence[str] = (),
        ddl_generator: Optional[DDLGenerator] = None,
    ):
        """
        Initialize the schema extractor.

        Args:
            source: ConnectionProvider (or any object with get_records/get_first)
            schemas: Schema allow-list
            exclude_tables: Table names never extracted
            ddl_generator: Renderer used to fill generated definitions
        """
        self.source = source
        self.schemas = list(schemas)
        self.exclude_tables = list(exclude_tables)
        self.ddl = ddl_generator or DDLGenerator()

    def get_extensions(self) -> List[ExtensionDescriptor]:
        """Installed extensions except plpgsql (always present)."""
        query = """
        SELECT e.extname AS name, n.nspname AS schema
        FROM pg_extension e
        JOIN pg_namespace n ON e.extnamespace = n.oid
        WHERE e.extname NOT IN ('plpgsql')
        ORDER BY e.extname
        """
        result = []
        for name, schema in self.source.get_records(query):
            extension = ExtensionDescriptor(schema=schema, name=name, definition='')
            result.append(replace(extension, definition=self.ddl.generate_create_extension(extension)))

        logger.info(f"Found {len(result)} extensions")
        return result

    def get_enums(self) -> List[EnumDescriptor]:
        query = """
        SELECT
            n.nspname AS schema,
            t.typname AS name,
            array_agg(e.enumlabel ORDER BY e.enumsortorder) AS labels
        FROM pg_type t
        JOIN pg_enum e ON t.oid = e.enumtypid
        JOIN pg_namespace n ON t.typnamespace = n.oid
        WHERE n.nspname = ANY(%s)
        GROUP BY n.nspname, t.typname
        ORDER BY n.nspname, t.typname
        """
        result = []
        for schema, name, labels in self.source.get_records(query, parameters=[self.schemas]):
            enum = EnumDescriptor(schema=schema, name=name, definition='', labels=normalize_pg_array(labels))
            result.append(replace(enum, definition=self.ddl.generate_create_enum(enum)))

        logger.info(f"Found {len(result)} enum types")
        return result

    def get_sequences(self) -> List[SequenceDescriptor]:
        """
        Sequences with their parameters and current position.

        ``last_value`` is NULL in pg_sequences until the sequence has been
        used, which maps to ``None`` here.
        """
        query = """
        SELECT
            schemaname AS schema,
            sequencename AS name,
            start_value,
            min_value,
            max_value,
            increment_by,
            cycle,
            cache_size,
            last_value
        FROM pg_sequences
        WHERE schemaname = ANY(%s)
        ORDER BY schemaname, sequencename
        """
        result = []
        for row in self.source.get_records(query, parameters=[self.schemas]):
            sequence = SequenceDescriptor(
                schema=row[0],
                name=row[1],
                definition='',
                start_value=int(row[2]),
                min_value=int(row[3]),
                max_value=int(row[4]),
                increment_by=int(row[5]),
                cycle=bool(row[6]),
                cache_size=int(row[7]),
                last_value=int(row[8]) if row[8] is not None else None,
            )
            result.append(replace(sequence, definition=self.ddl.generate_create_sequence(sequence)))

        logger.info(f"Found {len(result)} sequences")
        return result

    def _get_table_names(self) -> List[Tuple[str, str]]:
        query = """
        SELECT t.table_schema, t.table_name
        FROM information_schema.tables t
        WHERE t.table_schema = ANY(%s)
          AND t.table_type = 'BASE TABLE'
          AND NOT (t.table_name = ANY(%s))
        ORDER BY t.table_schema, t.table_name
        """
        rows = self.source.get_records(query, parameters=[self.schemas, self.exclude_tables])
        return [(row[0], row[1]) for row in rows]

    def get_columns(self) -> Dict[Tuple[str, str], List[ColumnInfo]]:
        """Columns of every table in the allowed schemas, keyed by (schema, table)."""
        query = """
        SELECT
            table_schema,
            table_name,
            column_name,
            data_type,
            udt_schema,
            udt_name,
            character_maximum_length,
            numeric_precision,
            numeric_scale,
            is_nullable,
            column_default,
            identity_generation
        FROM information_schema.columns
        WHERE table_schema = ANY(%s)
        ORDER BY table_schema, table_name, ordinal_position
        """
        columns: Dict[Tuple[str, str], List[ColumnInfo]] = defaultdict(list)
        for row in self.source.get_records(query, parameters=[self.schemas]):
            columns[(row[0], row[1])].append(ColumnInfo(
                name=row[2],
                data_type=row[3],
                udt_schema=row[4],
                udt_name=row[5],
                character_maximum_length=row[6],
                numeric_precision=row[7],
                numeric_scale=row[8],
                is_nullable=(row[9] != 'NO'),
                column_default=row[10],
                identity_generation=row[11],
            ))
        return columns

    def get_primary_keys(self) -> Dict[Tuple[str, str], Tuple[str, ...]]:
        """Primary key columns in key order, keyed by (schema, table)."""
        query = """
        SELECT n.nspname, c.relname, a.attname
        FROM pg_index i
        JOIN pg_class c ON c.oid = i.indrelid
        JOIN pg_namespace n ON n.oid = c.relnamespace
        JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
        WHERE i.indisprimary
          AND n.nspname = ANY(%s)
        ORDER BY n.nspname, c.relname, array_position(i.indkey::int2[], a.attnum)
        """
        keys: Dict[Tuple[str, str], List[str]] = defaultdict(list)
        for schema, table, column in self.source.get_records(query, parameters=[self.schemas]):
            keys[(schema, table)].append(column)
        return {key: tuple(value) for key, value in keys.items()}

    def get_row_count(self, schema_name: str, table_name: str) -> int:
        query = sql.SQL('SELECT COUNT(*) FROM {}').format(sql.Identifier(schema_name, table_name))
        row = self.source.get_first(query)
        return int(row[0]) if row else 0

    def get_tables(self, include_row_counts: bool = False) -> List[TableDescriptor]:
        """
        Base tables of the allowed schemas minus the excluded table names.

        Args:
            include_row_counts: Run COUNT(*) per table (needed by the data
                                stage and verification)

        Returns:
            List of TableDescriptor ordered by schema and name
        """
        names = self._get_table_names()
        columns = self.get_columns()
        primary_keys = self.get_primary_keys()

        result = []
        for schema, name in names:
            table = TableDescriptor(
                schema=schema,
                name=name,
                definition='',
                columns=tuple(columns.get((schema, name), [])),
                primary_key=primary_keys.get((schema, name), ()),
                row_count=self.get_row_count(schema, name) if include_row_counts else None,
            )
            result.append(replace(table, definition=self.ddl.generate_create_table(table)))

        logger.info(f"Found {len(result)} tables in schemas {self.schemas}")
        return result

    def get_tables_for_data_migration(self) -> List[TableDescriptor]:
        return self.get_tables(include_row_counts=True)

    def get_foreign_key_edges(self) -> List[Tuple[str, str]]:
        """(child, parent) qualified table names for every foreign key."""
        query = """
        SELECT
            n1.nspname || '.' || c1.relname AS child,
            n2.nspname || '.' || c2.relname AS parent
        FROM pg_constraint con
        JOIN pg_class c1 ON con.conrelid = c1.oid
        JOIN pg_namespace n1 ON c1.relnamespace = n1.oid
        JOIN pg_class c2 ON con.confrelid = c2.oid
        JOIN pg_namespace n2 ON c2.relnamespace = n2.oid
        WHERE con.contype = 'f'
          AND n1.nspname = ANY(%s)
        ORDER BY 1, 2
        """
        return [(row[0], row[1]) for row in self.source.get_records(query, parameters=[self.schemas])]

    def get_constraints(self) -> List[ConstraintDescriptor]:
        """
        Table constraints ordered primary key, unique, check, then foreign key.

        Constraints on excluded tables are skipped.
        """
        query = """
        SELECT
            n.nspname AS schema,
            t.relname AS table_name,
            c.conname AS name,
            c.contype AS type,
            pg_get_constraintdef(c.oid) AS definition
        FROM pg_constraint c
        JOIN pg_class t ON c.conrelid = t.oid
        JOIN pg_namespace n ON t.relnamespace = n.oid
        WHERE n.nspname = ANY(%s)
          AND c.contype IN ('p', 'u', 'c', 'f', 'x')
        ORDER BY
            CASE c.contype
                WHEN 'p' THEN 1
                WHEN 'u' THEN 2
                WHEN 'c' THEN 3
                WHEN 'x' THEN 4
                WHEN 'f' THEN 5
            END,
            n.nspname, t.relname, c.conname
        """
        result = []
        for schema, table, name, contype, definition in self.source.get_records(query, parameters=[self.schemas]):
            if table in self.exclude_tables:
                continue
            result.append(ConstraintDescriptor(
                schema=schema,
                name=name,
                definition=definition,
                table=table,
                constraint_type=ConstraintType(contype),
            ))

        logger.info(f"Found {len(result)} constraints")
        return result

    def get_indexes(self) -> List[IndexDescriptor]:
        """Indexes except the ones backing primary keys."""
        query = """
        SELECT schemaname, tablename, indexname, indexdef
        FROM pg_indexes
        WHERE schemaname = ANY(%s)
          AND indexname NOT LIKE '%%_pkey'
        ORDER BY schemaname, tablename, indexname
        """
        result = []
        for schema, table, name, definition in self.source.get_records(query, parameters=[self.schemas]):
            if table in self.exclude_tables:
                continue
            result.append(IndexDescriptor(schema=schema, name=name, definition=definition, table=table))

        logger.info(f"Found {len(result)} indexes")
        return result

    def get_views(self) -> List[ViewDescriptor]:
        query = """
        SELECT schemaname, viewname, definition
        FROM pg_views
        WHERE schemaname = ANY(%s)
        ORDER BY schemaname, viewname
        """
        result = [
            ViewDescriptor(schema=schema, name=name, definition=definition)
            for schema, name, definition in self.source.get_records(query, parameters=[self.schemas])
        ]
        logger.info(f"Found {len(result)} views")
        return result

    def get_functions(self) -> List[FunctionDescriptor]:
        """
        Ordinary SQL/PL functions (no aggregates, procedures or C functions).

        ``identity_arguments`` is the argument list with defaults stripped,
        as DROP FUNCTION expects it.
        """
        query = """
        SELECT
            n.nspname AS schema,
            p.proname AS name,
            pg_get_function_arguments(p.oid) AS args,
            pg_get_function_identity_arguments(p.oid) AS identity_args,
            pg_get_function_result(p.oid) AS return_type,
            pg_get_functiondef(p.oid) AS definition,
            l.lanname AS language,
            CASE p.provolatile
                WHEN 'i' THEN 'IMMUTABLE'
                WHEN 's' THEN 'STABLE'
                WHEN 'v' THEN 'VOLATILE'
            END AS volatility,
            p.proisstrict AS is_strict,
            p.prosecdef AS security_definer
        FROM pg_proc p
        JOIN pg_namespace n ON p.pronamespace = n.oid
        JOIN pg_language l ON p.prolang = l.oid
        WHERE n.nspname = ANY(%s)
          AND p.prokind = 'f'
          AND l.lanname != 'c'
        ORDER BY n.nspname, p.proname, identity_args
        """
        result = []
        for row in self.source.get_records(query, parameters=[self.schemas]):
            arguments = row[2] or ''
            result.append(FunctionDescriptor(
                schema=row[0],
                name=row[1],
                definition=row[5],
                arguments=arguments,
                identity_arguments=row[3] if row[3] is not None else strip_default_values(arguments),
                return_type=row[4] or '',
                language=row[6],
                volatility=row[7] or '',
                is_strict=bool(row[8]),
                security_definer=bool(row[9]),
            ))

        logger.info(f"Found {len(result)} functions")
        return result

    def get_triggers(self) -> List[TriggerDescriptor]:
        query = """
        SELECT
            n.nspname AS schema,
            c.relname AS table_name,
            t.tgname AS name,
            CASE
                WHEN t.tgtype & 2 = 2 THEN 'BEFORE'
                WHEN t.tgtype & 64 = 64 THEN 'INSTEAD OF'
                ELSE 'AFTER'
            END AS timing,
            array_to_string(ARRAY[
                CASE WHEN t.tgtype & 4 = 4 THEN 'INSERT' END,
                CASE WHEN t.tgtype & 8 = 8 THEN 'DELETE' END,
                CASE WHEN t.tgtype & 16 = 16 THEN 'UPDATE' END,
                CASE WHEN t.tgtype & 32 = 32 THEN 'TRUNCATE' END
            ]::text[], ' OR ') AS events,
            pn.nspname AS function_schema,
            p.proname AS function_name,
            pg_get_triggerdef(t.oid) AS definition
        FROM pg_trigger t
        JOIN pg_class c ON t.tgrelid = c.oid
        JOIN pg_namespace n ON c.relnamespace = n.oid
        JOIN pg_proc p ON t.tgfoid = p.oid
        JOIN pg_namespace pn ON p.pronamespace = pn.oid
        WHERE n.nspname = ANY(%s)
          AND NOT t.tgisinternal
        ORDER BY n.nspname, c.relname, t.tgname
        """
        result = []
        for row in self.source.get_records(query, parameters=[self.schemas]):
            result.append(TriggerDescriptor(
                schema=row[0],
                name=row[2],
                definition=row[7],
                table=row[1],
                timing=row[3],
                events=row[4] or '',
                function_schema=row[5],
                function_name=row[6],
            ))

        logger.info(f"Found {len(result)} triggers")
        return result

    def get_table_security(self) -> List[TableSecurityDescriptor]:
        """Row-level-security flags of every ordinary table."""
        query = """
        SELECT
            n.nspname AS schema,
            c.relname AS table_name,
            c.relrowsecurity AS rls_enabled,
            c.relforcerowsecurity AS rls_forced
        FROM pg_class c
        JOIN pg_namespace n ON c.relnamespace = n.oid
        WHERE n.nspname = ANY(%s)
          AND c.relkind = 'r'
        ORDER BY n.nspname, c.relname
        """
        result = []
        for schema, table, enabled, forced in self.source.get_records(query, parameters=[self.schemas]):
            security = TableSecurityDescriptor(
                schema=schema, name=table, definition='',
                rls_enabled=bool(enabled), rls_forced=bool(forced),
            )
            result.append(replace(
                security, definition=';\n'.join(self.ddl.generate_table_security(security))
            ))
        return result

    def get_policies(self) -> List[PolicyDescriptor]:
        query = """
        SELECT
            n.nspname AS schema,
            c.relname AS table_name,
            p.polname AS name,
            p.polpermissive AS permissive,
            CASE
                WHEN p.polroles = '{0}' THEN ARRAY['public']::name[]
                ELSE ARRAY(SELECT rolname FROM pg_roles WHERE oid = ANY(p.polroles) ORDER BY rolname)
            END AS roles,
            CASE p.polcmd
                WHEN 'r' THEN 'SELECT'
                WHEN 'a' THEN 'INSERT'
                WHEN 'w' THEN 'UPDATE'
                WHEN 'd' THEN 'DELETE'
                WHEN '*' THEN 'ALL'
            END AS cmd,
            pg_get_expr(p.polqual, p.polrelid) AS qual,
            pg_get_expr(p.polwithcheck, p.polrelid) AS with_check
        FROM pg_policy p
        JOIN pg_class c ON p.polrelid = c.oid
        JOIN pg_namespace n ON c.relnamespace = n.oid
        WHERE n.nspname = ANY(%s)
        ORDER BY n.nspname, c.relname, p.polname
        """
        result = []
        for row in self.source.get_records(query, parameters=[self.schemas]):
            policy = PolicyDescriptor(
                schema=row[0],
                name=row[2],
                definition='',
                table=row[1],
                permissive=bool(row[3]),
                roles=normalize_pg_array(row[4]),
                command=row[5] or 'ALL',
                using=row[6],
                with_check=row[7],
            )
            result.append(replace(policy, definition=self.ddl.generate_create_policy(policy)))

        logger.info(f"Found {len(result)} RLS policies")
        return result

    def get_grants(self, grantees: Sequence[str] = SUPABASE_ROLES) -> List[GrantDescriptor]:
        """Table privileges held by the Supabase API roles."""
        query = """
        SELECT
            table_schema,
            table_name,
            grantee,
            array_agg(privilege_type::text ORDER BY privilege_type) AS privileges
        FROM information_schema.table_privileges
        WHERE table_schema = ANY(%s)
          AND grantee = ANY(%s)
        GROUP BY table_schema, table_name, grantee
        ORDER BY table_schema, table_name, grantee
        """
        result = []
        rows = self.source.get_records(query, parameters=[self.schemas, list(grantees)])
        for schema, table, grantee, privileges in rows:
            if table in self.exclude_tables:
                continue
            grant = GrantDescriptor(
                schema=schema, name=table, definition='',
                grantee=grantee, privileges=normalize_pg_array(privileges),
            )
            result.append(replace(grant, definition=self.ddl.generate_grant(grant)))

        logger.info(f"Found {len(result)} table grants")
        return result
