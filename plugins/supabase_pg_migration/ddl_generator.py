"""
PostgreSQL DDL Generation Module

This module renders extracted catalog descriptors into the SQL statements
replayed on the target. Every statement is written to be safe to run twice:
CREATE ... IF NOT EXISTS, DO blocks that swallow duplicate_object, or a
DROP ... IF EXISTS ahead of the CREATE for views, functions, triggers and
policies.

The same statements feed the live apply path and the exported SQL files.
"""

from typing import List, Sequence
import re
import logging

from supabase_pg_migration.descriptors import (
    ConstraintDescriptor,
    EnumDescriptor,
    ExtensionDescriptor,
    FunctionDescriptor,
    GrantDescriptor,
    IndexDescriptor,
    ObjectDescriptor,
    ObjectKind,
    PolicyDescriptor,
    SequenceDescriptor,
    TableDescriptor,
    TableSecurityDescriptor,
    TriggerDescriptor,
    ViewDescriptor,
)
from supabase_pg_migration.utils import (
    qualified_name,
    quote_identifier,
    quote_role,
    quote_literal,
    strip_default_values,
)

logger = logging.getLogger(__name__)

# Roles every Supabase instance expects on the API-facing schemas
SUPABASE_ROLES = ('anon', 'authenticated', 'service_role')

_CREATE_INDEX_PATTERN = re.compile(
    r'^CREATE\s+(UNIQUE\s+)?INDEX\s+(?!IF\s+NOT\s+EXISTS)', re.IGNORECASE
)


def _duplicate_safe(statement: str) -> str:
    return (
        "DO $$ BEGIN\n"
        f"  {statement};\n"
        "EXCEPTION WHEN duplicate_object THEN null;\n"
        "END $$"
    )


class DDLGenerator:
    """Generate PostgreSQL DDL statements from catalog descriptors."""

    def generate_create_schema(self, schema_name: str) -> str:
        return f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(schema_name)}"

    def generate_create_extension(self, extension: ExtensionDescriptor) -> str:
        return (
            f"CREATE EXTENSION IF NOT EXISTS {quote_identifier(extension.name)} "
            f"SCHEMA {quote_identifier(extension.schema)}"
        )

    def generate_create_enum(self, enum: EnumDescriptor) -> str:
        """
        Generate a CREATE TYPE ... AS ENUM wrapped in a duplicate-safe DO block.

        Labels keep their catalog order (enumsortorder).
        """
        labels = ', '.join(quote_literal(label) for label in enum.labels)
        return _duplicate_safe(f"CREATE TYPE {enum.quoted_name} AS ENUM ({labels})")

    def generate_create_sequence(self, sequence: SequenceDescriptor) -> str:
        return (
            f"CREATE SEQUENCE IF NOT EXISTS {sequence.quoted_name}\n"
            f"  START WITH {sequence.start_value}\n"
            f"  INCREMENT BY {sequence.increment_by}\n"
            f"  MINVALUE {sequence.min_value}\n"
            f"  MAXVALUE {sequence.max_value}\n"
            f"  {'CYCLE' if sequence.cycle else 'NO CYCLE'}\n"
            f"  CACHE {sequence.cache_size}"
        )

    def generate_setval(self, sequence: SequenceDescriptor) -> str:
        """
        Generate the setval() call restoring the sequence position.

        A sequence that was never used on the source keeps is_called = false
        so its first nextval() still returns the start value.
        """
        is_called = 'true' if sequence.last_value is not None else 'false'
        regclass = quote_literal(sequence.quoted_name)
        return f"SELECT setval({regclass}, {sequence.restore_value}, {is_called})"

    def generate_create_table(self, table: TableDescriptor) -> str:
        """
        Generate CREATE TABLE IF NOT EXISTS for a table.

        Constraints (including the primary key) are not inlined; they are
        added afterwards with ALTER TABLE so foreign keys can wait until every
        table exists.
        """
        column_definitions = [column.render() for column in table.columns]
        body = ',\n  '.join(column_definitions)
        return f"CREATE TABLE IF NOT EXISTS {table.quoted_name} (\n  {body}\n)"

    def generate_add_constraint(self, constraint: ConstraintDescriptor) -> str:
        """
        Generate ALTER TABLE ... ADD CONSTRAINT guarded by a pg_constraint lookup.

        A second ADD PRIMARY KEY raises 42P16 rather than duplicate_object, so
        the guard checks the catalog by constraint name and table instead of
        trapping the error.
        """
        table = qualified_name(constraint.schema, constraint.table)
        return (
            "DO $$ BEGIN\n"
            "  IF NOT EXISTS (\n"
            f"    SELECT 1 FROM pg_constraint WHERE conname = {quote_literal(constraint.name)}\n"
            f"      AND conrelid = {quote_literal(table)}::regclass\n"
            "  ) THEN\n"
            f"    ALTER TABLE {table} ADD CONSTRAINT {quote_identifier(constraint.name)} {constraint.definition};\n"
            "  END IF;\n"
            "END $$"
        )

    def generate_create_index(self, index: IndexDescriptor) -> str:
        """Rewrite the catalog index definition into CREATE [UNIQUE] INDEX IF NOT EXISTS."""
        return _CREATE_INDEX_PATTERN.sub(
            lambda m: f"CREATE {m.group(1) or ''}INDEX IF NOT EXISTS ", index.definition, count=1
        )

    def generate_view(self, view: ViewDescriptor) -> List[str]:
        definition = view.definition.strip().rstrip(';').rstrip()
        return [
            f"DROP VIEW IF EXISTS {view.quoted_name} CASCADE",
            f"CREATE VIEW {view.quoted_name} AS {definition}",
        ]

    def generate_function(self, function: FunctionDescriptor) -> List[str]:
        drop_args = function.identity_arguments or strip_default_values(function.arguments)
        return [
            f"DROP FUNCTION IF EXISTS {function.quoted_name}({drop_args}) CASCADE",
            function.definition.strip().rstrip(';').rstrip(),
        ]

    def generate_trigger(self, trigger: TriggerDescriptor) -> List[str]:
        return [
            f"DROP TRIGGER IF EXISTS {quote_identifier(trigger.name)} "
            f"ON {qualified_name(trigger.schema, trigger.table)}",
            trigger.definition,
        ]

    def generate_table_security(self, security: TableSecurityDescriptor) -> List[str]:
        statements = []
        if security.rls_enabled:
            statements.append(f"ALTER TABLE {security.quoted_name} ENABLE ROW LEVEL SECURITY")
            if security.rls_forced:
                statements.append(f"ALTER TABLE {security.quoted_name} FORCE ROW LEVEL SECURITY")
        return statements

    def generate_create_policy(self, policy: PolicyDescriptor) -> str:
        roles = ', '.join(quote_role(role) for role in policy.roles) or 'public'
        lines = [
            f"CREATE POLICY {quote_identifier(policy.name)} ON {qualified_name(policy.schema, policy.table)}",
            f"  AS {'PERMISSIVE' if policy.permissive else 'RESTRICTIVE'}",
            f"  FOR {policy.command}",
            f"  TO {roles}",
        ]
        if policy.using:
            lines.append(f"  USING ({policy.using})")
        if policy.with_check:
            lines.append(f"  WITH CHECK ({policy.with_check})")
        return '\n'.join(lines)

    def generate_policy(self, policy: PolicyDescriptor) -> List[str]:
        return [
            f"DROP POLICY IF EXISTS {quote_identifier(policy.name)} "
            f"ON {qualified_name(policy.schema, policy.table)}",
            self.generate_create_policy(policy),
        ]

    def generate_grant(self, grant: GrantDescriptor) -> str:
        privileges = ', '.join(grant.privileges)
        return f"GRANT {privileges} ON {grant.quoted_name} TO {quote_role(grant.grantee)}"

    def generate_create_role(self, role: str) -> str:
        return _duplicate_safe(f"CREATE ROLE {quote_identifier(role)} NOLOGIN")

    def generate_schema_usage_grants(self, schemas: Sequence[str], roles: Sequence[str] = SUPABASE_ROLES) -> List[str]:
        return [
            f"GRANT USAGE ON SCHEMA {quote_identifier(schema)} TO {quote_role(role)}"
            for schema in schemas
            for role in roles
        ]

    def generate_sequence_grants(self, schemas: Sequence[str], roles: Sequence[str] = SUPABASE_ROLES) -> List[str]:
        role_list = ', '.join(quote_role(role) for role in roles)
        return [
            f"GRANT USAGE, SELECT ON ALL SEQUENCES IN SCHEMA {quote_identifier(schema)} TO {role_list}"
            for schema in schemas
        ]

    def generate_function_grants(self, schemas: Sequence[str], roles: Sequence[str] = SUPABASE_ROLES) -> List[str]:
        role_list = ', '.join(quote_role(role) for role in roles)
        return [
            f"GRANT EXECUTE ON ALL FUNCTIONS IN SCHEMA {quote_identifier(schema)} TO {role_list}"
            for schema in schemas
        ]

    def statements_for(self, descriptor: ObjectDescriptor) -> List[str]:
        """
        Return the ordered statements that apply one descriptor to the target.

        Args:
            descriptor: Any extracted descriptor

        Returns:
            List of statements without trailing separators
        """
        kind = descriptor.kind
        if kind is ObjectKind.EXTENSION:
            return [self.generate_create_extension(descriptor)]
        if kind is ObjectKind.ENUM:
            return [self.generate_create_enum(descriptor)]
        if kind is ObjectKind.SEQUENCE:
            return [self.generate_create_sequence(descriptor), self.generate_setval(descriptor)]
        if kind is ObjectKind.TABLE:
            return [self.generate_create_table(descriptor)]
        if kind is ObjectKind.CONSTRAINT:
            return [self.generate_add_constraint(descriptor)]
        if kind is ObjectKind.INDEX:
            return [self.generate_create_index(descriptor)]
        if kind is ObjectKind.VIEW:
            return self.generate_view(descriptor)
        if kind is ObjectKind.FUNCTION:
            return self.generate_function(descriptor)
        if kind is ObjectKind.TRIGGER:
            return self.generate_trigger(descriptor)
        if kind is ObjectKind.TABLE_SECURITY:
            return self.generate_table_security(descriptor)
        if kind is ObjectKind.POLICY:
            return self.generate_policy(descriptor)
        if kind is ObjectKind.GRANT:
            return [self.generate_grant(descriptor)]
        if descriptor.definition:
            return [descriptor.definition]
        logger.warning(f"No statements to render for {kind.value} {descriptor.qualified_name}")
        return []
