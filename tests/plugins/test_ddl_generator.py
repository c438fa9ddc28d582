"""
Tests for PostgreSQL DDL Generation

These tests validate that generated statements quote identifiers and can be
replayed on a target that already has the objects.
"""

import pytest

from supabase_pg_migration.ddl_generator import DDLGenerator
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
from supabase_pg_migration.sql_segmenter import split_sql_statements


@pytest.fixture
def generator():
    return DDLGenerator()


class TestSchemaObjects:
    """Test schema, extension, enum and sequence statements."""

    def test_create_schema(self, generator):
        assert generator.generate_create_schema('app') == 'CREATE SCHEMA IF NOT EXISTS "app"'

    def test_create_extension(self, generator):
        ext = ExtensionDescriptor(schema='extensions', name='pgcrypto', definition='')
        assert generator.generate_create_extension(ext) == \
            'CREATE EXTENSION IF NOT EXISTS "pgcrypto" SCHEMA "extensions"'

    def test_create_enum_is_duplicate_safe(self, generator):
        enum = EnumDescriptor(schema='public', name='status', definition='', labels=('active', "it's"))
        statement = generator.generate_create_enum(enum)
        assert statement.startswith('DO $$ BEGIN')
        assert 'CREATE TYPE "public"."status" AS ENUM (\'active\', \'it\'\'s\')' in statement
        assert 'EXCEPTION WHEN duplicate_object THEN null;' in statement
        assert statement.endswith('END $$')

    def test_sequence_create_and_setval(self, generator):
        seq = SequenceDescriptor(schema='public', name='users_id_seq', definition='', last_value=42)
        statements = generator.statements_for(seq)
        assert statements[0].startswith('CREATE SEQUENCE IF NOT EXISTS "public"."users_id_seq"')
        assert 'NO CYCLE' in statements[0]
        assert statements[1] == 'SELECT setval(\'"public"."users_id_seq"\', 42, true)'

    def test_setval_unused_sequence(self, generator):
        """Test a never-used sequence restarts at its start value."""
        seq = SequenceDescriptor(schema='public', name='s', definition='', start_value=100)
        assert generator.generate_setval(seq) == 'SELECT setval(\'"public"."s"\', 100, false)'


class TestTables:
    """Test table, constraint and index statements."""

    def test_create_table(self, generator):
        table = TableDescriptor(
            schema='public', name='users', definition='',
            columns=(
                ColumnInfo('id', 'bigint', is_nullable=False, identity_generation='BY DEFAULT'),
                ColumnInfo('email', 'character varying', character_maximum_length=255, is_nullable=False),
                ColumnInfo('status', 'USER-DEFINED', udt_schema='public', udt_name='status'),
                ColumnInfo('tags', 'ARRAY', udt_name='_text'),
                ColumnInfo('price', 'numeric', numeric_precision=10, numeric_scale=2),
                ColumnInfo('created_at', 'timestamp with time zone', column_default='now()'),
            ),
        )
        assert generator.generate_create_table(table) == (
            'CREATE TABLE IF NOT EXISTS "public"."users" (\n'
            '  "id" bigint GENERATED BY DEFAULT AS IDENTITY NOT NULL,\n'
            '  "email" varchar(255) NOT NULL,\n'
            '  "status" "public"."status",\n'
            '  "tags" text[],\n'
            '  "price" numeric(10, 2),\n'
            '  "created_at" timestamp with time zone DEFAULT now()\n'
            ')'
        )

    def test_add_constraint(self, generator):
        fk = ConstraintDescriptor(
            schema='public', name='orders_user_fk', table='orders',
            definition='FOREIGN KEY (user_id) REFERENCES public.users(id)',
            constraint_type=ConstraintType.FOREIGN,
        )
        statement = generator.generate_add_constraint(fk)

        assert statement.startswith('DO $$ BEGIN')
        assert "WHERE conname = 'orders_user_fk'" in statement
        assert """AND conrelid = '"public"."orders"'::regclass""" in statement
        assert (
            'ALTER TABLE "public"."orders" ADD CONSTRAINT "orders_user_fk" '
            'FOREIGN KEY (user_id) REFERENCES public.users(id);'
        ) in statement
        assert statement.endswith('END $$')
        assert fk.is_foreign_key

    def test_add_primary_key_guarded_by_catalog_lookup(self, generator):
        """Test a second ADD PRIMARY KEY is skipped instead of raising 42P16."""
        pk = ConstraintDescriptor(
            schema='public', name="o'pk", table='orders',
            definition='PRIMARY KEY (id)',
            constraint_type=ConstraintType.PRIMARY,
        )
        statement = generator.generate_add_constraint(pk)

        assert 'IF NOT EXISTS (' in statement
        assert "conname = 'o''pk'" in statement
        assert 'ADD CONSTRAINT "o\'pk" PRIMARY KEY (id);' in statement
        assert 'EXCEPTION' not in statement

    def test_add_constraint_splits_as_one_statement(self, generator):
        fk = ConstraintDescriptor(
            schema='public', name='orders_user_fk', table='orders',
            definition='FOREIGN KEY (user_id) REFERENCES public.users(id)',
            constraint_type=ConstraintType.FOREIGN,
        )
        statement = generator.generate_add_constraint(fk)

        assert split_sql_statements(f"{statement};\nSELECT 1;") == [statement, 'SELECT 1']

    @pytest.mark.parametrize('definition,expected', [
        ('CREATE INDEX idx_a ON public.t USING btree (a)',
         'CREATE INDEX IF NOT EXISTS idx_a ON public.t USING btree (a)'),
        ('CREATE UNIQUE INDEX idx_b ON public.t USING btree (b)',
         'CREATE UNIQUE INDEX IF NOT EXISTS idx_b ON public.t USING btree (b)'),
        ('CREATE INDEX IF NOT EXISTS idx_c ON public.t (c)',
         'CREATE INDEX IF NOT EXISTS idx_c ON public.t (c)'),
    ])
    def test_create_index(self, generator, definition, expected):
        index = IndexDescriptor(schema='public', name='idx', table='t', definition=definition)
        assert generator.generate_create_index(index) == expected


class TestReplaceableObjects:
    """Test statements for objects recreated on every run."""

    def test_view_drop_then_create(self, generator):
        view = ViewDescriptor(schema='public', name='active_users', definition=' SELECT id FROM users;')
        assert generator.generate_view(view) == [
            'DROP VIEW IF EXISTS "public"."active_users" CASCADE',
            'CREATE VIEW "public"."active_users" AS SELECT id FROM users',
        ]

    def test_function_drop_uses_identity_arguments(self, generator):
        function = FunctionDescriptor(
            schema='public', name='add', definition='CREATE OR REPLACE FUNCTION public.add(a integer, b integer DEFAULT 1)\n...;',
            arguments='a integer, b integer DEFAULT 1', identity_arguments='a integer, b integer',
        )
        drop, create = generator.generate_function(function)
        assert drop == 'DROP FUNCTION IF EXISTS "public"."add"(a integer, b integer) CASCADE'
        assert create.endswith('...')

    def test_function_drop_falls_back_to_stripped_arguments(self, generator):
        function = FunctionDescriptor(
            schema='public', name='f', definition='CREATE FUNCTION ...',
            arguments='x text DEFAULT NULL::text',
        )
        assert generator.generate_function(function)[0] == 'DROP FUNCTION IF EXISTS "public"."f"(x text) CASCADE'

    def test_trigger(self, generator):
        trigger = TriggerDescriptor(
            schema='public', name='set_updated', table='users',
            definition='CREATE TRIGGER set_updated BEFORE UPDATE ON public.users FOR EACH ROW EXECUTE FUNCTION touch()',
        )
        drop, create = generator.generate_trigger(trigger)
        assert drop == 'DROP TRIGGER IF EXISTS "set_updated" ON "public"."users"'
        assert create.startswith('CREATE TRIGGER set_updated')


class TestSecurity:
    """Test RLS, policy and grant statements."""

    def test_table_security(self, generator):
        security = TableSecurityDescriptor(schema='public', name='users', definition='', rls_enabled=True, rls_forced=True)
        assert generator.generate_table_security(security) == [
            'ALTER TABLE "public"."users" ENABLE ROW LEVEL SECURITY',
            'ALTER TABLE "public"."users" FORCE ROW LEVEL SECURITY',
        ]

    def test_table_security_disabled(self, generator):
        security = TableSecurityDescriptor(schema='public', name='users', definition='')
        assert generator.generate_table_security(security) == []

    def test_policy(self, generator):
        policy = PolicyDescriptor(
            schema='public', name='own rows', table='profiles', definition='',
            permissive=True, command='SELECT', roles=('authenticated',),
            using='(auth.uid() = user_id)',
        )
        drop, create = generator.generate_policy(policy)
        assert drop == 'DROP POLICY IF EXISTS "own rows" ON "public"."profiles"'
        assert create == (
            'CREATE POLICY "own rows" ON "public"."profiles"\n'
            '  AS PERMISSIVE\n'
            '  FOR SELECT\n'
            '  TO "authenticated"\n'
            '  USING ((auth.uid() = user_id))'
        )

    def test_restrictive_policy_with_check_and_public(self, generator):
        policy = PolicyDescriptor(
            schema='public', name='p', table='t', definition='',
            permissive=False, command='INSERT', with_check='true',
        )
        create = generator.generate_create_policy(policy)
        assert '  AS RESTRICTIVE' in create
        assert '  TO public' in create
        assert create.endswith('  WITH CHECK (true)')
        assert 'USING' not in create

    def test_grant(self, generator):
        grant = GrantDescriptor(schema='public', name='users', definition='', grantee='anon',
                                privileges=('SELECT', 'INSERT'))
        assert generator.generate_grant(grant) == 'GRANT SELECT, INSERT ON "public"."users" TO "anon"'

    def test_role_and_schema_grants(self, generator):
        assert 'CREATE ROLE "anon" NOLOGIN' in generator.generate_create_role('anon')
        assert generator.generate_schema_usage_grants(['app'], roles=('anon',)) == [
            'GRANT USAGE ON SCHEMA "app" TO "anon"',
        ]
        assert generator.generate_sequence_grants(['app'])[0] == (
            'GRANT USAGE, SELECT ON ALL SEQUENCES IN SCHEMA "app" TO "anon", "authenticated", "service_role"'
        )
        assert generator.generate_function_grants(['app'], roles=('anon',)) == [
            'GRANT EXECUTE ON ALL FUNCTIONS IN SCHEMA "app" TO "anon"',
        ]
