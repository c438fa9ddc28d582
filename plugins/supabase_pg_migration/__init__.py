"""
Supabase / PostgreSQL Instance Migration Utilities

This package copies a Supabase (or plain PostgreSQL) database instance to
another one: schema objects, functions, triggers, row data, row level
security, grants and Storage buckets, either live or through exported SQL
files.

Modules:
- config: Environment driven settings and connection provider setup
- connections: Pooled connections and Supabase pooler auto-detection
- schema_extractor: Read schema objects from the source catalogs
- ddl_generator: Render idempotent DDL for extracted objects
- dependency_resolver: Order tables so FK parents come first
- data_transfer: Batched row copy with triggers suspended
- sql_segmenter: Split SQL text into statements (dollar-quote aware)
- sql_exporter: Write the migration SQL documents
- sql_applier: Replay an SQL document on the target
- storage: Copy Storage buckets and files over the REST API
- validation: Row count verification and the run report
- orchestrator: Stage sequencing and error classification
- cli: Command line entry point

Environment Options:
- MIGRATE_SCHEMAS=public,app: Schemas to migrate (auth and storage are never migrated)
- BATCH_SIZE=N: Rows per batch in the data stage
- EXCLUDE_TABLES=a,b: Extra tables to skip
"""

__version__ = "1.0.0"

# Core modules
from supabase_pg_migration import config
from supabase_pg_migration import connections
from supabase_pg_migration import schema_extractor
from supabase_pg_migration import ddl_generator
from supabase_pg_migration import dependency_resolver
from supabase_pg_migration import data_transfer
from supabase_pg_migration import validation

# SQL file modules
from supabase_pg_migration import sql_segmenter
from supabase_pg_migration import sql_exporter
from supabase_pg_migration import sql_applier

# Storage and orchestration
from supabase_pg_migration import storage
from supabase_pg_migration import orchestrator

__all__ = [
    "config",
    "connections",
    "schema_extractor",
    "ddl_generator",
    "dependency_resolver",
    "data_transfer",
    "validation",
    "sql_segmenter",
    "sql_exporter",
    "sql_applier",
    "storage",
    "orchestrator",
]
