"""
Migration Orchestration Module

Sequences the migration stages and applies extracted objects to the target.

Stages always run in the canonical order

    schema -> functions -> triggers -> data -> rls -> grants -> storage -> verify

whatever order they were selected in. Every per-object failure goes through
``classify_error``: objects that already exist count as applied, other
statement errors are logged and counted while the stage continues, and
connection errors abort the run.

Besides the live migration the orchestrator supports three other modes:
plan (log what each stage would touch, no writes), export (write the SQL
documents) and apply (replay an SQL document on the target).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import logging

from supabase_pg_migration.data_transfer import BatchTransferEngine
from supabase_pg_migration.ddl_generator import SUPABASE_ROLES, DDLGenerator
from supabase_pg_migration.dependency_resolver import resolve_table_order
from supabase_pg_migration.descriptors import ObjectDescriptor, ObjectKind, RunStatistics
from supabase_pg_migration.errors import (
    ErrorClass,
    MigrationConnectionError,
    ObjectApplyError,
    classify_error,
)
from supabase_pg_migration.schema_extractor import SchemaExtractor
from supabase_pg_migration.sql_applier import SQLApplier
from supabase_pg_migration.sql_exporter import COMPLETE_FILE, SQLExporter
from supabase_pg_migration.storage import migrate_storage, verify_storage
from supabase_pg_migration.utils import statement_preview
from supabase_pg_migration.validation import generate_migration_report, MigrationValidator

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    SCHEMA = "schema"
    FUNCTIONS = "functions"
    TRIGGERS = "triggers"
    DATA = "data"
    RLS = "rls"
    GRANTS = "grants"
    STORAGE = "storage"
    VERIFY = "verify"

    @classmethod
    def canonical(cls) -> List['Stage']:
        return list(cls)


class RunMode(str, Enum):
    LIVE = "live"
    PLAN = "plan"
    EXPORT = "export"
    APPLY = "apply"


@dataclass
class MigrationPlan:
    """Selected stages in canonical order, each bound to its handler."""
    stages: List[Stage] = field(default_factory=list)
    handlers: Dict[Stage, Callable[[], None]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        selected: Optional[Iterable] = None,
        handlers: Optional[Dict[Stage, Callable[[], None]]] = None,
    ) -> 'MigrationPlan':
        """
        Build a plan from a stage selection.

        Args:
            selected: Stage members or names; empty or None selects all
            handlers: Callable per stage

        Returns:
            MigrationPlan with duplicates removed and stages reordered
        """
        chosen = {Stage(s) for s in (selected or [])}
        stages = [s for s in Stage.canonical() if not chosen or s in chosen]
        return cls(stages=stages, handlers=dict(handlers or {}))

    def __contains__(self, stage) -> bool:
        return Stage(stage) in self.stages

    def __iter__(self) -> Iterator[Tuple[Stage, Callable[[], None]]]:
        for stage in self.stages:
            yield stage, self.handlers[stage]


class MigrationOrchestrator:
    """Run migration stages against a source and a target database."""

    def __init__(
        self,
        config,
        source,
        target,
        extractor: Optional[SchemaExtractor] = None,
        transfer_engine: Optional[BatchTransferEngine] = None,
        ddl_generator: Optional[DDLGenerator] = None,
        storage_runner: Callable = migrate_storage,
        storage_verifier: Callable = verify_storage,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: MigrationConfig
            source: Initialized ConnectionProvider for the source
            target: Initialized ConnectionProvider for the target
            extractor: Catalog reader (built from config when omitted)
            transfer_engine: Data stage engine (built from config when omitted)
            ddl_generator: Statement renderer
            storage_runner: Callable(source_settings, target_settings) -> StorageStatistics
            storage_verifier: Callable(source_settings, target_settings) -> per-bucket results
        """
        self.config = config
        self.source = source
        self.target = target
        self.ddl = ddl_generator or DDLGenerator()
        self.extractor = extractor or SchemaExtractor(
            source, config.schemas, config.exclude_tables, self.ddl
        )
        self.transfer_engine = transfer_engine or BatchTransferEngine(
            source, target, config.batch_size
        )
        self.storage_runner = storage_runner
        self.storage_verifier = storage_verifier
        self.stats = RunStatistics()
        self.plan: Optional[MigrationPlan] = None
        self.report: Optional[str] = None
        self.validation_results = None
        self.storage_results = None

    def build_plan(self, stages: Optional[Iterable] = None) -> MigrationPlan:
        handlers = {
            Stage.SCHEMA: self.run_schema,
            Stage.FUNCTIONS: self.run_functions,
            Stage.TRIGGERS: self.run_triggers,
            Stage.DATA: self.run_data,
            Stage.RLS: self.run_rls,
            Stage.GRANTS: self.run_grants,
            Stage.STORAGE: self.run_storage,
            Stage.VERIFY: self.run_verify,
        }
        return MigrationPlan.build(stages, handlers)

    def test_connections(self, source: bool = True, target: bool = True) -> None:
        """Raises MigrationConnectionError when a database is unreachable."""
        logger.info("Testing database connections...")
        if source:
            self.source.test_connection()
        if target:
            self.target.test_connection()

    def run(
        self,
        stages: Optional[Iterable] = None,
        mode: RunMode = RunMode.LIVE,
        apply_file: Optional[str] = None,
        output_dir: Optional[str] = None,
    ) -> RunStatistics:
        """
        Run the migration.

        Args:
            stages: Stage selection (default: all)
            mode: live, plan, export or apply
            apply_file: SQL file for apply mode (default: migration-complete.sql)
            output_dir: Directory for exported files (default: config.output_dir)

        Returns:
            Finished RunStatistics

        Raises:
            MigrationConnectionError: On any connection-level failure
        """
        mode = RunMode(mode)
        self.plan = self.build_plan(stages)
        logger.info(f"Schemas: {', '.join(self.config.schemas)}")
        logger.info(f"Batch size: {self.config.batch_size}")
        logger.info(f"Stages: {', '.join(s.value for s in self.plan.stages)}")
        logger.info(f"Mode: {mode.value}")

        try:
            if mode is RunMode.EXPORT:
                self.test_connections(source=True, target=False)
                self.export_sql(output_dir or self.config.output_dir)
            elif mode is RunMode.APPLY:
                self.test_connections(source=False, target=True)
                self.apply_sql(apply_file or COMPLETE_FILE)
            elif mode is RunMode.PLAN:
                self.test_connections(source=True, target=False)
                self.describe_plan(self.plan)
            else:
                self.test_connections()
                for stage, handler in self.plan:
                    logger.info(f"Starting {stage.value} stage")
                    handler()
                    self.stats.record_stage(stage.value)
        finally:
            self.stats.finish()

        logger.info(f"Migration completed in {self.stats.elapsed_seconds:.2f}s")
        return self.stats

    def run_stage(self, stage, selected: Optional[Iterable] = None) -> RunStatistics:
        """
        Run one stage on its own, as a scheduler task does.

        Args:
            stage: Stage to run
            selected: Full stage selection of the run; decides whether the
                      verify stage also checks storage
        """
        stage = Stage(stage)
        self.plan = self.build_plan(selected or [stage])
        try:
            logger.info(f"Starting {stage.value} stage")
            self.plan.handlers[stage]()
            self.stats.record_stage(stage.value)
        finally:
            self.stats.finish()
        return self.stats

    def _execute(self, conn, statement: str) -> None:
        with conn.cursor() as cursor:
            cursor.execute(statement)

    def _apply_statements(self, conn, kind: ObjectKind, name: str, statements: Sequence[str]) -> bool:
        """
        Execute the statements of one object and record the outcome.

        Returns:
            True when the object counts as applied
        """
        for statement in statements:
            try:
                self._execute(conn, statement)
            except Exception as e:
                error_class = classify_error(e)
                if error_class is ErrorClass.FATAL:
                    raise MigrationConnectionError(f"target DB connection lost: {e}") from e
                if error_class is ErrorClass.IGNORABLE:
                    logger.debug(f"{kind.value} {name}: already exists")
                    continue
                error = ObjectApplyError(f"{kind.value} {name}", str(e).strip())
                self.stats.record_failed(kind, error)
                logger.warning(f"{error} ({statement_preview(statement)})")
                return False

        self.stats.record_applied(kind)
        logger.info(f"✓ {kind.value}: {name}")
        return True

    def _apply(self, conn, descriptor: ObjectDescriptor) -> bool:
        return self._apply_statements(
            conn, descriptor.kind, descriptor.qualified_name, self.ddl.statements_for(descriptor)
        )

    def _apply_all(self, conn, descriptors: Iterable[ObjectDescriptor]) -> None:
        for descriptor in descriptors:
            self._apply(conn, descriptor)

    def run_schema(self) -> None:
        """Schemas, extensions, enums, sequences, tables, constraints, indexes, views."""
        extractor = self.extractor
        with self.target.connection(autocommit=True) as conn:
            for schema in self.config.schemas:
                self._apply_statements(conn, ObjectKind.SCHEMA, schema, [self.ddl.generate_create_schema(schema)])

            self._apply_all(conn, extractor.get_extensions())
            self._apply_all(conn, extractor.get_enums())
            self._apply_all(conn, extractor.get_sequences())

            tables = resolve_table_order(extractor.get_tables(), extractor.get_foreign_key_edges())
            self._apply_all(conn, tables)

            constraints = extractor.get_constraints()
            self._apply_all(conn, (c for c in constraints if not c.is_foreign_key))
            self._apply_all(conn, extractor.get_indexes())
            # Foreign keys once every table exists
            self._apply_all(conn, (c for c in constraints if c.is_foreign_key))

            self._apply_all(conn, extractor.get_views())

    def run_functions(self) -> None:
        functions = self.extractor.get_functions()
        logger.info(f"Found {len(functions)} functions to migrate")
        with self.target.connection(autocommit=True) as conn:
            self._apply_all(conn, functions)

    def run_triggers(self) -> None:
        triggers = self.extractor.get_triggers()
        logger.info(f"Found {len(triggers)} triggers to migrate")
        with self.target.connection(autocommit=True) as conn:
            self._apply_all(conn, triggers)

    def data_tables(self):
        """Tables with row counts, parents before children."""
        return resolve_table_order(
            self.extractor.get_tables_for_data_migration(),
            self.extractor.get_foreign_key_edges(),
        )

    def run_data(self) -> None:
        self.transfer_engine.transfer_tables(self.data_tables(), self.stats)

    def run_rls(self) -> None:
        with self.target.connection(autocommit=True) as conn:
            self._apply_all(conn, (t for t in self.extractor.get_table_security() if t.rls_enabled))
            self._apply_all(conn, self.extractor.get_policies())

    def run_grants(self) -> None:
        schemas = self.config.schemas
        with self.target.connection(autocommit=True) as conn:
            for role in SUPABASE_ROLES:
                self._apply_statements(conn, ObjectKind.ROLE, role, [self.ddl.generate_create_role(role)])

            self._apply_all(conn, self.extractor.get_grants())

            for schema in schemas:
                default_grants = (
                    ("schema usage", self.ddl.generate_schema_usage_grants([schema])),
                    ("sequences", self.ddl.generate_sequence_grants([schema])),
                    ("functions", self.ddl.generate_function_grants([schema])),
                )
                for label, statements in default_grants:
                    for statement in statements:
                        self._apply_statements(conn, ObjectKind.GRANT, f"{schema} ({label})", [statement])

    def run_storage(self) -> None:
        storage_stats = self.storage_runner(self.config.source, self.config.target)
        self.stats.record_storage(storage_stats)

    def run_verify(self) -> None:
        validator = MigrationValidator(self.source, self.target)
        self.validation_results = validator.validate_tables_batch(self.data_tables())

        if self.plan is not None and Stage.STORAGE in self.plan:
            self.storage_results = self.storage_verifier(self.config.source, self.config.target)

        self.report = generate_migration_report(self.validation_results, self.stats, self.storage_results)
        logger.info("\n" + self.report)

    def describe_plan(self, plan: MigrationPlan) -> None:
        """
        Log each selected stage and the objects it would touch.

        Only catalog reads run on the source; nothing is written anywhere.
        """
        extractor = self.extractor
        logger.info("Plan only: nothing will be written")
        for stage in plan.stages:
            objects: List[str] = []
            if stage is Stage.SCHEMA:
                objects += [f"schema {s}" for s in self.config.schemas]
                for getter in (extractor.get_extensions, extractor.get_enums, extractor.get_sequences,
                               extractor.get_tables, extractor.get_constraints, extractor.get_indexes,
                               extractor.get_views):
                    objects += [f"{d.kind.value} {d.qualified_name}" for d in getter()]
            elif stage is Stage.FUNCTIONS:
                objects += [f"function {f.signature}" for f in extractor.get_functions()]
            elif stage is Stage.TRIGGERS:
                objects += [f"trigger {t.qualified_name}" for t in extractor.get_triggers()]
            elif stage is Stage.DATA:
                objects += [f"table {t.qualified_name} ({t.row_count:,} rows)" for t in self.data_tables()]
            elif stage is Stage.RLS:
                objects += [f"rls {t.qualified_name}" for t in extractor.get_table_security() if t.rls_enabled]
                objects += [f"policy {p.qualified_name}" for p in extractor.get_policies()]
            elif stage is Stage.GRANTS:
                objects += [f"role {r}" for r in SUPABASE_ROLES]
                objects += [f"grant {g.qualified_name}" for g in extractor.get_grants()]
            elif stage is Stage.STORAGE:
                configured = self.config.source.has_api_credentials and self.config.target.has_api_credentials
                objects.append("buckets and files" if configured else "skipped (missing credentials)")
            elif stage is Stage.VERIFY:
                objects.append("row counts per table")

            logger.info(f"[{stage.value}] {len(objects)} objects")
            for name in objects:
                logger.info(f"  - {name}")

    def export_sql(self, output_dir: str) -> Dict[str, str]:
        exporter = SQLExporter(self.extractor, self.config.schemas, self.transfer_engine, self.ddl)
        written = exporter.write_documents(output_dir)
        logger.info(f"SQL files exported to {output_dir}")
        return written

    def apply_sql(self, file_path: str):
        applier = SQLApplier(self.target, self.stats)
        return applier.apply_file(file_path)
