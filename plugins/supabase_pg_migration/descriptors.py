"""
Typed descriptors for catalog objects and run statistics.

Every catalog object the extractor returns is one of the frozen dataclasses
below. Each carries its schema-qualified name and a ``definition`` string that
can be replayed against the target. Ordered fields (column order, enum labels,
privilege and role lists) are kept as tuples in the exact order the catalog
returned them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import time

from supabase_pg_migration.utils import qualified_name, quote_identifier


class ObjectKind(str, Enum):
    """Kinds of catalog objects handled by the migration."""
    EXTENSION = "extension"
    ENUM = "enum"
    SEQUENCE = "sequence"
    TABLE = "table"
    CONSTRAINT = "constraint"
    INDEX = "index"
    VIEW = "view"
    FUNCTION = "function"
    TRIGGER = "trigger"
    TABLE_SECURITY = "table_security"
    POLICY = "policy"
    GRANT = "grant"
    SCHEMA = "schema"
    ROLE = "role"
    STATEMENT = "statement"


class ConstraintType(str, Enum):
    """``pg_constraint.contype`` values."""
    PRIMARY = "p"
    UNIQUE = "u"
    CHECK = "c"
    FOREIGN = "f"
    EXCLUSION = "x"

    @property
    def is_foreign_key(self) -> bool:
        return self is ConstraintType.FOREIGN


@dataclass(frozen=True)
class ObjectDescriptor:
    """Base for all descriptors."""
    schema: str
    name: str
    definition: str

    kind = ObjectKind.STATEMENT

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def quoted_name(self) -> str:
        return qualified_name(self.schema, self.name)


@dataclass(frozen=True)
class ColumnInfo:
    """A table column as reported by information_schema.columns."""
    name: str
    data_type: str
    udt_schema: Optional[str] = None
    udt_name: Optional[str] = None
    character_maximum_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    is_nullable: bool = True
    column_default: Optional[str] = None
    identity_generation: Optional[str] = None

    @property
    def is_json(self) -> bool:
        return (self.udt_name or self.data_type).lower() in ('json', 'jsonb')

    def render_type(self) -> str:
        """Render the column type the way CREATE TABLE expects it."""
        data_type = self.data_type
        if data_type == 'USER-DEFINED':
            return qualified_name(self.udt_schema or 'public', self.udt_name or '')
        if data_type == 'ARRAY':
            element = (self.udt_name or '').lstrip('_')
            return f"{element}[]"
        if data_type == 'character varying' and self.character_maximum_length:
            return f"varchar({self.character_maximum_length})"
        if data_type == 'character' and self.character_maximum_length:
            return f"char({self.character_maximum_length})"
        if data_type == 'numeric' and self.numeric_precision:
            return f"numeric({self.numeric_precision}, {self.numeric_scale or 0})"
        return data_type

    def render(self) -> str:
        parts = [quote_identifier(self.name), self.render_type()]
        if self.identity_generation:
            parts.append(f"GENERATED {self.identity_generation} AS IDENTITY")
        elif self.column_default:
            parts.append(f"DEFAULT {self.column_default}")
        if not self.is_nullable:
            parts.append('NOT NULL')
        return ' '.join(parts)


@dataclass(frozen=True)
class ExtensionDescriptor(ObjectDescriptor):
    kind = ObjectKind.EXTENSION

    @property
    def qualified_name(self) -> str:
        return self.name


@dataclass(frozen=True)
class EnumDescriptor(ObjectDescriptor):
    labels: Tuple[str, ...] = ()

    kind = ObjectKind.ENUM


@dataclass(frozen=True)
class SequenceDescriptor(ObjectDescriptor):
    start_value: int = 1
    min_value: int = 1
    max_value: int = 9223372036854775807
    increment_by: int = 1
    cycle: bool = False
    cache_size: int = 1
    last_value: Optional[int] = None

    kind = ObjectKind.SEQUENCE

    @property
    def restore_value(self) -> int:
        """Value passed to setval(); falls back to the start value."""
        return self.last_value if self.last_value is not None else self.start_value


@dataclass(frozen=True)
class TableDescriptor(ObjectDescriptor):
    columns: Tuple[ColumnInfo, ...] = ()
    primary_key: Tuple[str, ...] = ()
    row_count: Optional[int] = None

    kind = ObjectKind.TABLE

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]


@dataclass(frozen=True)
class ConstraintDescriptor(ObjectDescriptor):
    table: str = ''
    constraint_type: ConstraintType = ConstraintType.CHECK

    kind = ObjectKind.CONSTRAINT

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.name}"

    @property
    def is_foreign_key(self) -> bool:
        return self.constraint_type.is_foreign_key


@dataclass(frozen=True)
class IndexDescriptor(ObjectDescriptor):
    table: str = ''

    kind = ObjectKind.INDEX


@dataclass(frozen=True)
class ViewDescriptor(ObjectDescriptor):
    kind = ObjectKind.VIEW


@dataclass(frozen=True)
class FunctionDescriptor(ObjectDescriptor):
    arguments: str = ''
    identity_arguments: str = ''
    return_type: str = ''
    language: str = ''
    volatility: str = ''
    is_strict: bool = False
    security_definer: bool = False

    kind = ObjectKind.FUNCTION

    @property
    def signature(self) -> str:
        return f"{self.qualified_name}({self.identity_arguments})"


@dataclass(frozen=True)
class TriggerDescriptor(ObjectDescriptor):
    table: str = ''
    timing: str = ''
    events: str = ''
    function_schema: str = ''
    function_name: str = ''

    kind = ObjectKind.TRIGGER

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.name}"


@dataclass(frozen=True)
class TableSecurityDescriptor(ObjectDescriptor):
    """Row-level-security flags of one table (``name`` is the table)."""
    rls_enabled: bool = False
    rls_forced: bool = False

    kind = ObjectKind.TABLE_SECURITY


@dataclass(frozen=True)
class PolicyDescriptor(ObjectDescriptor):
    table: str = ''
    permissive: bool = True
    command: str = 'ALL'
    roles: Tuple[str, ...] = ()
    using: Optional[str] = None
    with_check: Optional[str] = None

    kind = ObjectKind.POLICY

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.name}"


@dataclass(frozen=True)
class GrantDescriptor(ObjectDescriptor):
    """Table privileges held by one grantee (``name`` is the table)."""
    grantee: str = ''
    privileges: Tuple[str, ...] = ()

    kind = ObjectKind.GRANT

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}:{self.grantee}"


@dataclass(frozen=True)
class TransferCursor:
    """Paging position for one table's transfer."""
    table: str
    offset: int
    page_size: int
    order_by: Tuple[str, ...] = ()

    def advance(self, fetched: int) -> 'TransferCursor':
        return TransferCursor(self.table, self.offset + fetched, self.page_size, self.order_by)


class TransferStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TableTransferResult:
    """Outcome of transferring one table."""
    table: str
    total_rows: int
    migrated_rows: int = 0
    pages: int = 0
    duration_seconds: float = 0.0
    status: TransferStatus = TransferStatus.SUCCESS
    error: Optional[str] = None


@dataclass
class KindCounts:
    applied: int = 0
    failed: int = 0


@dataclass
class StorageStatistics:
    buckets_created: int = 0
    buckets_failed: int = 0
    files_uploaded: int = 0
    files_failed: int = 0
    total_bytes: int = 0
    skipped: bool = False


@dataclass
class RunStatistics:
    """
    Counters accumulated during one stage or one full run.

    Only the orchestrator and the transfer engine record into it; once
    ``finish()`` has been called the counters are frozen and further
    recording raises ``RuntimeError``.
    """
    objects: Dict[ObjectKind, KindCounts] = field(default_factory=dict)
    tables: List[TableTransferResult] = field(default_factory=list)
    object_errors: List[Exception] = field(default_factory=list)
    storage: Optional[StorageStatistics] = None
    stages_run: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def _check_open(self) -> None:
        if self.finished_at is not None:
            raise RuntimeError("Run statistics are read-only once the run has finished")

    def record_applied(self, kind: ObjectKind) -> None:
        self._check_open()
        self.objects.setdefault(kind, KindCounts()).applied += 1

    def record_failed(self, kind: ObjectKind, error: Optional[Exception] = None) -> None:
        self._check_open()
        self.objects.setdefault(kind, KindCounts()).failed += 1
        if error is not None:
            self.object_errors.append(error)

    def record_table(self, result: TableTransferResult) -> None:
        self._check_open()
        self.tables.append(result)

    def record_storage(self, stats: StorageStatistics) -> None:
        self._check_open()
        self.storage = stats

    def record_stage(self, stage: str) -> None:
        self._check_open()
        self.stages_run.append(stage)

    def finish(self) -> 'RunStatistics':
        if self.finished_at is None:
            self.finished_at = time.time()
        return self

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    @property
    def applied_count(self) -> int:
        return sum(c.applied for c in self.objects.values())

    @property
    def failed_count(self) -> int:
        return sum(c.failed for c in self.objects.values())

    @property
    def migrated_rows(self) -> int:
        return sum(t.migrated_rows for t in self.tables)

    def tables_with_status(self, status: TransferStatus) -> List[TableTransferResult]:
        return [t for t in self.tables if t.status is status]

    def summary(self) -> Dict[str, Any]:
        return {
            'stages': list(self.stages_run),
            'objects_applied': self.applied_count,
            'objects_failed': self.failed_count,
            'by_kind': {
                kind.value: {'applied': c.applied, 'failed': c.failed}
                for kind, c in self.objects.items()
            },
            'tables_success': len(self.tables_with_status(TransferStatus.SUCCESS)),
            'tables_failed': len(self.tables_with_status(TransferStatus.FAILED)),
            'tables_skipped': len(self.tables_with_status(TransferStatus.SKIPPED)),
            'rows_migrated': self.migrated_rows,
            'elapsed_seconds': self.elapsed_seconds,
        }
