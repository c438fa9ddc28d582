"""
Supabase Instance Migration DAG

Copies one Supabase / PostgreSQL instance to another, one task per stage:

1. Check connections
2. schema -> functions -> triggers -> data -> rls -> grants -> storage -> verify
3. Summarize the run

Stages toggled off are skipped. With mode "plan", "export" or "apply" the
stage tasks are skipped and a single task runs the whole selection in that
mode instead (plan logs what would be migrated, export writes the SQL files,
apply replays an SQL file on the target).

Connections come from the Airflow connection ids when given, otherwise from
the SOURCE_* / TARGET_* environment variables.
"""

from airflow.decorators import dag, task
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import Any, Dict, List, Optional
import contextlib
import logging

from supabase_pg_migration.config import create_providers, load_config
from supabase_pg_migration.connections import ConnectionProvider
from supabase_pg_migration.orchestrator import MigrationOrchestrator, RunMode, Stage

logger = logging.getLogger(__name__)


def _selected_stages(params: Dict[str, Any]) -> List[Stage]:
    chosen = [stage for stage in Stage.canonical() if params.get(f"run_{stage.value}")]
    return chosen or Stage.canonical()


def _hook_provider(conn_id: str, label: str) -> ConnectionProvider:
    from airflow.providers.postgres.hooks.postgres import PostgresHook

    return ConnectionProvider(PostgresHook(postgres_conn_id=conn_id).get_uri(), label=label)


@contextlib.contextmanager
def _orchestrator(params: Dict[str, Any], source_needed: bool = True, target_needed: bool = True):
    """Build an orchestrator with initialized pools, closing them on exit."""
    config = load_config(
        schemas=params.get("schemas") or None,
        batch_size=params.get("batch_size"),
        output_dir=params.get("output_dir") or None,
    )
    source, target = create_providers(config)
    if params.get("source_conn_id"):
        source = _hook_provider(params["source_conn_id"], "source")
    if params.get("target_conn_id"):
        target = _hook_provider(params["target_conn_id"], "target")

    try:
        if source_needed:
            source.initialize()
        if target_needed:
            target.initialize()
        yield MigrationOrchestrator(config, source, target)
    finally:
        source.close()
        target.close()


@dag(
    dag_id="supabase_migration",
    start_date=datetime(2025, 1, 1),
    schedule=None,
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 0,
        "retry_delay": timedelta(seconds=30),
    },
    params={
        "source_conn_id": Param(
            default="",
            type="string",
            description="Postgres connection ID of the source (empty: SOURCE_* env vars)"
        ),
        "target_conn_id": Param(
            default="",
            type="string",
            description="Postgres connection ID of the target (empty: TARGET_* env vars)"
        ),
        "schemas": Param(
            default=["public"],
            type="array",
            description="Schemas to migrate; auth and storage are always excluded"
        ),
        "batch_size": Param(default=1000, type="integer", minimum=1),
        "mode": Param(
            default="live",
            type="string",
            enum=[m.value for m in RunMode],
            description="live, plan (no writes), export (SQL files) or apply (replay SQL file)"
        ),
        "output_dir": Param(default="", type="string", description="Export directory"),
        "apply_file": Param(default="migration-complete.sql", type="string"),
        **{
            f"run_{stage.value}": Param(default=False, type="boolean",
                                        description=f"Run the {stage.value} stage (none selected: all)")
            for stage in Stage.canonical()
        },
    },
    tags=["supabase", "postgres", "migration"],
)
def supabase_migration():
    """Migrate a Supabase instance stage by stage."""

    @task
    def check_connections(**context) -> str:
        params = context["params"]
        mode = RunMode(params["mode"])
        source_needed = mode is not RunMode.APPLY
        target_needed = mode in (RunMode.LIVE, RunMode.APPLY)

        with _orchestrator(params, source_needed, target_needed) as orchestrator:
            orchestrator.test_connections(source=source_needed, target=target_needed)
        return "connections ok"

    @task
    def run_offline_mode(connection_status: str, **context) -> Optional[Dict[str, Any]]:
        """Run the whole selection in plan, export or apply mode."""
        params = context["params"]
        mode = RunMode(params["mode"])
        if mode is RunMode.LIVE:
            logger.info("Live mode: stages run as separate tasks")
            return None

        with _orchestrator(params, mode is not RunMode.APPLY, mode is RunMode.APPLY) as orchestrator:
            stats = orchestrator.run(_selected_stages(params), mode=mode, apply_file=params["apply_file"])
        return stats.summary()

    @task
    def run_stage(stage: str, previous: Optional[Dict[str, Any]] = None, **context) -> Optional[Dict[str, Any]]:
        params = context["params"]
        if RunMode(params["mode"]) is not RunMode.LIVE:
            logger.info(f"Skipping stage {stage} (mode {params['mode']})")
            return None

        selected = _selected_stages(params)
        if Stage(stage) not in selected:
            logger.info(f"Skipping stage {stage} (not selected)")
            return None

        with _orchestrator(params) as orchestrator:
            stats = orchestrator.run_stage(stage, selected)
            if orchestrator.report:
                context["ti"].xcom_push(key="report", value=orchestrator.report)

        summary = stats.summary()
        logger.info(
            f"Stage {stage}: {summary['objects_applied']} applied, {summary['objects_failed']} failed, "
            f"{summary['rows_migrated']:,} rows"
        )
        return summary

    @task(trigger_rule="all_done")
    def summarize(stage_results: List[Optional[Dict[str, Any]]], **context) -> Dict[str, Any]:
        results = [r for r in stage_results if r]
        summary = {
            "stages": [s for r in results for s in r.get("stages", [])],
            "objects_applied": sum(r.get("objects_applied", 0) for r in results),
            "objects_failed": sum(r.get("objects_failed", 0) for r in results),
            "rows_migrated": sum(r.get("rows_migrated", 0) for r in results),
        }
        logger.info(
            f"Migration complete: stages {', '.join(summary['stages']) or 'none'}; "
            f"{summary['objects_applied']} objects applied, {summary['objects_failed']} failed, "
            f"{summary['rows_migrated']:,} rows migrated"
        )
        return summary

    # Define task flow
    connection_status = check_connections()
    offline_result = run_offline_mode(connection_status)

    results = []
    previous = None
    for stage in Stage.canonical():
        stage_task = run_stage.override(task_id=f"migrate_{stage.value}")
        current = stage_task(stage.value, previous)
        if previous is None:
            connection_status >> current
        previous = current
        results.append(current)

    summarize([offline_result] + results)


supabase_migration()
