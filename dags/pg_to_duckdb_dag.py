from __future__ import annotations

import dataclasses
import logging
import os
from typing import Any, Dict

import pendulum
from airflow.decorators import dag, task
from airflow.exceptions import AirflowFailException
from airflow.hooks.base import BaseHook
from airflow.models import Variable

from pg_to_duckdb_sync.TableMapping import SyncMode
from pg_to_duckdb_sync.alerts import format_failure_message, send_discord_alert
from pg_to_duckdb_sync.catalog import Catalog, load_catalog
from pg_to_duckdb_sync.engine import SyncEngine
from pg_to_duckdb_sync.progress import log_observer
from pg_to_duckdb_sync.settings import SyncSettings, settings_from_env

log = logging.getLogger(__name__)

# ------------------------ Configuration helpers ------------------------

def _load_catalog() -> Catalog:
    json_config_path = Variable.get("JSON_CONFIG_PATH", default_var="/opt/airflow/dags/duckdb_catalog.json").strip()
    return load_catalog(json_config_path)


def _settings(catalog: Catalog) -> SyncSettings:
    """
    Connections come from Airflow (source Connection, MotherDuck Variables), falling back
    to the worker environment; batching and retry come from the catalog.
    """
    env = dict(os.environ)
    conn_id = catalog.pg_conn_id or Variable.get("PG_CONN_ID", default_var="postgres_default")
    env["DATABASE_URL"] = BaseHook.get_connection(conn_id).get_uri()
    for key in ("MOTHERDUCK_TOKEN", "MOTHERDUCK_DATABASE", "MOTHERDUCK_SCHEMA"):
        value = Variable.get(key, default_var=env.get(key, ""))
        if value:
            env[key] = value
    settings = settings_from_env(env)
    return dataclasses.replace(
        settings, batch_size=catalog.batch_size, max_records=catalog.max_records, retry=catalog.retry
    )


def _engine() -> SyncEngine:
    catalog = _load_catalog()
    return SyncEngine.from_settings(_settings(catalog), catalog.mappings, observer=log_observer(log))


# ------------------------ DAG creation helpers ------------------------

def _build_sync_dag(mode: SyncMode, dag_id: str, schedule: str | None):

    @dag(
        dag_id=dag_id,
        schedule=schedule,
        start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
        catchup=False,
        max_active_runs=1,
        tags=["pg2duckdb", str(mode)],
        description=f"{mode} sync PostgreSQL → DuckDB/MotherDuck",
    )
    def sync_dag():

        @task(do_xcom_push=False)
        def check_connectivity() -> None:
            report = _engine().test_connectivity()
            log.info("Connectivity: %s", report)
            if not report["ok"]:
                errors = {side: report[side]["error"] for side in ("source", "target") if not report[side]["ok"]}
                raise AirflowFailException(f"Connectivity check failed: {errors}")

        @task
        def sync_tables() -> Dict[str, Any]:
            log.info("Running %s sync", mode)
            result = _engine().sync(mode)
            return result.as_dict()  # JSON-safe for XCom

        @task(do_xcom_push=False)
        def alerting(result: Dict[str, Any]) -> None:
            message = format_failure_message(result, run_label=dag_id)
            if message is None:
                log.info("All %d table(s) synced; no alerting.", len(result.get("tables", [])))
                return
            send_discord_alert(message)
            raise AirflowFailException(
                f"Sync failed for table(s): {', '.join(result.get('failed_tables', [])) or 'none (cancelled)'}"
            )

        synced = sync_tables()
        check_connectivity() >> synced
        alerting(synced)

    return sync_dag()


incremental_dag = _build_sync_dag(SyncMode.INCREMENTAL, "pg_to_duckdb_incremental", "*/15 * * * *")
full_dag = _build_sync_dag(SyncMode.FULL, "pg_to_duckdb_full", None)
