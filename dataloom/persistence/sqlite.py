"""SQLite implementation of the engine repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from ..contracts import (
    ACTIVE_STATUSES,
    Flow,
    FlowStepConfig,
    Job,
    JobStatus,
    Pipeline,
    PipelineStep,
    ProcessedItem,
    SchedulingConfig,
    utcnow,
)
from .repository import Repository


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _flow_suffix_pattern(flow_id: int) -> str:
    return f"%\\_{flow_id}"


class SQLiteRepository(Repository):
    """Persist engine state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pipelines (
                pipeline_id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                steps TEXT NOT NULL,
                scheduling_config TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_run_at TEXT,
                last_maintenance_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS flows (
                flow_id INTEGER PRIMARY KEY AUTOINCREMENT,
                pipeline_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                flow_config TEXT NOT NULL,
                scheduling_config TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_run_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                job_id INTEGER PRIMARY KEY AUTOINCREMENT,
                flow_id INTEGER NOT NULL,
                pipeline_id INTEGER NOT NULL,
                status TEXT NOT NULL,
                trigger_source TEXT NOT NULL,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                error_message TEXT,
                skip_reason TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS engine_data (
                job_id INTEGER PRIMARY KEY,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS processed_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                flow_step_id TEXT NOT NULL,
                source_type TEXT NOT NULL,
                item_identifier TEXT NOT NULL,
                job_id INTEGER,
                processed_at TEXT NOT NULL,
                UNIQUE (flow_step_id, item_identifier)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_flow ON jobs (flow_id)")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_processed_job ON processed_items (job_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_pipeline(row: sqlite3.Row) -> Pipeline:
        return Pipeline(
            pipeline_id=row["pipeline_id"],
            name=row["name"],
            steps=[PipelineStep.model_validate(s) for s in json.loads(row["steps"])],
            scheduling_config=SchedulingConfig.model_validate_json(
                row["scheduling_config"]
            ),
            created_at=row["created_at"],
            last_run_at=row["last_run_at"],
            last_maintenance_at=row["last_maintenance_at"],
        )

    @staticmethod
    def _row_to_flow(row: sqlite3.Row) -> Flow:
        flow_config = {
            key: FlowStepConfig.model_validate(value)
            for key, value in json.loads(row["flow_config"]).items()
        }
        return Flow(
            flow_id=row["flow_id"],
            pipeline_id=row["pipeline_id"],
            name=row["name"],
            flow_config=flow_config,
            scheduling_config=SchedulingConfig.model_validate_json(
                row["scheduling_config"]
            ),
            created_at=row["created_at"],
            last_run_at=row["last_run_at"],
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            flow_id=row["flow_id"],
            pipeline_id=row["pipeline_id"],
            status=JobStatus(row["status"]),
            trigger=row["trigger_source"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error_message=row["error_message"],
            skip_reason=row["skip_reason"],
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> ProcessedItem:
        return ProcessedItem(
            record_id=row["id"],
            flow_step_id=row["flow_step_id"],
            source_type=row["source_type"],
            item_identifier=row["item_identifier"],
            job_id=row["job_id"],
            processed_at=row["processed_at"],
        )

    # ------------------------------------------------------------------
    # Pipelines
    async def create_pipeline(
        self, name: str, steps: list[PipelineStep] | None = None
    ) -> Pipeline:
        steps = list(steps or [])
        created_at = utcnow()
        scheduling_config = SchedulingConfig()
        cur = await asyncio.to_thread(
            self._execute,
            "INSERT INTO pipelines (name, steps, scheduling_config, created_at) VALUES (?, ?, ?, ?)",
            name,
            json.dumps([s.model_dump(mode="json") for s in steps]),
            scheduling_config.model_dump_json(),
            created_at.isoformat(),
        )
        return Pipeline(
            pipeline_id=cur.lastrowid,
            name=name,
            steps=steps,
            scheduling_config=scheduling_config,
            created_at=created_at,
        )

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM pipelines WHERE pipeline_id = ?", pipeline_id
        )
        return self._row_to_pipeline(row) if row else None

    async def list_pipelines(self) -> list[Pipeline]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM pipelines ORDER BY pipeline_id"
        )
        return [self._row_to_pipeline(r) for r in rows]

    async def save_pipeline(self, pipeline: Pipeline) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE pipelines
            SET name = ?, steps = ?, scheduling_config = ?, last_run_at = ?, last_maintenance_at = ?
            WHERE pipeline_id = ?
            """,
            pipeline.name,
            json.dumps([s.model_dump(mode="json") for s in pipeline.steps]),
            pipeline.scheduling_config.model_dump_json(),
            _ts(pipeline.last_run_at),
            _ts(pipeline.last_maintenance_at),
            pipeline.pipeline_id,
        )

    async def delete_pipeline(self, pipeline_id: int) -> bool:
        cur = await asyncio.to_thread(
            self._execute, "DELETE FROM pipelines WHERE pipeline_id = ?", pipeline_id
        )
        if not cur.rowcount:
            return False
        for flow in await self.list_flows(pipeline_id):
            await self.delete_flow(flow.flow_id)
        return True

    # ------------------------------------------------------------------
    # Flows
    async def create_flow(
        self,
        pipeline_id: int,
        name: str,
        scheduling_config: SchedulingConfig | None = None,
    ) -> Flow:
        scheduling_config = scheduling_config or SchedulingConfig()
        created_at = utcnow()
        cur = await asyncio.to_thread(
            self._execute,
            "INSERT INTO flows (pipeline_id, name, flow_config, scheduling_config, created_at) VALUES (?, ?, ?, ?, ?)",
            pipeline_id,
            name,
            "{}",
            scheduling_config.model_dump_json(),
            created_at.isoformat(),
        )
        return Flow(
            flow_id=cur.lastrowid,
            pipeline_id=pipeline_id,
            name=name,
            scheduling_config=scheduling_config,
            created_at=created_at,
        )

    async def get_flow(self, flow_id: int) -> Flow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM flows WHERE flow_id = ?", flow_id
        )
        return self._row_to_flow(row) if row else None

    async def list_flows(self, pipeline_id: int | None = None) -> list[Flow]:
        if pipeline_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM flows ORDER BY flow_id"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM flows WHERE pipeline_id = ? ORDER BY flow_id",
                pipeline_id,
            )
        return [self._row_to_flow(r) for r in rows]

    async def save_flow(self, flow: Flow) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE flows
            SET name = ?, flow_config = ?, scheduling_config = ?, last_run_at = ?
            WHERE flow_id = ?
            """,
            flow.name,
            json.dumps(
                {k: v.model_dump(mode="json") for k, v in flow.flow_config.items()}
            ),
            flow.scheduling_config.model_dump_json(),
            _ts(flow.last_run_at),
            flow.flow_id,
        )

    async def delete_flow(self, flow_id: int) -> bool:
        cur = await asyncio.to_thread(
            self._execute, "DELETE FROM flows WHERE flow_id = ?", flow_id
        )
        if not cur.rowcount:
            return False
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM engine_data WHERE job_id IN (SELECT job_id FROM jobs WHERE flow_id = ?)",
            flow_id,
        )
        await asyncio.to_thread(
            self._execute, "DELETE FROM jobs WHERE flow_id = ?", flow_id
        )
        await self.delete_processed_items(flow_id=flow_id)
        return True

    # ------------------------------------------------------------------
    # Jobs
    async def create_job(self, flow_id: int, pipeline_id: int, trigger: str) -> Job:
        job = Job(job_id=0, flow_id=flow_id, pipeline_id=pipeline_id, trigger=trigger)
        cur = await asyncio.to_thread(
            self._execute,
            "INSERT INTO jobs (flow_id, pipeline_id, status, trigger_source, created_at) VALUES (?, ?, ?, ?, ?)",
            flow_id,
            pipeline_id,
            job.status.value,
            trigger,
            job.created_at.isoformat(),
        )
        return job.model_copy(update={"job_id": cur.lastrowid})

    async def get_job(self, job_id: int) -> Job | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM jobs WHERE job_id = ?", job_id
        )
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self, flow_id: int | None = None, status: JobStatus | None = None
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if flow_id is not None:
            clauses.append("flow_id = ?")
            params.append(flow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT * FROM jobs {where} ORDER BY job_id DESC", *params
        )
        return [self._row_to_job(r) for r in rows]

    async def start_job(self, job_id: int) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE jobs SET status = ?, started_at = ? WHERE job_id = ?",
            JobStatus.PROCESSING.value,
            utcnow().isoformat(),
            job_id,
        )

    async def complete_job(
        self,
        job_id: int,
        status: JobStatus,
        error_message: str | None = None,
        skip_reason: str | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE jobs
            SET status = ?, completed_at = ?, error_message = ?, skip_reason = ?
            WHERE job_id = ?
            """,
            status.value,
            utcnow().isoformat(),
            error_message,
            skip_reason,
            job_id,
        )

    async def fail_stuck_jobs(
        self, older_than: datetime, pipeline_id: int | None = None
    ) -> int:
        statuses = [s.value for s in ACTIVE_STATUSES]
        query = f"""
            UPDATE jobs
            SET status = ?, completed_at = ?, error_message = ?
            WHERE status IN ({', '.join('?' for _ in statuses)}) AND created_at < ?
        """
        params: list[Any] = [
            JobStatus.FAILED.value,
            utcnow().isoformat(),
            "Job timed out",
            *statuses,
            older_than.isoformat(),
        ]
        if pipeline_id is not None:
            query += " AND pipeline_id = ?"
            params.append(pipeline_id)
        cur = await asyncio.to_thread(self._execute, query, *params)
        return cur.rowcount

    async def delete_jobs_before(
        self,
        older_than: datetime,
        statuses: Iterable[JobStatus],
        pipeline_id: int | None = None,
    ) -> int:
        values = [s.value for s in statuses]
        if not values:
            return 0
        condition = f"status IN ({', '.join('?' for _ in values)}) AND created_at < ?"
        params: list[Any] = [*values, older_than.isoformat()]
        if pipeline_id is not None:
            condition += " AND pipeline_id = ?"
            params.append(pipeline_id)
        await asyncio.to_thread(
            self._execute,
            f"DELETE FROM engine_data WHERE job_id IN (SELECT job_id FROM jobs WHERE {condition})",
            *params,
        )
        cur = await asyncio.to_thread(
            self._execute, f"DELETE FROM jobs WHERE {condition}", *params
        )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Engine data
    async def get_engine_data(self, job_id: int) -> dict[str, Any]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM engine_data WHERE job_id = ?", job_id
        )
        return json.loads(row["data"]) if row else {}

    async def merge_engine_data(self, job_id: int, values: dict[str, Any]) -> None:
        current = await self.get_engine_data(job_id)
        current.update(values)
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO engine_data (job_id, data) VALUES (?, ?)
            ON CONFLICT(job_id) DO UPDATE SET data = excluded.data
            """,
            job_id,
            json.dumps(current, default=str),
        )

    async def delete_engine_data(self, job_id: int) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM engine_data WHERE job_id = ?", job_id
        )

    # ------------------------------------------------------------------
    # Processed items
    async def add_processed_item(
        self,
        flow_step_id: str,
        source_type: str,
        item_identifier: str,
        job_id: int | None,
    ) -> bool:
        cur = await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO processed_items
                (flow_step_id, source_type, item_identifier, job_id, processed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            flow_step_id,
            source_type,
            item_identifier,
            job_id,
            utcnow().isoformat(),
        )
        return cur.rowcount == 1

    async def has_processed_item(self, flow_step_id: str, item_identifier: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM processed_items WHERE flow_step_id = ? AND item_identifier = ?",
            flow_step_id,
            item_identifier,
        )
        return row is not None

    async def list_processed_items(
        self, flow_step_id: str | None = None, job_id: int | None = None
    ) -> list[ProcessedItem]:
        clauses: list[str] = []
        params: list[Any] = []
        if flow_step_id is not None:
            clauses.append("flow_step_id = ?")
            params.append(flow_step_id)
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT * FROM processed_items {where} ORDER BY id", *params
        )
        return [self._row_to_item(r) for r in rows]

    async def delete_processed_items(
        self,
        flow_id: int | None = None,
        flow_step_id: str | None = None,
        job_id: int | None = None,
    ) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        if flow_id is not None:
            clauses.append("flow_step_id LIKE ? ESCAPE '\\'")
            params.append(_flow_suffix_pattern(flow_id))
        if flow_step_id is not None:
            clauses.append("flow_step_id = ?")
            params.append(flow_step_id)
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if not clauses:
            raise ValueError("At least one deletion criterion is required")
        cur = await asyncio.to_thread(
            self._execute,
            f"DELETE FROM processed_items WHERE {' AND '.join(clauses)}",
            *params,
        )
        return cur.rowcount

    async def delete_processed_item(self, record_id: int) -> bool:
        cur = await asyncio.to_thread(
            self._execute, "DELETE FROM processed_items WHERE id = ?", record_id
        )
        return cur.rowcount == 1
