"""
SQLite implementations of the store interfaces.

Each method is a point operation on its own connection. Writers that belong to
upstream collaborators (planning operations, loading mappings, appending Print
OS records) live here too so the same database can be seeded by imports and
tests.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from .catalog import OperationCatalog
from .database import Database, deserialize_datetime, load_json, serialize_datetime, utcnow
from .identifiers import file_belongs_to, file_identifier_prefix
from .models import (
    CompletedBy,
    ImpositionOperationRecord,
    JobOperationRecord,
    JobStatus,
    MachineEvent,
    MarkerSource,
    OperationDuration,
    OperationStatus,
    ScanEvent,
)

logger = logging.getLogger(__name__)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqliteMappingStore:
    def __init__(self, database: Database):
        self.database = database

    def add_file(self, imposition_id: str, file_id: str, sequence_order: Optional[int] = None) -> None:
        with self.database.connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO imposition_file_mapping (imposition_id, file_id, sequence_order) VALUES (?, ?, ?)",
                (imposition_id, file_id, sequence_order),
            )

    def assign_runlist(self, imposition_id: str, runlist_id: Optional[str]) -> None:
        with self.database.connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO production_planner_paths (imposition_id, runlist_id) VALUES (?, ?)",
                (imposition_id, runlist_id),
            )

    def file_ids_for_imposition(self, imposition_id: str) -> List[str]:
        with self.database.connection() as conn:
            rows = conn.execute(
                """
                SELECT file_id FROM imposition_file_mapping
                WHERE imposition_id = ?
                ORDER BY sequence_order IS NULL, sequence_order, file_id
                """,
                (imposition_id,),
            ).fetchall()
        return [row["file_id"] for row in rows]

    def impositions_for_job_version(self, job_id: str, version_tag: str) -> List[str]:
        pattern = _escape_like(file_identifier_prefix(job_id, version_tag)) + "%"
        with self.database.connection() as conn:
            rows = conn.execute(
                """
                SELECT imposition_id, file_id FROM imposition_file_mapping
                WHERE file_id LIKE ? ESCAPE '\\'
                ORDER BY imposition_id
                """,
                (pattern,),
            ).fetchall()
        # LIKE narrows by prefix; longer job ids sharing the prefix are filtered out here.
        impositions = []
        for row in rows:
            if file_belongs_to(row["file_id"], job_id, version_tag) and row["imposition_id"] not in impositions:
                impositions.append(row["imposition_id"])
        return impositions

    def impositions_for_runlist(self, runlist_id: str) -> List[str]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT imposition_id FROM production_planner_paths WHERE runlist_id = ? ORDER BY imposition_id",
                (runlist_id,),
            ).fetchall()
        return [row["imposition_id"] for row in rows]

    def runlist_for_imposition(self, imposition_id: str) -> Optional[str]:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT runlist_id FROM production_planner_paths WHERE imposition_id = ?",
                (imposition_id,),
            ).fetchone()
        return row["runlist_id"] if row else None

    def runlist_ids(self) -> List[str]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT runlist_id FROM production_planner_paths WHERE runlist_id IS NOT NULL ORDER BY runlist_id"
            ).fetchall()
        return [row["runlist_id"] for row in rows]


class SqliteOperationStateStore:
    """
    Job and imposition operation rows.

    Rows are planned upstream; reconciliation only ever updates them, keyed by
    their natural identity, so replaying an event overwrites instead of
    duplicating.
    """

    def __init__(self, database: Database):
        self.database = database

    def plan_job_operation(self, job_id: str, version_tag: str, operation_id: str) -> None:
        with self.database.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO job_operations (job_id, version_tag, operation_id) VALUES (?, ?, ?)",
                (job_id, version_tag, operation_id),
            )

    def plan_imposition_operation(self, imposition_id: str, operation_id: str) -> None:
        with self.database.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO imposition_operations (imposition_id, operation_id) VALUES (?, ?)",
                (imposition_id, operation_id),
            )

    def _update(self, table: str, keys: Dict[str, str], status: OperationStatus, source_id: int, completed_at: datetime, completed_by: CompletedBy) -> int:
        updates = ["completed_at = ?", "completed_by = ?", "source_id = ?"]
        values: List[Any] = [serialize_datetime(completed_at), CompletedBy(completed_by).value, source_id]

        if self.database.capabilities.get(f"{table}.status", True):
            updates.append("status = ?")
            values.append(OperationStatus(status).value)

        where = " AND ".join(f"{column} = ?" for column in keys)
        values.extend(keys.values())

        with self.database.connection() as conn:
            cursor = conn.execute(f"UPDATE {table} SET {', '.join(updates)} WHERE {where}", values)
            return cursor.rowcount

    def update_job_operation(self, job_id, version_tag, operation_id, status, source_id, completed_at, completed_by) -> int:
        return self._update(
            "job_operations",
            {"job_id": job_id, "version_tag": version_tag, "operation_id": operation_id},
            status,
            source_id,
            completed_at,
            completed_by,
        )

    def update_imposition_operation(self, imposition_id, operation_id, status, source_id, completed_at, completed_by) -> int:
        return self._update(
            "imposition_operations",
            {"imposition_id": imposition_id, "operation_id": operation_id},
            status,
            source_id,
            completed_at,
            completed_by,
        )

    def version_tags_for_job(self, job_id: str) -> List[str]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT version_tag FROM job_operations WHERE job_id = ? ORDER BY version_tag",
                (job_id,),
            ).fetchall()
        return [row["version_tag"] for row in rows]

    def job_operations(self, job_id: str, version_tag: Optional[str] = None) -> List[JobOperationRecord]:
        query = "SELECT * FROM job_operations WHERE job_id = ?"
        params: List[Any] = [job_id]
        if version_tag is not None:
            query += " AND version_tag = ?"
            params.append(version_tag)
        query += " ORDER BY version_tag, operation_id"

        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_job_operation(row) for row in rows]

    def imposition_operations(self, imposition_id: str) -> List[ImpositionOperationRecord]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM imposition_operations WHERE imposition_id = ? ORDER BY operation_id",
                (imposition_id,),
            ).fetchall()
        return [
            ImpositionOperationRecord(
                imposition_id=row["imposition_id"],
                operation_id=row["operation_id"],
                status=self._row_status(row),
                completed_at=deserialize_datetime(row["completed_at"]),
                completed_by=row["completed_by"],
                source_id=row["source_id"],
            )
            for row in rows
        ]

    def imposition_operation_statuses(self, imposition_ids: Iterable[str], operation_id: str) -> List[OperationStatus]:
        ids = list(imposition_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self.database.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM imposition_operations WHERE operation_id = ? AND imposition_id IN ({placeholders})",
                [operation_id, *ids],
            ).fetchall()
        return [self._row_status(row) for row in rows]

    def completed_operations(self) -> List[JobOperationRecord]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM job_operations WHERE completed_at IS NOT NULL ORDER BY completed_at DESC"
            ).fetchall()
        records = [self._row_to_job_operation(row) for row in rows]
        return [record for record in records if record.status == OperationStatus.COMPLETED]

    def _row_status(self, row) -> OperationStatus:
        keys = row.keys()
        if "status" in keys and row["status"]:
            return OperationStatus(row["status"])
        # Without a status column a completion timestamp is the only signal.
        return OperationStatus.COMPLETED if row["completed_at"] else OperationStatus.PLANNED

    def _row_to_job_operation(self, row) -> JobOperationRecord:
        return JobOperationRecord(
            job_id=row["job_id"],
            version_tag=row["version_tag"],
            operation_id=row["operation_id"],
            status=self._row_status(row),
            completed_at=deserialize_datetime(row["completed_at"]),
            completed_by=row["completed_by"],
            source_id=row["source_id"],
        )


class SqliteJobRecordStore:
    def __init__(self, database: Database):
        self.database = database

    def _ensure_job(self, conn, job_id: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO jobs (job_id, status, operations, updated_at) VALUES (?, 'pending', '{}', ?)",
            (job_id, serialize_datetime(utcnow())),
        )

    def set_operation_flag(self, job_id: str, code: str, value: bool) -> None:
        with self.database.connection() as conn:
            self._ensure_job(conn, job_id)
            row = conn.execute("SELECT operations FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
            operations = load_json(row["operations"], {})
            operations[code] = bool(value)
            conn.execute(
                "UPDATE jobs SET operations = ?, updated_at = ? WHERE job_id = ?",
                (json.dumps(operations), serialize_datetime(utcnow()), job_id),
            )

    def mark_started(self, job_id: str) -> None:
        with self.database.connection() as conn:
            self._ensure_job(conn, job_id)
            conn.execute(
                """
                UPDATE jobs
                SET status = CASE
                        WHEN status IS NULL OR status = '' OR status = 'pending' THEN 'started'
                        ELSE status
                    END,
                    updated_at = ?
                WHERE job_id = ?
                """,
                (serialize_datetime(utcnow()), job_id),
            )

    def set_version_status(self, job_id: str, version_tag: str, status: JobStatus) -> None:
        with self.database.connection() as conn:
            self._ensure_job(conn, job_id)
            conn.execute(
                """
                INSERT INTO job_versions (job_id, version_tag, current_status, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (job_id, version_tag) DO UPDATE SET
                    current_status = excluded.current_status,
                    updated_at = excluded.updated_at
                """,
                (job_id, version_tag, JobStatus(status).value, serialize_datetime(utcnow())),
            )

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if not row:
            return None
        return {
            "job_id": row["job_id"],
            "status": row["status"],
            "operations": load_json(row["operations"], {}),
            "updated_at": deserialize_datetime(row["updated_at"]),
        }

    def version_statuses(self, job_id: str) -> Dict[str, JobStatus]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT version_tag, current_status FROM job_versions WHERE job_id = ? ORDER BY version_tag",
                (job_id,),
            ).fetchall()
        return {row["version_tag"]: JobStatus(row["current_status"]) for row in rows}


class SqliteMarkerStore:
    def __init__(self, database: Database):
        self.database = database

    def get_marker(self, source: MarkerSource) -> int:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT last_processed_id FROM processing_markers WHERE marker_type = ?",
                (MarkerSource(source).value,),
            ).fetchone()
        if not row:
            return 0
        return int(row["last_processed_id"] or 0)

    def set_marker(self, source: MarkerSource, value: int) -> None:
        now = serialize_datetime(utcnow())
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO processing_markers (marker_type, last_processed_id, last_processed_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (marker_type) DO UPDATE SET
                    last_processed_id = excluded.last_processed_id,
                    last_processed_at = excluded.last_processed_at,
                    updated_at = excluded.updated_at
                """,
                (MarkerSource(source).value, int(value), now, now),
            )


class SqliteScanEventStore:
    def __init__(self, database: Database):
        self.database = database

    def append_scan(
        self,
        code_text: str,
        machine_id: Optional[str],
        user_id: Optional[str],
        operations: List[str],
        metadata: Optional[Dict[str, Any]] = None,
        scanned_at: Optional[datetime] = None,
    ) -> ScanEvent:
        scanned_at = scanned_at or utcnow()
        with self.database.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scanned_codes (code_text, scanned_at, machine_id, user_id, operations, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    code_text,
                    serialize_datetime(scanned_at),
                    machine_id,
                    user_id,
                    json.dumps(list(operations or [])),
                    json.dumps(metadata) if metadata else None,
                ),
            )
            scan_id = cursor.lastrowid
        return ScanEvent(
            scan_id=scan_id,
            code_text=code_text,
            scanned_at=deserialize_datetime(serialize_datetime(scanned_at)),
            machine_id=machine_id,
            user_id=user_id,
            operations=list(operations or []),
            metadata=dict(metadata or {}),
        )

    def scans_after(self, scan_id: int) -> List[ScanEvent]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scanned_codes WHERE scan_id > ? ORDER BY scan_id ASC",
                (scan_id,),
            ).fetchall()
        return [self._row_to_scan(row) for row in rows]

    def _row_to_scan(self, row) -> ScanEvent:
        operations = load_json(row["operations"], [])
        # Older clients stored {"operations": [...]}
        if isinstance(operations, dict):
            operations = operations.get("operations") or []
        if not isinstance(operations, list):
            operations = []

        metadata = load_json(row["metadata"], {})
        if not isinstance(metadata, dict):
            metadata = {}

        return ScanEvent(
            scan_id=row["scan_id"],
            code_text=row["code_text"],
            scanned_at=deserialize_datetime(row["scanned_at"]),
            machine_id=row["machine_id"],
            user_id=row["user_id"],
            operations=[str(op) for op in operations],
            metadata=metadata,
        )


class SqliteMachineEventStore:
    def __init__(self, database: Database):
        self.database = database

    def append_event(self, event: MachineEvent) -> None:
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO print_os_records (id, name, status, marker, job_complete_time, copies, elapsed_seconds)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.name,
                    event.status,
                    event.marker,
                    serialize_datetime(event.job_complete_time),
                    event.copies,
                    event.elapsed_seconds,
                ),
            )

    def events_after(self, marker: int) -> List[MachineEvent]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM print_os_records WHERE marker > ? ORDER BY marker ASC",
                (marker,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def get_event(self, event_id: int) -> Optional[MachineEvent]:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM print_os_records WHERE id = ?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def _row_to_event(self, row) -> MachineEvent:
        return MachineEvent(
            id=row["id"],
            name=row["name"],
            status=row["status"],
            marker=row["marker"],
            job_complete_time=deserialize_datetime(row["job_complete_time"]),
            copies=row["copies"] or 0,
            elapsed_seconds=row["elapsed_seconds"],
        )


class SqliteDurationStore:
    def __init__(self, database: Database):
        self.database = database

    def upsert_duration(self, duration: OperationDuration) -> None:
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO job_operation_duration (
                    job_id, version_tag, operation_id, machine_id,
                    operation_duration_seconds, operation_started_at, operation_completed_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (job_id, version_tag, operation_id) DO UPDATE SET
                    machine_id = excluded.machine_id,
                    operation_duration_seconds = excluded.operation_duration_seconds,
                    operation_started_at = excluded.operation_started_at,
                    operation_completed_at = excluded.operation_completed_at,
                    updated_at = excluded.updated_at
                """,
                (
                    duration.job_id,
                    duration.version_tag,
                    duration.operation_id,
                    duration.machine_id,
                    duration.duration_seconds,
                    serialize_datetime(duration.started_at),
                    serialize_datetime(duration.completed_at),
                    serialize_datetime(utcnow()),
                ),
            )

    def get_duration(self, job_id: str, version_tag: str, operation_id: str) -> Optional[OperationDuration]:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM job_operation_duration WHERE job_id = ? AND version_tag = ? AND operation_id = ?",
                (job_id, version_tag, operation_id),
            ).fetchone()
        if not row:
            return None
        return OperationDuration(
            job_id=row["job_id"],
            version_tag=row["version_tag"],
            operation_id=row["operation_id"],
            machine_id=row["machine_id"],
            duration_seconds=row["operation_duration_seconds"],
            started_at=deserialize_datetime(row["operation_started_at"]),
            completed_at=deserialize_datetime(row["operation_completed_at"]),
        )

    def recorded_keys(self) -> Set[tuple]:
        with self.database.connection() as conn:
            rows = conn.execute("SELECT job_id, version_tag, operation_id FROM job_operation_duration WHERE operation_duration_seconds IS NOT NULL").fetchall()
        return {(row["job_id"], row["version_tag"], row["operation_id"]) for row in rows}


def seed_operations(database: Database, catalog: OperationCatalog) -> None:
    """Mirror the fixed catalog into the operations table for reporting queries."""
    with database.connection() as conn:
        conn.executemany(
            """
            INSERT OR REPLACE INTO operations (operation_id, operation_name, code, sequence, can_run_parallel)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (op.operation_id, op.operation_name, op.code, op.sequence, int(op.can_run_parallel))
                for op in catalog
            ],
        )
