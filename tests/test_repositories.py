"""
Tests for the SQLite store implementations.
"""

import sqlite3
from datetime import datetime, timedelta

from production_suite_backend.catalog import OperationCatalog
from production_suite_backend.database import Database
from production_suite_backend.models import (
    CompletedBy,
    JobStatus,
    MachineEvent,
    MarkerSource,
    OperationDuration,
    OperationStatus,
)
from production_suite_backend.reconciler import StatusReconciler
from production_suite_backend.repositories import (
    SqliteDurationStore,
    SqliteJobRecordStore,
    SqliteMachineEventStore,
    SqliteMappingStore,
    SqliteMarkerStore,
    SqliteOperationStateStore,
    SqliteScanEventStore,
    seed_operations,
)
from production_suite_backend.sources import MachineEventSource, ScanEventSource

T0 = datetime(2025, 3, 3, 9, 0, 0)


class TestDatabase:
    """Tests for schema creation and capability probing."""

    def test_status_columns_are_detected(self, database):
        assert database.capabilities == {"job_operations.status": True, "imposition_operations.status": True}

    def test_seed_operations(self, database):
        seed_operations(database, OperationCatalog())
        seed_operations(database, OperationCatalog())

        with database.connection() as conn:
            rows = conn.execute("SELECT operation_id, code FROM operations ORDER BY operation_id").fetchall()
        assert [(row["operation_id"], row["code"]) for row in rows] == [
            ("op001", "print"),
            ("op002", "coat"),
            ("op003", "kiss_cut"),
            ("op004", "slit"),
            ("op005", "backscore"),
        ]


class TestMappingStore:
    """Tests for SqliteMappingStore."""

    def test_lookups(self, database):
        store = SqliteMappingStore(database)
        store.add_file("Labex_imp_001", "FILE_1_Labex_4604_5889_80", 2)
        store.add_file("Labex_imp_001", "FILE_1_Labex_4604_5890_20", 1)
        store.add_file("Labex_imp_002", "FILE_1_Labex_4604_58890_10")
        store.assign_runlist("Labex_imp_001", "RL100")
        store.assign_runlist("Labex_imp_002", None)

        assert store.file_ids_for_imposition("Labex_imp_001") == ["FILE_1_Labex_4604_5890_20", "FILE_1_Labex_4604_5889_80"]
        assert store.impositions_for_job_version("4604_5889", "1") == ["Labex_imp_001"]
        assert store.impositions_for_runlist("RL100") == ["Labex_imp_001"]
        assert store.runlist_for_imposition("Labex_imp_001") == "RL100"
        assert store.runlist_for_imposition("Labex_imp_404") is None
        assert store.runlist_ids() == ["RL100"]


class TestOperationStateStore:
    """Tests for SqliteOperationStateStore."""

    def test_update_only_touches_planned_rows(self, database):
        store = SqliteOperationStateStore(database)
        store.plan_job_operation("4604_5889", "1", "op001")

        assert store.update_job_operation("4604_5889", "1", "op001", OperationStatus.COMPLETED, 7, T0, CompletedBy.SCANNER) == 1
        assert store.update_job_operation("4604_5889", "9", "op001", OperationStatus.COMPLETED, 7, T0, CompletedBy.SCANNER) == 0

        [row] = store.job_operations("4604_5889")
        assert row.status == OperationStatus.COMPLETED
        assert row.completed_at == T0
        assert row.completed_by == CompletedBy.SCANNER
        assert row.source_id == 7
        assert store.completed_operations() == [row]

    def test_replanning_keeps_progress(self, database):
        store = SqliteOperationStateStore(database)
        store.plan_job_operation("4604_5889", "1", "op001")
        store.update_job_operation("4604_5889", "1", "op001", OperationStatus.COMPLETED, 7, T0, CompletedBy.SCANNER)
        store.plan_job_operation("4604_5889", "1", "op001")

        assert store.job_operations("4604_5889", "1")[0].status == OperationStatus.COMPLETED

    def test_imposition_statuses(self, database):
        store = SqliteOperationStateStore(database)
        for imposition_id in ["imp_a", "imp_b"]:
            store.plan_imposition_operation(imposition_id, "op001")
        store.update_imposition_operation("imp_a", "op001", OperationStatus.ABORTED, 3, T0, CompletedBy.PRINT_OS)

        assert sorted(store.imposition_operation_statuses(["imp_a", "imp_b", "imp_c"], "op001")) == [
            OperationStatus.ABORTED,
            OperationStatus.PLANNED,
        ]
        assert store.imposition_operation_statuses([], "op001") == []
        assert store.imposition_operations("imp_a")[0].completed_by == CompletedBy.PRINT_OS

    def test_version_tags(self, database):
        store = SqliteOperationStateStore(database)
        store.plan_job_operation("4670_5988", "2", "op001")
        store.plan_job_operation("4670_5988", "1", "op001")
        store.plan_job_operation("4670_5988", "1", "op002")

        assert store.version_tags_for_job("4670_5988") == ["1", "2"]

    def test_legacy_schema_without_status_column(self, tmp_path):
        """Writers omit the status column when an older database lacks it."""
        path = tmp_path / "legacy.db"
        conn = sqlite3.connect(path)
        conn.execute(
            """
            CREATE TABLE job_operations (
                job_id TEXT, version_tag TEXT, operation_id TEXT,
                completed_at TEXT, completed_by TEXT, source_id INTEGER
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE imposition_operations (
                imposition_id TEXT, operation_id TEXT,
                completed_at TEXT, completed_by TEXT, source_id INTEGER
            )
            """
        )
        conn.execute("INSERT INTO job_operations (job_id, version_tag, operation_id) VALUES ('4604_5889', '1', 'op001')")
        conn.commit()
        conn.close()

        database = Database(path, create_schema=False)
        store = SqliteOperationStateStore(database)

        assert database.capabilities["job_operations.status"] is False
        assert store.job_operations("4604_5889")[0].status == OperationStatus.PLANNED
        assert store.update_job_operation("4604_5889", "1", "op001", OperationStatus.COMPLETED, 1, T0, CompletedBy.SCANNER) == 1
        assert store.job_operations("4604_5889")[0].status == OperationStatus.COMPLETED


class TestJobRecordStore:
    """Tests for SqliteJobRecordStore."""

    def test_flags_and_status(self, database):
        store = SqliteJobRecordStore(database)
        store.set_operation_flag("4604_5889", "print", True)
        store.set_operation_flag("4604_5889", "coat", False)

        job = store.get_job("4604_5889")
        assert job["status"] == "pending"
        assert job["operations"] == {"print": True, "coat": False}

        store.mark_started("4604_5889")
        assert store.get_job("4604_5889")["status"] == "started"

    def test_mark_started_keeps_later_statuses(self, database):
        store = SqliteJobRecordStore(database)
        store.mark_started("4604_5889")
        with database.connection() as conn:
            conn.execute("UPDATE jobs SET status = 'completed' WHERE job_id = '4604_5889'")

        store.mark_started("4604_5889")

        assert store.get_job("4604_5889")["status"] == "completed"

    def test_version_status_upsert(self, database):
        store = SqliteJobRecordStore(database)
        store.set_version_status("4604_5889", "1", JobStatus.PRINTED)
        store.set_version_status("4604_5889", "1", JobStatus.DIGITAL_CUT)
        store.set_version_status("4604_5889", "2", JobStatus.PRINT_READY)

        assert store.version_statuses("4604_5889") == {"1": JobStatus.DIGITAL_CUT, "2": JobStatus.PRINT_READY}
        assert store.get_job("4604_0000") is None


class TestEventStores:
    """Tests for markers, scanned codes, Print OS records and durations."""

    def test_markers(self, database):
        store = SqliteMarkerStore(database)
        assert store.get_marker(MarkerSource.PRINT_OS) == 0

        store.set_marker(MarkerSource.PRINT_OS, 42)
        store.set_marker(MarkerSource.SCANNED_CODES, 7)

        assert store.get_marker(MarkerSource.PRINT_OS) == 42
        assert store.get_marker("scanned_codes") == 7

    def test_scans(self, database):
        store = SqliteScanEventStore(database)
        first = store.append_scan("4604_5889_1", "machine-7", "operator-1", ["print"], scanned_at=T0)
        store.append_scan("RL100", "machine-7", None, ["coat"], {"source": "test"})

        assert first.scan_id == 1
        scans = store.scans_after(first.scan_id)
        assert [(scan.code_text, scan.operations, scan.metadata) for scan in scans] == [("RL100", ["coat"], {"source": "test"})]
        assert store.scans_after(0)[0].scanned_at == T0

    def test_legacy_operations_shape(self, database):
        with database.connection() as conn:
            conn.execute(
                "INSERT INTO scanned_codes (code_text, scanned_at, operations, metadata) VALUES (?, ?, ?, ?)",
                ("4604_5889_1", T0.isoformat(), '{"operations": ["op002"]}', "not json"),
            )

        [scan] = SqliteScanEventStore(database).scans_after(0)
        assert scan.operations == ["op002"]
        assert scan.metadata == {}

    def test_machine_events(self, database):
        store = SqliteMachineEventStore(database)
        store.append_event(MachineEvent(id=1, name="Labex_imp_001", status="PRINTED", marker=5, job_complete_time=T0, elapsed_seconds=60))
        store.append_event(MachineEvent(id=2, name="Labex_imp_002", status="ABORTED", marker=9))

        assert [event.id for event in store.events_after(5)] == [2]
        assert store.get_event(1).elapsed_seconds == 60
        assert store.get_event(1).job_complete_time == T0
        assert store.get_event(3) is None

    def test_duration_last_write_wins(self, database):
        store = SqliteDurationStore(database)
        store.upsert_duration(OperationDuration(job_id="4604_5889", version_tag="1", operation_id="op002", completed_at=T0))
        store.upsert_duration(
            OperationDuration(
                job_id="4604_5889",
                version_tag="1",
                operation_id="op002",
                duration_seconds=300,
                started_at=T0 - timedelta(minutes=5),
                completed_at=T0,
            )
        )

        assert store.get_duration("4604_5889", "1", "op002").duration_seconds == 300
        assert store.recorded_keys() == {("4604_5889", "1", "op002")}


class TestSqliteReconciliation:
    """End-to-end passes over the SQLite stores."""

    def test_scan_and_press_passes(self, database):
        mapping = SqliteMappingStore(database)
        state = SqliteOperationStateStore(database)
        jobs = SqliteJobRecordStore(database)
        markers = SqliteMarkerStore(database)
        scans = SqliteScanEventStore(database)
        machine = SqliteMachineEventStore(database)

        mapping.add_file("Labex_imp_001", "FILE_1_Labex_4604_5889_80")
        mapping.assign_runlist("Labex_imp_001", "RL100")
        for operation_id in ["op001", "op002"]:
            state.plan_job_operation("4604_5889", "1", operation_id)
            state.plan_imposition_operation("Labex_imp_001", operation_id)

        reconciler = StatusReconciler(
            mapping_store=mapping,
            state_store=state,
            job_store=jobs,
            marker_store=markers,
            scan_source=ScanEventSource(scans),
            machine_source=MachineEventSource(machine),
        )

        machine.append_event(MachineEvent(id=11, name="Labex_imp_001", status="PRINTED", marker=3, job_complete_time=T0))
        scans.append_scan("RL100", "machine-7", None, ["coat"], scanned_at=T0 + timedelta(hours=1))

        assert reconciler.process_machine_events().jobs_updated == 1
        assert reconciler.process_scan_events().jobs_updated == 1

        statuses = {row.operation_id: row.status for row in state.job_operations("4604_5889", "1")}
        assert statuses == {"op001": OperationStatus.COMPLETED, "op002": OperationStatus.COMPLETED}
        assert jobs.version_statuses("4604_5889") == {"1": JobStatus.DIGITAL_CUT}
        assert jobs.get_job("4604_5889")["operations"] == {"print": True, "coating": True}
        assert markers.get_marker(MarkerSource.PRINT_OS) == 3
        assert markers.get_marker(MarkerSource.SCANNED_CODES) == 1
