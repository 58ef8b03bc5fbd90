"""Store interfaces the reconciliation core depends on."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from .models import (
    CompletedBy,
    JobOperationRecord,
    JobStatus,
    MachineEvent,
    MarkerSource,
    OperationDuration,
    OperationStatus,
    ScanEvent,
)


class MappingStore(Protocol):
    """Read-only file, imposition and runlist reference data."""

    def file_ids_for_imposition(self, imposition_id: str) -> List[str]:
        """File ids printed on an imposition, in sequence order."""

    def impositions_for_job_version(self, job_id: str, version_tag: str) -> List[str]:
        """Impositions holding any file of the job version."""

    def impositions_for_runlist(self, runlist_id: str) -> List[str]:
        """Every imposition scheduled in a runlist."""

    def runlist_for_imposition(self, imposition_id: str) -> Optional[str]:
        """Runlist an imposition is scheduled in, if any."""

    def runlist_ids(self) -> List[str]:
        """All known runlist identifiers."""


class OperationStateStore(Protocol):
    """Per-job and per-imposition operation completion rows."""

    def update_job_operation(
        self,
        job_id: str,
        version_tag: str,
        operation_id: str,
        status: OperationStatus,
        source_id: int,
        completed_at: datetime,
        completed_by: CompletedBy,
    ) -> int:
        """Overwrite a planned row; returns the number of rows matched."""

    def update_imposition_operation(
        self,
        imposition_id: str,
        operation_id: str,
        status: OperationStatus,
        source_id: int,
        completed_at: datetime,
        completed_by: CompletedBy,
    ) -> int:
        """Overwrite a planned imposition row; returns the number of rows matched."""

    def version_tags_for_job(self, job_id: str) -> List[str]:
        """Distinct version tags with planned operations for a job."""

    def job_operations(self, job_id: str, version_tag: Optional[str] = None) -> List[JobOperationRecord]:
        """Operation rows for a job, optionally limited to one version."""

    def imposition_operation_statuses(self, imposition_ids: Iterable[str], operation_id: str) -> List[OperationStatus]:
        """Statuses of existing rows for the given impositions and operation."""

    def completed_operations(self) -> List[JobOperationRecord]:
        """Every completed job operation row."""


class JobRecordStore(Protocol):
    """Denormalized job record fields written as a side effect of reconciliation."""

    def set_operation_flag(self, job_id: str, code: str, value: bool) -> None:
        """Set one entry of the job's operations flag map."""

    def mark_started(self, job_id: str) -> None:
        """Move a pending or blank job status to started."""

    def set_version_status(self, job_id: str, version_tag: str, status: JobStatus) -> None:
        """Persist the derived status of a job version."""

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Job record with its operation flags, or None."""

    def version_statuses(self, job_id: str) -> Dict[str, JobStatus]:
        """Derived status per version tag."""


class MarkerStore(Protocol):
    def get_marker(self, source: MarkerSource) -> int:
        """Highest processed id for a source; 0 when never processed."""

    def set_marker(self, source: MarkerSource, value: int) -> None:
        """Persist the highest processed id for a source."""


class ScanEventStore(Protocol):
    def scans_after(self, scan_id: int) -> List[ScanEvent]:
        """Scans with a greater scan_id, ascending."""

    def append_scan(
        self,
        code_text: str,
        machine_id: Optional[str],
        user_id: Optional[str],
        operations: List[str],
        metadata: Optional[Dict[str, Any]] = None,
        scanned_at: Optional[datetime] = None,
    ) -> ScanEvent:
        """Append a scan and return it with its assigned scan_id."""


class MachineEventStore(Protocol):
    def events_after(self, marker: int) -> List[MachineEvent]:
        """Print OS records with a greater marker, ascending."""

    def get_event(self, event_id: int) -> Optional[MachineEvent]:
        """Print OS record by id."""


class DurationStore(Protocol):
    def upsert_duration(self, duration: OperationDuration) -> None:
        """Insert or replace the duration keyed by (job, version, operation)."""

    def get_duration(self, job_id: str, version_tag: str, operation_id: str) -> Optional[OperationDuration]:
        """Stored duration, if any."""

    def recorded_keys(self) -> Set[tuple]:
        """(job_id, version_tag, operation_id) keys that already have a known (non-null) duration."""
