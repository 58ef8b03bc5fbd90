"""
Status reconciliation engine.

This module is the control loop of the production suite. Each pass reads the
events a source produced since its marker, resolves them to job versions and
impositions, overwrites the matching operation rows and recomputes the derived
status of everything it touched.

Guarantees:
- Upserts are keyed by (job, version, operation) or (imposition, operation),
  so replaying a marker range converges to the same state.
- The marker only moves forward, past skipped and failed events too.
- At most one pass per source runs at a time; scheduled and on-demand
  triggers queue behind each other.

Only failing to read the marker or to fetch the batch aborts a pass. Per-event
failures are logged, collected in the pass result and skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .catalog import OperationCatalog, normalize_operation_code
from .database import to_naive_utc, utcnow
from .durations import DurationAggregator
from .exceptions import AmbiguousScanError
from .identifiers import (
    AmbiguousRunlistMatch,
    JobVersionMatch,
    RunlistMatch,
    classify_scan_input,
    contains_brand_marker,
    parse_file_identifier,
    parse_manual_prepress_identifier,
)
from .models import (
    CompletedBy,
    JobOperationRecord,
    JobStatusDetail,
    MachineEvent,
    MachinePassResult,
    MarkerSource,
    OperationDefinition,
    OperationStatus,
    PrintProgress,
    ScanEvent,
    ScanPassResult,
    VersionStatus,
)
from .sources import MachineEventSource, ScanEventSource
from .status import derive_status, summarize_print_progress
from .stores import JobRecordStore, MappingStore, MarkerStore, OperationStateStore

logger = logging.getLogger(__name__)

DERIVED_FROM_RUNLIST = "derived_from_runlist"
PRINTED = "PRINTED"

JobVersion = Tuple[str, str]


@dataclass
class ResolvedScan:
    """Job versions and impositions one scan certifies."""

    job_versions: Set[JobVersion] = field(default_factory=set)
    impositions: List[str] = field(default_factory=list)
    runlist_id: Optional[str] = None


def _sorted_versions(job_versions: Iterable[JobVersion]) -> List[JobVersion]:
    return sorted(set(job_versions))


class StatusReconciler:
    """
    Applies scan and Print OS events to operation state.

    Args:
        mapping_store: File, imposition and runlist reference data
        state_store: Job and imposition operation rows
        job_store: Job record side effects (operation flags, derived status)
        marker_store: Per-source processing markers
        scan_source: Adapter over the scanned codes log
        machine_source: Adapter over the Print OS feed
        catalog: Operation catalog
        durations: Optional aggregator invoked for completed operations
    """

    def __init__(
        self,
        mapping_store: MappingStore,
        state_store: OperationStateStore,
        job_store: JobRecordStore,
        marker_store: MarkerStore,
        scan_source: ScanEventSource,
        machine_source: MachineEventSource,
        catalog: Optional[OperationCatalog] = None,
        durations: Optional[DurationAggregator] = None,
    ) -> None:
        self.mapping_store = mapping_store
        self.state_store = state_store
        self.job_store = job_store
        self.marker_store = marker_store
        self.scan_source = scan_source
        self.machine_source = machine_source
        self.catalog = catalog or OperationCatalog()
        self.durations = durations
        self._locks: Dict[MarkerSource, Lock] = {source: Lock() for source in MarkerSource}

    # ------------------------------------------------------------------
    # Print OS pass
    # ------------------------------------------------------------------

    def process_machine_events(self) -> MachinePassResult:
        """
        Run one pass over new Print OS records.

        Returns:
            MachinePassResult with counts, the marker after the pass and
            advisory error strings
        """
        with self._locks[MarkerSource.PRINT_OS]:
            return self._process_machine_events()

    def _process_machine_events(self) -> MachinePassResult:
        last_processed = self.marker_store.get_marker(MarkerSource.PRINT_OS)
        logger.info(f"Processing Print OS records with marker > {last_processed}")

        events = self.machine_source.get_new_events(last_processed)
        result = MachinePassResult(last_marker=last_processed)
        if not events:
            return result

        print_operation = self.catalog.print_operation()
        logger.info(f"Using operation_id {print_operation.operation_id} for {len(events)} Print OS records")

        for event in events:
            try:
                updated = self._apply_machine_event(event, print_operation, result.errors)
            except Exception as exc:  # noqa: BLE001
                logger.exception(f"Error processing Print OS record {event.id}")
                result.errors.append(f"Record {event.id}: {exc}")
                continue

            if updated is not None:
                result.processed += 1
                result.jobs_updated += updated

        highest = self.machine_source.highest_cursor(events, last_processed)
        if highest > last_processed:
            self.marker_store.set_marker(MarkerSource.PRINT_OS, highest)
            logger.info(f"Updated Print OS marker to {highest} (processed {result.processed}, skipped {len(events) - result.processed})")
        result.last_marker = highest
        return result

    def _apply_machine_event(self, event: MachineEvent, print_operation: OperationDefinition, errors: List[str]) -> Optional[int]:
        """Apply one record; returns the number of job versions updated or None when skipped."""
        status = OperationStatus.COMPLETED if event.status.upper() == PRINTED else OperationStatus.ABORTED
        completed_at = to_naive_utc(event.job_complete_time) or utcnow()

        manual = parse_manual_prepress_identifier(event.name)
        if manual is not None:
            # No imposition breakdown: every known version of the job is covered.
            version_tags = self.state_store.version_tags_for_job(manual.job_id)
            if not version_tags:
                logger.warning(f"No version tags found for manual prepress job {manual.job_id}")
                errors.append(f"No version_tags found for job_id: {manual.job_id}")
                return None
            job_versions = [(manual.job_id, version_tag) for version_tag in version_tags]
            impositions: List[str] = []
        else:
            impositions = [event.name]
            job_versions = self._job_versions_for_imposition(event.name)
            if not job_versions:
                if contains_brand_marker(event.name):
                    logger.warning(f"Labex Print OS record not recognised: {event.name}")
                    errors.append(f"Labex file but imposition_id not recognised: {event.name}")
                else:
                    logger.info(f"Skipping non-labex Print OS record: {event.name}")
                return None

        for imposition_id in impositions:
            self._update_imposition(imposition_id, print_operation.operation_id, status, event.id, completed_at, CompletedBy.PRINT_OS)

        updated = set()
        for job_id, version_tag in job_versions:
            if self._update_job_version(job_id, version_tag, print_operation, status, event.id, completed_at, CompletedBy.PRINT_OS):
                updated.add((job_id, version_tag))

        for job_id, version_tag in job_versions:
            self._propagate_print_progress(job_id, version_tag, print_operation)
            self._refresh_version_status(job_id, version_tag)

        logger.info(f"Processed Print OS record {event.id}: {event.name}, status {status.value}, updated {len(updated)} job versions")
        return len(updated)

    def _job_versions_for_imposition(self, imposition_id: str) -> List[JobVersion]:
        job_versions = set()
        for file_id in self.mapping_store.file_ids_for_imposition(imposition_id):
            parsed = parse_file_identifier(file_id)
            if parsed is not None:
                job_versions.add((parsed.job_id, parsed.version_tag))
        return _sorted_versions(job_versions)

    def _propagate_print_progress(self, job_id: str, version_tag: str, print_operation: OperationDefinition) -> PrintProgress:
        """Mirror imposition-level print state onto the job record."""
        impositions = self.mapping_store.impositions_for_job_version(job_id, version_tag)
        if impositions:
            statuses = self.state_store.imposition_operation_statuses(impositions, print_operation.operation_id)
        else:
            # Manually prepressed files have no impositions; the version's own print row decides.
            statuses = [row.status for row in self.state_store.job_operations(job_id, version_tag) if row.operation_id == print_operation.operation_id]
        progress = summarize_print_progress(statuses)

        if progress == PrintProgress.FINISHED:
            self.job_store.set_operation_flag(job_id, normalize_operation_code(print_operation.operation_name), True)
            self.job_store.mark_started(job_id)
            logger.info(f"Job {job_id} (v{version_tag}): all {len(statuses)} impositions printed")
        elif progress == PrintProgress.ABORTED:
            self.job_store.set_operation_flag(job_id, normalize_operation_code(print_operation.operation_name), False)
            logger.info(f"Job {job_id} (v{version_tag}): all {len(statuses)} impositions aborted")
        elif progress == PrintProgress.IN_PROGRESS:
            self.job_store.mark_started(job_id)
            logger.info(f"Job {job_id} (v{version_tag}): printing in progress")
        return progress

    # ------------------------------------------------------------------
    # Scan pass
    # ------------------------------------------------------------------

    def process_scan_events(self) -> ScanPassResult:
        """
        Run one pass over new scanned codes.

        Returns:
            ScanPassResult with counts, the scan id marker after the pass and
            advisory error strings
        """
        with self._locks[MarkerSource.SCANNED_CODES]:
            return self._process_scan_events()

    def _process_scan_events(self) -> ScanPassResult:
        last_processed = self.marker_store.get_marker(MarkerSource.SCANNED_CODES)
        logger.info(f"Processing scanned codes with scan_id > {last_processed}")

        scans = self.scan_source.get_new_events(last_processed)
        result = ScanPassResult(last_scan_id=last_processed)
        logger.info(f"Found {len(scans)} new scanned codes to process")
        if not scans:
            return result

        for scan in scans:
            try:
                updated = self._apply_scan(scan, result.errors)
            except Exception as exc:  # noqa: BLE001
                logger.exception(f"Error processing scan {scan.scan_id}")
                result.errors.append(f"Scan {scan.scan_id}: {exc}")
                continue

            if updated is not None:
                result.processed += 1
                result.jobs_updated += updated

        highest = self.scan_source.highest_cursor(scans, last_processed)
        if highest > last_processed:
            self.marker_store.set_marker(MarkerSource.SCANNED_CODES, highest)
            logger.info(f"Updated scanned codes marker to {highest} (processed {result.processed}, skipped {len(scans) - result.processed})")
        result.last_scan_id = highest
        return result

    def resolve_operations(self, scan: ScanEvent, errors: List[str]) -> List[OperationDefinition]:
        """Resolve a scan's declared operations; unknown references are reported and dropped."""
        operations: List[OperationDefinition] = []
        for reference in scan.operations:
            operation = self.catalog.resolve(reference)
            if operation is None:
                logger.warning(f"Scan {scan.scan_id}: unknown operation {reference!r}")
                errors.append(f"Scan {scan.scan_id}: Unknown operation: {reference}")
            elif operation not in operations:
                operations.append(operation)
        return operations

    def resolve_scan(self, scan: ScanEvent) -> Optional[ResolvedScan]:
        """
        Work out which job versions and impositions a scan certifies.

        Scans expanded from a runlist scan carry the runlist id in their
        metadata, which wins over classifying the code text.

        Returns:
            ResolvedScan, or None when the code text does not resolve
        """
        derived_runlist = scan.metadata.get(DERIVED_FROM_RUNLIST)
        if derived_runlist:
            return self._resolve_runlist(str(derived_runlist))

        file_identity = parse_file_identifier(scan.code_text.strip())
        if file_identity is not None:
            return ResolvedScan(
                job_versions={(file_identity.job_id, file_identity.version_tag)},
                impositions=self.mapping_store.impositions_for_job_version(file_identity.job_id, file_identity.version_tag),
            )

        classification = classify_scan_input(scan.code_text, self.mapping_store.runlist_ids())

        if isinstance(classification, RunlistMatch):
            return self._resolve_runlist(classification.runlist_id)

        if isinstance(classification, AmbiguousRunlistMatch):
            raise AmbiguousScanError(scan.code_text, classification.candidates)

        if isinstance(classification, JobVersionMatch):
            # A job version without imposition mapping is still a valid scan.
            return ResolvedScan(
                job_versions={(classification.job_id, classification.version_tag)},
                impositions=self.mapping_store.impositions_for_job_version(classification.job_id, classification.version_tag),
            )

        return None

    def _resolve_runlist(self, runlist_id: str) -> ResolvedScan:
        impositions = self.mapping_store.impositions_for_runlist(runlist_id)
        job_versions: Set[JobVersion] = set()
        for imposition_id in impositions:
            job_versions.update(self._job_versions_for_imposition(imposition_id))
        return ResolvedScan(job_versions=job_versions, impositions=impositions, runlist_id=runlist_id)

    def _apply_scan(self, scan: ScanEvent, errors: List[str]) -> Optional[int]:
        """Apply one scan; returns the number of job versions updated or None when skipped."""
        operations = self.resolve_operations(scan, errors)
        if not operations:
            logger.warning(f"Scan {scan.scan_id}: no valid operations")
            return None

        try:
            resolved = self.resolve_scan(scan)
        except AmbiguousScanError as exc:
            logger.warning(f"Scan {scan.scan_id}: {scan.code_text!r} matches multiple runlists {list(exc.candidates)}")
            errors.append(f"Scan {scan.scan_id}: Multiple runlists match {scan.code_text}")
            return None

        if resolved is None:
            logger.warning(f"Scan {scan.scan_id}: could not parse code_text {scan.code_text!r}")
            errors.append(f"Scan {scan.scan_id}: Could not parse code_text")
            return None
        if not resolved.job_versions:
            logger.warning(f"Scan {scan.scan_id}: no jobs found for {scan.code_text!r}")
            errors.append(f"Scan {scan.scan_id}: No jobs found")
            return None

        completed_at = to_naive_utc(scan.scanned_at) or utcnow()
        job_versions = _sorted_versions(resolved.job_versions)

        updated = set()
        for operation in operations:
            for job_id, version_tag in job_versions:
                if self._update_job_version(job_id, version_tag, operation, OperationStatus.COMPLETED, scan.scan_id, completed_at, CompletedBy.SCANNER):
                    updated.add((job_id, version_tag))
            # A runlist scan certifies every imposition of the run, not just those of the listed jobs.
            for imposition_id in resolved.impositions:
                self._update_imposition(imposition_id, operation.operation_id, OperationStatus.COMPLETED, scan.scan_id, completed_at, CompletedBy.SCANNER)
            for job_id in sorted({job_id for job_id, _ in job_versions}):
                self.job_store.set_operation_flag(job_id, normalize_operation_code(operation.operation_name), True)
                self.job_store.mark_started(job_id)

        for job_id, version_tag in job_versions:
            self._refresh_version_status(job_id, version_tag)

        logger.info(
            f"Processed scan {scan.scan_id}: {scan.code_text}, updated {len(updated)} job versions, "
            f"operations: {', '.join(op.operation_id for op in operations)}"
        )
        return len(updated)

    # ------------------------------------------------------------------
    # Shared upserts
    # ------------------------------------------------------------------

    def _update_job_version(
        self,
        job_id: str,
        version_tag: str,
        operation: OperationDefinition,
        status: OperationStatus,
        source_id: int,
        completed_at: datetime,
        completed_by: CompletedBy,
    ) -> bool:
        matched = self.state_store.update_job_operation(job_id, version_tag, operation.operation_id, status, source_id, completed_at, completed_by)
        if matched == 0:
            logger.warning(f"No job_operations row found for job_id={job_id}, version_tag={version_tag}, operation_id={operation.operation_id} - skipping update")
            return False
        if self.durations is not None and status == OperationStatus.COMPLETED:
            self.durations.record(job_id, version_tag, operation.operation_id)
        return True

    def _update_imposition(
        self,
        imposition_id: str,
        operation_id: str,
        status: OperationStatus,
        source_id: int,
        completed_at: datetime,
        completed_by: CompletedBy,
    ) -> None:
        matched = self.state_store.update_imposition_operation(imposition_id, operation_id, status, source_id, completed_at, completed_by)
        if matched == 0:
            logger.warning(f"No imposition_operations row found for imposition_id={imposition_id}, operation_id={operation_id} - skipping update")

    def _completed_codes(self, rows: Iterable[JobOperationRecord]) -> Set[str]:
        codes = set()
        for row in rows:
            if row.status == OperationStatus.COMPLETED:
                code = self.catalog.code_for(row.operation_id)
                if code:
                    codes.add(code)
        return codes

    def _refresh_version_status(self, job_id: str, version_tag: str) -> None:
        completed_codes = self._completed_codes(self.state_store.job_operations(job_id, version_tag))
        self.job_store.set_version_status(job_id, version_tag, derive_status(completed_codes))

    def job_status(self, job_id: str) -> Optional[JobStatusDetail]:
        """Job record flags plus the derived status of each planned version; None for unknown jobs."""
        rows = self.state_store.job_operations(job_id)
        job = self.job_store.get_job(job_id)
        if job is None and not rows:
            return None

        by_version: Dict[str, List[JobOperationRecord]] = {}
        for row in rows:
            by_version.setdefault(row.version_tag, []).append(row)

        versions = []
        for version_tag in sorted(by_version):
            completed = self._completed_codes(by_version[version_tag])
            versions.append(
                VersionStatus(
                    version_tag=version_tag,
                    status=derive_status(completed),
                    completed_operations=[op.code for op in self.catalog if op.code in completed],
                )
            )

        job = job or {}
        return JobStatusDetail(job_id=job_id, status=job.get("status"), operations=job.get("operations") or {}, versions=versions)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def reset_markers(self, sources: Sequence[MarkerSource] = tuple(MarkerSource)) -> Dict[str, int]:
        """
        Rewind markers to 0 so the next passes replay every event.

        Safe because upserts are idempotent; used to recover from skipped
        events once reference data has been fixed.
        """
        reset = {}
        for source in sources:
            source = MarkerSource(source)
            with self._locks[source]:
                self.marker_store.set_marker(source, 0)
            reset[source.value] = 0
            logger.info(f"Reset {source.value} marker to 0")
        return reset

