"""
Scan ingestion.

Operators scan either a runlist barcode or a ``job_version`` label. Ingestion
classifies the input, appends the scan(s) to the scanned codes log and then
asks for a scan pass so the new rows are reconciled without waiting for the
scheduler. Reconciliation itself never happens here.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .exceptions import AmbiguousScanError, ScanNotFoundError
from .identifiers import AmbiguousRunlistMatch, JobVersionMatch, RunlistMatch, classify_scan_input, parse_file_identifier
from .models import RecordedScan, ScanEvent, ScanOutcome
from .reconciler import DERIVED_FROM_RUNLIST
from .stores import MappingStore, ScanEventStore

logger = logging.getLogger(__name__)


def _recorded(scan: ScanEvent) -> RecordedScan:
    return RecordedScan(scan_id=scan.scan_id, code_text=scan.code_text, scanned_at=scan.scanned_at)


class ScanIngestor:
    """
    Records operator scans.

    Args:
        mapping_store: Used to classify input and expand runlist scans
        scan_store: Append-only scanned codes log
        trigger: Called after anything was recorded; typically schedules a scan pass
    """

    def __init__(self, mapping_store: MappingStore, scan_store: ScanEventStore, trigger: Optional[Callable[[], Any]] = None):
        self.mapping_store = mapping_store
        self.scan_store = scan_store
        self.trigger = trigger

    def record_scan(
        self,
        code_text: str,
        machine_id: Optional[str] = None,
        user_id: Optional[str] = None,
        operations: Optional[List[str]] = None,
    ) -> ScanOutcome:
        """
        Classify and record an operator scan.

        A scan without operations is a lookup only: it is classified and
        answered but nothing is recorded.

        Raises:
            AmbiguousScanError: The input partially matches several runlists
            ScanNotFoundError: The input is neither a runlist nor a job version
        """
        operations = [op for op in (operations or []) if op]
        file_identity = parse_file_identifier(code_text.strip())
        if file_identity is not None:
            classification = JobVersionMatch(job_id=file_identity.job_id, version_tag=file_identity.version_tag)
        else:
            classification = classify_scan_input(code_text, self.mapping_store.runlist_ids())
        logger.info(f"Scan {code_text!r} classified as {type(classification).__name__}")

        if isinstance(classification, AmbiguousRunlistMatch):
            raise AmbiguousScanError(code_text, classification.candidates)

        outcome = ScanOutcome()
        if isinstance(classification, RunlistMatch):
            outcome.runlist_id = classification.runlist_id
        elif isinstance(classification, JobVersionMatch):
            outcome.job_id = classification.job_id
            outcome.version_tag = classification.version_tag
            impositions = self.mapping_store.impositions_for_job_version(classification.job_id, classification.version_tag)
            if impositions:
                outcome.scanned_imposition_id = impositions[0]
                outcome.runlist_id = self.mapping_store.runlist_for_imposition(impositions[0])
        else:
            raise ScanNotFoundError(code_text)

        if not operations:
            logger.info(f"Skipping scan recording for {code_text!r}: no operations given")
            return outcome

        if isinstance(classification, RunlistMatch) and classification.exact:
            scans = self._record_runlist_scans(classification.runlist_id, machine_id, user_id, operations)
        else:
            scans = [self.scan_store.append_scan(code_text.strip(), machine_id, user_id, operations)]

        outcome.recorded_scans = [_recorded(scan) for scan in scans]
        logger.info(f"Recorded {len(scans)} scans for {code_text!r}")
        if scans:
            self._trigger()
        return outcome

    def _record_runlist_scans(self, runlist_id: str, machine_id: Optional[str], user_id: Optional[str], operations: List[str]) -> List[ScanEvent]:
        """Expand a direct runlist scan into one scan per file of the runlist."""
        scans = []
        for imposition_id in self.mapping_store.impositions_for_runlist(runlist_id):
            for file_id in self.mapping_store.file_ids_for_imposition(imposition_id):
                metadata = {DERIVED_FROM_RUNLIST: runlist_id, "file_id": file_id}
                try:
                    scans.append(self.scan_store.append_scan(file_id, machine_id, user_id, operations, metadata))
                except Exception:  # noqa: BLE001
                    logger.exception(f"Failed to record scan for file {file_id} of runlist {runlist_id}")
        return scans

    def record_raw_scan(
        self,
        code_text: str,
        machine_id: Optional[str] = None,
        user_id: Optional[str] = None,
        operations: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RecordedScan:
        """Record a scan exactly as submitted; resolution is left to the scan pass."""
        scan = self.scan_store.append_scan(code_text, machine_id, user_id, list(operations or []), metadata)
        logger.info(f"Recorded raw scan {scan.scan_id}: {code_text!r}")
        self._trigger()
        return _recorded(scan)

    def _trigger(self) -> None:
        if self.trigger is None:
            return
        try:
            self.trigger()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to trigger scan processing after recording")
