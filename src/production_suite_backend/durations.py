"""
Operation duration aggregation.

Durations are measured between successive pipeline stages of one job version.
The first stage (print) has no predecessor on the shop floor; its duration is
the elapsed time Print OS reported for the press run. Missing data always
yields ``None`` so it is never mistaken for zero elapsed time.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from .catalog import OperationCatalog
from .models import BackfillResult, CompletedBy, JobOperationRecord, OperationDuration, OperationStatus
from .stores import DurationStore, MachineEventStore, OperationStateStore

logger = logging.getLogger(__name__)


class DurationAggregator:
    """
    Computes and persists per-operation durations.

    Attributes:
        print_machine_id: Machine recorded against print durations
    """

    def __init__(
        self,
        state_store: OperationStateStore,
        duration_store: DurationStore,
        machine_events: MachineEventStore,
        catalog: OperationCatalog,
        print_machine_id: Optional[str] = None,
    ) -> None:
        self.state_store = state_store
        self.duration_store = duration_store
        self.machine_events = machine_events
        self.catalog = catalog
        self.print_machine_id = print_machine_id

    def compute(self, job_id: str, version_tag: str, operation_id: str) -> Optional[OperationDuration]:
        """
        Compute the duration of one completed operation without persisting it.

        Returns:
            OperationDuration (whose ``duration_seconds`` may be None), or None
            when the operation has no completion timestamp
        """
        rows = {row.operation_id: row for row in self.state_store.job_operations(job_id, version_tag)}
        row = rows.get(operation_id)
        if row is None or row.completed_at is None or row.status != OperationStatus.COMPLETED:
            return None

        if self.catalog.is_first(operation_id):
            return self._print_duration(row)

        duration = OperationDuration(
            job_id=job_id,
            version_tag=version_tag,
            operation_id=operation_id,
            completed_at=row.completed_at,
        )

        planned_predecessors = [op for op in self.catalog.predecessors(operation_id) if op.operation_id in rows]
        if not planned_predecessors:
            return duration

        nearest_stage = max(op.sequence for op in planned_predecessors)
        stage_rows = [rows[op.operation_id] for op in planned_predecessors if op.sequence == nearest_stage]
        if any(r.completed_at is None or r.status != OperationStatus.COMPLETED for r in stage_rows):
            return duration

        # Parallel operations in the predecessor stage: the stage ends with its last completion.
        started_at = max(r.completed_at for r in stage_rows)
        elapsed = int((row.completed_at - started_at).total_seconds())
        if elapsed < 0:
            logger.warning(f"Operation {operation_id} for {job_id}_{version_tag} completed before its predecessor stage; leaving duration empty")
            return duration

        duration.started_at = started_at
        duration.duration_seconds = elapsed
        return duration

    def _print_duration(self, row: JobOperationRecord) -> OperationDuration:
        duration = OperationDuration(
            job_id=row.job_id,
            version_tag=row.version_tag,
            operation_id=row.operation_id,
            machine_id=self.print_machine_id,
            completed_at=row.completed_at,
        )
        if row.completed_by != CompletedBy.PRINT_OS or row.source_id is None:
            return duration

        event = self.machine_events.get_event(row.source_id)
        if event is None or event.elapsed_seconds is None:
            return duration

        completed_at = event.job_complete_time or row.completed_at
        duration.completed_at = completed_at
        duration.duration_seconds = int(event.elapsed_seconds)
        duration.started_at = completed_at - timedelta(seconds=int(event.elapsed_seconds))
        return duration

    def record(self, job_id: str, version_tag: str, operation_id: str) -> Optional[OperationDuration]:
        """
        Compute and upsert the duration of one operation (last write wins).

        Later stages that were completed first, out of order, are timed from
        this completion, so their stored durations are recomputed too.
        """
        duration = self._store(job_id, version_tag, operation_id)
        if duration is None:
            return None

        completed = {
            row.operation_id
            for row in self.state_store.job_operations(job_id, version_tag)
            if row.status == OperationStatus.COMPLETED and row.completed_at is not None
        }
        for successor in self.catalog.successors(operation_id):
            if successor.operation_id in completed:
                self._store(job_id, version_tag, successor.operation_id)
        return duration

    def _store(self, job_id: str, version_tag: str, operation_id: str) -> Optional[OperationDuration]:
        duration = self.compute(job_id, version_tag, operation_id)
        if duration is not None:
            self.duration_store.upsert_duration(duration)
        return duration

    def backfill(self) -> BackfillResult:
        """
        Record durations for every completed operation without a known duration.

        Operations whose duration still cannot be determined keep a row with an
        empty duration, are counted as skipped and are retried on the next run.
        """
        result = BackfillResult()
        recorded = self.duration_store.recorded_keys()

        for row in self.state_store.completed_operations():
            key = (row.job_id, row.version_tag, row.operation_id)
            if key in recorded:
                continue
            try:
                duration = self.record(*key)
            except Exception as exc:  # noqa: BLE001
                logger.exception(f"Duration backfill failed for {key}")
                result.errors.append(f"{row.job_id}_{row.version_tag}_{row.operation_id}: {exc}")
                continue

            if duration is not None and duration.duration_seconds is not None:
                result.recorded += 1
            else:
                result.skipped += 1

        logger.info(f"Duration backfill complete: {result.recorded} recorded, {result.skipped} skipped, {len(result.errors)} errors")
        return result
