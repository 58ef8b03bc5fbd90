"""
Aggregate status derivation.

The human-facing job status is derived from the set of completed operation
codes every time an operation changes; it is never patched incrementally.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Set, Union

from .models import JobStatus, OperationStatus, PrintProgress

CompletedOperations = Union[Mapping[str, bool], Iterable[str]]


def _completed_codes(completed: CompletedOperations) -> Set[str]:
    if isinstance(completed, Mapping):
        return {code for code, done in completed.items() if done}
    return set(completed)


def derive_status(completed: CompletedOperations) -> JobStatus:
    """
    Derive the aggregate status from completed operation codes.

    Rules are evaluated in priority order and the first match wins:

    1. slit completed -> production_finished
    2. kiss_cut completed (with or without backscore) -> slitter
    3. coat completed -> digital_cut
    4. print completed -> printed
    5. nothing -> print_ready

    Backscore completed without kiss_cut matches no rule of its own and falls
    through to the lower rules.

    Args:
        completed: Completed operation codes, or a ``{code: done}`` mapping

    Returns:
        The derived JobStatus
    """
    codes = _completed_codes(completed)

    if "slit" in codes:
        return JobStatus.PRODUCTION_FINISHED
    if "kiss_cut" in codes:
        return JobStatus.SLITTER
    if "coat" in codes:
        return JobStatus.DIGITAL_CUT
    if "print" in codes:
        return JobStatus.PRINTED
    return JobStatus.PRINT_READY


def summarize_print_progress(statuses: Iterable[Union[OperationStatus, str]]) -> PrintProgress:
    """Fold the print statuses of a job version's impositions into one progress value."""
    values = [OperationStatus(status) for status in statuses]
    total = len(values)
    completed = sum(1 for status in values if status == OperationStatus.COMPLETED)
    aborted = sum(1 for status in values if status == OperationStatus.ABORTED)

    if total and completed == total:
        return PrintProgress.FINISHED
    if total and aborted == total:
        return PrintProgress.ABORTED
    if completed:
        return PrintProgress.IN_PROGRESS
    return PrintProgress.PENDING
