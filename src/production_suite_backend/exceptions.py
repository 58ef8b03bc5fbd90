"""Domain exceptions raised by the scan ingestion and reconciliation layers."""

from __future__ import annotations

from typing import Sequence


class ProductionSuiteError(Exception):
    """Base class for errors surfaced to callers of the production suite."""


class AmbiguousScanError(ProductionSuiteError):
    """A scanned value partially matched more than one runlist."""

    def __init__(self, scan: str, candidates: Sequence[str]):
        self.scan = scan
        self.candidates = list(candidates)
        super().__init__(f'Multiple runlists found matching "{scan}". Please scan the full runlist ID.')


class ScanNotFoundError(ProductionSuiteError):
    """A scanned value resolved to neither a runlist nor a job version."""

    def __init__(self, scan: str):
        self.scan = scan
        super().__init__(f'No runlist or job found for scan: "{scan}"')
