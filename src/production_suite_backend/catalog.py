"""
Fixed operation catalog for the production pipeline.

The pipeline order is print -> coat -> kiss cut / backscore -> slit. Kiss cut
and backscore run on the same finishing pass, so they share a stage and are
flagged as parallel. Operation ids are lowercase (``op001``) to match the
per-job operation rows.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

from .models import OperationDefinition

DEFAULT_OPERATIONS: List[OperationDefinition] = [
    OperationDefinition(operation_id="op001", operation_name="Print", code="print", sequence=1),
    OperationDefinition(operation_id="op002", operation_name="Coat", code="coat", sequence=2),
    OperationDefinition(operation_id="op003", operation_name="Kiss Cut", code="kiss_cut", sequence=3, can_run_parallel=True),
    OperationDefinition(operation_id="op005", operation_name="Backscore", code="backscore", sequence=3, can_run_parallel=True),
    OperationDefinition(operation_id="op004", operation_name="Slit", code="slit", sequence=4),
]

FALLBACK_PRINT_OPERATION_ID = "op001"

# Names operators and older scanner clients send instead of operation ids
OPERATION_ALIASES: Dict[str, str] = {
    "print": "op001",
    "printing": "op001",
    "coat": "op002",
    "coating": "op002",
    "kiss-cut": "op003",
    "kiss cut": "op003",
    "kisscut": "op003",
    "backscore": "op005",
    "back score": "op005",
    "slit": "op004",
    "slitter": "op004",
    "slitting": "op004",
}

OPERATION_ID_PATTERN = re.compile(r"^op\d+$")
WHITESPACE = re.compile(r"\s+")


def normalize_operation_code(operation_name: str) -> str:
    """
    Map a free-form operation name to its operation code.

    The job record's operation flags are keyed by these codes, which predate the
    catalog: coating and slitting are stored as ``coating`` and ``slitter``.

    Example:
        >>> normalize_operation_code("Kiss Cut")
        'kiss_cut'
        >>> normalize_operation_code("Hot Foil")
        'hot_foil'
    """
    normalized = operation_name.lower().strip()

    if "print" in normalized:
        return "print"
    if "coat" in normalized:
        return "coating"
    if "kiss" in normalized and "cut" in normalized:
        return "kiss_cut"
    if "backscore" in normalized or "back score" in normalized:
        return "backscore"
    if "slit" in normalized:
        return "slitter"

    return WHITESPACE.sub("_", normalized)


class OperationCatalog:
    """Read-only lookups over the operation definitions."""

    def __init__(self, operations: Iterable[OperationDefinition] = DEFAULT_OPERATIONS):
        self._operations = sorted(operations, key=lambda op: (op.sequence, op.operation_id))
        self._by_id = {op.operation_id.lower(): op for op in self._operations}
        self._by_code = {op.code: op for op in self._operations}

    def __iter__(self):
        return iter(self._operations)

    def all(self) -> List[OperationDefinition]:
        return list(self._operations)

    def get(self, operation_id: str) -> Optional[OperationDefinition]:
        return self._by_id.get(operation_id.strip().lower())

    def by_code(self, code: str) -> Optional[OperationDefinition]:
        return self._by_code.get(code)

    def code_for(self, operation_id: str) -> Optional[str]:
        operation = self.get(operation_id)
        return operation.code if operation else None

    def resolve(self, reference: str) -> Optional[OperationDefinition]:
        """
        Resolve an operation reference sent with a scan.

        References are case-insensitive and may be operation ids (``OP003``),
        known aliases (``kiss-cut``), catalog codes (``kiss_cut``) or a
        fragment of an operation name.

        Returns:
            The matching OperationDefinition, or None when nothing matches
        """
        normalized = str(reference).strip().lower()
        if not normalized:
            return None

        if OPERATION_ID_PATTERN.match(normalized):
            return self._by_id.get(normalized)

        alias = OPERATION_ALIASES.get(normalized)
        if alias:
            return self._by_id.get(alias)

        by_code = self.by_code(normalized)
        if by_code:
            return by_code

        for operation in self._operations:
            if normalized in operation.operation_name.lower():
                return operation
        return None

    def print_operation(self) -> OperationDefinition:
        for operation in self._operations:
            if "print" in operation.operation_name.lower():
                return operation
        return self._by_id[FALLBACK_PRINT_OPERATION_ID]

    def predecessors(self, operation_id: str) -> List[OperationDefinition]:
        """Operations in an earlier pipeline stage, nearest stage last."""
        operation = self.get(operation_id)
        if operation is None:
            return []
        return [op for op in self._operations if op.sequence < operation.sequence]

    def successors(self, operation_id: str) -> List[OperationDefinition]:
        """Operations in a later pipeline stage."""
        operation = self.get(operation_id)
        if operation is None:
            return []
        return [op for op in self._operations if op.sequence > operation.sequence]

    def is_first(self, operation_id: str) -> bool:
        operation = self.get(operation_id)
        return operation is not None and not self.predecessors(operation.operation_id)
