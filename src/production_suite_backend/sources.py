"""
Event source adapters for the reconciliation engine.

Each source reads new events past its own cursor: scans by ``scan_id``,
Print OS records by ``marker``. The two sequences are unrelated.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from .models import MachineEvent, ScanEvent
from .stores import MachineEventStore, ScanEventStore

logger = logging.getLogger(__name__)


def deduplicate_machine_events(records: Iterable[MachineEvent]) -> List[MachineEvent]:
    """
    Keep only the highest-marker record per Print OS name.

    The feed can emit several records for the same imposition before it
    settles. Applying them all would let a stale PRINTED land after a newer
    ABORTED within one batch, so only the latest record per name survives.

    Returns:
        Surviving records in ascending marker order
    """
    latest: Dict[str, MachineEvent] = {}
    for record in records:
        current = latest.get(record.name)
        if current is None or current.marker < record.marker:
            latest[record.name] = record
    return sorted(latest.values(), key=lambda record: record.marker)


class ScanEventSource:
    def __init__(self, store: ScanEventStore):
        self.store = store

    def get_new_events(self, since_cursor: int = 0) -> List[ScanEvent]:
        scans = self.store.scans_after(since_cursor)
        return sorted(scans, key=lambda scan: scan.scan_id)

    @staticmethod
    def highest_cursor(events: Iterable[ScanEvent], since_cursor: int = 0) -> int:
        return max([since_cursor, *(event.scan_id for event in events)])


class MachineEventSource:
    def __init__(self, store: MachineEventStore):
        self.store = store

    def get_new_events(self, since_cursor: int = 0) -> List[MachineEvent]:
        records = self.store.events_after(since_cursor)
        events = deduplicate_machine_events(records)

        duplicates = len(records) - len(events)
        logger.info(f"Found {len(records)} new Print OS records")
        if duplicates > 0:
            logger.info(f"Deduplicated {duplicates} Print OS records (keeping latest marker per name)")
        return events

    @staticmethod
    def highest_cursor(events: Iterable[MachineEvent], since_cursor: int = 0) -> int:
        return max([since_cursor, *(event.marker for event in events)])
