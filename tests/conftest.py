"""
Pytest configuration and fixtures for Production Suite Backend tests.
"""

import os
import shutil
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
TEST_DATA_DIR = tempfile.mkdtemp(prefix="production_suite_test_")
os.environ["PRODUCTION_SUITE_DB_PATH"] = str(Path(TEST_DATA_DIR) / "api.db")
os.environ["PRODUCTION_SUITE_SCHEDULER_ENABLED"] = "false"

from production_suite_backend.catalog import OperationCatalog
from production_suite_backend.database import Database
from production_suite_backend.durations import DurationAggregator
from production_suite_backend.ingestion import ScanIngestor
from production_suite_backend.main import app
from production_suite_backend.reconciler import StatusReconciler
from production_suite_backend.sources import MachineEventSource, ScanEventSource

from fakes import (
    FakeDurationStore,
    FakeJobRecordStore,
    FakeMachineEventStore,
    FakeMappingStore,
    FakeMarkerStore,
    FakeOperationStateStore,
    FakeScanEventStore,
)


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Remove the shared test data directory after the session."""
    yield TEST_DATA_DIR
    shutil.rmtree(TEST_DATA_DIR, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def catalog():
    return OperationCatalog()


@pytest.fixture
def stores():
    """Fresh in-memory stores for one test."""
    return SimpleNamespace(
        mapping=FakeMappingStore(),
        state=FakeOperationStateStore(),
        jobs=FakeJobRecordStore(),
        markers=FakeMarkerStore(),
        scans=FakeScanEventStore(),
        machine=FakeMachineEventStore(),
        durations=FakeDurationStore(),
    )


@pytest.fixture
def aggregator(stores, catalog):
    return DurationAggregator(stores.state, stores.durations, stores.machine, catalog, print_machine_id="press-1")


@pytest.fixture
def reconciler(stores, catalog, aggregator):
    """Reconciliation engine wired to the in-memory stores."""
    return StatusReconciler(
        mapping_store=stores.mapping,
        state_store=stores.state,
        job_store=stores.jobs,
        marker_store=stores.markers,
        scan_source=ScanEventSource(stores.scans),
        machine_source=MachineEventSource(stores.machine),
        catalog=catalog,
        durations=aggregator,
    )


@pytest.fixture
def ingestor(stores):
    triggered = []
    scan_ingestor = ScanIngestor(stores.mapping, stores.scans, trigger=lambda: triggered.append(True))
    scan_ingestor.triggered = triggered
    return scan_ingestor


@pytest.fixture
def database(tmp_path):
    """Temporary SQLite database with the full schema."""
    return Database(tmp_path / "production_suite.db", timeout=5.0)
