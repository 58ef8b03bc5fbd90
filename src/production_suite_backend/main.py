from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .catalog import OperationCatalog
from .configuration import load_settings
from .database import Database
from .durations import DurationAggregator
from .exceptions import AmbiguousScanError, ScanNotFoundError
from .ingestion import ScanIngestor
from .models import (
    BackfillResult,
    JobStatusDetail,
    MarkerResetRequest,
    OperationDefinition,
    ProcessRequest,
    ProcessResponse,
    RecordedScan,
    ScannedCodeRequest,
    ScanOutcome,
    ScanRequest,
)
from .reconciler import StatusReconciler
from .repositories import (
    SqliteDurationStore,
    SqliteJobRecordStore,
    SqliteMachineEventStore,
    SqliteMappingStore,
    SqliteMarkerStore,
    SqliteOperationStateStore,
    SqliteScanEventStore,
    seed_operations,
)
from .scheduler import OnDemandPass, ReconciliationScheduler
from .sources import MachineEventSource, ScanEventSource

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

PROCESS_SOURCES = {"both", "print_os", "scanner"}

settings = load_settings()
database = Database(settings.database_path, timeout=settings.database_timeout_seconds)
catalog = OperationCatalog()
seed_operations(database, catalog)

machine_store = SqliteMachineEventStore(database)
scan_store = SqliteScanEventStore(database)
mapping_store = SqliteMappingStore(database)
state_store = SqliteOperationStateStore(database)

durations: Optional[DurationAggregator] = None
if settings.durations_enabled:
    durations = DurationAggregator(state_store, SqliteDurationStore(database), machine_store, catalog, settings.print_machine_id)

reconciler = StatusReconciler(
    mapping_store=mapping_store,
    state_store=state_store,
    job_store=SqliteJobRecordStore(database),
    marker_store=SqliteMarkerStore(database),
    scan_source=ScanEventSource(scan_store),
    machine_source=MachineEventSource(machine_store),
    catalog=catalog,
    durations=durations,
)

# Scan passes requested by ingestion run off the request thread, at most one pending.
scan_pass = OnDemandPass("scanner", reconciler.process_scan_events)
ingestor = ScanIngestor(mapping_store, scan_store, trigger=scan_pass.request)

scheduler = ReconciliationScheduler(
    {"print_os": reconciler.process_machine_events, "scanner": reconciler.process_scan_events},
    interval_seconds=settings.scheduler_interval_seconds,
    run_on_start=settings.scheduler_run_on_start,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("Reconciliation scheduler disabled")
    try:
        yield
    finally:
        scheduler.stop(timeout=5)
        scan_pass.shutdown(wait=False)


app = FastAPI(title="Production Suite API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_reconciler() -> StatusReconciler:
    return reconciler


def get_ingestor() -> ScanIngestor:
    return ingestor


def get_durations() -> Optional[DurationAggregator]:
    return durations


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/operations", response_model=List[OperationDefinition])
def list_operations(engine: StatusReconciler = Depends(get_reconciler)) -> List[OperationDefinition]:
    return engine.catalog.all()


@app.post("/api/scan", response_model=ScanOutcome)
def scan(request: ScanRequest, scans: ScanIngestor = Depends(get_ingestor)):
    if not request.scan.strip():
        raise HTTPException(status_code=400, detail="Scan input is required")

    try:
        return scans.record_scan(request.scan, request.machine_id, request.user_id, request.operations)
    except AmbiguousScanError as exc:
        # Operators pick from the candidates, so they travel with the error.
        return JSONResponse(status_code=400, content={"detail": str(exc), "matches": exc.candidates})
    except ScanNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/scanned-codes", response_model=RecordedScan, status_code=201)
def record_scanned_code(request: ScannedCodeRequest, scans: ScanIngestor = Depends(get_ingestor)) -> RecordedScan:
    if not request.code_text.strip():
        raise HTTPException(status_code=400, detail="code_text is required")
    return scans.record_raw_scan(request.code_text, request.machine_id, request.user_id, request.operations, request.metadata)


@app.post("/api/process-status-updates", response_model=ProcessResponse)
def process_status_updates(request: Optional[ProcessRequest] = None, engine: StatusReconciler = Depends(get_reconciler)) -> ProcessResponse:
    source = (request or ProcessRequest()).source
    if source not in PROCESS_SOURCES:
        raise HTTPException(status_code=400, detail=f"Invalid source {source!r}; expected one of {sorted(PROCESS_SOURCES)}")

    response = ProcessResponse()
    if source in ("both", "print_os"):
        response.print_os = engine.process_machine_events()
    if source in ("both", "scanner"):
        response.scanner = engine.process_scan_events()
    return response


@app.post("/api/markers/reset")
def reset_markers(request: Optional[MarkerResetRequest] = None, engine: StatusReconciler = Depends(get_reconciler)) -> Dict[str, int]:
    return engine.reset_markers((request or MarkerResetRequest()).sources)


@app.post("/api/durations/backfill", response_model=BackfillResult)
def backfill_durations(aggregator: Optional[DurationAggregator] = Depends(get_durations)) -> BackfillResult:
    if aggregator is None:
        raise HTTPException(status_code=409, detail="Duration tracking is disabled")
    return aggregator.backfill()


@app.get("/api/jobs/{job_id}/status", response_model=JobStatusDetail)
def job_status(job_id: str, engine: StatusReconciler = Depends(get_reconciler)) -> JobStatusDetail:
    detail = engine.job_status(job_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return detail
