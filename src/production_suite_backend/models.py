from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PRINT_READY = "print_ready"
    PRINTED = "printed"
    DIGITAL_CUT = "digital_cut"
    SLITTER = "slitter"
    PRODUCTION_FINISHED = "production_finished"


class OperationStatus(str, Enum):
    PLANNED = "planned"
    COMPLETED = "completed"
    ABORTED = "aborted"


class CompletedBy(str, Enum):
    SCANNER = "scanner"
    PRINT_OS = "print_os"


class MarkerSource(str, Enum):
    SCANNED_CODES = "scanned_codes"
    PRINT_OS = "print_os"


class PrintProgress(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    ABORTED = "aborted"


class OperationDefinition(BaseModel):
    operation_id: str
    operation_name: str
    code: str
    sequence: int
    can_run_parallel: bool = False


class JobOperationRecord(BaseModel):
    job_id: str
    version_tag: str
    operation_id: str
    status: OperationStatus = OperationStatus.PLANNED
    completed_at: Optional[datetime] = None
    completed_by: Optional[CompletedBy] = None
    source_id: Optional[int] = None


class ImpositionOperationRecord(BaseModel):
    imposition_id: str
    operation_id: str
    status: OperationStatus = OperationStatus.PLANNED
    completed_at: Optional[datetime] = None
    completed_by: Optional[CompletedBy] = None
    source_id: Optional[int] = None


class ScanEvent(BaseModel):
    scan_id: int
    code_text: str
    scanned_at: datetime
    machine_id: Optional[str] = None
    user_id: Optional[str] = None
    operations: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MachineEvent(BaseModel):
    id: int
    name: str
    status: str
    marker: int
    job_complete_time: Optional[datetime] = None
    copies: int = 0
    elapsed_seconds: Optional[int] = None


class OperationDuration(BaseModel):
    job_id: str
    version_tag: str
    operation_id: str
    machine_id: Optional[str] = None
    duration_seconds: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PassResult(BaseModel):
    processed: int = 0
    jobs_updated: int = 0
    errors: List[str] = Field(default_factory=list)


class MachinePassResult(PassResult):
    last_marker: int = 0


class ScanPassResult(PassResult):
    last_scan_id: int = 0


class BackfillResult(BaseModel):
    recorded: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


class ScanRequest(BaseModel):
    scan: str
    machine_id: Optional[str] = None
    user_id: Optional[str] = None
    operations: List[str] = Field(default_factory=list)


class ScannedCodeRequest(BaseModel):
    code_text: str
    machine_id: Optional[str] = None
    user_id: Optional[str] = None
    operations: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RecordedScan(BaseModel):
    scan_id: int
    code_text: str
    scanned_at: datetime


class ScanOutcome(BaseModel):
    runlist_id: Optional[str] = None
    job_id: Optional[str] = None
    version_tag: Optional[str] = None
    scanned_imposition_id: Optional[str] = None
    recorded_scans: List[RecordedScan] = Field(default_factory=list)


class ProcessRequest(BaseModel):
    source: str = "both"


class ProcessResponse(BaseModel):
    print_os: Optional[MachinePassResult] = None
    scanner: Optional[ScanPassResult] = None


class VersionStatus(BaseModel):
    version_tag: str
    status: JobStatus
    completed_operations: List[str]


class JobStatusDetail(BaseModel):
    job_id: str
    status: Optional[str] = None
    operations: Dict[str, bool] = Field(default_factory=dict)
    versions: List[VersionStatus] = Field(default_factory=list)


class ServiceSettings(BaseModel):
    database_path: str
    database_timeout_seconds: float
    scheduler_enabled: bool
    scheduler_interval_seconds: float
    scheduler_run_on_start: bool
    durations_enabled: bool
    print_machine_id: Optional[str] = None


class MarkerResetRequest(BaseModel):
    sources: List[MarkerSource] = Field(default_factory=lambda: list(MarkerSource))
