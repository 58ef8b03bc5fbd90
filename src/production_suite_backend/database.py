"""
SQLite database for production tracking state.

This module owns the connection discipline and schema shared by the sqlite
repositories. Every repository call opens its own short-lived connection, so a
reconciliation pass never holds a transaction across events.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/production_suite.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS operations (
    operation_id TEXT PRIMARY KEY,
    operation_name TEXT NOT NULL,
    code TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    can_run_parallel INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS imposition_file_mapping (
    imposition_id TEXT NOT NULL,
    file_id TEXT NOT NULL,
    sequence_order INTEGER,
    PRIMARY KEY (imposition_id, file_id)
);

CREATE INDEX IF NOT EXISTS idx_imposition_file_mapping_file
ON imposition_file_mapping(file_id);

CREATE TABLE IF NOT EXISTS production_planner_paths (
    imposition_id TEXT PRIMARY KEY,
    runlist_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_production_planner_paths_runlist
ON production_planner_paths(runlist_id);

CREATE TABLE IF NOT EXISTS job_operations (
    job_id TEXT NOT NULL,
    version_tag TEXT NOT NULL,
    operation_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'planned',
    completed_at TEXT,
    completed_by TEXT,
    source_id INTEGER,
    PRIMARY KEY (job_id, version_tag, operation_id)
);

CREATE TABLE IF NOT EXISTS imposition_operations (
    imposition_id TEXT NOT NULL,
    operation_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'planned',
    completed_at TEXT,
    completed_by TEXT,
    source_id INTEGER,
    PRIMARY KEY (imposition_id, operation_id)
);

CREATE TABLE IF NOT EXISTS scanned_codes (
    scan_id INTEGER PRIMARY KEY AUTOINCREMENT,
    code_text TEXT NOT NULL,
    scanned_at TEXT NOT NULL,
    machine_id TEXT,
    user_id TEXT,
    operations TEXT,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS print_os_records (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    marker INTEGER NOT NULL,
    job_complete_time TEXT,
    copies INTEGER DEFAULT 0,
    elapsed_seconds INTEGER
);

CREATE INDEX IF NOT EXISTS idx_print_os_records_marker
ON print_os_records(marker);

CREATE TABLE IF NOT EXISTS processing_markers (
    marker_type TEXT PRIMARY KEY,
    last_processed_id INTEGER NOT NULL DEFAULT 0,
    last_processed_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    status TEXT,
    operations TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS job_versions (
    job_id TEXT NOT NULL,
    version_tag TEXT NOT NULL,
    current_status TEXT NOT NULL,
    updated_at TEXT,
    PRIMARY KEY (job_id, version_tag)
);

CREATE TABLE IF NOT EXISTS job_operation_duration (
    job_id TEXT NOT NULL,
    version_tag TEXT NOT NULL,
    operation_id TEXT NOT NULL,
    machine_id TEXT,
    operation_duration_seconds INTEGER,
    operation_started_at TEXT,
    operation_completed_at TEXT,
    updated_at TEXT,
    PRIMARY KEY (job_id, version_tag, operation_id)
);
"""


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return to_naive_utc(dt).isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def load_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed JSON column value: {value!r}")
        return default


class Database:
    """
    SQLite connection factory and schema owner.

    Thread-safe: each call opens its own connection and SQLite handles
    concurrent access with WAL mode. ``timeout`` bounds how long any statement
    waits on a locked database.

    Attributes:
        db_path: Location of the database file
        timeout: Seconds to wait for a lock before failing the statement
        capabilities: Optional-column flags probed once at startup
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, timeout: float = 30.0, create_schema: bool = True):
        self.db_path = Path(db_path)
        self.timeout = timeout
        _ensure_db_dir(self.db_path)
        if create_schema:
            self._init_db()
        self.capabilities: Dict[str, bool] = self._probe_capabilities()

    @contextmanager
    def connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def has_column(self, table: str, column: str) -> bool:
        with self.connection() as conn:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(row["name"] == column for row in rows)

    def _probe_capabilities(self) -> Dict[str, bool]:
        """
        Detect optional columns once so updates never depend on error text.

        Databases migrated from older deployments may lack the ``status``
        column on the operation tables; writers then omit it.
        """
        capabilities = {
            "job_operations.status": self.has_column("job_operations", "status"),
            "imposition_operations.status": self.has_column("imposition_operations", "status"),
        }
        for name, present in capabilities.items():
            if not present:
                logger.warning(f"Optional column {name} is missing; status writes will be skipped")
        return capabilities
