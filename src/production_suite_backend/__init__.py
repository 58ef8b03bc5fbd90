"""
Production Suite Backend - production status tracking for label printing

This package keeps the production state of print jobs current by reconciling
two independent event feeds against the planned operations of every job:

- Operator barcode scans recorded at finishing machines
- Print OS press records reported by the digital presses

Each feed is consumed incrementally past a persisted marker. Events are
resolved through the file, imposition and runlist mappings to job versions,
and the matching operation rows are overwritten, so replays are harmless.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - reconciler: Scan and Print OS reconciliation passes
    - ingestion: Operator scan classification and recording
    - identifiers: File, runlist and manual prepress identifier parsing
    - catalog: Fixed operation catalog and alias resolution
    - status: Derived job status rules
    - durations: Per-operation duration aggregation
    - scheduler: Periodic background trigger for the passes
    - repositories: SQLite implementations of the store interfaces
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn production_suite_backend.main:app --host 0.0.0.0 --port 8000
"""
