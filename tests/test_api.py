"""
Tests for Production Suite API endpoints.

Tests cover:
- Health check and operation catalog
- Operator scans (lookup, recording, ambiguous and unknown input)
- Raw scanned code recording
- On-demand processing, marker reset and duration backfill
- Job status
"""

import pytest

from production_suite_backend.main import ingestor, mapping_store, scan_pass, state_store


@pytest.fixture
def api_job():
    """Job 7100_2000 v1 planned for print and coat on an imposition of runlist APIRL300."""
    mapping_store.add_file("Labex_api_imp_1", "FILE_1_Labex_7100_2000_50")
    mapping_store.assign_runlist("Labex_api_imp_1", "APIRL300")
    for operation_id in ["op001", "op002"]:
        state_store.plan_job_operation("7100_2000", "1", operation_id)
        state_store.plan_imposition_operation("Labex_api_imp_1", operation_id)
    return "7100_2000"


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestOperations:
    """Tests for the /api/operations endpoint."""

    def test_lists_catalog(self, client):
        response = client.get("/api/operations")
        assert response.status_code == 200

        data = response.json()
        assert [op["operation_id"] for op in data] == ["op001", "op002", "op003", "op005", "op004"]
        assert data[2]["can_run_parallel"] is True


class TestScan:
    """Tests for the /api/scan endpoint."""

    def test_blank_scan_is_rejected(self, client):
        response = client.post("/api/scan", json={"scan": "  "})
        assert response.status_code == 400

    def test_missing_scan_field(self, client):
        response = client.post("/api/scan", json={"operations": ["print"]})
        assert response.status_code == 422

    def test_ambiguous_scan_returns_matches(self, client):
        """A partial scan matching several runlists is rejected with the candidates."""
        mapping_store.assign_runlist("Labex_api_imp_200", "APIRL200")
        mapping_store.assign_runlist("Labex_api_imp_2000", "APIRL2000")

        response = client.post("/api/scan", json={"scan": "APIRL20", "machine_id": "m1", "operations": ["coat"]})

        assert response.status_code == 400
        data = response.json()
        assert data["matches"] == ["APIRL200", "APIRL2000"]
        assert "Please scan the full runlist ID" in data["detail"]

    def test_unknown_scan(self, client):
        response = client.post("/api/scan", json={"scan": "no-such-thing"})
        assert response.status_code == 404
        assert "no-such-thing" in response.json()["detail"]

    def test_lookup_only(self, client, api_job):
        response = client.post("/api/scan", json={"scan": "7100_2000_1"})

        assert response.status_code == 200
        data = response.json()
        assert data["runlist_id"] == "APIRL300"
        assert data["scanned_imposition_id"] == "Labex_api_imp_1"
        assert data["recorded_scans"] == []

    def test_scan_is_recorded_and_reconciled(self, client, api_job):
        response = client.post(
            "/api/scan",
            json={"scan": "7100_2000_1", "machine_id": "m1", "user_id": "u1", "operations": ["print"]},
        )
        assert response.status_code == 200
        assert len(response.json()["recorded_scans"]) == 1

        response = client.post("/api/process-status-updates", json={"source": "scanner"})
        assert response.status_code == 200
        assert response.json()["print_os"] is None

        status = client.get(f"/api/jobs/{api_job}/status").json()
        assert status["operations"]["print"] is True
        assert status["versions"] == [{"version_tag": "1", "status": "printed", "completed_operations": ["print"]}]


class TestScannedCodes:
    """Tests for the /api/scanned-codes endpoint."""

    def test_records_raw_scan(self, client):
        response = client.post(
            "/api/scanned-codes",
            json={"code_text": "raw-code", "machine_id": "m1", "operations": ["op002"], "metadata": {"source": "test"}},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["code_text"] == "raw-code"
        assert data["scan_id"] >= 1

    def test_blank_code_text_is_rejected(self, client):
        response = client.post("/api/scanned-codes", json={"code_text": ""})
        assert response.status_code == 400

    def test_recorded_scans_request_a_background_pass(self):
        assert ingestor.trigger == scan_pass.request


class TestProcessing:
    """Tests for processing, marker reset and backfill endpoints."""

    def test_invalid_source(self, client):
        response = client.post("/api/process-status-updates", json={"source": "fax"})
        assert response.status_code == 400

    def test_both_sources_by_default(self, client):
        response = client.post("/api/process-status-updates")

        assert response.status_code == 200
        data = response.json()
        assert set(data["print_os"]) >= {"processed", "jobs_updated", "last_marker", "errors"}
        assert set(data["scanner"]) >= {"processed", "jobs_updated", "last_scan_id", "errors"}

    def test_reset_markers(self, client):
        response = client.post("/api/markers/reset", json={"sources": ["print_os"]})
        assert response.status_code == 200
        assert response.json() == {"print_os": 0}

        response = client.post("/api/markers/reset")
        assert response.json() == {"scanned_codes": 0, "print_os": 0}

    def test_reset_rejects_unknown_source(self, client):
        response = client.post("/api/markers/reset", json={"sources": ["fax"]})
        assert response.status_code == 422

    def test_backfill(self, client):
        response = client.post("/api/durations/backfill")

        assert response.status_code == 200
        assert set(response.json()) == {"recorded", "skipped", "errors"}


class TestJobStatus:
    """Tests for the /api/jobs/{job_id}/status endpoint."""

    def test_unknown_job(self, client):
        response = client.get("/api/jobs/0000_0000/status")
        assert response.status_code == 404

    def test_planned_job(self, client, api_job):
        response = client.get(f"/api/jobs/{api_job}/status")

        assert response.status_code == 200
        assert response.json()["job_id"] == api_job
