"""Tests for the public health and metrics endpoints."""

import pytest


@pytest.mark.integration
class TestHealth:

    async def test_healthy(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["version"] == "2.0.0"
        assert data["uptime"] >= 0
        assert "timestamp" in data

    async def test_unhealthy_when_database_is_down(self, client, monkeypatch):
        import db.database as db_mod

        async def broken_ping():
            raise ConnectionRefusedError("database is down")

        monkeypatch.setattr(db_mod, "ping_db", broken_ping)
        resp = await client.get("/health")
        assert resp.status_code == 503
        assert resp.json() == {"status": "unhealthy", "error": "database is down"}

    async def test_no_auth_required(self, client):
        assert (await client.get("/health")).status_code == 200
        assert (await client.get("/metrics")).status_code == 200

    async def test_security_and_tracking_headers(self, client):
        resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"


@pytest.mark.integration
class TestMetricsEndpoint:

    async def test_prometheus_text(self, client):
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "# TYPE speedtest_runs_total counter" in resp.text
        assert "speedtest_last_upload_mbps" in resp.text
        assert "process_uptime_seconds" in resp.text

    async def test_reflects_auth_failures(self, client):
        await client.get("/api/status", headers={"x-api-key": "sm_nope"})
        resp = await client.get("/metrics")
        assert 'auth_checks_total{method="api_key",result="failure"} 1.0' in resp.text
