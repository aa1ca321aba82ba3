"""
test_routers_sync.py — Tests for the /api/sync router

Trigger (incl. 409 on lock contention and request validation), status,
history, health, metrics, run lookup, failures, re-drive, stuck sweep,
cache rebuild and the x-sync-key guard.
The orchestrator dependency is overridden with one wired to FakeRemote.

Called by: pytest
Depends on: stocksync/routers/sync.py, stocksync/dependencies.py, conftest.py
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import FakeRemote, item
from stocksync.config import settings


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote(items={"A1": item(stock=5), "A2": item(stock=0)})


@pytest.fixture()
def orchestrator(make_orchestrator, remote):
    return make_orchestrator(remote)


@pytest.fixture()
def client(orchestrator) -> TestClient:
    """TestClient with the orchestrator dependency overridden."""
    from stocksync.dependencies import get_orchestrator
    from stocksync.main import app

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with patch.object(settings, "scheduler_enabled", False), TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class TestTrigger:
    def test_trigger_full(self, client):
        resp = client.post("/api/sync/trigger", json={"strategy": "full"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "succeeded"
        assert body["strategy"] == "full"
        assert body["written"] == 2
        assert body["trigger"] == "api"

    def test_default_is_smart(self, client):
        body = client.post("/api/sync/trigger", json={}).json()
        assert body["requested_strategy"] == "smart"
        assert body["strategy"] == "full"

    def test_dry_run(self, client):
        body = client.post("/api/sync/trigger", json={"strategy": "full", "dry_run": True}).json()
        assert body["dry_run"] is True
        assert body["written"] == 0
        assert len(body["details"]["would_write"]) == 2

    def test_skipped_run_returns_409(self, client, orchestrator):
        orchestrator.guard.acquire("other-run")
        resp = client.post("/api/sync/trigger", json={"strategy": "full"})
        assert resp.status_code == 409
        assert resp.json()["status"] == "skipped"
        assert resp.json()["error_kind"] == "lock_contention"

    @pytest.mark.parametrize("payload", [
        {"strategy": "hourly"},
        {"strategy": "targeted"},
        {"strategy": "full", "lock_mode": "queue"},
        {"strategy": "full", "batch_size": 5000},
        {"strategy": "full", "entity_kind": "order"},
    ])
    def test_invalid_requests(self, client, payload):
        assert client.post("/api/sync/trigger", json=payload).status_code == 422

    def test_targeted_keys_are_cleaned(self, client, remote):
        resp = client.post("/api/sync/trigger", json={
            "strategy": "targeted", "keys": [" A1 ", "A1", ""],
        })
        assert resp.status_code == 200
        assert remote.key_calls == [("item", ["A1"])]


class TestObservability:
    def test_status(self, client):
        client.post("/api/sync/trigger", json={"strategy": "full"})
        body = client.get("/api/sync/status").json()
        assert body["running"] is None
        assert body["lock"] is None
        assert body["last_run"]["status"] == "succeeded"

    def test_status_shows_lock(self, client, orchestrator):
        orchestrator.guard.acquire("other-run")
        body = client.get("/api/sync/status").json()
        assert body["lock"]["run_id"] == "other-run"
        assert body["lock"]["stale"] is False

    def test_history(self, client, clock):
        client.post("/api/sync/trigger", json={"strategy": "full"})
        clock.advance(minutes=1)
        client.post("/api/sync/trigger", json={"strategy": "critical_only"})
        runs = client.get("/api/sync/history").json()
        assert [r["strategy"] for r in runs] == ["critical_only", "full"]
        runs = client.get("/api/sync/history", params={"strategy": "full"}).json()
        assert len(runs) == 1

    def test_history_unknown_strategy(self, client):
        assert client.get("/api/sync/history", params={"strategy": "bogus"}).status_code == 400

    def test_health(self, client):
        assert client.get("/api/sync/health").json()["status"] == "degraded"
        client.post("/api/sync/trigger", json={"strategy": "full"})
        body = client.get("/api/sync/health").json()
        assert body["status"] == "healthy"
        assert body["consecutive_failures"] == 0

    def test_metrics(self, client):
        client.post("/api/sync/trigger", json={"strategy": "full"})
        body = client.get("/api/sync/metrics", params={"days": 1}).json()
        assert body["runs"] == 1
        assert body["items_written"] == 2

    def test_run_lookup(self, client):
        run_id = client.post("/api/sync/trigger", json={"strategy": "full"}).json()["id"]
        assert client.get(f"/api/sync/runs/{run_id}").json()["id"] == run_id
        assert client.get("/api/sync/runs/missing").status_code == 404

    def test_liveness(self, client):
        assert client.get("/health").json()["status"] == "ok"


class TestFailuresAndRedrive:
    def test_failures_and_retry(self, client, remote, clock):
        from stocksync.sync.errors import TransportError

        remote.fail_pages[("item", 0)] = [TransportError("502")] * 3
        run = client.post("/api/sync/trigger", json={"strategy": "full"}).json()
        assert run["status"] == "partial"

        failures = client.get("/api/sync/failures").json()
        assert [(f["natural_key"], f["entity_kind"]) for f in failures] == [("item@0", "page")]

        # Page failures are not re-drivable key by key
        body = client.post("/api/sync/retry-failed", json={}).json()
        assert body["runs"] == []

        clock.advance(minutes=1)
        body = client.post("/api/sync/retry-failed", json={"keys": ["A1"]}).json()
        assert body["runs"][0]["strategy"] == "targeted"
        assert body["runs"][0]["status"] == "succeeded"

    def test_retry_unknown_run(self, client):
        resp = client.post("/api/sync/retry-failed", json={"run_id": "missing"})
        assert resp.status_code == 404

    def test_retry_bad_kind(self, client):
        resp = client.post("/api/sync/retry-failed", json={"entity_kind": "order"})
        assert resp.status_code == 400

    def test_check_stuck(self, client, orchestrator, clock, test_settings):
        orchestrator.log.start("dead-run", "full")
        orchestrator.log.mark_running("dead-run", "full")
        orchestrator.guard.acquire("dead-run")
        clock.advance(seconds=test_settings.sync_lock_stale_seconds + 1)
        body = client.post("/api/sync/check-stuck").json()
        assert body == {"reaped_lock_from": "dead-run", "stuck_runs": ["dead-run"]}

    def test_rebuild_cache_without_cache(self, client):
        assert client.post("/api/sync/rebuild-cache").status_code == 400


class TestSyncKey:
    def test_open_when_no_key_configured(self, client):
        assert client.get("/api/sync/health").status_code == 200

    def test_rejects_missing_or_wrong_key(self, client):
        with patch.object(settings, "sync_api_key", "s3cret"):
            assert client.get("/api/sync/health").status_code == 401
            resp = client.get("/api/sync/health", headers={"x-sync-key": "nope"})
            assert resp.status_code == 401

    def test_accepts_matching_key(self, client):
        with patch.object(settings, "sync_api_key", "s3cret"):
            resp = client.get("/api/sync/health", headers={"x-sync-key": "s3cret"})
            assert resp.status_code == 200
