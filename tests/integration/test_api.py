"""
Integration tests for the REST and WebSocket API.

The app runs its real lifespan (manager, relay, reconciler) over an
in-memory store and a scripted HPC backend. The embedded reconciler is
disabled; tests drive passes explicitly.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.app import create_app
from fakes import FakeHPCClient, drive_to, report
from tuning_engine.jobs.errors import RemoteNotConfigured
from tuning_engine.jobs.store import InMemoryJobStore


@pytest.fixture
def backend():
    return FakeHPCClient()


@pytest.fixture
def client(settings, backend):
    app = create_app(settings=settings, store=InMemoryJobStore(), client=backend)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def api_manager(client):
    return client.app.state.manager


def submit(client, **overrides):
    body = {"owner": "user-1", "base_model": "mistral-7b", "config": {"epochs": 2}}
    body.update(overrides)
    return client.post("/api/jobs", json=body)


def submitted_id(response):
    return response.json()["data"]["jobs"][0]["id"]


class TestSubmitEndpoint:
    """Test POST /api/jobs."""

    def test_created(self, client, backend):
        response = submit(client, name="support-bot", corpus_ref="corpus-1")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "succeed"
        job = body["data"]["jobs"][0]
        assert job["status"] == "queued"
        assert job["name"] == "support-bot"
        assert job["remote_job_id"] == "hpc-1"
        assert job["config"]["epochs"] == 2
        assert job["config"]["learning_rate"] > 0
        assert backend.submitted == [job["id"]]

    def test_invalid_config(self, client, backend):
        response = submit(client, config={"chunk_size": 256, "chunk_overlap": 256, "dropout": 0.1})

        assert response.status_code == 422
        body = response.json()
        assert body["status"] == "failed"
        assert len(body["details"]) == 2
        assert backend.submitted == []
        assert client.get("/api/jobs").json()["data"]["total"] == 0

    def test_malformed_body(self, client):
        response = client.post("/api/jobs", json={"base_model": "mistral-7b"})
        assert response.status_code == 422
        assert "owner" in response.json()["error"]

    def test_backend_not_configured(self, client, backend):
        backend.submit_error = RemoteNotConfigured("HPC server not configured")
        job = submit(client).json()["data"]["jobs"][0]
        assert job["status"] == "queued"
        assert job["infra_status"] == "not_configured"
        assert job["error_detail"] is None


class TestQueryEndpoints:
    """Test job reads."""

    def test_list_filters(self, client):
        mine = submitted_id(submit(client, owner="alice"))
        submit(client, owner="bob")

        body = client.get("/api/jobs", params={"owner": "alice"}).json()["data"]
        assert [j["id"] for j in body["jobs"]] == [mine]
        assert body["total"] == 1

    def test_invalid_status_filter(self, client):
        response = client.get("/api/jobs", params={"status": "sleeping"})
        assert response.status_code == 422

    def test_get_missing(self, client):
        response = client.get("/api/jobs/does-not-exist")
        assert response.status_code == 404
        assert response.json()["status"] == "failed"

    def test_owner_mismatch(self, client):
        job_id = submitted_id(submit(client, owner="alice"))
        assert client.get(f"/api/jobs/{job_id}", params={"owner": "bob"}).status_code == 403

    def test_metrics_and_logs(self, client, backend, api_manager):
        job_id = submitted_id(submit(client))
        backend.metric_steps["hpc-1"] = [0, 10]
        backend.log_messages["hpc-1"] = ["loading model", "epoch 1"]
        drive_to(api_manager, backend, job_id, report("running", progress=15))

        metrics = client.get(f"/api/jobs/{job_id}/metrics").json()["data"]["metrics"]
        assert [m["step"] for m in metrics] == [0, 10]
        later = client.get(f"/api/jobs/{job_id}/metrics", params={"after_step": 0}).json()
        assert [m["step"] for m in later["data"]["metrics"]] == [10]

        logs = client.get(f"/api/jobs/{job_id}/logs").json()["data"]["logs"]
        assert [l["message"] for l in logs] == ["loading model", "epoch 1"]
        assert logs[0]["level"] == "info"

    def test_metrics_for_missing_job(self, client):
        assert client.get("/api/jobs/nope/metrics").status_code == 404


class TestCancelEndpoint:
    """Test DELETE /api/jobs/{id}."""

    def test_cancel(self, client, backend, api_manager):
        job_id = submitted_id(submit(client))
        drive_to(api_manager, backend, job_id, report("training", progress=40))

        response = client.delete(f"/api/jobs/{job_id}")

        assert response.status_code == 200
        job = response.json()["data"]["jobs"][0]
        assert job["status"] == "cancelled"
        assert job["progress"] == 40
        assert job["completed_at"] is not None
        assert backend.cancelled == ["hpc-1"]

    def test_cancel_terminal(self, client):
        job_id = submitted_id(submit(client))
        client.delete(f"/api/jobs/{job_id}")
        response = client.delete(f"/api/jobs/{job_id}")
        assert response.status_code == 400

    def test_cancel_missing(self, client):
        assert client.delete("/api/jobs/nope").status_code == 404


class TestStatusEndpoints:
    """Test health and reconciler status."""

    def test_health(self, client):
        data = client.get("/health").json()["data"]
        assert data["health"] == "ok"
        assert data["backend"] == "configured"
        assert data["reconciler"] == "stopped"

    def test_root(self, client):
        assert client.get("/").json()["data"]["docs"] == "/docs"

    def test_reconciler_status(self, client):
        submit(client)
        data = client.get("/api/reconciler/status").json()["data"]
        assert data["backend_configured"] is True
        assert data["job_counts"]["queued"] == 1
        assert data["relay"] == {"subscribers": 0, "dropped": 0}
        assert data["reconciler"]["running"] is False


class TestWebSocket:
    """Test live job streams."""

    def test_snapshot_then_updates(self, client, backend, api_manager):
        job_id = submitted_id(submit(client))
        backend.metric_steps["hpc-1"] = [1]

        with client.websocket_connect(f"/ws/jobs/{job_id}") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["data"]["job"]["id"] == job_id
            assert snapshot["data"]["metrics"] == []

            drive_to(api_manager, backend, job_id, report("training", progress=20))
            kinds = set()
            while kinds != {"metric", "job"}:
                event = ws.receive_json()
                if event["type"] != "ping":
                    kinds.add(event["type"])

    def test_closes_on_terminal(self, client):
        job_id = submitted_id(submit(client))
        client.delete(f"/api/jobs/{job_id}")

        with client.websocket_connect(f"/ws/jobs/{job_id}") as ws:
            snapshot = ws.receive_json()
            assert snapshot["data"]["job"]["status"] == "cancelled"
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

    def test_unknown_job(self, client):
        with client.websocket_connect("/ws/jobs/nope") as ws:
            assert ws.receive_json()["type"] == "error"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4004

    def test_job_list_stream(self, client):
        submit(client, owner="alice")
        with client.websocket_connect("/ws/jobs?owner=alice") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert len(snapshot["data"]["jobs"]) == 1

            submit(client, owner="alice")
            event = ws.receive_json()
            while event["type"] == "ping":
                event = ws.receive_json()
            assert event["type"] == "job"
