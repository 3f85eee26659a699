"""Tests for API routes."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services import database as db
from app.services import streaming


@pytest.fixture(autouse=True)
def reset_sse_state():
    # sse-starlette keeps a module-level exit event bound to the first loop that used it
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def no_processing():
    with patch("app.api.routes.jobs.process_job_queue", new=AsyncMock()) as jobs_kick, \
            patch("app.api.routes.deep_research.process_job_queue", new=AsyncMock()) as research_kick:
        yield jobs_kick, research_kick


def parse_sse(text: str) -> list[tuple[str, dict]]:
    events = []
    for block in text.replace("\r\n", "\n").split("\n\n"):
        lines = [line for line in block.split("\n") if line]
        name = next((l[len("event: "):] for l in lines if l.startswith("event: ")), None)
        data = next((l[len("data: "):] for l in lines if l.startswith("data: ")), None)
        if name and data:
            events.append((name, json.loads(data)))
    return events


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "portintel"}


class TestPipeline:
    def test_empty_request_is_rejected(self, client, no_processing):
        response = client.post("/api/research/pipeline/start", json={})
        assert response.status_code == 400

    def test_unknown_cluster_is_404(self, client, no_processing):
        with patch.object(db, "get_cluster", new=AsyncMock(return_value=None)):
            response = client.post("/api/research/pipeline/start", json={"clusterId": "c-404"})
        assert response.status_code == 404

    def test_cluster_ports_are_queued(self, client, no_processing):
        with patch.object(db, "get_cluster", new=AsyncMock(return_value={"id": "c1"})), \
                patch.object(db, "list_ports", new=AsyncMock(return_value=[{"id": "p1"}, {"id": "p2"}])), \
                patch.object(db, "create_jobs", new=AsyncMock(return_value=["j1", "j2"])) as create_jobs:
            response = client.post("/api/research/pipeline/start", json={"clusterId": "c1"})

        assert response.status_code == 200
        assert response.json()["jobIds"] == ["j1", "j2"]
        create_jobs.assert_awaited_once_with("port", ["p1", "p2"], "c1")
        no_processing[0].assert_awaited_once()

    def test_explicit_terminal_ids(self, client, no_processing):
        with patch.object(db, "create_jobs", new=AsyncMock(return_value=["j9"])) as create_jobs:
            response = client.post(
                "/api/research/pipeline/start", json={"entityIds": ["op-1"], "type": "terminal"}
            )
        assert response.status_code == 200
        create_jobs.assert_awaited_once_with("terminal", ["op-1"], None)

    def test_status_requires_cluster(self, client):
        assert client.get("/api/research/pipeline/status").status_code == 400

    def test_status_aggregates(self, client):
        jobs = [
            {"id": "j1", "status": "completed", "progress": 100},
            {"id": "j2", "status": "running", "progress": 45},
            {"id": "j3", "status": "pending", "progress": 0},
        ]
        with patch.object(db, "list_jobs", new=AsyncMock(return_value=jobs)), \
                patch.object(db, "count_pending_proposals_for_cluster", new=AsyncMock(return_value=4)):
            response = client.get("/api/research/pipeline/status", params={"clusterId": "c1"})

        body = response.json()
        assert body["stats"] == {"total": 3, "pending": 1, "running": 1, "completed": 1, "failed": 0, "cancelled": 0}
        assert body["avgProgress"] == 48
        assert body["operatorProposalsCount"] == 4

    def test_get_job(self, client):
        with patch.object(db, "get_job", new=AsyncMock(return_value=None)):
            assert client.get("/api/research/jobs/nope").status_code == 404
        with patch.object(db, "get_job", new=AsyncMock(return_value={"id": "j1", "status": "running"})):
            assert client.get("/api/research/jobs/j1").json()["status"] == "running"

    def test_cleanup(self, client):
        with patch.object(db, "fail_stale_jobs", new=AsyncMock(return_value=["j1"])):
            response = client.post("/api/research/jobs/cleanup")
        assert response.json()["cleaned"] == 1
        assert response.json()["jobIds"] == ["j1"]


class TestDeepResearchStart:
    def test_unknown_entity(self, client, no_processing):
        with patch.object(db, "get_entity", new=AsyncMock(return_value=None)):
            assert client.post("/api/ports/p-404/deep-research/start").status_code == 404

    def test_existing_job_is_returned(self, client, no_processing):
        with patch.object(db, "get_entity", new=AsyncMock(return_value={"id": "p1"})), \
                patch.object(db, "find_active_job", new=AsyncMock(return_value={"id": "j1", "status": "running"})), \
                patch.object(db, "create_jobs", new=AsyncMock()) as create_jobs:
            response = client.post("/api/ports/p1/deep-research/start")

        assert response.json() == {"jobId": "j1", "status": "running", "existing": True}
        create_jobs.assert_not_awaited()

    def test_new_job_clears_report(self, client, no_processing):
        with patch.object(db, "get_entity", new=AsyncMock(return_value={"id": "op-1"})), \
                patch.object(db, "find_active_job", new=AsyncMock(return_value=None)), \
                patch.object(db, "clear_report", new=AsyncMock()) as clear_report, \
                patch.object(db, "create_jobs", new=AsyncMock(return_value=["j2"])) as create_jobs:
            response = client.post("/api/terminal-operators/op-1/deep-research/start")

        assert response.json() == {"jobId": "j2", "status": "pending", "existing": False}
        clear_report.assert_awaited_once_with("operator", "op-1")
        create_jobs.assert_awaited_once_with("terminal", ["op-1"], None)
        no_processing[1].assert_awaited_once()


class TestApply:
    def test_rejects_non_object(self, client):
        response = client.patch("/api/ports/p1/deep-research/apply", json={"data_to_update": ["x"]})
        assert response.status_code == 400

    def test_unknown_entity(self, client):
        with patch.object(db, "get_entity", new=AsyncMock(return_value=None)):
            response = client.patch("/api/ports/p1/deep-research/apply", json={"data_to_update": {}})
        assert response.status_code == 404

    def test_allow_listed_fields_only(self, client):
        payload = {
            "data_to_update": {"capacity": "8 million TEU", "operatorType": "captive", "latitude": 1.0,
                               "longitude": 2.0, "lastDeepResearchSummary": "s"},
            "approved_fields": ["capacity", "coordinates"],
        }
        with patch.object(db, "get_entity", new=AsyncMock(return_value={"id": "op-1"})), \
                patch.object(db, "update_entity", new=AsyncMock(return_value={"id": "op-1", "capacity": "8 million TEU"})) as update:
            response = client.patch("/api/terminal-operators/op-1/deep-research/apply", json=payload)

        assert response.status_code == 200
        kind, entity_id, fields = update.await_args.args
        assert (kind, entity_id) == ("operator", "op-1")
        assert fields == {"capacity": "8 million TEU", "latitude": 1.0, "longitude": 2.0, "lastDeepResearchSummary": "s"}

    def test_persistence_failure_is_500(self, client):
        with patch.object(db, "get_entity", new=AsyncMock(return_value={"id": "p1"})), \
                patch.object(db, "update_entity", new=AsyncMock(side_effect=RuntimeError("db down"))):
            response = client.patch("/api/ports/p1/deep-research/apply", json={"data_to_update": {"portAuthority": "PA"}})
        assert response.status_code == 500
        assert response.json()["detail"]["message"] == "db down"


class TestProposals:
    def test_validation(self, client):
        assert client.post("/api/operator-proposals/batch-approve", json={"proposalIds": [], "action": "approve"}).status_code == 400
        assert client.post("/api/operator-proposals/batch-approve", json={"proposalIds": ["a"], "action": "merge"}).status_code == 400

    def test_no_pending_is_404(self, client):
        with patch.object(db, "get_pending_proposals", new=AsyncMock(return_value=[])):
            response = client.post("/api/operator-proposals/batch-approve", json={"proposalIds": ["a"], "action": "reject"})
        assert response.status_code == 404

    def test_reject(self, client):
        with patch.object(db, "get_pending_proposals", new=AsyncMock(return_value=[{"id": "a"}, {"id": "b"}])), \
                patch.object(db, "set_proposal_status", new=AsyncMock(return_value=2)) as set_status, \
                patch("app.api.routes.proposals.approve_proposals", new=AsyncMock()) as approve:
            response = client.post(
                "/api/operator-proposals/batch-approve", json={"proposalIds": ["a", "b"], "action": "reject"}
            )
        assert response.json() == {"approvedCount": 0, "rejectedCount": 2, "createdEntities": []}
        set_status.assert_awaited_once_with(["a", "b"], "rejected")
        approve.assert_not_awaited()

    def test_approve_materialises(self, client):
        created = [{"id": "op-1", "name": "ECT Delta", "proposalId": "a"}]
        with patch.object(db, "get_pending_proposals", new=AsyncMock(return_value=[{"id": "a"}])), \
                patch.object(db, "set_proposal_status", new=AsyncMock(return_value=1)), \
                patch("app.api.routes.proposals.approve_proposals", new=AsyncMock(return_value=created)):
            response = client.post(
                "/api/operator-proposals/batch-approve", json={"proposalIds": ["a"], "action": "approve"}
            )
        assert response.json() == {"approvedCount": 1, "rejectedCount": 0, "createdEntities": created}

    def test_list(self, client):
        with patch.object(db, "list_proposals", new=AsyncMock(return_value=[{"id": "a"}])) as list_proposals:
            response = client.get("/api/operator-proposals", params={"portId": "p1", "status": "pending"})
        assert response.json() == [{"id": "a"}]
        list_proposals.assert_awaited_once_with(port_id="p1", status="pending")


class TestStreaming:
    def test_deep_research_streams_events(self, client):
        class FakeOrchestrator:
            def __init__(self, profile):
                self.profile = profile

            async def run(self):
                yield streaming.status("Initializing research...", "init", 0)
                yield streaming.preview({"field_proposals": [], "data_to_update": {}})
                yield streaming.complete()

        with patch.object(db, "get_entity", new=AsyncMock(return_value={"id": "p1", "name": "Rotterdam"})), \
                patch("app.api.routes.deep_research.DeepResearchOrchestrator", FakeOrchestrator):
            response = client.post("/api/ports/p1/deep-research")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert [name for name, _ in parse_sse(response.text)] == ["status", "preview", "complete"]

    def test_deep_research_unknown_entity(self, client):
        with patch.object(db, "get_entity", new=AsyncMock(return_value=None)):
            assert client.post("/api/terminal-operators/x/deep-research").status_code == 404

    def test_find_operators_unknown_port(self, client):
        with patch.object(db, "get_port", new=AsyncMock(return_value=None)):
            assert client.post("/api/ports/x/find-operators").status_code == 404


def test_data_quality_report(client):
    snapshot = {
        "counts": {"clusters": 2, "ports": 3, "operators": 4, "pending_proposals": 5},
        "orphan_ports": [{"id": "p3", "name": "Lost", "cluster_id": None}],
        "ports_per_cluster": [{"id": "c1", "name": "North Sea", "count": 2}],
        "orphan_operators": [{"id": "o9", "name": "Ghost", "port_id": "p-gone"}],
    }
    with patch.object(db, "data_quality_snapshot", new=AsyncMock(return_value=snapshot)):
        body = client.get("/api/data-quality/check").json()

    assert body["statistics"] == {"clusters": 2, "ports": 3, "operators": 4, "pendingProposals": 5}
    assert body["portClusterCheck"]["errors"] == [{"portId": "p3", "portName": "Lost", "issue": "missing cluster"}]
    assert body["portClusterCheck"]["portsPerCluster"] == [{"clusterId": "c1", "clusterName": "North Sea", "count": 2}]
    assert body["operatorPortCheck"]["errors"][0]["issue"] == "invalid port"
    assert body["overallStatus"] == "fail"
