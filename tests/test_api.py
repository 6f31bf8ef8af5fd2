"""
API Tests
=========
Exercises the FastAPI routes end to end with TestClient. The orchestrator
dependency is overridden with one whose step executor is mocked, so no
command or container ever runs.
"""
import json
import textwrap
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from main import app
from pipeline_runner.api.deps import get_orchestrator
from pipeline_runner.core import config
from pipeline_runner.executor.build_executor import ExecutionResult, StepExecutor
from pipeline_runner.runner.orchestrator import PipelineOrchestrator
from pipeline_runner.secrets.secret_store import SecretStore
from pipeline_runner.services.results_writer import ResultsWriter
from pipeline_runner.services.trigger_service import compute_signature

PIPELINE = textwrap.dedent("""
    name: api-test
    on:
      push:
        branches: [main]
      workflow_dispatch:
    environments:
      production:
        reviewers: [alice]
    jobs:
      build:
        steps:
          - run: echo ${{ secrets.DOCKER_PASSWORD }}
      deploy:
        needs: build
        environment: production
        steps:
          - run: echo deploy
""")


@pytest.fixture
def workspace(tmp_path):
    workflows = tmp_path / "repo" / ".github" / "workflows"
    workflows.mkdir(parents=True)
    (workflows / "ci.yml").write_text(PIPELINE)
    return tmp_path / "repo"


@pytest.fixture
def orchestrator(tmp_path):
    executor = MagicMock(spec=StepExecutor)
    executor.execute.side_effect = lambda script, **kw: ExecutionResult(exit_code=0, full_log=f"{script}\n")
    return PipelineOrchestrator(
        secrets=SecretStore({"DOCKER_PASSWORD": "hunter22"}),
        executor=executor,
        writer=ResultsWriter(str(tmp_path / "results")),
    )


@pytest.fixture
def client(orchestrator, workspace, monkeypatch):
    monkeypatch.setattr(config, "WORKSPACE_ROOT", str(workspace))
    monkeypatch.setattr(config, "DEFAULT_PIPELINE_PATH", "")
    monkeypatch.setattr(config, "GITHUB_WEBHOOK_SECRET", "")
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _start_run(client, **body):
    response = client.post("/runs", json=body)
    assert response.status_code == 202
    return response.json()["run_id"]


# ---------------------------------------------------------------------------
# 1. Runs
# ---------------------------------------------------------------------------
class TestRuns:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_start_run_pauses_at_gate(self, client):
        run_id = _start_run(client)
        run = client.get(f"/runs/{run_id}").json()
        assert run["status"] == "waiting_approval"
        assert run["pipeline_name"] == "api-test"
        assert [s["status"] for s in run["stages"]] == ["success", "waiting_approval"]

    def test_stage_log_is_masked(self, client):
        run_id = _start_run(client)
        response = client.get(f"/runs/{run_id}/stages/build/log")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "hunter22" not in response.text
        assert "***" in response.text

    def test_unknown_run_and_stage(self, client):
        assert client.get("/runs/nope").status_code == 404
        run_id = _start_run(client)
        assert client.get(f"/runs/{run_id}/stages/nope/log").status_code == 404

    def test_invalid_pipeline_is_422(self, client, workspace):
        (workspace / "broken.yml").write_text("jobs: {}\n")
        response = client.post("/runs", json={"pipeline_path": "broken.yml"})
        assert response.status_code == 422
        assert "at least one job" in response.json()["detail"]

    def test_list_runs_with_filter(self, client):
        run_id = _start_run(client)
        runs = client.get("/runs").json()["runs"]
        assert [r["run_id"] for r in runs] == [run_id]
        assert client.get("/runs", params={"status": "success"}).json()["runs"] == []

    def test_cancel_waiting_run(self, client):
        run_id = _start_run(client)
        response = client.post(f"/runs/{run_id}/cancel")
        assert response.status_code == 200
        assert response.json()["cancel_requested"] is True
        assert client.get(f"/runs/{run_id}").json()["status"] == "cancelled"

    def test_run_read_back_from_disk(self, client, orchestrator):
        run_id = _start_run(client)
        orchestrator.store.clear()
        assert client.get(f"/runs/{run_id}").json()["run_id"] == run_id


# ---------------------------------------------------------------------------
# 2. Approvals
# ---------------------------------------------------------------------------
class TestApprovals:

    def test_pending_list(self, client):
        run_id = _start_run(client)
        approvals = client.get("/approvals").json()["approvals"]
        assert len(approvals) == 1
        assert approvals[0]["run_id"] == run_id
        assert approvals[0]["stage"] == "deploy"
        assert approvals[0]["environment"] == "production"
        assert approvals[0]["reviewers"] == ["alice"]

    def test_approve_resumes_run(self, client):
        run_id = _start_run(client)
        response = client.post(f"/runs/{run_id}/stages/deploy/approve", json={"actor": "alice", "comment": "go"})
        assert response.status_code == 200
        assert response.json()["approval"]["decision"] == "approved"
        assert client.get(f"/runs/{run_id}").json()["status"] == "success"
        assert client.get("/approvals").json()["approvals"] == []

    def test_reject_fails_run(self, client):
        run_id = _start_run(client)
        response = client.post(f"/runs/{run_id}/stages/deploy/reject", json={"actor": "alice", "comment": "freeze"})
        assert response.status_code == 200
        run = client.get(f"/runs/{run_id}").json()
        assert run["status"] == "failure"
        assert run["stages"][1]["status"] == "rejected"

    def test_unlisted_reviewer_is_403(self, client):
        run_id = _start_run(client)
        response = client.post(f"/runs/{run_id}/stages/deploy/approve", json={"actor": "mallory"})
        assert response.status_code == 403

    def test_second_decision_is_409(self, client):
        run_id = _start_run(client)
        client.post(f"/runs/{run_id}/stages/deploy/approve", json={"actor": "alice"})
        response = client.post(f"/runs/{run_id}/stages/deploy/reject", json={"actor": "alice"})
        assert response.status_code == 409

    def test_approve_unknown_run_is_404(self, client):
        assert client.post("/runs/nope/stages/deploy/approve", json={"actor": "alice"}).status_code == 404


# ---------------------------------------------------------------------------
# 3. GitHub webhook
# ---------------------------------------------------------------------------
class TestWebhook:

    def _post(self, client, event, payload, secret=None):
        body = json.dumps(payload).encode()
        headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
        if secret:
            headers["X-Hub-Signature-256"] = compute_signature(secret, body)
        return client.post("/webhooks/github", content=body, headers=headers)

    def test_push_to_main_triggers_run(self, client, orchestrator):
        response = self._post(client, "push", {"ref": "refs/heads/main", "after": "abc"})
        data = response.json()
        assert data["triggered"] is True
        run = orchestrator.get_run(data["run_id"])
        assert run.trigger.sha == "abc"
        assert run.status == "waiting_approval"

    def test_push_to_other_branch_ignored(self, client):
        response = self._post(client, "push", {"ref": "refs/heads/feature/x", "after": "abc"})
        assert response.json() == {"triggered": False, "reason": "no matching trigger"}

    def test_ping(self, client):
        assert self._post(client, "ping", {"zen": "hi"}).json()["reason"] == "pong"

    def test_unhandled_event(self, client):
        assert self._post(client, "issues", {"action": "opened"}).json()["triggered"] is False

    def test_signature_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(config, "GITHUB_WEBHOOK_SECRET", "s3cret")
        payload = {"ref": "refs/heads/main", "after": "abc"}
        assert self._post(client, "push", payload).status_code == 401
        assert self._post(client, "push", payload, secret="wrong").status_code == 401
        assert self._post(client, "push", payload, secret="s3cret").json()["triggered"] is True

    def test_invalid_json(self, client):
        response = client.post("/webhooks/github", content=b"not json", headers={"X-GitHub-Event": "push"})
        assert response.status_code == 400

    @pytest.mark.parametrize("body", [b"[]", b'"refs/heads/main"', b"42", b"null"])
    def test_json_that_is_not_an_object(self, client, body):
        response = client.post("/webhooks/github", content=body, headers={"X-GitHub-Event": "push"})
        assert response.status_code == 400
        assert "JSON object" in response.json()["detail"]

    def test_invalid_expression_leaves_no_queued_run(self, client, orchestrator, workspace):
        (workspace / "bad.yml").write_text("jobs:\n  build:\n    steps:\n      - run: echo ${{ matrix[0] }}\n")
        response = client.post("/runs", json={"pipeline_path": "bad.yml"})
        assert response.status_code == 422
        assert client.get("/runs").json()["runs"] == []
