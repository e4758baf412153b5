# tests/test_api.py
"""
Test suite for the admin HTTP surface

Runs the FastAPI app in-process against a test Runtime (in-memory SQLite,
mocked completion client, auto processing off).
"""

import pytest
from fastapi.testclient import TestClient

from aios.api import create_app
from aios.models import AgentRole, ExecutionStatus, TaskStatus
from conftest import StaticCapability


@pytest.fixture
def client(runtime):
    runtime.engine.register_capability(AgentRole.ARCHITECTON, StaticCapability("build", output="built"))
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


@pytest.fixture
def agent(make_agent):
    return make_agent(AgentRole.ARCHITECTON, name="Archie")


# =============================================================================
# Test: Health / middleware
# =============================================================================

class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["queue"]["total"] == 0
        assert data["processor"]["running"] is False
        assert data["active_executions"] == 0
        assert data["orchestration_loops"] == []

    def test_correlation_id_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "corr-test-123"})
        assert response.headers["X-Correlation-ID"] == "corr-test-123"

    def test_correlation_id_generated(self, client):
        assert client.get("/health").headers["X-Correlation-ID"].startswith("corr-")


# =============================================================================
# Test: Queue
# =============================================================================

class TestQueueEndpoints:

    def test_enqueue_and_status(self, client, make_task, agent):
        task = make_task("Schema", agent)

        response = client.post("/queue", json={"task_id": task.id, "agent_id": agent.id, "priority": 7})

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "PENDING"
        assert body["priority"] == 7
        assert body["max_attempts"] == 3
        assert client.get("/queue").json()["pending"] == 1

    def test_enqueue_unknown_task(self, client, agent):
        response = client.post("/queue", json={"task_id": "missing", "agent_id": agent.id})
        assert response.status_code == 404

    @pytest.mark.parametrize("extra", [{"priority": 101}, {"max_attempts": 0}, {"unexpected": True}])
    def test_enqueue_validation(self, client, make_task, agent, extra):
        task = make_task("Schema", agent)
        payload = {"task_id": task.id, "agent_id": agent.id, **extra}

        assert client.post("/queue", json=payload).status_code == 422

    def test_aware_schedule_normalized_to_utc(self, client, make_task, agent):
        task = make_task("Later", agent)

        response = client.post("/queue", json={
            "task_id": task.id,
            "agent_id": agent.id,
            "scheduled_for": "2030-01-01T12:00:00+02:00",
        })

        assert response.json()["scheduled_for"] == "2030-01-01T10:00:00"

    def test_tick_processes_queue(self, client, store, make_task, agent):
        task = make_task("Schema", agent)
        client.post("/queue", json={"task_id": task.id, "agent_id": agent.id})

        response = client.post("/processor/tick")

        assert response.status_code == 200
        assert response.json()["handled"] == 1
        assert store.get_task(task.id).status == TaskStatus.DONE.value
        assert client.get("/queue").json()["completed"] == 1

    def test_remove_from_queue(self, client, make_task, agent):
        task = make_task("Schema", agent)
        client.post("/queue", json={"task_id": task.id, "agent_id": agent.id})

        assert client.delete(f"/queue/{task.id}").json() == {"task_id": task.id, "removed": 1}
        assert client.get("/queue").json()["total"] == 0


# =============================================================================
# Test: Executions
# =============================================================================

class TestExecutionEndpoints:

    def test_execute_task(self, client, make_task, agent):
        task = make_task("Schema", agent)

        response = client.post(f"/agents/{agent.id}/execute", json={"task_id": task.id})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["result"] == "built"
        assert response.json()["status"] == "COMPLETED"

    def test_execute_unknown_agent(self, client, make_task):
        task = make_task("Schema")
        assert client.post("/agents/missing/execute", json={"task_id": task.id}).status_code == 404

    def test_execute_already_running(self, client, store, make_task, agent):
        task = make_task("Schema", agent)
        store.create_execution(task.id, agent.id, status=ExecutionStatus.RUNNING)

        assert client.post(f"/agents/{agent.id}/execute", json={"task_id": task.id}).status_code == 409

    def test_control_conflicts(self, client, make_task, agent):
        task = make_task("Schema", agent)
        execution_id = client.post(f"/agents/{agent.id}/execute", json={"task_id": task.id}).json()["execution_id"]

        assert client.post(f"/executions/{execution_id}/pause").status_code == 409
        assert client.post(f"/executions/{execution_id}/resume").status_code == 409
        assert client.post(f"/executions/{execution_id}/cancel").status_code == 409
        assert client.post("/executions/missing/pause").status_code == 404

    def test_cancel_paused_execution(self, client, store, make_task, agent):
        task = make_task("Schema", agent)
        execution = store.create_execution(task.id, agent.id, status=ExecutionStatus.PAUSED)

        response = client.post(f"/executions/{execution.id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert response.json()["error"] == "cancelled"

    def test_resume_paused_execution(self, client, store, make_task, agent):
        task = make_task("Schema", agent)
        execution = store.create_execution(task.id, agent.id, status=ExecutionStatus.PAUSED)

        response = client.post(f"/executions/{execution.id}/resume")

        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"

    def test_feedback_and_performance(self, client, make_task, agent):
        task = make_task("Schema", agent)
        execution_id = client.post(f"/agents/{agent.id}/execute", json={"task_id": task.id}).json()["execution_id"]

        response = client.post(f"/executions/{execution_id}/feedback", json={
            "rating": 4, "was_accepted": True, "improvements": ["naming"],
        })
        assert response.status_code == 201

        performance = client.get(f"/agents/{agent.id}/performance").json()
        assert performance["feedback_count"] == 1
        assert performance["average_rating"] == 4


# =============================================================================
# Test: Orchestrations / events
# =============================================================================

class TestOrchestrationEndpoints:

    def test_execute_orchestration(self, client, runtime, make_orchestration, agent):
        orchestration, tasks = make_orchestration({"Build": ["A", "B"]}, agent=agent, depends={"B": ["A"]})

        response = client.post(f"/orchestrations/{orchestration.id}/execute", params={"concurrency": 1})

        assert response.status_code == 200
        assert response.json()["executed"] == 1
        assert list(response.json()["results"]) == [tasks["A"].id]

    def test_invalid_concurrency(self, client, make_orchestration, agent):
        orchestration, _ = make_orchestration({"Build": ["A"]}, agent=agent)
        response = client.post(f"/orchestrations/{orchestration.id}/execute", params={"concurrency": 0})
        assert response.status_code == 422

    def test_unknown_orchestration(self, client):
        assert client.post("/orchestrations/missing/execute").status_code == 404
        assert client.post("/orchestrations/missing/run").status_code == 404
        assert client.get("/orchestrations/missing/graph").status_code == 404

    def test_run_orchestration_loop(self, client, store, make_orchestration, agent):
        orchestration, tasks = make_orchestration({"Build": ["A", "B"]}, agent=agent, depends={"B": ["A"]})

        response = client.post(f"/orchestrations/{orchestration.id}/run", params={"concurrency": 1})

        assert response.status_code == 200
        stats = response.json()
        assert stats["orchestration_id"] == orchestration.id
        assert stats["started"] == 2
        assert stats["completed"] == 2
        assert stats["final_status"] == "COMPLETED"
        assert stats["already_running"] is False
        assert store.get_task(tasks["B"].id).status == TaskStatus.DONE.value
        assert client.get("/health").json()["orchestration_loops"] == []

    @pytest.mark.parametrize("params", [{"concurrency": 0}, {"retry_attempts": 11}, {"timeout": 0}])
    def test_run_validation(self, client, make_orchestration, agent, params):
        orchestration, _ = make_orchestration({"Build": ["A"]}, agent=agent)
        assert client.post(f"/orchestrations/{orchestration.id}/run", params=params).status_code == 422

    def test_graph(self, client, make_orchestration, agent):
        orchestration, _ = make_orchestration({"Build": ["A", "B", "C"]}, agent=agent, depends={"C": ["A", "B"]})

        graph = client.get(f"/orchestrations/{orchestration.id}/graph").json()

        assert graph["total_levels"] == 2
        assert graph["levels"][0]["can_parallelize"] is True
        assert graph["has_cycle"] is False

    def test_event_history(self, client, make_task, agent):
        task = make_task("Schema", agent)
        client.post("/queue", json={"task_id": task.id, "agent_id": agent.id})

        events = client.get("/events", params={"limit": 1}).json()

        assert len(events) == 1
        assert events[0]["type"] == "queue.added"
        assert events[0]["task_id"] == task.id
