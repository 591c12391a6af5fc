import pytest
from fastapi.testclient import TestClient

from conftest import BrokenLLM, big_picture_output, objects_output
from api.server import create_app
from infra.llm.provider import AIProvider
from services.stage_orchestrator import StageOrchestrator

PROJECT = {
    "project_name": "The Keeper",
    "content_type": "novel",
    "topic": "lighthouse keeper's secret",
    "metadata": {"tone": "brooding"},
}


@pytest.fixture
def client_for(make_orchestrator):
    def _client(responses):
        orchestrator, provider = make_orchestrator(responses)
        return TestClient(create_app(orchestrator), raise_server_exceptions=False), provider
    return _client


def _create(client, **overrides):
    response = client.post("/api/v1/projects", json={**PROJECT, **overrides})
    assert response.status_code == 201
    return response.json()["project"]


def test_create_project(client_for):
    client, _ = client_for([])
    response = client.post("/api/v1/projects", json=PROJECT)
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["project"]["current_stage"] == 0
    assert body["project"]["status"] == "pending"
    assert body["project"]["metadata"] == {"tone": "brooding"}


def test_create_project_validation(client_for):
    client, _ = client_for([])
    missing = client.post("/api/v1/projects", json={"project_name": "x", "content_type": "novel"})
    assert missing.status_code == 400
    assert missing.json()["success"] is False
    assert "topic" in missing.json()["error"]

    unsupported = client.post("/api/v1/projects", json={**PROJECT, "content_type": "opera"})
    assert unsupported.status_code == 400
    assert "Unsupported content_type" in unsupported.json()["error"]

    blank = client.post("/api/v1/projects", json={**PROJECT, "topic": "   "})
    assert blank.status_code == 400


def test_execute_stage(client_for):
    client, provider = client_for([big_picture_output()])
    project = _create(client)
    response = client.post("/api/v1/stages/execute", json={
        "project_id": project["id"], "stage_number": 1, "ai_config": {"maxTokens": 1234, "temperature": 0.3},
    })
    assert response.status_code == 200
    stage = response.json()["stage"]
    assert stage["stage_name"] == "big_picture"
    assert stage["validation"]["score"] == 100
    assert stage["next_stage"] == 2
    assert stage["output"]["core_concept"]["genre"] == "literary mystery"

    _, options = provider.calls[0]
    assert options.max_tokens == 1234
    assert options.temperature == 0.3


def test_execute_stage_error_mapping(client_for):
    client, _ = client_for([big_picture_output()])
    project = _create(client)

    not_found = client.post("/api/v1/stages/execute", json={"project_id": 999, "stage_number": 1})
    assert not_found.status_code == 404
    assert not_found.json() == {"success": False, "error": "Project not found: 999"}

    invalid = client.post("/api/v1/stages/execute", json={"project_id": project["id"], "stage_number": 7})
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "Invalid stage number: 7. Must be 1-4"

    skipped = client.post("/api/v1/stages/execute", json={"project_id": project["id"], "stage_number": 2})
    assert skipped.status_code == 400
    assert skipped.json()["error"] == "Stage 1 must be completed first"

    bad_mode = client.post("/api/v1/stages/execute", json={
        "project_id": project["id"], "stage_number": 1, "ai_config": {"context_mode": "huge"},
    })
    assert bad_mode.status_code == 400


def test_stage_in_progress_is_a_conflict(client_for, store):
    client, _ = client_for([big_picture_output()])
    project = _create(client)
    store.begin_stage(project["id"], 1, "big_picture")
    response = client.post("/api/v1/stages/execute", json={"project_id": project["id"], "stage_number": 1})
    assert response.status_code == 409


def test_provider_failure_is_bad_gateway(store, config):
    broken = AIProvider(provider="fake", config=config, llm=BrokenLLM())
    orchestrator = StageOrchestrator(store, config, provider_factory=lambda ai_config: broken)
    client = TestClient(create_app(orchestrator), raise_server_exceptions=False)
    project = _create(client)

    response = client.post("/api/v1/stages/execute", json={"project_id": project["id"], "stage_number": 1})
    assert response.status_code == 502
    assert response.json()["success"] is False

    status = client.get(f"/api/v1/projects/{project['id']}").json()
    assert status["project"]["status"] == "failed"
    assert status["stages"][0]["status"] == "failed"


def test_unexpected_errors_are_hidden(client_for, monkeypatch):
    client, _ = client_for([])
    orchestrator = client.app.state.orchestrator

    def explode(**filters):
        raise RuntimeError("secret connection string")

    monkeypatch.setattr(orchestrator, "list_projects", explode)
    response = client.get("/api/v1/projects")
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error"}


def test_project_status_and_statistics(client_for):
    client, _ = client_for([big_picture_output(), objects_output()])
    project = _create(client)
    for n in (1, 2):
        assert client.post("/api/v1/stages/execute", json={"project_id": project["id"], "stage_number": n}).status_code == 200

    body = client.get(f"/api/v1/projects/{project['id']}").json()
    assert body["success"] is True
    assert body["project"]["current_stage"] == 2
    assert [s["stage_number"] for s in body["stages"]] == [1, 2]
    assert body["statistics"]["objects"] == 10
    assert body["statistics"]["timeline_events"] == 5
    assert body["statistics"]["completed_stages"] == 2

    assert client.get("/api/v1/projects/31337").status_code == 404


def test_list_projects(client_for):
    client, _ = client_for([])
    for i in range(3):
        _create(client, project_name=f"Novel {i}")
    _create(client, project_name="Course", content_type="course")

    body = client.get("/api/v1/projects", params={"limit": 2}).json()
    assert body["total"] == 4
    assert len(body["projects"]) == 2
    assert body["limit"] == 2 and body["offset"] == 0

    courses = client.get("/api/v1/projects", params={"content_type": "course"}).json()
    assert [p["project_name"] for p in courses["projects"]] == ["Course"]

    assert client.get("/api/v1/projects", params={"limit": 0}).status_code == 400


def test_project_notations(client_for):
    client, _ = client_for([big_picture_output()])
    project = _create(client)
    client.post("/api/v1/stages/execute", json={"project_id": project["id"], "stage_number": 1})

    body = client.get(f"/api/v1/projects/{project['id']}/notations").json()
    assert body["success"] is True
    assert len(body["notations"]) == 5
    assert all(n.startswith("U1|concept|") for n in body["notations"])
    assert body["stage_notations"]["1"] == body["notations"]


def test_project_notations_expanded(client_for):
    client, _ = client_for([big_picture_output()])
    project = _create(client)
    client.post("/api/v1/stages/execute", json={"project_id": project["id"], "stage_number": 1})

    body = client.get(f"/api/v1/projects/{project['id']}/notations", params={"expand": "true"}).json()
    assert body["success"] is True
    assert [item["notation"] for item in body["expanded"]] == body["notations"]
    assert all(item["instruction"] and item["rich_data"]["kind"] == "concept" for item in body["expanded"])
    assert body["evolutions"] == []
