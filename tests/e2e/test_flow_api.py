import asyncio

import httpx
import pytest
import pytest_asyncio

from flow_api import create_app
from flow_models import VariableScope
from flow_runner import FlowRunner
from persistence import InMemoryFlowRepository
from tests.e2e.mock_server import create_mock_server, shutdown_mock_server

LOGIN_FLOW = {
    "name": "login and fetch",
    "steps": [
        {
            "id": 1,
            "stepOrder": 1,
            "name": "login",
            "method": "POST",
            "url": "{{base}}/login",
            "body": {"username": "{{user}}"},
            "bodyType": "json",
            "extractVars": {"token": "$.token", "userId": "$.user.id"},
            "postScript": '{"assertions": [{"type": "status", "operator": "eq", "value": 200},'
                          ' {"type": "header", "name": "X-Session", "operator": "exists"}],'
                          ' "setVariables": [{"name": "lastToken", "from": "$.token", "scope": "environment"}]}',
        },
        {
            "id": 2,
            "stepOrder": 2,
            "name": "fetch user",
            "url": "{{base}}/users/{{userId}}",
            "headers": {"Authorization": "Bearer {{token}}"},
            "postScript": '{"assertions": [{"type": "jsonpath", "path": "$.id", "operator": "eq", "value": 42}]}',
        },
    ],
}


@pytest_asyncio.fixture
async def mock_server():
    runner, base_url, hits, requests = await create_mock_server()
    yield {'base_url': base_url, 'hits': hits, 'requests': requests}
    await shutdown_mock_server(runner)


@pytest.fixture
def repository():
    return InMemoryFlowRepository()


@pytest_asyncio.fixture
async def api_client(repository):
    runner = FlowRunner(repository)
    app = create_app(runner)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    await runner.close()


@pytest.mark.asyncio
async def test_health_endpoint(api_client):
    resp = await api_client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "active_runs": 0}


@pytest.mark.asyncio
async def test_save_and_run_flow(api_client, mock_server, repository):
    res = await api_client.put("/api/flows/login", json=LOGIN_FLOW)
    assert res.status_code == 200
    assert res.json()["steps"] == 2

    res = await api_client.post("/api/flows/login/run", json={"variables": {"base": mock_server["base_url"], "user": "ann"}})
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "completed"
    assert data["success"] is True
    assert [r["stepName"] for r in data["stepResults"]] == ["login", "fetch user"]
    assert data["stepResults"][0]["extractedVars"] == {"token": "tok-19", "userId": "42"}
    assert data["stepResults"][0]["postScriptResult"]["assertionsPassed"] == 2
    assert data["stepResults"][1]["executeResult"]["statusCode"] == 200
    assert data["stepResults"][1]["postScriptResult"]["assertionsPassed"] == 1

    login_request = mock_server["requests"][0]
    assert login_request["body"] == '{"username": "ann"}'
    assert login_request["headers"]["Content-Type"] == "application/json"
    assert mock_server["requests"][1]["headers"]["Authorization"] == "Bearer tok-19"
    assert repository.load_variables(VariableScope.ENVIRONMENT) == {"lastToken": "tok-19"}


@pytest.mark.asyncio
async def test_run_selected_steps(api_client, mock_server):
    await api_client.put("/api/flows/login", json=LOGIN_FLOW)
    res = await api_client.post(
        "/api/flows/login/run",
        json={"stepIds": [2], "variables": {"base": mock_server["base_url"], "userId": 42, "token": "tok-x"}},
    )
    data = res.json()
    assert data["status"] == "completed"
    assert [r["stepId"] for r in data["stepResults"]] == [2]
    assert mock_server["requests"][0]["headers"]["Authorization"] == "Bearer tok-x"
    assert mock_server["hits"] == {"/users/42": 1}


@pytest.mark.asyncio
async def test_failed_step_reports_not_executed(api_client, mock_server):
    flow = {
        "name": "broken",
        "steps": [
            {"id": "a", "stepOrder": 1, "url": f"{mock_server['base_url']}/ping"},
            {"id": "b", "stepOrder": 2, "url": "http://127.0.0.1:1/unreachable"},
            {"id": "c", "stepOrder": 3, "url": f"{mock_server['base_url']}/ping"},
        ],
    }
    await api_client.put("/api/flows/broken", json=flow)
    data = (await api_client.post("/api/flows/broken/run")).json()
    assert data["status"] == "failed"
    assert data["success"] is False
    assert data["notExecutedStepIds"] == ["c"]
    assert "Request failed" in data["error"]
    assert mock_server["hits"] == {"/ping": 1}


@pytest.mark.asyncio
async def test_run_unknown_flow_returns_404(api_client):
    res = await api_client.post("/api/flows/missing/run")
    assert res.status_code == 404
    assert res.json()["detail"] == "Flow missing not found"


@pytest.mark.asyncio
async def test_save_invalid_flow_returns_400(api_client):
    flow = {"name": "dup", "steps": [{"id": 1, "stepOrder": 1}, {"id": 2, "stepOrder": 1}]}
    res = await api_client.put("/api/flows/dup", json=flow)
    assert res.status_code == 400
    assert "duplicate stepOrder" in str(res.json()["detail"])


@pytest.mark.asyncio
async def test_cancel_running_flow(api_client, mock_server):
    flow = {
        "name": "slow",
        "steps": [
            {"id": 1, "stepOrder": 1, "url": f"{mock_server['base_url']}/ping", "delayMs": 5000},
            {"id": 2, "stepOrder": 2, "url": f"{mock_server['base_url']}/ping"},
        ],
    }
    await api_client.put("/api/flows/slow", json=flow)
    run_task = asyncio.create_task(api_client.post("/api/flows/slow/run"))
    await asyncio.sleep(0.2)

    health = await api_client.get("/api/health")
    assert health.json()["active_runs"] == 1
    cancel = await api_client.post("/api/flows/slow/cancel")
    assert cancel.json()["message"] == "Cancellation requested for 1 run(s)"

    data = (await asyncio.wait_for(run_task, timeout=3)).json()
    assert data["status"] == "cancelled"
    assert data["notExecutedStepIds"] == [1, 2]
    assert mock_server["hits"] == {}


@pytest.mark.asyncio
async def test_run_with_invalid_body_returns_400(api_client):
    await api_client.put("/api/flows/login", json=LOGIN_FLOW)
    res = await api_client.post("/api/flows/login/run", json={"stepIds": "all"})
    assert res.status_code == 400
    assert "stepIds" in str(res.json()["detail"])
