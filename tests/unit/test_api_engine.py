"""Unit tests for the engine status and sync routes."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from matchday.api.deps import get_engine, get_registry
from matchday.engine.sync import SyncOutcome


@pytest.fixture(autouse=True)
def _registry(api_app):
    api_app.dependency_overrides[get_registry] = lambda: MagicMock()


@pytest.fixture
def sync_service():
    service = MagicMock()
    service.status = AsyncMock(return_value=[{"workflowId": "european-football-daily", "active": True}])
    service.sync = AsyncMock(
        return_value=[
            SyncOutcome("european-football-daily", "existing", engine_workflow_id="wf-1"),
            SyncOutcome("weekly-roundup", "failed", detail="engine said no"),
        ]
    )
    with patch("matchday.api.routes.engine.WorkflowSyncService", return_value=service):
        yield service


class TestEngineStatus:
    async def test_not_configured(self, api_app, api_client):
        api_app.dependency_overrides[get_engine] = lambda: None

        response = await api_client.get("/api/engine/status")

        assert response.status_code == 200
        assert response.json() == {"configured": False, "workflows": []}

    async def test_configured(self, api_app, api_client, sync_service):
        api_app.dependency_overrides[get_engine] = lambda: MagicMock()

        response = await api_client.get("/api/engine/status")

        assert response.json()["configured"] is True
        assert response.json()["workflows"][0]["workflowId"] == "european-football-daily"


class TestEngineSync:
    async def test_requires_engine(self, api_app, api_client):
        api_app.dependency_overrides[get_engine] = lambda: None

        response = await api_client.post("/api/engine/sync")

        assert response.status_code == 503

    async def test_reports_outcomes(self, api_app, api_client, sync_service):
        api_app.dependency_overrides[get_engine] = lambda: MagicMock()

        response = await api_client.post("/api/engine/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["failed"] == 1
        assert [r["action"] for r in body["results"]] == ["existing", "failed"]
        sync_service.sync.assert_awaited_once()
