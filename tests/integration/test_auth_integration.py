"""Integration tests: the authorization gate behind a real FastAPI app.

A probe route mirrors how device API handlers use the gate: it depends on
authorize_request() and checks auth.is_scoped() before acting.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi import Depends
from httpx import ASGITransport, AsyncClient

from keygate.auth.keys import init_key_manager
from keygate.auth.middleware import AuthorizationContext, authorize_request
from keygate.auth.scopes import ScopedResources
from keygate.config import AuthConfig, Config
from keygate.main import create_app, create_gate

pytestmark = pytest.mark.asyncio


def _build_app(auth: AuthConfig):
    application = create_app()

    @application.post("/v1/apps/{app_id}/restart")
    async def restart(app_id: int, auth: AuthorizationContext = Depends(authorize_request)):
        if not auth.is_scoped(ScopedResources(apps=[app_id])):
            return {"status": "failed", "message": "Application is not available"}
        return {"status": "success"}

    application.state.config = Config(auth=auth)
    return application


@pytest.fixture
async def app_with_keys(tmp_path: Path):
    """App with state set directly (no lifespan), auth required."""
    application = _build_app(AuthConfig())
    keys = await init_key_manager(db_path=tmp_path / "keys.db")
    application.state.keys = keys
    application.state.gate = create_gate(application, keys)
    application.state.ready = True

    yield application, keys

    await keys.close()


@pytest.fixture
async def client(app_with_keys):
    application, _ = app_with_keys
    async with AsyncClient(
        transport=ASGITransport(app=application), base_url="http://test"
    ) as c:
        yield c


class TestGate:
    async def test_no_key_returns_401(self, client: AsyncClient) -> None:
        response = await client.post("/v1/apps/1/restart")
        assert response.status_code == 401
        assert response.json() == {"error": "Missing API key"}

    async def test_unknown_key_returns_401(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/apps/1/restart", headers={"Authorization": "Bearer " + "0" * 32}
        )
        assert response.status_code == 401

    async def test_scoped_key_in_scope(self, app_with_keys, client: AsyncClient) -> None:
        _, keys = app_with_keys
        key = await keys.generate_scoped_key(1, 0)

        response = await client.post(
            "/v1/apps/1/restart", headers={"Authorization": f"ApiKey {key}"}
        )
        assert response.status_code == 200
        assert response.json() == {"status": "success"}

    async def test_scoped_key_out_of_scope(self, app_with_keys, client: AsyncClient) -> None:
        _, keys = app_with_keys
        key = await keys.generate_scoped_key(1, 0)

        response = await client.post("/v1/apps/2/restart", params={"apikey": key})
        assert response.json()["status"] == "failed"

    async def test_cloud_key_reaches_any_app(self, app_with_keys, client: AsyncClient) -> None:
        _, keys = app_with_keys
        response = await client.post(
            "/v1/apps/77/restart", headers={"Authorization": f"Bearer {keys.cloud_api_key}"}
        )
        assert response.json() == {"status": "success"}

    async def test_store_failure_returns_503(self, app_with_keys, client: AsyncClient) -> None:
        _, keys = app_with_keys
        await keys.close()

        response = await client.post(
            "/v1/apps/1/restart", headers={"Authorization": "Bearer abc"}
        )
        assert response.status_code == 503
        assert response.json()["error"].startswith("Unexpected error")


class TestAuthNotRequired:
    async def test_local_mode_allows_anonymous(self, tmp_path: Path) -> None:
        application = _build_app(AuthConfig(local_mode=True))
        keys = await init_key_manager(db_path=tmp_path / "keys.db")
        application.state.keys = keys
        application.state.gate = create_gate(application, keys)
        try:
            async with AsyncClient(
                transport=ASGITransport(app=application), base_url="http://test"
            ) as c:
                response = await c.post("/v1/apps/5/restart")
            assert response.status_code == 200
            assert response.json() == {"status": "success"}
        finally:
            await keys.close()


class TestRegenerateApiKey:
    async def test_rotates_presented_key(self, app_with_keys, client: AsyncClient) -> None:
        _, keys = app_with_keys
        old = await keys.generate_scoped_key(3, 1)

        response = await client.post(
            "/v1/regenerate-api-key", headers={"Authorization": f"Bearer {old}"}
        )

        assert response.status_code == 200
        new = response.json()["key"]
        assert new != old
        assert await keys.get_scopes_for_key(old) is None

        rejected = await client.post(
            "/v1/regenerate-api-key", headers={"Authorization": f"Bearer {old}"}
        )
        assert rejected.status_code == 401

        accepted = await client.post(
            "/v1/apps/3/restart", headers={"Authorization": f"Bearer {new}"}
        )
        assert accepted.json() == {"status": "success"}

    async def test_rotates_cloud_key(self, app_with_keys, client: AsyncClient) -> None:
        _, keys = app_with_keys
        old = keys.cloud_api_key

        response = await client.post("/v1/regenerate-api-key", params={"apikey": old})

        assert response.status_code == 200
        assert keys.cloud_api_key == response.json()["key"] != old

    async def test_no_key_401(self, client: AsyncClient) -> None:
        response = await client.post("/v1/regenerate-api-key")
        assert response.status_code == 401


class TestPing:
    async def test_ready(self, client: AsyncClient) -> None:
        response = await client.get("/ping")
        assert response.status_code == 200
        assert response.text == "OK"

    async def test_not_started(self) -> None:
        async with AsyncClient(
            transport=ASGITransport(app=create_app()), base_url="http://test"
        ) as c:
            response = await c.get("/ping")
        assert response.status_code == 503
