"""Tests for the operator pass API."""

from typing import Any
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio
from jose import jwt

from conftest import AUTH_TOKEN, PASS_TYPE
from walletpass.config import get_settings
from walletpass.dependencies import get_db
from walletpass.main import create_app
from walletpass.routers.passes import get_producer
from walletpass.services import crypto_service
from walletpass.services.pass_producer import IssuedPass, PassArtifactProducer, PkPassProducer


class StubProducer(PassArtifactProducer):
    async def produce(self, template_id: str, properties: dict[str, Any]) -> IssuedPass:
        return IssuedPass(
            pass_type_identifier=PASS_TYPE,
            serial_number=properties.get("serialNumber", "1234"),
            authentication_token=properties.get("authenticationToken", AUTH_TOKEN),
            web_service_url="https://example.com/passes/",
            artifact=f"{template_id}:{properties.get('stamps', 0)}".encode(),
        )


@pytest.fixture
def operator_headers(settings):
    token = jwt.encode(
        {"sub": "ops@example.com", "scope": "passes:write"},
        settings.jwt_secret.get_secret_value(),
        algorithm=settings.jwt_algorithm,
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def app(settings, session_factory, crypto, monkeypatch):
    monkeypatch.setattr(crypto_service, "_crypto_service", crypto)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = create_app(settings)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_producer] = StubProducer
    return app


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


class TestOperatorAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get(f"/api/v1/passes/{PASS_TYPE}/1234")
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_wrong_scope(self, client, settings):
        token = jwt.encode({"sub": "ops@example.com", "scope": "read"}, settings.jwt_secret.get_secret_value())
        response = await client.get(
            f"/api/v1/passes/{PASS_TYPE}/1234", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401


class TestIssuePass:
    @pytest.mark.asyncio
    async def test_issue_by_kind(self, client, operator_headers):
        response = await client.post(
            "/api/v1/passes",
            json={"kind": "stamps", "properties": {"serialNumber": "1234", "stamps": 1}},
            headers=operator_headers,
        )
        assert response.status_code == 201
        body = response.json()
        assert body["serial_number"] == "1234"
        assert body["template_id"] == "StoreCard"
        assert body["registered_devices"] == 0

    @pytest.mark.asyncio
    async def test_issue_requires_kind_or_template(self, client, operator_headers):
        response = await client.post("/api/v1/passes", json={"properties": {}}, headers=operator_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_duplicate_is_409(self, client, operator_headers):
        payload = {"template_id": "Generic", "properties": {"serialNumber": "1234"}}
        await client.post("/api/v1/passes", json=payload, headers=operator_headers)
        response = await client.post("/api/v1/passes", json=payload, headers=operator_headers)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_template_is_422(self, app, client, operator_headers, settings, tmp_path):
        templated = settings.model_copy(update={"pass_templates_dir": str(tmp_path)})
        app.dependency_overrides[get_producer] = lambda: PkPassProducer(templated)

        response = await client.post("/api/v1/passes", json={"template_id": "Nope"}, headers=operator_headers)

        assert response.status_code == 422
        assert response.json() == {"detail": "Unknown pass template: Nope"}


class TestPassStatus:
    @pytest.mark.asyncio
    async def test_status_counts_registered_devices(self, client, operator_headers, make_pass, register_device):
        await make_pass(tag=7_000)
        await register_device()
        response = await client.get(f"/api/v1/passes/{PASS_TYPE}/1234", headers=operator_headers)
        assert response.status_code == 200
        assert response.json()["registered_devices"] == 1
        assert response.json()["last_update_tag"] == 7_000

    @pytest.mark.asyncio
    async def test_unknown_pass_is_404(self, client, operator_headers):
        response = await client.get(f"/api/v1/passes/{PASS_TYPE}/missing", headers=operator_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_download_artifact(self, client, operator_headers, make_pass):
        await make_pass(artifact=b"signed-bytes")
        response = await client.get(f"/api/v1/passes/{PASS_TYPE}/1234/artifact", headers=operator_headers)
        assert response.status_code == 200
        assert response.content == b"signed-bytes"
        assert 'filename="1234.pkpass"' in response.headers["content-disposition"]


class TestUpdatePass:
    @pytest.mark.asyncio
    async def test_update_regenerates_and_queues_notification(self, client, operator_headers):
        await client.post(
            "/api/v1/passes",
            json={"kind": "stamps", "properties": {"serialNumber": "1234", "stamps": 1}},
            headers=operator_headers,
        )

        with patch("walletpass.routers.passes.notify_pass_updated.delay") as mock_delay:
            response = await client.put(
                f"/api/v1/passes/{PASS_TYPE}/1234",
                json={"properties": {"stamps": 2}},
                headers=operator_headers,
            )

        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        mock_delay.assert_called_once_with(PASS_TYPE, "1234")

        artifact = await client.get(f"/api/v1/passes/{PASS_TYPE}/1234/artifact", headers=operator_headers)
        assert artifact.content == b"StoreCard:2"

    @pytest.mark.asyncio
    async def test_update_unknown_pass_does_not_queue(self, client, operator_headers):
        with patch("walletpass.routers.passes.notify_pass_updated.delay") as mock_delay:
            response = await client.put(
                f"/api/v1/passes/{PASS_TYPE}/missing",
                json={"properties": {"stamps": 2}},
                headers=operator_headers,
            )
        assert response.status_code == 404
        mock_delay.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_without_regenerating(self, client, operator_headers, make_pass):
        await make_pass()
        with patch("walletpass.routers.passes.notify_pass_updated.delay") as mock_delay:
            response = await client.post(f"/api/v1/passes/{PASS_TYPE}/1234/push", headers=operator_headers)
        assert response.status_code == 202
        mock_delay.assert_called_once_with(PASS_TYPE, "1234")
