"""
Unit tests for the deployment HTTP endpoints.

The app is driven without its lifespan; services and scheduler are
placed on app.state directly.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from core.config_store import ConfigStore
from core.deploy_scheduler import DeployScheduler
from core.services import AgentServices
from main import app
from models.certificate import BindRule, CertificateConfig, DeploymentResult, OrderMeta
from models.config import AgentConfig


@pytest.fixture
def config_store(tmp_path, encryption):
    return ConfigStore(tmp_path / "config.json", encryption)


@pytest.fixture
def run_pass():
    return AsyncMock(
        return_value=[DeploymentResult(domain="example.com", success=True, message="deployment succeeded", order_id=42)]
    )


@pytest.fixture
def client(config_store, order_store, run_pass):
    services = AgentServices(
        config_store=config_store,
        orders=order_store,
        api=MagicMock(),
        sites=MagicMock(),
        notifier=MagicMock(),
        orchestrator=MagicMock(),
        cancel_event=asyncio.Event(),
    )
    app.state.services = services
    app.state.scheduler = DeployScheduler(run_pass)
    return TestClient(app)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestRunAndStatus:
    """Triggering passes and reading their outcome."""

    def test_run_returns_results(self, client, run_pass):
        response = client.post("/deployments/run")

        assert response.status_code == 200
        assert response.json()[0]["domain"] == "example.com"
        run_pass.assert_awaited_once()

    def test_results_and_status_after_run(self, client):
        client.post("/deployments/run")

        assert client.get("/deployments/results").json()[0]["success"] is True
        status = client.get("/deployments/status").json()
        assert status["succeeded"] == 1
        assert status["failed"] == 0
        assert status["pass_running"] is False

    def test_run_while_running_conflicts(self, client, monkeypatch):
        monkeypatch.setattr(app.state.scheduler._lock, "locked", lambda: True)

        response = client.post("/deployments/run")
        assert response.status_code == 409


class TestCertificates:
    def test_lists_without_secrets(self, client, config_store, order_store):
        config = AgentConfig(
            certificates=[
                CertificateConfig(order_id=42, domain="example.com", expires_at="2030-01-01", bind_rules=[BindRule(domain="example.com", port=8443)]),
                CertificateConfig(domain="*.example.com", use_local_key=True, auto_bind_mode=True),
            ]
        )
        config_store.set_token(config, "secret-token")
        config_store.save(config)
        order_store.save_meta(OrderMeta(order_id=42, domain="example.com", last_deployed="2029-12-01T00:00:00Z"))

        response = client.get("/deployments/certificates")

        assert response.status_code == 200
        body = response.json()
        assert "secret-token" not in response.text
        assert body[0]["mode"] == "fetch"
        assert body[0]["bind_targets"] == ["example.com:8443"]
        assert body[0]["last_deployed"].startswith("2029-12-01")
        assert body[0]["days_until_expiry"] is not None
        assert body[1]["mode"] == "local_key"
        assert body[1]["bind_targets"] == ["auto"]
        assert body[1]["days_until_expiry"] is None


class TestCredentials:
    """Updating the issuing-service endpoint and token."""

    def test_update(self, client, config_store):
        response = client.put(
            "/deployments/credentials", json={"api_base_url": "https://issuer.example/api/", "token": "new-token"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "updated", "api_base_url": "https://issuer.example/api"}
        config = config_store.load()
        assert config.api_base_url == "https://issuer.example/api"
        assert config_store.get_token(config) == "new-token"
        assert "new-token" not in config_store.path.read_text()

    def test_plain_http_rejected(self, client, config_store):
        response = client.put(
            "/deployments/credentials", json={"api_base_url": "http://issuer.example/api", "token": "t"}
        )

        assert response.status_code == 422
        assert not config_store.path.exists()

    def test_empty_token_rejected(self, client):
        response = client.put("/deployments/credentials", json={"api_base_url": "https://issuer.example", "token": ""})
        assert response.status_code == 422

    def test_rejected_while_pass_running(self, client, monkeypatch):
        monkeypatch.setattr(type(app.state.scheduler), "running", property(lambda self: True))

        response = client.put("/deployments/credentials", json={"api_base_url": "https://issuer.example", "token": "t"})
        assert response.status_code == 409
