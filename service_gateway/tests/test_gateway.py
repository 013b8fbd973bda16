"""
Tests for Gateway service.
"""

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from service_gateway.app.main import GatewayService, create_app
from service_gateway.app.ratelimit import FixedWindowRateLimiter
from shared.config import GatewayConfig
from shared.errors import NotFoundError
from shared.test_helpers import UpstreamRecorder, get_mock_env, make_gateway_config


@pytest.fixture
def upstream():
    return UpstreamRecorder()


@pytest.fixture
def gateway_service(upstream):
    """Create GatewayService instance."""
    return GatewayService(make_gateway_config(), transport=upstream.transport())


@pytest.fixture
def client(gateway_service):
    """Create test client."""
    return TestClient(gateway_service.app)


class TestLocalEndpoints:
    """Test cases for endpoints the gateway answers itself."""

    def test_welcome_endpoint(self, client, upstream):
        response = client.get("/api")

        assert response.status_code == 200
        assert response.json() == {"message": "Welcome to api-gateway!"}
        assert upstream.requests == []

    def test_welcome_endpoint_only_answers_get(self, client, upstream):
        response = client.post("/api", content=b"{}")

        assert response.status_code == 200
        assert upstream.last.url.path == "/api"

    def test_health_check(self, client):
        response = client.get("/_gateway/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert data["status"] == "ok"

    def test_metrics_endpoint(self, client):
        client.get("/api")

        response = client.get("/_gateway/metrics")

        assert response.status_code == 200
        assert 'http_requests_total{method="GET",status_code="200"}' in response.text

    def test_static_asset_is_served(self, client, upstream):
        response = client.get("/assets/robots.txt")

        assert response.status_code == 200
        assert "User-agent" in response.text
        assert upstream.requests == []

    def test_missing_static_asset_is_not_found(self, client):
        response = client.get("/assets/missing.css")

        assert response.status_code == 404
        assert response.json() == {"status": "error", "error": "Asset not found"}

    def test_static_path_traversal_is_not_found(self, gateway_service):
        request = Request({"type": "http", "method": "GET", "path": "/assets/../main.py", "headers": []})
        rule = gateway_service.route_table.match("/assets/../main.py")

        with pytest.raises(NotFoundError):
            gateway_service.dispatcher._serve_static(request, rule, "/assets/../main.py")

    def test_static_assets_are_read_only(self, client):
        response = client.post("/assets/robots.txt")

        assert response.status_code == 405
        assert response.headers["allow"] == "GET, HEAD"

    def test_unmatched_path_without_catch_all(self):
        service = GatewayService(make_gateway_config(default_upstream_url=""))
        client = TestClient(service.app)

        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["status"] == "error"


class TestPolicyChain:
    """Test cases for the policy chain on the assembled gateway."""

    def test_rate_limit_after_limit_requests(self, upstream):
        service = GatewayService(
            make_gateway_config(),
            rate_limiter=FixedWindowRateLimiter(limit=100, window_seconds=900),
            transport=upstream.transport(),
        )
        client = TestClient(service.app)

        statuses = [client.get("/api").status_code for _ in range(100)]
        response = client.get("/api")

        assert statuses == [200] * 100
        assert response.status_code == 429
        assert int(response.headers["retry-after"]) > 0
        assert response.json()["error"] == "Too many requests from this IP, please try again later."

    def test_cors_origin_echoed_on_proxied_response(self, client):
        response = client.get("/profile", headers={"Origin": "http://app.test"})

        assert response.headers["access-control-allow-origin"] == "http://app.test"
        assert response.headers["access-control-allow-credentials"] == "true"

    def test_cors_headers_on_error_envelope(self, client):
        response = client.get("/assets/missing.css", headers={"Origin": "http://app.test"})

        assert response.status_code == 404
        assert response.headers["access-control-allow-origin"] == "http://app.test"

    def test_oversized_body_is_rejected_before_forwarding(self, upstream):
        service = GatewayService(make_gateway_config(max_body_bytes=8), transport=upstream.transport())
        client = TestClient(service.app)

        response = client.post("/upload", content=b"x" * 9)

        assert response.status_code == 413
        assert upstream.requests == []

    def test_request_id_generated_when_missing(self, client):
        response = client.get("/api")

        assert response.headers["x-request-id"]


class TestErrorEnvelope:
    """Test cases for error rendering by operating mode."""

    def test_production_hides_stack(self):
        service = GatewayService(make_gateway_config(env="production", default_upstream_url=""))
        body = TestClient(service.app).get("/nowhere").json()

        assert "stack" not in body

    def test_unset_env_hides_stack(self, monkeypatch):
        monkeypatch.delenv("ENV", raising=False)
        config = GatewayConfig(default_upstream_url="", log_level="warning")

        body = TestClient(GatewayService(config).app).get("/nowhere").json()

        assert config.env == "production"
        assert config.diagnostics_enabled is False
        assert "stack" not in body
        assert "originalError" not in body

    def test_development_includes_stack(self):
        service = GatewayService(make_gateway_config(env="development", default_upstream_url=""))
        body = TestClient(service.app).get("/nowhere").json()

        assert "NotFoundError" in body["stack"]


class TestLifecycle:
    """Test cases for startup and shutdown."""

    def test_shutdown_closes_limiter(self, upstream):
        class RecordingLimiter(FixedWindowRateLimiter):
            closed = False

            async def close(self):
                self.closed = True

        limiter = RecordingLimiter()
        service = GatewayService(make_gateway_config(), rate_limiter=limiter, transport=upstream.transport())

        with TestClient(service.app) as client:
            assert client.get("/api").status_code == 200

        assert limiter.closed is True


def test_config_from_environment(monkeypatch):
    for name, value in get_mock_env().items():
        monkeypatch.setenv(name, value)

    config = GatewayConfig()

    assert config.port == 8081
    assert config.trust_proxy_hops == 2
    assert config.allowed_origins == ["http://localhost:3000", "http://app.test"]
    assert config.max_body_bytes == 1024
    assert config.diagnostics_enabled is True


def test_create_app(monkeypatch):
    monkeypatch.setenv("DEFAULT_UPSTREAM_URL", "http://localhost:6000")

    app = create_app()

    assert app.state.gateway_service.route_table.catch_all.target == "http://localhost:6000"
