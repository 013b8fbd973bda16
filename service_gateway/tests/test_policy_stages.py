"""
Tests for the Gateway policy chain.
"""

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from service_gateway.app.pipeline import (
    AccessLogger,
    BodyLimitStage,
    CookieStage,
    CorsStage,
    PolicyMiddleware,
    ProxyTrustStage,
    RateLimitStage,
    RequestContext,
    get_request_context,
)
from service_gateway.app.ratelimit import FixedWindowRateLimiter
from shared.errors import PayloadTooLargeError
from shared.metrics import MetricsCollector


def build_app(stages, include_diagnostics=False, metrics=None):
    """Tiny app that reports what the policy chain recorded."""
    app = FastAPI()
    app.add_middleware(
        PolicyMiddleware,
        stages=stages,
        access_log=AccessLogger(metrics),
        metrics=metrics,
        include_diagnostics=include_diagnostics,
    )

    @app.api_route("/echo", methods=["GET", "POST", "OPTIONS"])
    async def echo(request: Request):
        ctx = get_request_context(request)
        return {
            "client_ip": ctx.client_ip,
            "body_length": len(ctx.body),
            "cookies": request.state.cookies if hasattr(request.state, "cookies") else None,
        }

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password leaked")

    return app


class ChunkedRequest:
    """Request stand-in that counts the body chunks pulled from it."""

    def __init__(self, chunks, headers=None):
        self.headers = headers or {}
        self.chunks = chunks
        self.pulled = 0

    async def stream(self):
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk


class TestProxyTrustStage:
    """Test cases for client address resolution."""

    def test_no_forwarded_header_uses_peer(self):
        assert ProxyTrustStage(1).resolve(None, "10.0.0.9") == "10.0.0.9"

    def test_one_trusted_hop(self):
        stage = ProxyTrustStage(1)
        assert stage.resolve("203.0.113.7", "10.0.0.9") == "203.0.113.7"

    def test_spoofed_entries_left_of_trusted_hops_are_ignored(self):
        stage = ProxyTrustStage(1)
        assert stage.resolve("1.1.1.1, 203.0.113.7", "10.0.0.9") == "203.0.113.7"

    def test_two_trusted_hops(self):
        stage = ProxyTrustStage(2)
        assert stage.resolve("1.1.1.1, 203.0.113.7, 10.0.0.5", "10.0.0.9") == "203.0.113.7"

    def test_short_chain_yields_leftmost_entry(self):
        stage = ProxyTrustStage(3)
        assert stage.resolve("203.0.113.7", "10.0.0.9") == "203.0.113.7"

    def test_zero_hops_ignores_header(self):
        stage = ProxyTrustStage(0)
        assert stage.resolve("203.0.113.7", "10.0.0.9") == "10.0.0.9"

    def test_negative_hops_rejected(self):
        with pytest.raises(ValueError):
            ProxyTrustStage(-1)

    def test_resolved_address_reaches_handler(self):
        client = TestClient(build_app([ProxyTrustStage(1)]))

        response = client.get("/echo", headers={"X-Forwarded-For": "203.0.113.7"})

        assert response.json()["client_ip"] == "203.0.113.7"


class TestCorsStage:
    """Test cases for the CORS policy."""

    @pytest.fixture
    def client(self):
        cors = CorsStage(["http://app.test"], allowed_headers=["Content-Type"], allow_credentials=True)
        return TestClient(build_app([cors]))

    def test_allowed_origin_is_echoed(self, client):
        response = client.get("/echo", headers={"Origin": "http://app.test"})

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://app.test"
        assert response.headers["access-control-allow-credentials"] == "true"
        assert "Origin" in response.headers["vary"]

    def test_disallowed_origin_gets_no_cors_headers(self, client):
        response = client.get("/echo", headers={"Origin": "http://evil.test"})

        assert response.status_code == 200
        assert "access-control-allow-origin" not in response.headers

    def test_preflight_is_answered_without_routing(self, client):
        response = client.options(
            "/echo",
            headers={"Origin": "http://app.test", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 204
        assert "POST" in response.headers["access-control-allow-methods"]
        assert "Content-Type" in response.headers["access-control-allow-headers"]
        assert response.headers["access-control-max-age"] == "600"
        assert response.headers["access-control-allow-origin"] == "http://app.test"

    def test_preflight_from_disallowed_origin_is_refused(self, client):
        response = client.options(
            "/echo",
            headers={"Origin": "http://evil.test", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 403
        assert response.json()["status"] == "error"

    def test_preflight_for_unlisted_method_is_refused(self, client):
        response = client.options(
            "/echo",
            headers={"Origin": "http://app.test", "Access-Control-Request-Method": "TRACE"},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "Disallowed CORS method"

    def test_preflight_for_unlisted_header_is_refused(self, client):
        response = client.options(
            "/echo",
            headers={
                "Origin": "http://app.test",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "X-Debug",
            },
        )

        assert response.status_code == 403

    def test_requested_headers_mirrored_without_header_list(self):
        client = TestClient(build_app([CorsStage(["http://app.test"])]))

        response = client.options(
            "/echo",
            headers={
                "Origin": "http://app.test",
                "Access-Control-Request-Method": "GET",
                "Access-Control-Request-Headers": "X-Debug",
            },
        )

        assert response.status_code == 204
        assert response.headers["access-control-allow-headers"] == "X-Debug"

    def test_wildcard_never_emitted_with_credentials(self):
        cors = CorsStage(["*"], allow_credentials=True)

        headers = cors.response_headers("http://anywhere.test")

        assert headers["Access-Control-Allow-Origin"] == "http://anywhere.test"

    def test_wildcard_without_credentials(self):
        cors = CorsStage(["*"], allow_credentials=False)

        assert cors.response_headers("http://anywhere.test") == {"Access-Control-Allow-Origin": "*"}


class TestBodyLimitStage:
    """Test cases for the body size cap."""

    @pytest.fixture
    def client(self):
        return TestClient(build_app([BodyLimitStage(max_bytes=16)]))

    def test_body_under_limit_is_buffered(self, client):
        response = client.post("/echo", content=b"x" * 16)

        assert response.status_code == 200
        assert response.json()["body_length"] == 16

    def test_body_over_limit_is_rejected(self, client):
        response = client.post("/echo", content=b"x" * 17)

        assert response.status_code == 413
        body = response.json()
        assert body["status"] == "error"
        assert body["details"] == {"limit_bytes": 16}

    def test_streamed_body_over_limit_is_rejected(self, client):
        def chunks():
            for _ in range(4):
                yield b"x" * 8

        response = client.post("/echo", content=chunks())

        assert response.status_code == 413

    @pytest.mark.asyncio
    async def test_reading_stops_at_first_chunk_over_limit(self):
        request = ChunkedRequest([b"x" * 8] * 6)

        with pytest.raises(PayloadTooLargeError):
            await BodyLimitStage(max_bytes=16)(request, RequestContext(request_id="r-1"))

        assert request.pulled == 3

    @pytest.mark.asyncio
    async def test_declared_length_over_limit_reads_nothing(self):
        request = ChunkedRequest([b"x" * 8] * 6, headers={"content-length": "48"})

        with pytest.raises(PayloadTooLargeError):
            await BodyLimitStage(max_bytes=16)(request, RequestContext(request_id="r-2"))

        assert request.pulled == 0


class TestCookieStage:
    """Test cases for cookie extraction."""

    def test_cookies_are_parsed(self):
        client = TestClient(build_app([CookieStage()]))

        response = client.get("/echo", headers={"Cookie": "session=abc; theme=dark; =orphan"})

        assert response.json()["cookies"] == {"session": "abc", "theme": "dark"}

    def test_missing_cookie_header_gives_empty_map(self):
        client = TestClient(build_app([CookieStage()]))

        assert client.get("/echo").json()["cookies"] == {}


class TestRateLimitStage:
    """Test cases for rate limiting inside the chain."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway")

    @pytest.fixture
    def client(self, metrics):
        limiter = FixedWindowRateLimiter(limit=2, window_seconds=900)
        stages = [ProxyTrustStage(0), RateLimitStage(limiter, metrics)]
        return TestClient(build_app(stages, metrics=metrics))

    def test_passing_responses_advertise_limit(self, client):
        response = client.get("/echo")

        assert response.status_code == 200
        assert response.headers["ratelimit-limit"] == "2"
        assert response.headers["ratelimit-remaining"] == "1"

    def test_rejected_request_gets_retry_after(self, client, metrics):
        client.get("/echo")
        client.get("/echo")

        response = client.get("/echo")

        assert response.status_code == 429
        assert int(response.headers["retry-after"]) > 0
        assert response.json() == {
            "status": "error",
            "error": "Too many requests from this IP, please try again later.",
            "details": {"limit": 2, "retry_after": int(response.headers["retry-after"])},
        }
        assert metrics.registry.get_sample_value("rate_limit_rejections_total") == 1


class TestPolicyMiddleware:
    """Test cases for chain ordering and error rendering."""

    def test_terminal_stage_stops_the_chain(self):
        limiter = FixedWindowRateLimiter(limit=100, window_seconds=900)
        stages = [BodyLimitStage(max_bytes=4), RateLimitStage(limiter)]
        client = TestClient(build_app(stages))

        response = client.post("/echo", content=b"too long")

        assert response.status_code == 413
        assert len(limiter) == 0

    def test_request_id_is_propagated(self):
        client = TestClient(build_app([]))

        response = client.get("/echo", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"

    def test_unexpected_error_hides_details_in_production(self):
        client = TestClient(build_app([], include_diagnostics=False))

        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json() == {
            "status": "error",
            "error": "Something went wrong, please try again later",
        }

    def test_unexpected_error_includes_stack_in_diagnostics(self):
        client = TestClient(build_app([], include_diagnostics=True))

        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Something went wrong, please try again later"
        assert "database password leaked" in body["stack"]
