"""
Upstream proxy client for Gateway.
"""

import time
from typing import AsyncIterator, Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx
from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from shared.circuit_breaker import CircuitBreakerManager, CircuitBreakerOpenException
from shared.errors import ServiceUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryPolicy, retry_async
from ..pipeline.context import RequestContext
from ..routing.table import RouteRule

# Connection-scoped headers, never relayed in either direction.
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Headers the outbound client computes itself.
RECOMPUTED_REQUEST_HEADERS = frozenset({"host", "content-length"})

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


def _connection_tokens(values: Iterable[str]) -> frozenset:
    """Header names listed in a Connection header are hop-by-hop too."""
    tokens = set()
    for value in values:
        tokens.update(token.strip().lower() for token in value.split(",") if token.strip())
    return frozenset(tokens)


def forward_path(request: Request, rule: RouteRule) -> str:
    """Path to request from the upstream, always starting with ``/``.

    Rules match on the decoded path. The encoded path is sent as-is unless a
    prefix has to be stripped and the encoded form does not literally carry
    that prefix; then the stripped decoded path is re-encoded instead.
    """
    decoded = request.url.path
    raw_path = request.scope.get("raw_path")
    encoded = raw_path.decode("latin-1") if raw_path else quote(decoded)

    if not rule.strip_prefix or rule.is_catch_all:
        path = encoded
    elif rule.matches(encoded):
        path = rule.upstream_path(encoded)
    else:
        path = quote(rule.upstream_path(decoded))

    if not path.startswith("/"):
        path = "/" + path
    return path


async def _relay_body(upstream: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    finally:
        await upstream.aclose()


class ProxyForwarder:
    """Forwards requests to upstream services and relays their responses.

    Transport failures (refused connections, DNS errors, timeouts) become
    ``ServiceUnavailableError``; HTTP error statuses from the upstream are
    relayed untouched. Each upstream gets its own circuit breaker.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_attempts: int = 1,
        breaker_threshold: int = 5,
        breaker_recovery: float = 30.0,
        metrics: Optional[MetricsCollector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.breaker_threshold = breaker_threshold
        self.breaker_recovery = breaker_recovery
        self.metrics = metrics
        self.logger = get_logger("gateway.proxy")
        self.circuit_breakers = CircuitBreakerManager()
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
            follow_redirects=False,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def build_upstream_request(self, request: Request, ctx: RequestContext, rule: RouteRule) -> httpx.Request:
        """Copy method, path, query, headers and body onto an outbound request."""
        url = rule.target + forward_path(request, rule)
        query = request.url.query
        if query:
            url = f"{url}?{query}"

        dropped = (
            HOP_BY_HOP_HEADERS
            | RECOMPUTED_REQUEST_HEADERS
            | _connection_tokens(request.headers.getlist("connection"))
        )
        headers: List[Tuple[str, str]] = [
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in dropped and name.lower() != "x-forwarded-for"
        ]

        peer = request.client.host if request.client else None
        forwarded_for = ", ".join(request.headers.getlist("x-forwarded-for"))
        if peer:
            forwarded_for = f"{forwarded_for}, {peer}" if forwarded_for else peer
        if forwarded_for:
            headers.append(("x-forwarded-for", forwarded_for))
        headers.append(("x-forwarded-proto", request.url.scheme))
        if "host" in request.headers:
            headers.append(("x-forwarded-host", request.headers["host"]))
        headers.append(("x-request-id", ctx.request_id))

        return self._client.build_request(request.method, url, headers=headers, content=ctx.body)

    async def _send(self, upstream_request: httpx.Request) -> httpx.Response:
        return await self._client.send(upstream_request, stream=True)

    async def _send_with_retries(self, upstream_request: httpx.Request, attempts: int) -> httpx.Response:
        policy = RetryPolicy(max_attempts=attempts, retry_on=(httpx.TransportError,))
        return await retry_async(self._send, upstream_request, policy=policy)

    async def forward(self, request: Request, ctx: RequestContext, rule: RouteRule) -> Response:
        """Forward ``request`` to ``rule.target`` and relay the answer."""
        upstream_request = self.build_upstream_request(request, ctx, rule)
        breaker = self.circuit_breakers.get_circuit_breaker(
            rule.target,
            failure_threshold=self.breaker_threshold,
            recovery_timeout=self.breaker_recovery,
            expected_exception=httpx.TransportError,
        )
        attempts = self.max_attempts if request.method in IDEMPOTENT_METHODS else 1

        started = time.perf_counter()
        try:
            upstream = await breaker.call(self._send_with_retries, upstream_request, attempts)
        except CircuitBreakerOpenException as exc:
            self._record(rule, "circuit_open")
            self.logger.warning("Upstream circuit open", upstream=rule.target, path=request.url.path)
            raise ServiceUnavailableError(rule.prefix, status_code=503, original_error=exc) from exc
        except httpx.TimeoutException as exc:
            self._record(rule, "timeout")
            self.logger.error("Upstream timed out", upstream=rule.target, path=request.url.path, timeout=self.timeout)
            raise ServiceUnavailableError(rule.prefix, "Upstream service timed out", 503, exc) from exc
        except httpx.TransportError as exc:
            self._record(rule, "connect_error")
            self.logger.error("Upstream unreachable", upstream=rule.target, path=request.url.path, error=str(exc))
            raise ServiceUnavailableError(rule.prefix, status_code=502, original_error=exc) from exc

        self._record(rule, "ok", time.perf_counter() - started)
        self.logger.debug(
            "Upstream responded",
            upstream=rule.target,
            method=request.method,
            path=request.url.path,
            status_code=upstream.status_code,
        )
        return self.relay(upstream)

    def relay(self, upstream: httpx.Response) -> Response:
        """Stream the upstream response back, minus connection-scoped headers.

        Repeated headers such as ``Set-Cookie`` are kept as separate lines.
        A body the client has already read is sent decoded, so its encoding
        and length headers are recomputed.
        """
        dropped = HOP_BY_HOP_HEADERS | _connection_tokens(upstream.headers.get_list("connection"))
        if upstream.is_stream_consumed:
            response = Response(
                content=upstream.content,
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
            dropped = dropped | {"content-encoding", "content-length"}
            kept = [(name, value) for name, value in response.raw_headers if name == b"content-length"]
        else:
            response = StreamingResponse(
                _relay_body(upstream),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
            kept = []
        response.raw_headers = kept + [
            (name.lower(), value)
            for name, value in upstream.headers.raw
            if name.decode("latin-1").lower() not in dropped
        ]
        return response

    def _record(self, rule: RouteRule, outcome: str, duration: Optional[float] = None) -> None:
        if self.metrics is not None:
            self.metrics.record_upstream_request(rule.prefix, outcome, duration)
