"""
Policy stages applied to every inbound Gateway request.
"""

from typing import Dict, Iterable, List, Optional

from fastapi import Request, Response
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import cookie_parser

from shared.errors import ForbiddenError, PayloadTooLargeError, RateLimitError
from shared.logging import get_logger, set_client_context
from shared.metrics import MetricsCollector
from .context import RequestContext
from ..ratelimit import RateLimiter


class ProxyTrustStage:
    """Resolve the real client address.

    The address chain is the ``X-Forwarded-For`` entries followed by the
    socket peer. Skipping ``trusted_hops`` entries from the right, the next
    one is the client; a shorter chain yields its left-most entry.
    """

    name = "proxy_trust"

    def __init__(self, trusted_hops: int = 1):
        if trusted_hops < 0:
            raise ValueError("trusted_hops must not be negative")
        self.trusted_hops = trusted_hops

    def resolve(self, forwarded_for: Optional[str], peer: Optional[str]) -> str:
        chain: List[str] = []
        if forwarded_for and self.trusted_hops:
            chain = [entry.strip() for entry in forwarded_for.split(",") if entry.strip()]
        chain.append(peer or "unknown")
        return chain[max(len(chain) - 1 - self.trusted_hops, 0)]

    async def __call__(self, request: Request, ctx: RequestContext) -> Optional[Response]:
        peer = request.client.host if request.client else None
        ctx.client_ip = self.resolve(request.headers.get("x-forwarded-for"), peer)
        set_client_context(ctx.client_ip)
        return None


class CorsStage:
    """Allow-list CORS policy built on Starlette's ``CORSMiddleware`` rules.

    Allowed origins are echoed back; with credentials enabled the ``*``
    wildcard is never emitted even when the allow-list contains it. Requests
    from other origins continue without CORS headers. Preflights are answered
    here and refused with a 403 envelope when the origin, method or headers
    are not allowed.
    """

    name = "cors"

    def __init__(
        self,
        allowed_origins: Iterable[str],
        allowed_headers: Iterable[str] = (),
        allowed_methods: Iterable[str] = ("GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"),
        allow_credentials: bool = False,
        max_age: int = 600,
    ):
        origins = [origin.strip().rstrip("/") for origin in allowed_origins if origin.strip()]
        # An empty header list mirrors whatever the preflight asks for.
        self.policy = CORSMiddleware(
            app=None,
            allow_origins=origins,
            allow_methods=[method.upper() for method in allowed_methods],
            allow_headers=list(allowed_headers) or ["*"],
            allow_credentials=allow_credentials,
            max_age=max_age,
        )

    def is_allowed(self, origin: str) -> bool:
        return self.policy.is_allowed_origin(origin.rstrip("/"))

    def response_headers(self, origin: str) -> Dict[str, str]:
        headers = dict(self.policy.simple_headers)
        if self.policy.preflight_explicit_allow_origin:
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        return headers

    def preflight(self, request: Request, origin: str) -> Response:
        answer = self.policy.preflight_response(request_headers=request.headers)
        if answer.status_code != 200:
            raise ForbiddenError(answer.body.decode("latin-1"), details={"origin": origin})
        headers = {
            name: value
            for name, value in answer.headers.items()
            if name.startswith("access-control-") or name == "vary"
        }
        return Response(status_code=204, headers=headers)

    async def __call__(self, request: Request, ctx: RequestContext) -> Optional[Response]:
        origin = request.headers.get("origin")
        if not origin:
            return None

        preflight = request.method == "OPTIONS" and "access-control-request-method" in request.headers

        if not self.is_allowed(origin):
            if preflight:
                raise ForbiddenError("Origin not allowed", details={"origin": origin})
            return None

        ctx.cors_headers = self.response_headers(origin)
        if preflight:
            return self.preflight(request, origin)
        return None


class BodyLimitStage:
    """Buffer the request body, refusing anything over ``max_bytes``.

    A declared ``Content-Length`` over the cap is refused before reading;
    otherwise reading stops at the first chunk that crosses the cap.
    """

    name = "body_limit"

    def __init__(self, max_bytes: int = 50 * 1024 * 1024):
        self.max_bytes = max_bytes

    async def __call__(self, request: Request, ctx: RequestContext) -> Optional[Response]:
        declared = request.headers.get("content-length")
        if declared is not None and declared.strip().isdigit() and int(declared) > self.max_bytes:
            raise PayloadTooLargeError(self.max_bytes)

        chunks = []
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > self.max_bytes:
                raise PayloadTooLargeError(self.max_bytes)
            chunks.append(chunk)

        ctx.body = b"".join(chunks)
        return None


class CookieStage:
    """Parse the ``Cookie`` header; pairs without a name are dropped."""

    name = "cookies"

    async def __call__(self, request: Request, ctx: RequestContext) -> Optional[Response]:
        raw = request.headers.get("cookie")
        if raw:
            ctx.cookies = {name: value for name, value in cookie_parser(raw).items() if name}
        request.state.cookies = ctx.cookies
        return None


class RateLimitStage:
    """Count the request against the client's window."""

    name = "rate_limit"

    def __init__(self, limiter: RateLimiter, metrics: Optional[MetricsCollector] = None):
        self.limiter = limiter
        self.metrics = metrics
        self.logger = get_logger("gateway.rate_limit")

    async def __call__(self, request: Request, ctx: RequestContext) -> Optional[Response]:
        decision = await self.limiter.check(ctx.client_ip)
        ctx.rate_limit = decision

        if not decision.allowed:
            if self.metrics is not None:
                self.metrics.record_rate_limit_rejection()
            self.logger.warning(
                "Rate limit exceeded",
                client_ip=ctx.client_ip,
                limit=decision.limit,
                retry_after=decision.retry_after,
            )
            raise RateLimitError(decision.limit, decision.retry_after or 0.0)
        return None


def build_policy_stages(config, limiter: RateLimiter, metrics: Optional[MetricsCollector] = None) -> list:
    """Stages in the order they must run."""
    return [
        ProxyTrustStage(config.trust_proxy_hops),
        CorsStage(
            config.allowed_origins,
            allowed_headers=config.allowed_headers,
            allowed_methods=config.allowed_methods,
            allow_credentials=config.cors_allow_credentials,
            max_age=config.cors_max_age,
        ),
        BodyLimitStage(config.max_body_bytes),
        CookieStage(),
        RateLimitStage(limiter, metrics),
    ]
