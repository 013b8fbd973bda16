"""
ASGI middleware that runs the Gateway policy chain.
"""

from typing import Optional, Sequence

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import PlatformException, error_response
from shared.logging import clear_context, get_logger, set_request_id
from shared.metrics import MetricsCollector
from .context import RequestContext


class AccessLogger:
    """Writes one access log entry per request, rejected ones included."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = get_logger("gateway.access")

    def record(self, request: Request, ctx: RequestContext, status_code: int) -> None:
        duration = ctx.elapsed
        if self.metrics is not None:
            self.metrics.record_http_request(request.method, status_code, duration)
        self.logger.info(
            "HTTP request",
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=round(duration * 1000, 2),
            client_ip=ctx.client_ip,
        )


class PolicyMiddleware(BaseHTTPMiddleware):
    """Run the policy stages in order, then hand over to routing.

    The first stage that returns a response or raises ends the chain. CORS
    and rate limit headers gathered along the way are added to whatever
    response goes out, error envelopes included.
    """

    def __init__(self, app, stages: Sequence, access_log: AccessLogger,
                 metrics: Optional[MetricsCollector] = None, include_diagnostics: bool = False):
        super().__init__(app)
        self.stages = list(stages)
        self.access_log = access_log
        self.metrics = metrics
        self.include_diagnostics = include_diagnostics
        self.logger = get_logger("gateway.policy")

    async def dispatch(self, request: Request, call_next):
        ctx = RequestContext(request_id=set_request_id(request.headers.get("x-request-id")))
        request.state.gateway_context = ctx

        try:
            response = await self._run_stages(request, ctx)
            if response is None:
                response = await call_next(request)
        except Exception as exc:
            if self.metrics is not None and not (
                isinstance(exc, PlatformException) and exc.status_code < 500
            ):
                self.metrics.record_error(type(exc).__name__)
            response = error_response(
                exc,
                request,
                include_diagnostics=self.include_diagnostics,
                logger=self.logger,
            )

        self._decorate(response, ctx)
        self.access_log.record(request, ctx, response.status_code)
        clear_context()
        return response

    async def _run_stages(self, request: Request, ctx: RequestContext) -> Optional[Response]:
        for stage in self.stages:
            response = await stage(request, ctx)
            if response is not None:
                return response
        return None

    def _decorate(self, response: Response, ctx: RequestContext) -> None:
        headers = response.headers
        headers["X-Request-ID"] = ctx.request_id

        for name, value in ctx.cors_headers.items():
            if name == "Vary":
                vary = headers.get("vary")
                if vary and "origin" not in vary.lower():
                    headers["Vary"] = f"{vary}, {value}"
                elif not vary:
                    headers["Vary"] = value
            else:
                headers[name] = value

        if ctx.rate_limit is not None:
            for name, value in ctx.rate_limit.headers().items():
                if name not in headers:
                    headers[name] = value
