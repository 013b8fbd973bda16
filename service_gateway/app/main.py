"""
Edge gateway service for the delivery platform.
"""

from typing import Any, Dict, Optional

import httpx
from fastapi import Request

from shared.base_service import BaseService
from shared.config import GatewayConfig
from .adapters.upstream_client import ProxyForwarder
from .pipeline import AccessLogger, PolicyMiddleware, build_policy_stages
from .ratelimit import RateLimiter, build_rate_limiter
from .routing import Dispatcher, build_route_table

WELCOME_MESSAGE = "Welcome to api-gateway!"

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class GatewayService(BaseService):
    """Edge gateway: policy chain, local endpoints and the proxy catch-all."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        # Read by _setup_middleware, which runs inside BaseService.__init__.
        self.rate_limiter = rate_limiter
        self._transport = transport
        super().__init__(config or GatewayConfig(), ops_prefix="/_gateway")

        self.route_table = build_route_table(self.config)
        self.forwarder = ProxyForwarder(
            timeout=self.config.proxy_timeout_seconds,
            max_attempts=self.config.proxy_max_attempts,
            breaker_threshold=self.config.circuit_breaker_threshold,
            breaker_recovery=self.config.circuit_breaker_recovery_seconds,
            metrics=self.metrics,
            transport=self._transport,
        )
        self.dispatcher = Dispatcher(self.route_table, self.forwarder)
        self.app.state.gateway_service = self

        self._setup_gateway_routes()

    def _setup_middleware(self):
        """Install the policy chain in place of the plain request timer."""
        if self.rate_limiter is None:
            self.rate_limiter = build_rate_limiter(self.config)

        stages = build_policy_stages(self.config, self.rate_limiter, self.metrics)
        self.app.add_middleware(
            PolicyMiddleware,
            stages=stages,
            access_log=AccessLogger(self.metrics),
            metrics=self.metrics,
            include_diagnostics=self.config.diagnostics_enabled,
        )

    def _setup_gateway_routes(self):
        """Local endpoints first, then the catch-all that feeds the dispatcher."""

        @self.app.get("/api")
        async def welcome():
            return {"message": WELCOME_MESSAGE}

        @self.app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
        async def dispatch(request: Request, full_path: str):
            return await self.dispatcher.dispatch(request)

    async def on_startup(self) -> None:
        await super().on_startup()
        self.logger.info(
            "Routes loaded",
            routes=self.route_table.describe(),
            rate_limit=self.rate_limiter.stats(),
        )

    async def on_shutdown(self) -> None:
        await self.forwarder.close()
        await self.rate_limiter.close()
        await super().on_shutdown()

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Upstreams whose circuit is open are reported as such."""
        dependencies = {}
        for name, state in self.forwarder.circuit_breakers.get_all_states().items():
            dependencies[name] = "ok" if state["state"] == "closed" else state["state"]
        return dependencies


def create_app(config: Optional[GatewayConfig] = None):
    """Create FastAPI application."""
    service = GatewayService(config)
    return service.app


def main():
    service = GatewayService()
    service.run()


if __name__ == "__main__":
    main()
