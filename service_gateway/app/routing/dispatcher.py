"""
Request dispatcher for the Gateway.
"""

from pathlib import Path

from fastapi import Request, Response
from fastapi.responses import FileResponse

from shared.errors import MethodNotAllowedError, NotFoundError
from shared.logging import get_logger
from ..pipeline.context import get_request_context
from .table import RouteRule, RouteTable

STATIC_METHODS = ("GET", "HEAD")


class Dispatcher:
    """Sends a request to the single destination its path matches.

    ``forwarder`` is the ``ProxyForwarder`` that handles proxy rules.
    """

    def __init__(self, route_table: RouteTable, forwarder):
        self.route_table = route_table
        self.forwarder = forwarder
        self.logger = get_logger("gateway.dispatcher")

    async def dispatch(self, request: Request) -> Response:
        path = request.url.path
        rule = self.route_table.match(path)
        if rule is None:
            raise NotFoundError(f"No route for {path}")

        if rule.is_static:
            return self._serve_static(request, rule, path)

        return await self.forwarder.forward(request, get_request_context(request), rule)

    def _serve_static(self, request: Request, rule: RouteRule, path: str) -> Response:
        if request.method not in STATIC_METHODS:
            raise MethodNotAllowedError(", ".join(STATIC_METHODS))

        root = Path(rule.target).resolve()
        relative = path[len(rule.prefix):].lstrip("/")
        candidate = (root / relative).resolve()

        if not candidate.is_relative_to(root) or not candidate.is_file():
            self.logger.debug("Static asset not found", path=path)
            raise NotFoundError("Asset not found")

        return FileResponse(candidate)
