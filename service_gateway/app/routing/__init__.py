"""
Routing for the Gateway: the route table built at startup and the
dispatcher that sends each request to a static directory or an upstream.
"""

from .dispatcher import Dispatcher
from .table import (
    CATCH_ALL_PREFIX,
    RouteConfigurationError,
    RouteRule,
    RouteTable,
    build_route_table,
    parse_upstream_routes,
)

__all__ = [
    "CATCH_ALL_PREFIX",
    "Dispatcher",
    "RouteConfigurationError",
    "RouteRule",
    "RouteTable",
    "build_route_table",
    "parse_upstream_routes",
]
