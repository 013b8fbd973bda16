"""
Policy chain for the Gateway.

Every inbound request passes through an ordered list of stages before any
routing decision is made:

1. proxy-trust resolution of the client address
2. CORS policy
3. body decoding with a size cap
4. cookie extraction
5. rate limiting
6. access logging (written once the response status is known)

A stage returns ``None`` to let the request continue, returns a response to
end the chain, or raises a ``PlatformException`` which is rendered as an
error envelope. Nothing after a terminal stage runs.
"""

from .context import RequestContext, get_request_context
from .middleware import AccessLogger, PolicyMiddleware
from .stages import (
    BodyLimitStage,
    CookieStage,
    CorsStage,
    ProxyTrustStage,
    RateLimitStage,
    build_policy_stages,
)

__all__ = [
    "AccessLogger",
    "BodyLimitStage",
    "CookieStage",
    "CorsStage",
    "PolicyMiddleware",
    "ProxyTrustStage",
    "RateLimitStage",
    "RequestContext",
    "build_policy_stages",
    "get_request_context",
]
