"""
Per-request state shared between the policy stages and the dispatcher.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import Request

from shared.errors import ServerError
from ..ratelimit import RateLimitDecision


@dataclass
class RequestContext:
    request_id: str
    client_ip: str = "unknown"
    cookies: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    cors_headers: Dict[str, str] = field(default_factory=dict)
    rate_limit: Optional[RateLimitDecision] = None
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self.started_at


def get_request_context(request: Request) -> RequestContext:
    """Return the context the policy middleware attached to ``request``."""
    ctx = getattr(request.state, "gateway_context", None)
    if ctx is None:
        raise ServerError("Request reached the dispatcher without passing the policy chain")
    return ctx
