"""
Adapters package for the Gateway Service.

Contains the HTTP client wrapper used to reach upstream services. It
encapsulates:

- Request rewriting (forwarding headers, prefix stripping)
- Retry policies and per-upstream circuit breakers
- Mapping transport failures to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .upstream_client import ProxyForwarder

__all__ = ["ProxyForwarder"]
