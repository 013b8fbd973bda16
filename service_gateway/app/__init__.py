"""
Edge gateway package for the delivery platform.

The gateway is the single public entry point. Every request passes a fixed
policy chain before it is routed:

- proxy trust, CORS, body size cap, cookies, rate limiting, access log

and is then either answered locally (``GET /api``, ``/_gateway/*``),
served from the static asset directory, or forwarded to an upstream.

Structure:
- app.main: FastAPI app and service wiring.
- app.pipeline: Policy stages and the middleware that runs them.
- app.ratelimit: Fixed-window limiters (in-memory and Redis).
- app.routing: Route table and dispatcher.
- app.adapters: HTTP client used to forward to upstreams.
"""
