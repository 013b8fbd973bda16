"""
Shared utilities for the delivery platform services.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and the error envelope
- retry: Retry policy and helper for async calls
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service skeleton with health and metrics routes

Do not import from service packages into shared/.
"""
