"""
Auth service package for the delivery platform.

A minimal upstream that sits behind the edge gateway's catch-all route:

- app.main: Application entrypoint that wires routes and lifecycle.

Module import must not perform network calls; all IO happens in route
handlers or explicit startup hooks.
"""
