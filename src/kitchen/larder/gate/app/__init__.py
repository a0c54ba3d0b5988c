"""
Larder Gate Application Layer

This package implements the web application layer for the Larder authentication service using
the aiohttp framework. Handlers translate HTTP requests into calls on the services in
`kitchen.larder.gate.auth` and render their results or failures as JSON.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration, service wiring and middleware setup
- config.py: Configuration management using Pydantic settings
- handlers/: Request handlers for federated login, local accounts and internal endpoints
- tasks.py: Background tasks for health monitoring and denylist sweeping
- cors.py: CORS handling for cross-origin requests
- metrics.py: Metrics client abstraction
- util/: Operator commands

The application uses several middleware layers:
- CORS middleware for handling cross-origin requests
- Statsd middleware for metrics collection
- Error middleware for rendering authentication failures and reporting unexpected errors

It provides the following main endpoints:
- Federated login endpoints (/auth/federated/*)
- Local account endpoints (/auth/sign_up, /auth/sign_in, /auth/sign_out, /auth/refresh)
- Internal API endpoints (/internal/*)
"""
