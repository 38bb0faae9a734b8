"""
Minimal HTTP server for Prometheus /metrics and /healthz endpoints.

Uses aiohttp.web (already a dependency for the vendor transport).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import web
from prometheus_client import generate_latest

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

logger = logging.getLogger(__name__)

# Type alias for aiohttp handler
_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# Type alias for health info callback
HealthFn = Callable[[], dict[str, Any]]


def _make_metrics_handler(
    registry: CollectorRegistry,
    before_scrape: Callable[[], None] | None = None,
) -> _Handler:
    """Create GET /metrics handler bound to a registry."""

    async def handler(request: web.Request) -> web.Response:
        if before_scrape is not None:
            before_scrape()
        body = generate_latest(registry)
        return web.Response(
            body=body,
            content_type="text/plain; version=0.0.4",
            charset="utf-8",
        )

    return handler


def _make_healthz_handler(
    health_fn: HealthFn | None = None,
) -> _Handler:
    """Create GET /healthz handler.

    Args:
        health_fn: Optional callback returning a health dict. If it reports
            ``status`` other than "ok", the response is 503.
    """

    async def handler(request: web.Request) -> web.Response:
        info = health_fn() if health_fn is not None else {"status": "ok"}
        status = 200 if info.get("status", "ok") == "ok" else 503
        return web.Response(
            body=orjson.dumps(info),
            status=status,
            content_type="application/json",
        )

    return handler


def create_ops_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
    before_scrape: Callable[[], None] | None = None,
) -> web.Application:
    """
    Create aiohttp Application with /metrics and /healthz routes.

    Args:
        registry: Prometheus CollectorRegistry to serve.
        health_fn: Optional callback for /healthz.
        before_scrape: Optional hook run before each /metrics render
            (e.g. syncing breaker state into the exporter).

    Returns:
        aiohttp.web.Application ready to be started.
    """
    app = web.Application()
    app.router.add_get("/metrics", _make_metrics_handler(registry, before_scrape))
    app.router.add_get("/healthz", _make_healthz_handler(health_fn))
    return app


async def start_ops_server(
    registry: CollectorRegistry,
    host: str = "127.0.0.1",
    port: int = 9108,
    *,
    health_fn: HealthFn | None = None,
    before_scrape: Callable[[], None] | None = None,
) -> web.AppRunner:
    """
    Start the ops HTTP server.

    Returns:
        AppRunner (pass to stop_ops_server on shutdown).
    """
    app = create_ops_app(registry, health_fn=health_fn, before_scrape=before_scrape)
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Ops server started on http://%s:%d/metrics", host, port)
    return runner


async def stop_ops_server(runner: web.AppRunner) -> None:
    """Stop the ops HTTP server."""
    await runner.cleanup()
    logger.info("Ops server stopped")
