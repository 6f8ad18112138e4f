"""
HTTP endpoints for monitoring a running indexer.

GET /metrics  Prometheus exposition of the exporter's registry
GET /healthz  pipeline health info as JSON; 503 once shutdown has begun
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

logger = logging.getLogger(__name__)

HealthFn = Callable[[], dict[str, Any]]

# Health statuses served with HTTP 503
UNHEALTHY_STATUSES = frozenset({"stopping"})


class MetricsServer:
    """
    Serves one registry and one health callback on host:port.

    start() binds the port (0 picks a free one), stop() releases it.
    """

    def __init__(
        self,
        registry: CollectorRegistry,
        *,
        health_fn: HealthFn | None = None,
        host: str = "0.0.0.0",
        port: int = 9090,
    ) -> None:
        self._registry = registry
        self._health_fn = health_fn
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    @property
    def port(self) -> int:
        """Bound port once started, the configured one before."""
        if self._runner is not None and self._runner.addresses:
            return int(self._runner.addresses[0][1])
        return self._port

    @property
    def running(self) -> bool:
        return self._runner is not None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/metrics", self._metrics)
        app.router.add_get("/healthz", self._healthz)
        return app

    async def _metrics(self, request: web.Request) -> web.Response:
        return web.Response(
            body=generate_latest(self._registry),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )

    async def _healthz(self, request: web.Request) -> web.Response:
        info = self._health_fn() if self._health_fn is not None else {"status": "ok"}
        status = 503 if info.get("status") in UNHEALTHY_STATUSES else 200
        return web.Response(body=orjson.dumps(info), status=status, content_type="application/json")

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        await web.TCPSite(runner, self._host, self._port).start()
        self._runner = runner
        logger.info("Metrics server started on port %d", self.port, extra={"bind": self._host})

    async def stop(self) -> None:
        """Release the port. Safe to call when not started."""
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info("Metrics server stopped")
