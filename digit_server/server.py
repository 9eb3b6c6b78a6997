"""Digit server: HTTP front door for the in-database MNIST classifier.

Routes (all GET, one catch-all handler):
  /favicon.ico       - dropped, no response
  /style.css         - canvas stylesheet
  /script.js         - canvas script
  /, /canvas, /x     - canvas page (first path segment shorter than 2 chars)
  /<p1>,<p2>,...     - 784 pixel values: run the model, return
                       <resultado>digit</resultado>
  anything else      - "Not an MNIST image", nothing sent to the database

Usage:
    python -m digit_server
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from functools import partial
from pathlib import Path

import oracledb
from aiohttp import web

from digit_server.config import Config
from digit_server.encoder import CORS_HEADERS, result_response
from digit_server.pixels import MalformedPixelValue, parse_pixels
from digit_server.pool import ConnectionPool, PoolCloseFailure, PoolInitFailure
from digit_server.query import InferenceQueryBuilder, run_inference

log = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"
FAVICON_PATH = "/favicon.ico"
# 784 full-precision floats plus separators fit in the request line.
MAX_REQUEST_LINE = 24 * 1024


@dataclass(frozen=True)
class StaticAssets:
    """Canvas page and its assets, read once at startup."""

    index_html: bytes
    style_css: bytes
    script_js: bytes

    @classmethod
    def load(cls, directory: Path = STATIC_DIR) -> StaticAssets:
        return cls(
            index_html=(directory / "index.html").read_bytes(),
            style_css=(directory / "style.css").read_bytes(),
            script_js=(directory / "script.js").read_bytes(),
        )


@web.middleware
async def drop_favicon(request: web.Request, handler) -> web.StreamResponse:
    """Close the connection on favicon requests without answering."""
    if request.path == FAVICON_PATH:
        if request.transport is not None:
            request.transport.close()
        # Nothing reaches the client once the transport is closed.
        raise web.HTTPNoContent()
    return await handler(request)


class DigitServer:
    """aiohttp server that turns canvas drawings into database predictions."""

    def __init__(
        self,
        config: Config,
        pool: ConnectionPool,
        builder: InferenceQueryBuilder | None = None,
        assets: StaticAssets | None = None,
    ) -> None:
        self._config = config
        self._pool = pool
        self._builder = builder or InferenceQueryBuilder(
            config.model_name, config.include_probability
        )
        self._assets = assets or StaticAssets.load()
        self._app = self.build_app()
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        """Build the aiohttp application (no listener)."""
        app = web.Application(
            middlewares=[drop_favicon],
            handler_args={"max_line_size": MAX_REQUEST_LINE},
        )
        app.router.add_get("/{tail:.*}", self._handle_request)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        log.info(
            "Server is running at http://%s:%d", self._config.host, self._config.port
        )

    async def stop(self) -> None:
        """Stop the HTTP server and release resources."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # -- Handlers ----------------------------------------------------------------

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        path = request.path
        if "style.css" in path:
            return web.Response(body=self._assets.style_css, content_type="text/css")
        if "script.js" in path:
            return web.Response(
                body=self._assets.script_js, content_type="text/javascript"
            )

        segment = path.split("/")[1]
        if segment == "canvas" or len(segment) < 2:
            return web.Response(
                body=self._assets.index_html,
                content_type="text/html",
                headers=CORS_HEADERS,
            )

        try:
            pixels = parse_pixels(segment)
        except MalformedPixelValue as exc:
            return self._error_response("handleRequest() error", exc)

        if pixels is None:
            log.info("Not an MNIST image (%d tokens)", segment.count(",") + 1)
            log.debug("Rejected identifier: %.200s", segment)
            return web.Response(status=404, text="Not an MNIST image")

        query = self._builder.build(pixels)
        log.info("Sending query...")
        log.debug("Digit:\n%s", pixels.render())
        try:
            async with self._pool.connection() as conn:
                rows = await run_inference(conn, query)
        except Exception as exc:
            return self._error_response("handleRequest() error", exc)

        log.info("Prediction: %s", rows)
        return result_response(rows)

    def _error_response(self, text: str, exc: Exception) -> web.Response:
        message = f"{text}: {exc}"
        log.error("%s", message)
        return web.Response(status=500, text=message, content_type="text/html")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def create_pool(config: Config) -> ConnectionPool:
    """Pool backed by python-oracledb's thin-mode AsyncConnectionPool."""
    factory = partial(
        oracledb.create_pool_async,
        user=config.db_user,
        password=config.db_password,
        dsn=config.db_connect_string,
    )
    return ConnectionPool(
        factory,
        min_size=config.pool_min,
        max_size=config.pool_max,
        acquire_timeout=config.pool_timeout,
    )


async def run(config: Config, pool: ConnectionPool | None = None) -> int:
    """Open the pool, serve until SIGINT/SIGTERM, drain. Returns exit status."""
    if pool is None:
        pool = create_pool(config)
    try:
        await pool.initialize()
    except PoolInitFailure as exc:
        log.error("init() error: %s", exc)
        return 1

    server = DigitServer(config, pool)
    try:
        await server.start()
    except OSError as exc:
        log.error("HTTP server problem: %s", exc)
        await pool.shutdown(0)
        return 1

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        log.info("Shutdown signal received")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    await shutdown.wait()
    log.info("Terminating")

    exit_code = 0
    try:
        await pool.shutdown(config.shutdown_grace_seconds)
    except PoolCloseFailure as exc:
        log.error("Pool close failed: %s", exc)
        exit_code = 1
    await server.stop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)
    log.info("Shutdown complete")
    return exit_code


def main() -> None:
    """Load config, configure logging, run the server."""
    config = Config.load()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("python-oracledb %s, thin mode", oracledb.__version__)

    try:
        exit_code = asyncio.run(run(config))
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
