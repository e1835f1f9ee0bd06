"""aiohttp server exposing the relay over a WebSocket.

Routes:
    GET /            WebSocket upgrade, or ``index.html`` from the static dir
    GET /ws          WebSocket endpoint
    GET /api/health  ``{status, projectRoot, connected}``

The server holds exactly one provider instance. ``switch_project()``
replaces it wholesale, running the old instance's cleanup first.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path

from aiohttp import WSMsgType, web

from chatrelay.adapters.events import SessionCleared
from chatrelay.engine.config import RelayConfig
from chatrelay.engine.provider import ChatProvider
from chatrelay.web.connection import ConnectionManager

logger = logging.getLogger(__name__)

WS_HEARTBEAT_SECONDS = 30.0


class RelayServer:
    """HTTP + WebSocket front end for one provider instance."""

    def __init__(self, project_root: Path, config: RelayConfig | None = None) -> None:
        self._config = config or RelayConfig()
        self._host = self._config.host
        self._port = self._config.port
        self._provider = ChatProvider(project_root, self._config)
        self._connections = ConnectionManager(self._provider)
        self._switch_lock = asyncio.Lock()
        self._static_dir = (
            Path(self._config.static_dir).resolve() if self._config.static_dir else None
        )
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        logger.info(
            "RelayServer init host=%s port=%s project=%s static=%s",
            self._host, self._port, self._provider.project_root,
            self._static_dir or "<none>",
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def provider(self) -> ChatProvider:
        return self._provider

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/", self._handle_root)
        r.add_get("/ws", self._handle_ws)
        r.add_get("/api/health", self._handle_health)
        if self._static_dir is not None:
            r.add_static("/", self._static_dir)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        await self._provider.start()

    async def _on_shutdown(self, app: web.Application) -> None:
        logger.info("Server shutting down")
        await self._connections.close()
        await self._provider.cleanup()

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info(
            "Relay listening on http://%s:%d (project %s)",
            self._host, self._port, self._provider.project_root,
        )
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server stopping")
        finally:
            await runner.cleanup()

    async def switch_project(self, project_root: Path) -> ChatProvider:
        """Replace the provider with one bound to ``project_root``."""
        async with self._switch_lock:
            old = self._provider
            await old.cleanup()
            provider = ChatProvider(project_root, self._config)
            self._provider = provider
            self._connections.set_provider(provider)
            await provider.start()
            logger.info("Switched project %s -> %s", old.project_root, provider.project_root)

            self._connections.post(SessionCleared())
            resumed = provider.session_resumed_event()
            if resumed is not None:
                self._connections.post(resumed)
                provider.replay()
            return provider

    # ── Handlers ──

    async def _handle_root(self, request: web.Request) -> web.StreamResponse:
        if web.WebSocketResponse().can_prepare(request).ok:
            return await self._handle_ws(request)
        if self._static_dir is not None:
            index = self._static_dir / "index.html"
            if index.is_file():
                return web.FileResponse(index)
        raise web.HTTPNotFound()

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT_SECONDS)
        await ws.prepare(request)
        channel = await self._connections.attach(ws)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._connections.handle_message(msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self._connections.handle_message(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "WebSocket error on channel %s: %s",
                        channel.channel_id, ws.exception(),
                    )
        finally:
            await self._connections.detach(channel)
        return ws

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "projectRoot": str(self._provider.project_root),
            "connected": self._connections.connected,
        })
