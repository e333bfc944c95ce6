"""HTTP server exposing the bridge over aiohttp.

Routes:
    GET  /health                            liveness + uptime
    GET  /status                            engine counters
    POST /channels/{channel}/messages       {"text", "user"} -> 202
    POST /channels/{channel}/interactions   {"action", "value"} -> 202
    GET  /channels/{channel}/messages       outbound messages (loopback)
    GET  /events                            SSE stream of outbound traffic

Inbound chat traffic is handed to the controller as a background task
so the HTTP request returns immediately, the way a chat platform's
webhook would.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from heimerdinger.adapters.base import IncomingMessage, MessageContext
from heimerdinger.adapters.loopback import LoopbackAdapter
from heimerdinger.engine.config import BridgeConfig
from heimerdinger.engine.controller import ConversationController

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0


class BridgeServer:
    """aiohttp front end for a ConversationController on a loopback adapter."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        adapter: LoopbackAdapter | None = None,
        controller: ConversationController | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._host = self._config.host
        self._port = self._config.port
        self._adapter = adapter or LoopbackAdapter()
        self._controller = controller or ConversationController(self._adapter, self._config)
        self._started_at = time.time()
        self._tasks: set[asyncio.Task[None]] = set()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        logger.info(
            "BridgeServer init host=%s port=%s adapter=%s pid=%s",
            self._host, self._port, self._adapter.name, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def controller(self) -> ConversationController:
        return self._controller

    @property
    def adapter(self) -> LoopbackAdapter:
        return self._adapter

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/status", self._handle_status)
        r.add_get("/events", self._handle_sse)
        r.add_post("/channels/{channel}/messages", self._handle_post_message)
        r.add_get("/channels/{channel}/messages", self._handle_list_messages)
        r.add_post("/channels/{channel}/interactions", self._handle_interaction)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start serving and block until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is not None:
            self._port = actual_port
        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("Bridge server listening on %s:%d", self._host, self._port)

        await self._controller.announce_online()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.shutdown()
            await runner.cleanup()

    async def shutdown(self) -> None:
        """Abort active runs and wait for in-flight handlers to finish."""
        self._controller.shutdown()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait until every scheduled controller call has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    def _spawn(self, coro, label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("%s failed: %s", label, t.exception())

        task.add_done_callback(_done)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "adapter": self._adapter.name,
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._controller.status())

    async def _read_json(self, request: web.Request) -> dict[str, Any] | None:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return None
        return body if isinstance(body, dict) else None

    async def _handle_post_message(self, request: web.Request) -> web.Response:
        channel = request.match_info["channel"]
        body = await self._read_json(request)
        if body is None:
            return web.json_response({"error": "Body must be a JSON object"}, status=400)
        text = str(body.get("text") or "").strip()
        if not text:
            return web.json_response({"error": "Missing text"}, status=400)
        context = MessageContext(
            channel_id=channel,
            user_id=str(body.get("user") or ""),
            thread_id=body.get("thread_id") or None,
        )
        self._spawn(
            self._controller.handle_message(IncomingMessage(text=text, context=context)),
            f"handle_message[{channel}]",
        )
        return web.json_response({"accepted": True, "channel": channel}, status=202)

    async def _handle_interaction(self, request: web.Request) -> web.Response:
        channel = request.match_info["channel"]
        body = await self._read_json(request)
        if body is None:
            return web.json_response({"error": "Body must be a JSON object"}, status=400)
        action = str(body.get("action") or "").strip()
        if not action:
            return web.json_response({"error": "Missing action"}, status=400)
        value = str(body.get("value") or "")
        context = MessageContext(channel_id=channel, user_id=str(body.get("user") or ""))
        self._spawn(
            self._controller.handle_interaction(action, value, context),
            f"handle_interaction[{channel}:{action}]",
        )
        return web.json_response({"accepted": True, "channel": channel, "action": action}, status=202)

    async def _handle_list_messages(self, request: web.Request) -> web.Response:
        channel = request.match_info["channel"]
        messages = [m.to_dict() for m in self._adapter.messages(channel)]
        return web.json_response({
            "channel": channel,
            "phase": self._controller.phase(channel).value,
            "messages": messages,
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue = self._adapter.subscribe()
        logger.info(
            "SSE client connected req=%s active_clients=%d",
            request.get("req_id", "unknown"), self._adapter.subscriber_count,
        )
        try:
            await response.write(
                f"event: connected\ndata: {json.dumps({'channels': self._adapter.channels()})}\n\n".encode()
            )
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    data = json.dumps(event["message"])
                    await response.write(f"event: {event['type']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        finally:
            self._adapter.unsubscribe(queue)
            logger.info(
                "SSE client disconnected req=%s active_clients=%d",
                request.get("req_id", "unknown"), self._adapter.subscriber_count,
            )
        return response
