"""Embedded HTTP control surface: health, poller status, ingestion control
and the chat tag and status changes that fire state triggers.

Listens on ``server.host:server.port`` (loopback by default). There is no
authentication; expose it only on trusted interfaces.
"""

from __future__ import annotations

import json
import time
from typing import Any, Protocol

from aiohttp import web

from omnidesk import __version__
from omnidesk.config import get_settings
from omnidesk.logger import logger
from omnidesk.state import get_log

_start_time = time.monotonic()


class HttpDeps(Protocol):
    """Dependencies injected by app.py."""

    def ingestion_status(self) -> list[dict[str, Any]]: ...

    async def start_ingestion(self, channel_id: int | None) -> list[int]: ...

    async def stop_ingestion(self, channel_id: int | None) -> list[int]: ...

    def executor_in_flight(self) -> int: ...

    async def change_client_tags(
        self, chat_id: int, *, add: list[str], remove: list[str]
    ) -> list[int] | None: ...

    async def change_chat_status(self, chat_id: int, status: str) -> list[int] | None: ...


async def _channel_id_from_body(request: web.Request) -> int | None:
    """Optional ``channel_id`` from a JSON body. Empty body means all channels."""
    if not request.can_read_body:
        return None
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "body must be JSON"}), content_type="application/json"
        ) from exc
    if not isinstance(body, dict) or body.get("channel_id") is None:
        return None
    try:
        return int(body["channel_id"])
    except (TypeError, ValueError) as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "channel_id must be an integer"}),
            content_type="application/json",
        ) from exc


async def _handle_health(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    pollers = deps.ingestion_status()
    return web.json_response(
        {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(time.monotonic() - _start_time),
            "pollers_running": sum(1 for p in pollers if p["running"]),
            "pollers_failing": sum(1 for p in pollers if p["consecutive_failures"]),
            "executor_in_flight": deps.executor_in_flight(),
        }
    )


async def _handle_api_channels(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    return web.json_response(deps.ingestion_status())


async def _handle_ingestion_start(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    channel_id = await _channel_id_from_body(request)
    started = await deps.start_ingestion(channel_id)
    return web.json_response({"status": "ok", "started": started})


async def _handle_ingestion_stop(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    channel_id = await _channel_id_from_body(request)
    stopped = await deps.stop_ingestion(channel_id)
    return web.json_response({"status": "ok", "stopped": stopped})


async def _handle_api_log(request: web.Request) -> web.Response:
    try:
        log_id = int(request.match_info["log_id"])
    except ValueError:
        return web.json_response({"error": "log id must be an integer"}, status=400)
    log = await get_log(log_id)
    if log is None:
        return web.json_response({"error": "not found"}, status=404)
    return web.json_response(log.to_dict())


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json() if request.can_read_body else {}
    except json.JSONDecodeError as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "body must be JSON"}), content_type="application/json"
        ) from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "body must be an object"}), content_type="application/json"
        )
    return body


def _chat_id(request: web.Request) -> int:
    try:
        return int(request.match_info["chat_id"])
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "chat id must be an integer"}),
            content_type="application/json",
        ) from exc


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(v) for v in value]


async def _handle_chat_tags(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    body = await _json_body(request)
    started = await deps.change_client_tags(
        _chat_id(request), add=_str_list(body.get("add")), remove=_str_list(body.get("remove"))
    )
    if started is None:
        return web.json_response({"error": "not found"}, status=404)
    return web.json_response({"status": "ok", "started": started})


async def _handle_chat_status(request: web.Request) -> web.Response:
    deps: HttpDeps = request.app["deps"]
    body = await _json_body(request)
    try:
        started = await deps.change_chat_status(_chat_id(request), str(body.get("status") or ""))
    except ValueError as exc:
        return web.json_response({"error": str(exc)}, status=400)
    if started is None:
        return web.json_response({"error": "not found"}, status=404)
    return web.json_response({"status": "ok", "started": started})


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def create_app(deps: HttpDeps) -> web.Application:
    app = web.Application()
    app["deps"] = deps
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/channels", _handle_api_channels)
    app.router.add_post("/api/ingestion/start", _handle_ingestion_start)
    app.router.add_post("/api/ingestion/stop", _handle_ingestion_stop)
    app.router.add_get("/api/logs/{log_id}", _handle_api_log)
    app.router.add_post("/api/chats/{chat_id}/tags", _handle_chat_tags)
    app.router.add_post("/api/chats/{chat_id}/status", _handle_chat_status)
    return app


async def start_http_server(deps: HttpDeps) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    s = get_settings()
    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, s.server.host, s.server.port)
    await site.start()
    logger.info("HTTP server listening", host=s.server.host, port=s.server.port)
    return runner
