"""aiohttp control API and status page."""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp_jinja2
import jinja2
from aiohttp import web

from sipcall.service import PhoneService
from sipcall.sip.errors import SipError

logger = logging.getLogger(__name__)

_service_key = web.AppKey("service", PhoneService)


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError as exc:
        raise SipError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(data, dict):
        raise SipError("JSON body must be an object")
    return data


@web.middleware
async def _error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    try:
        return await handler(request)
    except SipError as exc:
        logger.warning("%s %s failed: %s", request.method, request.path, exc)
        return web.json_response({"error": str(exc)}, status=400)


async def _configure_handler(request: web.Request) -> web.Response:
    service = request.app[_service_key]
    data = await _json_body(request)
    try:
        kwargs = {
            "server": data["server"],
            "username": data["username"],
            "password": data["password"],
            "domain": data.get("domain"),
            "port": int(data.get("port", 5060)),
            "local_port": int(data.get("local_port", 0)),
        }
    except KeyError as exc:
        raise SipError(f"Missing field: {exc.args[0]}") from None
    except (TypeError, ValueError) as exc:
        raise SipError(f"Invalid port: {exc}") from None
    return web.json_response(await service.configure(**kwargs))


async def _call_handler(request: web.Request) -> web.Response:
    service = request.app[_service_key]
    data = await _json_body(request)
    try:
        duration = float(data.get("duration", 10))
    except (TypeError, ValueError):
        raise SipError("duration must be a number") from None
    result = await service.call(str(data.get("number", "")), duration)
    return web.json_response(result)


async def _answer_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[_service_key].answer())


async def _reject_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[_service_key].reject())


async def _hangup_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[_service_key].hangup())


async def _reset_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[_service_key].reset())


async def _status_handler(request: web.Request) -> web.Response:
    detailed = request.query.get("detailed", "") in ("1", "true", "yes")
    return web.json_response(request.app[_service_key].status(detailed))


async def _statistics_handler(request: web.Request) -> web.Response:
    return web.json_response(request.app[_service_key].statistics())


async def _index_handler(request: web.Request) -> web.Response:
    service = request.app[_service_key]
    context = {
        "status": service.status(detailed=True),
    }
    return aiohttp_jinja2.render_template("status.html", request, context)


def create_app(service: PhoneService) -> web.Application:
    app = web.Application(middlewares=[_error_middleware])
    aiohttp_jinja2.setup(
        app,
        loader=jinja2.PackageLoader("sipcall"),
        autoescape=jinja2.select_autoescape(),
    )
    app[_service_key] = service
    app.router.add_get("/", _index_handler)
    app.router.add_post("/configure", _configure_handler)
    app.router.add_post("/call", _call_handler)
    app.router.add_post("/answer", _answer_handler)
    app.router.add_post("/reject", _reject_handler)
    app.router.add_post("/hangup", _hangup_handler)
    app.router.add_post("/reset", _reset_handler)
    app.router.add_get("/status", _status_handler)
    app.router.add_get("/statistics", _statistics_handler)
    return app


async def start_webapp(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Control API listening on http://%s:%d", host, port)
    return runner


async def stop_webapp(runner: web.AppRunner) -> None:
    await runner.cleanup()
