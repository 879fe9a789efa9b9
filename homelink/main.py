from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from .backend import BackendClient
from .cache import SnapshotCache
from .errors import (
    BackendError,
    CommandFailed,
    CommandRejected,
    EnrollmentInProgress,
    GatewayUnavailable,
    HomelinkError,
)
from .identity import IdentityResolver
from .models import ACTIONS
from .mqtt_client import MqttClient
from .realtime import RealtimeHub
from .session import PremisesSession
from .settings import Settings, load_settings, read_options
from .subscriptions import SubscriptionRegistry, Transport

_LOGGER = logging.getLogger("homelink")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

HOMELINK_VERSION = "0.1.0"

HTTP_PORT = 8124


def _configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for name in (
        "homelink",
        "paho",
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ):
        logging.getLogger(name).setLevel(level)


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, EnrollmentInProgress):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, GatewayUnavailable):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, CommandFailed):
        if isinstance(e.__cause__, CommandRejected):
            return HTTPException(status_code=409, detail=str(e))
        if isinstance(e.__cause__, BackendError):
            return HTTPException(status_code=502, detail=str(e))
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, CommandRejected):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, BackendError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=409, detail=str(e))


def create_app(
    settings: Settings | None = None,
    *,
    transport: Transport | None = None,
    backend: BackendClient | None = None,
) -> FastAPI:
    api = FastAPI(title="homelink", version=HOMELINK_VERSION)

    if settings is None:
        settings = load_settings(read_options())
    api.state.settings = settings
    _configure_logging(settings.debug)

    if transport is None:
        transport = MqttClient(
            host=settings.mqtt.host,
            port=settings.mqtt.port,
            username=settings.mqtt.username,
            password=settings.mqtt.password,
            client_id=settings.mqtt.client_id,
        )
    api.state.transport = transport

    if backend is None:
        backend = BackendClient(
            base_url=settings.backend.base_url,
            token=settings.backend.token,
            timeout_s=settings.backend.timeout_s,
        )

    registry = SubscriptionRegistry(transport)
    session = PremisesSession(
        registry=registry,
        backend=backend,
        cache=SnapshotCache(settings.cache_path),
        base_topic=settings.mqtt.base_topic,
        timing=settings.timing,
        resolver=IdentityResolver(settings.identity_match),
    )
    api.state.registry = registry
    api.state.session = session

    hub = RealtimeHub()
    api.state.hub = hub
    session.add_listener(hub.publish)

    def _snapshot() -> dict[str, Any]:
        gw = session.gateway()
        snap = session.telemetry()
        emergency = session.emergency()
        enrollment = session.enrollment()
        status = getattr(transport, "status", None)
        return {
            "premises_id": session.premises_id,
            "devices": [d.to_dict() for d in session.devices()],
            "gateway": gw.to_dict() if gw is not None else None,
            "gateway_view": session.gateway_view().to_dict(),
            "telemetry": snap.to_dict() if snap is not None else None,
            "enrollment": enrollment.to_dict() if enrollment is not None else {"state": "idle"},
            "emergency": emergency.to_dict() if emergency is not None else None,
            "notifications": [n.to_dict() for n in session.notifications()],
            "mqtt": status().__dict__ if callable(status) else {"connected": bool(transport.connected)},
        }

    @api.on_event("startup")
    async def _startup() -> None:
        loop = asyncio.get_running_loop()
        hub.attach(loop)
        attach = getattr(transport, "attach_loop", None)
        if callable(attach):
            attach(loop)
        on_disconnect = getattr(transport, "set_disconnect_handler", None)
        if callable(on_disconnect):
            on_disconnect(lambda: hub.publish("mqtt", {"connected": False}))
        transport.activate()
        if settings.premises_id is not None:
            await session.open(settings.premises_id)
        else:
            _LOGGER.info("No premises_id configured; waiting for /api/premises/{id}")

    @api.on_event("shutdown")
    async def _shutdown() -> None:
        try:
            await session.close()
            registry.clear()
        finally:
            deactivate = getattr(transport, "deactivate", None)
            if callable(deactivate):
                deactivate()
        await hub.close_all()

    @api.get("/health")
    async def health():
        return {"status": "ok", "version": HOMELINK_VERSION, "premises_id": session.premises_id}

    @api.get("/api/state")
    async def api_state():
        return _snapshot()

    @api.get("/api/devices")
    async def api_devices():
        return {"devices": [d.to_dict() for d in session.devices()]}

    @api.get("/api/gateway")
    async def api_gateway():
        gw = session.gateway()
        snap = session.telemetry()
        return {
            "gateway": gw.to_dict() if gw is not None else None,
            "view": session.gateway_view().to_dict(),
            "telemetry": snap.to_dict() if snap is not None else None,
        }

    @api.get("/api/enrollment")
    async def api_enrollment():
        enrollment = session.enrollment()
        if enrollment is None:
            return {"state": session.enrollment_state().value, "last_result": None, "cards": []}
        return enrollment.to_dict()

    @api.get("/api/notifications")
    async def api_notifications():
        return {"notifications": [n.to_dict() for n in session.notifications()]}

    @api.get("/api/emergency")
    async def api_emergency():
        emergency = session.emergency()
        return {"emergency": emergency.to_dict() if emergency is not None else None}

    @api.post("/api/devices/{device_id}/command")
    async def api_device_command(device_id: int, request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        action = str((body or {}).get("action") or "").strip().upper()
        if action not in ACTIONS:
            raise HTTPException(status_code=400, detail=f"action must be one of {', '.join(ACTIONS)}")
        try:
            dev = await session.issue_command(device_id, action)
        except HomelinkError as e:
            raise _http_error(e) from e
        return {"device": dev.to_dict()}

    @api.post("/api/devices")
    async def api_create_device(request: Request):
        try:
            body = await request.json()
        except ValueError as e:
            raise HTTPException(status_code=400, detail="invalid JSON body") from e
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="body must be an object")
        missing = [k for k in ("name", "deviceType") if not str(body.get(k) or "").strip()]
        if missing:
            raise HTTPException(status_code=400, detail=f"Missing: {', '.join(missing)}")
        try:
            dev = await session.create_device(body)
        except HomelinkError as e:
            raise _http_error(e) from e
        return {"device": dev.to_dict()}

    @api.delete("/api/devices/{device_id}")
    async def api_delete_device(device_id: int):
        try:
            removed = await session.delete_device(device_id)
        except HomelinkError as e:
            raise _http_error(e) from e
        return {"removed": removed}

    @api.post("/api/gateway/unpair")
    async def api_unpair_gateway():
        try:
            await session.unpair_gateway()
        except HomelinkError as e:
            raise _http_error(e) from e
        return {"ok": True}

    @api.post("/api/enrollment/start")
    async def api_enrollment_start(request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        name = str((body or {}).get("name") or "").strip() or None
        try:
            await session.start_enrollment(name)
        except HomelinkError as e:
            raise _http_error(e) from e
        return {"state": session.enrollment_state().value}

    @api.post("/api/enrollment/cancel")
    async def api_enrollment_cancel():
        cancelled = await session.cancel_enrollment()
        return {"cancelled": cancelled, "state": session.enrollment_state().value}

    @api.post("/api/refresh")
    async def api_refresh():
        try:
            await session.force_refresh()
        except HomelinkError as e:
            raise _http_error(e) from e
        return {"devices": len(session.devices()), "view": session.gateway_view().to_dict()}

    @api.post("/api/premises/{premises_id}")
    async def api_switch_premises(premises_id: int):
        await session.switch(premises_id)
        return {"premises_id": session.premises_id}

    @api.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        await hub.connect(ws, _snapshot())
        try:
            while True:
                msg = await ws.receive_text()
                # optional ping/pong
                if msg.strip().lower() == "ping":
                    await ws.send_text("pong")
        except WebSocketDisconnect:
            pass
        finally:
            await hub.disconnect(ws)

    return api


def main() -> None:
    import uvicorn

    app = create_app()
    port = int(os.environ.get("HOMELINK_PORT") or HTTP_PORT)
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    main()
