from __future__ import annotations

import asyncio
import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from .errors import BackendError, CommandRejected
from .models import TOGGLE, TURN_OFF, TURN_ON

_LOGGER = logging.getLogger("homelink.backend")


def _unwrap(body: Any) -> Any:
    # Uniform envelope: {success, data, message}. Older endpoints use "result".
    if isinstance(body, dict) and "success" in body:
        if not body.get("success"):
            raise CommandRejected(str(body.get("message") or "request rejected"))
        if "data" in body:
            return body.get("data")
        return body.get("result")
    return body


class BackendClient:
    """REST side of the backend. Calls block, so the async helpers run them in a thread."""

    def __init__(self, *, base_url: str, token: str = "", timeout_s: float = 10.0):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_s = float(timeout_s)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def request_sync(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> Any:
        url = self._base_url + "/" + path.lstrip("/")
        if query:
            url += "?" + urllib.parse.urlencode(query)
        data: bytes | None = None
        if payload is not None:
            data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        req = urllib.request.Request(url=url, method=method.upper(), data=data)
        for k, v in self._headers().items():
            req.add_header(k, v)
        try:
            with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            message = f"HTTP {e.code}"
            try:
                body = json.loads(e.read().decode("utf-8", errors="replace"))
                if isinstance(body, dict) and body.get("message"):
                    message = f"{message}: {body.get('message')}"
            except (ValueError, OSError):
                pass
            if e.code in (400, 409, 422):
                raise CommandRejected(message, status=e.code) from e
            raise BackendError(message, status=e.code) from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise BackendError(f"{method.upper()} {path} failed: {e}") from e

        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return None
        try:
            body = json.loads(text)
        except (json.JSONDecodeError, ValueError):
            return text
        return _unwrap(body)

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        _LOGGER.debug("%s %s", method.upper(), path)
        return await asyncio.to_thread(self.request_sync, method, path, **kwargs)

    async def _get_optional(self, path: str) -> Any:
        try:
            return await self.request("GET", path)
        except BackendError as e:
            if e.status == 404:
                return None
            raise

    # devices

    async def list_devices(self, premises_id: int, *, page_size: int = 200) -> list[dict[str, Any]]:
        data = await self.request(
            "GET",
            f"/devices/home/{int(premises_id)}",
            query={"page": 0, "size": int(page_size), "sort": "createdAt,desc"},
        )
        if isinstance(data, dict):
            data = data.get("content")
        if not isinstance(data, list):
            raise BackendError("device list: unexpected response shape")
        return [d for d in data if isinstance(d, dict)]

    async def device_command(self, device_id: int, action: str) -> Any:
        act = str(action or "").strip().upper()
        if act == TURN_ON:
            return await self.request("POST", f"/devices/{int(device_id)}/turn-on")
        if act == TURN_OFF:
            return await self.request("POST", f"/devices/{int(device_id)}/turn-off")
        if act == TOGGLE:
            return await self.request("POST", f"/devices/{int(device_id)}/command", query={"command": TOGGLE})
        raise ValueError(f"unsupported action {action!r}")

    async def create_device(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self.request("POST", "/devices", payload=payload)
        if not isinstance(data, dict):
            raise BackendError("create device: unexpected response shape")
        return data

    async def delete_device(self, device_id: int) -> None:
        await self.request("DELETE", f"/devices/{int(device_id)}")

    # gateway

    async def get_gateway(self, premises_id: int) -> dict[str, Any] | None:
        data = await self._get_optional(f"/mcu/home/{int(premises_id)}")
        return data if isinstance(data, dict) else None

    async def get_sensor_data(self, premises_id: int) -> dict[str, Any] | None:
        data = await self._get_optional(f"/mcu/home/{int(premises_id)}/sensor-data")
        return data if isinstance(data, dict) else None

    async def unpair_gateway(self, gateway_id: int) -> None:
        await self.request("DELETE", f"/mcu/{int(gateway_id)}")

    # card learning

    async def list_cards(self, premises_id: int) -> dict[str, Any]:
        data = await self.request("GET", f"/mcu/home/{int(premises_id)}/rfid/cards")
        return data if isinstance(data, dict) else {"cards": [], "count": 0}

    async def start_learning(self, premises_id: int, name: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if name:
            payload["name"] = name
        data = await self.request("POST", f"/mcu/home/{int(premises_id)}/rfid/learn", payload=payload)
        return data if isinstance(data, dict) else {}

    async def learning_status(self, premises_id: int) -> dict[str, Any] | None:
        data = await self._get_optional(f"/mcu/home/{int(premises_id)}/rfid/learn/status")
        return data if isinstance(data, dict) else None

    async def cancel_learning(self, premises_id: int) -> None:
        await self.request("POST", f"/mcu/home/{int(premises_id)}/rfid/learn/cancel")
