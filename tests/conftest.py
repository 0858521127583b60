import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from ambuwatch.session.facade import SessionFacade
from ambuwatch.stream.resolver import StreamCredentialResolver
from ambuwatch.transport.backend import BackendClient
from ambuwatch.transport.events import LocalEventChannel

BACKEND_URL = "http://backend.test/api/v1"
VENDOR_BASE = "http://vendor.test/808gps"
VENDOR_LOGIN = "http://vendor.test/StandardApiAction_login.action"


class FakeBackend:
    """Just enough of the dashboard backend for the session and stream endpoints."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Dict[str, List[dict]]] = {
            "S1": {"notes": [], "medications": [], "files": []},
        }
        self.devices: Dict[str, dict] = {
            "D1": {
                "deviceId": "CAM-0042",
                "username": "crew",
                "password": "secret",
                "apiBase": VENDOR_BASE,
                "loginUrl": VENDOR_LOGIN,
            }
        }
        self.next_id = 77
        self.requests: List[httpx.Request] = []
        self.reject_writes = False
        self.fail_fetch = False
        self.stream_status = 200

    def _response(self, status: int, body: Any) -> httpx.Response:
        return httpx.Response(status, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.split("/")[3:]
        if parts[:2] == ["ambulances", "devices"] and parts[-1] == "stream":
            return self._stream(parts[2])
        if parts and parts[0] == "sessions":
            return self._session(request, parts[1], parts[2:])
        return self._response(404, {"success": False, "message": "Not found"})

    def _stream(self, device_id: str) -> httpx.Response:
        if self.stream_status != 200:
            return self._response(self.stream_status, {"success": False, "message": "Device lookup failed"})
        device = self.devices.get(device_id)
        if device is None:
            return self._response(404, {"success": False, "message": "Device not found"})
        return self._response(200, {"success": True, "data": device})

    def _session(self, request: httpx.Request, session_id: str, rest: List[str]) -> httpx.Response:
        data = self.sessions.setdefault(session_id, {"notes": [], "medications": [], "files": []})
        if request.method == "GET" and rest == ["data"]:
            if self.fail_fetch:
                return self._response(503, {"success": False, "message": "Database unavailable"})
            counts = {key: len(value) for key, value in data.items()}
            return self._response(200, {"success": True, "data": {**data, "counts": counts}})
        if request.method == "POST" and rest in (["data"], ["data", "upload"]):
            if self.reject_writes:
                return self._response(400, {"success": False, "message": "Can only add data to active sessions"})
            if rest == ["data"]:
                body = json.loads(request.content)
                data_type, content = body["dataType"], body["content"]
            else:
                request.read()
                data_type = "file"
                filename = request.content.split(b'filename="', 1)[1].split(b'"', 1)[0].decode()
                content = {"filename": filename, "relativePath": f"/uploads/session-files/{filename}"}
            entry = self.make_entry(session_id, data_type, content)
            data[f"{data_type}s"].insert(0, entry)
            return self._response(201, {"success": True, "message": f"{data_type} added successfully", "data": entry})
        if request.method == "DELETE" and len(rest) == 2:
            for entries in data.values():
                entries[:] = [entry for entry in entries if str(entry["id"]) != rest[1]]
            return self._response(200, {"success": True, "message": "Data entry deleted successfully"})
        if request.method == "GET" and rest[-1:] == ["download"]:
            return httpx.Response(200, content=b"%PDF-1.4 scan")
        return self._response(404, {"success": False, "message": "Not found"})

    def make_entry(self, session_id: str, data_type: str, content: dict) -> dict:
        entry = {
            "id": self.next_id,
            "sessionId": session_id,
            "dataType": data_type,
            "content": content,
            "addedBy": {"id": 3, "name": "Asha Rao"},
            "addedAt": "2026-10-17T10:00:00Z",
        }
        self.next_id += 1
        return entry


class FakeVendor:
    """Vendor login endpoint returning a queued response per call."""

    def __init__(self) -> None:
        self.responses: List[Any] = []
        self.calls: List[httpx.Request] = []
        self.gate: Optional[asyncio.Event] = None

    def respond(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if self.responses else {"result": 0, "jsession": "tok-1"}
        if isinstance(response, httpx.Response):
            return response
        if isinstance(response, Exception):
            raise response
        return httpx.Response(200, json=response)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def vendor() -> FakeVendor:
    return FakeVendor()


@pytest.fixture
def channel() -> LocalEventChannel:
    return LocalEventChannel()


def build_client(backend: FakeBackend) -> BackendClient:
    return BackendClient(BACKEND_URL, token="t0ken", transport=httpx.MockTransport(backend.handler))


def build_resolver(backend: FakeBackend, vendor: FakeVendor) -> StreamCredentialResolver:
    return StreamCredentialResolver(
        build_client(backend),
        transport=httpx.MockTransport(vendor.handler),
        vendor_timeout=2.0,
    )


def build_facade(backend: FakeBackend, vendor: FakeVendor, channel: Optional[LocalEventChannel]) -> SessionFacade:
    client = build_client(backend)
    resolver = StreamCredentialResolver(
        client,
        transport=httpx.MockTransport(vendor.handler),
        vendor_timeout=2.0,
    )
    return SessionFacade(client, resolver, channel, actor="Asha Rao")


@pytest.fixture
def facade(backend: FakeBackend, vendor: FakeVendor, channel: LocalEventChannel) -> SessionFacade:
    return build_facade(backend, vendor, channel)
