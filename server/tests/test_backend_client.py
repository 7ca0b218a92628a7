from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from avatar_pipeline.models.schemas import AvatarConfiguration, UpdateAvatarRequest
from avatar_pipeline.services.backend_client import AvatarBackendClient
from avatar_pipeline.services.errors import BackendSyncFailure


def _run(coro):  # noqa: ANN001
    return asyncio.run(coro)


REQUEST = UpdateAvatarRequest(
    rpm_id="abc",
    rpm_url="https://models.readyplayer.me/abc.glb",
    configuration=AvatarConfiguration(gender="female"),
)


def test_update_avatar_posts_url_and_configuration() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "avatar": {"rpmId": "abc", "version": 2}})

    client = AvatarBackendClient("https://api.test/v1/", transport=httpx.MockTransport(handler))
    body = _run(client.update_avatar(REQUEST, "tok"))

    assert seen["url"] == "https://api.test/v1/users/me/avatar/update"
    assert seen["auth"] == "Bearer tok"
    assert seen["body"]["rpmUrl"] == REQUEST.rpm_url
    assert seen["body"]["configuration"]["gender"] == "female"
    assert seen["body"]["configuration"]["bodyType"] == "halfbody"
    assert body["avatar"]["version"] == 2


def test_non_success_status_uses_backend_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"message": "maintenance"})

    client = AvatarBackendClient("https://api.test", transport=httpx.MockTransport(handler))
    with pytest.raises(BackendSyncFailure) as excinfo:
        _run(client.update_avatar(REQUEST, "tok"))

    assert excinfo.value.status_code == 503
    assert str(excinfo.value) == "maintenance"
    assert excinfo.value.user_message == "Avatar saved locally. Will sync when connection is available."


def test_transport_errors_are_sync_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    client = AvatarBackendClient("https://api.test", transport=httpx.MockTransport(handler))
    with pytest.raises(BackendSyncFailure):
        _run(client.update_avatar(REQUEST, "tok"))


def test_empty_body_returns_none() -> None:
    client = AvatarBackendClient(
        "https://api.test", transport=httpx.MockTransport(lambda request: httpx.Response(204))
    )
    assert _run(client.update_avatar(REQUEST, "tok")) is None


def test_base_url_requires_scheme() -> None:
    with pytest.raises(ValueError):
        AvatarBackendClient("api.test")


def test_fetch_avatar_unwraps_success_envelope() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(
            200, json={"success": True, "data": {"hasAvatar": True, "avatar": {"rpmId": "abc", "version": 4}}}
        )

    client = AvatarBackendClient("https://api.test/v1", transport=httpx.MockTransport(handler))
    body = _run(client.fetch_avatar("tok"))

    assert seen == {"method": "GET", "url": "https://api.test/v1/users/me/avatar", "auth": "Bearer tok"}
    assert body["hasAvatar"] is True
    assert body["avatar"]["version"] == 4


def test_avatar_status_sends_processing_id() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["processing_id"] = request.url.params["processingId"]
        return httpx.Response(200, json={"status": "processing", "progress": 55, "processingId": "proc-9"})

    client = AvatarBackendClient("https://api.test", transport=httpx.MockTransport(handler))
    body = _run(client.avatar_status("tok", "proc-9"))

    assert seen == {"path": "/users/me/avatar/status", "processing_id": "proc-9"}
    assert body["progress"] == 55


def test_avatar_status_without_json_body_is_a_failure() -> None:
    client = AvatarBackendClient(
        "https://api.test", transport=httpx.MockTransport(lambda request: httpx.Response(204))
    )
    with pytest.raises(BackendSyncFailure) as excinfo:
        _run(client.avatar_status("tok"))
    assert excinfo.value.step == "status"


def test_fetch_avatar_errors_are_sync_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "token expired"})

    client = AvatarBackendClient("https://api.test", transport=httpx.MockTransport(handler))
    with pytest.raises(BackendSyncFailure) as excinfo:
        _run(client.fetch_avatar("tok"))

    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "token expired"
