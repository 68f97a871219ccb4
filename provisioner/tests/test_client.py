"""HypervisorClient tests against httpx.MockTransport."""
from __future__ import annotations

import json

import httpx
import pytest

from provisioner.client import HypervisorClient, classify_status_error, parse_status
from provisioner.config import settings
from provisioner.errors import (
    AuthorizationError,
    FatalApiError,
    ResourceNotFound,
    TransientApiError,
)
from provisioner.state import ObservedStatus

BASE = "https://pve.example:8006/api"


def _client(handler, **kwargs) -> HypervisorClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HypervisorClient(BASE, "pve1", http_client=http, **kwargs)


# --- query ---

@pytest.mark.asyncio
@pytest.mark.parametrize("raw,expected", [
    ("absent", ObservedStatus.ABSENT),
    ("created", ObservedStatus.CREATED),
    ("running", ObservedStatus.RUNNING),
    ("STOPPED", ObservedStatus.STOPPED),
    ("migrating", ObservedStatus.UNKNOWN),
])
async def test_query_maps_status(raw, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/api/nodes/pve1/resources/201/status"
        return httpx.Response(200, json={"status": raw})

    async with _client(handler) as client:
        assert await client.query(201) == expected


@pytest.mark.asyncio
async def test_query_not_found_is_absent():
    async with _client(lambda r: httpx.Response(404, json={"error": "no such ct"})) as client:
        assert await client.query(201) == ObservedStatus.ABSENT


@pytest.mark.asyncio
async def test_query_server_error_is_transient():
    async with _client(lambda r: httpx.Response(503)) as client:
        with pytest.raises(TransientApiError) as exc_info:
            await client.query(201)
    assert exc_info.value.status_code == 503
    assert exc_info.value.retriable is True
    assert exc_info.value.resource_id == 201


@pytest.mark.asyncio
async def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransientApiError, match="ConnectError"):
            await client.query(201)


@pytest.mark.asyncio
async def test_read_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransientApiError):
            await client.start(201)


@pytest.mark.asyncio
async def test_malformed_status_body_is_transient():
    async with _client(lambda r: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(TransientApiError, match="Malformed"):
            await client.query(201)


# --- mutations ---

@pytest.mark.asyncio
async def test_create_posts_camel_case_payload(descriptor):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201)

    async with _client(handler) as client:
        await client.create(descriptor)

    assert seen["method"] == "POST"
    assert seen["path"] == "/api/nodes/pve1/resources"
    body = seen["body"]
    assert body["id"] == 201
    assert body["cores"] == 2
    assert body["memoryMb"] == 4096
    assert body["diskGb"] == 32
    assert body["sshPublicKey"].startswith("ssh-ed25519")
    assert body["network"]["gateway"] == "10.0.1.1"
    assert body["mounts"] == []


@pytest.mark.asyncio
@pytest.mark.parametrize("graceful,flag,operation", [(True, "true", "stop"), (False, "false", "force_stop")])
async def test_stop_sends_graceful_flag(graceful, flag, operation):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["graceful"] = request.url.params.get("graceful")
        return httpx.Response(200, json={})

    async with _client(handler) as client:
        await client.stop(201, graceful=graceful)

    assert seen == {"path": "/api/nodes/pve1/resources/201/stop", "graceful": flag}


@pytest.mark.asyncio
async def test_start_and_delete_paths():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(204)

    async with _client(handler) as client:
        await client.start(201)
        await client.delete(201)

    assert seen == [
        ("POST", "/api/nodes/pve1/resources/201/start"),
        ("DELETE", "/api/nodes/pve1/resources/201"),
    ]


@pytest.mark.asyncio
async def test_mutation_not_found_is_fatal():
    async with _client(lambda r: httpx.Response(404)) as client:
        with pytest.raises(ResourceNotFound):
            await client.start(201)


@pytest.mark.asyncio
async def test_describe_returns_config():
    def handler(request):
        assert request.url.path == "/api/nodes/pve1/resources/201/config"
        return httpx.Response(200, json={"hostname": "logs-01", "cores": 2})

    async with _client(handler) as client:
        assert await client.describe(201) == {"hostname": "logs-01", "cores": 2}


@pytest.mark.asyncio
async def test_bearer_token_header():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"status": "running"})

    async with _client(handler, token="secret-token") as client:
        await client.query(201)

    assert seen["auth"] == "Bearer secret-token"


@pytest.mark.asyncio
async def test_no_auth_header_without_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"status": "running"})

    async with _client(handler) as client:
        await client.query(201)

    assert seen["auth"] is None


@pytest.mark.asyncio
async def test_shared_http_client_not_closed():
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    async with HypervisorClient(BASE, "pve1", http_client=http):
        pass
    assert not http.is_closed
    await http.aclose()


# --- classification ---

def _response(status_code: int) -> httpx.Response:
    return httpx.Response(status_code, text="detail", request=httpx.Request("GET", BASE))


@pytest.mark.parametrize("status_code,error_type", [
    (500, TransientApiError),
    (502, TransientApiError),
    (504, TransientApiError),
    (429, TransientApiError),
    (401, AuthorizationError),
    (403, AuthorizationError),
    (404, ResourceNotFound),
    (400, FatalApiError),
    (409, FatalApiError),
    (422, FatalApiError),
])
def test_classify_status_error(status_code, error_type):
    error = classify_status_error(_response(status_code), resource_id=7)
    assert type(error) is error_type
    assert error.status_code == status_code
    assert "detail" in error.message


def test_auth_and_not_found_are_fatal():
    assert issubclass(AuthorizationError, FatalApiError)
    assert issubclass(ResourceNotFound, FatalApiError)
    assert classify_status_error(_response(403)).retriable is False


def test_parse_status_empty_is_unknown():
    assert parse_status(None) == ObservedStatus.UNKNOWN
    assert parse_status("") == ObservedStatus.UNKNOWN


# --- timeouts ---

def _recording_handler(seen: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        seen[request.url.path.rsplit("/", 1)[-1]] = request.extensions["timeout"]["read"]
        return httpx.Response(200, json={"status": "running"})
    return handler


@pytest.mark.asyncio
async def test_timeouts_default_to_settings(monkeypatch):
    monkeypatch.setattr(settings, "http_timeout", 7.0)
    monkeypatch.setattr(settings, "mutation_timeout", 70.0)
    seen = {}

    async with _client(_recording_handler(seen)) as client:
        await client.query(201)
        await client.describe(201)
        await client.start(201)
        await client.stop(201)

    assert seen == {"status": 7.0, "config": 7.0, "start": 70.0, "stop": 70.0}


@pytest.mark.asyncio
async def test_explicit_timeout_applies_to_every_call():
    seen = {}

    async with _client(_recording_handler(seen), timeout=5.0) as client:
        await client.query(201)
        await client.start(201)
        await client.delete(201)

    assert seen == {"status": 5.0, "start": 5.0, "201": 5.0}


@pytest.mark.asyncio
async def test_mutation_timeout_overrides_explicit_timeout():
    seen = {}

    async with _client(_recording_handler(seen), timeout=5.0, mutation_timeout=120.0) as client:
        await client.query(201)
        await client.start(201)

    assert seen == {"status": 5.0, "start": 120.0}
