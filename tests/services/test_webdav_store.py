import httpx
import pytest

from davchat.core.errors import AlreadyExistsError, NotFoundError, RemoteStoreError, TransientStoreError
from davchat.services.remote_store import (
    CircuitBreaker,
    CircuitState,
    RemoteStore,
    WebDAVConfig,
    WebDAVStore,
    load_webdav_config,
)

BASE_URL = "https://dav.example.org/remote.php/dav/files/chat"
BASE_PATH = "/remote.php/dav/files/chat"

MULTISTATUS = f"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>{BASE_PATH}/messages/a%2Bb/</d:href>
    <d:propstat><d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>{BASE_PATH}/messages/a%2Bb/msg_0000000000001_00112233445566778899aabbccddeeff.json</d:href>
    <d:propstat><d:prop>
      <d:resourcetype/>
      <d:getlastmodified>Mon, 12 Jan 2026 10:00:00 GMT</d:getlastmodified>
      <d:getcontentlength>321</d:getcontentlength>
    </d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>{BASE_PATH}/messages/a%2Bb/archive/</d:href>
    <d:propstat><d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat>
  </d:response>
</d:multistatus>
"""


def make_store(handler, **config):
    return WebDAVStore(
        WebDAVConfig(base_url=BASE_URL, username="chat", password="secret", **config),
        transport=httpx.MockTransport(handler),
    )


def test_load_webdav_config_requires_url(settings):
    with pytest.raises(ValueError):
        load_webdav_config(settings)

    settings.webdav_url = BASE_URL
    config = load_webdav_config(settings)
    assert config.base_url == BASE_URL
    assert config.timeout_seconds == settings.http_timeout_seconds


def test_webdav_store_satisfies_protocol():
    assert isinstance(make_store(lambda request: httpx.Response(200)), RemoteStore)


@pytest.mark.asyncio
async def test_ensure_directory_creates_parents():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.raw_path.decode()))
        if request.url.raw_path.decode().endswith("/messages"):
            return httpx.Response(405)
        return httpx.Response(201)

    store = make_store(handler)
    await store.ensure_directory("messages/a+b")
    await store.aclose()

    assert seen == [
        ("MKCOL", f"{BASE_PATH}/messages"),
        ("MKCOL", f"{BASE_PATH}/messages/a%2Bb"),
    ]


@pytest.mark.asyncio
async def test_ensure_directory_reports_existing_leaf():
    store = make_store(lambda request: httpx.Response(405))

    with pytest.raises(AlreadyExistsError):
        await store.ensure_directory("files")


@pytest.mark.asyncio
async def test_write_blob_is_conditional_unless_overwriting():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.headers.get("If-None-Match") == "*" and len(requests) > 1:
            return httpx.Response(412)
        return httpx.Response(201)

    store = make_store(handler)
    await store.write_blob("messages/a+b/m.json", b"payload")
    with pytest.raises(AlreadyExistsError):
        await store.write_blob("messages/a+b/m.json", b"payload")
    await store.write_blob("users/u.json", b"profile", overwrite=True)

    assert requests[0].method == "PUT"
    assert requests[0].content == b"payload"
    assert requests[0].headers["If-None-Match"] == "*"
    assert requests[0].headers["Authorization"].startswith("Basic ")
    assert "If-None-Match" not in requests[2].headers


@pytest.mark.asyncio
async def test_write_blob_into_missing_directory():
    store = make_store(lambda request: httpx.Response(409))

    with pytest.raises(NotFoundError):
        await store.write_blob("messages/missing/m.json", b"x")


@pytest.mark.asyncio
async def test_read_blob_maps_status_codes():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("present"):
            return httpx.Response(200, content=b"blob")
        if request.url.path.endswith("forbidden"):
            return httpx.Response(403)
        return httpx.Response(404)

    store = make_store(handler)

    assert await store.read_blob("files/present") == b"blob"
    with pytest.raises(NotFoundError):
        await store.read_blob("files/absent")
    with pytest.raises(RemoteStoreError):
        await store.read_blob("files/forbidden")


@pytest.mark.asyncio
async def test_list_parses_multistatus_and_skips_the_directory_itself():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PROPFIND"
        assert request.headers["Depth"] == "1"
        return httpx.Response(207, content=MULTISTATUS.encode())

    store = make_store(handler)
    entries = await store.list("messages/a+b")

    assert [(entry.name, entry.is_directory) for entry in entries] == [
        ("msg_0000000000001_00112233445566778899aabbccddeeff.json", False),
        ("archive", True),
    ]
    assert entries[0].size == 321
    assert entries[0].last_modified is not None


@pytest.mark.asyncio
async def test_list_of_missing_directory():
    store = make_store(lambda request: httpx.Response(404))

    with pytest.raises(NotFoundError):
        await store.list("messages/none")


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = make_store(handler)

    with pytest.raises(TransientStoreError):
        await store.read_blob("files/x")
    assert store.get_metrics()["error_counts_by_type"] == {"network_error": 1}


@pytest.mark.asyncio
async def test_undecodable_responses_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.DecodingError("bad gzip", request=request)

    store = make_store(handler)

    with pytest.raises(TransientStoreError):
        await store.list("messages/a+b")
    assert store.get_metrics()["error_counts_by_type"] == {"request_error": 1}


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_server_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    store = make_store(handler)
    for _ in range(5):
        with pytest.raises(TransientStoreError):
            await store.read_blob("files/x")

    assert store.get_metrics()["circuit_state"] == "open"
    with pytest.raises(TransientStoreError):
        await store.read_blob("files/x")
    assert len(calls) == 5


def test_circuit_breaker_probes_after_recovery_period():
    now = [100.0]
    breaker = CircuitBreaker(failure_threshold=2, recovery_seconds=30.0, clock=lambda: now[0])

    breaker.record_failure()
    assert breaker.allow_request()
    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    assert not breaker.allow_request()

    now[0] += 31.0
    assert breaker.allow_request()
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.record_failure()
    assert not breaker.allow_request()

    now[0] += 31.0
    assert breaker.allow_request()
    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED


def test_circuit_thresholds_come_from_settings(settings):
    settings.webdav_url = BASE_URL
    settings.circuit_failure_threshold = 2
    settings.circuit_recovery_seconds = 5.0

    store = WebDAVStore.from_settings(settings)

    assert store.config.circuit_failure_threshold == 2
    assert store.config.circuit_recovery_seconds == 5.0
