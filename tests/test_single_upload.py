"""Tests for the transport invoker against a local aiohttp upload endpoint."""

from __future__ import annotations

import asyncio
import errno
from pathlib import Path

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from single_upload import (
    Destination,
    FileAsset,
    UploadException,
    UploadTransportError,
    Uploader,
    human_bytes,
    mbps,
)
from upload_timing import TRACE_HEADER, PhaseCorrelator


# =============================================================================
# FIXTURES
# =============================================================================

async def upload_handler(request: web.Request) -> web.StreamResponse:
    """Fake upload API; behavior picked by the cloud name in the path."""
    mode = request.match_info["cloud"]
    form = await request.post()

    if mode == "slow":
        await asyncio.sleep(1.0)

    if mode == "reject":
        return web.json_response(
            {"error": {"message": "Upload preset not found"}},
            status=400,
            headers={"x-cld-error": "Upload preset not found", "x-request-id": "req-400"},
        )

    if mode == "garbage":
        return web.Response(text="<html>bad gateway</html>", status=200, content_type="text/html")

    upload = form["file"]
    data = upload.file.read()
    return web.json_response(
        {
            "public_id": form["public_id"],
            "asset_folder": form["asset_folder"],
            "upload_preset": form["upload_preset"],
            "bytes": len(data),
            "filename": upload.filename,
            "trace": request.headers.get(TRACE_HEADER),
        },
        headers={"x-request-id": "req-200"},
    )


@pytest_asyncio.fixture
async def server():
    app = web.Application()
    app.router.add_post("/v1_1/{cloud}/{resource_type}/upload", upload_handler)
    srv = TestServer(app)
    await srv.start_server()
    yield srv
    await srv.close()


@pytest_asyncio.fixture
async def traced_session():
    correlator = PhaseCorrelator()
    session = aiohttp.ClientSession(trace_configs=[correlator.trace_config()])
    yield session, correlator
    await session.close()


@pytest.fixture
def asset(tmp_path: Path) -> FileAsset:
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"\xff\xd8" + b"x" * 4096)
    return FileAsset(name="photo.jpg", path=str(path), size=path.stat().st_size)


def uploader_for(server: TestServer, traced_session, cloud: str) -> Uploader:
    session, correlator = traced_session
    dest = Destination(
        cloud_name=cloud,
        upload_preset="unsigned",
        asset_folder="bench",
        api_base=f"http://{server.host}:{server.port}",
    )
    return Uploader(session, dest, correlator)


# =============================================================================
# RESPONSES
# =============================================================================

@pytest.mark.asyncio
async def test_successful_upload(server, traced_session, asset):
    up = uploader_for(server, traced_session, "ok")
    result = await up.upload(asset, public_id="photo-b01-run", timeout_ms=5000)

    assert result.ok
    assert result.http_status == 200
    assert result.request_id == "req-200"
    assert result.error_header is None
    assert result.duration_ms >= 0
    assert result.body["public_id"] == "photo-b01-run"
    assert result.body["asset_folder"] == "bench"
    assert result.body["upload_preset"] == "unsigned"
    assert result.body["bytes"] == asset.size
    assert result.body["filename"] == "photo.jpg"
    assert result.body["trace"]


PHASES = ("queue_ms", "upload_ms", "ttfb_ms", "download_ms", "connect_ms")


@pytest.mark.asyncio
async def test_timings_collected_and_released(server, traced_session, asset):
    _, correlator = traced_session
    up = uploader_for(server, traced_session, "ok")
    result = await up.upload(asset, public_id="p", timeout_ms=5000)

    t = result.timings
    assert t is not None
    for phase in PHASES:
        value = getattr(t, phase)
        assert value is not None, phase
        assert value >= 0, phase
    if t.remote_address is not None:
        assert t.remote_address == "127.0.0.1"
        assert t.alpn_protocol == "http/1.1"
    assert len(correlator) == 0


@pytest.mark.asyncio
async def test_timings_on_reused_connection(server, traced_session, asset):
    _, correlator = traced_session
    up = uploader_for(server, traced_session, "ok")

    first = await up.upload(asset, public_id="first", timeout_ms=5000)
    second = await up.upload(asset, public_id="second", timeout_ms=5000)

    for result in (first, second):
        assert result.ok
        for phase in PHASES:
            assert getattr(result.timings, phase) is not None, phase
    # connection age at send time, so never shorter than on the fresh connection
    assert second.timings.connect_ms >= first.timings.connect_ms
    assert len(correlator) == 0


@pytest.mark.asyncio
async def test_http_error_is_a_result(server, traced_session, asset):
    up = uploader_for(server, traced_session, "reject")
    result = await up.upload(asset, public_id="p", timeout_ms=5000)

    assert not result.ok
    assert result.http_status == 400
    assert result.request_id == "req-400"
    assert result.error_header == "Upload preset not found"
    assert result.error_message == "Upload preset not found"


@pytest.mark.asyncio
async def test_unparseable_body_keeps_classification(server, traced_session, asset):
    up = uploader_for(server, traced_session, "garbage")
    result = await up.upload(asset, public_id="p", timeout_ms=5000)

    assert result.ok
    assert result.http_status == 200
    assert "parse_error" in result.body


# =============================================================================
# TRANSPORT FAILURES
# =============================================================================

@pytest.mark.asyncio
async def test_timeout_raises_transport_error(server, traced_session, asset):
    _, correlator = traced_session
    up = uploader_for(server, traced_session, "slow")

    with pytest.raises(UploadTransportError) as info:
        await up.upload(asset, public_id="p", timeout_ms=100)

    err = info.value
    assert err.code == "ETIMEDOUT"
    assert err.address == server.host
    assert err.port == server.port
    assert len(correlator) == 0


@pytest.mark.asyncio
async def test_cancel_signal_wins(server, traced_session, asset):
    up = uploader_for(server, traced_session, "slow")
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    with pytest.raises(UploadTransportError) as info:
        await up.upload(asset, public_id="p", timeout_ms=5000, cancel_event=cancel)
    assert info.value.code == "ABORT_ERR"


@pytest.mark.asyncio
async def test_timeout_does_not_cancel_siblings(server, traced_session, asset):
    slow = uploader_for(server, traced_session, "slow")
    fast = uploader_for(server, traced_session, "ok")

    results = await asyncio.gather(
        slow.upload(asset, public_id="a", timeout_ms=100),
        fast.upload(asset, public_id="b", timeout_ms=5000),
        return_exceptions=True,
    )
    assert isinstance(results[0], UploadTransportError)
    assert results[1].ok


@pytest.mark.asyncio
async def test_connection_refused_detail(traced_session, asset, unused_tcp_port):
    session, correlator = traced_session
    dest = Destination(cloud_name="ok", upload_preset="u", asset_folder="f",
                       api_base=f"http://127.0.0.1:{unused_tcp_port}")
    up = Uploader(session, dest, correlator)

    with pytest.raises(UploadTransportError) as info:
        await up.upload(asset, public_id="p", timeout_ms=5000)

    err = info.value
    assert err.code == "ECONNREFUSED"
    assert err.syscall == "connect"
    assert err.address == "127.0.0.1"
    assert err.port == unused_tcp_port

    detail = UploadException.from_exception(err).error
    assert detail["type"] == "ClientConnectorError"
    assert detail["code"] == "ECONNREFUSED"


@pytest.mark.asyncio
async def test_unreadable_file_is_a_transport_error(server, traced_session, tmp_path):
    _, correlator = traced_session
    up = uploader_for(server, traced_session, "ok")
    gone = FileAsset(name="gone.jpg", path=str(tmp_path / "gone.jpg"), size=10)

    with pytest.raises(UploadTransportError) as info:
        await up.upload(gone, public_id="p", timeout_ms=5000)

    err = info.value
    assert err.code == "ENOENT"
    assert err.errno == errno.ENOENT
    assert err.syscall == "open"
    assert "gone.jpg" in err.message
    assert isinstance(err.__cause__, FileNotFoundError)
    assert UploadException.from_exception(err).error["type"] == "FileNotFoundError"
    assert len(correlator) == 0


def test_generic_exception_outcome():
    out = UploadException.from_exception(RuntimeError("disk vanished"))
    assert out.error == {"message": "disk vanished", "type": "RuntimeError"}


# =============================================================================
# HELPERS
# =============================================================================

def test_human_bytes():
    assert human_bytes(512) == "512b"
    assert human_bytes(2048) == "2.00kb"
    assert human_bytes(3 * 1024 * 1024) == "3.00mb"


def test_mbps():
    assert mbps(1_000_000, 1000) == pytest.approx(8.0)
    assert mbps(1000, 0) == 0.0
    assert mbps(1000, None) == 0.0


def test_upload_url():
    d = Destination(cloud_name="demo", upload_preset="p", asset_folder="f", resource_type="raw",
                    api_base="https://api.example.com/")
    assert d.upload_url == "https://api.example.com/v1_1/demo/raw/upload"


def test_asset_stem():
    assert FileAsset(name="a.b.jpg", path="/a.b.jpg", size=1).stem == "a.b"
    assert FileAsset(name=".rc", path="/.rc", size=1).stem == ".rc"
