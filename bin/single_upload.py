#!/usr/bin/env python3
"""
Upload Benchmark Single Upload Module

Issues one traced multipart upload and normalizes the outcome.

This module is used by upload_batch.py and provides:
- FileAsset / Destination: inputs of an upload
- UploadResult / UploadException: per-attempt outcome records
- UploadTransportError: network failure with root-cause detail
- Uploader.upload(): core async upload function
- human_bytes(), mbps(): console formatting helpers
"""

from __future__ import annotations

import asyncio
import contextlib
import errno as errno_mod
import json
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

import aiohttp
from yarl import URL

from upload_timing import TRACE_HEADER, PhaseCorrelator, TimingPhases


REQUEST_ID_HEADER = "x-request-id"
ERROR_HEADER = "x-cld-error"


# =============================================================================
# DATA TYPES
# =============================================================================

@dataclass(frozen=True)
class FileAsset:
    """One file in the benchmark set."""
    name: str
    path: str
    size: int

    @property
    def stem(self) -> str:
        b = Path(self.name).name
        i = b.rfind(".")
        return b[:i] if i > 0 else b


@dataclass(frozen=True)
class Destination:
    """Where uploads go."""
    cloud_name: str
    upload_preset: str
    asset_folder: str
    resource_type: str = "image"
    api_base: str = "https://api.cloudinary.com"

    @property
    def upload_url(self) -> str:
        return f"{self.api_base.rstrip('/')}/v1_1/{self.cloud_name}/{self.resource_type}/upload"


@dataclass(frozen=True)
class UploadResult:
    """Outcome of an upload that got an HTTP response."""
    ok: bool
    http_status: int
    duration_ms: int
    request_id: Optional[str]
    error_header: Optional[str]
    timings: Optional[TimingPhases]
    body: Any

    @property
    def error_message(self) -> str:
        """Best available error text for a failed response."""
        if isinstance(self.body, dict):
            err = self.body.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
        return self.error_header or "unknown"


@dataclass(frozen=True)
class UploadException:
    """Outcome of an upload whose task raised instead of returning."""
    error: dict[str, Any]

    @classmethod
    def from_exception(cls, exc: BaseException) -> "UploadException":
        if isinstance(exc, UploadTransportError):
            return cls(error=exc.to_dict())
        return cls(error={"message": str(exc) or type(exc).__name__, "type": type(exc).__name__})

    @property
    def message(self) -> str:
        return str(self.error.get("message"))


# =============================================================================
# ERRORS
# =============================================================================

class UploadTransportError(Exception):
    """Network-level upload failure (DNS, connect, TLS, reset, timeout)."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        errno: Optional[int] = None,
        syscall: Optional[str] = None,
        address: Optional[str] = None,
        port: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.errno = errno
        self.syscall = syscall
        self.address = address
        self.port = port

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.append(f"code={self.code}")
        if self.address:
            parts.append(f"address={self.address}" + (f":{self.port}" if self.port else ""))
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        cause = self.__cause__
        return {
            "message": self.message,
            "type": type(cause).__name__ if cause is not None else type(self).__name__,
            "code": self.code,
            "errno": self.errno,
            "syscall": self.syscall,
            "address": self.address,
            "port": self.port,
        }

    @classmethod
    def wrap(cls, exc: BaseException, url: str) -> "UploadTransportError":
        """Build from an aiohttp/OS error, keeping whatever detail it exposes."""
        os_err: Optional[OSError] = None
        address = None
        port = None
        syscall = None

        if isinstance(exc, aiohttp.ClientConnectorError):
            os_err = exc.os_error
            address = exc.host
            port = exc.port
            syscall = "connect"
        elif isinstance(exc, OSError):
            os_err = exc

        err_no = getattr(os_err, "errno", None)
        code = errno_mod.errorcode.get(err_no) if isinstance(err_no, int) else None
        if code is None and isinstance(exc, aiohttp.ServerDisconnectedError):
            code = "ECONNRESET"

        if address is None:
            parsed = URL(url)
            address = parsed.host
            port = parsed.port

        msg = str(exc) or type(exc).__name__
        return cls(f"{type(exc).__name__}: {msg}", code=code, errno=err_no,
                   syscall=syscall, address=address, port=port)


# =============================================================================
# FORMATTING HELPERS
# =============================================================================

def human_bytes(n: int) -> str:
    """Size as b / kb / mb with two decimals."""
    kb = 1024
    mb = kb * 1024
    if n >= mb:
        return f"{n / mb:.2f}mb"
    if n >= kb:
        return f"{n / kb:.2f}kb"
    return f"{n}b"


def mbps(size_bytes: int, ms: Optional[float]) -> float:
    """Megabits per second for ``size_bytes`` moved in ``ms``."""
    if not ms or ms <= 0:
        return 0.0
    return ((size_bytes * 8) / (ms / 1000)) / 1e6


# =============================================================================
# UPLOAD EXECUTION
# =============================================================================

class UploadAborted(Exception):
    """Raised internally when the caller's cancel signal fires."""


async def _with_deadline(coro, timeout_ms: int, cancel_event: Optional[asyncio.Event]):
    """
    Await ``coro`` under an optional deadline and an optional cancel signal.

    The cancel signal wins over the timer; either one cancels only this
    request's task.
    """
    task = asyncio.ensure_future(coro)
    waiters: set[asyncio.Future] = {task}
    cancel_waiter: Optional[asyncio.Future] = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    timeout = timeout_ms / 1000 if timeout_ms and timeout_ms > 0 else None
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

    if cancel_waiter is not None and cancel_waiter in done:
        raise UploadAborted("upload aborted by caller")
    raise asyncio.TimeoutError(f"upload exceeded {timeout_ms} ms")


class Uploader:
    """
    Transport invoker: one traced multipart POST per call.

    The session must have been created with ``correlator.trace_config()`` in
    its ``trace_configs`` for phase timings to resolve; without it, results
    still carry the wall-clock duration and ``timings`` is None.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        destination: Destination,
        correlator: PhaseCorrelator,
    ):
        self.session = session
        self.destination = destination
        self.correlator = correlator

    def _form(self, asset: FileAsset, content: bytes, public_id: str) -> aiohttp.FormData:
        fd = aiohttp.FormData()
        fd.add_field("file", content, filename=Path(asset.path).name,
                     content_type="application/octet-stream")
        fd.add_field("upload_preset", self.destination.upload_preset)
        fd.add_field("asset_folder", self.destination.asset_folder)
        fd.add_field("public_id", public_id)
        return fd

    async def _post(self, url: str, form: aiohttp.FormData, trace_id: str) -> UploadResult:
        t0 = time.perf_counter()
        async with self.session.post(
            url,
            data=form,
            headers={TRACE_HEADER: trace_id},
            trace_request_ctx=self.correlator.request_ctx(trace_id),
        ) as resp:
            t1 = time.perf_counter()
            request_id = resp.headers.get(REQUEST_ID_HEADER)
            error_header = resp.headers.get(ERROR_HEADER)

            raw = await resp.read()
            self.correlator.mark_done(trace_id)
            try:
                body = json.loads(raw)
            except ValueError as e:
                body = {"parse_error": str(e)}

            return UploadResult(
                ok=200 <= resp.status < 300,
                http_status=resp.status,
                duration_ms=round((t1 - t0) * 1000),
                request_id=request_id,
                error_header=error_header,
                timings=None,
                body=body,
            )

    async def upload(
        self,
        asset: FileAsset,
        *,
        public_id: str,
        timeout_ms: int = 0,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> UploadResult:
        """
        Upload one file.

        Returns an UploadResult for any HTTP response (2xx or not). Raises
        UploadTransportError when no response was obtained.
        """
        url = self.destination.upload_url
        try:
            content = await asyncio.to_thread(Path(asset.path).read_bytes)
        except OSError as e:
            code = errno_mod.errorcode.get(e.errno) if isinstance(e.errno, int) else None
            raise UploadTransportError(
                f"{type(e).__name__}: cannot read {asset.path}: {e.strerror or e}",
                code=code, errno=e.errno, syscall="open",
            ) from e
        form = self._form(asset, content, public_id)
        trace_id = self.correlator.begin_trace()

        try:
            result = await _with_deadline(self._post(url, form, trace_id), timeout_ms, cancel_event)
        except asyncio.TimeoutError as e:
            self.correlator.collect_timings(trace_id)
            host = URL(url)
            raise UploadTransportError(
                f"TimeoutError: {e or f'no response within {timeout_ms} ms'}",
                code="ETIMEDOUT", address=host.host, port=host.port,
            ) from e
        except UploadAborted as e:
            self.correlator.collect_timings(trace_id)
            host = URL(url)
            raise UploadTransportError(
                "AbortError: upload aborted by caller",
                code="ABORT_ERR", address=host.host, port=host.port,
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            self.correlator.collect_timings(trace_id)
            raise UploadTransportError.wrap(e, url) from e

        return replace(result, timings=self.correlator.collect_timings(trace_id))
