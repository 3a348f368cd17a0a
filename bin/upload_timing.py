#!/usr/bin/env python3
"""
Upload Benchmark Phase Timing

Correlates aiohttp transport lifecycle signals with individual upload
requests and derives per-request timing phases:

    queue    = headers sent       - request created
    upload   = body sent          - headers sent
    ttfb     = response headers   - body sent
    download = body done          - response headers
    connect  = headers sent       - connection established (per origin)

Connection metadata (peer address, ALPN, TLS) is tracked per origin with
last-write-wins semantics. Pooled connections are reused across requests, so
the association between a request and its connection is approximate.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import aiohttp


TRACE_HEADER = "X-Upload-Trace-Id"
STALE_TRACE_SEC = 300.0


def _ms_between(start: Optional[float], end: Optional[float]) -> Optional[float]:
    """Milliseconds between two monotonic stamps, or None if either is missing."""
    if start is None or end is None:
        return None
    return round((end - start) * 1000.0, 3)


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class ConnectionInfo:
    """Latest connection seen for one origin."""
    connect_at: Optional[float] = None
    remote_address: Optional[str] = None
    alpn_protocol: Optional[str] = None
    tls_protocol: Optional[str] = None
    tls_cipher: Optional[str] = None


@dataclass
class TraceRecord:
    """Timestamps for one in-flight request."""
    created_at: float
    origin: Optional[str] = None
    send_headers_at: Optional[float] = None
    body_sent_at: Optional[float] = None
    headers_at: Optional[float] = None
    done_at: Optional[float] = None
    conn: ConnectionInfo = field(default_factory=ConnectionInfo)


@dataclass(frozen=True)
class TimingPhases:
    """Derived phases for one request. None means unknown, not zero."""
    queue_ms: Optional[float] = None
    upload_ms: Optional[float] = None
    ttfb_ms: Optional[float] = None
    download_ms: Optional[float] = None
    connect_ms: Optional[float] = None
    remote_address: Optional[str] = None
    alpn_protocol: Optional[str] = None
    tls_protocol: Optional[str] = None
    tls_cipher: Optional[str] = None

    @classmethod
    def from_record(cls, rec: TraceRecord) -> "TimingPhases":
        return cls(
            queue_ms=_ms_between(rec.created_at, rec.send_headers_at),
            upload_ms=_ms_between(rec.send_headers_at, rec.body_sent_at),
            ttfb_ms=_ms_between(rec.body_sent_at, rec.headers_at),
            download_ms=_ms_between(rec.headers_at, rec.done_at),
            connect_ms=_ms_between(rec.conn.connect_at, rec.send_headers_at),
            remote_address=rec.conn.remote_address,
            alpn_protocol=rec.conn.alpn_protocol,
            tls_protocol=rec.conn.tls_protocol,
            tls_cipher=rec.conn.tls_cipher,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "queueMs": self.queue_ms,
            "uploadMs": self.upload_ms,
            "ttfbMs": self.ttfb_ms,
            "downloadMs": self.download_ms,
            "connectMs": self.connect_ms,
            "remoteAddress": self.remote_address,
            "alpnProtocol": self.alpn_protocol,
            "tlsProtocol": self.tls_protocol,
            "tlsCipher": self.tls_cipher,
        }


# =============================================================================
# CORRELATOR
# =============================================================================

class PhaseCorrelator:
    """
    Keyed store of in-flight trace records fed by aiohttp trace signals.

    Lifecycle of a record:
        begin_trace()        -> id handed to the request via trace_request_ctx
        on_request_start     -> record created
        signal handlers      -> timestamps stamped
        collect_timings(id)  -> record read and deleted
        sweep_stale()        -> records that never got collected are purged

    All handlers run on the event loop thread, so no locking is needed.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._traces: dict[str, TraceRecord] = {}
        self._last_conn: dict[str, ConnectionInfo] = {}

    def __len__(self) -> int:
        return len(self._traces)

    def __contains__(self, trace_id: object) -> bool:
        return trace_id in self._traces

    # ---- public API ---------------------------------------------------------

    def begin_trace(self) -> str:
        """Fresh unique trace id."""
        return uuid.uuid4().hex

    @staticmethod
    def request_ctx(trace_id: str) -> dict[str, str]:
        """Value to pass as ``trace_request_ctx`` for a traced request."""
        return {"trace_id": trace_id}

    def collect_timings(self, trace_id: str) -> Optional[TimingPhases]:
        """Derive phases for a trace and forget it. Second call returns None."""
        rec = self._traces.pop(trace_id, None)
        if rec is None:
            return None
        return TimingPhases.from_record(rec)

    def mark_done(self, trace_id: str) -> None:
        """Stamp the logical end of the response body."""
        rec = self._traces.get(trace_id)
        if rec is not None:
            rec.done_at = self._clock()

    def sweep_stale(self, max_age_sec: float = STALE_TRACE_SEC) -> int:
        """Drop records created more than ``max_age_sec`` ago. Returns count dropped."""
        cutoff = self._clock() - max_age_sec
        stale = [tid for tid, rec in self._traces.items() if rec.created_at < cutoff]
        for tid in stale:
            del self._traces[tid]
        return len(stale)

    def trace_config(self) -> aiohttp.TraceConfig:
        """Build an aiohttp TraceConfig wired to this correlator."""
        trace = aiohttp.TraceConfig()
        trace.on_request_start.append(self.on_request_start)
        trace.on_connection_create_end.append(self.on_connection_create_end)
        trace.on_request_headers_sent.append(self.on_request_headers_sent)
        trace.on_request_chunk_sent.append(self.on_request_chunk_sent)
        trace.on_request_end.append(self.on_request_end)
        return trace

    # ---- signal handlers ----------------------------------------------------

    @staticmethod
    def _trace_id(ctx: Any, params: Any = None) -> Optional[str]:
        req_ctx = getattr(ctx, "trace_request_ctx", None)
        if isinstance(req_ctx, dict) and req_ctx.get("trace_id"):
            return req_ctx["trace_id"]
        headers = getattr(params, "headers", None)
        if headers is not None:
            return headers.get(TRACE_HEADER)
        return None

    def _record_for(self, ctx: Any, params: Any = None) -> Optional[TraceRecord]:
        tid = self._trace_id(ctx, params)
        if tid is None:
            return None
        return self._traces.get(tid)

    async def on_request_start(self, session, ctx, params) -> None:
        tid = self._trace_id(ctx, params)
        if tid is None:
            return
        url = getattr(params, "url", None)
        origin = str(url.origin()) if url is not None else None
        self._traces[tid] = TraceRecord(created_at=self._clock(), origin=origin)

    async def on_connection_create_end(self, session, ctx, params) -> None:
        rec = self._record_for(ctx)
        if rec is None or rec.origin is None:
            return
        self._last_conn[rec.origin] = ConnectionInfo(connect_at=self._clock())

    async def on_request_headers_sent(self, session, ctx, params) -> None:
        rec = self._record_for(ctx, params)
        if rec is None:
            return
        rec.send_headers_at = self._clock()
        latest = self._last_conn.get(rec.origin) if rec.origin else None
        if latest is not None:
            rec.conn = ConnectionInfo(**vars(latest))

    async def on_request_chunk_sent(self, session, ctx, params) -> None:
        rec = self._record_for(ctx)
        if rec is not None:
            rec.body_sent_at = self._clock()

    async def on_request_end(self, session, ctx, params) -> None:
        rec = self._record_for(ctx, params)
        if rec is None:
            return
        rec.headers_at = self._clock()
        if rec.origin is None:
            return

        latest = self._last_conn.setdefault(rec.origin, ConnectionInfo())
        _update_peer_info(latest, getattr(params, "response", None))
        for name in ("connect_at", "remote_address", "alpn_protocol", "tls_protocol", "tls_cipher"):
            if getattr(rec.conn, name) is None:
                setattr(rec.conn, name, getattr(latest, name))


def _update_peer_info(info: ConnectionInfo, response: Any) -> None:
    """Copy peer address and TLS details from a response's transport, if exposed."""
    conn = getattr(response, "connection", None)
    transport = getattr(conn, "transport", None)
    if transport is None:
        # small bodies hit EOF early and the connection is already back in the pool
        protocol = getattr(response, "_protocol", None)
        transport = getattr(protocol, "transport", None)
    if transport is None:
        return

    peer = transport.get_extra_info("peername")
    if peer:
        info.remote_address = str(peer[0])

    ssl_obj = transport.get_extra_info("ssl_object")
    if ssl_obj is not None:
        info.alpn_protocol = ssl_obj.selected_alpn_protocol() or "http/1.1"
        info.tls_protocol = ssl_obj.version()
        cipher = ssl_obj.cipher()
        info.tls_cipher = cipher[0] if cipher else None
    elif info.alpn_protocol is None:
        info.alpn_protocol = "http/1.1"
