#!/usr/bin/env python3
"""
Upload Benchmark Statistics

Accumulates per-file and global timing samples during a run and computes
order statistics (avg / p50 / p95 / min / max) for the run summary.

Percentiles use linear interpolation between order statistics at rank
p * (n - 1).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from single_upload import UploadException, UploadResult


GLOBAL_KEY = "__all__"

Outcome = Union[UploadResult, UploadException]


# =============================================================================
# ORDER STATISTICS
# =============================================================================

def _percentile(sorted_values: list[float], p: float) -> Optional[float]:
    """
    Percentile of already-sorted values using linear interpolation.

    Args:
        sorted_values: Ascending list of numeric values
        p: Percentile in range [0, 1]

    Returns:
        Percentile value or None if list is empty
    """
    if not sorted_values:
        return None

    n = len(sorted_values)
    if n == 1:
        return sorted_values[0]

    idx = (n - 1) * p
    lower = int(idx)
    upper = min(lower + 1, n - 1)
    if lower == upper:
        return sorted_values[lower]

    weight = idx - lower
    return sorted_values[lower] + weight * (sorted_values[upper] - sorted_values[lower])


def summarize(samples: list[float]) -> dict[str, Any]:
    """count / avg / p50 / p95 / min / max of a sample list."""
    values = sorted(samples)
    if not values:
        return {"count": 0, "avg": None, "p50": None, "p95": None, "min": None, "max": None}

    return {
        "count": len(values),
        "avg": round(sum(values) / len(values), 2),
        "p50": _percentile(values, 0.50),
        "p95": _percentile(values, 0.95),
        "min": values[0],
        "max": values[-1],
    }


def _is_finite(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


# =============================================================================
# BUCKETS
# =============================================================================

@dataclass
class StatsBucket:
    """Counters and samples for one file, or for the whole run."""
    size: Optional[int] = None
    ok: int = 0
    fail: int = 0
    duration: list[float] = field(default_factory=list)
    upload: list[float] = field(default_factory=list)
    ttfb: list[float] = field(default_factory=list)
    connect: list[float] = field(default_factory=list)

    @property
    def tried(self) -> int:
        return self.ok + self.fail

    def add_sample(self, series: list[float], value: Any) -> None:
        if _is_finite(value):
            series.append(float(value))

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "ok": self.ok,
            "fail": self.fail,
            "durationMs": summarize(self.duration),
            "uploadMs": summarize(self.upload),
            "ttfbMs": summarize(self.ttfb),
            "connectMs": summarize(self.connect),
        }


class UploadStats:
    """
    Incremental aggregator fed once per upload outcome.

    Only successful results contribute timing samples. HTTP errors and
    exceptions count as failures; exceptions are also kept verbatim for the
    run-end report.
    """

    def __init__(self):
        self.buckets: dict[str, StatsBucket] = {}
        self.overall = StatsBucket()
        self.remote_ips: set[str] = set()
        self.alpn_protocols: set[str] = set()
        self.exceptions: list[dict[str, Any]] = []

    def bucket(self, file_key: str, size: Optional[int] = None) -> StatsBucket:
        b = self.buckets.get(file_key)
        if b is None:
            b = self.buckets[file_key] = StatsBucket(size=size)
        return b

    def record(self, file_key: str, size: int, outcome: Outcome, batch: Optional[int] = None) -> None:
        b = self.bucket(file_key, size)

        if isinstance(outcome, UploadException):
            for target in (b, self.overall):
                target.fail += 1
            self.exceptions.append({"file": file_key, "size": size, "batch": batch, **outcome.error})
            return

        if not outcome.ok:
            for target in (b, self.overall):
                target.fail += 1
            return

        t = outcome.timings
        for target in (b, self.overall):
            target.ok += 1
            target.add_sample(target.duration, outcome.duration_ms)
            if t is not None:
                target.add_sample(target.upload, t.upload_ms)
                target.add_sample(target.ttfb, t.ttfb_ms)
                target.add_sample(target.connect, t.connect_ms)

        if t is not None:
            if t.remote_address:
                self.remote_ips.add(t.remote_address)
            if t.alpn_protocol:
                self.alpn_protocols.add(t.alpn_protocol)

    def per_file(self) -> list[dict[str, Any]]:
        rows = []
        for name, b in sorted(self.buckets.items(), key=lambda kv: (kv[1].size or 0, kv[0])):
            rows.append({"file": name, **b.to_dict()})
        return rows

    def overall_summary(self) -> dict[str, Any]:
        o = self.overall
        return {
            "totals": {"ok": o.ok, "fail": o.fail, "tried": o.tried},
            "durationMs": summarize(o.duration),
            "uploadMs": summarize(o.upload),
            "ttfbMs": summarize(o.ttfb),
            "connectMs": summarize(o.connect),
            "remoteIps": sorted(self.remote_ips),
            "alpnProtocols": sorted(self.alpn_protocols),
            "exceptions": list(self.exceptions),
        }

    def build_summary(self, run_id: str, config: dict[str, Any]) -> dict[str, Any]:
        """Run summary document, written once at run end."""
        return {
            "runId": run_id,
            "config": config,
            "files": self.per_file(),
            "overall": self.overall_summary(),
        }
