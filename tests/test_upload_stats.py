"""Tests for the statistics aggregator."""

from __future__ import annotations

import math

import pytest

from single_upload import UploadException, UploadResult, UploadTransportError
from upload_stats import StatsBucket, UploadStats, _percentile, summarize
from upload_timing import TimingPhases


def ok_result(duration_ms=100, **timing) -> UploadResult:
    return UploadResult(
        ok=True,
        http_status=200,
        duration_ms=duration_ms,
        request_id="req-1",
        error_header=None,
        timings=TimingPhases(**timing) if timing else None,
        body={"public_id": "x"},
    )


def http_error(status=400) -> UploadResult:
    return UploadResult(
        ok=False,
        http_status=status,
        duration_ms=20,
        request_id=None,
        error_header="Upload preset not found",
        timings=None,
        body={"error": {"message": "Upload preset not found"}},
    )


class TestSummarize:

    def test_interpolated_percentiles(self):
        s = summarize([40, 10, 30, 20])
        assert s["count"] == 4
        assert s["p50"] == pytest.approx(25.0)
        assert s["p95"] == pytest.approx(38.5)
        assert s["min"] == 10
        assert s["max"] == 40
        assert s["avg"] == 25.0

    def test_empty(self):
        assert summarize([]) == {
            "count": 0, "avg": None, "p50": None, "p95": None, "min": None, "max": None,
        }

    def test_single_sample(self):
        s = summarize([7.5])
        assert s["p50"] == 7.5
        assert s["p95"] == 7.5
        assert s["min"] == s["max"] == 7.5

    def test_avg_rounded_to_two_places(self):
        assert summarize([1, 2, 2])["avg"] == 1.67

    def test_percentile_exact_rank(self):
        assert _percentile([1.0, 2.0, 3.0], 0.5) == 2.0
        assert _percentile([], 0.5) is None


class TestBucket:

    def test_non_finite_samples_dropped(self):
        b = StatsBucket()
        for v in (1.0, None, math.nan, math.inf, -math.inf, True, "3", 2):
            b.add_sample(b.duration, v)
        assert b.duration == [1.0, 2.0]


class TestUploadStats:

    def test_success_feeds_file_and_global_buckets(self):
        stats = UploadStats()
        stats.record("a.jpg", 1000, ok_result(100, upload_ms=5.0, ttfb_ms=30.0, connect_ms=12.0,
                                              remote_address="10.0.0.1", alpn_protocol="h2"))
        stats.record("b.jpg", 2000, ok_result(200, upload_ms=None, ttfb_ms=40.0))

        a = stats.buckets["a.jpg"]
        assert (a.ok, a.fail, a.size) == (1, 0, 1000)
        assert a.duration == [100.0]
        assert a.upload == [5.0]
        assert a.connect == [12.0]

        assert stats.overall.ok == 2
        assert stats.overall.duration == [100.0, 200.0]
        assert stats.overall.upload == [5.0]
        assert stats.overall.ttfb == [30.0, 40.0]
        assert stats.remote_ips == {"10.0.0.1"}
        assert stats.alpn_protocols == {"h2"}

    def test_http_error_counts_as_failure_without_samples(self):
        stats = UploadStats()
        stats.record("a.jpg", 1000, http_error())
        a = stats.buckets["a.jpg"]
        assert (a.ok, a.fail) == (0, 1)
        assert a.duration == []
        assert stats.exceptions == []

    def test_exceptions_are_kept(self):
        stats = UploadStats()
        err = UploadTransportError("ClientConnectorError: refused", code="ECONNREFUSED",
                                   address="api.example.com", port=443)
        stats.record("a.jpg", 1000, UploadException.from_exception(err), batch=3)

        assert stats.overall.fail == 1
        assert len(stats.exceptions) == 1
        detail = stats.exceptions[0]
        assert detail["file"] == "a.jpg"
        assert detail["batch"] == 3
        assert detail["code"] == "ECONNREFUSED"
        assert detail["port"] == 443

    def test_summary_document_shape(self):
        stats = UploadStats()
        stats.record("big.jpg", 3000, ok_result(300))
        stats.record("small.jpg", 1000, ok_result(100))
        stats.record("small.jpg", 1000, http_error(500))

        doc = stats.build_summary("20261019-120000", {"batches": 2})
        assert doc["runId"] == "20261019-120000"
        assert doc["config"] == {"batches": 2}
        assert [f["file"] for f in doc["files"]] == ["small.jpg", "big.jpg"]

        small = doc["files"][0]
        assert (small["ok"], small["fail"]) == (1, 1)
        assert small["durationMs"]["count"] == 1

        totals = doc["overall"]["totals"]
        assert totals == {"ok": 2, "fail": 1, "tried": 3}
        assert doc["overall"]["durationMs"]["p50"] == pytest.approx(200.0)
        assert doc["overall"]["remoteIps"] == []
