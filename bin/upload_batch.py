#!/usr/bin/env python3
"""
Upload Benchmark Batch Runner

Repeatedly uploads a fixed set of five files to a Cloudinary-style unsigned
upload endpoint and records per-request phase timings.

Key Design Principles:
- Bounded parallelism: a worker pool caps in-flight uploads per batch
- Failure isolation: one upload raising never cancels its siblings
- Unbiased ordering: the file set is shuffled before every batch
- Measurement-driven: each request is traced through aiohttp signals

Run State Machine:
    IDLE → RUNNING ⇄ DRAINING → COMPLETED

Outputs (under --out-dir):
    run-<id>.ndjson         one JSON record per event
    run-<id>.summary.json   per-file and overall percentile statistics
"""

from __future__ import annotations

import argparse
import asyncio
import json
import random
import sys
import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from enum import Enum, auto
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import aiohttp
from tqdm import tqdm

from single_upload import (
    Destination,
    FileAsset,
    UploadException,
    UploadResult,
    Uploader,
    human_bytes,
    mbps,
)
from upload_stats import UploadStats
from upload_timing import PhaseCorrelator


T = TypeVar("T")
R = TypeVar("R")

FILES_PER_RUN = 5


# =============================================================================
# ERRORS
# =============================================================================

class ConfigError(ValueError):
    """Missing or invalid run configuration. Fatal before any upload."""


class DiscoveryError(FileNotFoundError):
    """Not enough benchmark files. Fatal before any upload."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def _now_iso() -> str:
    """Wall-clock timestamp for log records."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_run_id() -> str:
    """Run id from local time, e.g. 20261019-142501."""
    return time.strftime("%Y%m%d-%H%M%S", time.localtime())


def public_id_for(asset: FileAsset, batch_no: int, run_id: str) -> str:
    """Per-attempt unique public id."""
    return f"{asset.stem}-b{batch_no:02d}-{run_id}"


def _say(msg: str, err: bool = False) -> None:
    tqdm.write(msg, file=sys.stderr if err else sys.stdout)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class BenchConfig:
    """Main application configuration."""
    cloud_name: str = ""
    upload_preset: str = ""
    asset_folder: str = ""

    batches: int = 5
    delay_ms: int = 10_000
    concurrency: int = FILES_PER_RUN    # < 1 means unbounded
    keep_alive: bool = True
    timeout_ms: int = 120_000           # 0 disables the per-request deadline
    resource_type: str = "image"
    dry: bool = False

    files_dir: str = "files"
    out_dir: str = "out"
    api_base: str = "https://api.cloudinary.com"
    progress: bool = True

    def destination(self) -> Destination:
        return Destination(
            cloud_name=self.cloud_name,
            upload_preset=self.upload_preset,
            asset_folder=self.asset_folder,
            resource_type=self.resource_type,
            api_base=self.api_base,
        )

    def to_dict(self) -> dict[str, Any]:
        """Config echo for the log and the summary document."""
        d = asdict(self)
        return {
            "cloudName": d["cloud_name"],
            "uploadPreset": d["upload_preset"],
            "assetFolder": d["asset_folder"],
            "batches": d["batches"],
            "delayMs": d["delay_ms"],
            "concurrency": d["concurrency"],
            "keepAlive": d["keep_alive"],
            "timeoutMs": d["timeout_ms"],
            "resourceType": d["resource_type"],
            "dry": d["dry"],
        }


_INT_FIELDS = ("batches", "delay_ms", "concurrency", "timeout_ms")
_BOOL_FIELDS = ("keep_alive", "dry", "progress")


def validate_config(cfg: BenchConfig) -> BenchConfig:
    """Raise ConfigError unless the destination and batch settings are usable."""
    missing = [
        flag for flag, value in (
            ("--cloud-name", cfg.cloud_name),
            ("--upload-preset", cfg.upload_preset),
            ("--asset-folder", cfg.asset_folder),
        ) if not value
    ]
    if missing:
        raise ConfigError(f"Missing required args: {', '.join(missing)}")
    if cfg.batches < 1:
        raise ConfigError(f"--batches must be >= 1 (got {cfg.batches})")
    if cfg.delay_ms < 0:
        raise ConfigError(f"--delay-ms must be >= 0 (got {cfg.delay_ms})")
    if cfg.timeout_ms < 0:
        raise ConfigError(f"--timeout-ms must be >= 0 (got {cfg.timeout_ms})")
    return cfg


def parse_args(argv: Optional[Sequence[str]] = None) -> BenchConfig:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="Upload benchmark: batched unsigned uploads with phase timings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python upload_batch.py --cloud-name rn-cld-tests --upload-preset photos_menus --asset-folder cloudinary-tests
  python upload_batch.py --config bench.json --dry
"""
    )

    p.add_argument("--config", type=str,
                   help="Path to JSON config file (keys as in BenchConfig); flags given "
                        "on the command line override its values")

    # Destination
    p.add_argument("--cloud-name", dest="cloud_name", type=str, help="Cloud name, e.g. rn-cld-tests")
    p.add_argument("--upload-preset", dest="upload_preset", type=str, help="Unsigned upload preset")
    p.add_argument("--asset-folder", dest="asset_folder", type=str, help="Target asset folder")
    p.add_argument("--resource-type", dest="resource_type", type=str, help="Resource type (default image)")
    p.add_argument("--api-base", dest="api_base", type=str, help="API origin (default https://api.cloudinary.com)")

    # Run shape
    p.add_argument("--batches", type=int, help="Number of batches (default 5)")
    p.add_argument("--delay-ms", dest="delay_ms", type=int,
                   help="Delay between batches in ms (default 10000)")
    p.add_argument("--concurrency", type=int,
                   help=f"Max uploads in flight per batch (default {FILES_PER_RUN}); < 1 means unbounded")
    p.add_argument("--timeout-ms", dest="timeout_ms", type=int,
                   help="Per-request timeout in ms (default 120000); 0 disables")
    p.add_argument("--no-keep-alive", dest="keep_alive", action="store_false", default=None,
                   help="Open a fresh connection per request")
    p.add_argument("--dry", action="store_true", default=None,
                   help="Plan only: validate files, no uploads")

    # Paths / output
    p.add_argument("--files-dir", dest="files_dir", type=str, help="Benchmark files (default files)")
    p.add_argument("--out-dir", dest="out_dir", type=str, help="Logs and summaries (default out)")
    p.add_argument("--no-progress", dest="progress", action="store_false", default=None)

    args = p.parse_args(argv)

    # Dataclass defaults, then the JSON file, then flags that were actually given
    values: dict[str, Any] = {}
    if args.config:
        cfg_path = Path(args.config)
        with cfg_path.open("r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigError(f"{cfg_path}: expected a JSON object")
        values.update(data)

    names = {fld.name for fld in fields(BenchConfig)}
    values.update({k: v for k, v in vars(args).items() if k in names and v is not None})
    values = {k: v for k, v in values.items() if k in names}

    for key in _INT_FIELDS:
        if key in values:
            values[key] = int(values[key])
    for key in _BOOL_FIELDS:
        if key in values:
            values[key] = bool(values[key])
    return BenchConfig(**values)


# =============================================================================
# DIRECTORIES AND FILE DISCOVERY
# =============================================================================

def ensure_dirs(cfg: BenchConfig) -> tuple[Path, Path]:
    """Create files/, out/ and a captures/ sibling. Returns (files_dir, out_dir)."""
    files_dir = Path(cfg.files_dir)
    out_dir = Path(cfg.out_dir)
    for d in (files_dir, out_dir, out_dir.parent / "captures"):
        d.mkdir(parents=True, exist_ok=True)
    return files_dir, out_dir


def discover_files(files_dir: Path, count: int = FILES_PER_RUN) -> list[FileAsset]:
    """
    The ``count`` smallest regular, non-hidden files in ``files_dir``.

    Raises DiscoveryError if fewer than ``count`` are present.
    """
    files: list[FileAsset] = []
    for p in sorted(files_dir.iterdir()):
        if p.name.startswith(".") or not p.is_file():
            continue
        files.append(FileAsset(name=p.name, path=str(p), size=p.stat().st_size))

    if len(files) < count:
        raise DiscoveryError(f"Expected at least {count} files in {files_dir}. Found {len(files)}.")

    files.sort(key=lambda f: f.size)
    picked = files[:count]

    sizes = [f.size for f in picked]
    if len(set(sizes)) != len(sizes):
        print(f"[Warning] Benchmark files share sizes: {sizes}")
    return picked


# =============================================================================
# EVENT LOG
# =============================================================================

class RunLog:
    """Newline-delimited JSON event log for one run."""

    def __init__(self, path: Path, run_id: str):
        self.path = Path(path)
        self.run_id = run_id

    def write(self, event: Optional[str] = None, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {"ts": _now_iso(), "runId": self.run_id}
        if event is not None:
            record["event"] = event
        record.update(fields)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")
        return record


def upload_record(
    asset: FileAsset,
    batch_no: int,
    public_id: str,
    outcome: UploadResult | UploadException,
) -> dict[str, Any]:
    """Fields of one per-upload log record."""
    base: dict[str, Any] = {
        "batch": batch_no,
        "file": asset.name,
        "path": asset.path,
        "size": asset.size,
        "publicId": public_id,
    }
    if isinstance(outcome, UploadException):
        base.update(status="exception", error=outcome.error)
        return base

    base.update(
        status="ok" if outcome.ok else "error",
        httpStatus=outcome.http_status,
        durationMs=outcome.duration_ms,
        requestId=outcome.request_id,
        cldErrorHeader=outcome.error_header,
        timings=outcome.timings.to_dict() if outcome.timings is not None else None,
        cld=outcome.body,
    )
    return base


# =============================================================================
# BOUNDED CONCURRENCY POOL
# =============================================================================

@dataclass(frozen=True)
class PoolOutcome:
    """Settled result of one pool task."""
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


async def run_bounded(
    items: Sequence[T],
    limit: int,
    task: Callable[[T], Awaitable[R]],
    *,
    desc: Optional[str] = None,
    progress: bool = False,
) -> list[PoolOutcome]:
    """
    Run ``task`` over ``items`` with at most ``limit`` in flight.

    Uses a queue with N worker tasks. ``outcomes[i]`` belongs to ``items[i]``
    whatever the completion order. A raising task becomes a failed
    PoolOutcome and never stops its siblings. ``limit < 1`` means unbounded.
    """
    n = len(items)
    if n == 0:
        return []
    if limit < 1:
        limit = n

    q: asyncio.Queue[int] = asyncio.Queue()
    for i in range(n):
        q.put_nowait(i)

    outcomes: list[Optional[PoolOutcome]] = [None] * n
    pbar = tqdm(total=n, desc=desc, unit="file", disable=not progress, leave=False)

    async def worker():
        while True:
            try:
                i = q.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                outcomes[i] = PoolOutcome(ok=True, value=await task(items[i]))
            except Exception as e:
                outcomes[i] = PoolOutcome(ok=False, error=e)
            q.task_done()
            pbar.update(1)

    workers = [asyncio.create_task(worker()) for _ in range(min(limit, n))]
    try:
        await asyncio.gather(*workers)
    finally:
        pbar.close()

    return outcomes  # type: ignore[return-value]


# =============================================================================
# BATCH ORCHESTRATION
# =============================================================================

class RunState(Enum):
    """Batch runner states."""
    IDLE = auto()
    RUNNING = auto()
    DRAINING = auto()
    COMPLETED = auto()


@dataclass
class RunTotals:
    ok: int = 0
    tried: int = 0

    @property
    def failed(self) -> int:
        return self.tried - self.ok


UploadFn = Callable[..., Awaitable[UploadResult]]


def narrate(asset: FileAsset, outcome: UploadResult | UploadException) -> None:
    """One console line per upload."""
    if isinstance(outcome, UploadException):
        _say(f"ERR  {asset.name} exception={outcome.message}", err=True)
        return
    req = outcome.request_id or "n/a"
    if outcome.ok:
        speed = mbps(asset.size, outcome.duration_ms)
        _say(f"OK   {asset.name} {human_bytes(asset.size)} {speed:.2f} Mb/s "
             f"http={outcome.http_status} req={req}")
    else:
        _say(f"ERR  {asset.name} http={outcome.http_status} req={req} "
             f"x-cld-error={outcome.error_header or 'n/a'} msg={outcome.error_message}", err=True)


class BatchRunner:
    """
    Drives B sequential batches over the file set.

    Each batch: shuffle, upload through the bounded pool, record every
    outcome, emit a batch_end record, sweep stale traces, then wait out the
    inter-batch delay unless it was the last batch.
    """

    def __init__(
        self,
        cfg: BenchConfig,
        files: Sequence[FileAsset],
        *,
        run_id: str,
        upload: Optional[UploadFn],
        stats: UploadStats,
        log: RunLog,
        correlator: Optional[PhaseCorrelator] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.files = list(files)
        self.run_id = run_id
        self.upload = upload
        self.stats = stats
        self.log = log
        self.correlator = correlator
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.state = RunState.IDLE
        self.totals = RunTotals()

    def shuffled(self) -> list[FileAsset]:
        order = list(self.files)
        self.rng.shuffle(order)
        return order

    async def run(self) -> RunTotals:
        if self.cfg.dry:
            return self._plan()

        batches = self.cfg.batches
        for b in range(batches):
            batch_no = b + 1
            self.state = RunState.RUNNING
            print(f"Starting batch {batch_no}/{batches}")

            await self._run_batch(batch_no)

            if self.correlator is not None:
                purged = self.correlator.sweep_stale()
                if purged:
                    print(f"[Trace] Purged {purged} stale trace records")

            if b < batches - 1 and self.cfg.delay_ms > 0:
                self.state = RunState.DRAINING
                await self.sleep(self.cfg.delay_ms / 1000)

        self.state = RunState.COMPLETED
        self.log.write("end", totalOk=self.totals.ok, totalTried=self.totals.tried)
        return self.totals

    async def _run_batch(self, batch_no: int) -> int:
        order = self.shuffled()
        public_ids = {f.name: public_id_for(f, batch_no, self.run_id) for f in order}

        async def one(asset: FileAsset) -> UploadResult:
            return await self.upload(asset, public_id=public_ids[asset.name], timeout_ms=self.cfg.timeout_ms)

        outcomes = await run_bounded(
            order, self.cfg.concurrency, one,
            desc=f"Batch {batch_no}/{self.cfg.batches}", progress=self.cfg.progress,
        )

        ok = 0
        for asset, out in zip(order, outcomes):
            if out.ok:
                result = out.value
            else:
                result = UploadException.from_exception(out.error)

            narrate(asset, result)
            self.stats.record(asset.name, asset.size, result, batch=batch_no)
            self.log.write("upload", **upload_record(asset, batch_no, public_ids[asset.name], result))
            if isinstance(result, UploadResult) and result.ok:
                ok += 1

        self.totals.ok += ok
        self.totals.tried += len(outcomes)
        print(f"Batch {batch_no} complete: {ok}/{len(outcomes)} succeeded.")
        self.log.write("batch_end", batch=batch_no, ok=ok, fail=len(outcomes) - ok, tried=len(outcomes))
        return ok

    def _plan(self) -> RunTotals:
        """Dry run: log a zero-duration planned record per file per batch."""
        for b in range(self.cfg.batches):
            batch_no = b + 1
            self.state = RunState.RUNNING
            for asset in self.shuffled():
                self.log.write(
                    "upload",
                    batch=batch_no,
                    file=asset.name,
                    path=asset.path,
                    size=asset.size,
                    publicId=public_id_for(asset, batch_no, self.run_id),
                    status="planned",
                    durationMs=0,
                )
            print(f"[Dry] Batch {batch_no}: planned {len(self.files)} uploads")
        self.state = RunState.COMPLETED
        self.log.write("end", totalOk=0, totalTried=0, dry=True)
        return self.totals


# =============================================================================
# SUMMARY
# =============================================================================

def write_summary(path: Path, summary: dict[str, Any]) -> str:
    """Write the run summary document."""
    with path.open("w") as f:
        json.dump(summary, f, indent=2)
    return str(path.resolve())


def print_summary(summary: dict[str, Any]) -> None:
    """Per-file percentile table on the console."""
    print("\n" + "=" * 72)
    print("RUN SUMMARY")
    print("=" * 72)
    print(f"{'file':<28} {'ok':>4} {'fail':>4} {'avg ms':>9} {'p50 ms':>9} {'p95 ms':>9}")
    for row in summary["files"]:
        d = row["durationMs"]
        print(f"{row['file'][:28]:<28} {row['ok']:>4} {row['fail']:>4} "
              f"{_fmt(d['avg']):>9} {_fmt(d['p50']):>9} {_fmt(d['p95']):>9}")

    overall = summary["overall"]
    totals = overall["totals"]
    d = overall["durationMs"]
    print("-" * 72)
    print(f"{'overall':<28} {totals['ok']:>4} {totals['fail']:>4} "
          f"{_fmt(d['avg']):>9} {_fmt(d['p50']):>9} {_fmt(d['p95']):>9}")
    if overall["remoteIps"]:
        print(f"Remote IPs:     {', '.join(overall['remoteIps'])}")
    if overall["alpnProtocols"]:
        print(f"ALPN:           {', '.join(overall['alpnProtocols'])}")
    print("=" * 72)


def _fmt(v: Optional[float]) -> str:
    return "-" if v is None else f"{v:.1f}"


# =============================================================================
# MAIN
# =============================================================================

async def run(cfg: BenchConfig) -> int:
    """Run one benchmark. Returns the number of failed uploads."""
    files_dir, out_dir = ensure_dirs(cfg)
    files = discover_files(files_dir)

    run_id = new_run_id()
    log = RunLog(out_dir / f"run-{run_id}.ndjson", run_id)
    summary_path = out_dir / f"run-{run_id}.summary.json"

    print(f"Run {run_id}")
    print(f"Cloud: {cfg.cloud_name}")
    print(f"Preset: {cfg.upload_preset}")
    print(f"Asset Folder: {cfg.asset_folder}")
    print(f"Batches: {cfg.batches}  Delay: {cfg.delay_ms} ms  Concurrency: {cfg.concurrency}  "
          f"Keep-alive: {cfg.keep_alive}  Dry: {cfg.dry}")
    print("Files:")
    for f in files:
        print(f"  {f.name}  {human_bytes(f.size)}")
    print(f"Log: {log.path}")

    log.write("start", **cfg.to_dict(), files=[asdict(f) for f in files])

    stats = UploadStats()

    if cfg.dry:
        runner = BatchRunner(cfg, files, run_id=run_id, upload=None, stats=stats, log=log)
        await runner.run()
        return 0

    correlator = PhaseCorrelator()
    connector = aiohttp.TCPConnector(
        limit=max(10, cfg.concurrency * 2),
        force_close=not cfg.keep_alive,
        ttl_dns_cache=300,
        use_dns_cache=True,
    )

    async with aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=None),
        headers={"User-Agent": "upload-bench/1.0"},
        trace_configs=[correlator.trace_config()],
    ) as session:
        uploader = Uploader(session, cfg.destination(), correlator)
        runner = BatchRunner(
            cfg, files,
            run_id=run_id,
            upload=uploader.upload,
            stats=stats,
            log=log,
            correlator=correlator,
        )
        totals = await runner.run()

    summary = stats.build_summary(run_id, cfg.to_dict())
    try:
        print_summary(summary)
        print(f"[Report] Summary: {write_summary(summary_path, summary)}")
    except OSError as e:
        print(f"[Report] Failed: {e}")

    print("All done.")
    if totals.failed:
        print(f"Note: {totals.failed} of {totals.tried} uploads failed. "
              f"See log for details: {log.path.name}", file=sys.stderr)
    return totals.failed


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point. Exit code 1 on configuration or discovery errors."""
    try:
        cfg = validate_config(parse_args(argv))
        asyncio.run(run(cfg))
    except (ConfigError, DiscoveryError) as e:
        print(f"[Error] {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n[Shutdown] Interrupted.")
        sys.exit(130)
