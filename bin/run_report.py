#!/usr/bin/env python3
"""
Upload Benchmark Run Report

Summarizes a finished run from its NDJSON event log:
1. Loads the per-upload records into a polars DataFrame
2. Aggregates tries / ok / fail / latency percentiles / throughput per file

Useful for runs whose summary document was never written (interrupted runs)
or for comparing logs side by side.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

import polars as pl


UPLOAD_COLUMNS = {
    "batch": pl.Int64,
    "file": pl.Utf8,
    "size": pl.Int64,
    "status": pl.Utf8,
    "httpStatus": pl.Int64,
    "durationMs": pl.Float64,
}


# =============================================================================
# LOADING
# =============================================================================

def load_upload_events(log_path: Path) -> pl.DataFrame:
    """
    Per-upload rows of a run log.

    Records of other kinds (start, batch_end, end) are skipped, as are
    malformed lines. Nested fields are dropped; only the flat columns in
    UPLOAD_COLUMNS are kept.
    """
    rows = []
    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except ValueError:
                continue
            if rec.get("event") != "upload":
                continue
            row = {col: rec.get(col) for col in UPLOAD_COLUMNS}
            if row["durationMs"] is not None:
                row["durationMs"] = float(row["durationMs"])
            rows.append(row)

    return pl.DataFrame(rows, schema=UPLOAD_COLUMNS)


def per_file_table(df: pl.DataFrame) -> pl.DataFrame:
    """Tries, ok, fail, duration percentiles and mean throughput per file."""
    ok = pl.col("status") == "ok"
    ok_ms = pl.col("durationMs").filter(ok)

    return (
        df.filter(pl.col("status") != "planned")
        .with_columns(
            (pl.col("size") * 8 / (pl.col("durationMs") / 1000) / 1e6).alias("mbps")
        )
        .group_by("file")
        .agg(
            pl.col("size").first().alias("size"),
            pl.len().alias("tries"),
            ok.sum().alias("ok"),
            (~ok).sum().alias("fail"),
            ok_ms.mean().round(2).alias("avg_ms"),
            ok_ms.quantile(0.50, interpolation="linear").alias("p50_ms"),
            ok_ms.quantile(0.95, interpolation="linear").alias("p95_ms"),
            pl.col("mbps").filter(ok).mean().round(2).alias("avg_mbps"),
        )
        .sort("size")
    )


# =============================================================================
# OUTPUT
# =============================================================================

def print_console_report(log_path: Path, table: pl.DataFrame) -> None:
    """Print a human-readable report to the console."""
    sep = "=" * 80
    print(f"\n{sep}")
    print("UPLOAD BENCHMARK RUN REPORT")
    print(f"{sep}\n")
    print(f"  Log:               {log_path}")

    if table.height == 0:
        print("  No uploads recorded.")
        print(f"\n{sep}\n")
        return

    tries = int(table["tries"].sum())
    ok = int(table["ok"].sum())
    print(f"  Uploads:           {tries:,}")
    print(f"  Successful:        {ok:,} ({ok / tries * 100:.2f}%)")
    print(f"  Failed:            {tries - ok:,}")
    print()

    with pl.Config(tbl_rows=-1, tbl_hide_dataframe_shape=True):
        print(table)
    print(f"\n{sep}\n")


# =============================================================================
# MAIN
# =============================================================================

def parse_args(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        description="Summarize an upload benchmark NDJSON log",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("log", type=Path, help="Path to run-<id>.ndjson")
    parser.add_argument("--csv", type=Path, default=None, help="Write the per-file table as CSV")
    parser.add_argument("--quiet", action="store_true", help="Suppress console output")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    if not args.log.exists():
        print(f"Error: log not found: {args.log}")
        return 1

    table = per_file_table(load_upload_events(args.log))

    if not args.quiet:
        print_console_report(args.log, table)

    if args.csv:
        table.write_csv(args.csv)
        print(f"CSV report written to: {args.csv}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
