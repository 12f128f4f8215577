"""Command line entry point for running an ndt7 speed test."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from ndtmeter import ApplicationContext, bootstrap
from ndtmeter.errors import MeasurementError
from ndtmeter.measurements.models import TestProgress, TestResult


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ndt7 network speed test")
    parser.add_argument("--config", help="Path to config.yaml", default="config.yaml")
    parser.add_argument(
        "--history", type=int, nargs="?", const=0, metavar="N", default=None, help="Show the last N stored results"
    )
    parser.add_argument("--last", action="store_true", help="Show the signed last result and whether it is intact")
    parser.add_argument(
        "--export", nargs="?", const="", metavar="PATH", default=None, help="Write the stored history as CSV"
    )
    parser.add_argument("--no-save", action="store_true", help="Do not store the result of this run")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def print_progress(progress: TestProgress) -> None:
    parts = [f"{progress.phase:<16}", f"{progress.percent:5.1f}%"]
    if progress.throughput_mbps is not None:
        parts.append(f"{progress.throughput_mbps:8.2f} Mbps")
    if progress.latency_ms is not None:
        parts.append(f"{progress.latency_ms:6.1f} ms")
    if progress.phase != "Download test" and progress.download_mbps is not None:
        parts.append(f"(down {progress.download_mbps:.2f} Mbps)")
    sys.stdout.write("\r" + "  ".join(parts) + " " * 8)
    sys.stdout.flush()


def print_result(result: TestResult) -> None:
    print()
    print(f"Server:   {result.hostname} ({result.city}, {result.country})")
    print(f"Download: {result.download_mbps:.2f} Mbps  (latency {result.download_latency_ms:.1f} ms)")
    print(f"Upload:   {result.upload_mbps:.2f} Mbps  (latency {result.upload_latency_ms:.1f} ms)")


def show_history(context: ApplicationContext, limit: int) -> None:
    for record in context.history.recent(limit):
        row = context.history.to_dict(record)
        print(
            f"{row['timestamp']}  down {row['download']:8.2f}  up {row['upload']:8.2f}  "
            f"{row['server']} ({row['location']})"
        )


def show_last(context: ApplicationContext) -> None:
    stored = context.last_result.load()
    if stored is None:
        print("No stored result")
        return
    print_result(stored.result)
    if not stored.is_valid:
        print("WARNING: stored result failed its integrity check")


def main() -> int:
    args = parse_args()
    context = bootstrap(args.config, "DEBUG" if args.debug else None)

    if args.history is not None:
        show_history(context, args.history or context.config.history.limit)
        return 0
    if args.last:
        show_last(context)
        return 0
    if args.export is not None:
        target = Path(args.export) if args.export else context.config.paths.data_dir / context.config.history.csv_name
        target.write_text(context.exporter.build_csv().getvalue(), encoding="utf-8")
        print(f"Exported {context.history.count()} result(s) to {target}")
        return 0

    try:
        result = context.run_test(print_progress, save=not args.no_save)
    except MeasurementError as exc:
        print()
        print(f"{exc.category}: {exc}", file=sys.stderr)
        return 1
    print_result(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
