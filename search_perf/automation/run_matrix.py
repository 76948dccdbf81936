#!/usr/bin/env python3
"""Run the full search benchmark matrix and build the combined report.

Typical usage (from the directory holding the locustfiles):
  PT_USER_COUNT=50 PT_RF_VALUE=rf3 python3 -m search_perf.automation.run_matrix

  # A subset of the matrix
  python3 -m search_perf.automation.run_matrix --limits 10,50 --search-types bm25,vector

  # Show what would run without touching anything
  python3 -m search_perf.automation.run_matrix --dry-run

Outputs:
  - <reports_root>/reports_<limit>/<prefix>_report.html, <prefix>_*.csv
  - <reports_root>/matrix_result.json (per-cell outcomes)
  - <reports_root>/progress.log
  - the combined report written by the aggregator

Exit codes: 0 done (failed cells are listed, not fatal), 1 query corpus could
not be prepared, 2 configuration or lock error, 3 report generation failed with
--strict-report, 130 interrupted.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

from search_perf.automation.load_runner import build_locust_argv
from search_perf.automation.matrix import MatrixScheduler, iter_cells
from search_perf.automation.narration import RunReporter
from search_perf.automation.prerequisites import PrerequisiteError, corpus_present, generator_argv
from search_perf.automation.report_trigger import aggregate
from search_perf.automation.run_lock import RunLockError, run_lock
from search_perf.automation.settings import (
    DEFAULT_MATRIX_PATH,
    MatrixConfigError,
    RunContext,
    build_context,
    parse_csv_list,
)
from search_perf.automation.target_config import describe_cell_target

EXIT_OK = 0
EXIT_PREREQUISITE = 1
EXIT_CONFIG = 2
EXIT_REPORT = 3
EXIT_INTERRUPTED = 130


def build_plan(ctx: RunContext) -> Dict:
    return {
        "matrix": ctx.matrix_name,
        "root": str(ctx.root),
        "run_config": {
            "user_count": ctx.run_config.user_count,
            "spawn_rate": ctx.run_config.spawn_rate,
            "run_time": ctx.run_config.run_time,
            "rf_value": ctx.run_config.rf_value,
        },
        "corpus": {
            "marker": str(ctx.corpus_marker_path),
            "present": corpus_present(ctx),
            "generator": generator_argv(ctx),
        },
        "cells": [
            {
                "limit": cell.limit,
                "search_type": cell.search_type.name,
                "target_config": str(ctx.target_config_path(cell.search_type)),
                "target": describe_cell_target(cell.search_type, cell.limit),
                "argv": build_locust_argv(ctx, cell, ctx.report_dir(cell.limit)),
            }
            for cell in iter_cells(ctx.limits, ctx.search_types)
        ],
        "aggregator": list(ctx.aggregator.argv),
        "estimated_duration_s": ctx.estimated_duration_s(),
    }


def _raise_interrupt(signum, _frame):
    raise KeyboardInterrupt(f"received signal {signum}")


@contextlib.contextmanager
def _sigterm_as_interrupt():
    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def execute(ctx: RunContext, reporter: RunReporter, skip_report: bool = False,
            strict_report: bool = False, summary: Optional[Path] = None) -> int:
    reporter.opening(ctx)
    scheduler = MatrixScheduler(ctx, reporter=reporter)
    try:
        reporter.step(1, "Checking query files")
        try:
            scheduler.check_prerequisites()
        except PrerequisiteError as exc:
            reporter.error(f"failed to prepare query files: {exc}")
            return EXIT_PREREQUISITE

        reporter.step(2, "Running performance tests")
        report = scheduler.run_all()
        reporter.banner("ALL TESTS COMPLETE")

        aggregation = None
        if not skip_report:
            reporter.step(3, "Generating combined report")
            aggregation = aggregate(ctx, reporter)
    except KeyboardInterrupt:
        reporter.error("interrupted; artifacts of completed cells are left in place")
        if scheduler.report is not None:
            # Interrupted after the matrix finished, e.g. during aggregation.
            if not scheduler.report.interrupted:
                scheduler.report.finish(interrupted=True)
            scheduler.report.write(ctx.summary_path)
        return EXIT_INTERRUPTED

    report.write(ctx.summary_path, aggregation)
    if summary:
        report.write(summary, aggregation)
    reporter.closing(ctx, report, aggregation)
    if strict_report and aggregation is not None and not aggregation.ok:
        return EXIT_REPORT
    return EXIT_OK


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Run the search benchmark matrix (limits x search types)")
    parser.add_argument("--matrix", default=str(DEFAULT_MATRIX_PATH), help="Matrix config YAML")
    parser.add_argument("--root", help="Directory holding the locustfiles and target configs (default: cwd)")
    parser.add_argument("--users", type=int, help="Override PT_USER_COUNT")
    parser.add_argument("--rf", help="Override PT_RF_VALUE")
    parser.add_argument("--spawn-rate", type=int)
    parser.add_argument("--run-time", help="Per-cell locust run time, e.g. 5m")
    parser.add_argument("--limits", help="Comma-separated subset of limits")
    parser.add_argument("--search-types", help="Comma-separated subset of search types")
    parser.add_argument("--dry-run", action="store_true", help="Print the plan and exit")
    parser.add_argument("--skip-report", action="store_true", help="Do not run the aggregator")
    parser.add_argument(
        "--strict-report",
        action="store_true",
        help="Exit non-zero when the combined report could not be generated",
    )
    parser.add_argument("--summary", help="Also write the JSON run summary to this path")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    overrides = {
        "user_count": args.users,
        "rf_value": args.rf,
        "spawn_rate": args.spawn_rate,
        "run_time": args.run_time,
    }
    try:
        ctx = build_context(Path(args.matrix), root=Path(args.root) if args.root else None, overrides=overrides)
        ctx = ctx.select(parse_csv_list(args.limits), parse_csv_list(args.search_types))
    except MatrixConfigError as exc:
        print(f"[run_matrix] error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    if args.dry_run:
        try:
            print(json.dumps(build_plan(ctx), indent=2))
        except BrokenPipeError:
            # Common when piping to `head`; exit cleanly.
            pass
        return EXIT_OK

    reporter = RunReporter(ctx.progress_log)
    try:
        with _sigterm_as_interrupt(), run_lock(ctx.lock_path):
            return execute(
                ctx,
                reporter,
                skip_report=args.skip_report,
                strict_report=args.strict_report,
                summary=Path(args.summary) if args.summary else None,
            )
    except RunLockError as exc:
        reporter.error(str(exc))
        return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
