#!/usr/bin/env python3
"""Operator-facing narration for a matrix run.

Every line goes to the terminal with a ``[run_matrix]`` prefix and is appended,
timestamped, to ``progress.log`` in the reports root so a long unattended run
can be followed with ``tail -f``.
"""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

from search_perf.automation.results import FAILED, SKIPPED, SUCCESS
from search_perf.automation.settings import MatrixCell, RunContext

RULE = "=" * 72
THIN_RULE = "-" * 72


def format_duration(seconds: float) -> str:
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s" if secs else f"{minutes}m"
    return f"{secs}s"


class RunReporter:
    def __init__(
        self,
        progress_log: Optional[Path] = None,
        prefix: str = "run_matrix",
        stream: Optional[TextIO] = None,
        err_stream: Optional[TextIO] = None,
    ):
        self.progress_log = progress_log
        self.prefix = prefix
        self._stream = stream
        self._err_stream = err_stream

    def _log_progress(self, message: str) -> None:
        if not self.progress_log:
            return
        try:
            self.progress_log.parent.mkdir(parents=True, exist_ok=True)
            with self.progress_log.open("a", encoding="utf-8") as f:
                ts = datetime.now().isoformat(timespec="seconds")
                f.write(f"[{ts}] {message}\n")
        except OSError:
            # Best-effort only.
            pass

    def _emit(self, message: str, err: bool = False) -> None:
        stream = (self._err_stream or sys.stderr) if err else (self._stream or sys.stdout)
        print(message, file=stream, flush=True)
        if message.strip():
            self._log_progress(message.strip())

    def info(self, message: str) -> None:
        self._emit(f"[{self.prefix}] {message}")

    def warn(self, message: str) -> None:
        self._emit(f"[{self.prefix}] warning: {message}", err=True)

    def error(self, message: str) -> None:
        self._emit(f"[{self.prefix}] error: {message}", err=True)

    def banner(self, title: str) -> None:
        self._emit(RULE)
        self._emit(f"  {title}")
        self._emit(RULE)

    def step(self, number: int, title: str) -> None:
        self._emit("")
        self._emit(RULE)
        self._emit(f"STEP {number}: {title}")
        self._emit(RULE)

    def opening(self, ctx: RunContext) -> None:
        cfg = ctx.run_config
        self.banner(f"{ctx.matrix_name.upper()} PERFORMANCE TESTS")
        self.info("configuration:")
        self.info(f"  users: {cfg.user_count}  spawn rate: {cfg.spawn_rate}/s  run time: {cfg.run_time}")
        self.info(f"  RF: {cfg.rf_value}")
        self.info(f"  limits: {', '.join(str(limit) for limit in ctx.limits)}")
        self.info(f"  search types: {', '.join(spec.name for spec in ctx.search_types)}")
        self.info(
            f"  {len(ctx.search_types)} search types x {len(ctx.limits)} limits = {ctx.cell_count} tests, "
            f"estimated duration ~{format_duration(ctx.estimated_duration_s())}"
        )
        self.info(f"  reports: {ctx.reports_root}")

    def limit_header(self, limit: int) -> None:
        self._emit("")
        self.banner(f"TESTING LIMIT {limit}")

    def cell_started(self, position: int, group_size: int, cell: MatrixCell, user_count: int) -> None:
        self._emit("")
        self.info(
            f"test {position}/{group_size}: {cell.search_type.label} (limit={cell.limit}, users={user_count})"
        )
        self._emit(THIN_RULE)

    def cell_finished(self, cell: MatrixCell, outcome) -> None:
        if outcome.status == SUCCESS:
            self.info(f"{cell.search_type.label} complete ({cell.label}, {format_duration(outcome.elapsed_s)})")
        elif outcome.status == SKIPPED:
            self.warn(f"{cell.label} skipped: {outcome.error}")
        else:
            detail = outcome.error or f"exit code {outcome.returncode}"
            self.warn(f"{cell.label} failed: {detail}")

    def pause(self, seconds: float, reason: str) -> None:
        if seconds > 0:
            self.info(f"{reason}; waiting {format_duration(seconds)}")

    def closing(self, ctx: RunContext, report, aggregation=None) -> None:
        self._emit("")
        self.banner("MATRIX SUMMARY")
        counts = report.counts()
        self.info(
            f"cells: {len(report.results)}/{ctx.cell_count} run, {counts.get(SUCCESS, 0)} succeeded, "
            f"{counts.get(FAILED, 0)} failed, {counts.get(SKIPPED, 0)} skipped"
        )
        for result in report.problems():
            outcome = result.outcome
            detail = outcome.error or f"exit code {outcome.returncode}"
            self.warn(f"  {result.cell.label}: {outcome.status} ({detail})")
        if aggregation is None:
            self.info("combined report: not generated")
        elif aggregation.ok:
            self.info(f"combined report: {aggregation.output_path or 'generated'}")
        else:
            self.warn(f"combined report generation had problems: {aggregation.error}")
        self.info("individual reports:")
        for limit in ctx.limits:
            self.info(f"  {ctx.report_dir(limit)}/*_report.html")
        self.info(f"run summary: {ctx.summary_path}")
        self.info("what to check:")
        self.info("  - response time increases with limit")
        self.info("  - content size grows proportionally with limit")
        self.info("  - failure rate stays at 0%")
        self.info("  - vector results grow with limit instead of staying flat")
