#!/usr/bin/env python3
"""Drive the (limit x search type) matrix one cell at a time."""

from __future__ import annotations

import time
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from search_perf.automation.load_runner import run_cell
from search_perf.automation.narration import RunReporter
from search_perf.automation.prerequisites import ensure_corpus
from search_perf.automation.results import CellOutcome, MatrixReport
from search_perf.automation.settings import MatrixCell, RunContext, SearchTypeSpec
from search_perf.automation.target_config import MutationError, apply_cell


class MatrixState(str, Enum):
    IDLE = "idle"
    CHECKING_PREREQUISITES = "checking_prerequisites"
    RUNNING_CELL = "running_cell"
    BETWEEN_LIMITS = "between_limits"
    DONE = "done"


def iter_cells(limits: Sequence[int], search_types: Sequence[SearchTypeSpec]) -> Iterator[MatrixCell]:
    """Limits form the outer loop, search types the inner one."""
    for limit in limits:
        for spec in search_types:
            yield MatrixCell(limit, spec)


class MatrixScheduler:
    def __init__(
        self,
        ctx: RunContext,
        reporter: Optional[RunReporter] = None,
        invoke: Callable[..., CellOutcome] = run_cell,
        mutate: Callable[..., object] = apply_cell,
        prerequisite: Callable[..., object] = ensure_corpus,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ctx = ctx
        self.reporter = reporter or RunReporter(ctx.progress_log)
        self.invoke = invoke
        self.mutate = mutate
        self.prerequisite = prerequisite
        self.sleep = sleep
        self.state = MatrixState.IDLE
        self.history: List[Tuple[MatrixState, Optional[MatrixCell]]] = [(MatrixState.IDLE, None)]
        self.report: Optional[MatrixReport] = None

    def _transition(self, state: MatrixState, cell: Optional[MatrixCell] = None) -> None:
        self.state = state
        self.history.append((state, cell))

    def check_prerequisites(self):
        """Run the corpus check; a PrerequisiteError escapes and nothing else runs."""
        self._transition(MatrixState.CHECKING_PREREQUISITES)
        return self.prerequisite(self.ctx, reporter=self.reporter)

    def run_all(
        self,
        limits: Optional[Sequence[int]] = None,
        search_types: Optional[Sequence[SearchTypeSpec]] = None,
    ) -> MatrixReport:
        ctx = self.ctx
        limits = tuple(limits) if limits is not None else ctx.limits
        search_types = tuple(search_types) if search_types is not None else ctx.search_types
        report = MatrixReport(ctx.matrix_name, ctx.run_config)
        self.report = report
        group_size = len(search_types)
        try:
            for limit_index, limit in enumerate(limits):
                self.reporter.limit_header(limit)
                output_dir = ctx.report_dir(limit)
                for position, spec in enumerate(search_types, start=1):
                    cell = MatrixCell(limit, spec)
                    self._transition(MatrixState.RUNNING_CELL, cell)
                    settle_s = ctx.pacing.cell_pause_s if position < group_size else 0.0
                    self.reporter.cell_started(position, group_size, cell, ctx.run_config.user_count)
                    outcome = self._run_cell(cell, output_dir, settle_s)
                    report.record(cell, outcome)
                    self.reporter.cell_finished(cell, outcome)
                if limit_index < len(limits) - 1:
                    self._transition(MatrixState.BETWEEN_LIMITS)
                    pause = ctx.pacing.limit_pause_s
                    self.reporter.pause(pause, f"limit {limit} complete")
                    if pause > 0:
                        self.sleep(pause)
        except KeyboardInterrupt:
            report.finish(interrupted=True)
            raise
        report.finish()
        self._transition(MatrixState.DONE)
        return report

    def _run_cell(self, cell: MatrixCell, output_dir: Path, settle_s: float) -> CellOutcome:
        spec = cell.search_type
        target = self.ctx.target_config_path(spec)
        try:
            self.mutate(target, spec, cell)
        except MutationError as exc:
            return CellOutcome.skipped(f"target config {target} not updated: {exc}")
        return self.invoke(
            self.ctx,
            cell,
            output_dir,
            settle_s=settle_s,
            reporter=self.reporter,
            sleep=self.sleep,
        )
