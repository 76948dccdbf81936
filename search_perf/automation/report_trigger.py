#!/usr/bin/env python3
"""Fold the per-limit report directories into the combined report."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from search_perf.automation.narration import RunReporter
from search_perf.automation.process_utils import ProcessLaunchError, child_env, run_to_completion
from search_perf.automation.settings import RunContext


@dataclass
class AggregationOutcome:
    status: str  # ok | failed
    returncode: Optional[int] = None
    error: Optional[str] = None
    output_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "returncode": self.returncode,
            "error": self.error,
            "output_path": str(self.output_path) if self.output_path else None,
        }


def aggregate(ctx: RunContext, reporter: Optional[RunReporter] = None) -> AggregationOutcome:
    """Run the aggregator with no arguments; it discovers ``reports_<limit>/`` itself.

    A failure is returned, never raised: partial results are still worth keeping.
    """
    reporter = reporter or RunReporter()
    argv = list(ctx.aggregator.argv)
    reporter.info(f"generating combined report: {' '.join(argv)} (cwd={ctx.aggregator.cwd})")
    try:
        result = run_to_completion("aggregator", argv, cwd=ctx.aggregator.cwd, env=child_env(ctx.run_config.as_env()))
    except ProcessLaunchError as exc:
        reporter.warn(f"report generation could not run: {exc}")
        return AggregationOutcome(status="failed", error=str(exc))

    if not result.ok:
        reporter.warn(f"report generation had warnings (exit code {result.returncode})")
        return AggregationOutcome(
            status="failed",
            returncode=result.returncode,
            error=f"aggregator exited with code {result.returncode}",
        )

    output = ctx.combined_report
    if output is not None and not output.exists():
        reporter.warn(f"aggregator exited 0 but {output} was not found")
    reporter.info(f"combined report generated: {output or '(aggregator default location)'}")
    return AggregationOutcome(status="ok", returncode=0, output_path=output)
