#!/usr/bin/env python3
"""Run the load-generation tool for a single matrix cell."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from search_perf.automation.narration import RunReporter
from search_perf.automation.process_utils import ProcessLaunchError, child_env, run_to_completion
from search_perf.automation.results import CellOutcome
from search_perf.automation.settings import MatrixCell, RunContext
from search_perf.automation.target_config import TARGET_CONFIG_ENV


def html_report_path(output_dir: Path, prefix: str) -> Path:
    return output_dir / f"{prefix}_report.html"


def csv_prefix_path(output_dir: Path, prefix: str) -> Path:
    return output_dir / prefix


def log_path_for(output_dir: Path, prefix: str) -> Path:
    return output_dir / f"{prefix}_locust.log"


def build_locust_argv(ctx: RunContext, cell: MatrixCell, output_dir: Path) -> List[str]:
    spec = cell.search_type
    cfg = ctx.run_config
    return [
        *ctx.load_tool.argv,
        "-f",
        str(ctx.locustfile_path(spec)),
        "--users",
        str(cfg.user_count),
        "--spawn-rate",
        str(cfg.spawn_rate),
        "--run-time",
        cfg.run_time,
        "--headless",
        "--html",
        str(html_report_path(output_dir, spec.output_prefix)),
        "--csv",
        str(csv_prefix_path(output_dir, spec.output_prefix)),
    ]


def cell_env(ctx: RunContext, cell: MatrixCell) -> Dict[str, str]:
    env = ctx.run_config.as_env()
    env.update(
        {
            TARGET_CONFIG_ENV: str(ctx.target_config_path(cell.search_type)),
            "PT_SEARCH_TYPE": cell.search_type.name,
            "PT_LIMIT": str(cell.limit),
        }
    )
    return env


def collect_artifacts(output_dir: Path, prefix: str) -> List[str]:
    if not output_dir.exists():
        return []
    return sorted(path.name for path in output_dir.glob(f"{prefix}_*") if path.is_file())


def run_cell(
    ctx: RunContext,
    cell: MatrixCell,
    output_dir: Path,
    settle_s: float = 0.0,
    reporter: Optional[RunReporter] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> CellOutcome:
    """Run one locust invocation and classify its exit status.

    Exit code 0 is a success even if the load test recorded failed requests;
    the failure rate belongs in the report, not in the pipeline status.
    """
    reporter = reporter or RunReporter()
    prefix = cell.search_type.output_prefix
    output_dir.mkdir(parents=True, exist_ok=True)
    argv = build_locust_argv(ctx, cell, output_dir)
    timeout = ctx.run_config.run_time_s + ctx.timeout_grace_s
    started = time.monotonic()
    try:
        result = run_to_completion(
            f"locust[{cell.label}]",
            argv,
            log_path=log_path_for(output_dir, prefix),
            cwd=ctx.root,
            env=child_env(cell_env(ctx, cell)),
            timeout=timeout,
        )
    except ProcessLaunchError as exc:
        outcome = CellOutcome.failed(
            None,
            error=str(exc),
            elapsed_s=time.monotonic() - started,
            artifacts=collect_artifacts(output_dir, prefix),
        )
    else:
        elapsed = time.monotonic() - started
        artifacts = collect_artifacts(output_dir, prefix)
        if result.ok:
            outcome = CellOutcome.success(elapsed_s=elapsed, artifacts=artifacts)
            html = html_report_path(output_dir, prefix)
            if not html.exists():
                reporter.warn(f"{cell.label}: load tool exited 0 but {html.name} was not written")
        else:
            outcome = CellOutcome.failed(result.returncode, elapsed_s=elapsed, artifacts=artifacts)

    if settle_s > 0:
        sleep(settle_s)
    return outcome
