#!/usr/bin/env python3
"""Make sure the query corpus exists before any matrix cell runs."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from search_perf.automation.narration import RunReporter
from search_perf.automation.process_utils import ProcessLaunchError, child_env, run_to_completion
from search_perf.automation.settings import RunContext


class PrerequisiteError(RuntimeError):
    pass


class CorpusGenerationFailed(PrerequisiteError):
    pass


def expected_corpus_files(ctx: RunContext) -> List[Path]:
    return [
        ctx.queries_dir / spec.query_file(limit)
        for spec in ctx.search_types
        if spec.uses_query_file
        for limit in ctx.limits
    ]


def missing_corpus_files(ctx: RunContext) -> List[Path]:
    return [path for path in expected_corpus_files(ctx) if not path.exists()]


def corpus_present(ctx: RunContext) -> bool:
    return ctx.corpus_marker_path.exists()


def generator_argv(ctx: RunContext, corpus_type: Optional[str] = None) -> List[str]:
    return [*ctx.corpus.argv, "--type", corpus_type or ctx.corpus_type]


def ensure_corpus(
    ctx: RunContext,
    corpus_type: Optional[str] = None,
    reporter: Optional[RunReporter] = None,
) -> bool:
    """Generate the corpus if its marker file is absent.

    Returns True when the generator ran, False when the corpus was already in
    place. The marker is checked for existence only; the generator is trusted to
    produce the whole file set or fail.
    """
    reporter = reporter or RunReporter()
    marker = ctx.corpus_marker_path
    if marker.exists():
        reporter.info(f"query files found ({marker})")
        return False

    corpus_type = corpus_type or ctx.corpus_type
    reporter.warn(f"query files not found in {ctx.queries_dir}")
    argv = generator_argv(ctx, corpus_type)
    reporter.info(f"generating {corpus_type} query files: {' '.join(argv)} (cwd={ctx.corpus.cwd})")
    try:
        result = run_to_completion("corpus-generator", argv, cwd=ctx.corpus.cwd, env=child_env())
    except ProcessLaunchError as exc:
        raise CorpusGenerationFailed(str(exc)) from exc
    if not result.ok:
        raise CorpusGenerationFailed(f"corpus generator exited with code {result.returncode}")
    if not marker.exists():
        raise CorpusGenerationFailed(f"corpus generator succeeded but {marker} is still missing")

    missing = missing_corpus_files(ctx)
    if missing:
        reporter.warn(f"{len(missing)} expected query files are missing, e.g. {missing[0].name}")
    reporter.info("all query files generated successfully")
    return True
