#!/usr/bin/env python3
"""Per-cell outcomes and the matrix-level summary written after a run."""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from search_perf.automation.settings import MatrixCell, RunConfiguration

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class CellOutcome:
    status: str  # success | failed | skipped
    returncode: Optional[int] = None
    error: Optional[str] = None
    elapsed_s: float = 0.0
    artifacts: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    @classmethod
    def success(cls, elapsed_s: float = 0.0, artifacts: Optional[List[str]] = None) -> "CellOutcome":
        return cls(status=SUCCESS, returncode=0, elapsed_s=elapsed_s, artifacts=list(artifacts or []))

    @classmethod
    def failed(
        cls,
        returncode: Optional[int],
        error: Optional[str] = None,
        elapsed_s: float = 0.0,
        artifacts: Optional[List[str]] = None,
    ) -> "CellOutcome":
        return cls(status=FAILED, returncode=returncode, error=error, elapsed_s=elapsed_s, artifacts=list(artifacts or []))

    @classmethod
    def skipped(cls, error: str) -> "CellOutcome":
        return cls(status=SKIPPED, error=error)


@dataclass
class CellResult:
    cell: MatrixCell
    outcome: CellOutcome

    def to_dict(self) -> Dict:
        return {
            "limit": self.cell.limit,
            "search_type": self.cell.search_type.name,
            "output_prefix": self.cell.search_type.output_prefix,
            **asdict(self.outcome),
        }


@dataclass
class MatrixReport:
    matrix: str
    run_config: RunConfiguration
    results: List[CellResult] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))
    finished_at: Optional[str] = None
    interrupted: bool = False

    def record(self, cell: MatrixCell, outcome: CellOutcome) -> CellResult:
        result = CellResult(cell, outcome)
        self.results.append(result)
        return result

    def finish(self, interrupted: bool = False) -> None:
        self.finished_at = datetime.now().isoformat(timespec="seconds")
        self.interrupted = interrupted

    def counts(self) -> Dict[str, int]:
        return dict(Counter(result.outcome.status for result in self.results))

    def problems(self) -> List[CellResult]:
        return [result for result in self.results if not result.outcome.ok]

    @property
    def cells(self) -> List[MatrixCell]:
        return [result.cell for result in self.results]

    def outcome_for(self, limit: int, search_type: str) -> Optional[CellOutcome]:
        for result in self.results:
            if result.cell.limit == limit and result.cell.search_type.name == search_type:
                return result.outcome
        return None

    def to_dict(self, aggregation=None) -> Dict:
        payload = {
            "matrix": self.matrix,
            "run_config": asdict(self.run_config),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "interrupted": self.interrupted,
            "counts": self.counts(),
            "cells": [result.to_dict() for result in self.results],
        }
        if aggregation is not None:
            payload["aggregation"] = aggregation.to_dict()
        return payload

    def write(self, path: Path, aggregation=None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(aggregation), indent=2) + "\n", encoding="utf-8")
        return path
