#!/usr/bin/env python3
"""Matrix definition, run configuration and the RunContext handed to every stage.

Values resolve in increasing precedence: matrix YAML, ``PT_*`` environment
variables, then explicit overrides (CLI flags). Relative paths in the YAML are
anchored at the run root, never at the process working directory.
"""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

CONFIG_ROOT = Path(__file__).resolve().parents[1] / "configs" / "matrix"
DEFAULT_MATRIX_PATH = CONFIG_ROOT / "multi_collection.yaml"
ALLOWED_MATRIX_KEYS = {
    "matrix",
    "description",
    "paths",
    "load_profile",
    "pacing",
    "limits",
    "corpus",
    "load_tool",
    "aggregator",
    "search_types",
}

DEFAULT_USER_COUNT = 100
DEFAULT_SPAWN_RATE = 10
DEFAULT_RUN_TIME = "5m"
DEFAULT_RF_VALUE = "current"
DEFAULT_LIMITS = (10, 50, 100, 150, 200)
DEFAULT_CELL_PAUSE_S = 3.0
DEFAULT_LIMIT_PAUSE_S = 10.0
DEFAULT_TIMEOUT_GRACE_S = 120.0

ENV_VARS = {
    "user_count": "PT_USER_COUNT",
    "rf_value": "PT_RF_VALUE",
    "spawn_rate": "PT_SPAWN_RATE",
    "run_time": "PT_RUN_TIME",
}

_DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


class MatrixConfigError(ValueError):
    pass


def parse_duration(text) -> int:
    """Convert a locust ``--run-time`` value ("300", "90s", "5m", "1h30m") to seconds."""
    value = str(text).strip().lower()
    if value.isdigit():
        seconds = int(value)
    else:
        match = _DURATION_RE.match(value)
        if not value or match is None:
            raise MatrixConfigError(f"invalid run time {text!r}; expected e.g. 90s, 5m or 1h30m")
        hours, minutes, secs = (int(group) if group else 0 for group in match.groups())
        seconds = hours * 3600 + minutes * 60 + secs
    if seconds <= 0:
        raise MatrixConfigError(f"run time must be positive, got {text!r}")
    return seconds


def _positive_int(value, label: str) -> int:
    if isinstance(value, bool):
        raise MatrixConfigError(f"{label} must be a positive integer, got {value!r}")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise MatrixConfigError(f"{label} must be a positive integer, got {value!r}") from None
    if number <= 0:
        raise MatrixConfigError(f"{label} must be a positive integer, got {value!r}")
    return number


def _non_negative_float(value, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MatrixConfigError(f"{label} must be a number, got {value!r}") from None
    if number < 0:
        raise MatrixConfigError(f"{label} must not be negative, got {value!r}")
    return number


def parse_csv_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class RunConfiguration:
    user_count: int = DEFAULT_USER_COUNT
    spawn_rate: int = DEFAULT_SPAWN_RATE
    run_time: str = DEFAULT_RUN_TIME
    rf_value: str = DEFAULT_RF_VALUE

    def __post_init__(self):
        _positive_int(self.user_count, "user_count")
        _positive_int(self.spawn_rate, "spawn_rate")
        parse_duration(self.run_time)

    @property
    def run_time_s(self) -> int:
        return parse_duration(self.run_time)

    def as_env(self) -> Dict[str, str]:
        return {
            "PT_USER_COUNT": str(self.user_count),
            "PT_RF_VALUE": self.rf_value,
        }


def resolve_run_configuration(
    profile: Optional[Mapping] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping] = None,
) -> RunConfiguration:
    env = os.environ if env is None else env
    profile = profile or {}
    values = {
        "user_count": profile.get("user_count", DEFAULT_USER_COUNT),
        "spawn_rate": profile.get("spawn_rate", DEFAULT_SPAWN_RATE),
        "run_time": profile.get("run_time", DEFAULT_RUN_TIME),
        "rf_value": profile.get("rf_value", DEFAULT_RF_VALUE),
    }
    labels = {key: key for key in values}
    for key, name in ENV_VARS.items():
        raw = env.get(name)
        if raw is not None and str(raw).strip() != "":
            values[key] = raw
            labels[key] = name
    for key, value in (overrides or {}).items():
        if key in values and value is not None:
            values[key] = value
            labels[key] = f"--{key.replace('_', '-')}"
    return RunConfiguration(
        user_count=_positive_int(values["user_count"], labels["user_count"]),
        spawn_rate=_positive_int(values["spawn_rate"], labels["spawn_rate"]),
        run_time=str(values["run_time"]).strip(),
        rf_value=str(values["rf_value"]),
    )


@dataclass(frozen=True)
class SearchTypeSpec:
    name: str
    label: str
    locustfile: str
    target_config: str
    output_prefix: str
    query_template: Optional[str] = None

    @property
    def uses_query_file(self) -> bool:
        return bool(self.query_template)

    def query_file(self, limit: int) -> str:
        if not self.query_template:
            raise ValueError(f"search type {self.name} has no query file; it is driven by limit only")
        return self.query_template.format(limit=limit)


@dataclass(frozen=True)
class MatrixCell:
    limit: int
    search_type: SearchTypeSpec

    @property
    def label(self) -> str:
        return f"{self.limit}/{self.search_type.name}"


@dataclass(frozen=True)
class CollaboratorSpec:
    argv: Tuple[str, ...]
    cwd: Path
    output: Optional[Path] = None


@dataclass(frozen=True)
class PacingSpec:
    cell_pause_s: float = DEFAULT_CELL_PAUSE_S
    limit_pause_s: float = DEFAULT_LIMIT_PAUSE_S


@dataclass(frozen=True)
class RunContext:
    root: Path
    matrix_name: str
    run_config: RunConfiguration
    limits: Tuple[int, ...]
    search_types: Tuple[SearchTypeSpec, ...]
    reports_root: Path
    queries_dir: Path
    lock_path: Path
    corpus_type: str
    corpus_marker: str
    corpus: CollaboratorSpec
    load_tool: CollaboratorSpec
    aggregator: CollaboratorSpec
    pacing: PacingSpec = field(default_factory=PacingSpec)
    timeout_grace_s: float = DEFAULT_TIMEOUT_GRACE_S

    @property
    def cell_count(self) -> int:
        return len(self.limits) * len(self.search_types)

    @property
    def corpus_marker_path(self) -> Path:
        return self.queries_dir / self.corpus_marker

    @property
    def combined_report(self) -> Optional[Path]:
        return self.aggregator.output

    @property
    def summary_path(self) -> Path:
        return self.reports_root / "matrix_result.json"

    @property
    def progress_log(self) -> Path:
        return self.reports_root / "progress.log"

    def report_dir(self, limit: int) -> Path:
        return self.reports_root / f"reports_{limit}"

    def target_config_path(self, spec: SearchTypeSpec) -> Path:
        return self.root / spec.target_config

    def locustfile_path(self, spec: SearchTypeSpec) -> Path:
        return self.root / spec.locustfile

    def search_type(self, name: str) -> SearchTypeSpec:
        for spec in self.search_types:
            if spec.name == name:
                return spec
        raise MatrixConfigError(f"unknown search type {name!r}; known: {[s.name for s in self.search_types]}")

    def estimated_duration_s(self) -> float:
        cells = self.cell_count
        if not cells:
            return 0.0
        per_limit_pauses = max(0, len(self.search_types) - 1) * self.pacing.cell_pause_s
        return (
            cells * self.run_config.run_time_s
            + len(self.limits) * per_limit_pauses
            + max(0, len(self.limits) - 1) * self.pacing.limit_pause_s
        )

    def select(
        self,
        limits: Optional[Iterable[int]] = None,
        search_types: Optional[Iterable[str]] = None,
    ) -> "RunContext":
        """Narrow the matrix to a subset while keeping the configured order."""
        chosen_limits = self.limits
        if limits:
            wanted = [_positive_int(value, "limit") for value in limits]
            unknown = sorted(set(wanted) - set(self.limits))
            if unknown:
                raise MatrixConfigError(f"limits {unknown} are not part of matrix {self.matrix_name}: {list(self.limits)}")
            chosen_limits = tuple(limit for limit in self.limits if limit in wanted)
        chosen_types = self.search_types
        if search_types:
            wanted_names = list(search_types)
            for name in wanted_names:
                self.search_type(name)
            chosen_types = tuple(spec for spec in self.search_types if spec.name in wanted_names)
        return replace(self, limits=chosen_limits, search_types=chosen_types)


def _warn_unknown_keys(label: str, mapping: Dict) -> None:
    unknown = sorted(set(mapping.keys()) - ALLOWED_MATRIX_KEYS)
    if unknown:
        print(
            f"[settings] warning: unrecognized top-level keys {unknown} in {label}; they will be ignored",
            file=sys.stderr,
        )


def load_matrix(path: Optional[Path] = None) -> Dict:
    matrix_path = Path(path) if path else DEFAULT_MATRIX_PATH
    if not matrix_path.exists():
        raise MatrixConfigError(f"matrix config not found: {matrix_path}")
    try:
        raw = yaml.safe_load(matrix_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise MatrixConfigError(f"matrix config {matrix_path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise MatrixConfigError(f"matrix config {matrix_path} must be a mapping")
    _warn_unknown_keys(str(matrix_path), raw)
    return raw


def _resolve(root: Path, value, default: str) -> Path:
    path = Path(str(value if value is not None else default))
    if not path.is_absolute():
        path = root / path
    return path


def _argv(value, label: str) -> Tuple[str, ...]:
    if isinstance(value, str):
        parts = value.split()
    elif isinstance(value, (list, tuple)):
        parts = [str(part) for part in value]
    else:
        parts = []
    if not parts:
        raise MatrixConfigError(f"{label}.command must be a non-empty command")
    return tuple(parts)


def _collaborator(root: Path, raw: Optional[Dict], label: str, with_output: bool = False) -> CollaboratorSpec:
    raw = raw or {}
    output = None
    if with_output and raw.get("output"):
        output = _resolve(root, raw["output"], "")
    return CollaboratorSpec(
        argv=_argv(raw.get("command"), label),
        cwd=_resolve(root, raw.get("cwd"), "."),
        output=output,
    )


def _parse_search_types(entries) -> Tuple[SearchTypeSpec, ...]:
    if not isinstance(entries, list) or not entries:
        raise MatrixConfigError("search_types must be a non-empty list")
    specs: List[SearchTypeSpec] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise MatrixConfigError(f"search type entry needs a name: {entry!r}")
        name = str(entry["name"])
        missing = [key for key in ("locustfile", "target_config") if not entry.get(key)]
        if missing:
            raise MatrixConfigError(f"search type {name} is missing {missing}")
        template = entry.get("query_template")
        if template and "{limit}" not in str(template):
            raise MatrixConfigError(f"search type {name}: query_template must contain {{limit}}")
        specs.append(
            SearchTypeSpec(
                name=name,
                label=str(entry.get("label") or name),
                locustfile=str(entry["locustfile"]),
                target_config=str(entry["target_config"]),
                output_prefix=str(entry.get("output_prefix") or name),
                query_template=str(template) if template else None,
            )
        )
    names = [spec.name for spec in specs]
    prefixes = [spec.output_prefix for spec in specs]
    if len(set(names)) != len(names) or len(set(prefixes)) != len(prefixes):
        raise MatrixConfigError("search type names and output prefixes must be unique")
    return tuple(specs)


def _parse_limits(raw) -> Tuple[int, ...]:
    values = raw if raw is not None else list(DEFAULT_LIMITS)
    if not isinstance(values, list) or not values:
        raise MatrixConfigError("limits must be a non-empty list")
    limits = tuple(_positive_int(value, "limit") for value in values)
    if len(set(limits)) != len(limits):
        raise MatrixConfigError(f"limits must be unique: {list(limits)}")
    return limits


def build_context(
    matrix_path: Optional[Path] = None,
    root: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping] = None,
) -> RunContext:
    raw = load_matrix(matrix_path)
    root_path = Path(root).resolve() if root else Path.cwd().resolve()
    paths = raw.get("paths") or {}
    profile = raw.get("load_profile") or {}
    pacing = raw.get("pacing") or {}
    corpus = raw.get("corpus") or {}
    if not corpus.get("marker"):
        raise MatrixConfigError("corpus.marker is required")
    return RunContext(
        root=root_path,
        matrix_name=str(raw.get("matrix") or Path(matrix_path or DEFAULT_MATRIX_PATH).stem),
        run_config=resolve_run_configuration(profile, env=env, overrides=overrides),
        limits=_parse_limits(raw.get("limits")),
        search_types=_parse_search_types(raw.get("search_types")),
        reports_root=_resolve(root_path, paths.get("reports_root"), "reports"),
        queries_dir=_resolve(root_path, paths.get("queries_dir"), "queries"),
        lock_path=_resolve(root_path, paths.get("lock_file"), ".run_matrix.lock"),
        corpus_type=str(corpus.get("type") or "multi"),
        corpus_marker=str(corpus["marker"]),
        corpus=_collaborator(root_path, corpus, "corpus"),
        load_tool=_collaborator(root_path, raw.get("load_tool"), "load_tool"),
        aggregator=_collaborator(root_path, raw.get("aggregator"), "aggregator", with_output=True),
        pacing=PacingSpec(
            cell_pause_s=_non_negative_float(pacing.get("cell_pause_s", DEFAULT_CELL_PAUSE_S), "pacing.cell_pause_s"),
            limit_pause_s=_non_negative_float(pacing.get("limit_pause_s", DEFAULT_LIMIT_PAUSE_S), "pacing.limit_pause_s"),
        ),
        timeout_grace_s=_non_negative_float(
            profile.get("timeout_grace_s", DEFAULT_TIMEOUT_GRACE_S), "load_profile.timeout_grace_s"
        ),
    )
