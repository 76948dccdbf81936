#!/usr/bin/env python3
"""Per-search-type target configuration consumed by the locustfiles.

Each search type owns one small YAML mapping (``targets/<name>.yaml``). Before a
cell runs, exactly one field is replaced: ``query_file`` for query-driven search
types, ``limit`` for the vector search type. Everything else in the mapping is
carried over untouched, and the file is replaced atomically so the load tool
never observes a half-written configuration.

A locustfile reads its configuration with :func:`read_target_config`, which
defaults to the path exported in ``PT_TARGET_CONFIG``.
"""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Optional

import yaml

from search_perf.automation.settings import MatrixCell, SearchTypeSpec

TARGET_CONFIG_ENV = "PT_TARGET_CONFIG"
QUERY_FILE_FIELD = "query_file"
LIMIT_FIELD = "limit"

_QUERY_FILE_RE = re.compile(r"^queries_[A-Za-z0-9_.\-]+\.json$")


class MutationError(RuntimeError):
    pass


def _load_mapping(path: Path) -> Dict:
    if not path.exists():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise MutationError(f"cannot read target config {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MutationError(f"target config {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise MutationError(f"target config {path} must hold a mapping, found {type(data).__name__}")
    return data


def _dump(data: Dict) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def _write_atomic(path: Path, text: str) -> bool:
    """Replace ``path`` with ``text``; returns False when the content is already identical."""
    try:
        if path.exists() and path.read_text(encoding="utf-8") == text:
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except (OSError, UnicodeDecodeError) as exc:
        raise MutationError(f"failed to write target config {path}: {exc}") from exc
    return True


def _set_field(path: Path, key: str, value) -> bool:
    data = _load_mapping(path)
    data[key] = value
    return _write_atomic(path, _dump(data))


def apply_query_file(target_config: Path, new_file_name: str) -> bool:
    """Point ``target_config`` at a query corpus file; returns True if the file changed."""
    name = str(new_file_name or "").strip()
    if not _QUERY_FILE_RE.match(name):
        raise MutationError(f"query file name {new_file_name!r} does not match queries_*.json")
    return _set_field(Path(target_config), QUERY_FILE_FIELD, name)


def apply_limit(target_config: Path, new_limit: int) -> bool:
    if isinstance(new_limit, bool) or not isinstance(new_limit, int) or new_limit <= 0:
        raise MutationError(f"limit must be a positive integer, got {new_limit!r}")
    return _set_field(Path(target_config), LIMIT_FIELD, new_limit)


def apply_cell(target_config: Path, spec: SearchTypeSpec, cell: MatrixCell) -> bool:
    if spec.uses_query_file:
        return apply_query_file(target_config, spec.query_file(cell.limit))
    return apply_limit(target_config, cell.limit)


def describe_cell_target(spec: SearchTypeSpec, limit: int) -> Dict[str, object]:
    if spec.uses_query_file:
        return {QUERY_FILE_FIELD: spec.query_file(limit)}
    return {LIMIT_FIELD: limit}


def read_target_config(path: Optional[Path] = None) -> Dict:
    if path is None:
        env_path = os.environ.get(TARGET_CONFIG_ENV)
        if not env_path:
            raise MutationError(f"{TARGET_CONFIG_ENV} is not set and no target config path was given")
        path = Path(env_path)
    path = Path(path)
    if not path.exists():
        raise MutationError(f"target config not found: {path}")
    return _load_mapping(path)
