import sys
import textwrap
from pathlib import Path

import pytest
import yaml

from search_perf.automation.settings import build_context

STUB_LOCUST = """
import os
import sys
from pathlib import Path

args = sys.argv[1:]
html = Path(args[args.index("--html") + 1])
csv_prefix = args[args.index("--csv") + 1]
cell = f"{os.environ['PT_LIMIT']}/{os.environ['PT_SEARCH_TYPE']}"
target = Path(os.environ["PT_TARGET_CONFIG"])
with open(os.environ["STUB_CALLS"], "a", encoding="utf-8") as calls:
    calls.write(f"{cell}|{os.environ['PT_USER_COUNT']}|{target.read_text(encoding='utf-8').strip().replace(chr(10), ';')}\\n")
if cell in os.environ.get("STUB_FAIL_CELLS", "").split(","):
    sys.exit(3)
html.write_text("<html>stub</html>", encoding="utf-8")
Path(csv_prefix + "_stats.csv").write_text("Type,Name\\n", encoding="utf-8")
"""

STUB_GENERATOR = """
import sys
from pathlib import Path

assert sys.argv[1:] == ["--type", "multi"], sys.argv
queries = Path(sys.argv[0]).resolve().parent / "queries"
queries.mkdir(exist_ok=True)
for name in ("bm25", "hybrid_01", "hybrid_09", "mixed"):
    for limit in (10, 50, 100, 150, 200):
        (queries / f"queries_{name}_{limit}.json").write_text("[]", encoding="utf-8")
"""

STUB_AGGREGATOR = """
import sys
from pathlib import Path

assert sys.argv[1:] == [], sys.argv
Path("combined_report.html").write_text("<html>combined</html>", encoding="utf-8")
"""

FAILING = """
import sys
sys.exit(1)
"""

SEARCH_TYPES = [
    {"name": "bm25", "label": "BM25", "prefix": "bm25", "template": "queries_bm25_{limit}.json"},
    {"name": "hybrid-low-alpha", "label": "Hybrid alpha=0.1", "prefix": "hybrid_01", "template": "queries_hybrid_01_{limit}.json"},
    {"name": "hybrid-high-alpha", "label": "Hybrid alpha=0.9", "prefix": "hybrid_09", "template": "queries_hybrid_09_{limit}.json"},
    {"name": "vector", "label": "Vector", "prefix": "vector", "template": None},
    {"name": "mixed", "label": "Mixed", "prefix": "mixed", "template": "queries_mixed_{limit}.json"},
]


def write_script(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def matrix_document(root: Path, generator: Path, locust: Path, aggregator: Path) -> dict:
    search_types = []
    for entry in SEARCH_TYPES:
        spec = {
            "name": entry["name"],
            "label": entry["label"],
            "locustfile": f"locustfile_{entry['prefix']}.py",
            "target_config": f"targets/{entry['prefix']}.yaml",
            "output_prefix": entry["prefix"],
        }
        if entry["template"]:
            spec["query_template"] = entry["template"]
        search_types.append(spec)
    return {
        "matrix": "test_matrix",
        "paths": {"reports_root": "out", "queries_dir": "queries", "lock_file": ".run_matrix.lock"},
        "load_profile": {"spawn_rate": 10, "run_time": "1s", "timeout_grace_s": 60},
        "pacing": {"cell_pause_s": 0, "limit_pause_s": 0},
        "limits": [10, 50, 100, 150, 200],
        "corpus": {"type": "multi", "marker": "queries_bm25_200.json", "command": [sys.executable, str(generator)], "cwd": "."},
        "load_tool": {"command": [sys.executable, str(locust)]},
        "aggregator": {"command": [sys.executable, str(aggregator)], "cwd": "agg", "output": "agg/combined_report.html"},
        "search_types": search_types,
    }


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A run root with stub collaborators and a matrix config pointing at them."""
    root = tmp_path / "bench"
    root.mkdir()
    (root / "agg").mkdir()
    (root / "targets").mkdir()
    generator = write_script(root, "generate_all_queries.py", STUB_GENERATOR)
    locust = write_script(root, "stub_locust.py", STUB_LOCUST)
    aggregator = write_script(root, "generate_combined_report.py", STUB_AGGREGATOR)
    matrix_path = root / "matrix.yaml"
    matrix_path.write_text(yaml.safe_dump(matrix_document(root, generator, locust, aggregator), sort_keys=False))
    calls = root / "calls.log"
    monkeypatch.setenv("STUB_CALLS", str(calls))
    monkeypatch.delenv("STUB_FAIL_CELLS", raising=False)
    for name in ("PT_USER_COUNT", "PT_RF_VALUE", "PT_SPAWN_RATE", "PT_RUN_TIME"):
        monkeypatch.delenv(name, raising=False)
    return root


@pytest.fixture
def make_ctx(workspace):
    def _make(env=None, overrides=None):
        return build_context(workspace / "matrix.yaml", root=workspace, env=env or {}, overrides=overrides)

    return _make


@pytest.fixture
def with_corpus(workspace):
    queries = workspace / "queries"
    queries.mkdir(exist_ok=True)
    (queries / "queries_bm25_200.json").write_text("[]", encoding="utf-8")
    return queries


def read_calls(root: Path):
    path = root / "calls.log"
    if not path.exists():
        return []
    return [line.split("|") for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def recorded_calls(workspace):
    """Rows of (cell, user count, target config) written by the stub load tool."""
    return lambda: read_calls(workspace)


@pytest.fixture
def failing_script(workspace):
    return write_script(workspace, "always_fails.py", FAILING)


@pytest.fixture
def patch_matrix(workspace):
    """Merge top-level section overrides into the workspace matrix YAML."""

    def _patch(**sections):
        path = workspace / "matrix.yaml"
        doc = yaml.safe_load(path.read_text())
        for key, value in sections.items():
            if isinstance(value, dict) and isinstance(doc.get(key), dict):
                doc[key].update(value)
            else:
                doc[key] = value
        path.write_text(yaml.safe_dump(doc, sort_keys=False))
        return path

    return _patch
