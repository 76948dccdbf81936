"""Tests for matrix loading and run configuration resolution."""

import pytest

from search_perf.automation.matrix import iter_cells
from search_perf.automation.settings import (
    DEFAULT_MATRIX_PATH,
    MatrixConfigError,
    RunConfiguration,
    build_context,
    parse_csv_list,
    parse_duration,
    resolve_run_configuration,
)


class TestRunConfiguration:
    def test_defaults(self):
        cfg = resolve_run_configuration({}, env={})
        assert cfg == RunConfiguration(user_count=100, spawn_rate=10, run_time="5m", rf_value="current")
        assert cfg.run_time_s == 300

    def test_env_overrides_profile(self):
        cfg = resolve_run_configuration(
            {"user_count": 20, "run_time": "1m"},
            env={"PT_USER_COUNT": "50", "PT_RF_VALUE": "3", "PT_RUN_TIME": "90s"},
        )
        assert cfg.user_count == 50
        assert cfg.rf_value == "3"
        assert cfg.run_time_s == 90
        assert cfg.as_env() == {"PT_USER_COUNT": "50", "PT_RF_VALUE": "3"}

    def test_blank_env_falls_back(self):
        assert resolve_run_configuration({}, env={"PT_USER_COUNT": "  "}).user_count == 100

    def test_overrides_win_over_env(self):
        cfg = resolve_run_configuration({}, env={"PT_USER_COUNT": "50"}, overrides={"user_count": 7, "spawn_rate": None})
        assert cfg.user_count == 7
        assert cfg.spawn_rate == 10

    @pytest.mark.parametrize("value", ["zero", "0", "-5", "1.5"])
    def test_bad_user_count_names_variable(self, value):
        with pytest.raises(MatrixConfigError, match="PT_USER_COUNT"):
            resolve_run_configuration({}, env={"PT_USER_COUNT": value})

    def test_bad_run_time(self):
        with pytest.raises(MatrixConfigError):
            resolve_run_configuration({}, env={"PT_RUN_TIME": "soon"})


@pytest.mark.parametrize(
    "text,seconds",
    [("300", 300), ("90s", 90), ("5m", 300), ("1h30m", 5400), ("2h", 7200), (" 10S ", 10)],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == seconds


@pytest.mark.parametrize("text", ["", "0", "0s", "5 minutes", "m"])
def test_parse_duration_rejects(text):
    with pytest.raises(MatrixConfigError):
        parse_duration(text)


def test_parse_csv_list():
    assert parse_csv_list(" bm25, ,vector ") == ["bm25", "vector"]
    assert parse_csv_list(None) == []


def test_shipped_matrix(tmp_path):
    ctx = build_context(DEFAULT_MATRIX_PATH, root=tmp_path, env={})
    assert ctx.matrix_name == "multi_collection"
    assert ctx.limits == (10, 50, 100, 150, 200)
    assert [spec.name for spec in ctx.search_types] == [
        "bm25",
        "hybrid-low-alpha",
        "hybrid-high-alpha",
        "vector",
        "mixed",
    ]
    assert ctx.cell_count == 25
    assert ctx.corpus_marker_path == tmp_path / "queries" / "queries_bm25_200.json"
    assert ctx.pacing.cell_pause_s == 3
    assert ctx.pacing.limit_pause_s == 10
    vector = ctx.search_type("vector")
    assert not vector.uses_query_file
    assert ctx.search_type("mixed").query_file(150) == "queries_mixed_150.json"


class TestContext:
    def test_paths_anchor_at_root(self, make_ctx, workspace):
        ctx = make_ctx()
        assert ctx.root == workspace.resolve()
        assert ctx.reports_root == workspace / "out"
        assert ctx.report_dir(50) == workspace / "out" / "reports_50"
        assert ctx.summary_path == workspace / "out" / "matrix_result.json"
        assert ctx.target_config_path(ctx.search_type("bm25")) == workspace / "targets" / "bm25.yaml"
        assert ctx.combined_report == workspace / "agg" / "combined_report.html"

    def test_select_keeps_configured_order(self, make_ctx):
        ctx = make_ctx().select([200, 10], ["vector", "bm25"])
        assert ctx.limits == (10, 200)
        assert [spec.name for spec in ctx.search_types] == ["bm25", "vector"]
        assert [cell.label for cell in iter_cells(ctx.limits, ctx.search_types)] == [
            "10/bm25",
            "10/vector",
            "200/bm25",
            "200/vector",
        ]

    def test_select_rejects_unknown(self, make_ctx):
        with pytest.raises(MatrixConfigError, match="75"):
            make_ctx().select([75], None)
        with pytest.raises(MatrixConfigError, match="unknown search type"):
            make_ctx().select(None, ["semantic"])

    def test_estimated_duration(self, make_ctx, patch_matrix):
        patch_matrix(pacing={"cell_pause_s": 3, "limit_pause_s": 10})
        ctx = make_ctx(overrides={"run_time": "5m"})
        # 25 runs, 4 cell pauses per limit, 4 limit pauses.
        assert ctx.estimated_duration_s() == 25 * 300 + 5 * 4 * 3 + 4 * 10

    def test_unknown_top_level_key_warns(self, make_ctx, patch_matrix, capsys):
        patch_matrix(colour="blue")
        make_ctx()
        assert "unrecognized top-level keys ['colour']" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "sections,message",
        [
            ({"limits": [10, 10]}, "unique"),
            ({"limits": []}, "non-empty"),
            ({"search_types": []}, "non-empty"),
            ({"corpus": {"marker": ""}}, "corpus.marker"),
            ({"load_tool": {"command": []}}, "load_tool.command"),
            ({"pacing": {"cell_pause_s": -1}}, "cell_pause_s"),
        ],
    )
    def test_invalid_matrix(self, make_ctx, patch_matrix, sections, message):
        patch_matrix(**sections)
        with pytest.raises(MatrixConfigError, match=message):
            make_ctx()

    def test_template_needs_limit_placeholder(self, make_ctx, patch_matrix):
        patch_matrix(
            search_types=[
                {"name": "bm25", "locustfile": "l.py", "target_config": "t.yaml", "query_template": "queries_bm25.json"}
            ]
        )
        with pytest.raises(MatrixConfigError, match="limit"):
            make_ctx()

    def test_missing_matrix_file(self, tmp_path):
        with pytest.raises(MatrixConfigError, match="not found"):
            build_context(tmp_path / "nope.yaml", root=tmp_path, env={})

    def test_non_mapping_matrix(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(MatrixConfigError, match="mapping"):
            build_context(path, root=tmp_path, env={})
