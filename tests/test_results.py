"""Tests for matrix outcome bookkeeping and narration of the summary."""

import io
import json

from search_perf.automation.narration import RunReporter, format_duration
from search_perf.automation.report_trigger import AggregationOutcome
from search_perf.automation.results import CellOutcome, MatrixReport
from search_perf.automation.settings import MatrixCell


def test_report_serializes_cells_and_counts(make_ctx, tmp_path):
    ctx = make_ctx()
    report = MatrixReport(ctx.matrix_name, ctx.run_config)
    report.record(MatrixCell(10, ctx.search_type("bm25")), CellOutcome.success(elapsed_s=1.5, artifacts=["bm25_report.html"]))
    report.record(MatrixCell(10, ctx.search_type("vector")), CellOutcome.failed(2))
    report.record(MatrixCell(10, ctx.search_type("mixed")), CellOutcome.skipped("bad target config"))
    report.finish()
    path = report.write(tmp_path / "summary.json", AggregationOutcome(status="ok", returncode=0))
    payload = json.loads(path.read_text())
    assert payload["counts"] == {"success": 1, "failed": 1, "skipped": 1}
    assert payload["cells"][0]["output_prefix"] == "bm25"
    assert payload["cells"][1]["returncode"] == 2
    assert payload["aggregation"]["status"] == "ok"
    assert payload["finished_at"] is not None
    assert [r.cell.label for r in report.problems()] == ["10/vector", "10/mixed"]


def test_closing_lists_problem_cells(make_ctx, tmp_path):
    ctx = make_ctx()
    out, err = io.StringIO(), io.StringIO()
    reporter = RunReporter(tmp_path / "progress.log", stream=out, err_stream=err)
    report = MatrixReport(ctx.matrix_name, ctx.run_config)
    report.record(MatrixCell(100, ctx.search_type("vector")), CellOutcome.failed(1))
    reporter.closing(ctx, report, AggregationOutcome(status="failed", error="aggregator exited with code 2"))
    assert "100/vector: failed (exit code 1)" in err.getvalue()
    assert "aggregator exited with code 2" in err.getvalue()
    assert "reports_200" in out.getvalue()
    assert "MATRIX SUMMARY" in (tmp_path / "progress.log").read_text()


def test_cell_finished_per_status(make_ctx, tmp_path):
    ctx = make_ctx()
    out, err = io.StringIO(), io.StringIO()
    reporter = RunReporter(tmp_path / "progress.log", stream=out, err_stream=err)
    cell = MatrixCell(50, ctx.search_type("mixed"))
    reporter.cell_finished(cell, CellOutcome.success(elapsed_s=125))
    reporter.cell_finished(cell, CellOutcome.skipped("bad target config"))
    reporter.cell_finished(cell, CellOutcome.failed(4))
    assert "Mixed complete (50/mixed, 2m 05s)" in out.getvalue()
    assert "50/mixed skipped: bad target config" in err.getvalue()
    assert "50/mixed failed: exit code 4" in err.getvalue()


def test_format_duration():
    assert format_duration(7600) == "2h 06m"
    assert format_duration(300) == "5m"
    assert format_duration(125) == "2m 05s"
    assert format_duration(3) == "3s"
