from __future__ import annotations

import re
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from kiln.cli import app

runner = CliRunner()


def _write_config(path: Path, content: str) -> Path:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")
    return path


def _extract_run_id(output: str) -> str:
    match = re.search(r"run_id:\s*([0-9]{8}_[0-9]{6}_[0-9a-f]{6})", output)
    assert match is not None, output
    return match.group(1)


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("KILN_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("KILN_DB_PATH", raising=False)
    monkeypatch.setenv("COLUMNS", "200")
    root = tmp_path / "project"
    root.mkdir()
    _write_config(
        root / "kiln.yml",
        """
        kiln:
          name: demo
          tasks: [report]
        tasks:
          build:
            params:
              --mode:
                default: debug
                choices: [debug, release]
            bash: |
              echo "mode=$mode"
              kiln_set_output mode "$mode"
          report:
            before: [build]
            params:
              --mode:
                default: debug
            bash: echo "report $(kiln_get_input build.mode)"
          broken:
            bash: exit 4
        """,
    )
    monkeypatch.chdir(root)
    return root


def test_run_default_tasks_and_skip_on_rerun(project: Path, tmp_path: Path) -> None:
    first = runner.invoke(app, ["run"])
    assert first.exit_code == 0, first.output
    assert "report | report debug" in first.output
    run_id = _extract_run_id(first.output)
    run_dirs = list((tmp_path / "home").glob(f"demo-*/{run_id}"))
    assert len(run_dirs) == 1
    assert (run_dirs[0] / "summary.md").is_file()
    assert (run_dirs[0] / "run.yaml").is_file()

    second = runner.invoke(app, ["run"])
    assert second.exit_code == 0, second.output
    assert "skipped=2" in second.output


def test_run_passes_params_to_dependencies(project: Path) -> None:
    result = runner.invoke(app, ["run", "--force", "report", "--mode", "release"])
    assert result.exit_code == 0, result.output
    assert "build | mode=release" in result.output
    assert "report | report release" in result.output


def test_run_failure_exit_code(project: Path) -> None:
    result = runner.invoke(app, ["run", "broken"])
    assert result.exit_code == 1
    assert "status: failed" in result.output


def test_run_unknown_task_is_config_error(project: Path) -> None:
    result = runner.invoke(app, ["run", "deploy"])
    assert result.exit_code == 2
    assert "unknown task 'deploy'" in result.output


def test_run_invalid_choice_is_config_error(project: Path) -> None:
    result = runner.invoke(app, ["run", "build", "--mode", "fast"])
    assert result.exit_code == 2
    assert "invalid value 'fast'" in result.output


def test_run_cycle_is_config_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KILN_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("COLUMNS", "200")
    config_path = _write_config(
        tmp_path / "kiln.yml",
        """
        tasks:
          a:
            before: [b]
            bash: touch spawned
          b:
            before: [a]
            bash: touch spawned
        """,
    )
    result = runner.invoke(app, ["run", "-f", str(config_path), "a"])
    assert result.exit_code == 2
    assert "dependency cycle detected" in result.output
    assert not (tmp_path / "spawned").exists()
    assert not (tmp_path / "home").exists()


def test_graph_prints_execution_order(project: Path) -> None:
    result = runner.invoke(app, ["graph", "report"])
    assert result.exit_code == 0, result.output
    assert "Execution Order" in result.output
    assert result.output.index("build") < result.output.index("report")
    assert "broken" not in result.output


def test_history_stats_and_clean(project: Path) -> None:
    assert runner.invoke(app, ["run"]).exit_code == 0
    assert runner.invoke(app, ["run", "broken"]).exit_code == 1

    history = runner.invoke(app, ["history"])
    assert history.exit_code == 0, history.output
    assert "success" in history.output
    assert "failed" in history.output

    stats = runner.invoke(app, ["stats", "--task", "broken"])
    assert stats.exit_code == 0, stats.output
    assert "broken" in stats.output
    assert "0.0%" in stats.output

    preview = runner.invoke(app, ["clean", "--keep-days", "0", "--dry-run"])
    assert preview.exit_code == 0, preview.output
    assert "would remove 2 run(s)" in preview.output

    cleaned = runner.invoke(app, ["clean", "--keep-days", "0"])
    assert cleaned.exit_code == 0, cleaned.output
    assert "removed 2 run(s)" in cleaned.output
    assert "would remove 0 run(s)" in runner.invoke(app, ["clean", "--keep-days", "0", "--dry-run"]).output


def test_missing_config_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["graph"])
    assert result.exit_code == 2
    assert "no kiln.yml found" in result.output

