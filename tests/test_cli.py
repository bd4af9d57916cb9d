from __future__ import annotations

import json
import os
import shlex
import signal
import sys
import time
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from trial_harness import main as main_module
from trial_harness.harness.backend.base import TrialRequest
from trial_harness.harness.controllers import HarnessCliController
from trial_harness.harness.models import OutcomeStatus, TrialKey
from trial_harness.harness.store import DB_FILENAME, TrialStore
from trial_harness.main import trial_harness

pytestmark = [
    allure.epic("Trial Harness"),
    allure.feature("CLI"),
]


def _flat(output: str) -> str:
    """Error text with rich panel borders and line wrapping removed."""

    stripped = "".join(" " if char in "│╭╮╰╯─" else char for char in output)
    return " ".join(stripped.split())


def _use_runner(monkeypatch, runner) -> None:
    monkeypatch.setattr(
        main_module,
        "HARNESS_CONTROLLER",
        HarnessCliController(runner_factory=lambda _settings, _template: runner),
    )


def _run_args(tasks_dir: Path, save: Path, *extra: str) -> list[str]:
    return [
        "run",
        "-n",
        "2",
        "--save",
        str(save),
        "--model",
        "m1",
        "--model",
        "m2",
        "--tasks-dir",
        str(tasks_dir),
        "--command",
        "unused {task}",
        *extra,
        "[AB]",
    ]


def test_run_then_resume_is_idempotent(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
    scripted_runner,
) -> None:
    runner = scripted_runner(fail=("B/m2#*",))
    _use_runner(monkeypatch, runner)
    save = tmp_path / "save"
    cli = CliRunner()

    first = cli.invoke(trial_harness, _run_args(tasks_dir, save))

    assert first.exit_code == 0, first.output
    assert "Running 8 trials (skipped=0 concurrency=4)" in first.output
    assert "Run summary: planned=8 executed=8 passed=6 failed=2 errored=0" in first.output
    assert "m2: passed=2 failed=2 errored=0 total=4 pass_rate=50.00%" in first.output
    assert f"Results saved to: {save}" in first.output
    assert (save / DB_FILENAME).is_file()

    second = cli.invoke(trial_harness, _run_args(tasks_dir, save, "--resume"))

    assert second.exit_code == 0, second.output
    assert "planned=0 executed=0" in second.output
    assert "skipped=8" in second.output
    assert len(runner.calls) == 8


def test_run_exit_code_is_zero_even_when_every_trial_fails(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
    scripted_runner,
) -> None:
    _use_runner(monkeypatch, scripted_runner(fail=("*",)))

    result = CliRunner().invoke(trial_harness, _run_args(tasks_dir, tmp_path / "save"))

    assert result.exit_code == 0, result.output
    assert "passed=0 failed=8" in result.output


def test_run_json_output_is_machine_readable(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
    scripted_runner,
) -> None:
    _use_runner(monkeypatch, scripted_runner(error=("A/m1#0",)))

    result = CliRunner().invoke(
        trial_harness,
        _run_args(tasks_dir, tmp_path / "save", "--output", "json", "--concurrency", "2"),
    )

    assert result.exit_code == 0, result.output
    decoded = [json.loads(line) for line in result.output.splitlines() if line.strip()]
    names = [item["event"] for item in decoded]
    assert names[0] == "run_started"
    assert names.count("trial_finished") == 8
    assert names[-2] == "run_finished"
    summary = decoded[-1]
    assert summary["event"] == "summary"
    assert summary["errored"] == 1
    assert summary["models"]["m1"]["error_causes"] == {"backend_transient": 1}


def test_quiet_output_prints_only_summary(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
    scripted_runner,
) -> None:
    _use_runner(monkeypatch, scripted_runner())

    result = CliRunner().invoke(
        trial_harness,
        _run_args(tasks_dir, tmp_path / "save", "--output", "quiet"),
    )

    assert result.exit_code == 0, result.output
    assert "Running" not in result.output
    assert result.output.splitlines()[0].startswith("Run summary: planned=8")


def test_dry_run_lists_pending_without_running(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
    scripted_runner,
) -> None:
    runner = scripted_runner()
    _use_runner(monkeypatch, runner)

    result = CliRunner().invoke(
        trial_harness,
        _run_args(tasks_dir, tmp_path / "save", "--dry-run"),
    )

    assert result.exit_code == 0, result.output
    assert "Dry run: 8 of 8 trials pending (skipped=0 stale=0)" in result.output
    assert "  A/m1#0" in result.output
    assert runner.calls == []


def test_run_requires_models(tmp_path: Path, tasks_dir: Path) -> None:
    result = CliRunner().invoke(
        trial_harness,
        ["run", "-n", "1", "--save", str(tmp_path / "save"), "--tasks-dir", str(tasks_dir), "*"],
    )

    assert result.exit_code == 1
    assert "At least one model is required" in _flat(result.output)


def test_run_reports_glob_without_matches(tmp_path: Path, tasks_dir: Path) -> None:
    result = CliRunner().invoke(
        trial_harness,
        [
            "run",
            "-n",
            "1",
            "--save",
            str(tmp_path / "save"),
            "--model",
            "m1",
            "--tasks-dir",
            str(tasks_dir),
            "--dry-run",
            "zzz-*",
        ],
    )

    assert result.exit_code == 1
    assert "No tasks match 'zzz-*'" in _flat(result.output)
    assert "tasks directory" in _flat(result.output)


def test_run_requires_command_template(tmp_path: Path, tasks_dir: Path) -> None:
    result = CliRunner().invoke(
        trial_harness,
        [
            "run",
            "-n",
            "1",
            "--save",
            str(tmp_path / "save"),
            "--model",
            "m1",
            "--tasks-dir",
            str(tasks_dir),
            "A",
        ],
    )

    assert result.exit_code == 1
    assert "TRIAL_HARNESS_COMMAND_TEMPLATE" in _flat(result.output)


def test_run_rejects_corrupt_store(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
    scripted_runner,
) -> None:
    runner = scripted_runner()
    _use_runner(monkeypatch, runner)
    save = tmp_path / "save"
    save.mkdir()
    (save / DB_FILENAME).write_bytes(b"\x00garbage" * 256)

    result = CliRunner().invoke(trial_harness, _run_args(tasks_dir, save, "--resume"))

    assert result.exit_code == 1
    assert "unreadable" in _flat(result.output)
    assert runner.calls == []


def test_run_rejects_invalid_environment_settings(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
) -> None:
    monkeypatch.setenv("TRIAL_HARNESS_CONCURRENCY", "0")

    result = CliRunner().invoke(trial_harness, _run_args(tasks_dir, tmp_path / "save"))

    assert result.exit_code == 1
    assert "TRIAL_HARNESS_CONCURRENCY must be >= 1" in _flat(result.output)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_interrupted_run_exits_130_and_resumes(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
    scripted_runner,
) -> None:
    def _interrupt(request: TrialRequest) -> None:
        if request.key != TrialKey("A", "m2", 0):
            return
        os.kill(os.getpid(), signal.SIGINT)
        deadline = time.monotonic() + 5
        while not request.stop_requested() and time.monotonic() < deadline:
            time.sleep(0.01)

    _use_runner(monkeypatch, scripted_runner(on_call=_interrupt))
    save = tmp_path / "save"

    interrupted = CliRunner().invoke(
        trial_harness,
        _run_args(tasks_dir, save, "--concurrency", "1"),
    )

    assert interrupted.exit_code == 130, interrupted.output
    assert "Run interrupted (received SIGINT)" in interrupted.output
    assert "not_started=5" in interrupted.output

    _use_runner(monkeypatch, scripted_runner())
    resumed = CliRunner().invoke(trial_harness, _run_args(tasks_dir, save, "--resume"))

    assert resumed.exit_code == 0, resumed.output
    assert "planned=5 executed=5" in resumed.output
    with TrialStore.open(save) as store:
        assert store.count() == 8


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_agent_killed_by_the_same_ctrl_c_is_not_recorded(
    tmp_path: Path,
    tasks_dir: Path,
) -> None:
    # Terminal Ctrl-C delivers SIGINT to the harness and to the agent alike.
    script = (
        "import os, signal, time; "
        "os.kill(os.getppid(), signal.SIGINT); "
        "time.sleep(0.5); "
        "os.kill(os.getpid(), signal.SIGINT); "
        "time.sleep(5)"
    )
    save = tmp_path / "save"

    result = CliRunner().invoke(
        trial_harness,
        [
            "run",
            "-n",
            "1",
            "--save",
            str(save),
            "--model",
            "m1",
            "--tasks-dir",
            str(tasks_dir),
            "--command",
            f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}",
            "--concurrency",
            "1",
            "A",
        ],
    )

    assert result.exit_code == 130, result.output
    assert "abandoned=1" in result.output
    assert "Abandoned A/m1#0" in result.output
    with TrialStore.open(save) as store:
        assert store.get(TrialKey("A", "m1", 0)) is None
        assert store.count() == 0


def test_end_to_end_with_echo_runner_subprocess(
    tmp_path: Path,
    tasks_dir: Path,
    echo_runner_template: str,
) -> None:
    save = tmp_path / "save"
    result = CliRunner().invoke(
        trial_harness,
        [
            "run",
            "-n",
            "1",
            "--save",
            str(save),
            "--model",
            "m1",
            "--model",
            "m2",
            "--tasks-dir",
            str(tasks_dir),
            "--command",
            f"{echo_runner_template} --fail 'B/*'",
            "--concurrency",
            "2",
            "[AB]",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Run summary: planned=4 executed=4 passed=2 failed=2" in result.output
    with TrialStore.open(save) as store:
        failed = store.get(TrialKey("B", "m1", 0))
        assert failed is not None
        assert failed.status == OutcomeStatus.FAILED
        assert failed.log_ref == "logs/B/m1/trial-0.log"
        log_text = (save / failed.log_ref).read_text(encoding="utf-8")
    assert "echo_runner: B/m1#0" in log_text


def test_summary_command_reads_existing_store(
    tmp_path: Path,
    tasks_dir: Path,
    monkeypatch,
    scripted_runner,
) -> None:
    _use_runner(monkeypatch, scripted_runner(fail=("A/*",)))
    save = tmp_path / "save"
    cli = CliRunner()
    assert cli.invoke(trial_harness, _run_args(tasks_dir, save)).exit_code == 0

    text_result = cli.invoke(trial_harness, ["summary", "--save", str(save), "--model", "m2"])
    json_result = cli.invoke(trial_harness, ["summary", "--save", str(save), "--json"])

    assert text_result.exit_code == 0, text_result.output
    assert f"Trial store: {save} records=8" in text_result.output
    assert "m2: passed=2 failed=2" in text_result.output
    assert "m1:" not in text_result.output
    payload = json.loads(json_result.output)
    assert payload["records"] == 8
    assert sorted(payload["models"]) == ["m1", "m2"]


def test_summary_requires_existing_store(tmp_path: Path) -> None:
    result = CliRunner().invoke(trial_harness, ["summary", "--save", str(tmp_path / "missing")])

    assert result.exit_code == 1
    assert "No trial store found" in _flat(result.output)
    assert not (tmp_path / "missing").exists()


def test_tasks_command_lists_catalog(tasks_dir: Path) -> None:
    cli = CliRunner()

    listed = cli.invoke(trial_harness, ["tasks", "--tasks-dir", str(tasks_dir)])
    filtered = cli.invoke(trial_harness, ["tasks", "--tasks-dir", str(tasks_dir), "C-*"])

    assert listed.exit_code == 0, listed.output
    assert listed.output.splitlines()[1:] == ["A", "B", "C-extra"]
    assert filtered.output.splitlines()[1:] == ["C-extra"]


def test_tasks_dir_defaults_to_environment(tasks_dir: Path, monkeypatch) -> None:
    monkeypatch.setenv("TRIAL_HARNESS_TASKS_DIR", str(tasks_dir))

    result = CliRunner().invoke(trial_harness, ["tasks", "B"])

    assert result.exit_code == 0, result.output
    assert result.output.splitlines()[-1] == "B"


def test_version_option() -> None:
    result = CliRunner().invoke(trial_harness, ["--version"])

    assert result.exit_code == 0
    assert "trial-harness" in result.output
