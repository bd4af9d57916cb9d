from __future__ import annotations

from pathlib import Path

import allure
import pytest

from trial_harness.config import RunnerSettings, SchedulerSettings, Settings, StoreSettings

pytestmark = [
    allure.epic("Trial Harness"),
    allure.feature("Configuration"),
]


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.tasks_dir == Path("tasks")
    assert settings.runner.command_template == ""
    assert settings.runner.failed_exit_codes == (1,)
    assert settings.runner.transient_exit_codes == (137, 143)
    assert settings.scheduler.concurrency == 4
    assert settings.scheduler.trial_timeout_seconds == 0.0
    assert settings.store.write_max_retries == 3
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TRIAL_HARNESS_TASKS_DIR", str(tmp_path))
    monkeypatch.setenv("TRIAL_HARNESS_COMMAND_TEMPLATE", "  agent --task {task}  ")
    monkeypatch.setenv("TRIAL_HARNESS_CONCURRENCY", "8")
    monkeypatch.setenv("TRIAL_HARNESS_TRIAL_TIMEOUT_SECONDS", "90")
    monkeypatch.setenv("TRIAL_HARNESS_FAILED_EXIT_CODES", "1, 2,2")
    monkeypatch.setenv("TRIAL_HARNESS_EVENT_BUFFER_SIZE", "16")

    settings = Settings.from_env()

    assert settings.tasks_dir == tmp_path
    assert settings.runner.command_template == "agent --task {task}"
    assert settings.runner.failed_exit_codes == (1, 2)
    assert settings.scheduler.concurrency == 8
    assert settings.scheduler.trial_timeout_seconds == 90.0
    assert settings.scheduler.event_buffer_size == 16


def test_explicit_tasks_dir_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TRIAL_HARNESS_TASKS_DIR", "/elsewhere")

    assert Settings.from_env(tasks_dir=tmp_path).tasks_dir == tmp_path


def test_from_env_rejects_non_integer_exit_codes(monkeypatch) -> None:
    monkeypatch.setenv("TRIAL_HARNESS_TRANSIENT_EXIT_CODES", "137,oops")

    with pytest.raises(ValueError, match="TRIAL_HARNESS_TRANSIENT_EXIT_CODES"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(scheduler=SchedulerSettings(concurrency=0)), "TRIAL_HARNESS_CONCURRENCY"),
        (
            Settings(scheduler=SchedulerSettings(trial_timeout_seconds=-1)),
            "TRIAL_HARNESS_TRIAL_TIMEOUT_SECONDS",
        ),
        (
            Settings(scheduler=SchedulerSettings(event_buffer_size=0)),
            "TRIAL_HARNESS_EVENT_BUFFER_SIZE",
        ),
        (
            Settings(store=StoreSettings(write_max_retries=-1)),
            "TRIAL_HARNESS_STORE_WRITE_MAX_RETRIES",
        ),
        (Settings(runner=RunnerSettings(failed_exit_codes=(0, 1))), "must not include 0"),
        (
            Settings(runner=RunnerSettings(failed_exit_codes=(1, 137))),
            "overlap",
        ),
    ],
)
def test_validate_names_offending_setting(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
