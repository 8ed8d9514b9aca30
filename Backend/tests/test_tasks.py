"""
test_tasks.py
~~~~~~~~~~~~~
The Celery task re-enqueues itself according to each step outcome.
"""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

import subocr.tasks as tasks
from subocr.core.config import settings
from subocr.core.errors import RecordedJobError
from subocr.services.pipeline import StepOutcome, StepResult


@pytest.fixture
def fake_pipeline(monkeypatch):
    pipeline = MagicMock()
    monkeypatch.setattr(tasks, "_pipeline", pipeline)
    monkeypatch.setattr(tasks, "_is_eager", lambda: False)
    monkeypatch.setattr(tasks.process_job_task, "delay", MagicMock())
    monkeypatch.setattr(tasks.process_job_task, "apply_async", MagicMock())
    return pipeline


def test_continue_enqueues_next_step(fake_pipeline):
    fake_pipeline.run_next_step.return_value = StepResult.proceed()

    assert tasks.process_job_task("job-1") == StepOutcome.CONTINUE.value
    tasks.process_job_task.delay.assert_called_once_with("job-1")


def test_wait_schedules_deterministic_poll(fake_pipeline):
    fake_pipeline.run_next_step.return_value = StepResult(
        StepOutcome.WAIT, attempt=3, wait_id="wait-batch-completion-job-1-2"
    )

    tasks.process_job_task("job-1", 2)

    fake_pipeline.run_next_step.assert_called_once_with("job-1", 2)
    tasks.process_job_task.apply_async.assert_called_once_with(
        ("job-1", 3),
        countdown=settings.BATCH_POLL_INTERVAL_SECONDS,
        task_id="wait-batch-completion-job-1-2",
    )


def test_finished_stops(fake_pipeline):
    fake_pipeline.run_next_step.return_value = StepResult.finished()

    tasks.process_job_task("job-1")

    tasks.process_job_task.delay.assert_not_called()
    tasks.process_job_task.apply_async.assert_not_called()


def test_recorded_failure_is_not_rescheduled(fake_pipeline):
    fake_pipeline.run_next_step.side_effect = RecordedJobError("job-1", "PREPROCESSING", "boom")

    assert tasks.process_job_task("job-1") == "ERROR"
    tasks.process_job_task.delay.assert_not_called()


def test_eager_mode_runs_inline(fake_pipeline, monkeypatch):
    monkeypatch.setattr(tasks, "_is_eager", lambda: True)
    fake_pipeline.run_until_settled.return_value = MagicMock(status=MagicMock(value="DONE"))

    assert tasks.process_job_task("job-1") == "DONE"
    fake_pipeline.run_until_settled.assert_called_once()
    fake_pipeline.run_next_step.assert_not_called()


def test_dispatch_warns_when_running_inline(fake_pipeline, monkeypatch, caplog):
    monkeypatch.setattr(tasks, "_is_eager", lambda: True)

    with caplog.at_level("WARNING", logger="subocr.tasks"):
        tasks.dispatch_job("job-1")

    tasks.process_job_task.delay.assert_called_once_with("job-1")
    assert "eager mode" in caplog.text
