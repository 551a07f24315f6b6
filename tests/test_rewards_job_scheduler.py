from pathlib import Path

import pytest

from gob_api.observability.scheduler import get_rewards_scheduler_store
from gob_api.scheduling.config import JobDefinition, RetryPolicy, ScheduleConfig, load_job_definitions
from gob_api.scheduling.runner import RewardsJobScheduler, resolve_task


def _job(job_id: str, *, max_attempts: int = 1, kwargs: dict | None = None) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task=f"tests.{job_id}",
        cron="* * * * *",
        kwargs=kwargs or {},
        retry=RetryPolicy(
            max_attempts=max_attempts,
            base_backoff_seconds=0.0,
            backoff_multiplier=1.0,
            max_backoff_seconds=0.0,
            jitter_seconds=0.0,
        ),
    )


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    scheduler = RewardsJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")
    attempts = 0

    async def flaky_job(*, session_factory, batch_size) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"expired": batch_size}

    runner = scheduler.build_runner(flaky_job, _job("job-alpha", max_attempts=3, kwargs={"batch_size": 7}))
    summary = await runner()

    assert summary == {"expired": 7}
    assert attempts == 2
    snapshot = get_rewards_scheduler_store().snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs["job-alpha"]
    assert job_snapshot["totals"]["attempt_failures"] == 1
    assert job_snapshot["last_success_at"] is not None
    assert job_snapshot["last_error"] is None
    assert job_snapshot["last_summary"] == {"expired": 7}


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    scheduler = RewardsJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    runner = scheduler.build_runner(failing_job, _job("job-failure", max_attempts=2))
    assert await runner() is None

    snapshot = get_rewards_scheduler_store().snapshot()
    assert snapshot.totals["run_failures"] == 1
    job_snapshot = snapshot.jobs["job-failure"]
    assert job_snapshot["totals"]["consecutive_failures"] == 2
    assert job_snapshot["last_error"] == "boom"
    assert job_snapshot["last_error_at"] is not None


@pytest.mark.asyncio
async def test_consecutive_failures_reset_after_success(tmp_path: Path) -> None:
    scheduler = RewardsJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")
    run_count = 0

    async def sometimes_failing_job(*, session_factory) -> None:
        nonlocal run_count
        run_count += 1
        if run_count < 3:
            raise RuntimeError("boom")

    runner = scheduler.build_runner(sometimes_failing_job, _job("job-streak"))
    await runner()
    await runner()

    job_snapshot = get_rewards_scheduler_store().snapshot().jobs["job-streak"]
    assert job_snapshot["totals"]["consecutive_failures"] == 2

    await runner()

    snapshot = get_rewards_scheduler_store().snapshot()
    assert snapshot.totals["runs"] == 3
    assert snapshot.totals["run_failures"] == 2
    assert snapshot.jobs["job-streak"]["totals"]["consecutive_failures"] == 0
    assert snapshot.jobs["job-streak"]["last_error"] is None


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path) -> None:
    scheduler = RewardsJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("job-health")
    await scheduler.build_runner(successful_job, job)()
    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job])

    health = scheduler.health()
    assert health["running"] is False
    assert health["configured_jobs"] == 1
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["max_attempts"] == 1
    assert health["jobs"][0]["metrics"]["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["last_success_at"] is not None


def test_load_job_definitions_parses_retry_and_kwargs(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "America/New_York"

        [jobs.sample]
        task = "module.task"
        cron = "*/5 * * * *"
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5

        [jobs.sample.kwargs]
        batch_size = 250

        [jobs.paused]
        task = "module.other"
        cron = "0 * * * *"
        enabled = false

        [jobs.incomplete]
        task = "module.missing_cron"
        """
    )

    config = load_job_definitions(config_path)

    assert config.timezone == "America/New_York"
    assert [job.id for job in config.jobs] == ["sample", "paused"]
    sample, paused = config.jobs
    assert sample.kwargs == {"batch_size": 250}
    assert sample.retry.max_attempts == 5
    assert sample.retry.base_backoff_seconds == 2.0
    assert sample.retry.backoff_multiplier == 3.0
    assert sample.retry.max_backoff_seconds == 30.0
    assert sample.retry.jitter_seconds == 1.5
    assert paused.enabled is False
    assert paused.retry.max_attempts == 1


def test_load_job_definitions_requires_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_bundled_schedule_resolves_to_job_functions() -> None:
    config = load_job_definitions(Path(__file__).resolve().parents[1] / "config" / "schedules.toml")

    tasks = {job.id: resolve_task(job.task) for job in config.jobs}

    assert set(tasks) == {"expire_stale_redemptions", "roll_payout_budgets"}
    assert tasks["expire_stale_redemptions"].__name__ == "expire_stale_redemptions"


def test_retry_delay_is_capped() -> None:
    policy = RetryPolicy(
        max_attempts=4,
        base_backoff_seconds=10,
        backoff_multiplier=3,
        max_backoff_seconds=60,
        jitter_seconds=0,
    )

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [10, 30, 60]


def test_resolve_task_rejects_bad_paths() -> None:
    with pytest.raises(ValueError):
        resolve_task("not_a_path")
    with pytest.raises(AttributeError):
        resolve_task("gob_api.jobs.redemptions.does_not_exist")
    with pytest.raises(TypeError):
        resolve_task("gob_api.scheduling.config.load_job_definitions")
