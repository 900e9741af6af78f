"""Scheduler harness: wiring, re-entrancy guard and lifecycle."""

import asyncio

import pytest

from dripflow.config import DripflowConfig
from dripflow.contracts import Contact, SendEmailStep, Workflow
from dripflow.providers import InMemoryEmailProvider
from dripflow.scheduler import AutomationScheduler


def _scheduler(repo, provider, **overrides):
    config = DripflowConfig(**overrides)
    return AutomationScheduler.from_config(config, repository=repo, email_provider=provider)


@pytest.mark.asyncio
async def test_overlapping_ticks_are_skipped(repo, provider, now):
    scheduler = _scheduler(repo, provider)
    gate = asyncio.Event()
    calls = []

    async def slow_process(when=None):
        calls.append(when)
        await gate.wait()
        return "done"

    scheduler._queue_job._func = slow_process

    first = asyncio.create_task(scheduler.process_queue(now))
    await asyncio.sleep(0)
    assert await scheduler.process_queue(now) is None
    gate.set()
    assert await first == "done"
    assert calls == [now]

    # The guard is released once the tick finishes.
    gate.set()
    assert await scheduler.process_queue(now) == "done"


@pytest.mark.asyncio
async def test_jobs_are_independent(repo, provider, now):
    scheduler = _scheduler(repo, provider)
    gate = asyncio.Event()

    async def blocked(when=None):
        await gate.wait()

    scheduler._queue_job._func = blocked
    running = asyncio.create_task(scheduler.process_queue(now))
    await asyncio.sleep(0)

    summary = await scheduler.cleanup_old_data(now)
    assert summary is not None
    assert summary.errors == 0
    gate.set()
    await running


@pytest.mark.asyncio
async def test_job_errors_are_logged_not_raised(repo, provider, now, caplog):
    scheduler = _scheduler(repo, provider)

    async def explode(when=None):
        raise RuntimeError("boom")

    scheduler._date_job._func = explode
    assert await scheduler.process_date_triggers(now) is None
    assert "date-triggers" in caplog.text


@pytest.mark.asyncio
async def test_start_runs_queue_immediately_and_stop_cancels(repo):
    provider = InMemoryEmailProvider()
    scheduler = _scheduler(
        repo, provider, worker={"tick_interval_seconds": 3600}
    )
    workflow = Workflow(owner_id="o1", status="active", steps=[SendEmailStep(id="a")])
    contact = Contact(owner_id="o1", email="a@example.com")
    await repo.save_workflow(workflow)
    await repo.save_contact(contact)
    await scheduler.worker.enrollments.enroll(workflow, contact)

    await scheduler.start()
    for _ in range(50):
        if provider.sent:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert len(provider.sent) == 1
    assert all(job._task is None for job in scheduler._jobs)


@pytest.mark.asyncio
async def test_run_with_lifespan_returns(repo, provider):
    scheduler = _scheduler(repo, provider)
    await asyncio.wait_for(scheduler.run(lifespan=0.05), timeout=5)
    assert all(job._task is None for job in scheduler._jobs)
