from datetime import datetime, timedelta, timezone

import pytest

from dripflow.contracts import (
    Contact,
    DateBasedTrigger,
    Enrollment,
    JourneyEntry,
    SendEmailStep,
    Task,
    Workflow,
)
from dripflow.persistence import InMemoryAutomationRepository, SQLiteAutomationRepository

NOW = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryAutomationRepository()
    return SQLiteAutomationRepository(tmp_path / "auto.db")


def _task(enrollment_id="e1", **kwargs):
    return Task(
        workflow_id="w1",
        enrollment_id=enrollment_id,
        contact_id="c1",
        step_id="a",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_workflow_crud_and_filters(store):
    emails = Workflow(
        owner_id="o1",
        name="Welcome",
        status="active",
        steps=[SendEmailStep(id="a")],
    )
    birthdays = Workflow(
        owner_id="o1",
        status="active",
        trigger=DateBasedTrigger(date_field="birthday"),
    )
    draft = Workflow(owner_id="o1")
    for wf in (emails, birthdays, draft):
        await store.save_workflow(wf)

    loaded = await store.get_workflow(emails.id)
    assert loaded.name == "Welcome"
    assert loaded.entry_step.id == "a"
    assert await store.get_workflow("missing") is None

    active = await store.list_workflows(status="active")
    assert {wf.id for wf in active} == {emails.id, birthdays.id}
    dated = await store.list_workflows(status="active", trigger_type="date_based")
    assert [wf.id for wf in dated] == [birthdays.id]


@pytest.mark.asyncio
async def test_stats_increments_accumulate(store):
    wf = Workflow(owner_id="o1")
    await store.save_workflow(wf)
    await store.increment_workflow_stats(wf.id, total_entered=1, active=1)
    await store.increment_workflow_stats(wf.id, total_entered=1, active=1)
    await store.increment_workflow_stats(wf.id, active=-1, completed=1)

    stats = (await store.get_workflow(wf.id)).stats
    assert stats.total_entered == 2
    assert stats.active == 1
    assert stats.completed == 1


@pytest.mark.asyncio
async def test_contacts_by_owner(store):
    await store.save_contact(Contact(id="c1", owner_id="o1", email="a@example.com"))
    await store.save_contact(Contact(id="c2", owner_id="o2", email="b@example.com"))
    contact = await store.get_contact("c1")
    contact.tags.append("vip")
    await store.save_contact(contact)

    owned = await store.list_contacts("o1")
    assert [c.id for c in owned] == ["c1"]
    assert owned[0].tags == ["vip"]


@pytest.mark.asyncio
async def test_update_contact_applies_targeted_changes(store):
    await store.save_contact(
        Contact(
            id="c1",
            owner_id="o1",
            email="a@example.com",
            tags=["lead"],
            custom_fields={"plan": "free"},
        )
    )

    await store.update_contact("c1", add_tags=["vip", "lead"])
    await store.update_contact("c1", remove_tags=["lead"])
    await store.update_contact("c1", custom_fields={"score": 5})
    updated = await store.update_contact("c1", last_contacted_at=NOW)

    assert updated.tags == ["vip"]
    assert updated.custom_fields == {"plan": "free", "score": 5}
    assert updated.last_contacted_at == NOW
    stored = await store.get_contact("c1")
    assert stored.tags == ["vip"]
    assert stored.custom_fields == {"plan": "free", "score": 5}
    assert await store.update_contact("missing", subscribed=False) is None


@pytest.mark.asyncio
async def test_enrollment_updates_and_queries(store):
    first = Enrollment(
        workflow_id="w1", contact_id="c1", owner_id="o1", created_at=NOW - timedelta(days=2)
    )
    second = Enrollment(workflow_id="w1", contact_id="c1", owner_id="o1", created_at=NOW)
    await store.create_enrollment(first)
    await store.create_enrollment(second)

    await store.update_enrollment(first.id, status="completed", completed_at=NOW)
    assert (await store.get_enrollment(first.id)).status == "completed"

    active = await store.find_enrollments(workflow_id="w1", contact_id="c1", statuses=["active"])
    assert [e.id for e in active] == [second.id]
    today = await store.find_enrollments(workflow_id="w1", created_since=NOW - timedelta(hours=1))
    assert [e.id for e in today] == [second.id]
    assert await store.find_enrollments(contact_id="other") == []


@pytest.mark.asyncio
async def test_journey_append_is_idempotent_per_task(store):
    enrollment = Enrollment(workflow_id="w1", contact_id="c1", owner_id="o1")
    await store.create_enrollment(enrollment)

    entry = JourneyEntry(task_id="t1", step_id="a", action="completed", timestamp=NOW)
    assert await store.append_journey_entry(enrollment.id, entry)
    assert not await store.append_journey_entry(enrollment.id, entry)
    # Engagement entries carry no task id and may repeat.
    opened = JourneyEntry(step_id="a", action="opened", timestamp=NOW)
    assert await store.append_journey_entry(enrollment.id, opened)
    assert await store.append_journey_entry(enrollment.id, opened)

    journey = (await store.get_enrollment(enrollment.id)).journey
    assert [e.action for e in journey] == ["completed", "opened", "opened"]
    assert not await store.append_journey_entry("missing", entry)


@pytest.mark.asyncio
async def test_claim_is_compare_and_set(store):
    task = _task(scheduled_for=NOW)
    await store.create_task(task)

    claimed = await store.claim_task(task.id, NOW)
    assert claimed.status == "processing"
    assert claimed.attempts == 1
    assert await store.claim_task(task.id, NOW) is None
    assert await store.claim_task("missing", NOW) is None

    stored = await store.get_task(task.id)
    assert stored.status == "processing"
    assert stored.attempts == 1


@pytest.mark.asyncio
async def test_create_task_ignores_duplicate_id(store):
    task = _task(scheduled_for=NOW)
    assert await store.create_task(task)
    assert not await store.create_task(task.model_copy(update={"step_id": "b"}))

    assert (await store.get_task(task.id)).step_id == "a"
    assert len(await store.list_tasks(enrollment_id="e1")) == 1


@pytest.mark.asyncio
async def test_due_tasks_ordered_and_limited(store):
    later = _task(scheduled_for=NOW - timedelta(minutes=1))
    earlier = _task(scheduled_for=NOW - timedelta(minutes=5))
    future = _task(scheduled_for=NOW + timedelta(minutes=5))
    done = _task(scheduled_for=NOW - timedelta(minutes=10), status="completed")
    for task in (later, earlier, future, done):
        await store.create_task(task)

    due = await store.due_tasks(NOW, limit=10)
    assert [t.id for t in due] == [earlier.id, later.id]
    assert [t.id for t in await store.due_tasks(NOW, limit=1)] == [earlier.id]


@pytest.mark.asyncio
async def test_list_tasks_filters(store):
    pending = _task(enrollment_id="e1")
    failed = _task(enrollment_id="e1", status="failed")
    other = _task(enrollment_id="e2")
    for task in (pending, failed, other):
        await store.create_task(task)

    assert [t.id for t in await store.list_tasks(enrollment_id="e1", statuses=["pending"])] == [
        pending.id
    ]
    assert len(await store.list_tasks(statuses=["pending"])) == 2
    assert await store.list_tasks(statuses=[]) == []


@pytest.mark.asyncio
async def test_retention_primitives(store):
    old_done = _task(status="completed", updated_at=NOW - timedelta(days=40))
    old_pending = _task(status="pending", updated_at=NOW - timedelta(days=40))
    recent_failed = _task(status="failed", updated_at=NOW - timedelta(days=1))
    for task in (old_done, old_pending, recent_failed):
        await store.create_task(task)

    assert await store.delete_terminal_tasks(NOW - timedelta(days=30)) == 1
    assert await store.get_task(old_done.id) is None
    assert await store.get_task(old_pending.id) is not None
    assert await store.get_task(recent_failed.id) is not None

    old_entry = JourneyEntry(step_id="a", action="entered", timestamp=NOW - timedelta(days=100))
    new_entry = JourneyEntry(step_id="a", action="completed", timestamp=NOW)
    finished = Enrollment(
        workflow_id="w1", contact_id="c1", owner_id="o1", status="completed",
        journey=[old_entry, new_entry],
    )
    running = Enrollment(
        workflow_id="w1", contact_id="c2", owner_id="o1", journey=[old_entry]
    )
    await store.create_enrollment(finished)
    await store.create_enrollment(running)

    assert await store.prune_journeys(NOW - timedelta(days=90)) == 1
    assert [e.action for e in (await store.get_enrollment(finished.id)).journey] == ["completed"]
    assert len((await store.get_enrollment(running.id)).journey) == 1


@pytest.mark.asyncio
async def test_sqlite_persists_across_instances(tmp_path):
    db_path = tmp_path / "auto.db"
    first = SQLiteAutomationRepository(db_path)
    task = _task(scheduled_for=NOW)
    await first.create_task(task)
    await first.claim_task(task.id, NOW)

    second = SQLiteAutomationRepository(db_path)
    stored = await second.get_task(task.id)
    assert stored.status == "processing"
    assert await second.claim_task(task.id, NOW) is None
