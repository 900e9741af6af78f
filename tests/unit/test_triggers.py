"""Date-based, inactivity and tag trigger sweeps."""

from datetime import timedelta

import pytest

from dripflow.contracts import (
    ActionStep,
    Contact,
    DateBasedTrigger,
    NoActivityTrigger,
    TagAddedTrigger,
    Workflow,
)
from dripflow.enroll import EnrollmentService
from dripflow.persistence import InMemoryAutomationRepository
from dripflow.triggers import TriggerEvaluator, date_field_value, last_seen


class BrokenOwnerRepository(InMemoryAutomationRepository):
    async def list_contacts(self, owner_id):
        if owner_id == "broken":
            raise RuntimeError("contact store offline")
        return await super().list_contacts(owner_id)


def _steps():
    return [ActionStep(id="tag", action={"kind": "add_tag", "tag": "touched"})]


async def _workflow(repo, trigger, owner_id="o1"):
    workflow = Workflow(owner_id=owner_id, status="active", trigger=trigger, steps=_steps())
    await repo.save_workflow(workflow)
    return workflow


def test_date_field_lookup(now):
    contact = Contact(
        owner_id="o1",
        email="a@example.com",
        created_at=now - timedelta(days=365),
        custom_fields={"birthday": "1990-05-15", "bad": "not a date"},
    )
    assert date_field_value(contact, "birthday").month == 5
    assert date_field_value(contact, "created_at") == (now - timedelta(days=365)).date()
    assert date_field_value(contact, "bad") is None
    assert date_field_value(contact, "missing") is None


def test_last_seen_prefers_latest_activity(now):
    contact = Contact(owner_id="o1", email="a@example.com", created_at=now - timedelta(days=90))
    assert last_seen(contact) == now - timedelta(days=90)
    contact.last_contacted_at = now - timedelta(days=10)
    contact.last_activity_at = now - timedelta(days=20)
    assert last_seen(contact) == now - timedelta(days=10)


@pytest.mark.asyncio
async def test_date_sweep_enrolls_once_per_day(engine, now):
    workflow = await _workflow(engine.repo, DateBasedTrigger(date_field="birthday"))
    today = Contact(owner_id="o1", email="a@example.com", custom_fields={"birthday": "1990-05-15"})
    other_day = Contact(owner_id="o1", email="b@example.com", custom_fields={"birthday": "1990-06-01"})
    unsubscribed = Contact(
        owner_id="o1", email="c@example.com", subscribed=False, custom_fields={"birthday": "1985-05-15"}
    )
    other_owner = Contact(owner_id="o2", email="d@example.com", custom_fields={"birthday": "1990-05-15"})
    for contact in (today, other_day, unsubscribed, other_owner):
        await engine.repo.save_contact(contact)

    first = await engine.triggers.process_date_triggers(now)
    assert (first.workflows, first.enrolled) == (1, 1)

    # Finish the journey; a second sweep the same day still must not re-enroll.
    await engine.worker.process_queue(now)
    second = await engine.triggers.process_date_triggers(now + timedelta(hours=3))
    assert second.enrolled == 0

    enrollments = await engine.repo.find_enrollments(workflow_id=workflow.id)
    assert [e.contact_id for e in enrollments] == [today.id]
    assert enrollments[0].status == "completed"
    assert enrollments[0].trigger_data["date_field"] == "birthday"


@pytest.mark.asyncio
async def test_date_sweep_recurs_next_year(engine, now):
    workflow = await _workflow(engine.repo, DateBasedTrigger(date_field="anniversary"))
    contact = Contact(owner_id="o1", email="a@example.com", custom_fields={"anniversary": "2019-05-15"})
    await engine.repo.save_contact(contact)

    assert (await engine.triggers.process_date_triggers(now)).enrolled == 1
    await engine.worker.process_queue(now)

    next_year = now.replace(year=now.year + 1)
    assert (await engine.triggers.process_date_triggers(next_year)).enrolled == 1
    assert len(await engine.repo.find_enrollments(workflow_id=workflow.id)) == 2


@pytest.mark.asyncio
async def test_inactivity_sweep(engine, now):
    workflow = await _workflow(engine.repo, NoActivityTrigger(inactivity_days=30))
    dormant = Contact(
        owner_id="o1", email="dormant@example.com",
        created_at=now - timedelta(days=400), last_activity_at=now - timedelta(days=40),
    )
    recently_mailed = Contact(
        owner_id="o1", email="mailed@example.com",
        created_at=now - timedelta(days=400), last_activity_at=now - timedelta(days=40),
        last_contacted_at=now - timedelta(days=5),
    )
    never_contacted_old = Contact(
        owner_id="o1", email="old@example.com", created_at=now - timedelta(days=60)
    )
    never_contacted_new = Contact(
        owner_id="o1", email="new@example.com", created_at=now - timedelta(days=10)
    )
    for contact in (dormant, recently_mailed, never_contacted_old, never_contacted_new):
        await engine.repo.save_contact(contact)

    summary = await engine.triggers.process_inactivity_triggers(now)
    assert summary.enrolled == 2
    enrolled = {e.contact_id for e in await engine.repo.find_enrollments(workflow_id=workflow.id)}
    assert enrolled == {dormant.id, never_contacted_old.id}

    # Neither active nor completed enrollments are re-entered.
    assert (await engine.triggers.process_inactivity_triggers(now)).enrolled == 0
    await engine.worker.process_queue(now)
    assert (await engine.triggers.process_inactivity_triggers(now)).enrolled == 0


@pytest.mark.asyncio
async def test_tag_added_trigger(engine, now):
    workflow = await _workflow(engine.repo, TagAddedTrigger(tag="vip"))
    await _workflow(engine.repo, TagAddedTrigger(tag="vip"), owner_id="o2")
    contact = Contact(owner_id="o1", email="a@example.com", tags=["vip"])
    await engine.repo.save_contact(contact)

    assert (await engine.triggers.handle_tag_added(contact, "lead", now)).enrolled == 0
    summary = await engine.triggers.handle_tag_added(contact, "vip", now)
    assert (summary.workflows, summary.enrolled) == (1, 1)
    [enrollment] = await engine.repo.find_enrollments(contact_id=contact.id)
    assert enrollment.workflow_id == workflow.id


@pytest.mark.asyncio
async def test_sweep_errors_are_contained(now):
    repo = BrokenOwnerRepository()
    triggers = TriggerEvaluator(repo, EnrollmentService(repo))
    await _workflow(repo, DateBasedTrigger(date_field="birthday"), owner_id="broken")
    await _workflow(repo, DateBasedTrigger(date_field="birthday"))
    await repo.save_contact(
        Contact(owner_id="o1", email="a@example.com", custom_fields={"birthday": "2000-05-15"})
    )

    summary = await triggers.process_date_triggers(now)
    assert (summary.workflows, summary.enrolled, summary.errors) == (2, 1, 1)
