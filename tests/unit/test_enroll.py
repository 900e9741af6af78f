"""Enrollment policy, cancellation, unsubscribe and engagement."""

from datetime import timedelta

import pytest

from dripflow.contracts import Contact, EnrollmentNotFound, SendEmailStep, Workflow


async def _setup(repo, **settings):
    workflow = Workflow(
        owner_id="o1",
        status="active",
        steps=[SendEmailStep(id="a")],
        settings=settings,
    )
    contact = Contact(owner_id="o1", email="ada@example.com", tags=["lead"])
    await repo.save_workflow(workflow)
    await repo.save_contact(contact)
    return workflow, contact


@pytest.mark.asyncio
async def test_enroll_creates_enrollment_and_first_task(engine, now):
    workflow, contact = await _setup(engine.repo)

    outcome = await engine.enrollments.enroll(
        workflow, contact, trigger_data={"source": "signup"}, now=now
    )
    assert outcome.enrolled
    enrollment = await engine.repo.get_enrollment(outcome.enrollment.id)
    assert enrollment.status == "active"
    assert enrollment.current_step == "a"
    assert enrollment.trigger_data == {"source": "signup"}
    assert [e.action for e in enrollment.journey] == ["entered"]

    [task] = await engine.repo.list_tasks(enrollment_id=enrollment.id)
    assert (task.step_id, task.status, task.scheduled_for) == ("a", "pending", now)
    assert task.max_attempts == 3

    stats = (await engine.repo.get_workflow(workflow.id)).stats
    assert (stats.total_entered, stats.active) == (1, 1)


@pytest.mark.asyncio
async def test_first_email_respects_send_window(engine, now):
    workflow, contact = await _setup(
        engine.repo, send_window={"enabled": True, "start_hour": 12, "end_hour": 14}
    )
    outcome = await engine.enrollments.enroll(workflow, contact, now=now)
    [task] = await engine.repo.list_tasks(enrollment_id=outcome.enrollment.id)
    assert task.scheduled_for == now.replace(hour=12)


@pytest.mark.asyncio
async def test_enrollment_guards(engine, now):
    workflow, contact = await _setup(engine.repo, exclude_tags=["customer"])

    draft = workflow.model_copy(update={"status": "draft"})
    assert (await engine.enrollments.enroll(draft, contact, now=now)).reason == "Workflow is not active"

    unsubscribed = contact.model_copy(update={"subscribed": False})
    assert not (await engine.enrollments.enroll(workflow, unsubscribed, now=now)).enrolled

    customer = contact.model_copy(update={"tags": ["customer"]})
    assert (
        await engine.enrollments.enroll(workflow, customer, now=now)
    ).reason == "Contact has excluded tag"

    assert (await engine.enrollments.enroll(workflow, contact, now=now)).enrolled
    again = await engine.enrollments.enroll(workflow, contact, now=now)
    assert not again.enrolled
    assert again.reason == "Contact already in automation"
    assert len(await engine.repo.find_enrollments(workflow_id=workflow.id)) == 1


@pytest.mark.asyncio
async def test_reentry_policy(engine, now):
    workflow, contact = await _setup(engine.repo)
    first = await engine.enrollments.enroll(workflow, contact, now=now)
    await engine.repo.update_enrollment(first.enrollment.id, status="completed")

    blocked = await engine.enrollments.enroll(workflow, contact, now=now)
    assert blocked.reason == "Reentry not allowed"

    workflow.settings.allow_reentry = True
    assert (await engine.enrollments.enroll(workflow, contact, now=now)).enrolled


@pytest.mark.asyncio
async def test_cancel(engine, now):
    workflow, contact = await _setup(engine.repo)
    outcome = await engine.enrollments.enroll(workflow, contact, now=now)

    assert await engine.enrollments.cancel(outcome.enrollment.id, "Stopped", now=now)
    assert not await engine.enrollments.cancel(outcome.enrollment.id, "Stopped", now=now)
    with pytest.raises(EnrollmentNotFound):
        await engine.enrollments.cancel("missing", "Stopped")

    enrollment = await engine.repo.get_enrollment(outcome.enrollment.id)
    assert enrollment.status == "cancelled"
    assert enrollment.journey[-1].action == "cancelled"
    stats = (await engine.repo.get_workflow(workflow.id)).stats
    assert (stats.active, stats.cancelled) == (0, 1)


@pytest.mark.asyncio
async def test_unsubscribe_cancels_every_active_enrollment(engine, now):
    first, contact = await _setup(engine.repo)
    second = Workflow(owner_id="o1", status="active", steps=[SendEmailStep(id="b")])
    await engine.repo.save_workflow(second)
    await engine.enrollments.enroll(first, contact, now=now)
    await engine.enrollments.enroll(second, contact, now=now)

    assert await engine.enrollments.unsubscribe(contact.id, now=now) == 2
    assert not (await engine.repo.get_contact(contact.id)).subscribed
    assert await engine.repo.find_enrollments(contact_id=contact.id, statuses=["active"]) == []
    assert await engine.repo.list_tasks(statuses=["pending"]) == []


@pytest.mark.asyncio
async def test_record_engagement(engine, now):
    workflow, contact = await _setup(engine.repo)
    outcome = await engine.enrollments.enroll(workflow, contact, now=now)
    later = now + timedelta(hours=2)

    await engine.enrollments.record_engagement(
        outcome.enrollment.id, "a", "opened", {"ip": "127.0.0.1"}, now=later
    )
    enrollment = await engine.repo.get_enrollment(outcome.enrollment.id)
    assert enrollment.journey[-1].action == "opened"
    assert enrollment.journey[-1].data == {"ip": "127.0.0.1"}
    assert (await engine.repo.get_contact(contact.id)).last_activity_at == later

    with pytest.raises(EnrollmentNotFound):
        await engine.enrollments.record_engagement("missing", "a", "clicked")
