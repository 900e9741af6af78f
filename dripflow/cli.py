"""Command line interface for running dripflow automations."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from dripflow.config import load_config
from dripflow.contracts import EnrollmentNotFound, Workflow
from dripflow.persistence import get_repository
from dripflow.scheduler import AutomationScheduler

app = typer.Typer(help="CLI for dripflow marketing automations")

# Command groups
worker_app = typer.Typer(help="Commands for running the scheduler")
queue_app = typer.Typer(help="Commands for the task queue")
triggers_app = typer.Typer(help="Commands for trigger sweeps")
workflow_app = typer.Typer(help="Commands for managing workflows")
enrollment_app = typer.Typer(help="Commands for inspecting enrollments")

_state: dict = {}

app.add_typer(worker_app, name="worker")
app.add_typer(queue_app, name="queue")
app.add_typer(triggers_app, name="triggers")
app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level"),
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Dripflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state.clear()
    if config is not None:
        _state["config_path"] = str(config)
        get_repository(config=load_config(_state["config_path"]))


def _scheduler() -> AutomationScheduler:
    config = load_config(_state.get("config_path"))
    return AutomationScheduler.from_config(config, repository=get_repository())


@worker_app.command("run")
def worker_run(lifespan: Optional[float] = None) -> None:
    """
    Run the scheduler: queue ticks, daily trigger sweeps and retention.

    Args:
        lifespan: Stop after this many seconds (default: run indefinitely)

    Example:
        dripflow worker run
        dripflow worker run --lifespan 300
    """
    scheduler = _scheduler()
    typer.echo("Starting automation scheduler")
    try:
        asyncio.run(scheduler.run(lifespan=lifespan))
    except KeyboardInterrupt:
        typer.echo("Scheduler stopped")


@queue_app.command("process")
def queue_process() -> None:
    """Process one batch of due tasks and print the outcome counts."""
    summary = asyncio.run(_scheduler().process_queue())
    if summary is None:
        typer.echo("Queue is already being processed")
        return
    typer.echo(
        f"due={summary.due} completed={summary.completed} retried={summary.retried} "
        f"failed={summary.failed} cancelled={summary.cancelled} skipped={summary.skipped}"
    )


@triggers_app.command("run")
def triggers_run(
    kind: str = typer.Option("all", help="Which sweep to run: date, inactivity or all"),
) -> None:
    """
    Run the date-based and/or inactivity trigger sweeps once.

    Example:
        dripflow triggers run --kind date
    """
    if kind not in ("date", "inactivity", "all"):
        typer.secho(f"Unknown trigger kind: {kind}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _run() -> None:
        scheduler = _scheduler()
        if kind in ("date", "all"):
            summary = await scheduler.process_date_triggers()
            if summary is not None:
                typer.echo(f"date: {summary.enrolled} enrolled, {summary.skipped} skipped")
        if kind in ("inactivity", "all"):
            summary = await scheduler.process_inactivity_triggers()
            if summary is not None:
                typer.echo(
                    f"inactivity: {summary.enrolled} enrolled, {summary.skipped} skipped"
                )

    asyncio.run(_run())


@app.command("cleanup")
def cleanup() -> None:
    """Delete old terminal tasks and journey entries."""
    summary = asyncio.run(_scheduler().cleanup_old_data())
    if summary is None:
        typer.echo("Cleanup is already running")
        return
    typer.echo(
        f"Deleted {summary.tasks_deleted} tasks and "
        f"{summary.journey_entries_deleted} journey entries"
    )


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Load workflow definitions from a YAML file.

    The file holds either a single workflow mapping or a list of them. Step
    references are validated before anything is stored.

    Example:
        dripflow workflow load ./welcome.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    raw = yaml.safe_load(path.read_text()) or []
    documents = raw if isinstance(raw, list) else [raw]
    try:
        workflows = [Workflow.model_validate(doc) for doc in documents]
    except ValidationError as exc:
        typer.secho(f"Invalid workflow definition:\n{exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    repo = get_repository()

    async def _save() -> None:
        for workflow in workflows:
            await repo.save_workflow(workflow)

    asyncio.run(_save())
    for workflow in workflows:
        typer.echo(f"Loaded {workflow.id}\t{workflow.name}\t{workflow.status}")


@workflow_app.command("list")
def workflow_list(status: Optional[str] = None) -> None:
    """List workflows with their status, trigger and entry counts."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows(status=status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(
            f"{wf.id}\t{wf.name}\t{wf.status}\t{wf.trigger.type}\t"
            f"entered={wf.stats.total_entered} active={wf.stats.active}"
        )


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """Show an enrollment's status and journey."""
    repo = get_repository()
    enrollment = asyncio.run(repo.get_enrollment(enrollment_id))
    if enrollment is None:
        typer.echo("Enrollment not found")
        raise typer.Exit(code=1)
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status}")
    typer.echo(f"Workflow: {enrollment.workflow_id}  Contact: {enrollment.contact_id}")
    if enrollment.current_step:
        typer.echo(f"Current step: {enrollment.current_step}")
    if enrollment.failure_reason:
        typer.echo(f"Reason: {enrollment.failure_reason}")
    for entry in enrollment.journey:
        typer.echo(f"- {entry.timestamp.isoformat()} {entry.step_id}: {entry.action}")


@enrollment_app.command("enroll")
def enrollment_enroll(workflow_id: str, contact_id: str) -> None:
    """Manually enroll a contact in a workflow."""
    scheduler = _scheduler()
    repo = get_repository()

    async def _enroll():
        workflow = await repo.get_workflow(workflow_id)
        contact = await repo.get_contact(contact_id)
        if workflow is None or contact is None:
            return None
        return await scheduler.worker.enrollments.enroll(
            workflow, contact, trigger_data={"trigger": "manual"}
        )

    outcome = asyncio.run(_enroll())
    if outcome is None:
        typer.echo("Workflow or contact not found")
        raise typer.Exit(code=1)
    if not outcome.enrolled:
        typer.echo(f"Not enrolled: {outcome.reason}")
        raise typer.Exit(code=1)
    typer.echo(f"Enrolled: {outcome.enrollment.id}")


@enrollment_app.command("cancel")
def enrollment_cancel(enrollment_id: str, reason: str = "Cancelled from CLI") -> None:
    """Cancel an active enrollment."""
    scheduler = _scheduler()
    try:
        cancelled = asyncio.run(
            scheduler.worker.enrollments.cancel(enrollment_id, reason)
        )
    except EnrollmentNotFound:
        typer.echo("Enrollment not found")
        raise typer.Exit(code=1)
    typer.echo("Cancelled" if cancelled else "Enrollment is not active")


if __name__ == "__main__":
    app()
