"""Core data contracts for the dripflow automation engine."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr, model_validator

from .utils.timing import utcnow

WorkflowStatus = Literal["draft", "active", "paused", "archived"]
EnrollmentStatus = Literal["active", "completed", "cancelled", "failed"]
TaskStatus = Literal["pending", "processing", "completed", "cancelled", "failed"]
JourneyAction = Literal["entered", "completed", "opened", "clicked", "failed", "cancelled"]
ConditionOperator = Literal["equals", "not_equals", "contains", "greater_than", "less_than"]

TERMINAL_TASK_STATUSES = ("completed", "cancelled", "failed")
TERMINAL_ENROLLMENT_STATUSES = ("completed", "cancelled", "failed")


def _new_id() -> str:
    return uuid.uuid4().hex


class DripflowError(Exception):
    """Base class for dripflow errors."""


class StepExecutionError(DripflowError):
    """Raised by the step executor when a step could not be carried out.

    ``retryable`` distinguishes transient provider failures from errors that
    retrying cannot fix.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class WorkflowNotFound(DripflowError):
    pass


class EnrollmentNotFound(DripflowError):
    pass


# ----------------------------------------------------------------------
# Steps


class EmailContent(BaseModel):
    subject: str = ""
    html: str = ""
    text: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None


class WaitSpec(BaseModel):
    """How long a wait step holds the contact before the step runs."""

    kind: Literal["delay", "until_time", "until_day"] = "delay"
    duration: float = Field(default=0, ge=0)
    unit: Literal["minutes", "hours", "days", "weeks"] = "minutes"
    time: Optional[str] = Field(default=None, pattern=r"^\d{1,2}:\d{2}$")
    weekday: Optional[int] = Field(default=None, ge=0, le=6)


class ConditionSpec(BaseModel):
    kind: Literal[
        "email_opened", "email_clicked", "tag_exists", "custom_field", "contact_field"
    ]
    step_id: Optional[str] = None
    field: Optional[str] = None
    operator: ConditionOperator = "equals"
    value: Any = None
    true_branch: Optional[str] = None
    false_branch: Optional[str] = None


class ActionSpec(BaseModel):
    kind: Literal["add_tag", "remove_tag", "update_field", "webhook"]
    tag: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_arguments(self) -> "ActionSpec":
        if self.kind in ("add_tag", "remove_tag") and not self.tag:
            raise ValueError(f"{self.kind} action requires a tag")
        if self.kind == "update_field" and not self.field:
            raise ValueError("update_field action requires a field")
        if self.kind == "webhook" and not self.url:
            raise ValueError("webhook action requires a url")
        return self


class SplitSpec(BaseModel):
    ratio: float = Field(default=50.0, ge=0, le=100)
    branch_a: Optional[str] = None
    branch_b: Optional[str] = None


class BaseStep(BaseModel):
    """Fields shared by every step kind."""

    id: str
    name: Optional[str] = None
    next_step: Optional[str] = None

    def references(self) -> List[str]:
        """Step ids this step can hand control to."""
        return [ref for ref in (self.next_step,) if ref]


class SendEmailStep(BaseStep):
    type: Literal["send_email"] = "send_email"
    email: EmailContent = Field(default_factory=EmailContent)


class WaitStep(BaseStep):
    type: Literal["wait"] = "wait"
    wait: WaitSpec = Field(default_factory=WaitSpec)


class ConditionStep(BaseStep):
    type: Literal["condition"] = "condition"
    condition: ConditionSpec

    def references(self) -> List[str]:
        refs = [self.next_step, self.condition.true_branch, self.condition.false_branch]
        if self.condition.kind in ("email_opened", "email_clicked"):
            refs.append(self.condition.step_id)
        return [ref for ref in refs if ref]


class ActionStep(BaseStep):
    type: Literal["action"] = "action"
    action: ActionSpec


class SplitStep(BaseStep):
    type: Literal["split"] = "split"
    split: SplitSpec = Field(default_factory=SplitSpec)

    def references(self) -> List[str]:
        refs = [self.next_step, self.split.branch_a, self.split.branch_b]
        return [ref for ref in refs if ref]


Step = Annotated[
    Union[SendEmailStep, WaitStep, ConditionStep, ActionStep, SplitStep],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Triggers


class ManualTrigger(BaseModel):
    type: Literal["manual"] = "manual"


class DateBasedTrigger(BaseModel):
    type: Literal["date_based"] = "date_based"
    date_field: str


class NoActivityTrigger(BaseModel):
    type: Literal["no_activity"] = "no_activity"
    inactivity_days: int = Field(default=30, ge=1)


class TagAddedTrigger(BaseModel):
    type: Literal["tag_added"] = "tag_added"
    tag: str


Trigger = Annotated[
    Union[ManualTrigger, DateBasedTrigger, NoActivityTrigger, TagAddedTrigger],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Workflows


class SendWindow(BaseModel):
    """Hours (UTC) and weekdays during which email steps may run."""

    enabled: bool = False
    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=17, ge=1, le=24)
    days_of_week: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])


class WorkflowSettings(BaseModel):
    allow_reentry: bool = False
    exclude_tags: List[str] = Field(default_factory=list)
    default_from_email: Optional[str] = None
    default_from_name: Optional[str] = None
    send_window: SendWindow = Field(default_factory=SendWindow)


class WorkflowStats(BaseModel):
    total_entered: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    emails_sent: int = 0


class Workflow(BaseModel):
    """A workflow definition: trigger, step graph and aggregate stats.

    The step graph is validated when the model is built: ids are unique, the
    entry step exists and every branch or ``next_step`` reference resolves.
    """

    id: str = Field(default_factory=_new_id)
    owner_id: str
    name: str = ""
    status: WorkflowStatus = "draft"
    trigger: Trigger = Field(default_factory=ManualTrigger)
    steps: List[Step] = Field(default_factory=list)
    entry_step_id: Optional[str] = None
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    stats: WorkflowStats = Field(default_factory=WorkflowStats)
    created_at: datetime = Field(default_factory=utcnow)

    _index: Dict[str, int] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _validate_graph(self) -> "Workflow":
        index: Dict[str, int] = {}
        for position, step in enumerate(self.steps):
            if step.id in index:
                raise ValueError(f"duplicate step id: {step.id}")
            index[step.id] = position

        if self.steps and self.entry_step_id is None:
            self.entry_step_id = self.steps[0].id
        if self.entry_step_id is not None and self.entry_step_id not in index:
            raise ValueError(f"entry step {self.entry_step_id} does not exist")

        for step in self.steps:
            for ref in step.references():
                if ref not in index:
                    raise ValueError(f"step {step.id} references unknown step {ref}")

        self._index = index
        return self

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None:
            return None
        position = self._index.get(step_id)
        return self.steps[position] if position is not None else None

    @property
    def entry_step(self) -> Optional[Step]:
        return self.get_step(self.entry_step_id)


# ----------------------------------------------------------------------
# Runtime state


class Contact(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    email: str
    name: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    subscribed: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: Optional[datetime] = None
    last_contacted_at: Optional[datetime] = None

    @property
    def first_name(self) -> str:
        return (self.name or "").split(" ")[0] or "there"


class JourneyEntry(BaseModel):
    """One line of an enrollment's audit trail."""

    task_id: Optional[str] = None
    step_id: Optional[str] = None
    step_type: Optional[str] = None
    action: JourneyAction
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class Enrollment(BaseModel):
    id: str = Field(default_factory=_new_id)
    workflow_id: str
    contact_id: str
    owner_id: str
    status: EnrollmentStatus = "active"
    current_step: Optional[str] = None
    journey: List[JourneyEntry] = Field(default_factory=list)
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def entry_for_task(self, task_id: str) -> Optional[JourneyEntry]:
        for entry in self.journey:
            if entry.task_id == task_id:
                return entry
        return None


class Task(BaseModel):
    """A scheduled execution of one step for one enrollment."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    enrollment_id: str
    contact_id: str
    step_id: str
    scheduled_for: datetime = Field(default_factory=utcnow)
    status: TaskStatus = "pending"
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class StepResult(BaseModel):
    """Outcome of a successful step execution."""

    success: bool = True
    next_step: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
