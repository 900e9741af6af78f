"""Dripflow: durable marketing automation workflows."""

from .config import DripflowConfig, load_config
from .contracts import (
    Contact,
    DripflowError,
    Enrollment,
    EnrollmentNotFound,
    JourneyEntry,
    Step,
    StepExecutionError,
    StepResult,
    Task,
    Trigger,
    Workflow,
    WorkflowNotFound,
)
from .enroll import EnrollmentOutcome, EnrollmentService
from .execute import StepExecutor
from .persistence import get_repository
from .providers import get_email_provider
from .retention import RetentionSweeper
from .scheduler import AutomationScheduler
from .triggers import TriggerEvaluator
from .worker import QueueWorker

__version__ = "0.1.0"
__all__ = [
    "AutomationScheduler",
    "Contact",
    "DripflowConfig",
    "DripflowError",
    "Enrollment",
    "EnrollmentNotFound",
    "EnrollmentOutcome",
    "EnrollmentService",
    "JourneyEntry",
    "QueueWorker",
    "RetentionSweeper",
    "Step",
    "StepExecutionError",
    "StepExecutor",
    "StepResult",
    "Task",
    "Trigger",
    "TriggerEvaluator",
    "Workflow",
    "WorkflowNotFound",
    "get_email_provider",
    "get_repository",
    "load_config",
]
