"""Shared fixtures wiring an in-memory automation engine."""

import random
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

import dripflow.persistence as persistence
from dripflow.config import WorkerConfig
from dripflow.enroll import EnrollmentService
from dripflow.execute import StepExecutor
from dripflow.persistence import InMemoryAutomationRepository
from dripflow.providers import InMemoryEmailProvider
from dripflow.triggers import TriggerEvaluator
from dripflow.worker import QueueWorker


@pytest.fixture
def now():
    # A Wednesday inside business hours.
    return datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    return InMemoryAutomationRepository()


@pytest.fixture
def provider():
    return InMemoryEmailProvider()


@pytest.fixture
def engine(repo, provider):
    """Repository, provider, executor, enrollment service, worker and triggers."""
    config = WorkerConfig(max_attempts=3)
    enrollments = EnrollmentService(repo, max_attempts=config.max_attempts)
    executor = StepExecutor(repo, provider, rng=random.Random(7))
    worker = QueueWorker(repo, executor, enrollments, config)
    return SimpleNamespace(
        repo=repo,
        provider=provider,
        executor=executor,
        enrollments=enrollments,
        worker=worker,
        triggers=TriggerEvaluator(repo, enrollments),
    )


@pytest.fixture(autouse=True)
def reset_repository_cache(monkeypatch):
    monkeypatch.delenv("DRIPFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DRIPFLOW_EMAIL_PROVIDER", raising=False)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None
