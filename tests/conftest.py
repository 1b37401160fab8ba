"""
Pytest configuration and fixtures.
"""
import asyncio

import pytest

from fakes import (
    FakeBackupScheduler,
    FakeInfrastructure,
    FakeMonitor,
    FakeRecorder,
    FakeResourceStore,
)
from kubedb_operator.config.settings import Settings
from kubedb_operator.core.context import OperatorContext
from kubedb_operator.core.reconciler import LifecycleReconciler
from kubedb_operator.services.status_reporter import StatusReporter
from kubedb_operator.services.validator import SpecValidator


@pytest.fixture
def test_settings() -> Settings:
    """Settings with waits and backoffs shrunk for tests."""
    return Settings(
        environment="testing",
        stateful_set_ready_timeout_seconds=0.2,
        stateful_set_poll_interval_seconds=0.01,
        restore_timeout_seconds=0.2,
        restore_poll_interval_seconds=0.01,
        status_patch_max_attempts=3,
        status_patch_backoff_min_seconds=0,
        status_patch_backoff_max_seconds=0,
        requeue_base_delay_seconds=0.01,
        requeue_max_delay_seconds=0.05,
        requeue_jitter_factor=0,
        requeue_max_attempts=3,
        metrics_enabled=False,
    )


@pytest.fixture
def store() -> FakeResourceStore:
    return FakeResourceStore()


@pytest.fixture
def infrastructure() -> FakeInfrastructure:
    return FakeInfrastructure()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def backups() -> FakeBackupScheduler:
    return FakeBackupScheduler()


@pytest.fixture
def monitor() -> FakeMonitor:
    return FakeMonitor()


@pytest.fixture
def reporter(store, recorder, test_settings) -> StatusReporter:
    return StatusReporter(store, recorder, test_settings)


@pytest.fixture
def ctx(test_settings, store, infrastructure, backups, monitor, reporter) -> OperatorContext:
    return OperatorContext(
        settings=test_settings,
        store=store,
        infrastructure=infrastructure,
        validator=SpecValidator(infrastructure),
        monitor=monitor,
        backups=backups,
        reporter=reporter,
        shutdown_event=asyncio.Event(),
    )


@pytest.fixture
def reconciler(ctx) -> LifecycleReconciler:
    return LifecycleReconciler(ctx)
