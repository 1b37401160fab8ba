"""
Tests for the Kubernetes-backed gateways against mocked API clients.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes_asyncio.client import ApiException

from fakes import make_database, make_snapshot
from kubedb_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    OperationTimeoutError,
    RestoreError,
)
from kubedb_operator.models.database import (
    BackupScheduleSpec,
    MonitorSpec,
    PrometheusSpec,
    SecretReference,
    database_selector,
)
from kubedb_operator.services.backup_scheduler import BackupScheduler
from kubedb_operator.services.event_recorder import EVENT_TYPE_WARNING, EventRecorder
from kubedb_operator.services.infrastructure import JOB_FAILED, JOB_SUCCEEDED, InfrastructureGateway
from kubedb_operator.services.monitor_service import AGENT_PROMETHEUS_OPERATOR, MonitorService
from kubedb_operator.services.resource_store import ResourceStore


def api_error(status: int, reason: str = "") -> ApiException:
    return ApiException(status=status, reason=reason)


@pytest.fixture
def client_set():
    return MagicMock()


@pytest.fixture
def gateway(client_set, test_settings):
    return InfrastructureGateway(client_set, test_settings)


def secured_database(**spec):
    return make_database(database_secret=SecretReference(secret_name="demo-admin-auth"), **spec)


# ----------------------------------------------------------------------
# InfrastructureGateway
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ensure_service_creates_missing_service(gateway, client_set):
    client_set.core_api.read_namespaced_service = AsyncMock(side_effect=api_error(404, "Not Found"))
    client_set.core_api.create_namespaced_service = AsyncMock()

    created = await gateway.ensure_service(make_database())

    assert created is True
    body = client_set.core_api.create_namespaced_service.await_args.kwargs["body"]
    assert body["metadata"]["name"] == "demo"
    assert body["spec"]["selector"] == database_selector("demo")


@pytest.mark.asyncio
async def test_ensure_service_leaves_existing_service(gateway, client_set):
    client_set.core_api.read_namespaced_service = AsyncMock(return_value=SimpleNamespace())
    client_set.core_api.create_namespaced_service = AsyncMock()

    assert await gateway.ensure_service(make_database()) is False
    client_set.core_api.create_namespaced_service.assert_not_awaited()


@pytest.mark.asyncio
async def test_ensure_tolerates_create_race(gateway, client_set):
    client_set.core_api.read_namespaced_service = AsyncMock(side_effect=api_error(404))
    client_set.core_api.create_namespaced_service = AsyncMock(side_effect=api_error(409, "AlreadyExists"))

    assert await gateway.ensure_governing_service("default") is False


@pytest.mark.asyncio
async def test_governing_service_is_headless(gateway, client_set):
    client_set.core_api.read_namespaced_service = AsyncMock(side_effect=api_error(404))
    client_set.core_api.create_namespaced_service = AsyncMock()

    await gateway.ensure_governing_service("default")

    body = client_set.core_api.create_namespaced_service.await_args.kwargs["body"]
    assert body["metadata"]["name"] == "kubedb"
    assert body["spec"]["clusterIP"] == "None"


@pytest.mark.asyncio
async def test_stateful_set_body(gateway, client_set):
    client_set.apps_api.read_namespaced_stateful_set = AsyncMock(side_effect=api_error(404))
    client_set.apps_api.create_namespaced_stateful_set = AsyncMock()

    await gateway.ensure_stateful_set(secured_database(replicas=3))

    body = client_set.apps_api.create_namespaced_stateful_set.await_args.kwargs["body"]
    assert body["spec"]["replicas"] == 3
    assert body["spec"]["serviceName"] == "kubedb"
    assert body["spec"]["template"]["spec"]["containers"][0]["image"] == "kubedb/xdb:8.0"
    assert body["spec"]["volumeClaimTemplates"][0]["metadata"]["labels"] == database_selector("demo")


@pytest.mark.asyncio
async def test_delete_is_idempotent(gateway, client_set):
    client_set.apps_api.delete_namespaced_stateful_set = AsyncMock(side_effect=api_error(404))

    assert await gateway.delete_stateful_set("demo", "default") is False
    client_set.apps_api.delete_namespaced_stateful_set.assert_awaited_once_with(
        name="demo", namespace="default", propagation_policy="Foreground"
    )


@pytest.mark.asyncio
async def test_delete_failure_is_infrastructure_error(gateway, client_set):
    client_set.core_api.delete_namespaced_service = AsyncMock(side_effect=api_error(403, "Forbidden"))

    with pytest.raises(InfrastructureError):
        await gateway.delete_service("demo", "default")


@pytest.mark.asyncio
async def test_delete_rbac_removes_all_three_objects(gateway, client_set):
    client_set.rbac_api.delete_namespaced_role_binding = AsyncMock()
    client_set.rbac_api.delete_namespaced_role = AsyncMock(side_effect=api_error(404))
    client_set.core_api.delete_namespaced_service_account = AsyncMock()

    assert await gateway.delete_rbac("demo", "default") is True
    client_set.rbac_api.delete_namespaced_role.assert_awaited_once()
    client_set.core_api.delete_namespaced_service_account.assert_awaited_once()


@pytest.mark.asyncio
async def test_stateful_set_readiness(gateway, client_set):
    client_set.apps_api.read_namespaced_stateful_set = AsyncMock(
        return_value=SimpleNamespace(spec=SimpleNamespace(replicas=3), status=SimpleNamespace(ready_replicas=2))
    )

    assert await gateway.stateful_set_ready("demo", "default") is False
    with pytest.raises(OperationTimeoutError):
        await gateway.wait_for_stateful_set_ready("demo", "default")


@pytest.mark.asyncio
async def test_job_phase(gateway, client_set):
    def job(conditions=None, succeeded=None):
        return SimpleNamespace(status=SimpleNamespace(conditions=conditions, succeeded=succeeded))

    complete = SimpleNamespace(type="Complete", status="True")
    failed = SimpleNamespace(type="Failed", status="True")
    client_set.batch_api.read_namespaced_job = AsyncMock(
        side_effect=[job([complete]), job([failed]), job(), job(succeeded=1)]
    )

    assert await gateway.get_job_phase("demo-restore", "default") == JOB_SUCCEEDED
    assert await gateway.get_job_phase("demo-restore", "default") == JOB_FAILED
    assert await gateway.get_job_phase("demo-restore", "default") is None
    assert await gateway.get_job_phase("demo-restore", "default") == JOB_SUCCEEDED


@pytest.mark.asyncio
async def test_snapshot_credentials_are_copied(gateway, client_set):
    client_set.core_api.read_namespaced_secret = AsyncMock(
        side_effect=[api_error(404), SimpleNamespace(data={"AWS_ACCESS_KEY_ID": "a2V5"})]
    )
    client_set.core_api.create_namespaced_secret = AsyncMock()

    name = await gateway.ensure_snapshot_credentials(secured_database(), make_snapshot("snap-1", namespace="backups"))

    assert name == "snap-1-restore-credentials"
    body = client_set.core_api.create_namespaced_secret.await_args.kwargs["body"]
    assert body["data"] == {"AWS_ACCESS_KEY_ID": "a2V5"}
    assert client_set.core_api.read_namespaced_secret.await_args.kwargs == {
        "name": "s3-credentials",
        "namespace": "backups",
    }


@pytest.mark.asyncio
async def test_snapshot_without_storage_secret(gateway):
    snapshot = make_snapshot("snap-1")
    snapshot.spec.storage_secret_name = None

    with pytest.raises(RestoreError):
        await gateway.ensure_snapshot_credentials(secured_database(), snapshot)


# ----------------------------------------------------------------------
# ResourceStore
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_store_get_database(client_set):
    db = make_database()
    db.metadata.resource_version = "3"
    client_set.custom_api.get_namespaced_custom_object = AsyncMock(return_value=db.dump())

    loaded = await ResourceStore(client_set).get_database("default", "demo")

    assert loaded.metadata.resource_version == "3"
    assert loaded.spec.version == "8.0"


@pytest.mark.asyncio
async def test_store_translates_errors(client_set):
    custom = client_set.custom_api
    custom.get_namespaced_custom_object = AsyncMock(side_effect=api_error(404))
    custom.create_namespaced_custom_object = AsyncMock(side_effect=api_error(409))
    custom.replace_namespaced_custom_object = AsyncMock(side_effect=api_error(409))
    store = ResourceStore(client_set)

    with pytest.raises(NotFoundError):
        await store.get_database("default", "demo")
    assert await store.find_dormant("default", "demo") is None
    assert await store.database_exists("default", "demo") is False
    with pytest.raises(AlreadyExistsError):
        await store.create_database(make_database())
    with pytest.raises(ConflictError):
        await store.replace_database(make_database())


@pytest.mark.asyncio
async def test_store_create_strips_server_metadata(client_set):
    db = make_database()
    db.metadata.resource_version = "3"
    db.metadata.uid = "old-uid"
    client_set.custom_api.create_namespaced_custom_object = AsyncMock(return_value=make_database().dump())

    await ResourceStore(client_set).create_database(db)

    metadata = client_set.custom_api.create_namespaced_custom_object.await_args.kwargs["body"]["metadata"]
    assert "resourceVersion" not in metadata
    assert "uid" not in metadata


@pytest.mark.asyncio
async def test_store_lists_by_label_selector(client_set):
    client_set.custom_api.list_namespaced_custom_object = AsyncMock(
        return_value={"items": [{"metadata": {"name": "demo-20240101"}}]}
    )
    client_set.core_api.list_namespaced_persistent_volume_claim = AsyncMock(
        return_value=SimpleNamespace(items=[SimpleNamespace(metadata=SimpleNamespace(name="data-demo-0"))])
    )
    store = ResourceStore(client_set)
    labels = database_selector("demo")

    assert await store.list_snapshot_names("default", labels) == ["demo-20240101"]
    assert await store.list_pvc_names("default", labels) == ["data-demo-0"]
    selector = client_set.core_api.list_namespaced_persistent_volume_claim.await_args.kwargs["label_selector"]
    assert selector == "kubedb.com/kind=ManagedDatabase,kubedb.com/name=demo"


# ----------------------------------------------------------------------
# EventRecorder, BackupScheduler, MonitorService
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_event_recorder_never_raises(client_set):
    client_set.core_api.create_namespaced_event = AsyncMock(side_effect=api_error(500))
    recorder = EventRecorder(client_set, component="kubedb-operator")

    await recorder.record(make_database(), EVENT_TYPE_WARNING, "Failed", "boom")

    body = client_set.core_api.create_namespaced_event.await_args.kwargs["body"]
    assert body["involvedObject"]["kind"] == "ManagedDatabase"
    assert body["reason"] == "Failed"
    assert body["type"] == EVENT_TYPE_WARNING


@pytest.mark.asyncio
async def test_backup_schedule_create_then_patch(client_set, test_settings):
    batch = client_set.batch_api
    batch.read_namespaced_cron_job = AsyncMock(side_effect=[api_error(404), SimpleNamespace()])
    batch.create_namespaced_cron_job = AsyncMock()
    batch.patch_namespaced_cron_job = AsyncMock()
    scheduler = BackupScheduler(client_set, test_settings)
    schedule = BackupScheduleSpec(cron_expression="@daily", storage_secret_name="s3-credentials")

    await scheduler.schedule(make_database(), schedule)
    await scheduler.schedule(make_database(), schedule)

    batch.create_namespaced_cron_job.assert_awaited_once()
    batch.patch_namespaced_cron_job.assert_awaited_once()
    body = batch.create_namespaced_cron_job.await_args.kwargs["body"]
    assert body["metadata"]["name"] == "demo-backup"
    assert body["spec"]["schedule"] == "@daily"


@pytest.mark.asyncio
async def test_backup_stop_without_schedule_is_noop(client_set, test_settings):
    client_set.batch_api.delete_namespaced_cron_job = AsyncMock(side_effect=api_error(404))

    await BackupScheduler(client_set, test_settings).stop(make_database())


@pytest.mark.asyncio
async def test_monitor_add_patches_existing(client_set, test_settings):
    custom = client_set.custom_api
    custom.create_namespaced_custom_object = AsyncMock(side_effect=api_error(409))
    custom.patch_namespaced_custom_object = AsyncMock()
    db = make_database(
        monitor=MonitorSpec(agent=AGENT_PROMETHEUS_OPERATOR, prometheus=PrometheusSpec(namespace="monitoring"))
    )

    await MonitorService(client_set, test_settings).add(db)

    kwargs = custom.patch_namespaced_custom_object.await_args.kwargs
    assert kwargs["namespace"] == "monitoring"
    assert kwargs["name"] == "kubedb-default-demo"


@pytest.mark.asyncio
async def test_monitor_update_removes_dropped_monitor(client_set, test_settings):
    client_set.custom_api.delete_namespaced_custom_object = AsyncMock()
    old = make_database(monitor=MonitorSpec(agent=AGENT_PROMETHEUS_OPERATOR))

    await MonitorService(client_set, test_settings).update(old, make_database())

    client_set.custom_api.delete_namespaced_custom_object.assert_awaited_once()
