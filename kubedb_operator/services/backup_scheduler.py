"""
Backup Schedule Gateway.

A database's periodic snapshots run as a CronJob named ``<database>-backup``.
Scheduling is create-or-patch so re-applying a changed schedule replaces the
old one in a single call.
"""
from typing import Any, Dict, Union

from kubernetes_asyncio.client import ApiException

from kubedb_operator.config.logging import get_logger
from kubedb_operator.config.settings import Settings
from kubedb_operator.models.database import BackupScheduleSpec, DormantDatabase, ManagedDatabase
from kubedb_operator.services.kubernetes_client import KubernetesClientSet
from kubedb_operator.services.resource_store import translate_api_error
from kubedb_operator.utils.retry import retry_on_k8s_error

logger = get_logger(__name__)


def backup_cron_job_name(database_name: str) -> str:
    return f"{database_name}-backup"


class BackupScheduler:
    """Starts and stops the backup CronJob of a database."""

    def __init__(self, client_set: KubernetesClientSet, settings: Settings):
        self.client_set = client_set
        self.settings = settings

    def _cron_job_body(self, db: ManagedDatabase, schedule: BackupScheduleSpec) -> Dict[str, Any]:
        labels = {**db.selector_labels(), "kubedb.com/job-type": "backup"}
        args = [
            "backup",
            f"--host={db.offshoot_name}.{db.namespace}",
            f"--database={db.name}",
        ]
        if schedule.bucket_name:
            args.append(f"--bucket={schedule.bucket_name}")

        pod_spec: Dict[str, Any] = {
            "restartPolicy": "OnFailure",
            "containers": [
                {
                    "name": "backup",
                    "image": f"{self.settings.backup_image}:{db.spec.version}",
                    "args": args,
                }
            ],
        }
        if schedule.storage_secret_name:
            pod_spec["containers"][0]["volumeMounts"] = [{"name": "osm", "mountPath": "/etc/osm", "readOnly": True}]
            pod_spec["volumes"] = [{"name": "osm", "secret": {"secretName": schedule.storage_secret_name}}]

        return {
            "apiVersion": "batch/v1",
            "kind": "CronJob",
            "metadata": {
                "name": backup_cron_job_name(db.name),
                "namespace": db.namespace,
                "labels": labels,
            },
            "spec": {
                "schedule": schedule.cron_expression,
                "concurrencyPolicy": "Forbid",
                "jobTemplate": {
                    "metadata": {"labels": labels},
                    "spec": {"template": {"metadata": {"labels": labels}, "spec": pod_spec}},
                },
            },
        }

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _apply(self, namespace: str, name: str, body: Dict[str, Any]) -> bool:
        batch = self.client_set.batch_api
        try:
            await batch.read_namespaced_cron_job(name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            await batch.create_namespaced_cron_job(namespace=namespace, body=body)
            return True
        await batch.patch_namespaced_cron_job(name=name, namespace=namespace, body=body)
        return False

    async def schedule(self, db: ManagedDatabase, schedule: BackupScheduleSpec) -> None:
        """Start, or re-point, periodic snapshots for ``db``."""
        name = backup_cron_job_name(db.name)
        try:
            created = await self._apply(db.namespace, name, self._cron_job_body(db, schedule))
        except ApiException as e:
            raise translate_api_error(e, "CronJob", name, db.namespace, "apply")
        logger.info(
            "backup_schedule_applied",
            name=db.name,
            namespace=db.namespace,
            cron=schedule.cron_expression,
            created=created,
        )

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _delete(self, namespace: str, name: str) -> None:
        await self.client_set.batch_api.delete_namespaced_cron_job(
            name=name, namespace=namespace, propagation_policy="Background"
        )

    async def stop(self, resource: Union[ManagedDatabase, DormantDatabase]) -> None:
        """Stop periodic snapshots; stopping an unscheduled database is a no-op."""
        name = backup_cron_job_name(resource.name)
        try:
            await self._delete(resource.namespace, name)
        except ApiException as e:
            if e.status == 404:
                return
            raise translate_api_error(e, "CronJob", name, resource.namespace, "delete")
        logger.info("backup_schedule_stopped", name=resource.name, namespace=resource.namespace)
