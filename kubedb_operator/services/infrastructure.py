"""
Infrastructure Gateway - the Kubernetes sub-resources behind a ManagedDatabase.

Idempotent ensure/delete for the governing Service, the database Service, the
StatefulSet, its RBAC objects and Secrets, plus restore Job management and
the bounded StatefulSet readiness wait.

Every ``ensure_*`` method returns True when it created the object and False
when the object was already present. Every ``delete_*`` method returns True
when it deleted the object and False when it was already gone.
"""
import asyncio
import base64
import secrets
from typing import Any, Dict, Optional

from kubernetes_asyncio.client import ApiException

from kubedb_operator.config.logging import get_logger
from kubedb_operator.config.settings import Settings
from kubedb_operator.exceptions import RestoreError
from kubedb_operator.models.database import (
    DATABASE_KIND,
    LABEL_DATABASE_KIND,
    ManagedDatabase,
    Snapshot,
)
from kubedb_operator.services.kubernetes_client import KubernetesClientSet
from kubedb_operator.services.resource_store import translate_api_error
from kubedb_operator.utils.polling import poll_until
from kubedb_operator.utils.retry import retry_on_k8s_error

logger = get_logger(__name__)

JOB_SUCCEEDED = "Succeeded"
JOB_FAILED = "Failed"


def restore_job_name(db: ManagedDatabase) -> str:
    """Deterministic so a retried create pass finds the job it already started."""
    return f"{db.name}-restore"


def restore_credentials_secret_name(snapshot: Snapshot) -> str:
    return f"{snapshot.name}-restore-credentials"


@retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
async def _call(api_method, **kwargs):
    """Invoke a Kubernetes API method, retrying transient failures."""
    return await api_method(**kwargs)


class InfrastructureGateway:
    """Creates, inspects and deletes the workload objects of a database."""

    def __init__(self, client_set: KubernetesClientSet, settings: Settings):
        self.client_set = client_set
        self.settings = settings

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _exists(read, resource: str, name: str, namespace: str) -> bool:
        try:
            await _call(read, name=name, namespace=namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise translate_api_error(e, resource, name, namespace, "get")

    @staticmethod
    async def _create(create, resource: str, name: str, namespace: str, body: Dict[str, Any]) -> bool:
        try:
            await _call(create, namespace=namespace, body=body)
        except ApiException as e:
            if e.status == 409:
                # Lost a race with another writer; the object exists, which is what we wanted.
                logger.info("resource_already_exists", resource=resource, name=name, namespace=namespace)
                return False
            raise translate_api_error(e, resource, name, namespace, "create")
        logger.info("resource_created", resource=resource, name=name, namespace=namespace)
        return True

    @staticmethod
    async def _delete(delete, resource: str, name: str, namespace: str, **kwargs) -> bool:
        try:
            await _call(delete, name=name, namespace=namespace, **kwargs)
        except ApiException as e:
            if e.status == 404:
                logger.info("resource_already_deleted", resource=resource, name=name, namespace=namespace)
                return False
            logger.error("resource_deletion_failed", resource=resource, name=name, namespace=namespace, error=e.reason)
            raise translate_api_error(e, resource, name, namespace, "delete")
        logger.info("resource_deleted", resource=resource, name=name, namespace=namespace)
        return True

    async def _ensure(self, read, create, resource: str, name: str, namespace: str, body: Dict[str, Any]) -> bool:
        if await self._exists(read, resource, name, namespace):
            return False
        return await self._create(create, resource, name, namespace, body)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def ensure_governing_service(self, namespace: str) -> bool:
        """Headless service giving StatefulSet pods stable DNS names; one per namespace."""
        name = self.settings.governing_service_name
        body = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {
                "clusterIP": "None",
                "selector": {LABEL_DATABASE_KIND: DATABASE_KIND},
                "ports": [{"name": "db", "port": self.settings.database_port}],
            },
        }
        core = self.client_set.core_api
        return await self._ensure(core.read_namespaced_service, core.create_namespaced_service, "Service", name, namespace, body)

    async def ensure_service(self, db: ManagedDatabase) -> bool:
        labels = db.selector_labels()
        body = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": db.offshoot_name, "namespace": db.namespace, "labels": labels},
            "spec": {
                "selector": labels,
                "ports": [
                    {
                        "name": "db",
                        "port": self.settings.database_port,
                        "targetPort": "db",
                    }
                ],
            },
        }
        core = self.client_set.core_api
        return await self._ensure(
            core.read_namespaced_service, core.create_namespaced_service, "Service", db.offshoot_name, db.namespace, body
        )

    async def delete_service(self, name: str, namespace: str) -> bool:
        return await self._delete(self.client_set.core_api.delete_namespaced_service, "Service", name, namespace)

    # ------------------------------------------------------------------
    # RBAC
    # ------------------------------------------------------------------

    async def ensure_rbac(self, db: ManagedDatabase) -> bool:
        """ServiceAccount, Role and RoleBinding named after the database."""
        name = db.offshoot_name
        namespace = db.namespace
        labels = db.selector_labels()
        core = self.client_set.core_api
        rbac = self.client_set.rbac_api

        created = await self._ensure(
            core.read_namespaced_service_account,
            core.create_namespaced_service_account,
            "ServiceAccount",
            name,
            namespace,
            {"apiVersion": "v1", "kind": "ServiceAccount", "metadata": {"name": name, "namespace": namespace, "labels": labels}},
        )
        created = await self._ensure(
            rbac.read_namespaced_role,
            rbac.create_namespaced_role,
            "Role",
            name,
            namespace,
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "Role",
                "metadata": {"name": name, "namespace": namespace, "labels": labels},
                "rules": [
                    {"apiGroups": [""], "resources": ["secrets"], "resourceNames": [self.secret_name_for(db)], "verbs": ["get"]},
                    {"apiGroups": [""], "resources": ["pods"], "verbs": ["get", "list", "patch"]},
                ],
            },
        ) or created
        created = await self._ensure(
            rbac.read_namespaced_role_binding,
            rbac.create_namespaced_role_binding,
            "RoleBinding",
            name,
            namespace,
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "RoleBinding",
                "metadata": {"name": name, "namespace": namespace, "labels": labels},
                "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "Role", "name": name},
                "subjects": [{"kind": "ServiceAccount", "name": name, "namespace": namespace}],
            },
        ) or created
        return created

    async def delete_rbac(self, name: str, namespace: str) -> bool:
        core = self.client_set.core_api
        rbac = self.client_set.rbac_api
        deleted = await self._delete(rbac.delete_namespaced_role_binding, "RoleBinding", name, namespace)
        deleted = await self._delete(rbac.delete_namespaced_role, "Role", name, namespace) or deleted
        deleted = await self._delete(core.delete_namespaced_service_account, "ServiceAccount", name, namespace) or deleted
        return deleted

    # ------------------------------------------------------------------
    # StatefulSet
    # ------------------------------------------------------------------

    @staticmethod
    def secret_name_for(db: ManagedDatabase) -> str:
        if db.spec.database_secret is None:
            raise ValueError(f"ManagedDatabase {db.key} has no database secret reference")
        return db.spec.database_secret.secret_name

    def _stateful_set_body(self, db: ManagedDatabase) -> Dict[str, Any]:
        labels = db.selector_labels()
        storage = db.spec.storage or {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": "1Gi"}},
        }
        pod_spec: Dict[str, Any] = {
            "serviceAccountName": db.offshoot_name,
            "containers": [
                {
                    "name": "database",
                    "image": f"{self.settings.database_image}:{db.spec.version}",
                    "ports": [{"name": "db", "containerPort": self.settings.database_port}],
                    "env": [
                        {
                            "name": "DATABASE_PASSWORD",
                            "valueFrom": {"secretKeyRef": {"name": self.secret_name_for(db), "key": "password"}},
                        }
                    ],
                    "volumeMounts": [{"name": "data", "mountPath": "/var/lib/database"}],
                }
            ],
        }
        if db.spec.node_selector:
            pod_spec["nodeSelector"] = db.spec.node_selector

        return {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": {"name": db.offshoot_name, "namespace": db.namespace, "labels": labels},
            "spec": {
                "replicas": db.spec.replicas,
                "serviceName": self.settings.governing_service_name,
                "selector": {"matchLabels": labels},
                "template": {"metadata": {"labels": labels}, "spec": pod_spec},
                # Claims inherit these labels, which is what wipe-out selects on.
                "volumeClaimTemplates": [
                    {"metadata": {"name": "data", "labels": labels}, "spec": storage}
                ],
            },
        }

    async def ensure_stateful_set(self, db: ManagedDatabase) -> bool:
        apps = self.client_set.apps_api
        return await self._ensure(
            apps.read_namespaced_stateful_set,
            apps.create_namespaced_stateful_set,
            "StatefulSet",
            db.offshoot_name,
            db.namespace,
            self._stateful_set_body(db),
        )

    async def delete_stateful_set(self, name: str, namespace: str) -> bool:
        return await self._delete(
            self.client_set.apps_api.delete_namespaced_stateful_set,
            "StatefulSet",
            name,
            namespace,
            propagation_policy="Foreground",
        )

    async def stateful_set_ready(self, name: str, namespace: str) -> bool:
        try:
            sts = await _call(self.client_set.apps_api.read_namespaced_stateful_set, name=name, namespace=namespace)
        except ApiException as e:
            raise translate_api_error(e, "StatefulSet", name, namespace, "get")
        desired = sts.spec.replicas or 0
        ready = (sts.status.ready_replicas or 0) if sts.status else 0
        logger.debug("stateful_set_status", name=name, namespace=namespace, ready=ready, desired=desired)
        return ready >= desired

    async def wait_for_stateful_set_ready(
        self,
        name: str,
        namespace: str,
        shutdown_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Block until every replica reports ready.

        Raises:
            OperationTimeoutError: If pods are not ready within the configured timeout
            OperationCancelledError: If the operator shuts down while waiting
        """
        async def check() -> Optional[bool]:
            return True if await self.stateful_set_ready(name, namespace) else None

        await poll_until(
            check,
            timeout=self.settings.stateful_set_ready_timeout_seconds,
            interval=self.settings.stateful_set_poll_interval_seconds,
            description=f"StatefulSet {namespace}/{name} readiness",
            shutdown_event=shutdown_event,
        )
        logger.info("stateful_set_ready", name=name, namespace=namespace)

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    async def secret_exists(self, name: str, namespace: str) -> bool:
        return await self._exists(self.client_set.core_api.read_namespaced_secret, "Secret", name, namespace)

    async def ensure_database_secret(self, db: ManagedDatabase) -> bool:
        """Generate admin credentials unless the referenced Secret already exists."""
        name = self.secret_name_for(db)
        password = secrets.token_urlsafe(24)
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": name, "namespace": db.namespace, "labels": db.selector_labels()},
            "data": {
                "username": base64.b64encode(b"admin").decode(),
                "password": base64.b64encode(password.encode()).decode(),
            },
        }
        core = self.client_set.core_api
        return await self._ensure(core.read_namespaced_secret, core.create_namespaced_secret, "Secret", name, db.namespace, body)

    async def ensure_snapshot_credentials(self, db: ManagedDatabase, snapshot: Snapshot) -> str:
        """
        Copy the snapshot's storage credentials into the database namespace.

        Returns:
            Name of the Secret the restore job mounts
        """
        source_name = snapshot.spec.storage_secret_name
        if not source_name:
            raise RestoreError(f'Snapshot "{snapshot.name}" has no storage secret')

        target_name = restore_credentials_secret_name(snapshot)
        core = self.client_set.core_api
        if await self._exists(core.read_namespaced_secret, "Secret", target_name, db.namespace):
            return target_name

        try:
            source = await _call(core.read_namespaced_secret, name=source_name, namespace=snapshot.namespace)
        except ApiException as e:
            raise translate_api_error(e, "Secret", source_name, snapshot.namespace, "get")

        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": target_name, "namespace": db.namespace, "labels": db.selector_labels()},
            "data": dict(source.data or {}),
        }
        await self._create(core.create_namespaced_secret, "Secret", target_name, db.namespace, body)
        return target_name

    # ------------------------------------------------------------------
    # Restore job
    # ------------------------------------------------------------------

    async def create_restore_job(self, db: ManagedDatabase, snapshot: Snapshot, credentials_secret: str) -> str:
        """Create the restore job, or adopt the one a previous pass created."""
        name = restore_job_name(db)
        labels = {**db.selector_labels(), "kubedb.com/job-type": "restore"}
        body = {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {"name": name, "namespace": db.namespace, "labels": labels},
            "spec": {
                "backoffLimit": self.settings.restore_job_backoff_limit,
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "restartPolicy": "OnFailure",
                        "containers": [
                            {
                                "name": "restore",
                                "image": f"{self.settings.restore_image}:{db.spec.version}",
                                "args": [
                                    "restore",
                                    f"--host={db.offshoot_name}.{db.namespace}",
                                    f"--bucket={snapshot.spec.bucket_name or ''}",
                                    f"--snapshot={snapshot.name}",
                                ],
                                "env": [
                                    {
                                        "name": "DATABASE_PASSWORD",
                                        "valueFrom": {"secretKeyRef": {"name": self.secret_name_for(db), "key": "password"}},
                                    }
                                ],
                                "volumeMounts": [{"name": "osm", "mountPath": "/etc/osm", "readOnly": True}],
                            }
                        ],
                        "volumes": [{"name": "osm", "secret": {"secretName": credentials_secret}}],
                    },
                },
            },
        }
        batch = self.client_set.batch_api
        created = await self._ensure(batch.read_namespaced_job, batch.create_namespaced_job, "Job", name, db.namespace, body)
        if not created:
            logger.info("restore_job_reused", job=name, namespace=db.namespace)
        return name

    async def get_job_phase(self, name: str, namespace: str) -> Optional[str]:
        """Return JOB_SUCCEEDED, JOB_FAILED, or None while the job is still running."""
        try:
            job = await _call(self.client_set.batch_api.read_namespaced_job, name=name, namespace=namespace)
        except ApiException as e:
            raise translate_api_error(e, "Job", name, namespace, "get")

        status = job.status
        if status is None:
            return None
        for condition in status.conditions or []:
            if condition.status != "True":
                continue
            if condition.type == "Complete":
                return JOB_SUCCEEDED
            if condition.type == "Failed":
                return JOB_FAILED
        if status.succeeded and status.succeeded > 0:
            return JOB_SUCCEEDED
        return None

    async def delete_job(self, name: str, namespace: str) -> bool:
        return await self._delete(
            self.client_set.batch_api.delete_namespaced_job,
            "Job",
            name,
            namespace,
            propagation_policy="Background",
        )
