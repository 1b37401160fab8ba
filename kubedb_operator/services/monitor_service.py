"""
Monitor Gateway: Prometheus Operator ServiceMonitors for databases.
"""
from typing import Any, Dict

from kubernetes_asyncio.client import ApiException

from kubedb_operator.config.logging import get_logger
from kubedb_operator.config.settings import Settings
from kubedb_operator.models.database import ManagedDatabase
from kubedb_operator.services.kubernetes_client import KubernetesClientSet
from kubedb_operator.services.resource_store import translate_api_error
from kubedb_operator.utils.retry import retry_on_k8s_error

logger = get_logger(__name__)

MONITORING_GROUP = "monitoring.coreos.com"
MONITORING_VERSION = "v1"
SERVICE_MONITOR_PLURAL = "servicemonitors"

AGENT_PROMETHEUS_OPERATOR = "prometheus.io/coreos-operator"
SUPPORTED_AGENTS = {AGENT_PROMETHEUS_OPERATOR}


def service_monitor_name(db: ManagedDatabase) -> str:
    return f"kubedb-{db.namespace}-{db.name}"


class MonitorService:
    """Attaches, updates and detaches monitoring for a database."""

    def __init__(self, client_set: KubernetesClientSet, settings: Settings):
        self.client_set = client_set
        self.settings = settings

    def _target_namespace(self, db: ManagedDatabase) -> str:
        prometheus = db.spec.monitor.prometheus if db.spec.monitor else None
        if prometheus and prometheus.namespace:
            return prometheus.namespace
        return db.namespace

    def _body(self, db: ManagedDatabase) -> Dict[str, Any]:
        prometheus = db.spec.monitor.prometheus if db.spec.monitor else None
        endpoint: Dict[str, Any] = {"port": "db", "path": "/metrics"}
        if prometheus and prometheus.interval:
            endpoint["interval"] = prometheus.interval
        return {
            "apiVersion": f"{MONITORING_GROUP}/{MONITORING_VERSION}",
            "kind": "ServiceMonitor",
            "metadata": {
                "name": service_monitor_name(db),
                "namespace": self._target_namespace(db),
                "labels": dict(prometheus.labels) if prometheus else {},
            },
            "spec": {
                "namespaceSelector": {"matchNames": [db.namespace]},
                "selector": {"matchLabels": db.selector_labels()},
                "endpoints": [endpoint],
            },
        }

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _upsert(self, namespace: str, name: str, body: Dict[str, Any]) -> None:
        custom = self.client_set.custom_api
        try:
            await custom.create_namespaced_custom_object(
                group=MONITORING_GROUP,
                version=MONITORING_VERSION,
                namespace=namespace,
                plural=SERVICE_MONITOR_PLURAL,
                body=body,
            )
        except ApiException as e:
            if e.status != 409:
                raise
            await custom.patch_namespaced_custom_object(
                group=MONITORING_GROUP,
                version=MONITORING_VERSION,
                namespace=namespace,
                plural=SERVICE_MONITOR_PLURAL,
                name=name,
                body=body,
            )

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _remove(self, namespace: str, name: str) -> None:
        await self.client_set.custom_api.delete_namespaced_custom_object(
            group=MONITORING_GROUP,
            version=MONITORING_VERSION,
            namespace=namespace,
            plural=SERVICE_MONITOR_PLURAL,
            name=name,
        )

    async def add(self, db: ManagedDatabase) -> None:
        if db.spec.monitor is None:
            return
        name = service_monitor_name(db)
        namespace = self._target_namespace(db)
        try:
            await self._upsert(namespace, name, self._body(db))
        except ApiException as e:
            raise translate_api_error(e, "ServiceMonitor", name, namespace, "create")
        logger.info("monitor_added", name=db.name, namespace=db.namespace, service_monitor=name)

    async def delete(self, db: ManagedDatabase) -> None:
        if db.spec.monitor is None:
            return
        name = service_monitor_name(db)
        namespace = self._target_namespace(db)
        try:
            await self._remove(namespace, name)
        except ApiException as e:
            if e.status == 404:
                return
            raise translate_api_error(e, "ServiceMonitor", name, namespace, "delete")
        logger.info("monitor_deleted", name=db.name, namespace=db.namespace, service_monitor=name)

    async def update(self, old: ManagedDatabase, new: ManagedDatabase) -> None:
        """Bring monitoring in line with ``new``: add, move, or remove it."""
        if new.spec.monitor is None:
            await self.delete(old)
            return
        if old.spec.monitor is not None and self._target_namespace(old) != self._target_namespace(new):
            await self.delete(old)
        await self.add(new)
