"""
Resource Store Gateway.

Get/list/create/replace/delete for ManagedDatabase and DormantDatabase custom
objects, plus the label-scoped Snapshot and PersistentVolumeClaim access used
by wipe-out. ``ApiException``s are translated into the operator's exception
taxonomy here so nothing above this module sees HTTP status codes.
"""
from typing import Any, Dict, List, Optional

from kubernetes_asyncio.client import ApiException

from kubedb_operator.config.logging import get_logger
from kubedb_operator.exceptions import (
    AlreadyExistsError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    OperatorError,
)
from kubedb_operator.models.database import (
    API_GROUP,
    API_VERSION,
    DATABASE_KIND,
    DATABASE_PLURAL,
    DORMANT_KIND,
    DORMANT_PLURAL,
    SNAPSHOT_KIND,
    SNAPSHOT_PLURAL,
    DormantDatabase,
    ManagedDatabase,
    Snapshot,
    label_selector,
)
from kubedb_operator.services.kubernetes_client import KubernetesClientSet
from kubedb_operator.utils.retry import retry_on_k8s_error

logger = get_logger(__name__)


def translate_api_error(
    error: ApiException,
    resource: str,
    name: str,
    namespace: str,
    operation: str,
) -> OperatorError:
    """
    Map a Kubernetes API failure onto the operator's exception taxonomy.

    404 is NotFound; 409 is AlreadyExists on create and an optimistic-
    concurrency Conflict otherwise; anything else is an InfrastructureError.
    """
    if error.status == 404:
        return NotFoundError(resource, name, namespace)
    if error.status == 409:
        if operation == "create":
            return AlreadyExistsError(resource, name, namespace)
        return ConflictError(
            f"{resource} '{namespace}/{name}' was modified concurrently",
            details={"resource": resource, "name": name, "namespace": namespace},
        )
    return InfrastructureError(
        f"failed to {operation} {resource} '{namespace}/{name}': {error.reason}",
        details={
            "resource": resource,
            "name": name,
            "namespace": namespace,
            "status": error.status,
            "reason": error.reason,
        },
    )


def _creation_body(body: Dict[str, Any]) -> Dict[str, Any]:
    """Strip server-assigned metadata so a stale copy can be created afresh."""
    metadata = dict(body.get("metadata", {}))
    for field in ("resourceVersion", "uid", "creationTimestamp", "deletionTimestamp", "generation"):
        metadata.pop(field, None)
    return {**body, "metadata": metadata}


class ResourceStore:
    """Optimistic-concurrency access to the operator's custom resources."""

    def __init__(self, client_set: KubernetesClientSet):
        self.client_set = client_set

    # ------------------------------------------------------------------
    # Raw custom object calls (transient failures retried, nothing translated)
    # ------------------------------------------------------------------

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _get_object(self, plural: str, namespace: str, name: str) -> Dict[str, Any]:
        return await self.client_set.custom_api.get_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=plural,
            name=name,
        )

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _list_objects(self, plural: str, namespace: str, selector: str = "") -> List[Dict[str, Any]]:
        result = await self.client_set.custom_api.list_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=plural,
            label_selector=selector,
        )
        return result.get("items", [])

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _create_object(self, plural: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client_set.custom_api.create_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=plural,
            body=body,
        )

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _replace_object(self, plural: str, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        # metadata.resourceVersion in the body makes this a version-checked write
        return await self.client_set.custom_api.replace_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=plural,
            name=name,
            body=body,
        )

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _delete_object(self, plural: str, namespace: str, name: str) -> None:
        await self.client_set.custom_api.delete_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=plural,
            name=name,
        )

    # ------------------------------------------------------------------
    # ManagedDatabase
    # ------------------------------------------------------------------

    async def get_database(self, namespace: str, name: str) -> ManagedDatabase:
        try:
            raw = await self._get_object(DATABASE_PLURAL, namespace, name)
        except ApiException as e:
            raise translate_api_error(e, DATABASE_KIND, name, namespace, "get")
        return ManagedDatabase.model_validate(raw)

    async def database_exists(self, namespace: str, name: str) -> bool:
        try:
            await self.get_database(namespace, name)
        except NotFoundError:
            return False
        return True

    async def list_databases(self, namespace: str) -> List[ManagedDatabase]:
        try:
            items = await self._list_objects(DATABASE_PLURAL, namespace)
        except ApiException as e:
            raise translate_api_error(e, DATABASE_KIND, "*", namespace, "list")
        return [ManagedDatabase.model_validate(item) for item in items]

    async def create_database(self, db: ManagedDatabase) -> ManagedDatabase:
        try:
            raw = await self._create_object(DATABASE_PLURAL, db.namespace, _creation_body(db.dump()))
        except ApiException as e:
            raise translate_api_error(e, DATABASE_KIND, db.name, db.namespace, "create")
        logger.info("managed_database_created", name=db.name, namespace=db.namespace)
        return ManagedDatabase.model_validate(raw)

    async def replace_database(self, db: ManagedDatabase) -> ManagedDatabase:
        try:
            raw = await self._replace_object(DATABASE_PLURAL, db.namespace, db.name, db.dump())
        except ApiException as e:
            raise translate_api_error(e, DATABASE_KIND, db.name, db.namespace, "replace")
        return ManagedDatabase.model_validate(raw)

    async def delete_database(self, namespace: str, name: str) -> None:
        try:
            await self._delete_object(DATABASE_PLURAL, namespace, name)
        except ApiException as e:
            raise translate_api_error(e, DATABASE_KIND, name, namespace, "delete")
        logger.info("managed_database_deleted", name=name, namespace=namespace)

    # ------------------------------------------------------------------
    # DormantDatabase
    # ------------------------------------------------------------------

    async def get_dormant(self, namespace: str, name: str) -> DormantDatabase:
        try:
            raw = await self._get_object(DORMANT_PLURAL, namespace, name)
        except ApiException as e:
            raise translate_api_error(e, DORMANT_KIND, name, namespace, "get")
        return DormantDatabase.model_validate(raw)

    async def find_dormant(self, namespace: str, name: str) -> Optional[DormantDatabase]:
        """Get a DormantDatabase, or None if there is none with this name."""
        try:
            return await self.get_dormant(namespace, name)
        except NotFoundError:
            return None

    async def list_dormants(self, namespace: str) -> List[DormantDatabase]:
        try:
            items = await self._list_objects(DORMANT_PLURAL, namespace)
        except ApiException as e:
            raise translate_api_error(e, DORMANT_KIND, "*", namespace, "list")
        return [DormantDatabase.model_validate(item) for item in items]

    async def create_dormant(self, dormant: DormantDatabase) -> DormantDatabase:
        try:
            raw = await self._create_object(DORMANT_PLURAL, dormant.namespace, _creation_body(dormant.dump()))
        except ApiException as e:
            raise translate_api_error(e, DORMANT_KIND, dormant.name, dormant.namespace, "create")
        logger.info("dormant_database_created", name=dormant.name, namespace=dormant.namespace)
        return DormantDatabase.model_validate(raw)

    async def replace_dormant(self, dormant: DormantDatabase) -> DormantDatabase:
        try:
            raw = await self._replace_object(DORMANT_PLURAL, dormant.namespace, dormant.name, dormant.dump())
        except ApiException as e:
            raise translate_api_error(e, DORMANT_KIND, dormant.name, dormant.namespace, "replace")
        return DormantDatabase.model_validate(raw)

    async def delete_dormant(self, namespace: str, name: str) -> None:
        try:
            await self._delete_object(DORMANT_PLURAL, namespace, name)
        except ApiException as e:
            raise translate_api_error(e, DORMANT_KIND, name, namespace, "delete")
        logger.info("dormant_database_deleted", name=name, namespace=namespace)

    # ------------------------------------------------------------------
    # Snapshots and volume claims
    # ------------------------------------------------------------------

    async def get_snapshot(self, namespace: str, name: str) -> Snapshot:
        try:
            raw = await self._get_object(SNAPSHOT_PLURAL, namespace, name)
        except ApiException as e:
            raise translate_api_error(e, SNAPSHOT_KIND, name, namespace, "get")
        return Snapshot.model_validate(raw)

    async def list_snapshot_names(self, namespace: str, labels: Dict[str, str]) -> List[str]:
        selector = label_selector(labels)
        try:
            items = await self._list_objects(SNAPSHOT_PLURAL, namespace, selector)
        except ApiException as e:
            raise translate_api_error(e, SNAPSHOT_KIND, selector, namespace, "list")
        return [item["metadata"]["name"] for item in items]

    async def delete_snapshot(self, namespace: str, name: str) -> None:
        try:
            await self._delete_object(SNAPSHOT_PLURAL, namespace, name)
        except ApiException as e:
            raise translate_api_error(e, SNAPSHOT_KIND, name, namespace, "delete")
        logger.info("snapshot_deleted", name=name, namespace=namespace)

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _list_pvcs(self, namespace: str, selector: str):
        return await self.client_set.core_api.list_namespaced_persistent_volume_claim(
            namespace=namespace,
            label_selector=selector,
        )

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _delete_pvc(self, namespace: str, name: str) -> None:
        await self.client_set.core_api.delete_namespaced_persistent_volume_claim(
            name=name,
            namespace=namespace,
        )

    async def list_pvc_names(self, namespace: str, labels: Dict[str, str]) -> List[str]:
        selector = label_selector(labels)
        try:
            pvcs = await self._list_pvcs(namespace, selector)
        except ApiException as e:
            raise translate_api_error(e, "PersistentVolumeClaim", selector, namespace, "list")
        return [pvc.metadata.name for pvc in pvcs.items]

    async def delete_pvc(self, namespace: str, name: str) -> None:
        try:
            await self._delete_pvc(namespace, name)
        except ApiException as e:
            raise translate_api_error(e, "PersistentVolumeClaim", name, namespace, "delete")
        logger.info("pvc_deleted", pvc=name, namespace=namespace)
