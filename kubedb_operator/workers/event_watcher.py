"""
Kubernetes watch streams for ManagedDatabase and DormantDatabase.

Streams both kinds with ``kubernetes_asyncio.watch``, remembers the last
observed copy of every object to turn MODIFIED events into (old, new) pairs,
and hands work items to the dispatcher. Streams restart from scratch when the
API server reports their resourceVersion as expired (410 Gone).
"""
import asyncio
from typing import Any, Dict, Optional

from kubernetes_asyncio import watch
from kubernetes_asyncio.client import ApiException
from pydantic import ValidationError as PydanticValidationError

from kubedb_operator.config.logging import get_logger
from kubedb_operator.config.settings import Settings
from kubedb_operator.models.database import (
    API_GROUP,
    API_VERSION,
    DATABASE_KIND,
    DATABASE_PLURAL,
    DORMANT_KIND,
    DORMANT_PLURAL,
    DormantDatabase,
    ManagedDatabase,
)
from kubedb_operator.services.kubernetes_client import KubernetesClientSet
from kubedb_operator.utils.shutdown import wait_or_shutdown
from kubedb_operator.workers.work_dispatcher import (
    ACTION_ADD,
    ACTION_DELETE,
    ACTION_DORMANT,
    ACTION_UPDATE,
    WorkDispatcher,
    WorkItem,
)

logger = get_logger(__name__)

WATCH_TIMEOUT_SECONDS = 300
WATCH_ERROR_BACKOFF_SECONDS = 5

MODELS = {
    DATABASE_KIND: ManagedDatabase,
    DORMANT_KIND: DormantDatabase,
}


class ResourceVersionExpired(Exception):
    """The watch must be restarted with a fresh list."""


class DatabaseWatcher:
    """
    Turns watch events into work items.

    The (old, new) cache is keyed by kind and ``namespace/name``.
    """

    def __init__(
        self,
        client_set: KubernetesClientSet,
        dispatcher: WorkDispatcher,
        settings: Settings,
        shutdown_event: asyncio.Event,
    ):
        self.client_set = client_set
        self.dispatcher = dispatcher
        self.settings = settings
        self.shutdown_event = shutdown_event
        self._last_seen: Dict[str, Dict[str, Any]] = {DATABASE_KIND: {}, DORMANT_KIND: {}}
        self._watches: Dict[str, watch.Watch] = {}

    async def start(self) -> None:
        """Run both watch streams until shutdown."""
        logger.info("event_watcher_started", namespace=self.settings.watch_namespace or "<all>")
        await asyncio.gather(
            self._watch_loop(DATABASE_KIND, DATABASE_PLURAL),
            self._watch_loop(DORMANT_KIND, DORMANT_PLURAL),
        )
        logger.info("event_watcher_stopped")

    async def stop(self) -> None:
        logger.info("event_watcher_stopping")
        self.shutdown_event.set()
        for stream in self._watches.values():
            stream.stop()

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def _list_call(self, plural: str):
        custom = self.client_set.custom_api
        if self.settings.namespace_scoped:
            return custom.list_namespaced_custom_object, {
                "group": API_GROUP,
                "version": API_VERSION,
                "namespace": self.settings.watch_namespace,
                "plural": plural,
            }
        return custom.list_cluster_custom_object, {
            "group": API_GROUP,
            "version": API_VERSION,
            "plural": plural,
        }

    async def _watch_loop(self, kind: str, plural: str) -> None:
        resource_version: Optional[str] = None
        while not self.shutdown_event.is_set():
            try:
                resource_version = await self._stream(kind, plural, resource_version)
            except ResourceVersionExpired:
                logger.warning("watch_expired_restarting", kind=kind)
                resource_version = None
            except ApiException as e:
                if e.status == 410:
                    logger.warning("watch_expired_restarting", kind=kind)
                    resource_version = None
                    continue
                logger.error("watch_failed", kind=kind, status_code=e.status, error=e.reason)
                if await wait_or_shutdown(self.shutdown_event, WATCH_ERROR_BACKOFF_SECONDS):
                    break
            except (OSError, asyncio.TimeoutError) as e:
                logger.error("watch_connection_failed", kind=kind, error_type=type(e).__name__, error=str(e))
                if await wait_or_shutdown(self.shutdown_event, WATCH_ERROR_BACKOFF_SECONDS):
                    break

    async def _stream(self, kind: str, plural: str, resource_version: Optional[str]) -> Optional[str]:
        """Consume one watch connection; returns the last resourceVersion seen."""
        method, kwargs = self._list_call(plural)
        if resource_version:
            kwargs["resource_version"] = resource_version

        stream = watch.Watch()
        self._watches[kind] = stream
        logger.info("watch_stream_opened", kind=kind, resource_version=resource_version)
        try:
            async for event in stream.stream(method, timeout_seconds=WATCH_TIMEOUT_SECONDS, **kwargs):
                if self.shutdown_event.is_set():
                    break
                event_type = event.get("type")
                obj = event.get("object") or {}
                if event_type == "ERROR":
                    if obj.get("code") == 410:
                        raise ResourceVersionExpired()
                    logger.error("watch_error_event", kind=kind, status=obj)
                    continue
                resource_version = (obj.get("metadata") or {}).get("resourceVersion") or resource_version
                self.handle_event(kind, event_type, obj)
        finally:
            stream.stop()
            self._watches.pop(kind, None)
        return resource_version

    # ------------------------------------------------------------------
    # Event translation
    # ------------------------------------------------------------------

    def handle_event(self, kind: str, event_type: str, raw: Dict[str, Any]) -> Optional[WorkItem]:
        """Translate one watch event into a submitted work item (or nothing)."""
        try:
            resource = MODELS[kind].model_validate(raw)
        except PydanticValidationError as e:
            meta = raw.get("metadata") or {}
            logger.error(
                "watch_event_unparseable",
                kind=kind,
                name=meta.get("name"),
                namespace=meta.get("namespace"),
                error=str(e),
            )
            return None

        item = self._to_work_item(kind, event_type, resource)
        if item is not None:
            logger.debug("watch_event_received", kind=kind, event_type=event_type, key=resource.key, action=item.action)
            self.dispatcher.submit(item)
        return item

    def _to_work_item(self, kind: str, event_type: str, resource) -> Optional[WorkItem]:
        seen = self._last_seen[kind]
        previous = seen.get(resource.key)

        if event_type == "DELETED":
            seen.pop(resource.key, None)
            if kind == DATABASE_KIND:
                return WorkItem(action=ACTION_DELETE, new=resource)
            return None

        if event_type not in ("ADDED", "MODIFIED"):
            return None

        seen[resource.key] = resource
        if kind == DORMANT_KIND:
            return WorkItem(action=ACTION_DORMANT, new=resource)
        if previous is None:
            return WorkItem(action=ACTION_ADD, new=resource)
        return WorkItem(action=ACTION_UPDATE, new=resource, old=previous)
