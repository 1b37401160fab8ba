"""
Kubernetes Event sink.

Events attached to a ManagedDatabase or DormantDatabase form the audit trail of
every phase transition, infrastructure action and validation outcome. Event
delivery is best-effort: a failure is logged and never fails a reconciliation.
"""
from datetime import datetime, timezone
from typing import Union

from kubernetes_asyncio.client import ApiException

from kubedb_operator.config.logging import get_logger
from kubedb_operator.models.database import DormantDatabase, ManagedDatabase
from kubedb_operator.services.kubernetes_client import KubernetesClientSet

logger = get_logger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class EventReason:
    """Reasons used on recorded events."""

    CREATING = "Creating"
    FAILED_TO_CREATE = "Failed"
    FAILED_TO_DELETE = "FailedToDelete"
    FAILED_TO_GET = "FailedToGet"
    FAILED_TO_INITIALIZE = "FailedToInitialize"
    FAILED_TO_PAUSE = "FailedToPause"
    FAILED_TO_RESUME = "FailedToResume"
    FAILED_TO_SCHEDULE = "FailedToSchedule"
    FAILED_TO_START = "FailedToStart"
    FAILED_TO_UPDATE = "FailedToUpdate"
    FAILED_TO_WIPE_OUT = "FailedToWipeOut"
    IGNORED = "Ignored"
    INITIALIZING = "Initializing"
    INVALID = "Invalid"
    PAUSING = "Pausing"
    RESUMING = "Resuming"
    SUCCESSFUL_CREATE = "SuccessfulCreate"
    SUCCESSFUL_INITIALIZE = "SuccessfulInitialize"
    SUCCESSFUL_MONITOR_ADD = "SuccessfulMonitorAdd"
    SUCCESSFUL_MONITOR_DELETE = "SuccessfulMonitorDelete"
    SUCCESSFUL_MONITOR_UPDATE = "SuccessfulMonitorUpdate"
    SUCCESSFUL_PAUSE = "SuccessfulPause"
    SUCCESSFUL_RESUME = "SuccessfulResume"
    SUCCESSFUL_SCHEDULE = "SuccessfulSchedule"
    SUCCESSFUL_VALIDATE = "SuccessfulValidate"
    SUCCESSFUL_WIPE_OUT = "SuccessfulWipeOut"
    WIPING_OUT = "WipingOut"


Recordable = Union[ManagedDatabase, DormantDatabase]


class EventRecorder:
    """Writes core/v1 Events for the operator's resources."""

    def __init__(self, client_set: KubernetesClientSet, component: str = "kubedb-operator"):
        self.client_set = client_set
        self.component = component

    async def record(self, resource: Recordable, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"generateName": f"{resource.name}-", "namespace": resource.namespace},
            "involvedObject": resource.object_reference(),
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        log = logger.warning if event_type == EVENT_TYPE_WARNING else logger.info
        log(
            "event_recorded",
            kind=resource.kind,
            name=resource.name,
            namespace=resource.namespace,
            reason=reason,
            message=message,
        )
        try:
            await self.client_set.core_api.create_namespaced_event(namespace=resource.namespace, body=body)
        except ApiException as e:
            logger.warning(
                "event_record_failed",
                name=resource.name,
                namespace=resource.namespace,
                reason=reason,
                status_code=e.status,
                error=e.reason,
            )
