"""
Explicit bundle of the collaborators a reconciliation uses.

Built once at startup and passed to the reconciler; nothing in the operator
reaches for module-level client handles.
"""
import asyncio
from dataclasses import dataclass, field

from kubedb_operator.config.settings import Settings
from kubedb_operator.services.backup_scheduler import BackupScheduler
from kubedb_operator.services.event_recorder import EventRecorder
from kubedb_operator.services.infrastructure import InfrastructureGateway
from kubedb_operator.services.kubernetes_client import KubernetesClientSet
from kubedb_operator.services.monitor_service import MonitorService
from kubedb_operator.services.resource_store import ResourceStore
from kubedb_operator.services.status_reporter import StatusReporter
from kubedb_operator.services.validator import SpecValidator


@dataclass
class OperatorContext:
    settings: Settings
    store: ResourceStore
    infrastructure: InfrastructureGateway
    validator: SpecValidator
    monitor: MonitorService
    backups: BackupScheduler
    reporter: StatusReporter
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)


def build_context(
    client_set: KubernetesClientSet,
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> OperatorContext:
    """Wire every Kubernetes-backed gateway around one client set."""
    store = ResourceStore(client_set)
    infrastructure = InfrastructureGateway(client_set, settings)
    recorder = EventRecorder(client_set, component=settings.event_source_component)
    return OperatorContext(
        settings=settings,
        store=store,
        infrastructure=infrastructure,
        validator=SpecValidator(infrastructure),
        monitor=MonitorService(client_set, settings),
        backups=BackupScheduler(client_set, settings),
        reporter=StatusReporter(store, recorder, settings),
        shutdown_event=shutdown_event,
    )
