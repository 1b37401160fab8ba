"""
Validation Gateway: rules a ManagedDatabase spec must satisfy before any
infrastructure is created or changed for it.
"""
import re

from kubedb_operator.config.logging import get_logger
from kubedb_operator.exceptions import ValidationError
from kubedb_operator.models.database import ManagedDatabase, default_secret_name
from kubedb_operator.services.infrastructure import InfrastructureGateway
from kubedb_operator.services.monitor_service import SUPPORTED_AGENTS

logger = get_logger(__name__)

VERSION_PATTERN = re.compile(r"^[0-9A-Za-z][0-9A-Za-z._-]*$")
CRON_FIELD_PATTERN = re.compile(r"^[0-9A-Za-z*/,\-?LW#]+$")
CRON_DESCRIPTORS = {"@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly"}


def validate_cron_expression(expression: str) -> None:
    """Accept standard five-field cron syntax or a predefined descriptor."""
    expression = expression.strip()
    if expression in CRON_DESCRIPTORS or expression.startswith("@every "):
        return
    fields = expression.split()
    if len(fields) != 5 or not all(CRON_FIELD_PATTERN.match(f) for f in fields):
        raise ValidationError(f'Invalid cron expression "{expression}"')


class SpecValidator:
    """Checks a ManagedDatabase spec, including referenced Secrets."""

    def __init__(self, infrastructure: InfrastructureGateway):
        self.infrastructure = infrastructure

    async def validate(self, db: ManagedDatabase) -> None:
        """
        Raises:
            ValidationError: With a message describing the first rule violated
        """
        spec = db.spec

        if not spec.version or not VERSION_PATTERN.match(spec.version):
            raise ValidationError(f'Invalid version "{spec.version}" for ManagedDatabase "{db.name}"')

        if spec.replicas < 1:
            raise ValidationError(f"spec.replicas must be at least 1, got {spec.replicas}")

        if spec.storage is not None:
            requests = (spec.storage.get("resources") or {}).get("requests") or {}
            if "storage" not in requests:
                raise ValidationError("spec.storage.resources.requests.storage is required")

        # The default secret is created by the operator after validation.
        if spec.database_secret is not None and spec.database_secret.secret_name != default_secret_name(db.name):
            secret_name = spec.database_secret.secret_name
            if not await self.infrastructure.secret_exists(secret_name, db.namespace):
                raise ValidationError(f'Secret "{secret_name}" not found in namespace "{db.namespace}"')

        source = spec.snapshot_source
        if spec.init is not None and source is not None and not source.name:
            raise ValidationError("spec.init.snapshotSource.name is required")

        if spec.backup_schedule is not None:
            validate_cron_expression(spec.backup_schedule.cron_expression)
            storage_secret = spec.backup_schedule.storage_secret_name
            if not storage_secret:
                raise ValidationError("spec.backupSchedule.storageSecretName is required")
            if not await self.infrastructure.secret_exists(storage_secret, db.namespace):
                raise ValidationError(f'Storage secret "{storage_secret}" not found in namespace "{db.namespace}"')

        if spec.monitor is not None and spec.monitor.agent not in SUPPORTED_AGENTS:
            raise ValidationError(f'Monitor agent "{spec.monitor.agent}" is not supported')

        logger.debug("database_spec_valid", name=db.name, namespace=db.namespace)
