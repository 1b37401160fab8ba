"""
Spec Matcher.

Decides whether a newly created ManagedDatabase is really a request to resume
the DormantDatabase of the same name. Specs are compared through an explicit
canonical form (normalized, serialized with sorted keys) rather than a generic
deep-compare, so the comparison is stable as fields are added.
"""
import json
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from kubedb_operator.config.logging import get_logger
from kubedb_operator.exceptions import OperatorError, ValidationError
from kubedb_operator.models.database import (
    ANNOTATION_INIT_SPEC,
    DATABASE_KIND,
    DatabasePhase,
    DatabaseSpec,
    DormantDatabase,
    InitSpec,
    ManagedDatabase,
    SecretReference,
    default_secret_name,
)
from kubedb_operator.services.event_recorder import EventReason
from kubedb_operator.services.resource_store import ResourceStore
from kubedb_operator.services.status_reporter import StatusReporter

logger = get_logger(__name__)

SPEC_MISMATCH_MESSAGE = "spec mismatches with OriginSpec in DormantDatabases"
INIT_MISMATCH_MESSAGE = "InitSpec mismatches with DormantDatabase annotation"

# The data behind these records is gone or going.
UNRESUMABLE_PHASES = (DatabasePhase.WIPING_OUT, DatabasePhase.WIPED_OUT)


def canonical(model) -> str:
    """Stable comparable form of a wire model."""
    return json.dumps(model.dump(), sort_keys=True, separators=(",", ":"))


def normalize_spec(spec: DatabaseSpec, database_name: str) -> DatabaseSpec:
    """
    Steady-state identity of a spec.

    Init is one-shot bootstrap data and is dropped; a missing database secret
    becomes the default ``<name>-admin-auth`` reference the operator creates.
    """
    normalized = spec.model_copy(deep=True)
    normalized.init = None
    if normalized.database_secret is None:
        normalized.database_secret = SecretReference(secret_name=default_secret_name(database_name))
    return normalized


def parse_init_annotation(raw: str) -> InitSpec:
    try:
        return InitSpec.model_validate_json(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {ANNOTATION_INIT_SPEC} annotation: {e.errors()[0]['msg']}",
            details={"annotation": raw},
        )


def match_dormant(candidate: ManagedDatabase, dormant: DormantDatabase) -> bool:
    """
    Compare a candidate against an existing dormant record of the same name.

    Returns:
        True when the candidate is an exact request to resume ``dormant``;
        False when ``dormant`` is already being resumed into this candidate

    Raises:
        ValidationError: On kind, init or spec mismatch, or when the dormant
            record can no longer be resumed
    """
    if dormant.database_kind != DATABASE_KIND:
        raise ValidationError(
            f'Invalid {DATABASE_KIND}: "{candidate.name}". '
            f'Exists DormantDatabase "{dormant.name}" of different Kind'
        )

    if dormant.phase == DatabasePhase.RESUMING:
        return False
    if dormant.phase in UNRESUMABLE_PHASES:
        raise ValidationError(
            f'DormantDatabase "{dormant.name}" is wiped out; delete it first',
            details={"phase": dormant.phase.value},
        )

    raw_init = dormant.metadata.annotations.get(ANNOTATION_INIT_SPEC)
    if raw_init and candidate.spec.init is not None:
        if canonical(parse_init_annotation(raw_init)) != canonical(candidate.spec.init):
            raise ValidationError(INIT_MISMATCH_MESSAGE)

    wanted = canonical(normalize_spec(candidate.spec, candidate.name))
    preserved = canonical(normalize_spec(dormant.spec.origin.spec, candidate.name))
    if wanted != preserved:
        logger.info(
            "dormant_spec_mismatch",
            name=candidate.name,
            namespace=candidate.namespace,
            candidate=wanted,
            origin=preserved,
        )
        raise ValidationError(SPEC_MISMATCH_MESSAGE)

    return True


class SpecMatcher:
    """Looks up the dormant twin of a candidate and applies ``match_dormant``."""

    def __init__(self, store: ResourceStore, reporter: StatusReporter):
        self.store = store
        self.reporter = reporter

    async def matches(self, candidate: ManagedDatabase) -> bool:
        try:
            dormant: Optional[DormantDatabase] = await self.store.find_dormant(candidate.namespace, candidate.name)
        except OperatorError as e:
            await self.reporter.warning(
                candidate,
                EventReason.FAILED_TO_GET,
                f'Fail to get DormantDatabase: "{candidate.name}". Reason: {e.message}',
            )
            raise

        if dormant is None:
            return False

        try:
            return match_dormant(candidate, dormant)
        except ValidationError as e:
            await self.reporter.warning(candidate, EventReason.FAILED_TO_CREATE, e.message)
            raise
