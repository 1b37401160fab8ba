from kubedb_operator.models.database import (
    DatabasePhase,
    DatabaseSpec,
    DormantDatabase,
    ManagedDatabase,
    Snapshot,
)

__all__ = [
    "DatabasePhase",
    "DatabaseSpec",
    "DormantDatabase",
    "ManagedDatabase",
    "Snapshot",
]
