from versioned.builder import (
    VersionBatch,
    VersionOptions,
    VersionPayload,
    build_version_batch,
    build_version_payload,
)
from versioned.cascade import deleted_versions
from versioned.changeset import Action, Changeset
from versioned.clock import Clock, MonotonicClock
from versioned.config import VersionedSettings, configure_logging
from versioned.core import Versioned
from versioned.exceptions import (
    AssociationNotLoadedError,
    AssociationShapeError,
    InvalidChangesetError,
    NotVersionedError,
    StaleEntityError,
    TransactionStepError,
    VersionedError,
)
from versioned.history import history_query, reconstruct_associations
from versioned.multi import Multi, add_version_to_record, versioned_delete, versioned_insert, versioned_update
from versioned.repo import Repository
from versioned.schema import (
    AssociationInfo,
    Cardinality,
    EntityDescriptor,
    VersionedMixin,
    VersionRecord,
    VersionRegistry,
    version_class,
    versioned,
)

__all__ = [
    "Action",
    "AssociationInfo",
    "AssociationNotLoadedError",
    "AssociationShapeError",
    "Cardinality",
    "Changeset",
    "Clock",
    "EntityDescriptor",
    "InvalidChangesetError",
    "MonotonicClock",
    "Multi",
    "NotVersionedError",
    "Repository",
    "StaleEntityError",
    "TransactionStepError",
    "VersionBatch",
    "VersionOptions",
    "VersionPayload",
    "VersionRecord",
    "VersionRegistry",
    "Versioned",
    "VersionedError",
    "VersionedMixin",
    "VersionedSettings",
    "add_version_to_record",
    "build_version_batch",
    "build_version_payload",
    "configure_logging",
    "deleted_versions",
    "history_query",
    "reconstruct_associations",
    "version_class",
    "versioned",
    "versioned_delete",
    "versioned_insert",
    "versioned_update",
]
