"""
Cascade-Delete Detector.

An update that omits a child from a tracked association makes the storage
layer delete that child's row. The removal still belongs in history, so this
module finds every removed child in a changeset (at any depth) and builds a
deleted version for it and for each of its tracked descendants.
"""

import logging
from typing import Any, List, Set, Tuple

from versioned.builder import VersionOptions, VersionPayload, build_version_batch
from versioned.changeset import Action, Changeset
from versioned.exceptions import AssociationShapeError
from versioned.schema import Cardinality, VersionRegistry

logger = logging.getLogger("CascadeDelete")


def removed_entities(changeset: Changeset) -> List[Any]:
    """Entities dropped from tracked associations anywhere under ``changeset``."""
    removed: List[Any] = []
    _collect(changeset, removed)
    return removed


def _collect(changeset: Changeset, removed: List[Any]) -> None:
    descriptor = VersionRegistry.descriptor_for(type(changeset.data))
    if descriptor is None:
        return
    for name, delta in changeset.assoc_changes.items():
        assoc = descriptor.association(name)
        if not assoc.tracked:
            continue
        if assoc.cardinality is Cardinality.MANY and not isinstance(delta, list):
            raise AssociationShapeError(f"{descriptor.entity_cls.__name__}.{name}: to-many change is not a list")
        if assoc.cardinality is Cardinality.ONE and isinstance(delta, list):
            raise AssociationShapeError(f"{descriptor.entity_cls.__name__}.{name}: to-one change is a list")

        for element in delta if isinstance(delta, list) else [delta]:
            if element.action is Action.REPLACE:
                removed.append(element.data)
            elif element.action is Action.UPDATE:
                _collect(element, removed)
            elif element.action is Action.INSERT and element.replaces is not None:
                removed.append(element.replaces.data)


def deleted_versions(changeset: Changeset, options: VersionOptions) -> List[VersionPayload]:
    """
    Deletion-marked payloads for every child an update removes.

    Each removed entity and all its loaded tracked descendants get exactly one
    payload with ``is_deleted`` set, stamped with ``options.inserted_at``.
    Sibling order is not defined.
    """
    payloads: List[VersionPayload] = []
    seen: Set[Tuple[type, Any]] = set()
    for entity in removed_entities(changeset):
        batch = build_version_batch(
            entity,
            VersionOptions(
                inserted_at=options.inserted_at,
                deleted=True,
                change=True,
                cascade_deleted=True,
            ),
        )
        for payload in batch.payloads:
            if payload.key in seen:
                continue
            seen.add(payload.key)
            payloads.append(payload)
    if payloads:
        logger.info(f"{len(payloads)} cascade deletion version(s) for {type(changeset.data).__name__}")
    return payloads
