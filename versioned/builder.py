############################################################
# builder.py
############################################################

"""
Version Builder.

Turns a loaded entity graph into version payloads. A payload is the plain
description of one version row plus the payloads of its tracked children;
nothing here touches a session, so the same walk serves inserts, updates,
deletes and the cascade-delete detector.

Rules applied per entity, at every depth:

    - untracked types produce no payload
    - with a changeset, an entity whose own fields and direct association
      membership are unchanged produces no payload (unless deleting)
    - a suppressed parent does not stop the walk; changed descendants still
      produce payloads, collected in ``VersionBatch.payloads``
    - unloaded associations are skipped, never read as removals
    - every entity is visited at most once per walk

Example Usage:
```python
options = VersionOptions(inserted_at=clock.now(), change=changeset)
batch = build_version_batch(person, options)
batch.root           # the person's payload, or None when nothing changed
batch.payloads       # every emitted payload, root first
```
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from versioned.changeset import Action, Changeset
from versioned.exceptions import AssociationShapeError
from versioned.schema import (
    NOT_LOADED,
    AssociationInfo,
    Cardinality,
    EntityDescriptor,
    VersionRegistry,
    loaded_value,
    was_removed,
)

logger = logging.getLogger("VersionBuilder")

ChangeInfo = Union[bool, Changeset]


class VersionOptions(BaseModel):
    """
    Context for one build.

    Attributes:
        inserted_at: Timestamp stamped on every payload of the operation
        deleted: Mark the root payload deleted
        change: True to version unconditionally, False for "unchanged",
            or the changeset that drives no-op suppression
        cascade_deleted: Mark every descendant payload deleted as well
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    inserted_at: datetime
    deleted: bool = False
    change: Any = True
    cascade_deleted: bool = False


class VersionPayload(BaseModel):
    """One version row to be written, with its tracked children attached."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    descriptor: EntityDescriptor
    entity_id: Any
    field_values: Dict[str, Any] = Field(default_factory=dict)
    is_deleted: bool = False
    inserted_at: datetime
    associations: Dict[str, Any] = Field(default_factory=dict)
    children: Dict[str, Union["VersionPayload", List["VersionPayload"]]] = Field(default_factory=dict)

    @property
    def key(self) -> Tuple[type, Any]:
        return (self.descriptor.entity_cls, self.entity_id)

    def row_values(self) -> Dict[str, Any]:
        """Column values for the version table."""
        values = dict(self.field_values)
        values[self.descriptor.entity_fk] = self.entity_id
        values["is_deleted"] = self.is_deleted
        values["inserted_at"] = self.inserted_at
        return values

    def walk(self) -> Iterator["VersionPayload"]:
        """This payload, then every attached child payload, depth first."""
        yield self
        for child in self.children.values():
            nested = child if isinstance(child, list) else [child]
            for payload in nested:
                yield from payload.walk()


class VersionBatch(BaseModel):
    root: Optional[VersionPayload] = None
    payloads: List[VersionPayload] = Field(default_factory=list)


VersionPayload.model_rebuild()
VersionBatch.model_rebuild()


##############################
# Change lookup
##############################

def _is_changed(change: ChangeInfo) -> bool:
    if isinstance(change, Changeset):
        return change.action is Action.INSERT or change.changed
    return bool(change)


def _nested_change(element: Optional[Changeset]) -> ChangeInfo:
    if element is None:
        return False
    if element.action is Action.INSERT:
        return True
    return element


def _child_changes(change: ChangeInfo, name: str) -> Union[bool, Dict[Any, Changeset]]:
    """Per-child changesets of one association, keyed by child id."""
    if not isinstance(change, Changeset):
        return change
    if change.action is Action.INSERT:
        return True
    delta = change.assoc_changes.get(name)
    if delta is None:
        return {}
    elements = delta if isinstance(delta, list) else [delta]
    return {
        element.data.id: element
        for element in elements
        if element.action in (Action.INSERT, Action.UPDATE)
    }


def _change_for(children: Union[bool, Dict[Any, Changeset]], child: Any) -> ChangeInfo:
    if isinstance(children, bool):
        return children
    return _nested_change(children.get(child.id))


##############################
# Shape checks
##############################

def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def check_shape(descriptor: EntityDescriptor, assoc: AssociationInfo, value: Any) -> None:
    """Raise if a loaded association value does not match its cardinality."""
    if assoc.cardinality is Cardinality.MANY:
        if not _is_collection(value):
            raise AssociationShapeError(
                f"{descriptor.entity_cls.__name__}.{assoc.name} is to-many but holds {type(value).__name__}"
            )
    elif _is_collection(value):
        raise AssociationShapeError(
            f"{descriptor.entity_cls.__name__}.{assoc.name} is to-one but holds a collection"
        )


##############################
# Walk
##############################

class _Walk:
    def __init__(self, options: VersionOptions) -> None:
        self.options = options
        self.seen: Set[Tuple[type, Any]] = set()
        self.emitted: List[VersionPayload] = []

    def visit(self, entity: Any, change: ChangeInfo, deleted: bool) -> Optional[VersionPayload]:
        descriptor = VersionRegistry.descriptor_for(type(entity))
        if descriptor is None:
            return None
        key = (descriptor.entity_cls, entity.id)
        if key in self.seen:
            return None
        self.seen.add(key)

        payload = None
        if deleted or _is_changed(change):
            payload = VersionPayload(
                descriptor=descriptor,
                entity_id=entity.id,
                field_values={name: getattr(entity, name) for name in descriptor.fields},
                is_deleted=deleted,
                inserted_at=self.options.inserted_at,
            )
            self.emitted.append(payload)
        else:
            logger.debug(f"{descriptor.entity_cls.__name__}({entity.id}) unchanged, no version")

        for assoc in descriptor.associations:
            value = loaded_value(entity, assoc.name)
            if value is NOT_LOADED:
                continue
            check_shape(descriptor, assoc, value)
            if not assoc.tracked:
                if payload is not None:
                    payload.associations[assoc.name] = value
                continue

            children = _child_changes(change, assoc.name)
            if assoc.cardinality is Cardinality.MANY:
                versions = []
                for child in value:
                    if child is None:
                        continue
                    child_payload = self.visit(child, _change_for(children, child), self._deleted(child))
                    if child_payload is not None:
                        versions.append(child_payload)
                if payload is not None:
                    payload.children[assoc.version_field] = versions
            elif value is not None:
                child_payload = self.visit(value, _change_for(children, value), self._deleted(value))
                if payload is not None and child_payload is not None:
                    payload.children[assoc.version_field] = child_payload
        return payload

    def _deleted(self, child: Any) -> bool:
        return self.options.cascade_deleted or was_removed(child)


def build_version_batch(entity: Any, options: VersionOptions) -> VersionBatch:
    """Every payload one write produces for ``entity`` and its tracked descendants."""
    walk = _Walk(options)
    root = walk.visit(entity, options.change, options.deleted)
    logger.debug(
        f"Built {len(walk.emitted)} version payload(s) for {type(entity).__name__}"
        f" (root={'yes' if root is not None else 'suppressed'})"
    )
    return VersionBatch(root=root, payloads=walk.emitted)


def build_version_payload(entity: Any, options: VersionOptions) -> Optional[VersionPayload]:
    """Root payload for ``entity``, or None for untracked types and no-op updates."""
    return build_version_batch(entity, options).root
