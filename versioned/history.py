############################################################
# history.py
############################################################

"""
History queries and point-in-time association reconstruction.

Version rows carry no relationships of their own. ``reconstruct_associations``
fills them in on request, joining against the associated version table at the
subject version's ``inserted_at``:

    tracked to-one   latest associated version at or before that time
    tracked to-many  per associated entity, its latest version at or before
                     that time, kept only if it still links to the owner and
                     is not deleted
    untracked        the current rows, no temporal semantics

Example Usage:
```python
with repo.session() as session:
    version = session.get(Person.Version, version_id)
    reconstruct_associations(session, version, ["car", {"fancy_hobbies": ["lessons"]}])
    version.fancy_hobby_versions[0].lesson_versions
```
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session, aliased

from versioned.exceptions import AssociationShapeError
from versioned.repo import eager_options
from versioned.schema import AssociationInfo, Cardinality, EntityDescriptor, VersionRecord, VersionRegistry

logger = logging.getLogger("VersionHistory")

AssocRequest = Union[str, Dict[str, Any], Sequence[Union[str, Dict[str, Any]]]]


def history_query(entity_cls: type, entity_id: Any, limit: Optional[int] = None) -> Select:
    """Versions of one entity, newest first, optionally limited."""
    descriptor = VersionRegistry.require(entity_cls)
    version_cls = descriptor.version_cls
    stmt = (
        select(version_cls)
        .where(getattr(version_cls, descriptor.entity_fk) == entity_id)
        .order_by(version_cls.inserted_at.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


def first_inserted_at_query(entity_cls: type, entity_id: Any) -> Select:
    descriptor = VersionRegistry.require(entity_cls)
    version_cls = descriptor.version_cls
    return (
        select(version_cls.inserted_at)
        .where(getattr(version_cls, descriptor.entity_fk) == entity_id)
        .order_by(version_cls.inserted_at.asc())
        .limit(1)
    )


def normalize_request(request: Optional[AssocRequest]) -> List[Tuple[str, Any]]:
    """``["a", {"b": ["c"]}]`` -> ``[("a", None), ("b", ["c"])]``."""
    if request is None:
        return []
    if isinstance(request, (str, dict)):
        request = [request]
    pairs: List[Tuple[str, Any]] = []
    for item in request:
        if isinstance(item, str):
            pairs.append((item, None))
        elif isinstance(item, dict):
            pairs.extend(item.items())
        else:
            raise TypeError(f"Association request must be a name or a mapping, got {item!r}")
    return pairs


def reconstruct_associations(session: Session, version: VersionRecord, request: AssocRequest) -> VersionRecord:
    """
    Populate the requested associations of ``version`` as of its timestamp.

    Tracked results are set under the association's version field, untracked
    results under the association name. Nested requests recurse into tracked
    results; for untracked results they are eager-loaded.
    """
    descriptor = VersionRegistry.require(type(version))
    for name, nested in normalize_request(request):
        assoc = descriptor.association(name)
        if assoc.tracked:
            value = _tracked(session, descriptor, assoc, version)
            setattr(version, assoc.version_field, value)
            if nested:
                for child in value if isinstance(value, list) else [value]:
                    if child is not None:
                        reconstruct_associations(session, child, nested)
        else:
            setattr(version, assoc.name, _untracked(session, descriptor, assoc, version, nested))
    return version


def _tracked(session: Session, descriptor: EntityDescriptor, assoc: AssociationInfo, version: VersionRecord) -> Any:
    target = VersionRegistry.require(assoc.target)
    target_cls = target.version_cls
    at = version.inserted_at
    owner_id = getattr(version, descriptor.entity_fk)

    if assoc.owner_side:
        linked_id = getattr(version, assoc.foreign_key)
        if linked_id is None:
            return None
        stmt = (
            select(target_cls)
            .where(getattr(target_cls, target.entity_fk) == linked_id, target_cls.inserted_at <= at)
            .order_by(target_cls.inserted_at.desc())
            .limit(1)
        )
        return session.scalars(stmt).first()

    if assoc.foreign_key not in target.fields:
        raise AssociationShapeError(
            f"{descriptor.entity_cls.__name__}.{assoc.name}: {assoc.foreign_key} is not recorded on "
            f"{target_cls.__name__}"
        )
    link = getattr(target_cls, assoc.foreign_key)
    child_key = getattr(target_cls, target.entity_fk)

    if assoc.cardinality is Cardinality.ONE:
        stmt = (
            select(target_cls)
            .where(link == owner_id, target_cls.inserted_at <= at)
            .order_by(target_cls.inserted_at.desc())
            .limit(1)
        )
        return session.scalars(stmt).first()

    linked = aliased(target_cls)
    ever_linked = select(getattr(linked, target.entity_fk)).where(getattr(linked, assoc.foreign_key) == owner_id)
    ranked = (
        select(
            target_cls.id.label("id"),
            func.row_number().over(partition_by=child_key, order_by=target_cls.inserted_at.desc()).label("rn"),
        )
        .where(child_key.in_(ever_linked), target_cls.inserted_at <= at)
        .subquery()
    )
    stmt = (
        select(target_cls)
        .join(ranked, target_cls.id == ranked.c.id)
        .where(ranked.c.rn == 1, link == owner_id, target_cls.is_deleted.is_(False))
    )
    versions = list(session.scalars(stmt).all())
    logger.debug(
        f"{descriptor.entity_cls.__name__}.{assoc.name} at {at}: {len(versions)} version(s)"
    )
    return versions


def _untracked(
    session: Session,
    descriptor: EntityDescriptor,
    assoc: AssociationInfo,
    version: VersionRecord,
    nested: Any,
) -> Any:
    target_cls = assoc.target
    options = eager_options(target_cls, nested)
    if assoc.foreign_key is None:
        raise AssociationShapeError(
            f"{descriptor.entity_cls.__name__}.{assoc.name}: cannot look up an association without a foreign key"
        )
    if assoc.owner_side:
        linked_id = getattr(version, assoc.foreign_key)
        if linked_id is None:
            return None
        return session.scalars(select(target_cls).where(target_cls.id == linked_id).options(*options)).first()

    stmt = (
        select(target_cls)
        .where(getattr(target_cls, assoc.foreign_key) == getattr(version, descriptor.entity_fk))
        .options(*options)
    )
    if assoc.cardinality is Cardinality.ONE:
        return session.scalars(stmt).first()
    return list(session.scalars(stmt).all())
