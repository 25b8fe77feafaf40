############################################################
# schema.py
############################################################

"""
Entity descriptors and version class registration.

A tracked entity is an ordinary SQLAlchemy declarative class that mixes in
``VersionedMixin`` and is registered with ``@versioned``. Registration runs
once, at import time, and declares a second mapped class, ``<Entity>.Version``,
backed by the ``<source>_versions`` table:

    id            own identifier of the version row
    is_deleted    true for the terminal version written on delete
    <singular>_id plain copy of the entity id (no foreign key, indexed)
    inserted_at   when the version was recorded, never updated
    ...           a copy of every business column, foreign keys stripped

Example Usage:
```python
@versioned(singular="person", tracked={"fancy_hobbies": "fancy_hobby_versions"})
class Person(VersionedMixin, Base):
    __tablename__ = "people"
    name = mapped_column(String)
    fancy_hobbies = relationship("Hobby", cascade="all, delete-orphan")

Person.Version.__tablename__  # "people_versions"
VersionRegistry.descriptor_for(Person).entity_fk  # "person_id"
```

Association metadata is resolved lazily (relationship targets may be declared
as strings) and cached, so every later lookup is a dictionary hit.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple, Type, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Boolean, Column, DateTime, Table, Uuid
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapped, RelationshipDirection, configure_mappers, mapped_column

from versioned.exceptions import AssociationShapeError, NotVersionedError

# Columns every tracked table carries that are never copied into versions
IMPLEMENTATION_FIELDS = frozenset({"id", "inserted_at", "updated_at"})

TrackedOption = Union[bool, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


##############################
# 1) Mutable table columns
##############################

class VersionedMixin:
    """
    Common columns for every tracked entity table.

    ``version_id`` is not a column; after a versioned write it holds the id of
    the version row that write produced.
    """

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    inserted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    version_id = None


class VersionRecord:
    """Base for generated version classes."""

    __versioned_entity__: Any = None

    def __init__(self, **kwargs: Any) -> None:
        for key, value in kwargs.items():
            setattr(self, key, value)

    def __repr__(self) -> str:
        descriptor = VersionRegistry.descriptor_for(type(self))
        entity_id = getattr(self, descriptor.entity_fk, None) if descriptor else None
        return f"{type(self).__name__}({self.id}, entity={entity_id}, is_deleted={self.is_deleted})"


##############################
# 2) Descriptors
##############################

class Cardinality(str, Enum):
    ONE = "one"
    MANY = "many"


class AssociationInfo(BaseModel):
    """
    One relationship of a tracked entity type.

    Attributes:
        name: Relationship attribute name on the entity
        cardinality: ONE for belongs-to / has-one, MANY for has-many
        target: Mapped class on the other side
        foreign_key: Column holding the link; on the owner when ``owner_side``
        owner_side: True when the foreign key lives on this entity (belongs-to)
        tracked: Whether the target is historized through this association
        version_field: Attribute on the version row that receives child versions
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    cardinality: Cardinality
    target: Any
    foreign_key: Optional[str] = None
    owner_side: bool = False
    tracked: bool = False
    version_field: Optional[str] = None


class EntityDescriptor(BaseModel):
    """Static metadata linking an entity type to its version type."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    entity_cls: Any
    version_cls: Any
    source: str
    singular: str
    fields: Tuple[str, ...]
    associations: Tuple[AssociationInfo, ...] = ()

    @property
    def entity_fk(self) -> str:
        """Name of the history-reference field on version rows."""
        return f"{self.singular}_id"

    @property
    def version_source(self) -> str:
        return f"{self.source}_versions"

    def association(self, name: str) -> AssociationInfo:
        for assoc in self.associations:
            if assoc.name == name:
                return assoc
        raise AssociationShapeError(f"{self.entity_cls.__name__} has no association named '{name}'")

    def tracked_associations(self) -> Tuple[AssociationInfo, ...]:
        return tuple(a for a in self.associations if a.tracked)


class _Registration(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    entity_cls: Any
    version_cls: Any
    singular: str
    fields: Tuple[str, ...]
    tracked: Dict[str, TrackedOption]


##############################
# 3) Registry
##############################

class VersionRegistry:
    """
    Process-wide table from entity type (and version type) to descriptor.

    Populated by ``@versioned`` at import time. Holds type metadata only; it
    never references a database or session.
    """
    _logger = logging.getLogger("VersionRegistry")
    _registrations: Dict[type, _Registration] = {}
    _descriptors: Dict[type, EntityDescriptor] = {}

    @classmethod
    def register(
        cls,
        entity_cls: type,
        singular: Optional[str] = None,
        tracked: Optional[Dict[str, TrackedOption]] = None,
    ) -> type:
        """
        Declare the version class and table for ``entity_cls``.

        Returns:
            The generated version class, also bound as ``entity_cls.Version``
        """
        if entity_cls in cls._registrations:
            raise ValueError(f"{entity_cls.__name__} is already registered as versioned")
        table: Table = entity_cls.__table__
        singular = singular or table.name.rstrip("s")
        entity_fk = f"{singular}_id"

        columns = [
            Column("id", Uuid, primary_key=True, default=uuid4),
            Column("is_deleted", Boolean, nullable=False, default=False),
            Column(entity_fk, Uuid, nullable=False, index=True),
            Column("inserted_at", DateTime(timezone=True), nullable=False, default=utc_now),
        ]
        fields = []
        for column in table.columns:
            if column.key in IMPLEMENTATION_FIELDS:
                continue
            if column.key in {"is_deleted", entity_fk}:
                raise ValueError(f"{entity_cls.__name__}.{column.key} collides with a version column")
            # Business columns only: no foreign keys, no uniqueness, no defaults
            columns.append(Column(column.key, column.type, nullable=column.nullable))
            fields.append(column.key)

        version_table = Table(f"{table.name}_versions", table.metadata, *columns)
        version_cls = type(
            f"{entity_cls.__name__}Version",
            (VersionRecord,),
            {
                "__doc__": f"A single version of {entity_cls.__name__} in history.",
                "__module__": entity_cls.__module__,
                "__qualname__": f"{entity_cls.__qualname__}.Version",
                "__versioned_entity__": entity_cls,
            },
        )
        entity_cls.registry.map_imperatively(version_cls, version_table)
        entity_cls.Version = version_cls

        cls._registrations[entity_cls] = _Registration(
            entity_cls=entity_cls,
            version_cls=version_cls,
            singular=singular,
            fields=tuple(fields),
            tracked=dict(tracked or {}),
        )
        cls._logger.info(f"Registered {entity_cls.__name__} -> {version_table.name} ({len(fields)} fields)")
        return version_cls

    @classmethod
    def is_versioned(cls, klass: type) -> bool:
        return getattr(klass, "__versioned_entity__", klass) in cls._registrations

    @classmethod
    def descriptor_for(cls, klass: type) -> Optional[EntityDescriptor]:
        """Descriptor for an entity or version class, or None if untracked."""
        entity_cls = getattr(klass, "__versioned_entity__", None) or klass
        descriptor = cls._descriptors.get(entity_cls)
        if descriptor is not None:
            return descriptor
        registration = cls._registrations.get(entity_cls)
        if registration is None:
            return None
        descriptor = cls._resolve(registration)
        cls._descriptors[entity_cls] = descriptor
        return descriptor

    @classmethod
    def require(cls, klass: type) -> EntityDescriptor:
        descriptor = cls.descriptor_for(klass)
        if descriptor is None:
            raise NotVersionedError(f"{getattr(klass, '__name__', klass)} is not a versioned type")
        return descriptor

    @classmethod
    def registered_types(cls) -> Iterable[type]:
        return tuple(cls._registrations)

    @classmethod
    def _resolve(cls, registration: _Registration) -> EntityDescriptor:
        entity_cls = registration.entity_cls
        configure_mappers()
        mapper = sa_inspect(entity_cls)
        pending = dict(registration.tracked)
        associations = []

        for rel in mapper.relationships:
            name = rel.key
            target = rel.mapper.class_
            if rel.direction is RelationshipDirection.MANYTOONE:
                cardinality = Cardinality.ONE
                owner_side = True
                foreign_key = next(iter(rel.local_columns)).key
            elif rel.direction is RelationshipDirection.ONETOMANY:
                cardinality = Cardinality.MANY if rel.uselist else Cardinality.ONE
                owner_side = False
                foreign_key = next(iter(rel.remote_side)).key
            else:
                cardinality = Cardinality.MANY
                owner_side = False
                foreign_key = None

            option = pending.pop(name, None)
            version_field = None
            if option is not None and option is not False:
                if rel.direction is RelationshipDirection.MANYTOMANY:
                    raise AssociationShapeError(
                        f"{entity_cls.__name__}.{name}: many-to-many associations cannot be tracked"
                    )
                target_registration = cls._registrations.get(target)
                if target_registration is None:
                    raise AssociationShapeError(
                        f"{entity_cls.__name__}.{name} is tracked but {target.__name__} is not versioned"
                    )
                if isinstance(option, str):
                    version_field = option
                elif option is True:
                    if cardinality is Cardinality.MANY:
                        version_field = f"{target_registration.singular}_versions"
                    else:
                        version_field = f"{name}_version"
                else:
                    raise AssociationShapeError(
                        f"{entity_cls.__name__}.{name}: tracked option must be True or a field name, got {option!r}"
                    )
                if version_field in registration.fields:
                    raise AssociationShapeError(
                        f"{entity_cls.__name__}.{name}: version field '{version_field}' collides with a column"
                    )
                if not hasattr(registration.version_cls, version_field):
                    setattr(registration.version_cls, version_field, None)

            associations.append(AssociationInfo(
                name=name,
                cardinality=cardinality,
                target=target,
                foreign_key=foreign_key,
                owner_side=owner_side,
                tracked=version_field is not None,
                version_field=version_field,
            ))
            cls._logger.debug(
                f"{entity_cls.__name__}.{name}: {cardinality.value} -> {target.__name__} "
                f"(tracked={version_field is not None})"
            )

        if pending:
            raise AssociationShapeError(
                f"{entity_cls.__name__} tracks unknown associations: {sorted(pending)}"
            )

        return EntityDescriptor(
            entity_cls=entity_cls,
            version_cls=registration.version_cls,
            source=entity_cls.__table__.name,
            singular=registration.singular,
            fields=registration.fields,
            associations=tuple(associations),
        )


def versioned(
    cls: Optional[type] = None,
    *,
    singular: Optional[str] = None,
    tracked: Optional[Dict[str, TrackedOption]] = None,
) -> Any:
    """
    Class decorator registering a mapped class as a tracked entity type.

    Args:
        singular: Singular name used for ``<singular>_id``; defaults to the
            table name with trailing "s" trimmed
        tracked: Association name -> True (default version field) or the
            name of the version field receiving child versions
    """
    def wrap(entity_cls: type) -> type:
        VersionRegistry.register(entity_cls, singular=singular, tracked=tracked)
        return entity_cls

    if cls is not None:
        return wrap(cls)
    return wrap


def version_class(klass: type) -> type:
    """Version class for an entity class; version classes map to themselves."""
    return VersionRegistry.require(klass).version_cls


##############################
# 4) Loaded-state helpers
##############################

class _NotLoaded:
    """Marker for an association that was never fetched."""

    def __repr__(self) -> str:
        return "NOT_LOADED"

    def __bool__(self) -> bool:
        return False


NOT_LOADED = _NotLoaded()


def loaded_value(entity: Any, name: str) -> Any:
    """Attribute value, or NOT_LOADED without touching the database."""
    state = sa_inspect(entity)
    if name in state.unloaded:
        return NOT_LOADED
    return getattr(entity, name)


def was_removed(entity: Any) -> bool:
    """Whether the session deleted this instance during the current write."""
    state = sa_inspect(entity)
    return state.deleted or state.was_deleted
