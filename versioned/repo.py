############################################################
# repo.py
############################################################

"""
SQLAlchemy-backed repository.

The repository owns the session factory and runs a ``Multi`` (an ordered list
of named steps) inside one transaction: every step shares the session, the
session is flushed after each step so database errors surface at the step
that caused them, and any failure rolls back everything.

Record persistence (insert / update / delete from a changeset) and version
row insertion live here as plain functions taking the session, so they can be
used as steps.

Example Usage:
```python
repo = Repository.from_url("sqlite:///:memory:")
repo.create_all(Base)
person = repo.get(Person, person_id, preload=[{"fancy_hobbies": ["lessons"]}])
```
"""

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

from sqlalchemy import create_engine, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, selectinload, sessionmaker

from versioned.builder import VersionPayload
from versioned.changeset import Action, Changeset
from versioned.config import VersionedSettings
from versioned.exceptions import (
    AssociationNotLoadedError,
    AssociationShapeError,
    InvalidChangesetError,
    NotVersionedError,
    StaleEntityError,
    TransactionStepError,
)
from versioned.schema import VersionRecord

if TYPE_CHECKING:
    from versioned.multi import Multi

logger = logging.getLogger("Repository")

Preload = Union[str, Dict[str, Any], Sequence[Union[str, Dict[str, Any]]]]

# Contract and validation errors keep their type through the transaction runner
PASSTHROUGH_ERRORS = (
    InvalidChangesetError,
    AssociationShapeError,
    AssociationNotLoadedError,
    NotVersionedError,
    StaleEntityError,
)


def eager_options(entity_cls: type, preload: Optional[Preload]) -> List[Any]:
    """
    Loader options for nested association names.

    ``["car", {"fancy_hobbies": ["lessons"]}]`` loads ``car``, ``fancy_hobbies``
    and each hobby's ``lessons``.
    """
    if preload is None:
        return []
    if isinstance(preload, (str, dict)):
        preload = [preload]
    options = []
    for item in preload:
        if isinstance(item, str):
            options.append(selectinload(getattr(entity_cls, item)))
            continue
        for name, nested in item.items():
            attr = getattr(entity_cls, name)
            target = attr.property.mapper.class_
            options.append(selectinload(attr).options(*eager_options(target, nested)))
    return options


class Repository:
    """
    Session factory plus a transactional step runner.

    Sessions are created with ``expire_on_commit=False`` so entities and
    version rows returned from a transaction stay readable after it closes.
    """

    def __init__(self, session_factory: Callable[[], Session], engine: Optional[Engine] = None) -> None:
        self._logger = logger
        self._session_factory = session_factory
        self.engine = engine

    @classmethod
    def from_engine(cls, engine: Engine) -> "Repository":
        return cls(sessionmaker(bind=engine, expire_on_commit=False), engine=engine)

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "Repository":
        return cls.from_engine(create_engine(url, echo=echo))

    @classmethod
    def from_settings(cls, settings: Optional[VersionedSettings] = None) -> "Repository":
        settings = settings or VersionedSettings.from_env()
        return cls.from_url(settings.database_url, echo=settings.echo_sql)

    def create_all(self, base: Any) -> None:
        """Create every table (mutable and version) declared on ``base``."""
        if self.engine is None:
            raise RuntimeError("create_all needs a repository with a bound engine")
        base.metadata.create_all(self.engine)
        self._logger.info(f"Created {len(base.metadata.tables)} tables")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session committed on success and rolled back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def transaction(self, multi: "Multi") -> Dict[str, Any]:
        """
        Run every step of ``multi`` in one transaction.

        Returns:
            Step name -> step result

        Raises:
            InvalidChangesetError: a record step was given an invalid changeset
            StaleEntityError: an update or delete targeted a row that no longer exists
            TransactionStepError: any other step failure, or the commit itself
        """
        changes: Dict[str, Any] = {}
        current: Optional[str] = None
        session = self._session_factory()
        try:
            with session.begin():
                for current, step in multi.steps:
                    changes[current] = step(session, changes)
                    session.flush()
                current = None
        except PASSTHROUGH_ERRORS:
            self._logger.info(f"Rolled back transaction at step {current}")
            raise
        except Exception as exc:
            self._logger.error(f"Transaction failed in step {current}: {exc!r}")
            raise TransactionStepError(current, exc, changes) from exc
        finally:
            session.close()
        self._logger.debug(f"Committed steps: {list(changes)}")
        return changes

    def get(self, entity_cls: type, entity_id: Any, preload: Optional[Preload] = None) -> Optional[Any]:
        stmt = select(entity_cls).where(entity_cls.id == entity_id).options(*eager_options(entity_cls, preload))
        return self.one(stmt)

    def one(self, stmt: Any) -> Optional[Any]:
        with self.session() as session:
            return session.scalars(stmt).one_or_none()

    def all(self, stmt: Any) -> List[Any]:
        with self.session() as session:
            return list(session.scalars(stmt).all())


##############################
# Record steps
##############################

def as_changeset(value: Any) -> Changeset:
    return value if isinstance(value, Changeset) else Changeset(value)


def _ensure_valid(changeset: Changeset) -> None:
    if not changeset.valid:
        raise InvalidChangesetError(changeset)


def apply_changeset(session: Session, target: Any, changeset: Changeset) -> Any:
    """
    Write the changes of ``changeset`` (recursively) onto ``target``.

    Nested changesets are matched by id against the children loaded on
    ``target``; their ``data`` is rebound to the matched child, so removed
    children are reported in their stored state.
    """
    for field, value in changeset.changes.items():
        setattr(target, field, value)

    relationships = sa_inspect(type(target)).relationships
    for name, delta in changeset.assoc_changes.items():
        if relationships[name].uselist:
            _apply_many(session, target, name, delta)
        else:
            _apply_one(session, target, name, delta)
    return target


def _apply_many(session: Session, target: Any, name: str, delta: List[Changeset]) -> None:
    collection = getattr(target, name)
    by_id = {child.id: child for child in collection}
    for element in delta:
        if element.action is Action.INSERT:
            collection.append(apply_changeset(session, element.data, element))
            continue
        child = by_id.get(element.data.id)
        if child is None:
            raise StaleEntityError(element.data)
        element.data = child
        if element.action is Action.UPDATE:
            apply_changeset(session, child, element)
        elif element.action is Action.REPLACE:
            collection.remove(child)
            session.delete(child)


def _apply_one(session: Session, target: Any, name: str, element: Changeset) -> None:
    current = getattr(target, name)
    if element.action is Action.INSERT:
        setattr(target, name, apply_changeset(session, element.data, element))
        if current is None:
            element.replaces = None
        else:
            if element.replaces is None:
                element.replaces = Changeset(current, action=Action.REPLACE)
            element.replaces.data = current
            session.delete(current)
        return

    if current is None or current.id != element.data.id:
        raise StaleEntityError(element.data)
    element.data = current
    if element.action is Action.UPDATE:
        apply_changeset(session, current, element)
    elif element.action is Action.REPLACE:
        setattr(target, name, None)
        session.delete(current)


def _stored(session: Session, entity: Any) -> Any:
    """The persistent row behind ``entity``, loaded in ``session``."""
    entity_id = getattr(entity, "id", None)
    stored = session.get(type(entity), entity_id) if entity_id is not None else None
    if stored is None:
        raise StaleEntityError(entity)
    return stored


def _load_like(stored: Any, source: Any, seen: Set[Tuple[type, Any]]) -> None:
    """Load on ``stored`` every association that is loaded on ``source``, recursively."""
    key = (type(stored), stored.id)
    if key in seen:
        return
    seen.add(key)
    unloaded = sa_inspect(source).unloaded
    for name, rel in sa_inspect(type(stored)).relationships.items():
        if name in unloaded:
            continue
        value = getattr(stored, name)
        given = getattr(source, name)
        if rel.uselist:
            by_id = {child.id: child for child in value}
            for child in given:
                if child is not None and child.id in by_id:
                    _load_like(by_id[child.id], child, seen)
        elif value is not None and given is not None and value.id == given.id:
            _load_like(value, given, seen)


def _flush_new(session: Session) -> None:
    """Flush, then load the columns new rows left unset so returned entities are complete."""
    pending = list(session.new)
    session.flush()
    for entity in pending:
        state = sa_inspect(entity)
        missing = [attr.key for attr in state.mapper.column_attrs if attr.key in state.unloaded]
        if missing:
            session.refresh(entity, attribute_names=missing)


def insert_record(session: Session, value: Any) -> Any:
    """Add a new entity (with nested children) built from an entity or changeset."""
    changeset = as_changeset(value)
    _ensure_valid(changeset)
    entity = apply_changeset(session, changeset.data, changeset)
    session.add(entity)
    _flush_new(session)
    logger.debug(f"Inserted {type(entity).__name__}({entity.id})")
    return entity


def update_record(session: Session, changeset: Changeset) -> Any:
    """
    Apply a changeset to the stored entity.

    The stored row is loaded by id and only the changeset's changes are
    written onto it, so the changeset may be built from a detached or stale
    copy. Children replaced by the changeset are deleted from their tables.

    Raises:
        StaleEntityError: the entity (or a matched child) has no stored row
    """
    _ensure_valid(changeset)
    target = _stored(session, changeset.data)
    apply_changeset(session, target, changeset)
    _flush_new(session)
    logger.debug(f"Updated {type(target).__name__}({target.id}): {sorted(changeset.changes)}")
    return target


def delete_record(session: Session, value: Any) -> Any:
    """
    Delete the stored entity.

    Associations loaded on the given copy are loaded on the stored row too,
    so the terminal version carries them in their stored state.
    """
    changeset = as_changeset(value)
    _ensure_valid(changeset)
    target = _stored(session, changeset.data)
    if target is not changeset.data:
        _load_like(target, changeset.data, set())
    session.delete(target)
    logger.debug(f"Deleting {type(target).__name__}({target.id})")
    return target


def insert_versions(session: Session, payloads: Sequence[VersionPayload]) -> List[VersionRecord]:
    """
    Insert one version row per payload, in order.

    Returned rows carry their child version rows under the version field
    names, and untracked association values under the association names.
    """
    rows = {}
    ordered = []
    for payload in payloads:
        row = payload.descriptor.version_cls(**payload.row_values())
        rows[id(payload)] = row
        ordered.append(row)

    for payload in payloads:
        row = rows[id(payload)]
        for field, child in payload.children.items():
            if isinstance(child, list):
                setattr(row, field, [rows[id(c)] for c in child if id(c) in rows])
            else:
                setattr(row, field, rows.get(id(child)))
        for name, value in payload.associations.items():
            setattr(row, name, value)

    session.add_all(ordered)
    session.flush()
    return ordered
