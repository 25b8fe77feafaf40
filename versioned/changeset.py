"""
Change descriptors.

A ``Changeset`` records what a write changes on one entity: the field values
that differ from the current data, nested changesets for associations, and
validation errors. The version builder uses it to skip no-op versions, and the
cascade-delete detector uses it to find children that a write removes.

Association casting replaces on omit: a child that is loaded on the data but
missing from the submitted params becomes a REPLACE changeset, and the storage
layer hard-deletes it.
"""

from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy import inspect as sa_inspect

from versioned.exceptions import AssociationNotLoadedError, AssociationShapeError
from versioned.schema import IMPLEMENTATION_FIELDS, NOT_LOADED, loaded_value

ChangesetFn = Callable[[Any, Dict[str, Any]], "Changeset"]
AssocDelta = Union["Changeset", List["Changeset"]]


class Action(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


def _coerce_id(value: Any) -> Any:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return value


def _column_keys(entity_cls: type) -> List[str]:
    return [
        attr.key for attr in sa_inspect(entity_cls).column_attrs
        if attr.key not in IMPLEMENTATION_FIELDS
    ]


def default_changeset(entity: Any, params: Dict[str, Any]) -> "Changeset":
    """Cast every business column, then every association present in params."""
    changeset = Changeset.cast(entity, params, _column_keys(type(entity)))
    for name in sa_inspect(type(entity)).relationships.keys():
        if name in changeset.params:
            changeset.cast_assoc(name)
    return changeset


def _changeset_fn(target: type) -> ChangesetFn:
    custom = getattr(target, "changeset", None)
    if callable(custom):
        return custom
    return default_changeset


class Changeset:
    """
    Pending change for one entity, with nested changesets per association.

    Attributes:
        data: Entity the change applies to (a new instance for inserts)
        action: Role of this changeset inside its parent's association
        params: Raw submitted values, kept for ``cast_assoc``
        changes: Field -> new value, only for values that differ from ``data``
        assoc_changes: Association -> nested changeset (to-one) or list (to-many)
        errors: Field -> validation messages
        replaces: For a to-one insert, the REPLACE changeset of the displaced child
    """

    def __init__(
        self,
        data: Any,
        action: Optional[Action] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.data = data
        self.action = action
        self.params: Dict[str, Any] = dict(params or {})
        self.changes: Dict[str, Any] = {}
        self.assoc_changes: Dict[str, AssocDelta] = {}
        self.errors: Dict[str, List[str]] = {}
        self.replaces: Optional["Changeset"] = None

    def __repr__(self) -> str:
        action = self.action.value if self.action else None
        return (
            f"Changeset<action={action}, changes={self.changes}, "
            f"assocs={list(self.assoc_changes)}, errors={self.errors}, data={type(self.data).__name__}>"
        )

    # ---- construction ---------------------------------------------------

    @classmethod
    def change(cls, data: Any, **changes: Any) -> "Changeset":
        """Wrap an entity (or extend a changeset) with trusted changes."""
        changeset = data if isinstance(data, Changeset) else cls(data)
        for field, value in changes.items():
            changeset.put_change(field, value)
        return changeset

    @classmethod
    def cast(cls, data: Any, params: Dict[str, Any], permitted: Iterable[str]) -> "Changeset":
        """Apply the permitted keys of untrusted ``params`` as changes."""
        changeset = data if isinstance(data, Changeset) else cls(data)
        params = {str(key): value for key, value in params.items()}
        changeset.params.update(params)
        for field in permitted:
            if field in params:
                changeset.put_change(field, params[field])
        return changeset

    def put_change(self, field: str, value: Any) -> "Changeset":
        mapper = sa_inspect(type(self.data))
        if field in mapper.relationships:
            raise AssociationShapeError(f"'{field}' is an association; use cast_assoc")
        if field not in mapper.column_attrs:
            raise KeyError(f"{type(self.data).__name__} has no field '{field}'")
        current = loaded_value(self.data, field)
        if current is not NOT_LOADED and current == value:
            self.changes.pop(field, None)
        else:
            self.changes[field] = value
        return self

    # ---- validation -----------------------------------------------------

    def get_field(self, field: str) -> Any:
        if field in self.changes:
            return self.changes[field]
        value = loaded_value(self.data, field)
        return None if value is NOT_LOADED else value

    def add_error(self, field: str, message: str) -> "Changeset":
        self.errors.setdefault(field, []).append(message)
        return self

    def validate_required(self, fields: Iterable[str]) -> "Changeset":
        for field in fields:
            value = self.get_field(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                self.add_error(field, "can't be blank")
        return self

    @property
    def valid(self) -> bool:
        if self.errors:
            return False
        for delta in self.assoc_changes.values():
            nested = delta if isinstance(delta, list) else [delta]
            if not all(child.valid for child in nested):
                return False
        return True

    def traverse_errors(self) -> Dict[str, Any]:
        """Errors of this changeset and every nested one, keyed by field."""
        errors: Dict[str, Any] = {field: list(messages) for field, messages in self.errors.items()}
        for name, delta in self.assoc_changes.items():
            if isinstance(delta, list):
                nested = [child.traverse_errors() for child in delta]
                if any(nested):
                    errors[name] = nested
            else:
                nested_errors = delta.traverse_errors()
                if nested_errors:
                    errors[name] = nested_errors
        return errors

    # ---- change inspection ----------------------------------------------

    @property
    def membership_changed(self) -> bool:
        """Whether a direct association gained, lost or swapped a child."""
        for delta in self.assoc_changes.values():
            nested = delta if isinstance(delta, list) else [delta]
            if any(child.action in (Action.INSERT, Action.REPLACE) for child in nested):
                return True
        return False

    @property
    def changed(self) -> bool:
        """Whether this entity's own state changes (fields or membership)."""
        return bool(self.changes) or self.membership_changed

    def _is_noop(self) -> bool:
        return not self.changes and not self.assoc_changes and not self.errors

    # ---- associations ---------------------------------------------------

    def cast_assoc(
        self,
        name: str,
        with_: Optional[ChangesetFn] = None,
        required: bool = False,
    ) -> "Changeset":
        """
        Cast ``params[name]`` into nested changesets.

        To-many params are a list of dicts; to-one params are a dict or None.
        Children are matched by ``id``; unmatched params insert new children
        and loaded children missing from params are replaced (removed).
        """
        mapper = sa_inspect(type(self.data))
        if name not in mapper.relationships:
            raise AssociationShapeError(f"{type(self.data).__name__} has no association named '{name}'")
        rel = mapper.relationships[name]

        if name not in self.params:
            if required and not loaded_value(self.data, name):
                self.add_error(name, "can't be blank")
            return self

        current = loaded_value(self.data, name)
        if current is NOT_LOADED:
            if sa_inspect(self.data).has_identity:
                raise AssociationNotLoadedError(
                    f"cannot cast {type(self.data).__name__}.{name}: association was not loaded"
                )
            current = [] if rel.uselist else None

        target = rel.mapper.class_
        with_ = with_ or _changeset_fn(target)
        params = self.params[name]
        if rel.uselist:
            delta = self._cast_many(list(current), params or [], target, with_)
        else:
            delta = self._cast_one(current, params, target, with_)

        if delta:
            self.assoc_changes[name] = delta
        else:
            self.assoc_changes.pop(name, None)
        if required and not params:
            self.add_error(name, "can't be blank")
        return self

    def _cast_many(
        self,
        current: List[Any],
        params: List[Dict[str, Any]],
        target: type,
        with_: ChangesetFn,
    ) -> List["Changeset"]:
        existing = {child.id: child for child in current if child is not None}
        kept = set()
        delta = []
        for item in params:
            item = dict(item)
            key = _coerce_id(item.get("id"))
            child = existing.get(key) if key is not None else None
            if child is not None:
                kept.add(key)
                nested = with_(child, item)
                nested.action = Action.UPDATE
                if nested._is_noop():
                    continue
            else:
                nested = with_(target(), item)
                nested.action = Action.INSERT
            delta.append(nested)
        for key, child in existing.items():
            if key not in kept:
                delta.append(Changeset(child, action=Action.REPLACE))
        return delta

    def _cast_one(
        self,
        current: Any,
        params: Optional[Dict[str, Any]],
        target: type,
        with_: ChangesetFn,
    ) -> Optional["Changeset"]:
        if params is None:
            if current is None:
                return None
            return Changeset(current, action=Action.REPLACE)

        params = dict(params)
        key = _coerce_id(params.get("id"))
        if current is not None and key is not None and key == current.id:
            nested = with_(current, params)
            nested.action = Action.UPDATE
            return None if nested._is_noop() else nested

        nested = with_(target(), params)
        nested.action = Action.INSERT
        if current is not None:
            nested.replaces = Changeset(current, action=Action.REPLACE)
        return nested
