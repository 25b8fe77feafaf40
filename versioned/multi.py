"""
Named transaction steps.

A ``Multi`` collects steps to run in one transaction; each step receives the
session and the results of the steps before it. The ``versioned_*`` helpers
append the steps for one versioned write. With ``name="puppy"`` they add:

    "puppy_record"   the inserted, updated or deleted entity
    "puppy_version"  the root version row (None when an update changed nothing)
    "puppy_deletes"  update only: deletion version rows for removed children

All version rows of one helper call share one ``inserted_at``.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from versioned.builder import VersionOptions, build_version_batch
from versioned.cascade import deleted_versions
from versioned.changeset import Changeset
from versioned.clock import default_clock
from versioned.repo import delete_record, insert_record, insert_versions, update_record
from versioned.schema import VersionRecord, VersionRegistry

Step = Callable[[Session, Dict[str, Any]], Any]


def _resolve(value: Any, changes: Dict[str, Any]) -> Any:
    """Steps may be given a value or a function of the results so far."""
    if callable(value) and not isinstance(value, type):
        return value(changes)
    return value


class Multi:
    def __init__(self) -> None:
        self.steps: List[Tuple[str, Step]] = []

    def __repr__(self) -> str:
        return f"Multi({self.names()})"

    def names(self) -> List[str]:
        return [name for name, _ in self.steps]

    def run(self, name: str, step: Step) -> "Multi":
        if name in self.names():
            raise ValueError(f"{name!r} is already a step of this multi")
        self.steps.append((name, step))
        return self

    def insert(self, name: str, value: Any) -> "Multi":
        return self.run(name, lambda session, changes: insert_record(session, _resolve(value, changes)))

    def update(self, name: str, value: Any) -> "Multi":
        return self.run(name, lambda session, changes: update_record(session, _resolve(value, changes)))

    def delete(self, name: str, value: Any) -> "Multi":
        return self.run(name, lambda session, changes: delete_record(session, _resolve(value, changes)))


def step_name(name: Optional[str], part: str) -> str:
    return part if name is None else f"{name}_{part}"


def insert_version_tree(session: Session, entity: Any, options: VersionOptions) -> Optional[VersionRecord]:
    """Insert every version the entity graph produces; return the root row."""
    VersionRegistry.require(type(entity))
    batch = build_version_batch(entity, options)
    rows = insert_versions(session, batch.payloads)
    if batch.root is None:
        return None
    return rows[0]


def versioned_insert(multi: Multi, name: Optional[str], value: Any, inserted_at: Optional[datetime] = None) -> Multi:
    record = step_name(name, "record")
    options = VersionOptions(inserted_at=inserted_at or default_clock.now(), change=True)
    return (
        multi
        .insert(record, value)
        .run(step_name(name, "version"),
             lambda session, changes: insert_version_tree(session, changes[record], options))
    )


def versioned_update(
    multi: Multi,
    name: Optional[str],
    value: Union[Changeset, Callable[[Dict[str, Any]], Changeset]],
    inserted_at: Optional[datetime] = None,
) -> Multi:
    """``value`` is a changeset or a function of the results so far returning one."""
    record = step_name(name, "record")
    inserted_at = inserted_at or default_clock.now()
    resolved: Dict[str, Changeset] = {}

    def update_step(session: Session, changes: Dict[str, Any]) -> Any:
        resolved["changeset"] = _resolve(value, changes)
        return update_record(session, resolved["changeset"])

    def options() -> VersionOptions:
        return VersionOptions(inserted_at=inserted_at, change=resolved["changeset"])

    return (
        multi
        .run(record, update_step)
        .run(step_name(name, "version"),
             lambda session, changes: insert_version_tree(session, changes[record], options()))
        .run(step_name(name, "deletes"),
             lambda session, changes: insert_versions(session, deleted_versions(resolved["changeset"], options())))
    )


def versioned_delete(multi: Multi, name: Optional[str], value: Any, inserted_at: Optional[datetime] = None) -> Multi:
    record = step_name(name, "record")
    options = VersionOptions(inserted_at=inserted_at or default_clock.now(), deleted=True, change=True)
    return (
        multi
        .delete(record, value)
        .run(step_name(name, "version"),
             lambda session, changes: insert_version_tree(session, changes[record], options))
    )


def add_version_to_record(changes: Dict[str, Any], name: Optional[str]) -> Dict[str, Any]:
    """Copy the id of ``<name>_version`` onto ``<name>_record.version_id`` when both exist."""
    record = changes.get(step_name(name, "record"))
    version = changes.get(step_name(name, "version"))
    if record is not None and version is not None and hasattr(record, "version_id"):
        record.version_id = version.id
    return changes
