############################################################
# core.py
############################################################

"""
Versioned facade: the write orchestrator and history entry points.

Each write is one transaction built from the ``versioned_*`` step helpers:

    insert  record -> version
    update  record -> version -> deletes
    delete  record -> version (is_deleted)

Every version row a call writes shares one timestamp from the clock. A
rejected changeset raises ``InvalidChangesetError`` before anything is
written; any later failure rolls the whole call back and raises
``TransactionStepError`` naming the step.

Example Usage:
```python
store = Versioned(Repository.from_url("sqlite:///cars.db"))
car = store.insert(Car(name="Toad"))
car = store.update(Changeset.change(car, name="Magnificent"))
store.delete(car)
[v.name for v in store.history(Car, car.id)]  # ["Magnificent", "Magnificent", "Toad"]
```
"""

import logging
from datetime import datetime
from typing import Any, List, Optional

from versioned.changeset import Changeset
from versioned.clock import Clock, default_clock
from versioned.history import AssocRequest, first_inserted_at_query, history_query
from versioned.history import reconstruct_associations as reconstruct_in_session
from versioned.multi import Multi, add_version_to_record, versioned_delete, versioned_insert, versioned_update
from versioned.repo import Repository, as_changeset
from versioned.schema import VersionRecord, VersionRegistry


class Versioned:
    """
    Versioned writes and history reads against one repository.

    Args:
        repo: Repository that runs the transactions
        clock: Timestamp source; anything with ``now()``
    """

    def __init__(self, repo: Repository, clock: Optional[Clock] = None) -> None:
        self._logger = logging.getLogger("Versioned")
        self.repo = repo
        self.clock = clock or default_clock

    ##############################
    # Writes
    ##############################

    def insert(self, value: Any) -> Any:
        """Insert an entity (or changeset) and its first version."""
        changeset = as_changeset(value)
        VersionRegistry.require(type(changeset.data))
        multi = versioned_insert(Multi(), None, changeset, self.clock.now())
        return self._finish("insert", multi)

    def update(self, changeset: Changeset) -> Any:
        """
        Apply a changeset and append versions for everything it changed.

        Children omitted from a cast association are deleted and receive a
        deletion-marked version. When nothing changed, no version is written
        and the returned entity's ``version_id`` is left unset.
        """
        VersionRegistry.require(type(changeset.data))
        multi = versioned_update(Multi(), None, changeset, self.clock.now())
        return self._finish("update", multi)

    def delete(self, value: Any) -> Any:
        """Delete the entity row and append its terminal, deleted version."""
        changeset = as_changeset(value)
        VersionRegistry.require(type(changeset.data))
        multi = versioned_delete(Multi(), None, changeset, self.clock.now())
        return self._finish("delete", multi)

    def _finish(self, operation: str, multi: Multi) -> Any:
        changes = add_version_to_record(self.repo.transaction(multi), None)
        record = changes["record"]
        deletes = changes.get("deletes") or []
        self._logger.info(
            f"{operation} {type(record).__name__}({record.id}): "
            f"version={getattr(changes['version'], 'id', None)}, cascade deletes={len(deletes)}"
        )
        return record

    ##############################
    # Reads
    ##############################

    def history_query(self, entity_cls: type, entity_id: Any, limit: Optional[int] = None) -> Any:
        return history_query(entity_cls, entity_id, limit=limit)

    def history(self, entity_cls: type, entity_id: Any, limit: Optional[int] = None) -> List[VersionRecord]:
        """Versions of one entity, newest first."""
        return self.repo.all(history_query(entity_cls, entity_id, limit=limit))

    def get(self, entity_cls: type, version_id: Any) -> Optional[VersionRecord]:
        """A version row by its own id; accepts the entity or the version class."""
        version_cls = VersionRegistry.require(entity_cls).version_cls
        with self.repo.session() as session:
            return session.get(version_cls, version_id)

    def get_last(self, entity_cls: type, entity_id: Any) -> Optional[VersionRecord]:
        versions = self.history(entity_cls, entity_id, limit=1)
        return versions[0] if versions else None

    def inserted_at(self, record: Any) -> Optional[datetime]:
        """Timestamp of the first version of the entity behind ``record``."""
        descriptor = VersionRegistry.require(type(record))
        if isinstance(record, VersionRecord):
            entity_id = getattr(record, descriptor.entity_fk)
        else:
            entity_id = record.id
        with self.repo.session() as session:
            return session.scalars(first_inserted_at_query(descriptor.entity_cls, entity_id)).first()

    def reconstruct_associations(self, version: VersionRecord, request: AssocRequest) -> VersionRecord:
        """Attach the requested associations of ``version`` as they were at its timestamp."""
        with self.repo.session() as session:
            return reconstruct_in_session(session, version, request)
