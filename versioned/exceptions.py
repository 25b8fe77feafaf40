"""
Error taxonomy for versioned writes and reads.

Write-path failures surface as exceptions from the triggering call; read-path
lookups that find nothing return ``None`` or an empty list instead of raising.
"""

from typing import Any, Dict, Optional


class VersionedError(Exception):
    """Base class for all errors raised by the versioned package."""


class InvalidChangesetError(VersionedError):
    """
    The entity mutation itself was rejected by changeset validation.

    The whole transaction is rolled back and no rows are written.
    """

    def __init__(self, changeset: Any) -> None:
        self.changeset = changeset
        self.errors: Dict[str, Any] = changeset.traverse_errors()
        fields = ", ".join(sorted(self.errors)) or "unknown"
        super().__init__(f"Invalid changeset for {type(changeset.data).__name__}: {fields}")


class TransactionStepError(VersionedError):
    """
    A named step of a transaction failed after the transaction began.

    Attributes:
        step: Name of the failed step, or None if the commit itself failed
        cause: The underlying exception
        changes: Results of the steps that completed before the failure
    """

    def __init__(self, step: Optional[str], cause: BaseException, changes: Optional[Dict[str, Any]] = None) -> None:
        self.step = step
        self.cause = cause
        self.changes = dict(changes or {})
        if step is None:
            message = f"Transaction error: {cause!r}"
        else:
            message = f"Transaction error in {step} with {cause!r}"
        super().__init__(message)


class StaleEntityError(VersionedError):
    """An update or delete targeted an entity whose row no longer exists."""

    def __init__(self, entity: Any) -> None:
        self.entity = entity
        super().__init__(f"{type(entity).__name__}({getattr(entity, 'id', None)}) has no stored row")


class AssociationShapeError(VersionedError):
    """An association could not be classified; indicates a descriptor bug."""


class AssociationNotLoadedError(VersionedError):
    """An association was cast on persisted data without being loaded first."""


class NotVersionedError(VersionedError):
    """A versioned operation was requested for a type without a version table."""
