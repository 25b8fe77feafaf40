"""
DDL helpers for versioned table pairs.

Every helper changes the mutable table and its ``<table>_versions`` table
together. They take an alembic ``Operations`` object, so they can be called
from a migration script with ``op`` or from code via ``operations_for``.

Example Usage:
```python
from alembic import op
from versioned.migration import create_versioned_table, add_versioned_column

def upgrade() -> None:
    create_versioned_table(
        op, "cars",
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("garage_id", sa.Uuid(), sa.ForeignKey("garages.id")),
    )
    add_versioned_column(op, "cars", sa.Column("color", sa.String()))
```

Version tables never carry foreign keys, so deleting a referenced row can
never block or cascade into history.
"""

import logging
from typing import Any, Optional

from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Boolean, Column, DateTime, Uuid
from sqlalchemy.engine import Connection

from versioned.schema import VersionRegistry

logger = logging.getLogger("VersionedMigration")


def operations_for(connection: Connection) -> Operations:
    return Operations(MigrationContext.configure(connection))


def version_column(column: Column, nullable: Optional[bool] = None) -> Column:
    """Copy of ``column`` for a version table: same name and type, no constraints."""
    return Column(
        column.name,
        column.type,
        nullable=column.nullable if nullable is None else nullable,
    )


def create_versioned_table(op: Operations, name: str, *columns: Column, singular: Optional[str] = None) -> None:
    """
    Create ``name`` and ``<name>_versions``.

    The mutable table gets ``id``, ``inserted_at`` and ``updated_at`` plus
    ``columns``; the versions table gets ``id``, ``is_deleted``,
    ``<singular>_id`` (indexed) and ``inserted_at`` plus a copy of ``columns``
    with foreign keys removed.
    """
    singular = singular or name.rstrip("s")
    entity_fk = f"{singular}_id"
    op.create_table(
        name,
        Column("id", Uuid, primary_key=True),
        Column("inserted_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        *columns,
    )
    op.create_table(
        f"{name}_versions",
        Column("id", Uuid, primary_key=True),
        Column("is_deleted", Boolean, nullable=False),
        Column(entity_fk, Uuid, nullable=False),
        Column("inserted_at", DateTime(timezone=True), nullable=False),
        *[version_column(column) for column in columns],
    )
    op.create_index(f"ix_{name}_versions_{entity_fk}", f"{name}_versions", [entity_fk])
    logger.info(f"Created versioned table pair {name} / {name}_versions")


def create_versioned_tables(connection: Connection, entity_cls: type) -> None:
    """Create the tables of a registered entity class (and its index)."""
    descriptor = VersionRegistry.require(entity_cls)
    entity_cls.__table__.create(connection, checkfirst=True)
    descriptor.version_cls.__table__.create(connection, checkfirst=True)
    logger.info(f"Created tables for {entity_cls.__name__}")


def add_versioned_column(op: Operations, table_name: str, column: Column) -> None:
    """
    Add ``column`` to both tables.

    The version side is always nullable: versions written before the column
    existed have no value for it.
    """
    op.add_column(table_name, column)
    op.add_column(f"{table_name}_versions", version_column(column, nullable=True))
    logger.info(f"Added column {column.name} to {table_name} and {table_name}_versions")


def remove_versioned_column(op: Operations, table_name: str, column_name: str) -> None:
    for table in (table_name, f"{table_name}_versions"):
        with op.batch_alter_table(table) as batch:
            batch.drop_column(column_name)
    logger.info(f"Removed column {column_name} from {table_name} and {table_name}_versions")


def rename_versioned_column(op: Operations, table_name: str, old_name: str, new_name: str) -> None:
    for table in (table_name, f"{table_name}_versions"):
        with op.batch_alter_table(table) as batch:
            batch.alter_column(old_name, new_column_name=new_name)
    logger.info(f"Renamed column {table_name}.{old_name} -> {new_name} (and versions)")


def modify_versioned_column(
    op: Operations,
    table_name: str,
    column_name: str,
    type_: Any,
    nullable: Optional[bool] = None,
) -> None:
    """Change the column type on both tables; ``nullable`` applies to the mutable table only."""
    with op.batch_alter_table(table_name) as batch:
        batch.alter_column(column_name, type_=type_, nullable=nullable)
    with op.batch_alter_table(f"{table_name}_versions") as batch:
        batch.alter_column(column_name, type_=type_)
    logger.info(f"Modified column {table_name}.{column_name} -> {type_} (and versions)")


def rename_versioned_table(
    op: Operations,
    old_name: str,
    new_name: str,
    old_singular: Optional[str] = None,
    new_singular: Optional[str] = None,
) -> None:
    """
    Rename a table pair. When both singular names are given, the history
    reference column ``<singular>_id`` is renamed as well.
    """
    op.rename_table(old_name, new_name)
    op.rename_table(f"{old_name}_versions", f"{new_name}_versions")
    if old_singular and new_singular and old_singular != new_singular:
        with op.batch_alter_table(f"{new_name}_versions") as batch:
            batch.alter_column(f"{old_singular}_id", new_column_name=f"{new_singular}_id")
    logger.info(f"Renamed table pair {old_name} -> {new_name}")
