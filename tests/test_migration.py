"""
Tests for the table-pair DDL helpers, run through alembic operations on a
fresh in-memory SQLite database.
"""

import pytest
import sqlalchemy as sa
from sqlalchemy import create_engine, inspect

from versioned.migration import (
    add_versioned_column,
    create_versioned_table,
    create_versioned_tables,
    modify_versioned_column,
    operations_for,
    remove_versioned_column,
    rename_versioned_column,
    rename_versioned_table,
)
from tests.models import Car


@pytest.fixture
def connection():
    engine = create_engine("sqlite:///:memory:")
    with engine.begin() as conn:
        yield conn
    engine.dispose()


@pytest.fixture
def op(connection):
    return operations_for(connection)


def columns(connection, table):
    return {column["name"]: column for column in inspect(connection).get_columns(table)}


def create_cars(op):
    op.create_table("garages", sa.Column("id", sa.Uuid(), primary_key=True))
    create_versioned_table(
        op, "cars",
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("garage_id", sa.Uuid(), sa.ForeignKey("garages.id")),
    )


class TestCreateTable:
    """Tests for creating a table pair."""

    def test_both_tables_created(self, connection, op):
        create_cars(op)
        assert set(columns(connection, "cars")) == {"id", "inserted_at", "updated_at", "name", "garage_id"}
        assert set(columns(connection, "cars_versions")) == {
            "id", "is_deleted", "car_id", "inserted_at", "name", "garage_id",
        }

    def test_versions_table_has_no_foreign_keys(self, connection, op):
        create_cars(op)
        inspector = inspect(connection)
        assert len(inspector.get_foreign_keys("cars")) == 1
        assert inspector.get_foreign_keys("cars_versions") == []

    def test_history_reference_is_indexed(self, connection, op):
        create_cars(op)
        indexes = inspect(connection).get_indexes("cars_versions")
        assert [(i["name"], i["column_names"]) for i in indexes] == [("ix_cars_versions_car_id", ["car_id"])]
        assert not columns(connection, "cars_versions")["car_id"]["nullable"]

    def test_custom_singular(self, connection, op):
        create_versioned_table(op, "people", sa.Column("name", sa.String()), singular="person")
        assert "person_id" in columns(connection, "people_versions")

    def test_from_registered_entity(self, connection):
        create_versioned_tables(connection, Car)
        tables = set(inspect(connection).get_table_names())
        assert {"cars", "cars_versions"} <= tables


class TestAlterColumns:
    """Column changes apply to both tables of the pair."""

    def test_add_column(self, connection, op):
        create_cars(op)
        add_versioned_column(op, "cars", sa.Column("color", sa.String(), nullable=False, server_default="red"))
        assert not columns(connection, "cars")["color"]["nullable"]
        assert columns(connection, "cars_versions")["color"]["nullable"]

    def test_remove_column(self, connection, op):
        create_cars(op)
        remove_versioned_column(op, "cars", "name")
        assert "name" not in columns(connection, "cars")
        assert "name" not in columns(connection, "cars_versions")

    def test_rename_column(self, connection, op):
        create_cars(op)
        rename_versioned_column(op, "cars", "name", "title")
        for table in ("cars", "cars_versions"):
            names = set(columns(connection, table))
            assert "title" in names
            assert "name" not in names

    def test_modify_column(self, connection, op):
        create_cars(op)
        modify_versioned_column(op, "cars", "name", sa.Text())
        assert isinstance(columns(connection, "cars")["name"]["type"], sa.Text)
        assert isinstance(columns(connection, "cars_versions")["name"]["type"], sa.Text)


class TestRenameTable:
    """Renaming a pair keeps the versions table beside its table."""

    def test_rename_pair(self, connection, op):
        create_cars(op)
        rename_versioned_table(op, "cars", "autos")
        tables = set(inspect(connection).get_table_names())
        assert {"autos", "autos_versions"} <= tables
        assert not {"cars", "cars_versions"} & tables
        assert "car_id" in columns(connection, "autos_versions")

    def test_rename_history_reference(self, connection, op):
        create_cars(op)
        rename_versioned_table(op, "cars", "autos", old_singular="car", new_singular="auto")
        names = set(columns(connection, "autos_versions"))
        assert "auto_id" in names
        assert "car_id" not in names
