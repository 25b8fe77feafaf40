"""
Entity classes shared by the test suite.

    Garage          plain table, not versioned
    Car             versioned; untracked passenger_people and garage
    PassengerPerson versioned, linked to a car
    Person          versioned; tracked car (belongs-to) and fancy_hobbies
    Hobby           versioned; tracked lessons
    Lesson          versioned leaf
"""

from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from versioned import Changeset, VersionedMixin, versioned


class Base(DeclarativeBase):
    pass


# ========================================================================
# Untracked
# ========================================================================

class Garage(Base):
    __tablename__ = "garages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[Optional[str]] = mapped_column(String)


# ========================================================================
# Tracked
# ========================================================================

@versioned
class Car(VersionedMixin, Base):
    __tablename__ = "cars"

    name: Mapped[Optional[str]] = mapped_column(String)
    garage_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("garages.id"))

    garage: Mapped[Optional[Garage]] = relationship()
    passenger_people: Mapped[List["PassengerPerson"]] = relationship()

    @classmethod
    def changeset(cls, car: Any, params: Dict[str, Any]) -> Changeset:
        return Changeset.cast(car, params, ["name", "garage_id"]).validate_required(["name"])


@versioned(singular="passenger_person")
class PassengerPerson(VersionedMixin, Base):
    __tablename__ = "passenger_people"

    name: Mapped[Optional[str]] = mapped_column(String)
    car_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("cars.id"))


@versioned(singular="person", tracked={"car": True, "fancy_hobbies": "fancy_hobby_versions"})
class Person(VersionedMixin, Base):
    __tablename__ = "people"

    name: Mapped[Optional[str]] = mapped_column(String)
    car_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("cars.id"))

    car: Mapped[Optional[Car]] = relationship()
    fancy_hobbies: Mapped[List["Hobby"]] = relationship(cascade="all, delete-orphan")

    @classmethod
    def changeset(cls, person: Any, params: Dict[str, Any]) -> Changeset:
        return (
            Changeset.cast(person, params, ["name"])
            .validate_required(["name"])
            .cast_assoc("fancy_hobbies")
            .cast_assoc("car")
        )


@versioned(singular="hobby", tracked={"lessons": True})
class Hobby(VersionedMixin, Base):
    __tablename__ = "hobbies"

    name: Mapped[Optional[str]] = mapped_column(String)
    person_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("people.id"))

    lessons: Mapped[List["Lesson"]] = relationship(cascade="all, delete-orphan")

    @classmethod
    def changeset(cls, hobby: Any, params: Dict[str, Any]) -> Changeset:
        return (
            Changeset.cast(hobby, params, ["name"])
            .validate_required(["name"])
            .cast_assoc("lessons")
        )


@versioned
class Lesson(VersionedMixin, Base):
    __tablename__ = "lessons"

    title: Mapped[Optional[str]] = mapped_column(String)
    hobby_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("hobbies.id"))
