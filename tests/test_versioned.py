"""
Tests for the Versioned facade: versioned writes against a real database.

These tests verify that:
1. Every state-changing write appends exactly one version per changed entity
2. Writes that change nothing append nothing
3. Children removed by an update are hard-deleted and get a deleted version
4. All rows of one write share one timestamp, and failures roll back fully
"""

import pytest
from sqlalchemy import event, inspect, select

from versioned import (
    InvalidChangesetError,
    NotVersionedError,
    StaleEntityError,
    TransactionStepError,
)
from tests.models import Car, Garage, Hobby, Lesson, PassengerPerson, Person


def load_person(repo, person_id):
    return repo.get(Person, person_id, preload=["car", {"fancy_hobbies": ["lessons"]}])


def insert_jeff(store, hobbies=None):
    hobbies = hobbies if hobbies is not None else [{"name": "Chess"}, {"name": "Go"}]
    return store.insert(Person.changeset(Person(), {"name": "Jeff", "fancy_hobbies": hobbies}))


def by_name(entities, name):
    return next(entity for entity in entities if entity.name == name)


class TestBasicLifecycle:
    """Insert, update and delete of a single entity."""

    def test_toad_to_magnificent_then_deleted(self, store):
        car = store.insert(Car(name="Toad"))
        car = store.update(Car.changeset(car, {"name": "Magnificent"}))
        store.delete(car)

        history = store.history(Car, car.id)
        assert [(v.name, v.is_deleted) for v in history] == [
            ("Magnificent", True),
            ("Magnificent", False),
            ("Toad", False),
        ]
        assert all(v.car_id == car.id for v in history)

    def test_basic_functionality(self, store, repo):
        car = store.insert(Car(name="Toad"))
        wendy = store.insert(PassengerPerson(car_id=car.id, name="Wendy"))

        updated = store.update(Car.changeset(car, {"name": "Magnificent"}))
        assert updated.id == car.id

        assert [v.name for v in store.history(Car, car.id)] == ["Magnificent", "Toad"]
        loaded = repo.get(Car, car.id, preload="passenger_people")
        assert loaded.name == "Magnificent"
        assert [(p.id, p.name) for p in loaded.passenger_people] == [(wendy.id, "Wendy")]

    def test_deletion(self, store, repo):
        car = store.insert(Car(name="Toad"))
        deleted = store.delete(car)
        assert deleted.id == car.id

        assert repo.get(Car, car.id) is None
        last = store.get_last(Car, car.id)
        assert last.is_deleted
        assert last.name == "Toad"
        assert [v.is_deleted for v in store.history(Car, car.id)] == [True, False]
        assert store.get(Car, car.id) is None

    def test_version_id_is_populated(self, store):
        car = store.insert(Car(name="Toad"))
        assert car.version_id == store.get_last(Car, car.id).id

        car = store.update(Car.changeset(car, {"name": "Magnificent"}))
        assert car.version_id == store.get_last(Car, car.id).id

    def test_get_by_version_id(self, store):
        car = store.insert(Car(name="Toad"))
        version = store.get(Car, car.version_id)
        assert version.car_id == car.id
        assert version.name == "Toad"
        assert store.get(Car.Version, car.version_id).id == version.id

    def test_untracked_type_is_rejected(self, store):
        with pytest.raises(NotVersionedError):
            store.insert(Garage(name="Main"))

    def test_inserted_entity_has_every_column_loaded(self, store):
        car = store.insert(Car(name="Toad"))
        assert car.garage_id is None
        assert not {"name", "garage_id"} & inspect(car).unloaded


class TestStaleCopies:
    """Updates and deletes write onto the stored row, not onto the copy they were built from."""

    def test_update_from_stale_copy_keeps_untouched_fields(self, store, repo):
        garage = Garage(name="Main")
        with repo.session() as session:
            session.add(garage)
        stale = store.insert(Car(name="Toad"))
        store.update(Car.changeset(repo.get(Car, stale.id), {"name": "Magnificent"}))

        updated = store.update(Car.changeset(stale, {"garage_id": garage.id}))

        assert updated.name == "Magnificent"
        row = repo.get(Car, stale.id)
        assert (row.name, row.garage_id) == ("Magnificent", garage.id)
        assert [(v.name, v.garage_id) for v in store.history(Car, stale.id)] == [
            ("Magnificent", garage.id),
            ("Magnificent", None),
            ("Toad", None),
        ]

    def test_delete_from_stale_copy_records_stored_state(self, store, repo):
        stale = store.insert(Car(name="Toad"))
        store.update(Car.changeset(repo.get(Car, stale.id), {"name": "Magnificent"}))

        store.delete(stale)

        last = store.get_last(Car, stale.id)
        assert last.is_deleted
        assert last.name == "Magnificent"

    def test_stale_child_is_rejected(self, store, repo):
        person = insert_jeff(store)
        stale = load_person(repo, person.id)
        go = by_name(stale.fancy_hobbies, "Go")
        chess = by_name(stale.fancy_hobbies, "Chess")
        store.update(Person.changeset(load_person(repo, person.id), {"fancy_hobbies": [{"id": str(chess.id)}]}))

        with pytest.raises(StaleEntityError):
            store.update(Person.changeset(stale, {"fancy_hobbies": [
                {"id": str(chess.id)},
                {"id": str(go.id), "name": "Weiqi"},
            ]}))
        assert repo.get(Hobby, go.id) is None
        assert [v.is_deleted for v in store.history(Hobby, go.id)] == [True, False]


class TestNoOpSuppression:
    """Updates that change nothing append nothing."""

    def test_unchanged_update(self, store):
        car = store.insert(Car(name="Toad"))
        result = store.update(Car.changeset(car, {"name": "Toad"}))
        assert len(store.history(Car, car.id)) == 1
        assert result.version_id is None

    def test_resubmitted_unset_field(self, store):
        car = store.insert(Car(name="Toad"))
        store.update(Car.changeset(car, {"name": "Toad", "garage_id": None}))
        assert len(store.history(Car, car.id)) == 1

    def test_single_field_update_keeps_other_fields(self, store, repo):
        garage = Garage(name="Main")
        with repo.session() as session:
            session.add(garage)
        car = store.insert(Car(name="Toad", garage_id=garage.id))

        store.update(Car.changeset(car, {"name": "Magnificent"}))
        history = store.history(Car, car.id)
        assert len(history) == 2
        assert history[0].name == "Magnificent"
        assert history[0].garage_id == garage.id

    def test_unchanged_parent_with_changed_child(self, store, repo):
        person = insert_jeff(store)
        jeff = load_person(repo, person.id)
        chess = by_name(jeff.fancy_hobbies, "Chess")
        go = by_name(jeff.fancy_hobbies, "Go")

        store.update(Person.changeset(jeff, {"fancy_hobbies": [
            {"id": str(chess.id), "name": "Chess960"},
            {"id": str(go.id)},
        ]}))

        assert len(store.history(Person, person.id)) == 1
        assert [v.name for v in store.history(Hobby, chess.id)] == ["Chess960", "Chess"]
        assert len(store.history(Hobby, go.id)) == 1


class TestCascadeDeletes:
    """Children removed through an update."""

    def test_omitted_child(self, store, repo):
        person = insert_jeff(store)
        jeff = load_person(repo, person.id)
        chess = by_name(jeff.fancy_hobbies, "Chess")
        go = by_name(jeff.fancy_hobbies, "Go")

        store.update(Person.changeset(jeff, {"fancy_hobbies": [{"id": str(chess.id), "name": "Chess"}]}))

        assert len(store.history(Hobby, chess.id)) == 1
        go_history = store.history(Hobby, go.id)
        assert [(v.name, v.is_deleted) for v in go_history] == [("Go", True), ("Go", False)]
        assert repo.get(Hobby, go.id) is None
        assert [h.id for h in load_person(repo, person.id).fancy_hobbies] == [chess.id]

    def test_depth_two(self, store, repo):
        person = insert_jeff(store, [{"name": "Chess", "lessons": [{"title": "Openings"}, {"title": "Endgames"}]}])
        jeff = load_person(repo, person.id)
        chess = jeff.fancy_hobbies[0]
        lesson_ids = [lesson.id for lesson in chess.lessons]
        assert len(lesson_ids) == 2

        store.update(Person.changeset(jeff, {"fancy_hobbies": []}))

        assert store.get_last(Hobby, chess.id).is_deleted
        for lesson_id in lesson_ids:
            last = store.get_last(Lesson, lesson_id)
            assert last.is_deleted
            assert repo.get(Lesson, lesson_id) is None
        assert repo.get(Hobby, chess.id) is None

    def test_replaced_belongs_to(self, store, repo):
        person = store.insert(Person.changeset(Person(), {"name": "Jeff", "car": {"name": "Toad"}}))
        jeff = load_person(repo, person.id)
        old_car_id = jeff.car.id

        store.update(Person.changeset(jeff, {"car": {"name": "Magnificent"}}))

        jeff = load_person(repo, person.id)
        assert jeff.car.name == "Magnificent"
        assert jeff.car.id != old_car_id
        assert store.get_last(Car, old_car_id).is_deleted
        assert repo.get(Car, old_car_id) is None
        assert store.get_last(Person, person.id).car_id == jeff.car.id

    def test_delete_parent_marks_children_deleted(self, store, repo):
        person = insert_jeff(store, [{"name": "Chess", "lessons": [{"title": "Openings"}]}])
        jeff = load_person(repo, person.id)
        chess = jeff.fancy_hobbies[0]
        lesson = chess.lessons[0]

        store.delete(jeff)

        assert store.get_last(Person, person.id).is_deleted
        assert store.get_last(Hobby, chess.id).is_deleted
        assert store.get_last(Lesson, lesson.id).is_deleted
        assert repo.get(Hobby, chess.id) is None


class TestTimestamps:
    """All rows written by one call share one timestamp."""

    def test_insert_batch(self, store, repo):
        person = insert_jeff(store, [{"name": "Chess", "lessons": [{"title": "Openings"}]}, {"name": "Go"}])
        jeff = load_person(repo, person.id)
        stamps = {store.get_last(Person, person.id).inserted_at}
        for hobby in jeff.fancy_hobbies:
            stamps.add(store.get_last(Hobby, hobby.id).inserted_at)
            for lesson in hobby.lessons:
                stamps.add(store.get_last(Lesson, lesson.id).inserted_at)
        assert len(stamps) == 1

    def test_update_batch_includes_cascade_deletes(self, store, repo):
        person = insert_jeff(store)
        jeff = load_person(repo, person.id)
        chess = by_name(jeff.fancy_hobbies, "Chess")
        go = by_name(jeff.fancy_hobbies, "Go")

        store.update(Person.changeset(jeff, {"name": "Jeffrey", "fancy_hobbies": [{"id": str(chess.id)}]}))

        person_version = store.get_last(Person, person.id)
        go_version = store.get_last(Hobby, go.id)
        assert person_version.name == "Jeffrey"
        assert go_version.is_deleted
        assert person_version.inserted_at == go_version.inserted_at

    def test_separate_writes_never_share(self, store):
        car = store.insert(Car(name="Toad"))
        store.update(Car.changeset(car, {"name": "Magnificent"}))
        newer, older = store.history(Car, car.id)
        assert newer.inserted_at > older.inserted_at

    def test_inserted_at_is_first_version(self, store):
        car = store.insert(Car(name="Toad"))
        car = store.update(Car.changeset(car, {"name": "Magnificent"}))
        first = store.history(Car, car.id)[-1]
        assert store.inserted_at(car) == first.inserted_at
        assert store.inserted_at(store.get_last(Car, car.id)) == first.inserted_at


class TestFailures:
    """Validation failures and step failures leave no trace."""

    def test_invalid_insert_writes_nothing(self, store, repo):
        with pytest.raises(InvalidChangesetError) as excinfo:
            store.insert(Car.changeset(Car(), {"name": ""}))
        assert excinfo.value.errors == {"name": ["can't be blank"]}
        assert repo.all(select(Car)) == []
        assert repo.all(select(Car.Version)) == []

    def test_invalid_nested_child(self, store, repo):
        with pytest.raises(InvalidChangesetError) as excinfo:
            insert_jeff(store, [{"name": "Chess"}, {"name": ""}])
        assert excinfo.value.errors == {"fancy_hobbies": [{}, {"name": ["can't be blank"]}]}
        assert repo.all(select(Hobby)) == []

    def test_invalid_update_writes_nothing(self, store, repo):
        car = store.insert(Car(name="Toad"))
        with pytest.raises(InvalidChangesetError):
            store.update(Car.changeset(car, {"name": None}))
        assert repo.get(Car, car.id).name == "Toad"
        assert len(store.history(Car, car.id)) == 1

    def test_update_after_delete_is_rejected(self, store, repo):
        car = store.insert(Car(name="Toad"))
        store.delete(car)

        with pytest.raises(StaleEntityError):
            store.update(Car.changeset(car, {"name": "Zombie"}))

        assert repo.get(Car, car.id) is None
        assert [(v.name, v.is_deleted) for v in store.history(Car, car.id)] == [("Toad", True), ("Toad", False)]

    def test_delete_after_delete_is_rejected(self, store):
        car = store.insert(Car(name="Toad"))
        store.delete(car)
        with pytest.raises(StaleEntityError):
            store.delete(car)
        assert len(store.history(Car, car.id)) == 2

    def test_failed_version_insert_rolls_back_update(self, store, repo):
        car = store.insert(Car(name="Toad"))

        def boom(mapper, connection, target):
            raise RuntimeError("version table unavailable")

        event.listen(Car.Version, "before_insert", boom)
        try:
            with pytest.raises(TransactionStepError) as excinfo:
                store.update(Car.changeset(car, {"name": "Magnificent"}))
        finally:
            event.remove(Car.Version, "before_insert", boom)

        assert excinfo.value.step == "version"
        assert isinstance(excinfo.value.cause, RuntimeError)
        assert "record" in excinfo.value.changes
        assert repo.get(Car, car.id).name == "Toad"
        assert [v.name for v in store.history(Car, car.id)] == ["Toad"]

    def test_failed_cascade_insert_rolls_back_everything(self, store, repo):
        person = insert_jeff(store)
        jeff = load_person(repo, person.id)
        chess = by_name(jeff.fancy_hobbies, "Chess")
        go = by_name(jeff.fancy_hobbies, "Go")

        def boom(mapper, connection, target):
            if target.is_deleted:
                raise RuntimeError("no deletions today")

        event.listen(Hobby.Version, "before_insert", boom)
        try:
            with pytest.raises(TransactionStepError) as excinfo:
                store.update(Person.changeset(jeff, {"fancy_hobbies": [{"id": str(chess.id)}]}))
        finally:
            event.remove(Hobby.Version, "before_insert", boom)

        assert excinfo.value.step == "deletes"
        assert repo.get(Hobby, go.id) is not None
        assert len(store.history(Person, person.id)) == 1
        assert len(store.history(Hobby, go.id)) == 1
