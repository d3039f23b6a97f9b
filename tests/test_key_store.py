"""
Tests for the SQLAlchemy key store: lookups, owner scoping, error
classification and change publication.
"""
from types import SimpleNamespace

import pytest
from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from app.core.exceptions import ConflictingReferenceError
from app.models.api_key import ApiKey
from app.services import key_service
from app.services.change_feed import ChangeType
from app.services.key_store import StoreError, StoreErrorCode, classify_db_error

OWNER = "owner-alice"
OTHER_OWNER = "owner-bob"


def collect_events(feed):
    events = []
    feed.subscribe(events.append)
    return events


class FakePgError(Exception):
    """Mimics a psycopg2 error carrying a SQLSTATE and diagnostics."""

    def __init__(self, message, pgcode, constraint=None):
        super().__init__(message)
        self.pgcode = pgcode
        self.diag = SimpleNamespace(constraint_name=constraint)


@pytest.mark.parametrize(
    "pgcode,expected",
    [
        ("23505", StoreErrorCode.UNIQUE_VIOLATION),
        ("23503", StoreErrorCode.FOREIGN_KEY_VIOLATION),
        ("23514", StoreErrorCode.CHECK_VIOLATION),
        ("42501", StoreErrorCode.PERMISSION_DENIED),
    ],
)
def test_classify_postgres_sqlstate(pgcode, expected):
    exc = IntegrityError("INSERT ...", {}, FakePgError("boom", pgcode, "uq_api_keys_user_name"))

    error = classify_db_error(exc)

    assert error.code == expected
    assert error.constraint == "uq_api_keys_user_name"


def test_classify_postgres_permission_error_outside_integrity_errors():
    exc = ProgrammingError("UPDATE ...", {}, FakePgError("permission denied for table api_keys", "42501"))

    assert classify_db_error(exc).code == StoreErrorCode.PERMISSION_DENIED


def test_classify_sqlite_messages():
    unique_key = IntegrityError("INSERT ...", {}, Exception("UNIQUE constraint failed: api_keys.key"))
    unique_name = IntegrityError(
        "INSERT ...", {}, Exception("UNIQUE constraint failed: index 'uq_api_keys_user_name'")
    )
    fk = IntegrityError("DELETE ...", {}, Exception("FOREIGN KEY constraint failed"))
    readonly = OperationalError("UPDATE ...", {}, Exception("attempt to write a readonly database"))
    down = OperationalError("SELECT ...", {}, Exception("unable to open database file"))

    assert classify_db_error(unique_key).code == StoreErrorCode.UNIQUE_VIOLATION
    assert not classify_db_error(unique_key).mentions("name")
    assert classify_db_error(unique_name).mentions("name")
    assert classify_db_error(fk).code == StoreErrorCode.FOREIGN_KEY_VIOLATION
    assert classify_db_error(readonly).code == StoreErrorCode.PERMISSION_DENIED
    assert classify_db_error(down).code == StoreErrorCode.UNAVAILABLE


def test_get_by_key_exact_match(store, make_key):
    make_key(key="rot-abc123")

    assert store.get_by_key("rot-abc123").key == "rot-abc123"
    with pytest.raises(StoreError) as exc_info:
        store.get_by_key("rot-ABC123")
    assert exc_info.value.code == StoreErrorCode.NO_ROWS


def test_lookup_ignores_owner(store, make_key):
    make_key(key="rot-bobs", user_id=OTHER_OWNER)

    assert store.get_by_key("rot-bobs").user_id == OTHER_OWNER


def test_case_insensitive_name_uniqueness_enforced_by_database(store):
    store.insert({"name": "Production", "key": "rot-one", "user_id": OWNER})

    with pytest.raises(StoreError) as exc_info:
        store.insert({"name": "PRODUCTION", "key": "rot-two", "user_id": OWNER})

    assert exc_info.value.code == StoreErrorCode.UNIQUE_VIOLATION
    assert exc_info.value.mentions("name")
    # Session is usable again after the rollback
    assert len(store.list_for_owner(OWNER)) == 1


def test_store_publishes_changes(store, feed):
    events = collect_events(feed)

    record = store.insert({"name": "CI", "key": "rot-ci", "user_id": OWNER})
    record_id = record.id
    store.update(record_id, OWNER, {"usage": 7})
    store.delete(record_id, OWNER)

    assert [e.type for e in events] == [ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE]
    assert events[0].new["name"] == "CI"
    assert events[1].new["usage"] == 7
    assert events[1].old["usage"] == 0
    assert events[2].old["id"] == record_id
    assert events[2].old["user_id"] == OWNER


def test_no_event_when_nothing_matches(store, feed, make_key):
    record = make_key(key="rot-abc123")
    events = collect_events(feed)

    assert store.update(record.id, OTHER_OWNER, {"usage": 1}) is None
    assert store.delete(record.id, OTHER_OWNER) == 0
    assert events == []


def test_record_usage_increments_and_stamps(store, make_key):
    record = make_key(key="rot-abc123", usage=41)

    updated = store.record_usage(record.id)

    assert updated.usage == 42
    assert updated.last_used is not None


def test_record_usage_refuses_exhausted_or_disabled_keys(store, make_key):
    exhausted = make_key(key="rot-full", name="Full", usage=10, monthly_limit=10)
    disabled = make_key(key="rot-off", name="Off", usage=1, is_active=False)

    assert store.record_usage(exhausted.id) is None
    assert store.record_usage(disabled.id) is None
    assert store.get_by_key("rot-full").usage == 10
    assert store.get_by_key("rot-off").usage == 1


def test_deleted_instance_stays_readable(store, make_key):
    record = make_key(key="rot-abc123", name="Doomed")

    assert store.delete(record.id, OWNER) == 1

    assert record.name == "Doomed"
    with pytest.raises(StoreError):
        store.get_by_key("rot-abc123")


def test_delete_blocked_by_reference_is_conflicting_reference(store, db_session):
    record = key_service.create_api_key(store, OWNER, "Referenced")

    metadata = MetaData()
    grants = Table(
        "key_grants",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("api_key_id", String(36), ForeignKey(ApiKey.__table__.c.id), nullable=False),
    )
    bind = db_session.get_bind()
    metadata.create_all(bind=bind)
    try:
        db_session.execute(grants.insert().values(api_key_id=record.id))
        db_session.commit()

        with pytest.raises(ConflictingReferenceError) as exc_info:
            key_service.delete_api_key(store, OWNER, record.id)

        assert exc_info.value.message == "Cannot delete this API key as it is being used by other services"
        assert db_session.query(ApiKey).filter(ApiKey.id == record.id).count() == 1
    finally:
        db_session.rollback()
        metadata.drop_all(bind=bind)
