"""
Tests for the key validation checks and their ordering.
"""
from types import SimpleNamespace

import pytest

from app.services.key_store import ApiKeyStore, StoreError, StoreErrorCode
from app.services.validation_service import VerdictKind, validate_api_key


class FakeStore:
    """Minimal stand-in for ApiKeyStore holding records in a dict."""

    def __init__(self, *records, error=None):
        self.records = {r.key: r for r in records}
        self.error = error
        self.lookups = []
        self.recorded = []

    def get_by_key(self, key):
        self.lookups.append(key)
        if self.error is not None:
            raise self.error
        if key not in self.records:
            raise StoreError(StoreErrorCode.NO_ROWS, "no rows")
        return self.records[key]

    def record_usage(self, key_id):
        self.recorded.append(key_id)
        for r in self.records.values():
            if r.id == key_id and r.is_active and r.usage < r.monthly_limit:
                r.usage += 1
                return r
        return None


def record(key="rot-abc123", usage=0, monthly_limit=1000, is_active=True):
    return SimpleNamespace(
        id="key-1",
        name="Production",
        key=key,
        usage=usage,
        monthly_limit=monthly_limit,
        is_active=is_active,
    )


@pytest.mark.parametrize("candidate", [None, "", "   ", 42, ["rot-abc"], {"key": "rot-abc"}])
def test_missing_or_non_string_key(candidate):
    store = FakeStore(record())

    verdict = validate_api_key(candidate, store)

    assert verdict.kind == VerdictKind.MISSING_KEY
    assert store.lookups == []


@pytest.mark.parametrize("candidate", ["xyz", "rot_abc123", "ROT-abc123", "sk-rot-abc", "rot"])
def test_wrong_prefix_is_invalid_format_without_lookup(candidate):
    store = FakeStore(record(key=candidate))

    verdict = validate_api_key(candidate, store)

    assert verdict.kind == VerdictKind.INVALID_FORMAT
    assert store.lookups == []


def test_lookup_uses_trimmed_key():
    store = FakeStore(record())

    verdict = validate_api_key("\t rot-abc123 ", store)

    assert verdict.is_valid
    assert store.lookups == ["rot-abc123"]


def test_well_formed_unknown_key_is_not_found():
    verdict = validate_api_key("rot-unknown", FakeStore())

    assert verdict.kind == VerdictKind.KEY_NOT_FOUND


def test_store_fault_is_not_conflated_with_not_found():
    store = FakeStore(error=StoreError(StoreErrorCode.UNAVAILABLE, "connection refused"))

    verdict = validate_api_key("rot-abc123", store)

    assert verdict.kind == VerdictKind.STORE_UNAVAILABLE


@pytest.mark.parametrize("usage,limit", [(0, 1000), (5000, 10), (10, 10)])
def test_disabled_key_wins_over_quota(usage, limit):
    store = FakeStore(record(usage=usage, monthly_limit=limit, is_active=False))

    verdict = validate_api_key("rot-abc123", store)

    assert verdict.kind == VerdictKind.KEY_DISABLED


@pytest.mark.parametrize("usage,limit", [(1000, 1000), (1001, 1000), (1, 1)])
def test_usage_at_or_over_limit_is_quota_exceeded(usage, limit):
    store = FakeStore(record(usage=usage, monthly_limit=limit))

    verdict = validate_api_key("rot-abc123", store)

    assert verdict.kind == VerdictKind.QUOTA_EXCEEDED


@pytest.mark.parametrize("usage,limit", [(0, 1000), (999, 1000), (3, 7)])
def test_success_reports_exact_remaining(usage, limit):
    store = FakeStore(record(usage=usage, monthly_limit=limit))

    verdict = validate_api_key("rot-abc123", store)

    assert verdict.is_valid
    assert verdict.key_id == "key-1"
    assert verdict.name == "Production"
    assert verdict.usage == usage
    assert verdict.monthly_limit == limit
    assert verdict.remaining == limit - usage


def test_failed_verdicts_carry_no_counters():
    verdict = validate_api_key("rot-unknown", FakeStore())

    assert not verdict.is_valid
    assert verdict.remaining is None


def test_record_usage_only_on_success():
    ok_store = FakeStore(record())
    exhausted_store = FakeStore(record(usage=1000))

    validate_api_key("rot-abc123", ok_store, record_usage=True)
    validate_api_key("rot-abc123", exhausted_store, record_usage=True)

    assert ok_store.recorded == ["key-1"]
    assert exhausted_store.recorded == []


def test_usage_accounting_failure_is_reported_as_store_fault():
    class FailingAccountingStore(FakeStore):
        def record_usage(self, key_id):
            raise StoreError(StoreErrorCode.PERMISSION_DENIED, "permission denied for table api_keys")

    verdict = validate_api_key("rot-abc123", FailingAccountingStore(record()), record_usage=True)

    assert verdict.kind == VerdictKind.STORE_UNAVAILABLE


def test_recorded_success_reports_counters_before_the_increment():
    store = FakeStore(record(usage=41, monthly_limit=50))

    verdict = validate_api_key("rot-abc123", store, record_usage=True)

    assert verdict.usage == 41
    assert verdict.remaining == 9
    assert store.records["rot-abc123"].usage == 42


class InterleavingStore(ApiKeyStore):
    """Runs ``interleave`` once, right before the first usage increment."""

    def __init__(self, db, feed, interleave):
        super().__init__(db, feed)
        self.interleave = interleave

    def record_usage(self, key_id):
        if self.interleave is not None:
            interleave, self.interleave = self.interleave, None
            interleave()
        return super().record_usage(key_id)


def test_overlapping_validations_cannot_exceed_quota(db_session, feed, make_key, session_factory):
    make_key(key="rot-abc123", usage=999, monthly_limit=1000)
    verdicts = []

    def competing_validation():
        with session_factory() as other_db:
            verdicts.append(validate_api_key("rot-abc123", ApiKeyStore(other_db, feed), record_usage=True))

    store = InterleavingStore(db_session, feed, competing_validation)
    verdicts.append(validate_api_key("rot-abc123", store, record_usage=True))

    assert [v.kind for v in verdicts] == [VerdictKind.VALID, VerdictKind.QUOTA_EXCEEDED]
    assert verdicts[0].remaining == 1
    assert store.get_by_key("rot-abc123").usage == 1000


def test_key_disabled_before_increment_is_rejected(db_session, feed, make_key, session_factory):
    created = make_key(key="rot-abc123", usage=10)
    key_id, owner_id = created.id, created.user_id

    def disable_elsewhere():
        with session_factory() as other_db:
            ApiKeyStore(other_db, feed).update(key_id, owner_id, {"is_active": False})

    store = InterleavingStore(db_session, feed, disable_elsewhere)
    verdict = validate_api_key("rot-abc123", store, record_usage=True)

    assert verdict.kind == VerdictKind.KEY_DISABLED
    assert store.get_by_key("rot-abc123").usage == 10


def test_key_deleted_before_increment_is_not_found(db_session, feed, make_key, session_factory):
    created = make_key(key="rot-abc123")
    key_id, owner_id = created.id, created.user_id

    def delete_elsewhere():
        with session_factory() as other_db:
            ApiKeyStore(other_db, feed).delete(key_id, owner_id)

    store = InterleavingStore(db_session, feed, delete_elsewhere)
    verdict = validate_api_key("rot-abc123", store, record_usage=True)

    assert verdict.kind == VerdictKind.KEY_NOT_FOUND
