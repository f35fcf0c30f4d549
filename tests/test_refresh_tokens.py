"""Tests for refresh-token issuance, rotation and revocation."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from campusauth.service.errors import InvalidTokenError
from campusauth.service.refresh_tokens import IssuedRefreshToken, RefreshTokenStore
from campusauth.storage.memory import MemoryStore

START = datetime(2026, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def principal(memory_store):
    return memory_store.create_principal(
        "sstudent", "sstudent@campus.edu", "hash", "Sam Student"
    )


@pytest.fixture
def ledger(memory_store):
    store = RefreshTokenStore(memory_store, ttl_days=7)
    store._now = lambda: START
    return store


class TestIssue:
    def test_issue_persists_active_record(self, ledger, memory_store, principal):
        issued = ledger.issue(principal)

        record = memory_store.get_refresh_token(issued.value)
        assert record is not None
        assert record.principal_id == principal.id
        assert record.revoked is False
        assert record.expiry_date == START + timedelta(days=7)
        assert issued.expires_at == record.expiry_date

    def test_values_are_unique_and_long(self, ledger, principal):
        values = {ledger.issue(principal).value for _ in range(50)}

        assert len(values) == 50
        # 32 random bytes -> 43 url-safe characters
        assert all(len(v) >= 43 for v in values)

    def test_max_age_is_remaining_lifetime(self):
        issued = IssuedRefreshToken("v", START + timedelta(days=7))

        assert issued.max_age(START) == 7 * 24 * 3600
        assert issued.max_age(START + timedelta(days=8)) == 0


class TestRotate:
    def test_rotation_revokes_old_and_issues_new(self, ledger, memory_store, principal):
        first = ledger.issue(principal)

        resolved, second = ledger.validate_and_rotate(first.value)

        assert resolved.id == principal.id
        assert second.value != first.value
        assert memory_store.get_refresh_token(first.value).revoked is True
        assert memory_store.get_refresh_token(second.value).revoked is False

    def test_rotated_token_cannot_be_used_again(self, ledger, principal):
        first = ledger.issue(principal)
        ledger.validate_and_rotate(first.value)

        with pytest.raises(InvalidTokenError):
            ledger.validate_and_rotate(first.value)

    def test_unknown_token_rejected(self, ledger):
        with pytest.raises(InvalidTokenError):
            ledger.validate_and_rotate("never-issued")

    def test_empty_token_rejected(self, ledger):
        with pytest.raises(InvalidTokenError):
            ledger.validate_and_rotate("")

    def test_expired_token_rejected(self, ledger, principal):
        issued = ledger.issue(principal)
        ledger._now = lambda: START + timedelta(days=7)

        with pytest.raises(InvalidTokenError):
            ledger.validate_and_rotate(issued.value)

    def test_disabled_principal_cannot_refresh(self, ledger, memory_store, principal):
        issued = ledger.issue(principal)
        memory_store.principals[principal.id].enabled = False

        with pytest.raises(InvalidTokenError):
            ledger.validate_and_rotate(issued.value)

    def test_history_is_retained(self, ledger, memory_store, principal):
        token = ledger.issue(principal).value
        for _ in range(3):
            _, issued = ledger.validate_and_rotate(token)
            token = issued.value

        rows = memory_store.list_refresh_tokens(principal.id)
        assert len(rows) == 4
        assert [r.revoked for r in rows].count(False) == 1

    def test_concurrent_rotation_has_single_winner(self, memory_store, principal):
        ledger = RefreshTokenStore(memory_store, ttl_days=7)
        token = ledger.issue(principal).value
        outcomes = []
        barrier = threading.Barrier(6)

        def _attempt():
            barrier.wait()
            try:
                ledger.validate_and_rotate(token)
                outcomes.append("ok")
            except InvalidTokenError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=_attempt) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 5


class TestRevoke:
    def test_revoke_marks_record(self, ledger, memory_store, principal):
        issued = ledger.issue(principal)

        revoked = ledger.revoke(issued.value)

        assert revoked.token == issued.value
        assert revoked.principal_id == principal.id
        assert memory_store.get_refresh_token(issued.value).revoked is True

    def test_revoke_missing_or_empty_is_noop(self, ledger):
        assert ledger.revoke("unknown") is None
        assert ledger.revoke("") is None
        assert ledger.revoke(None) is None

    def test_revoke_all_for_principal(self, ledger, principal):
        for _ in range(3):
            ledger.issue(principal)

        assert ledger.revoke_all(principal.id) == 3
        assert ledger.revoke_all(principal.id) == 0
