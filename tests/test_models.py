"""Unit tests for auth/models.py -- aggregate rules on the User record.

Covers:
- is_locked() is computed from lock_until against the current time
- add_session() keeps at most cap sessions, evicting the oldest
- push_password_history() keeps at most cap entries, evicting the oldest
- VerificationToken.is_expired()
"""

import time

from auth.models import (
    PasswordHistoryEntry,
    Session,
    User,
    VerificationToken,
    add_session,
    is_locked,
    push_password_history,
)


class TestIsLocked:
    def test_no_lock(self):
        assert is_locked(None) is False

    def test_future_lock(self):
        assert is_locked(time.time() + 60) is True

    def test_past_lock(self):
        assert is_locked(time.time() - 60) is False

    def test_explicit_now(self):
        assert is_locked(1000.0, now=999.0) is True
        assert is_locked(1000.0, now=1001.0) is False

    def test_user_property_tracks_lock_until(self):
        user = User(username="alice", email="a@x.com", lock_until=time.time() + 60)
        assert user.is_locked is True
        user.lock_until = time.time() - 1
        assert user.is_locked is False


class TestAddSession:
    def test_appends_newest_last(self):
        sessions = add_session([Session(token="a")], Session(token="b"))
        assert [s.token for s in sessions] == ["a", "b"]

    def test_evicts_oldest_beyond_cap(self):
        sessions: list[Session] = []
        for i in range(6):
            sessions = add_session(sessions, Session(token=f"t{i}"), cap=5)
        assert len(sessions) == 5
        assert [s.token for s in sessions] == ["t1", "t2", "t3", "t4", "t5"]

    def test_does_not_mutate_input(self):
        original = [Session(token="a")]
        add_session(original, Session(token="b"))
        assert len(original) == 1


class TestPasswordHistory:
    def test_capped_at_five(self):
        history: list[PasswordHistoryEntry] = []
        for i in range(7):
            history = push_password_history(history, PasswordHistoryEntry(hashed_password=f"h{i}"))
        assert [h.hashed_password for h in history] == ["h2", "h3", "h4", "h5", "h6"]


class TestVerificationTokenExpiry:
    def test_expired_and_live(self):
        token = VerificationToken(user_id=1, token="x", type="email", expires_at=1000.0)
        assert token.is_expired(now=1000.5) is True
        assert token.is_expired(now=999.0) is False
