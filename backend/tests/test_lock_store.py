"""
Lock Store Tests

Mutual exclusion, lease reclaim and release fencing of the table lock.
"""
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from article_sync.extensions import db
from article_sync.models import DistributedLock
from article_sync.services.lock_store import LockStore
from article_sync.utils.timeutil import utcnow


class TestAcquire:
    """Tests for LockStore.acquire."""

    def test_acquire_returns_token(self, app, clock):
        store = LockStore(clock=clock)

        token = store.acquire('sync:a', ttl=60)

        assert token
        assert store.is_locked('sync:a')
        assert store.is_held_by('sync:a', token)

    def test_second_acquire_fails_while_held(self, app, clock):
        """At most one of two acquires on an unexpired key succeeds."""
        first = LockStore(clock=clock)
        second = LockStore(clock=clock)

        token = first.acquire('sync:a', ttl=60)
        assert token is not None
        assert second.acquire('sync:a', ttl=60) is None
        assert DistributedLock.query.filter_by(key='sync:a').count() == 1

    def test_keys_are_independent(self, app, clock):
        store = LockStore(clock=clock)

        assert store.acquire('sync:a', ttl=60)
        assert store.acquire('sync:b', ttl=60)

    def test_each_acquire_mints_new_token(self, app, clock):
        store = LockStore(clock=clock)

        token1 = store.acquire('sync:a', ttl=60)
        store.release('sync:a', token1)
        token2 = store.acquire('sync:a', ttl=60)

        assert token1 != token2

    def test_expired_lease_is_reclaimed_without_release(self, app, clock):
        store = LockStore(clock=clock)
        old_token = store.acquire('sync:a', ttl=60)

        clock.advance(61)
        assert not store.is_locked('sync:a')

        new_token = store.acquire('sync:a', ttl=60)
        assert new_token is not None
        assert new_token != old_token
        assert store.is_held_by('sync:a', new_token)

    def test_lease_boundary_counts_as_expired(self, app, clock):
        store = LockStore(clock=clock)
        store.acquire('sync:a', ttl=60)

        clock.advance(60)

        assert store.acquire('sync:a', ttl=60) is not None

    def test_racing_reclaimers_only_one_wins(self, app, clock):
        """The conditional update lets exactly one reclaimer take an expired row."""
        holder = LockStore(clock=clock)
        holder.acquire('sync:a', ttl=10)
        clock.advance(30)

        first = LockStore(clock=clock)
        second = LockStore(clock=clock)
        # Leave the expired row in place so both go down the reclaim path
        first.sweep_expired = lambda: 0
        second.sweep_expired = lambda: 0

        winner = first.acquire('sync:a', ttl=60)
        loser = second.acquire('sync:a', ttl=60)

        assert winner is not None
        assert loser is None
        assert first.is_held_by('sync:a', winner)

    def test_lock_table_failure_propagates(self, app, clock):
        store = LockStore(clock=clock)

        with patch.object(db.session, 'commit', side_effect=OperationalError('INSERT', {}, Exception('db down'))):
            with pytest.raises(OperationalError):
                store.acquire('sync:a', ttl=60)

    def test_insert_failure_rolls_back_session(self, app, clock):
        """A non-unique database error on insert leaves the session usable."""
        store = LockStore(clock=clock)
        original_commit = db.session.commit
        calls = []

        def failing_insert_commit():
            calls.append(1)
            # The first commit belongs to the expired-lock sweep
            if len(calls) == 2:
                raise OperationalError('INSERT', {}, Exception('db down'))
            return original_commit()

        with patch.object(db.session, 'commit', side_effect=failing_insert_commit):
            with patch.object(db.session, 'rollback', wraps=db.session.rollback) as rollback:
                with pytest.raises(OperationalError):
                    store.acquire('sync:a', ttl=60)

        assert rollback.called
        assert DistributedLock.query.count() == 0
        assert store.acquire('sync:a', ttl=60) is not None


class TestRelease:
    """Tests for LockStore.release and fencing."""

    def test_release_with_token(self, app, clock):
        store = LockStore(clock=clock)
        token = store.acquire('sync:a', ttl=60)

        assert store.release('sync:a', token) is True
        assert not store.is_locked('sync:a')

    def test_release_with_wrong_token_is_noop(self, app, clock):
        store = LockStore(clock=clock)
        token = store.acquire('sync:a', ttl=60)

        assert store.release('sync:a', 'not-the-token') is False
        assert store.is_held_by('sync:a', token)

    def test_stale_holder_cannot_release_new_holder(self, app, clock):
        store = LockStore(clock=clock)
        stale_token = store.acquire('sync:a', ttl=60)
        clock.advance(120)
        fresh_token = store.acquire('sync:a', ttl=60)

        store.release('sync:a', stale_token)

        assert store.is_held_by('sync:a', fresh_token)

    def test_release_unknown_key(self, app, clock):
        assert LockStore(clock=clock).release('missing', 'token') is False

    def test_release_errors_are_swallowed(self, app, clock):
        store = LockStore(clock=clock)
        token = store.acquire('sync:a', ttl=60)

        with patch.object(db.session, 'commit', side_effect=OperationalError('DELETE', {}, Exception('db down'))):
            assert store.release('sync:a', token) is False


class TestExtendAndForce:
    """Tests for holder-only extend and operator force release."""

    def test_holder_can_extend(self, app, clock):
        store = LockStore(clock=clock)
        token = store.acquire('sync:a', ttl=60)

        clock.advance(50)
        assert store.extend('sync:a', token, ttl=60) is True

        clock.advance(50)
        assert store.is_held_by('sync:a', token)

    def test_stale_token_cannot_extend(self, app, clock):
        store = LockStore(clock=clock)
        store.acquire('sync:a', ttl=60)

        assert store.extend('sync:a', 'other', ttl=60) is False

    def test_expired_lease_cannot_be_extended(self, app, clock):
        store = LockStore(clock=clock)
        token = store.acquire('sync:a', ttl=60)
        clock.advance(61)

        assert store.extend('sync:a', token, ttl=60) is False

    def test_force_release_ignores_token(self, app, clock):
        store = LockStore(clock=clock)
        store.acquire('sync:a', ttl=60)

        assert store.force_release('sync:a') is True
        assert not store.is_locked('sync:a')
        assert store.force_release('sync:a') is False


class TestSweepAndList:
    """Tests for sweep_expired and reporting."""

    def test_sweep_removes_only_expired(self, app, clock):
        store = LockStore(clock=clock)
        store.acquire('short', ttl=10)
        store.acquire('long', ttl=600)

        clock.advance(60)

        assert store.sweep_expired() == 1
        assert store.sweep_expired() == 0
        assert store.get_lock('short') is None
        assert store.get_lock('long') is not None

    def test_list_locks_reports_active_flag(self, app, clock):
        store = LockStore(clock=clock)
        store.acquire('a', ttl=10)
        store.acquire('b', ttl=600)
        # Keep the expired row around for the report
        store.sweep_expired = lambda: 0
        clock.advance(60)

        locks = {lock['key']: lock for lock in store.list_locks()}

        assert locks['a']['active'] is False
        assert locks['a']['remaining_seconds'] == 0
        assert locks['b']['active'] is True
        assert locks['b']['remaining_seconds'] == 540


@pytest.fixture
def file_sessions(tmp_path):
    """Session factory on a file-backed SQLite database shared by threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'locks.db'}",
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    DistributedLock.__table__.create(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


def acquire_concurrently(session_factory, key, workers=8, skip_sweep=False):
    """Run ``workers`` acquires released together by a barrier; each has its own session."""
    barrier = threading.Barrier(workers)
    tokens = []
    errors = []
    guard = threading.Lock()

    def worker():
        session = session_factory()
        store = LockStore(session=session)
        if skip_sweep:
            store.sweep_expired = lambda: 0
        try:
            barrier.wait(timeout=10)
            token = store.acquire(key, ttl=60)
            with guard:
                tokens.append(token)
        except Exception as e:
            with guard:
                errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    return tokens, errors


class TestConcurrentAcquire:
    """Threads with separate sessions race on one key."""

    def test_only_one_concurrent_acquire_succeeds(self, file_sessions):
        tokens, errors = acquire_concurrently(file_sessions, 'sync:race')

        assert errors == []
        assert len(tokens) == 8
        winners = [token for token in tokens if token is not None]
        assert len(winners) == 1

        session = file_sessions()
        try:
            row = session.query(DistributedLock).filter_by(key='sync:race').one()
            assert row.token == winners[0]
        finally:
            session.close()

    def test_only_one_concurrent_reclaim_of_expired_lease(self, file_sessions):
        session = file_sessions()
        now = utcnow()
        session.add(DistributedLock(key='sync:race', token='expired-holder',
                                    expires_at=now - timedelta(seconds=60), created_at=now - timedelta(seconds=120)))
        session.commit()
        session.close()

        # Every worker finds the expired row and goes through the conditional update
        tokens, errors = acquire_concurrently(file_sessions, 'sync:race', skip_sweep=True)

        assert errors == []
        winners = [token for token in tokens if token is not None]
        assert len(winners) == 1

        session = file_sessions()
        try:
            row = session.query(DistributedLock).filter_by(key='sync:race').one()
            assert row.token == winners[0]
            assert row.expires_at > now
        finally:
            session.close()
