"""Lockout state machine and the compare-and-set tracker."""

import asyncio
from datetime import timedelta

import pytest

from conftest import T0
from sessioncore.service.errors import StoreUnavailableError
from sessioncore.service.lockout import (
    LockoutPhase,
    LockoutPolicy,
    LockoutTracker,
    check_access,
    classify,
    record_failure,
    record_success,
)
from sessioncore.storage.models import Identity, LockoutState

THRESHOLD = 3
DURATION = timedelta(minutes=30)


def _fail(state, at):
    return record_failure(state, at, THRESHOLD, DURATION)


class TestStateMachine:
    def test_below_threshold_is_always_allowed(self):
        state = LockoutState()
        for minute in range(THRESHOLD - 1):
            state = _fail(state, T0 + timedelta(minutes=minute))
            assert check_access(state, T0 + timedelta(minutes=minute)).allowed
            assert classify(state, T0, THRESHOLD) is LockoutPhase.OPEN
        assert state.failed_attempts == THRESHOLD - 1
        assert state.locked_until is None

    def test_threshold_failure_locks_from_that_moment(self):
        state = LockoutState()
        times = [T0, T0 + timedelta(minutes=1), T0 + timedelta(minutes=2)]
        for at in times:
            state = _fail(state, at)
        assert state.locked_until == times[-1] + DURATION
        decision = check_access(state, times[-1] + timedelta(minutes=29))
        assert not decision.allowed
        assert decision.locked_until == times[-1] + DURATION
        assert classify(state, times[-1], THRESHOLD) is LockoutPhase.LOCKED

    def test_lock_expires_lazily(self):
        state = LockoutState(failed_attempts=THRESHOLD, locked_until=T0 + DURATION)
        later = T0 + timedelta(minutes=31)
        assert check_access(state, later).allowed
        assert classify(state, later, THRESHOLD) is LockoutPhase.EXPIRED_LOCK
        # checking never mutates
        assert state.locked_until == T0 + DURATION

    def test_lock_boundary_is_exclusive(self):
        state = LockoutState(failed_attempts=THRESHOLD, locked_until=T0 + DURATION)
        assert not check_access(state, T0 + DURATION - timedelta(microseconds=1)).allowed
        assert check_access(state, T0 + DURATION).allowed

    def test_failure_after_expired_lock_restarts_count(self):
        state = LockoutState(failed_attempts=THRESHOLD, locked_until=T0 + DURATION)
        state = _fail(state, T0 + timedelta(minutes=45))
        assert state == LockoutState(failed_attempts=1, locked_until=None)

    def test_failure_while_locked_keeps_original_deadline(self):
        state = LockoutState(failed_attempts=THRESHOLD, locked_until=T0 + DURATION)
        state = _fail(state, T0 + timedelta(minutes=5))
        assert state.failed_attempts == THRESHOLD + 1
        assert state.locked_until == T0 + DURATION

    def test_success_always_resets(self):
        locked = LockoutState(failed_attempts=7, locked_until=T0 + DURATION)
        assert record_success(locked) == LockoutState()
        assert record_success(LockoutState()) == LockoutState()

    def test_policy_rejects_nonsense(self):
        with pytest.raises(ValueError):
            LockoutPolicy(threshold=0, lock_duration=DURATION)
        with pytest.raises(ValueError):
            LockoutPolicy(threshold=3, lock_duration=timedelta(0))


class FlakyStore:
    """Credential store double whose CAS loses the first ``conflicts`` races."""

    def __init__(self, identity, conflicts):
        self.identity = identity
        self.conflicts = conflicts
        self.cas_calls = 0

    async def compare_and_set_lockout(self, identity_id, expected, new):
        self.cas_calls += 1
        if self.conflicts:
            self.conflicts -= 1
            # someone else recorded a failure in between
            self.identity.lockout = LockoutState(
                failed_attempts=self.identity.lockout.failed_attempts + 1
            )
            return False
        if self.identity.lockout != expected:
            return False
        self.identity.lockout = new
        return True

    async def get_identity(self, identity_id):
        return Identity(
            id=self.identity.id,
            email=self.identity.email,
            password_hash=self.identity.password_hash,
            lockout=self.identity.lockout,
        )

    async def reset_lockout(self, identity_id):
        self.identity.lockout = LockoutState()


def _identity():
    return Identity.new("bob@example.com", "hash")


class TestTracker:
    async def test_conflict_is_retried_on_fresh_state(self):
        identity = _identity()
        store = FlakyStore(identity, conflicts=1)
        tracker = LockoutTracker(store, LockoutPolicy(THRESHOLD, DURATION))

        state = await tracker.register_failure(_identity_copy(identity), T0)

        assert store.cas_calls == 2
        assert state.failed_attempts == 2
        assert identity.lockout.failed_attempts == 2

    async def test_exhausted_retries_surface_as_store_unavailable(self):
        identity = _identity()
        store = FlakyStore(identity, conflicts=10)
        tracker = LockoutTracker(store, LockoutPolicy(THRESHOLD, DURATION), max_retries=3)

        with pytest.raises(StoreUnavailableError):
            await tracker.register_failure(identity, T0)
        assert store.cas_calls == 3

    async def test_concurrent_failures_are_all_counted(self, memory_store):
        identity = await memory_store.create_identity(_identity())
        tracker = LockoutTracker(
            memory_store, LockoutPolicy(threshold=10, lock_duration=DURATION), max_retries=20
        )

        # every caller starts from the same stale snapshot
        await asyncio.gather(*(tracker.register_failure(identity, T0) for _ in range(5)))

        stored = await memory_store.get_identity(identity.id)
        assert stored.lockout.failed_attempts == 5

    async def test_success_resets_stored_state(self, memory_store):
        identity = Identity.new("carol@example.com", "hash")
        identity.lockout = LockoutState(failed_attempts=2)
        await memory_store.create_identity(identity)
        tracker = LockoutTracker(memory_store, LockoutPolicy(THRESHOLD, DURATION))

        assert await tracker.register_success(identity) == LockoutState()
        stored = await memory_store.get_identity(identity.id)
        assert stored.lockout == LockoutState()


def _identity_copy(identity):
    return Identity(
        id=identity.id,
        email=identity.email,
        password_hash=identity.password_hash,
        lockout=identity.lockout,
    )
