"""Brute-force lockout bookkeeping.

The lock is lazy: nothing ever sweeps expired locks. Every check compares the
stored ``locked_until`` with the clock, and the stale state is cleared by the
next recorded success or failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sessioncore.config import Settings
from sessioncore.logging import get_logger
from sessioncore.service.errors import StoreUnavailableError
from sessioncore.service.guard import guarded
from sessioncore.storage.models import Identity, LockoutState, as_utc

if TYPE_CHECKING:
    from sessioncore.service.sessions import CredentialStore

logger = get_logger(__name__)


class LockoutPhase(str, Enum):
    OPEN = "open"
    LOCKED = "locked"
    EXPIRED_LOCK = "expired_lock"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    locked_until: Optional[datetime] = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def locked(cls, until: datetime) -> "AccessDecision":
        return cls(allowed=False, locked_until=until)


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int
    lock_duration: timedelta

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        if self.lock_duration <= timedelta(0):
            raise ValueError("lock duration must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(threshold=settings.lock_threshold, lock_duration=settings.lock_duration)


def _lock_active(state: LockoutState, now: datetime) -> bool:
    return state.locked_until is not None and now < state.locked_until


def classify(state: LockoutState, now: datetime, threshold: int) -> LockoutPhase:
    if _lock_active(state, now):
        return LockoutPhase.LOCKED
    if state.locked_until is not None or state.failed_attempts >= threshold:
        return LockoutPhase.EXPIRED_LOCK
    return LockoutPhase.OPEN


def check_access(state: LockoutState, now: datetime) -> AccessDecision:
    """Return ``locked`` only while the stored deadline is still ahead of ``now``."""
    if _lock_active(state, now):
        return AccessDecision.locked(state.locked_until)
    return AccessDecision.allow()


def record_failure(
    state: LockoutState, now: datetime, threshold: int, lock_duration: timedelta
) -> LockoutState:
    """Count one failed attempt and start a lock when the threshold is reached.

    A lock that has already run out is cleared first, so the counter restarts
    at one instead of re-locking on the very next mistake.
    """
    if state.locked_until is not None and not _lock_active(state, now):
        state = LockoutState()
    attempts = state.failed_attempts + 1
    locked_until = state.locked_until
    if attempts >= threshold and locked_until is None:
        locked_until = now + lock_duration
    return LockoutState(failed_attempts=attempts, locked_until=locked_until)


def record_success(state: Optional[LockoutState] = None) -> LockoutState:
    return LockoutState()


class LockoutTracker:
    """Apply lockout transitions to the credential store without lost updates.

    The store offers compare-and-set on the whole lockout state; on conflict
    the identity is re-read and the transition recomputed from the fresh
    state, so two concurrent failures always count twice.
    """

    def __init__(
        self,
        store: "CredentialStore",
        policy: LockoutPolicy,
        *,
        max_retries: int = 5,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.policy = policy
        self.max_retries = max_retries
        self.timeout = timeout

    def check(self, identity: Identity, now: datetime) -> AccessDecision:
        return check_access(identity.lockout, as_utc(now))

    async def register_failure(self, identity: Identity, now: datetime) -> LockoutState:
        now = as_utc(now)
        current = identity.lockout
        for attempt in range(self.max_retries):
            updated = record_failure(
                current, now, self.policy.threshold, self.policy.lock_duration
            )
            swapped = await guarded(
                self.store.compare_and_set_lockout(identity.id, current, updated),
                op="compare_and_set_lockout",
                timeout=self.timeout,
            )
            if swapped:
                if updated.locked_until is not None and current.locked_until != updated.locked_until:
                    logger.warning(
                        "account_locked",
                        identity_id=identity.id,
                        locked_until=updated.locked_until.isoformat(),
                    )
                return updated
            fresh = await guarded(
                self.store.get_identity(identity.id), op="get_identity", timeout=self.timeout
            )
            if fresh is None:
                # deleted concurrently
                return updated
            current = fresh.lockout
            logger.debug("lockout_update_conflict", identity_id=identity.id, attempt=attempt + 1)
        logger.error("lockout_update_exhausted", identity_id=identity.id, retries=self.max_retries)
        raise StoreUnavailableError("Could not record failed login attempt; retry the login")

    async def register_success(self, identity: Identity) -> LockoutState:
        await guarded(
            self.store.reset_lockout(identity.id), op="reset_lockout", timeout=self.timeout
        )
        return record_success(identity.lockout)
