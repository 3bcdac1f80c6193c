from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from sessioncore.config import Settings
from sessioncore.logging import get_logger
from sessioncore.service.errors import (
    AccountLockedError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
)
from sessioncore.service.guard import guarded
from sessioncore.service.lockout import LockoutPolicy, LockoutTracker
from sessioncore.service.passwords import PasswordHasher
from sessioncore.service.revocation import RevocationLedger, RevocationStore
from sessioncore.service.tokens import TokenIssuer, TokenKind, TokenPair
from sessioncore.storage.errors import ConstraintViolation
from sessioncore.storage.models import Identity, LockoutState, PublicIdentity, Role, as_utc

logger = get_logger(__name__)


class CredentialStore(Protocol):
    async def create_identity(self, identity: Identity) -> Identity: ...

    async def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    async def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    async def compare_and_set_lockout(
        self, identity_id: str, expected: LockoutState, new: LockoutState
    ) -> bool: ...

    async def reset_lockout(self, identity_id: str) -> None: ...

    async def record_login(self, identity_id: str, at: datetime) -> None: ...

    async def update_password_hash(self, identity_id: str, password_hash: str) -> None: ...

    async def set_active(self, identity_id: str, is_active: bool) -> bool: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    identity: PublicIdentity


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class AuthContext:
    subject_id: str
    role: Role
    expires_at: datetime


def _role_allows(role: Role, required: Role) -> bool:
    if role == required:
        return True
    return role == Role.ADMIN and required == Role.USER


class SessionService:
    """Login, refresh and logout over injected credential and revocation stores."""

    def __init__(
        self,
        credentials: CredentialStore,
        revocations: RevocationStore,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.credentials = credentials
        self.settings = settings
        self.timeout = settings.store_timeout_seconds
        self.rotate_refresh_tokens = settings.rotate_refresh_tokens
        self.issuer = issuer or TokenIssuer.from_settings(settings)
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.lockout = LockoutTracker(
            credentials,
            LockoutPolicy.from_settings(settings),
            max_retries=settings.lockout_update_retries,
            timeout=self.timeout,
        )
        self.ledger = RevocationLedger(
            revocations, refresh_ttl=settings.refresh_token_ttl, timeout=self.timeout
        )
        self.logger = logger

    def _now(self, now: Optional[datetime] = None) -> datetime:
        """Aware UTC ``now``; naive values supplied by callers are read as UTC."""

        return as_utc(now) if now is not None else datetime.now(timezone.utc)

    async def register(
        self, email: str, password: str, *, role: Role = Role.USER
    ) -> PublicIdentity:
        identity = Identity.new(email, self.hasher.hash(password), role=role)
        try:
            created = await guarded(
                self.credentials.create_identity(identity),
                op="create_identity",
                timeout=self.timeout,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered") from exc
        self.logger.info("identity_registered", identity_id=created.id, role=created.role.value)
        return created.public()

    async def login(
        self, email: str, password: str, now: Optional[datetime] = None
    ) -> LoginResult:
        now = self._now(now)
        identity = await guarded(
            self.credentials.get_identity_by_email(email.strip().lower()),
            op="get_identity_by_email",
            timeout=self.timeout,
        )
        if identity is None or not identity.is_active:
            self.hasher.burn(password)
            self.logger.info("login_failed", reason="unknown_identity")
            raise InvalidCredentialsError()

        decision = self.lockout.check(identity, now)
        if not decision.allowed:
            self.logger.info("login_rejected_locked", identity_id=identity.id)
            raise AccountLockedError(decision.locked_until)

        if not self.hasher.verify(identity.password_hash, password):
            state = await self.lockout.register_failure(identity, now)
            if state.locked_until is not None and now < state.locked_until:
                raise AccountLockedError(state.locked_until)
            self.logger.info("login_failed", reason="bad_password", identity_id=identity.id)
            raise InvalidCredentialsError()

        await self.lockout.register_success(identity)
        await guarded(
            self.credentials.record_login(identity.id, now),
            op="record_login",
            timeout=self.timeout,
        )
        if self.hasher.needs_rehash(identity.password_hash):
            await guarded(
                self.credentials.update_password_hash(identity.id, self.hasher.hash(password)),
                op="update_password_hash",
                timeout=self.timeout,
            )
            self.logger.info("password_rehashed", identity_id=identity.id)

        tokens = self.issuer.issue(identity.id, identity.role, now)
        self.logger.info("login_succeeded", identity_id=identity.id)
        return LoginResult(tokens=tokens, identity=identity.public())

    async def refresh(
        self, refresh_token: str, now: Optional[datetime] = None
    ) -> RefreshResult:
        now = self._now(now)
        claims = self.issuer.verify(refresh_token, TokenKind.REFRESH, now)
        if await self.ledger.is_revoked(claims, now):
            self.logger.warning("refresh_rejected", reason="revoked", subject_id=claims.subject_id)
            raise InvalidTokenError()

        identity = await guarded(
            self.credentials.get_identity(claims.subject_id),
            op="get_identity",
            timeout=self.timeout,
        )
        if identity is None or not identity.is_active:
            self.logger.warning(
                "refresh_rejected", reason="identity_unavailable", subject_id=claims.subject_id
            )
            raise InvalidTokenError()

        if self.rotate_refresh_tokens:
            # Consuming the token is the last store write; a failure before it
            # leaves the token usable for a retry. The insert is atomic, so only
            # one concurrent caller wins.
            if not await self.ledger.revoke(claims, now):
                self.logger.warning(
                    "refresh_rejected", reason="replayed", subject_id=claims.subject_id
                )
                raise InvalidTokenError()

        if not self.rotate_refresh_tokens:
            access_token, access_exp = self.issuer.issue_access(identity.id, identity.role, now)
            return RefreshResult(access_token=access_token, access_expires_at=access_exp)

        tokens = self.issuer.issue(identity.id, identity.role, now)
        self.logger.info("refresh_succeeded", subject_id=identity.id)
        return RefreshResult(
            access_token=tokens.access_token,
            access_expires_at=tokens.access_expires_at,
            refresh_token=tokens.refresh_token,
            refresh_expires_at=tokens.refresh_expires_at,
        )

    async def logout(self, refresh_token: str, now: Optional[datetime] = None) -> None:
        """Revoke ``refresh_token``; succeeds for tokens that are already unusable."""
        now = self._now(now)
        try:
            claims = self.issuer.verify(refresh_token, TokenKind.REFRESH, now)
        except InvalidTokenError:
            self.logger.info("logout_token_ignored")
            return
        # Finish the write even if the caller goes away mid-request.
        await asyncio.shield(self.ledger.revoke(claims, now))
        self.logger.info("logout_succeeded", subject_id=claims.subject_id)

    async def logout_all(self, subject_id: str, now: Optional[datetime] = None) -> None:
        now = self._now(now)
        await asyncio.shield(self.ledger.revoke_subject(subject_id, now))

    async def set_active(
        self, identity_id: str, is_active: bool, now: Optional[datetime] = None
    ) -> bool:
        """Enable or disable an identity; disabling also ends all of its sessions."""
        now = self._now(now)
        updated = await guarded(
            self.credentials.set_active(identity_id, is_active),
            op="set_active",
            timeout=self.timeout,
        )
        if not updated:
            return False
        if not is_active:
            await asyncio.shield(self.ledger.revoke_subject(identity_id, now))
        self.logger.info("identity_active_changed", identity_id=identity_id, is_active=is_active)
        return True

    async def authenticate(
        self,
        access_token: str,
        *,
        required_role: Optional[Role] = None,
        now: Optional[datetime] = None,
    ) -> AuthContext:
        now = self._now(now)
        claims = self.issuer.verify(access_token, TokenKind.ACCESS, now)
        if required_role is not None and not _role_allows(claims.role, Role(required_role)):
            self.logger.info(
                "authorization_denied",
                subject_id=claims.subject_id,
                role=claims.role.value,
                required_role=Role(required_role).value,
            )
            raise ForbiddenError("Insufficient permissions")
        return AuthContext(
            subject_id=claims.subject_id, role=claims.role, expires_at=claims.expires_at
        )

    async def purge_expired_revocations(self, now: Optional[datetime] = None) -> int:
        return await self.ledger.purge_expired(self._now(now))
