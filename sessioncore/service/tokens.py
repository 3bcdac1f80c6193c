"""Signed access/refresh token minting and verification.

Both token kinds are JWTs signed with the same key but tagged with a
``token_type`` claim; verification always states which kind it expects, so a
refresh token is never accepted as an access token and vice versa.
Verification is stateless. Revocation is layered on top by the ledger.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import jwt

from sessioncore.config import ASYMMETRIC_ALGORITHMS, Settings
from sessioncore.logging import get_logger
from sessioncore.service.errors import InvalidTokenError
from sessioncore.storage.models import Role, as_utc

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ["sub", "role", "token_type", "jti", "iat", "exp", "iss", "aud"]


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: Role
    kind: TokenKind
    token_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
        }


def _to_timestamp(moment: datetime) -> int:
    return int(as_utc(moment).timestamp())


class TokenIssuer:
    def __init__(
        self,
        *,
        signing_key: str,
        verifying_key: Optional[str] = None,
        algorithm: str = "HS256",
        issuer: str = "sessioncore",
        audience: str = "sessioncore-clients",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.signing_key = signing_key
        self.verifying_key = verifying_key or signing_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        if settings.jwt_algorithm in ASYMMETRIC_ALGORITHMS:
            signing_key, verifying_key = settings.jwt_private_key, settings.jwt_public_key
        else:
            signing_key = verifying_key = settings.jwt_secret
        return cls(
            signing_key=signing_key,
            verifying_key=verifying_key,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
        )

    def _ttl(self, kind: TokenKind) -> timedelta:
        return self.access_ttl if kind is TokenKind.ACCESS else self.refresh_ttl

    def _mint(
        self, subject_id: str, role: Role, kind: TokenKind, now: datetime
    ) -> tuple[str, datetime]:
        issued_at = _to_timestamp(now)
        expires_at = issued_at + int(self._ttl(kind).total_seconds())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "role": Role(role).value,
            "token_type": kind.value,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self.signing_key, algorithm=self.algorithm)
        return token, datetime.fromtimestamp(expires_at, tz=timezone.utc)

    def issue(self, subject_id: str, role: Role, now: datetime) -> TokenPair:
        access_token, access_exp = self._mint(subject_id, role, TokenKind.ACCESS, now)
        refresh_token, refresh_exp = self._mint(subject_id, role, TokenKind.REFRESH, now)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def issue_access(self, subject_id: str, role: Role, now: datetime) -> tuple[str, datetime]:
        return self._mint(subject_id, role, TokenKind.ACCESS, now)

    def verify(self, token: str, expected_kind: TokenKind, now: datetime) -> TokenClaims:
        """Check signature, issuer, audience, purpose and ``now < exp``.

        Expiry is evaluated against the supplied ``now`` rather than the
        library's wall clock, with no skew leeway.

        Raises:
            InvalidTokenError: for every kind of rejection, without detail.
        """
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self.verifying_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": _REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.PyJWTError as exc:
            logger.info("token_rejected", reason=type(exc).__name__)
            raise InvalidTokenError() from exc

        if payload.get("token_type") != expected_kind.value:
            logger.warning(
                "token_kind_mismatch",
                expected=expected_kind.value,
                presented=str(payload.get("token_type")),
            )
            raise InvalidTokenError()
        try:
            exp = int(payload["exp"])
            iat = int(payload["iat"])
            role = Role(payload["role"])
        except (TypeError, ValueError) as exc:
            logger.info("token_rejected", reason="malformed_claims")
            raise InvalidTokenError() from exc
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        if as_utc(now) >= expires_at:
            raise InvalidTokenError()
        return TokenClaims(
            subject_id=str(payload["sub"]),
            role=role,
            kind=expected_kind,
            token_id=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=expires_at,
        )
