from datetime import timedelta

import jwt
import pytest

from conftest import T0
from sessioncore.service.errors import InvalidTokenError
from sessioncore.service.tokens import TokenIssuer, TokenKind
from sessioncore.storage.models import Role

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def issuer():
    return TokenIssuer(
        signing_key=SECRET,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=1),
    )


def test_issue_produces_distinct_pair(issuer):
    pair = issuer.issue("user-1", Role.USER, T0)

    assert pair.access_token != pair.refresh_token
    assert pair.access_expires_at == T0 + timedelta(minutes=15)
    assert pair.refresh_expires_at == T0 + timedelta(days=1)
    assert pair.as_dict()["token_type"] == "bearer"


def test_verify_round_trips_claims(issuer):
    pair = issuer.issue("user-1", Role.ADMIN, T0)

    claims = issuer.verify(pair.refresh_token, TokenKind.REFRESH, T0 + timedelta(hours=1))

    assert claims.subject_id == "user-1"
    assert claims.role is Role.ADMIN
    assert claims.kind is TokenKind.REFRESH
    assert claims.issued_at == T0
    assert claims.expires_at == pair.refresh_expires_at


def test_token_ids_are_unique(issuer):
    first = issuer.verify(issuer.issue("u", Role.USER, T0).refresh_token, TokenKind.REFRESH, T0)
    second = issuer.verify(issuer.issue("u", Role.USER, T0).refresh_token, TokenKind.REFRESH, T0)
    assert first.token_id != second.token_id


def test_kinds_are_not_interchangeable(issuer):
    pair = issuer.issue("user-1", Role.USER, T0)

    with pytest.raises(InvalidTokenError):
        issuer.verify(pair.access_token, TokenKind.REFRESH, T0)
    with pytest.raises(InvalidTokenError):
        issuer.verify(pair.refresh_token, TokenKind.ACCESS, T0)


def test_expiry_uses_supplied_clock(issuer):
    pair = issuer.issue("user-1", Role.USER, T0)

    issuer.verify(pair.access_token, TokenKind.ACCESS, T0 + timedelta(minutes=14, seconds=59))
    with pytest.raises(InvalidTokenError):
        issuer.verify(pair.access_token, TokenKind.ACCESS, T0 + timedelta(minutes=15))


def test_tampered_and_foreign_tokens_rejected(issuer):
    pair = issuer.issue("user-1", Role.USER, T0)
    other = TokenIssuer(signing_key="another-secret-key-that-is-long-enough-123")

    with pytest.raises(InvalidTokenError):
        issuer.verify(pair.access_token[:-2] + "xx", TokenKind.ACCESS, T0)
    with pytest.raises(InvalidTokenError):
        other.verify(pair.access_token, TokenKind.ACCESS, T0)
    with pytest.raises(InvalidTokenError):
        issuer.verify("not-a-jwt", TokenKind.ACCESS, T0)


def test_wrong_audience_rejected(issuer):
    foreign = TokenIssuer(signing_key=SECRET, audience="someone-else")
    token = foreign.issue("user-1", Role.USER, T0).access_token

    with pytest.raises(InvalidTokenError):
        issuer.verify(token, TokenKind.ACCESS, T0)


def test_missing_claims_rejected(issuer):
    token = jwt.encode(
        {"sub": "user-1", "token_type": "access", "iss": "sessioncore", "aud": "sessioncore-clients"},
        SECRET,
        algorithm="HS256",
    )
    with pytest.raises(InvalidTokenError):
        issuer.verify(token, TokenKind.ACCESS, T0)


def test_unknown_algorithm_header_rejected(issuer):
    pair = issuer.issue("user-1", Role.USER, T0)
    payload = jwt.decode(pair.access_token, options={"verify_signature": False})
    forged = jwt.encode(payload, SECRET, algorithm="HS512")

    with pytest.raises(InvalidTokenError):
        issuer.verify(forged, TokenKind.ACCESS, T0)


def test_asymmetric_keys_sign_and_verify():
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import ec

    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    signer = TokenIssuer(signing_key=private_pem, verifying_key=public_pem, algorithm="ES256")

    token = signer.issue("user-1", Role.USER, T0).access_token

    assert signer.verify(token, TokenKind.ACCESS, T0).subject_id == "user-1"
    with pytest.raises(InvalidTokenError):
        TokenIssuer(signing_key=SECRET).verify(token, TokenKind.ACCESS, T0)
