"""Tests for password hashing and JWT handling."""
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from docchat import config
from docchat.auth import (
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_password,
    public_user,
    verify_password,
)
from docchat.errors import ApiError


def test_password_hash_round_trip():
    hashed = hash_password("Str0ng!pass")
    assert hashed != "Str0ng!pass"
    assert verify_password("Str0ng!pass", hashed)
    assert not verify_password("wrong", hashed)


def test_malformed_hash_does_not_verify():
    assert not verify_password("anything", "not-a-bcrypt-hash")


def test_access_token_claims():
    claims = decode_token(create_access_token("user-1"), "access")
    assert claims["sub"] == "user-1"
    assert claims["type"] == "access"
    assert claims["exp"] > claims["iat"]


def test_refresh_token_rejected_as_access_token():
    with pytest.raises(ApiError) as exc:
        decode_token(create_refresh_token("user-1"), "access")
    assert exc.value.status_code == 401


def test_tokens_are_unique():
    assert create_refresh_token("user-1") != create_refresh_token("user-1")


def test_expired_token_rejected():
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    token = jwt.encode(
        {"sub": "user-1", "type": "access", "iat": past, "exp": past + timedelta(minutes=1)},
        config.JWT_SECRET,
        algorithm=config.JWT_ALGORITHM,
    )
    with pytest.raises(ApiError, match="expired"):
        decode_token(token, "access")


def test_token_signed_with_other_secret_rejected():
    token = jwt.encode(
        {"sub": "user-1", "type": "access", "iat": datetime.now(timezone.utc),
         "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "some-other-secret-that-is-long-enough",
        algorithm="HS256",
    )
    with pytest.raises(ApiError, match="Invalid token"):
        decode_token(token, "access")


def test_public_user_hides_secrets():
    user = {
        "id": "u1",
        "username": "jane",
        "email": "jane@example.com",
        "password_hash": "hash",
        "refresh_token": "token",
    }
    assert public_user(user) == {"id": "u1", "username": "jane", "email": "jane@example.com"}
