"""Password hashing, JWT issuing and the login guard for Quart routes."""
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Dict, Optional

import bcrypt
import jwt
import structlog
from quart import g, request

from docchat import config, db
from docchat.errors import ApiError

logger = structlog.get_logger()

ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def _create_token(user_id: str, token_type: str, ttl: timedelta) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "type": token_type,
        "iat": now,
        "exp": now + ttl,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def create_access_token(user_id: str) -> str:
    return _create_token(
        user_id, "access", timedelta(minutes=config.ACCESS_TOKEN_TTL_MINUTES)
    )


def create_refresh_token(user_id: str) -> str:
    return _create_token(
        user_id, "refresh", timedelta(days=config.REFRESH_TOKEN_TTL_DAYS)
    )


def decode_token(token: str, expected_type: str) -> Dict[str, Any]:
    """Verify a token and return its claims.

    Args:
        token: Encoded JWT
        expected_type: "access" or "refresh"

    Raises:
        ApiError: 401 if the token is invalid, expired or of the wrong type
    """
    try:
        claims = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            options={"require": ["sub", "exp", "iat"]},
        )
    except jwt.ExpiredSignatureError:
        raise ApiError(401, "Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_decode_failed", error=str(e))
        raise ApiError(401, "Invalid token")

    if claims.get("type") != expected_type:
        raise ApiError(401, "Invalid token type")
    return claims


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """User record without the password hash or refresh token."""
    return {
        key: value
        for key, value in user.items()
        if key not in ("password_hash", "refresh_token")
    }


def _token_from_request() -> Optional[str]:
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if token:
        return token

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


def login_required(fn):
    """Decorator that loads the authenticated user into g.user."""

    @wraps(fn)
    async def wrapper(*args, **kwargs):
        token = _token_from_request()
        if not token:
            raise ApiError(401, "Unauthorized request")

        claims = decode_token(token, "access")
        user = db.get_user_by_id(claims["sub"])
        if not user:
            raise ApiError(401, "Invalid access token")

        g.user = public_user(user)
        return await fn(*args, **kwargs)

    return wrapper
