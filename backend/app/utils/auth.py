from datetime import datetime, timedelta, timezone
from typing import Sequence

import jwt
from jwt import InvalidTokenError

DEFAULT_TOKEN_TTL = timedelta(hours=8)


def create_access_token(
    *,
    user_id: int,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    """Issue a staff access token; `sub` carries the user id."""
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or DEFAULT_TOKEN_TTL)
    payload = {"sub": str(user_id), "iat": now, "exp": exp}
    return jwt.encode(payload, secret, algorithm=algorithm)


def bearer_token(authorization: str | None) -> str:
    """Extract the token from an `Authorization: Bearer <token>` header value."""
    if not authorization:
        raise ValueError("authorization header missing")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise ValueError("bearer token required")
    return token.strip()


def decode_access_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
) -> int:
    try:
        payload = jwt.decode(token, secret, algorithms=list(algorithms), options={"require": ["exp", "sub"]})
    except InvalidTokenError as exc:  # includes ExpiredSignatureError
        raise ValueError("invalid token") from exc

    try:
        return int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise ValueError("token sub is not an integer") from exc
