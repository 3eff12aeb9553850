from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import jwt
from jwt import InvalidTokenError

DEFAULT_TOKEN_LIFETIME = timedelta(minutes=30)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Credentials of an `Authorization: Bearer <token>` header, or None for any other shape."""
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    credentials = credentials.strip()
    if scheme.lower() != "bearer" or not credentials:
        return None
    return credentials


def create_access_token(
    *,
    actor_id: str,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: Optional[timedelta] = None,
) -> str:
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": actor_id,
        "iat": issued_at,
        "exp": issued_at + (expires_delta or DEFAULT_TOKEN_LIFETIME),
    }
    return jwt.encode(claims, secret, algorithm=algorithm)


def decode_actor_id(token: str, *, secret: str, algorithms: Sequence[str]) -> str:
    """Actor identity carried in `sub`. The token identifies the caller and grants nothing."""
    try:
        claims = jwt.decode(token, secret, algorithms=list(algorithms))
    except InvalidTokenError as exc:
        raise ValueError("invalid token") from exc

    actor_id = claims.get("sub")
    if not isinstance(actor_id, str) or not actor_id.strip():
        raise ValueError("token has no actor")
    return actor_id
