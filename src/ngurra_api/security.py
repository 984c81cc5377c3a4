"""Bearer token helpers.

decode_access_token raises jose's JWTError (ExpiredSignatureError included);
routes let it propagate and the global error handler answers 401
"Invalid or expired token".
"""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt
from starlette.requests import HTTPConnection

from ngurra_api.config import Settings


def create_access_token(subject: str, settings: Settings, expires_minutes: int | None = None) -> str:
    minutes = settings.jwt_expires_minutes if expires_minutes is None else expires_minutes
    expire = datetime.now(UTC) + timedelta(minutes=minutes)
    to_encode = {"sub": subject, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> str:
    """Return the token subject. Raises JWTError if the token is bad or expired."""
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    subject = payload.get("sub")
    if not subject:
        raise JWTError("Token has no subject")
    return str(subject)


def bearer_token(connection: HTTPConnection) -> str | None:
    header = connection.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def peek_user_id(connection: HTTPConnection, settings: Settings) -> str | None:
    """Subject of a valid bearer token, or None. For tiering, never for access control."""
    token = bearer_token(connection)
    if token is None:
        return None
    try:
        return decode_access_token(token, settings)
    except JWTError:
        return None
