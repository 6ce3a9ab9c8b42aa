from jose import JWTError, jwt

from app.config import settings


def decode_token(token: str) -> dict | None:
    """Decode and validate a JWT issued by the auth service. Returns payload or None if invalid."""
    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
        return payload
    except JWTError:
        return None
