"""
Utilitaires d'authentification / Authentication utilities.
Le service ne fait que decoder les JWT emis par le service d'auth externe.
The service only decodes JWTs issued by the external auth service.
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from livetrack.config import settings

ROLES = ["owner", "dispatcher", "driver", "customer"]


def create_access_token(user_id: str, tenant_id: str, role: str) -> str:
    """Créer un access token JWT (outillage, tests) / Create a JWT access token (tooling, tests)."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {"sub": user_id, "tenant_id": tenant_id, "role": role, "type": "access", "exp": expire}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    """Décoder un token JWT / Decode a JWT token. Returns None if invalid."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
