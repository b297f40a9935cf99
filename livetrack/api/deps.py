"""
Dependances d'authentification et de contexte / Authentication and context dependencies.
Injectees dans les routes via Depends().

Le contexte tenant est explicite : aucun global de session.
The tenant context is explicit: no session globals.
"""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from livetrack.services.delivery_providers import DeliveryGateway
from livetrack.services.location_store import LocationStore
from livetrack.services.publisher import TrackingRegistry
from livetrack.utils.auth import ROLES, decode_token

security = HTTPBearer()


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    user_id: str
    role: str

    @property
    def actor(self) -> str:
        return f"{self.role}:{self.user_id}"


def context_from_token(token: str) -> TenantContext | None:
    """Contexte depuis un JWT, None si invalide / Context from a JWT, None if invalid."""
    payload = decode_token(token)
    if payload is None or payload.get("type") != "access":
        return None
    if not payload.get("sub") or not payload.get("tenant_id") or payload.get("role") not in ROLES:
        return None
    return TenantContext(tenant_id=payload["tenant_id"], user_id=str(payload["sub"]), role=payload["role"])


async def get_tenant_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> TenantContext:
    """Extraire le contexte tenant du JWT / Extract the tenant context from the JWT."""
    ctx = context_from_token(credentials.credentials)
    if ctx is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return ctx


def require_role(*roles: str):
    """Factory de dependance qui verifie le role / Dependency factory that checks the role."""

    async def _check(ctx: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if ctx.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role required: {', '.join(roles)}",
            )
        return ctx

    return _check


def get_store(request: Request) -> LocationStore:
    return request.app.state.store


def get_registry(request: Request) -> TrackingRegistry:
    return request.app.state.registry


def get_gateway(request: Request) -> DeliveryGateway:
    return request.app.state.gateway
