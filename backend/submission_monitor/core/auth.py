"""Admin bearer-token authentication for FastAPI.

Tokens are HS256 JWTs issued by the hosted auth service; this service only
verifies them. The role is read from ``app_metadata.role`` or a top-level
``role`` claim.
"""

from dataclasses import dataclass

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from submission_monitor.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AdminUser:
    """Authenticated admin extracted from a bearer JWT."""

    user_id: str
    role: str
    claims: dict


def _role_from_claims(claims: dict) -> str | None:
    app_metadata = claims.get("app_metadata") or {}
    if isinstance(app_metadata, dict) and app_metadata.get("role"):
        return app_metadata["role"]
    return claims.get("role")


def decode_admin_jwt(token: str) -> dict:
    """Verify signature, expiry, audience and (when configured) issuer.

    Raises ``HTTPException(401)`` on any validation failure.
    """
    settings = get_settings()
    if not settings.admin_jwt_secret:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured")

    options = {"verify_exp": True, "require": ["sub", "exp"]}
    try:
        return pyjwt.decode(
            token,
            settings.admin_jwt_secret,
            algorithms=["HS256"],
            audience=settings.admin_jwt_audience or None,
            issuer=settings.admin_jwt_issuer or None,
            options=options,
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=401, detail=f"Missing required claim: {exc}")
    except pyjwt.InvalidAudienceError:
        raise HTTPException(status_code=401, detail="Unauthorized audience (aud mismatch)")
    except pyjwt.InvalidIssuerError:
        raise HTTPException(status_code=401, detail="Invalid issuer (iss mismatch)")
    except pyjwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}")


async def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AdminUser:
    """FastAPI dependency guarding admin routes.

    Usage::

        @router.get("/overview")
        async def overview(admin: AdminUser = Depends(require_admin)):
            ...
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    claims = decode_admin_jwt(credentials.credentials)
    role = _role_from_claims(claims)
    if role != get_settings().admin_role:
        raise HTTPException(status_code=403, detail="Admin access required")

    # Read by the exception handlers for log context
    request.state.user_id = claims["sub"]
    return AdminUser(user_id=claims["sub"], role=role, claims=claims)
