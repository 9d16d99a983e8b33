"""Bearer JWT authentication for FastAPI."""

from dataclasses import dataclass
from functools import lru_cache

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from phasegate.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)


@lru_cache
def get_jwks_client() -> PyJWKClient:
    """Create a cached JWKS client pointing at the configured JWKS endpoint."""
    settings = get_settings()
    if not settings.jwks_url:
        raise ValueError("jwks_url is not configured")
    return PyJWKClient(settings.jwks_url, cache_keys=True, lifespan=300)


@dataclass(frozen=True)
class AuthUser:
    """Authenticated user extracted from a JWT."""

    user_id: str
    claims: dict

    @property
    def roles(self) -> frozenset[str]:
        """Roles from the ``roles`` claim or ``public_metadata.roles``.

        ``public_metadata.admin is True`` also grants ``admin``.
        """
        metadata = self.claims.get("public_metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        raw = self.claims.get("roles") or metadata.get("roles") or []
        if isinstance(raw, str):
            raw = [raw]
        elif not isinstance(raw, (list, tuple, set, frozenset)):
            raw = []
        roles = {r for r in raw if isinstance(r, str) and r}
        if metadata.get("admin") is True:
            roles.add("admin")
        return frozenset(roles)


def decode_jwt(token: str) -> AuthUser:
    """Verify and decode a session JWT.

    Raises ``HTTPException(401)`` on any validation failure.
    """
    settings = get_settings()
    try:
        client = get_jwks_client()
    except ValueError as exc:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured") from exc

    options = {
        "verify_exp": True,
        "verify_nbf": True,
        "verify_iat": True,
        "verify_aud": bool(settings.jwt_audience),
        "require": ["sub", "exp", "iat"],
    }
    try:
        signing_key = client.get_signing_key_from_jwt(token)
        payload = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=settings.jwt_audience or None,
            issuer=settings.jwt_issuer or None,
            options=options,
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.ImmatureSignatureError:
        raise HTTPException(status_code=401, detail="Token not yet valid (immature)")
    except pyjwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=401, detail=f"Missing required claim: {exc}")
    except pyjwt.InvalidIssuerError:
        raise HTTPException(status_code=401, detail="Invalid issuer (iss mismatch)")
    except pyjwt.InvalidAudienceError:
        raise HTTPException(status_code=401, detail="Unauthorized audience (aud mismatch)")
    except pyjwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}")
    except pyjwt.PyJWKClientError as exc:
        raise HTTPException(status_code=401, detail=f"Signing key not found: {exc}")

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token missing sub claim")

    return AuthUser(user_id=sub, claims=payload)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthUser:
    """FastAPI dependency that extracts and validates the bearer JWT.

    Usage::

        @router.get("/protected")
        async def protected(user: AuthUser = Depends(require_auth)):
            ...
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    user = decode_jwt(credentials.credentials)

    # Set user_id on request state for downstream use (error handlers, audit logging)
    request.state.user_id = user.user_id

    return user
