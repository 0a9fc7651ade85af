import logging
import threading
from typing import Any, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import PyJWKClient

from flowbills.core.access import CurrentUser, Role, role_from_claims
from flowbills.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

__all__ = ["CurrentUser", "Role", "get_current_user", "require_roles"]

ASYMMETRIC_ALGORITHMS = ["ES256", "RS256"]

_jwks_client: Optional[PyJWKClient] = None
_jwks_lock = threading.Lock()


def _get_jwks_client(jwks_url: str) -> PyJWKClient:
    global _jwks_client
    if _jwks_client is None:
        with _jwks_lock:
            if _jwks_client is None:
                _jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)
    return _jwks_client


def _verify(token: str, algorithm: str, settings: Settings) -> Optional[dict[str, Any]]:
    """Decoded claims, or ``None`` when the token does not verify."""
    audience = (settings.jwt_audience or "").strip() or None
    options = {"verify_aud": audience is not None}

    if algorithm in ASYMMETRIC_ALGORITHMS:
        jwks_url = (settings.jwks_url or "").strip()
        if not jwks_url:
            return None
        try:
            key = _get_jwks_client(jwks_url).get_signing_key_from_jwt(token).key
            return jwt.decode(token, key, algorithms=ASYMMETRIC_ALGORITHMS, audience=audience, options=options)
        except Exception as exc:
            logger.debug("JWKS verification failed: %s", exc)
            return None

    if not settings.jwt_secret:
        return None
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"], audience=audience, options=options)
    except jwt.InvalidTokenError:
        return None


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()

    settings = get_settings()
    if not settings.jwt_secret and not settings.jwks_url:
        raise HTTPException(500, "JWT_SECRET is not configured")

    try:
        algorithm = jwt.get_unverified_header(token).get("alg", "")
    except jwt.DecodeError:
        raise HTTPException(401, "Invalid token")

    claims = _verify(token, algorithm, settings)
    if claims is None or not claims.get("sub"):
        raise HTTPException(401, "Invalid token")

    role = role_from_claims(claims)
    if role is None:
        raise HTTPException(403, "Missing role")

    return CurrentUser(id=str(claims["sub"]), role=role.value, email=claims.get("email"))


def require_roles(*roles: str):
    def _dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "Forbidden")
        return user

    return _dependency
