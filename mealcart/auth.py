from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import get_settings
from .observability import bind_log_context

logger = logging.getLogger(__name__)

JWKS_TTL_SECONDS = 600

_http = httpx.Client(timeout=5)
_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller; `user_id` is the token subject and owns shopping lists."""

    user_id: str
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class JWKSCache:
    def __init__(self) -> None:
        self._jwks: Dict[str, Dict[str, Any]] = {}
        self._exp_ts: Dict[str, float] = {}

    def get(self, url: str) -> Dict[str, Any]:
        now = time.time()
        if url not in self._jwks or now >= self._exp_ts.get(url, 0.0):
            resp = _http.get(url)
            resp.raise_for_status()
            self._jwks[url] = resp.json()
            self._exp_ts[url] = now + JWKS_TTL_SECONDS
        return self._jwks[url]


_jwks_cache = JWKSCache()


def _verify_jwt(token: str) -> Dict[str, Any]:
    settings = get_settings()
    if settings.auth_disable_verification:
        # Dev mode: signature is not checked.
        try:
            return jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}") from exc

    if not settings.auth_issuer:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth issuer not configured")

    jwks_url = settings.auth_jwks_url or settings.auth_issuer.rstrip("/") + "/.well-known/jwks.json"
    try:
        jwks = _jwks_cache.get(jwks_url)
    except httpx.HTTPError as exc:
        logger.error("Unable to fetch JWKS from %s: %s", jwks_url, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth keys unavailable") from exc

    try:
        kid = jwt.get_unverified_header(token).get("kid")
        key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
        if not key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Signing key not found")
        return jwt.decode(
            token,
            key,
            algorithms=[key.get("alg", "RS256")],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
            options={"verify_aud": bool(settings.auth_audience)},
        )
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"JWT verification failed: {exc}") from exc


def get_current_principal(creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> Principal:
    if not creds or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    claims = _verify_jwt(creds.credentials)
    subject = claims.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token: no sub")
    bind_log_context(user_id=str(subject))
    return Principal(
        user_id=str(subject),
        email=claims.get("email") or claims.get("email_address"),
        claims=claims,
    )
