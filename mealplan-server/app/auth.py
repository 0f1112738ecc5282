from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from .config import get_settings

JWKS_TTL_SECONDS = 600
EMAIL_CLAIMS = ("email", "email_address", "primary_email")

_http = httpx.Client(timeout=5)
_bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class SigningKeys:
    """Clerk JWKS keyed by `kid`, refetched after the TTL or when an unknown kid shows up."""

    def __init__(self, ttl_seconds: int = JWKS_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._source: Optional[str] = None
        self._fetched_at = 0.0

    def _stale(self, url: str) -> bool:
        return self._source != url or time.time() - self._fetched_at >= self.ttl_seconds

    def _refresh(self, url: str) -> None:
        resp = _http.get(url)
        resp.raise_for_status()
        keys: List[Dict[str, Any]] = resp.json().get("keys", [])
        self._keys = {key["kid"]: key for key in keys if key.get("kid")}
        self._source = url
        self._fetched_at = time.time()

    def find(self, url: str, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        if self._stale(url):
            self._refresh(url)
        if kid not in self._keys:
            # Rotated keys appear before our TTL runs out.
            self._refresh(url)
        return self._keys.get(kid) if kid else None


_signing_keys = SigningKeys()


def _jwks_url() -> str:
    settings = get_settings()
    return settings.clerk_jwks_url or settings.clerk_issuer.rstrip("/") + "/.well-known/jwks.json"


def decode_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    if settings.auth_disable_verification:
        try:
            return jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise _unauthorized(f"Invalid token: {exc}")

    if not settings.clerk_issuer:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth issuer not configured")

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise _unauthorized(f"Malformed token header: {exc}")
    try:
        key = _signing_keys.find(_jwks_url(), kid)
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Unable to load signing keys: {exc}")
    if key is None:
        raise _unauthorized("Signing key not found")

    try:
        return jwt.decode(
            token,
            key,
            algorithms=[key.get("alg", "RS256")],
            audience=settings.clerk_audience,
            issuer=settings.clerk_issuer,
        )
    except ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except JWTError as exc:
        raise _unauthorized(f"JWT verification failed: {exc}")


def principal_from_claims(claims: Dict[str, Any]) -> Dict[str, Any]:
    sub = claims.get("sub")
    if not sub:
        raise _unauthorized("Invalid token: no sub")
    email = next((claims[name] for name in EMAIL_CLAIMS if claims.get(name)), None)
    return {"sub": str(sub), "email": email, "claims": claims}


def get_current_principal(creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> Dict[str, Any]:
    if creds is None or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing bearer token")
    return principal_from_claims(decode_token(creds.credentials))


def is_admin(principal: Dict[str, Any]) -> bool:
    settings = get_settings()
    if not settings.admin_emails:
        return settings.environment in ("dev", "development")
    email = (principal.get("email") or "").lower()
    return bool(email) and email in {address.lower() for address in settings.admin_emails}


def require_admin(principal: Dict[str, Any]) -> None:
    if not is_admin(principal):
        detail = "Admin only" if get_settings().admin_emails else "Admin not configured"
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def get_admin_principal(principal: Dict[str, Any] = Depends(get_current_principal)) -> Dict[str, Any]:
    require_admin(principal)
    return principal
