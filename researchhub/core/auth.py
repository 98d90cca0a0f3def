"""
Bearer token authentication against the managed auth provider.

Handles:
- HS256 JWT verification with AUTH_JWT_SECRET (PyJWT)
- Opaque token resolution via GET {AUTH_URL}/auth/v1/user (httpx) when no secret is set
- Role extraction into the closed Role enum
- Profile upsert so admins can address users by email
- Test helpers for deterministic tokens (no network)
"""
import time
import logging
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from fastapi import Depends, Request

from researchhub.core.config import settings
from researchhub.core.errors import AuthError, BackendUnavailableError, ForbiddenError
from researchhub.core.timeutil import utc_now
from researchhub.models.user import AuthenticatedUser, Role, UserProfile
from researchhub.storage.factory import get_storage

logger = logging.getLogger("researchhub")


def _extract_bearer(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Authentication required")
    return token.strip()


def _role_from_claims(claims: Dict[str, Any]) -> Role:
    """Role lives in app_metadata (admin-controlled) or user_metadata."""
    for key in ("app_metadata", "user_metadata"):
        meta = claims.get(key)
        if isinstance(meta, dict) and meta.get("role"):
            return Role.parse(meta.get("role"))
    return Role.PARTICIPANT


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify an HS256 token and return its claims.

    Raises jwt.PyJWTError on invalid, expired or mis-addressed tokens.
    """
    options = {"verify_signature": True, "verify_exp": True, "require": ["sub", "exp"]}
    kwargs: Dict[str, Any] = {}
    if settings.AUTH_JWT_AUDIENCE:
        kwargs["audience"] = settings.AUTH_JWT_AUDIENCE
    else:
        options["verify_aud"] = False
    if settings.AUTH_JWT_ISSUER:
        kwargs["issuer"] = settings.AUTH_JWT_ISSUER
    return jwt.decode(token, settings.AUTH_JWT_SECRET, algorithms=["HS256"], options=options, **kwargs)


def fetch_remote_user(token: str) -> Dict[str, Any]:
    """Ask the auth provider who owns an opaque token."""
    url = f"{settings.AUTH_URL.rstrip('/')}/auth/v1/user"
    headers = {"Authorization": f"Bearer {token}"}
    if settings.AUTH_API_KEY:
        headers["apikey"] = settings.AUTH_API_KEY
    try:
        response = httpx.get(url, headers=headers, timeout=settings.AUTH_TIMEOUT_SECONDS)
    except httpx.HTTPError as exc:
        raise BackendUnavailableError("Auth provider unavailable") from exc
    if response.status_code in (401, 403):
        raise AuthError("Invalid or expired token")
    if response.status_code >= 400:
        raise BackendUnavailableError(f"Auth provider returned {response.status_code}")
    data = response.json()
    # The user endpoint returns `id` where JWTs carry `sub`
    if "sub" not in data and data.get("id"):
        data["sub"] = data["id"]
    return data


# Override hook (tests) for resolving tokens without a provider
_token_resolver_override: Optional[Callable[[str], Dict[str, Any]]] = None


def set_token_resolver_for_tests(resolver: Optional[Callable[[str], Dict[str, Any]]]) -> None:
    global _token_resolver_override
    _token_resolver_override = resolver


def resolve_claims(token: str) -> Dict[str, Any]:
    if _token_resolver_override:
        return _token_resolver_override(token)
    if settings.AUTH_JWT_SECRET:
        try:
            return verify_jwt_token(token)
        except jwt.ExpiredSignatureError as exc:
            raise AuthError("Token expired") from exc
        except jwt.PyJWTError as exc:
            raise AuthError("Invalid token") from exc
    if settings.AUTH_URL:
        return fetch_remote_user(token)
    raise AuthError("Authentication is not configured")


def authenticate_token(token: str) -> AuthenticatedUser:
    claims = resolve_claims(token)
    user_id = claims.get("sub")
    if not user_id:
        raise AuthError("Token missing subject")
    user = AuthenticatedUser(user_id=str(user_id), email=claims.get("email"), role=_role_from_claims(claims))
    try:
        get_storage().upsert_profile(
            UserProfile(user_id=user.user_id, email=user.email, role=user.role),
            now=utc_now(),
        )
    except BackendUnavailableError as exc:
        # Identity comes from the token; a stale profile only affects email lookups
        logger.warning("auth.profile_sync_failed", extra={"user_id": user.user_id, "error_code": exc.code})
    return user


def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: verified caller or 401."""
    user = authenticate_token(_extract_bearer(request))
    request.state.user_id = user.user_id
    return user


def require_roles(*roles: Role) -> Callable[..., AuthenticatedUser]:
    """FastAPI dependency factory: caller must hold one of `roles`."""
    allowed = frozenset(roles)

    def _dependency(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        ensure_role(user, *allowed)
        return user

    return _dependency


def ensure_role(user: AuthenticatedUser, *roles: Role) -> None:
    if user.role not in roles:
        names = " or ".join(r.value.capitalize() for r in roles)
        logger.warning(
            "auth.forbidden",
            extra={"user_id": user.user_id, "role": user.role.value, "required": [r.value for r in roles]},
        )
        raise ForbiddenError(f"{names} access required")


# ============================================================================
# Test Helpers (deterministic, no network)
# ============================================================================

def create_test_jwt(
    sub: str = "test_user_123",
    email: Optional[str] = "test@example.com",
    role: Optional[str] = None,
    exp_minutes: int = 60,
    secret: Optional[str] = None,
    audience: Optional[str] = None,
    issuer: Optional[str] = None,
) -> str:
    """
    Create an HS256 token shaped like the provider's access tokens.

    Args:
        sub: User ID (subject)
        email: User email
        role: Role placed in app_metadata (e.g. "admin")
        exp_minutes: Expiration from now; negative yields an expired token
        secret: Signing secret (defaults to AUTH_JWT_SECRET)
    """
    now = int(time.time())
    payload = {
        "sub": sub,
        "email": email,
        "iat": now,
        "exp": now + (exp_minutes * 60),
        "aud": audience or settings.AUTH_JWT_AUDIENCE,
        "app_metadata": {},
        "user_metadata": {},
    }
    if issuer or settings.AUTH_JWT_ISSUER:
        payload["iss"] = issuer or settings.AUTH_JWT_ISSUER
    if role:
        payload["app_metadata"]["role"] = role
    return jwt.encode(payload, secret or settings.AUTH_JWT_SECRET, algorithm="HS256")
