from __future__ import annotations

from dataclasses import dataclass
import hmac
import logging
import os
from typing import Any

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client

ADMIN_KEY_HEADER_NAME = "X-Admin-Key"
AUTHORIZATION_HEADER_NAME = "Authorization"
_admin_key_header = APIKeyHeader(name=ADMIN_KEY_HEADER_NAME, auto_error=False)
_bearer_header = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


class InvalidCredentialsError(Exception):
    pass


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: str


@dataclass(frozen=True)
class AdminAuthSettings:
    api_keys: tuple[str, ...]


@dataclass(frozen=True)
class AuthContext:
    auth_method: str
    principal: str
    email: str | None = None


def _user_payload(user: Any) -> dict[str, Any]:
    if hasattr(user, "model_dump"):
        return user.model_dump()
    if isinstance(user, dict):
        return user
    return {"id": getattr(user, "id", None), "email": getattr(user, "email", None)}


class SupabasePasswordVerifier:
    """Checks email/password against Supabase Auth.

    Signing in stores a session on the client it is given, so it must not be the
    service-role client used for table access.
    """

    def __init__(self, client: Client) -> None:
        self._client = client

    def verify_password(self, email: str, password: str) -> AuthenticatedUser:
        try:
            response = self._client.auth.sign_in_with_password({"email": email, "password": password})
        except Exception as exc:
            logger.info("password_sign_in_rejected error=%s", str(exc))
            raise InvalidCredentialsError("Invalid email or password.") from exc

        user = getattr(response, "user", None)
        payload = _user_payload(user) if user is not None else {}
        if not payload.get("id"):
            raise InvalidCredentialsError("Invalid email or password.")

        return AuthenticatedUser(user_id=str(payload["id"]), email=str(payload.get("email") or email))


class SupabaseUserTokenVerifier:
    def __init__(self, client: Client) -> None:
        self._client = client

    def verify_access_token(self, access_token: str) -> dict[str, Any]:
        try:
            response = self._client.auth.get_user(access_token)
        except Exception as exc:
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.") from exc

        user = getattr(response, "user", None)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.")

        user_payload = _user_payload(user)
        if not user_payload.get("id"):
            raise HTTPException(status_code=401, detail="Invalid or expired Bearer token.")

        return user_payload


def _parse_api_keys(raw_api_keys: str) -> tuple[str, ...]:
    if not raw_api_keys:
        return tuple()
    return tuple(dict.fromkeys(key.strip() for key in raw_api_keys.split(",") if key.strip()))


def load_admin_auth_settings() -> AdminAuthSettings:
    api_keys = _parse_api_keys(os.getenv("ADMIN_API_KEYS", "").strip())
    if not api_keys:
        raise ValueError("ADMIN_API_KEYS is a required environment variable.")
    return AdminAuthSettings(api_keys=api_keys)


def authenticate_user(
    request: Request,
    bearer_credentials: HTTPAuthorizationCredentials | None = Security(_bearer_header),
) -> AuthContext:
    if not bearer_credentials or bearer_credentials.scheme.lower() != "bearer" or not bearer_credentials.credentials:
        raise HTTPException(status_code=401, detail="Invalid or missing Bearer token.")

    verifier: SupabaseUserTokenVerifier | None = getattr(request.app.state, "user_token_verifier", None)
    if verifier is None:
        raise HTTPException(status_code=500, detail="JWT verification is not configured.")

    user_payload = verifier.verify_access_token(bearer_credentials.credentials)
    auth_context = AuthContext(
        auth_method="jwt",
        principal=str(user_payload["id"]),
        email=user_payload.get("email"),
    )
    request.state.auth_context = auth_context
    return auth_context


def authenticate_admin_request(
    request: Request,
    admin_key: str | None = Security(_admin_key_header),
) -> AuthContext:
    admin_settings: AdminAuthSettings | None = getattr(request.app.state, "admin_auth_settings", None)
    if admin_settings is None:
        raise HTTPException(status_code=500, detail="Admin authentication is not configured.")

    if admin_key and any(hmac.compare_digest(admin_key, configured) for configured in admin_settings.api_keys):
        auth_context = AuthContext(auth_method="admin_key", principal="admin")
        request.state.auth_context = auth_context
        return auth_context

    raise HTTPException(status_code=401, detail="Invalid or missing admin key.")
