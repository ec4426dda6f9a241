"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from policy_portal.auth import AuthAdminClient, AuthUser, GoTrueAuthAdminClient, InMemoryAuthAdminClient
from policy_portal.config import Settings, get_settings
from policy_portal.db import (
    ROLE_ADMIN,
    ROLE_CLIENT,
    AccessProfile,
    ClientRecord,
    DbClient,
    InMemoryDbClient,
    PostgresDbClient,
)
from policy_portal.notifier import EdgeFunctionNotifier, InMemoryNotifier, Notifier
from policy_portal.service_http import BackendServiceError
from policy_portal.storage import InMemoryStorageClient, S3StorageClient, StorageClient

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_auth_client: AuthAdminClient | None = None
_storage_client: StorageClient | None = None
_notifier: Notifier | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def _hosted_service_configured() -> bool:
    settings = get_settings()
    return bool(
        not settings.use_in_memory_backends
        and settings.supabase_url
        and settings.supabase_service_role_key
    )


def missing_backend_settings(settings: Settings) -> list[str]:
    """
    Names of the unset settings the hosted backends need. Empty when they are
    all present or when in-memory backends were requested.
    """
    if settings.use_in_memory_backends:
        return []
    required = {
        "DATABASE_URL": settings.database_url,
        "SUPABASE_URL": settings.supabase_url,
        "SUPABASE_SERVICE_ROLE_KEY": settings.supabase_service_role_key,
    }
    return [name for name, value in required.items() if not value]


def get_auth_client() -> AuthAdminClient:
    global _auth_client
    if _auth_client:
        return _auth_client

    settings = get_settings()
    if not _hosted_service_configured():
        _auth_client = InMemoryAuthAdminClient()
    else:
        _auth_client = GoTrueAuthAdminClient(
            base_url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
            anon_key=settings.supabase_anon_key or settings.supabase_service_role_key,
            timeout=settings.request_timeout_seconds,
        )
    return _auth_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.storage_s3_endpoint:
        _storage_client = InMemoryStorageClient(bucket=settings.storage_bucket)
    else:
        public_base = f"{(settings.supabase_url or '').rstrip('/')}/storage/v1/object/public"
        _storage_client = S3StorageClient(
            bucket=settings.storage_bucket,
            endpoint=settings.storage_s3_endpoint,
            region=settings.storage_region,
            access_key_id=settings.storage_access_key_id or "",
            secret_access_key=settings.storage_secret_access_key or "",
            public_base_url=public_base,
        )
    return _storage_client


def get_notifier() -> Notifier:
    global _notifier
    if _notifier:
        return _notifier

    settings = get_settings()
    if not _hosted_service_configured():
        _notifier = InMemoryNotifier()
    else:
        _notifier = EdgeFunctionNotifier(
            base_url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
            function_name=settings.welcome_email_function,
            timeout=settings.request_timeout_seconds,
        )
    return _notifier


@dataclass
class CurrentUser:
    user: AuthUser
    access_token: str
    profile: Optional[AccessProfile]
    client: Optional[ClientRecord]

    @property
    def role(self) -> Optional[str]:
        return self.profile.role if self.profile else None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def landing_path(role: Optional[str]) -> str:
    if role == ROLE_ADMIN:
        return "/admin"
    if role == ROLE_CLIENT:
        return "/cliente"
    return "/login"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(
    authorization: Optional[str] = Header(None),
    auth: AuthAdminClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
) -> Optional[CurrentUser]:
    """Resolve the bearer token to the signed-in user, or None."""
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        user = auth.get_user_for_token(token)
    except BackendServiceError as exc:
        logger.warning("Token lookup failed: %s", exc)
        return None
    if not user:
        return None
    profile = db.get_profile(user.id)
    client = db.get_client(profile.client_id) if profile and profile.client_id else None
    return CurrentUser(user=user, access_token=token, profile=profile, client=client)


def require_user(
    current: Optional[CurrentUser] = Depends(get_current_user),
) -> CurrentUser:
    if current is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return current


def require_admin(
    current: Optional[CurrentUser] = Depends(get_current_user),
) -> CurrentUser:
    if current is None or not current.is_admin:
        raise HTTPException(status_code=403, detail="Unauthorized")
    return current


def require_client(current: CurrentUser = Depends(require_user)) -> CurrentUser:
    if current.role != ROLE_CLIENT or not current.profile.client_id:
        raise HTTPException(status_code=403, detail="Unauthorized")
    return current
