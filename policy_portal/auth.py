"""
Identity provider abstraction for the hosted auth API and in-memory testing.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import requests

from policy_portal.service_http import (
    BackendServiceError,
    raise_for_service_error,
    service_headers,
)


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: Optional[str]
    created_at: Optional[str] = None
    user_metadata: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "AuthUser":
        return cls(
            id=payload["id"],
            email=payload.get("email"),
            created_at=payload.get("created_at"),
            user_metadata=payload.get("user_metadata") or {},
        )


@dataclass
class AuthSession:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]
    user: AuthUser


class AuthAdminClient(Protocol):
    """Defines the operations the API needs from the identity provider."""

    def list_users(self, page: int = 1, per_page: int = 50) -> list[AuthUser]:
        ...

    def create_user(
        self,
        email: str,
        password: str,
        *,
        email_confirm: bool = True,
        user_metadata: Optional[dict] = None,
    ) -> AuthUser:
        ...

    def delete_user(self, user_id: str) -> None:
        ...

    def get_user_for_token(self, access_token: str) -> Optional[AuthUser]:
        ...

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        ...

    def send_password_recovery(
        self, email: str, redirect_to: Optional[str] = None
    ) -> None:
        ...

    def update_password(self, access_token: str, password: str) -> None:
        ...


class InMemoryAuthAdminClient:
    """Test double for identity provider interactions."""

    def __init__(self):
        self.users: Dict[str, AuthUser] = {}
        self.passwords: Dict[str, str] = {}
        self.tokens: Dict[str, str] = {}
        self.recovery_requests: list[str] = []

    def reset(self) -> None:
        self.users.clear()
        self.passwords.clear()
        self.tokens.clear()
        self.recovery_requests.clear()

    def issue_token(self, user_id: str) -> str:
        """Create an access token for ``user_id`` (useful in tests)."""
        token = uuid.uuid4().hex
        self.tokens[token] = user_id
        return token

    def _find_by_email(self, email: str) -> Optional[AuthUser]:
        wanted = email.lower()
        for user in self.users.values():
            if user.email and user.email.lower() == wanted:
                return user
        return None

    def list_users(self, page: int = 1, per_page: int = 50) -> list[AuthUser]:
        users = list(self.users.values())
        start = (page - 1) * per_page
        return users[start : start + per_page]

    def create_user(
        self,
        email: str,
        password: str,
        *,
        email_confirm: bool = True,
        user_metadata: Optional[dict] = None,
    ) -> AuthUser:
        if self._find_by_email(email):
            raise BackendServiceError(
                "A user with this email address has already been registered",
                status_code=422,
            )
        user = AuthUser(
            id=str(uuid.uuid4()),
            email=email,
            created_at=datetime.now(timezone.utc).isoformat(),
            user_metadata=dict(user_metadata or {}),
        )
        self.users[user.id] = user
        self.passwords[user.id] = password
        return user

    def delete_user(self, user_id: str) -> None:
        if user_id not in self.users:
            raise BackendServiceError("User not found", status_code=404)
        del self.users[user_id]
        self.passwords.pop(user_id, None)
        for token in [t for t, uid in self.tokens.items() if uid == user_id]:
            del self.tokens[token]

    def get_user_for_token(self, access_token: str) -> Optional[AuthUser]:
        user_id = self.tokens.get(access_token)
        if not user_id:
            return None
        return self.users.get(user_id)

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        user = self._find_by_email(email)
        if not user or self.passwords.get(user.id) != password:
            raise BackendServiceError("Invalid login credentials", status_code=400)
        return AuthSession(
            access_token=self.issue_token(user.id),
            refresh_token=uuid.uuid4().hex,
            expires_in=3600,
            user=user,
        )

    def send_password_recovery(
        self, email: str, redirect_to: Optional[str] = None
    ) -> None:
        self.recovery_requests.append(email)

    def update_password(self, access_token: str, password: str) -> None:
        user = self.get_user_for_token(access_token)
        if not user:
            raise BackendServiceError("Invalid token", status_code=401)
        self.passwords[user.id] = password


@dataclass
class GoTrueAuthAdminClient:
    """
    Client for the hosted auth REST API. Admin calls use the service-role
    key; user-scoped calls use the anon key plus the caller's access token.
    """

    base_url: str
    service_role_key: str
    anon_key: str
    timeout: int = 30

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.base_url}/auth/v1/{path}"

    def _admin_headers(self) -> dict:
        return service_headers(self.service_role_key)

    def _user_headers(self, access_token: Optional[str] = None) -> dict:
        return service_headers(self.anon_key, bearer=access_token)

    def list_users(self, page: int = 1, per_page: int = 50) -> list[AuthUser]:
        response = requests.get(
            self._url("admin/users"),
            params={"page": page, "per_page": per_page},
            headers=self._admin_headers(),
            timeout=self.timeout,
        )
        raise_for_service_error(response)
        payload = response.json()
        users = payload.get("users", []) if isinstance(payload, dict) else payload
        return [AuthUser.from_payload(item) for item in users or []]

    def create_user(
        self,
        email: str,
        password: str,
        *,
        email_confirm: bool = True,
        user_metadata: Optional[dict] = None,
    ) -> AuthUser:
        response = requests.post(
            self._url("admin/users"),
            json={
                "email": email,
                "password": password,
                "email_confirm": email_confirm,
                "user_metadata": user_metadata or {},
            },
            headers=self._admin_headers(),
            timeout=self.timeout,
        )
        raise_for_service_error(response)
        payload = response.json()
        return AuthUser.from_payload(payload.get("user", payload))

    def delete_user(self, user_id: str) -> None:
        response = requests.delete(
            self._url(f"admin/users/{user_id}"),
            headers=self._admin_headers(),
            timeout=self.timeout,
        )
        raise_for_service_error(response)

    def get_user_for_token(self, access_token: str) -> Optional[AuthUser]:
        response = requests.get(
            self._url("user"),
            headers=self._user_headers(access_token),
            timeout=self.timeout,
        )
        if response.status_code in (401, 403):
            return None
        raise_for_service_error(response)
        return AuthUser.from_payload(response.json())

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        response = requests.post(
            self._url("token"),
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            headers=self._user_headers(),
            timeout=self.timeout,
        )
        raise_for_service_error(response)
        payload = response.json()
        return AuthSession(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            user=AuthUser.from_payload(payload["user"]),
        )

    def send_password_recovery(
        self, email: str, redirect_to: Optional[str] = None
    ) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        response = requests.post(
            self._url("recover"),
            params=params,
            json={"email": email},
            headers=self._user_headers(),
            timeout=self.timeout,
        )
        raise_for_service_error(response)

    def update_password(self, access_token: str, password: str) -> None:
        response = requests.put(
            self._url("user"),
            json={"password": password},
            headers=self._user_headers(access_token),
            timeout=self.timeout,
        )
        raise_for_service_error(response)
