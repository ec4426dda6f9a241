"""
Access-account provisioning for clients.

Creating a client account is a two-phase operation against two services:
the identity provider holds the credential and the ``user_profiles`` table
holds the link to the client. A profile insert that fails after the
credential exists deletes the credential again before the error
propagates, so no unlinked credential is left behind.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from policy_portal.auth import AuthAdminClient, AuthUser
from policy_portal.db import ROLE_CLIENT, AccessProfile, DbClient
from policy_portal.notifier import Notifier

logger = logging.getLogger(__name__)

PASSWORD_CHARSET = string.ascii_letters + string.digits + "!@#$%^&*"
PASSWORD_SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'


class ProvisioningError(RuntimeError):
    """Raised when either phase of account provisioning fails."""

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        user_id: Optional[str] = None,
        rolled_back: Optional[bool] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.user_id = user_id
        self.rolled_back = rolled_back


@dataclass
class ProvisionedAccount:
    user: AuthUser
    profile: AccessProfile
    temp_password: str


def generate_temporary_password(length: int = 16) -> str:
    """Random password from a CSPRNG; the fixed suffix satisfies digit/symbol rules."""
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length)) + "1!"


def validate_password_strength(password: str) -> list[str]:
    errors: list[str] = []
    if len(password) < 8:
        errors.append("Must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Must include at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Must include at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Must include at least one number")
    if not any(ch in PASSWORD_SPECIAL_CHARACTERS for ch in password):
        errors.append("Must include at least one special character")
    return errors


def rollback_account(auth: AuthAdminClient, user_id: str) -> bool:
    """Delete a just-created auth account. Failures are logged, never raised."""
    try:
        auth.delete_user(user_id)
    except Exception:
        logger.exception("[Rollback] Failed to delete auth user %s", user_id)
        return False
    logger.info("[Rollback] Deleted auth user %s", user_id)
    return True


def link_existing_account(
    db: DbClient, *, user_id: str, client_id: str
) -> AccessProfile:
    """Create the client profile for an auth account that already exists."""
    profile = AccessProfile(
        id=user_id, client_id=client_id, role=ROLE_CLIENT, first_login=True
    )
    db.insert_profile(profile)
    return profile


def provision_client_account(
    *,
    auth: AuthAdminClient,
    db: DbClient,
    client_id: str,
    email: str,
    full_name: Optional[str],
    temp_password: Optional[str] = None,
) -> ProvisionedAccount:
    """
    Create an auth account with a temporary password and link it to the client.
    """
    password = temp_password or generate_temporary_password()

    try:
        user = auth.create_user(
            email,
            password,
            email_confirm=True,
            user_metadata={"full_name": full_name},
        )
    except Exception as exc:
        raise ProvisioningError(f"Auth create failed: {exc}", stage="auth") from exc
    logger.info("[%s] Created auth user %s", client_id, user.id)

    profile = AccessProfile(
        id=user.id, client_id=client_id, role=ROLE_CLIENT, first_login=True
    )
    try:
        db.insert_profile(profile)
    except Exception as exc:
        logger.error("[%s] Profile insert failed for auth user %s: %s", client_id, user.id, exc)
        rolled_back = rollback_account(auth, user.id)
        if rolled_back:
            message = f"Profile create failed (Rolled back Auth): {exc}"
        else:
            message = (
                f"Profile create failed (Auth rollback FAILED, user {user.id} left unlinked): {exc}"
            )
        raise ProvisioningError(
            message, stage="profile", user_id=user.id, rolled_back=rolled_back
        ) from exc

    return ProvisionedAccount(user=user, profile=profile, temp_password=password)


def deliver_welcome_email(
    notifier: Notifier, *, email: str, name: str, temp_password: str
) -> bool:
    """Send the temporary password; a failure is logged and reported as False."""
    try:
        sent = notifier.send_welcome_email(
            email=email, name=name, temp_password=temp_password
        )
    except Exception:
        logger.exception("Welcome email raised for %s", email)
        return False
    if not sent:
        logger.error("Welcome email failed for %s", email)
    return sent
