"""
Reconciliation of clients that have no access profile ("orphans").

Each orphan in a batch resolves to exactly one outcome:

- ``SkippedNoEmail``: missing or malformed email, nothing to match on.
- ``Linked``: an auth account with the same email exists and owns no
  profile, so a client profile is created for it.
- ``Created``: no auth account exists, so one is provisioned with a
  temporary password and linked.
- ``Conflict``: the matching auth account already owns a profile.
- ``Failed``: any exception while handling that client.

Lookups only consult the accounts and profiles loaded before the pass,
so two orphans sharing an email both resolve against that snapshot.
In dry-run mode the same decisions are made and counted but nothing is
written. Failures are contained per client; only setup failures
(reading clients, profiles or auth users) abort the run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Union

from policy_portal.accounts import (
    ProvisioningError,
    link_existing_account,
    provision_client_account,
)
from policy_portal.auth import AuthAdminClient, AuthUser
from policy_portal.db import AccessProfile, ClientRecord, DbClient
from policy_portal.notifier import Notifier

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 20
DEFAULT_PAGE_SIZE = 50

EMAIL_PATTERN = re.compile(r".+@.+\..+")
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class ReconciliationSetupError(RuntimeError):
    """The inputs of a run could not be loaded; no client was processed."""


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.search(email) is not None


def parse_batch_limit(raw: Optional[str], default: int = DEFAULT_BATCH_LIMIT) -> int:
    """
    Read a leading integer the way lenient query parsing does ("15abc" -> 15).
    Missing, unparsable or negative values fall back to ``default``.
    """
    if raw is None:
        return default
    match = _LEADING_INT.match(raw)
    if not match:
        return default
    value = int(match.group(1))
    return value if value >= 0 else default


def _detail(
    client_id: str,
    email: Optional[str],
    action: str,
    reason: str,
    auth_user_id: Optional[str],
) -> dict:
    return {
        "clientId": client_id,
        "email": email,
        "action": action,
        "reason": reason,
        "authUserId": auth_user_id,
    }


@dataclass(frozen=True)
class SkippedNoEmail:
    client_id: str
    email: Optional[str]

    action = "skipped_no_email"
    reason = "Invalid or missing email"

    def as_dict(self) -> dict:
        return _detail(self.client_id, self.email, self.action, self.reason, None)


@dataclass(frozen=True)
class Linked:
    client_id: str
    email: str
    auth_user_id: str
    dry_run: bool
    reason: str = "User exists in Auth, creating profile"

    @property
    def action(self) -> str:
        return "would_link" if self.dry_run else "linked"

    def as_dict(self) -> dict:
        return _detail(self.client_id, self.email, self.action, self.reason, self.auth_user_id)


@dataclass(frozen=True)
class Created:
    client_id: str
    email: str
    dry_run: bool
    auth_user_id: Optional[str] = None
    email_sent: bool = False
    reason: str = "Creating new Auth user and profile"

    @property
    def action(self) -> str:
        return "would_create" if self.dry_run else "created"

    def as_dict(self) -> dict:
        return _detail(self.client_id, self.email, self.action, self.reason, self.auth_user_id)


@dataclass(frozen=True)
class Conflict:
    client_id: str
    email: str
    auth_user_id: Optional[str]
    linked_client_id: Optional[str]

    action = "conflict"

    @property
    def reason(self) -> str:
        if self.linked_client_id:
            return f"User already linked to client {self.linked_client_id}"
        return "User already has an access profile without a client"

    def as_dict(self) -> dict:
        return _detail(self.client_id, self.email, self.action, self.reason, self.auth_user_id)


@dataclass(frozen=True)
class Failed:
    client_id: str
    email: Optional[str]
    reason: str
    auth_user_id: Optional[str] = None

    action = "error"

    def as_dict(self) -> dict:
        return _detail(self.client_id, self.email, self.action, self.reason, self.auth_user_id)


Outcome = Union[SkippedNoEmail, Linked, Created, Conflict, Failed]


@dataclass
class ReconciliationSummary:
    dry_run: bool
    limit: int
    total_orphans_found: int = 0
    processed: int = 0
    created_profiles: int = 0
    linked_profiles: int = 0
    skipped_no_email: int = 0
    conflicts: int = 0
    errors: int = 0
    emails_sent: int = 0

    def record(self, outcome: Outcome) -> None:
        if isinstance(outcome, SkippedNoEmail):
            self.skipped_no_email += 1
        elif isinstance(outcome, Linked):
            self.linked_profiles += 1
        elif isinstance(outcome, Created):
            self.created_profiles += 1
            if outcome.email_sent:
                self.emails_sent += 1
        elif isinstance(outcome, Conflict):
            self.conflicts += 1
        elif isinstance(outcome, Failed):
            self.errors += 1

    def as_dict(self) -> dict:
        return {
            "dryRun": self.dry_run,
            "limit": self.limit,
            "totalOrphansFound": self.total_orphans_found,
            "processed": self.processed,
            "createdProfiles": self.created_profiles,
            "linkedProfiles": self.linked_profiles,
            "skippedNoEmail": self.skipped_no_email,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "emailsSent": self.emails_sent,
        }


@dataclass
class ReconciliationResult:
    summary: ReconciliationSummary
    outcomes: list[Outcome] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "summary": self.summary.as_dict(),
            "details": [outcome.as_dict() for outcome in self.outcomes],
        }


def fetch_all_auth_users(
    auth: AuthAdminClient, per_page: int = DEFAULT_PAGE_SIZE
) -> tuple[AuthUser, ...]:
    """Page through every auth account; stops on an empty or short page."""
    users: list[AuthUser] = []
    page = 1
    while True:
        batch = auth.list_users(page=page, per_page=per_page)
        users.extend(batch)
        if len(batch) < per_page:
            break
        page += 1
    return tuple(users)


def find_orphans(
    clients: Iterable[ClientRecord], profiles: Iterable[AccessProfile]
) -> list[ClientRecord]:
    linked_client_ids = {p.client_id for p in profiles if p.client_id}
    return [c for c in clients if c.id not in linked_client_ids]


@dataclass
class _Reconciler:
    db: DbClient
    auth: AuthAdminClient
    notifier: Notifier
    dry_run: bool
    send_emails: bool
    account_ids_by_email: dict
    profiles_by_account: dict

    def resolve(self, client: ClientRecord) -> Outcome:
        account_id: Optional[str] = None
        try:
            if not is_valid_email(client.email):
                return SkippedNoEmail(client.id, client.email)

            normalized = client.email.lower()
            account_id = self.account_ids_by_email.get(normalized)

            if account_id:
                existing = self.profiles_by_account.get(account_id)
                if existing is not None:
                    return Conflict(client.id, client.email, account_id, existing.client_id)
                return self._link(client, account_id)
            return self._create(client)
        except Exception as exc:
            logger.exception("[%s] Error processing client", client.id)
            if isinstance(exc, ProvisioningError) and exc.user_id:
                account_id = exc.user_id
            return Failed(client.id, client.email, str(exc), account_id)

    def _link(self, client: ClientRecord, account_id: str) -> Linked:
        if self.dry_run:
            return Linked(client.id, client.email, account_id, dry_run=True)
        link_existing_account(self.db, user_id=account_id, client_id=client.id)
        reason = Linked.reason
        if self.send_emails:
            # The owner of an existing account already knows its password.
            reason += " (Email skipped for existing user)"
        return Linked(client.id, client.email, account_id, dry_run=False, reason=reason)

    def _create(self, client: ClientRecord) -> Created:
        if self.dry_run:
            return Created(
                client.id, client.email, dry_run=True, email_sent=self.send_emails
            )

        account = provision_client_account(
            auth=self.auth,
            db=self.db,
            client_id=client.id,
            email=client.email,
            full_name=client.name,
        )
        reason = Created.reason
        email_sent = False
        if self.send_emails:
            try:
                email_sent = self.notifier.send_welcome_email(
                    email=client.email,
                    name=client.name,
                    temp_password=account.temp_password,
                )
            except Exception:
                logger.exception("[%s] Welcome email raised for %s", client.id, client.email)
                reason += " (Profile created, Email EXCEPTION)"
            else:
                if email_sent:
                    reason += " (Email sent)"
                else:
                    logger.error("[%s] Welcome email failed for %s", client.id, client.email)
                    reason += " (Profile created, Email FAILED)"
        return Created(
            client.id,
            client.email,
            dry_run=False,
            auth_user_id=account.user.id,
            email_sent=bool(email_sent),
            reason=reason,
        )


def reconcile_orphans(
    clients: Sequence[ClientRecord],
    profiles: Sequence[AccessProfile],
    auth_users: Sequence[AuthUser],
    *,
    db: DbClient,
    auth: AuthAdminClient,
    notifier: Notifier,
    dry_run: bool = True,
    limit: int = DEFAULT_BATCH_LIMIT,
    send_emails: bool = False,
) -> ReconciliationResult:
    """
    Resolve up to ``limit`` orphans, in the order of ``clients``.
    """
    orphans = find_orphans(clients, profiles)
    summary = ReconciliationSummary(
        dry_run=dry_run, limit=limit, total_orphans_found=len(orphans)
    )
    reconciler = _Reconciler(
        db=db,
        auth=auth,
        notifier=notifier,
        dry_run=dry_run,
        send_emails=send_emails,
        account_ids_by_email={
            user.email.lower(): user.id for user in auth_users if user.email
        },
        profiles_by_account={profile.id: profile for profile in profiles},
    )

    batch = orphans[: max(limit, 0)]
    summary.processed = len(batch)
    result = ReconciliationResult(summary=summary)
    for client in batch:
        outcome = reconciler.resolve(client)
        summary.record(outcome)
        result.outcomes.append(outcome)

    logger.info(
        "Reconciled %d of %d orphan clients (dry_run=%s): %s",
        summary.processed,
        summary.total_orphans_found,
        dry_run,
        summary.as_dict(),
    )
    return result


def run_reconciliation(
    *,
    db: DbClient,
    auth: AuthAdminClient,
    notifier: Notifier,
    dry_run: bool = True,
    limit: int = DEFAULT_BATCH_LIMIT,
    send_emails: bool = False,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> ReconciliationResult:
    """Load clients, profiles and every auth account, then reconcile."""
    try:
        clients = db.list_clients()
    except Exception as exc:
        raise ReconciliationSetupError(f"Error fetching clients: {exc}") from exc
    try:
        profiles = db.list_profiles()
    except Exception as exc:
        raise ReconciliationSetupError(f"Error fetching profiles: {exc}") from exc
    try:
        auth_users = fetch_all_auth_users(auth, per_page=page_size)
    except Exception as exc:
        raise ReconciliationSetupError(f"Error fetching auth users: {exc}") from exc

    return reconcile_orphans(
        clients,
        profiles,
        auth_users,
        db=db,
        auth=auth,
        notifier=notifier,
        dry_run=dry_run,
        limit=limit,
        send_emails=send_emails,
    )
