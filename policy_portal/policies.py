"""
Policy expiration windows, renewal status sweep and dashboard counters.
"""

from __future__ import annotations

import calendar
import logging
import secrets
import string
import time
from collections import Counter
from datetime import date, timedelta
from typing import Optional

from policy_portal.db import (
    STATUS_PENDING,
    STATUS_RENEWED,
    DbClient,
    PolicyFilter,
    PolicyRecord,
)

logger = logging.getLogger(__name__)

NEAR_EXPIRATION_DAYS = 60
RENEWAL_PENDING_DAYS = 15
EXPIRING_SOON_DAYS = 30
UNASSIGNED_COMPANY = "Unassigned"


def month_bounds(month: str) -> tuple[date, date]:
    """First and last day of a ``YYYY-MM`` month."""
    try:
        year_str, month_str = month.split("-")
        year, month_num = int(year_str), int(month_str)
        last_day = calendar.monthrange(year, month_num)[1]
    except (ValueError, calendar.IllegalMonthError) as exc:
        raise ValueError(f"Invalid month (expected YYYY-MM): {month}") from exc
    return date(year, month_num, 1), date(year, month_num, last_day)


def near_expiration_filter(
    *,
    today: date,
    month: Optional[str] = None,
    company_id: Optional[str] = None,
    policy_type: Optional[str] = None,
    status: Optional[str] = None,
) -> PolicyFilter:
    """
    Renewed policies only appear when explicitly requested. Without a month,
    the default window is the next sixty days (not applied to renewed history).
    """
    show_renewed = status == STATUS_RENEWED
    flt = PolicyFilter(company_id=company_id, type=policy_type, status=status)
    if month:
        flt.end_from, flt.end_to = month_bounds(month)
    elif not show_renewed:
        flt.end_from = today
        flt.end_to = today + timedelta(days=NEAR_EXPIRATION_DAYS)
    if not show_renewed:
        flt.exclude_status = STATUS_RENEWED
    return flt


def sweep_renewed_to_pending(db: DbClient, today: Optional[date] = None) -> int:
    """
    Move renewed policies that expire again within fifteen days back to
    pending. Runs as a background task, so errors are logged and swallowed.
    """
    today = today or date.today()
    try:
        due = db.list_policies(
            PolicyFilter(
                status=STATUS_RENEWED,
                end_from=today,
                end_to=today + timedelta(days=RENEWAL_PENDING_DAYS),
            )
        )
        if not due:
            return 0
        updated = db.set_policy_status([p.id for p in due], STATUS_PENDING)
    except Exception:
        logger.exception("Failed to move renewed policies to pending")
        return 0
    logger.info("Updated %d renewed policies to pending status", updated)
    return updated


def document_path(client_id: str, policy_id: str, filename: str) -> str:
    """Storage path for an uploaded policy document."""
    ext = filename.rsplit(".", 1)[-1] if "." in filename else "bin"
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(9))
    return f"policies/{client_id}/{policy_id}-{int(time.time() * 1000)}-{suffix}.{ext}"


def admin_stats(db: DbClient, today: Optional[date] = None) -> dict:
    today = today or date.today()
    clients = db.list_clients()
    companies = {c.id: c.name for c in db.list_companies()}
    policies = db.list_policies()

    clients_by_month = Counter(c.created_at.strftime("%Y-%m") for c in clients)
    policies_by_company = Counter(
        companies.get(p.company_id, UNASSIGNED_COMPANY) for p in policies
    )
    return {
        "total_clients": len(clients),
        "total_policies": len(policies),
        "active_policies": db.count_policies(PolicyFilter(end_from=today)),
        "expiring_policies": db.count_policies(
            PolicyFilter(
                end_from=today, end_to=today + timedelta(days=EXPIRING_SOON_DAYS)
            )
        ),
        "clients_by_month": dict(sorted(clients_by_month.items())),
        "policies_by_company": dict(policies_by_company.most_common()),
    }


def client_stats(db: DbClient, client_id: str, today: Optional[date] = None) -> dict:
    today = today or date.today()
    return {
        "total_policies": db.count_policies(PolicyFilter(client_id=client_id)),
        "active_policies": db.count_policies(
            PolicyFilter(client_id=client_id, end_from=today)
        ),
        "expiring_policies": db.count_policies(
            PolicyFilter(
                client_id=client_id,
                end_from=today,
                end_to=today + timedelta(days=EXPIRING_SOON_DAYS),
            )
        ),
        "expired_policies": db.count_policies(
            PolicyFilter(client_id=client_id, end_before=today)
        ),
    }


def policy_payload(
    policy: PolicyRecord,
    client_names: Optional[dict] = None,
    company_names: Optional[dict] = None,
) -> dict:
    payload = policy.as_dict()
    if client_names is not None:
        payload["client_name"] = client_names.get(policy.client_id)
    if company_names is not None:
        payload["company_name"] = company_names.get(policy.company_id)
    return payload
