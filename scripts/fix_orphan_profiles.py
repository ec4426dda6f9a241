"""
CLI helper to link or create access accounts for clients without a profile.
Dry run unless --apply is given.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from policy_portal.config import get_settings
from policy_portal.dependencies import (
    get_auth_client,
    get_db_client,
    get_notifier,
    missing_backend_settings,
)
from policy_portal.reconciliation import (
    DEFAULT_BATCH_LIMIT,
    ReconciliationSetupError,
    run_reconciliation,
)

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Fix clients without access profiles")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Write changes (default is a dry run)",
    )
    parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=DEFAULT_BATCH_LIMIT,
        help="Process at most N orphan clients",
    )
    parser.add_argument(
        "--send-emails",
        action="store_true",
        help="Email the temporary password to newly created accounts",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Write the JSON report to this file instead of stdout",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    if args.limit < 0:
        parser.error("--limit must be zero or positive")
    settings = get_settings()
    missing = missing_backend_settings(settings)
    if missing:
        parser.error(
            "missing settings: " + ", ".join(missing)
            + " (set PORTAL_USE_IN_MEMORY_BACKENDS=true for a local run)"
        )

    try:
        result = run_reconciliation(
            db=get_db_client(),
            auth=get_auth_client(),
            notifier=get_notifier(),
            dry_run=not args.apply,
            limit=args.limit,
            send_emails=args.send_emails,
            page_size=settings.auth_users_page_size,
        )
    except ReconciliationSetupError as exc:
        logger.error("%s", exc)
        return 2

    report = json.dumps(result.as_dict(), indent=2)
    if args.output:
        args.output.write_text(report + "\n", encoding="utf-8")
        logger.info("Report written to %s", args.output)
    else:
        print(report)
    return 1 if result.summary.errors else 0


if __name__ == "__main__":
    sys.exit(main())
