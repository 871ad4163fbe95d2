"""
startorigin.services.reconciliation_service — Points Balance Reconciliation
============================================================================

Periodic job that validates ``profiles.points`` against the
``point_transactions`` ledger and corrects drift if found.

How it works:
    1. ``SUM(points)`` from ``point_transactions`` grouped by user.
    2. Compare against each profile's stored balance (no ledger rows → 0).
    3. On mismatch, overwrite the balance with the ledger sum.
    4. Log all corrections for audit.

Drift can only come from balances written outside the engagement service
(manual edits, imports).  Run it from the admin panel or a cron job.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, func, select, update

from startorigin.database.engine import get_session
from startorigin.database.models import PointTransaction, Profile

logger = logging.getLogger(__name__)


def reconcile_balances(engine: Engine) -> dict:
    """Recompute every balance from the ledger and fix drift.

    Returns ``{"checked": N, "corrected": M, "corrections": [...]}``.
    """
    corrections: list[dict] = []

    with get_session(engine) as session:
        # Ground truth: SUM(points) per user from the ledger
        truth_rows = session.execute(
            select(PointTransaction.user_id, func.sum(PointTransaction.points).label("actual"))
            .group_by(PointTransaction.user_id)
        ).all()
        truth_map: dict[str, int] = {row.user_id: int(row.actual or 0) for row in truth_rows}

        stored_rows = session.execute(select(Profile.id, Profile.points)).all()
        checked = 0

        for user_id, stored in stored_rows:
            checked += 1
            actual = truth_map.get(user_id, 0)
            if stored == actual:
                continue
            corrections.append({
                "user_id": user_id,
                "stored": stored,
                "actual": actual,
                "diff": actual - stored,
            })
            session.execute(
                update(Profile).where(Profile.id == user_id).values(points=actual)
            )

    if corrections:
        logger.warning(
            "Balance reconciliation: corrected %d/%d balances: %s",
            len(corrections), checked, corrections,
        )
    else:
        logger.info("Balance reconciliation: all %d balances match", checked)

    return {
        "checked": checked,
        "corrected": len(corrections),
        "corrections": corrections,
        "timestamp": datetime.now(UTC).isoformat(),
    }
