"""
tests/test_admin.py — Admin Moderation, Audit Trail & Reconciliation
=====================================================================
Every admin write leaves an ``admin_log`` row with before/after snapshots.
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from startorigin.database.models import AdminLog, Profile, Upvote
from startorigin.errors import NotFound, UsernameTaken, ValidationFailed
from startorigin.services import admin_service as svc
from startorigin.services import engagement_service
from startorigin.services.reconciliation_service import reconcile_balances

ADMIN = "user-admin"


# ===========================================================================
# Problems
# ===========================================================================
class TestAdminProblems:
    def test_delete_any_problem_with_audit(self, db_engine, alice, bob):
        problem = engagement_service.create_problem(
            db_engine, alice, title="Spam", description="buy now",
        )
        engagement_service.toggle_upvote(db_engine, problem.id, bob)

        assert svc.delete_problem(db_engine, problem.id, actor_id=ADMIN, reason="spam") is True
        assert svc.list_problems(db_engine) == []
        with Session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(Upvote)) == 0

        [entry] = svc.list_admin_logs(db_engine)
        assert (entry.action_type, entry.target_table) == ("DELETE", "problems")
        assert entry.target_id == problem.id
        assert entry.before_snapshot["title"] == "Spam"
        assert entry.after_snapshot is None
        assert entry.reason == "spam"

    def test_delete_missing_problem(self, db_engine):
        assert svc.delete_problem(db_engine, "nope", actor_id=ADMIN) is False
        assert svc.list_admin_logs(db_engine) == []

    def test_list_problems_loads_authors(self, db_engine, alice):
        engagement_service.create_problem(db_engine, alice, title="A", description="a")
        [problem] = svc.list_problems(db_engine)
        assert problem.author.username == "alice"


class TestFindUser:
    def test_by_username_or_alias(self, db_engine, alice):
        svc.add_alias(db_engine, alice, "al", actor_id=ADMIN)
        assert svc.find_user(db_engine, "ALICE").id == alice
        assert svc.find_user(db_engine, "al").id == alice

    def test_unknown_or_blank(self, db_engine):
        assert svc.find_user(db_engine, "nobody") is None
        assert svc.find_user(db_engine, "") is None


# ===========================================================================
# Aliases
# ===========================================================================
class TestAliases:
    def test_add_list_delete_with_audit(self, db_engine, alice):
        row = svc.add_alias(db_engine, alice, "Ally", actor_id=ADMIN)
        assert row.alias == "ally"

        [listed] = svc.list_aliases(db_engine)
        assert listed["username"] == "alice"
        assert listed["alias"] == "ally"

        assert svc.delete_alias(db_engine, row.id, actor_id=ADMIN) is True
        assert svc.list_aliases(db_engine) == []

        actions = [e.action_type for e in svc.list_admin_logs(db_engine, target_table="user_aliases")]
        assert sorted(actions) == ["CREATE", "DELETE"]

    def test_alias_cannot_shadow_username(self, db_engine, alice, bob):
        with pytest.raises(UsernameTaken):
            svc.add_alias(db_engine, alice, "bob", actor_id=ADMIN)

    def test_alias_cannot_repeat(self, db_engine, alice, bob):
        svc.add_alias(db_engine, alice, "ace", actor_id=ADMIN)
        with pytest.raises(UsernameTaken):
            svc.add_alias(db_engine, bob, "ace", actor_id=ADMIN)

    def test_alias_validation(self, db_engine, alice):
        with pytest.raises(ValidationFailed):
            svc.add_alias(db_engine, alice, "  ", actor_id=ADMIN)
        with pytest.raises(NotFound):
            svc.add_alias(db_engine, "ghost", "ghosty", actor_id=ADMIN)

    def test_delete_unknown_alias(self, db_engine):
        assert svc.delete_alias(db_engine, "nope", actor_id=ADMIN) is False


# ===========================================================================
# Badges
# ===========================================================================
class TestBadges:
    def test_grant_and_revoke(self, db_engine, alice):
        badge = svc.add_badge(db_engine, alice, "verified", actor_id=ADMIN)
        [listed] = svc.list_user_badges(db_engine)
        assert (listed["badge_type"], listed["created_by"]) == ("verified", ADMIN)

        assert svc.delete_badge(db_engine, badge.id, actor_id=ADMIN) is True
        assert svc.list_user_badges(db_engine) == []

    def test_unknown_type(self, db_engine, alice):
        with pytest.raises(ValidationFailed):
            svc.add_badge(db_engine, alice, "gold", actor_id=ADMIN)

    def test_duplicate_badge(self, db_engine, alice):
        svc.add_badge(db_engine, alice, "whale", actor_id=ADMIN)
        with pytest.raises(ValidationFailed, match="already has"):
            svc.add_badge(db_engine, alice, "whale", actor_id=ADMIN)

    def test_audit_snapshot(self, db_engine, alice):
        svc.add_badge(db_engine, alice, "early", actor_id=ADMIN)
        [entry] = svc.list_admin_logs(db_engine, target_table="user_badges")
        assert entry.actor_id == ADMIN
        assert entry.before_snapshot is None
        assert entry.after_snapshot["badge_type"] == "early"


class TestAuditLog:
    def test_limit_and_filter(self, db_engine, alice):
        svc.add_badge(db_engine, alice, "early", actor_id=ADMIN)
        svc.add_alias(db_engine, alice, "a1", actor_id=ADMIN)
        svc.add_alias(db_engine, alice, "a2", actor_id=ADMIN)
        assert len(svc.list_admin_logs(db_engine)) == 3
        assert len(svc.list_admin_logs(db_engine, limit=2)) == 2
        assert len(svc.list_admin_logs(db_engine, target_table="user_badges")) == 1
        with Session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(AdminLog)) == 3


# ===========================================================================
# Reconciliation
# ===========================================================================
class TestReconcileBalances:
    def test_consistent_balances_untouched(self, db_engine, alice, bob):
        engagement_service.create_problem(db_engine, alice, title="A", description="a")
        result = reconcile_balances(db_engine)
        assert result["checked"] == 2
        assert result["corrected"] == 0
        assert "timestamp" in result

    def test_drift_corrected_from_ledger(self, db_engine, alice, make_profile):
        engagement_service.create_problem(db_engine, alice, title="A", description="a")
        drifted = make_profile("drifted", points=40)
        with Session(db_engine) as session:
            session.execute(update(Profile).where(Profile.id == alice).values(points=999))
            session.commit()

        result = reconcile_balances(db_engine)
        assert result["corrected"] == 2
        by_user = {c["user_id"]: c for c in result["corrections"]}
        assert by_user[alice] == {"user_id": alice, "stored": 999, "actual": 10, "diff": -989}
        assert by_user[drifted]["actual"] == 0

        assert engagement_service.get_balance(db_engine, alice) == 10
        assert engagement_service.get_balance(db_engine, drifted) == 0
        assert reconcile_balances(db_engine)["corrected"] == 0
