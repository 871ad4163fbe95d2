"""
tests/test_engagement.py — Problems, Upvotes, Points & Shop Tests
==================================================================
Point accrual on publish, the upvote toggle and its optimistic counter,
the customization shop and the ledger invariants behind both.
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from startorigin.constants import POINTS_PER_PROBLEM, problems_needed
from startorigin.database.models import (
    CustomizationItem,
    PointTransaction,
    Problem,
    Upvote,
    UserCustomization,
)
from startorigin.database.seed import DEFAULT_ITEMS, seed_customization_items
from startorigin.errors import (
    AlreadyOwned,
    AuthenticationRequired,
    Forbidden,
    InsufficientPoints,
    NotFound,
    ValidationFailed,
)
from startorigin.notices import Notice
from startorigin.services import engagement_service as svc
from startorigin.services.engagement_service import CustomizationShop, UpvoteToggle


def _publish(engine, author: str, title: str = "Parking is impossible", **kw):
    kw.setdefault("description", "Nowhere to park downtown after 6pm.")
    return svc.create_problem(engine, author, title=title, **kw)


def _item_id(engine, name: str) -> str:
    with Session(engine) as session:
        return session.scalar(select(CustomizationItem.id).where(CustomizationItem.name == name))


@pytest.fixture
def shop(db_engine):
    seed_customization_items(db_engine)
    return db_engine


# ===========================================================================
# Publishing & points
# ===========================================================================
class TestCreateProblem:
    def test_publish_credits_ten_points_and_one_ledger_row(self, db_engine, alice):
        problem = _publish(db_engine, alice, category="technology", tags=["city", " city ", "cars"])
        assert problem.tags == ["city", "cars"]
        assert svc.get_balance(db_engine, alice) == POINTS_PER_PROBLEM

        [entry] = svc.list_transactions(db_engine, alice)
        assert (entry.points, entry.type) == (10, "earned")
        assert entry.description == "Published problem: Parking is impossible"

    def test_points_accumulate(self, db_engine, alice):
        for i in range(3):
            _publish(db_engine, alice, title=f"Problem {i}")
        assert svc.get_balance(db_engine, alice) == 30
        assert len(svc.list_transactions(db_engine, alice)) == 3

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"title": "   "},
            {"title": "x" * 201},
            {"description": "  "},
            {"category": "astrology"},
            {"tags": ["a", "b", "c", "d", "e", "f"]},
        ],
    )
    def test_invalid_input_writes_nothing(self, db_engine, alice, kwargs):
        with pytest.raises(ValidationFailed):
            _publish(db_engine, alice, **kwargs)
        assert svc.get_balance(db_engine, alice) == 0
        assert svc.list_transactions(db_engine, alice) == []

    def test_unknown_author(self, db_engine):
        with pytest.raises(NotFound):
            _publish(db_engine, "ghost")

    def test_blank_contact_stored_as_none(self, db_engine, alice):
        assert _publish(db_engine, alice, contact="  ").contact is None


class TestEditProblem:
    def test_author_updates_fields(self, db_engine, alice):
        problem = _publish(db_engine, alice)
        updated = svc.update_problem(db_engine, problem.id, alice, status="solved", title="Fixed")
        assert (updated.status, updated.title) == ("solved", "Fixed")

    def test_other_user_cannot_edit(self, db_engine, alice, bob):
        problem = _publish(db_engine, alice)
        with pytest.raises(Forbidden):
            svc.update_problem(db_engine, problem.id, bob, title="Mine now")

    def test_unknown_status_or_field(self, db_engine, alice):
        problem = _publish(db_engine, alice)
        with pytest.raises(ValidationFailed):
            svc.update_problem(db_engine, problem.id, alice, status="archived")
        with pytest.raises(ValidationFailed):
            svc.update_problem(db_engine, problem.id, alice, upvotes=1000)

    def test_delete_keeps_points(self, db_engine, alice, bob):
        problem = _publish(db_engine, alice)
        svc.toggle_upvote(db_engine, problem.id, bob)
        svc.delete_problem(db_engine, problem.id, alice)
        with pytest.raises(NotFound):
            svc.get_problem(db_engine, problem.id)
        with Session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(Upvote)) == 0
        assert svc.get_balance(db_engine, alice) == POINTS_PER_PROBLEM

    def test_only_author_deletes(self, db_engine, alice, bob):
        problem = _publish(db_engine, alice)
        with pytest.raises(Forbidden):
            svc.delete_problem(db_engine, problem.id, bob)

    def test_get_problem_loads_author(self, db_engine, alice):
        problem = svc.get_problem(db_engine, _publish(db_engine, alice).id)
        assert problem.author.username == "alice"


class TestProjects:
    def test_create_and_get(self, db_engine, alice):
        project = svc.create_project(
            db_engine, alice, title="Parkly", short_description="Find parking fast",
            logo_url=" ",
        )
        loaded = svc.get_project(db_engine, project.id)
        assert loaded.status == "active"
        assert loaded.logo_url is None
        assert loaded.author.id == alice

    def test_short_description_required(self, db_engine, alice):
        with pytest.raises(ValidationFailed):
            svc.create_project(db_engine, alice, title="Parkly", short_description="")


# ===========================================================================
# Upvotes
# ===========================================================================
class TestToggleUpvote:
    def test_double_toggle_returns_to_start(self, db_engine, alice, bob):
        problem = _publish(db_engine, alice)

        assert svc.toggle_upvote(db_engine, problem.id, bob) == (True, 1)
        assert svc.has_upvoted(db_engine, problem.id, bob)
        assert svc.toggle_upvote(db_engine, problem.id, bob) == (False, 0)
        assert not svc.has_upvoted(db_engine, problem.id, bob)

    def test_counter_tracks_distinct_users(self, db_engine, alice, bob, carol):
        problem = _publish(db_engine, alice)
        svc.toggle_upvote(db_engine, problem.id, bob)
        svc.toggle_upvote(db_engine, problem.id, carol)
        with Session(db_engine) as session:
            assert session.get(Problem, problem.id).upvotes == 2
            assert session.scalar(select(func.count()).select_from(Upvote)) == 2

    def test_unknown_problem(self, db_engine, bob):
        with pytest.raises(NotFound):
            svc.toggle_upvote(db_engine, "nope", bob)


class TestUpvoteToggle:
    def test_optimistic_count(self, db_engine, alice, bob):
        problem = _publish(db_engine, alice)
        card = UpvoteToggle(db_engine, problem.id, bob, count=5)
        assert card.upvoted is False

        assert card.toggle() is True
        assert (card.count, card.upvoted) == (6, True)
        assert card.toggle() is False
        assert (card.count, card.upvoted) == (5, False)

    def test_reads_existing_upvote_lazily(self, db_engine, alice, bob):
        problem = _publish(db_engine, alice)
        svc.toggle_upvote(db_engine, problem.id, bob)
        assert UpvoteToggle(db_engine, problem.id, bob, count=1).upvoted is True

    def test_anonymous_toggle_requires_login(self, db_engine, alice):
        problem = _publish(db_engine, alice)
        card = UpvoteToggle(db_engine, problem.id, None, count=0)
        assert card.upvoted is False
        with pytest.raises(AuthenticationRequired) as exc_info:
            card.toggle()
        assert exc_info.value.login_url == "/auth/login"
        assert card.count == 0


# ===========================================================================
# Shop
# ===========================================================================
class TestPurchase:
    def test_insufficient_points_reports_shortfall(self, shop, make_profile):
        user = make_profile("saver", points=25)
        with pytest.raises(InsufficientPoints) as exc_info:
            svc.purchase_item(shop, user, _item_id(shop, "Golden Name"))
        assert exc_info.value.shortfall == 75
        assert exc_info.value.problems_needed == 8
        assert "75 more points" in str(exc_info.value)
        assert svc.get_balance(shop, user) == 25
        assert svc.list_transactions(shop, user) == []

    def test_purchase_debits_and_records(self, shop, make_profile):
        user = make_profile("rich", points=120)
        row = svc.purchase_item(shop, user, _item_id(shop, "Golden Name"))
        assert row.is_active is True
        assert row.item.name == "Golden Name"
        assert svc.get_balance(shop, user) == 20

        [entry] = svc.list_transactions(shop, user)
        assert (entry.points, entry.type) == (-100, "spent")

    def test_second_purchase_already_owned(self, shop, make_profile):
        user = make_profile("rich", points=500)
        item = _item_id(shop, "Starry Frame")
        svc.purchase_item(shop, user, item)
        with pytest.raises(AlreadyOwned):
            svc.purchase_item(shop, user, item)
        assert svc.get_balance(shop, user) == 450

    def test_unknown_item(self, shop, alice):
        with pytest.raises(NotFound):
            svc.purchase_item(shop, alice, "nope")

    def test_toggle_active(self, shop, make_profile):
        user = make_profile("rich", points=500)
        row = svc.purchase_item(shop, user, _item_id(shop, "Starry Frame"))
        assert svc.set_customization_active(shop, user, row.id, False).is_active is False
        [owned] = svc.list_user_customizations(shop, user)
        assert owned.is_active is False
        assert owned.item.name == "Starry Frame"

    def test_cannot_toggle_someone_elses_item(self, shop, make_profile, bob):
        user = make_profile("rich", points=500)
        row = svc.purchase_item(shop, user, _item_id(shop, "Starry Frame"))
        with pytest.raises(NotFound):
            svc.set_customization_active(shop, bob, row.id, False)

    def test_catalogue_sorted_by_price(self, shop):
        prices = [i.price for i in svc.list_items(shop)]
        assert prices == sorted(prices)
        assert len(prices) == len(DEFAULT_ITEMS)


class TestCustomizationShop:
    def test_success_notice(self, shop, make_profile):
        user = make_profile("rich", points=100)
        notices = []
        view = CustomizationShop(shop, user, notify=notices.append)
        view.purchase(_item_id(shop, "Starry Frame"))
        assert notices[-1] == Notice("success", "Success!", "Purchased Starry Frame for 50 points")
        assert view.purchasing_id is None

    def test_not_enough_points_notice(self, shop, make_profile):
        user = make_profile("saver", points=25)
        notices = []
        view = CustomizationShop(shop, user, notify=notices.append)
        with pytest.raises(InsufficientPoints):
            view.purchase(_item_id(shop, "Golden Name"))
        assert notices[-1].title == "Not enough points"
        assert "8 more problems" in notices[-1].message

    def test_purchase_in_flight_is_ignored(self, shop, make_profile):
        user = make_profile("rich", points=500)
        view = CustomizationShop(shop, user, notify=lambda n: None)
        view.purchasing_id = "other"
        assert view.purchase(_item_id(shop, "Starry Frame")) is None
        with Session(shop) as session:
            assert session.scalar(select(func.count()).select_from(UserCustomization)) == 0


class TestLedgerHelpers:
    @pytest.mark.parametrize(
        ("shortfall", "needed"), [(0, 0), (-5, 0), (1, 1), (10, 1), (75, 8), (100, 10)],
    )
    def test_problems_needed(self, shortfall, needed):
        assert problems_needed(shortfall) == needed

    def test_ledger_sums_to_balance(self, shop, alice):
        for i in range(6):
            _publish(shop, alice, title=f"P{i}")
        svc.purchase_item(shop, alice, _item_id(shop, "Starry Frame"))
        with Session(shop) as session:
            total = session.scalar(
                select(func.sum(PointTransaction.points)).where(PointTransaction.user_id == alice)
            )
        assert total == svc.get_balance(shop, alice) == 10
