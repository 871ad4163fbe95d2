"""
tests/test_profile.py — Profiles, Usernames & Alias Resolution
===============================================================
"""

from __future__ import annotations

import pytest

from startorigin.errors import NotFound, UsernameTaken, ValidationFailed
from startorigin.services import admin_service, engagement_service
from startorigin.services import profile_service as svc

STATIC = {"founder": ["boss", "chief"]}


class TestNormalizeUsername:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("Alice_99", "alice_99"), ("  bob  ", "bob"), ("", None), ("   ", None), (None, None)],
    )
    def test_valid(self, raw, expected):
        assert svc.normalize_username(raw) == expected

    @pytest.mark.parametrize("raw", ["has space", "dash-ed", "émile", "a.b"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationFailed, match="letters, numbers, and underscores"):
            svc.normalize_username(raw)


class TestGetOrCreate:
    def test_creates_once(self, db_engine):
        first = svc.get_or_create_profile(db_engine, "user-new", display_name=" New ")
        second = svc.get_or_create_profile(db_engine, "user-new", display_name="Other")
        assert first.id == second.id == "user-new"
        assert second.display_name == "New"
        assert second.points == 0

    def test_get_profile_unknown(self, db_engine):
        with pytest.raises(NotFound):
            svc.get_profile(db_engine, "ghost")


class TestUpdateProfile:
    def test_username_stored_lowercase(self, db_engine, alice):
        profile = svc.update_profile(db_engine, alice, username="AliceW")
        assert profile.username == "alicew"

    def test_only_passed_fields_change(self, db_engine, alice):
        svc.update_profile(db_engine, alice, bio="Builder")
        profile = svc.update_profile(db_engine, alice, disable_chat=True)
        assert profile.bio == "Builder"
        assert profile.display_name == "Alice"
        assert profile.disable_chat is True

    def test_blank_clears_field(self, db_engine, alice):
        svc.update_profile(db_engine, alice, bio="Builder")
        assert svc.update_profile(db_engine, alice, bio="  ").bio is None

    def test_taken_by_other_user(self, db_engine, alice, bob):
        with pytest.raises(UsernameTaken):
            svc.update_profile(db_engine, alice, username="BOB")

    def test_taken_by_alias(self, db_engine, alice, bob):
        admin_service.add_alias(db_engine, bob, "bobby", actor_id="admin")
        with pytest.raises(UsernameTaken):
            svc.update_profile(db_engine, alice, username="bobby")

    def test_keeping_own_username_is_fine(self, db_engine, alice):
        assert svc.update_profile(db_engine, alice, username="alice").username == "alice"

    def test_invalid_username(self, db_engine, alice):
        with pytest.raises(ValidationFailed):
            svc.update_profile(db_engine, alice, username="no spaces")

    def test_unknown_user(self, db_engine):
        with pytest.raises(NotFound):
            svc.update_profile(db_engine, "ghost", bio="x")


class TestResolveProfile:
    def test_by_username_case_insensitive(self, db_engine, alice):
        assert svc.resolve_profile(db_engine, "ALICE").id == alice

    def test_by_stored_alias(self, db_engine, alice):
        admin_service.add_alias(db_engine, alice, "al", actor_id="admin")
        assert svc.resolve_profile(db_engine, "al").id == alice
        assert svc.main_username(db_engine, "al") == "alice"

    def test_by_static_alias(self, db_engine, make_profile):
        founder = make_profile("founder")
        assert svc.resolve_profile(db_engine, "boss", STATIC).id == founder
        assert svc.main_username(db_engine, "chief", STATIC) == "founder"

    def test_unknown(self, db_engine):
        assert svc.resolve_profile(db_engine, "nobody", STATIC) is None
        assert svc.resolve_profile(db_engine, "  ") is None
        assert svc.main_username(db_engine, "Nobody") == "nobody"

    def test_static_alias_without_profile_still_names_main(self, db_engine):
        assert svc.main_username(db_engine, "boss", STATIC) == "founder"

    def test_all_usernames_order(self, db_engine, make_profile):
        founder = make_profile("founder")
        admin_service.add_alias(db_engine, founder, "ceo", actor_id="admin")
        profile = svc.get_profile(db_engine, founder)
        assert svc.all_usernames(db_engine, profile, STATIC) == ["founder", "ceo", "boss", "chief"]


class TestProfileContent:
    def test_badges(self, db_engine, alice):
        admin_service.add_badge(db_engine, alice, "early", actor_id="admin")
        assert svc.list_badges(db_engine, alice) == ["early"]

    def test_user_problems(self, db_engine, alice, bob):
        engagement_service.create_problem(db_engine, alice, title="A", description="a")
        engagement_service.create_problem(db_engine, bob, title="B", description="b")
        assert [p.title for p in svc.list_user_problems(db_engine, alice)] == ["A"]
