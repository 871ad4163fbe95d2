"""
tests/test_messaging_service.py — Chat Store Operation Tests
=============================================================
Chat resolution, send/read/delete, reactions, blocks and user search
against the shared in-memory SQLite engine.
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from startorigin.database.models import (
    Block,
    Chat,
    ChatParticipant,
    Message,
    MessageReaction,
)
from startorigin.engine.live import ChangeKind
from startorigin.errors import (
    BlockedRecipient,
    ChatCreationError,
    ChatDisabled,
    Forbidden,
    NotAParticipant,
    NotFound,
    ValidationFailed,
)
from startorigin.services import messaging_service as svc

THUMBS = "\U0001f44d"


def _count(engine, model, *where) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model).where(*where))


def _fail_nth_commit(monkeypatch, n: int) -> None:
    """Make the *n*-th ``Session.commit`` from now raise, leaving the others real."""
    real_commit = Session.commit
    calls = []

    def _commit(self):
        calls.append(self)
        if len(calls) == n:
            raise OperationalError("COMMIT", None, Exception("connection lost"))
        return real_commit(self)

    monkeypatch.setattr(Session, "commit", _commit)


@pytest.fixture
def chat(db_engine, alice, bob) -> str:
    chat_id, _ = svc.open_chat_with(db_engine, alice, bob)
    return chat_id


@pytest.fixture
def published(live):
    """Every change published on the hub, in order."""
    seen = []
    for table in ("messages", "chats"):
        live.subscribe("test", table=table, kinds=set(ChangeKind), callback=seen.append)
    return seen


# ===========================================================================
# Chat resolution
# ===========================================================================
class TestOpenChat:
    def test_creates_chat_with_two_participants(self, db_engine, alice, bob):
        chat_id, created = svc.open_chat_with(db_engine, alice, bob)
        assert created is True
        assert _count(db_engine, ChatParticipant, ChatParticipant.chat_id == chat_id) == 2

    def test_second_call_returns_same_chat(self, db_engine, alice, bob):
        first, _ = svc.open_chat_with(db_engine, alice, bob)
        second, created = svc.open_chat_with(db_engine, alice, bob)
        reverse, _ = svc.open_chat_with(db_engine, bob, alice)
        assert first == second == reverse
        assert created is False
        assert _count(db_engine, Chat) == 1

    def test_find_chat_between(self, db_engine, alice, bob, carol, chat):
        assert svc.find_chat_between(db_engine, bob, alice) == chat
        assert svc.find_chat_between(db_engine, alice, carol) is None

    def test_self_chat_rejected(self, db_engine, alice):
        with pytest.raises(ValidationFailed):
            svc.open_chat_with(db_engine, alice, alice)

    def test_unknown_target(self, db_engine, alice):
        with pytest.raises(NotFound):
            svc.open_chat_with(db_engine, alice, "ghost")

    def test_blocked_in_either_direction(self, db_engine, live, alice, bob):
        svc.block_user(db_engine, live, bob, alice)
        with pytest.raises(BlockedRecipient):
            svc.open_chat_with(db_engine, alice, bob)
        with pytest.raises(BlockedRecipient):
            svc.open_chat_with(db_engine, bob, alice)
        assert _count(db_engine, Chat) == 0

    def test_chat_disabled(self, db_engine, alice, make_profile):
        quiet = make_profile("quiet", disable_chat=True)
        with pytest.raises(ChatDisabled):
            svc.open_chat_with(db_engine, alice, quiet)

    def test_participant_failure_leaves_unlisted_orphan(self, db_engine, monkeypatch, alice, bob):
        _fail_nth_commit(monkeypatch, 2)
        with pytest.raises(ChatCreationError) as exc_info:
            svc.open_chat_with(db_engine, alice, bob)
        monkeypatch.undo()

        orphan = exc_info.value.chat_id
        assert _count(db_engine, Chat, Chat.id == orphan) == 1
        assert _count(db_engine, ChatParticipant, ChatParticipant.chat_id == orphan) == 0
        assert svc.list_chats(db_engine, alice) == []
        assert svc.list_chats(db_engine, bob) == []


# ===========================================================================
# Listing
# ===========================================================================
class TestListChats:
    def test_summary_shows_peer_last_message_and_unread(self, db_engine, live, alice, bob, chat):
        svc.send_message(db_engine, live, chat, bob, "one")
        svc.send_message(db_engine, live, chat, bob, "two")

        [summary] = svc.list_chats(db_engine, alice)
        assert summary.other.id == bob
        assert summary.last_message.content == "two"
        assert summary.unread_count == 2

        [bob_view] = svc.list_chats(db_engine, bob)
        assert bob_view.unread_count == 0

    def test_most_recent_activity_first(self, db_engine, live, alice, bob, carol, chat):
        other_chat, _ = svc.open_chat_with(db_engine, alice, carol)
        svc.send_message(db_engine, live, chat, bob, "older")
        svc.send_message(db_engine, live, other_chat, carol, "newer")
        assert [c.id for c in svc.list_chats(db_engine, alice)] == [other_chat, chat]

    def test_hidden_messages_not_counted(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "secret")
        svc.delete_message(db_engine, live, msg.id, alice)
        [summary] = svc.list_chats(db_engine, alice)
        assert summary.unread_count == 0
        assert summary.last_message is None


# ===========================================================================
# Send
# ===========================================================================
class TestSendMessage:
    def test_sent_message_is_read_for_sender_and_loaded_once(self, db_engine, live, alice, chat):
        sent = svc.send_message(db_engine, live, chat, alice, "  hello  ")
        assert sent.is_read is True
        assert sent.content == "hello"

        messages = svc.load_messages(db_engine, chat, alice)
        assert [m.id for m in messages] == [sent.id]

    def test_publishes_insert(self, db_engine, live, published, alice, chat):
        sent = svc.send_message(db_engine, live, chat, alice, "hi")
        [change] = published
        assert change.kind == ChangeKind.INSERT
        assert change.record["id"] == sent.id
        assert change.record["chat_id"] == chat

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_blank_message_rejected_without_write(self, db_engine, live, published, alice, chat, text):
        with pytest.raises(ValidationFailed):
            svc.send_message(db_engine, live, chat, alice, text)
        assert _count(db_engine, Message) == 0
        assert published == []

    def test_non_participant_cannot_send(self, db_engine, live, carol, chat):
        with pytest.raises(NotAParticipant):
            svc.send_message(db_engine, live, chat, carol, "hi")

    def test_blocked_after_chat_exists(self, db_engine, live, alice, bob, chat):
        with Session(db_engine) as session:
            session.add(Block(blocker_id=bob, blocked_user_id=alice))
            session.commit()
        with pytest.raises(BlockedRecipient):
            svc.send_message(db_engine, live, chat, alice, "hi")
        assert _count(db_engine, Message) == 0

    def test_send_without_live_channel(self, db_engine, alice, chat):
        assert svc.send_message(db_engine, None, chat, alice, "quiet").content == "quiet"


# ===========================================================================
# Read state
# ===========================================================================
class TestMarkAsRead:
    def test_marks_peer_messages_and_repeat_is_noop(self, db_engine, live, alice, bob, chat):
        svc.send_message(db_engine, live, chat, bob, "one")
        svc.send_message(db_engine, live, chat, bob, "two")
        svc.send_message(db_engine, live, chat, alice, "mine")

        assert svc.mark_as_read(db_engine, chat, alice) == 2
        assert svc.list_chats(db_engine, alice)[0].unread_count == 0
        assert svc.mark_as_read(db_engine, chat, alice) == 0

    def test_does_not_touch_own_messages(self, db_engine, live, alice, bob, chat):
        svc.send_message(db_engine, live, chat, alice, "mine")
        assert svc.mark_as_read(db_engine, chat, alice) == 0
        [msg] = svc.load_messages(db_engine, chat, bob)
        assert msg.is_read is False


# ===========================================================================
# Delete
# ===========================================================================
class TestDeleteMessage:
    def test_delete_for_me_hides_only_from_me(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "hi")
        svc.delete_message(db_engine, live, msg.id, alice)
        assert svc.load_messages(db_engine, chat, alice) == []
        assert [m.id for m in svc.load_messages(db_engine, chat, bob)] == [msg.id]
        assert svc.get_message(db_engine, msg.id, alice) is None

    def test_delete_for_me_twice_is_idempotent(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "hi")
        svc.delete_message(db_engine, live, msg.id, alice)
        svc.delete_message(db_engine, live, msg.id, alice)
        with Session(db_engine) as session:
            assert session.get(Message, msg.id).deleted_by == [alice]

    def test_delete_for_everyone_removes_reactions_and_publishes(
        self, db_engine, live, published, alice, bob, chat,
    ):
        msg = svc.send_message(db_engine, live, chat, alice, "oops")
        svc.add_reaction(db_engine, msg.id, bob, THUMBS)
        published.clear()

        svc.delete_message(db_engine, live, msg.id, alice, for_everyone=True)
        assert _count(db_engine, Message) == 0
        assert _count(db_engine, MessageReaction) == 0
        [change] = published
        assert change.kind == ChangeKind.DELETE
        assert change.old_record["id"] == msg.id

    def test_second_phase_failure_keeps_message_without_reactions(
        self, db_engine, live, published, monkeypatch, alice, bob, chat,
    ):
        msg = svc.send_message(db_engine, live, chat, alice, "oops")
        svc.add_reaction(db_engine, msg.id, bob, THUMBS)
        published.clear()

        _fail_nth_commit(monkeypatch, 2)
        with pytest.raises(OperationalError):
            svc.delete_message(db_engine, live, msg.id, alice, for_everyone=True)
        monkeypatch.undo()

        assert _count(db_engine, Message, Message.id == msg.id) == 1
        assert _count(db_engine, MessageReaction) == 0
        assert published == []
        [survivor] = svc.load_messages(db_engine, chat, bob)
        assert survivor.id == msg.id
        assert survivor.reactions == ()

    def test_only_sender_deletes_for_everyone(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, alice, "mine")
        with pytest.raises(Forbidden):
            svc.delete_message(db_engine, live, msg.id, bob, for_everyone=True)
        assert _count(db_engine, Message) == 1

    def test_unknown_message(self, db_engine, live, alice):
        with pytest.raises(NotFound):
            svc.delete_message(db_engine, live, "nope", alice)


# ===========================================================================
# Reactions
# ===========================================================================
class TestReactions:
    def test_add_then_remove(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "hi")
        reaction = svc.add_reaction(db_engine, msg.id, alice, THUMBS)
        assert reaction.emoji == THUMBS

        [loaded] = svc.load_messages(db_engine, chat, alice)
        assert [(r.user_id, r.emoji) for r in loaded.reactions] == [(alice, THUMBS)]

        assert svc.remove_reaction(db_engine, msg.id, alice, THUMBS) == 1
        [loaded] = svc.load_messages(db_engine, chat, alice)
        assert loaded.reactions == ()

    def test_duplicate_reaction_returns_existing(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "hi")
        first = svc.add_reaction(db_engine, msg.id, alice, THUMBS)
        second = svc.add_reaction(db_engine, msg.id, alice, THUMBS)
        assert first.id == second.id
        assert _count(db_engine, MessageReaction) == 1

    def test_unsupported_emoji(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "hi")
        with pytest.raises(ValidationFailed):
            svc.add_reaction(db_engine, msg.id, alice, "\U0001f355")

    def test_outsider_cannot_react(self, db_engine, live, bob, carol, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "hi")
        with pytest.raises(NotAParticipant):
            svc.add_reaction(db_engine, msg.id, carol, THUMBS)

    def test_remove_missing_reaction_returns_zero(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "hi")
        assert svc.remove_reaction(db_engine, msg.id, alice, THUMBS) == 0


# ===========================================================================
# Blocks & chat deletion
# ===========================================================================
class TestBlocks:
    def test_block_deletes_chat_and_publishes(self, db_engine, live, published, alice, bob, chat):
        svc.send_message(db_engine, live, chat, bob, "hi")
        published.clear()

        assert svc.block_user(db_engine, live, alice, bob) == chat
        assert _count(db_engine, Chat) == 0
        assert _count(db_engine, Message) == 0
        assert svc.blocked_ids(db_engine, alice) == {bob}
        assert svc.is_blocked_between(db_engine, bob, alice)
        [change] = published
        assert (change.table, change.kind, change.old_record) == (
            "chats", ChangeKind.DELETE, {"id": chat},
        )

    def test_block_is_idempotent(self, db_engine, live, alice, bob):
        assert svc.block_user(db_engine, live, alice, bob) is None
        svc.block_user(db_engine, live, alice, bob)
        assert _count(db_engine, Block) == 1

    def test_cannot_block_self(self, db_engine, live, alice):
        with pytest.raises(ValidationFailed):
            svc.block_user(db_engine, live, alice, alice)

    def test_unblock(self, db_engine, live, alice, bob):
        svc.block_user(db_engine, live, alice, bob)
        assert svc.unblock_user(db_engine, alice, bob) is True
        assert svc.unblock_user(db_engine, alice, bob) is False
        assert not svc.is_blocked_between(db_engine, alice, bob)
        chat_id, created = svc.open_chat_with(db_engine, alice, bob)
        assert created is True


class TestDeleteChat:
    def test_removes_everything(self, db_engine, live, alice, bob, chat):
        msg = svc.send_message(db_engine, live, chat, bob, "hi")
        svc.add_reaction(db_engine, msg.id, alice, THUMBS)
        svc.delete_chat(db_engine, live, chat, alice)
        for model in (Chat, ChatParticipant, Message, MessageReaction):
            assert _count(db_engine, model) == 0
        assert svc.list_chats(db_engine, bob) == []

    def test_outsider_cannot_delete(self, db_engine, live, carol, chat):
        with pytest.raises(NotAParticipant):
            svc.delete_chat(db_engine, live, chat, carol)


# ===========================================================================
# Search
# ===========================================================================
class TestSearchUsers:
    def test_partial_case_insensitive_excludes_self(self, db_engine, alice, bob, make_profile):
        make_profile("bobby")
        found = svc.search_users(db_engine, bob, "BOB")
        assert [u.username for u in found] == ["bobby"]

    def test_matches_display_name(self, db_engine, alice, bob):
        assert [u.id for u in svc.search_users(db_engine, bob, "lic")] == [alice]

    def test_empty_query_returns_nothing(self, db_engine, alice, bob):
        assert svc.search_users(db_engine, alice, "   ") == []

    def test_wildcards_are_literal(self, db_engine, alice, bob):
        assert svc.search_users(db_engine, alice, "%") == []

    def test_limit(self, db_engine, alice, make_profile):
        for i in range(12):
            make_profile(f"dev{i:02d}")
        assert len(svc.search_users(db_engine, alice, "dev")) == 10
