"""
Tests for the conversation directory.
"""

import threading
import uuid

import pytest
from django.db import connection
from django.db import connections

from messenger.chat.models import DIRECT_CONVERSATION_NAME
from messenger.chat.models import Conversation
from messenger.chat.models import ConversationType
from messenger.chat.models import Message
from messenger.chat.models import MessageType
from messenger.chat.models import Participant
from messenger.chat.models import ParticipantRole
from messenger.chat.models import SystemEvent
from messenger.chat.repositories import ConversationRepository
from messenger.chat.services import ConversationDirectory
from messenger.chat.services import MessageStore
from messenger.chat.services import ParticipantRoster
from messenger.core.exceptions import InvalidOperationError
from messenger.core.exceptions import NotFoundError
from messenger.core.exceptions import PermissionDeniedError
from messenger.core.exceptions import ValidationError
from messenger.users.tests.factories import UserFactory


@pytest.mark.django_db
class TestResolveOrCreateDirect:
    """Tests for direct conversation resolution."""

    def test_creates_with_two_members(self, alice, bob):
        """Test a new direct conversation has both users as members."""
        conversation = ConversationDirectory.resolve_or_create_direct(alice.id, bob.id)

        assert conversation.type == ConversationType.DIRECT
        assert conversation.name == DIRECT_CONVERSATION_NAME
        assert conversation.direct_key == "_".join(sorted([str(alice.id), str(bob.id)]))
        roles = dict(Participant.objects.filter(conversation=conversation).values_list("user_id", "role"))
        assert roles == {alice.id: ParticipantRole.MEMBER, bob.id: ParticipantRole.MEMBER}

    def test_idempotent_in_both_orders(self, alice, bob):
        """Test (a, b) and (b, a) resolve to the same conversation."""
        first = ConversationDirectory.resolve_or_create_direct(alice.id, bob.id)
        second = ConversationDirectory.resolve_or_create_direct(bob.id, alice.id)
        third = ConversationDirectory.resolve_or_create_direct(alice.id, bob.id)

        assert first.id == second.id == third.id
        assert Conversation.objects.filter(type=ConversationType.DIRECT).count() == 1

    def test_lost_creation_race_returns_winner(self, alice, bob, monkeypatch):
        """Test a creator that loses the unique-key race reads back the winner."""
        winner = ConversationDirectory.resolve_or_create_direct(alice.id, bob.id)

        real_find = ConversationRepository.find_direct
        calls = []

        def stale_find(direct_key):
            # First lookup misses, as if the winner had not committed yet
            calls.append(direct_key)
            if len(calls) == 1:
                return None
            return real_find(direct_key)

        monkeypatch.setattr(ConversationRepository, "find_direct", staticmethod(stale_find))

        loser = ConversationDirectory.resolve_or_create_direct(bob.id, alice.id)

        assert loser.id == winner.id
        assert len(calls) == 2
        assert Conversation.objects.filter(type=ConversationType.DIRECT).count() == 1
        assert Participant.objects.filter(conversation=winner).count() == 2

    def test_same_user_rejected(self, alice):
        """Test a user cannot open a direct conversation with themselves."""
        with pytest.raises(ValidationError):
            ConversationDirectory.resolve_or_create_direct(alice.id, alice.id)

    def test_unknown_user(self, alice):
        """Test the other user must exist."""
        with pytest.raises(NotFoundError):
            ConversationDirectory.resolve_or_create_direct(alice.id, uuid.uuid4())
        assert not Conversation.objects.exists()


def run_in_threads(target, count: int) -> list[Exception]:
    """Run ``target`` in ``count`` threads started together; return their errors."""
    barrier = threading.Barrier(count)
    errors = []

    def run():
        try:
            barrier.wait()
            target()
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            connections.close_all()

    threads = [threading.Thread(target=run) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return errors


@pytest.mark.concurrency
@pytest.mark.skipif(
    connection.vendor == "sqlite",
    reason="needs a server database: set DATABASE_URL to PostgreSQL and run pytest -m concurrency",
)
@pytest.mark.django_db(transaction=True)
class TestConcurrentWriters:
    """Parallel callers against a database with real row locking."""

    def test_parallel_callers_get_one_conversation(self):
        """Test parallel resolve calls create exactly one conversation."""
        alice = UserFactory()
        bob = UserFactory()
        results = []

        def resolve():
            results.append(ConversationDirectory.resolve_or_create_direct(alice.id, bob.id).id)

        errors = run_in_threads(resolve, 8)

        assert errors == []
        assert len(set(results)) == 1
        assert Conversation.objects.filter(type=ConversationType.DIRECT).count() == 1

    def test_parallel_sends_lose_no_increment(self):
        """Test message_count matches the number of parallel sends."""
        alice = UserFactory()
        bob = UserFactory()
        direct = ConversationDirectory.resolve_or_create_direct(alice.id, bob.id)
        senders = [alice.id, bob.id] * 6

        def send():
            MessageStore.send(direct.id, senders.pop(), content="ping")

        errors = run_in_threads(send, len(senders))

        assert errors == []
        direct.refresh_from_db()
        last = Message.objects.filter(conversation=direct).order_by("-created", "-id").first()
        assert direct.message_count == 12
        assert Message.objects.filter(conversation=direct).count() == 12
        assert direct.last_message_at == last.created


@pytest.mark.django_db
class TestCreateGroup:
    """Tests for group creation."""

    def test_empty_name_rejected(self, alice, bob, carol):
        """Test a group needs a name."""
        with pytest.raises(ValidationError):
            ConversationDirectory.create_group(alice.id, [bob.id, carol.id], "")
        with pytest.raises(ValidationError):
            ConversationDirectory.create_group(alice.id, [bob.id, carol.id], "   ")
        assert not Conversation.objects.exists()

    def test_team_group(self, alice, bob, carol):
        """Test the creator owns the group and the others are members."""
        conversation = ConversationDirectory.create_group(alice.id, [bob.id, carol.id], "Team")

        assert conversation.type == ConversationType.GROUP
        assert conversation.name == "Team"
        assert conversation.direct_key is None
        assert ParticipantRoster.role_of(conversation.id, alice.id) == ParticipantRole.OWNER
        assert ParticipantRoster.role_of(conversation.id, bob.id) == ParticipantRole.MEMBER
        assert ParticipantRoster.role_of(conversation.id, carol.id) == ParticipantRole.MEMBER

    def test_group_created_event(self, alice, bob):
        """Test creation posts a system message and counts it."""
        conversation = ConversationDirectory.create_group(alice.id, [bob.id], "Team")

        event = Message.objects.get(conversation=conversation)
        assert event.type == MessageType.SYSTEM
        assert event.system_type == SystemEvent.GROUP_CREATED
        assert event.sender_id == alice.id
        assert conversation.message_count == 1
        assert conversation.last_message_id == event.id

    def test_duplicates_and_creator_ignored(self, alice, bob):
        """Test the initial roster is deduplicated."""
        conversation = ConversationDirectory.create_group(alice.id, [bob.id, bob.id, alice.id], "Team")
        assert ParticipantRoster.active_count(conversation.id) == 2

    def test_settings(self, alice, bob):
        """Test settings are stored."""
        conversation = ConversationDirectory.create_group(
            alice.id,
            [bob.id],
            "Team",
            settings={"admin_only_messages": True, "max_participants": 10},
            description="Project chat",
        )
        assert conversation.admin_only_messages is True
        assert conversation.max_participants == 10
        assert conversation.allow_invites is True
        assert conversation.description == "Project chat"

    def test_too_many_initial_participants(self, alice, bob, carol):
        """Test the initial roster must fit max_participants."""
        with pytest.raises(ValidationError):
            ConversationDirectory.create_group(
                alice.id,
                [bob.id, carol.id],
                "Team",
                settings={"max_participants": 2},
            )

    def test_unknown_setting(self, alice, bob):
        """Test unknown settings are rejected."""
        with pytest.raises(ValidationError):
            ConversationDirectory.create_group(alice.id, [bob.id], "Team", settings={"theme": "dark"})

    def test_unknown_participant(self, alice):
        """Test every initial participant must exist."""
        with pytest.raises(NotFoundError):
            ConversationDirectory.create_group(alice.id, [uuid.uuid4()], "Team")


@pytest.mark.django_db
class TestAddParticipant:
    """Tests for adding participants."""

    def test_add_member(self, group, dave):
        """Test adding a new member posts user_joined."""
        before = Conversation.objects.get(id=group.id).message_count

        participant = ConversationDirectory.add_participant(group.id, dave.id)

        assert participant.role == ParticipantRole.MEMBER
        assert ParticipantRoster.is_participant(group.id, dave.id)
        event = Message.objects.filter(conversation=group).order_by("-created").first()
        assert event.system_type == SystemEvent.USER_JOINED
        assert event.system_target_id == dave.id
        assert Conversation.objects.get(id=group.id).message_count == before + 1

    def test_add_active_member_is_noop(self, group, bob):
        """Test adding someone already active changes nothing."""
        before = Conversation.objects.get(id=group.id).message_count

        ConversationDirectory.add_participant(group.id, bob.id)

        assert Participant.objects.filter(conversation=group, user=bob).count() == 1
        assert Conversation.objects.get(id=group.id).message_count == before

    def test_reactivates_departed_participant(self, group, bob):
        """Test re-adding a user who left reuses their record."""
        original = Participant.objects.get(conversation=group, user=bob)
        ConversationDirectory.remove_participant(group.id, bob.id)

        participant = ConversationDirectory.add_participant(group.id, bob.id)

        assert participant.id == original.id
        participant.refresh_from_db()
        assert participant.is_active is True
        assert participant.left_at is None
        assert Participant.objects.filter(conversation=group, user=bob).count() == 1

    def test_direct_rejected(self, direct, carol):
        """Test direct conversations have a fixed pair."""
        with pytest.raises(InvalidOperationError):
            ConversationDirectory.add_participant(direct.id, carol.id)

    def test_full_group_rejected(self, alice, bob, carol):
        """Test adding beyond max_participants."""
        conversation = ConversationDirectory.create_group(
            alice.id,
            [bob.id],
            "Pair",
            settings={"max_participants": 2},
        )
        with pytest.raises(InvalidOperationError):
            ConversationDirectory.add_participant(conversation.id, carol.id)

    def test_member_invites_when_allowed(self, group, bob, dave):
        """Test members can invite plain members when invites are on."""
        ConversationDirectory.add_participant(group.id, dave.id, actor_id=bob.id)
        assert ParticipantRoster.is_participant(group.id, dave.id)

    def test_member_cannot_add_admin(self, group, bob, dave):
        """Test members cannot hand out the admin role."""
        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.add_participant(group.id, dave.id, role=ParticipantRole.ADMIN, actor_id=bob.id)

    def test_member_cannot_invite_when_disabled(self, group, alice, bob, dave):
        """Test invites can be restricted to admins."""
        ConversationDirectory.update_group(group.id, alice.id, settings={"allow_invites": False})

        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.add_participant(group.id, dave.id, actor_id=bob.id)
        ConversationDirectory.add_participant(group.id, dave.id, actor_id=alice.id)
        assert ParticipantRoster.is_participant(group.id, dave.id)

    def test_outsider_cannot_add(self, group, dave):
        """Test non-participants cannot add anyone."""
        other = UserFactory()
        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.add_participant(group.id, other.id, actor_id=dave.id)


@pytest.mark.django_db
class TestRemoveParticipant:
    """Tests for removing participants."""

    def test_repeated_remove(self, group, bob):
        """Test the second remove is a no-op and keeps left_at."""
        ConversationDirectory.remove_participant(group.id, bob.id)
        participant = Participant.objects.get(conversation=group, user=bob)
        assert participant.is_active is False
        assert participant.left_at is not None
        left_at = participant.left_at
        count = Conversation.objects.get(id=group.id).message_count

        assert ConversationDirectory.remove_participant(group.id, bob.id) is None

        participant.refresh_from_db()
        assert participant.left_at == left_at
        assert Conversation.objects.get(id=group.id).message_count == count

    def test_user_left_event(self, group, bob):
        """Test leaving posts user_left."""
        ConversationDirectory.remove_participant(group.id, bob.id)
        event = Message.objects.filter(conversation=group).order_by("-created").first()
        assert event.system_type == SystemEvent.USER_LEFT
        assert event.system_target_id == bob.id

    def test_owner_leaving_promotes_admin(self, group, alice, carol):
        """Test the longest-standing admin becomes owner."""
        ParticipantRoster.set_role(group.id, alice.id, carol.id, ParticipantRole.ADMIN)

        ConversationDirectory.remove_participant(group.id, alice.id)

        assert ParticipantRoster.role_of(group.id, carol.id) == ParticipantRole.OWNER
        assert Participant.objects.get(conversation=group, user=alice).role == ParticipantRole.MEMBER

    def test_owner_leaving_promotes_oldest_member(self, group, alice, bob, carol):
        """Test without admins the longest-standing member becomes owner."""
        ConversationDirectory.remove_participant(group.id, alice.id)

        assert ParticipantRoster.role_of(group.id, bob.id) == ParticipantRole.OWNER
        assert ParticipantRoster.role_of(group.id, carol.id) == ParticipantRole.MEMBER

    def test_last_participant_cannot_leave(self, alice):
        """Test a group never ends up empty."""
        conversation = ConversationDirectory.create_group(alice.id, [], "Solo")
        with pytest.raises(InvalidOperationError):
            ConversationDirectory.remove_participant(conversation.id, alice.id)
        assert ParticipantRoster.is_participant(conversation.id, alice.id)

    def test_direct_rejected(self, direct, alice):
        """Test nobody leaves a direct conversation."""
        with pytest.raises(InvalidOperationError):
            ConversationDirectory.remove_participant(direct.id, alice.id)

    def test_admin_removes_member(self, group, alice, bob):
        """Test an admin can remove someone else."""
        ConversationDirectory.remove_participant(group.id, bob.id, actor_id=alice.id)
        assert not ParticipantRoster.is_participant(group.id, bob.id)

    def test_member_cannot_remove_others(self, group, bob, carol):
        """Test members can only remove themselves."""
        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.remove_participant(group.id, carol.id, actor_id=bob.id)
        ConversationDirectory.remove_participant(group.id, bob.id, actor_id=bob.id)
        assert not ParticipantRoster.is_participant(group.id, bob.id)

    def test_owner_cannot_be_removed_by_admin(self, group, alice, bob):
        """Test admins cannot remove the owner."""
        ParticipantRoster.set_role(group.id, alice.id, bob.id, ParticipantRole.ADMIN)
        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.remove_participant(group.id, alice.id, actor_id=bob.id)


@pytest.mark.django_db
class TestUpdateGroup:
    """Tests for group updates."""

    def test_rename_posts_event(self, group, alice):
        """Test renaming stores the name and posts name_changed."""
        conversation = ConversationDirectory.update_group(group.id, alice.id, name="Core team")

        assert conversation.name == "Core team"
        event = Message.objects.filter(conversation=group).order_by("-created").first()
        assert event.system_type == SystemEvent.NAME_CHANGED
        assert event.system_value == "Core team"
        assert conversation.last_message_id == event.id

    def test_photo_change_posts_event(self, group, alice):
        """Test changing the photo posts photo_changed."""
        ConversationDirectory.update_group(group.id, alice.id, photo_url="https://cdn.test/p.png")
        event = Message.objects.filter(conversation=group).order_by("-created").first()
        assert event.system_type == SystemEvent.PHOTO_CHANGED

    def test_same_name_no_event(self, group, alice):
        """Test an unchanged name posts nothing."""
        before = Message.objects.filter(conversation=group).count()
        ConversationDirectory.update_group(group.id, alice.id, name="Team")
        assert Message.objects.filter(conversation=group).count() == before

    def test_member_forbidden(self, group, bob):
        """Test members cannot update the group."""
        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.update_group(group.id, bob.id, name="Mine")

    def test_blank_name_rejected(self, group, alice):
        """Test a group cannot lose its name."""
        with pytest.raises(ValidationError):
            ConversationDirectory.update_group(group.id, alice.id, name=" ")

    def test_max_participants_below_roster(self, group, alice):
        """Test the limit cannot drop below the current roster."""
        with pytest.raises(ValidationError):
            ConversationDirectory.update_group(group.id, alice.id, settings={"max_participants": 2})

    def test_direct_rejected(self, direct, alice):
        """Test direct conversations cannot be updated."""
        with pytest.raises(InvalidOperationError):
            ConversationDirectory.update_group(direct.id, alice.id, name="Us")


@pytest.mark.django_db
class TestAggregate:
    """Tests for the message counter and last-message cache."""

    def test_no_lost_increments(self, direct, alice, bob):
        """Test message_count equals the number of sends."""
        for i in range(10):
            MessageStore.send(direct.id, alice.id if i % 2 else bob.id, content=f"m{i}")

        direct.refresh_from_db()
        last = Message.objects.filter(conversation=direct).order_by("-created").first()
        assert direct.message_count == 10
        assert direct.last_message_id == last.id
        assert direct.last_message_at == last.created
        assert direct.last_message_content == "m9"

    def test_increment_ignores_stale_instances(self, direct, alice):
        """Test increments are computed by the database, not from a stale copy."""
        stale = Conversation.objects.get(id=direct.id)
        MessageStore.send(direct.id, alice.id, content="one")
        message = MessageStore.send(direct.id, alice.id, content="two")

        ConversationDirectory.update_aggregate_on_send(stale.id, message)

        assert stale.message_count == 0
        direct.refresh_from_db()
        assert direct.message_count == 3

    def test_older_message_does_not_replace_cache(self, direct, alice):
        """Test a late writer with an older message keeps the newer cache."""
        older = MessageStore.send(direct.id, alice.id, content="older")
        newer = MessageStore.send(direct.id, alice.id, content="newer")

        ConversationDirectory.update_aggregate_on_send(direct.id, older)

        direct.refresh_from_db()
        assert direct.last_message_id == newer.id
        assert direct.last_message_content == "newer"
        assert direct.message_count == 3


@pytest.mark.django_db
class TestListAndArchive:
    """Tests for listing, archiving and reading conversations."""

    def test_sorted_by_activity(self, alice, bob, carol, dave):
        """Test recent activity first, then empty conversations newest first."""
        with_bob = ConversationDirectory.resolve_or_create_direct(alice.id, bob.id)
        with_carol = ConversationDirectory.resolve_or_create_direct(alice.id, carol.id)
        with_dave = ConversationDirectory.resolve_or_create_direct(alice.id, dave.id)
        MessageStore.send(with_carol.id, alice.id, content="first")
        MessageStore.send(with_bob.id, bob.id, content="second")

        ids = [c.id for c in ConversationDirectory.list_for_user(alice.id)]

        assert ids == [with_bob.id, with_carol.id, with_dave.id]

    def test_departed_conversations_hidden(self, group, bob):
        """Test conversations the user left are not listed."""
        ConversationDirectory.remove_participant(group.id, bob.id)
        assert group.id not in [c.id for c in ConversationDirectory.list_for_user(bob.id)]

    def test_archive_hides_for_user_only(self, direct, alice, bob):
        """Test archiving is per user."""
        assert ConversationDirectory.archive(direct.id, alice.id) is True
        assert ConversationDirectory.archive(direct.id, alice.id) is False

        assert ConversationDirectory.list_for_user(alice.id) == []
        assert [c.id for c in ConversationDirectory.list_for_user(alice.id, include_archived=True)] == [direct.id]
        assert [c.id for c in ConversationDirectory.list_for_user(bob.id)] == [direct.id]
        assert ConversationDirectory.is_archived_by(direct.id, alice.id)

        assert ConversationDirectory.unarchive(direct.id, alice.id) is True
        assert [c.id for c in ConversationDirectory.list_for_user(alice.id)] == [direct.id]

    def test_archive_requires_participant(self, direct, carol):
        """Test outsiders cannot archive."""
        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.archive(direct.id, carol.id)

    def test_get_for_user(self, direct, alice, carol):
        """Test reading a conversation requires membership."""
        assert ConversationDirectory.get_for_user(direct.id, alice.id).id == direct.id
        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.get_for_user(direct.id, carol.id)
        with pytest.raises(NotFoundError):
            ConversationDirectory.get_for_user(uuid.uuid4(), alice.id)


@pytest.mark.django_db
class TestPins:
    """Tests for pinned messages."""

    def test_pin_and_unpin(self, group, alice, bob):
        """Test pins are an ordered idempotent set."""
        first = MessageStore.send(group.id, bob.id, content="first")
        second = MessageStore.send(group.id, bob.id, content="second")

        ConversationDirectory.pin_message(group.id, second.id, alice.id)
        ConversationDirectory.pin_message(group.id, first.id, alice.id)
        pinned = ConversationDirectory.pin_message(group.id, second.id, alice.id)
        assert pinned == [second.id, first.id]

        assert ConversationDirectory.unpin_message(group.id, second.id, alice.id) == [first.id]

    def test_members_cannot_pin_in_groups(self, group, bob):
        """Test only admins pin in groups."""
        message = MessageStore.send(group.id, bob.id, content="hello")
        with pytest.raises(PermissionDeniedError):
            ConversationDirectory.pin_message(group.id, message.id, bob.id)

    def test_anyone_pins_in_direct(self, direct, bob):
        """Test both users can pin in a direct conversation."""
        message = MessageStore.send(direct.id, bob.id, content="hello")
        assert ConversationDirectory.pin_message(direct.id, message.id, bob.id) == [message.id]

    def test_deleted_message_cannot_be_pinned(self, group, alice, bob):
        """Test deleted messages cannot be pinned."""
        message = MessageStore.send(group.id, bob.id, content="oops")
        MessageStore.soft_delete(message.id, bob.id)
        with pytest.raises(InvalidOperationError):
            ConversationDirectory.pin_message(group.id, message.id, alice.id)

    def test_foreign_message(self, group, direct, alice):
        """Test a message of another conversation cannot be pinned."""
        message = MessageStore.send(direct.id, alice.id, content="elsewhere")
        with pytest.raises(NotFoundError):
            ConversationDirectory.pin_message(group.id, message.id, alice.id)
