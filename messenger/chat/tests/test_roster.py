"""
Tests for the participant roster.
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from messenger.chat.models import Participant
from messenger.chat.models import ParticipantRole
from messenger.chat.services import ConversationDirectory
from messenger.chat.services import ParticipantRoster
from messenger.core.exceptions import InvalidOperationError
from messenger.core.exceptions import NotFoundError
from messenger.core.exceptions import NotOwnerError
from messenger.core.exceptions import PermissionDeniedError
from messenger.core.exceptions import ValidationError


@pytest.mark.django_db
class TestLookups:
    """Tests for membership lookups."""

    def test_is_participant(self, group, alice, dave):
        """Test active participants are recognized, others are not."""
        assert ParticipantRoster.is_participant(group.id, alice.id) is True
        assert ParticipantRoster.is_participant(group.id, dave.id) is False

    def test_role_of(self, group, alice, bob, dave):
        """Test roles of owner, member and outsider."""
        assert ParticipantRoster.role_of(group.id, alice.id) == ParticipantRole.OWNER
        assert ParticipantRoster.role_of(group.id, bob.id) == ParticipantRole.MEMBER
        assert ParticipantRoster.role_of(group.id, dave.id) is None

    def test_inactive_participant_excluded(self, group, bob):
        """Test a user who left is no longer a participant."""
        ConversationDirectory.remove_participant(group.id, bob.id)

        assert ParticipantRoster.is_participant(group.id, bob.id) is False
        assert ParticipantRoster.role_of(group.id, bob.id) is None
        assert ParticipantRoster.active_count(group.id) == 2
        assert bob.id not in [p.user_id for p in ParticipantRoster.active_participants(group.id)]
        # The row is kept
        assert Participant.objects.filter(conversation=group, user=bob).exists()

    def test_require_participant(self, group, dave):
        """Test outsiders are forbidden."""
        with pytest.raises(PermissionDeniedError):
            ParticipantRoster.require_participant(group.id, dave.id)

    def test_require_admin(self, group, alice, bob):
        """Test only admins and the owner pass require_admin."""
        assert ParticipantRoster.require_admin(group.id, alice.id).role == ParticipantRole.OWNER
        with pytest.raises(PermissionDeniedError):
            ParticipantRoster.require_admin(group.id, bob.id)


@pytest.mark.django_db
class TestSetRole:
    """Tests for promotion and demotion."""

    def test_owner_promotes_and_demotes(self, group, alice, bob):
        """Test the owner can make a member admin and back."""
        participant = ParticipantRoster.set_role(group.id, alice.id, bob.id, ParticipantRole.ADMIN)
        assert participant.role == ParticipantRole.ADMIN
        assert ParticipantRoster.role_of(group.id, bob.id) == ParticipantRole.ADMIN

        ParticipantRoster.set_role(group.id, alice.id, bob.id, ParticipantRole.MEMBER)
        assert ParticipantRoster.role_of(group.id, bob.id) == ParticipantRole.MEMBER

    def test_admin_cannot_set_roles(self, group, alice, bob, carol):
        """Test only the owner manages roles."""
        ParticipantRoster.set_role(group.id, alice.id, bob.id, ParticipantRole.ADMIN)
        with pytest.raises(NotOwnerError):
            ParticipantRoster.set_role(group.id, bob.id, carol.id, ParticipantRole.ADMIN)

    def test_owner_role_cannot_be_granted(self, group, alice, bob):
        """Test ownership is not assignable."""
        with pytest.raises(ValidationError):
            ParticipantRoster.set_role(group.id, alice.id, bob.id, ParticipantRole.OWNER)

    def test_owner_role_cannot_be_changed(self, group, alice):
        """Test the owner cannot demote themselves."""
        with pytest.raises(InvalidOperationError):
            ParticipantRoster.set_role(group.id, alice.id, alice.id, ParticipantRole.MEMBER)

    def test_target_must_be_active(self, group, alice, dave):
        """Test setting the role of an outsider."""
        with pytest.raises(NotFoundError):
            ParticipantRoster.set_role(group.id, alice.id, dave.id, ParticipantRole.ADMIN)

    def test_direct_conversation_has_no_roles(self, direct, alice, bob):
        """Test roles cannot be changed in direct conversations."""
        with pytest.raises(InvalidOperationError):
            ParticipantRoster.set_role(direct.id, alice.id, bob.id, ParticipantRole.ADMIN)


@pytest.mark.django_db
class TestPreferences:
    """Tests for per-user preferences and mute expiry."""

    def test_nickname(self, group, bob):
        """Test setting a nickname."""
        participant = ParticipantRoster.update_preferences(group.id, bob.id, nickname="  Bobby ")
        assert participant.nickname == "Bobby"

    def test_nickname_too_long(self, group, bob):
        """Test nickname length is limited."""
        with pytest.raises(ValidationError):
            ParticipantRoster.update_preferences(group.id, bob.id, nickname="x" * 101)

    def test_mute_until_implies_muted(self, group, bob):
        """Test a mute deadline mutes the conversation."""
        until = timezone.now() + timedelta(hours=1)
        participant = ParticipantRoster.update_preferences(group.id, bob.id, mute_until=until)
        participant.refresh_from_db()
        assert participant.muted is True
        assert participant.mute_until == until

    def test_mute_until_in_past_rejected(self, group, bob):
        """Test a mute deadline must be in the future."""
        with pytest.raises(ValidationError):
            ParticipantRoster.update_preferences(
                group.id,
                bob.id,
                mute_until=timezone.now() - timedelta(minutes=1),
            )

    def test_unmute_clears_deadline(self, group, bob):
        """Test unmuting drops the deadline."""
        ParticipantRoster.update_preferences(group.id, bob.id, mute_until=timezone.now() + timedelta(hours=1))
        participant = ParticipantRoster.update_preferences(group.id, bob.id, muted=False)
        assert participant.muted is False
        assert participant.mute_until is None

    def test_outsider_rejected(self, group, dave):
        """Test non-participants have no preferences."""
        with pytest.raises(PermissionDeniedError):
            ParticipantRoster.update_preferences(group.id, dave.id, muted=True)

    def test_expire_mutes(self, group, bob, carol):
        """Test expired mutes are lifted and others kept."""
        Participant.objects.filter(conversation=group, user=bob).update(
            muted=True,
            mute_until=timezone.now() - timedelta(minutes=5),
        )
        Participant.objects.filter(conversation=group, user=carol).update(
            muted=True,
            mute_until=timezone.now() + timedelta(hours=5),
        )

        assert ParticipantRoster.expire_mutes() == 1

        bob_participant = Participant.objects.get(conversation=group, user=bob)
        carol_participant = Participant.objects.get(conversation=group, user=carol)
        assert bob_participant.muted is False
        assert bob_participant.mute_until is None
        assert carol_participant.muted is True
