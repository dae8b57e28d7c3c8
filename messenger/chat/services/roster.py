"""
Participant roster: who is in a conversation, with which role and
per-user preferences.

Every lookup here only considers active participants. A user who left keeps
a Participant row but is not a participant as far as the engine is concerned.
"""

import logging
from datetime import datetime
from uuid import UUID

from django.utils import timezone

from messenger.chat.models import Participant
from messenger.chat.models import ParticipantRole
from messenger.chat.repositories import ConversationRepository
from messenger.chat.repositories import ParticipantRepository
from messenger.core.exceptions import InvalidOperationError
from messenger.core.exceptions import NotFoundError
from messenger.core.exceptions import NotOwnerError
from messenger.core.exceptions import PermissionDeniedError
from messenger.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

NICKNAME_MAX_LENGTH = 100

# Roles an owner may hand out; ownership only moves when the owner leaves
ASSIGNABLE_ROLES = (ParticipantRole.MEMBER, ParticipantRole.ADMIN)


class ParticipantRoster:
    """Membership, role and preference queries and updates."""

    @staticmethod
    def is_participant(conversation_id: UUID, user_id: UUID) -> bool:
        return ParticipantRepository.active(conversation_id).filter(user_id=user_id).exists()

    @staticmethod
    def role_of(conversation_id: UUID, user_id: UUID) -> str | None:
        participant = ParticipantRepository.get_active(conversation_id, user_id)
        return participant.role if participant else None

    @staticmethod
    def active_participants(conversation_id: UUID) -> list[Participant]:
        return list(
            ParticipantRepository.active(conversation_id)
            .select_related("user")
            .order_by("joined_at", "created")
        )

    @staticmethod
    def active_count(conversation_id: UUID) -> int:
        return ParticipantRepository.active_count(conversation_id)

    @staticmethod
    def require_participant(conversation_id: UUID, user_id: UUID) -> Participant:
        """
        Return the user's active participant record.

        Raises:
            PermissionDeniedError: if the user is not an active participant
        """
        participant = ParticipantRepository.get_active(conversation_id, user_id)
        if participant is None:
            raise PermissionDeniedError(
                "Vous n'êtes pas participant de cette conversation.",
                details={"conversation_id": str(conversation_id)},
            )
        return participant

    @classmethod
    def require_admin(cls, conversation_id: UUID, user_id: UUID) -> Participant:
        """
        Return the user's participant record if they moderate the conversation.

        Raises:
            PermissionDeniedError: if the user is not an active admin or owner
        """
        participant = cls.require_participant(conversation_id, user_id)
        if not participant.is_admin:
            raise PermissionDeniedError(
                "Seuls les administrateurs peuvent effectuer cette action.",
                details={"conversation_id": str(conversation_id)},
            )
        return participant

    @classmethod
    def set_role(cls, conversation_id: UUID, actor_id: UUID, user_id: UUID, role: str) -> Participant:
        """
        Promote or demote a participant. Owner only.

        Raises:
            InvalidOperationError: on direct conversations, or when targeting
                the owner
            NotOwnerError: if the actor is not the owner
            ValidationError: if ``role`` is not member or admin
            NotFoundError: if the target is not an active participant
        """
        conversation = ConversationRepository.get(conversation_id)
        if conversation.is_direct:
            raise InvalidOperationError("Les rôles n'existent que dans les groupes.")

        actor = cls.require_participant(conversation_id, actor_id)
        if actor.role != ParticipantRole.OWNER:
            raise NotOwnerError("Seul le propriétaire du groupe peut modifier les rôles.")

        if role not in ASSIGNABLE_ROLES:
            raise ValidationError(
                "Rôle invalide.",
                details={"role": role, "allowed": list(ASSIGNABLE_ROLES)},
            )

        participant = ParticipantRepository.get_active(conversation_id, user_id)
        if participant is None:
            raise NotFoundError(
                "Participant introuvable.",
                details={"user_id": str(user_id)},
            )
        if participant.role == ParticipantRole.OWNER:
            raise InvalidOperationError("Le rôle du propriétaire ne peut pas être modifié.")

        if participant.role != role:
            ParticipantRepository.set_role(participant, role)
            logger.info(
                "Role of user %s in conversation %s set to %s by %s",
                user_id,
                conversation_id,
                role,
                actor_id,
            )
        return participant

    @classmethod
    def update_preferences(
        cls,
        conversation_id: UUID,
        user_id: UUID,
        nickname: str | None = None,
        muted: bool | None = None,
        mute_until: datetime | None = None,
    ) -> Participant:
        """
        Update the caller's nickname and notification settings.

        Setting ``mute_until`` mutes the conversation until that time;
        unmuting clears it.
        """
        participant = cls.require_participant(conversation_id, user_id)
        update_fields = []

        if nickname is not None:
            nickname = nickname.strip()
            if len(nickname) > NICKNAME_MAX_LENGTH:
                raise ValidationError(
                    "Le surnom est trop long.",
                    details={"max_length": NICKNAME_MAX_LENGTH},
                )
            participant.nickname = nickname
            update_fields.append("nickname")

        if mute_until is not None:
            if mute_until <= timezone.now():
                raise ValidationError("La date de fin de sourdine doit être dans le futur.")
            if muted is False:
                raise ValidationError("Impossible de fixer une fin de sourdine sans mettre en sourdine.")
            participant.muted = True
            participant.mute_until = mute_until
            update_fields += ["muted", "mute_until"]
        elif muted is not None:
            participant.muted = muted
            participant.mute_until = None
            update_fields += ["muted", "mute_until"]

        if update_fields:
            participant.save(update_fields=[*update_fields, "modified"])
        return participant

    @staticmethod
    def expire_mutes(now: datetime | None = None) -> int:
        """Unmute every participant whose ``mute_until`` has passed."""
        count = ParticipantRepository.expire_mutes(now or timezone.now())
        if count:
            logger.info("Expired %d conversation mutes", count)
        return count
