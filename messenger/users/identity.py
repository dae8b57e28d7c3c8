"""
Identity lookup used by the chat engine.

The chat services never query the user table directly: they go through
these helpers to validate that a user exists and to fetch the display
fields used to enrich participants and senders.
"""

from collections.abc import Iterable
from uuid import UUID

from messenger.core.exceptions import NotFoundError
from messenger.users.models import User


def get_user(user_id: UUID | str) -> User:
    """
    Return the active user with the given id.

    Raises:
        NotFoundError: if no active user has this id
    """
    user = User.objects.filter(id=user_id, is_active=True).first()
    if user is None:
        raise NotFoundError(
            "Utilisateur introuvable.",
            details={"user_id": str(user_id)},
        )
    return user


def get_users(user_ids: Iterable[UUID | str]) -> list[User]:
    """
    Return the active users for ``user_ids``, preserving order and dropping
    duplicates.

    Raises:
        NotFoundError: if any id does not match an active user
    """
    wanted = list(dict.fromkeys(str(uid) for uid in user_ids))
    found = {str(u.id): u for u in User.objects.filter(id__in=wanted, is_active=True)}
    missing = [uid for uid in wanted if uid not in found]
    if missing:
        raise NotFoundError(
            "Un ou plusieurs utilisateurs introuvables.",
            details={"user_ids": missing},
        )
    return [found[uid] for uid in wanted]


def display_name(user: User) -> str:
    """Name shown in conversation lists and system messages."""
    return user.get_full_name()
