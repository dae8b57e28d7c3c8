from messenger.core.api.base import BaseAPI
from messenger.core.api.permissions import IsAuthenticated

__all__ = ["BaseAPI", "IsAuthenticated"]
