"""Chat domain exports."""

from .groups import GroupService
from .messages import MessageService

__all__ = ["GroupService", "MessageService"]
