"""Conversation persistence."""
from docchat.memory.manager import (
    ConversationConflict,
    ConversationManager,
    generate_short_title,
)

__all__ = ["ConversationConflict", "ConversationManager", "generate_short_title"]
