"""Conversation manager for DocChat.

Handles per-user conversation persistence, titles, and the conversation
history handed to the LLM for follow-up questions.
"""
import re
import sqlite3
from typing import List, Dict, Any, Optional
import structlog

from docchat import config, db

logger = structlog.get_logger()

DEFAULT_TITLE = "New Chat"

TITLE_STOPWORDS = {
    "the", "is", "at", "which", "on", "a", "an", "and", "or", "for", "to",
    "of", "in", "with", "by", "from", "about", "as", "into", "like",
    "through", "after", "over", "between", "out", "against", "during",
    "without", "before", "under", "around", "among", "can", "you", "me",
    "please", "what", "how", "why", "who", "when", "where", "do", "does",
    "did", "are", "was", "were", "has", "have", "had",
}


class ConversationConflict(Exception):
    """Raised when a conversation ID is already owned by another user."""


def generate_short_title(text: str, fallback: Optional[str] = None) -> str:
    """Build a three-word title from a message.

    Punctuation and stopwords are dropped and each kept word is capitalised.
    An empty result falls back to a title built from fallback, then to
    "New Chat".
    """
    words = [
        word
        for word in re.sub(r"[.,!?\-]", "", text or "").split()
        if word.lower() not in TITLE_STOPWORDS
    ]
    if not words:
        if fallback:
            return generate_short_title(fallback)
        return DEFAULT_TITLE
    return " ".join(word[:1].upper() + word[1:] for word in words[:3])


class ConversationManager:
    """Manages a user's conversations and their messages."""

    def __init__(self, context_window_size: int = None):
        """Initialize the conversation manager.

        Args:
            context_window_size: Number of recent messages to include in LLM context
        """
        self.context_window_size = (
            config.CONVERSATION_CONTEXT_MESSAGES if context_window_size is None else context_window_size
        )

    def save_conversation(
        self,
        user_id: str,
        conversation_id: str,
        messages: List[Dict[str, Any]],
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a conversation or overwrite an existing one.

        An existing conversation keeps its title unless a new one is given.
        A new conversation without a title gets one from its first user message.

        Raises:
            ConversationConflict: If another user owns conversation_id
        """
        existing = db.get_conversation(conversation_id, user_id)

        if existing:
            conversation = db.replace_conversation(
                conversation_id, user_id, title or existing["title"], messages
            )
            logger.info(
                "conversation_updated",
                conversation_id=conversation_id,
                message_count=len(messages),
            )
            return conversation

        if db.get_conversation(conversation_id) is not None:
            raise ConversationConflict(f"Conversation ID {conversation_id} is already in use")

        if not title:
            first_user_message = next(
                (m["content"] for m in messages if m["type"] == "user" and m.get("content")),
                None,
            )
            title = generate_short_title(first_user_message) if first_user_message else DEFAULT_TITLE

        try:
            conversation = db.create_conversation(conversation_id, user_id, title, messages)
        except sqlite3.IntegrityError as e:
            # Lost a race with another save of the same ID
            raise ConversationConflict(f"Conversation ID {conversation_id} is already in use") from e

        logger.info(
            "conversation_created",
            conversation_id=conversation_id,
            message_count=len(messages),
        )
        return conversation

    def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        return db.list_conversations(user_id)

    def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
        return db.get_conversation(conversation_id, user_id)

    def delete_conversation(self, user_id: str, conversation_id: str) -> bool:
        """Delete a conversation and all its messages.

        Returns:
            True if deleted, False if not found
        """
        deleted = db.delete_conversation(conversation_id, user_id)
        if deleted:
            logger.info("conversation_deleted", conversation_id=conversation_id)
        return deleted

    def update_title(
        self, user_id: str, conversation_id: str, title: str
    ) -> Optional[Dict[str, Any]]:
        """Rename a conversation.

        Returns:
            The updated conversation, or None if not found
        """
        if not db.update_conversation_title(conversation_id, user_id, title):
            return None
        logger.info("conversation_title_updated", conversation_id=conversation_id)
        return db.get_conversation(conversation_id, user_id)

    def add_message(
        self, user_id: str, conversation_id: str, message: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Append a message.

        Returns:
            The updated conversation, or None if not found
        """
        if not db.append_message(conversation_id, user_id, message):
            return None
        logger.info(
            "conversation_message_added",
            conversation_id=conversation_id,
            message_type=message["type"],
        )
        return db.get_conversation(conversation_id, user_id)

    def format_history(
        self,
        user_id: str,
        conversation_id: str,
        pending_question: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        """Recent user and AI turns formatted for the LLM.

        Upload notices, URL notices and error messages are left out.

        Args:
            user_id: Owner of the conversation
            conversation_id: Conversation to read
            pending_question: The question about to be asked. When the client
                already saved it as the last user turn it is dropped, so the
                window still holds context_window_size earlier turns.

        Returns:
            List of {'role', 'content'} dicts in chronological order
        """
        conversation = db.get_conversation(conversation_id, user_id)
        if not conversation:
            return []

        roles = {"user": "user", "ai": "assistant"}
        turns = [
            {"role": roles[m["type"]], "content": m["content"]}
            for m in conversation["messages"]
            if m["type"] in roles and m["content"]
        ]
        if pending_question and turns and turns[-1] == {"role": "user", "content": pending_question}:
            turns.pop()

        size = self.context_window_size
        history = turns[-size:] if size > 0 else []

        logger.debug(
            "conversation_history_formatted",
            conversation_id=conversation_id,
            message_count=len(history),
        )
        return history
