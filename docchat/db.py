"""Database initialization and helpers for DocChat.

SQLite database for storing:
- User accounts and their refresh tokens
- Conversations and their ordered messages
- Text chunks of ingested documents, keyed by FAISS vector ID
"""
import sqlite3
import json
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
import structlog

from docchat import config

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection() -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row and
        foreign key enforcement switched on
    """
    conn = sqlite3.connect(config.DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_database() -> None:
    """Initialize the database schema.

    Creates tables if they don't exist:
    - users: accounts with bcrypt password hashes
    - conversations: chat threads owned by a user
    - messages: ordered messages of a conversation
    - chunks: text chunks with owner and source; the row ID is the vector ID
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                refresh_token TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                title TEXT NOT NULL DEFAULT 'New Chat',
                timestamp TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_conversations_user_timestamp
            ON conversations(user_id, timestamp DESC)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                conversation_id TEXT NOT NULL
                    REFERENCES conversations(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                file_name TEXT NOT NULL DEFAULT '',
                url TEXT NOT NULL DEFAULT '',
                timestamp TEXT NOT NULL,
                PRIMARY KEY (conversation_id, position)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                source TEXT NOT NULL,
                source_type TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                char_start INTEGER NOT NULL DEFAULT 0,
                metadata_json TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunks_user_id
            ON chunks(user_id)
        """)

        conn.commit()
        logger.info("database_initialized", db_path=str(config.DB_PATH))

    except Exception as e:
        conn.rollback()
        logger.error("database_init_failed", error=str(e))
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def create_user(user_id: str, username: str, email: str, password_hash: str) -> Dict[str, Any]:
    """Insert a new user.

    Raises:
        sqlite3.IntegrityError: If the email is already registered
    """
    conn = get_connection()
    now = _now()

    try:
        conn.execute("""
            INSERT INTO users (id, username, email, password_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (user_id, username, email, password_hash, now, now))
        conn.commit()
        logger.info("user_created", user_id=user_id)

    except Exception as e:
        conn.rollback()
        logger.error("user_create_failed", error=str(e))
        raise
    finally:
        conn.close()

    return get_user_by_id(user_id)


def _get_user(column: str, value: str) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    try:
        row = conn.execute(f"SELECT * FROM users WHERE {column} = ?", (value,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    return _get_user("email", email)


def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    return _get_user("id", user_id)


def set_refresh_token(user_id: str, refresh_token: Optional[str]) -> None:
    """Store (or clear, with None) the user's current refresh token."""
    conn = get_connection()
    try:
        conn.execute(
            "UPDATE users SET refresh_token = ?, updated_at = ? WHERE id = ?",
            (refresh_token, _now(), user_id),
        )
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error("refresh_token_update_failed", error=str(e), user_id=user_id)
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def _message_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "type": row["type"],
        "content": row["content"],
        "fileName": row["file_name"],
        "url": row["url"],
        "timestamp": row["timestamp"],
    }


def _conversation_from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> Dict[str, Any]:
    message_rows = conn.execute("""
        SELECT * FROM messages
        WHERE conversation_id = ?
        ORDER BY position
    """, (row["id"],)).fetchall()

    return {
        "id": row["id"],
        "title": row["title"],
        "timestamp": row["timestamp"],
        "userId": row["user_id"],
        "messages": [_message_from_row(m) for m in message_rows],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _insert_messages(
    cursor: sqlite3.Cursor,
    conversation_id: str,
    messages: List[Dict[str, Any]],
    start_position: int = 0,
) -> None:
    cursor.executemany("""
        INSERT INTO messages (
            conversation_id, position, id, type, content, file_name, url, timestamp
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, [
        (
            conversation_id,
            start_position + offset,
            message["id"],
            message["type"],
            message.get("content") or "",
            message.get("fileName") or "",
            message.get("url") or "",
            message["timestamp"],
        )
        for offset, message in enumerate(messages)
    ])


def get_conversation(
    conversation_id: str, user_id: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """Fetch a conversation with its messages.

    Args:
        conversation_id: Conversation ID (globally unique)
        user_id: If given, only return the conversation when this user owns it

    Returns:
        Conversation dictionary or None
    """
    conn = get_connection()
    try:
        if user_id is None:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()

        return _conversation_from_row(conn, row) if row else None
    finally:
        conn.close()


def create_conversation(
    conversation_id: str,
    user_id: str,
    title: str,
    messages: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """Create a conversation and its messages in one transaction."""
    conn = get_connection()
    cursor = conn.cursor()
    now = _now()

    try:
        cursor.execute("""
            INSERT INTO conversations (id, user_id, title, timestamp, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (conversation_id, user_id, title, now, now, now))
        _insert_messages(cursor, conversation_id, messages)
        conn.commit()

    except Exception as e:
        conn.rollback()
        logger.error("conversation_create_failed", error=str(e), conversation_id=conversation_id)
        raise
    finally:
        conn.close()

    return get_conversation(conversation_id, user_id)


def replace_conversation(
    conversation_id: str,
    user_id: str,
    title: str,
    messages: List[Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    """Overwrite title and messages and bump the conversation timestamp."""
    conn = get_connection()
    cursor = conn.cursor()
    now = _now()

    try:
        cursor.execute("""
            UPDATE conversations
            SET title = ?, timestamp = ?, updated_at = ?
            WHERE id = ? AND user_id = ?
        """, (title, now, now, conversation_id, user_id))

        if cursor.rowcount == 0:
            conn.rollback()
            return None

        cursor.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
        _insert_messages(cursor, conversation_id, messages)
        conn.commit()

    except Exception as e:
        conn.rollback()
        logger.error("conversation_replace_failed", error=str(e), conversation_id=conversation_id)
        raise
    finally:
        conn.close()

    return get_conversation(conversation_id, user_id)


def update_conversation_title(conversation_id: str, user_id: str, title: str) -> bool:
    conn = get_connection()
    try:
        cursor = conn.execute("""
            UPDATE conversations SET title = ?, updated_at = ?
            WHERE id = ? AND user_id = ?
        """, (title, _now(), conversation_id, user_id))
        conn.commit()
        return cursor.rowcount > 0
    except Exception as e:
        conn.rollback()
        logger.error("conversation_title_update_failed", error=str(e))
        raise
    finally:
        conn.close()


def append_message(conversation_id: str, user_id: str, message: Dict[str, Any]) -> bool:
    """Append a message at the end of a conversation.

    Returns:
        False if the conversation does not exist for this user
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        owner = cursor.execute(
            "SELECT 1 FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        ).fetchone()
        if not owner:
            return False

        next_position = cursor.execute(
            "SELECT COALESCE(MAX(position) + 1, 0) FROM messages WHERE conversation_id = ?",
            (conversation_id,),
        ).fetchone()[0]

        _insert_messages(cursor, conversation_id, [message], start_position=next_position)
        cursor.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (_now(), conversation_id),
        )
        conn.commit()
        return True

    except Exception as e:
        conn.rollback()
        logger.error("message_append_failed", error=str(e), conversation_id=conversation_id)
        raise
    finally:
        conn.close()


def delete_conversation(conversation_id: str, user_id: str) -> bool:
    conn = get_connection()
    try:
        cursor = conn.execute(
            "DELETE FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        )
        conn.commit()
        return cursor.rowcount > 0
    except Exception as e:
        conn.rollback()
        logger.error("conversation_delete_failed", error=str(e))
        raise
    finally:
        conn.close()


def list_conversations(user_id: str) -> List[Dict[str, Any]]:
    """List a user's conversations, most recently saved first."""
    conn = get_connection()
    try:
        rows = conn.execute("""
            SELECT * FROM conversations
            WHERE user_id = ?
            ORDER BY timestamp DESC, rowid DESC
        """, (user_id,)).fetchall()
        return [_conversation_from_row(conn, row) for row in rows]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

def insert_chunks(user_id: str, chunks: List[Dict[str, Any]]) -> List[int]:
    """Insert a batch of chunks in one transaction.

    Args:
        user_id: Owner of the chunks
        chunks: Dicts with source, source_type, chunk_index, content,
            char_start and an optional metadata dict

    Returns:
        Row IDs in input order (used as FAISS vector IDs)
    """
    if not chunks:
        return []

    conn = get_connection()
    cursor = conn.cursor()
    now = _now()

    try:
        row_ids = []
        for chunk in chunks:
            cursor.execute("""
                INSERT INTO chunks (
                    user_id, source, source_type, chunk_index,
                    content, char_start, metadata_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                user_id,
                chunk["source"],
                chunk["source_type"],
                chunk["chunk_index"],
                chunk["content"],
                chunk.get("char_start", 0),
                json.dumps(chunk["metadata"]) if chunk.get("metadata") else None,
                now,
            ))
            row_ids.append(cursor.lastrowid)

        conn.commit()
        logger.info("chunks_inserted", user_id=user_id, count=len(row_ids))
        return row_ids

    except Exception as e:
        conn.rollback()
        logger.error("chunk_insert_failed", error=str(e), user_id=user_id)
        raise
    finally:
        conn.close()


def get_chunks_by_ids(
    chunk_ids: List[int], user_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Retrieve chunks by their IDs, optionally restricted to one owner.

    Returns:
        List of chunk dictionaries with a parsed "metadata" dict
    """
    if not chunk_ids:
        return []

    conn = get_connection()

    try:
        placeholders = ",".join("?" * len(chunk_ids))
        query = f"SELECT * FROM chunks WHERE id IN ({placeholders})"
        params: List[Any] = list(chunk_ids)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)

        chunks = []
        for row in conn.execute(query, params).fetchall():
            chunk = dict(row)
            chunk["metadata"] = json.loads(chunk["metadata_json"]) if chunk["metadata_json"] else {}
            chunks.append(chunk)
        return chunks

    except Exception as e:
        logger.error("chunks_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_chunk_ids_for_user(user_id: str) -> List[int]:
    conn = get_connection()
    try:
        rows = conn.execute("SELECT id FROM chunks WHERE user_id = ?", (user_id,)).fetchall()
        return [row["id"] for row in rows]
    finally:
        conn.close()


def delete_chunks(chunk_ids: List[int]) -> int:
    """Delete chunks by ID.

    Returns:
        Number of rows deleted
    """
    if not chunk_ids:
        return 0

    conn = get_connection()
    try:
        placeholders = ",".join("?" * len(chunk_ids))
        cursor = conn.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", list(chunk_ids))
        conn.commit()
        logger.info("chunks_deleted", count=cursor.rowcount)
        return cursor.rowcount
    except Exception as e:
        conn.rollback()
        logger.error("chunks_delete_failed", error=str(e))
        raise
    finally:
        conn.close()


def count_chunks(user_id: Optional[str] = None) -> int:
    conn = get_connection()
    try:
        if user_id is None:
            row = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM chunks WHERE user_id = ?", (user_id,)).fetchone()
        return row[0]
    finally:
        conn.close()


def list_sources(user_id: str) -> List[Dict[str, Any]]:
    """Summarize a user's knowledge base by source."""
    conn = get_connection()
    try:
        rows = conn.execute("""
            SELECT source, source_type, COUNT(*) AS chunks, MAX(created_at) AS ingested_at
            FROM chunks
            WHERE user_id = ?
            GROUP BY source, source_type
            ORDER BY ingested_at DESC
        """, (user_id,)).fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()
