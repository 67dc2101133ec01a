# sayso/db_async.py

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

logger = logging.getLogger(__name__)

# Columns a client is allowed to change through the update helpers.
USER_UPDATABLE = ("fullname", "username", "email", "bio", "image_url")
POST_UPDATABLE = ("title", "content", "category", "tags", "image_url")

_POST_SELECT = """
    SELECT p.*, u.username AS author_username, u.image_url AS author_image_url
    FROM posts p
    JOIN users u ON u.id = p.user_id
"""

_COMMENT_SELECT = """
    SELECT c.*, u.username AS author_username, u.image_url AS author_image_url
    FROM comments c
    JOIN users u ON u.id = c.user_id
"""


def _with_author(row: aiosqlite.Row) -> Dict[str, Any]:
    data = dict(row)
    data["users"] = {
        "username": data.pop("author_username"),
        "image_url": data.pop("author_image_url"),
    }
    return data


def _post_from_row(row: aiosqlite.Row) -> Dict[str, Any]:
    data = _with_author(row)
    data["tags"] = json.loads(data["tags"]) if data.get("tags") else []
    return data


class Database:
    """
    Asynchronous wrapper for the SQLite database.
    Manages the connection and provides methods for data operations.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        logger.info(f"Database will be initialized at: {self.db_path}")

    async def connect(self):
        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA foreign_keys = ON")
            logger.info("Database connection successful.")
            await self._initialize_schema()
        except Exception as e:
            logger.error(f"Error connecting to database: {e}")
            raise

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("Database connection closed.")

    async def _initialize_schema(self):
        await self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                password TEXT NOT NULL,
                fullname TEXT,
                username TEXT,
                bio TEXT,
                image_url TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS posts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                image_url TEXT,
                like_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS comments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                post_id INTEGER NOT NULL REFERENCES posts (id) ON DELETE CASCADE,
                user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
                content TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS likes (
                post_id INTEGER NOT NULL REFERENCES posts (id) ON DELETE CASCADE,
                user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (post_id, user_id)
            );

            -- posts.like_count always equals the number of rows in likes for that post.
            CREATE TRIGGER IF NOT EXISTS likes_count_insert AFTER INSERT ON likes
            BEGIN
                UPDATE posts SET like_count = like_count + 1 WHERE id = NEW.post_id;
            END;

            CREATE TRIGGER IF NOT EXISTS likes_count_delete AFTER DELETE ON likes
            BEGIN
                UPDATE posts SET like_count = MAX(like_count - 1, 0) WHERE id = OLD.post_id;
            END;
        """)
        await self._conn.commit()
        logger.info("Schema initialized successfully.")

    # --- Users ---

    async def add_user(self, email: str, password: str, fullname: Optional[str] = None,
                       username: Optional[str] = None, bio: Optional[str] = None,
                       image_url: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Adds a new user to the database.
        Returns the new user row as a dict, or None if the email already exists.
        """
        user_id = str(uuid.uuid4())
        try:
            await self._conn.execute(
                "INSERT INTO users (id, email, password, fullname, username, bio, image_url) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (user_id, email, password, fullname, username, bio, image_url)
            )
            await self._conn.commit()
        except aiosqlite.IntegrityError:
            logger.info(f"User with email '{email}' already exists.")
            return None
        logger.info(f"User '{email}' added with ID: {user_id}")
        return dict(await self.get_user_by_id(user_id))

    async def get_user_by_email(self, email: str) -> Optional[aiosqlite.Row]:
        cursor = await self._conn.execute("SELECT * FROM users WHERE email = ?", (email,))
        return await cursor.fetchone()

    async def get_user_by_id(self, user_id: str) -> Optional[aiosqlite.Row]:
        cursor = await self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        return await cursor.fetchone()

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Updates profile fields. Returns None if the new email is taken."""
        assignments, values = self._assignments(fields, USER_UPDATABLE)
        try:
            await self._conn.execute(
                f"UPDATE users SET {assignments} WHERE id = ?", (*values, user_id)
            )
            await self._conn.commit()
        except aiosqlite.IntegrityError:
            logger.info(f"Update of user {user_id} rejected: email already in use.")
            return None
        row = await self.get_user_by_id(user_id)
        return dict(row) if row else None

    # --- Posts ---

    async def create_post(self, user_id: str, title: str, content: str,
                          category: Optional[str] = None, tags: Optional[List[str]] = None,
                          image_url: Optional[str] = None) -> Dict[str, Any]:
        cursor = await self._conn.execute(
            "INSERT INTO posts (user_id, title, content, category, tags, image_url) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, title, content, category, json.dumps(tags or []), image_url)
        )
        await self._conn.commit()
        post_id = cursor.lastrowid
        logger.info(f"Post {post_id} created by {user_id}.")
        return await self.get_post(post_id)

    async def list_posts(self, category: Optional[str] = None,
                         tag: Optional[str] = None) -> List[Dict[str, Any]]:
        """Lists posts newest first, optionally filtered by category and tag."""
        clauses = []
        params: List[Any] = []
        if category:
            clauses.append("p.category = ?")
            params.append(category)
        if tag:
            clauses.append("EXISTS (SELECT 1 FROM json_each(p.tags) WHERE json_each.value = ?)")
            params.append(tag)

        query = _POST_SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY p.created_at DESC, p.id DESC"

        cursor = await self._conn.execute(query, params)
        return [_post_from_row(row) for row in await cursor.fetchall()]

    async def get_post(self, post_id: int) -> Optional[Dict[str, Any]]:
        cursor = await self._conn.execute(_POST_SELECT + " WHERE p.id = ?", (post_id,))
        row = await cursor.fetchone()
        return _post_from_row(row) if row else None

    async def update_post(self, post_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if "tags" in fields:
            fields = {**fields, "tags": json.dumps(fields["tags"])}
        assignments, values = self._assignments(fields, POST_UPDATABLE)
        await self._conn.execute(
            f"UPDATE posts SET {assignments} WHERE id = ?", (*values, post_id)
        )
        await self._conn.commit()
        return await self.get_post(post_id)

    async def delete_post(self, post_id: int) -> bool:
        cursor = await self._conn.execute("DELETE FROM posts WHERE id = ?", (post_id,))
        await self._conn.commit()
        logger.info(f"Post {post_id} deleted.")
        return cursor.rowcount > 0

    # --- Comments ---

    async def add_comment(self, post_id: int, user_id: str, content: str) -> Dict[str, Any]:
        cursor = await self._conn.execute(
            "INSERT INTO comments (post_id, user_id, content) VALUES (?, ?, ?)",
            (post_id, user_id, content)
        )
        await self._conn.commit()
        return await self.get_comment(cursor.lastrowid)

    async def list_comments(self, post_id: int) -> List[Dict[str, Any]]:
        cursor = await self._conn.execute(
            _COMMENT_SELECT + " WHERE c.post_id = ? ORDER BY c.created_at ASC, c.id ASC",
            (post_id,)
        )
        return [_with_author(row) for row in await cursor.fetchall()]

    async def get_comment(self, comment_id: int) -> Optional[Dict[str, Any]]:
        cursor = await self._conn.execute(_COMMENT_SELECT + " WHERE c.id = ?", (comment_id,))
        row = await cursor.fetchone()
        return _with_author(row) if row else None

    async def update_comment(self, comment_id: int, content: str) -> Optional[Dict[str, Any]]:
        await self._conn.execute(
            "UPDATE comments SET content = ? WHERE id = ?", (content, comment_id)
        )
        await self._conn.commit()
        return await self.get_comment(comment_id)

    async def delete_comment(self, comment_id: int) -> bool:
        cursor = await self._conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
        await self._conn.commit()
        return cursor.rowcount > 0

    # --- Likes ---

    async def like_post(self, post_id: int, user_id: str) -> Tuple[bool, int]:
        """
        Records a like. Returns (created, like_count); created is False when
        the user had already liked the post, in which case nothing changes.
        The like_count column is kept in step by the likes triggers.
        """
        cursor = await self._conn.execute(
            "INSERT OR IGNORE INTO likes (post_id, user_id) VALUES (?, ?)",
            (post_id, user_id)
        )
        await self._conn.commit()
        created = cursor.rowcount == 1
        return created, await self._like_count(post_id)

    async def unlike_post(self, post_id: int, user_id: str) -> Tuple[bool, int]:
        cursor = await self._conn.execute(
            "DELETE FROM likes WHERE post_id = ? AND user_id = ?", (post_id, user_id)
        )
        await self._conn.commit()
        removed = cursor.rowcount == 1
        return removed, await self._like_count(post_id)

    async def has_liked(self, post_id: int, user_id: str) -> bool:
        cursor = await self._conn.execute(
            "SELECT 1 FROM likes WHERE post_id = ? AND user_id = ?", (post_id, user_id)
        )
        return await cursor.fetchone() is not None

    async def _like_count(self, post_id: int) -> int:
        cursor = await self._conn.execute("SELECT like_count FROM posts WHERE id = ?", (post_id,))
        row = await cursor.fetchone()
        return row["like_count"] if row else 0

    @staticmethod
    def _assignments(fields: Dict[str, Any], allowed: Iterable[str]) -> Tuple[str, List[Any]]:
        columns = [name for name in allowed if name in fields]
        if not columns:
            raise ValueError("No fields to update")
        return ", ".join(f"{name} = ?" for name in columns), [fields[name] for name in columns]
