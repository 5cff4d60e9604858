from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence

import aiosqlite

# Author: Daniel Neugent

VISIBILITIES = ("public", "private")

IMAGE_COLUMNS = """
    images.id, images.owner_id, images.storage_key, images.filename,
    images.extension, images.size_bytes, images.width, images.height,
    images.mime_type, images.checksum, images.visibility, images.created_at,
    images.updated_at, profiles.display_name AS owner_display_name
"""

IMAGE_SOURCE = "images JOIN profiles ON profiles.id = images.owner_id"

PROFILE_COLUMNS = """
    id, username, display_name, avatar_url, sharex_default_visibility,
    sharex_auto_copy_link, created_at, updated_at
"""


@dataclass
class ProfileRecord:
    id: int
    username: str
    display_name: Optional[str]
    avatar_url: Optional[str]
    sharex_default_visibility: str
    sharex_auto_copy_link: bool
    created_at: str
    updated_at: str


@dataclass
class ImageRecord:
    id: int
    owner_id: int
    storage_key: str
    filename: str
    extension: str
    size_bytes: int
    width: Optional[int]
    height: Optional[int]
    mime_type: str
    checksum: str
    visibility: str
    created_at: str
    updated_at: str
    owner_display_name: Optional[str] = None


@dataclass
class ApiTokenRecord:
    id: int
    owner_id: int
    token_hash: str
    description: Optional[str]
    last_used_at: Optional[str]
    created_at: str


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _profile_from_row(row: aiosqlite.Row) -> ProfileRecord:
    values = dict(row)
    values["sharex_auto_copy_link"] = bool(values["sharex_auto_copy_link"])
    return ProfileRecord(**values)


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Database:
    """Lightweight wrapper around aiosqlite for profiles, images and API tokens."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with foreign-key support enabled."""
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON;")
            yield conn

    async def initialize(self) -> None:
        """Create directories and ensure every table exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    display_name TEXT,
                    avatar_url TEXT,
                    sharex_default_visibility TEXT NOT NULL DEFAULT 'private'
                        CHECK (sharex_default_visibility IN ('public', 'private')),
                    sharex_auto_copy_link INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS images (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER NOT NULL,
                    storage_key TEXT NOT NULL UNIQUE,
                    filename TEXT NOT NULL,
                    extension TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    width INTEGER NULL,
                    height INTEGER NULL,
                    mime_type TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    visibility TEXT NOT NULL DEFAULT 'public'
                        CHECK (visibility IN ('public', 'private')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (owner_id) REFERENCES profiles(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_images_owner ON images(owner_id)"
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_tokens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER NOT NULL,
                    token_hash TEXT NOT NULL UNIQUE,
                    description TEXT,
                    last_used_at TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (owner_id) REFERENCES profiles(id) ON DELETE CASCADE
                )
                """
            )
            await conn.commit()

    async def fetch_one(
        self, query: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """Execute a single-row SELECT statement with given parameters."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def fetch_all(self, query: str, params: Sequence[Any]) -> list[aiosqlite.Row]:
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def _execute(self, query: str, params: Sequence[Any]) -> aiosqlite.Cursor:
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor

    async def create_profile(
        self,
        username: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        sharex_default_visibility: str = "private",
    ) -> ProfileRecord:
        """Insert a profile row (normally done when the identity provider signs someone up)."""
        now = _now_iso()
        cursor = await self._execute(
            """
            INSERT INTO profiles (
                username, display_name, avatar_url, sharex_default_visibility,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (username, display_name, avatar_url, sharex_default_visibility, now, now),
        )
        if cursor.lastrowid is None:
            raise RuntimeError("Failed to read the inserted profile ID.")
        return ProfileRecord(
            id=int(cursor.lastrowid),
            username=username,
            display_name=display_name,
            avatar_url=avatar_url,
            sharex_default_visibility=sharex_default_visibility,
            sharex_auto_copy_link=True,
            created_at=now,
            updated_at=now,
        )

    async def fetch_profile_by_id(self, profile_id: int) -> Optional[ProfileRecord]:
        row = await self.fetch_one(
            f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = ?",
            (profile_id,),
        )
        return _profile_from_row(row) if row else None

    async def fetch_profile_by_username(self, username: str) -> Optional[ProfileRecord]:
        row = await self.fetch_one(
            f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE username = ?",
            (username,),
        )
        return _profile_from_row(row) if row else None

    async def update_profile(
        self,
        profile_id: int,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        sharex_default_visibility: Optional[str] = None,
        sharex_auto_copy_link: Optional[bool] = None,
    ) -> Optional[ProfileRecord]:
        """Apply the settings that were given and return the updated profile.

        ``None`` leaves a field unchanged; an empty string clears
        ``display_name`` or ``avatar_url``. Returns ``None`` for an unknown id.
        """
        if (
            sharex_default_visibility is not None
            and sharex_default_visibility not in VISIBILITIES
        ):
            raise ValueError(f"sharex_default_visibility must be one of {VISIBILITIES}")
        changes: dict[str, Any] = {}
        if display_name is not None:
            changes["display_name"] = display_name.strip() or None
        if avatar_url is not None:
            changes["avatar_url"] = avatar_url.strip() or None
        if sharex_default_visibility is not None:
            changes["sharex_default_visibility"] = sharex_default_visibility
        if sharex_auto_copy_link is not None:
            changes["sharex_auto_copy_link"] = int(sharex_auto_copy_link)
        if changes:
            changes["updated_at"] = _now_iso()
            assignments = ", ".join(f"{column} = ?" for column in changes)
            await self._execute(
                f"UPDATE profiles SET {assignments} WHERE id = ?",
                (*changes.values(), profile_id),
            )
        return await self.fetch_profile_by_id(profile_id)

    async def create_image(
        self,
        *,
        owner_id: int,
        storage_key: str,
        filename: str,
        extension: str,
        size_bytes: int,
        mime_type: str,
        checksum: str,
        visibility: str = "public",
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> ImageRecord:
        """Insert image metadata and return the constructed dataclass."""
        now = _now_iso()
        cursor = await self._execute(
            """
            INSERT INTO images (
                owner_id, storage_key, filename, extension, size_bytes, width,
                height, mime_type, checksum, visibility, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                owner_id,
                storage_key,
                filename,
                extension,
                size_bytes,
                width,
                height,
                mime_type,
                checksum,
                visibility,
                now,
                now,
            ),
        )
        if cursor.lastrowid is None:
            raise RuntimeError("Failed to read the inserted image ID.")
        return ImageRecord(
            id=int(cursor.lastrowid),
            owner_id=owner_id,
            storage_key=storage_key,
            filename=filename,
            extension=extension,
            size_bytes=size_bytes,
            width=width,
            height=height,
            mime_type=mime_type,
            checksum=checksum,
            visibility=visibility,
            created_at=now,
            updated_at=now,
        )

    async def fetch_image(self, image_id: int) -> Optional[ImageRecord]:
        row = await self.fetch_one(
            f"SELECT {IMAGE_COLUMNS} FROM {IMAGE_SOURCE} WHERE images.id = ?",
            (image_id,),
        )
        return ImageRecord(**row) if row else None

    async def list_public_images(
        self, *, limit: int = 24, offset: int = 0, q: Optional[str] = None
    ) -> list[ImageRecord]:
        """Newest public images first, for the shared gallery.

        ``q`` keeps images whose filename or uploader display name contains
        it, ignoring ASCII case.
        """
        search_clause = ""
        params: list[Any] = []
        if q and q.strip():
            pattern = _like_pattern(q.strip())
            search_clause = (
                "AND (images.filename LIKE ? ESCAPE '\\'"
                " OR COALESCE(profiles.display_name, '') LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        rows = await self.fetch_all(
            f"""
            SELECT {IMAGE_COLUMNS} FROM {IMAGE_SOURCE}
            WHERE images.visibility = 'public' {search_clause}
            ORDER BY images.created_at DESC, images.id DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return [ImageRecord(**row) for row in rows]

    async def list_images_for_owner(
        self,
        owner_id: int,
        *,
        include_private: bool = False,
        limit: int = 24,
        offset: int = 0,
    ) -> list[ImageRecord]:
        visibility_clause = "" if include_private else "AND images.visibility = 'public'"
        rows = await self.fetch_all(
            f"""
            SELECT {IMAGE_COLUMNS} FROM {IMAGE_SOURCE}
            WHERE images.owner_id = ? {visibility_clause}
            ORDER BY images.created_at DESC, images.id DESC
            LIMIT ? OFFSET ?
            """,
            (owner_id, limit, offset),
        )
        return [ImageRecord(**row) for row in rows]

    async def update_image_visibility(self, image_id: int, visibility: str) -> bool:
        """Flip an image between public and private; False when it does not exist."""
        if visibility not in VISIBILITIES:
            raise ValueError(f"visibility must be one of {VISIBILITIES}")
        cursor = await self._execute(
            "UPDATE images SET visibility = ?, updated_at = ? WHERE id = ?",
            (visibility, _now_iso(), image_id),
        )
        return cursor.rowcount > 0

    async def delete_image(self, image_id: int) -> bool:
        cursor = await self._execute("DELETE FROM images WHERE id = ?", (image_id,))
        return cursor.rowcount > 0

    async def fetch_api_token_by_hash(self, token_hash: str) -> Optional[ApiTokenRecord]:
        """Look up an API token by the SHA-256 digest of its secret."""
        row = await self.fetch_one(
            """
            SELECT id, owner_id, token_hash, description, last_used_at, created_at
            FROM api_tokens WHERE token_hash = ?
            """,
            (token_hash,),
        )
        return ApiTokenRecord(**row) if row else None

    async def touch_api_token(self, token_id: int, last_used_at: Optional[str] = None) -> None:
        """Update the token activity timestamp."""
        await self._execute(
            "UPDATE api_tokens SET last_used_at = ? WHERE id = ?",
            (last_used_at or _now_iso(), token_id),
        )
