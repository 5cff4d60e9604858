from __future__ import annotations

import hashlib
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from itsdangerous import BadData, URLSafeTimedSerializer

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "snapshelf_session"
DEFAULT_MAX_AGE = 60 * 60 * 24 * 7  # 1 week
MIN_API_TOKEN_LENGTH = 32
BEARER_PREFIX = "Bearer "


@dataclass
class Session:
    token: str
    user_id: int


def _load_secret_key() -> str:
    """Use the configured signing secret, or a throwaway one for local runs."""
    secret = os.getenv("SNAPSHELF_SECRET_KEY")
    if secret:
        return secret
    logger.warning(
        "using a randomly generated signing secret; sessions will break when "
        "the process restarts. Set SNAPSHELF_SECRET_KEY to a fixed value."
    )
    return secrets.token_urlsafe(32)


class SessionManager:
    """Validates signed session cookies issued by the identity provider."""

    def __init__(
        self,
        *,
        secret: Optional[str] = None,
        expiration: timedelta | int = DEFAULT_MAX_AGE,
    ) -> None:
        raw_secret = secret or _load_secret_key()
        self.serializer = URLSafeTimedSerializer(raw_secret, salt="snapshelf.session")
        self.expiration_seconds = int(
            expiration.total_seconds()
            if isinstance(expiration, timedelta)
            else expiration
        )

    def create_token(self, user_id: int) -> Session:
        """Issue a signed token that embeds the user id."""
        self._assert_positive(user_id)
        token = self.serializer.dumps({"uid": user_id})
        return Session(token=token, user_id=user_id)

    def decode(self, token: Optional[str]) -> Optional[int]:
        """Return the user id encoded in the token, if it is valid and not expired."""
        if not token:
            return None
        try:
            payload = self.serializer.loads(token, max_age=self.expiration_seconds)
            return int(payload.get("uid"))
        except (BadData, ValueError, TypeError, AttributeError):
            return None

    @staticmethod
    def _assert_positive(value: Any) -> None:
        if not isinstance(value, int) or value <= 0:
            raise ValueError("user_id must be a positive integer")


def hash_api_token(token: str) -> str:
    """SHA-256 hex digest; only the digest of an API token is ever stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def parse_bearer_token(header: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer ...`` header."""
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    return header[len(BEARER_PREFIX):].strip()


def is_well_formed_api_token(token: str) -> bool:
    return len(token) >= MIN_API_TOKEN_LENGTH
