"""
DevPulse Client - Session Store
================================

Holds the DevPulse access token issued after the GitHub OAuth login.
Used only as a gate: nothing starts polling without an authenticated session.
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog
from jose import JWTError, jwt

from devpulse.core.config import settings

logger = structlog.get_logger()


class SessionStore:
    """
    Session token storage.

    File-backed when a path is given, in-memory otherwise.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._token: Optional[str] = None

    @classmethod
    def default(cls) -> "SessionStore":
        return cls(settings.STATE_DIR / "session_token")

    def save_token(self, token: str) -> None:
        token = token.strip()
        if self.path is None:
            self._token = token
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(token, encoding="utf-8")
        os.chmod(self.path, 0o600)
        logger.info("session_token_saved", path=str(self.path))

    def get_token(self) -> Optional[str]:
        if self.path is None:
            return self._token
        if not self.path.exists():
            return None
        token = self.path.read_text(encoding="utf-8").strip()
        return token or None

    def remove_token(self) -> None:
        self._token = None
        if self.path is not None and self.path.exists():
            self.path.unlink()
            logger.info("session_token_removed", path=str(self.path))

    def is_authenticated(self) -> bool:
        """
        True when a token is stored and not known to be expired.

        Opaque (non-JWT) tokens count as valid; the server has the final say.
        """
        token = self.get_token()
        if not token:
            return False
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError:
            return True
        exp = claims.get("exp")
        if exp is None:
            return True
        try:
            expires_at = datetime.fromtimestamp(float(exp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return True
        return expires_at > datetime.now(timezone.utc)
