"""
DevPulse Client - Credential Store
===================================

Stores the user's GitHub personal access token (PAT). The token is attached
to "trigger fix" calls; without one no fix can be started.

The file-backed store keeps the token encrypted at rest (JWE, direct
encryption with A256GCM).
"""

import hashlib
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx
import structlog
from jose import jwe
from jose.exceptions import JOSEError

from devpulse.core.config import settings
from devpulse.core.exceptions import InvalidCredentialError, TransportError

logger = structlog.get_logger()

PAT_PATTERN = re.compile(r"^gh[ps]_[a-zA-Z0-9]{36,255}$")


def validate_pat(token: str) -> bool:
    """Check GitHub classic/server PAT format (ghp_/ghs_ prefix)."""
    return bool(PAT_PATTERN.match(token or ""))


# ==========================================================================
# Store Interface
# ==========================================================================

class CredentialStore(ABC):
    """Abstract interface for PAT storage."""

    @abstractmethod
    def get_credential(self) -> Optional[str]:
        """Return the stored token or None."""
        pass

    @abstractmethod
    def save_credential(self, token: str) -> None:
        pass

    @abstractmethod
    def remove_credential(self) -> None:
        pass

    def has_credential(self) -> bool:
        return bool(self.get_credential())


class InMemoryCredentialStore(CredentialStore):
    """Process-local store, used by tests and short-lived sessions."""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    def get_credential(self) -> Optional[str]:
        return self._token

    def save_credential(self, token: str) -> None:
        self._token = token

    def remove_credential(self) -> None:
        self._token = None


class EncryptedFileCredentialStore(CredentialStore):
    """PAT encrypted into a single file under the state directory."""

    def __init__(self, path: Path, secret: Optional[str] = None):
        self.path = path
        secret = secret or settings.CREDENTIAL_ENCRYPTION_KEY
        # A256GCM with "dir" needs a 32-byte content key
        self._key = hashlib.sha256(secret.encode("utf-8")).digest()

    @classmethod
    def default(cls) -> "EncryptedFileCredentialStore":
        return cls(settings.STATE_DIR / "github_pat.jwe")

    def get_credential(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            token = jwe.decrypt(self.path.read_bytes(), self._key)
        except JOSEError as e:
            logger.warning("credential_decrypt_failed", path=str(self.path), error=str(e))
            return None
        if not token:
            return None
        return token.decode("utf-8")

    def save_credential(self, token: str) -> None:
        encrypted = jwe.encrypt(token, self._key, algorithm="dir", encryption="A256GCM")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(encrypted)
        os.chmod(self.path, 0o600)
        logger.info("credential_saved", path=str(self.path))

    def remove_credential(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("credential_removed", path=str(self.path))

    def has_credential(self) -> bool:
        return self.path.exists() and self.get_credential() is not None


# ==========================================================================
# GitHub verification
# ==========================================================================

async def verify_github_token(
    token: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    Confirm a PAT against the GitHub API.

    Returns:
        The GitHub login the token belongs to

    Raises:
        InvalidCredentialError: If GitHub rejects the token
        TransportError: If GitHub cannot be reached
    """
    client = http_client or httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)
    try:
        response = await client.get(
            f"{settings.GITHUB_API_URL}/user",
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github.v3+json",
            },
        )
    except httpx.RequestError as e:
        raise TransportError(f"Failed to verify PAT: {e}") from e
    finally:
        if http_client is None:
            await client.aclose()

    if not response.is_success:
        raise InvalidCredentialError("Invalid GitHub PAT. Please check your token.")
    try:
        user = response.json()
    except ValueError as e:
        raise TransportError("GitHub returned a non-JSON body for /user") from e
    return user.get("login", "") if isinstance(user, dict) else ""
