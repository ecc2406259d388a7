"""Tests for the PAT credential stores and the session store"""
import hashlib
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from jose import jwe, jwt

from conftest import VALID_PAT
from devpulse.core.credentials import (
    EncryptedFileCredentialStore,
    InMemoryCredentialStore,
    validate_pat,
    verify_github_token,
)
from devpulse.core.exceptions import InvalidCredentialError, TransportError
from devpulse.core.session import SessionStore


def _jwt(expires_in: timedelta) -> str:
    exp = datetime.now(timezone.utc) + expires_in
    return jwt.encode({"sub": "user-1", "exp": int(exp.timestamp())}, "secret", algorithm="HS256")


class TestValidatePat:
    @pytest.mark.parametrize("token", [VALID_PAT, "ghs_" + "x" * 36])
    def test_valid(self, token):
        assert validate_pat(token)

    @pytest.mark.parametrize("token", ["", "ghp_short", "gho_" + "x" * 36, "token " + VALID_PAT, "ghp_" + "-" * 36])
    def test_invalid(self, token):
        assert not validate_pat(token)


class TestInMemoryCredentialStore:
    def test_save_and_remove(self):
        store = InMemoryCredentialStore()
        assert not store.has_credential()

        store.save_credential(VALID_PAT)
        assert store.get_credential() == VALID_PAT

        store.remove_credential()
        assert store.has_credential() is False


class TestEncryptedFileCredentialStore:
    def test_token_is_encrypted_at_rest(self, tmp_path: Path):
        path = tmp_path / "pat.jwe"
        EncryptedFileCredentialStore(path, secret="s3cret").save_credential(VALID_PAT)

        assert VALID_PAT.encode() not in path.read_bytes()
        assert EncryptedFileCredentialStore(path, secret="s3cret").get_credential() == VALID_PAT

    def test_wrong_key_reads_nothing(self, tmp_path: Path):
        path = tmp_path / "pat.jwe"
        EncryptedFileCredentialStore(path, secret="s3cret").save_credential(VALID_PAT)

        other = EncryptedFileCredentialStore(path, secret="different")
        assert other.get_credential() is None
        assert other.has_credential() is False

    def test_content_key_is_full_sha256_digest(self, tmp_path: Path):
        path = tmp_path / "pat.jwe"
        EncryptedFileCredentialStore(path, secret="s3cret").save_credential(VALID_PAT)

        key = hashlib.sha256(b"s3cret").digest()
        assert len(key) == 32
        assert jwe.decrypt(path.read_bytes(), key) == VALID_PAT.encode()

    def test_remove(self, tmp_path: Path):
        store = EncryptedFileCredentialStore(tmp_path / "pat.jwe")
        store.save_credential(VALID_PAT)
        store.remove_credential()

        assert not store.path.exists()
        assert store.has_credential() is False
        store.remove_credential()

    def test_default_lives_in_state_dir(self, isolated_state_dir: Path):
        store = EncryptedFileCredentialStore.default()
        store.save_credential(VALID_PAT)
        assert store.path.parent == isolated_state_dir


class TestVerifyGitHubToken:
    async def test_returns_login(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == f"Bearer {VALID_PAT}"
            return httpx.Response(200, json={"login": "octocat"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await verify_github_token(VALID_PAT, http_client=client) == "octocat"

    async def test_rejected_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Bad credentials"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(InvalidCredentialError):
                await verify_github_token(VALID_PAT, http_client=client)

    async def test_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TransportError):
                await verify_github_token(VALID_PAT, http_client=client)

    async def test_non_json_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>rate limited</html>")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TransportError):
                await verify_github_token(VALID_PAT, http_client=client)


class TestSessionStore:
    def test_empty_store_is_not_authenticated(self):
        assert SessionStore().is_authenticated() is False

    def test_opaque_token_counts_as_valid(self):
        session = SessionStore()
        session.save_token("  opaque-token\n")
        assert session.get_token() == "opaque-token"
        assert session.is_authenticated()

    def test_jwt_expiry(self):
        session = SessionStore()
        session.save_token(_jwt(timedelta(hours=1)))
        assert session.is_authenticated()

        session.save_token(_jwt(timedelta(hours=-1)))
        assert not session.is_authenticated()

    def test_file_backed(self, tmp_path: Path):
        path = tmp_path / "nested" / "session_token"
        SessionStore(path).save_token("abc")

        reopened = SessionStore(path)
        assert reopened.get_token() == "abc"
        reopened.remove_token()
        assert not path.exists()
        assert reopened.get_token() is None
