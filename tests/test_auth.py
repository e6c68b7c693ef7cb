"""Tests for CredentialProvider token caching and failure mapping."""

from __future__ import annotations

import asyncio

import pytest

from rvtmeta.aps.auth import CredentialProvider
from rvtmeta.exceptions import AuthError
from rvtmeta.models import DEFAULT_SCOPES


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestTokenCache:
    """A fresh token is reused; renewal happens near expiry."""

    async def test_second_call_within_expiry_uses_cache(self, credentials, fake_aps):
        """Two get_token calls inside the expiry window hit the network once."""
        first = await credentials.get_token()
        second = await credentials.get_token()

        assert first.token == second.token == "token-1"
        assert fake_aps.token_calls == 1
        assert credentials.fetch_count == 1

    async def test_renews_inside_refresh_margin(self, transport, fake_aps):
        """A token within refresh_margin of expiry is renewed."""
        clock = _Clock()
        provider = CredentialProvider(
            transport, "client-id", "client-secret", DEFAULT_SCOPES, refresh_margin=60, clock=clock
        )
        await provider.get_token()
        clock.now += 3599 - 30

        renewed = await provider.get_token()

        assert renewed.token == "token-2"
        assert fake_aps.token_calls == 2

    async def test_concurrent_callers_share_one_request(self, credentials, fake_aps):
        """Many concurrent callers trigger a single token request."""
        tokens = await asyncio.gather(*(credentials.get_token() for _ in range(10)))

        assert {t.token for t in tokens} == {"token-1"}
        assert fake_aps.token_calls == 1

    async def test_invalidate_forces_new_request(self, credentials, fake_aps):
        await credentials.get_token()
        credentials.invalidate()
        await credentials.get_token()
        assert fake_aps.token_calls == 2

    async def test_scope_and_basic_auth_sent(self, credentials, fake_aps):
        """Token request is form-encoded with the scope and HTTP basic auth."""
        await credentials.get_token()

        request = fake_aps.requests[0]
        assert request.headers["authorization"].startswith("Basic ")
        body = request.content.decode()
        assert "grant_type=client_credentials" in body
        assert "bucket%3Acreate" in body


class TestTokenFailures:
    """Rejected credentials and malformed payloads raise AuthError."""

    async def test_rejected_credentials(self, credentials, fake_aps):
        fake_aps.token_status = 401

        with pytest.raises(AuthError) as exc_info:
            await credentials.get_token()

        assert exc_info.value.status_code == 401
        assert "client_id is invalid" in exc_info.value.diagnostic

    async def test_server_error_is_auth_error(self, credentials, fake_aps):
        fake_aps.token_status = 503

        with pytest.raises(AuthError):
            await credentials.get_token()

    async def test_failure_is_not_cached(self, credentials, fake_aps):
        """After a failed request the next call tries again."""
        fake_aps.token_status = 500
        with pytest.raises(AuthError):
            await credentials.get_token()

        fake_aps.token_status = 200
        credential = await credentials.get_token()
        assert credential.token == "token-2"
