"""Two-legged OAuth credential provider with a shared token cache.

A single provider is shared by every job in a runner.  Reads of a fresh
token never block; renewal is single-writer behind an ``asyncio.Lock`` and
re-checks the cache after acquiring it, so N concurrent callers hitting an
expired token cause exactly one token request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from rvtmeta.aps.schemas import TokenResponse, parse_response
from rvtmeta.aps.transport import ApsTransport
from rvtmeta.exceptions import AuthError, PermanentError, ResponseParseError, TransientError
from rvtmeta.models import Credential

logger = logging.getLogger(__name__)


class CredentialProvider:
    """Supplies bearer tokens for one client id/secret pair.

    Args:
        transport: Shared APS transport.
        client_id: APS application client id.
        client_secret: APS application client secret.
        scopes: Requested OAuth scopes.
        refresh_margin: Renew this many seconds before declared expiry.
        clock: Wall-clock source (epoch seconds); injectable for tests.
    """

    TOKEN_PATH = "/authentication/v2/token"

    def __init__(
        self,
        transport: ApsTransport,
        client_id: str,
        client_secret: str,
        scopes: Sequence[str],
        refresh_margin: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = " ".join(scopes)
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._credential: Credential | None = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    async def get_token(self) -> Credential:
        """Return a cached credential, renewing it when close to expiry.

        Raises:
            AuthError: Credentials rejected, or the token endpoint failed.
        """
        credential = self._credential
        if credential is not None and credential.is_fresh(self._clock(), self._refresh_margin):
            return credential

        async with self._lock:
            credential = self._credential
            if credential is not None and credential.is_fresh(self._clock(), self._refresh_margin):
                return credential
            self._credential = await self._request_token()
            return self._credential

    def invalidate(self) -> None:
        """Forget the cached credential (e.g. after a 401 elsewhere)."""
        self._credential = None

    async def _request_token(self) -> Credential:
        self.fetch_count += 1
        try:
            response = await self._transport.request(
                "POST",
                self.TOKEN_PATH,
                data={"grant_type": "client_credentials", "scope": self._scope},
                auth=(self._client_id, self._client_secret),
                headers={"Accept": "application/json"},
            )
        except PermanentError as exc:
            logger.error("Token request rejected (%s): %s", exc.status_code, exc.diagnostic)
            raise AuthError.wrap("Client credentials rejected", exc) from exc
        except TransientError as exc:
            logger.error("Token endpoint unreachable: %s", exc)
            raise AuthError.wrap("Token endpoint unavailable", exc) from exc

        try:
            token = parse_response(TokenResponse, response.json(), context="token")
        except (ValueError, ResponseParseError) as exc:
            raise AuthError(f"Malformed token response: {exc}") from exc

        expires_at = self._clock() + token.expires_in
        logger.info("Obtained access token (expires in %ds)", token.expires_in)
        return Credential(
            token=token.access_token,
            expires_at=expires_at,
            token_type=token.token_type,
            scope=token.scope or self._scope,
        )
