import asyncio
import logging
import time
from typing import Optional

from azure.core.credentials import AccessToken
from azure.core.credentials_async import AsyncTokenCredential
from azure.identity.aio import DefaultAzureCredential

from openai_proxy import vars as proxy_vars
from openai_proxy.utils import token_fingerprint

logger = logging.getLogger("uvicorn.error")


class CredentialError(Exception):
    """Raised when no bearer token can be produced for the upstream."""

    def __init__(self, message: str = "Failed to acquire an upstream access token"):
        self.message = message
        super().__init__(message)


class TokenProvider:
    async def get_token(self) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class TokenProviderFactory:
    def get(self) -> TokenProvider:
        """
        Factory method returning the token provider selected by TOKEN_PROVIDER.
        """
        provider = proxy_vars.TOKEN_PROVIDER
        if provider == "azure":
            return AzureTokenProvider(
                scope=proxy_vars.TOKEN_SCOPE,
                refresh_margin=proxy_vars.TOKEN_REFRESH_MARGIN_SECONDS,
            )
        if provider == "static":
            return StaticTokenProvider(proxy_vars.STATIC_BEARER_TOKEN)
        raise ValueError(f"Unsupported token provider: {provider}")


class StaticTokenProvider(TokenProvider):
    """Hands out a fixed token, for upstreams that are not behind Entra ID."""

    def __init__(self, token: str):
        self._token = token

    async def get_token(self) -> str:
        if not self._token:
            raise CredentialError("STATIC_BEARER_TOKEN is not set")
        return self._token


class AzureTokenProvider(TokenProvider):
    """
    Bearer tokens from Microsoft Entra ID via DefaultAzureCredential.

    The current token is cached and only refreshed once it is within
    ``refresh_margin`` seconds of expiry. Refreshes are serialized so a burst
    of concurrent requests results in a single call to the identity endpoint.
    """

    def __init__(
        self,
        scope: str,
        credential: Optional[AsyncTokenCredential] = None,
        refresh_margin: int = 300,
    ):
        self.scope = scope
        self.refresh_margin = refresh_margin
        self._credential = credential or DefaultAzureCredential()
        self._access_token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def _needs_refresh(self) -> bool:
        if self._access_token is None:
            return True
        return self._access_token.expires_on <= time.time() + self.refresh_margin

    async def get_token(self) -> str:
        if not self._needs_refresh():
            return self._access_token.token

        async with self._lock:
            # Another request may have refreshed while we waited for the lock
            if self._needs_refresh():
                self._access_token = await self._request_token()
        return self._access_token.token

    async def _request_token(self) -> AccessToken:
        try:
            access_token = await self._credential.get_token(self.scope)
        except Exception as e:
            logger.error(f"Token acquisition for scope {self.scope} failed: {e}")
            raise CredentialError() from e
        if not access_token or not access_token.token:
            raise CredentialError("Credential returned an empty access token")
        logger.info(
            f"Acquired token for {self.scope} "
            f"({token_fingerprint(access_token.token)}, "
            f"expires in {int(access_token.expires_on - time.time())}s)"
        )
        return access_token

    async def aclose(self) -> None:
        await self._credential.close()
