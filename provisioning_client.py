"""
Client for the credential provisioning service (raw account -> bearer credential)
"""
from typing import Optional, Protocol

import httpx
from loguru import logger

from config import Settings, get_settings
from file_store import CredentialCache
from models import RawAccount


class ProvisioningError(Exception):
    """One raw account could not be exchanged for a credential"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CredentialProvisioner(Protocol):
    """Anything that turns a raw account into a credential string"""

    async def provision(self, account: RawAccount) -> str:
        ...


class ProvisioningClient:
    """
    HTTP client for the login-automation service

    The service performs the interactive login for one account and answers
    with `{"token": "..."}`. A login can take minutes, hence the long timeout.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.url = self.settings.provisioning_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.provisioning_timeout,
                transport=self._transport,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "Email-Profile-Crawler/1.0"
                }
            )
        return self._client

    def _handle_api_error(self, response: httpx.Response) -> None:
        """Raise ProvisioningError for any unsuccessful response"""
        if response.status_code in (401, 403):
            raise ProvisioningError("Login rejected for account", response.status_code)
        elif response.status_code == 429:
            raise ProvisioningError("Provisioning service is throttling", 429)
        elif response.status_code >= 500:
            raise ProvisioningError(f"Provisioning server error: {response.status_code}", response.status_code)
        elif not response.is_success:
            raise ProvisioningError(f"Provisioning error: {response.status_code} - {response.text[:200]}",
                                    response.status_code)

    async def provision(self, account: RawAccount) -> str:
        """
        Exchange one raw account for a bearer credential

        Args:
            account: Login pair to use

        Returns:
            Credential string without the `Bearer ` prefix

        Raises:
            ProvisioningError: Login failed or the service returned no credential
        """
        try:
            client = await self._get_client()
            logger.debug(f"Requesting credential for {account.identifier}")
            response = await client.post(
                self.url,
                json={"email": account.identifier, "password": account.secret},
            )
        except httpx.TransportError as e:
            raise ProvisioningError(f"Provisioning request failed: {e}") from e

        self._handle_api_error(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ProvisioningError("Provisioning service returned invalid JSON", response.status_code) from e

        token = CredentialCache.clean(str(data.get("token") or "")) if isinstance(data, dict) else ""
        if not token:
            raise ProvisioningError(f"No credential returned for {account.identifier}", response.status_code)

        logger.info(f"Obtained credential for {account.identifier}")
        return token

    async def close(self):
        """Close HTTP client connections"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Provisioning client closed")
