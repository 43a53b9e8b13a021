"""
Profile lookup API client with rate limiting and error classification
"""
import asyncio
from typing import List, Optional

import httpx
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from config import Settings, get_settings
from models import LookupResponse


class LookupAPIError(Exception):
    """Custom exception for lookup API errors"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LookupAuthError(LookupAPIError):
    """Credential rejected by the lookup API"""
    pass


class LookupRateLimitError(LookupAPIError):
    """Exception for rate limit errors"""
    pass


class LookupClient:
    """Lookup API client shared by all dispatch workers"""

    def __init__(self, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.url = self.settings.lookup_base_url.rstrip("/") + self.settings.lookup_path
        self.rate_limit = self.settings.requests_per_second
        self._transport = transport

        # Rate limiting
        self._request_times: List[float] = []
        self._rate_limit_lock = asyncio.Lock()

        # HTTP client
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout,
                transport=self._transport,
                headers={
                    "Accept": "application/json",
                    "User-Agent": "Email-Profile-Crawler/1.0"
                }
            )
        return self._client

    async def _enforce_rate_limit(self):
        """Keep the request rate under `requests_per_second` across all workers"""
        async with self._rate_limit_lock:
            current_time = asyncio.get_running_loop().time()

            # Remove requests older than 1 second
            self._request_times = [
                t for t in self._request_times
                if current_time - t < 1.0
            ]

            if len(self._request_times) >= self.rate_limit:
                oldest_request = min(self._request_times)
                wait_time = 1.0 - (current_time - oldest_request)
                if wait_time > 0:
                    logger.debug(f"Lookup rate limit reached, waiting {wait_time:.3f} seconds")
                    await asyncio.sleep(wait_time)
                    current_time = asyncio.get_running_loop().time()

            self._request_times.append(current_time)

    def _handle_api_error(self, response: httpx.Response) -> None:
        """Raise the exception matching a non-200 response"""
        if response.status_code == 200:
            return
        elif response.status_code == 401:
            raise LookupAuthError("Credential rejected", 401)
        elif response.status_code == 403:
            raise LookupAuthError("Credential forbidden", 403)
        elif response.status_code == 429:
            raise LookupRateLimitError("Rate limit exceeded", 429)
        elif response.status_code >= 500:
            raise LookupAPIError(f"Server error: {response.status_code}", response.status_code)
        else:
            raise LookupAPIError(f"API error: {response.status_code} - {response.text[:200]}", response.status_code)

    async def _request(self, identifier: str, token: str) -> httpx.Response:
        await self._enforce_rate_limit()
        client = await self._get_client()
        return await client.get(
            self.url,
            params={"email": identifier},
            headers={"Authorization": f"Bearer {token}"},
        )

    async def query(self, identifier: str, token: str) -> LookupResponse:
        """
        Look up one identifier with one credential

        Args:
            identifier: Normalized identifier to look up
            token: Bearer credential

        Returns:
            LookupResponse for a 200 response; the payload may or may not hold usable data

        Raises:
            LookupAuthError: The credential was rejected (401/403)
            LookupRateLimitError: The API throttled the request (429)
            LookupAPIError: Any other non-200 status or a transport failure
        """
        try:
            response = await self._request(identifier, token)
        except httpx.TransportError as e:
            raise LookupAPIError(f"Transport error: {e}") from e

        self._handle_api_error(response)

        try:
            payload = response.json()
        except ValueError:
            logger.debug(f"Non-JSON body for {identifier}, keeping raw text")
            payload = response.text

        return LookupResponse(status_code=response.status_code, payload=payload)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.TransportError, LookupRateLimitError)),
        reraise=True,
    )
    async def probe(self, token: str) -> bool:
        """
        Check whether a credential is accepted by the lookup API

        Args:
            token: Bearer credential

        Returns:
            False if the API rejects the credential, True otherwise

        Raises:
            httpx.TransportError, LookupRateLimitError: Still failing after retries
        """
        response = await self._request(self.settings.probe_identifier, token)

        if response.status_code in (401, 403):
            logger.debug(f"Probe rejected credential ...{token[-6:]} ({response.status_code})")
            return False
        if response.status_code == 429:
            raise LookupRateLimitError("Rate limit exceeded during probe", 429)
        if response.status_code >= 500:
            raise LookupAPIError(f"Server error during probe: {response.status_code}", response.status_code)

        return True

    async def close(self):
        """Close HTTP client connections"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Lookup client closed")
