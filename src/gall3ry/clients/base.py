"""Base client with common functionality and provider interfaces"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from abc import ABC, abstractmethod
import aiohttp
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)
from loguru import logger

from ..errors import (
    GalleryError,
    RateLimited,
    UpstreamRejected,
    UpstreamUnavailable,
    from_http_status,
)
from ..models import Chain, Identity, OwnerListing
from ..security import redact_secrets, sanitize_for_logging

# (method, url, params, headers, json_data) -> (status, payload)
Transport = Callable[
    [str, str, Optional[Dict[str, Any]], Dict[str, str], Optional[Dict[str, Any]]],
    Awaitable[Tuple[int, Any]],
]


class BaseAPIClient(ABC):
    """Base class for API clients with retry logic and key rotation"""

    name = "upstream"

    def __init__(
        self,
        api_keys: List[str],
        base_url: str,
        timeout: float = 15.0,
        max_retries: int = 2,
        retry_initial_delay: float = 1.0,
        transport: Optional[Transport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.api_keys = api_keys
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_initial_delay = retry_initial_delay
        self.current_key_index = 0
        self._transport = transport or self._aiohttp_transport
        self._sleep = sleep or asyncio.sleep

    def get_api_key(self) -> str:
        """Get current API key (with rotation)"""
        if not self.api_keys:
            raise ValueError("No API keys configured")
        return self.api_keys[self.current_key_index % len(self.api_keys)]

    def rotate_api_key(self):
        """Rotate to next API key"""
        if self.api_keys:
            self.current_key_index = (self.current_key_index + 1) % len(self.api_keys)

    @abstractmethod
    def _authorize(self, url: str, headers: Dict[str, str]) -> Tuple[str, Dict[str, str]]:
        """Inject the current credential into the outgoing request"""

    async def _aiohttp_transport(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        headers: Dict[str, str],
        json_data: Optional[Dict[str, Any]],
    ) -> Tuple[int, Any]:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=headers,
            ) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = await response.text()
                return response.status, payload

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Single HTTP attempt mapped onto error kinds"""
        request_headers = {"Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        url, request_headers = self._authorize(url, request_headers)
        safe_url = sanitize_for_logging(url)

        try:
            status, payload = await self._transport(method, url, params, request_headers, json_data)
        except GalleryError:
            raise
        except asyncio.TimeoutError:
            logger.error(f"{self.name} request timed out: {method} {safe_url}")
            raise UpstreamUnavailable(f"{self.name} request timed out")
        except aiohttp.ClientError as e:
            logger.error(f"{self.name} request failed: {method} {safe_url}: {type(e).__name__}")
            raise UpstreamUnavailable(f"{self.name} is unreachable")

        if status >= 400:
            detail = redact_secrets(payload) if isinstance(payload, dict) else payload
            logger.debug(f"{self.name} {status} for {method} {safe_url}: {str(detail)[:200]}")
            error = self._error_for_status(status, payload)
            if isinstance(error, RateLimited):
                logger.warning(f"{self.name} rate limited, rotating API key")
                self.rotate_api_key()
            if isinstance(error, UpstreamRejected):
                logger.error(f"{self.name} refused {method} {safe_url} with HTTP {status}; check the API key")
            raise error

        return payload

    def _error_for_status(self, status: int, payload: Any) -> GalleryError:
        """Map an upstream status; raw bodies are never surfaced"""
        return from_http_status(status, f"{self.name} returned HTTP {status}")

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"{self.name} attempt {retry_state.attempt_number} failed ({error!r}), retrying in {delay:.1f}s"
        )

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make HTTP request with retry on 429 and idempotent 5xx"""
        idempotent = method.upper() in ("GET", "HEAD")
        retryable = (RateLimited, UpstreamUnavailable) if idempotent else (RateLimited,)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_initial_delay, exp_base=2, max=60),
            retry=retry_if_exception(lambda e: isinstance(e, retryable) and e.retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._send(method, url, params=params, json_data=json_data, headers=headers)
        return result


class IdentityProvider(ABC):
    """Username/FID -> profile and verified addresses"""

    @abstractmethod
    async def resolve_identity(self, username_or_fid: Any) -> Identity:
        """Resolve a username or FID; raises NotFound for unknown users"""

    @abstractmethod
    async def list_following(self, fid: int) -> List[Identity]:
        """Full follow list of a user"""

    @abstractmethod
    async def lookup_by_addresses(self, addresses: List[str]) -> Dict[str, List[Identity]]:
        """Map lowercase addresses to the identities that verified them"""

    @abstractmethod
    async def search_users(self, query: str, limit: int = 5) -> List[Identity]:
        """Profiles whose username or display name matches a prefix"""


class NftProvider(ABC):
    """Address + chain -> paginated owned NFTs"""

    max_page_size = 100

    @abstractmethod
    async def list_nfts_for_owner(
        self,
        address: str,
        chain: Chain,
        page_key: Optional[str] = None,
        page_size: int = 100,
        exclude_spam: bool = True,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """One page of raw NFT payloads and the next page key"""

    @abstractmethod
    async def is_spam_contract(self, contract: str, chain: Chain) -> bool:
        """Whether the provider classifies a contract as spam"""


class CollectionProvider(ABC):
    """Contract -> owner set"""

    @abstractmethod
    async def list_owners_for_collection(self, contract: str, chain: Chain) -> OwnerListing:
        """Full, deduplicated, lowercase owner list"""
