"""
Marketplace search providers for real, verifiable listing data.

Each provider wraps one marketplace API and returns verified listings grouped
by platform. Providers never raise for an empty search; transport failures
surface as ProviderError so the caller can null out that platform and keep the
others.

Features:
    - Abstract MarketplaceProvider base class
    - SerpAPI (Google Shopping, Amazon links), eBay Finding API and RapidAPI
      marketplace finders
    - Bounded retries with exponential backoff on transport errors (tenacity)
    - Per-provider request statistics
    - MarketplaceSearchService running configured providers concurrently
      behind a semaphore, with a timeout per provider call

Example:
    >>> async with MarketplaceSearchService(settings) as search:
    ...     results = await search.search_all(["Sony WH-1000XM4"])
    ...     results.amazon, results.ebay
"""

from __future__ import annotations

import asyncio
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from flipforge.config.settings import Settings, get_settings
from flipforge.models.schemas import CredentialStatus, MarketListing, Platform
from flipforge.utils.errors import OperationTimeoutError, run_with_timeout
from flipforge.utils.logger import get_logger

logger = get_logger(__name__)

OFFICIAL_CONFIDENCE = 0.95
RAPIDAPI_CONFIDENCE = 0.9

TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.NetworkError)


# =============================================================================
# Provider Status and Results
# =============================================================================

class ProviderStatus(str, Enum):
    """Provider health status."""
    AVAILABLE = "available"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"
    DISABLED = "disabled"


@dataclass
class PlatformSearchResults:
    """Verified listings per platform plus the providers that produced them."""
    amazon: list[MarketListing] = field(default_factory=list)
    ebay: list[MarketListing] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def all_listings(self) -> list[MarketListing]:
        return [*self.amazon, *self.ebay]

    @property
    def is_empty(self) -> bool:
        return not self.amazon and not self.ebay


# =============================================================================
# Exceptions
# =============================================================================

class ProviderError(Exception):
    """Base exception for provider errors."""
    pass


class RateLimitError(ProviderError):
    """Raised when rate limit is exceeded."""
    pass


class ConfigurationError(ProviderError):
    """Raised when provider is not properly configured."""
    pass


# =============================================================================
# Abstract Provider
# =============================================================================

class MarketplaceProvider(ABC):
    """
    Abstract base class for marketplace search providers.

    Subclasses declare the platforms they cover and implement
    search(keywords), returning verified listings keyed by platform.
    """

    platforms: tuple[Platform, ...] = ()

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[httpx.AsyncClient] = None
        self._status = ProviderStatus.AVAILABLE
        self._last_error: Optional[str] = None
        self._request_count = 0
        self._error_count = 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name identifier (matches the credential name)."""
        pass

    @property
    def is_configured(self) -> bool:
        return self.settings.get_credential(self.name) is not None

    @property
    def status(self) -> ProviderStatus:
        return self._status

    def _get_api_key(self) -> str:
        key = self.settings.get_credential(self.name)
        if not key:
            raise ConfigurationError(f"{self.name} API key not configured")
        return key

    async def connect(self) -> None:
        """Initialize HTTP client."""
        if self._client is None:
            timeout = self.settings.request_timeout_seconds
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )

    async def disconnect(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "MarketplaceProvider":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    def _update_status(self, success: bool, error: Optional[str] = None) -> None:
        """Update provider status based on request result."""
        self._request_count += 1
        if success:
            self._error_count = 0
            self._status = ProviderStatus.AVAILABLE
        else:
            self._error_count += 1
            self._last_error = error
            if self._error_count >= 3:
                if "rate limit" in (error or "").lower():
                    self._status = ProviderStatus.RATE_LIMITED
                else:
                    self._status = ProviderStatus.ERROR

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        """Issue an HTTP request and decode JSON, retrying transport errors."""
        if not self._client:
            await self.connect()
        response = await self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def _fetch(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        """_request with HTTP errors mapped onto ProviderError."""
        try:
            data = await self._request(method, url, **kwargs)
            self._update_status(True)
            return data
        except httpx.HTTPStatusError as e:
            error_msg = f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            self._update_status(False, error_msg)
            logger.error("Marketplace request failed", provider=self.name, error=error_msg)
            if e.response.status_code == 429:
                raise RateLimitError(f"{self.name} rate limit exceeded: {error_msg}")
            raise ProviderError(f"{self.name} error: {error_msg}")
        except ProviderError:
            raise
        except Exception as e:
            self._update_status(False, str(e))
            logger.error("Marketplace provider unexpected error", provider=self.name, error=str(e))
            raise ProviderError(f"{self.name} error: {e}") from e

    @abstractmethod
    async def search(self, keywords: list[str]) -> dict[Platform, list[MarketListing]]:
        """Search the marketplace with the first keyword that is usable."""
        pass

    @staticmethod
    def _parse_price(price: Any) -> Optional[float]:
        """Parse a price value or string such as "$1,299.99" to float."""
        if price is None:
            return None
        if isinstance(price, (int, float)) and not isinstance(price, bool):
            return float(price)
        cleaned = re.sub(r"[^\d.]", "", str(price))
        try:
            return float(cleaned) if cleaned else None
        except ValueError:
            return None

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self._status.value,
            "configured": self.is_configured,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "last_error": self._last_error,
        }


# =============================================================================
# SerpAPI Provider (Amazon via Google Shopping)
# =============================================================================

class SerpAPIProvider(MarketplaceProvider):
    """Amazon listings through SerpAPI's Google Shopping engine."""

    BASE_URL = "https://serpapi.com/search.json"
    platforms = (Platform.AMAZON,)

    @property
    def name(self) -> str:
        return "serpapi"

    async def search(self, keywords: list[str]) -> dict[Platform, list[MarketListing]]:
        limit = self.settings.max_listings_per_platform
        params = {
            "engine": "google_shopping",
            "q": f"{keywords[0]} site:amazon.com",
            "num": limit,
            "api_key": self._get_api_key(),
        }
        start_time = time.time()
        data = await self._fetch("GET", self.BASE_URL, params=params)

        listings: list[MarketListing] = []
        for item in data.get("shopping_results", [])[:limit]:
            link = item.get("link") or ""
            price = self._parse_price(item.get("price"))
            if "amazon.com" not in link or not price or price <= 0:
                continue
            rating = item.get("rating")
            listings.append(MarketListing(
                platform=Platform.AMAZON,
                title=item.get("title") or "Amazon Product",
                price=price,
                link=link,
                condition="new",
                seller_rating=rating if isinstance(rating, (int, float)) and 0 <= rating <= 5 else None,
                confidence=OFFICIAL_CONFIDENCE,
                verified=True,
                source=self.name,
            ))

        logger.info(
            "SerpAPI shopping search completed",
            query=keywords[0],
            results_count=len(listings),
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return {Platform.AMAZON: listings}


# =============================================================================
# eBay Finding API Provider
# =============================================================================

class EbayFindingProvider(MarketplaceProvider):
    """Fixed-price eBay listings through the Finding API."""

    BASE_URL = "https://svcs.ebay.com/services/search/FindingService/v1"
    platforms = (Platform.EBAY,)

    @property
    def name(self) -> str:
        return "ebay"

    async def search(self, keywords: list[str]) -> dict[Platform, list[MarketListing]]:
        limit = self.settings.max_listings_per_platform
        params = {
            "OPERATION-NAME": "findItemsByKeywords",
            "SERVICE-VERSION": "1.0.0",
            "SECURITY-APPNAME": self._get_api_key(),
            "RESPONSE-DATA-FORMAT": "JSON",
            "keywords": keywords[0],
            "paginationInput.entriesPerPage": limit,
            "itemFilter(0).name": "ListingType",
            "itemFilter(0).value": "FixedPrice",
        }
        data = await self._fetch("GET", self.BASE_URL, params=params)

        listings = [
            listing
            for listing in (self._parse_item(item) for item in self._items(data)[:limit])
            if listing is not None
        ]
        logger.info("eBay Finding search completed", query=keywords[0], results_count=len(listings))
        return {Platform.EBAY: listings}

    @staticmethod
    def _first(values: Any, default: Any = None) -> Any:
        """Finding API wraps every scalar in a one-element list."""
        if isinstance(values, list) and values:
            return values[0]
        return default

    def _items(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        response = self._first(data.get("findItemsByKeywordsResponse"), {})
        result = self._first(response.get("searchResult"), {})
        return result.get("item", []) or []

    def _parse_item(self, item: dict[str, Any]) -> Optional[MarketListing]:
        selling = self._first(item.get("sellingStatus"), {})
        price = self._parse_price(self._first(selling.get("currentPrice"), {}).get("__value__"))
        link = self._first(item.get("viewItemURL"), "")
        if not link or not price or price <= 0:
            return None

        condition = self._first(
            self._first(item.get("condition"), {}).get("conditionDisplayName"),
            "used",
        )
        feedback = self._parse_price(
            self._first(self._first(item.get("sellerInfo"), {}).get("positiveFeedbackPercent"))
        )
        return MarketListing(
            platform=Platform.EBAY,
            title=self._first(item.get("title"), "eBay Product"),
            price=price,
            link=link,
            condition=str(condition).lower(),
            seller_rating=round(min(feedback, 100.0) / 20, 2) if feedback is not None else None,
            confidence=OFFICIAL_CONFIDENCE,
            verified=True,
            source=self.name,
        )


# =============================================================================
# RapidAPI Provider (Amazon + eBay fallback)
# =============================================================================

class RapidAPIProvider(MarketplaceProvider):
    """Amazon and eBay price finders hosted on RapidAPI."""

    AMAZON_HOST = "amazon-price-finder.p.rapidapi.com"
    EBAY_HOST = "ebay-product-details.p.rapidapi.com"
    RESULTS_PER_PLATFORM = 3
    platforms = (Platform.AMAZON, Platform.EBAY)

    @property
    def name(self) -> str:
        return "rapidapi"

    def _headers(self, host: str) -> dict[str, str]:
        return {
            "X-RapidAPI-Key": self._get_api_key(),
            "X-RapidAPI-Host": host,
            "Content-Type": "application/json",
        }

    async def search(self, keywords: list[str]) -> dict[Platform, list[MarketListing]]:
        amazon, ebay = await asyncio.gather(
            self._search_amazon(keywords[0]),
            self._search_ebay(keywords[0]),
            return_exceptions=True,
        )
        if isinstance(amazon, BaseException) and isinstance(ebay, BaseException):
            raise ProviderError(f"rapidapi error: {amazon}")

        results: dict[Platform, list[MarketListing]] = {}
        for platform, outcome in ((Platform.AMAZON, amazon), (Platform.EBAY, ebay)):
            if isinstance(outcome, BaseException):
                logger.warning("RapidAPI platform search failed", platform=platform.value, error=str(outcome))
                results[platform] = []
            else:
                results[platform] = outcome
        return results

    async def _search_amazon(self, keyword: str) -> list[MarketListing]:
        data = await self._fetch(
            "POST",
            f"https://{self.AMAZON_HOST}/search",
            headers=self._headers(self.AMAZON_HOST),
            json={"keyword": keyword, "country": "US"},
        )
        listings = []
        for item in (data.get("results") or [])[: self.RESULTS_PER_PLATFORM]:
            price = self._parse_price(item.get("price"))
            link = item.get("url") or ""
            if link and price and price > 0:
                listings.append(MarketListing(
                    platform=Platform.AMAZON,
                    title=item.get("title") or "Amazon Product",
                    price=price,
                    link=link,
                    condition="new",
                    confidence=RAPIDAPI_CONFIDENCE,
                    verified=True,
                    source=self.name,
                ))
        return listings

    async def _search_ebay(self, keyword: str) -> list[MarketListing]:
        data = await self._fetch(
            "POST",
            f"https://{self.EBAY_HOST}/search",
            headers=self._headers(self.EBAY_HOST),
            json={"query": keyword, "country": "US"},
        )
        listings = []
        for item in (data.get("items") or [])[: self.RESULTS_PER_PLATFORM]:
            price = self._parse_price((item.get("price") or {}).get("value"))
            link = item.get("itemWebUrl") or ""
            if link and price and price > 0:
                listings.append(MarketListing(
                    platform=Platform.EBAY,
                    title=item.get("title") or "eBay Product",
                    price=price,
                    link=link,
                    condition=(item.get("condition") or "used").lower(),
                    confidence=RAPIDAPI_CONFIDENCE,
                    verified=True,
                    source=self.name,
                ))
        return listings


# =============================================================================
# Concurrent Search Service
# =============================================================================

PROVIDER_CLASSES: dict[str, type[MarketplaceProvider]] = {
    "serpapi": SerpAPIProvider,
    "ebay": EbayFindingProvider,
    "rapidapi": RapidAPIProvider,
}

# Official APIs win over RapidAPI for the same platform
PLATFORM_PRIORITY: dict[Platform, tuple[str, ...]] = {
    Platform.AMAZON: ("serpapi", "rapidapi"),
    Platform.EBAY: ("ebay", "rapidapi"),
}


class MarketplaceSearchService:
    """
    Runs every configured provider concurrently and merges per platform.

    A provider that errors, times out or returns nothing leaves its platforms
    empty without aborting the others. Providers are chosen from the
    credential report, settings.check_marketplace_credentials by default.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        providers: Optional[list[MarketplaceProvider]] = None,
        credentials: Optional[Callable[[], CredentialStatus]] = None,
    ):
        self.settings = settings or get_settings()
        if providers is None:
            available = self.settings.available_marketplace_providers(credentials() if credentials else None)
            providers = [
                cls(settings=self.settings)
                for name, cls in PROVIDER_CLASSES.items()
                if name in available
            ]
        self._providers = providers
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_requests)

    @property
    def providers(self) -> list[MarketplaceProvider]:
        return list(self._providers)

    @property
    def is_configured(self) -> bool:
        return bool(self._providers)

    async def __aenter__(self) -> "MarketplaceSearchService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        for provider in self._providers:
            await provider.disconnect()

    async def _run_provider(
        self,
        provider: MarketplaceProvider,
        keywords: list[str],
    ) -> tuple[str, dict[Platform, list[MarketListing]], Optional[str]]:
        async with self._semaphore:
            try:
                results = await run_with_timeout(
                    f"{provider.name}.search",
                    provider.search(keywords),
                    self.settings.request_timeout_seconds,
                )
                return provider.name, results, None
            except (ProviderError, OperationTimeoutError) as e:
                logger.warning("Provider failed, continuing without it", provider=provider.name, error=str(e))
                return provider.name, {}, str(e)
            except Exception as e:
                logger.error(
                    "Unexpected provider error, continuing without it",
                    provider=provider.name,
                    error=str(e),
                    exc_info=True,
                )
                return provider.name, {}, f"{type(e).__name__}: {e}"

    async def search_all(self, keywords: list[str]) -> PlatformSearchResults:
        """Search every provider in parallel and keep the preferred source per platform."""
        if not keywords:
            raise ValueError("At least one search keyword is required")

        outcomes = await asyncio.gather(
            *(self._run_provider(p, keywords) for p in self._providers)
        )
        by_provider = {name: results for name, results, _ in outcomes}
        merged = PlatformSearchResults(
            errors={name: error for name, _, error in outcomes if error},
        )

        for platform, preference in PLATFORM_PRIORITY.items():
            for provider_name in preference:
                listings = by_provider.get(provider_name, {}).get(platform, [])
                if listings:
                    setattr(merged, platform.value, listings)
                    merged.sources.append(f"{provider_name}:{platform.value}")
                    break

        logger.info(
            "Marketplace search completed",
            amazon_results=len(merged.amazon),
            ebay_results=len(merged.ebay),
            failed_providers=list(merged.errors),
        )
        return merged

    def get_provider_stats(self) -> dict[str, Any]:
        return {"providers": [p.get_stats() for p in self._providers]}


# =============================================================================
# Convenience Functions
# =============================================================================

def create_search_service(settings: Optional[Settings] = None) -> MarketplaceSearchService:
    """Create a MarketplaceSearchService for the configured credentials."""
    return MarketplaceSearchService(settings=settings)


__all__ = [
    "MarketplaceSearchService",
    "create_search_service",
    "MarketplaceProvider",
    "SerpAPIProvider",
    "EbayFindingProvider",
    "RapidAPIProvider",
    "PlatformSearchResults",
    "ProviderStatus",
    "ProviderError",
    "RateLimitError",
    "ConfigurationError",
    "PROVIDER_CLASSES",
    "OFFICIAL_CONFIDENCE",
    "RAPIDAPI_CONFIDENCE",
]
