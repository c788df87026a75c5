"""
Market data acquisition for phase 2.

Chooses between verified marketplace APIs and AI-estimated data for each
research request, aggregates the listings into a MarketResearchRecord and
persists it with an explicit provenance flag.

Decision policy:
    - Any marketplace credential configured -> real path (SerpAPI, eBay
      Finding API, RapidAPI) with verified listings and high confidence.
    - No credential, or the real path found nothing -> AI path (Claude)
      with unverified listings, provenance "fake" and a user-facing warning.
    - Every path failed -> ResearchUnavailableError; the previously stored
      record is left untouched.

Example:
    >>> selector = MarketDataAcquisitionSelector(store, settings=settings)
    >>> record = await selector.acquire_market_data(
    ...     "acct-1", product.id, "WH-1000XM4 Headphones", model="WH-1000XM4", brand="Sony"
    ... )
    >>> record.url_type
    'real'
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable, Optional

from flipforge.config.settings import Settings, get_settings
from flipforge.models.schemas import (
    CredentialStatus,
    DataProvenance,
    MarketDemand,
    MarketListing,
    MarketResearchRecord,
    Platform,
    PriceRange,
)
from flipforge.persistence.store import PipelineStore
from flipforge.services.llm_service import ClaudeService, ClaudeServiceError, MarketAnalysis
from flipforge.services.search_service import MarketplaceSearchService
from flipforge.services.validation_service import ValidationService, round_money
from flipforge.utils.errors import (
    FlipForgeError,
    PersistenceError,
    ProductNotFoundError,
    ResearchUnavailableError,
)
from flipforge.utils.logger import get_logger

if TYPE_CHECKING:
    from flipforge.pipeline.tasks import CancellationToken

logger = get_logger(__name__)

AI_DATA_WARNING = "URLs are AI-generated and may not work. Add real API keys for working URLs."
REAL_DATA_CONFIDENCE = 0.95
FALLBACK_AI_CONFIDENCE = 0.5
RECOMMENDED_PRICE_FACTOR = 0.95
HIGH_DEMAND_LISTINGS = 8
LOW_DEMAND_LISTINGS = 3
MAX_REAL_KEYWORDS = 3


def build_search_keywords(
    name: str,
    model: Optional[str] = None,
    brand: Optional[str] = None,
    category: Optional[str] = None,
    limit: Optional[int] = MAX_REAL_KEYWORDS,
) -> list[str]:
    """Deterministic keyword list: name, brand + name, model, name + category."""
    candidates = [
        name,
        " ".join(filter(None, [brand, name])),
        model or name,
        " ".join(filter(None, [name, category])),
    ]
    keywords: list[str] = []
    for keyword in candidates:
        keyword = (keyword or "").strip()
        if len(keyword) > 2 and keyword not in keywords:
            keywords.append(keyword)
    return keywords[:limit] if limit else keywords


def demand_from_listing_count(count: int) -> MarketDemand:
    """Listing-availability heuristic used for verified marketplace data."""
    if count >= HIGH_DEMAND_LISTINGS:
        return MarketDemand.HIGH
    if count <= LOW_DEMAND_LISTINGS:
        return MarketDemand.LOW
    return MarketDemand.MEDIUM


def best_listing(listings: list[MarketListing]) -> Optional[MarketListing]:
    """Highest-confidence listing, first one on ties."""
    if not listings:
        return None
    return max(listings, key=lambda listing: listing.confidence)


class _PathFailed(Exception):
    """A single acquisition path produced nothing usable."""


class MarketDataAcquisitionSelector:
    """
    Produces provenance-tagged market research for a product.

    Args:
        store: Persistence collaborator for products and research records.
        settings: Application settings.
        search_service: Real marketplace search; built from settings if omitted.
        claude_service: AI estimation client; built when an Anthropic key exists.
        validator: Validation layer applied before the record is persisted.
        credentials: Credential availability collaborator; defaults to
            settings.check_marketplace_credentials.
    """

    def __init__(
        self,
        store: PipelineStore,
        settings: Optional[Settings] = None,
        search_service: Optional[MarketplaceSearchService] = None,
        claude_service: Optional[ClaudeService] = None,
        validator: Optional[ValidationService] = None,
        credentials: Optional[Callable[[], CredentialStatus]] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.validator = validator or ValidationService(
            confidence_threshold=self.settings.manual_review_confidence_threshold,
            warning_limit=self.settings.manual_review_warning_limit,
        )
        self._credentials = credentials or self.settings.check_marketplace_credentials
        self._search_service = search_service
        self._claude_service = claude_service
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_requests)

    @property
    def search_service(self) -> MarketplaceSearchService:
        if self._search_service is None:
            self._search_service = MarketplaceSearchService(settings=self.settings, credentials=self._credentials)
        return self._search_service

    @property
    def claude_service(self) -> Optional[ClaudeService]:
        if self._claude_service is None and self.settings.has_ai_provider:
            self._claude_service = ClaudeService(settings=self.settings)
        return self._claude_service

    async def close(self) -> None:
        if self._search_service is not None:
            await self._search_service.close()
        if self._claude_service is not None:
            await self._claude_service.close()

    def check_credentials(self) -> CredentialStatus:
        return self._credentials()

    def choose_path(self) -> DataProvenance:
        """REAL when any marketplace credential is present, else FAKE."""
        if self.check_credentials().has_real_credentials:
            return DataProvenance.REAL
        return DataProvenance.FAKE

    # =========================================================================
    # Public API
    # =========================================================================

    async def acquire_market_data(
        self,
        account_id: str,
        product_id: str,
        name: str,
        model: Optional[str] = None,
        brand: Optional[str] = None,
        category: Optional[str] = None,
        cancel_token: Optional["CancellationToken"] = None,
    ) -> MarketResearchRecord:
        """
        Research a product and persist the result.

        Raises:
            ProductNotFoundError: Product missing or owned by another account.
            ResearchUnavailableError: Every configured path failed.
            PipelineCancelledError: The token was cancelled before the write.
            PersistenceError: The store failed.
        """
        if not name or not name.strip():
            raise ResearchUnavailableError(
                "A product name is required for market research",
                details={"product_id": product_id},
            )
        await self._require_product(account_id, product_id)

        errors: dict[str, str] = {}
        record: Optional[MarketResearchRecord] = None
        path = self.choose_path()

        if path == DataProvenance.REAL:
            try:
                record = await self._research_with_marketplaces(
                    account_id, product_id, name, model, brand, category
                )
            except _PathFailed as e:
                errors["real"] = str(e)
                logger.warning("Real marketplace research found nothing", product_id=product_id, error=str(e))

        if record is None:
            if self.claude_service is None:
                errors["ai"] = "ANTHROPIC_API_KEY is not configured"
            else:
                try:
                    record = await self._research_with_ai(
                        account_id, product_id, name, model, brand, category
                    )
                except _PathFailed as e:
                    errors["ai"] = str(e)
                    logger.warning("AI market research failed", product_id=product_id, error=str(e))

        if record is None:
            logger.error("Market research unavailable", product_id=product_id, errors=errors)
            hint = (
                "Configure ANTHROPIC_API_KEY to fall back to AI estimates"
                if "ai" in errors and not self.settings.has_ai_provider
                else "Add SERP_API_KEY, EBAY_API_KEY or RAPIDAPI_KEY for verified marketplace data"
            )
            raise ResearchUnavailableError(
                f"All market research paths failed for product {product_id}. {hint}",
                details={"product_id": product_id, "errors": errors},
            )

        record = self._apply_validation(record)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled(product_id)

        try:
            await self.store.upsert_market_research(record)
        except FlipForgeError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Failed to save market research: {e}",
                details={"product_id": product_id},
            ) from e

        logger.info(
            "Market research saved",
            product_id=product_id,
            provenance=record.provenance,
            competitor_count=record.competitor_count,
            confidence=record.confidence,
        )
        return record

    # =========================================================================
    # Acquisition Paths
    # =========================================================================

    async def _research_with_marketplaces(
        self,
        account_id: str,
        product_id: str,
        name: str,
        model: Optional[str],
        brand: Optional[str],
        category: Optional[str],
    ) -> MarketResearchRecord:
        keywords = build_search_keywords(name, model, brand, category)
        if not keywords:
            raise _PathFailed("No usable search keywords")

        results = await self.search_service.search_all(keywords)
        if results.is_empty:
            raise _PathFailed(f"No verified listings found ({results.errors or 'empty results'})")

        listings = results.all_listings
        average = sum(listing.price for listing in listings) / len(listings)
        demand = demand_from_listing_count(len(listings))
        low, high = min(l.price for l in listings), max(l.price for l in listings)

        return self._build_record(
            account_id=account_id,
            product_id=product_id,
            amazon=results.amazon,
            ebay=results.ebay,
            keywords=keywords,
            demand=demand,
            competitive_price=average * RECOMMENDED_PRICE_FACTOR,
            confidence=REAL_DATA_CONFIDENCE,
            provenance=DataProvenance.REAL,
            insights=[
                f"Found {len(listings)} real marketplace listings",
                f"Price range: ${low:.2f} - ${high:.2f}",
                f"Average market price: ${average:.2f}",
                f"Market demand appears {demand.value} based on listing availability",
            ],
            sources=results.sources,
        )

    async def _research_with_ai(
        self,
        account_id: str,
        product_id: str,
        name: str,
        model: Optional[str],
        brand: Optional[str],
        category: Optional[str],
    ) -> MarketResearchRecord:
        claude = self.claude_service

        try:
            async with self._semaphore:
                keywords = (await claude.generate_search_keywords(name, model, brand, category)).keywords
        except ClaudeServiceError as e:
            logger.warning("Keyword generation failed, using fallback keywords", error=str(e))
            keywords = build_search_keywords(name, model, brand, category, limit=None)
        if not keywords:
            raise _PathFailed("No usable search keywords")

        async def estimate(platform: Platform) -> list[MarketListing]:
            async with self._semaphore:
                return await claude.estimate_listings(platform, keywords)

        outcomes = await asyncio.gather(
            estimate(Platform.AMAZON),
            estimate(Platform.EBAY),
            return_exceptions=True,
        )
        per_platform: dict[Platform, list[MarketListing]] = {}
        for platform, outcome in zip((Platform.AMAZON, Platform.EBAY), outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("AI listing estimation failed", platform=platform.value, error=str(outcome))
                per_platform[platform] = []
            else:
                per_platform[platform] = outcome

        amazon, ebay = per_platform[Platform.AMAZON], per_platform[Platform.EBAY]
        if not amazon and not ebay:
            raise _PathFailed("AI estimation returned no listings")

        analysis = await self._analyze(claude, name, amazon, ebay)

        return self._build_record(
            account_id=account_id,
            product_id=product_id,
            amazon=amazon,
            ebay=ebay,
            keywords=keywords,
            demand=MarketDemand(analysis.market_demand),
            competitive_price=analysis.recommended_price,
            confidence=analysis.confidence,
            provenance=DataProvenance.FAKE,
            insights=analysis.insights,
            sources=["claude"],
            warning=AI_DATA_WARNING,
        )

    async def _analyze(
        self,
        claude: ClaudeService,
        name: str,
        amazon: list[MarketListing],
        ebay: list[MarketListing],
    ) -> MarketAnalysis:
        try:
            async with self._semaphore:
                return await claude.analyze_market(name, amazon, ebay)
        except ClaudeServiceError as e:
            logger.warning("Market analysis failed, using fallback analysis", error=str(e))
            prices = [listing.price for listing in (*amazon, *ebay)]
            average = sum(prices) / len(prices)
            return MarketAnalysis(
                market_demand=MarketDemand.MEDIUM,
                recommended_price=average * RECOMMENDED_PRICE_FACTOR,
                confidence=FALLBACK_AI_CONFIDENCE,
                insights=["Market analysis performed with limited data"],
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _build_record(
        self,
        *,
        account_id: str,
        product_id: str,
        amazon: list[MarketListing],
        ebay: list[MarketListing],
        keywords: list[str],
        demand: MarketDemand,
        competitive_price: float,
        confidence: float,
        provenance: DataProvenance,
        insights: list[str],
        sources: list[str],
        warning: Optional[str] = None,
    ) -> MarketResearchRecord:
        listings = [*amazon, *ebay]
        prices = [listing.price for listing in listings]
        return MarketResearchRecord(
            product_id=product_id,
            account_id=account_id,
            amazon=best_listing(amazon),
            ebay=best_listing(ebay),
            listings=listings,
            search_keywords=keywords,
            average_market_price=round_money(sum(prices) / len(prices)),
            price_range=PriceRange(min=min(prices), max=max(prices)),
            competitive_price=round_money(competitive_price),
            market_demand=demand,
            competitor_count=len(listings),
            confidence=confidence,
            provenance=provenance,
            warning=warning,
            insights=insights,
            research_sources=sources,
        )

    def _apply_validation(self, record: MarketResearchRecord) -> MarketResearchRecord:
        result = self.validator.validate_market_research_data({
            "amazon_price": record.amazon.price if record.amazon else None,
            "ebay_price": record.ebay.price if record.ebay else None,
            "competitive_price": record.competitive_price,
            "market_demand": record.market_demand,
            "competitor_count": record.competitor_count,
            "ai_confidence": record.confidence,
        })
        self.validator.log_validation_results("market_research", result)
        cleaned = result.cleaned_data
        return record.model_copy(update={
            "competitive_price": cleaned["competitive_price"],
            "market_demand": cleaned["market_demand"],
            "competitor_count": cleaned["competitor_count"],
            "confidence": cleaned["ai_confidence"] if cleaned["ai_confidence"] is not None else 0.0,
            "validation_warnings": result.warnings,
        })

    async def _require_product(self, account_id: str, product_id: str) -> None:
        try:
            product = await self.store.get_product(account_id, product_id)
        except FlipForgeError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Failed to load product: {e}",
                details={"product_id": product_id},
            ) from e
        if product is None:
            raise ProductNotFoundError(product_id, account_id)


__all__ = [
    "MarketDataAcquisitionSelector",
    "build_search_keywords",
    "demand_from_listing_count",
    "best_listing",
    "AI_DATA_WARNING",
    "REAL_DATA_CONFIDENCE",
]
