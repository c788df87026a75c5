"""
Phase work executed by the pipeline driver.

Each handler produces the persisted output of one phase:
    1. Product Analysis   -> validated identification fields on the product
    2. Market Research    -> MarketResearchRecord via the acquisition selector
    3. SEO Analysis       -> SeoAnalysisRecord built from product and research
    4. Listing Generation -> draft ListingRecord priced from research

Handlers check the cancellation token before every write.
"""

import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from flipforge.models.schemas import (
    ListingRecord,
    MarketResearchRecord,
    Product,
    SeoAnalysisRecord,
)
from flipforge.persistence.store import PipelineStore
from flipforge.pipeline.tasks import CancellationToken
from flipforge.services.market_research import MarketDataAcquisitionSelector
from flipforge.services.validation_service import ValidationService
from flipforge.utils.errors import FlipForgeError, PersistenceError, ValidationError
from flipforge.utils.logger import get_logger

logger = get_logger(__name__)

SEO_TITLE_LIMIT = 60
META_DESCRIPTION_LIMIT = 160
SLUG_LIMIT = 60


@dataclass
class PhaseContext:
    """Everything a handler needs about the product being processed."""

    account_id: str
    product: Product
    token: CancellationToken


PhaseHandler = Callable[[PhaseContext], Awaitable[Any]]


# =============================================================================
# Text Helpers
# =============================================================================

def slugify(text: str, limit: int = SLUG_LIMIT) -> str:
    """Lowercase URL slug: alphanumerics joined by single hyphens."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if len(slug) > limit:
        slug = slug[:limit].rsplit("-", 1)[0] or slug[:limit]
    return slug


def truncate_words(text: str, limit: int) -> str:
    """Cut text at a word boundary so it fits within limit characters."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0]
    return cut.rstrip(" ,.-") or text[:limit]


def _unique(values: list[Optional[str]]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        if not value:
            continue
        key = value.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(value.strip())
    return result


def build_seo_title(product: Product) -> str:
    name = product.name or product.model or "Product"
    parts = [name]
    if product.brand and product.brand.lower() not in name.lower():
        parts.insert(0, product.brand)
    if product.model and product.model.lower() not in name.lower():
        parts.append(product.model)
    return truncate_words(" ".join(parts), SEO_TITLE_LIMIT)


def build_seo_record(product: Product, research: Optional[MarketResearchRecord]) -> SeoAnalysisRecord:
    """Deterministic SEO output from product fields and market research."""
    title = build_seo_title(product)

    description = f"Buy {title}"
    if product.category:
        description += f" in {product.category}"
    description += "."
    if research and research.price_range:
        description += (
            f" Priced against {research.competitor_count or 0} marketplace listings"
            f" from ${research.price_range.min:.2f} to ${research.price_range.max:.2f}."
        )

    keywords = _unique([
        *(research.search_keywords if research else []),
        product.name,
        product.model,
        product.brand,
    ])
    tags = _unique([product.brand, product.category, research.market_demand if research else None])

    return SeoAnalysisRecord(
        product_id=product.id,
        seo_title=title,
        url_slug=slugify(title),
        meta_description=truncate_words(description, META_DESCRIPTION_LIMIT),
        keywords=keywords,
        tags=[tag.lower() for tag in tags],
    )


def build_listing_record(
    product: Product,
    research: Optional[MarketResearchRecord],
    seo: Optional[SeoAnalysisRecord],
) -> ListingRecord:
    """Draft listing priced at the competitive price, else the market average."""
    title = (seo.seo_title if seo and seo.seo_title else None) or build_seo_title(product)

    lines = [seo.meta_description if seo and seo.meta_description else f"{title}."]
    if research:
        lines.extend(research.insights)
        if research.warning:
            lines.append(f"Note: {research.warning}")

    price = None
    if research:
        price = research.competitive_price or research.average_market_price

    return ListingRecord(
        product_id=product.id,
        title=title,
        description="\n".join(lines),
        price=price,
    )


# =============================================================================
# Handlers
# =============================================================================

class PhaseHandlers:
    """
    Registry of per-phase work.

    Args:
        store: Persistence collaborator for phase outputs.
        selector: Market data acquisition for phase 2.
        validator: Validation layer used by phase 1.
    """

    def __init__(
        self,
        store: PipelineStore,
        selector: MarketDataAcquisitionSelector,
        validator: Optional[ValidationService] = None,
    ):
        self.store = store
        self.selector = selector
        self.validator = validator or ValidationService()
        self._handlers: dict[int, PhaseHandler] = {
            1: self.product_analysis,
            2: self.market_research,
            3: self.seo_analysis,
            4: self.listing_generation,
        }

    def for_phase(self, phase_number: int) -> Optional[PhaseHandler]:
        return self._handlers.get(phase_number)

    def override(self, phase_number: int, handler: PhaseHandler) -> None:
        """Replace the handler for a phase (testing hook)."""
        self._handlers[phase_number] = handler

    async def _store_call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except FlipForgeError:
            raise
        except Exception as e:
            raise PersistenceError(f"Store operation '{operation}' failed: {e}") from e

    async def product_analysis(self, ctx: PhaseContext) -> dict[str, Any]:
        """Check that the product is identified well enough to research."""
        product = ctx.product
        result = self.validator.validate_product_data({
            "name": product.name,
            "model": product.model,
            "brand": product.brand,
            "category": product.category,
            "ai_confidence": product.ai_confidence,
        })
        self.validator.log_validation_results("product_analysis", result)
        cleaned = self.validator.require_valid(result, "product data")
        if not (cleaned["name"] or cleaned["model"]):
            raise ValidationError(
                "Product needs a usable name or model before market research",
                errors=result.warnings,
            )
        return cleaned

    async def market_research(self, ctx: PhaseContext) -> MarketResearchRecord:
        product = ctx.product
        name = product.name or product.model
        if not name:
            raise ValidationError("Product has no name or model to research")
        return await self.selector.acquire_market_data(
            ctx.account_id,
            product.id,
            name,
            model=product.model,
            brand=product.brand,
            category=product.category,
            cancel_token=ctx.token,
        )

    async def seo_analysis(self, ctx: PhaseContext) -> SeoAnalysisRecord:
        research = await self._store_call("get_market_research", self.store.get_market_research(ctx.product.id))
        record = build_seo_record(ctx.product, research)
        ctx.token.raise_if_cancelled(ctx.product.id)
        await self._store_call("upsert_seo_analysis", self.store.upsert_seo_analysis(record))
        logger.info("SEO analysis saved", product_id=ctx.product.id, url_slug=record.url_slug)
        return record

    async def listing_generation(self, ctx: PhaseContext) -> ListingRecord:
        research = await self._store_call("get_market_research", self.store.get_market_research(ctx.product.id))
        seo = await self._store_call("get_seo_analysis", self.store.get_seo_analysis(ctx.product.id))
        record = build_listing_record(ctx.product, research, seo)
        ctx.token.raise_if_cancelled(ctx.product.id)
        await self._store_call("upsert_listing", self.store.upsert_listing(record))
        logger.info("Listing draft saved", product_id=ctx.product.id, price=record.price)
        return record


__all__ = [
    "PhaseContext",
    "PhaseHandler",
    "PhaseHandlers",
    "slugify",
    "truncate_words",
    "build_seo_record",
    "build_listing_record",
]
