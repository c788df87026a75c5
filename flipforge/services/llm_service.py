"""
Claude API service for AI-estimated market research.

When no marketplace credentials are configured, phase 2 asks Claude for a
keyword strategy, plausible Amazon and eBay listings and a market analysis.
Everything produced here is an estimate: listings are returned with
verified=False and callers must flag the resulting record accordingly.

Key Features:
    - Async client with bounded retries, exponential backoff and a per-call timeout
    - Pydantic schema validation for structured outputs with correction requests
    - Token usage tracking and cost estimation

Example:
    >>> async with ClaudeService(settings) as claude:
    ...     strategy = await claude.generate_search_keywords("Sony WH-1000XM4", brand="Sony")
    ...     listings = await claude.estimate_listings(Platform.EBAY, strategy.keywords)
"""

from __future__ import annotations

import asyncio
import json
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Type, TypeVar

import anthropic
from anthropic import APIError, APIStatusError, RateLimitError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from flipforge.config.settings import Settings, get_settings
from flipforge.models.schemas import MarketDemand, MarketListing, Platform
from flipforge.utils.logger import get_logger

T = TypeVar("T", bound=BaseModel)

logger = get_logger(__name__)


# =============================================================================
# Constants and Enums
# =============================================================================

class TaskType(str, Enum):
    """Task types with associated temperature settings."""
    KEYWORDS = "keywords"
    LISTING_ESTIMATION = "listing_estimation"
    MARKET_ANALYSIS = "market_analysis"
    VALIDATION = "validation"


TEMPERATURE_SETTINGS: dict[TaskType, float] = {
    TaskType.KEYWORDS: 0.3,
    TaskType.LISTING_ESTIMATION: 0.4,
    TaskType.MARKET_ANALYSIS: 0.5,
    TaskType.VALIDATION: 0.1,
}

MAX_TOKENS: dict[TaskType, int] = {
    TaskType.KEYWORDS: 300,
    TaskType.LISTING_ESTIMATION: 1500,
    TaskType.MARKET_ANALYSIS: 500,
    TaskType.VALIDATION: 1500,
}

# Per 1K tokens
TOKEN_COSTS = {
    "claude-sonnet-4-20250514": {"input": 0.003, "output": 0.015},
    "claude-3-5-sonnet-20241022": {"input": 0.003, "output": 0.015},
    "claude-3-haiku-20240307": {"input": 0.00025, "output": 0.00125},
}

LISTING_URL_FORMATS = {
    Platform.AMAZON: "https://amazon.com/dp/[ASIN]",
    Platform.EBAY: "https://ebay.com/itm/[item_id]",
}


# =============================================================================
# Prompt Templates
# =============================================================================

SYSTEM_PROMPTS = {
    "research": """You are an expert e-commerce product researcher for Amazon and eBay resale.
Respond ONLY with valid JSON matching the requested structure - no markdown, no explanation.""",

    "validation": """You are a JSON validation and correction specialist.
Fix any JSON errors while preserving the original intent and data.
Only output the corrected JSON - no explanation or markdown.""",
}

KEYWORDS_PROMPT = """Generate optimal search keywords for finding this product on Amazon and eBay.

Product: {name}
Model: {model}
Brand: {brand}
Category: {category}

Generate 5-8 search keywords covering name variations, model numbers,
brand + product combinations and category-specific marketplace terms.

Return JSON: {{"keywords": ["keyword1", "keyword2", "keyword3"]}}"""

LISTINGS_PROMPT = """For these {platform} search keywords: {keywords}

Generate 3-5 realistic {platform} listings that would appear for these search terms.
For each listing provide a realistic title, a current market price, a URL in the
format {url_format}, the condition (new, used, refurbished, for parts), a seller
rating (0.0-5.0), an approximate sold count, and a confidence score (0.0-1.0)
for how closely it matches the product.

Return JSON: {{"listings": [{{"title": "...", "price": 299.99, "link": "...",
"condition": "used", "seller_rating": 4.8, "sold_count": 45, "confidence": 0.82}}]}}"""

ANALYSIS_PROMPT = """Analyze this market data for "{name}":

Amazon results: {amazon_count} listings
eBay results: {ebay_count} listings
Price range: ${price_min:.2f} - ${price_max:.2f}
Average price: ${average:.2f}

Provide the market demand level (high/medium/low), a recommended selling price,
your overall confidence in the data accuracy (0.0-1.0), and 3-4 key insights.

Return JSON: {{"market_demand": "medium", "recommended_price": 299.99,
"confidence": 0.85, "insights": ["insight1", "insight2", "insight3"]}}"""


# =============================================================================
# Response Schemas
# =============================================================================

class _LenientModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class KeywordStrategy(_LenientModel):
    keywords: list[str] = Field(..., min_length=1)

    @field_validator("keywords")
    @classmethod
    def strip_keywords(cls, v: list[str]) -> list[str]:
        cleaned = [k.strip() for k in v if isinstance(k, str) and k.strip()]
        if not cleaned:
            raise ValueError("keywords must contain at least one non-empty string")
        return cleaned


class EstimatedListing(_LenientModel):
    title: str
    price: float = Field(..., gt=0)
    link: str
    condition: Optional[str] = None
    seller_rating: Optional[float] = Field(default=None, ge=0, le=5, alias="sellerRating")
    sold_count: Optional[int] = Field(default=None, ge=0, alias="soldCount")
    confidence: float = Field(default=0.5, ge=0, le=1)


class EstimatedListings(_LenientModel):
    listings: list[EstimatedListing] = Field(default_factory=list)


class MarketAnalysis(_LenientModel):
    market_demand: MarketDemand = Field(..., alias="marketDemand")
    recommended_price: float = Field(..., ge=0, alias="recommendedPrice")
    confidence: float = Field(..., ge=0, le=1)
    insights: list[str] = Field(default_factory=list)

    @field_validator("market_demand", mode="before")
    @classmethod
    def lower_demand(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class TokenUsage:
    """Token usage tracking for a single request."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    model: str = ""
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def calculate_cost(self, model: str) -> float:
        """Calculate estimated cost based on token usage."""
        if model in TOKEN_COSTS:
            costs = TOKEN_COSTS[model]
            self.estimated_cost = (
                (self.input_tokens / 1000) * costs["input"]
                + (self.output_tokens / 1000) * costs["output"]
            )
        return self.estimated_cost


# =============================================================================
# Custom Exceptions
# =============================================================================

class ClaudeServiceError(Exception):
    """Base exception for Claude service errors."""
    pass


class SchemaValidationError(ClaudeServiceError):
    """Raised when response doesn't match expected schema."""
    def __init__(self, message: str, raw_response: str, errors: list[str]):
        super().__init__(message)
        self.raw_response = raw_response
        self.errors = errors


class MaxRetriesExceededError(ClaudeServiceError):
    """Raised when max retries are exceeded."""
    pass


# =============================================================================
# Main Service Class
# =============================================================================

class ClaudeService:
    """
    Claude API client for market research estimation.

    Attributes:
        settings: Application settings
        client: Anthropic async client
        token_usage_history: Token usage records per successful call
        total_cost: Running total of estimated API cost
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        api_key: Optional[str] = None,
        max_retries: Optional[int] = None,
    ):
        self.settings = settings or get_settings()
        if api_key is None:
            if self.settings.anthropic_api_key is None:
                raise ClaudeServiceError("ANTHROPIC_API_KEY is not configured")
            api_key = self.settings.anthropic_api_key.get_secret_value()
        self.max_retries = max_retries or self.settings.max_retries
        self.timeout_seconds = self.settings.request_timeout_seconds

        self.client = anthropic.AsyncAnthropic(api_key=api_key)

        self.token_usage_history: list[TokenUsage] = []
        self.total_cost: float = 0.0

        logger.info(
            "ClaudeService initialized",
            model=self.settings.claude_model,
            max_retries=self.max_retries,
        )

    async def __aenter__(self) -> "ClaudeService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client connection."""
        await self.client.close()
        logger.info(
            "ClaudeService closed",
            total_requests=len(self.token_usage_history),
            total_cost=f"${self.total_cost:.4f}",
        )

    # =========================================================================
    # Core API Methods
    # =========================================================================

    async def _call_api(
        self,
        messages: list[dict[str, str]],
        system: str = "",
        temperature: float = 0.5,
        max_tokens: Optional[int] = None,
        task_type: TaskType = TaskType.MARKET_ANALYSIS,
    ) -> tuple[str, TokenUsage]:
        """
        Make an API call with a timeout and retry logic.

        Returns:
            Tuple of (response_text, token_usage)

        Raises:
            ClaudeServiceError: On non-retryable API errors
            MaxRetriesExceededError: When every attempt failed
        """
        max_tokens = max_tokens or self.settings.claude_max_tokens

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                start_time = time.time()
                response = await asyncio.wait_for(
                    self.client.messages.create(
                        model=self.settings.claude_model,
                        max_tokens=max_tokens,
                        temperature=temperature,
                        system=system,
                        messages=messages,
                    ),
                    timeout=self.timeout_seconds,
                )
                elapsed = time.time() - start_time

                response_text = response.content[0].text
                usage = TokenUsage(
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                    total_tokens=response.usage.input_tokens + response.usage.output_tokens,
                    model=self.settings.claude_model,
                )
                usage.calculate_cost(self.settings.claude_model)
                self.token_usage_history.append(usage)
                self.total_cost += usage.estimated_cost

                logger.info(
                    "API call successful",
                    task_type=task_type.value,
                    attempt=attempt + 1,
                    elapsed_seconds=f"{elapsed:.2f}",
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                )
                return response_text, usage

            except RateLimitError as e:
                last_error = e
                wait_time = self._calculate_backoff(attempt, base=10)
                logger.warning("Rate limit hit, backing off", attempt=attempt + 1, wait_seconds=wait_time)
                await asyncio.sleep(wait_time)

            except APIStatusError as e:
                last_error = e
                if e.status_code >= 500:
                    wait_time = self._calculate_backoff(attempt)
                    logger.warning(
                        "Server error, retrying",
                        attempt=attempt + 1,
                        status_code=e.status_code,
                        wait_seconds=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                elif e.status_code == 401:
                    logger.error("Authentication failed", error=str(e))
                    raise ClaudeServiceError(f"Authentication failed: {e}")
                else:
                    logger.error("API error", status_code=e.status_code, error=str(e))
                    raise ClaudeServiceError(f"API error: {e}")

            except APIError as e:
                last_error = e
                wait_time = self._calculate_backoff(attempt)
                logger.warning("API error, retrying", attempt=attempt + 1, wait_seconds=wait_time, error=str(e))
                await asyncio.sleep(wait_time)

            except asyncio.TimeoutError as e:
                last_error = e
                wait_time = self._calculate_backoff(attempt)
                logger.warning("Request timeout, retrying", attempt=attempt + 1, wait_seconds=wait_time)
                await asyncio.sleep(wait_time)

        logger.error(
            "Max retries exceeded",
            task_type=task_type.value,
            max_retries=self.max_retries,
            last_error=str(last_error),
        )
        raise MaxRetriesExceededError(f"Failed after {self.max_retries} attempts: {last_error}")

    async def _structured_request(
        self,
        prompt: str,
        schema: Type[T],
        task_type: TaskType,
    ) -> T:
        response_text, _ = await self._call_api(
            messages=[{"role": "user", "content": prompt}],
            system=SYSTEM_PROMPTS["research"],
            temperature=TEMPERATURE_SETTINGS[task_type],
            max_tokens=MAX_TOKENS[task_type],
            task_type=task_type,
        )
        return await self.validate_and_retry(response_text, schema, max_retries=2)

    # =========================================================================
    # High-Level Methods
    # =========================================================================

    async def generate_search_keywords(
        self,
        name: str,
        model: Optional[str] = None,
        brand: Optional[str] = None,
        category: Optional[str] = None,
    ) -> KeywordStrategy:
        """Ask Claude for marketplace search keywords."""
        prompt = KEYWORDS_PROMPT.format(
            name=name,
            model=model or "Unknown",
            brand=brand or "Unknown",
            category=category or "Unknown",
        )
        return await self._structured_request(prompt, KeywordStrategy, TaskType.KEYWORDS)

    async def estimate_listings(
        self,
        platform: Platform,
        keywords: list[str],
    ) -> list[MarketListing]:
        """
        Generate plausible listings for a platform.

        Returned listings are unverified and their links may not resolve.
        """
        prompt = LISTINGS_PROMPT.format(
            platform="Amazon" if platform == Platform.AMAZON else "eBay",
            keywords=", ".join(keywords),
            url_format=LISTING_URL_FORMATS[platform],
        )
        estimated = await self._structured_request(prompt, EstimatedListings, TaskType.LISTING_ESTIMATION)
        return [
            MarketListing(
                platform=platform,
                title=item.title,
                price=item.price,
                link=item.link,
                condition=item.condition.lower() if item.condition else None,
                seller_rating=item.seller_rating,
                sold_count=item.sold_count,
                confidence=item.confidence,
                verified=False,
                source="claude",
            )
            for item in estimated.listings
        ]

    async def analyze_market(
        self,
        name: str,
        amazon: list[MarketListing],
        ebay: list[MarketListing],
    ) -> MarketAnalysis:
        """Judge demand, recommended price and confidence for collected listings."""
        prices = [listing.price for listing in (*amazon, *ebay)]
        if not prices:
            raise ClaudeServiceError("Market analysis requires at least one priced listing")
        prompt = ANALYSIS_PROMPT.format(
            name=name,
            amazon_count=len(amazon),
            ebay_count=len(ebay),
            price_min=min(prices),
            price_max=max(prices),
            average=sum(prices) / len(prices),
        )
        return await self._structured_request(prompt, MarketAnalysis, TaskType.MARKET_ANALYSIS)

    # =========================================================================
    # Validation Methods
    # =========================================================================

    async def validate_and_retry(
        self,
        response: str,
        expected_schema: Type[T],
        max_retries: int = 3,
    ) -> T:
        """
        Validate response against schema and retry with corrections if invalid.

        Raises:
            SchemaValidationError: If validation fails after all retries
        """
        last_error: Optional[str] = None
        current_response = response

        for attempt in range(max_retries):
            try:
                data = json.loads(self._extract_json(current_response))
                # Bare arrays are accepted for list-wrapper schemas
                if isinstance(data, list):
                    list_field = next(iter(expected_schema.model_fields))
                    data = {list_field: data}
                result = expected_schema.model_validate(data)
                if attempt > 0:
                    logger.info(
                        "Validation succeeded after correction",
                        attempt=attempt + 1,
                        schema=expected_schema.__name__,
                    )
                return result

            except json.JSONDecodeError as e:
                last_error = f"JSON parse error: {e}"
                logger.warning("Invalid JSON, attempting correction", attempt=attempt + 1, error=str(e))

            except ValidationError as e:
                errors = [f"{err['loc']}: {err['msg']}" for err in e.errors()]
                last_error = f"Validation errors: {'; '.join(errors)}"
                logger.warning(
                    "Schema validation failed, attempting correction",
                    attempt=attempt + 1,
                    errors=errors[:3],
                )

            if attempt < max_retries - 1:
                current_response = await self._request_correction(
                    current_response,
                    last_error,
                    expected_schema,
                )

        raise SchemaValidationError(
            f"Failed to validate response after {max_retries} attempts",
            raw_response=response,
            errors=[last_error] if last_error else [],
        )

    async def _request_correction(
        self,
        invalid_response: str,
        error_message: str,
        expected_schema: Type[BaseModel],
    ) -> str:
        """Request Claude to correct an invalid response."""
        correction_prompt = f"""The following JSON response has errors:

## Invalid Response:
{invalid_response[:2000]}

## Error:
{error_message}

## Expected Schema:
{json.dumps(expected_schema.model_json_schema(), indent=2)}

Please fix the JSON to match the expected schema. Output ONLY the corrected JSON:"""

        response_text, _ = await self._call_api(
            messages=[{"role": "user", "content": correction_prompt}],
            system=SYSTEM_PROMPTS["validation"],
            temperature=TEMPERATURE_SETTINGS[TaskType.VALIDATION],
            max_tokens=MAX_TOKENS[TaskType.VALIDATION],
            task_type=TaskType.VALIDATION,
        )
        return response_text

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def _extract_json(self, text: str) -> str:
        """Extract JSON from text that may contain markdown or other content."""
        code_block_pattern = r"```(?:json)?\s*([\s\S]*?)```"
        matches = re.findall(code_block_pattern, text)
        if matches:
            return matches[0].strip()

        json_pattern = r"(\{[\s\S]*\}|\[[\s\S]*\])"
        matches = re.findall(json_pattern, text)
        if matches:
            return max(matches, key=len)

        return text.strip()

    def _calculate_backoff(self, attempt: int, base: float = 1.0) -> float:
        """Calculate exponential backoff with jitter."""
        backoff = base * (2 ** attempt)
        jitter = random.uniform(0, backoff * 0.1)
        return min(backoff + jitter, 60)

    def get_usage_stats(self) -> dict[str, Any]:
        """Get usage statistics for the service."""
        total_tokens = sum(u.total_tokens for u in self.token_usage_history)
        return {
            "total_requests": len(self.token_usage_history),
            "total_tokens": total_tokens,
            "total_cost": self.total_cost,
        }


# =============================================================================
# Convenience Functions
# =============================================================================

def create_claude_service(settings: Optional[Settings] = None) -> Optional[ClaudeService]:
    """Create a ClaudeService, or None when no Anthropic key is configured."""
    settings = settings or get_settings()
    if not settings.has_ai_provider:
        return None
    return ClaudeService(settings=settings)


__all__ = [
    "ClaudeService",
    "create_claude_service",
    "TaskType",
    "TokenUsage",
    "KeywordStrategy",
    "EstimatedListing",
    "EstimatedListings",
    "MarketAnalysis",
    "ClaudeServiceError",
    "SchemaValidationError",
    "MaxRetriesExceededError",
]
