"""
Services package for the FlipForge pipeline.

Services:
    - MarketDataAcquisitionSelector: Real-vs-AI market research for phase 2
    - MarketplaceSearchService: Concurrent marketplace search across providers
    - ClaudeService: AI-estimated listings and market analysis
    - ValidationService: Data validation and manual review decisions

Providers:
    - SerpAPIProvider: Google Shopping results restricted to Amazon
    - EbayFindingProvider: eBay Finding API
    - RapidAPIProvider: Amazon and eBay finders on RapidAPI
"""

from flipforge.services.llm_service import (
    ClaudeService,
    ClaudeServiceError,
    MaxRetriesExceededError,
    SchemaValidationError,
    TaskType,
    TokenUsage,
    create_claude_service,
)
from flipforge.services.search_service import (
    # Service
    MarketplaceSearchService,
    create_search_service,
    # Providers
    MarketplaceProvider,
    SerpAPIProvider,
    EbayFindingProvider,
    RapidAPIProvider,
    # Models
    PlatformSearchResults,
    ProviderStatus,
    # Exceptions
    ProviderError,
    RateLimitError,
    ConfigurationError,
)
from flipforge.services.validation_service import ValidationService, round_money
from flipforge.services.market_research import MarketDataAcquisitionSelector

__all__ = [
    # Market Research
    "MarketDataAcquisitionSelector",
    # LLM Service
    "ClaudeService",
    "create_claude_service",
    "TaskType",
    "TokenUsage",
    "ClaudeServiceError",
    "SchemaValidationError",
    "MaxRetriesExceededError",
    # Search Service
    "MarketplaceSearchService",
    "create_search_service",
    # Search Providers
    "MarketplaceProvider",
    "SerpAPIProvider",
    "EbayFindingProvider",
    "RapidAPIProvider",
    # Search Models
    "PlatformSearchResults",
    "ProviderStatus",
    # Search Exceptions
    "ProviderError",
    "RateLimitError",
    "ConfigurationError",
    # Validation
    "ValidationService",
    "round_money",
]
