import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from flipforge.config.settings import Settings
from flipforge.models.schemas import MarketListing, Platform
from flipforge.persistence.store import InMemoryPipelineStore
from flipforge.pipeline.state_machine import PipelineStateMachine
from flipforge.pipeline.tasks import WorkRegistry

ACCOUNT_ID = "acct-1"
OTHER_ACCOUNT_ID = "acct-2"


def make_settings(**overrides) -> Settings:
    """Real Settings isolated from the environment and any .env file."""
    values = {
        "ANTHROPIC_API_KEY": None,
        "SERP_API_KEY": None,
        "EBAY_API_KEY": None,
        "RAPIDAPI_KEY": None,
        "MAX_RETRIES": 1,
        "REQUEST_TIMEOUT_SECONDS": 5.0,
        "SIMULATION_PROGRESS_STEPS": 2,
        "SIMULATION_STEP_SECONDS": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_listing(platform: Platform, price: float, confidence: float = 0.95,
                 verified: bool = True, **kwargs) -> MarketListing:
    return MarketListing(
        platform=platform,
        title=kwargs.pop("title", f"{platform.value} listing {price}"),
        price=price,
        link=kwargs.pop("link", f"https://{platform.value}.com/item/{int(price * 100)}"),
        confidence=confidence,
        verified=verified,
        source=kwargs.pop("source", "test"),
        **kwargs,
    )


class FakeClock:
    """Deterministic clock advanced manually by tests."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def listing_factory():
    return make_listing


@pytest.fixture
def settings():
    """Settings with no credentials and instant progress simulation."""
    return make_settings()


@pytest.fixture
def ai_settings():
    return make_settings(ANTHROPIC_API_KEY="sk-ant-api-test-key")


@pytest.fixture
def store():
    return InMemoryPipelineStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def work_registry():
    return WorkRegistry()


@pytest.fixture
def machine(store, work_registry, clock):
    return PipelineStateMachine(store, work_registry=work_registry, clock=clock)


@pytest.fixture
def mock_search_service():
    """Mock marketplace search service."""
    service = MagicMock()
    service.search_all = AsyncMock()
    service.close = AsyncMock()
    return service


@pytest.fixture
def mock_claude_service():
    """Mock Claude service."""
    service = MagicMock()
    service.generate_search_keywords = AsyncMock()
    service.estimate_listings = AsyncMock()
    service.analyze_market = AsyncMock()
    service.close = AsyncMock()
    return service


@pytest.fixture
def estimating_claude(mock_claude_service):
    """Claude mock that returns a small AI-estimated market for any product."""
    from flipforge.models.schemas import MarketDemand
    from flipforge.services.llm_service import KeywordStrategy, MarketAnalysis

    async def estimate(platform, keywords):
        if platform == Platform.AMAZON:
            return [make_listing(Platform.AMAZON, 49.99, confidence=0.8, verified=False, source="claude")]
        return [make_listing(Platform.EBAY, 35.0, confidence=0.7, verified=False, source="claude")]

    mock_claude_service.generate_search_keywords.return_value = KeywordStrategy(keywords=["echo dot"])
    mock_claude_service.estimate_listings.side_effect = estimate
    mock_claude_service.analyze_market.return_value = MarketAnalysis(
        market_demand=MarketDemand.MEDIUM,
        recommended_price=40.0,
        confidence=0.75,
        insights=["Steady resale market"],
    )
    return mock_claude_service
