import asyncio

import pytest

from flipforge.utils.errors import (
    ErrorHandler,
    ErrorType,
    FlipForgeError,
    InvalidTransitionError,
    OperationTimeoutError,
    PersistenceError,
    ProductNotFoundError,
    ResearchUnavailableError,
    ValidationError,
    run_with_timeout,
    with_timeout,
)
from flipforge.models.schemas import ProductStatus


def test_error_hierarchy():
    for error in (
        PersistenceError("db down"),
        ResearchUnavailableError("no data"),
        ProductNotFoundError("p1", "acct-1"),
        ValidationError("bad", errors=["x"]),
    ):
        assert isinstance(error, FlipForgeError)


def test_recoverable_flags():
    assert PersistenceError("db down").recoverable is False
    assert ResearchUnavailableError("no data").recoverable is True


def test_validation_error_carries_errors():
    error = ValidationError("Invalid product", errors=["missing name"])
    assert error.errors == ["missing name"]
    assert error.details == {"errors": ["missing name"]}


def test_invalid_transition_uses_status_values():
    error = InvalidTransitionError("p1", ProductStatus.COMPLETED, ProductStatus.PAUSED)
    assert error.message == "Cannot move product p1 from 'completed' to 'paused'"


@pytest.mark.parametrize("error, expected", [
    (PersistenceError("x"), ErrorType.PERSISTENCE_ERROR),
    (asyncio.TimeoutError(), ErrorType.TIMEOUT_ERROR),
    (ConnectionError("refused"), ErrorType.NETWORK_ERROR),
    (ValueError("bad"), ErrorType.VALIDATION_ERROR),
    (Exception("rate limit hit"), ErrorType.RATE_LIMIT_ERROR),
    (Exception("invalid api key"), ErrorType.API_KEY_ERROR),
    (Exception("???"), ErrorType.INTERNAL_ERROR),
])
def test_categorize_error(error, expected):
    assert ErrorHandler.categorize_error(error) == expected


def test_describe_prefixes_category():
    assert ErrorHandler.describe(ResearchUnavailableError("no data")) == "[research_unavailable] no data"
    assert ErrorHandler.describe(KeyError()) == "[internal_error] KeyError"


@pytest.mark.asyncio
async def test_run_with_timeout_raises():
    with pytest.raises(OperationTimeoutError) as exc:
        await run_with_timeout("slow", asyncio.sleep(1), 0.01)
    assert exc.value.details["operation"] == "slow"


@pytest.mark.asyncio
async def test_with_timeout_decorator_passes_result():
    @with_timeout(1)
    async def fast():
        return 42

    assert await fast() == 42
