import pytest

from flipforge.models.schemas import ValidationResult
from flipforge.services.validation_service import ValidationService, round_money
from flipforge.utils.errors import ValidationError


@pytest.fixture
def validator():
    return ValidationService()


class TestProductData:

    def test_placeholder_name_is_nulled(self, validator):
        result = validator.validate_product_data({"name": "Unknown Product", "model": "WH-1000XM4"})
        assert result.is_valid is True
        assert result.cleaned_data["name"] is None
        assert result.cleaned_data["model"] == "WH-1000XM4"
        assert "Product name appears to be a placeholder" in result.warnings

    @pytest.mark.parametrize("name", ["Product 12", "Processing...", "generic widget"])
    def test_auto_generated_names(self, validator, name):
        result = validator.validate_product_data({"name": name})
        assert result.cleaned_data["name"] is None
        assert result.warnings

    def test_empty_input_is_invalid(self, validator):
        result = validator.validate_product_data({})
        assert result.is_valid is False
        assert result.errors == ["Product must have either a name or model"]
        assert set(result.cleaned_data) == {"name", "model", "brand", "category", "ai_confidence"}

    def test_non_string_name(self, validator):
        result = validator.validate_product_data({"name": 42, "model": "X100"})
        assert result.is_valid is False
        assert "Product name must be a non-empty string" in result.errors

    def test_short_name_warns(self, validator):
        result = validator.validate_product_data({"name": "TV"})
        assert result.is_valid is True
        assert result.cleaned_data["name"] == "TV"
        assert "Product name is very short, may need manual review" in result.warnings

    def test_short_model_is_nulled(self, validator):
        result = validator.validate_product_data({"name": "Kindle", "model": "X"})
        assert result.cleaned_data["model"] is None
        assert "Product model appears to be invalid or placeholder" in result.warnings

    def test_labels_cleaned(self, validator):
        result = validator.validate_product_data({
            "name": "Echo Dot",
            "brand": "  Amazon ",
            "category": "General Merchandise",
        })
        assert result.cleaned_data["brand"] == "Amazon"
        assert result.cleaned_data["category"] is None
        assert "Category appears to be a placeholder" in result.warnings

    @pytest.mark.parametrize("raw, expected", [(84.5, 85), (62.4, 62), (100, 100), (0, 0)])
    def test_ai_confidence_rounds_half_up(self, validator, raw, expected):
        result = validator.validate_product_data({"name": "Echo Dot", "ai_confidence": raw})
        assert result.cleaned_data["ai_confidence"] == expected

    @pytest.mark.parametrize("raw", [150, -1, "high", True])
    def test_ai_confidence_out_of_range(self, validator, raw):
        result = validator.validate_product_data({"name": "Echo Dot", "ai_confidence": raw})
        assert result.cleaned_data["ai_confidence"] is None
        assert "AI confidence is not a valid percentage (0-100)" in result.warnings


class TestMarketResearchData:

    def test_prices_rounded_to_cents(self, validator):
        result = validator.validate_market_research_data({
            "competitive_price": 19.995,
            "amazon_price": 20.004,
        })
        assert result.is_valid is True
        assert result.cleaned_data["competitive_price"] == 20.0
        assert result.cleaned_data["amazon_price"] == 20.0
        assert result.cleaned_data["msrp"] is None

    def test_negative_and_non_numeric_prices(self, validator):
        result = validator.validate_market_research_data({"msrp": -5, "ebay_price": "cheap"})
        assert result.cleaned_data["msrp"] is None
        assert result.cleaned_data["ebay_price"] is None
        assert len(result.warnings) == 2

    def test_unusually_high_price_kept_with_warning(self, validator):
        result = validator.validate_market_research_data({"msrp": 250_000})
        assert result.cleaned_data["msrp"] == 250_000.0
        assert "msrp seems unusually high (250000)" in result.warnings

    def test_market_demand(self, validator):
        assert validator.validate_market_research_data(
            {"market_demand": "HIGH"}).cleaned_data["market_demand"] == "high"
        result = validator.validate_market_research_data({"market_demand": "huge"})
        assert result.cleaned_data["market_demand"] is None
        assert 'Market demand "huge" is not a valid value' in result.warnings

    def test_competitor_count_floors(self, validator):
        assert validator.validate_market_research_data(
            {"competitor_count": 7.9}).cleaned_data["competitor_count"] == 7
        result = validator.validate_market_research_data({"competitor_count": -2})
        assert result.cleaned_data["competitor_count"] is None

    def test_confidence_fraction(self, validator):
        assert validator.validate_market_research_data(
            {"ai_confidence": 0.875}).cleaned_data["ai_confidence"] == 0.88
        result = validator.validate_market_research_data({"ai_confidence": 85})
        assert result.cleaned_data["ai_confidence"] is None
        assert "AI confidence should be between 0 and 1" in result.warnings


class TestReviewDecisions:

    def test_invalid_needs_review(self, validator):
        assert validator.needs_manual_review(ValidationResult(is_valid=False)) is True

    def test_warning_limit(self):
        validator = ValidationService(warning_limit=2)
        result = ValidationResult(is_valid=True, warnings=["a", "b"])
        assert validator.needs_manual_review(result) is True
        assert validator.needs_manual_review(ValidationResult(is_valid=True, warnings=["a"])) is False

    def test_low_confidence(self, validator):
        result = ValidationResult(is_valid=True)
        assert validator.needs_manual_review(result, ai_confidence=49) is True
        assert validator.needs_manual_review(result, ai_confidence=50) is False
        assert validator.needs_manual_review(result) is False

    def test_meets_confidence_threshold(self, validator):
        assert validator.meets_confidence_threshold(None) is False
        assert validator.meets_confidence_threshold(50) is True
        assert validator.meets_confidence_threshold(70, threshold=80) is False

    def test_require_valid(self, validator):
        ok = ValidationResult(is_valid=True, cleaned_data={"name": "Echo"})
        assert validator.require_valid(ok) == {"name": "Echo"}

        bad = ValidationResult(is_valid=False, errors=["Product must have either a name or model"])
        with pytest.raises(ValidationError) as exc:
            validator.require_valid(bad, "product data")
        assert exc.value.errors == bad.errors
        assert "Invalid product data" in exc.value.message


@pytest.mark.parametrize("value, expected", [(2.675, 2.68), (1.005, 1.01), (0.125, 0.13), (10, 10.0)])
def test_round_money_half_up(value, expected):
    assert round_money(value) == expected
