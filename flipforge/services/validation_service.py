"""
Validation service for AI-produced and user-provided pipeline data.

Placeholder values are nulled with a warning instead of failing the record;
only structurally invalid input (wrong types, no name and no model) makes a
result invalid. Records with too many warnings or low AI confidence are
flagged for manual review.
"""

import re
from decimal import ROUND_HALF_UP, Decimal
from numbers import Real
from typing import Any, Optional

from flipforge.models.schemas import MarketDemand, ValidationResult
from flipforge.utils.errors import ValidationError
from flipforge.utils.logger import get_logger

logger = get_logger(__name__)

PLACEHOLDER_TOKENS = ("unknown", "generic", "general")

# Names assigned to a product before analysis fills them in
AUTO_NAME_PATTERN = re.compile(r"^(product\s+\d+|processing\.*)$", re.IGNORECASE)

PRICE_FIELDS = ("msrp", "amazon_price", "ebay_price", "competitive_price")
MAX_REASONABLE_PRICE = 100_000
DEFAULT_CONFIDENCE_THRESHOLD = 50.0
DEFAULT_WARNING_LIMIT = 5


def round_money(value: float) -> float:
    """Round to cents with .5 rounded up."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _is_placeholder(value: str) -> bool:
    lowered = value.lower()
    return any(token in lowered for token in PLACEHOLDER_TOKENS)


class ValidationService:
    """Service for validating product and market research records."""

    def __init__(
        self,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        warning_limit: int = DEFAULT_WARNING_LIMIT,
    ):
        self.confidence_threshold = confidence_threshold
        self.warning_limit = warning_limit

    # =========================================================================
    # Product Data
    # =========================================================================

    def validate_product_data(self, data: dict[str, Any]) -> ValidationResult:
        """
        Validate product identification fields.

        Args:
            data: Mapping with any of name, model, brand, category, ai_confidence.

        Returns:
            ValidationResult whose cleaned_data always carries every field.
        """
        errors: list[str] = []
        warnings: list[str] = []
        cleaned: dict[str, Any] = {}

        name = data.get("name")
        model = data.get("model")

        if not name and not model:
            errors.append("Product must have either a name or model")

        # Name
        if name is None or name == "":
            cleaned["name"] = None
        elif not isinstance(name, str) or not name.strip():
            errors.append("Product name must be a non-empty string")
            cleaned["name"] = None
        elif _is_placeholder(name) or AUTO_NAME_PATTERN.match(name.strip()):
            warnings.append("Product name appears to be a placeholder")
            cleaned["name"] = None
        else:
            if len(name.strip()) < 3:
                warnings.append("Product name is very short, may need manual review")
            cleaned["name"] = name.strip()

        # Model
        if model is None or model == "":
            cleaned["model"] = None
        elif not isinstance(model, str) or not model.strip():
            errors.append("Product model must be a non-empty string")
            cleaned["model"] = None
        elif _is_placeholder(model) or len(model.strip()) < 2:
            warnings.append("Product model appears to be invalid or placeholder")
            cleaned["model"] = None
        else:
            cleaned["model"] = model.strip()

        cleaned["brand"] = self._clean_label(data.get("brand"), "Brand", warnings)
        cleaned["category"] = self._clean_label(data.get("category"), "Category", warnings)

        # AI confidence (percentage)
        confidence = data.get("ai_confidence")
        if confidence is None:
            cleaned["ai_confidence"] = None
        elif not _is_number(confidence) or not 0 <= confidence <= 100:
            warnings.append("AI confidence is not a valid percentage (0-100)")
            cleaned["ai_confidence"] = None
        else:
            cleaned["ai_confidence"] = int(Decimal(str(confidence)).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            ))

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            cleaned_data=cleaned,
        )

    @staticmethod
    def _clean_label(value: Any, label: str, warnings: list[str]) -> Optional[str]:
        """Brand and category are optional: bad values warn and become None."""
        if value is None or value == "":
            return None
        if not isinstance(value, str) or not value.strip():
            warnings.append(f"{label} is not a valid string")
            return None
        if _is_placeholder(value):
            warnings.append(f"{label} appears to be a placeholder")
            return None
        return value.strip()

    # =========================================================================
    # Market Research Data
    # =========================================================================

    def validate_market_research_data(self, data: dict[str, Any]) -> ValidationResult:
        """Validate prices, demand, competitor count and research confidence."""
        warnings: list[str] = []
        cleaned: dict[str, Any] = {}

        for field in PRICE_FIELDS:
            value = data.get(field)
            if value is None:
                cleaned[field] = None
            elif not _is_number(value) or value < 0:
                warnings.append(f"{field} is not a valid price (must be positive number)")
                cleaned[field] = None
            elif value > MAX_REASONABLE_PRICE:
                warnings.append(f"{field} seems unusually high ({value})")
                cleaned[field] = float(value)
            else:
                cleaned[field] = round_money(value)

        demand = data.get("market_demand")
        if demand is None or demand == "":
            cleaned["market_demand"] = None
        elif not isinstance(demand, str) or demand.lower() not in {d.value for d in MarketDemand}:
            warnings.append(f'Market demand "{demand}" is not a valid value')
            cleaned["market_demand"] = None
        else:
            cleaned["market_demand"] = demand.lower()

        count = data.get("competitor_count")
        if count is None:
            cleaned["competitor_count"] = None
        elif not _is_number(count) or count < 0:
            warnings.append("Competitor count must be a non-negative number")
            cleaned["competitor_count"] = None
        else:
            cleaned["competitor_count"] = int(count // 1)

        confidence = data.get("ai_confidence")
        if confidence is None:
            cleaned["ai_confidence"] = None
        elif not _is_number(confidence) or not 0 <= confidence <= 1:
            warnings.append("AI confidence should be between 0 and 1")
            cleaned["ai_confidence"] = None
        else:
            cleaned["ai_confidence"] = round_money(confidence)

        return ValidationResult(is_valid=True, warnings=warnings, cleaned_data=cleaned)

    # =========================================================================
    # Review Decisions
    # =========================================================================

    def needs_manual_review(
        self,
        result: ValidationResult,
        ai_confidence: Optional[float] = None,
    ) -> bool:
        """True when invalid, when warnings reach the limit, or when confidence is low."""
        if not result.is_valid:
            return True
        if len(result.warnings) >= self.warning_limit:
            return True
        if ai_confidence is not None and ai_confidence < self.confidence_threshold:
            return True
        return False

    def meets_confidence_threshold(
        self,
        confidence: Optional[float],
        threshold: Optional[float] = None,
    ) -> bool:
        if confidence is None:
            return False
        return confidence >= (self.confidence_threshold if threshold is None else threshold)

    def require_valid(self, result: ValidationResult, context: str = "record") -> dict[str, Any]:
        """Return cleaned data or raise ValidationError for an invalid result."""
        if not result.is_valid:
            raise ValidationError(
                f"Invalid {context}: {'; '.join(result.errors)}",
                errors=result.errors,
            )
        return result.cleaned_data

    def log_validation_results(self, context: str, result: ValidationResult) -> None:
        if not result.is_valid:
            logger.error("Validation failed", context=context, errors=result.errors)
        if result.warnings:
            logger.warning("Validation warnings", context=context, warnings=result.warnings)
        if result.is_valid and not result.warnings:
            logger.debug("Data validated successfully", context=context)


__all__ = ["ValidationService", "round_money", "PLACEHOLDER_TOKENS"]
