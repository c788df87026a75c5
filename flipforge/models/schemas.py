"""
Pydantic models and schemas for the FlipForge listing pipeline.

This module defines every record that flows through the pipeline, so that
products, phase rows and market research data are explicit tagged records
rather than loose dictionaries. Unknown fields are rejected at the boundary.

Models:
    - Product: A submitted product and its pipeline status
    - PipelinePhase: One row per (product, phase_number)
    - MarketListing: A single marketplace listing, verified or estimated
    - MarketResearchRecord: Phase 2 output with provenance
    - SeoAnalysisRecord / ListingRecord: Phase 3 and 4 outputs
    - PipelineLogEntry: Audit trail of pipeline transitions
    - ValidationResult: Outcome of the data validation layer
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Self
from uuid import uuid4

from pydantic import (
    BaseModel as PydanticBaseModel,
    ConfigDict,
    Field,
    field_serializer,
    model_validator,
)


def utcnow() -> datetime:
    """Naive UTC timestamp used for every record."""
    return datetime.utcnow()


# =============================================================================
# Base Configuration
# =============================================================================

class BaseModel(PydanticBaseModel):
    """Base model with common configuration for all schemas."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        populate_by_name=True,
        use_enum_values=True,
        extra="forbid",
    )

    def to_json(self, **kwargs) -> str:
        """Serialize model to JSON string."""
        return self.model_dump_json(indent=2, **kwargs)

    def to_dict(self, **kwargs) -> dict[str, Any]:
        """Serialize model to dictionary."""
        return self.model_dump(**kwargs)

    @classmethod
    def from_json(cls, json_str: str) -> Self:
        """Deserialize model from JSON string."""
        return cls.model_validate_json(json_str)


class TimestampMixin(BaseModel):
    """Mixin for models that need timestamp tracking."""

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @field_serializer("created_at", "updated_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        if not value:
            return None
        if value.tzinfo is None:
            return value.isoformat() + "Z"
        return value.isoformat()


# =============================================================================
# Enums
# =============================================================================

class ProductStatus(str, Enum):
    """Lifecycle status of a product."""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PAUSED = "paused"
    ERROR = "error"
    COMPLETED = "completed"
    PUBLISHED = "published"


class PhaseStatus(str, Enum):
    """Status of a single pipeline phase row."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class Platform(str, Enum):
    """Marketplaces searched during market research."""
    AMAZON = "amazon"
    EBAY = "ebay"


class MarketDemand(str, Enum):
    """Demand level reported by the research source."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DataProvenance(str, Enum):
    """Whether market data came from verified APIs or AI estimation."""
    REAL = "real"
    FAKE = "fake"


class WorkStatus(str, Enum):
    """State of a background work item."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# =============================================================================
# Product and Phase Records
# =============================================================================

class Product(TimestampMixin):
    """A product submission owned by a single account."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    model: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    status: ProductStatus = ProductStatus.UPLOADED
    current_phase: int = Field(default=1, ge=1, le=4)
    progress: int = Field(default=0, ge=0, le=100)
    is_pipeline_running: bool = False
    error_message: Optional[str] = None
    error_phase: Optional[int] = Field(default=None, ge=1, le=4)
    retry_count: int = Field(default=0, ge=0)
    ai_confidence: Optional[float] = Field(default=None, ge=0, le=100)
    requires_manual_review: bool = False


class PipelinePhase(BaseModel):
    """Durable record of a single phase for a product."""

    product_id: str
    phase_number: int = Field(..., ge=1, le=4)
    phase_name: str
    status: PhaseStatus = PhaseStatus.PENDING
    progress_percentage: int = Field(default=0, ge=0, le=100)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    processing_time_seconds: Optional[float] = None


# =============================================================================
# Market Research Records
# =============================================================================

class MarketListing(BaseModel):
    """A marketplace listing returned by a provider or estimated by AI."""

    platform: Platform
    title: str
    price: float = Field(..., gt=0)
    link: str
    condition: Optional[str] = None
    seller_rating: Optional[float] = Field(default=None, ge=0, le=5)
    sold_count: Optional[int] = Field(default=None, ge=0)
    confidence: float = Field(..., ge=0, le=1)
    verified: bool = False
    source: Optional[str] = None


class PriceRange(BaseModel):
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)

    @model_validator(mode="after")
    def check_order(self) -> "PriceRange":
        if self.max < self.min:
            raise ValueError("price_range.max must be >= price_range.min")
        return self


class MarketResearchRecord(TimestampMixin):
    """
    Phase 2 output for a product.

    The provenance flag is persisted with the record so downstream phases
    never treat AI-estimated prices and links as verified marketplace data.
    """

    product_id: str
    account_id: str
    amazon: Optional[MarketListing] = None
    ebay: Optional[MarketListing] = None
    listings: list[MarketListing] = Field(default_factory=list)
    search_keywords: list[str] = Field(default_factory=list)
    average_market_price: Optional[float] = Field(default=None, ge=0)
    price_range: Optional[PriceRange] = None
    competitive_price: Optional[float] = Field(default=None, ge=0)
    market_demand: Optional[MarketDemand] = None
    competitor_count: Optional[int] = Field(default=None, ge=0)
    confidence: float = Field(default=0.0, ge=0, le=1)
    provenance: DataProvenance
    warning: Optional[str] = None
    insights: list[str] = Field(default_factory=list)
    research_sources: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    researched_at: datetime = Field(default_factory=utcnow)

    @property
    def url_type(self) -> str:
        """Link quality flag shown to users ("real" or "fake")."""
        return self.provenance

    @property
    def is_verified(self) -> bool:
        return self.provenance == DataProvenance.REAL

    @property
    def marketplace_urls(self) -> dict[str, Optional[str]]:
        return {
            Platform.AMAZON.value: self.amazon.link if self.amazon else None,
            Platform.EBAY.value: self.ebay.link if self.ebay else None,
        }


class SeoAnalysisRecord(TimestampMixin):
    """Phase 3 output."""

    product_id: str
    seo_title: Optional[str] = Field(default=None, max_length=70)
    url_slug: Optional[str] = None
    meta_description: Optional[str] = Field(default=None, max_length=170)
    keywords: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class ListingRecord(TimestampMixin):
    """Phase 4 output."""

    product_id: str
    title: str
    description: str
    price: Optional[float] = Field(default=None, ge=0)
    currency: str = "USD"
    status: str = "draft"


class PipelineLogEntry(BaseModel):
    """Audit trail entry written on every pipeline transition."""

    product_id: str
    phase_number: Optional[int] = Field(default=None, ge=1, le=4)
    level: LogLevel = LogLevel.INFO
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Validation and Configuration Reports
# =============================================================================

class ValidationResult(BaseModel):
    """Structured outcome of the data validation layer."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    cleaned_data: dict[str, Any] = Field(default_factory=dict)


class CredentialStatus(BaseModel):
    """Which marketplace credentials are configured."""

    available: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    @property
    def has_real_credentials(self) -> bool:
        return bool(self.available)


__all__ = [
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    "ProductStatus",
    "PhaseStatus",
    "Platform",
    "MarketDemand",
    "DataProvenance",
    "WorkStatus",
    "LogLevel",
    "Product",
    "PipelinePhase",
    "MarketListing",
    "PriceRange",
    "MarketResearchRecord",
    "SeoAnalysisRecord",
    "ListingRecord",
    "PipelineLogEntry",
    "ValidationResult",
    "CredentialStatus",
]
