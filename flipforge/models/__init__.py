"""Data models module for the FlipForge pipeline."""

from flipforge.models.schemas import (
    # Base Models
    BaseModel,
    TimestampMixin,
    utcnow,

    # Enums
    ProductStatus,
    PhaseStatus,
    Platform,
    MarketDemand,
    DataProvenance,
    WorkStatus,
    LogLevel,

    # Product and Phase Records
    Product,
    PipelinePhase,

    # Market Research Records (Phase 2)
    MarketListing,
    PriceRange,
    MarketResearchRecord,

    # Phase 3 and 4 Outputs
    SeoAnalysisRecord,
    ListingRecord,

    # Audit and Reports
    PipelineLogEntry,
    ValidationResult,
    CredentialStatus,
)

__all__ = [
    # Base Models
    "BaseModel",
    "TimestampMixin",
    "utcnow",

    # Enums
    "ProductStatus",
    "PhaseStatus",
    "Platform",
    "MarketDemand",
    "DataProvenance",
    "WorkStatus",
    "LogLevel",

    # Product and Phase Records
    "Product",
    "PipelinePhase",

    # Market Research Records (Phase 2)
    "MarketListing",
    "PriceRange",
    "MarketResearchRecord",

    # Phase 3 and 4 Outputs
    "SeoAnalysisRecord",
    "ListingRecord",

    # Audit and Reports
    "PipelineLogEntry",
    "ValidationResult",
    "CredentialStatus",
]
