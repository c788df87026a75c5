"""
Persistence interface for pipeline records.

The relational store behind the pipeline is an external collaborator; this
module fixes the CRUD contract the pipeline relies on and ships an in-memory
implementation used by tests and the CLI.

Tables (logical):
    - products
    - pipeline_phases, upserted on (product_id, phase_number)
    - market_research_data, seo_analysis_data, listing_data, upserted on product_id
    - pipeline_logs

Implementations must raise PersistenceError on I/O failure.
"""

from typing import Optional

from flipforge.models.schemas import (
    ListingRecord,
    MarketResearchRecord,
    PipelineLogEntry,
    PipelinePhase,
    Product,
    SeoAnalysisRecord,
)


# =============================================================================
# Store Interface
# =============================================================================

class PipelineStore:
    """Abstract interface for pipeline persistence."""

    # Products ---------------------------------------------------------------

    async def get_product(self, account_id: str, product_id: str) -> Optional[Product]:
        """Load a product owned by the account, or None."""
        raise NotImplementedError

    async def save_product(self, product: Product) -> Product:
        """Insert or replace a product."""
        raise NotImplementedError

    async def list_products(self, account_id: str) -> list[Product]:
        raise NotImplementedError

    async def delete_products(self, account_id: str, product_ids: list[str]) -> int:
        """Delete products and every dependent record. Returns rows removed."""
        raise NotImplementedError

    # Phases -----------------------------------------------------------------

    async def list_phases(self, product_id: str) -> list[PipelinePhase]:
        """Phase rows for a product ordered by phase number."""
        raise NotImplementedError

    async def get_phase(self, product_id: str, phase_number: int) -> Optional[PipelinePhase]:
        raise NotImplementedError

    async def upsert_phase(self, phase: PipelinePhase) -> PipelinePhase:
        raise NotImplementedError

    async def delete_phases(self, product_id: str) -> int:
        raise NotImplementedError

    # Phase outputs ----------------------------------------------------------

    async def get_market_research(self, product_id: str) -> Optional[MarketResearchRecord]:
        raise NotImplementedError

    async def upsert_market_research(self, record: MarketResearchRecord) -> MarketResearchRecord:
        raise NotImplementedError

    async def get_seo_analysis(self, product_id: str) -> Optional[SeoAnalysisRecord]:
        raise NotImplementedError

    async def upsert_seo_analysis(self, record: SeoAnalysisRecord) -> SeoAnalysisRecord:
        raise NotImplementedError

    async def get_listing(self, product_id: str) -> Optional[ListingRecord]:
        raise NotImplementedError

    async def upsert_listing(self, record: ListingRecord) -> ListingRecord:
        raise NotImplementedError

    # Logs -------------------------------------------------------------------

    async def append_log(self, entry: PipelineLogEntry) -> None:
        raise NotImplementedError

    async def list_logs(self, product_id: str) -> list[PipelineLogEntry]:
        raise NotImplementedError


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryPipelineStore(PipelineStore):
    """
    In-memory store for testing and local runs.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store, matching a real database round trip.
    """

    def __init__(self):
        self._products: dict[str, Product] = {}
        self._phases: dict[tuple[str, int], PipelinePhase] = {}
        self._research: dict[str, MarketResearchRecord] = {}
        self._seo: dict[str, SeoAnalysisRecord] = {}
        self._listings: dict[str, ListingRecord] = {}
        self._logs: list[PipelineLogEntry] = []

    async def get_product(self, account_id: str, product_id: str) -> Optional[Product]:
        product = self._products.get(product_id)
        if product is None or product.account_id != account_id:
            return None
        return product.model_copy(deep=True)

    async def save_product(self, product: Product) -> Product:
        self._products[product.id] = product.model_copy(deep=True)
        return product

    async def list_products(self, account_id: str) -> list[Product]:
        return [
            p.model_copy(deep=True)
            for p in self._products.values()
            if p.account_id == account_id
        ]

    async def delete_products(self, account_id: str, product_ids: list[str]) -> int:
        removed = 0
        for product_id in product_ids:
            product = self._products.get(product_id)
            if product is None or product.account_id != account_id:
                continue
            del self._products[product_id]
            await self.delete_phases(product_id)
            self._research.pop(product_id, None)
            self._seo.pop(product_id, None)
            self._listings.pop(product_id, None)
            self._logs = [e for e in self._logs if e.product_id != product_id]
            removed += 1
        return removed

    async def list_phases(self, product_id: str) -> list[PipelinePhase]:
        rows = [
            phase.model_copy(deep=True)
            for (pid, _), phase in self._phases.items()
            if pid == product_id
        ]
        return sorted(rows, key=lambda p: p.phase_number)

    async def get_phase(self, product_id: str, phase_number: int) -> Optional[PipelinePhase]:
        phase = self._phases.get((product_id, phase_number))
        return phase.model_copy(deep=True) if phase else None

    async def upsert_phase(self, phase: PipelinePhase) -> PipelinePhase:
        self._phases[(phase.product_id, phase.phase_number)] = phase.model_copy(deep=True)
        return phase

    async def delete_phases(self, product_id: str) -> int:
        keys = [key for key in self._phases if key[0] == product_id]
        for key in keys:
            del self._phases[key]
        return len(keys)

    async def get_market_research(self, product_id: str) -> Optional[MarketResearchRecord]:
        record = self._research.get(product_id)
        return record.model_copy(deep=True) if record else None

    async def upsert_market_research(self, record: MarketResearchRecord) -> MarketResearchRecord:
        self._research[record.product_id] = record.model_copy(deep=True)
        return record

    async def get_seo_analysis(self, product_id: str) -> Optional[SeoAnalysisRecord]:
        record = self._seo.get(product_id)
        return record.model_copy(deep=True) if record else None

    async def upsert_seo_analysis(self, record: SeoAnalysisRecord) -> SeoAnalysisRecord:
        self._seo[record.product_id] = record.model_copy(deep=True)
        return record

    async def get_listing(self, product_id: str) -> Optional[ListingRecord]:
        record = self._listings.get(product_id)
        return record.model_copy(deep=True) if record else None

    async def upsert_listing(self, record: ListingRecord) -> ListingRecord:
        self._listings[record.product_id] = record.model_copy(deep=True)
        return record

    async def append_log(self, entry: PipelineLogEntry) -> None:
        self._logs.append(entry.model_copy(deep=True))

    async def list_logs(self, product_id: str) -> list[PipelineLogEntry]:
        return [e.model_copy(deep=True) for e in self._logs if e.product_id == product_id]


__all__ = ["PipelineStore", "InMemoryPipelineStore"]
