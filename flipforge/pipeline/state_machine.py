"""
Pipeline state machine.

Owns every status transition of a product and its phase rows. Each operation
takes the owning account_id explicitly, loads the product through the store,
applies the transition under a per-product lock and appends an audit entry.

Status graph:
    uploaded -> processing -> {paused, error, completed} -> published
    paused -> processing (resume)        error -> processing (retry)
    any -> processing, phase 1 (reset)

Example:
    >>> machine = PipelineStateMachine(InMemoryPipelineStore())
    >>> product = await machine.register_product("acct-1", name="Sony WH-1000XM4")
    >>> await machine.start_phase("acct-1", product.id, 1)
    >>> await machine.complete_phase("acct-1", product.id, 1)
    >>> await machine.get_progress("acct-1", product.id)
    25
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from flipforge.models.schemas import (
    LogLevel,
    PhaseStatus,
    PipelineLogEntry,
    PipelinePhase,
    Product,
    ProductStatus,
    utcnow,
)
from flipforge.persistence.store import PipelineStore
from flipforge.pipeline.phases import FINAL_PHASE, FIRST_PHASE, get_phase_name, validate_phase_number
from flipforge.pipeline.progress import compute_progress
from flipforge.pipeline.tasks import WorkRegistry
from flipforge.utils.errors import (
    FlipForgeError,
    InvalidTransitionError,
    PersistenceError,
    PhaseConflictError,
    ProductNotFoundError,
)
from flipforge.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class PipelineStateMachine:
    """
    Applies pipeline transitions to products and phase rows.

    Args:
        store: Persistence collaborator.
        work_registry: Background work to cancel on pause and reset.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        store: PipelineStore,
        work_registry: Optional[WorkRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.work_registry = work_registry or WorkRegistry()
        self.clock = clock or utcnow
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, product_id: str) -> asyncio.Lock:
        lock = self._locks.get(product_id)
        if lock is None:
            lock = self._locks[product_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Store Access
    # =========================================================================

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a store call, wrapping unexpected failures in PersistenceError."""
        try:
            return await awaitable
        except FlipForgeError:
            raise
        except Exception as e:
            logger.error("Store operation failed", operation=operation, error=str(e))
            raise PersistenceError(
                f"Store operation '{operation}' failed: {e}",
                details={"operation": operation},
            ) from e

    async def _load(self, account_id: str, product_id: str) -> Product:
        product = await self._call("get_product", self.store.get_product(account_id, product_id))
        if product is None:
            raise ProductNotFoundError(product_id, account_id)
        return product

    async def _save(self, product: Product) -> Product:
        product.updated_at = self.clock()
        return await self._call("save_product", self.store.save_product(product))

    async def _refresh_progress(self, product: Product) -> int:
        phases = await self._call("list_phases", self.store.list_phases(product.id))
        product.progress = compute_progress(phases)
        return product.progress

    async def _log(
        self,
        product_id: str,
        message: str,
        phase_number: Optional[int] = None,
        level: LogLevel = LogLevel.INFO,
        **details: Any,
    ) -> None:
        entry = PipelineLogEntry(
            product_id=product_id,
            phase_number=phase_number,
            level=level,
            message=message,
            details=details,
            created_at=self.clock(),
        )
        await self._call("append_log", self.store.append_log(entry))

    @staticmethod
    def _require_status(product: Product, allowed: tuple[ProductStatus, ...], target: str) -> None:
        if product.status not in allowed:
            raise InvalidTransitionError(product.id, product.status, target)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_product(self, account_id: str, product_id: str) -> Product:
        return await self._load(account_id, product_id)

    async def list_phases(self, account_id: str, product_id: str) -> list[PipelinePhase]:
        await self._load(account_id, product_id)
        return await self._call("list_phases", self.store.list_phases(product_id))

    async def get_progress(self, account_id: str, product_id: str) -> int:
        """Overall completion percentage computed from the stored phase rows."""
        phases = await self.list_phases(account_id, product_id)
        return compute_progress(phases)

    # =========================================================================
    # Product Lifecycle
    # =========================================================================

    async def register_product(
        self,
        account_id: str,
        name: Optional[str] = None,
        model: Optional[str] = None,
        brand: Optional[str] = None,
        category: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Product:
        """Create a product in the uploaded state at phase 1."""
        fields: dict[str, Any] = {
            "account_id": account_id,
            "name": name,
            "model": model,
            "brand": brand,
            "category": category,
            "created_at": self.clock(),
        }
        if product_id:
            fields["id"] = product_id
        product = Product(**fields)
        await self._call("save_product", self.store.save_product(product))
        await self._log(product.id, "Product registered", account_id=account_id)
        logger.info("Product registered", product_id=product.id, account_id=account_id)
        return product

    async def update_product(self, account_id: str, product_id: str, **changes: Any) -> Product:
        """Apply field changes (identification, review flags) to a product."""
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)
            fields = {name: getattr(product, name) for name in Product.model_fields}
            updated = Product.model_validate({**fields, **changes})
            await self._save(updated)
            await self._log(product_id, "Product updated", fields=sorted(changes))
            return updated

    async def delete_products(self, account_id: str, product_ids: list[str]) -> int:
        """Delete products and their dependent records, cancelling pending work first."""
        for product_id in product_ids:
            self.work_registry.cancel_pending(product_id, reason="deleted")
        removed = await self._call(
            "delete_products", self.store.delete_products(account_id, list(product_ids))
        )
        for product_id in product_ids:
            self._locks.pop(product_id, None)
        logger.info("Products deleted", account_id=account_id, requested=len(product_ids), removed=removed)
        return removed

    # =========================================================================
    # Phase Transitions
    # =========================================================================

    async def start_phase(self, account_id: str, product_id: str, phase_number: int) -> PipelinePhase:
        """
        Mark a phase as running and make it the product's current phase.

        Restarting a phase resets its row to 0% with a fresh started_at and
        increments the row's retry_count.

        Raises:
            InvalidPhaseError: phase_number is not an integer in 1..4.
            ProductNotFoundError: Product missing for this account.
            PhaseConflictError: A different phase is already running.
        """
        phase_number = validate_phase_number(phase_number)
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)
            return await self._start_phase(product, phase_number)

    async def _start_phase(self, product: Product, phase_number: int) -> PipelinePhase:
        phases = await self._call("list_phases", self.store.list_phases(product.id))
        stale = [
            phase for phase in phases
            if phase.status == PhaseStatus.RUNNING and phase.phase_number != phase_number
        ]
        if stale and product.is_pipeline_running:
            raise PhaseConflictError(product.id, stale[0].phase_number, phase_number)
        # Rows left running by a paused or stopped run go back to pending
        for phase in stale:
            phase.status = PhaseStatus.PENDING
            await self._call("upsert_phase", self.store.upsert_phase(phase))
            logger.info("Stale running phase demoted", product_id=product.id, phase=phase.phase_number)

        existing = await self._call("get_phase", self.store.get_phase(product.id, phase_number))
        row = PipelinePhase(
            product_id=product.id,
            phase_number=phase_number,
            phase_name=get_phase_name(phase_number),
            status=PhaseStatus.RUNNING,
            progress_percentage=0,
            started_at=self.clock(),
            retry_count=existing.retry_count + 1 if existing else 0,
        )
        await self._call("upsert_phase", self.store.upsert_phase(row))

        product.current_phase = phase_number
        product.is_pipeline_running = True
        product.status = ProductStatus.PROCESSING
        await self._refresh_progress(product)
        await self._save(product)

        await self._log(product.id, f"Started phase {phase_number}: {row.phase_name}", phase_number,
                        restart=existing is not None)
        logger.info(
            "Phase started",
            product_id=product.id,
            phase=phase_number,
            restart=existing is not None,
            progress=product.progress,
        )
        return row

    async def update_phase_progress(
        self,
        account_id: str,
        product_id: str,
        phase_number: int,
        percentage: int,
    ) -> PipelinePhase:
        """Record intermediate progress (clamped to 0..100) for a running phase."""
        phase_number = validate_phase_number(phase_number)
        async with self._lock(product_id):
            await self._load(account_id, product_id)
            row = await self._call("get_phase", self.store.get_phase(product_id, phase_number))
            if row is None or row.status != PhaseStatus.RUNNING:
                raise InvalidTransitionError(
                    product_id,
                    row.status if row else PhaseStatus.PENDING,
                    "progress update",
                )
            row.progress_percentage = max(0, min(100, int(percentage)))
            await self._call("upsert_phase", self.store.upsert_phase(row))
            logger.debug("Phase progress", product_id=product_id, phase=phase_number,
                         percentage=row.progress_percentage)
            return row

    async def complete_phase(self, account_id: str, product_id: str, phase_number: int) -> PipelinePhase:
        """
        Mark a phase completed at 100%.

        Completing phase 4 completes the product regardless of current_phase.
        A missing row is created already completed.
        """
        phase_number = validate_phase_number(phase_number)
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)
            return await self._complete_phase(product, phase_number)

    async def _complete_phase(self, product: Product, phase_number: int) -> PipelinePhase:
        now = self.clock()
        row = await self._call("get_phase", self.store.get_phase(product.id, phase_number))
        if row is None:
            row = PipelinePhase(
                product_id=product.id,
                phase_number=phase_number,
                phase_name=get_phase_name(phase_number),
                started_at=now,
            )
        row.status = PhaseStatus.COMPLETED
        row.progress_percentage = 100
        row.completed_at = now
        row.error_message = None
        row.processing_time_seconds = (
            (now - row.started_at).total_seconds() if row.started_at else 0.0
        )
        await self._call("upsert_phase", self.store.upsert_phase(row))

        await self._refresh_progress(product)
        if phase_number == FINAL_PHASE:
            product.status = ProductStatus.COMPLETED
            product.current_phase = FINAL_PHASE
            product.progress = 100
            product.is_pipeline_running = False
        await self._save(product)

        await self._log(
            product.id,
            f"Completed phase {phase_number}: {row.phase_name}",
            phase_number,
            processing_time_seconds=row.processing_time_seconds,
        )
        logger.info(
            "Phase completed",
            product_id=product.id,
            phase=phase_number,
            progress=product.progress,
            processing_time_seconds=row.processing_time_seconds,
        )
        return row

    async def fail_phase(
        self,
        account_id: str,
        product_id: str,
        phase_number: int,
        error_message: str,
    ) -> Product:
        """Mark a phase and its product as errored."""
        phase_number = validate_phase_number(phase_number)
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)

            row = await self._call("get_phase", self.store.get_phase(product_id, phase_number))
            if row is None:
                row = PipelinePhase(
                    product_id=product_id,
                    phase_number=phase_number,
                    phase_name=get_phase_name(phase_number),
                )
            row.status = PhaseStatus.ERROR
            row.error_message = error_message
            await self._call("upsert_phase", self.store.upsert_phase(row))

            product.status = ProductStatus.ERROR
            product.error_message = error_message
            product.error_phase = phase_number
            product.is_pipeline_running = False
            await self._refresh_progress(product)
            await self._save(product)

            await self._log(product_id, f"Phase {phase_number} failed: {error_message}",
                            phase_number, LogLevel.ERROR)
            logger.error("Phase failed", product_id=product_id, phase=phase_number, error=error_message)
            return product

    # =========================================================================
    # Recovery
    # =========================================================================

    async def retry(self, account_id: str, product_id: str) -> PipelinePhase:
        """
        Restart the failed phase (error_phase, else current_phase).

        Clears the product's error fields and increments its retry_count.
        """
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)
            self._require_status(
                product,
                (ProductStatus.ERROR, ProductStatus.PAUSED, ProductStatus.PROCESSING, ProductStatus.UPLOADED),
                ProductStatus.PROCESSING,
            )
            target = product.error_phase or product.current_phase
            product.error_message = None
            product.error_phase = None
            product.retry_count += 1
            product.status = ProductStatus.PROCESSING
            await self._log(product_id, f"Retrying phase {target}", target, retry_count=product.retry_count)
            logger.info("Retrying phase", product_id=product_id, phase=target, retry_count=product.retry_count)
            return await self._start_phase(product, target)

    async def pause(self, account_id: str, product_id: str) -> Product:
        """Pause a product and cancel its pending background work."""
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)
            if product.status == ProductStatus.PAUSED:
                return product
            self._require_status(
                product,
                (ProductStatus.PROCESSING, ProductStatus.UPLOADED),
                ProductStatus.PAUSED,
            )
            product.status = ProductStatus.PAUSED
            product.is_pipeline_running = False
            await self._save(product)

            cancelled = self.work_registry.cancel_pending(product_id, reason="paused")
            await self._log(product_id, "Pipeline paused", product.current_phase, cancelled_work=cancelled)
            logger.info("Pipeline paused", product_id=product_id, cancelled_work=cancelled)
            return product

    async def resume(self, account_id: str, product_id: str) -> PipelinePhase:
        """Return a paused product to processing and restart its current phase."""
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)
            self._require_status(product, (ProductStatus.PAUSED,), ProductStatus.PROCESSING)
            await self._log(product_id, "Pipeline resumed", product.current_phase)
            logger.info("Pipeline resumed", product_id=product_id, phase=product.current_phase)
            return await self._start_phase(product, product.current_phase)

    async def reset(self, account_id: str, product_id: str) -> Product:
        """Delete every phase row and return the product to phase 1."""
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)
            cancelled = self.work_registry.cancel_pending(product_id, reason="reset")
            removed = await self._call("delete_phases", self.store.delete_phases(product_id))

            product.current_phase = FIRST_PHASE
            product.status = ProductStatus.PROCESSING
            product.progress = 0
            product.error_message = None
            product.error_phase = None
            product.is_pipeline_running = False
            await self._save(product)

            await self._log(product_id, "Pipeline reset", removed_phases=removed, cancelled_work=cancelled)
            logger.info("Pipeline reset", product_id=product_id, removed_phases=removed)
            return product

    async def mark_published(self, account_id: str, product_id: str) -> Product:
        """Move a completed product to published."""
        async with self._lock(product_id):
            product = await self._load(account_id, product_id)
            self._require_status(product, (ProductStatus.COMPLETED,), ProductStatus.PUBLISHED)
            product.status = ProductStatus.PUBLISHED
            await self._save(product)
            await self._log(product_id, "Product published", FINAL_PHASE)
            return product


__all__ = ["PipelineStateMachine"]
