"""
Background work tracking with cooperative cancellation.

Phase work launched on behalf of a product is registered here so that pause
and reset can cancel it. Cancellation is cooperative: work checks its token
before every persisted write and stops by raising PipelineCancelledError.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from flipforge.models.schemas import WorkStatus
from flipforge.utils.errors import PipelineCancelledError
from flipforge.utils.logger import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """Flag shared between a background work item and whoever may cancel it."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def raise_if_cancelled(self, product_id: str) -> None:
        if self._cancelled:
            raise PipelineCancelledError(product_id, self.reason or "cancelled")


@dataclass
class BackgroundWork:
    """A unit of phase work running for one product."""

    product_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    status: WorkStatus = WorkStatus.PENDING
    task: Optional[asyncio.Task] = None
    result: Any = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in (WorkStatus.PENDING, WorkStatus.RUNNING)

    async def wait(self) -> Any:
        """Wait for the work to settle and return its result."""
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)
        return self.result


WorkFactory = Callable[[CancellationToken], Awaitable[Any]]


class WorkRegistry:
    """Tracks background work per product."""

    def __init__(self):
        self._work: dict[str, list[BackgroundWork]] = {}

    def submit(self, product_id: str, factory: WorkFactory) -> BackgroundWork:
        """
        Schedule work for a product on the running event loop.

        Args:
            product_id: Product the work belongs to.
            factory: Called with the work's CancellationToken; returns the
                coroutine to run.
        """
        work = BackgroundWork(product_id=product_id)
        self._work.setdefault(product_id, []).append(work)
        work.task = asyncio.create_task(self._run(work, factory))
        return work

    async def _run(self, work: BackgroundWork, factory: WorkFactory) -> None:
        work.status = WorkStatus.RUNNING
        try:
            work.result = await factory(work.token)
            work.status = WorkStatus.CANCELLED if work.token.cancelled else WorkStatus.COMPLETED
        except PipelineCancelledError as e:
            work.status = WorkStatus.CANCELLED
            logger.info("Background work cancelled", product_id=work.product_id, reason=e.message)
        except asyncio.CancelledError:
            work.status = WorkStatus.CANCELLED
            raise
        except Exception as e:
            work.status = WorkStatus.FAILED
            work.error = str(e)
            logger.error(
                "Background work failed",
                product_id=work.product_id,
                error=str(e),
                exc_info=True,
            )
        finally:
            self._forget(work)

    def _forget(self, work: BackgroundWork) -> None:
        items = self._work.get(work.product_id, [])
        if work in items:
            items.remove(work)
        if not items:
            self._work.pop(work.product_id, None)

    def active(self, product_id: str) -> list[BackgroundWork]:
        return [w for w in self._work.get(product_id, []) if w.is_active]

    def cancel_pending(self, product_id: str, reason: str = "cancelled") -> int:
        """Cancel every active work item for a product. Returns how many were signalled."""
        cancelled = 0
        for work in self.active(product_id):
            if not work.token.cancelled:
                work.token.cancel(reason)
                cancelled += 1
        if cancelled:
            logger.info("Cancelled background work", product_id=product_id, count=cancelled, reason=reason)
        return cancelled

    async def wait(self, product_id: Optional[str] = None) -> None:
        """Wait until tracked work (for one product, or all) has settled."""
        if product_id is not None:
            works = list(self._work.get(product_id, []))
        else:
            works = [w for items in self._work.values() for w in items]
        tasks = [w.task for w in works if w.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all tracked work and wait for it to stop."""
        for product_id in list(self._work):
            self.cancel_pending(product_id, reason="shutdown")
        await self.wait()


__all__ = ["CancellationToken", "BackgroundWork", "WorkRegistry"]
