"""
Pipeline driver using LangGraph.

Runs a product through phases 1..4 in order, delegating every transition to
the PipelineStateMachine and every piece of phase work to PhaseHandlers.

Features:
    - Stateful execution with a LangGraph StateGraph
    - Phase N+1 starts only after phase N is completed
    - Background runs with cooperative cancellation (pause, reset, delete)
    - Cancellation and product status checked before every persisted write
    - Any unhandled failure marks the failing phase and product as errored
    - Manual controls for operators: advance, record analysis, repair stuck phases

Graph structure:
    start_phase -> execute_phase -> complete_phase --(next phase)--> start_phase
         |              |                 |
         +--------------+-----------------+--> handle_error -> END
                  (cancelled) -> END       (final phase) -> END

Example:
    >>> driver = create_pipeline_driver(store)
    >>> summary = await driver.run("acct-1", product.id)
    >>> summary.status
    'completed'
"""

import asyncio
import operator
import time
from enum import Enum
from functools import wraps
from typing import Annotated, Any, Callable, Literal, Optional, TypedDict

from langgraph.graph import END, StateGraph
from pydantic import Field

from flipforge.config.settings import Settings, get_settings
from flipforge.models.schemas import BaseModel, PhaseStatus, Product, ProductStatus
from flipforge.persistence.store import PipelineStore
from flipforge.pipeline.handlers import PhaseContext, PhaseHandlers
from flipforge.pipeline.phases import FINAL_PHASE, FIRST_PHASE, next_phase, validate_phase_number
from flipforge.pipeline.progress import ProgressTracker
from flipforge.pipeline.state_machine import PipelineStateMachine
from flipforge.pipeline.tasks import BackgroundWork, CancellationToken, WorkRegistry
from flipforge.services.market_research import MarketDataAcquisitionSelector
from flipforge.services.validation_service import ValidationService
from flipforge.utils.errors import (
    ErrorHandler,
    InvalidTransitionError,
    PipelineCancelledError,
    ValidationError,
)
from flipforge.utils.logger import LogContext, get_logger

logger = get_logger(__name__)


# =============================================================================
# Constants and Configuration
# =============================================================================

GRAPH_RECURSION_LIMIT = 50


class RunStatus(str, Enum):
    """Status carried through the graph state."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AdvanceAction(str, Enum):
    """Manual pipeline controls."""
    START_PHASE = "start_phase"
    COMPLETE_PHASE = "complete_phase"
    ADVANCE_TO_NEXT = "advance_to_next"
    SIMULATE_PROCESSING = "simulate_processing"
    RESET = "reset"


# =============================================================================
# Pipeline State Definition (TypedDict for LangGraph)
# =============================================================================

class DriverState(TypedDict, total=False):
    """
    Graph state for one pipeline run.

    completed_phases and errors accumulate across nodes via operator.add.
    """
    account_id: str
    product_id: str
    phase: int
    status: str
    failed_phase: Optional[int]
    token: CancellationToken

    completed_phases: Annotated[list[int], operator.add]
    errors: Annotated[list[str], operator.add]
    phase_timings: dict


class PipelineRunSummary(BaseModel):
    """Outcome of a driver run."""

    product_id: str
    status: str
    progress: int = Field(default=0, ge=0, le=100)
    completed_phases: list[int] = Field(default_factory=list)
    failed_phase: Optional[int] = None
    errors: list[str] = Field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0


def track_timing(func: Callable):
    """Record node duration and bind product context to every log line."""
    @wraps(func)
    async def wrapper(self, state: DriverState) -> dict[str, Any]:
        start_time = time.time()
        node_name = func.__name__.strip("_").replace("_node", "")

        with LogContext(
            product_id=state.get("product_id"),
            account_id=state.get("account_id"),
            phase=state.get("phase"),
        ):
            logger.debug("Starting node", node=node_name)
            result = await func(self, state)
            duration_ms = int((time.time() - start_time) * 1000)

            timings = dict(state.get("phase_timings", {}))
            key = f"{state.get('phase')}:{node_name}"
            timings[key] = timings.get(key, 0) + duration_ms
            result["phase_timings"] = timings

            logger.debug("Completed node", node=node_name, duration_ms=duration_ms)
            return result

    return wrapper


# =============================================================================
# Pipeline Driver
# =============================================================================

class PipelineDriver:
    """
    Sequences pipeline phases for a product.

    Args:
        machine: State machine owning all transitions.
        handlers: Per-phase work.
        settings: Progress simulation steps and step interval.
        validator: Validation layer for recorded product analysis.
    """

    def __init__(
        self,
        machine: PipelineStateMachine,
        handlers: PhaseHandlers,
        settings: Optional[Settings] = None,
        validator: Optional[ValidationService] = None,
    ):
        self.machine = machine
        self.handlers = handlers
        self.settings = settings or get_settings()
        self.validator = validator or handlers.validator
        self._graph = self._build_graph()

    @property
    def store(self) -> PipelineStore:
        return self.machine.store

    @property
    def work_registry(self) -> WorkRegistry:
        return self.machine.work_registry

    def _build_graph(self):
        graph = StateGraph(DriverState)

        graph.add_node("start_phase", self._start_phase_node)
        graph.add_node("execute_phase", self._execute_phase_node)
        graph.add_node("complete_phase", self._complete_phase_node)
        graph.add_node("handle_error", self._handle_error_node)

        graph.set_entry_point("start_phase")

        graph.add_conditional_edges(
            "start_phase",
            self._route,
            {"continue": "execute_phase", "error": "handle_error", "cancelled": END},
        )
        graph.add_conditional_edges(
            "execute_phase",
            self._route,
            {"continue": "complete_phase", "error": "handle_error", "cancelled": END},
        )
        graph.add_conditional_edges(
            "complete_phase",
            self._route_after_complete,
            {"next": "start_phase", "done": END, "error": "handle_error", "cancelled": END},
        )
        graph.add_edge("handle_error", END)

        return graph.compile()

    def _route(self, state: DriverState) -> Literal["continue", "error", "cancelled"]:
        status = state.get("status")
        if status == RunStatus.FAILED.value:
            return "error"
        if status == RunStatus.CANCELLED.value:
            return "cancelled"
        return "continue"

    def _route_after_complete(self, state: DriverState) -> Literal["next", "done", "error", "cancelled"]:
        route = self._route(state)
        if route != "continue":
            return route
        if state.get("status") == RunStatus.COMPLETED.value:
            return "done"
        return "next"

    # =========================================================================
    # Guards
    # =========================================================================

    async def _checkpoint(self, state: DriverState) -> Product:
        """
        Verify the run may still write: token not cancelled, product still
        processing with the pipeline running.
        """
        token = state["token"]
        product_id = state["product_id"]
        token.raise_if_cancelled(product_id)
        product = await self.machine.get_product(state["account_id"], product_id)
        if product.status != ProductStatus.PROCESSING or not product.is_pipeline_running:
            status = getattr(product.status, "value", product.status)
            token.cancel(f"stopped because product is {status}")
            token.raise_if_cancelled(product_id)
        return product

    def _failure(self, state: DriverState, error: Exception) -> dict[str, Any]:
        message = ErrorHandler.describe(error)
        logger.error("Phase failed", phase=state.get("phase"), error=message)
        return {
            "status": RunStatus.FAILED.value,
            "failed_phase": state.get("phase"),
            "errors": [message],
        }

    @staticmethod
    def _cancelled(error: PipelineCancelledError) -> dict[str, Any]:
        logger.info("Pipeline run cancelled", reason=error.message)
        return {"status": RunStatus.CANCELLED.value}

    # =========================================================================
    # Node Implementations
    # =========================================================================

    @track_timing
    async def _start_phase_node(self, state: DriverState) -> dict[str, Any]:
        try:
            if state.get("completed_phases"):
                # A pause or reset between phases must stop the run here
                await self._checkpoint(state)
            else:
                state["token"].raise_if_cancelled(state["product_id"])
            await self.machine.start_phase(state["account_id"], state["product_id"], state["phase"])
            return {"status": RunStatus.RUNNING.value}
        except PipelineCancelledError as e:
            return self._cancelled(e)
        except Exception as e:
            return self._failure(state, e)

    @track_timing
    async def _execute_phase_node(self, state: DriverState) -> dict[str, Any]:
        account_id, product_id, phase = state["account_id"], state["product_id"], state["phase"]
        try:
            product = await self._checkpoint(state)
            handler = self.handlers.for_phase(phase)
            if handler is not None:
                await handler(PhaseContext(account_id=account_id, product=product, token=state["token"]))

            tracker = ProgressTracker(self.settings.simulation_progress_steps)
            while not tracker.done:
                await asyncio.sleep(self.settings.simulation_step_seconds)
                await self._checkpoint(state)
                percent = tracker.advance()
                await self.machine.update_phase_progress(account_id, product_id, phase, percent)
            return {"status": RunStatus.RUNNING.value}
        except PipelineCancelledError as e:
            return self._cancelled(e)
        except Exception as e:
            return self._failure(state, e)

    @track_timing
    async def _complete_phase_node(self, state: DriverState) -> dict[str, Any]:
        phase = state["phase"]
        try:
            await self._checkpoint(state)
            await self.machine.complete_phase(state["account_id"], state["product_id"], phase)
        except PipelineCancelledError as e:
            return self._cancelled(e)
        except Exception as e:
            return self._failure(state, e)

        upcoming = next_phase(phase)
        if upcoming is None:
            return {"status": RunStatus.COMPLETED.value, "completed_phases": [phase]}
        return {"status": RunStatus.RUNNING.value, "phase": upcoming, "completed_phases": [phase]}

    @track_timing
    async def _handle_error_node(self, state: DriverState) -> dict[str, Any]:
        """Persist the failure on the failing phase and product."""
        errors = state.get("errors", [])
        failed_phase = state.get("failed_phase") or state.get("phase") or FIRST_PHASE
        message = errors[-1] if errors else "Unknown pipeline error"
        try:
            await self.machine.fail_phase(state["account_id"], state["product_id"], failed_phase, message)
        except Exception as e:
            logger.error("Could not record phase failure", error=str(e), original_error=message)
            return {"status": RunStatus.FAILED.value, "errors": [ErrorHandler.describe(e)]}
        return {"status": RunStatus.FAILED.value}

    # =========================================================================
    # Runs
    # =========================================================================

    async def _resolve_start_phase(self, product: Product, start_phase: Optional[int]) -> int:
        if start_phase is not None:
            return validate_phase_number(start_phase)
        if product.status in (ProductStatus.COMPLETED, ProductStatus.PUBLISHED):
            raise InvalidTransitionError(product.id, product.status, ProductStatus.PROCESSING)
        row = await self.store.get_phase(product.id, product.current_phase)
        if row is not None and row.status == PhaseStatus.COMPLETED:
            return next_phase(product.current_phase) or product.current_phase
        return product.current_phase

    async def run(
        self,
        account_id: str,
        product_id: str,
        start_phase: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> PipelineRunSummary:
        """
        Run the pipeline for a product until it completes, fails or is cancelled.

        Args:
            account_id: Owning account.
            product_id: Product to process.
            start_phase: Phase to begin with; defaults to the product's current phase.
            token: Cancellation token, usually supplied by launch().

        Returns:
            PipelineRunSummary describing the outcome.

        Raises:
            ProductNotFoundError: Product missing for this account.
            InvalidTransitionError: Product is already completed or published.
        """
        product = await self.machine.get_product(account_id, product_id)
        phase = await self._resolve_start_phase(product, start_phase)
        token = token or CancellationToken()
        started = time.time()

        initial_state: DriverState = {
            "account_id": account_id,
            "product_id": product_id,
            "phase": phase,
            "status": RunStatus.RUNNING.value,
            "failed_phase": None,
            "token": token,
            "completed_phases": [],
            "errors": [],
            "phase_timings": {},
        }

        logger.info("Starting pipeline run", product_id=product_id, account_id=account_id, phase=phase)
        final_state = await self._graph.ainvoke(
            initial_state,
            config={"recursion_limit": GRAPH_RECURSION_LIMIT},
        )

        product = await self.machine.get_product(account_id, product_id)
        summary = PipelineRunSummary(
            product_id=product_id,
            status=getattr(product.status, "value", product.status),
            progress=product.progress,
            completed_phases=final_state.get("completed_phases", []),
            failed_phase=final_state.get("failed_phase"),
            errors=final_state.get("errors", []),
            cancelled=final_state.get("status") == RunStatus.CANCELLED.value,
            duration_seconds=round(time.time() - started, 3),
        )
        logger.info(
            "Pipeline run finished",
            product_id=product_id,
            status=summary.status,
            progress=summary.progress,
            completed_phases=summary.completed_phases,
            cancelled=summary.cancelled,
        )
        return summary

    async def launch(
        self,
        account_id: str,
        product_id: str,
        start_phase: Optional[int] = None,
    ) -> BackgroundWork:
        """
        Start a run in the background and return immediately.

        Raises:
            InvalidTransitionError: Product is already completed or published.
        """
        product = await self.machine.get_product(account_id, product_id)
        await self._resolve_start_phase(product, start_phase)
        return self.work_registry.submit(
            product_id,
            lambda token: self.run(account_id, product_id, start_phase=start_phase, token=token),
        )

    # =========================================================================
    # Manual Controls
    # =========================================================================

    async def advance(
        self,
        account_id: str,
        product_id: str,
        action: str,
        phase: Optional[int] = None,
    ) -> Product:
        """
        Apply a manual pipeline action and return the updated product.

        Actions:
            start_phase / complete_phase: act on phase, default current phase.
            advance_to_next: complete the current phase and start the next one.
            simulate_processing: launch a background run from the current phase.
            reset: return the product to phase 1.
        """
        try:
            action = AdvanceAction(action)
        except ValueError:
            raise ValidationError(
                f"Unknown pipeline action: {action}",
                errors=[f"expected one of {[a.value for a in AdvanceAction]}"],
            )

        product = await self.machine.get_product(account_id, product_id)
        target = phase if phase is not None else product.current_phase

        if action == AdvanceAction.START_PHASE:
            await self.machine.start_phase(account_id, product_id, target)
        elif action == AdvanceAction.COMPLETE_PHASE:
            await self.machine.complete_phase(account_id, product_id, target)
        elif action == AdvanceAction.ADVANCE_TO_NEXT:
            await self.machine.complete_phase(account_id, product_id, product.current_phase)
            upcoming = next_phase(product.current_phase)
            if upcoming is not None:
                await self.machine.start_phase(account_id, product_id, upcoming)
        elif action == AdvanceAction.SIMULATE_PROCESSING:
            await self.launch(account_id, product_id, start_phase=phase)
        elif action == AdvanceAction.RESET:
            await self.machine.reset(account_id, product_id)

        logger.info("Pipeline action applied", product_id=product_id, action=action.value, phase=target)
        return await self.machine.get_product(account_id, product_id)

    async def record_product_analysis(
        self,
        account_id: str,
        product_id: str,
        data: dict[str, Any],
    ) -> Product:
        """
        Store phase-1 identification results after validation.

        Placeholder values are nulled, and the product is flagged for manual
        review when validation warns too often or confidence is low.

        Raises:
            ValidationError: Data is structurally invalid.
        """
        result = self.validator.validate_product_data(data)
        self.validator.log_validation_results("product_analysis", result)
        cleaned = self.validator.require_valid(result, "product analysis")

        changes = {key: cleaned[key] for key in cleaned if key in data}
        changes["requires_manual_review"] = self.validator.needs_manual_review(
            result, cleaned.get("ai_confidence")
        )
        return await self.machine.update_product(account_id, product_id, **changes)

    async def _phase_output_exists(self, product: Product, phase: int) -> bool:
        if phase == 1:
            return bool(product.name) and (
                product.ai_confidence is not None or not product.requires_manual_review
            )
        if phase == 2:
            return await self.store.get_market_research(product.id) is not None
        if phase == 3:
            return await self.store.get_seo_analysis(product.id) is not None
        return await self.store.get_listing(product.id) is not None

    async def complete_stuck_phases(self, account_id: str, product_id: str) -> list[int]:
        """
        Complete, in order, every phase whose output already exists.

        Stops at the first phase without output. Returns the phases completed.
        """
        product = await self.machine.get_product(account_id, product_id)
        rows = {row.phase_number: row for row in await self.machine.list_phases(account_id, product_id)}
        completed = []

        for phase in range(FIRST_PHASE, FINAL_PHASE + 1):
            row = rows.get(phase)
            if row is not None and row.status == PhaseStatus.COMPLETED:
                continue
            if not await self._phase_output_exists(product, phase):
                break
            await self.machine.complete_phase(account_id, product_id, phase)
            completed.append(phase)

        if completed:
            logger.info("Completed stuck phases", product_id=product_id, phases=completed)
        return completed

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def close(self) -> None:
        """Cancel background work and close service connections."""
        await self.work_registry.shutdown()
        await self.handlers.selector.close()


# =============================================================================
# Convenience Functions
# =============================================================================

def create_pipeline_driver(
    store: PipelineStore,
    settings: Optional[Settings] = None,
    selector: Optional[MarketDataAcquisitionSelector] = None,
    work_registry: Optional[WorkRegistry] = None,
) -> PipelineDriver:
    """Wire the state machine, handlers and acquisition selector together."""
    settings = settings or get_settings()
    validator = ValidationService(
        confidence_threshold=settings.manual_review_confidence_threshold,
        warning_limit=settings.manual_review_warning_limit,
    )
    machine = PipelineStateMachine(store, work_registry=work_registry)
    selector = selector or MarketDataAcquisitionSelector(store, settings=settings, validator=validator)
    handlers = PhaseHandlers(store, selector, validator=validator)
    return PipelineDriver(machine, handlers, settings=settings, validator=validator)


__all__ = [
    "PipelineDriver",
    "PipelineRunSummary",
    "AdvanceAction",
    "RunStatus",
    "create_pipeline_driver",
]
