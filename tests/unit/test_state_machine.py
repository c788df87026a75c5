import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from flipforge.models.schemas import PhaseStatus, ProductStatus
from flipforge.pipeline.tasks import CancellationToken
from flipforge.utils.errors import (
    InvalidPhaseError,
    InvalidTransitionError,
    PersistenceError,
    PhaseConflictError,
    ProductNotFoundError,
)

ACCOUNT = "acct-1"


async def _product(machine, **kwargs):
    return await machine.register_product(ACCOUNT, name=kwargs.pop("name", "Sony WH-1000XM4"), **kwargs)


# =============================================================================
# Registration and lookup
# =============================================================================

@pytest.mark.asyncio
async def test_register_product_starts_uploaded(machine, store):
    product = await _product(machine)
    assert product.status == ProductStatus.UPLOADED
    assert product.current_phase == 1
    assert product.progress == 0
    assert (await store.get_product(ACCOUNT, product.id)).name == "Sony WH-1000XM4"
    logs = await store.list_logs(product.id)
    assert logs[0].message == "Product registered"


@pytest.mark.asyncio
async def test_other_account_cannot_see_product(machine):
    product = await _product(machine)
    with pytest.raises(ProductNotFoundError):
        await machine.start_phase("acct-2", product.id, 1)


@pytest.mark.asyncio
async def test_unknown_product(machine):
    with pytest.raises(ProductNotFoundError):
        await machine.get_progress(ACCOUNT, "missing")


# =============================================================================
# start_phase
# =============================================================================

@pytest.mark.asyncio
async def test_start_phase_marks_running(machine, store, clock):
    product = await _product(machine)
    row = await machine.start_phase(ACCOUNT, product.id, 1)

    assert row.status == PhaseStatus.RUNNING
    assert row.progress_percentage == 0
    assert row.started_at == clock.now
    assert row.phase_name == "Product Analysis"

    stored = await store.get_product(ACCOUNT, product.id)
    assert stored.status == ProductStatus.PROCESSING
    assert stored.is_pipeline_running is True
    assert stored.current_phase == 1
    assert stored.progress == 13


@pytest.mark.asyncio
async def test_start_phase_twice_resets_row(machine, store, clock):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)
    await machine.update_phase_progress(ACCOUNT, product.id, 1, 60)
    first_start = clock.now

    clock.advance(30)
    row = await machine.start_phase(ACCOUNT, product.id, 1)

    assert row.progress_percentage == 0
    assert row.started_at == clock.now
    assert row.started_at > first_start
    assert row.retry_count == 1
    assert len(await store.list_phases(product.id)) == 1


@pytest.mark.asyncio
async def test_start_phase_clears_row_error(machine, store):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 2)
    await machine.fail_phase(ACCOUNT, product.id, 2, "boom")
    row = await machine.start_phase(ACCOUNT, product.id, 2)
    assert row.error_message is None
    assert row.status == PhaseStatus.RUNNING


@pytest.mark.asyncio
@pytest.mark.parametrize("phase", [0, 5, "1", True])
async def test_start_phase_invalid_number(machine, phase):
    product = await _product(machine)
    with pytest.raises(InvalidPhaseError):
        await machine.start_phase(ACCOUNT, product.id, phase)


@pytest.mark.asyncio
async def test_start_different_phase_while_running_conflicts(machine):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)
    with pytest.raises(PhaseConflictError) as exc:
        await machine.start_phase(ACCOUNT, product.id, 2)
    assert exc.value.details["running_phase"] == 1


@pytest.mark.asyncio
async def test_start_complete_start_progress_is_38(machine):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)
    await machine.complete_phase(ACCOUNT, product.id, 1)
    await machine.start_phase(ACCOUNT, product.id, 2)

    assert await machine.get_progress(ACCOUNT, product.id) == 38
    assert (await machine.get_product(ACCOUNT, product.id)).progress == 38


# =============================================================================
# complete_phase / fail_phase
# =============================================================================

@pytest.mark.asyncio
async def test_complete_phase_records_processing_time(machine, clock):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)
    clock.advance(12.5)
    row = await machine.complete_phase(ACCOUNT, product.id, 1)

    assert row.status == PhaseStatus.COMPLETED
    assert row.progress_percentage == 100
    assert row.completed_at == clock.now
    assert row.processing_time_seconds == 12.5


@pytest.mark.asyncio
async def test_complete_final_phase_completes_product(machine, store):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)

    # current_phase is 1, completing 4 still completes the product
    await machine.complete_phase(ACCOUNT, product.id, 4)

    stored = await store.get_product(ACCOUNT, product.id)
    assert stored.status == ProductStatus.COMPLETED
    assert stored.current_phase == 4
    assert stored.progress == 100
    assert stored.is_pipeline_running is False


@pytest.mark.asyncio
async def test_complete_phase_creates_missing_row(machine, store):
    product = await _product(machine)
    row = await machine.complete_phase(ACCOUNT, product.id, 2)
    assert row.status == PhaseStatus.COMPLETED
    assert (await store.get_phase(product.id, 2)).processing_time_seconds == 0.0


@pytest.mark.asyncio
async def test_fail_phase_sets_error_fields(machine, store):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 2)
    failed = await machine.fail_phase(ACCOUNT, product.id, 2, "research failed")

    assert failed.status == ProductStatus.ERROR
    assert failed.error_message == "research failed"
    assert failed.error_phase == 2
    assert failed.is_pipeline_running is False
    row = await store.get_phase(product.id, 2)
    assert row.status == PhaseStatus.ERROR
    assert row.error_message == "research failed"
    logs = await store.list_logs(product.id)
    assert logs[-1].level == "error"


# =============================================================================
# retry / pause / resume / reset / publish
# =============================================================================

@pytest.mark.asyncio
async def test_retry_restarts_error_phase(machine, store):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)
    await machine.complete_phase(ACCOUNT, product.id, 1)
    await machine.start_phase(ACCOUNT, product.id, 2)
    await machine.fail_phase(ACCOUNT, product.id, 2, "boom")

    row = await machine.retry(ACCOUNT, product.id)

    stored = await store.get_product(ACCOUNT, product.id)
    assert row.phase_number == 2
    assert row.status == PhaseStatus.RUNNING
    assert stored.retry_count == 1
    assert stored.error_message is None
    assert stored.error_phase is None
    assert stored.status == ProductStatus.PROCESSING


@pytest.mark.asyncio
async def test_retry_increments_by_exactly_one(machine, store):
    product = await _product(machine)
    await machine.fail_phase(ACCOUNT, product.id, 1, "first")
    await machine.retry(ACCOUNT, product.id)
    await machine.fail_phase(ACCOUNT, product.id, 1, "second")
    await machine.retry(ACCOUNT, product.id)
    assert (await store.get_product(ACCOUNT, product.id)).retry_count == 2


@pytest.mark.asyncio
async def test_retry_completed_product_rejected(machine):
    product = await _product(machine)
    await machine.complete_phase(ACCOUNT, product.id, 4)
    with pytest.raises(InvalidTransitionError):
        await machine.retry(ACCOUNT, product.id)


@pytest.mark.asyncio
async def test_pause_cancels_pending_work(machine, work_registry, store):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)

    release = asyncio.Event()

    async def work(token: CancellationToken):
        await release.wait()
        token.raise_if_cancelled(product.id)

    background = work_registry.submit(product.id, work)
    await asyncio.sleep(0)

    paused = await machine.pause(ACCOUNT, product.id)
    release.set()
    await background.wait()

    assert paused.status == ProductStatus.PAUSED
    assert paused.is_pipeline_running is False
    assert background.token.cancelled
    assert background.status == "cancelled"


@pytest.mark.asyncio
async def test_pause_completed_product_rejected(machine):
    product = await _product(machine)
    await machine.complete_phase(ACCOUNT, product.id, 4)
    with pytest.raises(InvalidTransitionError):
        await machine.pause(ACCOUNT, product.id)


@pytest.mark.asyncio
async def test_resume_restarts_current_phase(machine, store):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)
    await machine.complete_phase(ACCOUNT, product.id, 1)
    await machine.start_phase(ACCOUNT, product.id, 2)
    await machine.pause(ACCOUNT, product.id)

    row = await machine.resume(ACCOUNT, product.id)

    stored = await store.get_product(ACCOUNT, product.id)
    assert row.phase_number == 2
    assert stored.status == ProductStatus.PROCESSING
    assert stored.is_pipeline_running is True


@pytest.mark.asyncio
async def test_resume_requires_paused(machine):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)
    with pytest.raises(InvalidTransitionError) as exc:
        await machine.resume(ACCOUNT, product.id)
    assert exc.value.details["current"] == "processing"


@pytest.mark.asyncio
async def test_start_other_phase_after_pause_keeps_single_running_row(machine, store):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 2)
    await machine.pause(ACCOUNT, product.id)

    await machine.start_phase(ACCOUNT, product.id, 3)

    phases = {p.phase_number: p for p in await store.list_phases(product.id)}
    running = [n for n, p in phases.items() if p.status == PhaseStatus.RUNNING]
    assert running == [3]
    assert phases[2].status == PhaseStatus.PENDING
    assert await machine.get_progress(ACCOUNT, product.id) == 13


@pytest.mark.asyncio
async def test_reset_clears_phases(machine, store):
    product = await _product(machine)
    await machine.start_phase(ACCOUNT, product.id, 1)
    await machine.complete_phase(ACCOUNT, product.id, 1)
    await machine.start_phase(ACCOUNT, product.id, 2)
    await machine.fail_phase(ACCOUNT, product.id, 2, "boom")

    reset = await machine.reset(ACCOUNT, product.id)

    assert reset.current_phase == 1
    assert reset.status == ProductStatus.PROCESSING
    assert reset.progress == 0
    assert reset.error_message is None
    assert reset.error_phase is None
    assert await store.list_phases(product.id) == []


@pytest.mark.asyncio
async def test_mark_published_only_from_completed(machine):
    product = await _product(machine)
    with pytest.raises(InvalidTransitionError):
        await machine.mark_published(ACCOUNT, product.id)
    await machine.complete_phase(ACCOUNT, product.id, 4)
    published = await machine.mark_published(ACCOUNT, product.id)
    assert published.status == ProductStatus.PUBLISHED


@pytest.mark.asyncio
async def test_update_product_validates_fields(machine):
    product = await _product(machine)
    updated = await machine.update_product(ACCOUNT, product.id, brand="Sony", ai_confidence=88)
    assert updated.brand == "Sony"
    assert updated.ai_confidence == 88
    with pytest.raises(Exception):
        await machine.update_product(ACCOUNT, product.id, ai_confidence=150)


@pytest.mark.asyncio
async def test_delete_products_cascades(machine, store):
    keep = await _product(machine, name="Keep me")
    drop = await _product(machine, name="Drop me")
    await machine.start_phase(ACCOUNT, drop.id, 1)

    removed = await machine.delete_products(ACCOUNT, [drop.id, "missing"])

    assert removed == 1
    assert await store.get_product(ACCOUNT, drop.id) is None
    assert await store.list_phases(drop.id) == []
    assert await store.get_product(ACCOUNT, keep.id) is not None


# =============================================================================
# Store failures
# =============================================================================

@pytest.mark.asyncio
async def test_store_failure_is_wrapped(machine, store):
    product = await _product(machine)
    with patch.object(store, "upsert_phase", new_callable=AsyncMock) as mock_upsert:
        mock_upsert.side_effect = ConnectionError("database unavailable")
        with pytest.raises(PersistenceError) as exc:
            await machine.start_phase(ACCOUNT, product.id, 1)
    assert "database unavailable" in exc.value.message
    assert mock_upsert.call_count == 1
