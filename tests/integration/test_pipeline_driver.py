"""
End-to-end driver runs against the in-memory store with mocked research services.
"""

import asyncio

import pytest

from flipforge.models.schemas import (
    DataProvenance,
    MarketResearchRecord,
    PhaseStatus,
    ProductStatus,
)
from flipforge.pipeline.driver import create_pipeline_driver
from flipforge.services.market_research import MarketDataAcquisitionSelector
from flipforge.utils.errors import InvalidTransitionError, ValidationError

ACCOUNT = "acct-1"


@pytest.fixture
def driver(store, settings, work_registry, mock_search_service, estimating_claude):
    selector = MarketDataAcquisitionSelector(
        store,
        settings,
        search_service=mock_search_service,
        claude_service=estimating_claude,
    )
    return create_pipeline_driver(store, settings=settings, selector=selector, work_registry=work_registry)


async def _register(driver, name="Echo Dot", **fields):
    fields.setdefault("brand", "Amazon")
    return await driver.machine.register_product(ACCOUNT, name=name, **fields)


class TestFullRun:

    @pytest.mark.asyncio
    async def test_runs_all_phases(self, driver, store):
        product = await _register(driver)

        summary = await driver.run(ACCOUNT, product.id)

        assert summary.status == "completed"
        assert summary.progress == 100
        assert summary.completed_phases == [1, 2, 3, 4]
        assert summary.errors == []
        assert summary.cancelled is False

        phases = await driver.machine.list_phases(ACCOUNT, product.id)
        assert [p.status for p in phases] == [PhaseStatus.COMPLETED] * 4
        assert all(p.progress_percentage == 100 for p in phases)

        research = await store.get_market_research(product.id)
        assert research.provenance == DataProvenance.FAKE
        assert research.warning
        assert (await store.get_seo_analysis(product.id)).url_slug == "amazon-echo-dot"
        listing = await store.get_listing(product.id)
        assert listing.price == 40.0
        assert "Note: URLs are AI-generated" in listing.description

        final = await driver.machine.get_product(ACCOUNT, product.id)
        assert final.status == ProductStatus.COMPLETED
        assert final.is_pipeline_running is False

    @pytest.mark.asyncio
    async def test_completed_product_is_not_rerun(self, driver):
        product = await _register(driver)
        await driver.run(ACCOUNT, product.id)

        with pytest.raises(InvalidTransitionError):
            await driver.run(ACCOUNT, product.id)
        with pytest.raises(InvalidTransitionError):
            await driver.launch(ACCOUNT, product.id)

    @pytest.mark.asyncio
    async def test_transition_log(self, driver, store):
        product = await _register(driver)
        await driver.run(ACCOUNT, product.id)

        messages = [entry.message for entry in await store.list_logs(product.id)]
        assert messages[0] == "Product registered"
        assert "Started phase 2: Market Research" in messages
        assert messages[-1] == "Completed phase 4: Listing Generation"


class TestFailures:

    @pytest.mark.asyncio
    async def test_research_failure_marks_phase_two(self, driver, store, estimating_claude):
        estimating_claude.estimate_listings.side_effect = None
        estimating_claude.estimate_listings.return_value = []
        product = await _register(driver)

        summary = await driver.run(ACCOUNT, product.id)

        assert summary.status == "error"
        assert summary.failed_phase == 2
        assert summary.completed_phases == [1]
        assert summary.errors[0].startswith("[research_unavailable]")

        failed = await driver.machine.get_product(ACCOUNT, product.id)
        assert failed.error_phase == 2
        assert failed.is_pipeline_running is False
        rows = {p.phase_number: p for p in await driver.machine.list_phases(ACCOUNT, product.id)}
        assert rows[2].status == PhaseStatus.ERROR
        assert await store.get_market_research(product.id) is None

    @pytest.mark.asyncio
    async def test_retry_then_run_completes(self, driver, estimating_claude):
        estimate = estimating_claude.estimate_listings.side_effect
        estimating_claude.estimate_listings.side_effect = None
        estimating_claude.estimate_listings.return_value = []
        product = await _register(driver)
        await driver.run(ACCOUNT, product.id)

        estimating_claude.estimate_listings.side_effect = estimate
        row = await driver.machine.retry(ACCOUNT, product.id)
        assert row.phase_number == 2
        assert row.retry_count == 1

        summary = await driver.run(ACCOUNT, product.id)

        assert summary.status == "completed"
        assert summary.completed_phases == [2, 3, 4]
        assert (await driver.machine.get_product(ACCOUNT, product.id)).retry_count == 1

    @pytest.mark.asyncio
    async def test_placeholder_product_fails_analysis(self, driver):
        product = await _register(driver, name="Unknown Product", brand=None)

        summary = await driver.run(ACCOUNT, product.id)

        assert summary.failed_phase == 1
        assert summary.errors[0].startswith("[validation_error]")


class TestBackgroundRuns:

    @pytest.mark.asyncio
    async def test_pause_cancels_running_work(self, driver, store):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_research(ctx):
            started.set()
            await release.wait()

        driver.handlers.override(2, slow_research)
        product = await _register(driver)

        work = await driver.launch(ACCOUNT, product.id)
        await asyncio.wait_for(started.wait(), timeout=1)

        paused = await driver.machine.pause(ACCOUNT, product.id)
        assert paused.status == ProductStatus.PAUSED
        assert work.token.cancelled is True

        release.set()
        summary = await work.wait()

        assert summary.cancelled is True
        assert summary.status == "paused"
        assert summary.completed_phases == [1]
        assert await store.get_seo_analysis(product.id) is None
        rows = await driver.machine.list_phases(ACCOUNT, product.id)
        assert [r.phase_number for r in rows] == [1, 2]

    @pytest.mark.asyncio
    async def test_pause_between_phases_stops_direct_run(self, driver, store):
        complete_phase = driver.machine.complete_phase

        async def complete_then_pause(account_id, product_id, phase_number):
            row = await complete_phase(account_id, product_id, phase_number)
            if phase_number == 1:
                await driver.machine.pause(account_id, product_id)
            return row

        driver.machine.complete_phase = complete_then_pause
        product = await _register(driver)

        summary = await driver.run(ACCOUNT, product.id)

        assert summary.cancelled is True
        assert summary.status == "paused"
        assert summary.completed_phases == [1]
        stored = await driver.machine.get_product(ACCOUNT, product.id)
        assert stored.status == ProductStatus.PAUSED
        assert stored.is_pipeline_running is False
        rows = await driver.machine.list_phases(ACCOUNT, product.id)
        assert [r.phase_number for r in rows] == [1]
        assert await store.get_market_research(product.id) is None

    @pytest.mark.asyncio
    async def test_launch_runs_to_completion(self, driver, work_registry):
        product = await _register(driver)

        work = await driver.launch(ACCOUNT, product.id)
        await work_registry.wait(product.id)

        assert work.result.status == "completed"
        assert work_registry.active(product.id) == []

    @pytest.mark.asyncio
    async def test_close_shuts_down(self, driver, mock_search_service, estimating_claude):
        await driver.close()
        mock_search_service.close.assert_awaited_once()
        estimating_claude.close.assert_awaited_once()


class TestManualControls:

    @pytest.mark.asyncio
    async def test_advance_actions(self, driver):
        product = await _register(driver)

        updated = await driver.advance(ACCOUNT, product.id, "start_phase")
        assert updated.status == ProductStatus.PROCESSING
        assert updated.progress == 13

        updated = await driver.advance(ACCOUNT, product.id, "advance_to_next")
        assert updated.current_phase == 2
        assert updated.progress == 38

        updated = await driver.advance(ACCOUNT, product.id, "complete_phase")
        assert updated.progress == 50

        updated = await driver.advance(ACCOUNT, product.id, "reset")
        assert updated.current_phase == 1
        assert updated.progress == 0
        assert await driver.machine.list_phases(ACCOUNT, product.id) == []

    @pytest.mark.asyncio
    async def test_unknown_action(self, driver):
        product = await _register(driver)
        with pytest.raises(ValidationError):
            await driver.advance(ACCOUNT, product.id, "teleport")

    @pytest.mark.asyncio
    async def test_record_product_analysis(self, driver):
        product = await _register(driver, name="Processing...", brand=None)

        updated = await driver.record_product_analysis(ACCOUNT, product.id, {
            "name": "Unknown Product",
            "model": "RS03QR",
            "brand": "Amazon",
            "ai_confidence": 40,
        })

        assert updated.name is None
        assert updated.model == "RS03QR"
        assert updated.brand == "Amazon"
        assert updated.ai_confidence == 40
        assert updated.requires_manual_review is True

        with pytest.raises(ValidationError):
            await driver.record_product_analysis(ACCOUNT, product.id, {})

    @pytest.mark.asyncio
    async def test_complete_stuck_phases(self, driver, store):
        product = await _register(driver)
        await driver.advance(ACCOUNT, product.id, "start_phase")
        await store.upsert_market_research(MarketResearchRecord(
            product_id=product.id, account_id=ACCOUNT, provenance=DataProvenance.REAL,
        ))

        completed = await driver.complete_stuck_phases(ACCOUNT, product.id)

        assert completed == [1, 2]
        assert (await driver.machine.get_product(ACCOUNT, product.id)).progress == 50
        assert await driver.complete_stuck_phases(ACCOUNT, product.id) == []
