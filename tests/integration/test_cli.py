import json

import pytest
from click.testing import CliRunner
from unittest.mock import AsyncMock, MagicMock, patch

from flipforge.main import cli
from flipforge.models.schemas import DataProvenance, MarketResearchRecord
from flipforge.pipeline.driver import create_pipeline_driver
from flipforge.services.market_research import MarketDataAcquisitionSelector
from flipforge.utils.errors import ResearchUnavailableError


@pytest.fixture
def runner():
    return CliRunner()


def _write(tmp_path, payload):
    path = tmp_path / "input.json"
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload))
    return str(path)


class TestValidate:

    def test_valid_product(self, runner, tmp_path, settings):
        with patch("flipforge.main.get_settings", return_value=settings):
            result = runner.invoke(cli, ["validate", _write(tmp_path, {"name": "Echo Dot", "model": "RS03QR"})])
        assert result.exit_code == 0
        assert "Valid" in result.output

    def test_invalid_product(self, runner, tmp_path, settings):
        with patch("flipforge.main.get_settings", return_value=settings):
            result = runner.invoke(cli, ["validate", _write(tmp_path, {})])
        assert result.exit_code == 1
        assert "Product must have either a name or model" in result.output

    def test_research_warnings(self, runner, tmp_path, settings):
        with patch("flipforge.main.get_settings", return_value=settings):
            result = runner.invoke(
                cli,
                ["validate", "--kind", "research", _write(tmp_path, {"market_demand": "huge"})],
            )
        assert result.exit_code == 0
        assert "not a valid value" in result.output

    def test_bad_json(self, runner, tmp_path):
        result = runner.invoke(cli, ["validate", _write(tmp_path, "{not json")])
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output

    def test_missing_file(self, runner):
        result = runner.invoke(cli, ["validate", "does-not-exist.json"])
        assert result.exit_code == 2


class TestValidateSetup:

    def test_nothing_configured(self, runner, settings):
        with patch("flipforge.main.get_settings", return_value=settings):
            result = runner.invoke(cli, ["validate-setup"])
        assert result.exit_code == 1
        assert "serpapi.com" in result.output

    def test_marketplace_key(self, runner, settings_factory):
        with patch("flipforge.main.get_settings", return_value=settings_factory(EBAY_API_KEY="ebay-app")):
            result = runner.invoke(cli, ["validate-setup"])
        assert result.exit_code == 0
        assert "real marketplace APIs" in result.output

    def test_ai_only(self, runner, ai_settings):
        with patch("flipforge.main.get_settings", return_value=ai_settings):
            result = runner.invoke(cli, ["validate-setup"])
        assert result.exit_code == 0
        assert "AI-estimated data" in result.output


class TestResearch:

    @staticmethod
    def _selector(record=None, error=None):
        selector = MagicMock()
        selector.choose_path.return_value = DataProvenance.FAKE
        selector.acquire_market_data = AsyncMock(return_value=record, side_effect=error)
        selector.close = AsyncMock()
        return selector

    def test_json_output(self, runner, settings):
        record = MarketResearchRecord(
            product_id="p1",
            account_id="local",
            provenance=DataProvenance.FAKE,
            warning="URLs are AI-generated and may not work.",
        )
        selector = self._selector(record)
        with patch("flipforge.main.get_settings", return_value=settings), \
                patch("flipforge.main.MarketDataAcquisitionSelector", return_value=selector):
            result = runner.invoke(cli, ["research", "Echo Dot", "--json"])

        assert result.exit_code == 0
        assert '"provenance": "fake"' in result.output
        selector.close.assert_awaited_once()

    def test_unavailable(self, runner, settings):
        selector = self._selector(error=ResearchUnavailableError("All market research paths failed"))
        with patch("flipforge.main.get_settings", return_value=settings), \
                patch("flipforge.main.MarketDataAcquisitionSelector", return_value=selector):
            result = runner.invoke(cli, ["research", "Echo Dot"])

        assert result.exit_code == 1
        assert "Research Failed" in result.output


class TestRun:

    def test_full_pipeline(self, runner, settings, estimating_claude):
        def build_driver(store, settings):
            selector = MarketDataAcquisitionSelector(store, settings, claude_service=estimating_claude)
            return create_pipeline_driver(store, settings=settings, selector=selector)

        with patch("flipforge.main.get_settings", return_value=settings), \
                patch("flipforge.main.create_pipeline_driver", side_effect=build_driver):
            result = runner.invoke(cli, ["run", "Echo Dot", "--brand", "Amazon", "--fast"])

        assert result.exit_code == 0, result.output
        assert "completed" in result.output
        assert "AI-estimated" in result.output

    def test_failed_pipeline_exits_nonzero(self, runner, settings):
        with patch("flipforge.main.get_settings", return_value=settings):
            result = runner.invoke(cli, ["run", "Echo Dot", "--fast"])

        assert result.exit_code == 1
        assert "research_unavailable" in result.output
