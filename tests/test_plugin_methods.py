"""
Tests for the RPC methods of the plugin script.

The script is loaded from its file (its name is not importable) and its
module-level recommender, revenue reporter and config are replaced with
instances backed by static sources.
"""

import importlib.util
import os
import sys

import pytest

from insights.config import Config
from insights.errors import DataSourceUnavailableError
from insights.recommend import CloseRecommender
from insights.revenue import ForwardingEvent, ForwardingHistorySource, RevenueReporter

from conftest import StaticSnapshotSource, make_insight, TXID_A, TXID_B, TXID_C


SCRIPT_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "cl-channel-insights.py"
)

X = f"{TXID_A}:0"
Y = f"{TXID_B}:1"
Z = f"{TXID_C}:2"


@pytest.fixture(scope="module")
def script():
    """The plugin script loaded as a module, with sys.stdout left untouched."""
    stdout = sys.stdout
    spec = importlib.util.spec_from_file_location("cl_channel_insights_script", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    finally:
        sys.stdout = stdout
    return module


class StaticHistory(ForwardingHistorySource):
    def __init__(self, events):
        self.events = list(events)

    def fetch(self, window, cancel=None):
        return list(self.events)


# Uptime ratios 0.6, 0.8, 0.85, 0.9, 0.95: Q1 0.8 and Q3 0.9, so the
# 0.6 channel is below the 1.5 IQR bound (0.65) but not the 3.0 one (0.5)
UPTIME_POPULATION = [
    make_insight(monitored=10_000, uptime=uptime, index=i)
    for i, uptime in enumerate([6_000, 8_000, 8_500, 9_000, 9_500])
]


@pytest.fixture
def wired(script, monkeypatch, mock_plugin):
    """Install a config, recommender and revenue reporter on the script."""
    config = Config(minimum_monitored=5_000)
    source = StaticSnapshotSource(UPTIME_POPULATION + [
        make_insight(chan_point=f"{TXID_C}:9", monitored=4_000, uptime=0),
    ])
    history = StaticHistory([
        ForwardingEvent(X, Y, 1000, 990, 10, 1500),
        ForwardingEvent(Y, Z, 500, 495, 5, 1600),
    ])

    monkeypatch.setattr(script, "plugin", mock_plugin)
    monkeypatch.setattr(script, "config", config)
    monkeypatch.setattr(script, "recommender", CloseRecommender(mock_plugin, source))
    monkeypatch.setattr(script, "revenue_reporter", RevenueReporter(mock_plugin, history))
    return script, config, source


def flagged(result):
    return [r["chan_point"] for r in result["recommendations"] if r["recommend_close"]]


class TestOutliersMethod:
    """Test insights-outliers."""

    def test_defaults_from_config(self, wired, mock_plugin):
        script, config, _ = wired

        result = script.insights_outliers(mock_plugin, "UPTIME")

        assert result["total_channels"] == 6
        # The channel monitored 4000s falls under the configured 5000s minimum
        assert result["considered_channels"] == 5
        assert flagged(result) == [f"{TXID_A}:0"]

    def test_configured_multiplier_applies(self, wired, mock_plugin):
        script, config, _ = wired
        config.outlier_multiplier = 3.0

        assert flagged(script.insights_outliers(mock_plugin, "UPTIME")) == []

    def test_explicit_arguments_override_config(self, wired, mock_plugin):
        script, config, _ = wired
        config.outlier_multiplier = 3.0

        # With the 0.0 channel admitted the bound drops to 0.294
        result = script.insights_outliers(mock_plugin, "UPTIME", 0, 1.5)

        assert result["considered_channels"] == 6
        assert flagged(result) == [f"{TXID_C}:9"]

    def test_invalid_metric(self, wired, mock_plugin):
        script, _, source = wired

        result = script.insights_outliers(mock_plugin, "FEES")

        assert set(result) == {"error", "kind"}
        assert result["kind"] == "InvalidArgument"
        assert source.calls == 0

    def test_data_source_unavailable(self, wired, mock_plugin, monkeypatch):
        script, _, _ = wired
        source = StaticSnapshotSource(error=DataSourceUnavailableError("node channel snapshot", "RPC error"))
        monkeypatch.setattr(script, "recommender", CloseRecommender(mock_plugin, source))

        result = script.insights_outliers(mock_plugin, "REVENUE")

        assert result["kind"] == "DataSourceUnavailable"
        assert "node channel snapshot" in result["error"]

    def test_not_initialized(self, script, monkeypatch, mock_plugin):
        monkeypatch.setattr(script, "recommender", None)
        assert script.insights_outliers(mock_plugin, "UPTIME") == {"error": "Plugin not initialized"}


class TestThresholdMethod:
    """Test insights-threshold."""

    def test_minimum_monitored_from_config(self, wired, mock_plugin):
        script, _, _ = wired

        result = script.insights_threshold(mock_plugin, "UPTIME", 0.85)

        assert result["considered_channels"] == 5
        assert flagged(result) == [f"{TXID_A}:0", f"{TXID_A}:1"]

    def test_explicit_minimum_monitored(self, wired, mock_plugin):
        script, _, _ = wired

        result = script.insights_threshold(mock_plugin, "UPTIME", 0.85, 0)

        assert result["considered_channels"] == 6
        assert flagged(result)[0] == f"{TXID_C}:9"

    def test_non_numeric_threshold(self, wired, mock_plugin):
        script, _, _ = wired
        result = script.insights_threshold(mock_plugin, "UPTIME", "high")
        assert result["kind"] == "InvalidArgument"


class TestRevenueMethod:
    """Test insights-revenue."""

    def test_comma_separated_chan_points(self, wired, mock_plugin):
        script, _, _ = wired

        result = script.insights_revenue(mock_plugin, 1000, 2000, f"{X}, {Z}")

        assert [r["target_channel"] for r in result["reports"]] == sorted([X, Z])

    def test_list_chan_points(self, wired, mock_plugin):
        script, _, _ = wired

        result = script.insights_revenue(mock_plugin, 1000, 2000, [Y])

        assert [r["target_channel"] for r in result["reports"]] == [Y]
        assert sorted(result["reports"][0]["pair_reports"]) == sorted([X, Z])

    def test_all_channels_when_omitted(self, wired, mock_plugin):
        script, _, _ = wired
        result = script.insights_revenue(mock_plugin, 1000, 2000)
        assert len(result["reports"]) == 3

    def test_invalid_window(self, wired, mock_plugin):
        script, _, _ = wired

        result = script.insights_revenue(mock_plugin, 2000, 1000)

        assert set(result) == {"error", "kind"}
        assert result["kind"] == "InvalidArgument"
