"""
Tests for forward and peer connection tracking.

Tests:
- Parsing forward_event / listforwards payloads
- Startup hydration of the forwards table
- Lifetime per-channel totals across hydration and pruning
- Connection baseline on startup
"""

import time

import pytest

from insights.channel_insights import NodeChannelSource
from insights.channel_metrics import Metric, compute_metric
from insights.tracking import (
    extract_peer_id,
    forward_timestamp,
    hydrate_forwards,
    parse_forward,
    snapshot_peer_connections,
)

from conftest import TXID_A, TXID_B


def listforwards_entry(received_time, resolved_time=None, status="settled", htlc_id=1):
    entry = {
        "in_channel": "100:1:0",
        "in_htlc_id": htlc_id,
        "out_channel": "200x2x1",
        "in_msat": 1010,
        "out_msat": "1000msat",
        "fee_msat": 10,
        "status": status,
        "received_time": received_time,
    }
    if resolved_time is not None:
        entry["resolved_time"] = resolved_time
    return entry


class TestParseForward:
    """Test parse_forward."""

    def test_settled_forward(self):
        row = parse_forward(listforwards_entry(1000.5, 1002.25))
        assert row == {
            "in_channel": "100x1x0",
            "out_channel": "200x2x1",
            "in_htlc_id": 1,
            "in_msat": 1010,
            "out_msat": 1000,
            "fee_msat": 10,
            "timestamp": 1002,
        }

    def test_timestamp_falls_back_to_received(self):
        assert forward_timestamp({"received_time": 1000.9}) == 1000
        assert forward_timestamp({}) == 0

    @pytest.mark.parametrize("status", ["failed", "local_failed", "offered"])
    def test_unsettled_ignored(self, status):
        assert parse_forward(listforwards_entry(1000, status=status)) is None

    def test_missing_out_channel_ignored(self):
        entry = listforwards_entry(1000)
        del entry["out_channel"]
        assert parse_forward(entry) is None

    def test_legacy_msatoshi_fields(self):
        row = parse_forward({
            "in_channel": "1x1x0", "out_channel": "2x2x0",
            "in_msatoshi": 2000, "out_msatoshi": 1990, "fee_msatoshi": 10,
            "received_time": 5,
        })
        assert (row["in_msat"], row["out_msat"], row["fee_msat"]) == (2000, 1990, 10)


class TestHydrateForwards:
    """Test hydrate_forwards."""

    def test_empty_table_imports_full_history(self, mock_plugin, mock_rpc, mock_database):
        now = int(time.time())
        mock_rpc.listforwards.return_value = {"forwards": [
            listforwards_entry(now - 400 * 86400, htlc_id=1),
            listforwards_entry(now - 3600, htlc_id=2),
            listforwards_entry(now - 60, status="failed", htlc_id=3),
        ]}
        mock_plugin.rpc = mock_rpc

        inserted = hydrate_forwards(mock_plugin, mock_database)

        assert inserted == 2
        mock_rpc.listforwards.assert_called_once_with(status="settled")
        rows = mock_database.bulk_insert_forwards.call_args[0][0]
        assert [r["in_htlc_id"] for r in rows] == [1, 2]

    def test_resumes_before_latest_forward(self, mock_plugin, mock_rpc, mock_database):
        mock_database.get_latest_forward_timestamp.return_value = 100_000
        mock_rpc.listforwards.return_value = {"forwards": [
            listforwards_entry(90_000, htlc_id=1),
            listforwards_entry(97_000, htlc_id=2),
            listforwards_entry(100_000, htlc_id=3),
        ]}
        mock_plugin.rpc = mock_rpc

        assert hydrate_forwards(mock_plugin, mock_database) == 2

    def test_nothing_to_insert(self, mock_plugin, mock_rpc, mock_database):
        mock_plugin.rpc = mock_rpc
        assert hydrate_forwards(mock_plugin, mock_database) == 0
        mock_database.bulk_insert_forwards.assert_not_called()

    def test_rpc_failure_is_not_fatal(self, mock_plugin, mock_rpc, mock_database):
        mock_rpc.listforwards.side_effect = RuntimeError("rpc down")
        mock_plugin.rpc = mock_rpc

        assert hydrate_forwards(mock_plugin, mock_database) == 0
        assert mock_plugin.log.call_args[1]["level"] == "warn"

    def test_inserts_into_real_database(self, mock_plugin, mock_rpc, database):
        now = int(time.time())
        mock_rpc.listforwards.return_value = {"forwards": [
            listforwards_entry(now - 100, htlc_id=1),
            listforwards_entry(now - 50, htlc_id=2),
        ]}
        mock_plugin.rpc = mock_rpc

        assert hydrate_forwards(mock_plugin, database) == 2
        # A second run overlaps the last hour; stored rows are not duplicated
        assert hydrate_forwards(mock_plugin, database) == 0
        assert database.get_forward_count() == 2


class TestSnapshotPeerConnections:
    """Test the startup connection baseline."""

    def test_baseline(self, mock_plugin, mock_rpc, database, sample_peer_ids):
        online_logged, offline_logged, stale = sample_peer_ids
        database.record_connection_event(online_logged, "connected", timestamp=100)
        database.record_connection_event(offline_logged, "disconnected", timestamp=100)
        database.record_connection_event(stale, "connected", timestamp=100)

        mock_rpc.listpeers.return_value = {"peers": [
            {"id": online_logged, "connected": True},
            {"id": offline_logged, "connected": True},
            {"id": stale, "connected": False},
        ]}
        mock_plugin.rpc = mock_rpc

        counts = snapshot_peer_connections(mock_plugin, database)

        assert counts == {"connected": 2, "snapshotted": 1, "marked_offline": 1}
        assert database.get_last_connection_event(online_logged)["event_type"] == "connected"
        assert database.get_last_connection_event(offline_logged)["event_type"] == "snapshot"
        assert database.get_last_connection_event(stale)["event_type"] == "disconnected"

    def test_new_connected_peer_snapshotted(self, mock_plugin, mock_rpc, database, sample_peer_ids):
        mock_rpc.listpeers.return_value = {"peers": [{"id": sample_peer_ids[0], "connected": True}]}
        mock_plugin.rpc = mock_rpc

        snapshot_peer_connections(mock_plugin, database)

        assert database.is_peer_online(sample_peer_ids[0])


class TestExtractPeerId:
    """Test notification payload parsing."""

    def test_nested(self):
        assert extract_peer_id({"connect": {"id": "02ab"}}, "connect") == "02ab"

    def test_nested_peer_id(self):
        assert extract_peer_id({"disconnect": {"peer_id": "03cd"}}, "disconnect") == "03cd"

    def test_flat(self):
        assert extract_peer_id({"id": "02ef"}, "connect") == "02ef"

    def test_missing(self):
        assert extract_peer_id({"connect": {}}, "connect") is None


class TestLifetimeTotals:
    """Forwarding totals cover each channel's whole life, across hydration and pruning."""

    BLOCKS_PER_DAY = 144
    BLOCKHEIGHT = 1_000_000

    def daily_forwards(self, in_channel, days, now):
        return [
            {
                "in_channel": in_channel,
                "in_htlc_id": day,
                "out_channel": "999x1x0",
                "in_msat": 100_000,
                "out_msat": 98_000,
                "fee_msat": 2_000,
                "status": "settled",
                "received_time": now - day * 86400 - 600,
            }
            for day in range(days)
        ]

    def channel(self, scid, txid, peer_id):
        return {
            "state": "CHANNELD_NORMAL",
            "peer_id": peer_id,
            "short_channel_id": scid,
            "funding_txid": txid,
            "funding_outnum": 0,
            "private": False,
        }

    def test_same_earning_rate_same_revenue_per_block(self, mock_plugin, mock_rpc, database,
                                                      sample_peer_ids):
        now = int(time.time())
        old_scid = f"{self.BLOCKHEIGHT - 365 * self.BLOCKS_PER_DAY}x1x0"
        young_scid = f"{self.BLOCKHEIGHT - 20 * self.BLOCKS_PER_DAY}x2x0"

        mock_rpc.getinfo.return_value = {"blockheight": self.BLOCKHEIGHT}
        mock_rpc.listpeerchannels.return_value = {"channels": [
            self.channel(old_scid, TXID_A, sample_peer_ids[0]),
            self.channel(young_scid, TXID_B, sample_peer_ids[1]),
        ]}
        mock_rpc.listforwards.return_value = {"forwards": (
            self.daily_forwards(old_scid, 365, now) + self.daily_forwards(young_scid, 20, now)
        )}
        mock_plugin.rpc = mock_rpc

        hydrate_forwards(mock_plugin, database)
        before = NodeChannelSource(mock_plugin, database).fetch()

        # Retention pruning must not change what each channel has earned
        database.cleanup_old_data(days_to_keep=90)
        after = NodeChannelSource(mock_plugin, database).fetch()

        assert [i.fees_earned_msat for i in after] == [i.fees_earned_msat for i in before]
        old, young = (compute_metric(i, Metric.REVENUE) for i in after)
        assert abs(old - young) / young < 0.01

    def test_hydration_after_pruning_does_not_double_count(self, mock_plugin, mock_rpc, database):
        now = int(time.time())
        mock_rpc.listforwards.return_value = {
            "forwards": self.daily_forwards("500x1x0", 200, now)[100:]
        }
        mock_plugin.rpc = mock_rpc

        assert hydrate_forwards(mock_plugin, database) == 100
        totals = database.get_channel_forward_totals()

        # Every stored forward is older than the retention window
        database.cleanup_old_data(days_to_keep=90)
        assert database.get_forward_count() == 0
        assert database.get_latest_forward_timestamp() is None

        assert hydrate_forwards(mock_plugin, database) == 0
        assert database.get_channel_forward_totals() == totals
