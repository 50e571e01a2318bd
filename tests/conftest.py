"""
Pytest fixtures for cl-channel-insights tests.

Provides mock plugin and RPC fixtures, a temporary database and
ChannelInsight builders.
"""

import pytest
import tempfile
import os
import sys
from unittest.mock import MagicMock

# Add the plugin root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from insights.channel_insights import ChannelInsight, ChannelSnapshotSource
from insights.database import Database


TXID_A = "a" * 64
TXID_B = "b" * 64
TXID_C = "c" * 64


class StaticSnapshotSource(ChannelSnapshotSource):
    """Snapshot source returning a fixed list, counting fetches."""

    name = "static snapshot"

    def __init__(self, insights=None, error=None):
        self.insights = list(insights or [])
        self.error = error
        self.calls = 0

    def fetch(self, cancel=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.insights)


def make_insight(chan_point=None, monitored=10_000, uptime=10_000,
                 volume_in=0, volume_out=0, fees=0, confirmations=100,
                 private=False, index=0):
    """Build a ChannelInsight with sensible defaults."""
    return ChannelInsight(
        chan_point=chan_point or f"{TXID_A}:{index}",
        monitored_seconds=monitored,
        uptime_seconds=uptime,
        volume_incoming_msat=volume_in,
        volume_outgoing_msat=volume_out,
        fees_earned_msat=fees,
        confirmations=confirmations,
        private=private,
    )


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface."""
    rpc = MagicMock()

    # Default return values
    rpc.getinfo.return_value = {
        "id": "02" + "a" * 64,
        "alias": "test-node",
        "network": "regtest",
        "blockheight": 1000,
    }

    rpc.listpeerchannels.return_value = {"channels": []}
    rpc.listclosedchannels.return_value = {"closedchannels": []}
    rpc.listpeers.return_value = {"peers": []}
    rpc.listforwards.return_value = {"forwards": []}

    return rpc


@pytest.fixture
def database(temp_db_path, mock_plugin):
    """An initialized Database on a temporary file."""
    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def mock_database():
    """Create a mock database with common methods."""
    db = MagicMock()

    db.get_all_peer_uptimes.return_value = {}
    db.get_channel_forward_totals.return_value = {}
    db.get_forwards_between.return_value = []
    db.get_latest_forward_timestamp.return_value = None
    db.get_tracked_peers.return_value = []
    db.is_peer_online.return_value = False
    db.bulk_insert_forwards.side_effect = lambda rows: len(rows)

    return db


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "03" + "c" * 64,
    ]
