"""
Channel insight records and the node-backed snapshot source.

A ChannelInsight is the per-channel telemetry the recommendation engine
works on. NodeChannelSource builds the current set from:
- getinfo: block height, for confirmation depth
- listpeerchannels: open channels, funding outpoint, privacy flag
- the local database: peer uptime log and forwarding totals
"""

import re
import threading
import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple

from pyln.client import Plugin, RpcError

from .errors import DataSourceUnavailableError, InvalidArgumentError, RequestCancelled


_TXID_RE = re.compile(r'^[0-9a-fA-F]{64}$')


def parse_chan_point(chan_point: Any) -> Tuple[str, int]:
    """
    Split a channel point "<funding_txid>:<output_index>".

    Raises:
        InvalidArgumentError: if the string is not a well-formed outpoint
    """
    if not isinstance(chan_point, str) or chan_point.count(':') != 1:
        raise InvalidArgumentError(f"Malformed channel point: {chan_point!r}")

    txid, index = chan_point.split(':')
    if not _TXID_RE.match(txid) or not index.isdigit():
        raise InvalidArgumentError(f"Malformed channel point: {chan_point!r}")

    return txid.lower(), int(index)


def format_chan_point(funding_txid: str, output_index: int) -> str:
    return f"{funding_txid.lower()}:{int(output_index)}"


def normalize_scid(scid: Optional[str]) -> Optional[str]:
    """Normalise a short channel id to the 'x' separated form."""
    if not scid:
        return scid
    return scid.replace(':', 'x')


def scid_block_height(scid: Optional[str]) -> Optional[int]:
    """Funding block height encoded in a short channel id."""
    if not scid:
        return None
    try:
        return int(normalize_scid(scid).split('x')[0])
    except (ValueError, IndexError):
        return None


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, bool):
        return 0
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0


@dataclass(frozen=True)
class ChannelInsight:
    """
    Telemetry for one open channel.

    Attributes:
        chan_point: Funding outpoint "<txid>:<index>"
        monitored_seconds: How long the peer's connectivity has been observed
        uptime_seconds: How long the peer was online while observed
        volume_incoming_msat: Forwarded volume with this as the incoming channel
        volume_outgoing_msat: Forwarded volume with this as the outgoing channel
        fees_earned_msat: Forwarding fees attributed to this channel (half per leg)
        confirmations: Confirmation depth of the funding transaction
        private: True for unannounced channels
        short_channel_id: CLN scid, informational
        peer_id: Node id of the peer, informational
    """
    chan_point: str
    monitored_seconds: int
    uptime_seconds: int
    volume_incoming_msat: int
    volume_outgoing_msat: int
    fees_earned_msat: int
    confirmations: int
    private: bool
    short_channel_id: str = ""
    peer_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "chan_point": self.chan_point,
            "monitored_seconds": self.monitored_seconds,
            "uptime_seconds": self.uptime_seconds,
            "volume_incoming_msat": self.volume_incoming_msat,
            "volume_outgoing_msat": self.volume_outgoing_msat,
            "fees_earned_msat": self.fees_earned_msat,
            "confirmations": self.confirmations,
            "private": self.private,
        }


class ChannelSnapshotSource:
    """Supplies the current set of channel insights for one request."""

    name = "channel snapshot"

    def fetch(self, cancel: Optional[threading.Event] = None) -> List[ChannelInsight]:
        raise NotImplementedError


def check_cancelled(cancel: Optional[threading.Event], stage: str) -> None:
    if cancel is not None and cancel.is_set():
        raise RequestCancelled(f"Request cancelled {stage}")


class NodeChannelSource(ChannelSnapshotSource):
    """
    Builds ChannelInsight records from the local node and the plugin database.
    """

    name = "node channel snapshot"

    def __init__(self, plugin: Plugin, database):
        """
        Args:
            plugin: Reference to the pyln Plugin (or thread-safe proxy)
            database: Database instance holding uptime and forward history
        """
        self.plugin = plugin
        self.database = database

    def fetch(self, cancel: Optional[threading.Event] = None) -> List[ChannelInsight]:
        check_cancelled(cancel, "before channel snapshot")

        try:
            blockheight = int(self.plugin.rpc.getinfo().get("blockheight", 0) or 0)
            channels = self._get_open_channels()
            uptimes = self.database.get_all_peer_uptimes()
            totals = self.database.get_channel_forward_totals()
        except RpcError as e:
            raise DataSourceUnavailableError(self.name, f"RPC error: {e}") from e
        except sqlite3.Error as e:
            raise DataSourceUnavailableError(self.name, f"database error: {e}") from e

        check_cancelled(cancel, "during channel snapshot")

        insights = []
        for channel in channels:
            scid = normalize_scid(channel.get("short_channel_id")) or ""
            peer_id = channel.get("peer_id", "")
            monitored, uptime = uptimes.get(peer_id, (0, 0))
            channel_totals = totals.get(scid, {})

            insights.append(ChannelInsight(
                chan_point=format_chan_point(channel["funding_txid"], channel["funding_outnum"]),
                monitored_seconds=monitored,
                uptime_seconds=uptime,
                volume_incoming_msat=channel_totals.get("in_msat", 0),
                volume_outgoing_msat=channel_totals.get("out_msat", 0),
                fees_earned_msat=channel_totals.get("fees_msat", 0),
                confirmations=self._confirmations(scid, blockheight),
                private=bool(channel.get("private", False)),
                short_channel_id=scid,
                peer_id=peer_id,
            ))

        self.plugin.log(f"Channel snapshot: {len(insights)} open channels", level='debug')
        return insights

    def _get_open_channels(self) -> List[Dict[str, Any]]:
        """Open channels (CHANNELD_NORMAL) that have a funding outpoint."""
        result = self.plugin.rpc.listpeerchannels()
        channels = []
        for channel in result.get("channels", []):
            if channel.get("state") != "CHANNELD_NORMAL":
                continue
            if not channel.get("funding_txid") or channel.get("funding_outnum") is None:
                continue
            channels.append(channel)
        return channels

    @staticmethod
    def _confirmations(scid: str, blockheight: int) -> int:
        funding_height = scid_block_height(scid)
        if funding_height is None or blockheight <= 0 or funding_height > blockheight:
            return 0
        return blockheight - funding_height + 1


def resolve_channel_points(plugin: Plugin) -> Dict[str, str]:
    """
    Map short channel ids to channel points for open and closed channels.

    Nodes without `listclosedchannels` only resolve open channels.
    """
    mapping: Dict[str, str] = {}

    result = plugin.rpc.listpeerchannels()
    for channel in result.get("channels", []):
        scid = normalize_scid(channel.get("short_channel_id"))
        if scid and channel.get("funding_txid") and channel.get("funding_outnum") is not None:
            mapping[scid] = format_chan_point(channel["funding_txid"], channel["funding_outnum"])

    try:
        closed = plugin.rpc.listclosedchannels()
    except RpcError as e:
        plugin.log(f"listclosedchannels unavailable, resolving open channels only: {e}",
                   level='debug')
        return mapping

    for channel in closed.get("closedchannels", []):
        scid = normalize_scid(channel.get("short_channel_id"))
        if scid and scid not in mapping and channel.get("funding_txid") \
                and channel.get("funding_outnum") is not None:
            mapping[scid] = format_chan_point(channel["funding_txid"], channel["funding_outnum"])

    return mapping
