"""
Pairwise revenue attribution.

For every settled forward inside the window [start, end):
- if the incoming channel is a target, its report for the outgoing
  channel is credited the incoming amount and the incoming half of the fee
- if the outgoing channel is a target, its report for the incoming
  channel is credited the outgoing amount and the outgoing half of the fee

The fee is earned jointly by both channels, so it is split: the incoming
leg receives fee // 2 and the outgoing leg fee - fee // 2. The two
shares always add up to the forward's fee.

Without an explicit target list every channel seen on either leg of a
forward becomes a target.
"""

import threading
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pyln.client import Plugin, RpcError

from .channel_insights import (
    check_cancelled,
    normalize_scid,
    parse_chan_point,
    resolve_channel_points,
)
from .errors import DataSourceUnavailableError, InsightsError, InvalidArgumentError


@dataclass(frozen=True)
class ForwardingEvent:
    incoming_channel: str
    outgoing_channel: str
    incoming_amount_msat: int
    outgoing_amount_msat: int
    fee_msat: int
    timestamp: int


@dataclass(frozen=True)
class TimeWindow:
    """Half-open time range [start_time, end_time) in unix seconds."""
    start_time: int
    end_time: int

    def contains(self, timestamp: int) -> bool:
        return self.start_time <= timestamp < self.end_time


@dataclass
class PairReport:
    """Revenue between a target channel and one peer channel."""
    amount_outgoing_msat: int = 0
    fees_outgoing_msat: int = 0
    amount_incoming_msat: int = 0
    fees_incoming_msat: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "amount_outgoing_msat": self.amount_outgoing_msat,
            "fees_outgoing_msat": self.fees_outgoing_msat,
            "amount_incoming_msat": self.amount_incoming_msat,
            "fees_incoming_msat": self.fees_incoming_msat,
        }


@dataclass
class RevenueReport:
    target_channel: str
    pair_reports: Dict[str, PairReport]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with peers in sorted order."""
        return {
            "target_channel": self.target_channel,
            "pair_reports": {
                peer: self.pair_reports[peer].to_dict()
                for peer in sorted(self.pair_reports)
            },
        }


def split_fee(fee_msat: int):
    """(incoming share, outgoing share) of a forward's fee."""
    incoming = fee_msat // 2
    return incoming, fee_msat - incoming


def attribute_revenue(events: Iterable[ForwardingEvent], window: TimeWindow,
                      targets: Optional[Sequence[str]] = None) -> List[RevenueReport]:
    """
    Attribute forwarding revenue pairwise over a window.

    Args:
        events: Forwarding events, in any order
        window: Only events with start <= timestamp < end are counted
        targets: Channels to report on; None or empty means all seen channels

    Returns:
        One RevenueReport per target, sorted by target channel
    """
    target_set = set(targets) if targets else None
    pairs: Dict[str, Dict[str, PairReport]] = {}

    if target_set:
        for target in target_set:
            pairs[target] = {}

    def pair(target: str, peer: str) -> PairReport:
        return pairs.setdefault(target, {}).setdefault(peer, PairReport())

    for event in events:
        if not window.contains(event.timestamp):
            continue

        fee_in, fee_out = split_fee(event.fee_msat)

        if target_set is None or event.incoming_channel in target_set:
            report = pair(event.incoming_channel, event.outgoing_channel)
            report.amount_incoming_msat += event.incoming_amount_msat
            report.fees_incoming_msat += fee_in

        if target_set is None or event.outgoing_channel in target_set:
            report = pair(event.outgoing_channel, event.incoming_channel)
            report.amount_outgoing_msat += event.outgoing_amount_msat
            report.fees_outgoing_msat += fee_out

    return [
        RevenueReport(target_channel=target, pair_reports=pairs[target])
        for target in sorted(pairs)
    ]


class ForwardingHistorySource:
    """Supplies settled forwarding events for a time window."""

    name = "forwarding history"

    def fetch(self, window: TimeWindow,
              cancel: Optional[threading.Event] = None) -> List[ForwardingEvent]:
        raise NotImplementedError


class DatabaseForwardingHistory(ForwardingHistorySource):
    """
    Forwarding history from the local forwards table.

    Forwards are stored by short channel id; events are returned keyed by
    channel point where the scid can be resolved, otherwise by scid.
    """

    name = "forwarding history"

    def __init__(self, plugin: Plugin, database):
        self.plugin = plugin
        self.database = database

    def fetch(self, window: TimeWindow,
              cancel: Optional[threading.Event] = None) -> List[ForwardingEvent]:
        check_cancelled(cancel, "before forwarding history")

        try:
            rows = self.database.get_forwards_between(window.start_time, window.end_time)
            chan_points = resolve_channel_points(self.plugin)
        except RpcError as e:
            raise DataSourceUnavailableError(self.name, f"RPC error: {e}") from e
        except sqlite3.Error as e:
            raise DataSourceUnavailableError(self.name, f"database error: {e}") from e

        def identity(scid: str) -> str:
            scid = normalize_scid(scid)
            return chan_points.get(scid, scid)

        unresolved = set()
        events = []
        for row in rows:
            for scid in (row['in_channel'], row['out_channel']):
                if normalize_scid(scid) not in chan_points:
                    unresolved.add(scid)
            events.append(ForwardingEvent(
                incoming_channel=identity(row['in_channel']),
                outgoing_channel=identity(row['out_channel']),
                incoming_amount_msat=row['in_msat'],
                outgoing_amount_msat=row['out_msat'],
                fee_msat=row['fee_msat'],
                timestamp=row['timestamp'],
            ))

        if unresolved:
            self.plugin.log(
                f"{len(unresolved)} channels in forwarding history have no known "
                f"channel point, reporting them by scid",
                level='debug'
            )
        return events


def validate_window(start_time: Any, end_time: Any) -> TimeWindow:
    values = []
    for name, value in (("start_time", start_time), ("end_time", end_time)):
        if isinstance(value, bool):
            raise InvalidArgumentError(f"{name} must be a unix timestamp, got {value!r}")
        try:
            ts = int(value)
        except (TypeError, ValueError):
            raise InvalidArgumentError(f"{name} must be a unix timestamp, got {value!r}")
        if ts < 0:
            raise InvalidArgumentError(f"{name} must not be negative, got {ts}")
        values.append(ts)

    start, end = values
    if end < start:
        raise InvalidArgumentError(f"end_time {end} is before start_time {start}")
    return TimeWindow(start_time=start, end_time=end)


def validate_chan_points(chan_points: Optional[Sequence[str]]) -> List[str]:
    if chan_points is None:
        return []
    if isinstance(chan_points, str):
        chan_points = [chan_points]
    normalized = []
    for chan_point in chan_points:
        txid, index = parse_chan_point(chan_point)
        normalized.append(f"{txid}:{index}")
    return normalized


class RevenueReporter:
    """Runs revenue report requests against a forwarding history source."""

    def __init__(self, plugin: Plugin, history: ForwardingHistorySource):
        self.plugin = plugin
        self.history = history

    def revenue_report(self, start_time: Any, end_time: Any,
                       chan_points: Optional[Sequence[str]] = None,
                       cancel: Optional[threading.Event] = None) -> List[RevenueReport]:
        """
        Pairwise revenue for the requested channels (or all) over a window.

        Raises:
            InvalidArgumentError: malformed window or channel point
            DataSourceUnavailableError: history could not be fetched
            RequestCancelled: cancel was set before the reports were assembled
        """
        window = validate_window(start_time, end_time)
        targets = validate_chan_points(chan_points)

        check_cancelled(cancel, "before forwarding history")
        try:
            events = self.history.fetch(window, cancel)
        except InsightsError:
            raise
        except Exception as e:
            raise DataSourceUnavailableError(self.history.name, str(e)) from e
        check_cancelled(cancel, "after forwarding history")

        reports = attribute_revenue(events, window, targets)
        self.plugin.log(
            f"Revenue report [{window.start_time}, {window.end_time}): "
            f"{len(events)} forwards, {len(reports)} target channels"
        )
        return reports
