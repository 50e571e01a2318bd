"""
Close recommendation engine.

A request runs end-to-end over one channel snapshot:
1. Validate request parameters (before touching the node)
2. Fetch the snapshot from the ChannelSnapshotSource
3. Filter ineligible channels and compute the requested metric
4. Flag channels, either as low outliers or as below a threshold
5. Assemble recommendations sorted ascending by value

Channels that were not considered get no recommendation at all; their
absence is the "not considered" signal. Equal values keep the order the
snapshot returned them in.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from pyln.client import Plugin

from .channel_insights import ChannelInsight, ChannelSnapshotSource, check_cancelled
from .channel_metrics import EligibleChannel, Metric, evaluate_channel
from .errors import (
    DataSourceUnavailableError,
    InsightsError,
    InvalidArgumentError,
)
from .outliers import (
    DEFAULT_OUTLIER_MULTIPLIER,
    flag_below_threshold,
    flag_outliers,
    validate_multiplier,
    validate_threshold,
)


@dataclass(frozen=True)
class Recommendation:
    chan_point: str
    value: float
    recommend_close: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chan_point": self.chan_point,
            "value": self.value,
            "recommend_close": self.recommend_close,
        }


@dataclass
class Report:
    """
    Result of one close recommendation request.

    Attributes:
        total_channels: Channels in the snapshot, before filtering
        considered_channels: Channels that passed eligibility
        recommendations: One per considered channel, ascending by value
    """
    total_channels: int
    considered_channels: int
    recommendations: List[Recommendation] = field(default_factory=list)

    @property
    def flagged(self) -> List[str]:
        return [r.chan_point for r in self.recommendations if r.recommend_close]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_channels": self.total_channels,
            "considered_channels": self.considered_channels,
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


def validate_minimum_monitored(minimum_monitored: Any) -> int:
    if isinstance(minimum_monitored, bool):
        raise InvalidArgumentError(f"minimum_monitored must be an integer, got {minimum_monitored!r}")
    try:
        value = int(minimum_monitored)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"minimum_monitored must be an integer, got {minimum_monitored!r}")
    if value < 0:
        raise InvalidArgumentError(f"minimum_monitored must not be negative, got {value}")
    return value


def eligible_population(snapshot: List[ChannelInsight], minimum_monitored: int,
                        metric: Metric) -> List[EligibleChannel]:
    """Eligible channels with their metric value, in snapshot order."""
    eligible = []
    for insight in snapshot:
        channel = evaluate_channel(insight, minimum_monitored, metric)
        if channel is not None:
            eligible.append(channel)
    return eligible


def assemble_report(total_channels: int, eligible: List[EligibleChannel],
                    flagged: Set[str]) -> Report:
    """Build a report; sorted() is stable so ties keep snapshot order."""
    recommendations = [
        Recommendation(
            chan_point=channel.chan_point,
            value=channel.value,
            recommend_close=channel.chan_point in flagged,
        )
        for channel in eligible
    ]
    recommendations = sorted(recommendations, key=lambda r: r.value)

    return Report(
        total_channels=total_channels,
        considered_channels=len(eligible),
        recommendations=recommendations,
    )


class CloseRecommender:
    """
    Produces close recommendations over a channel snapshot.

    The recommender holds no per-request state; concurrent requests only
    share the snapshot source, which fetches a fresh snapshot each call.
    """

    def __init__(self, plugin: Plugin, source: ChannelSnapshotSource):
        """
        Args:
            plugin: Reference to the pyln Plugin, used for logging
            source: Where channel snapshots come from
        """
        self.plugin = plugin
        self.source = source

    def outlier_recommendations(self, metric: Any, minimum_monitored: Any,
                                multiplier: Any = DEFAULT_OUTLIER_MULTIPLIER,
                                cancel: Optional[threading.Event] = None) -> Report:
        """
        Recommend closing channels whose metric is a low outlier.

        Raises:
            InvalidArgumentError: bad metric, minimum_monitored or multiplier
            DataSourceUnavailableError: the snapshot could not be fetched
            RequestCancelled: cancel was set before the report was assembled
        """
        metric = Metric.parse(metric)
        minimum_monitored = validate_minimum_monitored(minimum_monitored)
        multiplier = validate_multiplier(multiplier)

        snapshot = self._fetch(cancel)
        eligible = eligible_population(snapshot, minimum_monitored, metric)
        report = assemble_report(len(snapshot), eligible, flag_outliers(eligible, multiplier))

        self._log_report(report, metric, f"outlier multiplier={multiplier}")
        return report

    def threshold_recommendations(self, metric: Any, minimum_monitored: Any,
                                  threshold: Any,
                                  cancel: Optional[threading.Event] = None) -> Report:
        """
        Recommend closing channels whose metric is below a threshold.

        Raises:
            InvalidArgumentError: bad metric, minimum_monitored or threshold
            DataSourceUnavailableError: the snapshot could not be fetched
            RequestCancelled: cancel was set before the report was assembled
        """
        metric = Metric.parse(metric)
        minimum_monitored = validate_minimum_monitored(minimum_monitored)
        threshold = validate_threshold(threshold)

        snapshot = self._fetch(cancel)
        eligible = eligible_population(snapshot, minimum_monitored, metric)
        report = assemble_report(len(snapshot), eligible, flag_below_threshold(eligible, threshold))

        self._log_report(report, metric, f"threshold={threshold}")
        return report

    def channel_insights(self, cancel: Optional[threading.Event] = None) -> List[ChannelInsight]:
        """The raw snapshot, for the insights listing."""
        return self._fetch(cancel)

    def _fetch(self, cancel: Optional[threading.Event]) -> List[ChannelInsight]:
        check_cancelled(cancel, "before channel snapshot")
        try:
            snapshot = list(self.source.fetch(cancel))
        except InsightsError:
            raise
        except Exception as e:
            raise DataSourceUnavailableError(self.source.name, str(e)) from e
        check_cancelled(cancel, "after channel snapshot")
        return snapshot

    def _log_report(self, report: Report, metric: Metric, mode: str) -> None:
        self.plugin.log(
            f"Close recommendations ({metric.name}, {mode}): "
            f"{report.considered_channels}/{report.total_channels} channels considered, "
            f"{len(report.flagged)} recommended for close"
        )
