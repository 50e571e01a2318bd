"""
Channel metrics and eligibility for close recommendations.

Metrics:
- UPTIME: uptime_seconds / monitored_seconds
- REVENUE: fees earned per block of confirmation depth
- INCOMING_VOLUME / OUTGOING_VOLUME / TOTAL_VOLUME: forwarded msat per block

Per-block metrics normalise by confirmation depth so that channels open
for different periods can be compared. A channel whose metric cannot be
computed (nothing monitored, zero confirmations) is excluded rather than
given a zero or infinite value.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .channel_insights import ChannelInsight
from .errors import InvalidArgumentError


class Metric(Enum):
    """The data point a close recommendation pass is based on."""
    UPTIME = "uptime"
    REVENUE = "revenue"
    INCOMING_VOLUME = "incoming_volume"
    OUTGOING_VOLUME = "outgoing_volume"
    TOTAL_VOLUME = "total_volume"

    @classmethod
    def parse(cls, value: Any) -> 'Metric':
        """
        Parse a metric from its wire name ("UPTIME", "total_volume", ...).

        Raises:
            InvalidArgumentError: for anything that is not a known metric
        """
        if isinstance(value, Metric):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        valid = ", ".join(m.name for m in cls)
        raise InvalidArgumentError(f"Unknown metric {value!r}, expected one of: {valid}")


@dataclass(frozen=True)
class EligibleChannel:
    """A channel that passed eligibility, with its metric value."""
    insight: ChannelInsight
    value: float

    @property
    def chan_point(self) -> str:
        return self.insight.chan_point


def compute_metric(insight: ChannelInsight, metric: Metric) -> Optional[float]:
    """
    Compute one metric for a channel.

    Returns:
        The metric value, or None if the channel must be excluded
    """
    if metric is Metric.UPTIME:
        if insight.monitored_seconds <= 0:
            return None
        return insight.uptime_seconds / insight.monitored_seconds

    if metric is Metric.REVENUE:
        numerator = insight.fees_earned_msat
    elif metric is Metric.INCOMING_VOLUME:
        numerator = insight.volume_incoming_msat
    elif metric is Metric.OUTGOING_VOLUME:
        numerator = insight.volume_outgoing_msat
    elif metric is Metric.TOTAL_VOLUME:
        numerator = insight.volume_incoming_msat + insight.volume_outgoing_msat
    else:
        raise InvalidArgumentError(f"Unknown metric: {metric!r}")

    if insight.confirmations <= 0:
        return None
    return numerator / insight.confirmations


def is_eligible(insight: ChannelInsight, minimum_monitored: int, metric: Metric) -> bool:
    """
    Private channels and channels monitored for less than the minimum are
    not considered, nor are channels whose metric is excluded.
    """
    return evaluate_channel(insight, minimum_monitored, metric) is not None


def evaluate_channel(insight: ChannelInsight, minimum_monitored: int,
                     metric: Metric) -> Optional[EligibleChannel]:
    """Apply eligibility and compute the metric in one step."""
    if insight.private:
        return None
    if insight.monitored_seconds < minimum_monitored:
        return None

    value = compute_metric(insight, metric)
    if value is None:
        return None
    return EligibleChannel(insight=insight, value=value)
