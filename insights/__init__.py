"""
cl-channel-insights insights package

This package contains the core modules for the Channel Insights plugin:
- channel_insights: Per-channel telemetry and the node-backed snapshot source
- channel_metrics: Metric calculation and eligibility
- outliers: IQR outlier detection and threshold evaluation
- recommend: Close recommendation engine and reports
- revenue: Pairwise revenue attribution
- config: Configuration and runtime overrides
- database: SQLite storage layer
- errors: Error kinds reported to callers
- tracking: Forward and peer connection tracking
"""

from .channel_insights import ChannelInsight, NodeChannelSource
from .channel_metrics import Metric
from .config import Config
from .database import Database
from .errors import (
    InsightsError,
    InvalidArgumentError,
    DataSourceUnavailableError,
    RequestCancelled,
)
from .recommend import CloseRecommender, Recommendation, Report
from .revenue import PairReport, RevenueReport, RevenueReporter

__all__ = [
    'ChannelInsight',
    'NodeChannelSource',
    'Metric',
    'Config',
    'Database',
    'InsightsError',
    'InvalidArgumentError',
    'DataSourceUnavailableError',
    'RequestCancelled',
    'CloseRecommender',
    'Recommendation',
    'Report',
    'PairReport',
    'RevenueReport',
    'RevenueReporter',
]
