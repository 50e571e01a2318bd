#!/usr/bin/env python3
"""
cl-channel-insights: Close Recommendations for Core Lightning

This plugin watches how each channel performs and recommends which
channels to close. It keeps a local record of:
- settled forwards (volume and fees per channel)
- peer connection events (monitored time and uptime per peer)

From that record it answers two kinds of questions:

CLOSE RECOMMENDATIONS:
----------------------
For a chosen metric (uptime ratio, revenue or volume per block of
confirmation depth) every eligible channel is scored and either
1. compared against the population, flagging low outliers by IQR, or
2. compared against a caller supplied threshold.
Private channels and channels observed for less than the minimum
monitored time are not considered.

REVENUE ATTRIBUTION:
--------------------
Fees and amounts of settled forwards in a time window are attributed to
each pair of channels that carried them, split between incoming and
outgoing leg.

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import os
import time
import random
import threading
import signal
from dataclasses import asdict
from typing import Dict, List, Optional, Any

from pyln.client import Plugin

# Import our modules
from insights.channel_insights import NodeChannelSource
from insights.config import Config, CONFIG_FIELD_TYPES, IMMUTABLE_CONFIG_KEYS
from insights.database import Database
from insights.errors import InsightsError
from insights.recommend import CloseRecommender
from insights.revenue import DatabaseForwardingHistory, RevenueReporter
from insights.tracking import (
    extract_peer_id,
    hydrate_forwards,
    parse_forward,
    snapshot_peer_connections,
)


# =============================================================================
# SHUTDOWN EVENT
# =============================================================================
# Set on SIGTERM. Background loops wait on it and in-flight requests treat
# it as cancellation.
shutdown_event = threading.Event()

plugin = Plugin()

# Global instances (initialized in init)
database: Optional[Database] = None
config: Optional[Config] = None
recommender: Optional[CloseRecommender] = None
revenue_reporter: Optional[RevenueReporter] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='insights-db-path',
    default='~/.lightning/channel_insights.db',
    description='Path to the SQLite database for forwards and peer uptime'
)

plugin.add_option(
    name='insights-minimum-monitored',
    default=str(7 * 86400),
    description='Seconds a peer must have been observed before its channel is considered (default: 7 days)'
)

plugin.add_option(
    name='insights-outlier-multiplier',
    default='1.5',
    description='Default IQR multiplier for outlier recommendations (1.5 aggressive, 3.0 conservative)'
)

plugin.add_option(
    name='insights-retention-days',
    default='90',
    description='Days of forwards and connection events to keep; older forwards are folded into per-channel lifetime totals'
)

plugin.add_option(
    name='insights-cleanup-interval',
    default='86400',
    description='Interval in seconds between database maintenance runs (default: 1 day)'
)


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the channel insights plugin.

    This is called once when the plugin starts. We:
    1. Parse and validate options
    2. Initialize the database and load runtime overrides
    3. Backfill forwards missed while the plugin was down
    4. Record a connection baseline for uptime tracking
    5. Start the maintenance loop
    """
    global database, config, recommender, revenue_reporter

    plugin.log("Initializing cl-channel-insights plugin...")

    config = Config(
        db_path=os.path.expanduser(options['insights-db-path']),
        minimum_monitored=int(options['insights-minimum-monitored']),
        outlier_multiplier=float(options['insights-outlier-multiplier']),
        retention_days=int(options['insights-retention-days']),
        cleanup_interval=int(options['insights-cleanup-interval']),
    )

    plugin.log(f"Configuration loaded: minimum_monitored={config.minimum_monitored}s, "
               f"outlier_multiplier={config.outlier_multiplier}, "
               f"retention_days={config.retention_days}")

    database = Database(config.db_path, plugin)
    database.initialize()

    try:
        config.load_overrides(database)
        if config._version > 0:
            plugin.log(f"Loaded config overrides from database (version {config._version})")
    except Exception as e:
        plugin.log(f"Warning: Could not load config overrides: {e}", level='warn')

    hydrate_forwards(plugin, database)
    snapshot_peer_connections(plugin, database)

    recommender = CloseRecommender(plugin, NodeChannelSource(plugin, database))
    revenue_reporter = RevenueReporter(plugin, DatabaseForwardingHistory(plugin, database))

    def maintenance_loop():
        """Background loop pruning data older than the retention window."""
        if shutdown_event.wait(60):
            plugin.log("Maintenance loop cancelled during startup delay")
            return

        while not shutdown_event.is_set():
            try:
                database.cleanup_old_data(days_to_keep=config.retention_days)
            except Exception as e:
                plugin.log(f"Error in database maintenance: {e}", level='error')

            interval = config.cleanup_interval
            jitter_seconds = int(interval * 0.1)
            sleep_time = interval + random.randint(-jitter_seconds, jitter_seconds)

            if shutdown_event.wait(sleep_time):
                plugin.log("Maintenance loop stopping due to shutdown signal")
                break

    def handle_shutdown_signal(signum, frame):
        """
        Handle SIGTERM for graceful shutdown.

        CLN sends SIGTERM on `lightning-cli plugin stop cl-channel-insights`.
        Setting shutdown_event wakes the maintenance loop and cancels
        requests still waiting on a data source.
        """
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()

        if database:
            try:
                database.close()
            except Exception as e:
                plugin.log(f"Error closing database: {e}", level='warn')

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    threading.Thread(target=maintenance_loop, daemon=True, name="db-maintenance").start()

    plugin.log("cl-channel-insights plugin initialized successfully!")
    return None


# =============================================================================
# RPC HELPERS
# =============================================================================

def _error_result(method: str, e: InsightsError) -> Dict[str, Any]:
    level = 'debug' if e.kind == "InvalidArgument" else 'warn'
    plugin.log(f"{method} failed ({e.kind}): {e}", level=level)
    return {"error": str(e), "kind": e.kind}


def _parse_chan_points(chan_points: Any) -> Optional[List[str]]:
    """Accept a JSON list or a comma separated string of channel points."""
    if chan_points is None or chan_points == "":
        return None
    if isinstance(chan_points, str):
        return [cp.strip() for cp in chan_points.split(',') if cp.strip()]
    return list(chan_points)


# =============================================================================
# RPC METHODS
# =============================================================================

@plugin.method("insights-outliers")
def insights_outliers(plugin: Plugin, metric: str, minimum_monitored: Optional[int] = None,
                      outlier_multiplier: Optional[float] = None) -> Dict[str, Any]:
    """
    Recommend closing channels that are low outliers for a metric.

    Usage: lightning-cli insights-outliers metric [minimum_monitored] [outlier_multiplier]

    Metrics: UPTIME, REVENUE, INCOMING_VOLUME, OUTGOING_VOLUME, TOTAL_VOLUME

    Examples:
      lightning-cli insights-outliers REVENUE
      lightning-cli insights-outliers UPTIME 604800 3.0
    """
    if recommender is None or config is None:
        return {"error": "Plugin not initialized"}

    cfg = config.snapshot()
    if minimum_monitored is None:
        minimum_monitored = cfg.minimum_monitored
    if outlier_multiplier is None:
        outlier_multiplier = cfg.outlier_multiplier

    try:
        report = recommender.outlier_recommendations(
            metric, minimum_monitored, outlier_multiplier, cancel=shutdown_event
        )
    except InsightsError as e:
        return _error_result("insights-outliers", e)
    return report.to_dict()


@plugin.method("insights-threshold")
def insights_threshold(plugin: Plugin, metric: str, threshold_value: float,
                       minimum_monitored: Optional[int] = None) -> Dict[str, Any]:
    """
    Recommend closing channels whose metric is below a threshold.

    Usage: lightning-cli insights-threshold metric threshold_value [minimum_monitored]

    Examples:
      lightning-cli insights-threshold UPTIME 0.95
      lightning-cli insights-threshold TOTAL_VOLUME 1000000 2592000
    """
    if recommender is None or config is None:
        return {"error": "Plugin not initialized"}

    if minimum_monitored is None:
        minimum_monitored = config.snapshot().minimum_monitored

    try:
        report = recommender.threshold_recommendations(
            metric, minimum_monitored, threshold_value, cancel=shutdown_event
        )
    except InsightsError as e:
        return _error_result("insights-threshold", e)
    return report.to_dict()


@plugin.method("insights-revenue")
def insights_revenue(plugin: Plugin, start_time: int, end_time: int,
                     chan_points: Optional[Any] = None) -> Dict[str, Any]:
    """
    Pairwise revenue attribution for forwards in [start_time, end_time).

    Usage: lightning-cli insights-revenue start_time end_time [chan_points]

    chan_points is a list (or comma separated string) of
    <funding_txid>:<output_index>; omit it to report on every channel.
    """
    if revenue_reporter is None:
        return {"error": "Plugin not initialized"}

    try:
        reports = revenue_reporter.revenue_report(
            start_time, end_time, _parse_chan_points(chan_points), cancel=shutdown_event
        )
    except InsightsError as e:
        return _error_result("insights-revenue", e)
    return {"reports": [r.to_dict() for r in reports]}


@plugin.method("insights-channels")
def insights_channels(plugin: Plugin) -> Dict[str, Any]:
    """
    Raw per-channel telemetry the recommendations are computed from.

    Usage: lightning-cli insights-channels
    """
    if recommender is None:
        return {"error": "Plugin not initialized"}

    try:
        insights = recommender.channel_insights(cancel=shutdown_event)
    except InsightsError as e:
        return _error_result("insights-channels", e)
    return {"channel_insights": [i.to_dict() for i in insights]}


@plugin.method("insights-status")
def insights_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current status of the channel insights plugin.

    Usage: lightning-cli insights-status
    """
    if database is None or config is None:
        return {"error": "Plugin not fully initialized"}

    cfg = config.snapshot()
    return {
        "status": "running",
        "config": {
            "minimum_monitored": cfg.minimum_monitored,
            "outlier_multiplier": cfg.outlier_multiplier,
            "retention_days": cfg.retention_days,
        },
        "forwards_stored": database.get_forward_count(),
        "latest_forward_timestamp": database.get_latest_forward_timestamp(),
        "tracked_peers": len(database.get_tracked_peers()),
    }


@plugin.method("insights-config")
def insights_config(plugin: Plugin, action: str, key: str = None, value: str = None) -> Dict[str, Any]:
    """
    Get or set runtime configuration.

    Usage:
      lightning-cli insights-config get               # Get all config
      lightning-cli insights-config get <key>         # Get specific key
      lightning-cli insights-config set <key> <value> # Set key
      lightning-cli insights-config reset <key>       # Reset to default
      lightning-cli insights-config list-mutable      # List changeable keys

    Examples:
      lightning-cli insights-config set outlier_multiplier 3.0
      lightning-cli insights-config set minimum_monitored 1209600
    """
    if config is None or database is None:
        return {"error": "Plugin not initialized"}

    if action == "get":
        if key:
            if not hasattr(config, key) or key.startswith('_'):
                return {"error": f"Unknown config key: {key}"}
            return {
                "key": key,
                "value": getattr(config, key),
                "version": config._version
            }
        config_dict = asdict(config.snapshot())
        return {
            "config": config_dict,
            "version": config._version
        }

    elif action == "set":
        if not key or value is None:
            return {"error": "Usage: insights-config set <key> <value>"}

        result = config.update_runtime(database, key, str(value))

        if result.get("status") == "success":
            plugin.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})",
                level='info'
            )

        return result

    elif action == "reset":
        if not key:
            return {"error": "Usage: insights-config reset <key>"}

        if database.delete_config_override(key):
            return {
                "status": "success",
                "message": f"Override for '{key}' removed. Restart plugin to apply default."
            }
        return {"error": f"No override found for '{key}'"}

    elif action == "list-mutable":
        mutable = [k for k in CONFIG_FIELD_TYPES.keys() if k not in IMMUTABLE_CONFIG_KEYS]
        return {"mutable_keys": sorted(mutable), "count": len(mutable)}

    else:
        return {"error": f"Unknown action: {action}. Use 'get', 'set', 'reset', or 'list-mutable'"}


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@plugin.subscribe("forward_event")
def on_forward_event(forward_event: Dict, plugin: Plugin, **kwargs):
    """
    Notification when a forward completes (success or failure).

    Only settled forwards earn fees and move volume, so only those are
    stored.
    """
    if database is None:
        return

    row = parse_forward(forward_event)
    if row is None:
        return
    if not row['timestamp']:
        row['timestamp'] = int(time.time())

    try:
        database.record_forward(**row)
    except Exception as e:
        plugin.log(f"Error recording forward {row['in_channel']} -> {row['out_channel']}: {e}",
                   level='error')


@plugin.subscribe("connect")
def on_peer_connect(plugin: Plugin, **kwargs):
    """
    Notification when a peer connects.

    Records the connection event for uptime tracking.
    """
    if database is None:
        return

    peer_id = extract_peer_id(kwargs, 'connect')
    if peer_id:
        database.record_connection_event(peer_id, "connected")
        plugin.log(f"Peer connected: {peer_id[:12]}...", level='debug')
    else:
        plugin.log(f"Connect event - could not extract peer_id from: {kwargs}", level='warn')


@plugin.subscribe("disconnect")
def on_peer_disconnect(plugin: Plugin, **kwargs):
    """
    Notification when a peer disconnects.

    Records the disconnection event for uptime tracking.
    """
    if database is None:
        return

    peer_id = extract_peer_id(kwargs, 'disconnect')
    if peer_id:
        database.record_connection_event(peer_id, "disconnected")
        plugin.log(f"Peer disconnected: {peer_id[:12]}...", level='debug')
    else:
        plugin.log(f"Disconnect event - could not extract peer_id from: {kwargs}", level='warn')


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
