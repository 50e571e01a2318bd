"""
Forward and peer connection tracking.

The forwards table and the connection log are kept current by
notifications, which are missed while the plugin is not running. The
helpers here turn notification and listforwards payloads into rows and
bring the database back in line with the node on startup.
"""

import time
import traceback
from typing import Any, Dict, Optional

from pyln.client import Plugin

from .channel_insights import normalize_scid, parse_msat


def forward_timestamp(fwd: Dict[str, Any]) -> int:
    """Resolved time of a forward, falling back to the time it was received."""
    return int(fwd.get("resolved_time") or fwd.get("received_time") or 0)


def parse_forward(fwd: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Row for the forwards table from a forward_event or listforwards entry.

    Returns:
        None for anything that is not a settled forward between two channels
    """
    if fwd.get("status", "settled") != "settled":
        return None

    in_channel = normalize_scid(fwd.get("in_channel"))
    out_channel = normalize_scid(fwd.get("out_channel"))
    if not in_channel or not out_channel:
        return None

    # CLN v23.05+ uses in_msat/out_msat/fee_msat; older versions used *_msatoshi
    return {
        'in_channel': in_channel,
        'out_channel': out_channel,
        'in_htlc_id': fwd.get("in_htlc_id"),
        'in_msat': parse_msat(fwd.get("in_msat", fwd.get("in_msatoshi", 0))),
        'out_msat': parse_msat(fwd.get("out_msat", fwd.get("out_msatoshi", 0))),
        'fee_msat': parse_msat(fwd.get("fee_msat", fwd.get("fee_msatoshi", 0))),
        'timestamp': forward_timestamp(fwd),
    }


def hydrate_forwards(plugin: Plugin, database) -> int:
    """
    Backfill the forwards table from listforwards.

    On an empty table we import the node's whole settled history, so
    per-channel totals cover each channel's lifetime; otherwise only
    what followed the newest stored forward, with an hour of overlap
    (rows already stored, or already archived, are ignored).

    Returns:
        Number of forwards inserted
    """
    try:
        last_forward_ts = database.get_latest_forward_timestamp()

        if last_forward_ts is None:
            start_time = 0
            plugin.log("Forwards table empty. Hydrating full forwarding history...")
        else:
            start_time = max(0, last_forward_ts - 3600)
            plugin.log(f"Hydrating forwards since {time.strftime('%Y-%m-%d %H:%M', time.localtime(start_time))}...")

        # listforwards has no time filter, so we filter client-side
        result = plugin.rpc.listforwards(status="settled")
        forwards_to_insert = []

        for fwd in result.get("forwards", []):
            row = parse_forward(fwd)
            if row is None or row['timestamp'] < start_time:
                continue
            forwards_to_insert.append(row)

        if forwards_to_insert:
            inserted = database.bulk_insert_forwards(forwards_to_insert)
            plugin.log(f"Hydration complete: inserted {inserted} forwards into local database")
            return inserted

        plugin.log("Hydration complete: no new forwards to insert")
        return 0

    except Exception as e:
        # Non-fatal: reports work with whatever history we have
        plugin.log(f"Warning: Forwards hydration failed: {e}", level='warn')
        return 0


def snapshot_peer_connections(plugin: Plugin, database) -> Dict[str, int]:
    """
    Bring the connection log in line with the node's current peer state.

    Connected peers the log does not show online get a snapshot event;
    peers the log shows online that are no longer connected get a
    disconnected event.
    """
    counts = {"connected": 0, "snapshotted": 0, "marked_offline": 0}
    try:
        peers = plugin.rpc.listpeers()
        connected = {
            peer["id"] for peer in peers.get("peers", [])
            if peer.get("connected", False)
        }

        for peer_id in sorted(connected):
            if not database.is_peer_online(peer_id):
                database.record_connection_event(peer_id, "snapshot")
                counts["snapshotted"] += 1

        for peer_id in database.get_tracked_peers():
            if peer_id not in connected and database.is_peer_online(peer_id):
                database.record_connection_event(peer_id, "disconnected")
                counts["marked_offline"] += 1

        counts["connected"] = len(connected)
        plugin.log(f"Connection baseline: {counts['connected']} connected peers, "
                   f"snapshotted {counts['snapshotted']}, marked {counts['marked_offline']} offline")
    except Exception as e:
        plugin.log(f"Error snapshotting peer connections: {e}", level='warn')
        plugin.log(f"Traceback: {traceback.format_exc()}", level='warn')
    return counts


def extract_peer_id(payload: Dict[str, Any], key: str) -> Optional[str]:
    """Peer id from a connect/disconnect notification, old or new layout."""
    nested = payload.get(key)
    if isinstance(nested, dict):
        peer_id = nested.get('id') or nested.get('peer_id')
        if peer_id:
            return peer_id
    return payload.get('id')
