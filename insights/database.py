"""
Database module for cl-channel-insights

Handles SQLite persistence for:
- Settled forwards (pairwise revenue and per-channel volume)
- Lifetime per-channel totals of forwards pruned by retention
- Peer connection events (uptime monitoring)
- Runtime configuration overrides
"""

import sqlite3
import os
import time
import threading
from typing import Dict, List, Optional, Any, Tuple


ONLINE_EVENTS = ("connected", "snapshot")
OFFLINE_EVENTS = ("disconnected",)


def compute_uptime(events: List[Tuple[str, int]], now: int) -> Tuple[int, int]:
    """
    Fold a peer's ordered connection log into (monitored, uptime) seconds.

    Monitoring starts at the first event. Each connected/snapshot event
    opens an online interval (if one is not already open) and each
    disconnected event closes it. An interval still open at ``now`` is
    counted up to ``now``.
    """
    if not events:
        return 0, 0

    first_ts = events[0][1]
    uptime = 0
    online_since: Optional[int] = None

    for event_type, ts in events:
        if event_type in ONLINE_EVENTS:
            if online_since is None:
                online_since = ts
        elif event_type in OFFLINE_EVENTS:
            if online_since is not None:
                uptime += max(0, ts - online_since)
                online_since = None

    if online_since is not None:
        uptime += max(0, now - online_since)

    monitored = max(0, now - first_ts)
    return monitored, min(uptime, monitored)


class Database:
    """
    SQLite database manager for the channel insights plugin.

    The connection runs in autocommit mode and is shared between the RPC
    dispatch thread, notification handlers and the maintenance loop, so
    every statement is issued under a single lock.
    """

    # Per-leg rows of the forwards table with the fee split applied
    _LEG_TOTALS_SQL = """
        SELECT in_channel AS channel_id, in_msat, 0 AS out_msat,
               fee_msat / 2 AS fees_msat
        FROM forwards {where}
        UNION ALL
        SELECT out_channel AS channel_id, 0 AS in_msat, out_msat,
               fee_msat - fee_msat / 2 AS fees_msat
        FROM forwards {where}
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        with self._lock:
            conn = self._get_connection()

            # in_htlc_id is unique per incoming channel; rows hydrated from
            # older nodes without it are stored with NULL and never collide
            conn.execute("""
                CREATE TABLE IF NOT EXISTS forwards (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    in_channel TEXT NOT NULL,
                    out_channel TEXT NOT NULL,
                    in_htlc_id INTEGER,
                    in_msat INTEGER NOT NULL,
                    out_msat INTEGER NOT NULL,
                    fee_msat INTEGER NOT NULL,
                    timestamp INTEGER NOT NULL,
                    UNIQUE (in_channel, in_htlc_id)
                )
            """)

            # Lifetime totals of forwards pruned from the forwards table, with
            # the fee split already applied
            conn.execute("""
                CREATE TABLE IF NOT EXISTS channel_forward_archive (
                    channel_id TEXT PRIMARY KEY,
                    in_msat INTEGER NOT NULL DEFAULT 0,
                    out_msat INTEGER NOT NULL DEFAULT 0,
                    fees_msat INTEGER NOT NULL DEFAULT 0
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS peer_connection_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    peer_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,  -- 'connected', 'disconnected', 'snapshot'
                    timestamp INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS config_overrides (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS config_meta (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_forwards_time ON forwards(timestamp)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_forwards_channels ON forwards(in_channel, out_channel)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_connection_peer ON peer_connection_events(peer_id, timestamp)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Forward Tracking Methods
    # =========================================================================

    def record_forward(self, in_channel: str, out_channel: str,
                       in_msat: int, out_msat: int, fee_msat: int,
                       timestamp: Optional[int] = None,
                       in_htlc_id: Optional[int] = None) -> bool:
        """
        Record a settled forward.

        Forwards older than the archive horizon are already counted in
        the archived totals and are ignored.

        Returns:
            True if a row was inserted, False if it was already stored
        """
        if timestamp is None:
            timestamp = int(time.time())

        with self._lock:
            conn = self._get_connection()
            if timestamp < self._archive_horizon(conn):
                return False
            cursor = conn.execute("""
                INSERT OR IGNORE INTO forwards
                (in_channel, out_channel, in_htlc_id, in_msat, out_msat, fee_msat, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (in_channel, out_channel, in_htlc_id, in_msat, out_msat, fee_msat, timestamp))
            return cursor.rowcount > 0

    def bulk_insert_forwards(self, forwards: List[Dict[str, Any]]) -> int:
        """
        Insert many forwards in one transaction.

        Rows that are already stored (same incoming channel and HTLC id)
        or older than the archive horizon are skipped.

        Returns:
            Number of rows actually inserted
        """
        if not forwards:
            return 0

        with self._lock:
            conn = self._get_connection()
            horizon = self._archive_horizon(conn)
            forwards = [f for f in forwards if f['timestamp'] >= horizon]
            if not forwards:
                return 0
            before = conn.total_changes
            conn.execute("BEGIN")
            try:
                conn.executemany("""
                    INSERT OR IGNORE INTO forwards
                    (in_channel, out_channel, in_htlc_id, in_msat, out_msat, fee_msat, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, [
                    (
                        f['in_channel'], f['out_channel'], f.get('in_htlc_id'),
                        f['in_msat'], f['out_msat'], f['fee_msat'], f['timestamp']
                    )
                    for f in forwards
                ])
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            return conn.total_changes - before

    def get_latest_forward_timestamp(self) -> Optional[int]:
        """Timestamp of the most recent stored forward, or None if empty."""
        with self._lock:
            conn = self._get_connection()
            row = conn.execute("SELECT MAX(timestamp) as ts FROM forwards").fetchone()
        return row['ts'] if row and row['ts'] is not None else None

    @staticmethod
    def _archive_horizon(conn: sqlite3.Connection) -> int:
        """Cutoff below which forwards live only in the archive (0 if never pruned)."""
        row = conn.execute(
            "SELECT value FROM config_meta WHERE key = 'archive_horizon'"
        ).fetchone()
        return int(row['value']) if row else 0

    def get_archive_horizon(self) -> int:
        with self._lock:
            return self._archive_horizon(self._get_connection())

    def get_forward_count(self) -> int:
        with self._lock:
            conn = self._get_connection()
            row = conn.execute("SELECT COUNT(*) as cnt FROM forwards").fetchone()
        return row['cnt']

    def get_forwards_between(self, start_time: int, end_time: int) -> List[Dict[str, Any]]:
        """Get forwards with start_time <= timestamp < end_time, oldest first."""
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute("""
                SELECT in_channel, out_channel, in_msat, out_msat, fee_msat, timestamp
                FROM forwards
                WHERE timestamp >= ? AND timestamp < ?
                ORDER BY timestamp, id
            """, (start_time, end_time)).fetchall()
        return [dict(row) for row in rows]

    def get_channel_forward_totals(self) -> Dict[str, Dict[str, int]]:
        """
        Lifetime forwarding totals per channel.

        Fees are attributed to both legs of a forward: the incoming
        channel is credited fee // 2 and the outgoing channel the rest,
        so the two shares always add up to the forward's fee. Totals
        archived by retention cleanup are included.

        Returns:
            Dict mapping channel_id to {'in_msat', 'out_msat', 'fees_msat'}
        """
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute(f"""
                SELECT channel_id,
                       SUM(in_msat) AS in_msat,
                       SUM(out_msat) AS out_msat,
                       SUM(fees_msat) AS fees_msat
                FROM (
                    {self._LEG_TOTALS_SQL.format(where="")}
                    UNION ALL
                    SELECT channel_id, in_msat, out_msat, fees_msat
                    FROM channel_forward_archive
                )
                GROUP BY channel_id
            """).fetchall()

        return {
            row['channel_id']: {
                'in_msat': int(row['in_msat'] or 0),
                'out_msat': int(row['out_msat'] or 0),
                'fees_msat': int(row['fees_msat'] or 0),
            }
            for row in rows
        }

    # =========================================================================
    # Peer Connection Tracking (uptime monitoring)
    # =========================================================================

    def record_connection_event(self, peer_id: str, event_type: str,
                                timestamp: Optional[int] = None):
        """Record a connected / disconnected / snapshot event for a peer."""
        if timestamp is None:
            timestamp = int(time.time())

        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                INSERT INTO peer_connection_events (peer_id, event_type, timestamp)
                VALUES (?, ?, ?)
            """, (peer_id, event_type, timestamp))

    def get_last_connection_event(self, peer_id: str) -> Optional[Dict[str, Any]]:
        """Most recent connection event for a peer."""
        with self._lock:
            conn = self._get_connection()
            row = conn.execute("""
                SELECT peer_id, event_type, timestamp
                FROM peer_connection_events
                WHERE peer_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
            """, (peer_id,)).fetchone()
        return dict(row) if row else None

    def get_tracked_peers(self) -> List[str]:
        """Every peer with at least one connection event."""
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute(
                "SELECT DISTINCT peer_id FROM peer_connection_events ORDER BY peer_id"
            ).fetchall()
        return [row['peer_id'] for row in rows]

    def is_peer_online(self, peer_id: str) -> bool:
        """True if the connection log currently shows the peer online."""
        last = self.get_last_connection_event(peer_id)
        return last is not None and last['event_type'] in ONLINE_EVENTS

    def get_peer_uptime(self, peer_id: str, now: Optional[int] = None) -> Tuple[int, int]:
        """
        Get (monitored_seconds, uptime_seconds) for a single peer.

        A peer that has never been observed is (0, 0).
        """
        if now is None:
            now = int(time.time())

        with self._lock:
            conn = self._get_connection()
            rows = conn.execute("""
                SELECT event_type, timestamp
                FROM peer_connection_events
                WHERE peer_id = ?
                ORDER BY timestamp, id
            """, (peer_id,)).fetchall()

        return compute_uptime([(r['event_type'], r['timestamp']) for r in rows], now)

    def get_all_peer_uptimes(self, now: Optional[int] = None) -> Dict[str, Tuple[int, int]]:
        """Get (monitored_seconds, uptime_seconds) for every observed peer."""
        if now is None:
            now = int(time.time())

        with self._lock:
            conn = self._get_connection()
            rows = conn.execute("""
                SELECT peer_id, event_type, timestamp
                FROM peer_connection_events
                ORDER BY peer_id, timestamp, id
            """).fetchall()

        events_by_peer: Dict[str, List[Tuple[str, int]]] = {}
        for row in rows:
            events_by_peer.setdefault(row['peer_id'], []).append(
                (row['event_type'], row['timestamp'])
            )

        return {
            peer_id: compute_uptime(events, now)
            for peer_id, events in events_by_peer.items()
        }

    # =========================================================================
    # Config Overrides
    # =========================================================================

    def get_all_config_overrides(self) -> Dict[str, str]:
        """All persisted runtime overrides as key -> raw string value."""
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute("SELECT key, value FROM config_overrides").fetchall()
        return {row['key']: row['value'] for row in rows}

    def get_config_override(self, key: str) -> Optional[str]:
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT value FROM config_overrides WHERE key = ?", (key,)
            ).fetchone()
        return row['value'] if row else None

    def set_config_override(self, key: str, value: str) -> int:
        """
        Persist an override and bump the config version.

        Returns:
            The new config version
        """
        now = int(time.time())
        with self._lock:
            conn = self._get_connection()
            conn.execute("BEGIN")
            try:
                conn.execute("""
                    INSERT OR REPLACE INTO config_overrides (key, value, updated_at)
                    VALUES (?, ?, ?)
                """, (key, value, now))
                conn.execute("""
                    INSERT INTO config_meta (key, value) VALUES ('version', 1)
                    ON CONFLICT(key) DO UPDATE SET value = value + 1
                """)
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        return self.get_config_version()

    def get_config_version(self) -> int:
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT value FROM config_meta WHERE key = 'version'"
            ).fetchone()
        return int(row['value']) if row else 0

    def delete_config_override(self, key: str) -> bool:
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute("DELETE FROM config_overrides WHERE key = ?", (key,))
            return cursor.rowcount > 0

    # =========================================================================
    # Cleanup Methods
    # =========================================================================

    def cleanup_old_data(self, days_to_keep: int = 90):
        """
        Remove forwards and connection events older than the retention window.

        Pruned forwards are first added to the per-channel archive and the
        archive horizon moves up to the cutoff, so lifetime totals survive
        and a later backfill cannot count the same forwards twice.

        Each peer keeps its newest pre-cutoff connection event, moved up
        to the cutoff, so its online/offline state is not lost; its
        monitored duration is then measured from the cutoff.

        Args:
            days_to_keep: Number of days of data to retain
        """
        cutoff = int(time.time()) - (days_to_keep * 86400)

        with self._lock:
            conn = self._get_connection()
            forwards_count = conn.execute(
                "SELECT COUNT(*) as cnt FROM forwards WHERE timestamp < ?", (cutoff,)
            ).fetchone()["cnt"]

            conn.execute("BEGIN")
            try:
                if forwards_count > 0:
                    conn.execute(f"""
                        INSERT INTO channel_forward_archive (channel_id, in_msat, out_msat, fees_msat)
                        SELECT channel_id, SUM(in_msat), SUM(out_msat), SUM(fees_msat)
                        FROM ({self._LEG_TOTALS_SQL.format(where="WHERE timestamp < ?")})
                        WHERE 1
                        GROUP BY channel_id
                        ON CONFLICT(channel_id) DO UPDATE SET
                            in_msat = in_msat + excluded.in_msat,
                            out_msat = out_msat + excluded.out_msat,
                            fees_msat = fees_msat + excluded.fees_msat
                    """, (cutoff, cutoff))
                    conn.execute("""
                        INSERT INTO config_meta (key, value) VALUES ('archive_horizon', ?)
                        ON CONFLICT(key) DO UPDATE SET value = MAX(value, excluded.value)
                    """, (cutoff,))
                    conn.execute("DELETE FROM forwards WHERE timestamp < ?", (cutoff,))

                # Newest pre-cutoff event per peer, in the same order compute_uptime reads them
                events_cursor = conn.execute("""
                    DELETE FROM peer_connection_events
                    WHERE timestamp < ?
                      AND id NOT IN (
                          SELECT (
                              SELECT e.id FROM peer_connection_events e
                              WHERE e.peer_id = p.peer_id AND e.timestamp < ?
                              ORDER BY e.timestamp DESC, e.id DESC
                              LIMIT 1
                          )
                          FROM (SELECT DISTINCT peer_id FROM peer_connection_events
                                WHERE timestamp < ?) p
                      )
                """, (cutoff, cutoff, cutoff))
                events_count = events_cursor.rowcount
                conn.execute(
                    "UPDATE peer_connection_events SET timestamp = ? WHERE timestamp < ?",
                    (cutoff, cutoff)
                )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        if forwards_count > 0 or events_count > 0:
            self.plugin.log(
                f"Cleaned up data older than {days_to_keep} days: "
                f"{forwards_count} forwards archived, {events_count} connection events"
            )

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
