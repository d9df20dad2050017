"""
Local SQLite Database

Holds the meter/register catalog (written by the external sync agent) and
the collected meter readings awaiting upload.

Readings are inserted per meter in a single transaction and start out
unsynchronized; the upload agent marks them synchronized after delivery.
"""

import sqlite3
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Any, Iterable
from contextlib import contextmanager

from meter_collector.common.exceptions import WriteError
from meter_collector.common.logging_setup import get_service_logger
from meter_collector.common.models import Reading

logger = get_service_logger("storage.local_db")

# Default database path
DEFAULT_DB_PATH = Path("/opt/meter-collector/data/collector.db")


class LocalDatabase:
    """
    SQLite database for local data storage.

    Features:
    - Catalog tables: meter, register, device_register
    - Atomic per-meter reading inserts
    - Sync tracking (is_synchronized / synced_at columns)
    - Data retention cleanup
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema"""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS meter (
                    meter_id TEXT PRIMARY KEY,
                    name TEXT,
                    device_id INTEGER,
                    ip TEXT,
                    port INTEGER,
                    active INTEGER DEFAULT 1,
                    tenant_id TEXT,
                    updated_at TEXT DEFAULT (datetime('now'))
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS register (
                    register_id INTEGER PRIMARY KEY,
                    name TEXT,
                    register INTEGER,
                    field_name TEXT,
                    unit TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS device_register (
                    device_register_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id INTEGER NOT NULL,
                    register_id INTEGER NOT NULL,
                    created_at TEXT DEFAULT (datetime('now')),
                    UNIQUE(device_id, register_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS meter_reading (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    meter_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    data_point TEXT NOT NULL,
                    value REAL NOT NULL,
                    unit TEXT,

                    -- Sync tracking
                    is_synchronized INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    synced_at TEXT,
                    created_at TEXT DEFAULT (datetime('now'))
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_meter_reading_meter_id
                ON meter_reading(meter_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_meter_reading_unsynced
                ON meter_reading(is_synchronized) WHERE is_synchronized = 0
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_device_register_device_id
                ON device_register(device_id)
            """)

            conn.commit()

        logger.info(f"Database initialized: {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager"""
        # timeout=10.0: fail fast on lock contention instead of blocking forever
        conn = sqlite3.connect(str(self.db_path), timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Catalog (read by the configuration store)
    # ------------------------------------------------------------------

    def get_active_meters(self, tenant_id: str | None = None) -> list[dict[str, Any]]:
        """Active meters with their device id and address"""
        query = "SELECT meter_id, name, device_id, ip, port FROM meter WHERE active = 1"
        params: tuple = ()
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params = (tenant_id,)
        query += " ORDER BY name, meter_id"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [dict(row) for row in rows]

    def get_registers(self) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT register_id, name, register, field_name, unit FROM register ORDER BY register_id"
            ).fetchall()
            return [dict(row) for row in rows]

    def get_device_registers(self) -> list[dict[str, Any]]:
        """Device-register associations joined with register details"""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT dr.device_id, dr.register_id, r.register, r.field_name, r.unit
                FROM device_register dr
                LEFT JOIN register r ON r.register_id = dr.register_id
                ORDER BY dr.device_id, dr.device_register_id
            """).fetchall()
            return [dict(row) for row in rows]

    def upsert_meter(
        self,
        meter_id: str,
        device_id: int | None,
        ip: str | None,
        port: int | None = None,
        name: str = "",
        active: bool = True,
        tenant_id: str | None = None,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO meter (meter_id, name, device_id, ip, port, active, tenant_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(meter_id) DO UPDATE SET
                    name = excluded.name,
                    device_id = excluded.device_id,
                    ip = excluded.ip,
                    port = excluded.port,
                    active = excluded.active,
                    tenant_id = excluded.tenant_id,
                    updated_at = datetime('now')
            """, (meter_id, name, device_id, ip, port, int(active), tenant_id))

    def upsert_register(
        self,
        register_id: int,
        register: int,
        field_name: str,
        unit: str | None,
        name: str = "",
    ) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO register (register_id, name, register, field_name, unit)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(register_id) DO UPDATE SET
                    name = excluded.name,
                    register = excluded.register,
                    field_name = excluded.field_name,
                    unit = excluded.unit
            """, (register_id, name or field_name, register, field_name, unit))

    def link_device_register(self, device_id: int, register_id: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO device_register (device_id, register_id) VALUES (?, ?)",
                (device_id, register_id),
            )

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def insert_readings(self, readings: list[Reading]) -> int:
        """
        Insert readings in one transaction.

        Either every row is stored (unsynchronized) or none is.

        Raises:
            WriteError: the transaction was rolled back
        """
        if not readings:
            return 0

        rows = [
            (
                r.meter_id,
                r.timestamp.isoformat(),
                r.data_point,
                float(r.value),
                r.unit,
            )
            for r in readings
        ]

        with self._get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.executemany("""
                    INSERT INTO meter_reading (
                        meter_id, timestamp, data_point, value, unit,
                        is_synchronized, retry_count
                    ) VALUES (?, ?, ?, ?, ?, 0, 0)
                """, rows)
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.error(
                    f"Reading insert rolled back ({len(rows)} rows): {e}",
                    extra={"meter_id": readings[0].meter_id, "count": len(rows)},
                )
                raise WriteError(str(e), meter_id=readings[0].meter_id, count=len(rows)) from e

        logger.debug(f"Inserted {len(rows)} readings for meter {readings[0].meter_id}")
        return len(rows)

    def get_unsynchronized_readings(self, limit: int = 1000) -> list[dict[str, Any]]:
        """Oldest-first batch of readings awaiting upload"""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT id, meter_id, timestamp, data_point, value, unit, retry_count
                FROM meter_reading
                WHERE is_synchronized = 0
                ORDER BY timestamp ASC, id ASC
                LIMIT ?
            """, (limit,)).fetchall()
            return [dict(row) for row in rows]

    def count_unsynchronized(self) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM meter_reading WHERE is_synchronized = 0"
            ).fetchone()[0]

    def mark_readings_synchronized(self, reading_ids: Iterable[int]) -> int:
        ids = list(reading_ids)
        if not ids:
            return 0

        now = datetime.now(timezone.utc).isoformat()
        placeholders = ",".join("?" * len(ids))
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE meter_reading SET is_synchronized = 1, synced_at = ? WHERE id IN ({placeholders})",
                [now, *ids],
            )
            return cursor.rowcount

    def increment_retry_count(self, reading_ids: Iterable[int]) -> int:
        ids = list(reading_ids)
        if not ids:
            return 0

        placeholders = ",".join("?" * len(ids))
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE meter_reading SET retry_count = retry_count + 1 WHERE id IN ({placeholders})",
                ids,
            )
            return cursor.rowcount

    def delete_synchronized_readings(self, older_than_days: int = 7) -> int:
        """Retention cleanup for readings already uploaded"""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM meter_reading WHERE is_synchronized = 1 AND timestamp < ?",
                (cutoff,),
            )
            deleted = cursor.rowcount

        if deleted:
            logger.info(f"Retention cleanup removed {deleted} synchronized readings")
        return deleted

    def get_readings_for_meter(self, meter_id: str) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT id, meter_id, timestamp, data_point, value, unit, is_synchronized, retry_count
                FROM meter_reading
                WHERE meter_id = ?
                ORDER BY id
            """, (meter_id,)).fetchall()
            return [dict(row) for row in rows]
