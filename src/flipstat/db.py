# src/flipstat/db.py
"""SQLite database operations for FlipStat."""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from flipstat.models import Address, RealEstateObject, Segment, Subsegment, parse_timestamp

SNAPSHOT_SECTIONS = ('map_areas', 'addresses', 'objects', 'segments', 'subsegments', 'evaluations')


def _iso(value) -> Optional[str]:
    ts = parse_timestamp(value)
    return ts.isoformat() if ts else None


def _decode_filters(row: dict) -> dict:
    row = dict(row)
    row['filters'] = json.loads(row['filters']) if row.get('filters') else {}
    return row


class Database:
    """SQLite database wrapper with schema management."""

    def __init__(self, db_path: str = "data/flipstat.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensure connection is closed."""
        self.close()
        return False

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def query(self, sql: str, params: tuple = ()) -> List[dict]:
        """Execute query and return results as list of dicts."""
        conn = self._get_conn()
        cursor = conn.execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    def execute(self, sql: str, params: tuple = ()) -> int:
        """Execute SQL and return rowcount."""
        conn = self._get_conn()
        cursor = conn.execute(sql, params)
        conn.commit()
        return cursor.rowcount

    def list_tables(self) -> List[str]:
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        return [r['name'] for r in rows]

    def count(self, table: str) -> int:
        """Row count of one of our tables."""
        if table not in self.list_tables():
            raise ValueError(f"Unknown table: {table}")
        return self.query(f"SELECT COUNT(*) as n FROM {table}")[0]['n']

    def init_schema(self):
        """Create all tables if they don't exist."""
        conn = self._get_conn()

        # 1. map_areas - Named polygons objects are grouped by
        conn.execute("""
            CREATE TABLE IF NOT EXISTS map_areas (
                id TEXT PRIMARY KEY,
                name TEXT
            )
        """)

        # 2. addresses - Buildings with structural attributes
        conn.execute("""
            CREATE TABLE IF NOT EXISTS addresses (
                id TEXT PRIMARY KEY,
                map_area_id TEXT,
                latitude REAL,
                longitude REAL,
                type TEXT,
                build_year INTEGER,
                floors_count INTEGER,
                wall_material_id TEXT,
                ceiling_material_id TEXT,
                house_series_id TEXT,
                house_class_id TEXT,
                gas_supply BOOLEAN
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_addresses_area
            ON addresses(map_area_id)
        """)

        # 3. real_estate_objects - Deduplicated flats
        conn.execute("""
            CREATE TABLE IF NOT EXISTS real_estate_objects (
                id TEXT PRIMARY KEY,
                status TEXT CHECK(status IN ('active', 'archive')) NOT NULL,
                address_id TEXT,
                current_price INTEGER DEFAULT 0,
                area_total REAL DEFAULT 0,
                created TIMESTAMP,
                updated TIMESTAMP,
                property_type TEXT,
                rooms INTEGER,
                floor INTEGER,
                floors_total INTEGER
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_objects_address
            ON real_estate_objects(address_id, status)
        """)

        # 4. segments - Address-level partitions of an area
        conn.execute("""
            CREATE TABLE IF NOT EXISTS segments (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                map_area_id TEXT,
                filters TEXT,
                position INTEGER DEFAULT 0
            )
        """)

        # 5. subsegments - Object-level partitions of a segment
        conn.execute("""
            CREATE TABLE IF NOT EXISTS subsegments (
                id TEXT PRIMARY KEY,
                segment_id TEXT,
                name TEXT NOT NULL,
                filters TEXT,
                position INTEGER DEFAULT 0
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_subsegments_segment
            ON subsegments(segment_id, position)
        """)

        # 6. evaluations - Renovation-quality tag per object
        conn.execute("""
            CREATE TABLE IF NOT EXISTS evaluations (
                object_id TEXT PRIMARY KEY,
                tag TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # 7. run_log - Command execution tracking
        conn.execute("""
            CREATE TABLE IF NOT EXISTS run_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL UNIQUE,
                run_type TEXT NOT NULL,
                started_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP,
                duration_seconds REAL,
                status TEXT CHECK(status IN ('running', 'success', 'failed', 'partial')) NOT NULL,
                error_message TEXT,
                records_processed INTEGER,
                trigger TEXT
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_run_log_status
            ON run_log(status, started_at)
        """)

        conn.commit()
        self._migrate_schema()

    def _migrate_schema(self):
        """Apply incremental schema migrations for existing databases."""
        conn = self._get_conn()

        # Ordering columns arrived after the first snapshots were imported
        for table in ('segments', 'subsegments'):
            cursor = conn.execute(f"PRAGMA table_info({table})")
            columns = {row[1] for row in cursor.fetchall()}
            if 'position' not in columns:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN position INTEGER DEFAULT 0")

        conn.commit()

    # -- snapshot import ----------------------------------------------------

    def import_snapshot(self, snapshot: Dict[str, List[dict]]) -> Dict[str, int]:
        """
        Load a snapshot (map_areas, addresses, objects, segments,
        subsegments, evaluations) into the database, replacing rows with
        the same id.

        Returns:
            Row count per section
        """
        unknown = set(snapshot) - set(SNAPSHOT_SECTIONS)
        if unknown:
            raise ValueError(f"Unknown snapshot sections: {', '.join(sorted(unknown))}")

        conn = self._get_conn()
        counts = {}
        try:
            counts['map_areas'] = self._insert_many(conn, """
                INSERT OR REPLACE INTO map_areas (id, name) VALUES (:id, :name)
            """, (
                {'id': str(a['id']), 'name': a.get('name')}
                for a in snapshot.get('map_areas', [])
            ))

            counts['addresses'] = self._insert_many(conn, """
                INSERT OR REPLACE INTO addresses (
                    id, map_area_id, latitude, longitude, type, build_year,
                    floors_count, wall_material_id, ceiling_material_id,
                    house_series_id, house_class_id, gas_supply
                ) VALUES (
                    :id, :map_area_id, :latitude, :longitude, :type, :build_year,
                    :floors_count, :wall_material_id, :ceiling_material_id,
                    :house_series_id, :house_class_id, :gas_supply
                )
            """, (
                Address.from_dict(a).__dict__
                for a in snapshot.get('addresses', [])
            ))

            counts['objects'] = self._insert_many(conn, """
                INSERT OR REPLACE INTO real_estate_objects (
                    id, status, address_id, current_price, area_total,
                    created, updated, property_type, rooms, floor, floors_total
                ) VALUES (
                    :id, :status, :address_id, :current_price, :area_total,
                    :created, :updated, :property_type, :rooms, :floor, :floors_total
                )
            """, (
                self._object_row(o) for o in snapshot.get('objects', [])
            ))

            counts['segments'] = self._insert_many(conn, """
                INSERT OR REPLACE INTO segments (id, name, map_area_id, filters, position)
                VALUES (:id, :name, :map_area_id, :filters, :position)
            """, (
                {
                    'id': str(s['id']),
                    'name': s.get('name') or str(s['id']),
                    'map_area_id': str(s['map_area_id']) if s.get('map_area_id') is not None else None,
                    'filters': json.dumps(s.get('filters') or {}),
                    'position': position,
                }
                for position, s in enumerate(snapshot.get('segments', []))
            ))

            counts['subsegments'] = self._insert_many(conn, """
                INSERT OR REPLACE INTO subsegments (id, segment_id, name, filters, position)
                VALUES (:id, :segment_id, :name, :filters, :position)
            """, (
                {
                    'id': str(s['id']),
                    'segment_id': str(s['segment_id']) if s.get('segment_id') is not None else None,
                    'name': s.get('name') or str(s['id']),
                    'filters': json.dumps(s.get('filters') or {}),
                    'position': position,
                }
                for position, s in enumerate(snapshot.get('subsegments', []))
            ))

            counts['evaluations'] = self._insert_many(conn, """
                INSERT OR REPLACE INTO evaluations (object_id, tag) VALUES (:object_id, :tag)
            """, (
                {'object_id': str(object_id), 'tag': tag}
                for object_id, tag in (snapshot.get('evaluations') or {}).items()
            ))
        except Exception:
            conn.rollback()
            raise

        conn.commit()
        return counts

    @staticmethod
    def _insert_many(conn: sqlite3.Connection, sql: str, rows: Iterable[dict]) -> int:
        inserted = 0
        for row in rows:
            conn.execute(sql, row)
            inserted += 1
        return inserted

    @staticmethod
    def _object_row(data: dict) -> dict:
        row = RealEstateObject.from_dict(data).__dict__.copy()
        row['created'] = _iso(row['created'])
        row['updated'] = _iso(row['updated'])
        return row

    # -- queries ------------------------------------------------------------

    def get_map_area_ids(self) -> set:
        return {r['id'] for r in self.query("SELECT id FROM map_areas")}

    def get_segments_by_area(self, map_area_id: str) -> List[Segment]:
        """Segments of one area, in import order."""
        rows = self.query(
            "SELECT * FROM segments WHERE map_area_id = ? ORDER BY position, id",
            (map_area_id,)
        )
        return [Segment.from_dict(_decode_filters(r)) for r in rows]

    def get_segment(self, segment_id: str) -> Optional[Segment]:
        rows = self.query("SELECT * FROM segments WHERE id = ?", (segment_id,))
        return Segment.from_dict(_decode_filters(rows[0])) if rows else None

    def get_subsegments_by_segment(self, segment_id: str) -> List[Subsegment]:
        """Subsegments of one segment, in import order."""
        rows = self.query(
            "SELECT * FROM subsegments WHERE segment_id = ? ORDER BY position, id",
            (segment_id,)
        )
        return [Subsegment.from_dict(_decode_filters(r)) for r in rows]

    def get_subsegment(self, subsegment_id: str) -> Optional[Subsegment]:
        rows = self.query("SELECT * FROM subsegments WHERE id = ?", (subsegment_id,))
        return Subsegment.from_dict(_decode_filters(rows[0])) if rows else None

    def get_addresses_in_area(self, map_area_id: str) -> List[Address]:
        rows = self.query(
            "SELECT * FROM addresses WHERE map_area_id = ? ORDER BY id",
            (map_area_id,)
        )
        return [self._address(r) for r in rows]

    def get_addresses_by_ids(self, address_ids: Iterable[str]) -> List[Address]:
        """Addresses by id, whatever area they are in."""
        ids = sorted(set(address_ids))
        if not ids:
            return []
        placeholders = ','.join('?' * len(ids))
        rows = self.query(
            f"SELECT * FROM addresses WHERE id IN ({placeholders}) ORDER BY id",
            tuple(ids)
        )
        return [self._address(r) for r in rows]

    @staticmethod
    def _address(row: dict) -> Address:
        if row.get('gas_supply') is not None:
            row = dict(row, gas_supply=bool(row['gas_supply']))
        return Address.from_dict(row)

    def get_object_by_id(self, object_id: str) -> Optional[RealEstateObject]:
        rows = self.query("SELECT * FROM real_estate_objects WHERE id = ?", (object_id,))
        return RealEstateObject.from_dict(rows[0]) if rows else None

    def get_objects_in_area(self, map_area_id: str) -> List[RealEstateObject]:
        """Objects whose address lies in the area."""
        rows = self.query(
            """
            SELECT o.* FROM real_estate_objects o
            JOIN addresses a ON a.id = o.address_id
            WHERE a.map_area_id = ?
            ORDER BY o.id
            """,
            (map_area_id,)
        )
        return [RealEstateObject.from_dict(r) for r in rows]

    def get_objects_by_addresses(self, address_ids: Iterable[str]) -> List[RealEstateObject]:
        ids = sorted(set(address_ids))
        if not ids:
            return []
        placeholders = ','.join('?' * len(ids))
        rows = self.query(
            f"SELECT * FROM real_estate_objects WHERE address_id IN ({placeholders}) ORDER BY id",
            tuple(ids)
        )
        return [RealEstateObject.from_dict(r) for r in rows]

    # -- evaluations --------------------------------------------------------

    def get_evaluation(self, object_id: str) -> Optional[str]:
        rows = self.query("SELECT tag FROM evaluations WHERE object_id = ?", (object_id,))
        return rows[0]['tag'] if rows else None

    def put_evaluation(self, object_id: str, tag: Optional[str]) -> None:
        """Set an object's tag; None clears it."""
        if tag is None:
            self.execute("DELETE FROM evaluations WHERE object_id = ?", (object_id,))
            return
        self.execute(
            """
            INSERT INTO evaluations (object_id, tag, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(object_id) DO UPDATE SET tag = excluded.tag, updated_at = excluded.updated_at
            """,
            (object_id, tag, datetime.now(timezone.utc).isoformat())
        )

    def load_evaluations(self) -> Dict[str, str]:
        """All object_id -> tag pairs."""
        return {r['object_id']: r['tag'] for r in self.query("SELECT object_id, tag FROM evaluations")}

    # -- run log ------------------------------------------------------------

    def start_run(self, run_type: str, trigger: str) -> str:
        """Start a new run and return the run_id."""
        run_id = str(uuid.uuid4())[:8]
        now = datetime.now(timezone.utc).isoformat()

        self.execute(
            """
            INSERT INTO run_log (run_id, run_type, started_at, status, trigger)
            VALUES (?, ?, ?, 'running', ?)
            """,
            (run_id, run_type, now, trigger)
        )
        return run_id

    def complete_run(
        self,
        run_id: str,
        status: str,
        error_message: str = None,
        records_processed: int = None,
    ):
        """Complete a run with final status and stats."""
        now = datetime.now(timezone.utc)
        started = self.query(
            "SELECT started_at FROM run_log WHERE run_id = ?", (run_id,)
        )
        if started:
            started_at = datetime.fromisoformat(started[0]['started_at'])
            duration = (now - started_at).total_seconds()
        else:
            duration = None

        self.execute(
            """
            UPDATE run_log SET
                completed_at = ?,
                duration_seconds = ?,
                status = ?,
                error_message = ?,
                records_processed = ?
            WHERE run_id = ?
            """,
            (now.isoformat(), duration, status, error_message, records_processed, run_id)
        )

    def get_last_successful_run(self, run_type: str = None) -> Optional[dict]:
        """Get most recent successful run, optionally filtered by type."""
        sql = "SELECT * FROM run_log WHERE status = 'success'"
        params: tuple = ()
        if run_type:
            sql += " AND run_type = ?"
            params = (run_type,)
        rows = self.query(sql + " ORDER BY completed_at DESC LIMIT 1", params)
        return rows[0] if rows else None
