import json
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Tuple

from config import Config
from exceptions import (
    DatabaseConnectionError, DatabaseOperationError, ConcurrencyConflict
)
from models import (
    Alert, AlertObservation, AlertStatus, BoundingBox, Channel, DeliveryStatus,
    NormalizedImage, Notification, Region, RegionRiskState, RiskLevel, Severity,
    Subscription, WriteOutcome
)

logger = logging.getLogger(__name__)

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS regions (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        min_lon REAL NOT NULL,
        min_lat REAL NOT NULL,
        max_lon REAL NOT NULL,
        max_lat REAL NOT NULL,
        area_hectares REAL NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS images (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        region_id TEXT NOT NULL,
        captured_at DATETIME NOT NULL,
        vegetation_index REAL NOT NULL,
        brightness REAL,
        texture REAL,
        cloud_cover REAL,
        resolution_meters REAL,
        min_lon REAL, min_lat REAL, max_lon REAL, max_lat REAL,
        valid_pixel_fraction REAL DEFAULT 1.0,
        cover_class TEXT,
        UNIQUE (region_id, captured_at)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        code TEXT UNIQUE NOT NULL,
        region_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        severity TEXT NOT NULL,
        confidence REAL NOT NULL,
        area_hectares REAL NOT NULL,
        detected_at DATETIME NOT NULL,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        polygon TEXT,
        assigned_to TEXT,
        ndvi_change REAL,
        priority INTEGER DEFAULT 5,
        updated_at DATETIME
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS alert_observations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_id INTEGER NOT NULL REFERENCES alerts(id),
        observed_at DATETIME NOT NULL,
        severity TEXT NOT NULL,
        confidence REAL,
        area_hectares REAL,
        ndvi_change REAL,
        outcome TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT,
        phone TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS subscriptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        region_ids TEXT NOT NULL DEFAULT '[]',
        min_severity TEXT NOT NULL DEFAULT 'LOW',
        channels TEXT NOT NULL DEFAULT '["IN_APP"]',
        is_active BOOLEAN DEFAULT TRUE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        alert_id INTEGER NOT NULL REFERENCES alerts(id),
        channel TEXT NOT NULL,
        severity TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        error TEXT,
        created_at DATETIME NOT NULL,
        read_at DATETIME,
        UNIQUE (user_id, alert_id, channel, severity)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS region_risk (
        region_id TEXT PRIMARY KEY,
        risk_score REAL NOT NULL,
        risk_level TEXT NOT NULL,
        predicted_alerts INTEGER DEFAULT 0,
        factors TEXT,
        last_computed_at DATETIME NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_alerts_region_status ON alerts(region_id, status)',
    'CREATE INDEX IF NOT EXISTS idx_alerts_detected_at ON alerts(detected_at)',
    'CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)',
]

ALERT_COLUMNS = '''id, code, region_id, status, severity, confidence, area_hectares, detected_at,
                   latitude, longitude, polygon, assigned_to, ndvi_change, priority, updated_at'''


class DatabaseManager:
    """SQLite implementation of the persistence interface the pipeline consumes."""

    def __init__(self, config: Config):
        self.config = config
        # Ensure database path is absolute to avoid path resolution issues
        self.db_path = str(Path(config.storage.database_path).resolve())
        self.busy_timeout = config.storage.busy_timeout
        self.init_database()

    def init_database(self):
        """Initialize SQLite database with required tables"""
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            with self._connection() as conn:
                for statement in SCHEMA:
                    conn.execute(statement)
            logger.info("Database initialized successfully")
        except sqlite3.Error as e:
            raise DatabaseConnectionError(f"Failed to initialize database: {e}") from e
        except OSError as e:
            raise DatabaseConnectionError(f"Failed to create database directory: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self, conn: Optional[sqlite3.Connection] = None):
        """Use the caller's connection, or open and commit a short-lived one."""
        if conn is not None:
            yield conn
            return
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def write_transaction(self):
        """
        Open an immediate (write-locked) transaction.

        SQLite allows one writer at a time, so this also serializes writers in
        other processes sharing the file. Lock contention beyond the busy
        timeout surfaces as ConcurrencyConflict.
        """
        conn = self._connect()
        conn.isolation_level = None
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise ConcurrencyConflict(f"Database write lock unavailable: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.OperationalError as e:
            if "locked" in str(e):
                raise ConcurrencyConflict(f"Database write lock lost: {e}") from e
            raise DatabaseOperationError(f"Write transaction failed: {e}") from e
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Write transaction failed: {e}") from e
        finally:
            conn.close()

    # =========================================================================
    # Regions
    # =========================================================================

    def add_region(self, region: Region) -> None:
        bbox = region.bounding_box
        try:
            with self._connection() as conn:
                conn.execute('''
                    INSERT OR REPLACE INTO regions
                    (id, name, min_lon, min_lat, max_lon, max_lat, area_hectares)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                ''', (region.id, region.name, bbox.min_lon, bbox.min_lat,
                      bbox.max_lon, bbox.max_lat, region.area_hectares))
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to add region: {e}") from e

    def get_region(self, region_id: str) -> Optional[Region]:
        try:
            with self._connection() as conn:
                row = conn.execute('SELECT * FROM regions WHERE id = ?', (region_id,)).fetchone()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get region: {e}") from e
        if row is None:
            return None
        return Region(
            id=row['id'],
            name=row['name'],
            bounding_box=BoundingBox(row['min_lon'], row['min_lat'], row['max_lon'], row['max_lat']),
            area_hectares=row['area_hectares']
        )

    def list_region_ids(self) -> List[str]:
        try:
            with self._connection() as conn:
                rows = conn.execute('SELECT id FROM regions ORDER BY id').fetchall()
                return [row['id'] for row in rows]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to list regions: {e}") from e

    # =========================================================================
    # Baseline images
    # =========================================================================

    def save_baseline(self, image: NormalizedImage) -> int:
        """Store a usable normalized image as a future fallback baseline.

        A region keeps one baseline per capture time; saving the same capture
        again returns the existing row id.
        """
        bbox = image.bounding_box
        try:
            with self._connection() as conn:
                cursor = conn.execute('''
                    INSERT OR IGNORE INTO images
                    (region_id, captured_at, vegetation_index, brightness, texture, cloud_cover,
                     resolution_meters, min_lon, min_lat, max_lon, max_lat,
                     valid_pixel_fraction, cover_class)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (image.region_id, image.captured_at.isoformat(), image.vegetation_index,
                      image.brightness, image.texture, image.cloud_cover_fraction,
                      image.resolution_meters, bbox.min_lon, bbox.min_lat, bbox.max_lon,
                      bbox.max_lat, image.valid_pixel_fraction, image.cover_class))
                if cursor.rowcount:
                    return cursor.lastrowid
                row = conn.execute(
                    'SELECT id FROM images WHERE region_id = ? AND captured_at = ?',
                    (image.region_id, image.captured_at.isoformat())
                ).fetchone()
                return row[0]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to save baseline: {e}") from e

    def get_last_good_baseline(self, region_id: str, before: datetime) -> Optional[NormalizedImage]:
        """Latest stored image for the region captured strictly before the given time"""
        try:
            with self._connection() as conn:
                row = conn.execute('''
                    SELECT * FROM images
                    WHERE region_id = ? AND captured_at < ?
                    ORDER BY captured_at DESC
                    LIMIT 1
                ''', (region_id, before.isoformat())).fetchone()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get baseline: {e}") from e
        if row is None:
            return None
        return NormalizedImage(
            region_id=row['region_id'],
            captured_at=datetime.fromisoformat(row['captured_at']),
            vegetation_index=row['vegetation_index'],
            brightness=row['brightness'],
            texture=row['texture'],
            cloud_cover_fraction=row['cloud_cover'],
            resolution_meters=row['resolution_meters'],
            bounding_box=BoundingBox(row['min_lon'], row['min_lat'], row['max_lon'], row['max_lat']),
            valid_pixel_fraction=row['valid_pixel_fraction'],
            cover_class=row['cover_class']
        )

    # =========================================================================
    # Alerts
    # =========================================================================

    @staticmethod
    def _row_to_alert(row) -> Alert:
        return Alert(
            id=row['id'],
            code=row['code'],
            region_id=row['region_id'],
            status=AlertStatus(row['status']),
            severity=Severity(row['severity']),
            confidence=row['confidence'],
            area_hectares=row['area_hectares'],
            detected_at=datetime.fromisoformat(row['detected_at']),
            latitude=row['latitude'],
            longitude=row['longitude'],
            polygon=json.loads(row['polygon']) if row['polygon'] else None,
            assigned_to=row['assigned_to'],
            ndvi_change=row['ndvi_change'],
            priority=row['priority'],
            updated_at=datetime.fromisoformat(row['updated_at']) if row['updated_at'] else None
        )

    def insert_alert(self, alert: Alert, conn: Optional[sqlite3.Connection] = None) -> int:
        try:
            with self._connection(conn) as c:
                cursor = c.execute('''
                    INSERT INTO alerts
                    (code, region_id, status, severity, confidence, area_hectares, detected_at,
                     latitude, longitude, polygon, assigned_to, ndvi_change, priority, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (alert.code, alert.region_id, alert.status.value, alert.severity.value,
                      alert.confidence, alert.area_hectares, alert.detected_at.isoformat(),
                      alert.latitude, alert.longitude,
                      json.dumps(alert.polygon) if alert.polygon else None,
                      alert.assigned_to, alert.ndvi_change, alert.priority,
                      alert.updated_at.isoformat() if alert.updated_at else None))
                return cursor.lastrowid
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to insert alert: {e}") from e

    def update_alert_detection(self, alert: Alert, conn: Optional[sqlite3.Connection] = None) -> None:
        """Overwrite the detection-derived fields of an alert"""
        try:
            with self._connection(conn) as c:
                c.execute('''
                    UPDATE alerts
                    SET severity = ?, confidence = ?, area_hectares = ?, ndvi_change = ?,
                        priority = ?, updated_at = ?
                    WHERE id = ?
                ''', (alert.severity.value, alert.confidence, alert.area_hectares,
                      alert.ndvi_change, alert.priority,
                      alert.updated_at.isoformat() if alert.updated_at else None, alert.id))
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to update alert: {e}") from e

    def update_alert_status(self, alert_id: int, status: AlertStatus, assigned_to: Optional[str],
                            updated_at: datetime, conn: Optional[sqlite3.Connection] = None) -> None:
        try:
            with self._connection(conn) as c:
                c.execute('''
                    UPDATE alerts SET status = ?, assigned_to = ?, updated_at = ?
                    WHERE id = ?
                ''', (status.value, assigned_to, updated_at.isoformat(), alert_id))
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to update alert status: {e}") from e

    def get_alert(self, alert_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Alert]:
        try:
            with self._connection(conn) as c:
                row = c.execute(f'SELECT {ALERT_COLUMNS} FROM alerts WHERE id = ?', (alert_id,)).fetchone()
                return self._row_to_alert(row) if row else None
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get alert: {e}") from e

    def find_open_alerts(self, region_id: str, since: datetime,
                         conn: Optional[sqlite3.Connection] = None) -> List[Alert]:
        """PENDING/IN_PROGRESS alerts for a region last detected or updated at or after since"""
        try:
            with self._connection(conn) as c:
                rows = c.execute(f'''
                    SELECT {ALERT_COLUMNS} FROM alerts
                    WHERE region_id = ? AND status IN ('PENDING', 'IN_PROGRESS')
                      AND COALESCE(updated_at, detected_at) >= ?
                    ORDER BY detected_at DESC
                ''', (region_id, since.isoformat())).fetchall()
                return [self._row_to_alert(row) for row in rows]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to find open alerts: {e}") from e

    def get_alert_history(self, region_id: str, since: datetime, until: datetime) -> List[Alert]:
        """Alerts detected in (since, until], excluding false alarms"""
        try:
            with self._connection() as conn:
                rows = conn.execute(f'''
                    SELECT {ALERT_COLUMNS} FROM alerts
                    WHERE region_id = ? AND detected_at > ? AND detected_at <= ?
                      AND status != 'FALSE_ALARM'
                    ORDER BY detected_at
                ''', (region_id, since.isoformat(), until.isoformat())).fetchall()
                return [self._row_to_alert(row) for row in rows]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get alert history: {e}") from e

    def count_alerts(self, region_id: Optional[str] = None, open_only: bool = False) -> int:
        query = 'SELECT COUNT(*) FROM alerts WHERE 1 = 1'
        params = []
        if region_id is not None:
            query += ' AND region_id = ?'
            params.append(region_id)
        if open_only:
            query += " AND status IN ('PENDING', 'IN_PROGRESS')"
        try:
            with self._connection() as conn:
                return conn.execute(query, params).fetchone()[0]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to count alerts: {e}") from e

    def next_alert_code(self, day: datetime, conn: Optional[sqlite3.Connection] = None) -> str:
        """Next code in the ALERT-YYYYMMDD-NNNN daily sequence"""
        prefix = f"ALERT-{day:%Y%m%d}-"
        try:
            with self._connection(conn) as c:
                row = c.execute('''
                    SELECT MAX(CAST(SUBSTR(code, ?) AS INTEGER)) FROM alerts WHERE code LIKE ?
                ''', (len(prefix) + 1, prefix + '%')).fetchone()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to allocate alert code: {e}") from e
        sequence = (row[0] or 0) + 1
        return f"{prefix}{sequence:04d}"

    def insert_observation(self, observation: AlertObservation,
                           conn: Optional[sqlite3.Connection] = None) -> int:
        try:
            with self._connection(conn) as c:
                cursor = c.execute('''
                    INSERT INTO alert_observations
                    (alert_id, observed_at, severity, confidence, area_hectares, ndvi_change, outcome)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                ''', (observation.alert_id, observation.observed_at.isoformat(),
                      observation.severity.value, observation.confidence,
                      observation.area_hectares, observation.ndvi_change, observation.outcome.value))
                return cursor.lastrowid
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to insert observation: {e}") from e

    def get_observations(self, alert_id: int) -> List[AlertObservation]:
        try:
            with self._connection() as conn:
                rows = conn.execute('''
                    SELECT * FROM alert_observations WHERE alert_id = ? ORDER BY id
                ''', (alert_id,)).fetchall()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get observations: {e}") from e
        return [
            AlertObservation(
                id=row['id'],
                alert_id=row['alert_id'],
                observed_at=datetime.fromisoformat(row['observed_at']),
                severity=Severity(row['severity']),
                confidence=row['confidence'],
                area_hectares=row['area_hectares'],
                ndvi_change=row['ndvi_change'],
                outcome=WriteOutcome(row['outcome'])
            ) for row in rows
        ]

    # =========================================================================
    # Users and subscriptions
    # =========================================================================

    def add_user(self, user_id: str, email: Optional[str] = None, phone: Optional[str] = None) -> None:
        try:
            with self._connection() as conn:
                conn.execute('INSERT OR REPLACE INTO users (id, email, phone) VALUES (?, ?, ?)',
                             (user_id, email, phone))
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to add user: {e}") from e

    def get_user_contact(self, user_id: str) -> dict:
        """Contact details for a user; empty dict when unknown"""
        try:
            with self._connection() as conn:
                row = conn.execute('SELECT email, phone FROM users WHERE id = ?', (user_id,)).fetchone()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get user contact: {e}") from e
        return {'email': row['email'], 'phone': row['phone']} if row else {}

    def add_subscription(self, subscription: Subscription) -> int:
        try:
            with self._connection() as conn:
                cursor = conn.execute('''
                    INSERT INTO subscriptions (user_id, region_ids, min_severity, channels, is_active)
                    VALUES (?, ?, ?, ?, ?)
                ''', (subscription.user_id, json.dumps(list(subscription.region_ids)),
                      subscription.min_severity.value,
                      json.dumps([channel.value for channel in subscription.channels]),
                      subscription.is_active))
                subscription.id = cursor.lastrowid
                return subscription.id
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to add subscription: {e}") from e

    def get_active_subscriptions(self) -> List[Subscription]:
        try:
            with self._connection() as conn:
                rows = conn.execute('SELECT * FROM subscriptions WHERE is_active = 1 ORDER BY id').fetchall()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get subscriptions: {e}") from e
        return [
            Subscription(
                id=row['id'],
                user_id=row['user_id'],
                region_ids=json.loads(row['region_ids']),
                min_severity=Severity(row['min_severity']),
                channels=[Channel(value) for value in json.loads(row['channels'])],
                is_active=bool(row['is_active'])
            ) for row in rows
        ]

    # =========================================================================
    # Notifications
    # =========================================================================

    @staticmethod
    def _row_to_notification(row) -> Notification:
        return Notification(
            id=row['id'],
            user_id=row['user_id'],
            alert_id=row['alert_id'],
            channel=Channel(row['channel']),
            severity=Severity(row['severity']),
            status=DeliveryStatus(row['status']),
            error=row['error'],
            created_at=datetime.fromisoformat(row['created_at']),
            read_at=datetime.fromisoformat(row['read_at']) if row['read_at'] else None
        )

    def create_notification_if_absent(self, user_id: str, alert_id: int, channel: Channel,
                                      severity: Severity) -> Tuple[Notification, bool]:
        """
        Insert a notification unless one exists for (user, alert, channel, severity).

        Returns the stored record and whether it was created by this call.
        """
        try:
            with self._connection() as conn:
                cursor = conn.execute('''
                    INSERT OR IGNORE INTO notifications
                    (user_id, alert_id, channel, severity, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                ''', (user_id, alert_id, channel.value, severity.value,
                      DeliveryStatus.PENDING.value, datetime.now().isoformat()))
                created = cursor.rowcount == 1
                row = conn.execute('''
                    SELECT * FROM notifications
                    WHERE user_id = ? AND alert_id = ? AND channel = ? AND severity = ?
                ''', (user_id, alert_id, channel.value, severity.value)).fetchone()
                return self._row_to_notification(row), created
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to create notification: {e}") from e

    def update_notification_status(self, notification_id: int, status: DeliveryStatus,
                                   error: Optional[str] = None) -> None:
        try:
            with self._connection() as conn:
                conn.execute('UPDATE notifications SET status = ?, error = ? WHERE id = ?',
                             (status.value, error, notification_id))
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to update notification: {e}") from e

    def mark_notification_read(self, notification_id: int, user_id: str) -> bool:
        """Set read_at once; returns False if not found or already read"""
        try:
            with self._connection() as conn:
                cursor = conn.execute('''
                    UPDATE notifications SET read_at = ?
                    WHERE id = ? AND user_id = ? AND read_at IS NULL
                ''', (datetime.now().isoformat(), notification_id, user_id))
                return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to mark notification read: {e}") from e

    def get_notifications(self, user_id: Optional[str] = None, alert_id: Optional[int] = None,
                          unread_only: bool = False) -> List[Notification]:
        query = 'SELECT * FROM notifications WHERE 1 = 1'
        params = []
        if user_id is not None:
            query += ' AND user_id = ?'
            params.append(user_id)
        if alert_id is not None:
            query += ' AND alert_id = ?'
            params.append(alert_id)
        if unread_only:
            query += ' AND read_at IS NULL'
        query += ' ORDER BY created_at DESC, id DESC'
        try:
            with self._connection() as conn:
                return [self._row_to_notification(row) for row in conn.execute(query, params).fetchall()]
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get notifications: {e}") from e

    # =========================================================================
    # Regional risk
    # =========================================================================

    def save_risk_state(self, state: RegionRiskState) -> None:
        """Overwrite the stored risk state for a region"""
        try:
            with self._connection() as conn:
                conn.execute('''
                    INSERT OR REPLACE INTO region_risk
                    (region_id, risk_score, risk_level, predicted_alerts, factors, last_computed_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                ''', (state.region_id, state.risk_score, state.risk_level.value,
                      state.predicted_alerts, json.dumps(state.factors),
                      state.last_computed_at.isoformat()))
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to save risk state: {e}") from e

    def get_risk_states(self) -> List[RegionRiskState]:
        try:
            with self._connection() as conn:
                rows = conn.execute('SELECT * FROM region_risk').fetchall()
        except sqlite3.Error as e:
            raise DatabaseOperationError(f"Failed to get risk states: {e}") from e
        return [
            RegionRiskState(
                region_id=row['region_id'],
                risk_score=row['risk_score'],
                risk_level=RiskLevel(row['risk_level']),
                last_computed_at=datetime.fromisoformat(row['last_computed_at']),
                predicted_alerts=row['predicted_alerts'],
                factors=json.loads(row['factors']) if row['factors'] else {}
            ) for row in rows
        ]
