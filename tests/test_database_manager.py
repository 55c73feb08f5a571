"""
Unit tests for database management system.
"""

import pytest
import sqlite3
import tempfile
import shutil
from pathlib import Path
from datetime import datetime, timedelta

import sys
sys.path.append('src')

from database_manager import DatabaseManager
from config import Config
from exceptions import ConcurrencyConflict, DatabaseConnectionError, DatabaseOperationError
from models import (
    Alert, AlertObservation, AlertStatus, BoundingBox, Channel, DeliveryStatus,
    NormalizedImage, Region, RegionRiskState, RiskLevel, Severity, Subscription, WriteOutcome
)


BBOX = BoundingBox(-60.01, -3.01, -60.0, -3.0)


def make_alert(code, detected_at, region_id="amazon-1", status=AlertStatus.PENDING,
               severity=Severity.HIGH, updated_at=None):
    return Alert(
        id=None,
        code=code,
        region_id=region_id,
        severity=severity,
        confidence=0.8,
        area_hectares=12.5,
        detected_at=detected_at,
        latitude=-3.005,
        longitude=-60.005,
        ndvi_change=-0.35,
        status=status,
        polygon=BBOX.to_polygon(),
        updated_at=updated_at,
    )


class TestDatabaseManager:
    """Test database management functionality."""

    def setup_method(self):
        """Set up test database."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "test.db"
        self.config = Config.create_test_config()
        self.config.storage.database_path = self.db_path
        self.db = DatabaseManager(self.config)

    def teardown_method(self):
        """Clean up test database."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_database_initialization(self):
        """Test database and table creation."""
        assert self.db_path.exists()

        with sqlite3.connect(self.db_path) as conn:
            tables = {row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            )}
        for table in ("regions", "images", "alerts", "alert_observations", "users",
                      "subscriptions", "notifications", "region_risk"):
            assert table in tables

    def test_initialization_is_idempotent(self):
        DatabaseManager(self.config)
        DatabaseManager(self.config)

    def test_unwritable_location(self):
        blocker = Path(self.temp_dir) / "blocker"
        blocker.write_text("not a directory")
        self.config.storage.database_path = blocker / "nested" / "test.db"

        with pytest.raises(DatabaseConnectionError):
            DatabaseManager(self.config)

    def test_regions(self):
        self.db.add_region(Region(id="amazon-1", name="Amazon 1", bounding_box=BBOX, area_hectares=120.0))
        self.db.add_region(Region(id="amazon-0", name="Amazon 0", bounding_box=BBOX, area_hectares=80.0))

        region = self.db.get_region("amazon-1")
        assert region.name == "Amazon 1"
        assert region.bounding_box == BBOX
        assert self.db.get_region("missing") is None
        assert self.db.list_region_ids() == ["amazon-0", "amazon-1"]

    def test_last_good_baseline(self):
        for month, index in [(1, 0.7), (2, 0.68), (4, 0.3)]:
            self.db.save_baseline(NormalizedImage(
                region_id="amazon-1", captured_at=datetime(2024, month, 1),
                vegetation_index=index, brightness=0.2, texture=0.1,
                cloud_cover_fraction=0.1, resolution_meters=10.0, bounding_box=BBOX
            ))

        baseline = self.db.get_last_good_baseline("amazon-1", datetime(2024, 3, 1))

        assert baseline.captured_at == datetime(2024, 2, 1)
        assert baseline.vegetation_index == pytest.approx(0.68)
        assert baseline.bounding_box == BBOX
        assert self.db.get_last_good_baseline("amazon-1", datetime(2024, 1, 1)) is None
        assert self.db.get_last_good_baseline("amazon-2", datetime(2024, 5, 1)) is None

    def test_same_capture_saved_once(self):
        image = NormalizedImage(
            region_id="amazon-1", captured_at=datetime(2024, 3, 1),
            vegetation_index=0.7, brightness=0.2, texture=0.1,
            cloud_cover_fraction=0.1, resolution_meters=10.0, bounding_box=BBOX
        )

        first_id = self.db.save_baseline(image)
        second_id = self.db.save_baseline(image)

        assert second_id == first_id
        with sqlite3.connect(self.db_path) as conn:
            count = conn.execute("SELECT COUNT(*) FROM images WHERE region_id = ?",
                                 ("amazon-1",)).fetchone()[0]
        assert count == 1

    def test_alert_roundtrip(self):
        alert_id = self.db.insert_alert(make_alert("ALERT-20240301-0001", datetime(2024, 3, 1, 10)))

        alert = self.db.get_alert(alert_id)

        assert alert.code == "ALERT-20240301-0001"
        assert alert.severity == Severity.HIGH
        assert alert.status == AlertStatus.PENDING
        assert alert.polygon == BBOX.to_polygon()
        assert alert.updated_at is None
        assert self.db.get_alert(9999) is None

    def test_alert_code_unique(self):
        self.db.insert_alert(make_alert("ALERT-20240301-0001", datetime(2024, 3, 1)))
        with pytest.raises(DatabaseOperationError, match="UNIQUE"):
            self.db.insert_alert(make_alert("ALERT-20240301-0001", datetime(2024, 3, 1)))

    def test_next_alert_code(self):
        day = datetime(2024, 3, 1)
        assert self.db.next_alert_code(day) == "ALERT-20240301-0001"

        self.db.insert_alert(make_alert("ALERT-20240301-0001", day))
        self.db.insert_alert(make_alert("ALERT-20240301-0002", day))
        self.db.insert_alert(make_alert("ALERT-20240302-0001", day + timedelta(days=1)))

        assert self.db.next_alert_code(day) == "ALERT-20240301-0003"
        assert self.db.next_alert_code(day + timedelta(days=1)) == "ALERT-20240302-0002"

    def test_find_open_alerts(self):
        now = datetime(2024, 3, 20)
        self.db.insert_alert(make_alert("A-1", now - timedelta(days=2)))
        self.db.insert_alert(make_alert("A-2", now - timedelta(days=30)))
        self.db.insert_alert(make_alert("A-3", now - timedelta(days=1), status=AlertStatus.RESOLVED))
        self.db.insert_alert(make_alert("A-4", now - timedelta(days=1), region_id="amazon-2"))
        # Old detection kept alive by a recent update
        self.db.insert_alert(make_alert("A-5", now - timedelta(days=40),
                                        updated_at=now - timedelta(days=3)))

        found = self.db.find_open_alerts("amazon-1", now - timedelta(days=14))

        assert {a.code for a in found} == {"A-1", "A-5"}

    def test_alert_history_excludes_false_alarms(self):
        until = datetime(2024, 3, 31)
        self.db.insert_alert(make_alert("A-1", datetime(2024, 3, 1)))
        self.db.insert_alert(make_alert("A-2", datetime(2024, 3, 2), status=AlertStatus.FALSE_ALARM))
        self.db.insert_alert(make_alert("A-3", datetime(2024, 3, 3), status=AlertStatus.RESOLVED))
        self.db.insert_alert(make_alert("A-4", datetime(2023, 1, 1)))

        history = self.db.get_alert_history("amazon-1", until - timedelta(days=90), until)

        assert [a.code for a in history] == ["A-1", "A-3"]

    def test_update_alert_status(self):
        alert_id = self.db.insert_alert(make_alert("A-1", datetime(2024, 3, 1)))
        self.db.update_alert_status(alert_id, AlertStatus.IN_PROGRESS, "ranger-7", datetime(2024, 3, 2))

        alert = self.db.get_alert(alert_id)
        assert alert.status == AlertStatus.IN_PROGRESS
        assert alert.assigned_to == "ranger-7"
        assert alert.updated_at == datetime(2024, 3, 2)
        assert self.db.count_alerts("amazon-1", open_only=True) == 1

    def test_observations(self):
        alert_id = self.db.insert_alert(make_alert("A-1", datetime(2024, 3, 1)))
        self.db.insert_observation(AlertObservation(
            id=None, alert_id=alert_id, observed_at=datetime(2024, 3, 1),
            severity=Severity.HIGH, confidence=0.8, area_hectares=12.5,
            ndvi_change=-0.35, outcome=WriteOutcome.CREATED
        ))

        observations = self.db.get_observations(alert_id)

        assert len(observations) == 1
        assert observations[0].outcome == WriteOutcome.CREATED

    def test_subscriptions(self):
        self.db.add_user("user-1", email="a@example.org", phone="+15550001111")
        subscription = Subscription(id=None, user_id="user-1", region_ids=["amazon-1"],
                                    min_severity=Severity.HIGH,
                                    channels=[Channel.EMAIL, Channel.SMS])
        self.db.add_subscription(subscription)
        self.db.add_subscription(Subscription(id=None, user_id="user-2", is_active=False))

        active = self.db.get_active_subscriptions()

        assert subscription.id is not None
        assert len(active) == 1
        assert active[0].channels == [Channel.EMAIL, Channel.SMS]
        assert active[0].min_severity == Severity.HIGH
        assert self.db.get_user_contact("user-1") == {'email': "a@example.org", 'phone': "+15550001111"}
        assert self.db.get_user_contact("nobody") == {}

    def test_notification_idempotence(self):
        alert_id = self.db.insert_alert(make_alert("A-1", datetime(2024, 3, 1)))

        first, created = self.db.create_notification_if_absent("user-1", alert_id, Channel.EMAIL, Severity.HIGH)
        again, created_again = self.db.create_notification_if_absent("user-1", alert_id, Channel.EMAIL, Severity.HIGH)
        escalated, created_escalated = self.db.create_notification_if_absent(
            "user-1", alert_id, Channel.EMAIL, Severity.CRITICAL
        )

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert created_escalated is True
        assert len(self.db.get_notifications(user_id="user-1")) == 2

    def test_notification_status_and_read(self):
        alert_id = self.db.insert_alert(make_alert("A-1", datetime(2024, 3, 1)))
        notification, _ = self.db.create_notification_if_absent("user-1", alert_id, Channel.IN_APP, Severity.HIGH)

        self.db.update_notification_status(notification.id, DeliveryStatus.FAILED, "timeout")
        stored = self.db.get_notifications(alert_id=alert_id)[0]
        assert stored.status == DeliveryStatus.FAILED
        assert stored.error == "timeout"

        assert self.db.mark_notification_read(notification.id, "someone-else") is False
        assert self.db.mark_notification_read(notification.id, "user-1") is True
        assert self.db.mark_notification_read(notification.id, "user-1") is False
        assert self.db.get_notifications(user_id="user-1", unread_only=True) == []

    def test_risk_state_overwrite(self):
        computed_at = datetime(2024, 3, 31)
        self.db.save_risk_state(RegionRiskState("amazon-1", 42.0, RiskLevel.MEDIUM, computed_at, 3,
                                                {'density': 0.5}))
        self.db.save_risk_state(RegionRiskState("amazon-1", 71.25, RiskLevel.HIGH, computed_at, 10))

        states = self.db.get_risk_states()

        assert len(states) == 1
        assert states[0].risk_score == 71.25
        assert states[0].risk_level == RiskLevel.HIGH
        assert states[0].predicted_alerts == 10


class TestWriteTransaction:
    """Test immediate write transactions."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config = Config.create_test_config()
        self.config.storage.database_path = Path(self.temp_dir) / "test.db"
        self.config.storage.busy_timeout = 0.1
        self.db = DatabaseManager(self.config)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_commit(self):
        with self.db.write_transaction() as conn:
            self.db.insert_alert(make_alert("A-1", datetime(2024, 3, 1)), conn)
        assert self.db.count_alerts() == 1

    def test_rollback_on_error(self):
        with pytest.raises(RuntimeError):
            with self.db.write_transaction() as conn:
                self.db.insert_alert(make_alert("A-1", datetime(2024, 3, 1)), conn)
                raise RuntimeError("boom")
        assert self.db.count_alerts() == 0

    def test_second_writer_conflicts(self):
        with self.db.write_transaction():
            with pytest.raises(ConcurrencyConflict):
                with self.db.write_transaction():
                    pass
