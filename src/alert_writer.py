"""
Alert deduplication and persistence.

Decides whether a detection creates a new alert, escalates an open alert in the
same location cluster, or is suppressed as a weaker duplicate. Writes for one
region are serialized so at most one open alert exists per cluster.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Optional

from config import Config
from database_manager import DatabaseManager
from exceptions import AlertStateError, ConcurrencyConflict
from models import (
    Alert, AlertObservation, AlertStatus, AlertWriteResult, DetectionResult, WriteOutcome
)
from severity_classifier import SeverityClassifier
from utils import haversine_meters

logger = logging.getLogger(__name__)

# Closed alerts may move between closed states but never back to an open one
ALLOWED_TRANSITIONS = {
    AlertStatus.PENDING: {AlertStatus.IN_PROGRESS, AlertStatus.RESOLVED, AlertStatus.FALSE_ALARM},
    AlertStatus.IN_PROGRESS: {AlertStatus.PENDING, AlertStatus.RESOLVED, AlertStatus.FALSE_ALARM},
    AlertStatus.RESOLVED: {AlertStatus.FALSE_ALARM},
    AlertStatus.FALSE_ALARM: {AlertStatus.RESOLVED},
}


class RegionLockRegistry:
    """Keyed mutual exclusion: one lock per region, unrelated regions stay parallel."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, region_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(region_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[region_id] = lock
            return lock

    @contextmanager
    def hold(self, region_id: str, timeout: float):
        lock = self._lock_for(region_id)
        if not lock.acquire(timeout=timeout):
            raise ConcurrencyConflict(f"Region {region_id} is locked by another run (waited {timeout}s)")
        try:
            yield
        finally:
            lock.release()


class AlertWriter:
    """Deduplicates detections into alerts."""

    def __init__(self, config: Config, database: DatabaseManager,
                 locks: Optional[RegionLockRegistry] = None):
        self.config = config
        self.database = database
        self.locks = locks or RegionLockRegistry()

    def write(self, detection: DetectionResult, now: Optional[datetime] = None) -> AlertWriteResult:
        """
        Create, escalate or suppress an alert for a positive detection.

        Args:
            detection: Detection result (only detected=True results are written)
            now: Detection time, defaults to the current time

        Returns:
            AlertWriteResult describing what happened

        Raises:
            ConcurrencyConflict: the region lock could not be acquired in time
        """
        now = now or datetime.now()
        alert_config = self.config.alerts

        if not detection.detected:
            return AlertWriteResult(outcome=WriteOutcome.SKIPPED)
        if (detection.confidence < alert_config.min_alert_confidence
                or detection.estimated_area_hectares < alert_config.min_alert_area_hectares):
            logger.info(f"Region {detection.region_id}: detection below alert minimums "
                        f"(confidence={detection.confidence:.2f}, "
                        f"area={detection.estimated_area_hectares:.2f}ha)")
            return AlertWriteResult(outcome=WriteOutcome.SKIPPED)

        image = detection.after_image
        latitude, longitude = detection.location
        radius = alert_config.proximity_radius_for(image.resolution_meters)
        since = now - timedelta(days=alert_config.dedup_window_days)

        with self.locks.hold(detection.region_id, alert_config.lock_timeout):
            with self.database.write_transaction() as conn:
                open_alerts = self.database.find_open_alerts(detection.region_id, since, conn)
                nearby = [
                    (haversine_meters(latitude, longitude, alert.latitude, alert.longitude), alert)
                    for alert in open_alerts
                ]
                nearby = [pair for pair in nearby if pair[0] <= radius]

                if not nearby:
                    alert = self._create(detection, latitude, longitude, now, conn)
                    result = AlertWriteResult(outcome=WriteOutcome.CREATED, alert=alert)
                else:
                    _, existing = min(nearby, key=lambda pair: (pair[0], pair[1].id))
                    result = self._merge(existing, detection, now, conn)

                self.database.insert_observation(AlertObservation(
                    id=None,
                    alert_id=result.alert.id,
                    observed_at=now,
                    severity=detection.severity,
                    confidence=detection.confidence,
                    area_hectares=detection.estimated_area_hectares,
                    ndvi_change=detection.index_delta,
                    outcome=result.outcome
                ), conn)

        logger.info(f"Alert {result.alert.code} {result.outcome.value.lower()} "
                    f"(region={detection.region_id}, severity={result.alert.severity.value})")
        return result

    def _create(self, detection: DetectionResult, latitude: float, longitude: float,
                now: datetime, conn) -> Alert:
        alert = Alert(
            id=None,
            code=self.database.next_alert_code(now, conn),
            region_id=detection.region_id,
            severity=detection.severity,
            confidence=detection.confidence,
            area_hectares=detection.estimated_area_hectares,
            detected_at=now,
            latitude=latitude,
            longitude=longitude,
            ndvi_change=detection.index_delta,
            status=AlertStatus.PENDING,
            polygon=detection.after_image.bounding_box.to_polygon(),
            priority=SeverityClassifier.priority(detection.severity, detection.confidence),
        )
        alert.id = self.database.insert_alert(alert, conn)
        return alert

    def _merge(self, existing: Alert, detection: DetectionResult, now: datetime, conn) -> AlertWriteResult:
        if detection.severity < existing.severity:
            # A single weaker signal never undoes an existing response
            logger.info(f"Alert {existing.code}: weaker detection ({detection.severity.value} < "
                        f"{existing.severity.value}) recorded without downgrade")
            return AlertWriteResult(outcome=WriteOutcome.SUPPRESSED, alert=existing,
                                    previous_severity=existing.severity)

        previous = existing.severity
        existing.severity = detection.severity
        existing.confidence = detection.confidence
        existing.area_hectares = detection.estimated_area_hectares
        existing.ndvi_change = detection.index_delta
        existing.priority = SeverityClassifier.priority(detection.severity, detection.confidence)
        existing.updated_at = now
        self.database.update_alert_detection(existing, conn)
        return AlertWriteResult(outcome=WriteOutcome.ESCALATED, alert=existing, previous_severity=previous)

    def transition_status(self, alert_id: int, new_status: AlertStatus,
                          assigned_to: Optional[str] = None, now: Optional[datetime] = None) -> Alert:
        """
        Move an alert through its case-management lifecycle.

        Raises:
            AlertStateError: unknown alert or a transition that would reopen a closed alert
        """
        now = now or datetime.now()
        with self.database.write_transaction() as conn:
            alert = self.database.get_alert(alert_id, conn)
            if alert is None:
                raise AlertStateError(f"Alert {alert_id} does not exist")
            if new_status != alert.status and new_status not in ALLOWED_TRANSITIONS[alert.status]:
                raise AlertStateError(
                    f"Alert {alert.code} cannot move from {alert.status.value} to {new_status.value}"
                )
            alert.status = new_status
            if assigned_to is not None:
                alert.assigned_to = assigned_to
            alert.updated_at = now
            self.database.update_alert_status(alert.id, alert.status, alert.assigned_to, now, conn)

        logger.info(f"Alert {alert.code} moved to {new_status.value}")
        return alert
