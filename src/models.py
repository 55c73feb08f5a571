"""
Consolidated data models for the forest watch system.

This module contains all enums and dataclasses used across the system for:
- Imagery and normalized vegetation summaries
- Change detection results
- Alerts, subscriptions and notifications (database records)
- Regional risk state
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

import numpy as np


# =============================================================================
# Enumerations
# =============================================================================

class Severity(str, Enum):
    """Alert severity on the ordered scale LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHTS[self.value]

    def __lt__(self, other):
        if isinstance(other, Severity):
            return self.weight < other.weight
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, Severity):
            return self.weight <= other.weight
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, Severity):
            return self.weight > other.weight
        return NotImplemented

    def __ge__(self, other):
        if isinstance(other, Severity):
            return self.weight >= other.weight
        return NotImplemented


_SEVERITY_WEIGHTS = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    FALSE_ALARM = "FALSE_ALARM"

    @property
    def is_open(self) -> bool:
        return self in (AlertStatus.PENDING, AlertStatus.IN_PROGRESS)


class Channel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"
    IN_APP = "IN_APP"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class WriteOutcome(str, Enum):
    """What the alert writer did with a detection."""
    CREATED = "CREATED"
    ESCALATED = "ESCALATED"
    SUPPRESSED = "SUPPRESSED"
    SKIPPED = "SKIPPED"  # Below the minimum confidence/area, nothing written

    @property
    def alert_changed(self) -> bool:
        return self in (WriteOutcome.CREATED, WriteOutcome.ESCALATED)


# =============================================================================
# Geometry
# =============================================================================

METERS_PER_DEGREE = 111320.0


@dataclass(frozen=True)
class BoundingBox:
    """Geographic bounding box in degrees (WGS84)."""
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def __post_init__(self):
        if self.min_lon > self.max_lon or self.min_lat > self.max_lat:
            raise ValueError(f"Invalid bounding box: {self}")

    @property
    def centroid(self) -> Tuple[float, float]:
        """Return (latitude, longitude) of the box centre."""
        return ((self.min_lat + self.max_lat) / 2, (self.min_lon + self.max_lon) / 2)

    def area_hectares(self) -> float:
        """Approximate planar area, good enough at forest-region scale."""
        avg_lat = (self.min_lat + self.max_lat) / 2
        lat_meters = (self.max_lat - self.min_lat) * METERS_PER_DEGREE
        lon_meters = (self.max_lon - self.min_lon) * METERS_PER_DEGREE * math.cos(math.radians(avg_lat))
        return max(0.0, lat_meters * lon_meters / 10000)

    def to_polygon(self) -> List[List[float]]:
        """Closed [lon, lat] ring."""
        return [
            [self.min_lon, self.min_lat],
            [self.max_lon, self.min_lat],
            [self.max_lon, self.max_lat],
            [self.min_lon, self.max_lat],
            [self.min_lon, self.min_lat],
        ]

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.min_lon, self.min_lat, self.max_lon, self.max_lat)


@dataclass
class Region:
    """Forest region registered in the store."""
    id: str
    name: str
    bounding_box: BoundingBox
    area_hectares: float


# =============================================================================
# Imagery Models
# =============================================================================

@dataclass
class RawImagery:
    """Raw provider imagery for one bounding box and acquisition time."""
    bounding_box: BoundingBox
    captured_at: datetime
    red: np.ndarray
    nir: np.ndarray
    cloud_cover: float
    resolution_meters: float = 10.0
    source: str = "unknown"


@dataclass(frozen=True)
class NormalizedImage:
    """Comparable per-acquisition vegetation summary."""
    region_id: str
    captured_at: datetime
    vegetation_index: float
    brightness: float
    texture: float
    cloud_cover_fraction: float
    resolution_meters: float
    bounding_box: BoundingBox
    valid_pixel_fraction: float = 1.0
    cover_class: str = "dense"


# =============================================================================
# Detection Models
# =============================================================================

@dataclass
class DetectionResult:
    """Result of comparing a before and after image of the same region."""
    region_id: str
    before_image: Optional[NormalizedImage]
    after_image: Optional[NormalizedImage]
    index_delta: float
    detected: bool
    confidence: float = 0.0
    estimated_area_hectares: float = 0.0
    severity: Severity = Severity.LOW
    # Diagnostic fields
    used_baseline_fallback: bool = False
    brightness_change: float = 0.0
    texture_change: float = 0.0
    reason: Optional[str] = None

    @property
    def location(self) -> Optional[Tuple[float, float]]:
        image = self.after_image or self.before_image
        return image.bounding_box.centroid if image else None


@dataclass
class TrendResult:
    """Vegetation trend over a time series of images."""
    trend: str  # increasing | decreasing | stable
    overall_change: float
    change_points: List[Dict[str, Any]] = field(default_factory=list)


# =============================================================================
# Database Models
# =============================================================================

@dataclass
class Alert:
    """Data class for alert records stored in the database."""
    id: Optional[int]
    code: str
    region_id: str
    severity: Severity
    confidence: float
    area_hectares: float
    detected_at: datetime
    latitude: float
    longitude: float
    ndvi_change: float
    status: AlertStatus = AlertStatus.PENDING
    polygon: Optional[List[List[float]]] = None
    assigned_to: Optional[str] = None
    priority: int = 5
    updated_at: Optional[datetime] = None


@dataclass
class AlertObservation:
    """A detection that reached the writer, kept against its alert."""
    id: Optional[int]
    alert_id: int
    observed_at: datetime
    severity: Severity
    confidence: float
    area_hectares: float
    ndvi_change: float
    outcome: WriteOutcome


@dataclass
class AlertWriteResult:
    """Outcome of the deduplicate-and-write step."""
    outcome: WriteOutcome
    alert: Optional[Alert] = None
    previous_severity: Optional[Severity] = None


@dataclass
class Subscription:
    """A user's standing alert filter."""
    id: Optional[int]
    user_id: str
    region_ids: List[str] = field(default_factory=list)
    min_severity: Severity = Severity.LOW
    channels: List[Channel] = field(default_factory=lambda: [Channel.IN_APP])
    is_active: bool = True

    def matches(self, alert: Alert) -> bool:
        if not self.is_active:
            return False
        if self.region_ids and alert.region_id not in self.region_ids:
            return False
        return self.min_severity <= alert.severity


@dataclass
class Notification:
    """Data class for notification records stored in the database."""
    id: Optional[int]
    user_id: str
    alert_id: int
    channel: Channel
    severity: Severity
    status: DeliveryStatus = DeliveryStatus.PENDING
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


@dataclass
class DispatchResult:
    """Result of one (subscriber, channel) dispatch task."""
    user_id: str
    channel: Channel
    success: bool
    notification_id: Optional[int] = None
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class RegionRiskState:
    """Latest risk assessment for a region."""
    region_id: str
    risk_score: float  # 0..100
    risk_level: RiskLevel
    last_computed_at: datetime
    predicted_alerts: int = 0
    factors: Dict[str, float] = field(default_factory=dict)


# =============================================================================
# Pipeline Models
# =============================================================================

@dataclass
class DetectionTrigger:
    """External request to run the pipeline for one region."""
    region_id: str
    window_start: datetime
    window_end: datetime
    source_hint: Optional[str] = None


@dataclass
class PipelineRun:
    """Summary of one pipeline run."""
    region_id: str
    detection: Optional[DetectionResult] = None
    write_result: Optional[AlertWriteResult] = None
    dispatch_results: List[DispatchResult] = field(default_factory=list)
    processing_time: float = 0.0
