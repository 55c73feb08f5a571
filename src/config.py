"""
Configuration for the forest watch system.

Each pipeline stage gets its own validated dataclass; Config assembles them and
applies environment overrides (loaded from a .env file when present).
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from exceptions import ConfigurationError
from models import Severity

logger = logging.getLogger(__name__)


@dataclass
class ImageryConfig:
    """Image acquisition and normalization settings."""
    cloud_cover_ceiling: float = 0.5
    fetch_timeout: float = 30.0  # seconds
    reflectance_scale: float = 10000.0  # Raw 0..10000 products are rescaled
    texture_saturation: float = 0.05  # Laplacian variance mapped to texture 1.0

    def __post_init__(self):
        if not 0 < self.cloud_cover_ceiling <= 1:
            raise ValueError("Cloud cover ceiling must be in (0, 1]")
        if self.fetch_timeout <= 0:
            raise ValueError("Fetch timeout must be positive")
        if self.texture_saturation <= 0:
            raise ValueError("Texture saturation must be positive")


@dataclass
class DetectionConfig:
    """Change detection settings."""
    delta_threshold: float = 0.15
    confidence_saturation_delta: float = 0.4
    full_loss_delta: float = 0.5
    min_valid_pixel_fraction: float = 0.5
    baseline_policy: str = "LAST_KNOWN_GOOD"  # or NONE

    def __post_init__(self):
        if not 0 < self.delta_threshold < 2:
            raise ValueError("Delta threshold must be between 0 and 2")
        if self.confidence_saturation_delta <= 0:
            raise ValueError("Confidence saturation delta must be positive")
        if self.full_loss_delta <= self.delta_threshold:
            raise ValueError("Full loss delta must exceed the delta threshold")
        if not 0 <= self.min_valid_pixel_fraction <= 1:
            raise ValueError("Minimum valid pixel fraction must be between 0 and 1")
        if self.baseline_policy not in ("LAST_KNOWN_GOOD", "NONE"):
            raise ValueError(f"Invalid baseline policy: {self.baseline_policy}")


@dataclass(frozen=True)
class SeverityBand:
    """Minimum requirements for a severity level."""
    severity: Severity
    min_delta: float
    min_area_hectares: float
    min_confidence: float = 0.0


def default_severity_bands() -> List[SeverityBand]:
    return [
        SeverityBand(Severity.CRITICAL, min_delta=0.5, min_area_hectares=50.0, min_confidence=0.6),
        SeverityBand(Severity.HIGH, min_delta=0.3, min_area_hectares=20.0, min_confidence=0.4),
        SeverityBand(Severity.MEDIUM, min_delta=0.2, min_area_hectares=5.0, min_confidence=0.2),
    ]


@dataclass
class SeverityConfig:
    """Ordered severity bands, highest first."""
    bands: List[SeverityBand] = field(default_factory=default_severity_bands)

    def __post_init__(self):
        self.bands = sorted(self.bands, key=lambda b: b.severity.weight, reverse=True)
        if len({b.severity for b in self.bands}) != len(self.bands):
            raise ValueError("Duplicate severity band")
        # A higher band must never be easier to reach than a lower one
        for higher, lower in zip(self.bands, self.bands[1:]):
            if (higher.min_delta < lower.min_delta
                    or higher.min_area_hectares < lower.min_area_hectares
                    or higher.min_confidence < lower.min_confidence):
                raise ValueError(f"Severity bands not monotonic: {higher.severity.value} "
                                 f"is easier to reach than {lower.severity.value}")


@dataclass
class AlertConfig:
    """Alert deduplication settings."""
    dedup_window_days: int = 14
    proximity_pixels: int = 100
    min_proximity_meters: float = 250.0
    proximity_radius_meters: Optional[float] = None  # Overrides the resolution-derived radius
    min_alert_confidence: float = 0.3
    min_alert_area_hectares: float = 0.1
    lock_timeout: float = 10.0  # seconds

    def __post_init__(self):
        if self.dedup_window_days <= 0:
            raise ValueError("Dedup window must be positive")
        if self.proximity_pixels <= 0 or self.min_proximity_meters <= 0:
            raise ValueError("Proximity settings must be positive")
        if self.proximity_radius_meters is not None and self.proximity_radius_meters <= 0:
            raise ValueError("Proximity radius must be positive")
        if not 0 <= self.min_alert_confidence <= 1:
            raise ValueError("Minimum alert confidence must be between 0 and 1")
        if self.lock_timeout <= 0:
            raise ValueError("Lock timeout must be positive")

    def proximity_radius_for(self, resolution_meters: float) -> float:
        if self.proximity_radius_meters is not None:
            return self.proximity_radius_meters
        return max(self.min_proximity_meters, resolution_meters * self.proximity_pixels)


@dataclass
class RiskConfig:
    """Risk scoring weights and windows."""
    window_days: int = 90
    recent_window_days: int = 30
    density_weight: float = 0.30
    severity_weight: float = 0.30
    recency_weight: float = 0.25
    area_weight: float = 0.15
    density_saturation: int = 15  # Alerts in window for a full density score
    recency_saturation: int = 8  # Recent alerts for a full recency score
    area_cap_hectares: float = 100.0
    high_threshold: float = 70.0
    medium_threshold: float = 40.0
    min_alerts_for_scoring: int = 3

    def __post_init__(self):
        if not 0 < self.recent_window_days <= self.window_days:
            raise ValueError("Recent window must be within the scoring window")
        weights = (self.density_weight, self.severity_weight, self.recency_weight, self.area_weight)
        if any(w < 0 for w in weights) or abs(sum(weights) - 1.0) > 1e-6:
            raise ValueError("Risk weights must be non-negative and sum to 1")
        if not 0 < self.medium_threshold < self.high_threshold <= 100:
            raise ValueError("Invalid risk thresholds")
        if self.density_saturation <= 0 or self.recency_saturation <= 0 or self.area_cap_hectares <= 0:
            raise ValueError("Risk saturation values must be positive")


@dataclass
class NotificationConfig:
    """Channel credentials and dispatch settings."""
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_sender: str = "alerts@forestwatch.local"
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    twilio_whatsapp_number: Optional[str] = None
    dispatch_timeout: float = 15.0
    alert_base_url: str = "http://localhost:3000/dashboard/alerts"

    def __post_init__(self):
        if self.dispatch_timeout <= 0:
            raise ValueError("Dispatch timeout must be positive")


@dataclass
class StorageConfig:
    """Storage locations."""
    data_dir: Path = Path("data")
    database_path: Path = Path("data/forest_watch.db")
    busy_timeout: float = 5.0

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.database_path = Path(self.database_path)


class Config:
    """Main configuration assembled from defaults and environment overrides."""

    def __init__(self, load_env_file: bool = True):
        if load_env_file:
            load_dotenv()

        try:
            self.imagery = ImageryConfig(
                cloud_cover_ceiling=_env_float("CLOUD_COVER_CEILING", 0.5),
                fetch_timeout=_env_float("IMAGE_FETCH_TIMEOUT", 30.0),
            )
            self.detection = DetectionConfig(
                delta_threshold=_env_float("DELTA_THRESHOLD", 0.15),
                baseline_policy=os.getenv("BASELINE_POLICY", "LAST_KNOWN_GOOD").upper(),
            )
            self.severity = SeverityConfig()
            self.alerts = AlertConfig(
                dedup_window_days=_env_int("DEDUP_WINDOW_DAYS", 14),
                lock_timeout=_env_float("REGION_LOCK_TIMEOUT", 10.0),
            )
            self.risk = RiskConfig(
                window_days=_env_int("RISK_WINDOW_DAYS", 90),
                recent_window_days=_env_int("RISK_RECENT_WINDOW_DAYS", 30),
            )
            self.notifications = NotificationConfig(
                smtp_host=os.getenv("SMTP_HOST"),
                smtp_port=_env_int("SMTP_PORT", 587),
                smtp_username=os.getenv("SMTP_USERNAME"),
                smtp_password=os.getenv("SMTP_PASSWORD"),
                email_sender=os.getenv("EMAIL_SENDER", "alerts@forestwatch.local"),
                twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
                twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
                twilio_from_number=os.getenv("TWILIO_FROM_NUMBER"),
                twilio_whatsapp_number=os.getenv("TWILIO_WHATSAPP_NUMBER"),
                alert_base_url=os.getenv("ALERT_BASE_URL", "http://localhost:3000/dashboard/alerts"),
            )
            database_path = Path(os.getenv("DATABASE_PATH", "data/forest_watch.db"))
            self.storage = StorageConfig(data_dir=database_path.parent, database_path=database_path)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        self._validate_consistency()

    def _validate_consistency(self):
        if self.notifications.twilio_whatsapp_number and not self.notifications.twilio_account_sid:
            raise ConfigurationError("TWILIO_WHATSAPP_NUMBER requires TWILIO_ACCOUNT_SID")

    @classmethod
    def create_test_config(cls, **overrides) -> "Config":
        """Create a configuration from defaults plus explicit environment-style overrides."""
        saved = {key: os.environ.get(key) for key in overrides}
        try:
            for key, value in overrides.items():
                os.environ[key] = str(value)
            return cls(load_env_file=False)
        finally:
            for key, value in saved.items():
                if value is None:
                    os.environ.pop(key, None)
                else:
                    os.environ[key] = value

    def get_summary(self) -> dict:
        """Get a loggable summary of the active configuration."""
        return {
            'imagery': {
                'cloud_cover_ceiling': self.imagery.cloud_cover_ceiling,
                'fetch_timeout': self.imagery.fetch_timeout,
            },
            'detection': {
                'delta_threshold': self.detection.delta_threshold,
                'baseline_policy': self.detection.baseline_policy,
            },
            'severity': {
                band.severity.value: (band.min_delta, band.min_area_hectares, band.min_confidence)
                for band in self.severity.bands
            },
            'alerts': {
                'dedup_window_days': self.alerts.dedup_window_days,
                'min_alert_confidence': self.alerts.min_alert_confidence,
            },
            'risk': {
                'window_days': self.risk.window_days,
                'recent_window_days': self.risk.recent_window_days,
            },
            'channels': {
                'email': bool(self.notifications.smtp_host),
                'sms': bool(self.notifications.twilio_from_number),
                'whatsapp': bool(self.notifications.twilio_whatsapp_number),
            },
            'storage': {
                'database_path': str(self.storage.database_path),
            },
        }


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {value!r}, using default {default}")
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {value!r}, using default {default}")
        return default
