"""
Vegetation change detection between two normalized images.
"""

import logging
from typing import Optional, Sequence

from config import Config
from models import DetectionResult, NormalizedImage, Severity, TrendResult
from severity_classifier import SeverityClassifier
from utils import clamp

logger = logging.getLogger(__name__)

BASELINE_LAST_KNOWN_GOOD = "LAST_KNOWN_GOOD"
TREND_THRESHOLD = 0.1


class ChangeDetector:
    """Compares a before/after image pair and produces a DetectionResult."""

    def __init__(self, config: Config, classifier: Optional[SeverityClassifier] = None):
        self.config = config
        self.classifier = classifier or SeverityClassifier(config)

    def is_usable(self, image: Optional[NormalizedImage]) -> bool:
        """Check the image quality flags."""
        if image is None:
            return False
        if image.cloud_cover_fraction > self.config.imagery.cloud_cover_ceiling:
            return False
        return image.valid_pixel_fraction >= self.config.detection.min_valid_pixel_fraction

    def detect(self, before: Optional[NormalizedImage], after: Optional[NormalizedImage],
               region_area_hectares: Optional[float] = None,
               baseline: Optional[NormalizedImage] = None) -> DetectionResult:
        """
        Compare before and after images of the same region.

        Args:
            before: Earlier image (may be None or unusable)
            after: Later image
            region_area_hectares: Registered region area, caps the area estimate
            baseline: Last known good image, used for a bad before image when
                the baseline policy allows it

        Returns:
            DetectionResult. Unusable data yields detected=False, confidence=0.
        """
        reference = after or before or baseline
        region_id = reference.region_id if reference else ""

        if not self.is_usable(after):
            return self._not_detected(region_id, before, after, "after image unusable")

        used_fallback = False
        if not self.is_usable(before):
            if self._baseline_applies(baseline, after):
                logger.info(f"Region {region_id}: before image unusable, falling back to baseline "
                            f"from {baseline.captured_at:%Y-%m-%d}")
                before = baseline
                used_fallback = True
            else:
                return self._not_detected(region_id, before, after, "before image unusable, no baseline")

        if before.region_id != after.region_id:
            raise ValueError(f"Images belong to different regions: {before.region_id} != {after.region_id}")

        index_delta = after.vegetation_index - before.vegetation_index
        threshold = self.config.detection.delta_threshold
        detected = index_delta <= -threshold

        confidence = self._confidence(index_delta, before, after)
        area = self._estimate_area(index_delta, after, region_area_hectares) if detected else 0.0
        severity = self.classifier.classify(confidence, area, index_delta) if detected else Severity.LOW

        result = DetectionResult(
            region_id=region_id,
            before_image=before,
            after_image=after,
            index_delta=index_delta,
            detected=detected,
            confidence=confidence,
            estimated_area_hectares=area,
            severity=severity,
            used_baseline_fallback=used_fallback,
            brightness_change=abs(after.brightness - before.brightness),
            texture_change=abs(after.texture - before.texture),
        )

        if detected:
            logger.info(f"Region {region_id}: vegetation loss detected, delta={index_delta:.3f}, "
                        f"confidence={confidence:.2f}, area={area:.1f}ha, severity={severity.value}")
        else:
            logger.debug(f"Region {region_id}: no material loss (delta={index_delta:.3f}, "
                         f"threshold={-threshold:.3f})")
        return result

    def _baseline_applies(self, baseline: Optional[NormalizedImage], after: NormalizedImage) -> bool:
        if self.config.detection.baseline_policy != BASELINE_LAST_KNOWN_GOOD:
            return False
        if not self.is_usable(baseline):
            return False
        return baseline.region_id == after.region_id and baseline.captured_at < after.captured_at

    def _confidence(self, index_delta: float, before: NormalizedImage, after: NormalizedImage) -> float:
        loss = max(0.0, -index_delta)
        raw = min(1.0, loss / self.config.detection.confidence_saturation_delta)
        worst_cloud = max(before.cloud_cover_fraction, after.cloud_cover_fraction)
        return clamp(raw * (1.0 - worst_cloud), 0.0, 1.0)

    def _estimate_area(self, index_delta: float, after: NormalizedImage,
                       region_area_hectares: Optional[float]) -> float:
        threshold = self.config.detection.delta_threshold
        full_loss = self.config.detection.full_loss_delta
        fraction = clamp((abs(index_delta) - threshold) / (full_loss - threshold), 0.0, 1.0)
        area = after.bounding_box.area_hectares() * fraction
        if region_area_hectares is not None:
            area = min(area, region_area_hectares)
        return area

    @staticmethod
    def _not_detected(region_id, before, after, reason) -> DetectionResult:
        logger.info(f"Region {region_id}: detection skipped ({reason})")
        return DetectionResult(
            region_id=region_id,
            before_image=before,
            after_image=after,
            index_delta=0.0,
            detected=False,
            confidence=0.0,
            reason=reason,
        )

    @staticmethod
    def analyze_trend(images: Sequence[NormalizedImage]) -> TrendResult:
        """Classify the vegetation trend across a time series of images."""
        if len(images) < 2:
            return TrendResult(trend="stable", overall_change=0.0)

        ordered = sorted(images, key=lambda img: img.captured_at)
        change_points = [
            {'timestamp': current.captured_at,
             'change': current.vegetation_index - previous.vegetation_index}
            for previous, current in zip(ordered, ordered[1:])
        ]
        overall = ordered[-1].vegetation_index - ordered[0].vegetation_index

        if overall > TREND_THRESHOLD:
            trend = "increasing"
        elif overall < -TREND_THRESHOLD:
            trend = "decreasing"
        else:
            trend = "stable"
        return TrendResult(trend=trend, overall_change=overall, change_points=change_points)
