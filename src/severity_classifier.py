"""
Severity classification from ordered threshold bands.
"""

import logging
from typing import List, Optional

from config import Config, SeverityBand
from models import Severity

logger = logging.getLogger(__name__)


class SeverityClassifier:
    """Maps (confidence, area, index delta) onto LOW/MEDIUM/HIGH/CRITICAL."""

    def __init__(self, config: Config, bands: Optional[List[SeverityBand]] = None):
        self.config = config
        self.bands = sorted(bands or config.severity.bands,
                            key=lambda b: b.severity.weight, reverse=True)

    def classify(self, confidence: float, area_hectares: float, index_delta: float) -> Severity:
        """
        Return the highest band the detection reaches.

        A band is reached when confidence meets its floor and either the index
        drop or the affected area meets its threshold, so a small total loss and
        a large partial loss can both escalate.
        """
        magnitude = abs(index_delta)
        for band in self.bands:
            if confidence < band.min_confidence:
                continue
            if magnitude >= band.min_delta or area_hectares >= band.min_area_hectares:
                return band.severity
        return Severity.LOW

    @staticmethod
    def priority(severity: Severity, confidence: float) -> int:
        """Response priority 1-10: severity base plus up to two points for confidence."""
        base = {Severity.CRITICAL: 8, Severity.HIGH: 6, Severity.MEDIUM: 4, Severity.LOW: 2}[severity]
        return min(10, base + int(confidence * 2))
