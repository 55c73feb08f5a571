"""
Unit tests for severity classification.
"""

import pytest

import sys
sys.path.append('src')

from config import Config, SeverityBand
from models import Severity
from severity_classifier import SeverityClassifier


class TestSeverityClassifier:
    """Test band matching with the default thresholds."""

    def setup_method(self):
        self.classifier = SeverityClassifier(Config.create_test_config())

    def test_high_by_index_drop(self):
        assert self.classifier.classify(0.875, 2.8, -0.35) == Severity.HIGH

    def test_critical_by_area(self):
        # Partial loss over a large area escalates as far as a total loss
        assert self.classifier.classify(0.9, 60.0, -0.2) == Severity.CRITICAL

    def test_critical_by_index_drop(self):
        assert self.classifier.classify(0.9, 1.0, -0.55) == Severity.CRITICAL

    def test_confidence_floor_limits_band(self):
        assert self.classifier.classify(0.3, 60.0, -0.6) == Severity.MEDIUM

    def test_low_when_no_band_reached(self):
        assert self.classifier.classify(0.5, 1.0, -0.16) == Severity.LOW
        assert self.classifier.classify(0.1, 100.0, -0.9) == Severity.LOW

    def test_sign_of_delta_ignored(self):
        assert self.classifier.classify(0.875, 2.8, 0.35) == self.classifier.classify(0.875, 2.8, -0.35)

    def test_monotonic_in_each_input(self):
        base = self.classifier.classify(0.5, 10.0, -0.25)
        assert self.classifier.classify(0.9, 10.0, -0.25) >= base
        assert self.classifier.classify(0.5, 80.0, -0.25) >= base
        assert self.classifier.classify(0.5, 10.0, -0.6) >= base

    def test_custom_bands(self):
        classifier = SeverityClassifier(
            Config.create_test_config(),
            bands=[SeverityBand(Severity.HIGH, min_delta=0.1, min_area_hectares=1.0)]
        )
        assert classifier.classify(0.1, 0.5, -0.12) == Severity.HIGH
        assert classifier.classify(0.1, 0.5, -0.05) == Severity.LOW


class TestPriority:
    def test_priority_scale(self):
        assert SeverityClassifier.priority(Severity.CRITICAL, 1.0) == 10
        assert SeverityClassifier.priority(Severity.HIGH, 0.875) == 7
        assert SeverityClassifier.priority(Severity.MEDIUM, 0.4) == 4
        assert SeverityClassifier.priority(Severity.LOW, 0.0) == 2


class TestSeverityOrdering:
    def test_total_order(self):
        assert Severity.LOW < Severity.MEDIUM < Severity.HIGH < Severity.CRITICAL
        assert max([Severity.MEDIUM, Severity.CRITICAL, Severity.HIGH]) == Severity.CRITICAL
        assert Severity.HIGH.weight == 3
