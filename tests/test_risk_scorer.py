"""
Unit tests for regional risk scoring and hotspot ranking.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from datetime import datetime, timedelta

import sys
sys.path.append('src')

from config import Config
from database_manager import DatabaseManager
from models import (
    Alert, AlertStatus, BoundingBox, Region, RegionRiskState, RiskLevel, Severity
)
from risk_scorer import RiskScorer, rank_hotspots


AS_OF = datetime(2024, 6, 30)


def make_alert(days_ago, severity=Severity.HIGH, area=1.0, region_id="amazon-1",
               status=AlertStatus.PENDING, code=None):
    return Alert(
        id=None, code=code or f"ALERT-{days_ago:04d}-{severity.value}", region_id=region_id,
        severity=severity, confidence=0.8, area_hectares=area,
        detected_at=AS_OF - timedelta(days=days_ago), latitude=-3.0, longitude=-60.0,
        ndvi_change=-0.3, status=status
    )


def reference_history():
    """12 HIGH alerts in 90 days, 6 of them in the last 30, 40 ha in total."""
    recent = [make_alert(days, area=40 / 12) for days in (1, 5, 9, 14, 20, 28)]
    older = [make_alert(days, area=40 / 12) for days in (35, 42, 50, 61, 70, 85)]
    return recent + older


class TestRiskScorer:
    """Test the pure scoring function."""

    def setup_method(self):
        self.scorer = RiskScorer(Config.create_test_config())

    def test_reference_region(self):
        state = self.scorer.score("amazon-1", reference_history(), AS_OF)

        assert state.risk_score == pytest.approx(71.25)
        assert state.risk_level == RiskLevel.HIGH
        assert state.predicted_alerts == 10
        assert state.last_computed_at == AS_OF
        assert state.factors['density'] == pytest.approx(0.8)
        assert state.factors['recency'] == pytest.approx(0.75)

    def test_deterministic(self):
        history = reference_history()
        first = self.scorer.score("amazon-1", history, AS_OF)
        second = self.scorer.score("amazon-1", list(reversed(history)), AS_OF)
        assert first == second

    def test_insufficient_history_is_low(self):
        state = self.scorer.score("amazon-1", [make_alert(1, Severity.CRITICAL, area=90.0),
                                               make_alert(2, Severity.CRITICAL, area=90.0)], AS_OF)

        assert state.risk_score == 0.0
        assert state.risk_level == RiskLevel.LOW

    def test_alerts_outside_window_ignored(self):
        history = reference_history() + [make_alert(days) for days in (91, 120, 200)]
        state = self.scorer.score("amazon-1", history, AS_OF)
        assert state.risk_score == pytest.approx(71.25)

    def test_future_alerts_ignored(self):
        history = reference_history() + [make_alert(-3)]
        assert self.scorer.score("amazon-1", history, AS_OF).risk_score == pytest.approx(71.25)

    def test_score_bounded(self):
        history = [make_alert(days % 30, Severity.CRITICAL, area=500.0) for days in range(60)]
        state = self.scorer.score("amazon-1", history, AS_OF)

        assert state.risk_score == 100.0
        assert state.risk_level == RiskLevel.HIGH

    def test_sparse_history_stays_below_high(self):
        history = [make_alert(days, Severity.MEDIUM, area=5.0) for days in (10, 40, 60, 80, 85)]
        state = self.scorer.score("amazon-1", history, AS_OF)

        assert 0 < state.risk_score < 70
        assert state.risk_level == self.scorer.level_for(state.risk_score)

    def test_level_thresholds(self):
        assert self.scorer.level_for(70.0) == RiskLevel.HIGH
        assert self.scorer.level_for(69.99) == RiskLevel.MEDIUM
        assert self.scorer.level_for(40.0) == RiskLevel.MEDIUM
        assert self.scorer.level_for(39.99) == RiskLevel.LOW


class TestRankHotspots:
    def test_ranking_with_ties(self):
        states = [
            RegionRiskState("b-region", 55.0, RiskLevel.MEDIUM, AS_OF),
            RegionRiskState("c-region", 80.0, RiskLevel.HIGH, AS_OF),
            RegionRiskState("a-region", 55.0, RiskLevel.MEDIUM, AS_OF),
        ]

        ranked = rank_hotspots(states)

        assert [s.region_id for s in ranked] == ["c-region", "a-region", "b-region"]
        assert [s.region_id for s in rank_hotspots(states, limit=1)] == ["c-region"]


class TestComputeAll:
    """Test scoring against stored alert history."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config = Config.create_test_config()
        self.config.storage.database_path = Path(self.temp_dir) / "test.db"
        self.db = DatabaseManager(self.config)
        self.scorer = RiskScorer(self.config, self.db)

        bbox = BoundingBox(-60.01, -3.01, -60.0, -3.0)
        for region_id in ("amazon-1", "amazon-2", "cerrado-1"):
            self.db.add_region(Region(id=region_id, name=region_id, bounding_box=bbox, area_hectares=100.0))

        for i, alert in enumerate(reference_history()):
            alert.code = f"ALERT-A1-{i:04d}"
            self.db.insert_alert(alert)
        for i, days in enumerate((3, 6, 9)):
            self.db.insert_alert(make_alert(days, Severity.MEDIUM, region_id="amazon-2",
                                            code=f"ALERT-A2-{i:04d}"))
        # False alarms never count towards risk
        for i, days in enumerate((2, 4, 6, 8)):
            self.db.insert_alert(make_alert(days, Severity.CRITICAL, region_id="cerrado-1",
                                            status=AlertStatus.FALSE_ALARM, code=f"ALERT-C1-{i:04d}"))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_compute_all_ranks_and_persists(self):
        ranked = self.scorer.compute_all(as_of=AS_OF)

        assert [s.region_id for s in ranked] == ["amazon-1", "amazon-2", "cerrado-1"]
        assert ranked[0].risk_score == pytest.approx(71.25)
        assert ranked[2].risk_score == 0.0

        stored = {s.region_id: s for s in self.db.get_risk_states()}
        assert set(stored) == {"amazon-1", "amazon-2", "cerrado-1"}
        assert stored["amazon-1"].risk_level == RiskLevel.HIGH
        assert stored["amazon-1"].last_computed_at == AS_OF

    def test_recompute_is_idempotent(self):
        first = self.scorer.compute_all(as_of=AS_OF)
        second = self.scorer.compute_all(as_of=AS_OF)

        assert first == second
        assert len(self.db.get_risk_states()) == 3

    def test_score_single_region(self):
        state = self.scorer.score_region("amazon-2", AS_OF)
        assert state.risk_score > 0
        assert state.risk_level == RiskLevel.LOW
