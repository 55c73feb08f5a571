"""
Regional risk scoring and hotspot ranking.

The score is a pure function of a region's alert history and the scoring
time, so recomputing over the same history always gives the same result.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from config import Config
from database_manager import DatabaseManager
from models import Alert, RegionRiskState, RiskLevel
from utils import clamp

logger = logging.getLogger(__name__)


class RiskScorer:
    """Computes bounded 0-100 risk scores from alert history."""

    def __init__(self, config: Config, database: Optional[DatabaseManager] = None):
        self.config = config
        self.database = database

    def score(self, region_id: str, alerts: Sequence[Alert], as_of: datetime) -> RegionRiskState:
        """
        Score one region from its alert history.

        Alerts outside the scoring window ending at as_of are ignored. A region
        with too little history is LOW by definition.
        """
        risk = self.config.risk
        window_start = as_of - timedelta(days=risk.window_days)
        recent_start = as_of - timedelta(days=risk.recent_window_days)

        in_window = [a for a in alerts if window_start < a.detected_at <= as_of]
        recent = [a for a in in_window if a.detected_at > recent_start]

        if len(in_window) < risk.min_alerts_for_scoring:
            logger.debug(f"Region {region_id}: {len(in_window)} alerts in window, insufficient history")
            return RegionRiskState(
                region_id=region_id,
                risk_score=0.0,
                risk_level=RiskLevel.LOW,
                last_computed_at=as_of,
                predicted_alerts=len(recent),
                factors={'density': 0.0, 'severity': 0.0, 'recency': 0.0, 'area': 0.0},
            )

        average_weight = sum(a.severity.weight for a in in_window) / len(in_window)
        total_area = sum(a.area_hectares for a in in_window)

        factors = {
            'density': min(1.0, len(in_window) / risk.density_saturation),
            'severity': average_weight / 4.0,
            'recency': min(1.0, len(recent) / risk.recency_saturation),
            'area': min(1.0, total_area / risk.area_cap_hectares),
        }
        weighted = (factors['density'] * risk.density_weight
                    + factors['severity'] * risk.severity_weight
                    + factors['recency'] * risk.recency_weight
                    + factors['area'] * risk.area_weight)
        score = round(clamp(weighted * 100.0, 0.0, 100.0), 2)

        return RegionRiskState(
            region_id=region_id,
            risk_score=score,
            risk_level=self.level_for(score),
            last_computed_at=as_of,
            predicted_alerts=round(len(recent) * (1 + score / 100.0)),
            factors=factors,
        )

    def level_for(self, score: float) -> RiskLevel:
        if score >= self.config.risk.high_threshold:
            return RiskLevel.HIGH
        if score >= self.config.risk.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def score_region(self, region_id: str, as_of: Optional[datetime] = None) -> RegionRiskState:
        """Read a region's history from the store and score it."""
        as_of = as_of or datetime.now()
        since = as_of - timedelta(days=self.config.risk.window_days)
        alerts = self.database.get_alert_history(region_id, since, as_of)
        return self.score(region_id, alerts, as_of)

    def compute_all(self, region_ids: Optional[Iterable[str]] = None,
                    as_of: Optional[datetime] = None) -> List[RegionRiskState]:
        """Score regions, overwrite their stored risk state and return them ranked."""
        as_of = as_of or datetime.now()
        region_ids = list(region_ids) if region_ids is not None else self.database.list_region_ids()

        states = []
        for region_id in region_ids:
            state = self.score_region(region_id, as_of)
            self.database.save_risk_state(state)
            states.append(state)

        ranked = rank_hotspots(states)
        if ranked:
            top = ranked[0]
            logger.info(f"Risk scores refreshed for {len(ranked)} regions "
                        f"(top hotspot: {top.region_id} at {top.risk_score:.1f}, {top.risk_level.value})")
        return ranked


def rank_hotspots(states: Iterable[RegionRiskState], limit: Optional[int] = None) -> List[RegionRiskState]:
    """Sort by descending score, ties broken by region id."""
    ranked = sorted(states, key=lambda s: (-s.risk_score, s.region_id))
    return ranked[:limit] if limit is not None else ranked
