#!/usr/bin/env python3
"""
Forest Watch System.
Combines image normalization, change detection, alert deduplication,
subscriber notifications and regional risk scoring.
"""

import argparse
import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional

from config import Config
from alert_writer import AlertWriter, RegionLockRegistry
from change_detector import ChangeDetector
from channels import ChannelAdapter
from database_manager import DatabaseManager
from exceptions import ForestWatchError, ImageryError, RegionNotFound
from image_normalizer import ImageNormalizer, ImageProvider
from models import BoundingBox, Channel, DetectionTrigger, PipelineRun, Region, RegionRiskState
from notification_service import NotificationService
from providers import LocalArchiveProvider
from risk_scorer import RiskScorer, rank_hotspots
from severity_classifier import SeverityClassifier
from utils import PerformanceTimer

logger = logging.getLogger(__name__)


class ForestWatchSystem:
    """
    Detection -> alerting -> risk-scoring pipeline.

    Each run_detection() call is an independent unit of work for one region;
    runs for different regions may overlap freely, runs for the same region
    are serialized at the alert-writing step.
    """

    def __init__(self, config: Optional[Config] = None,
                 providers: Optional[Dict[str, ImageProvider]] = None,
                 adapters: Optional[Dict[Channel, ChannelAdapter]] = None,
                 default_provider: Optional[str] = None):
        self.config = config or Config()
        self.providers = providers or {}
        self.default_provider = default_provider or next(iter(self.providers), None)

        self.database = DatabaseManager(self.config)
        self.normalizer = ImageNormalizer(self.config)
        self.classifier = SeverityClassifier(self.config)
        self.detector = ChangeDetector(self.config, self.classifier)
        self.writer = AlertWriter(self.config, self.database, RegionLockRegistry())
        self.notifier = NotificationService(self.config, self.database, adapters)
        self.risk_scorer = RiskScorer(self.config, self.database)

        # Thread pool for blocking operations (provider fetches, SQLite)
        self.executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="forestwatch")

    def _provider_for(self, source_hint: Optional[str]) -> ImageProvider:
        if source_hint and source_hint in self.providers:
            return self.providers[source_hint]
        if source_hint:
            logger.warning(f"Unknown image source '{source_hint}', using {self.default_provider}")
        if self.default_provider is None:
            raise ForestWatchError("No image provider configured")
        return self.providers[self.default_provider]

    async def run_detection(self, trigger: DetectionTrigger) -> PipelineRun:
        """
        Run the full pipeline for one region and time window.

        Raises:
            RegionNotFound: unknown region (fatal to the run)
            ImageUnavailable / ImageQualityError: no usable after image; retry
                with a different window
            ConcurrencyConflict: another run holds the region; retry with backoff
        """
        start = time.time()
        loop = asyncio.get_running_loop()
        run = PipelineRun(region_id=trigger.region_id)

        region = await loop.run_in_executor(self.executor, self.database.get_region, trigger.region_id)
        if region is None:
            logger.error(f"Pipeline run rejected: region {trigger.region_id} not found")
            raise RegionNotFound(trigger.region_id)

        provider = self._provider_for(trigger.source_hint)

        with PerformanceTimer(f"Image acquisition for {region.id}"):
            after = await loop.run_in_executor(
                self.executor, self.normalizer.acquire, provider, region, trigger.window_end
            )
            try:
                before = await loop.run_in_executor(
                    self.executor, self.normalizer.acquire, provider, region, trigger.window_start
                )
            except ImageryError as e:
                logger.warning(f"Region {region.id}: before image unavailable ({e})")
                before = None

        baseline = None
        if not self.detector.is_usable(before):
            baseline = await loop.run_in_executor(
                self.executor, self.database.get_last_good_baseline, region.id, after.captured_at
            )

        run.detection = self.detector.detect(before, after, region.area_hectares, baseline)

        if run.detection.detected:
            run.write_result = await loop.run_in_executor(
                self.executor, partial(self.writer.write, run.detection)
            )
            if run.write_result.outcome.alert_changed:
                run.dispatch_results = await self.notifier.notify(run.write_result.alert, region.name)

        if self.detector.is_usable(after):
            await loop.run_in_executor(self.executor, self.database.save_baseline, after)

        run.processing_time = time.time() - start
        outcome = run.write_result.outcome.value if run.write_result else "NO_ALERT"
        logger.info(f"Region {region.id}: run complete in {run.processing_time:.2f}s ({outcome})")
        return run

    async def refresh_risk_scores(self, as_of: Optional[datetime] = None,
                                  limit: Optional[int] = None) -> List[RegionRiskState]:
        """Recompute every region's risk state and return the ranked hotspots."""
        loop = asyncio.get_running_loop()
        ranked = await loop.run_in_executor(
            self.executor, partial(self.risk_scorer.compute_all, None, as_of)
        )
        return rank_hotspots(ranked, limit)

    def close(self):
        self.executor.shutdown(wait=True, cancel_futures=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _parse_date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forest Watch deforestation pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    detect = subparsers.add_parser("detect", help="Run change detection for a region")
    detect.add_argument("region_id")
    detect.add_argument("--start", type=_parse_date, required=True, help="Before image date (ISO)")
    detect.add_argument("--end", type=_parse_date, required=True, help="After image date (ISO)")
    detect.add_argument("--archive", type=Path, required=True, help="Local scene archive directory")

    risk = subparsers.add_parser("risk", help="Recompute regional risk and list hotspots")
    risk.add_argument("--top", type=int, default=10)

    region = subparsers.add_parser("add-region", help="Register a forest region")
    region.add_argument("region_id")
    region.add_argument("--name", required=True)
    region.add_argument("--bbox", type=float, nargs=4, required=True,
                        metavar=("MIN_LON", "MIN_LAT", "MAX_LON", "MAX_LAT"))
    return parser


async def _main(args) -> int:
    providers = {}
    if args.command == "detect":
        providers[LocalArchiveProvider.name] = LocalArchiveProvider(args.archive)

    async with ForestWatchSystem(providers=providers) as system:
        if args.command == "detect":
            run = await system.run_detection(DetectionTrigger(
                region_id=args.region_id, window_start=args.start, window_end=args.end
            ))
            detection = run.detection
            print(f"Detected: {detection.detected} (delta={detection.index_delta:+.3f}, "
                  f"confidence={detection.confidence:.2f}, severity={detection.severity.value})")
            if run.write_result and run.write_result.alert:
                print(f"Alert {run.write_result.alert.code}: {run.write_result.outcome.value}")
        elif args.command == "add-region":
            bbox = BoundingBox(*args.bbox)
            system.database.add_region(Region(id=args.region_id, name=args.name,
                                              bounding_box=bbox, area_hectares=bbox.area_hectares()))
            print(f"Registered {args.region_id} ({bbox.area_hectares():.1f} ha)")
        else:
            for rank, state in enumerate(await system.refresh_risk_scores(limit=args.top), start=1):
                print(f"{rank:2d}. {state.region_id:<20} {state.risk_score:6.2f} {state.risk_level.value}")
    return 0


def cli():
    """Command-line entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    arguments = build_parser().parse_args()
    try:
        raise SystemExit(asyncio.run(_main(arguments)))
    except ForestWatchError as e:
        logger.error(f"Run failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
