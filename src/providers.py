"""
Image providers backed by local scene archives.

A scene directory holds ``red.npy`` and ``nir.npy`` band arrays plus a
``meta.json`` with ``captured_at`` (ISO date), ``bbox`` ([min_lon, min_lat,
max_lon, max_lat]), ``cloud_cover`` and ``resolution_meters``.
"""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import numpy as np

from image_normalizer import ImageProvider
from models import BoundingBox, RawImagery

logger = logging.getLogger(__name__)


class LocalArchiveProvider(ImageProvider):
    """Serves the scene nearest in time that covers the requested area."""

    name = "local-archive"

    def __init__(self, archive_dir: Path, max_gap_days: int = 16):
        self.archive_dir = Path(archive_dir)
        self.max_gap = timedelta(days=max_gap_days)

    def _scenes(self) -> List[dict]:
        scenes = []
        for meta_path in sorted(self.archive_dir.glob("*/meta.json")):
            try:
                with open(meta_path, "r", encoding="utf-8") as f:
                    meta = json.load(f)
                scenes.append({
                    'path': meta_path.parent,
                    'captured_at': datetime.fromisoformat(meta['captured_at']),
                    'bbox': BoundingBox(*meta['bbox']),
                    'cloud_cover': float(meta.get('cloud_cover', 0.0)),
                    'resolution_meters': float(meta.get('resolution_meters', 10.0)),
                })
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable scene {meta_path.parent}: {e}")
        return scenes

    def fetch_image(self, bounding_box: BoundingBox, timestamp: datetime) -> Optional[RawImagery]:
        lat, lon = bounding_box.centroid
        candidates = [
            scene for scene in self._scenes()
            if scene['bbox'].min_lat <= lat <= scene['bbox'].max_lat
            and scene['bbox'].min_lon <= lon <= scene['bbox'].max_lon
            and abs(scene['captured_at'] - timestamp) <= self.max_gap
        ]
        if not candidates:
            return None

        scene = min(candidates, key=lambda s: (abs(s['captured_at'] - timestamp), s['path'].name))
        logger.info(f"Using scene {scene['path'].name} for {timestamp:%Y-%m-%d}")
        return RawImagery(
            bounding_box=scene['bbox'],
            captured_at=scene['captured_at'],
            red=np.load(scene['path'] / "red.npy"),
            nir=np.load(scene['path'] / "nir.npy"),
            cloud_cover=scene['cloud_cover'],
            resolution_meters=scene['resolution_meters'],
            source=self.name,
        )
