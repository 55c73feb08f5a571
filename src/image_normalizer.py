"""
Image normalization for the forest watch system.

Turns raw provider bands into a NormalizedImage: a scalar vegetation index
plus bounded brightness/texture proxies and quality metadata.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Optional

import cv2
import numpy as np

from config import Config
from exceptions import ImageUnavailable, ImageQualityError
from models import BoundingBox, NormalizedImage, RawImagery, Region
from utils import clamp

logger = logging.getLogger(__name__)


class ImageProvider:
    """Pull interface implemented by satellite imagery sources."""

    name = "provider"

    def fetch_image(self, bounding_box: BoundingBox, timestamp: datetime) -> Optional[RawImagery]:
        """Return imagery nearest to timestamp, or None when there is no coverage."""
        raise NotImplementedError


class ImageNormalizer:
    """Fetches provider imagery and reduces it to a comparable summary."""

    def __init__(self, config: Config):
        self.config = config

    def acquire(self, provider: ImageProvider, region: Region, timestamp: datetime) -> NormalizedImage:
        """Fetch and normalize imagery for a region at a point in time."""
        raw = self.fetch(provider, region.bounding_box, timestamp)
        return self.normalize(raw, region.id, region.bounding_box)

    def fetch(self, provider: ImageProvider, bounding_box: BoundingBox,
              timestamp: datetime, timeout: float = None) -> RawImagery:
        """Call the provider with a bounded timeout. Never retries."""
        timeout = timeout or self.config.imagery.fetch_timeout

        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(provider.fetch_image, bounding_box, timestamp)
            try:
                raw = future.result(timeout=timeout)
            except FutureTimeoutError:
                logger.error(f"{provider.name} timed out after {timeout}s for {timestamp:%Y-%m-%d}")
                raise ImageUnavailable(f"Image fetch exceeded timeout of {timeout}s")
            except Exception as e:
                logger.error(f"{provider.name} fetch failed: {e}")
                raise ImageUnavailable(f"Provider error: {e}") from e
        finally:
            # Abandon a hung provider call rather than waiting on it
            executor.shutdown(wait=False, cancel_futures=True)

        if raw is None:
            raise ImageUnavailable(
                f"No imagery from {provider.name} for {bounding_box.as_tuple()} at {timestamp:%Y-%m-%d}"
            )
        return raw

    def normalize(self, raw: RawImagery, region_id: str,
                  bounding_box: Optional[BoundingBox] = None) -> NormalizedImage:
        """
        Reduce raw bands to a NormalizedImage, rejecting overly cloudy scenes.

        The image is located at bounding_box when given (the region being
        watched), otherwise at the scene footprint reported by the provider.
        """
        cloud_cover = clamp(float(raw.cloud_cover), 0.0, 1.0)
        ceiling = self.config.imagery.cloud_cover_ceiling
        if cloud_cover > ceiling:
            raise ImageQualityError(
                f"Cloud cover {cloud_cover:.0%} exceeds ceiling {ceiling:.0%}",
                cloud_cover=cloud_cover
            )

        red, nir = self._prepare_bands(raw.red, raw.nir)
        ndvi, valid = self.compute_ndvi(red, nir)

        valid_fraction = float(valid.mean()) if valid.size else 0.0
        vegetation_index = float(ndvi[valid].mean()) if valid.any() else 0.0
        vegetation_index = clamp(vegetation_index, -1.0, 1.0)

        return NormalizedImage(
            region_id=region_id,
            captured_at=raw.captured_at,
            vegetation_index=vegetation_index,
            brightness=self._brightness(red, nir),
            texture=self._texture(ndvi),
            cloud_cover_fraction=cloud_cover,
            resolution_meters=raw.resolution_meters,
            bounding_box=bounding_box or raw.bounding_box,
            valid_pixel_fraction=valid_fraction,
            cover_class=self.classify_cover(vegetation_index),
        )

    def _prepare_bands(self, red, nir):
        red = np.atleast_2d(np.asarray(red, dtype=np.float32))
        nir = np.atleast_2d(np.asarray(nir, dtype=np.float32))
        if red.shape != nir.shape:
            raise ImageUnavailable(f"Band shapes differ: red {red.shape}, nir {nir.shape}")
        if red.size == 0:
            raise ImageUnavailable("Provider returned empty bands")

        # 0..10000 surface reflectance products
        scale = self.config.imagery.reflectance_scale
        finite_values = np.concatenate([red[np.isfinite(red)], nir[np.isfinite(nir)]])
        if finite_values.size and finite_values.max() > 1.0:
            red = red / scale
            nir = nir / scale
        return red, nir

    @staticmethod
    def compute_ndvi(red: np.ndarray, nir: np.ndarray):
        """
        Per-pixel NDVI = (NIR - Red) / (NIR + Red), clamped to [-1, 1].

        Pixels with a zero band sum get index 0. Returns (ndvi, valid_mask) where
        valid marks finite pixels with a non-zero band sum.
        """
        finite = np.isfinite(red) & np.isfinite(nir)
        red = np.where(finite, red, 0.0)
        nir = np.where(finite, nir, 0.0)
        denominator = nir + red
        nonzero = denominator != 0
        with np.errstate(divide='ignore', invalid='ignore'):
            ndvi = np.where(nonzero, (nir - red) / np.where(nonzero, denominator, 1.0), 0.0)
        ndvi = np.clip(ndvi, -1.0, 1.0).astype(np.float32)
        return ndvi, finite & nonzero

    @staticmethod
    def _brightness(red: np.ndarray, nir: np.ndarray) -> float:
        magnitude = (np.nan_to_num(red) + np.nan_to_num(nir)) / 2
        return clamp(float(magnitude.mean()), 0.0, 1.0)

    def _texture(self, ndvi: np.ndarray) -> float:
        """Local variance proxy: Laplacian variance of the NDVI raster."""
        if min(ndvi.shape) < 3:
            return 0.0
        laplacian = cv2.Laplacian(ndvi.astype(np.float64), cv2.CV_64F)
        variance = float(laplacian.var())
        return clamp(variance / self.config.imagery.texture_saturation, 0.0, 1.0)

    @staticmethod
    def classify_cover(vegetation_index: float) -> str:
        if vegetation_index < 0:
            return "water"
        if vegetation_index < 0.3:
            return "sparse"
        if vegetation_index < 0.6:
            return "moderate"
        return "dense"
