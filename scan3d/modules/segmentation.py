"""
Segmentation Module
====================
Splits a filtered volume into four tissue classes around an automatically
chosen threshold.

The threshold comes from Otsu's method on a 256-bin histogram: the level
that maximizes the between-class variance of the two partitions it
induces. Voxels are then banded at fixed fractions of that threshold:

    v < 0.3 t  -> background      (0)
    v < 0.7 t  -> soft tissue     (85)
    v < t      -> dense tissue    (170)
    otherwise  -> bone-equivalent (255)
"""

import logging

import numpy as np

from ..types import MedicalVolume, SegmentedVolume, TISSUE_LEVELS

logger = logging.getLogger("scan3d.modules.segmentation")

HISTOGRAM_BINS = 256
BAND_FRACTIONS = (0.3, 0.7, 1.0)


def intensity_histogram(voxels: np.ndarray) -> np.ndarray:
    """256-bin histogram of floor(clip(v, 0, 255))."""
    bins = np.floor(np.clip(voxels, 0, HISTOGRAM_BINS - 1)).astype(np.int64)
    return np.bincount(bins.ravel(), minlength=HISTOGRAM_BINS)


def otsu_threshold(histogram: np.ndarray) -> int:
    """
    Level t in [0, 255] maximizing between-class variance.

    Bins <= t form the background class and bins > t the foreground.
    Levels with an empty class are skipped, the first maximum wins ties,
    and 0 is returned when no level separates two non-empty classes (a
    uniform volume, for instance).
    """
    histogram = np.asarray(histogram, dtype=np.float64)
    total = histogram.sum()
    if total == 0:
        return 0

    levels = np.arange(len(histogram), dtype=np.float64)
    weight_bg = np.cumsum(histogram)
    weight_fg = total - weight_bg
    sum_bg = np.cumsum(levels * histogram)
    sum_total = sum_bg[-1]

    valid = (weight_bg > 0) & (weight_fg > 0)
    variance = np.zeros_like(weight_bg)
    mean_bg = sum_bg[valid] / weight_bg[valid]
    mean_fg = (sum_total - sum_bg[valid]) / weight_fg[valid]
    variance[valid] = weight_bg[valid] * weight_fg[valid] * (mean_bg - mean_fg) ** 2

    best = int(np.argmax(variance))
    if variance[best] <= 0:
        return 0
    return best


def classify(voxels: np.ndarray, threshold: float) -> np.ndarray:
    """Quantize voxels to TISSUE_LEVELS using bands relative to threshold."""
    voxels = np.asarray(voxels)
    conditions = [voxels < threshold * fraction for fraction in BAND_FRACTIONS]
    return np.select(conditions, list(TISSUE_LEVELS[:3]), default=TISSUE_LEVELS[3]).astype(np.float32)


class SegmentationEngine:
    """
    Otsu-threshold tissue segmentation.
    """

    def __init__(self, config=None):
        """
        Initialize the segmentation engine.

        Args:
            config: PipelineConfig object with settings (unused, kept for a
                uniform stage constructor)
        """
        self.config = config

    def segment(self, volume: MedicalVolume) -> tuple[SegmentedVolume, float]:
        """
        Segment a filtered volume.

        Args:
            volume: Output of the enhancement filter

        Returns:
            Tuple of (segmented volume, threshold in [0, 255])
        """
        histogram = intensity_histogram(volume.voxels)
        threshold = float(otsu_threshold(histogram))
        labels = classify(volume.voxels, threshold)

        segmented = SegmentedVolume(
            width=volume.width,
            height=volume.height,
            depth=volume.depth,
            voxels=labels,
            spacing=volume.spacing,
            origin=volume.origin,
            threshold=threshold
        )

        counts = segmented.class_counts()
        logger.info(
            f"Otsu threshold {threshold:.0f}; classes: "
            + ", ".join(f"{name}={count}" for name, count in counts.items())
        )
        return segmented, threshold
