"""
Volume Synthesis Module
========================
Builds a pseudo-3D scalar volume from a single 2D raster.

Each pixel becomes a luminance value, which is repeated through a stack of
slices and attenuated with distance from the center slice:

    value(x, y, z) = luminance(x, y) * exp(-|z - depth / 2| * falloff)

so the image plane stays brightest and slices fade toward both ends.
"""

import logging

import numpy as np

from ..errors import InvalidInputError
from ..types import MedicalVolume

logger = logging.getLogger("scan3d.modules.volume_synthesizer")

# ITU-R BT.601 luma weights
LUMINANCE_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def select_depth(width: int, height: int, min_depth: int = 32, max_depth: int = 64, divisor: int = 20) -> int:
    """Slice count for an image, clamped to [min_depth, max_depth]."""
    return int(max(min_depth, min(max_depth, (width + height) // divisor)))


def to_luminance(raster: np.ndarray) -> np.ndarray:
    """
    Per-pixel perceptual luminance.

    Args:
        raster: (H, W) intensities or (H, W, C) with C >= 3; channels past
            the third (alpha) are ignored

    Returns:
        float32 (H, W) array
    """
    raster = np.asarray(raster)
    if raster.ndim == 2:
        return raster.astype(np.float32)
    if raster.ndim == 3 and raster.shape[2] == 1:
        return raster[:, :, 0].astype(np.float32)
    if raster.ndim == 3 and raster.shape[2] >= 3:
        rgb = raster[:, :, :3].astype(np.float64)
        return (rgb @ LUMINANCE_WEIGHTS).astype(np.float32)
    raise InvalidInputError(f"Unsupported raster shape {raster.shape}")


def depth_attenuation(depth: int, falloff: float = 0.05) -> np.ndarray:
    """Exponential falloff factor for each slice, peaking at depth / 2."""
    z = np.arange(depth, dtype=np.float64)
    return np.exp(-np.abs(z - depth / 2.0) * falloff)


class VolumeSynthesizer:
    """
    Creates a MedicalVolume of shape width x height x depth from a raster.
    """

    def __init__(self, config):
        """
        Initialize the synthesizer.

        Args:
            config: PipelineConfig object with settings
        """
        self.config = config

    def select_depth(self, width: int, height: int) -> int:
        return select_depth(
            width,
            height,
            min_depth=self.config.min_depth,
            max_depth=self.config.max_depth,
            divisor=self.config.depth_divisor
        )

    def synthesize(self, raster: np.ndarray, depth: int = None) -> MedicalVolume:
        """
        Generate the volume.

        Args:
            raster: Decoded image, (H, W) or (H, W, C)
            depth: Slice count; chosen from the image size when omitted

        Returns:
            New MedicalVolume with nominal spacing and zero origin

        Raises:
            InvalidInputError: If the raster is empty or the volume would
                exceed the configured voxel budget
        """
        raster = np.asarray(raster)
        if raster.ndim < 2 or raster.shape[0] == 0 or raster.shape[1] == 0:
            raise InvalidInputError(f"Cannot build a volume from an empty image {raster.shape}")

        height, width = raster.shape[:2]
        if depth is None:
            depth = self.select_depth(width, height)
        elif depth <= 0:
            raise InvalidInputError(f"Volume depth must be positive, got {depth}")

        voxel_count = width * height * depth
        if self.config.max_voxels and voxel_count > self.config.max_voxels:
            raise InvalidInputError(
                f"Volume of {width}x{height}x{depth} exceeds the budget of "
                f"{self.config.max_voxels} voxels"
            )

        luminance = to_luminance(raster)
        factors = depth_attenuation(depth, self.config.depth_falloff).astype(np.float32)

        # [z, y, x] ordering makes the flattened array x-fastest
        voxels = luminance[np.newaxis, :, :] * factors[:, np.newaxis, np.newaxis]

        volume = MedicalVolume(
            width=width,
            height=height,
            depth=depth,
            voxels=voxels,
            spacing=self.config.spacing,
            origin=(0.0, 0.0, 0.0)
        )

        logger.info(
            f"Synthesized volume {width}x{height}x{depth} "
            f"(range {volume.voxels.min():.1f} - {volume.voxels.max():.1f})"
        )
        return volume
