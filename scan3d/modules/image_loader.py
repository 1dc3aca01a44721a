"""
Image Loading Module
=====================
Validates, decodes and preprocesses the single 2D image a reconstruction
starts from.

The loader only sees bytes, so the same code serves images uploaded
directly and images staged from object storage.
"""

import io
import logging

import cv2
import numpy as np
from PIL import Image

from ..errors import InvalidInputError
from ..types import ImageMetadata

logger = logging.getLogger("scan3d.modules.image_loader")

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/dicom")

# Modes decoded as a single intensity channel
GRAYSCALE_MODES = ("1", "L", "LA", "I", "I;16", "I;16B", "I;16L", "F")


class MedicalImageLoader:
    """
    Turns raw image bytes into a float32 raster ready for volume synthesis.

    Rasters are (H, W) for grayscale images and (H, W, 3) for color ones.
    """

    def __init__(self, config):
        """
        Initialize the loader.

        Args:
            config: PipelineConfig object with settings
        """
        self.config = config

    def validate(self, image_bytes: bytes, mime_type: str = None):
        """
        Cheap checks done before decoding.

        Args:
            image_bytes: Encoded image
            mime_type: MIME type declared by the caller

        Raises:
            InvalidInputError: If there are no bytes or too many of them
        """
        if not image_bytes:
            raise InvalidInputError("Medical image file is empty")

        max_bytes = self.config.max_image_bytes
        if max_bytes and len(image_bytes) > max_bytes:
            raise InvalidInputError(
                f"Medical image too large for 3D conversion "
                f"({len(image_bytes)} bytes, max {max_bytes})"
            )

        if mime_type and mime_type not in ALLOWED_MIME_TYPES:
            logger.warning(f"Unusual content type for medical image: {mime_type}")

    def decode(self, image_bytes: bytes, mime_type: str = None) -> tuple[np.ndarray, ImageMetadata]:
        """
        Decode image bytes with Pillow.

        Args:
            image_bytes: Encoded image (PNG, JPEG, ...)
            mime_type: MIME type declared by the caller, kept in the metadata

        Returns:
            Tuple of (raster, metadata)

        Raises:
            InvalidInputError: If the bytes are not a decodable image or
                decode to a zero width or height
        """
        if not image_bytes:
            raise InvalidInputError("Medical image file is empty")

        try:
            image = Image.open(io.BytesIO(image_bytes))
            width, height = image.size
            if width == 0 or height == 0:
                raise InvalidInputError(f"Image has zero size ({width}x{height})")
            image.load()
        except InvalidInputError:
            raise
        except Exception as e:
            raise InvalidInputError(f"Failed to decode medical image: {e}") from e

        metadata = ImageMetadata(
            width=width,
            height=height,
            mode=image.mode,
            format=image.format,
            mime_type=mime_type or Image.MIME.get(image.format)
        )
        raster = self._to_raster(image)

        logger.info(
            f"Decoded {metadata.format or 'image'} {width}x{height} (mode {metadata.mode})"
        )
        return raster, metadata

    def _to_raster(self, image: Image.Image) -> np.ndarray:
        """Convert a decoded image to a float32 intensity or RGB array."""
        mode = image.mode

        if mode in GRAYSCALE_MODES:
            if mode in ("1", "LA"):
                image = image.convert("L")
            raster = np.asarray(image, dtype=np.float32)
            if mode.startswith("I"):
                # 16/32-bit integer images are rescaled into the 8-bit range
                raster = raster / 257.0
            return np.clip(raster, 0.0, 255.0)

        # Palette, CMYK, YCbCr, RGBA... all become plain RGB; alpha is ignored
        return np.asarray(image.convert("RGB"), dtype=np.float32)

    def preprocess(self, raster: np.ndarray, max_side: int) -> np.ndarray:
        """
        Bound the in-plane resolution.

        Images whose longest side exceeds ``max_side`` are shrunk with
        area interpolation; smaller images are never enlarged.

        Args:
            raster: (H, W) or (H, W, 3) array
            max_side: Longest side allowed

        Returns:
            float32 raster
        """
        raster = np.asarray(raster, dtype=np.float32)
        if raster.ndim < 2 or raster.shape[0] == 0 or raster.shape[1] == 0:
            raise InvalidInputError(f"Cannot preprocess raster of shape {raster.shape}")

        height, width = raster.shape[:2]
        longest = max(height, width)
        if max_side and longest > max_side:
            scale = max_side / longest
            new_size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
            raster = cv2.resize(raster, new_size, interpolation=cv2.INTER_AREA)
            logger.info(f"Downsampled image from {width}x{height} to {new_size[0]}x{new_size[1]}")

        if not np.isfinite(raster).all():
            raise InvalidInputError("Image contains non-finite pixel values")

        return raster

    def load(self, image_bytes: bytes, mime_type: str = None, max_side: int = None) -> tuple[np.ndarray, ImageMetadata]:
        """Validate, decode and preprocess in one call."""
        self.validate(image_bytes, mime_type)
        raster, metadata = self.decode(image_bytes, mime_type)
        if max_side is None:
            max_side = self.config.max_side_for("standard")
        return self.preprocess(raster, max_side), metadata
