"""
Image Preprocessing Module for Business Card OCR
Validates raw uploads and normalizes them for text recognition
"""

import io
import logging
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .exceptions import ImageTooLarge, UnsupportedImageFormat
from .models import ProcessingOptions

logger = logging.getLogger(__name__)

JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
MIN_HEADER_BYTES = 8


def detect_format(image_bytes: bytes) -> Optional[str]:
    """Return "jpeg" or "png" based on magic bytes, None otherwise."""
    if len(image_bytes) < MIN_HEADER_BYTES:
        return None
    if image_bytes.startswith(JPEG_MAGIC):
        return "jpeg"
    if image_bytes.startswith(PNG_MAGIC):
        return "png"
    return None


class ImagePreprocessor:
    """Validates and preprocesses business card images for optimal OCR results."""

    @staticmethod
    def validate(image_bytes: bytes, options: Optional[ProcessingOptions] = None) -> str:
        """
        Check that a payload is a JPEG or PNG within the size limit.

        Args:
            image_bytes: Raw upload
            options: Processing options carrying the size limit

        Returns:
            Detected format name

        Raises:
            UnsupportedImageFormat: Empty, truncated or non JPEG/PNG payload
            ImageTooLarge: Payload above options.max_image_bytes
        """
        options = options or ProcessingOptions()

        if not image_bytes:
            raise UnsupportedImageFormat("empty image payload", field="image",
                                         user_message="Image data is empty")

        if len(image_bytes) > options.max_image_bytes:
            raise ImageTooLarge(len(image_bytes), options.max_image_bytes)

        image_format = detect_format(image_bytes)
        if image_format is None:
            raise UnsupportedImageFormat(
                f"unrecognized image header ({len(image_bytes)} bytes)", field="image"
            )
        return image_format

    @staticmethod
    def image_size(image_bytes: bytes) -> Tuple[int, int]:
        """Read (width, height) from the image header, (0, 0) when unknown."""
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                return img.size
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.debug(f"Could not read image dimensions: {e}")
            return 0, 0

    @staticmethod
    def target_size(width: int, height: int, options: ProcessingOptions) -> Tuple[int, int]:
        """
        Fit (width, height) into the target box keeping the aspect ratio.

        Each axis is clamped to [min_dimension, max_dimension].
        """
        box_w = options.target_width or width
        box_h = options.target_height or height
        scale = min(box_w / width, box_h / height)

        new_w = int(round(width * scale))
        new_h = int(round(height * scale))

        new_w = max(options.min_dimension, min(options.max_dimension, new_w))
        new_h = max(options.min_dimension, min(options.max_dimension, new_h))
        return new_w, new_h

    @staticmethod
    def preprocess(image_bytes: bytes, options: Optional[ProcessingOptions] = None) -> bytes:
        """
        Apply the configured transforms and re-encode as PNG.

        Args:
            image_bytes: Validated JPEG or PNG bytes
            options: Processing options

        Returns:
            PNG encoded bytes
        """
        options = options or ProcessingOptions()

        buffer = np.frombuffer(image_bytes, dtype=np.uint8)
        img = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if img is None:
            raise UnsupportedImageFormat("image could not be decoded", field="image")

        logger.debug(f"Original image shape: {img.shape}")

        # 1. Resize into the target box
        height, width = img.shape[:2]
        if options.target_width or options.target_height:
            new_w, new_h = ImagePreprocessor.target_size(width, height, options)
            if (new_w, new_h) != (width, height):
                img = cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_CUBIC)
                logger.debug(f"Resized from {width}x{height} to {new_w}x{new_h}")

        # 2. Grayscale
        if options.grayscale:
            img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)

        # 3. Contrast and brightness
        if options.contrast or options.brightness:
            alpha = 1 + options.contrast / 100
            beta = 255 * options.brightness / 100
            img = cv2.convertScaleAbs(img, alpha=alpha, beta=beta)

        # 4. Denoise
        if options.denoise:
            img = cv2.GaussianBlur(img, (3, 3), 0)

        # 5. Sharpen
        if options.sharpen:
            img = cv2.convertScaleAbs(img, alpha=1.1, beta=0)

        ok, encoded = cv2.imencode(".png", img)
        if not ok:
            raise UnsupportedImageFormat("failed to encode preprocessed image")

        return encoded.tobytes()
