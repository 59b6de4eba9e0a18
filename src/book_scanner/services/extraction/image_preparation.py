"""Image preparation for extraction requests.

Uses Qt QImage for decoding, scaling and JPEG encoding so no separate imaging
library is needed.

Fail-fast philosophy: prepare_image raises on any decode or encode failure.
"""

from pathlib import Path
from typing import Tuple

from PySide6.QtCore import QBuffer, QByteArray, QIODevice, Qt
from PySide6.QtGui import QImage

from book_scanner.services.extraction.extraction_service import TransientExtractionError

MAX_DIMENSION = 1500
JPEG_QUALITY = 85


def scaled_size(width: int, height: int, max_dimension: int = MAX_DIMENSION) -> Tuple[int, int]:
    """Size that fits inside max_dimension on both sides, keeping aspect ratio.

    Images already small enough are never upscaled.
    """
    scale = min(max_dimension / width, max_dimension / height, 1.0)
    if scale >= 1.0:
        return width, height
    return max(1, int(width * scale)), max(1, int(height * scale))


def prepare_image(image_path: Path) -> bytes:
    """Load, downscale and JPEG-encode a captured image.

    Args:
        image_path: Path to the captured photo.

    Returns:
        JPEG bytes ready to attach to a request.

    Raises:
        TransientExtractionError: If the image cannot be read or encoded.
    """
    path = Path(image_path)
    if not path.exists():
        raise TransientExtractionError(f"Cannot read image: {path}")

    image = QImage(str(path))
    if image.isNull():
        raise TransientExtractionError(f"Cannot decode image: {path}")

    target_width, target_height = scaled_size(image.width(), image.height())
    if (target_width, target_height) != (image.width(), image.height()):
        image = image.scaled(
            target_width,
            target_height,
            Qt.AspectRatioMode.IgnoreAspectRatio,
            Qt.TransformationMode.SmoothTransformation,
        )

    data = QByteArray()
    buffer = QBuffer(data)
    buffer.open(QIODevice.OpenModeFlag.WriteOnly)
    ok = image.save(buffer, "JPG", JPEG_QUALITY)
    buffer.close()
    if not ok:
        raise TransientExtractionError(f"Failed to encode image as JPEG: {path}")

    return data.data()
