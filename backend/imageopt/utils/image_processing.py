"""
Image processing utilities: bounded lossy recompression and resizing.
"""
import io
import logging
from PIL import Image, ImageOps
from typing import Callable, Optional

from imageopt.errors import CompressionError
from imageopt.utils.validation import format_for_mime


logger = logging.getLogger(__name__)

# Formats whose encoder takes a quality setting
LOSSY_FORMATS = {'JPEG', 'WEBP'}

WHITE = (255, 255, 255)
SHRINK_FACTOR = 0.95
MIN_DIMENSION = 1


def to_pil_quality(quality: float) -> int:
    """Convert a (0, 1] quality into Pillow's 1-95 JPEG/WebP scale."""
    return max(1, min(95, int(round(quality * 100))))


def has_alpha(img: Image.Image) -> bool:
    return img.mode in ('RGBA', 'LA', 'PA') or 'transparency' in img.info


def flatten_onto_white(img: Image.Image) -> Image.Image:
    """
    Blit ``img`` onto an opaque white RGB canvas of the same size.

    Transparent pixels become white instead of black when the result is
    fed to a lossy encoder. The caller owns (and must close) the canvas.
    """
    canvas = Image.new('RGB', img.size, WHITE)
    if has_alpha(img):
        rgba = img.convert('RGBA')
        try:
            canvas.paste(rgba, mask=rgba.getchannel('A'))
        finally:
            rgba.close()
    else:
        rgb = img if img.mode == 'RGB' else img.convert('RGB')
        try:
            canvas.paste(rgb)
        finally:
            if rgb is not img:
                rgb.close()
    return canvas


def encode_image(img: Image.Image, fmt: str, quality: float) -> bytes:
    """Encode ``img`` as ``fmt`` and return the bytes."""
    output = io.BytesIO()
    if fmt in LOSSY_FORMATS:
        img.save(output, format=fmt, quality=to_pil_quality(quality), optimize=fmt == 'JPEG')
    elif fmt == 'PNG':
        img.save(output, format=fmt, optimize=True)
    else:
        img.save(output, format=fmt)
    return output.getvalue()


def _prepare_for(img: Image.Image, fmt: str) -> Image.Image:
    """Return an image in a mode ``fmt`` can store (JPEG has no alpha)."""
    if fmt == 'JPEG':
        if has_alpha(img):
            return flatten_onto_white(img)
        if img.mode not in ('RGB', 'L', 'CMYK'):
            return img.convert('RGB')
    elif fmt == 'WEBP' and img.mode not in ('RGB', 'RGBA'):
        return img.convert('RGBA' if has_alpha(img) else 'RGB')
    return img.copy()


def compress_image(
    image_bytes: bytes,
    mime_type: str,
    *,
    max_size_mb: float,
    max_width_or_height: int,
    quality: float,
    on_progress: Optional[Callable[[float], None]] = None,
    max_iterations: int = 10,
) -> bytes:
    """
    Recompresses an image in its own format, capping its dimensions.

    The longest side is limited to ``max_width_or_height`` (never
    upscaled). While the result is above ``max_size_mb`` the image is
    shrunk by 5% per iteration, and lossy formats also lose 5% quality.

    Args:
        image_bytes: Original image bytes
        mime_type: MIME type of the original; the output keeps it
        max_size_mb: Target size bound in MB
        max_width_or_height: Longest side in pixels
        quality: Initial lossy quality in (0, 1]
        on_progress: Receives the compressor's own 0-100 progress
        max_iterations: Upper bound on shrink iterations

    Returns:
        Compressed image bytes (same format as the input)

    Raises:
        CompressionError: If the image cannot be decoded or re-encoded
    """
    def report(value: float) -> None:
        if on_progress is not None:
            on_progress(value)

    fmt = format_for_mime(mime_type)
    if fmt is None:
        raise CompressionError(f"Unsupported image type for compression: {mime_type}")

    max_bytes = int(max_size_mb * 1024 * 1024)
    report(0)

    try:
        with Image.open(io.BytesIO(image_bytes)) as source:
            if getattr(source, 'is_animated', False):
                raise CompressionError("Animated images are not recompressed")

            # Fix orientation so the resize works on displayed dimensions
            oriented = ImageOps.exif_transpose(source)
            try:
                working = _prepare_for(oriented, fmt)
            finally:
                oriented.close()

        try:
            # Resize maintaining aspect ratio
            working.thumbnail((max_width_or_height, max_width_or_height), Image.Resampling.LANCZOS)
            output = encode_image(working, fmt, quality)
            report(100 / (max_iterations + 1))

            current_quality = quality
            for iteration in range(1, max_iterations + 1):
                if len(output) <= max_bytes:
                    break

                width = max(MIN_DIMENSION, int(working.width * SHRINK_FACTOR))
                height = max(MIN_DIMENSION, int(working.height * SHRINK_FACTOR))
                resized = working.resize((width, height), Image.Resampling.LANCZOS)
                working.close()
                working = resized

                if fmt in LOSSY_FORMATS:
                    current_quality = max(0.01, current_quality * SHRINK_FACTOR)
                output = encode_image(working, fmt, current_quality)
                report(100 * (iteration + 1) / (max_iterations + 1))

                logger.debug('Compression iteration', extra={
                    'iteration': iteration,
                    'size_bytes': len(output),
                    'quality': round(current_quality, 3),
                })
        finally:
            working.close()
    except CompressionError:
        raise
    except Exception as e:
        raise CompressionError(f"Compression failed: {str(e)}") from e

    if not output:
        raise CompressionError("Encoder produced no data")

    report(100)
    return output
