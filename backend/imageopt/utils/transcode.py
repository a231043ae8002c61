"""
Format transcoding: decode, flatten onto white, re-encode in a smaller container.
"""
import io
import logging
from PIL import Image
from typing import Callable, Optional, Tuple

from imageopt.errors import TranscodeError
from imageopt.utils.image_processing import encode_image, flatten_onto_white
from imageopt.utils.validation import format_for_mime


logger = logging.getLogger(__name__)

WEBP_MIME_TYPE = 'image/webp'
FALLBACK_MIME_TYPE = 'image/jpeg'


def _encode_or_empty(canvas: Image.Image, fmt: str, quality: float) -> bytes:
    """Encode ``canvas``; an encoder failure counts as an empty result."""
    try:
        return encode_image(canvas, fmt, quality)
    except (OSError, KeyError, ValueError) as e:
        logger.warning(f'{fmt} encoder failed: {str(e)}')
        return b''


def transcode_image(
    image_bytes: bytes,
    *,
    quality: float,
    target_mime: str = WEBP_MIME_TYPE,
    on_drawn: Optional[Callable[[], None]] = None,
) -> Tuple[bytes, str]:
    """
    Transcodes an image into ``target_mime``.

    The decoded bitmap is drawn onto an opaque white canvas before the
    lossy encode. If the target encoder yields nothing, the same canvas
    is encoded as JPEG at the same quality.

    Args:
        image_bytes: Encoded image (the current best candidate)
        quality: Encoder quality in (0, 1]
        target_mime: MIME type to transcode into
        on_drawn: Called once the bitmap has been decoded and drawn

    Returns:
        Tuple of (encoded_bytes, mime_type_of_encoded_bytes)

    Raises:
        TranscodeError: If decoding fails or no encoder produced data
    """
    target_format = format_for_mime(target_mime)
    if target_format is None:
        raise TranscodeError(f"Unsupported transcode target: {target_mime}")

    try:
        with Image.open(io.BytesIO(image_bytes)) as bitmap:
            if getattr(bitmap, 'is_animated', False):
                raise TranscodeError("Animated images are not transcoded")
            bitmap.load()
            canvas = flatten_onto_white(bitmap)
    except TranscodeError:
        raise
    except Exception as e:
        raise TranscodeError(f"Could not decode image for transcoding: {str(e)}") from e

    try:
        if on_drawn is not None:
            on_drawn()

        encoded = _encode_or_empty(canvas, target_format, quality)
        if encoded:
            return encoded, target_mime

        # Fall back to a baseline lossy format
        logger.info(f'{target_format} encode was empty, retrying as JPEG')
        encoded = _encode_or_empty(canvas, 'JPEG', quality)
        if encoded:
            return encoded, FALLBACK_MIME_TYPE

        raise TranscodeError("Failed to convert image to any compressed format")
    finally:
        canvas.close()
