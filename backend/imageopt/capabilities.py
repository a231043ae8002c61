"""
Runtime codec capability checks.

The workflow receives one of these as an injected probe so that missing
encoders (e.g. Pillow built without libwebp) only change behaviour, not
the pipeline code.
"""
from typing import Callable

from PIL import Image, features

from imageopt.utils.validation import format_for_mime


CapabilityProbe = Callable[[str], bool]

# Formats whose encoder lives in an optional native library
_CODEC_FEATURES = {
    'WEBP': 'webp',
    'JPEG': 'jpg',
}


def can_encode(target: str) -> bool:
    """
    Check whether this Pillow build can write ``target``.

    Args:
        target: MIME type (``image/webp``) or Pillow format name (``WEBP``)

    Returns:
        True if an encoder is available
    """
    fmt = format_for_mime(target) if '/' in target else target.upper()
    if not fmt:
        return False

    Image.init()
    if fmt not in Image.SAVE:
        return False

    feature = _CODEC_FEATURES.get(fmt)
    if feature is None:
        return True
    try:
        return bool(features.check(feature))
    except ValueError:
        return False


def is_webp_supported() -> bool:
    return can_encode('image/webp')
