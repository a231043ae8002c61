"""
Input validation utilities for the image optimizer.
"""
import io
import os
from PIL import Image, UnidentifiedImageError
from typing import Optional, Tuple


# Supported image MIME types, their Pillow format names and file extensions
SUPPORTED_IMAGE_FORMATS = {
    'image/jpeg': ('JPEG', '.jpg'),
    'image/jpg': ('JPEG', '.jpg'),
    'image/pjpeg': ('JPEG', '.jpg'),
    'image/png': ('PNG', '.png'),
    'image/webp': ('WEBP', '.webp'),
    'image/gif': ('GIF', '.gif'),
    'image/bmp': ('BMP', '.bmp'),
    'image/tiff': ('TIFF', '.tiff'),
}

DEFAULT_MIME_TYPE = 'image/jpeg'


def normalize_mime_type(content_type: Optional[str]) -> str:
    """
    Lower-case a MIME type and strip parameters such as ``; charset=...``.
    """
    if not content_type:
        return ''
    return content_type.split(';', 1)[0].strip().lower()


def format_for_mime(content_type: str) -> Optional[str]:
    """Return the Pillow format name for a MIME type, or None if unsupported."""
    entry = SUPPORTED_IMAGE_FORMATS.get(normalize_mime_type(content_type))
    return entry[0] if entry else None


def extension_for_mime(content_type: str) -> str:
    """Return the canonical file extension for a MIME type ('' if unknown)."""
    entry = SUPPORTED_IMAGE_FORMATS.get(normalize_mime_type(content_type))
    return entry[1] if entry else ''


def sniff_mime_type(data: bytes) -> Optional[str]:
    """
    Detect the MIME type from the image bytes themselves.

    Args:
        data: Raw image bytes

    Returns:
        MIME type reported by Pillow, or None if the bytes are not an image
    """
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format)
    except (UnidentifiedImageError, OSError):
        return None


def validate_image(data: bytes, content_type: Optional[str] = None) -> Tuple[bool, str]:
    """
    Validates an uploaded image binary.

    Args:
        data: Raw image bytes
        content_type: Declared MIME type (may be empty)

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, (bytes, bytearray)):
        return False, "Invalid image file provided"

    if len(data) == 0:
        return False, "Image file is empty"

    # Declared type, when present, must at least claim to be an image
    mime = normalize_mime_type(content_type)
    if mime and not mime.startswith('image/'):
        return False, f"Invalid image type: {mime}"

    # Validate it's actually an image
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        return True, ""
    except Exception as e:
        return False, f"Invalid image file: {str(e)}"


def sanitize_filename(name: Optional[str], default: str = "image") -> str:
    """
    Sanitize a client supplied filename.

    Args:
        name: Filename to sanitize
        default: Name used when nothing usable remains

    Returns:
        Base name without directories, null bytes or surrounding whitespace
    """
    if not name:
        return default

    # Remove any null bytes and directory components
    sanitized = name.replace('\x00', '').replace('\\', '/')
    sanitized = os.path.basename(sanitized).strip()

    # Limit length to keep storage keys sane
    max_length = 255
    if len(sanitized) > max_length:
        stem, ext = os.path.splitext(sanitized)
        sanitized = stem[:max_length - len(ext)] + ext

    return sanitized or default


def replace_extension(filename: str, content_type: str) -> str:
    """Swap the extension of ``filename`` for the one matching ``content_type``."""
    ext = extension_for_mime(content_type)
    if not ext:
        return filename
    stem, _ = os.path.splitext(filename)
    return f"{stem}{ext}"
