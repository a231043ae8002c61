"""
Error types raised by the image optimization pipeline.
"""


class ImageOptimizationError(Exception):
    """Base image optimization error"""


class InvalidImageError(ImageOptimizationError):
    """Input is not a recognizable image; the caller must not upload it"""


class StageError(ImageOptimizationError):
    """A pipeline stage failed; recovered inside the workflow"""


class CompressionError(StageError):
    """Lossy recompression or resizing failed"""


class TranscodeError(StageError):
    """Format transcoding produced no usable output"""
