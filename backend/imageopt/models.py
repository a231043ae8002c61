"""
Data model for the image optimization pipeline.

Everything here is immutable and scoped to a single optimization call:
the source image, the caller's options, the candidates produced by each
stage and the final optimized image.
"""
import io
import mimetypes
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cached_property
from pathlib import Path
from typing import Callable, Optional, Tuple

from PIL import Image, UnidentifiedImageError
from werkzeug.datastructures import FileStorage

from imageopt.utils.validation import (
    DEFAULT_MIME_TYPE,
    format_for_mime,
    normalize_mime_type,
    sanitize_filename,
    sniff_mime_type,
)


ProgressSink = Callable[[int], None]


class Provenance(str, Enum):
    """Which stage produced a candidate."""

    ORIGINAL = "original"
    COMPRESSED = "compressed"
    TRANSCODED = "transcoded"


@dataclass(frozen=True)
class SourceImage:
    """
    Raw image as handed over by the caller.

    Fields:
        data: Encoded image bytes, never modified.
        mime_type: Declared MIME type (falls back to the sniffed type).
        name: Original filename.
    """

    data: bytes
    mime_type: str
    name: str = "image"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def format(self) -> Optional[str]:
        """Pillow format name for the declared MIME type."""
        return format_for_mime(self.mime_type)

    @cached_property
    def dimensions(self) -> Optional[Tuple[int, int]]:
        """(width, height), probed from the header on first access."""
        try:
            with Image.open(io.BytesIO(self.data)) as img:
                return img.size
        except (UnidentifiedImageError, OSError):
            return None

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: Optional[str] = None, name: Optional[str] = None) -> "SourceImage":
        mime = normalize_mime_type(mime_type) or sniff_mime_type(data) or DEFAULT_MIME_TYPE
        return cls(data=bytes(data), mime_type=mime, name=sanitize_filename(name))

    @classmethod
    def from_path(cls, path) -> "SourceImage":
        path = Path(path)
        mime, _ = mimetypes.guess_type(path.name)
        return cls.from_bytes(path.read_bytes(), mime_type=mime, name=path.name)

    @classmethod
    def from_file_storage(cls, file: FileStorage) -> "SourceImage":
        """Build a source image from an uploaded werkzeug ``FileStorage``."""
        file.stream.seek(0)
        data = file.read()
        file.stream.seek(0)
        return cls.from_bytes(data, mime_type=file.content_type, name=file.filename)


@dataclass(frozen=True)
class OptimizationConfig:
    """
    Caller options for one optimization call.

    Fields:
        max_width_or_height: Longest side of the output, px.
        max_size_mb: Target upper bound for the compressed output, MB.
        quality: Lossy encoder quality in (0, 1].
        use_webp: Try transcoding to WebP when the runtime supports it.
        debug: Log formats and dimensions of input and output.
        on_progress: Sink receiving integers 0..100.
    """

    max_width_or_height: int = 1920
    max_size_mb: float = 1.0
    quality: float = 0.8
    use_webp: bool = True
    debug: bool = False
    on_progress: Optional[ProgressSink] = field(default=None, compare=False)

    def __post_init__(self):
        if isinstance(self.max_width_or_height, bool) or not isinstance(self.max_width_or_height, int) \
                or self.max_width_or_height <= 0:
            raise ValueError("max_width_or_height must be a positive integer")
        if not isinstance(self.max_size_mb, (int, float)) or self.max_size_mb <= 0:
            raise ValueError("max_size_mb must be a positive number")
        if not isinstance(self.quality, (int, float)) or not 0 < self.quality <= 1:
            raise ValueError("quality must be in the range (0, 1]")
        if self.on_progress is not None and not callable(self.on_progress):
            raise ValueError("on_progress must be callable")

    @property
    def max_size_bytes(self) -> int:
        return int(self.max_size_mb * 1024 * 1024)

    def with_overrides(self, **overrides) -> "OptimizationConfig":
        """Return a copy with the given options replaced (None values are ignored)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self


@dataclass(frozen=True)
class CompressionCandidate:
    """One fully encoded alternative considered for the final result."""

    data: bytes
    mime_type: str
    provenance: Provenance
    filename: str

    def __post_init__(self):
        if not self.data:
            raise ValueError("candidate must not be empty")

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def original(cls, source: SourceImage) -> "CompressionCandidate":
        return cls(
            data=source.data,
            mime_type=source.mime_type,
            provenance=Provenance.ORIGINAL,
            filename=source.name,
        )


@dataclass(frozen=True)
class StageOutcome:
    """
    Result of one pipeline stage: either a candidate or the error that
    stopped the stage. A failed stage never carries a candidate.
    """

    stage: str
    candidate: Optional[CompressionCandidate] = None
    error: Optional[BaseException] = None

    def __post_init__(self):
        if (self.candidate is None) == (self.error is None):
            raise ValueError("exactly one of candidate or error must be set")

    @property
    def ok(self) -> bool:
        return self.candidate is not None

    @classmethod
    def success(cls, stage: str, candidate: CompressionCandidate) -> "StageOutcome":
        return cls(stage=stage, candidate=candidate)

    @classmethod
    def failure(cls, stage: str, error: BaseException) -> "StageOutcome":
        return cls(stage=stage, error=error)


@dataclass(frozen=True)
class OptimizedImage:
    """Final image handed back to the caller (and on to storage)."""

    data: bytes
    mime_type: str
    filename: str
    provenance: Provenance
    original_size: int

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def reduction_percent(self) -> float:
        if self.original_size <= 0:
            return 0.0
        return round((1 - self.size / self.original_size) * 100, 1)

    @classmethod
    def from_candidate(cls, candidate: CompressionCandidate, original_size: int) -> "OptimizedImage":
        return cls(
            data=candidate.data,
            mime_type=candidate.mime_type,
            filename=candidate.filename,
            provenance=candidate.provenance,
            original_size=original_size,
        )

    def to_file_storage(self) -> FileStorage:
        """Wrap the result in the shape upload handlers expect."""
        return FileStorage(
            stream=io.BytesIO(self.data),
            filename=self.filename,
            content_type=self.mime_type,
        )
