"""
Optimizer entrypoint with configuration, logging, and a local CLI.
"""
import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from imageopt.capabilities import CapabilityProbe
from imageopt.errors import InvalidImageError
from imageopt.models import OptimizationConfig, OptimizedImage, SourceImage
from imageopt.workflow import ImageInput, ImageOptimizer

# Load environment variables
load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


class Config:
    """Configuration class to load environment variables."""

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    MAX_WIDTH_OR_HEIGHT = int(os.getenv('IMAGE_MAX_WIDTH_OR_HEIGHT', 1920))
    MAX_SIZE_MB = float(os.getenv('IMAGE_MAX_SIZE_MB', 1.0))
    QUALITY = float(os.getenv('IMAGE_QUALITY', 0.8))
    USE_WEBP = _env_flag('IMAGE_USE_WEBP', 'true')
    DEBUG = _env_flag('IMAGE_DEBUG', 'false')


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    EXTRA_FIELDS = (
        'image_name',
        'size_bytes',
        'stage',
        'mime_type',
        'duration_ms',
        'status',
        'progress',
        'iteration',
        'quality',
    )

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add extra fields if present
        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Add exception info if present
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Set up JSON logging for the optimizer package."""
    logger = logging.getLogger('imageopt')

    # Remove previously installed handlers
    logger.handlers.clear()

    # Create console handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    # Set log level
    log_level = getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)
    handler.setLevel(log_level)
    logger.setLevel(log_level)

    logger.addHandler(handler)

    # Prevent propagation to avoid duplicate logs
    logger.propagate = False
    return logger


def default_config(**overrides) -> OptimizationConfig:
    """
    Build the default options from the environment, then apply overrides.

    Overrides use the OptimizationConfig field names; None values are ignored.
    """
    base = OptimizationConfig(
        max_width_or_height=Config.MAX_WIDTH_OR_HEIGHT,
        max_size_mb=Config.MAX_SIZE_MB,
        quality=Config.QUALITY,
        use_webp=Config.USE_WEBP,
        debug=Config.DEBUG,
    )
    return base.with_overrides(**overrides)


_default_optimizer: Optional[ImageOptimizer] = None


def create_optimizer(capability_probe: Optional[CapabilityProbe] = None) -> ImageOptimizer:
    """Create an ImageOptimizer, using the Pillow capability probe by default."""
    if capability_probe is None:
        return ImageOptimizer()
    return ImageOptimizer(capability_probe=capability_probe)


def optimize_image(
    image: ImageInput,
    config: Optional[OptimizationConfig] = None,
    *,
    capability_probe: Optional[CapabilityProbe] = None,
    **overrides,
) -> OptimizedImage:
    """
    Optimizes an image for efficient storage and upload.

    Args:
        image: SourceImage, uploaded FileStorage or raw bytes
        config: Full options; defaults come from the environment when omitted
        capability_probe: Replaces the runtime encoder check for this call
        **overrides: Individual option overrides (e.g. quality=0.7, use_webp=False)

    Returns:
        OptimizedImage that is never larger than the input

    Raises:
        InvalidImageError: If the input is not a recognizable image
    """
    global _default_optimizer

    options = (config or default_config()).with_overrides(**overrides)

    if capability_probe is not None:
        optimizer = create_optimizer(capability_probe)
    else:
        if _default_optimizer is None:
            _default_optimizer = create_optimizer()
        optimizer = _default_optimizer

    return optimizer.run(image, options)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='imageopt',
        description='Optimize an image file before upload.',
    )
    parser.add_argument('input', help='Path to the image to optimize')
    parser.add_argument('-o', '--output', help='Output path (default: next to the input, named after the result)')
    parser.add_argument('--max-size-mb', type=float, default=None, help='Target maximum size in MB')
    parser.add_argument('--max-width-or-height', type=int, default=None, help='Longest side in pixels')
    parser.add_argument('--quality', type=float, default=None, help='Lossy quality in (0, 1]')
    parser.add_argument('--no-webp', action='store_true', help='Never transcode to WebP')
    parser.add_argument('--debug', action='store_true', help='Log formats and dimensions')
    parser.add_argument('--log-level', default=None, help='Logging level (default: LOG_LEVEL or INFO)')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Optimize a file on disk; for local development only."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    input_path = Path(args.input)
    if not input_path.is_file():
        print(f"File not found: {input_path}", file=sys.stderr)
        return 1

    def show_progress(value: int) -> None:
        print(f"progress: {value}%", file=sys.stderr)

    try:
        config = default_config(
            max_size_mb=args.max_size_mb,
            max_width_or_height=args.max_width_or_height,
            quality=args.quality,
            use_webp=False if args.no_webp else None,
            debug=True if args.debug else None,
            on_progress=show_progress,
        )
        result = optimize_image(SourceImage.from_path(input_path), config)
    except (InvalidImageError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    output_path = Path(args.output) if args.output else input_path.with_name(f"optimized_{result.filename}")
    output_path.write_bytes(result.data)

    print(json.dumps({
        'output': str(output_path),
        'mime_type': result.mime_type,
        'original_size': result.original_size,
        'optimized_size': result.size,
        'reduction_percent': result.reduction_percent,
        'provenance': result.provenance.value,
    }))
    return 0


if __name__ == '__main__':
    sys.exit(main())
