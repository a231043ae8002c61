"""
Shared fixtures: in-memory test images.
"""
import io
import random
import pytest
from PIL import Image


def _noise(size, mode, seed):
    rng = random.Random(seed)
    channels = len(mode)
    raw = rng.randbytes(size[0] * size[1] * channels)
    return Image.frombytes(mode, size, raw)


@pytest.fixture
def make_image():
    """
    Factory returning encoded image bytes.

    make_image('JPEG', (800, 600)) gives a noisy (hard to compress) JPEG;
    pass noise=False for a flat colour image.
    """
    def _make(fmt='JPEG', size=(100, 100), mode='RGB', noise=True, seed=0, color='red', **save_kwargs):
        img = _noise(size, mode, seed) if noise else Image.new(mode, size, color=color)
        buffer = io.BytesIO()
        img.save(buffer, format=fmt, **save_kwargs)
        img.close()
        return buffer.getvalue()

    return _make


@pytest.fixture
def large_jpeg(make_image):
    """Noisy JPEG well above the skip threshold."""
    return make_image('JPEG', (1400, 1000), quality=95)


@pytest.fixture
def medium_jpeg(make_image):
    """Noisy JPEG of a few hundred KB."""
    return make_image('JPEG', (480, 480), quality=95, seed=1)


@pytest.fixture
def small_png(make_image):
    """Noisy PNG of roughly 30 KB, below the skip threshold."""
    return make_image('PNG', (100, 100), seed=2)


@pytest.fixture
def progress_log():
    """Progress sink that records every emitted value."""
    values = []

    def sink(value):
        values.append(value)

    sink.values = values
    return sink
