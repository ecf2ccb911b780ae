from io import BytesIO

import numpy as np
import pytest
from PIL import Image


def noise_image(width, height, seed=0):
    """Random RGB pixels - about as incompressible as a photo gets."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    return Image.fromarray(pixels, mode='RGB')


def gradient_image(width, height):
    """Smooth two-axis gradient that compresses very well."""
    x = np.linspace(0, 255, width, dtype=np.float32)
    y = np.linspace(0, 255, height, dtype=np.float32)
    r = np.tile(x, (height, 1))
    g = np.tile(y[:, None], (1, width))
    b = (r + g) / 2
    pixels = np.stack([r, g, b], axis=-1).astype(np.uint8)
    return Image.fromarray(pixels, mode='RGB')


def to_jpeg(img, quality=95, orientation=None):
    buf = BytesIO()
    params = {'format': 'JPEG', 'quality': quality}
    if orientation is not None:
        exif = Image.Exif()
        exif[274] = orientation
        params['exif'] = exif.tobytes()
    img.save(buf, **params)
    return buf.getvalue()


def to_gif(frames, duration=80):
    buf = BytesIO()
    frames[0].save(buf, format='GIF', save_all=True, append_images=frames[1:],
                   duration=duration, loop=0)
    return buf.getvalue()


@pytest.fixture
def noisy_jpeg():
    def factory(width=400, height=300, seed=0, orientation=None):
        return to_jpeg(noise_image(width, height, seed), orientation=orientation)
    return factory


@pytest.fixture
def smooth_jpeg():
    def factory(width=400, height=300, orientation=None):
        return to_jpeg(gradient_image(width, height), orientation=orientation)
    return factory


@pytest.fixture
def noisy_gif():
    def factory(width=160, height=120, frames=6):
        images = [noise_image(width, height, seed).quantize(64) for seed in range(frames)]
        return to_gif(images)
    return factory


def open_image(data):
    img = Image.open(BytesIO(data))
    img.load()
    return img
