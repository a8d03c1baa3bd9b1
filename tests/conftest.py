import io
import random

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from main import app


def build_image(width=1200, height=900, mode="RGB", seed=7, noise=0.2):
    """Gradient blended with seeded noise: compresses like a photo, not a flat fill."""
    gradient = Image.linear_gradient("L").resize((width, height))
    mirrored = gradient.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
    base = Image.merge("RGB", (gradient, mirrored, gradient.rotate(90)))
    rng = random.Random(seed)
    noise_img = Image.frombytes("RGB", (width, height), rng.randbytes(width * height * 3))
    img = Image.blend(base, noise_img, noise)
    if mode != "RGB":
        img = img.convert(mode)
    return img


def to_bytes(img, fmt="PNG", **kwargs):
    buf = io.BytesIO()
    img.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


@pytest.fixture
def make_image():
    """Factory for in-memory test images."""
    return build_image


@pytest.fixture
def photo():
    return build_image()


@pytest.fixture
def photo_png(photo):
    return to_bytes(photo, "PNG")


@pytest.fixture
def photo_jpeg(photo):
    return to_bytes(photo, "JPEG", quality=95)


@pytest.fixture
def small_png():
    return to_bytes(build_image(200, 150), "PNG")


@pytest.fixture
def client():
    """FastAPI test client with lifespan, one event loop for the whole test."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
