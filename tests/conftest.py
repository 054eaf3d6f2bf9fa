"""
Shared fixtures: synthetic images and the .bmp files written from them.
"""

import cv2
import numpy as np
import pytest


def gaussian_blob_image(size=256, centers=((128, 128),), amplitudes=(150,), sigma=4.0, background=50):
    """Uniform background with Gaussian blobs of the given peak amplitudes (negative for dark blobs)."""
    y, x = np.mgrid[0:size, 0:size].astype(np.float64)
    image = np.full((size, size), float(background))
    for (cx, cy), amplitude in zip(centers, amplitudes):
        image += amplitude * np.exp(-((x - cx) ** 2 + (y - cy) ** 2) / (2 * sigma ** 2))
    return np.clip(np.rint(image), 0, 255).astype(np.uint8)


def textured_image(size=160, seed=7, sigma=3.0):
    """Smoothed random noise, rich in blobs of many sizes."""
    rng = np.random.default_rng(seed)
    noise = rng.random((size, size)).astype(np.float32)
    blurred = cv2.GaussianBlur(noise, (0, 0), sigma)
    blurred = (blurred - blurred.min()) / (blurred.max() - blurred.min())
    return np.rint(blurred * 255).astype(np.uint8)


def write_bmp(path, image):
    assert cv2.imwrite(str(path), image)
    return str(path)


FOUR_BLOB_CENTERS = ((96, 96), (288, 96), (96, 288), (288, 288))
FOUR_BLOB_AMPLITUDES = (200, 160, 120, 90)


@pytest.fixture
def make_bmp(tmp_path):
    """Factory writing an image to a .bmp file in a temporary directory."""
    def _make(image, name="image.bmp"):
        return write_bmp(tmp_path / name, image)
    return _make


@pytest.fixture
def blob_image():
    return gaussian_blob_image()


@pytest.fixture
def blob_bmp(make_bmp, blob_image):
    return make_bmp(blob_image, "blob.bmp")


@pytest.fixture
def dark_blob_bmp(make_bmp):
    return make_bmp(gaussian_blob_image(amplitudes=(-150,), background=200), "dark_blob.bmp")


@pytest.fixture
def four_blob_bmp(make_bmp):
    image = gaussian_blob_image(size=384, centers=FOUR_BLOB_CENTERS, amplitudes=FOUR_BLOB_AMPLITUDES)
    return make_bmp(image, "four_blobs.bmp")


@pytest.fixture
def textured_bmp(make_bmp):
    return make_bmp(textured_image(), "textured.bmp")


@pytest.fixture
def uniform_bmp(make_bmp):
    return make_bmp(np.full((120, 140), 128, dtype=np.uint8), "uniform.bmp")


@pytest.fixture
def single_pixel_bmp(make_bmp):
    return make_bmp(np.full((1, 1), 77, dtype=np.uint8), "pixel.bmp")
