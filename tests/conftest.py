"""Shared fixtures for elastalign tests."""

import cv2
import numpy as np
import pytest

from elastalign.core.layers import Layer, LayerSet, Patch


def smooth_texture(width, height, seed=0, sigma=2.0):
    """Blurred uniform noise scaled to the full 8 bit range."""
    rng = np.random.default_rng(seed)
    noise = rng.random((height, width)).astype(np.float32)
    blurred = cv2.GaussianBlur(noise, (0, 0), sigma)
    blurred -= blurred.min()
    blurred /= blurred.max()
    return np.round(blurred * 255.0).astype(np.uint8)


def shifted_crop(texture, shift, size, margin):
    """
    Crop of `texture` whose content is moved by `shift` pixels

    Pixel x + shift of the result shows what pixel x of the unshifted crop
    shows.
    """
    sx, sy = shift
    w, h = size
    return texture[margin - sy:margin - sy + h, margin - sx:margin - sx + w].copy()


def bulge(image, amplitude, sigma):
    """Radial Gaussian displacement centered on the image."""
    h, w = image.shape[:2]
    gx, gy = np.meshgrid(np.arange(w, dtype=np.float32), np.arange(h, dtype=np.float32))
    cx, cy = (w - 1) / 2.0, (h - 1) / 2.0
    dx, dy = gx - cx, gy - cy
    falloff = amplitude * np.exp(-(dx * dx + dy * dy) / (2.0 * sigma * sigma)) / sigma
    return cv2.remap(image, gx - dx * falloff, gy - dy * falloff, cv2.INTER_LINEAR,
                     borderMode=cv2.BORDER_REFLECT)


def bulge_displacement(points, shape, amplitude, sigma):
    """Approximate displacement that `bulge` applies to content at `points`."""
    h, w = shape[:2]
    center = np.array([(w - 1) / 2.0, (h - 1) / 2.0])
    d = np.asarray(points, dtype=np.float64) - center
    falloff = amplitude * np.exp(-np.sum(d * d, axis=1) / (2.0 * sigma * sigma)) / sigma
    return d * falloff[:, None]


@pytest.fixture
def texture():
    """A 256x256 texture with structure at a few pixels scale."""
    return smooth_texture(256, 256, seed=7)


@pytest.fixture
def make_layers():
    """Factory for one-patch layers from a list of images."""
    def factory(images):
        layers = LayerSet()
        for index, image in enumerate(images):
            layers.add(Layer(index, float(index), title=f"section {index}",
                             patches=[Patch(f"patch-{index}", image)]))
        return layers
    return factory


@pytest.fixture
def counting_extractor_factory():
    """Extractor factory wrapping SIFT that counts extract calls."""
    from elastalign.core.elastic_align import default_extractor_factory

    class Factory:
        def __init__(self):
            self.calls = 0

        def __call__(self, sift):
            inner = default_extractor_factory(sift)
            factory = self

            class Counting:
                def extract(self, image, mask=None):
                    factory.calls += 1
                    return inner.extract(image, mask)

            return Counting()

    return Factory()
