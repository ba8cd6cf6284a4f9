"""Tests for layers, rendering and the array rasterizer."""

import gc

import numpy as np
import pytest

from conftest import smooth_texture

from elastalign.core.layers import Layer, LayerSet, Patch, Rectangle, layer_name
from elastalign.core.mls import MovingLeastSquaresTransform
from elastalign.core.models import TranslationModel2D
from elastalign.core.point_match import PointMatches
from elastalign.core.rasterizer import ArrayRasterizer
from elastalign.core.warp import PatchWarpApplicator, render_patch, world_to_patch


class TestRectangle:

    def test_union_and_intersection(self):
        a = Rectangle(0, 0, 10, 10)
        b = Rectangle(5, 5, 10, 10)
        assert a.union(b) == Rectangle(0, 0, 15, 15)
        assert a.intersection(b) == Rectangle(5, 5, 5, 5)
        assert a.intersection(Rectangle(20, 20, 5, 5)).is_empty()
        assert Rectangle(0, 0, 0, 0).union(b) == b


class TestLayers:

    def test_get_layers_is_inclusive_and_ascending(self):
        layers = LayerSet(Layer(i, i) for i in range(6))
        assert [l.id for l in layers.get_layers(4, 1)] == [1, 2, 3, 4]
        assert [l.id for l in layers.get_layers(-3, 1)] == [0, 1]
        assert [l.id for l in layers.get_layers(5, 10)] == [5]

    def test_content_filter_keeps_accepted_patches(self):
        keep = Patch("keep", np.zeros((4, 4)))
        drop = Patch("drop", np.zeros((4, 4)))
        layer = Layer(0, 0.0, patches=[keep, drop])
        assert layer.filter_patches(lambda p: p.id == "keep") == [keep]
        assert layer.filter_patches() == [keep, drop]

    def test_contains_content_needs_a_visible_patch(self):
        layer = Layer(0, 0.0, patches=[Patch("hidden", np.zeros((4, 4)), visible=False)])
        assert not layer.contains_content()
        assert layer.bounding_box().is_empty()
        layer.add_patch(Patch("shown", np.zeros((5, 8)), x=3, y=2))
        assert layer.contains_content()
        assert layer.bounding_box() == Rectangle(3, 2, 8, 5)

    def test_identity_is_read_only(self):
        layer = Layer("a", 1.5, title="first")
        with pytest.raises(AttributeError):
            layer.id = "b"
        assert layer_name(layer) == "layer z=1.500 'first'"


class TestRendering:

    def test_render_identity(self):
        image = smooth_texture(64, 48, seed=3)
        rendered, mask = render_patch(Patch("p", image), Rectangle(0, 0, 64, 48))
        assert mask.all()
        np.testing.assert_allclose(rendered, image.astype(np.float32), atol=1e-3)

    def test_render_through_a_warp(self):
        image = smooth_texture(64, 64, seed=4)
        patch = Patch("p", image, x=10, y=0)
        patch.append_warp(TranslationModel2D(np.array([[1.0, 0.0, -4.0], [0.0, 1.0, 2.0], [0.0, 0.0, 1.0]])))
        assert patch.bounding_box() == Rectangle(6, 2, 64, 64)

        rendered, mask = render_patch(patch, Rectangle(6, 2, 64, 64))
        assert mask.all()
        np.testing.assert_allclose(rendered, image.astype(np.float32), atol=1e-2)
        np.testing.assert_allclose(world_to_patch(patch, [[6.0, 2.0]]), [[0.0, 0.0]])

    def test_render_downscaled(self):
        image = np.full((40, 40), 100, dtype=np.uint8)
        rendered, mask = render_patch(Patch("p", image), Rectangle(0, 0, 40, 40), scale=0.5)
        assert rendered.shape == (20, 20)
        np.testing.assert_allclose(rendered[mask], 100.0, atol=1e-3)

    def test_outside_the_patch_is_masked(self):
        image = np.full((10, 10), 50, dtype=np.uint8)
        rendered, mask = render_patch(Patch("p", image), Rectangle(-10, 0, 20, 10))
        assert not mask[:, :9].any()
        assert mask[:, 11:].all()

    def test_warp_applicator_appends(self):
        patch = Patch("p", np.zeros((20, 20), dtype=np.uint8))
        p = np.array([[0.0, 0.0], [20.0, 0.0], [0.0, 20.0], [20.0, 20.0]])
        warp = MovingLeastSquaresTransform()
        warp.set_matches(PointMatches(p, p + [1.0, 1.0]))
        PatchWarpApplicator().apply(patch, warp)
        assert patch.warps == [warp]
        np.testing.assert_allclose(patch.to_world([[5.0, 5.0]]), [[6.0, 6.0]], atol=1e-9)


class TestArrayRasterizer:

    def _layer(self):
        return Layer(0, 0.0, patches=[Patch("p", smooth_texture(32, 32, seed=5))])

    def test_gray8_and_float32(self):
        rasterizer = ArrayRasterizer()
        layer = self._layer()
        gray = rasterizer.flatten(layer, Rectangle(0, 0, 32, 32), 1.0)
        exact = rasterizer.flatten(layer, Rectangle(0, 0, 32, 32), 1.0, pixel_type="float32")
        assert gray.image.dtype == np.uint8
        assert exact.image.dtype == np.float32
        assert gray.shape == (32, 32)

    def test_rasters_are_cached_until_released(self):
        rasterizer = ArrayRasterizer()
        layer = self._layer()
        first = rasterizer.flatten(layer, Rectangle(0, 0, 32, 32), 1.0)
        assert rasterizer.flatten(layer, Rectangle(0, 0, 32, 32), 1.0) is first
        rasterizer.release_all()
        assert rasterizer.flatten(layer, Rectangle(0, 0, 32, 32), 1.0) is not first

    def test_unknown_pixel_type(self):
        with pytest.raises(ValueError):
            ArrayRasterizer().flatten(self._layer(), Rectangle(0, 0, 8, 8), 1.0, pixel_type="rgb")

    def test_replaced_filters_never_share_a_raster(self):
        rasterizer = ArrayRasterizer()
        layer = self._layer()
        region = Rectangle(0, 0, 32, 32)
        for _ in range(20):
            hidden = rasterizer.flatten(layer, region, 1.0, lambda p: False)
            assert not hidden.mask.any()
            gc.collect()
            shown = rasterizer.flatten(layer, region, 1.0, lambda p: True)
            assert shown.mask.all()
            gc.collect()

    def test_same_filter_hits_the_cache(self):
        rasterizer = ArrayRasterizer()
        layer = self._layer()
        def keep(patch):
            return True

        first = rasterizer.flatten(layer, Rectangle(0, 0, 32, 32), 1.0, keep)
        assert rasterizer.flatten(layer, Rectangle(0, 0, 32, 32), 1.0, keep) is first

    def test_content_filter_hides_patches(self):
        layer = self._layer()
        raster = ArrayRasterizer().flatten(layer, Rectangle(0, 0, 32, 32), 1.0, lambda p: False)
        assert not raster.mask.any()
