"""Tests for the elastic layer alignment pipeline."""

import numpy as np
import pytest

from conftest import bulge, bulge_displacement, shifted_crop, smooth_texture

from elastalign.core.elastic_align import (
    AlignmentStatus, ElasticLayerAligner, LayerPair, collect_pairs
)
from elastalign.core.interfaces import FeatureCache, MatchCache, WarpApplicator
from elastalign.core.layers import Layer, Patch, Rectangle
from elastalign.core.models import AffineModel2D, ModelKind, TranslationModel2D
from elastalign.core.params import AlignmentParams, PointMatchParams
from elastalign.core.rasterizer import ArrayRasterizer
from elastalign.core.tile_configuration import TileConfiguration
from elastalign.errors import (
    CacheIOError, ExtractionExecutionError, InsufficientDataError
)
from elastalign.utils.alignment_cache import DiskAlignmentCache

SIZE = (120, 120)
SHIFTS = [np.array([0.0, 0.0]), np.array([5.0, 0.0]), np.array([10.0, 0.0])]
BULGE_AMPLITUDE = 1.5
BULGE_SIGMA = 25.0


def _aligned_params(**overrides):
    options = dict(
        is_aligned=True,
        layer_scale=1.0,
        resolution_spring_mesh=8,
        search_radius=14.0,
        max_num_neighbors=2,
        max_iterations_spring_mesh=1000,
        max_plateau_width_spring_mesh=50,
        max_num_threads=2,
    )
    options.update(overrides)
    return AlignmentParams(**options)


@pytest.fixture
def stack_images():
    texture = smooth_texture(200, 200, seed=13)
    images = [shifted_crop(texture, tuple(int(v) for v in s), SIZE, margin=40) for s in SHIFTS]
    images[2] = bulge(images[2], BULGE_AMPLITUDE, BULGE_SIGMA)
    return images


@pytest.fixture
def feature_images():
    texture = smooth_texture(400, 400, seed=17, sigma=2.5)
    return [shifted_crop(texture, s, (256, 256), margin=60) for s in [(0, 0), (8, 3), (16, 6)]]


def _feature_params(**overrides):
    options = dict(
        layer_scale=0.5,
        max_epsilon=20.0,
        reject_identity=False,
        resolution_spring_mesh=8,
        search_radius=20.0,
        max_num_neighbors=2,
        max_iterations_spring_mesh=1000,
        max_plateau_width_spring_mesh=50,
        max_num_threads=2,
        point_match=PointMatchParams(max_num_threads_sift=2),
    )
    options.update(overrides)
    return AlignmentParams(**options)


def _interior_points(low=30.0, high=90.0, step=10.0):
    xs, ys = np.meshgrid(np.arange(low, high + 1, step), np.arange(low, high + 1, step))
    return np.stack([xs.ravel(), ys.ravel()], axis=1)


def _rms(a, b):
    return float(np.sqrt(np.mean(np.sum((a - b) ** 2, axis=1))))


class TestEndToEnd:

    def test_three_layers_align_within_a_pixel(self, stack_images, make_layers):
        layers = make_layers(stack_images)
        result = ElasticLayerAligner(ArrayRasterizer()).run(layers, 0, 2, params=_aligned_params())

        assert result.status is AlignmentStatus.DONE
        assert [(p.index_a, p.index_b) for p in result.pairs] == [(0, 1), (0, 2), (1, 2)]
        assert result.mesh_statistics is not None and len(result.mesh_statistics) > 0
        for layer in layers:
            assert len(layer.patches[0].warps) == 1

        x = _interior_points()
        x2 = x + SHIFTS[2]
        x2 = x2 + bulge_displacement(x2, SIZE, BULGE_AMPLITUDE, BULGE_SIGMA)
        w0 = result.warps[0].apply(x)
        w1 = result.warps[1].apply(x + SHIFTS[1])
        w2 = result.warps[2].apply(x2)
        assert _rms(w0, w1) < 1.0
        assert _rms(w0, w2) < 1.0
        assert _rms(w1, w2) < 1.0

    def test_feature_matching_finds_the_shifts(self, feature_images, make_layers, counting_extractor_factory):
        layers = make_layers(feature_images)
        aligner = ElasticLayerAligner(ArrayRasterizer(), extractor_factory=counting_extractor_factory)
        result = aligner.run(layers, 0, 2, params=_feature_params())

        assert result.status is AlignmentStatus.DONE
        assert counting_extractor_factory.calls == 3
        pair = next(p for p in result.pairs if (p.index_a, p.index_b) == (0, 1))
        # Working resolution model from layer 1 to layer 0
        np.testing.assert_allclose(pair.model.apply(np.array([[64.0, 64.0]])), [[60.0, 62.5]], atol=0.5)

        x = _interior_points(60.0, 180.0, 20.0)
        w0 = result.warps[0].apply(x)
        w1 = result.warps[1].apply(x + [8.0, 3.0])
        assert _rms(w0, w1) < 1.5

    def test_affine_feature_path_with_a_local_deformation(self, make_layers):
        texture = smooth_texture(200, 200, seed=13)
        shifts = [(0, 0), (5, 0), (10, 0)]
        images = [shifted_crop(texture, s, (100, 100), margin=40) for s in shifts]
        images[2] = bulge(images[2], BULGE_AMPLITUDE, 20.0)
        params = _feature_params(
            layer_scale=1.0,
            model_kind=ModelKind.AFFINE,
            search_radius=10.0,
        )

        result = ElasticLayerAligner(ArrayRasterizer()).run(make_layers(images), 0, 2, params=params)

        assert result.status is AlignmentStatus.DONE
        assert [(p.index_a, p.index_b) for p in result.pairs] == [(0, 1), (0, 2), (1, 2)]
        assert all(isinstance(p.model, AffineModel2D) for p in result.pairs)

        x = _interior_points(30.0, 70.0, 10.0)
        x2 = x + [10.0, 0.0]
        x2 = x2 + bulge_displacement(x2, (100, 100), BULGE_AMPLITUDE, 20.0)
        w0 = result.warps[0].apply(x)
        w1 = result.warps[1].apply(x + [5.0, 0.0])
        w2 = result.warps[2].apply(x2)
        assert _rms(w1, w2) < 1.0
        assert _rms(w0, w2) < 1.0

    def test_pre_alignment_uses_the_mesh_limits(self, stack_images, make_layers, monkeypatch):
        seen = []
        optimize = TileConfiguration.optimize

        def recording(self, max_epsilon, max_iterations, max_plateau_width, cancel_check=None):
            seen.append((max_epsilon, max_iterations, max_plateau_width))
            return optimize(self, max_epsilon, max_iterations, max_plateau_width, cancel_check)

        monkeypatch.setattr(TileConfiguration, "optimize", recording)
        params = _aligned_params(max_epsilon=7.0, max_iterations_spring_mesh=321, max_plateau_width_spring_mesh=40)
        ElasticLayerAligner(ArrayRasterizer()).run(make_layers(stack_images), 0, 2, params=params)

        assert seen == [(7.0, 321, 40)]

    def test_progress_is_reported(self, stack_images, make_layers):
        reports = []
        aligner = ElasticLayerAligner(ArrayRasterizer(), progress_callback=lambda p, m: reports.append(p))
        aligner.run(make_layers(stack_images), 0, 2, params=_aligned_params())
        assert reports[0] == 0
        assert reports[-1] == 100
        assert reports == sorted(reports)

    def test_visualizations(self, stack_images, make_layers):
        result = ElasticLayerAligner(ArrayRasterizer()).run(
            make_layers(stack_images), 0, 2, params=_aligned_params(visualize=True))
        assert sorted(result.visualizations) == [0, 1, 2]
        assert all(v.ndim == 3 for v in result.visualizations.values())


class TestRange:

    def test_single_non_empty_layer_is_skipped(self, stack_images, counting_extractor_factory):
        layers = [Layer(0, 0.0, patches=[Patch("a", stack_images[0])]), Layer(1, 1.0)]
        aligner = ElasticLayerAligner(ArrayRasterizer(), extractor_factory=counting_extractor_factory)
        result = aligner.run(layers, 0, 1, params=_feature_params())

        assert result.status is AlignmentStatus.SKIPPED
        assert counting_extractor_factory.calls == 0
        assert not layers[0].patches[0].warps

    def test_empty_field_of_view_is_skipped(self, stack_images, make_layers):
        result = ElasticLayerAligner(ArrayRasterizer()).run(
            make_layers(stack_images), 0, 2, fov=Rectangle(1000, 1000, 50, 50), params=_aligned_params())
        assert result.status is AlignmentStatus.SKIPPED
        assert "empty" in result.reason

    def test_empty_layers_are_removed(self, stack_images):
        layers = [
            Layer(0, 0.0, patches=[Patch("a", stack_images[0])]),
            Layer(1, 1.0),
            Layer(2, 2.0, patches=[Patch("b", stack_images[1])]),
        ]
        result = ElasticLayerAligner(ArrayRasterizer()).run(layers, 2, 0, params=_aligned_params())
        assert result.status is AlignmentStatus.DONE
        assert [layer.id for layer in result.layers] == [0, 2]
        assert sorted(result.warps) == [0, 2]

    def test_content_filter_limits_the_warped_patches(self, stack_images):
        layers = [
            Layer(i, float(i), patches=[Patch(f"main-{i}", image), Patch(f"overlay-{i}", image.copy())])
            for i, image in enumerate(stack_images[:2])
        ]
        ElasticLayerAligner(ArrayRasterizer()).run(
            layers, 0, 1, content_filter=lambda p: p.id.startswith("main"), params=_aligned_params())
        for layer in layers:
            assert len(layer.patches[0].warps) == 1
            assert layer.patches[1].warps == []


class TestCollectPairs:

    def _matcher(self, failing):
        calls = []

        def match_pair(i, j):
            calls.append((i, j))
            if (i, j) in failing:
                return None
            return LayerPair(i, j, TranslationModel2D())

        return match_pair, calls

    def test_all_pairs_in_the_window(self):
        match_pair, calls = self._matcher(set())
        pairs = collect_pairs(4, match_pair, max_num_neighbors=2, max_num_failures=3, max_num_threads=1)
        assert [(p.index_a, p.index_b) for p in pairs] == [(0, 1), (0, 2), (1, 2), (1, 3), (2, 3)]

    def test_failure_gap_stops_the_window(self):
        failing = {(0, 2), (0, 3)}
        match_pair, calls = self._matcher(failing)
        pairs = collect_pairs(6, match_pair, max_num_neighbors=10, max_num_failures=1, max_num_threads=1)

        assert [c for c in calls if c[0] == 0] == [(0, 1), (0, 2), (0, 3)]
        assert [(p.index_a, p.index_b) for p in pairs if p.index_a == 0] == [(0, 1)]
        assert [(p.index_a, p.index_b) for p in pairs if p.index_a == 1] == [(1, 2), (1, 3), (1, 4), (1, 5)]

    def test_failure_count_carries_to_the_next_start_layer(self):
        failing = {(0, 1), (0, 2), (1, 2)}
        match_pair, calls = self._matcher(failing)
        pairs = collect_pairs(5, match_pair, max_num_neighbors=10, max_num_failures=1, max_num_threads=1)

        # Layer 1 stops at its first failure, the count is already exceeded
        assert [c for c in calls if c[0] == 1] == [(1, 2)]
        assert [(p.index_a, p.index_b) for p in pairs] == [(2, 3), (2, 4), (3, 4)]

    def test_success_resets_the_failure_count(self):
        failing = {(0, 1), (0, 3), (0, 5)}
        match_pair, calls = self._matcher(failing)
        pairs = collect_pairs(7, match_pair, max_num_neighbors=10, max_num_failures=1, max_num_threads=1)
        assert [(p.index_a, p.index_b) for p in pairs if p.index_a == 0] == [(0, 2), (0, 4), (0, 6)]

    def test_batches_are_evaluated_in_neighbor_order(self):
        failing = {(0, 1), (0, 2)}
        match_pair, calls = self._matcher(failing)
        pairs = collect_pairs(6, match_pair, max_num_neighbors=10, max_num_failures=1, max_num_threads=4)

        # The whole first batch runs, results after the gap are discarded
        assert sorted(c for c in calls if c[0] == 0) == [(0, 1), (0, 2), (0, 3), (0, 4)]
        assert [p for p in pairs if p.index_a == 0] == []

    def test_cancel_check_interrupts(self):
        match_pair, _ = self._matcher(set())
        with pytest.raises(InterruptedError):
            collect_pairs(3, match_pair, 2, 3, 1, cancel_check=lambda: True)


class _FailingCache(FeatureCache, MatchCache):

    def load_features(self, params_key, scope, layer_id):
        return None

    def store_features(self, params_key, scope, layer_id, features):
        return False

    def load_matches(self, params_key, scope, layer_id_a, layer_id_b):
        return None

    def store_matches(self, params_key, scope, layer_id_a, layer_id_b, matches):
        raise CacheIOError("disk full")


class TestCaching:

    def test_cached_matches_skip_extraction(self, tmp_path, feature_images, make_layers,
                                            counting_extractor_factory):
        cache = DiskAlignmentCache(tmp_path)
        params = _feature_params()

        first = ElasticLayerAligner(ArrayRasterizer(), feature_cache=cache, match_cache=cache,
                                    extractor_factory=counting_extractor_factory)
        first_result = first.run(make_layers(feature_images), 0, 2, params=params)
        assert counting_extractor_factory.calls == 3
        assert cache.get_cache_stats()["match_cache_entries"] == 3

        counting_extractor_factory.calls = 0
        second = ElasticLayerAligner(ArrayRasterizer(), feature_cache=cache, match_cache=cache,
                                     extractor_factory=counting_extractor_factory)
        second_result = second.run(make_layers(feature_images), 0, 2, params=params)

        assert counting_extractor_factory.calls == 0
        assert len(second_result.pairs) == len(first_result.pairs)
        for a, b in zip(first_result.pairs, second_result.pairs):
            np.testing.assert_allclose(a.model.to_matrix(), b.model.to_matrix())

    def test_clear_cache_extracts_again(self, tmp_path, feature_images, make_layers,
                                        counting_extractor_factory):
        cache = DiskAlignmentCache(tmp_path)
        ElasticLayerAligner(ArrayRasterizer(), feature_cache=cache, match_cache=cache).run(
            make_layers(feature_images), 0, 2, params=_feature_params())

        params = _feature_params(point_match=PointMatchParams(clear_cache=True, max_num_threads_sift=2))
        ElasticLayerAligner(ArrayRasterizer(), feature_cache=cache, match_cache=cache,
                            extractor_factory=counting_extractor_factory).run(
            make_layers(feature_images), 0, 2, params=params)
        assert counting_extractor_factory.calls == 3

    def test_cache_write_failures_are_not_fatal(self, feature_images, make_layers):
        cache = _FailingCache()
        result = ElasticLayerAligner(ArrayRasterizer(), feature_cache=cache, match_cache=cache).run(
            make_layers(feature_images), 0, 2, params=_feature_params())
        assert result.status is AlignmentStatus.DONE


class TestFailures:

    def test_extraction_failure_is_fatal(self, feature_images, make_layers):
        class Broken:
            def extract(self, image, mask=None):
                raise RuntimeError("detector crashed")

        aligner = ElasticLayerAligner(ArrayRasterizer(), extractor_factory=lambda sift: Broken())
        with pytest.raises(ExtractionExecutionError, match="detector crashed"):
            aligner.run(make_layers(feature_images), 0, 2, params=_feature_params())

    def test_cancel_flag_interrupts(self, stack_images, make_layers):
        aligner = ElasticLayerAligner(ArrayRasterizer(), cancel_flag=lambda: True)
        with pytest.raises(InterruptedError):
            aligner.run(make_layers(stack_images), 0, 2, params=_aligned_params())

    def test_cancel_during_block_matching_leaves_content_untouched(self, stack_images, make_layers):
        layers = make_layers(stack_images)

        def on_progress(percentage, message):
            if message.startswith("Block matching pair"):
                aligner.cancel()

        aligner = ElasticLayerAligner(ArrayRasterizer(), progress_callback=on_progress)
        with pytest.raises(InterruptedError):
            aligner.run(layers, 0, 2, params=_aligned_params())
        assert all(not layer.patches[0].warps for layer in layers)

    def test_featureless_layers_cannot_be_relaxed(self, make_layers):
        flat = [np.full(SIZE, 128, dtype=np.uint8) for _ in range(3)]
        with pytest.raises(InsufficientDataError):
            ElasticLayerAligner(ArrayRasterizer()).run(make_layers(flat), 0, 2, params=_aligned_params())

    def test_warp_failures_are_collected(self, stack_images, make_layers):
        class Picky(WarpApplicator):
            def apply(self, content_item, warp):
                if content_item.id == "patch-1":
                    raise ValueError("read-only patch")
                content_item.append_warp(warp)

        layers = make_layers(stack_images)
        result = ElasticLayerAligner(ArrayRasterizer(), warp_applicator=Picky()).run(
            layers, 0, 2, params=_aligned_params())

        assert result.status is AlignmentStatus.DONE
        assert result.warp_failures == ["patch-1"]
        assert len(layers[0].patches[0].warps) == 1
        assert layers[1].patches[0].warps == []
