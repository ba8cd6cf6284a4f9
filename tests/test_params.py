"""Tests for the alignment parameter bundle."""

import dataclasses

import pytest

from elastalign.core.models import ModelKind
from elastalign.core.params import AlignmentParams, PointMatchParams, SiftParams


class TestAlignmentParams:

    def test_defaults(self):
        params = AlignmentParams()
        assert params.max_epsilon == 200.0
        assert params.min_num_inliers == 12
        assert params.model_kind is ModelKind.AFFINE
        assert params.local_model_kind is ModelKind.RIGID
        assert params.layer_scale == 0.1
        assert params.resolution_spring_mesh == 16
        assert params.point_match.rod == 0.92
        assert params.point_match.sift.max_octave_size == 1024
        assert params.max_num_threads >= 1

    def test_params_are_immutable(self):
        params = AlignmentParams()
        with pytest.raises(dataclasses.FrozenInstanceError):
            params.max_epsilon = 1.0

    def test_model_kinds_are_parsed(self):
        params = AlignmentParams(model_kind="Perspective", local_model_kind=3, model_kind_optimize="similarity")
        assert params.model_kind is ModelKind.HOMOGRAPHY
        assert params.local_model_kind is ModelKind.AFFINE
        assert params.model_kind_optimize is ModelKind.SIMILARITY

    @pytest.mark.parametrize("overrides", [
        {"layer_scale": 0.0},
        {"resolution_spring_mesh": 1},
        {"max_num_threads": 0},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            AlignmentParams(**overrides)

    def test_block_radius(self):
        params = AlignmentParams(layer_scale=0.5, resolution_spring_mesh=10)
        # Derived from the mesh spacing: 2000 / 10 / 2 * 0.5
        assert params.block_radius_for(2000) == 50
        # Never below 16 working pixels
        assert params.block_radius_for(100) == 16
        assert params.with_overrides(block_radius=100.0).block_radius_for(2000) == 50

    def test_from_dict(self):
        params = AlignmentParams.from_dict({
            "max_epsilon": 25.0,
            "model_kind": "rigid",
            "point_match": {"rod": 0.8, "sift": {"max_octave_size": 512}},
        })
        assert params.max_epsilon == 25.0
        assert params.model_kind is ModelKind.RIGID
        assert params.point_match.rod == 0.8
        assert params.point_match.sift.max_octave_size == 512

    @pytest.mark.parametrize("data", [
        {"max_epsilom": 1.0},
        {"point_match": {"ratio": 0.5}},
        {"point_match": {"sift": {"octaves": 4}}},
    ])
    def test_unknown_keys_are_rejected(self, data):
        with pytest.raises(ValueError, match="Unknown parameter"):
            AlignmentParams.from_dict(data)

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "params.yaml"
        original = AlignmentParams(max_num_neighbors=4, local_model_kind=ModelKind.SIMILARITY,
                                   point_match=PointMatchParams(sift=SiftParams(n_features=500)))
        original.to_yaml(path)
        assert "local_model_kind: similarity" in path.read_text()
        assert AlignmentParams.from_yaml(path) == original

    def test_yaml_must_hold_a_mapping(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError):
            AlignmentParams.from_yaml(path)


class TestCacheKey:

    def test_key_is_stable(self):
        assert PointMatchParams().cache_key() == PointMatchParams().cache_key()

    def test_key_ignores_execution_settings(self):
        assert PointMatchParams(max_num_threads_sift=1).cache_key() == \
            PointMatchParams(max_num_threads_sift=8, clear_cache=True).cache_key()

    def test_key_tracks_feature_parameters(self):
        base = PointMatchParams().cache_key()
        assert PointMatchParams(rod=0.5).cache_key() != base
        assert PointMatchParams(sift=SiftParams(n_octave_layers=4)).cache_key() != base
