"""Tests for the moving least squares warp."""

import numpy as np
import pytest

from elastalign.core.mls import MovingLeastSquaresTransform
from elastalign.core.models import ModelKind
from elastalign.core.point_match import PointMatches
from elastalign.errors import InsufficientDataError

LINEAR = np.array([[1.05, 0.1], [-0.08, 0.97]])
OFFSET = np.array([4.0, -6.0])


def _grid(step=20.0, size=200.0):
    xs, ys = np.meshgrid(np.arange(0, size + 1, step), np.arange(0, size + 1, step))
    return np.stack([xs.ravel(), ys.ravel()], axis=1)


def _affine(points):
    return points @ LINEAR.T + OFFSET


class TestMovingLeastSquares:

    def test_reproduces_a_global_affine_map(self):
        p = _grid()
        warp = MovingLeastSquaresTransform(ModelKind.AFFINE, alpha=2.0)
        warp.set_matches(PointMatches(p, _affine(p)))
        queries = np.random.default_rng(0).uniform(0, 200, size=(500, 2))
        np.testing.assert_allclose(warp.apply(queries), _affine(queries), atol=1e-6)

    def test_control_points_are_interpolated(self):
        p = _grid(step=40.0)
        q = p + np.random.default_rng(1).normal(0, 2.0, size=p.shape)
        warp = MovingLeastSquaresTransform()
        warp.set_matches(PointMatches(p, q))
        np.testing.assert_allclose(warp.apply(p), q, atol=1e-9)

    def test_local_deformation_stays_local(self):
        p = _grid()
        q = p.copy()
        center = np.argmin(np.linalg.norm(p - [100.0, 100.0], axis=1))
        q[center] += [5.0, 0.0]
        warp = MovingLeastSquaresTransform()
        warp.set_matches(PointMatches(p, q))
        far = warp.apply(np.array([[10.0, 10.0]]))
        near = warp.apply(np.array([[102.0, 100.0]]))
        np.testing.assert_allclose(far, [[10.0, 10.0]], atol=0.05)
        assert near[0, 0] > 104.0

    def test_rigid_kind_reproduces_rigid_motion(self):
        angle = 0.1
        rotation = np.array([[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]])
        p = _grid(step=50.0)
        warp = MovingLeastSquaresTransform(ModelKind.RIGID)
        warp.set_matches(PointMatches(p, p @ rotation.T + [3.0, 3.0]))
        queries = np.array([[25.0, 75.0], [130.0, 10.0]])
        np.testing.assert_allclose(warp.apply(queries), queries @ rotation.T + [3.0, 3.0], atol=1e-6)

    def test_inverse_swaps_the_control_points(self):
        p = _grid(step=40.0)
        warp = MovingLeastSquaresTransform()
        warp.set_matches(PointMatches(p, _affine(p)))
        inverse = warp.inverse()
        queries = np.array([[50.0, 60.0], [150.0, 120.0]])
        np.testing.assert_allclose(inverse.apply(warp.apply(queries)), queries, atol=1e-6)

    def test_copy_keeps_control_points(self):
        p = _grid(step=50.0)
        warp = MovingLeastSquaresTransform(alpha=1.5)
        warp.set_matches(PointMatches(p, p + 1.0))
        clone = warp.copy()
        assert clone.alpha == 1.5
        np.testing.assert_array_equal(clone.matches().p2, warp.matches().p2)

    def test_not_enough_control_points(self):
        with pytest.raises(InsufficientDataError):
            MovingLeastSquaresTransform().set_matches(PointMatches(np.zeros((2, 2)), np.zeros((2, 2))))

    def test_apply_without_control_points(self):
        with pytest.raises(InsufficientDataError):
            MovingLeastSquaresTransform().apply(np.zeros((1, 2)))
