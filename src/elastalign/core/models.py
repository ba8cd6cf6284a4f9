"""
Parametric 2D coordinate transforms

Translation, rigid, similarity, affine and homography models share a 3x3
homogeneous matrix representation. Each variant knows the minimal number of
correspondences it needs and how to fit itself to weighted point pairs
(closed form least squares, DLT for homographies).
"""

import numpy as np
from enum import Enum
from typing import Optional
import logging

from elastalign.errors import (
    InsufficientDataError,
    IllDefinedDataPointsError,
    NoninvertibleModelError,
)

logger = logging.getLogger(__name__)

# Determinants below this are treated as singular
SINGULAR_EPSILON = 1e-12


def _prepare(p: np.ndarray, q: np.ndarray, weights: Optional[np.ndarray]):
    p = np.asarray(p, dtype=np.float64).reshape(-1, 2)
    q = np.asarray(q, dtype=np.float64).reshape(-1, 2)
    if weights is None:
        weights = np.ones(len(p), dtype=np.float64)
    else:
        weights = np.asarray(weights, dtype=np.float64).reshape(-1)
    return p, q, weights


def _weighted_centroids(p, q, w):
    wsum = np.sum(w)
    if wsum <= 0:
        raise IllDefinedDataPointsError("Sum of weights is zero")
    pc = np.sum(p * w[:, None], axis=0) / wsum
    qc = np.sum(q * w[:, None], axis=0) / wsum
    return pc, qc


class AbstractModel:
    """Base class for 2D models stored as homogeneous 3x3 matrices"""

    min_num_matches = 1
    kind = None

    def __init__(self, matrix: Optional[np.ndarray] = None):
        if matrix is None:
            matrix = np.eye(3, dtype=np.float64)
        self.matrix = np.array(matrix, dtype=np.float64)
        self.cost = float('inf')

    def __repr__(self) -> str:
        m = self.matrix
        return (f"{type(self).__name__}([{m[0, 0]:.4f}, {m[0, 1]:.4f}, {m[0, 2]:.2f}], "
                f"[{m[1, 0]:.4f}, {m[1, 1]:.4f}, {m[1, 2]:.2f}])")

    def fit(self, p: np.ndarray, q: np.ndarray, weights: Optional[np.ndarray] = None):
        """
        Fit the model mapping points p onto points q

        Args:
            p: Nx2 source points
            q: Nx2 target points
            weights: Optional N weights

        Raises:
            InsufficientDataError: fewer than min_num_matches points
            IllDefinedDataPointsError: degenerate configuration
        """
        p, q, weights = _prepare(p, q, weights)
        if len(p) < self.min_num_matches:
            raise InsufficientDataError(
                f"{type(self).__name__} needs {self.min_num_matches} matches, got {len(p)}"
            )
        self.matrix = self._fit(p, q, weights)

    def _fit(self, p, q, w) -> np.ndarray:
        raise NotImplementedError

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Transfer Nx2 points"""
        points = np.asarray(points, dtype=np.float64)
        flat = points.reshape(-1, 2)
        m = self.matrix
        x = flat[:, 0] * m[0, 0] + flat[:, 1] * m[0, 1] + m[0, 2]
        y = flat[:, 0] * m[1, 0] + flat[:, 1] * m[1, 1] + m[1, 2]
        out = np.stack([x, y], axis=1)
        return out.reshape(points.shape)

    def to_matrix(self) -> np.ndarray:
        return self.matrix.copy()

    def copy(self) -> 'AbstractModel':
        model = type(self)(self.matrix)
        model.cost = self.cost
        return model

    def create_inverse(self) -> 'AbstractModel':
        """
        Create the inverse model

        Raises:
            NoninvertibleModelError: if the matrix is singular
        """
        det = np.linalg.det(self.matrix)
        if abs(det) < SINGULAR_EPSILON or not np.isfinite(det):
            raise NoninvertibleModelError(f"{self!r} is not invertible (det={det:.3g})")
        inverse = np.linalg.inv(self.matrix)
        inverse /= inverse[2, 2]
        model = type(self)(inverse)
        model.cost = self.cost
        return model


class TranslationModel2D(AbstractModel):
    min_num_matches = 1

    def _fit(self, p, q, w):
        pc, qc = _weighted_centroids(p, q, w)
        m = np.eye(3)
        m[:2, 2] = qc - pc
        return m


class RigidModel2D(AbstractModel):
    min_num_matches = 2

    def _fit(self, p, q, w):
        pc, qc = _weighted_centroids(p, q, w)
        dp = p - pc
        dq = q - qc
        a = np.sum(w * (dp[:, 0] * dq[:, 0] + dp[:, 1] * dq[:, 1]))
        b = np.sum(w * (dp[:, 0] * dq[:, 1] - dp[:, 1] * dq[:, 0]))
        norm = np.hypot(a, b)
        if norm < SINGULAR_EPSILON:
            raise IllDefinedDataPointsError("Coincident source points")
        cos, sin = a / norm, b / norm
        m = np.array([[cos, -sin, 0.0], [sin, cos, 0.0], [0.0, 0.0, 1.0]])
        m[:2, 2] = qc - m[:2, :2] @ pc
        return m


class SimilarityModel2D(AbstractModel):
    min_num_matches = 2

    def _fit(self, p, q, w):
        pc, qc = _weighted_centroids(p, q, w)
        dp = p - pc
        dq = q - qc
        ss = np.sum(w * (dp[:, 0] ** 2 + dp[:, 1] ** 2))
        if ss < SINGULAR_EPSILON:
            raise IllDefinedDataPointsError("Coincident source points")
        a = np.sum(w * (dp[:, 0] * dq[:, 0] + dp[:, 1] * dq[:, 1])) / ss
        b = np.sum(w * (dp[:, 0] * dq[:, 1] - dp[:, 1] * dq[:, 0])) / ss
        m = np.array([[a, -b, 0.0], [b, a, 0.0], [0.0, 0.0, 1.0]])
        m[:2, 2] = qc - m[:2, :2] @ pc
        return m


class AffineModel2D(AbstractModel):
    min_num_matches = 3

    def _fit(self, p, q, w):
        pc, qc = _weighted_centroids(p, q, w)
        dp = p - pc
        dq = q - qc
        a = (dp * w[:, None]).T @ dp
        det = np.linalg.det(a)
        if abs(det) <= SINGULAR_EPSILON * max(np.trace(a) ** 2, 1.0):
            raise IllDefinedDataPointsError("Collinear source points")
        b = (dp * w[:, None]).T @ dq
        lin = np.linalg.solve(a, b).T
        m = np.eye(3)
        m[:2, :2] = lin
        m[:2, 2] = qc - lin @ pc
        return m


class HomographyModel2D(AbstractModel):
    min_num_matches = 4

    @staticmethod
    def _normalization(points):
        c = np.mean(points, axis=0)
        d = np.mean(np.linalg.norm(points - c, axis=1))
        if d < SINGULAR_EPSILON:
            raise IllDefinedDataPointsError("Coincident points")
        s = np.sqrt(2.0) / d
        return np.array([[s, 0.0, -s * c[0]], [0.0, s, -s * c[1]], [0.0, 0.0, 1.0]])

    def _fit(self, p, q, w):
        tp = self._normalization(p)
        tq = self._normalization(q)
        pn = p @ tp[:2, :2].T + tp[:2, 2]
        qn = q @ tq[:2, :2].T + tq[:2, 2]
        n = len(p)
        sw = np.sqrt(w)
        rows = np.zeros((2 * n, 9))
        x, y = pn[:, 0], pn[:, 1]
        u, v = qn[:, 0], qn[:, 1]
        rows[0::2, 0] = -x
        rows[0::2, 1] = -y
        rows[0::2, 2] = -1.0
        rows[0::2, 6] = u * x
        rows[0::2, 7] = u * y
        rows[0::2, 8] = u
        rows[1::2, 3] = -x
        rows[1::2, 4] = -y
        rows[1::2, 5] = -1.0
        rows[1::2, 6] = v * x
        rows[1::2, 7] = v * y
        rows[1::2, 8] = v
        rows[0::2] *= sw[:, None]
        rows[1::2] *= sw[:, None]
        _, s, vt = np.linalg.svd(rows)
        if n > 4 and s[-2] < SINGULAR_EPSILON:
            raise IllDefinedDataPointsError("Homography is not constrained")
        h = vt[-1].reshape(3, 3)
        h = np.linalg.inv(tq) @ h @ tp
        if abs(h[2, 2]) < SINGULAR_EPSILON:
            raise IllDefinedDataPointsError("Degenerate homography")
        return h / h[2, 2]

    def apply(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64)
        flat = points.reshape(-1, 2)
        m = self.matrix
        x = flat[:, 0] * m[0, 0] + flat[:, 1] * m[0, 1] + m[0, 2]
        y = flat[:, 0] * m[1, 0] + flat[:, 1] * m[1, 1] + m[1, 2]
        z = flat[:, 0] * m[2, 0] + flat[:, 1] * m[2, 1] + m[2, 2]
        out = np.stack([x / z, y / z], axis=1)
        return out.reshape(points.shape)


class ModelKind(Enum):
    """Closed set of supported transformation models"""
    TRANSLATION = "translation"
    RIGID = "rigid"
    SIMILARITY = "similarity"
    AFFINE = "affine"
    HOMOGRAPHY = "homography"

    @classmethod
    def parse(cls, value) -> 'ModelKind':
        """Accept enum members, names ("Affine", "perspective") or legacy indices"""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return list(cls)[value]
        name = str(value).strip().lower()
        if name == "perspective":
            name = "homography"
        return cls(name)

    @property
    def model_class(self):
        return _MODEL_CLASSES[self]

    @property
    def min_num_matches(self) -> int:
        return self.model_class.min_num_matches

    def create(self) -> AbstractModel:
        """Create an identity instance of this model"""
        return self.model_class()


_MODEL_CLASSES = {
    ModelKind.TRANSLATION: TranslationModel2D,
    ModelKind.RIGID: RigidModel2D,
    ModelKind.SIMILARITY: SimilarityModel2D,
    ModelKind.AFFINE: AffineModel2D,
    ModelKind.HOMOGRAPHY: HomographyModel2D,
}

for _kind, _cls in _MODEL_CLASSES.items():
    _cls.kind = _kind


def is_identity(model: AbstractModel, points: np.ndarray, tolerance: float) -> bool:
    """
    Check whether a model moves no point by more than tolerance

    Args:
        model: Model to test
        points: Nx2 points the model is evaluated at
        tolerance: Maximal displacement still considered identity

    Returns:
        True if every point is displaced by less than tolerance
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(points) == 0:
        return True
    displacement = np.linalg.norm(model.apply(points) - points, axis=1)
    return bool(np.all(displacement < tolerance))
