"""
Moving least squares transform

Every location is mapped by a model fitted to all control points, weighted
by 1 / |p - x|^(2 alpha). The affine case is solved in closed form and
vectorized; other model kinds fit a weighted model per location.
"""

import numpy as np
from typing import Optional
import logging

from elastalign.core.models import ModelKind
from elastalign.core.point_match import PointMatches
from elastalign.errors import InsufficientDataError

logger = logging.getLogger(__name__)

# Points per vectorized block
CHUNK_SIZE = 4096


class MovingLeastSquaresTransform:
    """Smooth non-rigid warp interpolating a set of control point matches"""

    def __init__(self, kind: ModelKind = ModelKind.AFFINE, alpha: float = 2.0):
        self.kind = ModelKind.parse(kind)
        self.alpha = float(alpha)
        self.p: Optional[np.ndarray] = None
        self.q: Optional[np.ndarray] = None
        self.weights: Optional[np.ndarray] = None

    def __repr__(self) -> str:
        n = 0 if self.p is None else len(self.p)
        return f"MovingLeastSquaresTransform({self.kind.value}, alpha={self.alpha}, n={n})"

    def set_matches(self, matches: PointMatches):
        """
        Set control points, p1 are source and p2 target locations

        Raises:
            InsufficientDataError: fewer matches than the model needs
        """
        if len(matches) < self.kind.min_num_matches:
            raise InsufficientDataError(
                f"Moving least squares needs {self.kind.min_num_matches} matches, got {len(matches)}"
            )
        self.p = matches.p1.copy()
        self.q = matches.p2.copy()
        self.weights = matches.weights.copy()

    def matches(self) -> PointMatches:
        return PointMatches(self.p, self.q, self.weights)

    def copy(self) -> 'MovingLeastSquaresTransform':
        other = MovingLeastSquaresTransform(self.kind, self.alpha)
        if self.p is not None:
            other.set_matches(self.matches())
        return other

    def inverse(self) -> 'MovingLeastSquaresTransform':
        """Approximate inverse obtained by swapping the control points"""
        other = MovingLeastSquaresTransform(self.kind, self.alpha)
        other.set_matches(self.matches().flip())
        return other

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Transfer Nx2 points"""
        if self.p is None:
            raise InsufficientDataError("Moving least squares transform has no control points")
        points = np.asarray(points, dtype=np.float64)
        flat = points.reshape(-1, 2)
        out = np.empty_like(flat)
        for start in range(0, len(flat), CHUNK_SIZE):
            block = flat[start:start + CHUNK_SIZE]
            if self.kind == ModelKind.AFFINE:
                out[start:start + CHUNK_SIZE] = self._apply_affine(block)
            else:
                out[start:start + CHUNK_SIZE] = self._apply_generic(block)
        return out.reshape(points.shape)

    def _control_weights(self, block: np.ndarray):
        d2 = np.sum((block[:, None, :] - self.p[None, :, :]) ** 2, axis=2)
        hit = d2 == 0
        with np.errstate(divide='ignore', invalid='ignore'):
            w = self.weights[None, :] / np.power(d2, self.alpha)
        w[hit] = 0.0
        return w, hit

    def _apply_affine(self, block: np.ndarray) -> np.ndarray:
        w, hit = self._control_weights(block)
        wmax = np.max(w, axis=1)
        w = w / np.where(wmax > 0, wmax, 1.0)[:, None]
        wsum = np.sum(w, axis=1)
        safe = np.where(wsum > 0, wsum, 1.0)
        pc = (w @ self.p) / safe[:, None]
        qc = (w @ self.q) / safe[:, None]
        ph = self.p[None, :, :] - pc[:, None, :]
        qh = self.q[None, :, :] - qc[:, None, :]
        a = np.einsum('kn,kni,knj->kij', w, ph, ph)
        b = np.einsum('kn,kni,knj->kij', w, ph, qh)

        det = a[:, 0, 0] * a[:, 1, 1] - a[:, 0, 1] * a[:, 1, 0]
        trace = a[:, 0, 0] + a[:, 1, 1]
        singular = np.abs(det) <= 1e-12 * np.maximum(trace * trace, 1e-300)
        det = np.where(singular, 1.0, det)
        inv = np.empty_like(a)
        inv[:, 0, 0] = a[:, 1, 1] / det
        inv[:, 1, 1] = a[:, 0, 0] / det
        inv[:, 0, 1] = -a[:, 0, 1] / det
        inv[:, 1, 0] = -a[:, 1, 0] / det
        m = np.einsum('kij,kjl->kil', inv, b)

        out = np.einsum('ki,kij->kj', block - pc, m) + qc
        # Degenerate neighbourhoods fall back to translation
        out[singular] = (block - pc + qc)[singular]

        rows, cols = np.nonzero(hit)
        out[rows] = self.q[cols]
        return out

    def _apply_generic(self, block: np.ndarray) -> np.ndarray:
        w, hit = self._control_weights(block)
        out = np.empty_like(block)
        model = self.kind.create()
        for k in range(len(block)):
            if np.any(hit[k]):
                out[k] = self.q[np.argmax(hit[k])]
                continue
            model.fit(self.p, self.q, w[k])
            out[k] = model.apply(block[k][None, :])[0]
        return out
