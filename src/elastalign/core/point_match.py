"""
Point correspondences between two coordinate frames.

A match pairs a source point p1 with a target point p2. Both are stored in
local (pre-transform) coordinates; world coordinates are obtained by
applying the model that owns each side.
"""

import numpy as np
from typing import Optional, Sequence


class PointMatches:
    """Array-backed list of weighted point correspondences"""

    def __init__(
        self,
        p1: np.ndarray,
        p2: np.ndarray,
        weights: Optional[np.ndarray] = None
    ):
        p1 = np.asarray(p1, dtype=np.float64).reshape(-1, 2)
        p2 = np.asarray(p2, dtype=np.float64).reshape(-1, 2)
        if len(p1) != len(p2):
            raise ValueError(f"Point count mismatch: {len(p1)} vs {len(p2)}")
        if weights is None:
            weights = np.ones(len(p1), dtype=np.float64)
        else:
            weights = np.asarray(weights, dtype=np.float64).reshape(-1)
            if len(weights) != len(p1):
                raise ValueError(f"Weight count mismatch: {len(weights)} vs {len(p1)}")
        self.p1 = p1
        self.p2 = p2
        self.weights = weights

    @classmethod
    def empty(cls) -> 'PointMatches':
        return cls(np.zeros((0, 2)), np.zeros((0, 2)))

    @classmethod
    def concatenate(cls, matches: Sequence['PointMatches']) -> 'PointMatches':
        matches = [m for m in matches if len(m) > 0]
        if not matches:
            return cls.empty()
        return cls(
            np.vstack([m.p1 for m in matches]),
            np.vstack([m.p2 for m in matches]),
            np.concatenate([m.weights for m in matches])
        )

    def __len__(self) -> int:
        return len(self.p1)

    def __repr__(self) -> str:
        return f"PointMatches(n={len(self)})"

    def subset(self, selection) -> 'PointMatches':
        """Select matches by boolean mask or index array"""
        return PointMatches(self.p1[selection], self.p2[selection], self.weights[selection])

    def flip(self) -> 'PointMatches':
        """Swap source and target"""
        return PointMatches(self.p2.copy(), self.p1.copy(), self.weights.copy())

    def scaled(self, factor: float) -> 'PointMatches':
        """Scale both sides, used to move candidates between working resolutions"""
        return PointMatches(self.p1 * factor, self.p2 * factor, self.weights.copy())

    def with_weights(self, weights: np.ndarray) -> 'PointMatches':
        return PointMatches(self.p1, self.p2, weights)

    def residuals(self, model=None, target_model=None) -> np.ndarray:
        """
        Distances between transferred source points and target points

        Args:
            model: Model applied to p1 (identity if None)
            target_model: Model applied to p2 (identity if None)

        Returns:
            N array of euclidean distances
        """
        w1 = self.p1 if model is None else model.apply(self.p1)
        w2 = self.p2 if target_model is None else target_model.apply(self.p2)
        return np.linalg.norm(w1 - w2, axis=1)

    def mean_distance(self, model=None, target_model=None) -> float:
        """Weighted mean residual, 0 for an empty list"""
        if len(self) == 0:
            return 0.0
        d = self.residuals(model, target_model)
        wsum = np.sum(self.weights)
        if wsum <= 0:
            return float(np.mean(d))
        return float(np.sum(d * self.weights) / wsum)
