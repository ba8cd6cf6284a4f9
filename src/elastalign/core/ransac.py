"""
Robust model estimation with random sample consensus

The estimator samples minimal subsets, keeps the model with the largest
consensus set satisfying both the absolute and the relative inlier
thresholds, and then refines the consensus with an iterative trimmed refit.
Optionally, models indistinguishable from identity are rejected and the
search repeated on the remaining candidates; large constant background
regions otherwise produce spurious identity agreement.
"""

import numpy as np
from typing import NamedTuple, Optional
import logging

from elastalign.core.models import AbstractModel, ModelKind, is_identity
from elastalign.core.point_match import PointMatches
from elastalign.errors import InsufficientDataError

logger = logging.getLogger(__name__)

DEFAULT_ITERATIONS = 1000
DEFAULT_MAX_TRUST = 3.0

# Residual floor for the trimmed refit, exact data has a median of ~0
MIN_FILTER_THRESHOLD = 1e-6


class RansacResult(NamedTuple):
    model: AbstractModel
    inliers: PointMatches


class RansacEstimator:
    """RANSAC with trimmed refit and identity rejection"""

    def __init__(
        self,
        iterations: int = DEFAULT_ITERATIONS,
        max_trust: float = DEFAULT_MAX_TRUST,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Args:
            iterations: Number of minimal samples drawn
            max_trust: Matches with residual above max_trust * median are
                dropped during the refit
            rng: Random generator (seeded generator for reproducible runs)
        """
        self.iterations = iterations
        self.max_trust = max_trust
        self.rng = rng if rng is not None else np.random.default_rng(0)

    def ransac(
        self,
        model: AbstractModel,
        candidates: PointMatches,
        epsilon: float,
        min_inlier_ratio: float,
        min_num_inliers: int
    ) -> Optional[np.ndarray]:
        """
        Find the largest consensus set

        Args:
            model: Model instance, fitted in place on success
            candidates: Correspondence candidates
            epsilon: Maximal residual of an inlier
            min_inlier_ratio: Minimal inliers / candidates
            min_num_inliers: Minimal absolute number of inliers

        Returns:
            Boolean inlier mask, or None if no model was found

        Raises:
            InsufficientDataError: fewer candidates than the model needs
        """
        n = len(candidates)
        k = model.min_num_matches
        if n < k:
            raise InsufficientDataError(f"{n} candidates, {k} required")

        best_mask = None
        best_count = 0
        trial = type(model)()

        for _ in range(self.iterations):
            sample = self.rng.choice(n, size=k, replace=False)
            try:
                trial.fit(candidates.p1[sample], candidates.p2[sample], candidates.weights[sample])
            except InsufficientDataError:
                continue

            mask = candidates.residuals(trial) <= epsilon
            count = int(np.count_nonzero(mask))
            if count <= best_count:
                continue
            if count < min_num_inliers or count < min_inlier_ratio * n:
                continue

            mask, count = self._refine_consensus(trial, candidates, mask, epsilon)
            if count > best_count:
                best_count = count
                best_mask = mask

        if best_mask is None:
            return None

        model.fit(
            candidates.p1[best_mask], candidates.p2[best_mask], candidates.weights[best_mask]
        )
        model.cost = candidates.subset(best_mask).mean_distance(model)
        return best_mask

    @staticmethod
    def _refine_consensus(trial, candidates, mask, epsilon):
        """Refit to the consensus until the inlier set stops growing"""
        count = int(np.count_nonzero(mask))
        refit = type(trial)(trial.matrix)
        while True:
            try:
                refit.fit(candidates.p1[mask], candidates.p2[mask], candidates.weights[mask])
            except InsufficientDataError:
                return mask, count
            new_mask = candidates.residuals(refit) <= epsilon
            new_count = int(np.count_nonzero(new_mask))
            if new_count <= count:
                return mask, count
            mask, count = new_mask, new_count

    def filter_matches(
        self,
        model: AbstractModel,
        candidates: PointMatches,
        min_num_inliers: int
    ) -> Optional[np.ndarray]:
        """
        Iteratively refit and drop matches far above the median residual

        Returns:
            Boolean mask of the surviving matches, or None if fewer than
            min_num_inliers remain
        """
        mask = np.ones(len(candidates), dtype=bool)
        while True:
            count = int(np.count_nonzero(mask))
            if count < max(min_num_inliers, model.min_num_matches):
                return None
            model.fit(candidates.p1[mask], candidates.p2[mask], candidates.weights[mask])
            residuals = candidates.residuals(model)
            median = np.median(residuals[mask])
            threshold = max(self.max_trust * median, MIN_FILTER_THRESHOLD)
            new_mask = mask & (residuals <= threshold)
            if np.count_nonzero(new_mask) == count:
                model.cost = candidates.subset(mask).mean_distance(model)
                return mask
            mask = new_mask

    def filter_ransac(
        self,
        model: AbstractModel,
        candidates: PointMatches,
        epsilon: float,
        min_inlier_ratio: float,
        min_num_inliers: int
    ) -> Optional[PointMatches]:
        """RANSAC followed by the trimmed refit, returns the inliers or None"""
        mask = self.ransac(model, candidates, epsilon, min_inlier_ratio, min_num_inliers)
        if mask is None:
            return None
        consensus = candidates.subset(mask)
        refined = self.filter_matches(model, consensus, min_num_inliers)
        if refined is None:
            return None
        return consensus.subset(refined)

    def find_model(
        self,
        kind: ModelKind,
        candidates: PointMatches,
        epsilon: float,
        min_inlier_ratio: float,
        min_num_inliers: int,
        reject_identity: bool = False,
        identity_tolerance: float = 0.0
    ) -> Optional[RansacResult]:
        """
        Estimate a model of the given kind, optionally rejecting identity

        Returns:
            RansacResult, or None if no model was found (including when
            there are not enough candidates)
        """
        model = kind.create()
        pool = candidates
        try:
            while True:
                inliers = self.filter_ransac(model, pool, epsilon, min_inlier_ratio, min_num_inliers)
                if inliers is None:
                    return None
                if reject_identity and is_identity(model, inliers.p1, identity_tolerance):
                    logger.info(f"Identity transform for {len(inliers)} matches rejected.")
                    pool = self._remove(pool, inliers)
                    model = kind.create()
                    continue
                return RansacResult(model, inliers)
        except InsufficientDataError as e:
            logger.debug(f"Not enough data for {kind.value} model: {e}")
            return None

    @staticmethod
    def _remove(pool: PointMatches, inliers: PointMatches) -> PointMatches:
        """Remove inlier rows from the candidate pool"""
        stacked = np.hstack([pool.p1, pool.p2])
        removed = np.hstack([inliers.p1, inliers.p2])
        keep = np.ones(len(pool), dtype=bool)
        for row in removed:
            hit = np.all(stacked == row, axis=1)
            keep &= ~hit
        return pool.subset(keep)
