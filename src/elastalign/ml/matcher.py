"""
Descriptor matching between two feature sets
"""

import cv2
import numpy as np
import logging

from elastalign.core.point_match import PointMatches
from elastalign.ml.feature_detector import FeatureSet

logger = logging.getLogger(__name__)


class FeatureMatcher:
    """Brute force nearest neighbour matcher with ratio test"""

    def __init__(self, rod: float = 0.92):
        """
        Args:
            rod: Maximal ratio of best to second best descriptor distance
        """
        self.rod = rod
        self.matcher = cv2.BFMatcher(cv2.NORM_L2, crossCheck=False)

    def match(self, features1: FeatureSet, features2: FeatureSet) -> PointMatches:
        """
        Match features1 against features2

        Every feature of features1 is matched to its nearest neighbour in
        features2 if the distance ratio to the second nearest passes the
        ratio test. Targets claimed by more than one source feature are
        ambiguous and all their matches are dropped.

        Returns:
            PointMatches with p1 from features1 and p2 from features2
        """
        if len(features1) == 0 or len(features2) < 2:
            return PointMatches.empty()

        try:
            knn = self.matcher.knnMatch(features1.descriptors, features2.descriptors, k=2)
        except cv2.error as e:
            logger.warning(f"Descriptor matching failed: {e}")
            return PointMatches.empty()

        query, train = [], []
        for pair in knn:
            if len(pair) < 2:
                continue
            best, second = pair
            if best.distance < self.rod * second.distance:
                query.append(best.queryIdx)
                train.append(best.trainIdx)

        if not query:
            return PointMatches.empty()

        query = np.array(query)
        train = np.array(train)
        _, inverse, counts = np.unique(train, return_inverse=True, return_counts=True)
        unique = counts[inverse] == 1
        if not np.all(unique):
            logger.debug(f"Dropped {np.count_nonzero(~unique)} ambiguous many-to-one matches")

        return PointMatches(
            features1.locations[query[unique]],
            features2.locations[train[unique]]
        )


def create_matches(features_b: FeatureSet, features_a: FeatureSet, rod: float) -> PointMatches:
    """Candidates from layer B to layer A, p1 in B and p2 in A"""
    return FeatureMatcher(rod=rod).match(features_b, features_a)
