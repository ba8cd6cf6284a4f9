"""
SIFT feature extraction for layer rasters
"""

import cv2
import numpy as np
from typing import Optional
import logging

logger = logging.getLogger(__name__)

DESCRIPTOR_SIZE = 128


class FeatureSet:
    """
    Keypoints of one rasterized layer

    Locations are in raster pixel coordinates, descriptors are float32.
    The arrays are made read-only on construction.
    """

    def __init__(
        self,
        locations: np.ndarray,
        descriptors: np.ndarray,
        scales: Optional[np.ndarray] = None,
        orientations: Optional[np.ndarray] = None
    ):
        locations = np.array(locations, dtype=np.float64).reshape(-1, 2)
        n = len(locations)
        descriptors = np.array(descriptors, dtype=np.float32).reshape(n, -1) if n else \
            np.zeros((0, DESCRIPTOR_SIZE), dtype=np.float32)
        scales = np.zeros(n) if scales is None else np.array(scales, dtype=np.float64).reshape(n)
        orientations = np.zeros(n) if orientations is None else \
            np.array(orientations, dtype=np.float64).reshape(n)

        for array in (locations, descriptors, scales, orientations):
            array.setflags(write=False)

        self.locations = locations
        self.descriptors = descriptors
        self.scales = scales
        self.orientations = orientations

    @classmethod
    def empty(cls) -> 'FeatureSet':
        return cls(np.zeros((0, 2)), np.zeros((0, DESCRIPTOR_SIZE), dtype=np.float32))

    def __len__(self) -> int:
        return len(self.locations)

    def __repr__(self) -> str:
        return f"FeatureSet(n={len(self)})"


class SiftFeatureExtractor:
    """OpenCV SIFT on grayscale rasters, restricted to the valid mask"""

    def __init__(
        self,
        n_features: int = 0,
        n_octave_layers: int = 3,
        contrast_threshold: float = 0.04,
        edge_threshold: float = 10.0,
        sigma: float = 1.6
    ):
        """
        Initialize SIFT extractor

        Args:
            n_features: Maximum number of features to keep (0 = unlimited)
            n_octave_layers: Scale steps per octave
            contrast_threshold: Minimal DoG contrast of a keypoint
            edge_threshold: Maximal edge response ratio
            sigma: Gaussian sigma of the first octave
        """
        self.n_features = n_features
        self.sift = cv2.SIFT_create(
            nfeatures=n_features,
            nOctaveLayers=n_octave_layers,
            contrastThreshold=contrast_threshold,
            edgeThreshold=edge_threshold,
            sigma=sigma
        )

    def extract(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> FeatureSet:
        """
        Detect keypoints and compute descriptors

        Args:
            image: Grayscale (or BGR) raster
            mask: Optional validity mask, features are only detected where > 0

        Returns:
            FeatureSet in raster coordinates
        """
        if image.ndim == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        if image.dtype != np.uint8:
            image = cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)

        cv_mask = None
        if mask is not None:
            cv_mask = (np.asarray(mask) > 0).astype(np.uint8) * 255

        keypoints, descriptors = self.sift.detectAndCompute(image, cv_mask)
        if not keypoints or descriptors is None:
            logger.debug("No SIFT features found")
            return FeatureSet.empty()

        locations = np.array([kp.pt for kp in keypoints], dtype=np.float64)
        scales = np.array([kp.size for kp in keypoints], dtype=np.float64)
        orientations = np.array([kp.angle for kp in keypoints], dtype=np.float64)
        return FeatureSet(locations, descriptors, scales, orientations)
