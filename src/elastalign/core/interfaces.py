"""
Contracts of the collaborators the alignment pipeline consumes
"""

import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from elastalign.core.layers import Layer, Patch, Rectangle
from elastalign.core.point_match import PointMatches
from elastalign.ml.feature_detector import FeatureSet


@dataclass
class Raster:
    """Flattened grayscale region of a layer"""
    image: np.ndarray
    mask: np.ndarray

    @property
    def shape(self):
        return self.image.shape


class Rasterizer(ABC):
    """Renders regions of layers, must tolerate concurrent calls"""

    @abstractmethod
    def flatten(
        self,
        layer: Layer,
        region: Rectangle,
        scale: float,
        content_filter: Optional[Callable[[Patch], bool]] = None,
        pixel_type: str = "gray8"
    ) -> Raster:
        """
        Flatten a world region of a layer

        Args:
            layer: Layer to render
            region: World region, pixel (0, 0) of the result is region.x, region.y
            scale: Output pixels per world unit
            content_filter: Predicate accepting the patches to render
            pixel_type: "gray8" or "float32"
        """

    def release_all(self):
        """Drop cached image data"""


class FeatureCache(ABC):

    @abstractmethod
    def load_features(self, params_key: str, scope: str, layer_id) -> Optional[FeatureSet]:
        """Return cached features or None"""

    @abstractmethod
    def store_features(self, params_key: str, scope: str, layer_id, features: FeatureSet) -> bool:
        """Store features, return False on failure"""


class MatchCache(ABC):

    @abstractmethod
    def load_matches(self, params_key: str, scope: str, layer_id_a, layer_id_b) -> Optional[PointMatches]:
        """Return cached matches or None"""

    @abstractmethod
    def store_matches(self, params_key: str, scope: str, layer_id_a, layer_id_b, matches: PointMatches) -> bool:
        """Store matches, return False on failure"""


class WarpApplicator(ABC):
    """Attaches a layer warp to content items, safe across distinct items"""

    @abstractmethod
    def apply(self, content_item: Patch, warp):
        """Append warp to the transforms of content_item"""
