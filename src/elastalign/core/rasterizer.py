"""
In-memory rasterizer for numpy backed layers
"""

import threading
import numpy as np
from typing import Callable, Dict, Optional, Tuple
import logging

from elastalign.core.interfaces import Raster, Rasterizer
from elastalign.core.layers import Layer, Patch, Rectangle
from elastalign.core.warp import render_layer

logger = logging.getLogger(__name__)

PIXEL_TYPES = ("gray8", "float32")


class ArrayRasterizer(Rasterizer):
    """
    Flattens layers by rendering their patches

    Rasters are cached per (layer, region, scale, filter object) until
    release_all; the cache holds a reference to every filter it keys on.
    Safe for concurrent use.
    """

    def __init__(self, cache_rasters: bool = True):
        self.cache_rasters = cache_rasters
        self._cache: Dict[Tuple, Raster] = {}
        self._lock = threading.Lock()
        self.flatten_count = 0

    def flatten(
        self,
        layer: Layer,
        region: Rectangle,
        scale: float,
        content_filter: Optional[Callable[[Patch], bool]] = None,
        pixel_type: str = "gray8"
    ) -> Raster:
        if pixel_type not in PIXEL_TYPES:
            raise ValueError(f"Unsupported pixel type {pixel_type!r}, expected one of {PIXEL_TYPES}")

        key = (layer.id, tuple(region), float(scale), content_filter, pixel_type)
        with self._lock:
            self.flatten_count += 1
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        image, mask = render_layer(layer, region, scale, content_filter)
        if pixel_type == "gray8":
            image = np.clip(np.round(image), 0, 255).astype(np.uint8)
        raster = Raster(image=image, mask=mask)

        if self.cache_rasters:
            with self._lock:
                self._cache[key] = raster
        return raster

    def release_all(self):
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
        if count:
            logger.debug(f"Released {count} cached rasters")
