"""
Layers, patches and regions

A layer is one section of the stack. It owns image patches placed in world
coordinates; warps computed by the alignment are appended to a patch and
map its placed coordinates to aligned world coordinates.
"""

import numpy as np
from typing import Callable, Iterable, List, NamedTuple, Optional
import logging

logger = logging.getLogger(__name__)


class Rectangle(NamedTuple):
    x: int
    y: int
    width: int
    height: int

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def union(self, other: 'Rectangle') -> 'Rectangle':
        if self.is_empty():
            return other
        if other.is_empty():
            return self
        x0 = min(self.x, other.x)
        y0 = min(self.y, other.y)
        x1 = max(self.x + self.width, other.x + other.width)
        y1 = max(self.y + self.height, other.y + other.height)
        return Rectangle(x0, y0, x1 - x0, y1 - y0)

    def intersection(self, other: 'Rectangle') -> 'Rectangle':
        x0 = max(self.x, other.x)
        y0 = max(self.y, other.y)
        x1 = min(self.x + self.width, other.x + other.width)
        y1 = min(self.y + self.height, other.y + other.height)
        return Rectangle(x0, y0, max(0, x1 - x0), max(0, y1 - y0))

    @classmethod
    def bounding(cls, points: np.ndarray) -> 'Rectangle':
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        x0, y0 = np.floor(points.min(axis=0)).astype(int)
        x1, y1 = np.ceil(points.max(axis=0)).astype(int)
        return cls(int(x0), int(y0), int(x1 - x0), int(y1 - y0))


class Patch:
    """An image placed in a layer"""

    def __init__(self, id, image: np.ndarray, x: float = 0, y: float = 0, visible: bool = True):
        self.id = id
        self.image = image
        self.x = x
        self.y = y
        self.visible = visible
        self.warps = []

    def __repr__(self) -> str:
        h, w = self.image.shape[:2]
        return f"Patch({self.id!r}, {w}x{h} at ({self.x}, {self.y}), warps={len(self.warps)})"

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    def placement_box(self) -> Rectangle:
        return Rectangle(int(np.floor(self.x)), int(np.floor(self.y)), self.width, self.height)

    def to_world(self, points: np.ndarray) -> np.ndarray:
        """Map pixel coordinates of the patch image to world coordinates"""
        world = np.asarray(points, dtype=np.float64) + np.array([self.x, self.y])
        for warp in self.warps:
            world = warp.apply(world)
        return world

    def bounding_box(self) -> Rectangle:
        """World bounding box, estimated from the transformed outline"""
        if not self.warps:
            return self.placement_box()
        w, h = self.width, self.height
        t = np.linspace(0.0, 1.0, 17)
        outline = np.concatenate([
            np.stack([t * w, np.zeros_like(t)], axis=1),
            np.stack([t * w, np.full_like(t, h)], axis=1),
            np.stack([np.zeros_like(t), t * h], axis=1),
            np.stack([np.full_like(t, w), t * h], axis=1),
        ])
        return Rectangle.bounding(self.to_world(outline))

    def append_warp(self, warp):
        self.warps.append(warp)


class Layer:
    """One section with a unique id and a z position"""

    def __init__(self, id, z: float, title: str = "", patches: Optional[Iterable[Patch]] = None):
        self._id = id
        self._z = float(z)
        self.title = title
        self.patches: List[Patch] = list(patches or [])

    @property
    def id(self):
        return self._id

    @property
    def z(self) -> float:
        return self._z

    def __repr__(self) -> str:
        return layer_name(self)

    def add_patch(self, patch: Patch):
        self.patches.append(patch)

    def contains_content(self) -> bool:
        return any(p.visible for p in self.patches)

    def filter_patches(self, content_filter: Optional[Callable[[Patch], bool]] = None) -> List[Patch]:
        """
        Patches the alignment operates on

        Args:
            content_filter: Predicate accepting the patches to keep (None keeps all)
        """
        if content_filter is None:
            return list(self.patches)
        return [p for p in self.patches if content_filter(p)]

    def bounding_box(self, content_filter: Optional[Callable[[Patch], bool]] = None) -> Rectangle:
        """World bounding box of the visible patches"""
        box = Rectangle(0, 0, 0, 0)
        for patch in self.filter_patches(content_filter):
            if patch.visible:
                box = box.union(patch.bounding_box())
        return box


class LayerSet:
    """Ordered collection of layers"""

    def __init__(self, layers: Optional[Iterable[Layer]] = None):
        self.layers: List[Layer] = list(layers or [])

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self):
        return iter(self.layers)

    def __getitem__(self, index) -> Layer:
        return self.layers[index]

    def add(self, layer: Layer):
        self.layers.append(layer)

    def index_of(self, layer: Layer) -> int:
        return self.layers.index(layer)

    def get_layers(self, first: int, last: int) -> List[Layer]:
        """Inclusive range of layers in ascending order, argument order does not matter"""
        lo, hi = min(first, last), max(first, last)
        lo = max(lo, 0)
        hi = min(hi, len(self.layers) - 1)
        return self.layers[lo:hi + 1]


def layer_name(layer: Layer) -> str:
    return f"layer z={layer.z:.3f} '{layer.title}'"
