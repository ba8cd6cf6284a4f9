"""
elastalign - Elastic alignment of serial section image layers

Feature based pairwise models seed block matching between layers; one
spring mesh per layer is relaxed globally and turned into a moving least
squares warp of the layer content.
"""

__version__ = "0.1.0"

from .core.elastic_align import (
    AlignmentResult,
    AlignmentStatus,
    ElasticLayerAligner,
    LayerPair,
)
from .core.layers import Layer, LayerSet, Patch, Rectangle
from .core.params import AlignmentParams, PointMatchParams, SiftParams
from .core.rasterizer import ArrayRasterizer
from .core.warp import PatchWarpApplicator, render_layer
from .utils.alignment_cache import DiskAlignmentCache

__all__ = [
    'AlignmentParams',
    'AlignmentResult',
    'AlignmentStatus',
    'ArrayRasterizer',
    'DiskAlignmentCache',
    'ElasticLayerAligner',
    'Layer',
    'LayerPair',
    'LayerSet',
    'Patch',
    'PatchWarpApplicator',
    'PointMatchParams',
    'Rectangle',
    'SiftParams',
    'render_layer',
]
