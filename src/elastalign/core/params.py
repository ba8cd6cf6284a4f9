"""
Alignment parameter bundle

Parameters are immutable values created per run. Lengths are given in
full resolution world pixels; the pipeline scales them to its working
resolutions.
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict, replace
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from elastalign.core.models import ModelKind

logger = logging.getLogger(__name__)


def _default_threads() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True)
class SiftParams:
    """Feature extraction parameters"""

    n_features: int = 0
    """Maximum number of features per layer (0 = unlimited)."""

    n_octave_layers: int = 3
    """Scale steps per octave."""

    contrast_threshold: float = 0.04
    """Minimal DoG contrast of a keypoint."""

    edge_threshold: float = 10.0
    """Maximal edge response ratio."""

    sigma: float = 1.6
    """Gaussian sigma of the first octave."""

    max_octave_size: int = 1024
    """Largest raster side used for extraction, larger regions are downscaled."""


@dataclass(frozen=True)
class PointMatchParams:
    """Feature extraction and matching parameters, they define the cache identity"""

    sift: SiftParams = field(default_factory=SiftParams)

    rod: float = 0.92
    """Closest/next closest descriptor distance ratio."""

    clear_cache: bool = False
    """Ignore cached features and matches."""

    max_num_threads_sift: int = field(default_factory=_default_threads)
    """Feature extraction workers."""

    def cache_key(self) -> str:
        """Stable hash of everything that changes extracted features or matches"""
        payload = {
            'sift': asdict(self.sift),
            'rod': self.rod,
        }
        text = json.dumps(payload, sort_keys=True)
        return hashlib.sha1(text.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class AlignmentParams:
    """Complete parameter set of one elastic alignment run"""

    point_match: PointMatchParams = field(default_factory=PointMatchParams)

    # Geometric consensus filter
    max_epsilon: float = 200.0
    min_inlier_ratio: float = 0.0
    min_num_inliers: int = 12
    model_kind: ModelKind = ModelKind.AFFINE
    reject_identity: bool = True
    identity_tolerance: float = 5.0
    max_num_neighbors: int = 10
    max_num_failures: int = 3

    # Block matching
    layer_scale: float = 0.1
    search_radius: float = 200.0
    block_radius: float = -1
    """Block radius in world pixels, negative derives it from the mesh spacing."""
    min_r: float = 0.6
    max_curvature_r: float = 10.0
    rod_r: float = 0.9

    # Local smoothness filter
    use_local_smoothness_filter: bool = True
    local_model_kind: ModelKind = ModelKind.RIGID
    local_region_sigma: float = 200.0
    max_local_epsilon: float = 100.0
    max_local_trust: float = 3.0

    # Pre-alignment
    model_kind_optimize: ModelKind = ModelKind.RIGID

    # Spring mesh
    resolution_spring_mesh: int = 16
    stiffness_spring_mesh: float = 0.1
    damp_spring_mesh: float = 0.6
    max_stretch_spring_mesh: float = 2000.0
    max_iterations_spring_mesh: int = 1000
    max_plateau_width_spring_mesh: int = 200

    is_aligned: bool = False
    """Layers are roughly aligned already, skip feature matching."""

    visualize: bool = False
    max_num_threads: int = field(default_factory=_default_threads)
    random_seed: int = 0

    def __post_init__(self):
        for name in ('model_kind', 'local_model_kind', 'model_kind_optimize'):
            object.__setattr__(self, name, ModelKind.parse(getattr(self, name)))
        if self.layer_scale <= 0:
            raise ValueError(f"layer_scale must be positive, got {self.layer_scale}")
        if self.resolution_spring_mesh < 2:
            raise ValueError(f"resolution_spring_mesh must be >= 2, got {self.resolution_spring_mesh}")
        if self.max_num_threads < 1 or self.point_match.max_num_threads_sift < 1:
            raise ValueError("Thread counts must be >= 1")

    def block_radius_for(self, box_width: int) -> int:
        """Block radius in working resolution pixels"""
        radius = self.block_radius
        if radius < 0:
            radius = box_width / self.resolution_spring_mesh / 2.0
        return max(16, int(round(self.layer_scale * radius)))

    def with_overrides(self, **kwargs) -> 'AlignmentParams':
        return replace(self, **kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AlignmentParams':
        """
        Build parameters from a nested dictionary

        Raises:
            ValueError: unknown keys or invalid values
        """
        data = dict(data or {})
        point_match = data.pop('point_match', None) or {}
        sift = dict(point_match).pop('sift', None) or {}

        _check_keys(SiftParams, sift, 'point_match.sift')
        pm = {k: v for k, v in point_match.items() if k != 'sift'}
        _check_keys(PointMatchParams, pm, 'point_match')
        _check_keys(cls, data, '')

        return cls(point_match=PointMatchParams(sift=SiftParams(**sift), **pm), **data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'AlignmentParams':
        path = Path(path)
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} does not contain a parameter mapping")
        logger.info(f"Loaded alignment parameters from {path}")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ('model_kind', 'local_model_kind', 'model_kind_optimize'):
            data[name] = getattr(self, name).value
        return data

    def to_yaml(self, path: Union[str, Path]):
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)


def _check_keys(cls, data: Dict[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        where = f" in '{section}'" if section else ""
        raise ValueError(f"Unknown parameter(s){where}: {', '.join(sorted(unknown))}")
