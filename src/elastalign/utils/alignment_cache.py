"""
File based feature and point match cache

Entries are .npz files below cache_root, keyed by a hash of the parameter
key, the scope and the layer id(s). Writes go to a temporary file that is
renamed into place, so readers never see partial entries.
"""

import hashlib
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np

from elastalign.core.interfaces import FeatureCache, MatchCache
from elastalign.core.point_match import PointMatches
from elastalign.errors import CacheIOError
from elastalign.ml.feature_detector import FeatureSet

logger = logging.getLogger(__name__)


class DiskAlignmentCache(FeatureCache, MatchCache):
    """Feature and match cache in a directory tree"""

    CACHE_FORMAT_VERSION = 1

    def __init__(self, cache_root: Union[str, Path]):
        """
        Args:
            cache_root: Root directory, created on demand
        """
        self.cache_root = Path(cache_root)
        self.features_dir = self.cache_root / "features"
        self.matches_dir = self.cache_root / "matches"
        self.hits = 0
        self.misses = 0

    def _key(self, *parts) -> str:
        key_data = ":".join(str(p) for p in parts) + f":v{self.CACHE_FORMAT_VERSION}"
        return hashlib.sha256(key_data.encode()).hexdigest()[:32]

    def feature_path(self, params_key: str, scope: str, layer_id) -> Path:
        return self.features_dir / f"{self._key(params_key, scope, layer_id)}.npz"

    def match_path(self, params_key: str, scope: str, layer_id_a, layer_id_b) -> Path:
        return self.matches_dir / f"{self._key(params_key, scope, layer_id_a, layer_id_b)}.npz"

    def _write(self, path: Path, arrays: Dict[str, np.ndarray]):
        tmp = path.with_name(path.stem + ".tmp.npz")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            np.savez(str(tmp), **arrays)
            os.replace(tmp, path)
        except OSError as e:
            if tmp.exists():
                tmp.unlink()
            raise CacheIOError(f"Could not write cache entry {path}: {e}") from e

    def _read(self, path: Path) -> Optional[Dict[str, np.ndarray]]:
        if not path.exists():
            self.misses += 1
            return None
        try:
            with np.load(str(path)) as data:
                arrays = {name: data[name] for name in data.files}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache entry {path}: {e}")
            self.misses += 1
            return None
        self.hits += 1
        return arrays

    def load_features(self, params_key: str, scope: str, layer_id) -> Optional[FeatureSet]:
        arrays = self._read(self.feature_path(params_key, scope, layer_id))
        if arrays is None:
            return None
        try:
            return FeatureSet(
                arrays['locations'], arrays['descriptors'], arrays['scales'], arrays['orientations']
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Malformed feature cache entry for layer {layer_id}: {e}")
            return None

    def store_features(self, params_key: str, scope: str, layer_id, features: FeatureSet) -> bool:
        """
        Returns:
            True once written

        Raises:
            CacheIOError: the entry could not be written
        """
        self._write(self.feature_path(params_key, scope, layer_id), {
            'locations': features.locations,
            'descriptors': features.descriptors,
            'scales': features.scales,
            'orientations': features.orientations,
        })
        return True

    def load_matches(self, params_key: str, scope: str, layer_id_a, layer_id_b) -> Optional[PointMatches]:
        arrays = self._read(self.match_path(params_key, scope, layer_id_a, layer_id_b))
        if arrays is None:
            return None
        try:
            return PointMatches(arrays['p1'], arrays['p2'], arrays['weights'])
        except (KeyError, ValueError) as e:
            logger.warning(f"Malformed match cache entry for {layer_id_a} -> {layer_id_b}: {e}")
            return None

    def store_matches(self, params_key: str, scope: str, layer_id_a, layer_id_b,
                      matches: PointMatches) -> bool:
        self._write(self.match_path(params_key, scope, layer_id_a, layer_id_b), {
            'p1': matches.p1,
            'p2': matches.p2,
            'weights': matches.weights,
        })
        return True

    def clear(self):
        """Remove all cached entries"""
        for directory in (self.features_dir, self.matches_dir):
            if directory.exists():
                shutil.rmtree(directory, ignore_errors=True)
        logger.info(f"Cleared alignment cache at {self.cache_root}")

    def get_cache_stats(self) -> Dict:
        """Entry counts, disk usage and hit counters"""
        def entries(directory: Path):
            return [f for f in directory.glob("*.npz")] if directory.exists() else []

        features = entries(self.features_dir)
        matches = entries(self.matches_dir)
        size = sum(f.stat().st_size for f in features + matches)
        return {
            'feature_cache_entries': len(features),
            'match_cache_entries': len(matches),
            'total_size_mb': size / (1024 * 1024),
            'hits': self.hits,
            'misses': self.misses,
        }
