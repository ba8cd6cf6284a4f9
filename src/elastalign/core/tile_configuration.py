"""
Global linear pre-alignment of layers as a graph of tiles

Tiles live in an arena keyed by integer index. A connection stores the point
matches between two tiles in their local coordinates; optimization refits
every unfixed tile model against the current world positions of its
neighbours until the mean residual plateaus.
"""

import numpy as np
from typing import Callable, Dict, List, Optional, Set, Tuple
import logging

from elastalign.core.error_statistic import ErrorStatistic
from elastalign.core.models import AbstractModel, ModelKind
from elastalign.core.point_match import PointMatches
from elastalign.errors import InsufficientDataError

logger = logging.getLogger(__name__)


class Tile:
    """A model plus its adjacency list of (neighbour index, matches)"""

    def __init__(self, model: AbstractModel):
        self.model = model
        self.connections: List[Tuple[int, PointMatches]] = []

    @property
    def num_matches(self) -> int:
        return sum(len(m) for _, m in self.connections)

    def neighbors(self) -> Set[int]:
        return {index for index, _ in self.connections}


class TileConfiguration:
    """Set of tiles optimized jointly"""

    def __init__(self, kind: ModelKind = ModelKind.RIGID):
        self.kind = ModelKind.parse(kind)
        self.tiles: Dict[int, Tile] = {}
        self.fixed: Set[int] = set()

    def __len__(self) -> int:
        return len(self.tiles)

    def __contains__(self, index: int) -> bool:
        return index in self.tiles

    def add_tile(self, index: int) -> Tile:
        """Add a tile, adding an existing index is a no-op"""
        tile = self.tiles.get(index)
        if tile is None:
            tile = Tile(self.kind.create())
            self.tiles[index] = tile
        return tile

    def get_model(self, index: int) -> AbstractModel:
        return self.tiles[index].model

    def connect(self, a: int, b: int, matches: PointMatches):
        """
        Connect tile a to tile b

        Args:
            a: Tile index, owner of matches.p1
            b: Tile index, owner of matches.p2
            matches: Correspondences in local coordinates of both tiles
        """
        self.add_tile(a).connections.append((b, matches))
        self.add_tile(b).connections.append((a, matches.flip()))

    def fix_tile(self, index: int):
        self.add_tile(index)
        self.fixed.add(index)

    def _tile_error(self, index: int) -> Tuple[float, float]:
        tile = self.tiles[index]
        total = 0.0
        weight = 0.0
        for neighbor, matches in tile.connections:
            if len(matches) == 0:
                continue
            d = matches.residuals(tile.model, self.tiles[neighbor].model)
            total += float(np.sum(d * matches.weights))
            weight += float(np.sum(matches.weights))
        return total, weight

    def mean_error(self) -> float:
        total = 0.0
        weight = 0.0
        for index in self.tiles:
            t, w = self._tile_error(index)
            total += t
            weight += w
        return total / weight if weight > 0 else 0.0

    def _fit_tile(self, index: int):
        tile = self.tiles[index]
        p = np.vstack([m.p1 for _, m in tile.connections])
        q = np.vstack([self.tiles[n].model.apply(m.p2) for n, m in tile.connections])
        w = np.concatenate([m.weights for _, m in tile.connections])
        tile.model.fit(p, q, w)

    def optimize(
        self,
        max_epsilon: float,
        max_iterations: int,
        max_plateau_width: int,
        cancel_check: Optional[Callable[[], bool]] = None
    ) -> ErrorStatistic:
        """
        Gauss-Seidel refit of all unfixed tiles

        Returns:
            ErrorStatistic with the mean residual per iteration

        Raises:
            InsufficientDataError: an unfixed tile has fewer matches than its
                model needs
            InterruptedError: if cancel_check fires
        """
        stats = ErrorStatistic()
        if not self.tiles:
            return stats

        free = [i for i in sorted(self.tiles) if i not in self.fixed]
        for index in free:
            count = self.tiles[index].num_matches
            if count < self.kind.min_num_matches:
                raise InsufficientDataError(
                    f"Tile {index} has {count} matches, {self.kind.value} model needs "
                    f"{self.kind.min_num_matches}"
                )
        if not free:
            stats.add(self.mean_error())
            return stats

        for _ in range(max_iterations):
            if cancel_check is not None and cancel_check():
                raise InterruptedError("Tile optimization interrupted")
            for index in free:
                self._fit_tile(index)
            stats.add(self.mean_error())
            if stats.has_converged(max_epsilon, max_plateau_width):
                break

        logger.info(f"Optimized {len(self.tiles)} tiles ({len(self.fixed)} fixed) in "
                    f"{len(stats)} iterations, mean error {stats.last:.4f}")
        return stats
