"""
Elastic alignment of a range of layers
Coarse pairwise models from feature matches seed a block matching step that
connects one spring mesh per layer; the relaxed meshes become per-layer
moving least squares warps applied to the layer content.
"""

import gc
import math
import time
import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union
import logging

from elastalign.core.block_matching import local_smoothness_filter, match_by_maximal_pmcc
from elastalign.core.error_statistic import ErrorStatistic
from elastalign.core.interfaces import FeatureCache, MatchCache, Rasterizer, WarpApplicator
from elastalign.core.layers import Layer, LayerSet, Patch, Rectangle, layer_name
from elastalign.core.mesh_visualizer import MeshVisualizer
from elastalign.core.mls import MovingLeastSquaresTransform
from elastalign.core.models import AbstractModel, ModelKind, TranslationModel2D
from elastalign.core.params import AlignmentParams, SiftParams
from elastalign.core.point_match import PointMatches
from elastalign.core.ransac import RansacEstimator
from elastalign.core.spring_mesh import SpringMesh, optimize_meshes
from elastalign.core.tile_configuration import TileConfiguration
from elastalign.core.warp import PatchWarpApplicator
from elastalign.errors import (
    AlignmentError, CacheIOError, DegenerateBoundingBoxError, EmptyRangeError,
    ExtractionExecutionError, NoninvertibleModelError
)
from elastalign.ml.feature_detector import FeatureSet, SiftFeatureExtractor
from elastalign.ml.matcher import create_matches
from elastalign.utils.concurrency import run_batch
from elastalign.utils.memory_manager import MemoryManager

logger = logging.getLogger(__name__)

RANSAC_ITERATIONS = 1000
RANSAC_MAX_TRUST = 3.0
MLS_ALPHA = 2.0


class AlignmentStatus(Enum):
    DONE = "done"
    SKIPPED = "skipped"


class LayerPair(NamedTuple):
    """Coarse model mapping working coordinates of layer index_b to layer index_a"""
    index_a: int
    index_b: int
    model: AbstractModel


@dataclass
class AlignmentResult:
    """Outcome of one alignment run"""
    status: AlignmentStatus
    reason: str = ""
    layers: List[Layer] = field(default_factory=list)
    box: Optional[Rectangle] = None
    pairs: List[LayerPair] = field(default_factory=list)
    warps: Dict[Any, MovingLeastSquaresTransform] = field(default_factory=dict)
    meshes: List[SpringMesh] = field(default_factory=list)
    tile_models: Dict[Any, AbstractModel] = field(default_factory=dict)
    tile_statistics: Optional[ErrorStatistic] = None
    mesh_statistics: Optional[ErrorStatistic] = None
    visualizations: Dict[Any, np.ndarray] = field(default_factory=dict)
    warp_failures: List[Any] = field(default_factory=list)


def default_extractor_factory(sift: SiftParams) -> SiftFeatureExtractor:
    return SiftFeatureExtractor(
        n_features=sift.n_features,
        n_octave_layers=sift.n_octave_layers,
        contrast_threshold=sift.contrast_threshold,
        edge_threshold=sift.edge_threshold,
        sigma=sift.sigma
    )


def collect_pairs(
    num_layers: int,
    match_pair: Callable[[int, int], Optional[LayerPair]],
    max_num_neighbors: int,
    max_num_failures: int,
    max_num_threads: int,
    cancel_check: Optional[Callable[[], bool]] = None
) -> List[LayerPair]:
    """
    Match every layer against its following neighbors

    Neighbors of a start layer are matched in batches of max_num_threads and
    evaluated in neighbor order. The failure counter carries over from one
    start layer to the next and only a success resets it; once it exceeds
    max_num_failures the remaining neighbors of the current start layer are
    skipped.

    Args:
        num_layers: Number of layers in the working range
        match_pair: Callable(i, j) returning a LayerPair or None
        max_num_neighbors: Window size after each start layer
        max_num_failures: Consecutive failures tolerated
        max_num_threads: Batch width
        cancel_check: Callable returning True when matching should stop

    Returns:
        Successful pairs in (start layer, neighbor) order
    """
    pairs = []
    num_failures = 0
    for i in range(num_layers):
        if cancel_check is not None and cancel_check():
            raise InterruptedError("Pair matching interrupted")

        window_end = min(num_layers, i + max_num_neighbors + 1)
        j = i + 1
        while j < window_end:
            batch = list(range(j, min(j + max_num_threads, window_end)))
            j = batch[-1] + 1
            results = run_batch([partial(match_pair, i, k) for k in batch], max_num_threads, cancel_check)

            gap_exceeded = False
            for k, pair in zip(batch, results):
                if pair is None:
                    num_failures += 1
                    if num_failures > max_num_failures:
                        logger.info(f"Layer {i}: {num_failures} consecutive failures at neighbor {k}, "
                                    f"skipping the rest of its window")
                        gap_exceeded = True
                        break
                else:
                    num_failures = 0
                    pairs.append(pair)
            if gap_exceeded:
                break
    return pairs


class ElasticLayerAligner:
    """Elastic alignment engine for a layer stack"""

    def __init__(
        self,
        rasterizer: Rasterizer,
        feature_cache: Optional[FeatureCache] = None,
        match_cache: Optional[MatchCache] = None,
        warp_applicator: Optional[WarpApplicator] = None,
        extractor_factory: Optional[Callable[[SiftParams], Any]] = None,
        memory_manager: Optional[MemoryManager] = None,
        progress_callback: Optional[Callable[[int, str], None]] = None,
        cancel_flag: Optional[Callable[[], bool]] = None
    ):
        """
        Args:
            rasterizer: Renders layer regions for extraction and block matching
            feature_cache: Optional feature cache
            match_cache: Optional point match cache
            warp_applicator: Attaches the final warps to patches
            extractor_factory: Callable(SiftParams) returning an object with
                extract(image, mask) -> FeatureSet, called once per task
            memory_manager: Memory release checkpoints
            progress_callback: Callback(percentage, message)
            cancel_flag: Callable returning True to stop the run
        """
        self.rasterizer = rasterizer
        self.feature_cache = feature_cache
        self.match_cache = match_cache
        self.warp_applicator = warp_applicator or PatchWarpApplicator()
        self.extractor_factory = extractor_factory or default_extractor_factory
        self.memory_manager = memory_manager or MemoryManager()
        self.progress_callback = progress_callback
        self.cancel_flag = cancel_flag
        self._cancelled = False

    def cancel(self):
        """Cancel the current alignment"""
        self._cancelled = True
        logger.info("Alignment cancelled by user")

    def _is_cancelled(self) -> bool:
        return self._cancelled or bool(self.cancel_flag and self.cancel_flag())

    def _check_cancel(self):
        if self._is_cancelled():
            raise InterruptedError("Alignment cancelled")

    def _update_progress(self, percentage: int, message: str = ""):
        if self.progress_callback:
            self.progress_callback(percentage, message)

    def run(
        self,
        layers: Union[LayerSet, Sequence[Layer]],
        first: int,
        last: int,
        fov: Optional[Rectangle] = None,
        content_filter: Optional[Callable[[Patch], bool]] = None,
        params: Optional[AlignmentParams] = None
    ) -> AlignmentResult:
        """
        Align layers first..last (inclusive, any order)

        Args:
            layers: Layer set or sequence of layers
            first: Index of the first layer
            last: Index of the last layer
            fov: Optional world region limiting the aligned area
            content_filter: Predicate accepting the patches to align
            params: Alignment parameters

        Returns:
            AlignmentResult, SKIPPED when there is nothing to align

        Raises:
            InterruptedError: the run was cancelled, warps applied so far remain
            ExtractionExecutionError: feature extraction failed
            InsufficientDataError: the tiles or meshes are not constrained
        """
        self._cancelled = False
        params = params or AlignmentParams()
        layer_set = layers if isinstance(layers, LayerSet) else LayerSet(layers)
        start = time.time()

        # Step 1: Collect the working range
        logger.info("Step 1: Collecting layers...")
        self._update_progress(0, "Collecting layers...")
        try:
            layer_range, box = self._collect_range(layer_set, first, last, fov, content_filter)
        except (EmptyRangeError, DegenerateBoundingBoxError) as e:
            logger.warning(f"Nothing to align: {e}")
            self._update_progress(100, "Nothing to align")
            return AlignmentResult(AlignmentStatus.SKIPPED, reason=str(e))

        logger.info(f"Aligning {len(layer_range)} layers in box {tuple(box)}")
        self.memory_manager.log_memory_status("before alignment")
        result = AlignmentResult(AlignmentStatus.DONE, layers=layer_range, box=box)

        try:
            # Step 2 and 3: Coarse pairwise models
            self._check_cancel()
            if params.is_aligned:
                logger.info("Step 2: Layers are pre-aligned, skipping feature matching")
                self._update_progress(10, "Layers are pre-aligned...")
                result.pairs = self._identity_pairs(len(layer_range), params)
            else:
                scale = min(
                    1.0,
                    params.point_match.sift.max_octave_size / box.width,
                    params.point_match.sift.max_octave_size / box.height
                )
                logger.info("Step 2: Extracting features...")
                self._update_progress(5, f"Extracting features in {len(layer_range)} layers...")
                cached, features = self._extract_features(layer_range, box, scale, content_filter, params)
                gc.collect()

                self._check_cancel()
                logger.info("Step 3: Matching layer pairs...")
                self._update_progress(30, "Matching layer pairs...")
                result.pairs = self._match_layers(layer_range, box, scale, cached, features, params)
                del cached, features
                gc.collect()
            logger.info(f"{len(result.pairs)} layer pairs with a coarse model")

            # Step 4: Block matching into spring meshes
            self._check_cancel()
            logger.info("Step 4: Block matching...")
            self._update_progress(50, "Block matching layer pairs...")
            meshes, tiles = self._build_meshes(layer_range, box, result.pairs, content_filter, params)
            result.meshes = meshes

            # Step 5: Linear pre-alignment
            self._check_cancel()
            logger.info("Step 5: Pre-aligning layers...")
            self._update_progress(75, "Pre-aligning layers...")
            result.tile_statistics = self._pre_align(tiles, meshes, params)
            for index, layer in enumerate(layer_range):
                if index in tiles:
                    result.tile_models[layer.id] = tiles.get_model(index)

            # Step 6: Relaxation
            self._check_cancel()
            logger.info("Step 6: Relaxing spring meshes...")
            self._update_progress(80, "Relaxing spring meshes...")
            with self.memory_manager.track_operation("mesh relaxation"):
                result.mesh_statistics = optimize_meshes(
                    meshes,
                    params.max_epsilon * params.layer_scale,
                    params.max_iterations_spring_mesh,
                    params.max_plateau_width_spring_mesh,
                    cancel_check=self._is_cancelled,
                    visualize=params.visualize
                )
            if params.visualize:
                visualizer = MeshVisualizer()
                for layer, mesh in zip(layer_range, meshes):
                    result.visualizations[layer.id] = visualizer.draw(mesh, meshes)

            # Step 7: Warps
            self._check_cancel()
            logger.info("Step 7: Applying warps...")
            self._update_progress(90, "Applying warps to layer content...")
            self._apply_warps(layer_range, box, meshes, content_filter, params, result)

        except InterruptedError:
            logger.warning(f"Alignment interrupted, {len(result.warps)} layers already warped")
            raise

        elapsed = time.time() - start
        self.memory_manager.log_memory_status("after alignment")
        self._update_progress(100, "Alignment completed")
        logger.info(f"Aligned {len(layer_range)} layers in {elapsed:.1f}s "
                    f"({len(result.warp_failures)} warp failures)")
        return result

    def _collect_range(
        self,
        layer_set: LayerSet,
        first: int,
        last: int,
        fov: Optional[Rectangle],
        content_filter
    ) -> Tuple[List[Layer], Rectangle]:
        """
        Non-empty layers of the range and the aligned world box

        Raises:
            EmptyRangeError: fewer than two layers have content
            DegenerateBoundingBoxError: the box has no area
        """
        requested = layer_set.get_layers(first, last)
        layer_range = []
        for layer in requested:
            if layer.contains_content():
                layer_range.append(layer)
            else:
                logger.info(f"Ignoring empty {layer_name(layer)}")

        if len(layer_range) < 2:
            raise EmptyRangeError(
                f"{len(layer_range)} of {len(requested)} layers in range {first}..{last} have content"
            )

        box = Rectangle(0, 0, 0, 0)
        for layer in layer_range:
            box = box.union(layer.bounding_box())
        if fov is not None:
            box = box.intersection(fov)
        if box.is_empty():
            raise DegenerateBoundingBoxError(f"Bounding box {tuple(box)} is empty")
        return layer_range, box

    def _scope(self, box: Rectangle, scale: float) -> str:
        return f"layer:{box.x},{box.y},{box.width},{box.height}@{scale:.6f}"

    def _identity_pairs(self, num_layers: int, params: AlignmentParams) -> List[LayerPair]:
        pairs = []
        for i in range(num_layers):
            for j in range(i + 1, min(num_layers, i + params.max_num_neighbors + 1)):
                pairs.append(LayerPair(i, j, TranslationModel2D()))
        return pairs

    def _extract_features(
        self,
        layer_range: List[Layer],
        box: Rectangle,
        scale: float,
        content_filter,
        params: AlignmentParams
    ) -> Tuple[Dict[Tuple[int, int], PointMatches], Dict[int, FeatureSet]]:
        """
        Load cached candidate matches and extract features where needed

        Only layers taking part in a pair without cached matches are
        extracted.

        Returns:
            (cached candidates by (i, j), features by layer index)
        """
        params_key = params.point_match.cache_key()
        scope = self._scope(box, scale)
        use_cache = not params.point_match.clear_cache
        n = len(layer_range)

        cached: Dict[Tuple[int, int], PointMatches] = {}
        needed = set()
        for i in range(n):
            for j in range(i + 1, min(n, i + params.max_num_neighbors + 1)):
                candidates = None
                if use_cache and self.match_cache is not None:
                    candidates = self.match_cache.load_matches(
                        params_key, scope, layer_range[j].id, layer_range[i].id
                    )
                if candidates is None:
                    needed.update((i, j))
                else:
                    cached[(i, j)] = candidates
        if cached:
            logger.info(f"Loaded cached matches for {len(cached)} layer pairs")

        indices = sorted(needed)
        tasks = [
            partial(self._extract_layer, layer_range[i], box, scale, content_filter, params, params_key, scope)
            for i in indices
        ]
        try:
            extracted = run_batch(tasks, params.point_match.max_num_threads_sift, self._is_cancelled)
        except InterruptedError:
            raise
        except Exception as e:
            raise ExtractionExecutionError(f"Feature extraction failed: {e}") from e

        return cached, dict(zip(indices, extracted))

    def _extract_layer(
        self,
        layer: Layer,
        box: Rectangle,
        scale: float,
        content_filter,
        params: AlignmentParams,
        params_key: str,
        scope: str
    ) -> FeatureSet:
        if not params.point_match.clear_cache and self.feature_cache is not None:
            features = self.feature_cache.load_features(params_key, scope, layer.id)
            if features is not None:
                logger.debug(f"Loaded {len(features)} cached features for {layer_name(layer)}")
                return features

        raster = self.rasterizer.flatten(layer, box, scale, content_filter, "gray8")
        extractor = self.extractor_factory(params.point_match.sift)
        features = extractor.extract(raster.image, raster.mask)
        logger.info(f"{len(features)} features extracted for {layer_name(layer)}")

        if self.feature_cache is not None:
            try:
                if not self.feature_cache.store_features(params_key, scope, layer.id, features):
                    logger.warning(f"Could not cache features of {layer_name(layer)}")
            except CacheIOError as e:
                logger.warning(f"Could not cache features of {layer_name(layer)}: {e}")
        return features

    def _match_layers(
        self,
        layer_range: List[Layer],
        box: Rectangle,
        scale: float,
        cached: Dict[Tuple[int, int], PointMatches],
        features: Dict[int, FeatureSet],
        params: AlignmentParams
    ) -> List[LayerPair]:
        match_pair = partial(self._match_pair, layer_range, box, scale, cached, features, params)
        return collect_pairs(
            len(layer_range),
            match_pair,
            params.max_num_neighbors,
            params.max_num_failures,
            params.max_num_threads,
            self._is_cancelled
        )

    def _match_pair(
        self,
        layer_range: List[Layer],
        box: Rectangle,
        scale: float,
        cached: Dict[Tuple[int, int], PointMatches],
        features: Dict[int, FeatureSet],
        params: AlignmentParams,
        i: int,
        j: int
    ) -> Optional[LayerPair]:
        """Coarse model of layer j to layer i, None if there is none"""
        layer_a, layer_b = layer_range[i], layer_range[j]
        candidates = cached.get((i, j))
        if candidates is None:
            candidates = create_matches(features[j], features[i], params.point_match.rod)
            self._store_matches(layer_a, layer_b, box, scale, candidates, params)

        layer_scale = params.layer_scale
        estimator = RansacEstimator(
            iterations=RANSAC_ITERATIONS,
            max_trust=RANSAC_MAX_TRUST,
            rng=np.random.default_rng([params.random_seed, i, j])
        )
        found = estimator.find_model(
            params.model_kind,
            candidates.scaled(layer_scale / scale),
            params.max_epsilon * layer_scale,
            params.min_inlier_ratio,
            params.min_num_inliers,
            reject_identity=params.reject_identity,
            identity_tolerance=params.identity_tolerance * layer_scale
        )

        if found is None:
            logger.info(f"{layer_name(layer_a)} -> {layer_name(layer_b)}: no correspondences found "
                        f"among {len(candidates)} candidates")
            return None

        displacement = found.inliers.mean_distance() / layer_scale
        logger.info(f"{layer_name(layer_a)} -> {layer_name(layer_b)}: {len(found.inliers)} of "
                    f"{len(candidates)} candidates, mean displacement {displacement:.2f}px")
        return LayerPair(i, j, found.model)

    def _store_matches(self, layer_a, layer_b, box, scale, candidates, params):
        if self.match_cache is None:
            return
        try:
            stored = self.match_cache.store_matches(
                params.point_match.cache_key(), self._scope(box, scale), layer_b.id, layer_a.id, candidates
            )
            if not stored:
                logger.warning(f"Could not cache matches {layer_name(layer_b)} -> {layer_name(layer_a)}")
        except CacheIOError as e:
            logger.warning(f"Could not cache matches {layer_name(layer_b)} -> {layer_name(layer_a)}: {e}")

    def _build_meshes(
        self,
        layer_range: List[Layer],
        box: Rectangle,
        pairs: List[LayerPair],
        content_filter,
        params: AlignmentParams
    ) -> Tuple[List[SpringMesh], TileConfiguration]:
        """
        Block match every pair in both directions and connect meshes and tiles
        """
        layer_scale = params.layer_scale
        mesh_width = int(math.ceil(box.width * layer_scale))
        mesh_height = int(math.ceil(box.height * layer_scale))
        meshes = [
            SpringMesh(
                params.resolution_spring_mesh,
                mesh_width,
                mesh_height,
                stiffness=params.stiffness_spring_mesh,
                max_stretch=params.max_stretch_spring_mesh * layer_scale,
                damp=params.damp_spring_mesh
            )
            for _ in layer_range
        ]

        block_radius = params.block_radius_for(box.width)
        search_radius = int(round(layer_scale * params.search_radius))
        sigma = layer_scale * params.local_region_sigma
        max_local_epsilon = layer_scale * params.max_local_epsilon
        logger.info(f"Meshes {mesh_width}x{mesh_height}, {meshes[0].num_vertices} vertices, "
                    f"block radius {block_radius}px, search radius {search_radius}px")

        tiles = TileConfiguration(params.model_kind_optimize)
        for n, pair in enumerate(pairs):
            self._check_cancel()
            self._update_progress(50 + int(25 * n / max(1, len(pairs))),
                                  f"Block matching pair {n + 1}/{len(pairs)}")
            a, b = pair.index_a, pair.index_b
            layer_a, layer_b = layer_range[a], layer_range[b]

            try:
                inverse = pair.model.create_inverse()
            except NoninvertibleModelError as e:
                logger.warning(f"{layer_name(layer_a)} -> {layer_name(layer_b)}: skipped, {e}")
                continue

            self.memory_manager.release(self.rasterizer, f"block matching pair {a}-{b}")
            raster_a = self.rasterizer.flatten(layer_a, box, layer_scale, content_filter, "float32")
            raster_b = self.rasterizer.flatten(layer_b, box, layer_scale, content_filter, "float32")

            matching = partial(
                match_by_maximal_pmcc,
                block_radius=block_radius,
                search_radius=search_radius,
                min_r=params.min_r,
                rod_r=params.rod_r,
                max_curvature_r=params.max_curvature_r,
                cancel_check=self._is_cancelled
            )
            pm12, v12 = matching(raster_a.image, raster_b.image, raster_a.mask, raster_b.mask,
                                 transform=inverse, points=meshes[a].vertices())
            pm21, v21 = matching(raster_b.image, raster_a.image, raster_b.mask, raster_a.mask,
                                 transform=pair.model, points=meshes[b].vertices())
            found12, found21 = len(pm12), len(pm21)

            if params.use_local_smoothness_filter:
                pm12, v12 = self._smooth(pm12, v12, sigma, max_local_epsilon, params)
                pm21, v21 = self._smooth(pm21, v21, sigma, max_local_epsilon, params)

            logger.info(f"{layer_name(layer_a)} > {layer_name(layer_b)}: {len(pm12)}/{found12} "
                        f"block matches, reverse {len(pm21)}/{found21}")

            spring_constant = 1.0 / (b - a)
            for vertex, target in zip(v12, pm12.p2):
                passive = meshes[b].add_passive_vertex(target)
                meshes[a].add_spring(vertex, b, passive, spring_constant)
            for vertex, target in zip(v21, pm21.p2):
                passive = meshes[a].add_passive_vertex(target)
                meshes[b].add_spring(vertex, a, passive, spring_constant)

            min_matches = pair.model.min_num_matches
            if len(pm12) > min_matches:
                tiles.connect(a, b, pm12)
            if len(pm21) > min_matches:
                tiles.connect(b, a, pm21)

        return meshes, tiles

    def _smooth(self, matches: PointMatches, vertices: np.ndarray, sigma: float,
                max_epsilon: float, params: AlignmentParams):
        if len(matches) == 0:
            return matches, vertices
        keep = local_smoothness_filter(
            params.local_model_kind, matches, sigma, max_epsilon, params.max_local_trust
        )
        return matches.subset(keep), vertices[keep]

    def _pre_align(self, tiles: TileConfiguration, meshes: List[SpringMesh],
                   params: AlignmentParams) -> ErrorStatistic:
        """Optimize the tile configuration and place every mesh at its tile model"""
        statistics = ErrorStatistic()
        if len(tiles) > 0:
            tiles.fix_tile(min(tiles.tiles))
            statistics = tiles.optimize(
                params.max_epsilon * params.layer_scale,
                params.max_iterations_spring_mesh,
                params.max_plateau_width_spring_mesh,
                cancel_check=self._is_cancelled
            )
        else:
            logger.warning("No layer pair has enough block matches for pre-alignment")

        for index, mesh in enumerate(meshes):
            if index in tiles:
                mesh.init(tiles.get_model(index))
            else:
                mesh.init(params.model_kind_optimize.create())
        return statistics

    def _apply_warps(
        self,
        layer_range: List[Layer],
        box: Rectangle,
        meshes: List[SpringMesh],
        content_filter,
        params: AlignmentParams,
        result: AlignmentResult
    ):
        self.memory_manager.release(self.rasterizer, "warp application")
        offset = np.array([box.x, box.y], dtype=np.float64)
        for index, (layer, mesh) in enumerate(zip(layer_range, meshes)):
            self._check_cancel()
            self._update_progress(90 + int(10 * index / len(layer_range)),
                                  f"Warping {layer_name(layer)}")

            vertex_matches = mesh.vertex_matches()
            warp = MovingLeastSquaresTransform(ModelKind.AFFINE, alpha=MLS_ALPHA)
            warp.set_matches(PointMatches(
                vertex_matches.p1 / params.layer_scale + offset,
                vertex_matches.p2 / params.layer_scale + offset
            ))
            result.warps[layer.id] = warp

            patches = layer.filter_patches(content_filter)
            tasks = [partial(self._apply_warp, patch, warp) for patch in patches]
            failed = [p for p in run_batch(tasks, params.max_num_threads, self._is_cancelled) if p is not None]
            result.warp_failures.extend(failed)
            logger.info(f"Warped {len(patches) - len(failed)}/{len(patches)} patches of {layer_name(layer)}")

    def _apply_warp(self, patch: Patch, warp: MovingLeastSquaresTransform):
        """Returns the patch id on failure"""
        try:
            self.warp_applicator.apply(patch, warp.copy())
        except (AlignmentError, ValueError, OSError) as e:
            logger.error(f"Could not warp {patch!r}: {e}", exc_info=True)
            return patch.id
        return None
