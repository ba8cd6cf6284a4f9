"""
Dense block matching by maximal product-moment correlation coefficient

For a set of sample points in a source raster, a square block around each
point is searched in a target raster that has been mapped into the source
frame by an approximate transform. Each accepted match carries the source
point and its corresponding location in target coordinates.
"""

import cv2
import numpy as np
from scipy.ndimage import maximum_filter
from typing import Callable, Optional, Tuple
import logging

from elastalign.core.models import AbstractModel, ModelKind
from elastalign.core.point_match import PointMatches
from elastalign.errors import InsufficientDataError

logger = logging.getLogger(__name__)

# Share of valid pixels required in a source block
MIN_BLOCK_COVERAGE = 0.5
# Share of valid pixels required in a mapped target block
MIN_TARGET_COVERAGE = 0.9


def _as_float(image: np.ndarray) -> np.ndarray:
    image = np.asarray(image)
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image.astype(np.float32)


def _as_mask(mask: Optional[np.ndarray], shape) -> np.ndarray:
    if mask is None:
        return np.ones(shape, dtype=np.float32)
    return (np.asarray(mask) > 0).astype(np.float32)


def map_into_source_frame(
    target: np.ndarray,
    target_mask: np.ndarray,
    transform: AbstractModel,
    shape: Tuple[int, int]
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Resample the target so that pixel x of the result shows target(transform(x))

    Returns:
        (mapped image, validity mask) in source frame
    """
    h, w = shape
    matrix = transform.to_matrix()
    flags = cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP
    mapped = cv2.warpPerspective(
        target, matrix, (w, h), flags=flags,
        borderMode=cv2.BORDER_CONSTANT, borderValue=0
    )
    mapped_mask = cv2.warpPerspective(
        target_mask, matrix, (w, h), flags=flags,
        borderMode=cv2.BORDER_CONSTANT, borderValue=0
    )
    return mapped, (mapped_mask > 0.999).astype(np.float32)


def _fill_invalid(block: np.ndarray, valid: np.ndarray) -> Optional[np.ndarray]:
    """Replace invalid pixels by the mean of the valid ones"""
    count = np.count_nonzero(valid)
    if count == 0:
        return None
    if count == valid.size:
        return block
    filled = block.copy()
    filled[valid == 0] = float(np.mean(block[valid > 0]))
    return filled


def _peak_is_sharp(r: np.ndarray, y: int, x: int, max_curvature_r: float):
    """
    Hessian test of the correlation peak

    Returns:
        (dxx, dyy) if the peak is a negative definite maximum with bounded
        curvature ratio, else None
    """
    dxx = r[y, x + 1] - 2.0 * r[y, x] + r[y, x - 1]
    dyy = r[y + 1, x] - 2.0 * r[y, x] + r[y - 1, x]
    dxy = (r[y + 1, x + 1] - r[y + 1, x - 1] - r[y - 1, x + 1] + r[y - 1, x - 1]) * 0.25
    det = dxx * dyy - dxy * dxy
    trace = dxx + dyy
    if not np.isfinite(det) or det <= 0 or dxx >= 0:
        return None
    if trace * trace / det > (max_curvature_r + 1.0) ** 2 / max_curvature_r:
        return None
    return dxx, dyy


def _second_peak(r: np.ndarray, y: int, x: int) -> float:
    """Value of the best local maximum other than (y, x)"""
    surface = np.where(np.isfinite(r), r, -np.inf)
    local = (maximum_filter(surface, size=3, mode='constant', cval=-np.inf) == surface)
    local &= np.isfinite(surface)
    local[y, x] = False
    if not np.any(local):
        return -np.inf
    return float(np.max(surface[local]))


def match_by_maximal_pmcc(
    source: np.ndarray,
    target: np.ndarray,
    source_mask: Optional[np.ndarray],
    target_mask: Optional[np.ndarray],
    transform: AbstractModel,
    block_radius: int,
    search_radius: int,
    min_r: float,
    rod_r: float,
    max_curvature_r: float,
    points: np.ndarray,
    cancel_check: Optional[Callable[[], bool]] = None
) -> Tuple[PointMatches, np.ndarray]:
    """
    Match blocks around source points against the mapped target

    Args:
        source: Source raster
        target: Target raster
        source_mask: Source validity mask (None = all valid)
        target_mask: Target validity mask (None = all valid)
        transform: Approximate model mapping source to target coordinates
        block_radius: Half size of the correlated block
        search_radius: Maximal offset searched in each direction
        min_r: Minimal peak correlation
        rod_r: Maximal second-best / best peak ratio
        max_curvature_r: Maximal principal curvature ratio of the peak
        points: Nx2 sample points in source coordinates
        cancel_check: Callable returning True when matching should stop

    Returns:
        (matches, indices) where matches.p1 are source points, matches.p2
        the corresponding target points and indices the rows of `points`
        that produced a match

    Raises:
        InterruptedError: if cancel_check fires
    """
    block_radius = int(block_radius)
    search_radius = max(1, int(search_radius))
    source = _as_float(source)
    target = _as_float(target)
    source_valid = _as_mask(source_mask, source.shape)
    target_valid = _as_mask(target_mask, target.shape)
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)

    mapped, mapped_valid = map_into_source_frame(target, target_valid, transform, source.shape)

    pad = block_radius + search_radius
    mapped = cv2.copyMakeBorder(mapped, pad, pad, pad, pad, cv2.BORDER_CONSTANT, value=0)
    mapped_valid = cv2.copyMakeBorder(mapped_valid, pad, pad, pad, pad, cv2.BORDER_CONSTANT, value=0)

    size = 2 * block_radius + 1
    ones = np.ones((size, size), dtype=np.float32)
    h, w = source.shape
    last = 2 * search_radius

    p1, p2, indices = [], [], []
    rejected = {'bounds': 0, 'flat': 0, 'r': 0, 'border': 0, 'curvature': 0, 'rod': 0}

    for i, point in enumerate(points):
        if cancel_check is not None and cancel_check():
            raise InterruptedError("Block matching interrupted")

        cx, cy = int(round(point[0])), int(round(point[1]))
        if cx - block_radius < 0 or cy - block_radius < 0 or cx + block_radius >= w or cy + block_radius >= h:
            rejected['bounds'] += 1
            continue

        valid = source_valid[cy - block_radius:cy + block_radius + 1, cx - block_radius:cx + block_radius + 1]
        if np.count_nonzero(valid) < MIN_BLOCK_COVERAGE * valid.size:
            rejected['bounds'] += 1
            continue
        template = _fill_invalid(
            source[cy - block_radius:cy + block_radius + 1, cx - block_radius:cx + block_radius + 1], valid
        )
        if template is None or np.std(template) < 1e-6:
            rejected['flat'] += 1
            continue

        # Window in padded coordinates, centered on (cx, cy)
        window_valid = mapped_valid[cy:cy + 2 * pad + 1, cx:cx + 2 * pad + 1]
        window = _fill_invalid(mapped[cy:cy + 2 * pad + 1, cx:cx + 2 * pad + 1], window_valid)
        if window is None:
            rejected['bounds'] += 1
            continue

        r = cv2.matchTemplate(window, template, cv2.TM_CCOEFF_NORMED).astype(np.float64)
        coverage = cv2.matchTemplate(window_valid, ones, cv2.TM_CCORR) / float(size * size)
        r[coverage < MIN_TARGET_COVERAGE] = np.nan
        r[~np.isfinite(r)] = np.nan
        if np.all(np.isnan(r)):
            rejected['bounds'] += 1
            continue

        y, x = np.unravel_index(np.nanargmax(r), r.shape)
        r_max = r[y, x]
        if r_max < min_r:
            rejected['r'] += 1
            continue
        if y == 0 or x == 0 or y == last or x == last:
            rejected['border'] += 1
            continue

        curvature = _peak_is_sharp(r, y, x, max_curvature_r)
        if curvature is None:
            rejected['curvature'] += 1
            continue

        r_second = _second_peak(r, y, x)
        if r_second > 0 and r_second / r_max > rod_r:
            rejected['rod'] += 1
            continue

        dxx, dyy = curvature
        ox = float(np.clip(-(r[y, x + 1] - r[y, x - 1]) / (2.0 * dxx), -0.5, 0.5))
        oy = float(np.clip(-(r[y + 1, x] - r[y - 1, x]) / (2.0 * dyy), -0.5, 0.5))
        if not (np.isfinite(ox) and np.isfinite(oy)):
            ox = oy = 0.0

        offset = np.array([x - search_radius + ox, y - search_radius + oy])
        p1.append(point)
        p2.append(transform.apply((point + offset)[None, :])[0])
        indices.append(i)

    logger.debug(f"Block matching: {len(p1)}/{len(points)} matches, rejected {rejected}")

    if not p1:
        return PointMatches.empty(), np.zeros(0, dtype=np.int64)
    return PointMatches(np.array(p1), np.array(p2)), np.array(indices, dtype=np.int64)


def local_smoothness_filter(
    kind: ModelKind,
    matches: PointMatches,
    sigma: float,
    max_epsilon: float,
    max_trust: float
) -> np.ndarray:
    """
    Reject matches that disagree with a local model of their neighborhood

    Every candidate is tested against a model of the given kind fitted to all
    other candidates, weighted by a Gaussian of their source distance. The
    pass is repeated until no candidate is rejected.

    Returns:
        Boolean mask of the kept matches (all False if too few remain)
    """
    keep = np.ones(len(matches), dtype=bool)
    norm = -0.5 / (sigma * sigma)
    model = kind.create()

    while True:
        active = np.flatnonzero(keep)
        if len(active) <= kind.min_num_matches:
            logger.debug(f"Local smoothness filter: {len(active)} matches left, not enough for {kind.value}")
            return np.zeros(len(matches), dtype=bool)

        current = matches.subset(active)
        reject = np.zeros(len(active), dtype=bool)
        for k in range(len(active)):
            d2 = np.sum((current.p1 - current.p1[k]) ** 2, axis=1)
            weights = np.exp(d2 * norm) * current.weights
            weights[k] = 0.0
            try:
                model.fit(current.p1, current.p2, weights)
            except InsufficientDataError:
                reject[k] = True
                continue

            residuals = current.residuals(model)
            wsum = np.sum(weights)
            mean_residual = float(np.sum(residuals * weights) / wsum) if wsum > 0 else 0.0
            if residuals[k] >= max_epsilon or residuals[k] > max_trust * max(mean_residual, 1e-6):
                reject[k] = True

        if not np.any(reject):
            return keep
        keep[active[reject]] = False
