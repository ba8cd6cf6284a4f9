"""
Rendering patches through their warps and attaching layer warps to patches
"""

import cv2
import numpy as np
from typing import Optional, Tuple
import logging

from elastalign.core.interfaces import WarpApplicator
from elastalign.core.layers import Layer, Patch, Rectangle

logger = logging.getLogger(__name__)

# Output pixels between exactly transformed grid nodes
GRID_STEP = 8


def _as_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3:
        if image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        else:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.dtype == np.uint16:
        return image.astype(np.float32) * (255.0 / 65535.0)
    return image.astype(np.float32)


def _inverse(warp):
    if hasattr(warp, 'create_inverse'):
        return warp.create_inverse()
    return warp.inverse()


def world_to_patch(patch: Patch, points: np.ndarray) -> np.ndarray:
    """Map world coordinates back to pixel coordinates of the patch image"""
    local = np.asarray(points, dtype=np.float64)
    for warp in reversed(patch.warps):
        local = _inverse(warp).apply(local)
    return local - np.array([patch.x, patch.y])


def render_patch(
    patch: Patch,
    region: Rectangle,
    scale: float = 1.0
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Render a patch into a world region

    Output pixel (i, j) samples world (region.x + i / scale, region.y + j / scale).
    The inverse transform is evaluated exactly on a coarse grid and
    interpolated bilinearly in between.

    Returns:
        (float32 grayscale image, boolean coverage mask)
    """
    out_w = max(1, int(np.ceil(region.width * scale)))
    out_h = max(1, int(np.ceil(region.height * scale)))

    nx = out_w // GRID_STEP + 2
    ny = out_h // GRID_STEP + 2
    gx, gy = np.meshgrid(np.arange(nx) * GRID_STEP, np.arange(ny) * GRID_STEP)
    nodes = np.stack([gx, gy], axis=-1).astype(np.float64)
    world = nodes / scale + np.array([region.x, region.y])
    source = world_to_patch(patch, world.reshape(-1, 2)).reshape(ny, nx, 2)

    image = _as_gray(patch.image)
    # Pre-filter before sampling below the native resolution
    if scale < 1.0:
        small_w = max(1, int(round(image.shape[1] * scale)))
        small_h = max(1, int(round(image.shape[0] * scale)))
        fx_ratio = small_w / image.shape[1]
        fy_ratio = small_h / image.shape[0]
        image = cv2.resize(image, (small_w, small_h), interpolation=cv2.INTER_AREA)
        source[..., 0] = (source[..., 0] + 0.5) * fx_ratio - 0.5
        source[..., 1] = (source[..., 1] + 0.5) * fy_ratio - 0.5

    fx, fy = np.meshgrid(
        np.arange(out_w, dtype=np.float32) / GRID_STEP,
        np.arange(out_h, dtype=np.float32) / GRID_STEP
    )
    map_x = cv2.remap(source[..., 0].astype(np.float32), fx, fy, cv2.INTER_LINEAR)
    map_y = cv2.remap(source[..., 1].astype(np.float32), fx, fy, cv2.INTER_LINEAR)

    rendered = cv2.remap(image, map_x, map_y, cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)
    h, w = image.shape[:2]
    mask = (map_x >= -0.5) & (map_y >= -0.5) & (map_x <= w - 0.5) & (map_y <= h - 0.5)
    rendered[~mask] = 0.0
    return rendered, mask


def render_layer(
    layer: Layer,
    region: Rectangle,
    scale: float = 1.0,
    content_filter=None
) -> Tuple[np.ndarray, np.ndarray]:
    """Composite all (filtered, visible) patches of a layer, later patches on top"""
    out_w = max(1, int(np.ceil(region.width * scale)))
    out_h = max(1, int(np.ceil(region.height * scale)))
    canvas = np.zeros((out_h, out_w), dtype=np.float32)
    coverage = np.zeros((out_h, out_w), dtype=bool)
    for patch in layer.filter_patches(content_filter):
        if not patch.visible:
            continue
        if patch.bounding_box().intersection(region).is_empty():
            continue
        image, mask = render_patch(patch, region, scale)
        canvas[mask] = image[mask]
        coverage |= mask
    return canvas, coverage


class PatchWarpApplicator(WarpApplicator):
    """Appends the layer warp to the patch transforms"""

    def apply(self, content_item: Patch, warp):
        content_item.append_warp(warp)
        logger.debug(f"Applied {warp!r} to {content_item!r}")
