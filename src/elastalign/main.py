#!/usr/bin/env python3
"""
elastalign - Elastic serial section alignment
Command line entry point
"""

import sys
import argparse
import logging
from dataclasses import replace
from pathlib import Path

import cv2
import numpy as np
import tifffile
from tqdm import tqdm

from elastalign.core.elastic_align import AlignmentStatus, ElasticLayerAligner
from elastalign.core.layers import Layer, LayerSet, Patch, Rectangle
from elastalign.core.params import AlignmentParams
from elastalign.core.rasterizer import ArrayRasterizer
from elastalign.core.warp import render_layer
from elastalign.utils.alignment_cache import DiskAlignmentCache
from elastalign.utils.logger import get_log_file_path, setup_logger
from elastalign.utils.platform_utils import get_cache_directory

logger = setup_logger("elastalign")

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".tif", ".tiff")


def load_layers(input_dir: Path) -> LayerSet:
    """One layer per image, in file name order"""
    paths = sorted(p for p in input_dir.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
    layers = LayerSet()
    for path in paths:
        image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
        if image is None:
            logger.warning(f"Could not read {path}, skipping")
            continue
        index = len(layers)
        layers.add(Layer(index, float(index), title=path.name, patches=[Patch(path.stem, image)]))
    return layers


def render_stack(layers, box: Rectangle) -> np.ndarray:
    """Render all layers through their warps into one 8 bit stack"""
    frames = []
    for layer in tqdm(layers, desc="Rendering", unit="layer"):
        image, _ = render_layer(layer, box, 1.0)
        frames.append(np.clip(np.round(image), 0, 255).astype(np.uint8))
    return np.stack(frames)


def build_params(args) -> AlignmentParams:
    params = AlignmentParams.from_yaml(args.config) if args.config else AlignmentParams()
    overrides = {}
    if args.threads is not None:
        overrides['max_num_threads'] = args.threads
    if args.layer_scale is not None:
        overrides['layer_scale'] = args.layer_scale
    if args.visualize:
        overrides['visualize'] = True
    if args.threads is not None or args.clear_cache:
        point_match = params.point_match
        pm_overrides = {}
        if args.threads is not None:
            pm_overrides['max_num_threads_sift'] = args.threads
        if args.clear_cache:
            pm_overrides['clear_cache'] = True
        overrides['point_match'] = replace(point_match, **pm_overrides)
    return params.with_overrides(**overrides) if overrides else params


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="elastalign - Elastic alignment of serial section images"
    )
    parser.add_argument("input", type=str, help="Directory with one image per section")
    parser.add_argument("output", type=str, help="Output TIFF stack")
    parser.add_argument("--config", type=str, help="YAML file with alignment parameters")
    parser.add_argument("--first", type=int, default=0, help="Index of the first layer (default: 0)")
    parser.add_argument("--last", type=int, default=None, help="Index of the last layer (default: last image)")
    parser.add_argument("--threads", type=int, default=None, help="Worker threads")
    parser.add_argument("--layer-scale", type=float, default=None,
                        help="Scale of the block matching rasters")
    parser.add_argument("--cache-dir", type=str, default=None,
                        help="Feature and match cache directory")
    parser.add_argument("--clear-cache", action="store_true", help="Ignore cached features and matches")
    parser.add_argument("--visualize", action="store_true", help="Write relaxed mesh drawings next to the output")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    args = parser.parse_args(argv)
    if args.debug:
        logger.setLevel(logging.DEBUG)
        for handler in logger.handlers:
            handler.setLevel(logging.DEBUG)
        logger.debug(f"Logging to {get_log_file_path()}")

    input_path = Path(args.input)
    if not input_path.is_dir():
        logger.error(f"Input directory does not exist: {input_path}")
        return 1

    try:
        params = build_params(args)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid parameters: {e}")
        return 1

    layers = load_layers(input_path)
    if len(layers) < 2:
        logger.error(f"Need at least two images in {input_path}, found {len(layers)}")
        return 1
    logger.info(f"Found {len(layers)} sections")

    cache = DiskAlignmentCache(Path(args.cache_dir) if args.cache_dir else get_cache_directory())

    with tqdm(total=100, desc="Aligning", unit="%") as bar:
        def on_progress(percentage, message):
            bar.set_postfix_str(message[:40])
            bar.update(max(0, percentage - bar.n))

        aligner = ElasticLayerAligner(
            ArrayRasterizer(),
            feature_cache=cache,
            match_cache=cache,
            progress_callback=on_progress
        )
        last = args.last if args.last is not None else len(layers) - 1
        try:
            result = aligner.run(layers, args.first, last, params=params)
        except KeyboardInterrupt:
            aligner.cancel()
            logger.error("Alignment interrupted")
            return 130

    if result.status == AlignmentStatus.SKIPPED:
        logger.error(f"Nothing aligned: {result.reason}")
        return 1

    box = Rectangle(0, 0, 0, 0)
    for layer in result.layers:
        box = box.union(layer.bounding_box())

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    stack = render_stack(result.layers, box)
    tifffile.imwrite(str(output_path), stack, photometric='minisblack')
    logger.info(f"Wrote {stack.shape[0]} aligned sections ({stack.shape[2]}x{stack.shape[1]}) to {output_path}")

    if params.visualize:
        for layer_id, drawing in result.visualizations.items():
            mesh_path = output_path.with_name(f"{output_path.stem}_mesh_{layer_id}.png")
            cv2.imwrite(str(mesh_path), drawing)
        logger.info(f"Wrote {len(result.visualizations)} mesh drawings")

    if result.warp_failures:
        logger.warning(f"{len(result.warp_failures)} patches could not be warped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
