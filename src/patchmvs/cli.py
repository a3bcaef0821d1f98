# SPDX-FileCopyrightText: 2025 LichtFeld Studio Authors
# SPDX-License-Identifier: GPL-3.0-or-later
"""Command line entry point: prepare a workspace, compute depth maps, export them."""
from __future__ import annotations

import argparse
import logging
import os
import sys

from tqdm import tqdm

from .colmap_io import cameras_from_reconstruction
from .config import BACKENDS, MAX_COST, PROPAGATION_SCHEMES, SolverConfig
from .logging import configure_logger
from .pipeline import prepare_workspace, run_compute, run_export
from .workspace import Workspace

logger = logging.getLogger(__name__)


def _progress_bar(total: float, desc: str):
    bar = tqdm(total=total, desc=desc, unit="%", bar_format="{l_bar}{bar}| {n:.0f}/{total:.0f}")

    def update(pct: float, message: str) -> None:
        bar.n = pct
        bar.set_postfix_str(message)
        bar.refresh()

    return bar, update


def cmd_prepare(args, config: SolverConfig) -> int:
    images_dir = args.images or os.path.join(args.scene_root, "images")
    sparse_dir = args.sparse or os.path.join(args.scene_root, "sparse", "0")
    cams, observations = cameras_from_reconstruction(sparse_dir, images_dir)
    bar, update = _progress_bar(100.0, "Prepare")
    try:
        prepare_workspace(Workspace(args.workspace), cams, observations, config, progress_callback=update)
        update(100.0, "done")
    finally:
        bar.close()
    return 0


def cmd_compute(args, config: SolverConfig) -> int:
    bar, update = _progress_bar(100.0, "Depth maps")
    try:
        result = run_compute(Workspace(args.workspace), config, uids=args.cameras, progress_callback=update)
        update(100.0, "done")
    finally:
        bar.close()
    for uid, reason in sorted(result.failed.items()):
        logger.warning(f"Camera {uid} failed: {reason}")
    return 0 if not result.failed else 1


def cmd_export(args, config: SolverConfig) -> int:
    counts = run_export(Workspace(args.workspace), config, uids=args.cameras)
    for uid, count in sorted(counts.items()):
        logger.info(f"Camera {uid}: {count} points")
    return 0


def _add_solver_args(ap: argparse.ArgumentParser) -> None:
    defaults = SolverConfig()
    ap.add_argument("--metric", type=str, default=defaults.metric, choices=sorted(MAX_COST), help="Photo-consistency metric")
    ap.add_argument("--alpha", type=float, default=defaults.alpha, help="PatchMatch metric: gradient vs intensity balance")
    ap.add_argument("--tau_i", type=float, default=defaults.tau_i, help="PatchMatch metric: intensity truncation")
    ap.add_argument("--tau_g", type=float, default=defaults.tau_g, help="PatchMatch metric: gradient truncation")
    ap.add_argument("--gamma", type=float, default=defaults.gamma, help="PatchMatch metric: support weight falloff")
    ap.add_argument("--census_lambda", type=float, default=defaults.census_lambda, help="Census metric: census term falloff")
    ap.add_argument("--ad_lambda", type=float, default=defaults.ad_lambda, help="Census metric: absolute difference falloff")
    ap.add_argument("--scale", type=int, default=defaults.scale, help="Finest pyramid scale (0 = full resolution)")
    ap.add_argument("--num_scales", type=int, default=defaults.num_scales, help="Number of pyramid scales")
    ap.add_argument("--iterations", type=str, default=",".join(str(i) for i in defaults.iterations),
                    help="Outer iterations per scale, coarsest first (comma separated)")
    ap.add_argument("--min_view_angle", type=float, default=defaults.min_view_angle, help="Min neighbor view angle (deg)")
    ap.add_argument("--max_view_angle", type=float, default=defaults.max_view_angle, help="Max neighbor view angle (deg)")
    ap.add_argument("--max_views", type=int, default=defaults.max_views, help="Max neighbors per camera")
    ap.add_argument("--k_best", type=int, default=defaults.k_best, help="Neighbors averaged per pixel cost")
    ap.add_argument("--propagation", type=str, default=defaults.propagation, choices=PROPAGATION_SCHEMES)
    ap.add_argument("--joint_view_selection", action="store_true", help="Weight views per pixel instead of the k best trimmed mean (cpu only)")
    ap.add_argument("--refine_threshold", type=float, default=defaults.refine_threshold, help="Smallest disparity radius of the refinement")
    ap.add_argument("--backend", type=str, default=defaults.backend, choices=BACKENDS)
    ap.add_argument("--device", type=str, default=None, help="Torch device (default: cuda when available)")
    ap.add_argument("--num_threads", type=int, default=defaults.num_threads, help="CPU worker threads (0 = all cores)")
    ap.add_argument("--seed", type=int, default=None, help="Random seed")
    ap.add_argument("--use_ground_truth", action="store_true", help="Seed depths from sparse points")
    ap.add_argument("--median_filter", action="store_true", help="3x3 median filter of the final field")
    ap.add_argument("--export_intermediate", action="store_true", help="Export the field after every phase")
    ap.add_argument("--force_overwrite", action="store_true", help="Recompute cameras that already have a depth map")


def build_argparser():
    ap = argparse.ArgumentParser("patchmvs", description="PatchMatch multi-view stereo depth maps")
    ap.add_argument("--workspace", type=str, required=True, help="Output directory of the computation")
    ap.add_argument("--log_level", type=str, default="INFO", help="Logging level")
    ap.add_argument("--log_file", type=str, default=None, help="Optional rotating log file")
    sub = ap.add_subparsers(dest="command", required=True)

    prep = sub.add_parser("prepare", help="Select views and write camera / image data")
    prep.add_argument("--scene_root", type=str, default=".", help="Path containing images/ and sparse/0/")
    prep.add_argument("--images", type=str, default=None, help="Image directory (default: <scene_root>/images)")
    prep.add_argument("--sparse", type=str, default=None, help="COLMAP model directory (default: <scene_root>/sparse/0)")
    _add_solver_args(prep)
    prep.set_defaults(func=cmd_prepare)

    comp = sub.add_parser("compute", help="Compute depth maps")
    comp.add_argument("--cameras", type=int, nargs="*", default=None, help="Camera ids (default: all)")
    _add_solver_args(comp)
    comp.set_defaults(func=cmd_compute)

    exp = sub.add_parser("export", help="Export PNG / PLY views of computed depth maps")
    exp.add_argument("--cameras", type=int, nargs="*", default=None, help="Camera ids (default: all)")
    _add_solver_args(exp)
    exp.set_defaults(func=cmd_export)
    return ap


def main(argv=None) -> int:
    args = build_argparser().parse_args(argv)
    configure_logger(level=args.log_level.upper(), file_path=args.log_file)
    try:
        config = SolverConfig.from_args(args)
    except ValueError as exc:
        logger.error(f"Invalid configuration: {exc}")
        return 2
    try:
        return args.func(args, config)
    except FileNotFoundError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
