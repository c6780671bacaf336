#!/usr/bin/env python3
"""Build an irradiance cache for a toy scene.

This script demonstrates an end-to-end cache build against a small analytic
evaluator: a unit floor under a uniformly bright ceiling. It stands in for a
device ray tracer, answering every batch with numpy structured arrays the way
a buffer readback would.

Usage:
    python -m examples.build_ambient_cache [options]

Options:
    --bounces N         Number of bounce levels (default: 3)
    --strategy NAME     "grid" or "cluster" (default: grid)
    --width WIDTH       View width in pixels (default: 256)
    --height HEIGHT     View height in pixels (default: 256)
    --clusters COUNT    Representatives per level for "cluster" (default: 256)
    --save PATH         Write committed records to a .npy file
    --load PATH         Prime the cache with records from a .npy file
    --verbose           Show library log messages

Example:
    python -m examples.build_ambient_cache --strategy cluster --bounces 2
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

import numpy as np
import taichi as ti


class ToyEvaluator:
    """Analytic evaluator for a unit floor (z = 0) under a ceiling (z = 1).

    Irradiance at a floor point falls off towards the edges of the floor and
    grows with the brightness of the records staged from deeper bounces.
    """

    CEILING = 1.0

    def __init__(self, grid_shape: tuple[int, int, int], seed: int = 0) -> None:
        self.grid_shape = grid_shape
        self.rng = np.random.default_rng(seed)
        self.staged_brightness = 0.0
        self.log_average = 0.0

    def stage(self, records) -> None:
        from src.irrcache.core.statistics import brightness

        if records:
            self.staged_brightness = float(np.mean([brightness(r.value) for r in records]))
        else:
            self.staged_brightness = 0.0

    def push_statistics(self, sum_log: float, count: int) -> None:
        self.log_average = float(np.exp(sum_log / count)) if count else 0.0

    def _points(self, requests) -> np.ndarray:
        points = np.zeros((len(requests), 3), dtype=np.float64)
        width, height, _ = self.grid_shape
        for i, request in enumerate(requests):
            if request.seed is not None:
                points[i] = request.seed.position
            else:
                x, y, _ = request.cell
                points[i] = ((x + self.rng.random()) / width, (y + self.rng.random()) / height, 0.0)
        return points

    def sample(self, requests) -> np.ndarray:
        from src.irrcache.core.record import AMBIENT_RECORD_DTYPE, encode_direction

        points = self._points(requests)
        # Distance to the nearest floor edge limits the validity radius
        edge = np.minimum(points[:, :2], 1.0 - points[:, :2]).min(axis=1)
        falloff = 0.5 + 0.5 * np.clip(edge * 4.0, 0.0, 1.0)
        irradiance = falloff * (1.0 + 0.5 * self.staged_brightness)

        out = np.zeros(len(requests), dtype=AMBIENT_RECORD_DTYPE)
        out["pos"] = points
        out["val"] = irradiance[:, None] * np.array([0.9, 0.85, 0.8])
        out["rad"][:, 0] = np.clip(edge, 0.0, 0.25)
        out["rad"][:, 1] = 0.25
        out["ndir"] = encode_direction((0.0, 0.0, 1.0))
        out["weight"] = 1.0
        out["ray_count"] = 64
        out["hit_count"] = 64
        for i, request in enumerate(requests):
            if request.is_empty:
                out["rad"][i] = 0.0
        return out

    def sample_seeds(self, shape: tuple[int, int, int]) -> np.ndarray:
        from src.irrcache.core.record import POINT_DIRECTION_DTYPE

        count = shape[0] * shape[1] * shape[2]
        seeds = np.zeros(shape, dtype=POINT_DIRECTION_DTYPE)
        seeds["pos"][..., :2] = self.rng.random(shape + (2,))
        seeds["dir"] = np.broadcast_to(np.array([0.0, 0.0, 1.0]), shape + (3,))
        print(f"  Generated {count} candidate seeds")
        return seeds

    def sample_hemisphere(self, clusters, shape: tuple[int, int, int]) -> np.ndarray:
        from src.irrcache.core.record import POINT_DIRECTION_DTYPE

        cluster_count, theta, phi = shape
        seeds = np.zeros(shape, dtype=POINT_DIRECTION_DTYPE)
        t = (np.arange(theta)[:, None] + self.rng.random((theta, phi))) / theta
        p = (np.arange(phi)[None, :] + self.rng.random((theta, phi))) / phi
        # Cosine-weighted directions over the upper hemisphere
        sin_t = np.sqrt(t)
        dirs = np.stack(
            (sin_t * np.cos(2 * np.pi * p), sin_t * np.sin(2 * np.pi * p), np.sqrt(1.0 - t)),
            axis=-1,
        )
        for c, cluster in enumerate(clusters):
            if cluster.is_sentinel():
                continue
            origin = np.asarray(cluster.position)
            # Rays leave the floor and land on the ceiling, facing down
            hit = origin + dirs * ((self.CEILING - origin[2]) / np.maximum(dirs[..., 2:], 1e-3))
            seeds["pos"][c] = hit
            seeds["dir"][c] = (0.0, 0.0, -1.0)
        return seeds


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Build an irradiance cache for a toy scene.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--bounces", type=int, default=3, help="Bounce levels (default: 3)")
    parser.add_argument(
        "--strategy",
        choices=("grid", "cluster"),
        default="grid",
        help="Sampling strategy (default: grid)",
    )
    parser.add_argument("--width", type=int, default=256, help="View width (default: 256)")
    parser.add_argument("--height", type=int, default=256, help="View height (default: 256)")
    parser.add_argument(
        "--clusters",
        type=int,
        default=256,
        help="Representatives per level for the cluster strategy (default: 256)",
    )
    parser.add_argument("--save", type=str, default=None, help="Write records to a .npy file")
    parser.add_argument("--load", type=str, default=None, help="Load records from a .npy file")
    parser.add_argument("--verbose", action="store_true", help="Show library log messages")
    return parser.parse_args()


def build_ambient_cache(args: argparse.Namespace):
    """Run a build and report each level."""
    # Lazy imports to allow Taichi initialization first
    from src.irrcache.builder.cache_builder import AmbientCacheBuilder
    from src.irrcache.builder.strategy import GridSeedStrategy
    from src.irrcache.core.config import SamplingConfig
    from src.irrcache.core.record import decode_records, encode_records

    config = SamplingConfig(
        strategy=args.strategy,
        width=args.width,
        height=args.height,
        cluster_count=args.clusters,
        grid_size=32,
        ambient_divisions=256,
        scene_origin=(-0.5, -0.5, -0.5),
        scene_size=2.0,
    )
    evaluator = ToyEvaluator(GridSeedStrategy(config).grid_shape)

    saved = []
    load = None
    if args.load:
        persisted = decode_records(np.load(args.load))
        load = lambda: [c.to_record(c.level) for c in persisted]  # noqa: E731

    builder = AmbientCacheBuilder(
        args.bounces,
        config,
        evaluator,
        save=saved.append if args.save else None,
        load=load,
    )

    print(f"Building {args.bounces} bounce levels with the {args.strategy} strategy...")
    start_time = time.time()
    for report in builder.build_progressive():
        print(
            f"  Level {report.level}: {report.accepted}/{report.requested} records "
            f"({report.acceptance_rate * 100:.1f}%), {report.staged} readable, "
            f"{report.anomalies} anomalies"
        )

    cache = builder.index
    print(f"Cache holds {len(cache)} records in {cache.node_count} nodes")
    print(f"Log-average irradiance: {builder.statistics.average:.4f}")
    print(f"Total time: {time.time() - start_time:.2f}s")

    if args.save:
        output_file = Path(args.save)
        np.save(output_file, encode_records(saved))
        print(f"Saved {len(saved)} records to: {output_file.absolute()}")
    return cache


def main() -> int:
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Use GPU if available, fall back to CPU
    try:
        ti.init(arch=ti.gpu)
        print("Using GPU backend")
    except Exception:
        ti.init(arch=ti.cpu)
        print("Using CPU backend")

    try:
        build_ambient_cache(args)
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
