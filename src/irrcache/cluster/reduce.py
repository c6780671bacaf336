"""Reduction of a dense seed pool to a fixed number of representatives.

When sampling positions come from an oversampled candidate pool, the pool is
reduced to exactly ``cluster_count`` seeds before being handed back to the
evaluator:

1. Seeds with a (near-)zero direction or a NaN component are dropped.
2. If no more than ``cluster_count`` seeds survive, they are all used and the
   remaining slots hold the zero-direction sentinel.
3. Otherwise the survivors are clustered with k-means on the 6-d feature
   ``[position, direction]`` and each cluster is represented by its member
   nearest the centroid. The centroid itself is never emitted, so every
   representative is a real, sampleable seed.

Example:
    >>> config = SamplingConfig(strategy="cluster", kmeans_iterations=20)
    >>> clusters = reduce_seeds(seeds, cluster_count=64, config=config)
    >>> len(clusters)
    64
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

import numpy as np
import numpy.typing as npt

from src.irrcache.cluster.kmeans import initial_centroids, kmeans
from src.irrcache.core.config import SamplingConfig
from src.irrcache.core.record import POINT_DIRECTION_DTYPE, PointDirection

logger = logging.getLogger(__name__)


def _as_arrays(
    seeds: Sequence[PointDirection] | npt.NDArray[np.void],
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    if isinstance(seeds, np.ndarray):
        if seeds.dtype.names is None or set(seeds.dtype.names) != set(POINT_DIRECTION_DTYPE.names):
            raise ValueError(f"Expected point/direction buffer, got dtype {seeds.dtype}")
        buffer = seeds.reshape(-1)
        positions = np.asarray(buffer["pos"], dtype=np.float64)
        directions = np.asarray(buffer["dir"], dtype=np.float64)
    else:
        positions = np.array([s.position for s in seeds], dtype=np.float64)
        directions = np.array([s.direction for s in seeds], dtype=np.float64)
    return positions.reshape(-1, 3), directions.reshape(-1, 3)


def _point(position: npt.NDArray[np.float64], direction: npt.NDArray[np.float64]) -> PointDirection:
    return PointDirection(
        position=(float(position[0]), float(position[1]), float(position[2])),
        direction=(float(direction[0]), float(direction[1]), float(direction[2])),
    )


def filter_seeds(
    positions: npt.NDArray[np.float64],
    directions: npt.NDArray[np.float64],
    epsilon: float = 1e-6,
    level: int | None = None,
) -> npt.NDArray[np.intp]:
    """Return indices of usable seeds, in input order.

    A seed whose direction has squared length below epsilon is unused. If its
    position is non-zero the evaluator produced something it should not
    have, which is logged. Seeds with NaN components are logged and dropped.
    """
    dir_len2 = np.einsum("ij,ij->i", directions, directions)
    pos_len2 = np.einsum("ij,ij->i", positions, positions)
    nan = np.isnan(positions).any(axis=1) | np.isnan(directions).any(axis=1)

    zero_dir = dir_len2 < epsilon
    for i in np.flatnonzero(zero_dir & (pos_len2 > epsilon)):
        logger.warning(
            "Zero direction in seed %d at (%g, %g, %g)",
            i,
            *positions[i],
            extra={"event": "seed_anomaly", "level": level, "seed": int(i)},
        )
    for i in np.flatnonzero(nan & ~zero_dir):
        logger.warning(
            "NaN in seed %d (%g, %g, %g) (%g, %g, %g)",
            i,
            *positions[i],
            *directions[i],
            extra={"event": "seed_anomaly", "level": level, "seed": int(i)},
        )
    return np.flatnonzero(~zero_dir & ~nan)


def select_representatives(
    membership: npt.NDArray[np.int32],
    distance: npt.NDArray[np.float32],
    cluster_count: int,
) -> npt.NDArray[np.intp]:
    """Pick the member nearest its centroid for every cluster.

    Ties go to the member that comes first in input order.

    Returns:
        Array of length cluster_count holding a row index per cluster, or -1
        for clusters with no members.
    """
    winners = np.full(cluster_count, -1, dtype=np.intp)
    if membership.size == 0:
        return winners
    index = np.arange(membership.size)
    # Sorted by cluster, then distance, then input order; first row per cluster wins
    order = np.lexsort((index, distance, membership))
    clusters, first = np.unique(membership[order], return_index=True)
    winners[clusters] = order[first]
    return winners


def reduce_seeds(
    seeds: Sequence[PointDirection] | npt.NDArray[np.void],
    cluster_count: int,
    config: SamplingConfig | None = None,
    level: int | None = None,
) -> list[PointDirection]:
    """Reduce a seed pool to exactly cluster_count representatives.

    Args:
        seeds: Candidate oriented points, either PointDirection objects or an
            array of POINT_DIRECTION_DTYPE (any shape).
        cluster_count: Number of representatives to return.
        config: Supplies epsilon and the k-means parameters. Defaults to
            SamplingConfig().
        level: Bounce level, used only for diagnostics.

    Returns:
        List of cluster_count PointDirection values in cluster order. Slots
        without a representative hold the zero-direction sentinel.

    Raises:
        ValueError: If cluster_count is not positive.
    """
    if cluster_count <= 0:
        raise ValueError(f"cluster_count must be positive, got {cluster_count}")
    config = config if config is not None else SamplingConfig()

    positions, directions = _as_arrays(seeds)
    good = filter_seeds(positions, directions, config.epsilon, level)
    logger.info(
        "Retrieved %d of %d potential seeds at level %s",
        good.size,
        positions.shape[0],
        level,
        extra={
            "event": "seeds_filtered",
            "level": level,
            "usable": int(good.size),
            "total": int(positions.shape[0]),
        },
    )

    if good.size <= cluster_count:
        clusters = [_point(positions[i], directions[i]) for i in good]
        clusters.extend(PointDirection.sentinel() for _ in range(cluster_count - good.size))
        return clusters

    features = np.hstack((positions[good] * config.position_weight, directions[good]))
    features = np.ascontiguousarray(features, dtype=np.float32)
    rng = np.random.default_rng(config.random_seed)
    start = initial_centroids(features, cluster_count, config.kmeans_init, rng)

    started = time.perf_counter()
    result = kmeans(features, start, config.kmeans_iterations, config.kmeans_threshold)
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    logger.debug(
        "k-means performed %d iterations in %.1f ms", result.iterations, elapsed_ms
    )

    winners = select_representatives(result.membership, result.distance, cluster_count)
    clusters = []
    for w in winners:
        if w < 0:
            clusters.append(PointDirection.sentinel())
        else:
            seed = good[w]
            clusters.append(_point(positions[seed], directions[seed]))

    produced = int(np.count_nonzero(winners >= 0))
    logger.info(
        "k-means produced %d of %d clusters at level %s",
        produced,
        cluster_count,
        level,
        extra={
            "event": "clusters_produced",
            "level": level,
            "produced": produced,
            "requested": cluster_count,
            "iterations": result.iterations,
        },
    )
    return clusters
