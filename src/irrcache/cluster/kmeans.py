"""Lloyd's k-means with Taichi kernels.

Each iteration runs two data-parallel kernels over the seeds: an assignment
pass (nearest centroid by squared Euclidean distance) and an accumulation
pass (atomic per-cluster sums). The kernel boundary is the barrier between
the two phases. Iteration stops once the fraction of seeds that changed
membership is at or below the threshold, or the iteration bound is reached.

Arrays are passed to the kernels as ndarrays, so no field is preallocated and
feature counts of any size can be clustered without recompilation.

Example:
    >>> import taichi as ti
    >>> ti.init(arch=ti.cpu)
    >>> features = np.random.rand(1000, 6).astype(np.float32)
    >>> result = kmeans(features, features[:8].copy(), max_iterations=50, threshold=0.01)
    >>> result.membership.shape
    (1000,)
"""

import logging
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt
import taichi as ti

logger = logging.getLogger(__name__)

# Larger than any squared distance between finite f32 features
FHUGE = 3.0e38


@dataclass
class KMeansResult:
    """Outcome of a k-means run.

    Attributes:
        centroids: Final centroids, shape (k, d).
        membership: Cluster index of each feature row, shape (n,).
        distance: Squared distance from each row to the centroid it was
            assigned against in the last iteration, shape (n,).
        iterations: Number of assignment passes performed.
    """

    centroids: npt.NDArray[np.float32]
    membership: npt.NDArray[np.int32]
    distance: npt.NDArray[np.float32]
    iterations: int


# =============================================================================
# Kernels
# =============================================================================


@ti.kernel
def _assign_clusters(
    features: ti.types.ndarray(dtype=ti.f32, ndim=2),
    centroids: ti.types.ndarray(dtype=ti.f32, ndim=2),
    membership: ti.types.ndarray(dtype=ti.i32, ndim=1),
    distance: ti.types.ndarray(dtype=ti.f32, ndim=1),
    changed: ti.types.ndarray(dtype=ti.i32, ndim=1),
):
    """Assign each feature row to its nearest centroid.

    Ties go to the lowest centroid index. Increments changed[0] once per row
    whose membership differs from the previous pass.
    """
    num_features = features.shape[1]
    num_clusters = centroids.shape[0]
    for i in range(features.shape[0]):
        best = 0
        best_distance = FHUGE
        for c in range(num_clusters):
            d = 0.0
            for j in range(num_features):
                diff = features[i, j] - centroids[c, j]
                d += diff * diff
            if d < best_distance:
                best_distance = d
                best = c
        if membership[i] != best:
            ti.atomic_add(changed[0], 1)
        membership[i] = best
        distance[i] = best_distance


@ti.kernel
def _accumulate_clusters(
    features: ti.types.ndarray(dtype=ti.f32, ndim=2),
    membership: ti.types.ndarray(dtype=ti.i32, ndim=1),
    sums: ti.types.ndarray(dtype=ti.f32, ndim=2),
    sizes: ti.types.ndarray(dtype=ti.i32, ndim=1),
):
    """Sum feature rows per cluster."""
    num_features = features.shape[1]
    for i in range(features.shape[0]):
        c = membership[i]
        ti.atomic_add(sizes[c], 1)
        for j in range(num_features):
            ti.atomic_add(sums[c, j], features[i, j])


# =============================================================================
# Initialization
# =============================================================================


def _farthest_points(features, cluster_count: int) -> npt.NDArray[np.float32]:
    rows = np.asarray(features, dtype=np.float64)
    picks = np.zeros(cluster_count, dtype=np.intp)
    if cluster_count == 0:
        return np.zeros((0, rows.shape[1]), dtype=np.float32)
    # Squared distance from each row to its nearest chosen centroid
    nearest = np.einsum("ij,ij->i", rows - rows[0], rows - rows[0])
    for c in range(1, cluster_count):
        # argmax keeps the lowest index among ties
        picks[c] = np.argmax(nearest)
        diff = rows - rows[picks[c]]
        np.minimum(nearest, np.einsum("ij,ij->i", diff, diff), out=nearest)
    return np.array(rows[picks], dtype=np.float32)


# =============================================================================
# Public API
# =============================================================================


def initial_centroids(
    features: npt.NDArray[np.float32],
    cluster_count: int,
    method: str = "farthest",
    rng: np.random.Generator | None = None,
) -> npt.NDArray[np.float32]:
    """Choose starting centroids from the feature rows.

    Args:
        features: Feature matrix, shape (n, d) with n >= cluster_count.
        cluster_count: Number of centroids.
        method: "farthest" starts from row 0 and repeatedly adds the row
            farthest from every centroid chosen so far, so separated groups
            each receive a centroid whatever their input order. "first"
            takes the first cluster_count rows; "random" draws distinct rows
            with rng.
        rng: Generator for the "random" method. A fresh unseeded generator
            is used if omitted.

    Returns:
        A new (cluster_count, d) float32 array.

    Raises:
        ValueError: If there are fewer rows than clusters or the method is
            unknown.
    """
    n = features.shape[0]
    if cluster_count > n:
        raise ValueError(f"Cannot pick {cluster_count} centroids from {n} features")
    if method == "farthest":
        return _farthest_points(features, cluster_count)
    if method == "first":
        return np.array(features[:cluster_count], dtype=np.float32, copy=True)
    if method == "random":
        rng = rng if rng is not None else np.random.default_rng()
        picks = rng.choice(n, size=cluster_count, replace=False)
        return np.array(features[picks], dtype=np.float32, copy=True)
    raise ValueError(f"Unknown initialization method: {method}")


def kmeans(
    features: npt.NDArray[np.float32],
    centroids: npt.NDArray[np.float32],
    max_iterations: int = 100,
    threshold: float = 0.05,
) -> KMeansResult:
    """Run Lloyd's algorithm from the given starting centroids.

    At least one assignment pass always runs. A cluster that loses all its
    members keeps its previous centroid.

    Args:
        features: Feature matrix, shape (n, d).
        centroids: Starting centroids, shape (k, d). Not modified.
        max_iterations: Upper bound on assignment passes.
        threshold: Fraction of rows changing membership at or below which
            the run is considered converged.

    Returns:
        The final KMeansResult.
    """
    features = np.ascontiguousarray(features, dtype=np.float32)
    centroids = np.array(centroids, dtype=np.float32, copy=True, order="C")
    n, d = features.shape
    k = centroids.shape[0]

    membership = np.full(n, -1, dtype=np.int32)
    distance = np.zeros(n, dtype=np.float32)
    changed = np.zeros(1, dtype=np.int32)
    sums = np.zeros((k, d), dtype=np.float32)
    sizes = np.zeros(k, dtype=np.int32)

    iterations = 0
    while True:
        changed[0] = 0
        _assign_clusters(features, centroids, membership, distance, changed)
        iterations += 1
        delta = int(changed[0]) / n if n > 0 else 0.0

        sums.fill(0.0)
        sizes.fill(0)
        _accumulate_clusters(features, membership, sums, sizes)
        occupied = sizes > 0
        centroids[occupied] = sums[occupied] / sizes[occupied, None]

        logger.debug("k-means pass %d: %.4f of %d seeds changed cluster", iterations, delta, n)
        if delta <= threshold or iterations >= max_iterations:
            break

    return KMeansResult(
        centroids=centroids,
        membership=membership,
        distance=distance,
        iterations=iterations,
    )
