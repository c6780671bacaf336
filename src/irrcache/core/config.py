"""Sampling configuration for irradiance cache builds.

SamplingConfig gathers every tunable of a build: the sampling strategy and
grid sizes, the k-means parameters used by the dense variant, and the
numeric tolerance shared by record validation and seed filtering.

Example:
    >>> config = SamplingConfig(strategy="cluster", cluster_count=256)
    >>> config.validate()
    >>> SamplingConfig.from_dict(config.to_dict()) == config
    True
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any

from src.irrcache.core.errors import ConfigurationError

STRATEGIES = ("grid", "cluster")
KMEANS_INITS = ("farthest", "first", "random")


@dataclass
class SamplingConfig:
    """Configuration of an irradiance cache build.

    Attributes:
        strategy: "grid" for one request per view grid cell, "cluster" for
            k-means reduction of a dense seed pool.
        width: View width in pixels (grid strategy).
        height: View height in pixels (grid strategy).
        amb_scale: Pixels per grid cell along each axis (grid strategy).
        segments: Requests per grid cell (grid strategy).
        cluster_count: Representatives per level (cluster strategy).
        grid_size: Seed grid is grid_size x 2*grid_size (cluster strategy).
        seeds_per_thread: Seeds per seed grid cell (cluster strategy). Iterative
            builds always use one.
        kmeans_iterations: Upper bound on Lloyd iterations.
        kmeans_threshold: Stop once the fraction of seeds changing
            membership in an iteration is at or below this value.
        position_weight: Scale applied to seed positions in the clustering
            feature space. 1.0 clusters on raw [position, direction].
        kmeans_init: "farthest" spreads the starting centroids by repeatedly
            taking the seed farthest from those already chosen; "first"
            uses the first cluster_count seeds; "random" draws them with
            random_seed.
        random_seed: Seed for the "random" initializer.
        iterative: Re-seed each deeper level from the hemispheres of the
            previous level's clusters (cluster strategy).
        ambient_divisions: Hemisphere divisions at level 0.
        ambient_accuracy: Ambient accuracy; also scales octree placement.
        average_reflectance: Assumed average surface reflectance, used to
            shrink hemisphere sampling with depth.
        epsilon: Tolerance for record validity and zero-length directions.
        scene_origin: Minimum corner of the scene cube covered by the cache.
        scene_size: Edge length of the scene cube.
        octree_scale: Node size scale used when placing records in the cache.
    """

    strategy: str = "grid"
    width: int = 512
    height: int = 512
    amb_scale: int = 8
    segments: int = 1
    cluster_count: int = 4096
    grid_size: int = 64
    seeds_per_thread: int = 1
    kmeans_iterations: int = 100
    kmeans_threshold: float = 0.05
    position_weight: float = 1.0
    kmeans_init: str = "farthest"
    random_seed: int | None = None
    iterative: bool = True
    ambient_divisions: int = 1024
    ambient_accuracy: float = 0.1
    average_reflectance: float = 0.5
    epsilon: float = 1e-6
    scene_origin: tuple[float, float, float] = (0.0, 0.0, 0.0)
    scene_size: float = 1.0
    octree_scale: float = 1.0

    def __post_init__(self) -> None:
        self.scene_origin = tuple(float(c) for c in self.scene_origin)

    def validate(self) -> None:
        """Check every field.

        Raises:
            ConfigurationError: If any value is out of range.
        """
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(
                f"Unknown sampling strategy: {self.strategy!r} (expected one of {STRATEGIES})"
            )
        if self.kmeans_init not in KMEANS_INITS:
            raise ConfigurationError(
                f"Unknown k-means initializer: {self.kmeans_init!r} (expected one of {KMEANS_INITS})"
            )
        if not self.epsilon > 0.0:
            raise ConfigurationError(f"epsilon must be positive, got {self.epsilon}")

        if self.strategy == "grid":
            if self.width <= 0 or self.height <= 0:
                raise ConfigurationError(
                    f"View dimensions must be positive, got {self.width}x{self.height}"
                )
            if self.amb_scale <= 0:
                raise ConfigurationError(f"amb_scale must be positive, got {self.amb_scale}")
            if self.width < self.amb_scale or self.height < self.amb_scale:
                raise ConfigurationError(
                    f"View {self.width}x{self.height} is smaller than one grid cell "
                    f"({self.amb_scale} pixels)"
                )
            if self.segments <= 0:
                raise ConfigurationError(f"segments must be positive, got {self.segments}")
        else:
            if self.cluster_count <= 0:
                raise ConfigurationError(
                    f"cluster_count must be positive, got {self.cluster_count}"
                )
            if self.grid_size <= 0 or self.seeds_per_thread <= 0:
                raise ConfigurationError(
                    f"Seed grid must be non-empty, got grid_size={self.grid_size}, "
                    f"seeds_per_thread={self.seeds_per_thread}"
                )

        if self.kmeans_iterations < 0:
            raise ConfigurationError(
                f"kmeans_iterations must be non-negative, got {self.kmeans_iterations}"
            )
        if not 0.0 <= self.kmeans_threshold <= 1.0:
            raise ConfigurationError(
                f"kmeans_threshold must be in [0, 1], got {self.kmeans_threshold}"
            )
        if not self.position_weight > 0.0:
            raise ConfigurationError(
                f"position_weight must be positive, got {self.position_weight}"
            )
        if len(self.scene_origin) != 3:
            raise ConfigurationError(f"scene_origin must have 3 components, got {self.scene_origin}")
        if not self.scene_size > 0.0:
            raise ConfigurationError(f"scene_size must be positive, got {self.scene_size}")
        if not self.octree_scale > 0.0:
            raise ConfigurationError(f"octree_scale must be positive, got {self.octree_scale}")
        if self.ambient_divisions <= 0:
            raise ConfigurationError(
                f"ambient_divisions must be positive, got {self.ambient_divisions}"
            )
        if self.ambient_accuracy < 0.0:
            raise ConfigurationError(
                f"ambient_accuracy must be non-negative, got {self.ambient_accuracy}"
            )
        if not 0.0 < self.average_reflectance <= 1.0:
            raise ConfigurationError(
                f"average_reflectance must be in (0, 1], got {self.average_reflectance}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Export the configuration to a dictionary (for JSON serialization)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SamplingConfig:
        """Load a configuration from a dictionary.

        Missing keys take their defaults.

        Raises:
            ConfigurationError: If the dictionary contains unknown keys.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)
