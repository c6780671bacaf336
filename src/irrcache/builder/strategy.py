"""Seed strategies: where the evaluator samples at each bounce level.

Two variants share the SeedStrategy interface:

- GridSeedStrategy: one request per cell of a coarse grid over the view,
  the same at every level. The evaluator generates the actual rays.
- ClusterSeedStrategy: the evaluator first fills a dense pool of oriented
  seed points, which is reduced by k-means to a fixed number of
  representatives. In iterative mode, each deeper level re-seeds from the
  hemispheres above the previous level's representatives.

Use make_seed_strategy() to pick the variant named by a SamplingConfig.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod

import numpy as np

from src.irrcache.builder.evaluator import AmbientEvaluator, SeedingEvaluator, call_evaluator
from src.irrcache.cluster.reduce import reduce_seeds
from src.irrcache.core.config import SamplingConfig
from src.irrcache.core.errors import ConfigurationError, EvaluatorError
from src.irrcache.core.record import PointDirection, SampleRequest

logger = logging.getLogger(__name__)


class SeedStrategy(ABC):
    """Produces the evaluator's request batch for each bounce level."""

    def __init__(self, config: SamplingConfig) -> None:
        self.config = config

    def prepare(self, evaluator: AmbientEvaluator, max_bounce: int) -> None:
        """Do any work needed before the first level is sampled."""

    @abstractmethod
    def requests(self, level: int) -> list[SampleRequest]:
        """Return the request batch for a bounce level."""


class GridSeedStrategy(SeedStrategy):
    """One request per (x, y, segment) cell of a downscaled view grid."""

    @property
    def grid_shape(self) -> tuple[int, int, int]:
        c = self.config
        return (c.width // c.amb_scale, c.height // c.amb_scale, c.segments)

    def requests(self, level: int) -> list[SampleRequest]:
        width, height, segments = self.grid_shape
        requests = []
        for x in range(width):
            for y in range(height):
                for s in range(segments):
                    requests.append(SampleRequest(level=level, index=len(requests), cell=(x, y, s)))
        return requests


class ClusterSeedStrategy(SeedStrategy):
    """k-means reduced seed pools, one set of representatives per level."""

    def __init__(self, config: SamplingConfig) -> None:
        super().__init__(config)
        self._clusters: dict[int, list[PointDirection]] = {}

    @property
    def seed_shape(self) -> tuple[int, int, int]:
        """Initial seed grid. Iterative builds draw one seed per cell."""
        c = self.config
        depth = 1 if c.iterative else c.seeds_per_thread
        return (c.grid_size, 2 * c.grid_size, depth)

    def hemisphere_shape(self, level: int) -> tuple[int, int, int]:
        """Hemisphere sampling grid for re-seeding a deeper level.

        Deeper bounces carry less energy, so the division count shrinks with
        the assumed average reflectance raised to the level.
        """
        c = self.config
        weight = c.average_reflectance**level
        theta = int(math.sqrt(c.ambient_divisions * weight / math.pi) + 0.5)
        minimum = 3 if c.ambient_accuracy > c.epsilon else 1
        theta = max(theta, minimum)
        phi = int(math.pi * theta + 0.5)
        return (c.cluster_count, theta, phi)

    def clusters(self, level: int) -> list[PointDirection]:
        """Representatives used at a level (available after prepare())."""
        if level not in self._clusters:
            raise KeyError(f"No clusters prepared for level {level}")
        return self._clusters[level]

    def prepare(self, evaluator: AmbientEvaluator, max_bounce: int) -> None:
        if not isinstance(evaluator, SeedingEvaluator):
            raise ConfigurationError(
                "The cluster strategy needs an evaluator providing sample_seeds() "
                "and sample_hemisphere()"
            )
        c = self.config
        self._clusters.clear()

        shape = self.seed_shape
        seeds = call_evaluator("sample_seeds", evaluator.sample_seeds, shape, level=0)
        _check_seed_count(seeds, shape, level=0)
        self._clusters[0] = reduce_seeds(seeds, c.cluster_count, c, level=0)

        for level in range(1, max_bounce):
            if not c.iterative:
                self._clusters[level] = self._clusters[0]
                continue
            shape = self.hemisphere_shape(level)
            seeds = call_evaluator(
                "sample_hemisphere",
                evaluator.sample_hemisphere,
                self._clusters[level - 1],
                shape,
                level=level,
            )
            _check_seed_count(seeds, shape, level=level)
            self._clusters[level] = reduce_seeds(seeds, c.cluster_count, c, level=level)

    def requests(self, level: int) -> list[SampleRequest]:
        return [
            SampleRequest(level=level, index=i, seed=seed)
            for i, seed in enumerate(self.clusters(level))
        ]


def _check_seed_count(seeds, shape: tuple[int, int, int], level: int) -> None:
    expected = int(np.prod(shape))
    got = seeds.size if isinstance(seeds, np.ndarray) else len(seeds)
    if got != expected:
        raise EvaluatorError(
            f"Evaluator returned {got} seeds for a {shape} grid (expected {expected})",
            level=level,
        )
    logger.debug("Evaluator produced %d seeds over %s at level %d", got, shape, level)


def make_seed_strategy(config: SamplingConfig) -> SeedStrategy:
    """Create the strategy named by config.strategy.

    Raises:
        ConfigurationError: If the strategy name is unknown.
    """
    if config.strategy == "grid":
        return GridSeedStrategy(config)
    if config.strategy == "cluster":
        return ClusterSeedStrategy(config)
    raise ConfigurationError(f"Unknown sampling strategy: {config.strategy!r}")
