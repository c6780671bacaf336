"""Level-driven construction of the irradiance cache.

The builder fills an OctreeCache one bounce level at a time, deepest level
first. A record at level k is estimated with rays that themselves reuse the
cache one bounce deeper, so before level k is sampled the evaluator's readable
cache holds the records of level k+1 and none of level k's own output.

Per level the builder:

1. dispatches the seed strategy's request batch to the evaluator,
2. validates each candidate (radius below epsilon is rejected, a negative
   radius or NaN payload is additionally logged as an anomaly) and commits
   the rest to the cache and the running statistics,
3. reports accepted / requested counts,
4. restages the cache (records at or below this level) for the next,
   shallower pass and pushes the updated statistics.

Records are placed in the octree when they are committed: the evaluator
does not assign nodes, so each accepted record is located from its
position and maximum radius.

Per-sample failures never abort a build. Any failure of an evaluator batch
raises EvaluatorError and abandons the build.

Example:
    >>> config = SamplingConfig(width=256, height=256, amb_scale=8)
    >>> cache = build_cache(max_bounce=2, config=config, evaluator=my_evaluator)
    >>> final_gather_records = cache.gather(0)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Generator, Iterable, Sequence

import numpy as np

from src.irrcache.builder.evaluator import AmbientEvaluator, call_evaluator
from src.irrcache.builder.strategy import SeedStrategy, make_seed_strategy
from src.irrcache.cache.octree import OctreeCache
from src.irrcache.core.config import SamplingConfig
from src.irrcache.core.errors import CacheBuildError, ConfigurationError, EvaluatorError
from src.irrcache.core.record import AmbientRecord, LevelReport, RawCandidate, decode_records
from src.irrcache.core.statistics import AmbientStatistics

logger = logging.getLogger(__name__)

# Bounce levels are stored in 8 bits
MAX_BOUNCE = 256

# Type aliases for hooks
# save receives each record as it is committed; load returns persisted records
SaveHook = Callable[[AmbientRecord], None]
LoadHook = Callable[[], Iterable[AmbientRecord]]
ProgressCallback = Callable[[LevelReport], None]


class AmbientCacheBuilder:
    """Builds an irradiance cache across bounce levels.

    The builder exclusively owns its cache and statistics until the build
    finishes; nothing else may mutate them meanwhile.

    Attributes:
        max_bounce: Number of bounce levels to build (levels max_bounce-1..0).
        config: The sampling configuration.
        evaluator: The parallel sampling evaluator.
        strategy: Source of the per-level request batches.
    """

    def __init__(
        self,
        max_bounce: int,
        config: SamplingConfig,
        evaluator: AmbientEvaluator,
        *,
        strategy: SeedStrategy | None = None,
        index: OctreeCache | None = None,
        statistics: AmbientStatistics | None = None,
        save: SaveHook | None = None,
        load: LoadHook | None = None,
    ) -> None:
        """Initialize the builder.

        Args:
            max_bounce: Number of bounce levels, in [0, MAX_BOUNCE].
            config: Sampling configuration; validated here.
            evaluator: The evaluator to dispatch batches to.
            strategy: Overrides the strategy named by config.strategy.
            index: Cache to fill. A new one covering config's scene cube is
                created if omitted.
            statistics: Running statistics to update. Fresh if omitted.
            save: Called once per committed record.
            load: Called once before the first level; its records are
                inserted into the cache and folded into the statistics.

        Raises:
            ConfigurationError: If max_bounce or config is invalid, or if
                index refuses radii that config.epsilon accepts.
        """
        if isinstance(max_bounce, bool) or not isinstance(max_bounce, (int, np.integer)):
            raise ConfigurationError(f"max_bounce must be an integer, got {max_bounce!r}")
        if not 0 <= max_bounce <= MAX_BOUNCE:
            raise ConfigurationError(
                f"max_bounce must be in [0, {MAX_BOUNCE}], got {max_bounce}"
            )
        config.validate()
        if index is not None and index.epsilon > config.epsilon:
            raise ConfigurationError(
                f"Cache epsilon {index.epsilon} exceeds the sampling epsilon "
                f"{config.epsilon}; accepted records would be refused on insert"
            )

        self.max_bounce = int(max_bounce)
        self.config = config
        self.evaluator = evaluator
        self.strategy = strategy if strategy is not None else make_seed_strategy(config)
        self._index = index if index is not None else OctreeCache(
            origin=config.scene_origin,
            size=config.scene_size,
            octree_scale=config.octree_scale,
            ambient_accuracy=config.ambient_accuracy,
            epsilon=config.epsilon,
        )
        self._statistics = (
            statistics if statistics is not None else AmbientStatistics(epsilon=config.epsilon)
        )
        self._save = save
        self._load = load
        self._reports: list[LevelReport] = []
        self._staged = 0
        self._primed = False
        self._finished = False

    @property
    def index(self) -> OctreeCache:
        """The cache being built."""
        return self._index

    @property
    def statistics(self) -> AmbientStatistics:
        return self._statistics

    @property
    def reports(self) -> list[LevelReport]:
        """Reports of the levels built so far, deepest first."""
        return list(self._reports)

    @property
    def finished(self) -> bool:
        return self._finished

    # =========================================================================
    # Build stages
    # =========================================================================

    def _stage(self, level: int) -> None:
        records = self._index.gather(level)
        logger.debug(
            "Using %d of %d ambient records", len(records), len(self._index)
        )
        call_evaluator("stage", self.evaluator.stage, records, level=level)
        self._staged = len(records)

    def _push_statistics(self, level: int | None) -> None:
        sum_log, count = self._statistics.snapshot()
        call_evaluator(
            "push_statistics", self.evaluator.push_statistics, sum_log, count, level=level
        )

    def prime(self) -> None:
        """Prepare the evaluator before the first level.

        Loads persisted records, stages a valid (possibly empty) level-0
        cache, pushes the statistics, and lets the strategy prepare its
        seeds. Called automatically by build().
        """
        if self._primed:
            return

        if self._load is not None:
            loaded = 0
            for record in self._load():
                self._index.insert(record)
                self._statistics.fold(record.value)
                loaded += 1
            logger.info(
                "Loaded %d ambient records",
                loaded,
                extra={"event": "records_loaded", "count": loaded},
            )

        self._stage(0)
        self._push_statistics(None)
        self.strategy.prepare(self.evaluator, self.max_bounce)
        self._primed = True

    def _commit(self, candidates: Sequence[RawCandidate], report: LevelReport) -> None:
        epsilon = self.config.epsilon
        for i, candidate in enumerate(candidates):
            if candidate.is_anomalous():
                report.rejected += 1
                report.anomalies += 1
                logger.warning(
                    "Anomalous ambient sample %d at level %d: position %s, radius %s",
                    i,
                    report.level,
                    candidate.position,
                    candidate.radius,
                    extra={
                        "event": "sample_anomaly",
                        "level": report.level,
                        "index": i,
                        "position": candidate.position,
                    },
                )
                continue

            if candidate.radius[0] < epsilon:
                report.rejected += 1
                continue

            record = candidate.to_record(report.level)
            self._index.insert(record)
            self._statistics.fold(record.value)
            if self._save is not None:
                self._save(record)
            report.accepted += 1
            report.ray_count += candidate.ray_count
            report.hit_count += candidate.hit_count

    def build_level(self, level: int) -> LevelReport:
        """Sample and commit one bounce level.

        Args:
            level: The level to build. Levels must be built in decreasing
                order; build() and build_progressive() do this.

        Returns:
            The level's report.

        Raises:
            EvaluatorError: If the evaluator fails or returns a batch of the
                wrong size.
        """
        requests = self.strategy.requests(level)
        report = LevelReport(level=level, requested=len(requests), staged=self._staged)

        raw = call_evaluator("sample", self.evaluator.sample, requests, level=level)
        candidates = decode_records(raw) if isinstance(raw, np.ndarray) else list(raw)
        if len(candidates) != len(requests):
            raise EvaluatorError(
                f"Evaluator returned {len(candidates)} candidates for "
                f"{len(requests)} requests",
                level=level,
            )

        self._commit(candidates, report)
        logger.info(
            "Retrieved %d ambient records from %d queries at level %d",
            report.accepted,
            report.requested,
            level,
            extra={
                "event": "level_complete",
                "level": level,
                "accepted": report.accepted,
                "requested": report.requested,
                "rejected": report.rejected,
                "anomalies": report.anomalies,
                "ray_count": report.ray_count,
                "hit_count": report.hit_count,
            },
        )

        # The next, shallower pass reads this level's records
        self._stage(level)
        self._push_statistics(level)
        self._reports.append(report)
        return report

    def build_progressive(self) -> Generator[LevelReport, None, None]:
        """Build every level, yielding each level's report as it completes.

        Yields:
            LevelReport for levels max_bounce-1 down to 0.

        Raises:
            CacheBuildError: If this builder has already finished a build.
        """
        if self._finished:
            raise CacheBuildError("This builder has already finished; create a new one to rebuild")
        self.prime()
        for level in range(self.max_bounce - 1, -1, -1):
            yield self.build_level(level)
        self._finished = True

    def build(self, callback: ProgressCallback | None = None) -> OctreeCache:
        """Build every level and return the finished cache.

        Args:
            callback: Optional function called with each level's report.

        Returns:
            The cache, ready for final-gather queries at level 0.
        """
        for report in self.build_progressive():
            if callback is not None:
                callback(report)
        return self._index

    def __repr__(self) -> str:
        return (
            f"AmbientCacheBuilder(max_bounce={self.max_bounce}, "
            f"strategy={type(self.strategy).__name__}, records={len(self._index)})"
        )


def build_cache(
    max_bounce: int,
    config: SamplingConfig,
    evaluator: AmbientEvaluator,
    *,
    strategy: SeedStrategy | None = None,
    index: OctreeCache | None = None,
    statistics: AmbientStatistics | None = None,
    save: SaveHook | None = None,
    load: LoadHook | None = None,
    callback: ProgressCallback | None = None,
) -> OctreeCache:
    """Build an irradiance cache.

    See AmbientCacheBuilder for the arguments.

    Returns:
        The finished cache.

    Raises:
        ConfigurationError: If the arguments are invalid (before sampling).
        EvaluatorError: If any evaluator batch fails.
    """
    builder = AmbientCacheBuilder(
        max_bounce,
        config,
        evaluator,
        strategy=strategy,
        index=index,
        statistics=statistics,
        save=save,
        load=load,
    )
    return builder.build(callback)
