"""Tests for AmbientCacheBuilder and build_cache().

Tests cover:
- Level ordering and what the evaluator can read before each pass
- Candidate validation, rejection and anomaly reporting
- Running statistics pushed to the evaluator
- Batch failures and argument validation
- Save/load hooks, progressive builds and callbacks
- The cluster strategy end to end
"""

import logging
import math

import pytest


def _grid_config(**overrides):
    """4 x 4 x 1 grid: 16 requests per level."""
    from src.irrcache.core.config import SamplingConfig

    values = dict(width=32, height=32, amb_scale=8)
    values.update(overrides)
    return SamplingConfig(**values)


class TestLevelOrdering:
    """Tests for the order of sampling and staging."""

    def test_levels_are_built_deepest_first(self, stub_evaluator):
        """Test that sampling runs from max_bounce-1 down to 0."""
        from src.irrcache.builder.cache_builder import build_cache

        evaluator = stub_evaluator()
        build_cache(4, _grid_config(), evaluator)

        assert evaluator.sampled_levels == [3, 2, 1, 0]

    def test_stage_before_sample_holds_only_deeper_records(self, stub_evaluator):
        """Test that level k never reads its own or shallower output."""
        from src.irrcache.builder.cache_builder import build_cache

        class Recording(stub_evaluator):
            def __init__(self):
                super().__init__()
                self.visible = {}

            def sample(self, requests):
                level = requests[0].level
                self.visible[level] = list(self.staged[-1])
                return super().sample(requests)

        evaluator = Recording()
        build_cache(3, _grid_config(), evaluator)

        for level, records in evaluator.visible.items():
            assert all(r.level > level for r in records)
            # Only the pass one bounce deeper is readable
            expected = 0 if level == 2 else 16
            assert len(records) == expected
            assert all(r.level == level + 1 for r in records)

    def test_initial_stage_is_empty(self, stub_evaluator):
        """Test that the first pass sees a valid, empty cache."""
        from src.irrcache.builder.cache_builder import build_cache

        evaluator = stub_evaluator()
        build_cache(2, _grid_config(), evaluator)

        assert evaluator.staged[0] == []

    def test_final_stage_is_level_zero_gather(self, stub_evaluator):
        """Test that the cache left on the evaluator is the full level-0 set."""
        from src.irrcache.builder.cache_builder import build_cache

        evaluator = stub_evaluator()
        cache = build_cache(3, _grid_config(), evaluator)

        final = evaluator.staged[-1]
        assert len(cache) == 48
        assert len(final) == 16
        assert set(final) == set(cache.gather(0))

    def test_records_carry_builder_level(self, stub_evaluator):
        """Test that committed records are tagged with the level being built."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.core.record import RawCandidate

        def respond(request):
            # Claims a level the builder must overwrite
            return RawCandidate((0.5, 0.5, 0.5), (1, 1, 1), radius=(0.1, 0.2), level=99)

        cache = build_cache(2, _grid_config(), stub_evaluator(respond=respond))

        assert sorted({r.level for r in cache.gather(10)}) == [0, 1]

    def test_zero_bounces(self, stub_evaluator):
        """Test that max_bounce=0 stages an empty cache and samples nothing."""
        from src.irrcache.builder.cache_builder import build_cache

        evaluator = stub_evaluator()
        cache = build_cache(0, _grid_config(), evaluator)

        assert len(cache) == 0
        assert evaluator.sampled_levels == []
        assert evaluator.staged == [[]]


class TestValidation:
    """Tests for candidate validation during commit."""

    def test_radius_threshold(self, stub_evaluator):
        """Test that radius[0] below epsilon is rejected and above is kept."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder
        from src.irrcache.core.record import RawCandidate

        eps = 1e-6

        def respond(request):
            r0 = eps / 2 if request.index % 2 == 0 else 2 * eps
            return RawCandidate((0.5, 0.5, 0.5), (1, 1, 1), radius=(r0, 0.2))

        builder = AmbientCacheBuilder(1, _grid_config(epsilon=eps), stub_evaluator(respond=respond))
        builder.build()

        (report,) = builder.reports
        assert report.requested == 16
        assert report.accepted == 8
        assert report.rejected == 8
        assert report.anomalies == 0
        assert all(r.radius[0] >= eps for r in builder.index.gather(0))

    def test_anomalies_are_logged_and_skipped(self, stub_evaluator, caplog):
        """Test that negative radii and NaN payloads are reported as anomalies."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder
        from src.irrcache.core.record import RawCandidate

        def respond(request):
            if request.index == 0:
                return RawCandidate((0.1, 0.2, 0.3), (1, 1, 1), radius=(-1.0, 0.0))
            if request.index == 1:
                return RawCandidate((0.1, 0.2, 0.3), (float("nan"), 1, 1), radius=(0.1, 0.2))
            return RawCandidate((0.5, 0.5, 0.5), (1, 1, 1), radius=(0.1, 0.2))

        builder = AmbientCacheBuilder(1, _grid_config(), stub_evaluator(respond=respond))
        with caplog.at_level(logging.WARNING, logger="src.irrcache.builder.cache_builder"):
            builder.build()

        (report,) = builder.reports
        assert report.anomalies == 2
        assert report.rejected == 2
        assert report.accepted == 14
        messages = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert any(m.startswith("Anomalous ambient sample 0 at level 0") for m in messages)
        assert any(m.startswith("Anomalous ambient sample 1 at level 0") for m in messages)

    def test_zero_radius_is_not_an_anomaly(self, stub_evaluator, caplog):
        """Test that 'no estimate' candidates are rejected quietly."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder

        evaluator = stub_evaluator(radius=(0.0, 0.0))
        builder = AmbientCacheBuilder(1, _grid_config(), evaluator)
        with caplog.at_level(logging.WARNING):
            builder.build()

        (report,) = builder.reports
        assert report.rejected == 16
        assert report.anomalies == 0
        assert not [
            r for r in caplog.records
            if r.levelno >= logging.WARNING and r.name.startswith("src.irrcache")
        ]

    def test_counts_are_summed(self, stub_evaluator):
        """Test that ray and hit counts are aggregated per level."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder

        builder = AmbientCacheBuilder(2, _grid_config(), stub_evaluator())
        builder.build()

        for report in builder.reports:
            assert report.ray_count == 160
            assert report.hit_count == 16

    def test_counts_skip_rejected_candidates(self, stub_evaluator):
        """Test that ray and hit counts come only from accepted candidates."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder
        from src.irrcache.core.record import RawCandidate

        def respond(request):
            r0 = 0.0 if request.index % 2 == 0 else 0.1
            return RawCandidate(
                (0.5, 0.5, 0.5), (1, 1, 1), radius=(r0, 0.2), ray_count=10, hit_count=1
            )

        builder = AmbientCacheBuilder(1, _grid_config(), stub_evaluator(respond=respond))
        builder.build()

        (report,) = builder.reports
        assert report.accepted == 8
        assert report.ray_count == 80
        assert report.hit_count == 8

    def test_structured_array_results(self, stub_evaluator):
        """Test that a device buffer readback is accepted as a sample batch."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder
        from src.irrcache.core.record import encode_records

        class BufferEvaluator(stub_evaluator):
            def sample(self, requests):
                return encode_records(super().sample(requests)).reshape(4, 4, 1)

        builder = AmbientCacheBuilder(2, _grid_config(), BufferEvaluator())
        cache = builder.build()

        assert len(cache) == 32
        assert [r.accepted for r in builder.reports] == [16, 16]
        assert builder.reports[0].ray_count == 160


class TestStatistics:
    """Tests for the running statistics."""

    def test_log_average_of_committed_values(self, stub_evaluator):
        """Test that every committed value of brightness 2 adds log(2)."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder

        evaluator = stub_evaluator()
        builder = AmbientCacheBuilder(2, _grid_config(), evaluator)
        builder.build()

        sum_log, count = builder.statistics.snapshot()
        assert count == 32
        assert sum_log == pytest.approx(32 * math.log(2.0), rel=1e-6)
        assert builder.statistics.average == pytest.approx(2.0, rel=1e-6)

    def test_statistics_pushed_after_each_stage(self, stub_evaluator):
        """Test that the evaluator receives the running totals after every stage."""
        from src.irrcache.builder.cache_builder import build_cache

        evaluator = stub_evaluator()
        build_cache(2, _grid_config(), evaluator)

        assert len(evaluator.statistics) == len(evaluator.staged) == 3
        counts = [count for _, count in evaluator.statistics]
        assert counts == [0, 16, 32]
        assert evaluator.statistics[-1][0] == pytest.approx(32 * math.log(2.0), rel=1e-6)

    def test_rejected_candidates_do_not_count(self, stub_evaluator):
        """Test that rejected candidates leave the statistics untouched."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder

        builder = AmbientCacheBuilder(1, _grid_config(), stub_evaluator(radius=(0.0, 0.0)))
        builder.build()

        assert builder.statistics.snapshot() == (0.0, 0)


class TestFailures:
    """Tests for build-aborting errors."""

    def test_sample_failure_is_wrapped(self, stub_evaluator):
        """Test that an evaluator exception aborts the build as EvaluatorError."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.core.errors import EvaluatorError

        class Broken(stub_evaluator):
            def sample(self, requests):
                raise RuntimeError("device lost")

        with pytest.raises(EvaluatorError, match="sample failed at level 1") as excinfo:
            build_cache(2, _grid_config(), Broken())
        assert excinfo.value.level == 1
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    def test_short_batch(self, stub_evaluator):
        """Test that a batch with fewer candidates than requests is refused."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.core.errors import EvaluatorError

        class Short(stub_evaluator):
            def sample(self, requests):
                return super().sample(requests)[:-1]

        with pytest.raises(EvaluatorError, match="15 candidates for 16 requests"):
            build_cache(1, _grid_config(), Short())

    def test_stage_failure_is_wrapped(self, stub_evaluator):
        """Test that a failing stage is reported like any batch failure."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.core.errors import EvaluatorError

        class Broken(stub_evaluator):
            def stage(self, records):
                raise MemoryError("out of device memory")

        with pytest.raises(EvaluatorError, match="stage failed"):
            build_cache(1, _grid_config(), Broken())

    @pytest.mark.parametrize("max_bounce", [-1, 257, 1.5, True, "2"])
    def test_invalid_max_bounce(self, stub_evaluator, max_bounce):
        """Test that bad bounce counts are refused before any evaluator call."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.core.errors import ConfigurationError

        evaluator = stub_evaluator()
        with pytest.raises(ConfigurationError, match="max_bounce"):
            build_cache(max_bounce, _grid_config(), evaluator)
        assert evaluator.staged == []
        assert evaluator.sampled_levels == []

    def test_max_bounce_upper_bound(self, stub_evaluator):
        """Test that the largest representable level count is accepted."""
        from src.irrcache.builder.cache_builder import MAX_BOUNCE, AmbientCacheBuilder

        builder = AmbientCacheBuilder(MAX_BOUNCE, _grid_config(), stub_evaluator())
        assert builder.max_bounce == 256

    def test_invalid_config(self, stub_evaluator):
        """Test that configuration errors surface before sampling."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.core.errors import ConfigurationError

        evaluator = stub_evaluator()
        with pytest.raises(ConfigurationError):
            build_cache(1, _grid_config(amb_scale=0), evaluator)
        assert evaluator.staged == []

    def test_index_epsilon_above_sampling_epsilon(self, stub_evaluator):
        """Test that a cache stricter than the sampling threshold is refused up front."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder
        from src.irrcache.cache.octree import OctreeCache
        from src.irrcache.core.errors import ConfigurationError

        evaluator = stub_evaluator(radius=(1e-4, 0.2))
        with pytest.raises(ConfigurationError, match="epsilon"):
            AmbientCacheBuilder(
                1, _grid_config(epsilon=1e-6), evaluator, index=OctreeCache(epsilon=1e-3)
            )
        assert evaluator.staged == []

    def test_index_epsilon_below_sampling_epsilon(self, stub_evaluator):
        """Test that a more lenient cache accepts everything the builder commits."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.cache.octree import OctreeCache

        index = OctreeCache(epsilon=1e-9)
        cache = build_cache(1, _grid_config(epsilon=1e-6), stub_evaluator(), index=index)

        assert len(cache) == 16

    def test_cluster_strategy_needs_seeding_evaluator(self, stub_evaluator):
        """Test that the cluster strategy refuses a plain evaluator."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.core.errors import ConfigurationError

        evaluator = stub_evaluator()
        with pytest.raises(ConfigurationError):
            build_cache(1, _grid_config(strategy="cluster"), evaluator)
        assert evaluator.sampled_levels == []


class TestHooks:
    """Tests for persistence hooks and progress reporting."""

    def test_save_receives_every_committed_record(self, stub_evaluator):
        """Test that the save hook sees exactly the accepted records."""
        from src.irrcache.builder.cache_builder import build_cache

        saved = []
        cache = build_cache(2, _grid_config(), stub_evaluator(), save=saved.append)

        assert len(saved) == 32
        assert set(saved) == set(cache.gather(1))

    def test_loaded_records_are_inserted_and_counted(self, stub_evaluator):
        """Test that loaded records join the cache and the statistics."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder
        from src.irrcache.core.record import AmbientRecord

        persisted = [
            AmbientRecord((0.2, 0.2, 0.2), (2.0, 2.0, 2.0), radius=(0.1, 0.2), level=0),
            AmbientRecord((0.8, 0.8, 0.8), (2.0, 2.0, 2.0), radius=(0.1, 0.2), level=0),
        ]
        evaluator = stub_evaluator()
        builder = AmbientCacheBuilder(1, _grid_config(), evaluator, load=lambda: persisted)
        cache = builder.build()

        assert len(cache) == 18
        assert set(persisted) <= set(cache.gather(0))
        assert set(evaluator.staged[0]) == set(persisted)
        assert evaluator.statistics[0][1] == 2
        assert builder.statistics.count == 18

    def test_progressive_build(self, stub_evaluator):
        """Test that build_progressive() yields one report per level."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder

        builder = AmbientCacheBuilder(3, _grid_config(), stub_evaluator())
        levels = []
        for report in builder.build_progressive():
            assert not builder.finished
            levels.append(report.level)

        assert levels == [2, 1, 0]
        assert builder.finished

    def test_callback_and_staged_counts(self, stub_evaluator):
        """Test that each report records how many records the pass could read."""
        from src.irrcache.builder.cache_builder import build_cache

        reports = []
        build_cache(3, _grid_config(), stub_evaluator(), callback=reports.append)

        assert [r.level for r in reports] == [2, 1, 0]
        assert [r.staged for r in reports] == [0, 16, 16]
        assert all(r.acceptance_rate == 1.0 for r in reports)

    def test_progress_is_logged(self, stub_evaluator, caplog):
        """Test the per-level summary line."""
        from src.irrcache.builder.cache_builder import build_cache

        with caplog.at_level(logging.INFO, logger="src.irrcache.builder.cache_builder"):
            build_cache(1, _grid_config(), stub_evaluator())

        messages = [r.getMessage() for r in caplog.records]
        assert "Retrieved 16 ambient records from 16 queries at level 0" in messages

    def test_existing_index_is_filled(self, stub_evaluator):
        """Test that a caller-supplied cache is used in place."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.cache.octree import OctreeCache

        index = OctreeCache(origin=(-1.0, -1.0, -1.0), size=4.0)
        cache = build_cache(1, _grid_config(), stub_evaluator(), index=index)

        assert cache is index
        assert len(index) == 16

    def test_records_are_placed_by_radius(self, stub_evaluator):
        """Test that each committed record sits at the node its radius selects."""
        from src.irrcache.builder.cache_builder import build_cache

        cache = build_cache(2, _grid_config(), stub_evaluator())

        records = cache.gather(1)
        assert len(records) == 32
        for record in records:
            node = cache.locate(record.position, record.radius[1])
            assert record in cache.records_at(node)

    def test_second_build_is_refused(self, stub_evaluator):
        """Test that a finished builder does not sample again."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder
        from src.irrcache.core.errors import CacheBuildError

        evaluator = stub_evaluator()
        builder = AmbientCacheBuilder(2, _grid_config(), evaluator)
        builder.build()

        with pytest.raises(CacheBuildError, match="already finished"):
            builder.build()
        assert evaluator.sampled_levels == [1, 0]
        assert len(builder.index) == 32


class TestClusterBuild:
    """End-to-end build with the cluster strategy."""

    def test_cluster_build(self, seeding_evaluator):
        """Test that each level samples the prepared representatives."""
        from src.irrcache.builder.cache_builder import AmbientCacheBuilder
        from src.irrcache.core.config import SamplingConfig

        config = SamplingConfig(
            strategy="cluster",
            cluster_count=4,
            grid_size=4,
            ambient_divisions=64,
            scene_origin=(-1.0, -1.0, -1.0),
            scene_size=16.0,
        )
        evaluator = seeding_evaluator()
        builder = AmbientCacheBuilder(2, config, evaluator)
        cache = builder.build()

        assert evaluator.seed_shapes == [(4, 8, 1)]
        assert [shape for _, shape in evaluator.hemisphere_calls] == [(4, 3, 9)]
        assert evaluator.sampled_levels == [1, 0]
        for level, batch in zip([1, 0], evaluator.sample_batches):
            assert [r.seed for r in batch] == builder.strategy.clusters(level)
        assert [r.requested for r in builder.reports] == [4, 4]
        assert len(cache) == 8

    def test_cluster_build_with_grouped_seed_pool(self, seeding_evaluator):
        """Test that seeds arriving group by group still give one cluster per group."""
        from src.irrcache.builder.cache_builder import build_cache
        from src.irrcache.core.config import SamplingConfig

        config = SamplingConfig(
            strategy="cluster",
            cluster_count=4,
            grid_size=4,
            ambient_divisions=64,
            scene_origin=(-1.0, -1.0, -1.0),
            scene_size=16.0,
        )
        evaluator = seeding_evaluator(contiguous=True)
        cache = build_cache(2, config, evaluator)

        level_zero = evaluator.sample_batches[-1]
        corners = {
            (round(r.seed.position[0] / 10), round(r.seed.position[1] / 10)) for r in level_zero
        }
        assert corners == {(0, 0), (1, 0), (0, 1), (1, 1)}
        assert len(cache) == 8
