"""Pytest configuration for irradiance cache tests.

This module provides shared fixtures for all test modules: Taichi
initialization, which must happen once per session, and stub evaluators that
stand in for the device-side sampling engine.
"""

import math

import pytest
import taichi as ti


@pytest.fixture(scope="session", autouse=True)
def init_taichi_session():
    """Initialize Taichi once for the entire test session.

    Using session scope prevents multiple ti.init() calls which can cause
    segmentation faults due to Taichi runtime conflicts.
    """
    ti.init(arch=ti.cpu, random_seed=42)
    yield


class StubEvaluator:
    """Records every call and answers sample batches with fixed candidates.

    By default each request yields a valid candidate of value (2, 2, 2) at a
    position spread over the unit cube. Pass ``respond`` to control the
    candidate per request.
    """

    def __init__(self, respond=None, value=(2.0, 2.0, 2.0), radius=(0.1, 0.2)):
        self.respond = respond
        self.value = value
        self.radius = radius
        self.staged = []
        self.sampled_levels = []
        self.sample_batches = []
        self.statistics = []

    def default_candidate(self, request):
        from src.irrcache.core.record import RawCandidate

        if request.seed is not None:
            position = request.seed.position
        else:
            n = request.index + 1
            position = (
                (n * 0.618034) % 1.0,
                (n * 0.414214) % 1.0,
                (n * 0.732051) % 1.0,
            )
        return RawCandidate(
            position=position,
            value=self.value,
            radius=self.radius,
            level=request.level,
            ray_count=10,
            hit_count=1,
        )

    def stage(self, records):
        self.staged.append(list(records))

    def sample(self, requests):
        level = requests[0].level if requests else None
        self.sampled_levels.append(level)
        self.sample_batches.append(list(requests))
        respond = self.respond if self.respond is not None else self.default_candidate
        return [respond(request) for request in requests]

    def push_statistics(self, sum_log, count):
        self.statistics.append((sum_log, count))


class SeedingStubEvaluator(StubEvaluator):
    """Stub evaluator that also generates seed pools.

    Initial seeds form four tight groups near the corners of a 10-unit
    square. By default they are interleaved so that group ``i % 4`` owns
    seed ``i``; with ``contiguous=True`` each group fills one consecutive
    quarter of the pool. Hemisphere seeds are scattered just above each
    cluster representative.
    """

    CENTERS = ((0.0, 0.0, 0.0), (10.0, 0.0, 0.0), (0.0, 10.0, 0.0), (10.0, 10.0, 0.0))

    def __init__(self, contiguous=False, **kwargs):
        super().__init__(**kwargs)
        self.contiguous = contiguous
        self.seed_shapes = []
        self.hemisphere_calls = []

    def sample_seeds(self, shape):
        from src.irrcache.core.record import PointDirection

        self.seed_shapes.append(shape)
        count = shape[0] * shape[1] * shape[2]
        seeds = []
        per_group = max(count // 4, 1)
        for i in range(count):
            if self.contiguous:
                group, rank = divmod(i, per_group)
                group = min(group, 3)
            else:
                group, rank = i % 4, i // 4
            cx, cy, cz = self.CENTERS[group]
            jitter = 0.01 * rank
            seeds.append(PointDirection((cx + jitter, cy - jitter, cz), (0.0, 0.0, 1.0)))
        return seeds

    def sample_hemisphere(self, clusters, shape):
        from src.irrcache.core.record import PointDirection

        self.hemisphere_calls.append((list(clusters), shape))
        _, theta, phi = shape
        seeds = []
        for cluster in clusters:
            for t in range(theta):
                for p in range(phi):
                    if cluster.is_sentinel():
                        seeds.append(PointDirection.sentinel())
                        continue
                    polar = (t + 0.5) / theta * (math.pi / 2.0)
                    azimuth = (p + 0.5) / phi * (2.0 * math.pi)
                    direction = (
                        math.sin(polar) * math.cos(azimuth),
                        math.sin(polar) * math.sin(azimuth),
                        math.cos(polar),
                    )
                    x, y, z = cluster.position
                    seeds.append(PointDirection((x, y, z + 0.01 * t), direction))
        return seeds


@pytest.fixture
def stub_evaluator():
    """Factory for StubEvaluator instances."""
    return StubEvaluator


@pytest.fixture
def seeding_evaluator():
    """Factory for SeedingStubEvaluator instances."""
    return SeedingStubEvaluator
