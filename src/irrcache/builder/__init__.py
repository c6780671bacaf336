"""Level-driven construction of the irradiance cache.

Components:
    evaluator: Protocols for the external parallel sampling evaluator
    strategy: Grid and cluster seed strategies
    cache_builder: The builder and the build_cache() entry point
"""

from .cache_builder import MAX_BOUNCE, AmbientCacheBuilder, build_cache
from .evaluator import AmbientEvaluator, SeedingEvaluator, call_evaluator
from .strategy import ClusterSeedStrategy, GridSeedStrategy, SeedStrategy, make_seed_strategy

__all__ = [
    "AmbientCacheBuilder",
    "build_cache",
    "MAX_BOUNCE",
    "AmbientEvaluator",
    "SeedingEvaluator",
    "call_evaluator",
    "SeedStrategy",
    "GridSeedStrategy",
    "ClusterSeedStrategy",
    "make_seed_strategy",
]
