"""Irradiance cache construction for a Taichi-accelerated ray tracer.

This package builds and stores the ambient (indirect irradiance) cache that a
renderer reuses instead of recomputing indirect light at every shaded point:
- Octree storage of ambient records with level-filtered gathers
- Multi-bounce cache construction, deepest bounce first
- k-means reduction of dense seed pools on Taichi kernels

Subpackages:
    core: Record types, buffer layout, configuration, statistics and errors
    cache: Octree storage of ambient records
    cluster: k-means kernels and seed reduction
    builder: Evaluator interface, seed strategies and the cache builder
"""

__version__ = "0.1.0"
