"""Seed clustering for the dense sampling variant.

Components:
    kmeans: Lloyd's algorithm with Taichi assignment and update kernels
    reduce: Filtering of seed pools and selection of cluster representatives
"""

from .kmeans import KMeansResult, initial_centroids, kmeans
from .reduce import filter_seeds, reduce_seeds, select_representatives

__all__ = [
    "KMeansResult",
    "initial_centroids",
    "kmeans",
    "filter_seeds",
    "reduce_seeds",
    "select_representatives",
]
