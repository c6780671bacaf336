"""Spatial storage of ambient records.

Components:
    octree: Arena-backed octree with level-filtered gathers
"""

from .octree import NO_CHILDREN, ROOT, OctreeCache

__all__ = ["OctreeCache", "NO_CHILDREN", "ROOT"]
