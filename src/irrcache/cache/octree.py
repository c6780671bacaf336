"""Octree storage for ambient records.

The cache is an 8-way spatial partition of the scene cube. Nodes live in an
arena and are addressed by integer index; each node holds its own records and
the index of its first child. Children are allocated lazily, eight at a time,
so a node's octant ``k`` lives at ``first_child + k``.

Records are append-only: they are placed once, never relocated, and never
removed. A gather walks the whole tree once and filters on bounce level.

Example:
    >>> cache = OctreeCache(origin=(0.0, 0.0, 0.0), size=10.0)
    >>> node = cache.insert(AmbientRecord((1, 1, 1), (0.5, 0.5, 0.5), radius=(0.2, 0.4)))
    >>> len(cache.gather(0))
    1
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence

from src.irrcache.core.record import AmbientRecord, Vec3

# Child index sentinel for leaf nodes
NO_CHILDREN = -1

ROOT = 0


class OctreeCache:
    """Arena-backed octree of ambient records.

    Attributes:
        origin: Minimum corner of the scene cube.
        size: Edge length of the scene cube.
        octree_scale: Scale of node size relative to record radius when
            descending (larger values push records deeper).
        ambient_accuracy: Ambient accuracy; records descend while the half
            node size exceeds ``radius[1] * ambient_accuracy``.
        epsilon: Records with radius[0] below this are refused.
    """

    def __init__(
        self,
        origin: Vec3 = (0.0, 0.0, 0.0),
        size: float = 1.0,
        octree_scale: float = 1.0,
        ambient_accuracy: float = 0.1,
        epsilon: float = 1e-6,
    ) -> None:
        if size <= 0.0:
            raise ValueError(f"Scene cube size must be positive, got {size}")
        self.origin = (float(origin[0]), float(origin[1]), float(origin[2]))
        self.size = float(size)
        self.octree_scale = octree_scale
        self.ambient_accuracy = ambient_accuracy
        self.epsilon = epsilon

        self._records: list[list[AmbientRecord]] = [[]]
        self._first_child: list[int] = [NO_CHILDREN]
        self._count = 0

    def __len__(self) -> int:
        """Total number of records stored."""
        return self._count

    def __repr__(self) -> str:
        return (
            f"OctreeCache(origin={self.origin}, size={self.size}, "
            f"records={self._count}, nodes={self.node_count})"
        )

    @property
    def node_count(self) -> int:
        return len(self._records)

    # =========================================================================
    # Arena access
    # =========================================================================

    def child(self, node: int, octant: int) -> int:
        """Return the arena index of a node's child, or NO_CHILDREN."""
        if not 0 <= octant < 8:
            raise ValueError(f"Octant must be in [0, 8), got {octant}")
        first = self._first_child[node]
        return NO_CHILDREN if first == NO_CHILDREN else first + octant

    def children(self, node: int) -> list[int]:
        """Return the arena indices of a node's eight children (empty for leaves)."""
        first = self._first_child[node]
        if first == NO_CHILDREN:
            return []
        return list(range(first, first + 8))

    def records_at(self, node: int) -> Sequence[AmbientRecord]:
        """Return the records stored directly at a node."""
        return tuple(self._records[node])

    def _split(self, node: int) -> int:
        first = len(self._records)
        for _ in range(8):
            self._records.append([])
            self._first_child.append(NO_CHILDREN)
        self._first_child[node] = first
        return first

    # =========================================================================
    # Placement and insertion
    # =========================================================================

    def locate(self, position: Sequence[float], max_radius: float) -> int:
        """Find (creating if needed) the node that should own a record.

        Descends from the root while half of the current cube edge, scaled
        by octree_scale, exceeds ``max_radius * ambient_accuracy``, choosing
        at each step the octant containing ``position``.

        Args:
            position: Record position.
            max_radius: The record's maximum validity radius.

        Returns:
            Arena index of the owning node. Records with no usable radius
            (or a cache with zero accuracy) stay at the root.
        """
        node = ROOT
        corner = list(self.origin)
        s = self.size
        limit = max_radius * self.ambient_accuracy
        if not limit > 0.0:
            return node
        while s * (self.octree_scale / 2.0) > limit:
            first = self._first_child[node]
            if first == NO_CHILDREN:
                first = self._split(node)
            s *= 0.5
            branch = 0
            for i in range(3):
                if position[i] > corner[i] + s:
                    corner[i] += s
                    branch |= 1 << i
            node = first + branch
        return node

    def insert(self, record: AmbientRecord, node: int | None = None) -> int:
        """Append a record to the tree.

        Args:
            record: The record to store.
            node: Owning node chosen when the record was created. If None,
                the node is located from the record's position and radius.

        Returns:
            Arena index of the node holding the record.

        Raises:
            ValueError: If the record's radius is below epsilon or the node
                index is out of range.
        """
        if not record.radius[0] >= self.epsilon:
            raise ValueError(f"Zero ambient radius in insert: {record.radius}")
        if node is None:
            node = self.locate(record.position, record.radius[1])
        elif not 0 <= node < len(self._records):
            raise ValueError(f"Node index {node} out of range (0..{len(self._records) - 1})")

        self._records[node].append(record)
        self._count += 1
        return node

    # =========================================================================
    # Queries
    # =========================================================================

    def walk(self) -> Iterator[int]:
        """Yield every node index, parents before children."""
        stack = [ROOT]
        while stack:
            node = stack.pop()
            yield node
            first = self._first_child[node]
            if first != NO_CHILDREN:
                stack.extend(range(first + 7, first - 1, -1))

    def gather(self, level: int) -> list[AmbientRecord]:
        """Collect every record computed at or below a bounce level.

        The walk visits each node exactly once, so each stored record appears
        at most once. Storage is pre-sized to the total record count.

        Args:
            level: Highest bounce level to include.

        Returns:
            A new list of matching records, in no particular order.
        """
        if self._count == 0:
            return []

        out: list[AmbientRecord | None] = [None] * self._count
        n = 0
        for node in self.walk():
            for record in self._records[node]:
                if record.level <= level:
                    out[n] = record
                    n += 1
        del out[n:]
        return out  # type: ignore[return-value]

