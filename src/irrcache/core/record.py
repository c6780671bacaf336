"""Ambient record data structures and their device buffer layout.

This module defines the Python-side types exchanged between the cache builder
and the parallel sampling evaluator:

- AmbientRecord: a committed cached estimate of indirect illumination
- RawCandidate: one unvalidated evaluator result, with diagnostics
- PointDirection: an oriented sample point (seed or cluster representative)
- SampleRequest: one entry of an evaluator batch

Records travel to and from devices as numpy structured arrays using
AMBIENT_RECORD_DTYPE, a packed layout that mirrors the device-side struct.
Directions are stored as 32-bit codes produced by encode_direction().

Example:
    >>> rec = AmbientRecord(position=(0.0, 1.0, 0.0), value=(0.2, 0.2, 0.2),
    ...                     radius=(0.5, 1.0), level=1)
    >>> buffer = encode_records([rec])
    >>> decode_records(buffer)[0].level
    1
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

Vec2 = tuple[float, float]
Vec3 = tuple[float, float, float]

ZERO_VEC3: Vec3 = (0.0, 0.0, 0.0)

# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class AmbientRecord:
    """A cached estimate of indirect illumination at a point.

    Attributes:
        position: World-space location of the estimate.
        value: Irradiance estimate (RGB).
        grad_pos: Translational gradient in the record's tangent frame.
        grad_dir: Rotational gradient in the record's tangent frame.
        radius: (min, max) validity radius. A record with radius[0] below
            the cache epsilon is invalid and never stored.
        normal_dir: Packed surface normal (see encode_direction).
        used_dir: Packed tangent direction used for the gradients.
        corral: Bitmask of neighbours that block this record's reuse.
        level: Bounce depth at which the record was computed (0 = primary).
        weight: Contribution weight used when averaging records.
    """

    position: Vec3
    value: Vec3
    grad_pos: Vec2 = (0.0, 0.0)
    grad_dir: Vec2 = (0.0, 0.0)
    radius: Vec2 = (0.0, 0.0)
    normal_dir: int = 0
    used_dir: int = 0
    corral: int = 0
    level: int = 0
    weight: float = 1.0


@dataclass(frozen=True)
class RawCandidate:
    """An unvalidated evaluator result for one sample request.

    Carries the same payload as AmbientRecord. A negative radius[0] means the
    evaluator hit an internal error for this request; a magnitude below the
    cache epsilon means no usable estimate was produced.

    Attributes:
        ray_count: Rays traced to produce the estimate (diagnostic only).
        hit_count: Cached records reused while tracing (diagnostic only).
    """

    position: Vec3
    value: Vec3
    grad_pos: Vec2 = (0.0, 0.0)
    grad_dir: Vec2 = (0.0, 0.0)
    radius: Vec2 = (0.0, 0.0)
    normal_dir: int = 0
    used_dir: int = 0
    corral: int = 0
    level: int = 0
    weight: float = 1.0
    ray_count: int = 0
    hit_count: int = 0

    def is_anomalous(self) -> bool:
        """Return True if this candidate signals an evaluator defect."""
        if self.radius[0] < 0.0:
            return True
        return has_nan(self.position) or has_nan(self.value) or has_nan(self.radius)

    def to_record(self, level: int) -> AmbientRecord:
        """Convert this candidate into a committed record at the given level."""
        return AmbientRecord(
            position=_vec3(self.position),
            value=_vec3(self.value),
            grad_pos=_vec2(self.grad_pos),
            grad_dir=_vec2(self.grad_dir),
            radius=_vec2(self.radius),
            normal_dir=int(self.normal_dir),
            used_dir=int(self.used_dir),
            corral=int(self.corral),
            level=level,
            weight=float(self.weight),
        )


# =============================================================================
# Seeds and requests
# =============================================================================


@dataclass(frozen=True)
class PointDirection:
    """An oriented sample point.

    A zero direction is the sentinel for "no sample requested here" and
    must be treated as absent by every consumer.
    """

    position: Vec3
    direction: Vec3

    def is_sentinel(self, epsilon: float = 1e-6) -> bool:
        return length_squared(self.direction) < epsilon

    @classmethod
    def sentinel(cls, position: Vec3 = ZERO_VEC3) -> PointDirection:
        return cls(position=position, direction=ZERO_VEC3)


@dataclass(frozen=True)
class SampleRequest:
    """One entry of an evaluator batch.

    Exactly one of ``cell`` and ``seed`` is set. Grid requests name an
    (x, y, segment) cell of the view-driven sampling grid; cluster requests
    carry the representative seed to sample from.
    """

    level: int
    index: int
    cell: tuple[int, int, int] | None = None
    seed: PointDirection | None = None

    @property
    def is_empty(self) -> bool:
        """True if this request carries the zero-direction sentinel."""
        return self.seed is not None and self.seed.is_sentinel()


@dataclass
class LevelReport:
    """Diagnostics for one bounce level of a cache build."""

    level: int
    requested: int
    staged: int = 0
    accepted: int = 0
    rejected: int = 0
    anomalies: int = 0
    ray_count: int = 0
    hit_count: int = 0

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / self.requested if self.requested > 0 else 0.0


# =============================================================================
# Vector helpers
# =============================================================================


def length_squared(v: Sequence[float]) -> float:
    """Squared Euclidean length of a 3-vector."""
    return v[0] * v[0] + v[1] * v[1] + v[2] * v[2]


def has_nan(v: Iterable[float]) -> bool:
    return any(math.isnan(c) for c in v)


def _vec3(v: Sequence[float]) -> Vec3:
    return (float(v[0]), float(v[1]), float(v[2]))


def _vec2(v: Sequence[float]) -> Vec2:
    return (float(v[0]), float(v[1]))


# =============================================================================
# Direction codec
# =============================================================================

# Bump when the packed layout below changes.
DIRECTION_CODEC_VERSION = 1

_DIR_BITS = 16
_DIR_MAX = (1 << _DIR_BITS) - 1  # 65535
_DIR_STEPS = _DIR_MAX - 1  # quantised values occupy [1, 65535]


def _quantize(x: float) -> int:
    x = min(max(x, -1.0), 1.0)
    return int(round((x * 0.5 + 0.5) * _DIR_STEPS)) + 1


def _dequantize(q: int) -> float:
    return (q - 1) / _DIR_STEPS * 2.0 - 1.0


def encode_direction(v: Sequence[float]) -> int:
    """Pack a direction into a 32-bit code.

    Layout (version 1): the normalized vector is projected onto the
    octahedron, giving (u, v) in [-1, 1]. Each is quantised to 16 bits in
    [1, 65535] and packed as ``u << 16 | v``. Code 0 is reserved for the
    zero vector.

    Args:
        v: Direction (x, y, z). Need not be normalized.

    Returns:
        The packed code, or 0 for a (near-)zero vector.
    """
    norm = abs(v[0]) + abs(v[1]) + abs(v[2])
    if norm < 1e-12:
        return 0
    x, y, z = v[0] / norm, v[1] / norm, v[2] / norm
    if z < 0.0:
        x, y = (
            (1.0 - abs(y)) * math.copysign(1.0, x),
            (1.0 - abs(x)) * math.copysign(1.0, y),
        )
    return (_quantize(x) << _DIR_BITS) | _quantize(y)


def decode_direction(code: int) -> Vec3:
    """Unpack a code produced by encode_direction() into a unit vector.

    Returns:
        The unit direction, or the zero vector for code 0.
    """
    if code == 0:
        return ZERO_VEC3
    x = _dequantize((code >> _DIR_BITS) & _DIR_MAX)
    y = _dequantize(code & _DIR_MAX)
    z = 1.0 - abs(x) - abs(y)
    if z < 0.0:
        x, y = (
            (1.0 - abs(y)) * math.copysign(1.0, x),
            (1.0 - abs(x)) * math.copysign(1.0, y),
        )
    length = math.sqrt(x * x + y * y + z * z)
    return (x / length, y / length, z / length)


# =============================================================================
# Structured buffer layout
# =============================================================================

# Packed to match the device struct; no padding between fields.
AMBIENT_RECORD_DTYPE = np.dtype(
    [
        ("pos", np.float32, (3,)),
        ("val", np.float32, (3,)),
        ("gpos", np.float32, (2,)),
        ("gdir", np.float32, (2,)),
        ("rad", np.float32, (2,)),
        ("ndir", np.uint32),
        ("udir", np.uint32),
        ("corral", np.uint32),
        ("lvl", np.uint8),
        ("weight", np.float32),
        ("ray_count", np.uint32),
        ("hit_count", np.uint32),
    ],
    align=False,
)

POINT_DIRECTION_DTYPE = np.dtype([("pos", np.float32, (3,)), ("dir", np.float32, (3,))])


def encode_records(records: Sequence[AmbientRecord | RawCandidate]) -> npt.NDArray[np.void]:
    """Copy records into a structured array for device staging.

    Args:
        records: Records (or candidates) to encode. May be empty.

    Returns:
        Array of dtype AMBIENT_RECORD_DTYPE with one row per record.
    """
    buffer = np.zeros(len(records), dtype=AMBIENT_RECORD_DTYPE)
    if not records:
        return buffer

    buffer["pos"] = [rec.position for rec in records]
    buffer["val"] = [rec.value for rec in records]
    buffer["gpos"] = [rec.grad_pos for rec in records]
    buffer["gdir"] = [rec.grad_dir for rec in records]
    buffer["rad"] = [rec.radius for rec in records]
    buffer["ndir"] = [rec.normal_dir for rec in records]
    buffer["udir"] = [rec.used_dir for rec in records]
    buffer["corral"] = [rec.corral for rec in records]
    buffer["lvl"] = [rec.level for rec in records]
    buffer["weight"] = [rec.weight for rec in records]
    buffer["ray_count"] = [getattr(rec, "ray_count", 0) for rec in records]
    buffer["hit_count"] = [getattr(rec, "hit_count", 0) for rec in records]
    return buffer


def decode_records(buffer: npt.NDArray[np.void]) -> list[RawCandidate]:
    """Convert a device result array into raw candidates.

    Args:
        buffer: Array of dtype AMBIENT_RECORD_DTYPE (any shape; flattened in
            C order, which is the request index order).

    Returns:
        One RawCandidate per row.

    Raises:
        ValueError: If the array does not use AMBIENT_RECORD_DTYPE fields.
    """
    if buffer.dtype.names is None or set(buffer.dtype.names) != set(AMBIENT_RECORD_DTYPE.names):
        raise ValueError(f"Expected ambient record buffer, got dtype {buffer.dtype}")

    flat = buffer.reshape(-1)
    return [
        RawCandidate(
            position=_vec3(row["pos"]),
            value=_vec3(row["val"]),
            grad_pos=_vec2(row["gpos"]),
            grad_dir=_vec2(row["gdir"]),
            radius=_vec2(row["rad"]),
            normal_dir=int(row["ndir"]),
            used_dir=int(row["udir"]),
            corral=int(row["corral"]),
            level=int(row["lvl"]),
            weight=float(row["weight"]),
            ray_count=int(row["ray_count"]),
            hit_count=int(row["hit_count"]),
        )
        for row in flat
    ]


def point_directions_to_array(points: Sequence[PointDirection]) -> npt.NDArray[np.void]:
    """Pack oriented points into a POINT_DIRECTION_DTYPE array."""
    buffer = np.zeros(len(points), dtype=POINT_DIRECTION_DTYPE)
    if points:
        buffer["pos"] = [p.position for p in points]
        buffer["dir"] = [p.direction for p in points]
    return buffer


def point_directions_from_array(buffer: npt.NDArray[np.void]) -> list[PointDirection]:
    """Unpack a POINT_DIRECTION_DTYPE array (any shape, C order)."""
    flat = buffer.reshape(-1)
    return [PointDirection(_vec3(row["pos"]), _vec3(row["dir"])) for row in flat]
