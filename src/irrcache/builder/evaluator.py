"""Interface to the parallel sampling evaluator.

The evaluator is the device-side engine that traces rays and produces raw
indirect-light estimates. The cache builder treats it as a black box: every
call is one blocking batch, and results come back in request order, one per
request.

Results may be returned either as sequences of the Python record types or as
numpy structured arrays (AMBIENT_RECORD_DTYPE / POINT_DIRECTION_DTYPE), which
is what a device buffer readback naturally yields.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, Union, runtime_checkable

import numpy as np
import numpy.typing as npt

from src.irrcache.core.errors import EvaluatorError
from src.irrcache.core.record import AmbientRecord, PointDirection, RawCandidate, SampleRequest

CandidateBatch = Union[Sequence[RawCandidate], npt.NDArray[np.void]]
SeedBatch = Union[Sequence[PointDirection], npt.NDArray[np.void]]


@runtime_checkable
class AmbientEvaluator(Protocol):
    """Capabilities every evaluator provides."""

    def stage(self, records: Sequence[AmbientRecord]) -> None:
        """Replace the evaluator's readable cache. May be empty."""
        ...

    def sample(self, requests: Sequence[SampleRequest]) -> CandidateBatch:
        """Evaluate a batch of requests, returning one candidate per request."""
        ...

    def push_statistics(self, sum_log: float, count: int) -> None:
        """Update the global log-average used by adaptive radius formulas."""
        ...


@runtime_checkable
class SeedingEvaluator(AmbientEvaluator, Protocol):
    """An evaluator that can also generate seed pools (dense variant)."""

    def sample_seeds(self, shape: tuple[int, int, int]) -> SeedBatch:
        """Generate the initial seed pool over a (width, height, depth) grid."""
        ...

    def sample_hemisphere(
        self, clusters: Sequence[PointDirection], shape: tuple[int, int, int]
    ) -> SeedBatch:
        """Generate seeds by sampling the hemisphere above each cluster.

        The shape is (cluster_count, theta_divisions, phi_divisions).
        """
        ...


def call_evaluator(operation: str, fn, *args, level: int | None = None):
    """Invoke one blocking evaluator batch, converting failures to EvaluatorError.

    Args:
        operation: Name of the batch for the error message (e.g. "sample").
        fn: The bound evaluator method.
        *args: Arguments for fn.
        level: Bounce level the batch belongs to, if any.

    Raises:
        EvaluatorError: If fn raises.
    """
    try:
        return fn(*args)
    except Exception as exc:
        where = f" at level {level}" if level is not None else ""
        raise EvaluatorError(f"Evaluator {operation} failed{where}: {exc}", level=level) from exc
