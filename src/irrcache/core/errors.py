"""Exceptions raised while building the irradiance cache.

Only batch-level problems are raised. Per-sample problems (rejected or
anomalous candidates) are counted in the level report and logged instead.
"""


class CacheBuildError(Exception):
    """Base class for errors that abort a cache build."""


class ConfigurationError(CacheBuildError, ValueError):
    """Invalid sampling configuration, detected before any sampling starts."""


class EvaluatorError(CacheBuildError, RuntimeError):
    """The sampling evaluator could not produce a requested batch.

    Attributes:
        level: Bounce level being built when the failure occurred, or None
            if it happened during seed preparation.
    """

    def __init__(self, message: str, level: int | None = None) -> None:
        super().__init__(message)
        self.level = level
