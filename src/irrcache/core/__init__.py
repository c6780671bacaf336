"""Core data types shared by every part of the cache.

Components:
    record: Ambient records, raw candidates, seeds, requests, and their
        structured-array layout and direction codec
    statistics: Running log-average of committed ambient values
    config: Sampling configuration
    errors: Exceptions that abort a cache build
"""

from .config import SamplingConfig
from .errors import CacheBuildError, ConfigurationError, EvaluatorError
from .record import (
    AMBIENT_RECORD_DTYPE,
    DIRECTION_CODEC_VERSION,
    POINT_DIRECTION_DTYPE,
    AmbientRecord,
    LevelReport,
    PointDirection,
    RawCandidate,
    SampleRequest,
    decode_direction,
    decode_records,
    encode_direction,
    encode_records,
    point_directions_from_array,
    point_directions_to_array,
)
from .statistics import AmbientStatistics, brightness

__all__ = [
    # Records
    "AmbientRecord",
    "RawCandidate",
    "PointDirection",
    "SampleRequest",
    "LevelReport",
    "AMBIENT_RECORD_DTYPE",
    "POINT_DIRECTION_DTYPE",
    "DIRECTION_CODEC_VERSION",
    "encode_records",
    "decode_records",
    "encode_direction",
    "decode_direction",
    "point_directions_to_array",
    "point_directions_from_array",
    # Statistics
    "AmbientStatistics",
    "brightness",
    # Configuration and errors
    "SamplingConfig",
    "CacheBuildError",
    "ConfigurationError",
    "EvaluatorError",
]
