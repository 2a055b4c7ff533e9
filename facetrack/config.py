"""
Configuration for the face tracker.

Contains:
- Defaults read from environment variables
- TrackerConfig, the typed parameter set owned by each session
- Parsing and formatting of "Name=value;Name=value;" parameter strings

Parameter strings are only accepted at the boundary (set_parameters,
get_parameter). Inside the tracker every value is typed.
"""

import os
from dataclasses import dataclass, fields, replace

from facetrack.errors import ParameterError

# =============================================================================
# Defaults (from environment variables)
# =============================================================================

# Attach an observation to an existing identity at or above this similarity
MATCH_THRESHOLD = float(os.getenv("FACETRACK_MATCH_THRESHOLD", "0.90"))

# Report identities at or above this similarity as "similar"
SIMILAR_THRESHOLD = float(os.getenv("FACETRACK_SIMILAR_THRESHOLD", "0.70"))

# Candidate pairs at or above this mutual similarity start a merge streak.
# Lower than MATCH_THRESHOLD: these are faces the matcher did not attach.
MERGE_THRESHOLD = float(os.getenv("FACETRACK_MERGE_THRESHOLD", "0.85"))

# Consecutive frames a pair must stay mutually similar before merging
MERGE_WINDOW = int(os.getenv("FACETRACK_MERGE_WINDOW", "3"))

# Maximum number of live identities before stale ones are purged (0 = unlimited)
MEMORY_LIMIT = int(os.getenv("FACETRACK_MEMORY_LIMIT", "2150"))

# Where tracker memory and event logs are written by default
DATA_DIR = os.getenv("FACETRACK_DATA_DIR", "data")


# External name -> TrackerConfig field
PARAMETER_NAMES = {
    "MatchThreshold": "match_threshold",
    "SimilarThreshold": "similar_threshold",
    "MergeThreshold": "merge_threshold",
    "MergeWindow": "merge_window",
    "MemoryLimit": "memory_limit",
}


@dataclass(frozen=True)
class TrackerConfig:
    """Typed tracker parameters. Immutable; use with_values() to change."""
    match_threshold: float = MATCH_THRESHOLD
    similar_threshold: float = SIMILAR_THRESHOLD
    merge_threshold: float = MERGE_THRESHOLD
    merge_window: int = MERGE_WINDOW
    memory_limit: int = MEMORY_LIMIT

    def __post_init__(self):
        for name in ("match_threshold", "similar_threshold", "merge_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ParameterError(f"{name} must be within [0, 1], got {value}", name=name)
        if self.merge_window < 1:
            raise ParameterError(
                f"merge_window must be at least 1, got {self.merge_window}",
                name="merge_window",
            )
        if self.memory_limit < 0:
            raise ParameterError(
                f"memory_limit cannot be negative, got {self.memory_limit}",
                name="memory_limit",
            )

    def with_values(self, **values) -> "TrackerConfig":
        return replace(self, **values)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def get_parameter(self, name: str) -> str:
        """Return a parameter value by its external name, as a string."""
        field_name = _field_for(name)
        return _format_value(getattr(self, field_name))

    def set_parameter(self, name: str, value: str) -> "TrackerConfig":
        """Return a new config with one parameter set from its string form."""
        return self.set_parameters([(name, value)])

    def set_parameters(self, parameters) -> "TrackerConfig":
        """
        Return a new config with several parameters applied.

        All-or-nothing: if any parameter is unknown or invalid, nothing is
        applied and ParameterError carries the 1-based position of the
        offending parameter.

        Args:
            parameters: "Name=value;Name=value;" string, or (name, value) pairs
        """
        if isinstance(parameters, str):
            parameters = parse_parameters(parameters)
        parameters = list(parameters)

        values = {}
        for position, (name, raw) in enumerate(parameters, start=1):
            try:
                field_name = _field_for(name)
                values[field_name] = _coerce(field_name, raw)
            except ParameterError as e:
                raise ParameterError(str(e), name=name, position=position) from e

        try:
            return self.with_values(**values)
        except ParameterError as e:
            position = None
            for index, (name, _) in enumerate(parameters, start=1):
                if PARAMETER_NAMES.get(name) == e.name:
                    position = index
            raise ParameterError(str(e), name=e.name, position=position) from e

    def format_parameters(self) -> str:
        return format_parameters(
            (name, getattr(self, field_name))
            for name, field_name in PARAMETER_NAMES.items()
        )


def parse_parameters(text: str) -> list[tuple[str, str]]:
    """
    Parse a "Name=value;Name=value;" string into (name, value) pairs.

    Empty segments are ignored, so a trailing ";" is allowed.

    Raises:
        ParameterError: If a segment has no "=" or an empty name
    """
    pairs = []
    segments = [s for s in text.split(";") if s.strip()]
    for position, segment in enumerate(segments, start=1):
        name, sep, value = segment.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ParameterError(
                f"Malformed parameter {segment!r}, expected Name=value",
                position=position,
            )
        pairs.append((name, value.strip()))
    return pairs


def format_parameters(pairs) -> str:
    return "".join(f"{name}={_format_value(value)};" for name, value in pairs)


def _field_for(name: str) -> str:
    if name not in PARAMETER_NAMES:
        raise ParameterError(f"Unknown tracker parameter: {name}", name=name)
    return PARAMETER_NAMES[name]


def _coerce(field_name: str, raw):
    kind = int if field_name in ("merge_window", "memory_limit") else float
    try:
        return kind(raw)
    except (TypeError, ValueError) as e:
        raise ParameterError(f"Invalid value for {field_name}: {raw!r}") from e


def _format_value(value) -> str:
    if isinstance(value, float):
        return repr(value)
    return str(value)
