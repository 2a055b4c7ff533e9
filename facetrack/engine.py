"""
Boundary to the external face engine.

The tracker never detects faces or compares embeddings itself. It calls a
collaborator that implements FaceEngine and treats its output as opaque:
regions are plain positions and templates are immutable byte strings.

EngineGateway is the only place collaborator calls are made. It converts
any exception raised by the engine into CollaboratorFailure, so one bad
frame surfaces as a single, well-typed error.
"""

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from facetrack.errors import CollaboratorFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceRegion:
    """Face position: center, width and in-plane rotation angle."""
    xc: int
    yc: int
    w: int
    angle: float = 0.0

    def to_dict(self) -> dict:
        return {"xc": self.xc, "yc": self.yc, "w": self.w, "angle": self.angle}


@dataclass(frozen=True)
class Template:
    """Face embedding produced by the engine. Opaque, fixed-size bytes."""
    data: bytes

    def __post_init__(self):
        if not isinstance(self.data, (bytes, bytearray, memoryview)):
            raise TypeError(f"Template data must be bytes, got {type(self.data).__name__}")
        if len(self.data) == 0:
            raise ValueError("Template data cannot be empty")
        # Freeze mutable buffers into bytes
        object.__setattr__(self, "data", bytes(self.data))

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class FaceObservation:
    """One face seen in one frame. Lives only for a single ingestion call."""
    frame_index: int
    region: FaceRegion
    template: Template


class FaceEngine(Protocol):
    """What the tracker needs from a face recognition engine."""

    def detect(self, image: Any) -> Sequence[FaceRegion]:
        ...

    def extract_template(self, image: Any, region: FaceRegion) -> Template:
        ...

    def match(self, first: Template, second: Template) -> float:
        ...


class EngineGateway:
    """
    Wraps a FaceEngine and normalizes its failures.

    No retries: an engine failure means the input frame is unusable,
    not that the call is transient.
    """

    def __init__(self, engine: FaceEngine):
        self.engine = engine

    def detect(self, image: Any) -> list[FaceRegion]:
        try:
            regions = self.engine.detect(image)
        except Exception as e:
            logger.warning(f"Face detection failed: {e}")
            raise CollaboratorFailure("detect", str(e)) from e
        return list(regions or [])

    def extract_template(self, image: Any, region: FaceRegion) -> Template:
        try:
            template = self.engine.extract_template(image, region)
            if not isinstance(template, Template):
                template = Template(template)
        except Exception as e:
            logger.warning(f"Template extraction failed for {region}: {e}")
            raise CollaboratorFailure("extract_template", str(e)) from e
        return template

    def match(self, first: Template, second: Template) -> float:
        try:
            score = float(self.engine.match(first, second))
        except Exception as e:
            logger.warning(f"Template matching failed: {e}")
            raise CollaboratorFailure("match", str(e)) from e
        if not 0.0 <= score <= 1.0:
            raise CollaboratorFailure("match", f"similarity {score} outside [0, 1]")
        return score

    def observe(self, image: Any, frame_index: int) -> list[FaceObservation]:
        """Detect every face in the image and extract its template."""
        observations = []
        for region in self.detect(image):
            template = self.extract_template(image, region)
            observations.append(FaceObservation(frame_index, region, template))
        return observations
