"""Shared test fixtures: a scripted face engine and tracker sessions."""

import pytest

from facetrack.config import TrackerConfig
from facetrack.engine import FaceRegion, Template

TEMPLATE_SIZE = 16


def tpl(label: str) -> Template:
    """Fixed-size template carrying a readable label."""
    return Template(label.encode("utf-8").ljust(TEMPLATE_SIZE, b"\0"))


def label_of(template: Template) -> str:
    return template.data.rstrip(b"\0").decode("utf-8")


def face(label: str, x: int = 0) -> tuple[FaceRegion, str]:
    """One face in a fake image: (region, template label)."""
    return (FaceRegion(xc=x, yc=50, w=40), label)


class ScriptedEngine:
    """
    Fake face engine.

    An image is a list of (FaceRegion, label) pairs. Similarity between
    labels comes from a table; identical labels score 1.0 and unknown pairs
    score 0.0.
    """

    def __init__(self):
        self.similarities: dict[tuple[str, str], float] = {}
        self.failing: set[str] = set()
        self.match_calls = 0

    def set_similarity(self, a: str, b: str, score: float, reverse: float = None) -> None:
        self.similarities[(a, b)] = score
        self.similarities[(b, a)] = score if reverse is None else reverse

    def detect(self, image):
        if "detect" in self.failing:
            raise RuntimeError("detector exploded")
        return [region for region, _ in image]

    def extract_template(self, image, region):
        if "extract_template" in self.failing:
            raise RuntimeError("extractor exploded")
        for r, label in image:
            if r == region:
                return tpl(label)
        raise LookupError(f"No face at {region}")

    def match(self, first, second):
        if "match" in self.failing:
            raise RuntimeError("matcher exploded")
        self.match_calls += 1
        a, b = label_of(first), label_of(second)
        if a == b:
            return 1.0
        return self.similarities.get((a, b), 0.0)


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def config():
    """Thresholds used by most tests: attach >= 0.95, merge >= 0.85 after one frame."""
    return TrackerConfig(
        match_threshold=0.95,
        similar_threshold=0.5,
        merge_threshold=0.85,
        merge_window=1,
        memory_limit=0,
    )


@pytest.fixture
def session(engine, config):
    from facetrack.session import TrackerSession

    with TrackerSession(engine, config=config) as s:
        yield s
