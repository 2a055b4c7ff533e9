"""
Similarity Index (exhaustive, instance-level).

Holds the last seen template of every terminal identity and ranks them
against a query template. Scores come from the face engine's matcher;
this module only enumerates candidates and orders them.

Ordering is deterministic:
1. Higher score first
2. Lower identity id first
3. Earlier creation first
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

import numpy as np

from facetrack.engine import Template

Matcher = Callable[[Template, Template], float]


@dataclass(frozen=True)
class Candidate:
    identity_id: int
    score: float


@dataclass
class SimilarityResult:
    """best: top candidate at/above the high threshold; similar: ranked list at/above the low one."""
    best: Candidate | None = None
    similar: list[Candidate] = field(default_factory=list)


class SimilarityIndex:
    def __init__(self):
        self._templates: dict[int, Template] = {}
        self._created: dict[int, float] = {}

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, identity_id) -> bool:
        return identity_id in self._templates

    def add(self, identity_id: int, template: Template, created_at=None) -> None:
        self._templates[identity_id] = template
        self._created[identity_id] = _timestamp(created_at)

    def update(self, identity_id: int, template: Template) -> None:
        if identity_id not in self._templates:
            raise KeyError(f"Identity not indexed: {identity_id}")
        self._templates[identity_id] = template

    def remove(self, identity_id: int) -> None:
        self._templates.pop(identity_id, None)
        self._created.pop(identity_id, None)

    def clear(self) -> None:
        self._templates.clear()
        self._created.clear()

    def template_for(self, identity_id: int) -> Template:
        return self._templates[identity_id]

    def rank(
        self,
        template: Template,
        matcher: Matcher,
        threshold: float = 0.0,
        exclude: Iterable[int] = (),
    ) -> list[Candidate]:
        """
        Score every indexed identity against the template.

        Args:
            template: Query template
            matcher: match(query, candidate) -> similarity in [0, 1]
            threshold: Keep candidates scoring at or above this
            exclude: Identity ids to skip

        Returns:
            Candidates sorted by score descending (ties: lower id, then older)
        """
        excluded = set(exclude)
        ids = [i for i in self._templates if i not in excluded]
        if not ids:
            return []

        scores = np.array([matcher(template, self._templates[i]) for i in ids], dtype=np.float64)
        id_array = np.array(ids, dtype=np.uint64)
        created = np.array([self._created[i] for i in ids], dtype=np.float64)

        # lexsort: last key is primary
        order = np.lexsort((created, id_array, -scores))
        return [
            Candidate(int(id_array[k]), float(scores[k]))
            for k in order
            if scores[k] >= threshold
        ]

    def query(
        self,
        template: Template,
        high_threshold: float,
        low_threshold: float,
        matcher: Matcher,
        exclude: Iterable[int] = (),
    ) -> SimilarityResult:
        """
        Best match and ranked similar list for a template.

        best is the top-ranked candidate if it scores at or above
        high_threshold; similar holds every candidate at or above
        low_threshold.
        """
        ranked = self.rank(template, matcher, threshold=0.0, exclude=exclude)
        best = ranked[0] if ranked and ranked[0].score >= high_threshold else None
        return SimilarityResult(
            best=best,
            similar=[c for c in ranked if c.score >= low_threshold],
        )

    def similar_to(
        self,
        identity_id: int,
        threshold: float,
        matcher: Matcher,
        exclude: Iterable[int] = (),
    ) -> list[Candidate]:
        """Rank other identities against this identity's template. Never includes itself."""
        template = self._templates[identity_id]
        return self.rank(template, matcher, threshold=threshold, exclude={identity_id, *exclude})


def _timestamp(created_at) -> float:
    if created_at is None:
        return 0.0
    if isinstance(created_at, str):
        return datetime.fromisoformat(created_at).timestamp()
    if isinstance(created_at, datetime):
        return created_at.timestamp()
    return float(created_at)
