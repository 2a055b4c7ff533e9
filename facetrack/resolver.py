"""
Merge Resolver.

Decides, for one frame of observations, which identity each face belongs
to and which identities have turned out to be the same person.

Two phases keep a frame atomic:
1. plan(): every call into the face engine happens here. Nothing is mutated,
   so an engine failure abandons the frame cleanly.
2. apply(): creates/updates identities and performs merges. No engine calls.

Merge rules:
- Conservative: a pair must stay mutually similar (both match directions at
  or above merge_threshold) for merge_window consecutive frames
- Safety: two identities ever seen in the same frame are different people
  and are never merged
- Deterministic: the older identity (lower id) always survives
"""

import logging
from dataclasses import dataclass, field
from itertools import combinations

from facetrack.config import TrackerConfig
from facetrack.engine import FaceObservation
from facetrack.similarity import Matcher, SimilarityIndex
from facetrack.store import IdentityStore

logger = logging.getLogger(__name__)


@dataclass
class Assignment:
    observation: FaceObservation
    identity_id: int | None  # None: a new identity will be created
    score: float | None = None


@dataclass(frozen=True)
class MergeCandidate:
    observation_index: int
    candidate_id: int
    forward_score: float
    reverse_score: float


@dataclass
class FramePlan:
    frame_index: int
    assignments: list[Assignment] = field(default_factory=list)
    merge_candidates: list[MergeCandidate] = field(default_factory=list)


@dataclass
class FrameResult:
    identity_ids: list[int] = field(default_factory=list)
    created: list[int] = field(default_factory=list)
    merged: list[tuple[int, int]] = field(default_factory=list)  # (source, target)


def _pair(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a <= b else (b, a)


class MergeResolver:
    def __init__(self, config: TrackerConfig):
        self.config = config
        self._streaks: dict[tuple[int, int], int] = {}
        self._co_observed: set[tuple[int, int]] = set()

    def streak(self, id_a: int, id_b: int) -> int:
        """Consecutive frames this pair has been mutually similar."""
        return self._streaks.get(_pair(id_a, id_b), 0)

    def were_co_observed(self, id_a: int, id_b: int) -> bool:
        return _pair(id_a, id_b) in self._co_observed

    def process(
        self,
        observations: list[FaceObservation],
        frame_index: int,
        store: IdentityStore,
        index: SimilarityIndex,
        matcher: Matcher,
    ) -> FrameResult:
        plan = self.plan(observations, frame_index, index, matcher)
        return self.apply(plan, store, index)

    def plan(
        self,
        observations: list[FaceObservation],
        frame_index: int,
        index: SimilarityIndex,
        matcher: Matcher,
    ) -> FramePlan:
        """
        Decide assignments and merge candidates for one frame.

        Assignment is a greedy global matching: (score, identity, observation)
        triples at or above match_threshold are taken best-first, and each
        identity receives at most one observation per frame. Unassigned
        observations become new identities.
        """
        cfg = self.config
        floor = min(cfg.match_threshold, cfg.merge_threshold)
        ranked = [index.rank(obs.template, matcher, threshold=floor) for obs in observations]

        triples = [
            (c.score, c.identity_id, i)
            for i, candidates in enumerate(ranked)
            for c in candidates
            if c.score >= cfg.match_threshold
        ]
        triples.sort(key=lambda t: (-t[0], t[1], t[2]))

        assigned: dict[int, tuple[int, float]] = {}
        claimed: set[int] = set()
        for score, identity_id, i in triples:
            if i in assigned or identity_id in claimed:
                continue
            assigned[i] = (identity_id, score)
            claimed.add(identity_id)

        plan = FramePlan(frame_index=frame_index)
        for i, obs in enumerate(observations):
            identity_id, score = assigned.get(i, (None, None))
            plan.assignments.append(Assignment(obs, identity_id, score))

        for i, candidates in enumerate(ranked):
            template = observations[i].template
            for c in candidates:
                if c.score < cfg.merge_threshold:
                    break
                # Identities observed this frame are distinct people from this face
                if c.identity_id in claimed:
                    continue
                reverse = matcher(index.template_for(c.identity_id), template)
                if reverse >= cfg.merge_threshold:
                    plan.merge_candidates.append(
                        MergeCandidate(i, c.identity_id, c.score, reverse)
                    )

        return plan

    def apply(self, plan: FramePlan, store: IdentityStore, index: SimilarityIndex) -> FrameResult:
        result = FrameResult()
        frame_ids = []

        for assignment in plan.assignments:
            template = assignment.observation.template
            if assignment.identity_id is None:
                identity_id = store.create(template, frame_index=plan.frame_index)
                index.add(identity_id, template, store.get_identity(identity_id)["created_at"])
                result.created.append(identity_id)
            else:
                identity_id = store.update_template(
                    assignment.identity_id, template, frame_index=plan.frame_index
                )
                index.update(identity_id, template)
            frame_ids.append(identity_id)

        for a, b in combinations(sorted(set(frame_ids)), 2):
            self._co_observed.add((a, b))

        reinforced = set()
        for candidate in plan.merge_candidates:
            pair = _pair(frame_ids[candidate.observation_index], candidate.candidate_id)
            if pair[0] == pair[1] or pair in self._co_observed:
                continue
            reinforced.add(pair)

        # Pairs not reinforced this frame start over
        self._streaks = {pair: self._streaks.get(pair, 0) + 1 for pair in reinforced}

        due = sorted(p for p, n in self._streaks.items() if n >= self.config.merge_window)
        for pair in due:
            merged = self._merge_pair(pair, store, index)
            if merged:
                result.merged.append(merged)

        result.identity_ids = [store.resolve(i) for i in frame_ids]
        return result

    def _merge_pair(self, pair, store: IdentityStore, index: SimilarityIndex):
        if pair not in self._streaks:
            return None
        a, b = store.resolve(pair[0]), store.resolve(pair[1])
        if a == b:
            self._streaks.pop(pair, None)
            return None
        older, newer = min(a, b), max(a, b)

        if (older, newer) in self._co_observed:
            self._streaks.pop(pair, None)
            return None

        target_id = store.merge(newer, older)

        index.remove(newer)
        index.update(target_id, store.get_template(target_id))
        self._streaks.pop(pair, None)
        self._rekey(newer, target_id)

        logger.info(f"Identity {newer} reassigned to {target_id}")
        return (newer, target_id)

    def _rekey(self, old_id: int, new_id: int) -> None:
        """Carry co-occurrence facts over to the surviving identity; drop old streaks."""
        co_observed = set()
        for a, b in self._co_observed:
            a = new_id if a == old_id else a
            b = new_id if b == old_id else b
            if a != b:
                co_observed.add(_pair(a, b))
        self._co_observed = co_observed
        self._streaks = {p: n for p, n in self._streaks.items() if old_id not in p}

    def forget(self, identity_ids) -> None:
        """Drop every fact about identities that no longer exist."""
        gone = set(identity_ids)
        self._streaks = {p: n for p, n in self._streaks.items() if not gone.intersection(p)}
        self._co_observed = {p for p in self._co_observed if not gone.intersection(p)}

    def reset(self) -> None:
        self._streaks.clear()
        self._co_observed.clear()
