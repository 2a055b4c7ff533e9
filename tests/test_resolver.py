"""
Tests for the Merge Resolver.

Frames are fed straight into the resolver with a scripted engine, so each
test controls exactly which identities look alike.
"""

import pytest

from facetrack.engine import EngineGateway, FaceObservation, FaceRegion
from tests.conftest import tpl


class Harness:
    """Store, index and resolver wired together like a session does."""

    def __init__(self, engine, config):
        from facetrack.resolver import MergeResolver
        from facetrack.similarity import SimilarityIndex
        from facetrack.store import IdentityStore

        self.store = IdentityStore()
        self.index = SimilarityIndex()
        self.resolver = MergeResolver(config)
        self.gateway = EngineGateway(engine)
        self.frame_index = 0

    def frame(self, *labels):
        observations = [
            FaceObservation(self.frame_index, FaceRegion(xc=i * 100, yc=50, w=40), tpl(label))
            for i, label in enumerate(labels)
        ]
        result = self.resolver.process(
            observations, self.frame_index, self.store, self.index, self.gateway.match
        )
        self.frame_index += 1
        return result


@pytest.fixture
def harness(engine, config):
    return Harness(engine, config)


class TestAssignment:
    """Tests for attaching observations to identities."""

    def test_unmatched_face_creates_identity(self, harness):
        result = harness.frame("a")

        assert result.identity_ids == [1]
        assert result.created == [1]

    def test_same_face_reuses_identity(self, harness):
        harness.frame("a")
        result = harness.frame("a")

        assert result.identity_ids == [1]
        assert result.created == []
        assert harness.store.get_identity(1)["last_seen_frame"] == 1

    def test_below_match_threshold_creates_new_identity(self, harness, engine):
        engine.set_similarity("a", "b", 0.5)
        harness.frame("a")

        result = harness.frame("b")

        assert result.identity_ids == [2]

    def test_match_threshold_is_inclusive(self, harness, engine):
        engine.set_similarity("a", "a'", 0.95)
        harness.frame("a")

        result = harness.frame("a'")

        assert result.identity_ids == [1]
        assert harness.index.template_for(1) == tpl("a'")

    def test_identity_gets_one_face_per_frame(self, harness, engine):
        """Two faces that both match one identity: the better one takes it."""
        engine.set_similarity("a", "x", 0.99)
        engine.set_similarity("a", "y", 0.97)
        harness.frame("a")

        result = harness.frame("y", "x")

        assert result.identity_ids == [2, 1]

    def test_greedy_assignment_is_global(self, harness, engine):
        """A face that loses its best match still takes its next best one."""
        engine.set_similarity("a", "x", 0.99)
        engine.set_similarity("b", "x", 0.97)
        engine.set_similarity("a", "y", 0.98)
        engine.set_similarity("b", "y", 0.96)
        harness.frame("a")
        harness.frame("b")

        result = harness.frame("x", "y")

        assert result.identity_ids == [1, 2]
        assert harness.resolver.were_co_observed(1, 2)

    def test_faces_in_one_frame_are_co_observed(self, harness):
        result = harness.frame("a", "b", "c")

        assert result.identity_ids == [1, 2, 3]
        assert harness.resolver.were_co_observed(1, 3)
        assert harness.resolver.were_co_observed(3, 2)


class TestMerging:
    """Tests for merge decisions."""

    def test_mutually_similar_identities_merge(self, harness, engine):
        """0.92 both ways clears the 0.85 merge threshold."""
        engine.set_similarity("a", "b", 0.92)
        harness.frame("a")

        result = harness.frame("b")

        assert result.created == [2]
        assert result.merged == [(2, 1)]
        assert result.identity_ids == [1]
        assert harness.store.resolve(2) == 1
        assert 2 not in harness.index

    def test_older_identity_survives(self, harness, engine):
        engine.set_similarity("a", "b", 0.9)
        harness.frame("a")
        harness.frame("b")

        assert harness.store.terminal_ids() == [1]
        assert harness.store.get_identity(2)["merged_into"] == 1

    def test_one_way_similarity_does_not_merge(self, harness, engine):
        engine.set_similarity("a", "b", 0.9, reverse=0.6)
        harness.frame("a")

        result = harness.frame("b")

        assert result.merged == []
        assert harness.store.terminal_ids() == [1, 2]

    def test_co_observed_identities_never_merge(self, harness, engine):
        """Two faces in the same frame are two different people."""
        engine.set_similarity("a", "b", 0.9)
        harness.frame("a", "b")

        for _ in range(5):
            result = harness.frame("b")
            assert result.merged == []

        assert harness.store.terminal_ids() == [1, 2]

    def test_merge_waits_for_window(self, engine, config):
        harness = Harness(engine, config.with_values(merge_window=3))
        engine.set_similarity("a", "b", 0.9)
        harness.frame("a")

        harness.frame("b")
        assert harness.resolver.streak(1, 2) == 1
        harness.frame("b")
        assert harness.resolver.streak(2, 1) == 2
        result = harness.frame("b")

        assert result.merged == [(2, 1)]
        assert result.identity_ids == [1]
        assert harness.resolver.streak(1, 2) == 0

    def test_streak_resets_when_not_reinforced(self, engine, config):
        harness = Harness(engine, config.with_values(merge_window=2))
        engine.set_similarity("a", "b", 0.9)
        harness.frame("a")
        harness.frame("b")

        harness.frame("c")
        assert harness.resolver.streak(1, 2) == 0

        harness.frame("b")
        assert harness.resolver.streak(1, 2) == 1
        assert harness.store.terminal_ids() == [1, 2, 3]

    def test_merged_lineage_keeps_co_observation(self, harness, engine):
        """After 2 -> 1, anything seen with 2 counts as seen with 1."""
        engine.set_similarity("a", "b", 0.9)
        engine.set_similarity("b", "c", 0.9)
        harness.frame("a")

        result = harness.frame("b", "c")
        assert result.merged == [(2, 1)]
        assert result.identity_ids == [1, 3]
        assert harness.resolver.were_co_observed(1, 3)

        # 1 now carries b's template, which looks like c, but they were seen together
        result = harness.frame("c")
        assert result.merged == []
        assert harness.store.terminal_ids() == [1, 3]

    def test_merge_keeps_names_of_both(self, harness, engine):
        engine.set_similarity("a", "b", 0.92)
        harness.frame("a")
        harness.store.set_name(1, "Alice")
        harness.resolver.config = harness.resolver.config.with_values(merge_window=2)
        harness.frame("b")
        harness.store.set_name(2, "Alicia")

        harness.frame("b")

        assert harness.store.resolve(2) == 1
        assert harness.store.get_all_names(1) == ["Alice", "Alicia"]


class TestFrameAtomicity:
    """Tests that a failing engine leaves state untouched."""

    def test_match_failure_changes_nothing(self, harness, engine):
        from facetrack.errors import CollaboratorFailure

        harness.frame("a")
        before = harness.store.to_dict()

        engine.failing.add("match")
        with pytest.raises(CollaboratorFailure) as exc_info:
            harness.frame("b")

        assert exc_info.value.operation == "match"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert harness.store.to_dict() == before
        assert len(harness.index) == 1

    def test_out_of_range_score_is_a_collaborator_failure(self, harness, engine):
        from facetrack.errors import CollaboratorFailure

        engine.set_similarity("a", "b", 1.5)
        harness.frame("a")

        with pytest.raises(CollaboratorFailure, match="outside"):
            harness.frame("b")
        assert harness.store.terminal_ids() == [1]


class TestForget:
    """Tests for dropping state about purged identities."""

    def test_forget_drops_streaks_and_co_observation(self, engine, config):
        harness = Harness(engine, config.with_values(merge_window=5))
        engine.set_similarity("a", "b", 0.9)
        harness.frame("a", "c")
        harness.frame("b")
        assert harness.resolver.streak(1, 3) == 1

        harness.resolver.forget([1])

        assert harness.resolver.streak(1, 3) == 0
        assert not harness.resolver.were_co_observed(1, 2)

    def test_reset_clears_everything(self, harness):
        harness.frame("a", "b")
        harness.resolver.reset()
        assert not harness.resolver.were_co_observed(1, 2)
