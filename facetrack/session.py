"""
Tracker session: the public entry point.

A session owns one Identity Store, its Similarity Index and the Merge
Resolver state. A single re-entrant lock guards all three together, since
merge decisions must see a consistent snapshot of store and index.

Face detection and template extraction run outside the lock, so frames
from several threads can be analyzed concurrently; only the assignment
step is serialized.

Lifecycle:
    CREATED -> ACTIVE (ingesting frames) -> CLEARED -> ACTIVE ...
    FREED is terminal: every later call raises SessionClosedError.

Usage:
    with TrackerSession(engine) as session:
        for image in frames:
            for identity_id, region in session.ingest_frame(image):
                ...
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from facetrack.config import TrackerConfig
from facetrack.engine import EngineGateway, FaceEngine, FaceObservation, FaceRegion, Template
from facetrack.errors import CollaboratorFailure, SessionClosedError
from facetrack.event_recorder import NullRecorder
from facetrack.resolver import FrameResult, MergeResolver
from facetrack.similarity import SimilarityIndex
from facetrack.store import IdentityStore

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Tracker session lifecycle states."""
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    CLEARED = "CLEARED"
    FREED = "FREED"


@dataclass(frozen=True)
class PurgePolicy:
    """
    Garbage collection policy for purge_stale().

    Both limits may be combined. Locked or named lineages are never purged.

    Attributes:
        max_identities: Keep at most this many live identities, evicting the
            least recently seen first
        max_idle_frames: Purge identities not seen for more than this many frames
    """
    max_identities: int | None = None
    max_idle_frames: int | None = None

    def __post_init__(self):
        if self.max_identities is not None and self.max_identities < 0:
            raise ValueError("max_identities cannot be negative")
        if self.max_idle_frames is not None and self.max_idle_frames < 0:
            raise ValueError("max_idle_frames cannot be negative")


class TrackerSession:
    def __init__(
        self,
        engine: FaceEngine,
        config: TrackerConfig = None,
        recorder=None,
        store: IdentityStore = None,
    ):
        self._gateway = EngineGateway(engine)
        self._config = config or TrackerConfig()
        self._recorder = recorder or NullRecorder()
        self._lock = threading.RLock()

        self._store = store if store is not None else IdentityStore()
        self._index = SimilarityIndex()
        self._resolver = MergeResolver(self._config)
        self._state = SessionState.CREATED

        last_seen = [
            identity["last_seen_frame"]
            for identity in self._store.list_identities(include_merged=True)
            if identity["last_seen_frame"] is not None
        ]
        self._next_frame_index = max(last_seen) + 1 if last_seen else 0
        self._rebuild_index()

    def __enter__(self) -> "TrackerSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._state is SessionState.FREED

    def _ensure_open(self) -> None:
        if self._state is SessionState.FREED:
            raise SessionClosedError("Tracker session has been freed")

    def _rebuild_index(self) -> None:
        self._index.clear()
        for identity in self._store.list_identities():
            self._index.add(identity["identity_id"], identity["template"], identity["created_at"])

    # =========================================================================
    # Frame ingestion
    # =========================================================================

    def ingest_frame(self, image: Any) -> list[tuple[int, FaceRegion]]:
        """
        Detect faces in one frame and assign each to an identity.

        Returns:
            (identity_id, region) per detected face, in detection order.
            Ids are already resolved through any merge made in this frame.

        Raises:
            CollaboratorFailure: The face engine failed on this frame. No
                identity was created or changed; the session stays usable.
            SessionClosedError: The session has been freed
        """
        frame_index = self._allocate_frame()
        observations = self._gateway.observe(image, frame_index)
        return self._assign(observations, frame_index)

    def ingest_faces(self, faces: Iterable[tuple[FaceRegion, Template]]) -> list[tuple[int, FaceRegion]]:
        """
        Assign faces whose templates were already extracted (one frame).

        Templates may be Template objects or raw bytes. Anything else rejects
        the whole frame with CollaboratorFailure before any identity changes.
        """
        faces = [(region, _as_template(template)) for region, template in faces]
        frame_index = self._allocate_frame()
        observations = [
            FaceObservation(frame_index, region, template) for region, template in faces
        ]
        return self._assign(observations, frame_index)

    def _allocate_frame(self) -> int:
        with self._lock:
            self._ensure_open()
            frame_index = self._next_frame_index
            self._next_frame_index += 1
            return frame_index

    def _assign(self, observations: list[FaceObservation], frame_index: int) -> list[tuple[int, FaceRegion]]:
        with self._lock:
            self._ensure_open()
            self._check_template_sizes(observations)
            result: FrameResult = self._resolver.process(
                observations, frame_index, self._store, self._index, self._gateway.match
            )
            self._state = SessionState.ACTIVE

            if result.created or result.merged:
                self._recorder.record("FRAME", {
                    "frame_index": frame_index,
                    "identity_ids": result.identity_ids,
                    "created": result.created,
                    "merged": [list(m) for m in result.merged],
                    "regions": [obs.region.to_dict() for obs in observations],
                })

            limit = self._config.memory_limit
            if limit and len(self._index) > limit:
                self._purge_stale_locked(
                    PurgePolicy(max_identities=limit), keep=set(result.identity_ids)
                )

            return [
                (identity_id, obs.region)
                for identity_id, obs in zip(result.identity_ids, observations)
            ]

    def _check_template_sizes(self, observations: list[FaceObservation]) -> None:
        """Templates are fixed-size; reject the whole frame before anything changes."""
        expected = self._store.template_size
        for obs in observations:
            if expected is None:
                expected = len(obs.template)
            elif len(obs.template) != expected:
                raise CollaboratorFailure(
                    "extract_template",
                    f"template size {len(obs.template)} does not match {expected}",
                )

    # =========================================================================
    # Identity operations
    # =========================================================================

    def lock(self, identity_id: int) -> None:
        """Protect an identity from purge. Idempotent."""
        with self._lock:
            self._ensure_open()
            target_id = self._store.lock(identity_id)
            self._recorder.record("LOCK", {"identity_id": identity_id, "resolved_id": target_id})

    def unlock(self, identity_id: int) -> None:
        """Allow an unnamed identity to be purged again. Idempotent."""
        with self._lock:
            self._ensure_open()
            target_id = self._store.unlock(identity_id)
            self._recorder.record("UNLOCK", {"identity_id": identity_id, "resolved_id": target_id})

    def set_name(self, identity_id: int, name: str) -> None:
        """
        Name an identity.

        An empty name clears the name tag and the explicit lock, so the
        identity can be purged again.
        """
        with self._lock:
            self._ensure_open()
            target_id = self._store.resolve(identity_id)
            was_locked = self._store.get_identity(target_id)["locked"]
            previous_name = self._store.set_name(identity_id, name)
            self._recorder.record("RENAME", {
                "identity_id": identity_id,
                "previous_name": previous_name,
                "new_name": name or None,
            })
            if was_locked and not self._store.get_identity(target_id)["locked"]:
                self._recorder.record("UNLOCK", {
                    "identity_id": identity_id,
                    "resolved_id": target_id,
                    "reason": "name_cleared",
                })

    def get_name(self, identity_id: int) -> str | None:
        with self._lock:
            self._ensure_open()
            return self._store.get_name(identity_id)

    def get_all_names(self, identity_id: int) -> list[str]:
        """Names of the identity and of every identity merged into it."""
        with self._lock:
            self._ensure_open()
            return self._store.get_all_names(identity_id)

    def get_id_reassignment(self, identity_id: int) -> int:
        """
        Current id for an id returned by an earlier frame.

        Returns the same id if it was never merged.

        Raises:
            NotFoundError: If the id is unknown or was purged
        """
        with self._lock:
            self._ensure_open()
            return self._store.resolve(identity_id)

    def similar_identities(self, identity_id: int) -> list[tuple[int, float]]:
        """
        Identities similar to this one, with scores.

        Sorted by score descending; never includes the identity itself.
        """
        with self._lock:
            self._ensure_open()
            target_id = self._store.resolve(identity_id)
            candidates = self._index.similar_to(
                target_id, self._config.similar_threshold, self._gateway.match
            )
            return [(c.identity_id, c.score) for c in candidates]

    def get_similar_id_list(self, identity_id: int) -> list[int]:
        return [i for i, _ in self.similar_identities(identity_id)]

    def get_similar_id_count(self, identity_id: int) -> int:
        return len(self.similar_identities(identity_id))

    def get_identity(self, identity_id: int) -> dict:
        with self._lock:
            self._ensure_open()
            return self._store.get_identity(identity_id)

    def list_identities(self, include_merged: bool = False) -> list[dict]:
        with self._lock:
            self._ensure_open()
            return self._store.list_identities(include_merged=include_merged)

    # =========================================================================
    # Garbage collection
    # =========================================================================

    def purge(self, identity_id: int) -> None:
        """
        Remove one unlocked, unnamed identity that nothing redirects into.

        Raises:
            ProtectedError: If the identity is locked, named or referenced
            NotFoundError: If the identity does not exist
        """
        with self._lock:
            self._ensure_open()
            removed = self._store.purge(identity_id)
            self._forget(removed)
            self._recorder.record("PURGE", {"identity_ids": removed, "reason": "explicit"})

    def purge_stale(self, policy: PurgePolicy) -> list[int]:
        """
        Purge stale, unprotected identities (with their merged redirects).

        Returns:
            Every id removed
        """
        with self._lock:
            self._ensure_open()
            return self._purge_stale_locked(policy)

    def _purge_stale_locked(self, policy: PurgePolicy, keep: set = frozenset()) -> list[int]:
        latest_frame = self._next_frame_index - 1
        terminal_ids = self._store.terminal_ids()

        eligible = []
        for terminal_id in terminal_ids:
            if terminal_id in keep:
                continue
            members = self._store.lineage(terminal_id)
            if any(self._store.is_protected(m) for m in members):
                continue
            last_seen = max(
                (self._store.get_identity(m)["last_seen_frame"] for m in members),
                key=lambda f: -1 if f is None else f,
            )
            eligible.append((-1 if last_seen is None else last_seen, terminal_id))
        # Least recently seen first, lower id first on ties
        eligible.sort()

        chosen = []
        if policy.max_idle_frames is not None:
            chosen = [tid for seen, tid in eligible if latest_frame - seen > policy.max_idle_frames]
        if policy.max_identities is not None:
            excess = len(terminal_ids) - len(chosen) - policy.max_identities
            for _, tid in eligible:
                if excess <= 0:
                    break
                if tid not in chosen:
                    chosen.append(tid)
                    excess -= 1

        purged = []
        for terminal_id in chosen:
            removed = self._store.purge(terminal_id, cascade=True)
            self._forget(removed)
            purged.extend(removed)

        if purged:
            logger.info(f"Purged {len(purged)} stale identities")
            self._recorder.record("PURGE", {"identity_ids": purged, "reason": "stale"})
        return purged

    def _forget(self, identity_ids: list[int]) -> None:
        for identity_id in identity_ids:
            self._index.remove(identity_id)
        self._resolver.forget(identity_ids)

    def clear(self) -> None:
        """Purge every identity, protected or not. Ids are NOT reused afterwards."""
        with self._lock:
            self._ensure_open()
            removed = self._store.clear()
            self._index.clear()
            self._resolver.reset()
            self._state = SessionState.CLEARED
            self._recorder.record("CLEAR", {"removed": removed})

    def close(self) -> None:
        """
        Free the session. Idempotent.

        Waits for any in-flight frame assignment to finish first.
        """
        with self._lock:
            if self._state is SessionState.FREED:
                return
            self._state = SessionState.FREED
            self._index.clear()
            self._resolver.reset()
            self._recorder.record("CLOSE", {"identities": len(self._store)})
            logger.debug("Tracker session freed")

    # =========================================================================
    # Parameters
    # =========================================================================

    def get_parameter(self, name: str) -> str:
        with self._lock:
            self._ensure_open()
            return self._config.get_parameter(name)

    def set_parameter(self, name: str, value: str) -> None:
        self.set_parameters([(name, value)])

    def set_parameters(self, parameters) -> None:
        """
        Apply "Name=value;Name=value;" parameters, all or nothing.

        Raises:
            ParameterError: With the 1-based position of the bad parameter
        """
        with self._lock:
            self._ensure_open()
            self._config = self._config.set_parameters(parameters)
            self._resolver.config = self._config
            self._recorder.record("PARAMETERS", {
                "parameters": self._config.format_parameters(),
                "config": self._config.to_dict(),
            })

    # =========================================================================
    # Memory persistence
    # =========================================================================

    def save_memory(self, path: Path, backup_dir: Path = None) -> None:
        """Save identities and the id counter to a file."""
        with self._lock:
            self._ensure_open()
            self._store.save(path, backup_dir=backup_dir)

    def save_memory_to_buffer(self) -> bytes:
        with self._lock:
            self._ensure_open()
            return self._store.to_bytes()

    @classmethod
    def load_memory(cls, path: Path, engine: FaceEngine, config: TrackerConfig = None, recorder=None) -> "TrackerSession":
        """Create a session from memory saved with save_memory()."""
        return cls(engine, config=config, recorder=recorder, store=IdentityStore.load(path))

    @classmethod
    def load_memory_from_buffer(cls, data: bytes, engine: FaceEngine, config: TrackerConfig = None, recorder=None) -> "TrackerSession":
        return cls(engine, config=config, recorder=recorder, store=IdentityStore.from_bytes(data))


def _as_template(template) -> Template:
    if isinstance(template, Template):
        return template
    try:
        return Template(template)
    except (TypeError, ValueError) as e:
        raise CollaboratorFailure("extract_template", str(e)) from e
