"""
Identity Store.

Exclusive owner of every identity record. All mutation goes through this
class so the redirect invariants hold:

- Ids are allocated monotonically and never reused, even after clear()
- A merged identity keeps its record as a permanent redirect (merged_into)
- Redirect chains always end at a terminal (un-merged) identity
- Locked or named identities are never purged
- Every operation validates before mutating: a failure leaves the store
  exactly as it was

Changes are recorded in an append-only event history, persisted with the
records themselves.
"""

import base64
import json
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from facetrack.engine import Template
from facetrack.errors import (
    InvalidMergeError,
    NotFoundError,
    ProtectedError,
    TrackerError,
)

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1

# Ids are 64-bit unsigned integers
MAX_IDENTITY_ID = 2**64 - 1

MAX_NAME_LENGTH = 256

# Oldest events are dropped beyond this many
HISTORY_LIMIT = 10000


class ActionType(Enum):
    """Event action types."""
    CREATE = "create"
    LOCK = "lock"
    UNLOCK = "unlock"
    RENAME = "rename"
    MERGE = "merge"
    PURGE = "purge"
    CLEAR = "clear"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class IdentityStore:
    """
    Owns identity records, their redirects, and their history.

    Records are plain dicts keyed by integer id. Callers only ever receive
    copies.
    """

    def __init__(self):
        self._identities: dict[int, dict] = {}
        # target id -> ids whose merged_into points directly at it
        self._referrers: dict[int, set[int]] = {}
        self._history: list[dict] = []
        self._next_id = 1
        self._template_size: int | None = None

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, identity_id) -> bool:
        return identity_id in self._identities

    @property
    def next_id(self) -> int:
        return self._next_id

    @property
    def template_size(self) -> int | None:
        return self._template_size

    def create(self, template: Template, frame_index: int = None) -> int:
        """
        Create a new identity from its first template.

        Args:
            template: Template of the first observation
            frame_index: Frame the identity was first seen in

        Returns:
            identity_id
        """
        self._check_template(template)
        if self._next_id > MAX_IDENTITY_ID:
            raise TrackerError("Identity id space exhausted")

        identity_id = self._next_id
        now = _now()

        self._identities[identity_id] = {
            "identity_id": identity_id,
            "name": None,
            "locked": False,
            "merged_into": None,
            "template": template,
            "created_at": now,
            "updated_at": now,
            "last_seen_frame": frame_index,
            "version_id": 1,
            "merge_history": [],
        }
        self._next_id += 1
        if self._template_size is None:
            self._template_size = len(template)

        self._record_event(identity_id, ActionType.CREATE.value, previous_version_id=0)
        return identity_id

    def get_identity(self, identity_id: int) -> dict:
        """Get a copy of an identity record (no redirect following)."""
        identity = self._require(identity_id).copy()
        identity["merge_history"] = list(identity["merge_history"])
        return identity

    def get_template(self, identity_id: int) -> Template:
        """Last seen template of the terminal identity."""
        return self._identities[self.resolve(identity_id)]["template"]

    def resolve(self, identity_id: int) -> int:
        """
        Follow the merged_into chain to the terminal identity.

        A never-merged identity resolves to itself.

        Raises:
            NotFoundError: If the id is unknown or was purged
        """
        current = identity_id
        identity = self._require(identity_id)
        seen = set()
        while identity["merged_into"] is not None:
            if current in seen:
                raise InvalidMergeError(f"Redirect cycle detected at identity {current}")
            seen.add(current)
            current = identity["merged_into"]
            identity = self._identities.get(current)
            if identity is None:
                raise NotFoundError(identity_id)
        return current

    def update_template(self, identity_id: int, template: Template, frame_index: int = None) -> int:
        """Refresh the last seen template of the resolved identity."""
        self._check_template(template)
        target_id = self.resolve(identity_id)
        identity = self._identities[target_id]

        identity["template"] = template
        if frame_index is not None:
            identity["last_seen_frame"] = max(
                frame_index, _frame_or_minus_one(identity["last_seen_frame"])
            )
        identity["version_id"] += 1
        identity["updated_at"] = _now()
        return target_id

    def lock(self, identity_id: int) -> int:
        """Protect the resolved identity from purge. Idempotent."""
        return self._set_locked(identity_id, True)

    def unlock(self, identity_id: int) -> int:
        """Remove the explicit lock. Idempotent. Does not touch the name."""
        return self._set_locked(identity_id, False)

    def _set_locked(self, identity_id: int, locked: bool) -> int:
        target_id = self.resolve(identity_id)
        identity = self._identities[target_id]
        if identity["locked"] == locked:
            return target_id

        previous_version = identity["version_id"]
        identity["locked"] = locked
        identity["version_id"] += 1
        identity["updated_at"] = _now()

        action = ActionType.LOCK if locked else ActionType.UNLOCK
        self._record_event(target_id, action.value, previous_version_id=previous_version)
        return target_id

    def set_name(self, identity_id: int, name: str) -> str | None:
        """
        Name the resolved identity.

        An empty name clears the name tag of the whole lineage (the terminal
        identity and every identity redirecting into it), so a false accept
        can be undone completely. Clearing also drops the explicit lock of
        the terminal identity, leaving it unprotected. Setting a name never
        changes the lock.

        Args:
            identity_id: Identity ID (redirects are followed)
            name: New name (stripped, truncated to MAX_NAME_LENGTH); "" clears

        Returns:
            The previous name of the terminal identity
        """
        new_name = name.strip()[:MAX_NAME_LENGTH] if name else ""
        target_id = self.resolve(identity_id)
        identity = self._identities[target_id]
        previous_name = identity["name"]

        if new_name:
            members = [target_id]
        else:
            members = [m for m in self.lineage(target_id) if self._identities[m]["name"]]

        now = _now()
        for member_id in members:
            member = self._identities[member_id]
            previous_version = member["version_id"]
            old_name = member["name"]
            member["name"] = new_name or None
            member["version_id"] += 1
            member["updated_at"] = now
            self._record_event(
                member_id,
                ActionType.RENAME.value,
                previous_version_id=previous_version,
                metadata={"previous_name": old_name, "new_name": new_name or None},
            )

        if not new_name and identity["locked"]:
            previous_version = identity["version_id"]
            identity["locked"] = False
            identity["version_id"] += 1
            identity["updated_at"] = now
            self._record_event(
                target_id,
                ActionType.UNLOCK.value,
                previous_version_id=previous_version,
                metadata={"reason": "name_cleared"},
            )

        return previous_name

    def get_name(self, identity_id: int) -> str | None:
        """Name of the terminal identity, or None."""
        return self._identities[self.resolve(identity_id)]["name"]

    def get_all_names(self, identity_id: int) -> list[str]:
        """
        Every name in the lineage of the resolved identity.

        The terminal identity's own name comes first, then the names of the
        identities merged into it in id order. Duplicates are dropped.
        """
        names = []
        for member_id in self.lineage(self.resolve(identity_id)):
            name = self._identities[member_id]["name"]
            if name and name not in names:
                names.append(name)
        return names

    def lineage(self, identity_id: int) -> list[int]:
        """
        The identity plus every identity redirecting into it, transitively.

        Returns:
            [identity_id, *other members in ascending id order]
        """
        self._require(identity_id)
        members = set()
        queue = deque([identity_id])
        while queue:
            current = queue.popleft()
            for source_id in self._referrers.get(current, ()):
                if source_id not in members:
                    members.add(source_id)
                    queue.append(source_id)
        members.discard(identity_id)
        return [identity_id] + sorted(members)

    def is_protected(self, identity_id: int) -> bool:
        """Locked or named records are never purged."""
        identity = self._require(identity_id)
        return bool(identity["locked"] or identity["name"])

    def merge(self, source_id: int, target_id: int) -> int:
        """
        Merge source identity INTO target identity.

        Both ids are resolved to their terminal identities first, so chains
        never branch. The source becomes a permanent redirect to the target.

        The target:
        - inherits the source's lock (so unlock() on the lineage still works)
        - adopts the source's name if it has none; a differing source name
          stays on the redirect record and is reported by get_all_names()
        - adopts the source's template if the source was seen more recently

        Returns:
            The surviving (target) identity id

        Raises:
            NotFoundError: If either identity is unknown
            InvalidMergeError: If both resolve to the same identity (self-merge
                or a merge that would close a redirect cycle)
        """
        actual_source_id = self.resolve(source_id)
        actual_target_id = self.resolve(target_id)

        if actual_source_id == actual_target_id:
            if source_id == target_id:
                raise InvalidMergeError(f"Cannot merge identity {source_id} into itself")
            raise InvalidMergeError(
                f"Merging {source_id} into {target_id} would create a redirect cycle "
                f"(both resolve to {actual_target_id})"
            )

        source = self._identities[actual_source_id]
        target = self._identities[actual_target_id]

        now = _now()
        previous_version = target["version_id"]

        source["merged_into"] = actual_target_id
        source["updated_at"] = now
        self._referrers.setdefault(actual_target_id, set()).add(actual_source_id)

        lock_inherited = bool(source["locked"] and not target["locked"])
        if source["locked"]:
            target["locked"] = True
            source["locked"] = False

        name_adopted = bool(source["name"] and not target["name"])
        if name_adopted:
            target["name"] = source["name"]

        source_seen = _frame_or_minus_one(source["last_seen_frame"])
        target_seen = _frame_or_minus_one(target["last_seen_frame"])
        template_adopted = source_seen > target_seen
        if template_adopted:
            target["template"] = source["template"]
            target["last_seen_frame"] = source["last_seen_frame"]

        merge_history_entry = {
            "merge_event_id": str(uuid.uuid4()),
            "timestamp": now,
            "source_id": actual_source_id,
            "source_name": source["name"],
            "lock_inherited": lock_inherited,
            "name_adopted": name_adopted,
            "template_adopted": template_adopted,
        }
        target["merge_history"].append(merge_history_entry)
        target["version_id"] += 1
        target["updated_at"] = now

        self._record_event(
            actual_target_id,
            ActionType.MERGE.value,
            previous_version_id=previous_version,
            metadata={
                "source_identity_id": actual_source_id,
                "merge_event_id": merge_history_entry["merge_event_id"],
            },
        )

        logger.info(f"Merged identity {actual_source_id} into {actual_target_id}")
        return actual_target_id

    def purge(self, identity_id: int, cascade: bool = False) -> list[int]:
        """
        Remove an unlocked, unnamed, unreferenced identity.

        Args:
            identity_id: Identity to remove (redirects are NOT followed)
            cascade: Also remove every identity redirecting into it. The
                whole lineage must be unprotected.

        Returns:
            Ids removed, in lineage order

        Raises:
            NotFoundError: If the identity is unknown
            ProtectedError: If any member is locked or named, or (without
                cascade) other identities still redirect into it
        """
        self._require(identity_id)

        referrers = self._referrers.get(identity_id)
        if referrers and not cascade:
            raise ProtectedError(
                f"Identity {identity_id} is referenced by merged identities {sorted(referrers)}"
            )

        members = self.lineage(identity_id) if cascade else [identity_id]
        for member_id in members:
            if self.is_protected(member_id):
                identity = self._identities[member_id]
                reason = "locked" if identity["locked"] else "named"
                raise ProtectedError(f"Identity {member_id} is {reason}")

        for member_id in members:
            identity = self._identities.pop(member_id)
            self._referrers.pop(member_id, None)
            merged_into = identity["merged_into"]
            if merged_into is not None and merged_into in self._referrers:
                self._referrers[merged_into].discard(member_id)
                if not self._referrers[merged_into]:
                    del self._referrers[merged_into]
            self._record_event(
                member_id,
                ActionType.PURGE.value,
                previous_version_id=identity["version_id"],
            )

        logger.debug(f"Purged identities {members}")
        return members

    def clear(self) -> int:
        """
        Remove every identity. The id counter is NOT reset.

        Returns:
            Number of records removed
        """
        removed = len(self._identities)
        self._identities.clear()
        self._referrers.clear()
        self._record_event(
            None,
            ActionType.CLEAR.value,
            previous_version_id=0,
            metadata={"removed": removed},
        )
        return removed

    def list_identities(self, include_merged: bool = False) -> list[dict]:
        """
        List identities in id order.

        Args:
            include_merged: If False (default), exclude redirect records

        Returns:
            List of identity dicts (copies, not references)
        """
        return [
            self.get_identity(identity_id)
            for identity_id in sorted(self._identities)
            if include_merged or self._identities[identity_id]["merged_into"] is None
        ]

    def terminal_ids(self) -> list[int]:
        return sorted(
            identity_id
            for identity_id, identity in self._identities.items()
            if identity["merged_into"] is None
        )

    def get_history(self, identity_id: int) -> list[dict]:
        """Get event history for an identity."""
        return [e for e in self._history if e["identity_id"] == identity_id]

    def _require(self, identity_id) -> dict:
        identity = self._identities.get(identity_id)
        if identity is None:
            raise NotFoundError(identity_id)
        return identity

    def _check_template(self, template: Template) -> None:
        if not isinstance(template, Template):
            raise TypeError(f"Expected Template, got {type(template).__name__}")
        if self._template_size is not None and len(template) != self._template_size:
            raise ValueError(
                f"Template size mismatch: expected {self._template_size} bytes, "
                f"got {len(template)}"
            )

    def _record_event(
        self,
        identity_id: int | None,
        action: str,
        previous_version_id: int,
        metadata: dict = None,
    ) -> None:
        """Record an event in the append-only history."""
        event = {
            "event_id": str(uuid.uuid4()),
            "timestamp": _now(),
            "identity_id": identity_id,
            "action": action,
            "previous_version_id": previous_version_id,
            "metadata": metadata or {},
        }
        self._history.append(event)
        if len(self._history) > HISTORY_LIMIT:
            del self._history[: len(self._history) - HISTORY_LIMIT]

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict:
        """Serialize to a JSON-safe dict (templates base64 encoded)."""
        identities = {}
        for identity_id, identity in self._identities.items():
            record = dict(identity)
            record["template"] = base64.b64encode(identity["template"].data).decode("ascii")
            identities[str(identity_id)] = record

        return {
            "schema_version": SCHEMA_VERSION,
            "next_id": self._next_id,
            "template_size": self._template_size,
            "identities": identities,
            "history": self._history,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IdentityStore":
        """
        Rebuild a store from to_dict() output.

        Raises:
            ValueError: On schema mismatch or broken redirects
        """
        if data.get("schema_version") != SCHEMA_VERSION:
            raise ValueError(
                f"Schema version mismatch: expected {SCHEMA_VERSION}, "
                f"got {data.get('schema_version')}"
            )

        store = cls()
        store._next_id = int(data["next_id"])
        store._template_size = data.get("template_size")
        store._history = list(data.get("history", []))

        for key, record in data["identities"].items():
            identity = dict(record)
            identity_id = int(key)
            if identity_id >= store._next_id:
                raise ValueError(f"Identity {identity_id} is not below next_id {store._next_id}")
            identity["identity_id"] = identity_id
            identity["template"] = Template(base64.b64decode(record["template"]))
            identity["merge_history"] = list(record.get("merge_history", []))
            store._identities[identity_id] = identity

        for identity_id, identity in store._identities.items():
            merged_into = identity["merged_into"]
            if merged_into is None:
                continue
            if merged_into not in store._identities:
                raise ValueError(f"Identity {identity_id} redirects to missing {merged_into}")
            store._referrers.setdefault(merged_into, set()).add(identity_id)

        for identity_id in store._identities:
            try:
                store.resolve(identity_id)
            except InvalidMergeError as e:
                raise ValueError(str(e)) from e

        return store

    def to_bytes(self) -> bytes:
        """Serialize the whole store into a memory buffer."""
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "IdentityStore":
        return cls.from_dict(json.loads(data.decode("utf-8")))

    def save(self, path: Path, backup_dir: Path = None) -> None:
        """
        Save store to JSON file with atomic write and file locking.

        Guarantees:
        - Atomic: writes to temp file, fsyncs, then renames
        - Locked: exclusive lock prevents concurrent writes
        - Backed up: creates timestamped backup before overwrite

        Args:
            path: Target file path
            backup_dir: Optional directory for backups (default: path.parent/backups)
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists():
            self._create_backup(path, backup_dir)

        self._atomic_write(path, self.to_dict())

    def _create_backup(self, path: Path, backup_dir: Path = None) -> None:
        """Create timestamped backup of existing file."""
        import shutil

        if backup_dir is None:
            backup_dir = path.parent / "backups"

        backup_dir = Path(backup_dir)
        backup_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        backup_path = backup_dir / f"{path.name}.{timestamp}"

        shutil.copy2(path, backup_path)

    def _atomic_write(self, path: Path, data: dict) -> None:
        """
        Atomically write data to file.

        Steps:
        1. Acquire exclusive lock on lock file
        2. Write to temp file
        3. fsync to ensure data is on disk
        4. Atomic replace of target path
        """
        import os

        import portalocker

        lock_path = path.with_suffix(".lock")
        temp_path = path.with_suffix(".tmp")

        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            portalocker.lock(lock_file, portalocker.LOCK_EX)

            try:
                with open(temp_path, "w") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())

                os.replace(temp_path, path)

            except Exception:
                temp_path.unlink(missing_ok=True)
                raise

            finally:
                portalocker.unlock(lock_file)

    @classmethod
    def load(cls, path: Path) -> "IdentityStore":
        """Load store from JSON file."""
        path = Path(path)

        with open(path) as f:
            data = json.load(f)

        return cls.from_dict(data)


def _frame_or_minus_one(frame_index) -> int:
    return -1 if frame_index is None else frame_index
