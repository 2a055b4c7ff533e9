#!/usr/bin/env python3
"""
CLI for inspecting and editing saved tracker memory.

Works directly on a memory file written by TrackerSession.save_memory();
no face engine is needed.

Usage:
    python scripts/manage_tracker_memory.py list [--all]
    python scripts/manage_tracker_memory.py show <identity_id>
    python scripts/manage_tracker_memory.py resolve <identity_id>
    python scripts/manage_tracker_memory.py names <identity_id>
    python scripts/manage_tracker_memory.py name <identity_id> "John Doe"
    python scripts/manage_tracker_memory.py name <identity_id> ""
    python scripts/manage_tracker_memory.py lock <identity_id>
    python scripts/manage_tracker_memory.py unlock <identity_id>
    python scripts/manage_tracker_memory.py merge <source_id> <target_id>
    python scripts/manage_tracker_memory.py purge <identity_id> [--cascade]
    python scripts/manage_tracker_memory.py history <identity_id>
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from facetrack.config import DATA_DIR
from facetrack.errors import TrackerError
from facetrack.store import IdentityStore

# Default memory path
DEFAULT_MEMORY_PATH = Path(DATA_DIR) / "tracker_memory.json"


def load_store(path: Path) -> IdentityStore:
    """Load memory from file or create an empty store."""
    if path.exists():
        return IdentityStore.load(path)
    return IdentityStore()


def save_store(store: IdentityStore, path: Path) -> None:
    store.save(path)


def _fail(message: str) -> None:
    print(f"Error: {message}")
    sys.exit(1)


def cmd_list(args):
    """List identities."""
    store = load_store(args.memory)
    identities = store.list_identities(include_merged=args.all)

    if not identities:
        print("No identities found.")
        return

    print(f"\n{'ID':<10} {'Name':<24} {'Locked':<7} {'Last seen':<10} {'Merged into':<12}")
    print("-" * 67)

    for identity in identities:
        name = identity.get("name") or "(unnamed)"
        last_seen = identity["last_seen_frame"]
        merged_into = identity["merged_into"]
        print(
            f"{identity['identity_id']:<10} "
            f"{name[:24]:<24} "
            f"{'yes' if identity['locked'] else 'no':<7} "
            f"{'-' if last_seen is None else last_seen:<10} "
            f"{'-' if merged_into is None else merged_into:<12}"
        )

    print(f"\nTotal: {len(identities)} identities")


def cmd_show(args):
    """Show identity details."""
    store = load_store(args.memory)

    try:
        identity = store.get_identity(args.identity_id)
    except KeyError:
        _fail(f"Identity not found: {args.identity_id}")

    print(f"\n{'=' * 60}")
    print(f"Identity: {identity['identity_id']}")
    print(f"{'=' * 60}")
    print(f"Name:        {identity.get('name') or '(unnamed)'}")
    print(f"Locked:      {identity['locked']}")
    print(f"Merged into: {identity['merged_into'] or '-'}")
    print(f"Version:     {identity['version_id']}")
    print(f"Created:     {identity['created_at']}")
    print(f"Updated:     {identity['updated_at']}")
    print(f"Last seen:   frame {identity['last_seen_frame']}")
    print(f"Template:    {len(identity['template'])} bytes")
    print()
    print(f"Merges ({len(identity['merge_history'])}):")
    for entry in identity["merge_history"]:
        print(f"  - {entry['source_id']} at {entry['timestamp']}")


def cmd_resolve(args):
    """Print the current id for an id."""
    store = load_store(args.memory)
    try:
        print(store.resolve(args.identity_id))
    except TrackerError as e:
        _fail(str(e))


def cmd_names(args):
    """Print every name in an identity's lineage."""
    store = load_store(args.memory)
    try:
        names = store.get_all_names(args.identity_id)
    except TrackerError as e:
        _fail(str(e))
    for name in names:
        print(name)


def cmd_name(args):
    """Set or clear an identity's name."""
    store = load_store(args.memory)
    try:
        store.set_name(args.identity_id, args.name)
    except TrackerError as e:
        _fail(str(e))

    save_store(store, args.memory)
    if args.name:
        print(f"Named identity {args.identity_id}: {args.name}")
    else:
        print(f"Cleared name of identity {args.identity_id}")


def cmd_lock(args):
    """Lock an identity."""
    store = load_store(args.memory)
    try:
        target_id = store.lock(args.identity_id)
    except TrackerError as e:
        _fail(str(e))

    save_store(store, args.memory)
    print(f"Locked identity {target_id}")


def cmd_unlock(args):
    """Unlock an identity."""
    store = load_store(args.memory)
    try:
        target_id = store.unlock(args.identity_id)
    except TrackerError as e:
        _fail(str(e))

    save_store(store, args.memory)
    print(f"Unlocked identity {target_id}")


def cmd_merge(args):
    """Merge one identity into another."""
    store = load_store(args.memory)
    try:
        target_id = store.merge(args.source_id, args.target_id)
    except TrackerError as e:
        _fail(str(e))

    save_store(store, args.memory)
    print(f"Merged identity {args.source_id} into {target_id}")


def cmd_purge(args):
    """Purge an identity."""
    store = load_store(args.memory)
    try:
        removed = store.purge(args.identity_id, cascade=args.cascade)
    except TrackerError as e:
        _fail(str(e))

    save_store(store, args.memory)
    print(f"Purged identities: {', '.join(str(i) for i in removed)}")


def cmd_history(args):
    """Show event history for an identity."""
    store = load_store(args.memory)
    history = store.get_history(args.identity_id)

    if not history:
        print("No history found.")
        return

    print(f"\nHistory for {args.identity_id}")
    print("=" * 80)

    for event in history:
        print(f"\n[{event['timestamp']}] {event['action'].upper()}")
        print(f"  Event ID: {event['event_id']}")
        if event['metadata']:
            print(f"  Metadata: {event['metadata']}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Inspect and edit saved tracker memory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--memory",
        type=Path,
        default=DEFAULT_MEMORY_PATH,
        help=f"Path to memory file (default: {DEFAULT_MEMORY_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List identities")
    list_parser.add_argument("--all", action="store_true", help="Include merged identities")
    list_parser.set_defaults(func=cmd_list)

    for command, func, help_text in [
        ("show", cmd_show, "Show identity details"),
        ("resolve", cmd_resolve, "Print the current id for an id"),
        ("names", cmd_names, "Print all names in an identity's lineage"),
        ("lock", cmd_lock, "Lock identity"),
        ("unlock", cmd_unlock, "Unlock identity"),
        ("history", cmd_history, "Show event history"),
    ]:
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument("identity_id", type=int, help="Identity ID")
        sub.set_defaults(func=func)

    name_parser = subparsers.add_parser("name", help="Set identity name (\"\" clears)")
    name_parser.add_argument("identity_id", type=int, help="Identity ID")
    name_parser.add_argument("name", help="New name")
    name_parser.set_defaults(func=cmd_name)

    merge_parser = subparsers.add_parser("merge", help="Merge source identity into target")
    merge_parser.add_argument("source_id", type=int, help="Identity to absorb")
    merge_parser.add_argument("target_id", type=int, help="Identity that survives")
    merge_parser.set_defaults(func=cmd_merge)

    purge_parser = subparsers.add_parser("purge", help="Purge identity")
    purge_parser.add_argument("identity_id", type=int, help="Identity ID")
    purge_parser.add_argument(
        "--cascade",
        action="store_true",
        help="Also purge identities merged into it",
    )
    purge_parser.set_defaults(func=cmd_purge)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
