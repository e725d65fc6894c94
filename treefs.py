"""Reconcile ZooKeeper tree change events into a local directory mirror.

A container node (one with children) becomes a directory; a leaf node becomes
a regular file holding the node data. A container's own data is stored in a
reserved child entry named ``PAYLOAD_NAME`` inside its directory, so that name
must not be used by any mirrored node.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

PAYLOAD_NAME = "zookeeper"

# ZooKeeper rejects these code points in node names.
_INVALID_PATH_CHARS = re.compile(
    "[{}-{}{}-{}{}-{}{}-{}]".format(*map(chr, (0x00, 0x1F, 0x7F, 0x9F, 0xD800, 0xF8FF, 0xFFF0, 0xFFFF)))
)


class TreeFSError(Exception):
    """Base class for mirror errors."""


class InvalidPathError(TreeFSError, ValueError):
    """Remote path is malformed or outside the mirrored subtree."""


class ReservedNameError(InvalidPathError):
    """Remote path uses the payload entry name as a node name."""


class RepairError(TreeFSError):
    """An ancestor directory could not be materialized."""


class ProtocolError(TreeFSError):
    """The change stream broke its ordering contract."""


class StartupError(TreeFSError):
    """The output directory is not usable."""


class WatcherError(TreeFSError):
    """The remote tree watcher could not be started."""


class EventType(enum.Enum):
    NODE_ADDED = "NODE_ADDED"
    NODE_UPDATED = "NODE_UPDATED"
    NODE_REMOVED = "NODE_REMOVED"
    INITIALIZED = "INITIALIZED"


@dataclass(frozen=True, slots=True)
class RemoteNode:
    """Snapshot of one remote node as observed with its change event."""

    path: str
    data: bytes | None = None
    child_count: int = 0
    modified_at: int = 0  # milliseconds since the epoch

    @property
    def is_container(self) -> bool:
        return self.child_count > 0

    @property
    def has_data(self) -> bool:
        return bool(self.data)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    type: EventType
    node: RemoteNode | None = None

    @property
    def path(self) -> str | None:
        return self.node.path if self.node is not None else None

    def __str__(self) -> str:
        if self.node is None:
            return self.type.value
        return f"{self.type.value} {self.node.path}"


def validate_path(path: str) -> str:
    """Check a ZooKeeper path and return it unchanged."""
    if not path:
        raise InvalidPathError("path must not be empty")
    if not path.startswith("/"):
        raise InvalidPathError(f"path must start with '/': {path!r}")
    if path == "/":
        return path
    if path.endswith("/"):
        raise InvalidPathError(f"path must not end with '/': {path!r}")
    for segment in path[1:].split("/"):
        if segment in ("", ".", ".."):
            raise InvalidPathError(f"invalid path segment {segment!r} in {path!r}")
    match = _INVALID_PATH_CHARS.search(path)
    if match:
        raise InvalidPathError(f"invalid character {match.group()!r} in {path!r}")
    return path


def to_local_path(
    remote_path: str,
    root: Path,
    base: str = "/",
    payload_name: str = PAYLOAD_NAME,
) -> Path:
    """Map a remote node path to its location under the mirror root.

    ``base`` is the remote path of the mirrored subtree; it maps to ``root``
    itself and its descendants map to the matching relative path below it.
    """
    if not remote_path.startswith("/"):
        raise InvalidPathError(f"remote path must start with '/': {remote_path!r}")
    if remote_path == base:
        return root

    prefix = base.rstrip("/") + "/"
    if not remote_path.startswith(prefix):
        raise InvalidPathError(f"{remote_path!r} is outside the mirrored subtree {base!r}")

    parts = remote_path[len(prefix) :].split("/")
    if any(part in ("", ".", "..") for part in parts):
        raise InvalidPathError(f"malformed remote path: {remote_path!r}")
    if payload_name in parts:
        raise ReservedNameError(f"{remote_path!r} uses the reserved payload name {payload_name!r}")
    return root.joinpath(*parts)


def payload_path(local_path: Path, payload_name: str = PAYLOAD_NAME) -> Path:
    """Return the slot holding a container node's own data."""
    return local_path / payload_name


def _relocate_into_payload(path: Path, payload_name: str) -> None:
    """Turn a non-empty regular file into a directory holding it as payload."""
    staging = Path(tempfile.mkdtemp(prefix=".treefs-", dir=path.parent))
    moved = staging / path.name
    try:
        path.rename(moved)
        path.mkdir()
        moved.rename(payload_path(path, payload_name))
    except OSError:
        if moved.exists():
            if path.is_dir():
                path.rmdir()
            moved.rename(path)
        raise
    finally:
        if moved.exists():
            logging.error("Left relocated payload for %s at %s", path, moved)
        else:
            staging.rmdir()


def ensure_directory_chain(target_parent: Path, root: Path, payload_name: str = PAYLOAD_NAME) -> None:
    """Make every ancestor from ``root`` down to ``target_parent`` a directory.

    ``root`` is created at startup and is assumed to be a directory. Regular
    files in the way are converted: empty ones are deleted, non-empty ones are
    kept as the new directory's payload entry.
    """
    if target_parent == root:
        return
    try:
        relative = target_parent.relative_to(root)
    except ValueError as exc:
        raise RepairError(f"{target_parent} is not inside the mirror root {root}") from exc

    current = root
    for part in relative.parts:
        current = current / part
        try:
            if current.is_dir():
                continue
            if os.path.lexists(current):
                if current.stat().st_size == 0:
                    current.unlink()
                else:
                    logging.info("Converting %s to a directory, keeping its data as payload", current)
                    _relocate_into_payload(current, payload_name)
                    continue
            current.mkdir()
        except OSError as exc:
            raise RepairError(f"cannot make {current} a directory: {exc}") from exc

    if not target_parent.is_dir():
        raise RepairError(f"{target_parent} is still not a directory")


def _write_payload(target: Path, data: bytes | None, modified_at: int) -> None:
    target.write_bytes(data or b"")
    mtime_ns = modified_at * 1_000_000
    os.utime(target, ns=(mtime_ns, mtime_ns))


def _remove_directory(path: Path) -> None:
    if any(path.iterdir()):
        logging.info("Removing stale entries under %s", path)
        shutil.rmtree(path)
    else:
        path.rmdir()


class NodeReconciler:
    """Apply change events to the local mirror, one event at a time.

    Callers must not invoke ``apply`` concurrently; the reconciler is the
    only writer of the tree under ``root``.
    """

    def __init__(self, root: Path, base: str = "/", payload_name: str = PAYLOAD_NAME) -> None:
        self.root = Path(root)
        self.base = base
        self.payload_name = payload_name

    def apply(self, event: ChangeEvent) -> None:
        """Reconcile one event.

        Local I/O failures are logged and the rest of the event is dropped; a
        later event for the same path retries. ``ProtocolError`` propagates.
        """
        logging.info("%s", event)
        if event.type is EventType.INITIALIZED:
            return
        node = event.node
        if node is None:
            raise ProtocolError(f"{event.type.value} event without node data")

        try:
            path = to_local_path(node.path, self.root, self.base, self.payload_name)
        except InvalidPathError as exc:
            logging.info("Skipping %s: %s", event, exc)
            return

        is_root = path == self.root
        try:
            if event.type is EventType.NODE_ADDED:
                self._check_added(node, path, is_root)
            elif event.type is EventType.NODE_UPDATED:
                self._convert_kind(node, path, is_root)
            elif event.type is EventType.NODE_REMOVED:
                self._remove(path, is_root)
                return
            self._materialize(node, path, is_root)
        except RepairError as exc:
            logging.error("Failed to repair parents for %s: %s", event, exc)
        except OSError as exc:
            logging.error("Failed to apply %s: %s", event, exc)

    def _check_added(self, node: RemoteNode, path: Path, is_root: bool) -> None:
        if is_root or not os.path.lexists(path):
            return
        # Already materialized by repair for an earlier child, or a replay.
        if node.is_container and path.is_dir():
            return
        if not node.is_container and path.is_file():
            return
        kind = "container" if node.is_container else "leaf"
        raise ProtocolError(f"{EventType.NODE_ADDED.value} for {kind} {node.path} but {path} already exists")

    def _convert_kind(self, node: RemoteNode, path: Path, is_root: bool) -> None:
        if is_root:
            return
        if path.is_dir() and not node.is_container:
            payload_path(path, self.payload_name).unlink(missing_ok=True)
            _remove_directory(path)
        elif path.is_file() and node.is_container:
            path.unlink()

    def _remove(self, path: Path, is_root: bool) -> None:
        if path.is_dir():
            payload_path(path, self.payload_name).unlink(missing_ok=True)
            if not is_root:
                _remove_directory(path)
        elif os.path.lexists(path):
            path.unlink()
        else:
            logging.debug("%s already absent", path)

    def _materialize(self, node: RemoteNode, path: Path, is_root: bool) -> None:
        if not is_root:
            ensure_directory_chain(path.parent, self.root, self.payload_name)

        if not (node.is_container or is_root):
            _write_payload(path, node.data, node.modified_at)
            return

        if not is_root:
            path.mkdir(exist_ok=True)
        target = payload_path(path, self.payload_name)
        if node.has_data:
            _write_payload(target, node.data, node.modified_at)
        else:
            target.unlink(missing_ok=True)
