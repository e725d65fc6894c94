"""Shared fixtures and event builders for mirror tests."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest

from treefs import ChangeEvent, EventType, NodeReconciler, RemoteNode

MTIME_MS = 1_700_000_000_000


def added(path: str, data: bytes | None = None, child_count: int = 0, mtime: int = MTIME_MS) -> ChangeEvent:
    return ChangeEvent(EventType.NODE_ADDED, RemoteNode(path, data, child_count, mtime))


def updated(path: str, data: bytes | None = None, child_count: int = 0, mtime: int = MTIME_MS) -> ChangeEvent:
    return ChangeEvent(EventType.NODE_UPDATED, RemoteNode(path, data, child_count, mtime))


def removed(path: str) -> ChangeEvent:
    return ChangeEvent(EventType.NODE_REMOVED, RemoteNode(path))


def initialized() -> ChangeEvent:
    return ChangeEvent(EventType.INITIALIZED)


class FakeWatcher:
    """Replays a fixed event list from a background thread, like kazoo does."""

    def __init__(self, events: list[ChangeEvent]) -> None:
        self.events = events
        self.subscribed_path: str | None = None
        self.unsubscribed = False
        self._thread: threading.Thread | None = None

    def subscribe(self, path, listener) -> None:
        self.subscribed_path = path

        def deliver() -> None:
            for event in self.events:
                listener(event)

        self._thread = threading.Thread(target=deliver)
        self._thread.start()

    def unsubscribe(self) -> None:
        if self._thread is not None:
            self._thread.join()
        self.unsubscribed = True


@pytest.fixture
def mirror_root(tmp_path: Path) -> Path:
    root = tmp_path / "mirror"
    root.mkdir()
    return root


@pytest.fixture
def reconciler(mirror_root: Path) -> NodeReconciler:
    return NodeReconciler(mirror_root)
