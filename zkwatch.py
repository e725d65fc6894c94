"""ZooKeeper subtree watcher built on kazoo's TreeCache recipe."""

from __future__ import annotations

import logging
from typing import Callable

from kazoo.client import KazooClient
from kazoo.exceptions import KazooException
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import KazooState
from kazoo.recipe.cache import TreeCache, TreeEvent
from kazoo.retry import KazooRetry

from treefs import ChangeEvent, EventType, RemoteNode, WatcherError

ChangeListener = Callable[[ChangeEvent], None]

EVENT_TYPES = {
    TreeEvent.NODE_ADDED: EventType.NODE_ADDED,
    TreeEvent.NODE_UPDATED: EventType.NODE_UPDATED,
    TreeEvent.NODE_REMOVED: EventType.NODE_REMOVED,
    TreeEvent.INITIALIZED: EventType.INITIALIZED,
}

CONNECTION_EVENTS = {
    TreeEvent.CONNECTION_SUSPENDED: "suspended",
    TreeEvent.CONNECTION_RECONNECTED: "reconnected",
    TreeEvent.CONNECTION_LOST: "lost",
}


def make_client(hosts: str, max_retries: int = 3, retry_delay: float = 1.0) -> KazooClient:
    """Create a client with exponential backoff on connection and commands."""
    retry = dict(max_tries=max_retries, delay=retry_delay, backoff=2)
    return KazooClient(
        hosts=hosts,
        connection_retry=KazooRetry(**retry),
        command_retry=KazooRetry(**retry),
    )


def translate_event(event: TreeEvent) -> ChangeEvent | None:
    """Convert a kazoo tree event; connection state events return None."""
    event_type = EVENT_TYPES.get(event.event_type)
    if event_type is None:
        return None
    if event_type is EventType.INITIALIZED or event.event_data is None:
        return ChangeEvent(event_type)

    node_data = event.event_data
    stat = node_data.stat
    return ChangeEvent(
        event_type,
        RemoteNode(
            path=node_data.path,
            data=node_data.data,
            child_count=stat.numChildren if stat is not None else 0,
            modified_at=stat.mtime if stat is not None else 0,
        ),
    )


class ZooKeeperWatcher:
    """Deliver ordered change events for one ZooKeeper subtree.

    Listeners run on kazoo's worker threads.
    """

    def __init__(
        self,
        hosts: str,
        connect_timeout: float = 15.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.hosts = hosts
        self.connect_timeout = connect_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client: KazooClient | None = None
        self._cache: TreeCache | None = None

    def subscribe(self, path: str, listener: ChangeListener) -> None:
        """Connect and start streaming events for ``path`` to ``listener``."""
        client = make_client(self.hosts, self.max_retries, self.retry_delay)
        client.add_listener(self._on_state_change)
        self._client = client
        try:
            client.start(timeout=self.connect_timeout)
        except (KazooTimeoutError, KazooException) as exc:
            raise WatcherError(f"cannot connect to {self.hosts}: {exc}") from exc
        if self._client is not client:
            # unsubscribed while connecting
            client.stop()
            client.close()
            return

        def on_tree_event(event: TreeEvent) -> None:
            if event.event_type in CONNECTION_EVENTS:
                logging.warning("Tree cache connection %s", CONNECTION_EVENTS[event.event_type])
                return
            change = translate_event(event)
            if change is not None:
                listener(change)

        self._cache = TreeCache(client, path)
        self._cache.listen(on_tree_event)
        self._cache.listen_fault(self._on_fault)
        self._cache.start()
        logging.info("Watching %s on %s", path, self.hosts)

    def unsubscribe(self) -> None:
        """Close the cache and the connection; errors are logged."""
        cache, self._cache = self._cache, None
        client, self._client = self._client, None
        if cache is not None:
            try:
                cache.close()
            except KazooException as exc:
                logging.error("Failed to close tree cache: %s", exc)
        if client is not None:
            try:
                client.stop()
                client.close()
            except KazooException as exc:
                logging.error("Failed to close connection to %s: %s", self.hosts, exc)

    def _on_state_change(self, state: str) -> None:
        if state == KazooState.LOST:
            logging.error("Session to %s lost", self.hosts)
        elif state == KazooState.SUSPENDED:
            logging.warning("Connection to %s suspended", self.hosts)
        else:
            logging.info("Connected to %s", self.hosts)

    def _on_fault(self, exc: Exception) -> None:
        logging.error("Tree cache error: %s", exc, exc_info=exc)
