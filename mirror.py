#!/usr/bin/env python3
"""Mirror a ZooKeeper tree or subtree onto the local filesystem (read only).

Startup:
A) Check the output directory; clean it only with --force.
B) Subscribe to the remote subtree and reconcile every change event, in
   order, into the output directory.
C) On stop (signal, error) unsubscribe and delete the mirror. With
   --exit-after-sync the run ends once the initial mirror is built and the
   mirror is kept.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from treefs import (
    PAYLOAD_NAME,
    ChangeEvent,
    EventType,
    InvalidPathError,
    NodeReconciler,
    ProtocolError,
    StartupError,
    WatcherError,
    validate_path,
)
from zkwatch import ZooKeeperWatcher


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from a YAML file and the command line."""

    server: str = ""
    path: str = "/"
    output_dir: str = "."
    force_clean: bool = False
    verbose: bool = False
    exit_after_sync: bool = False
    payload_name: str = PAYLOAD_NAME
    connect_timeout: float = 15.0
    max_retries: int = 3
    retry_delay: float = 1.0


def load_config(config_path: Path) -> Config:
    """Load a YAML config file and apply defaults for missing keys."""
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a mapping")

    return Config(
        server=str(data.get("server", "")),
        path=str(data.get("path", "/")),
        output_dir=str(data.get("output_dir", ".")),
        force_clean=bool(data.get("force_clean", False)),
        verbose=bool(data.get("verbose", False)),
        exit_after_sync=bool(data.get("exit_after_sync", False)),
        payload_name=str(data.get("payload_name", PAYLOAD_NAME)),
        connect_timeout=float(data.get("connect_timeout", 15.0)),
        max_retries=int(data.get("max_retries", 3)),
        retry_delay=float(data.get("retry_delay", 1.0)),
    )


def prepare_output_dir(out_dir: Path, force_clean: bool) -> None:
    """Make ``out_dir`` an empty directory or refuse to start."""
    if out_dir.is_file():
        if not force_clean:
            raise StartupError(f"File obstructing (use -f to delete?): {out_dir}")
        try:
            out_dir.unlink()
        except OSError as exc:
            raise StartupError(f"Could not remove file obstructing: {out_dir}") from exc

    try:
        out_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StartupError(f"Could not create out directory: {out_dir}") from exc

    if not any(out_dir.iterdir()):
        return
    if not force_clean:
        raise StartupError(f"Directory not empty (use -f to delete?): {out_dir}")
    try:
        delete_directory_contents(out_dir)
    except OSError as exc:
        raise StartupError(f"Could not clean out directory {out_dir}: {exc}") from exc


def delete_directory_contents(out_dir: Path) -> None:
    for entry in list(out_dir.iterdir()):
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def remove_output_dir(out_dir: Path) -> None:
    """Delete the mirror; failures are reported only.

    The working directory itself is emptied but kept.
    """
    if not out_dir.is_dir():
        return
    try:
        delete_directory_contents(out_dir)
        if out_dir.resolve() != Path.cwd().resolve():
            out_dir.rmdir()
    except OSError as exc:
        logging.error("Failed to remove %s: %s", out_dir, exc)


class MirrorDriver:
    """Own the watcher subscription and feed its events to the reconciler.

    The watcher may call back from any thread; events are funneled into a
    single asyncio queue and reconciled one at a time in arrival order.
    """

    def __init__(self, config: Config, watcher: Any, reconciler: NodeReconciler | None = None) -> None:
        self.config = config
        self.watcher = watcher
        self.out_dir = Path(config.output_dir)
        self.reconciler = reconciler or NodeReconciler(self.out_dir, config.path, config.payload_name)
        self.synced = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self._stop: asyncio.Event | None = None

    def _enqueue(self, event: ChangeEvent) -> None:
        assert self._loop is not None and self._queue is not None
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _start_subscription(self) -> asyncio.Future[None]:
        """Subscribe on a daemon thread so a stop request need not wait for the connection."""
        loop = self._loop
        assert loop is not None
        result: asyncio.Future[None] = loop.create_future()

        def settle(error: BaseException | None) -> None:
            if result.done():
                return
            if error is None:
                result.set_result(None)
            else:
                result.set_exception(error)

        def subscribe() -> None:
            error = None
            try:
                self.watcher.subscribe(self.config.path, self._enqueue)
            except Exception as exc:  # noqa: BLE001 - re-raised on the event loop
                error = exc
            try:
                loop.call_soon_threadsafe(settle, error)
            except RuntimeError:
                logging.debug("Event loop closed before the subscription finished")

        threading.Thread(target=subscribe, name="treefs-subscribe", daemon=True).start()
        return result

    def request_stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                self.reconciler.apply(event)
            finally:
                self._queue.task_done()
            if event.type is EventType.INITIALIZED:
                self.synced = True
                if self.config.exit_after_sync:
                    logging.info("%s, exiting", event.type.value)
                    return

    def _install_signal_handlers(self) -> None:
        assert self._loop is not None
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logging.debug("Signal handler for %s not available", sig)

    def _remove_signal_handlers(self) -> None:
        assert self._loop is not None
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(self) -> int:
        """Mirror until stopped. Return process exit code.

        Raises StartupError before anything is subscribed when the output
        directory cannot be used; the directory is left untouched then.
        """
        prepare_output_dir(self.out_dir, self.config.force_clean)

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stop = asyncio.Event()
        self._install_signal_handlers()

        exit_code = 0
        keep_output = False
        consumer = asyncio.create_task(self._consume())
        stopper = asyncio.create_task(self._stop.wait())
        subscription = self._start_subscription()
        try:
            waiting: set[asyncio.Future[Any]] = {subscription, consumer, stopper}
            while consumer in waiting and stopper in waiting:
                done, waiting = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if subscription in done:
                    subscription.result()
            if consumer.done():
                consumer.result()
                keep_output = self.config.exit_after_sync
            else:
                logging.info("Stop requested")
        except ProtocolError as exc:
            logging.error("Change stream violated its ordering contract: %s", exc)
            exit_code = 1
        except WatcherError as exc:
            logging.error("%s", exc)
            exit_code = 1
        finally:
            for task in (consumer, stopper, subscription):
                task.cancel()
            await asyncio.gather(consumer, stopper, subscription, return_exceptions=True)
            self._remove_signal_handlers()
            await asyncio.to_thread(self.watcher.unsubscribe)
            if not keep_output:
                remove_output_dir(self.out_dir)
        return exit_code


async def run(config: Config) -> int:
    """Mirror the configured server. Return process exit code."""
    logging.info("Starting mirror with config: %s", config)
    watcher = ZooKeeperWatcher(
        config.server,
        connect_timeout=config.connect_timeout,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
    )
    return await MirrorDriver(config, watcher).run()


def build_parser() -> argparse.ArgumentParser:
    """CLI options."""
    parser = argparse.ArgumentParser(
        prog="treefs-mirror",
        description="Mirror a ZooKeeper tree or subtree onto the local filesystem (read only)",
    )
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("-server", "--server", help="the ZooKeeper server to connect to (host:port)")
    parser.add_argument("-path", "--path", help="the ZooKeeper path of the root node to mirror; default '/'")
    parser.add_argument("-out", "--out", help="the local directory to mirror into; default '.'")
    parser.add_argument(
        "-f", "--force", action="store_true", help="recursively delete the output directory if not empty on startup"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log all events")
    parser.add_argument("-x", "--exit-after-sync", action="store_true", help="exit after initial mirror is built")
    return parser


def parse_args(argv: list[str] | None = None) -> Config:
    """Merge command-line flags over the optional config file."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = Config()
    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            parser.error(f"config file not found: {config_path}")
        try:
            config = load_config(config_path)
        except (ValueError, yaml.YAMLError) as exc:
            parser.error(str(exc))

    if args.server:
        config.server = args.server
    if args.path:
        config.path = args.path
    if args.out:
        config.output_dir = args.out
    config.force_clean = config.force_clean or args.force
    config.verbose = config.verbose or args.verbose
    config.exit_after_sync = config.exit_after_sync or args.exit_after_sync

    if not config.server:
        parser.error("Missing -server specification")
    try:
        validate_path(config.path)
    except InvalidPathError as exc:
        parser.error(str(exc))
    return config


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    config = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if config.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    try:
        exit_code = asyncio.run(run(config))
    except StartupError as exc:
        raise SystemExit(str(exc)) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
