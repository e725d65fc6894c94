#!/usr/bin/env python3
"""Compare a mirror directory with the live ZooKeeper subtree it mirrors."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable

from kazoo.client import KazooClient
from kazoo.exceptions import KazooException, NoNodeError
from kazoo.handlers.threading import KazooTimeoutError

from mirror import Config, load_config
from treefs import PAYLOAD_NAME, InvalidPathError, RemoteNode, payload_path, to_local_path
from zkwatch import make_client

# Relative path -> file bytes, or None for a directory.
Layout = dict[str, bytes | None]


def snapshot_tree(client: KazooClient, path: str) -> list[RemoteNode]:
    """Read every node of the subtree rooted at ``path``."""
    nodes: list[RemoteNode] = []
    pending = [path]
    while pending:
        current = pending.pop()
        try:
            data, stat = client.get(current)
            children = client.get_children(current)
        except NoNodeError:
            continue
        nodes.append(RemoteNode(current, data, stat.numChildren, stat.mtime))
        prefix = current.rstrip("/")
        pending.extend(f"{prefix}/{child}" for child in children)
    return nodes


def render_expected(nodes: Iterable[RemoteNode], base: str = "/", payload_name: str = PAYLOAD_NAME) -> Layout:
    """Render the layout a converged mirror of ``nodes`` holds."""
    root = Path(".")
    layout: Layout = {}
    for node in nodes:
        try:
            local = to_local_path(node.path, root, base, payload_name)
        except InvalidPathError as exc:
            logging.info("Not mirrored: %s", exc)
            continue
        is_root = local == root
        if node.is_container or is_root:
            if not is_root:
                layout[local.as_posix()] = None
            if node.has_data:
                layout[payload_path(local, payload_name).as_posix()] = node.data
        else:
            layout[local.as_posix()] = node.data or b""
    return layout


def scan_output(root: Path) -> Layout:
    """Read the actual layout under ``root``."""
    layout: Layout = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        layout[rel] = None if path.is_dir() else path.read_bytes()
    return layout


def compare(expected: Layout, actual: Layout) -> list[str]:
    """Return one message per difference; empty when converged."""
    problems: list[str] = []
    for rel, want in sorted(expected.items()):
        if rel not in actual:
            kind = "directory" if want is None else "file"
            problems.append(f"missing {kind}: {rel}")
            continue
        have = actual[rel]
        if (want is None) != (have is None):
            problems.append(f"kind mismatch: {rel} (expected={'directory' if want is None else 'file'})")
        elif want is not None and want != have:
            problems.append(f"content mismatch: {rel} (expected={len(want)} bytes, actual={len(have or b'')} bytes)")
    for rel in sorted(set(actual) - set(expected)):
        problems.append(f"extra entry not in tree: {rel}")
    return problems


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="treefs-verify", description="Check a mirror against its ZooKeeper subtree")
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--server", help="the ZooKeeper server to connect to (host:port)")
    parser.add_argument("--path", help="the mirrored ZooKeeper path")
    parser.add_argument("--out", help="the mirror directory")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = load_config(Path(args.config)) if args.config else Config()
    server = args.server or config.server
    base = args.path or config.path
    out_dir = Path(args.out or config.output_dir)

    if not server:
        print("[NG] no server given")
        return 1
    if not out_dir.is_dir():
        print(f"[NG] output directory not found: {out_dir}")
        return 1

    client = make_client(server, config.max_retries, config.retry_delay)
    try:
        client.start(timeout=config.connect_timeout)
        nodes = snapshot_tree(client, base)
    except (KazooTimeoutError, KazooException) as exc:
        print(f"[NG] failed to read {base} from {server}: {exc}")
        return 1
    finally:
        client.stop()
        client.close()

    expected = render_expected(nodes, base, config.payload_name)
    problems = compare(expected, scan_output(out_dir))
    for problem in problems:
        print(f"[NG] {problem}")

    print(f"OK: {len(expected) - len([p for p in problems if not p.startswith('extra')])}")
    print(f"NG: {len(problems)}")
    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(main())
