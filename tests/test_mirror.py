"""Tests for the mirror driver, startup checks and command line."""
from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from pathlib import Path

import pytest

from conftest import FakeWatcher, added, initialized, updated
from mirror import Config, MirrorDriver, load_config, parse_args, prepare_output_dir, remove_output_dir
from treefs import PAYLOAD_NAME, StartupError, WatcherError


def make_config(out_dir, **overrides) -> Config:
    return Config(server="localhost:2181", output_dir=str(out_dir), **overrides)


class TestPrepareOutputDir:
    def test_creates_missing_directory(self, tmp_path):
        out = tmp_path / "a" / "b"
        prepare_output_dir(out, force_clean=False)
        assert out.is_dir()

    def test_obstructing_file_refused(self, tmp_path):
        out = tmp_path / "out"
        out.write_text("x")
        with pytest.raises(StartupError, match="File obstructing"):
            prepare_output_dir(out, force_clean=False)
        assert out.is_file()

    def test_obstructing_file_forced(self, tmp_path):
        out = tmp_path / "out"
        out.write_text("x")
        prepare_output_dir(out, force_clean=True)
        assert out.is_dir()

    def test_non_empty_refused(self, tmp_path):
        (tmp_path / "keep").write_text("x")
        with pytest.raises(StartupError, match="Directory not empty"):
            prepare_output_dir(tmp_path, force_clean=False)
        assert (tmp_path / "keep").exists()

    def test_remove_output_dir(self, tmp_path):
        out = tmp_path / "out"
        (out / "a").mkdir(parents=True)
        (out / "a" / "b").write_text("x")
        remove_output_dir(out)
        assert not out.exists()

    def test_remove_working_directory_keeps_it(self, tmp_path, monkeypatch, caplog):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "a").write_text("x")
        remove_output_dir(Path("."))
        assert tmp_path.is_dir()
        assert list(tmp_path.iterdir()) == []
        assert "Failed to remove" not in caplog.text

    def test_non_empty_forced(self, tmp_path):
        (tmp_path / "file").write_text("x")
        (tmp_path / "dir" / "sub").mkdir(parents=True)
        prepare_output_dir(tmp_path, force_clean=True)
        assert tmp_path.is_dir()
        assert list(tmp_path.iterdir()) == []


class TestMirrorDriver:
    """Events flow from the watcher thread through one ordered queue."""

    def test_exit_after_sync_keeps_mirror(self, tmp_path):
        out = tmp_path / "out"
        watcher = FakeWatcher(
            [
                added("/x", None, child_count=1),
                added("/x/y", b"hi"),
                updated("/x", None, child_count=0),
                initialized(),
            ]
        )
        driver = MirrorDriver(make_config(out, exit_after_sync=True), watcher)

        assert asyncio.run(driver.run()) == 0
        assert driver.synced
        assert watcher.subscribed_path == "/"
        assert watcher.unsubscribed
        assert (out / "x").is_file()
        assert not os.path.lexists(out / "x" / "y")

    def test_events_applied_in_order(self, tmp_path):
        out = tmp_path / "out"
        events = [added("/n", b"0")] + [updated("/n", str(i).encode()) for i in range(1, 50)] + [initialized()]
        driver = MirrorDriver(make_config(out, exit_after_sync=True), FakeWatcher(events))
        assert asyncio.run(driver.run()) == 0
        assert (out / "n").read_bytes() == b"49"

    def test_stop_request_removes_mirror(self, tmp_path):
        out = tmp_path / "out"
        watcher = FakeWatcher([added("/", b"root", child_count=1), added("/a", b"x"), initialized()])
        driver = MirrorDriver(make_config(out), watcher)

        async def scenario() -> int:
            task = asyncio.create_task(driver.run())
            for _ in range(500):
                if driver.synced:
                    break
                await asyncio.sleep(0.01)
            assert (out / PAYLOAD_NAME).read_bytes() == b"root"
            assert (out / "a").read_bytes() == b"x"
            driver.request_stop()
            return await task

        assert asyncio.run(scenario()) == 0
        assert watcher.unsubscribed
        assert not out.exists()

    def test_protocol_violation_aborts(self, tmp_path):
        out = tmp_path / "out"
        watcher = FakeWatcher([added("/a", b"leaf"), added("/a", None, child_count=1), initialized()])
        driver = MirrorDriver(make_config(out, exit_after_sync=True), watcher)

        assert asyncio.run(driver.run()) == 1
        assert watcher.unsubscribed
        assert not out.exists()

    def test_watcher_failure(self, tmp_path):
        class BrokenWatcher(FakeWatcher):
            def subscribe(self, path, listener):
                raise WatcherError("cannot connect")

        out = tmp_path / "out"
        watcher = BrokenWatcher([])
        assert asyncio.run(MirrorDriver(make_config(out), watcher).run()) == 1
        assert watcher.unsubscribed
        assert not out.exists()

    def test_startup_failure_leaves_directory_alone(self, tmp_path):
        (tmp_path / "precious").write_text("x")
        watcher = FakeWatcher([])
        with pytest.raises(StartupError):
            asyncio.run(MirrorDriver(make_config(tmp_path), watcher).run())
        assert watcher.subscribed_path is None
        assert (tmp_path / "precious").exists()

    def test_stop_in_working_directory_empties_it_quietly(self, tmp_path, monkeypatch, caplog):
        monkeypatch.chdir(tmp_path)
        watcher = FakeWatcher([added("/a", None, child_count=1), added("/a/b", b"x"), initialized()])
        driver = MirrorDriver(Config(server="zk:2181"), watcher)

        async def scenario() -> int:
            task = asyncio.create_task(driver.run())
            for _ in range(500):
                if driver.synced:
                    break
                await asyncio.sleep(0.01)
            assert (tmp_path / "a" / "b").read_bytes() == b"x"
            driver.request_stop()
            return await task

        assert asyncio.run(scenario()) == 0
        assert tmp_path.is_dir()
        assert list(tmp_path.iterdir()) == []
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    def test_unsubscribe_runs_off_the_event_loop_thread(self, tmp_path):
        class RecordingWatcher(FakeWatcher):
            def unsubscribe(self):
                self.unsubscribe_thread = threading.current_thread()
                super().unsubscribe()

        watcher = RecordingWatcher([initialized()])
        driver = MirrorDriver(make_config(tmp_path / "out", exit_after_sync=True), watcher)
        assert asyncio.run(driver.run()) == 0
        assert watcher.unsubscribe_thread is not threading.main_thread()

    def test_stop_while_connecting(self, tmp_path):
        class ConnectingWatcher(FakeWatcher):
            def __init__(self):
                super().__init__([])
                self.connecting = threading.Event()
                self.released = threading.Event()

            def subscribe(self, path, listener):
                self.subscribed_path = path
                self.connecting.set()
                self.released.wait(10)

            def unsubscribe(self):
                self.released.set()
                super().unsubscribe()

        out = tmp_path / "out"
        watcher = ConnectingWatcher()
        driver = MirrorDriver(make_config(out), watcher)

        async def scenario() -> int:
            task = asyncio.create_task(driver.run())
            await asyncio.to_thread(watcher.connecting.wait, 5)
            started = time.monotonic()
            driver.request_stop()
            code = await asyncio.wait_for(task, timeout=5)
            assert time.monotonic() - started < 5
            return code

        assert asyncio.run(scenario()) == 0
        assert watcher.unsubscribed
        assert not out.exists()

    def test_subtree_path(self, tmp_path):
        out = tmp_path / "out"
        watcher = FakeWatcher([added("/app", None, child_count=1), added("/app/db", b"url"), initialized()])
        driver = MirrorDriver(make_config(out, path="/app", exit_after_sync=True), watcher)
        assert asyncio.run(driver.run()) == 0
        assert watcher.subscribed_path == "/app"
        assert (out / "db").read_bytes() == b"url"


class TestConfig:
    def test_load_config(self, tmp_path):
        path = tmp_path / "treefs.yaml"
        path.write_text("server: zk1:2181\npath: /app\noutput_dir: mirror\nverbose: true\nmax_retries: 5\n")
        config = load_config(path)
        assert config.server == "zk1:2181"
        assert config.path == "/app"
        assert config.output_dir == "mirror"
        assert config.verbose is True
        assert config.max_retries == 5
        assert config.payload_name == PAYLOAD_NAME

    def test_empty_config_uses_defaults(self, tmp_path):
        path = tmp_path / "treefs.yaml"
        path.write_text("")
        assert load_config(path) == Config()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "treefs.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_config(path)


class TestParseArgs:
    def test_flags(self):
        config = parse_args(["-server", "zk:2181", "-path", "/a/b", "-out", "dest", "-f", "-v", "-x"])
        assert config.server == "zk:2181"
        assert config.path == "/a/b"
        assert config.output_dir == "dest"
        assert config.force_clean and config.verbose and config.exit_after_sync

    def test_long_flags_and_defaults(self):
        config = parse_args(["--server", "zk:2181"])
        assert config.path == "/"
        assert config.output_dir == "."
        assert not config.force_clean

    def test_missing_server(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            parse_args(["-path", "/a"])
        assert excinfo.value.code == 2
        assert "Missing -server" in capsys.readouterr().err

    @pytest.mark.parametrize("path", ["a", "/a/", "/a//b"])
    def test_malformed_path(self, path):
        with pytest.raises(SystemExit) as excinfo:
            parse_args(["-server", "zk:2181", "-path", path])
        assert excinfo.value.code == 2

    def test_flags_override_config_file(self, tmp_path):
        path = tmp_path / "treefs.yaml"
        path.write_text("server: zk1:2181\npath: /app\n")
        config = parse_args(["--config", str(path), "-path", "/other"])
        assert config.server == "zk1:2181"
        assert config.path == "/other"

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(SystemExit):
            parse_args(["--config", str(tmp_path / "nope.yaml")])
