"""
Tests for the stream supervisor.

ffmpeg is replaced by FakeProcess (see conftest.py) so most tests exercise
the registry, restart and shutdown logic without spawning anything.
TestRealProcess runs a small shell script through the real Popen path.
"""

import logging
import os
import shutil
import signal
import subprocess
import threading
import time

import pytest


def _wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def supervisor(fast_settings):
    from hlsstreamer.supervisor import StreamSupervisor

    sup = StreamSupervisor(fast_settings)
    yield sup
    sup.stop_all(wait=True)


@pytest.fixture
def manifest(temp_dir):
    from hlsstreamer.playlist import write_concat_manifest

    return write_concat_manifest(temp_dir / "playlists", "test", ["/videos/a.mkv"])


class TestHelpers:
    """Tests for module-level helpers."""

    def test_playback_path(self):
        """Test the playback path template."""
        from hlsstreamer.supervisor import playback_path_for

        assert playback_path_for("lobby") == "/stream/lobby/stream.m3u8"

    @pytest.mark.parametrize("stream_id", ["", "..", ".", "a/b", "a b", "../etc"])
    def test_invalid_stream_ids(self, stream_id):
        """Ids that could escape the output root are rejected."""
        from hlsstreamer.config import ConfigError
        from hlsstreamer.supervisor import check_stream_id

        with pytest.raises(ConfigError):
            check_stream_id(stream_id)

    def test_http_constants(self):
        """Headers for serving the playlist and segments."""
        from hlsstreamer.supervisor import (
            PLAYLIST_CACHE_HEADERS,
            PLAYLIST_CONTENT_TYPE,
            SEGMENT_CACHE_HEADERS,
            SEGMENT_CONTENT_TYPE,
        )

        assert PLAYLIST_CONTENT_TYPE == "application/vnd.apple.mpegurl"
        assert SEGMENT_CONTENT_TYPE == "video/mp2t"
        assert PLAYLIST_CACHE_HEADERS["Cache-Control"] == "no-cache, no-store, must-revalidate"
        assert SEGMENT_CACHE_HEADERS == {"Cache-Control": "max-age=10"}

    def test_valid_stream_id(self):
        """Test a typical id."""
        from hlsstreamer.supervisor import check_stream_id

        assert check_stream_id("channel-1_hd.v2") == "channel-1_hd.v2"

    def test_wait_for_segments_found(self, temp_dir):
        """A .ts file ends the wait."""
        from hlsstreamer.supervisor import wait_for_segments

        (temp_dir / "stream_000.ts").write_bytes(b"")
        assert wait_for_segments(temp_dir, timeout=1.0, interval=0.01) is True

    def test_wait_for_segments_ignores_playlist(self, temp_dir):
        """A playlist alone is not enough."""
        from hlsstreamer.supervisor import wait_for_segments

        (temp_dir / "stream.m3u8").write_text("#EXTM3U\n")
        start = time.monotonic()
        assert wait_for_segments(temp_dir, timeout=0.1, interval=0.02) is False
        assert time.monotonic() - start >= 0.1

    def test_wait_for_segments_missing_dir(self, temp_dir):
        """A missing directory times out instead of raising."""
        from hlsstreamer.supervisor import wait_for_segments

        assert wait_for_segments(temp_dir / "nope", timeout=0.05, interval=0.01) is False

    def test_wait_for_segments_stop_event(self, temp_dir):
        """A set stop event ends the wait early."""
        from hlsstreamer.supervisor import wait_for_segments

        event = threading.Event()
        event.set()
        start = time.monotonic()
        assert wait_for_segments(temp_dir, timeout=5.0, interval=0.5, stop_event=event) is False
        assert time.monotonic() - start < 1.0

    def test_clear_stale_output(self, temp_dir):
        """Old playlist and segments are removed, other files kept."""
        from hlsstreamer.supervisor import clear_stale_output

        for name in ("stream.m3u8", "stream_000.ts", "stream_001.ts", "poster.jpg"):
            (temp_dir / name).write_bytes(b"")
        clear_stale_output(temp_dir)

        assert sorted(p.name for p in temp_dir.iterdir()) == ["poster.jpg"]


class TestStart:
    """Tests for StreamSupervisor.start()."""

    def test_start_registers_stream(self, supervisor, fake_spawn, manifest, fast_settings):
        """Test a successful start."""
        info = supervisor.start("lobby", manifest)

        assert info.stream_id == "lobby"
        assert info.playback_path == "/stream/lobby/stream.m3u8"
        assert info.output_dir == fast_settings.output_root / "lobby"
        assert info.to_dict() == {
            "id": "lobby",
            "playbackPath": "/stream/lobby/stream.m3u8",
            "outputDir": str(fast_settings.output_root / "lobby"),
        }
        assert "lobby" in supervisor
        assert len(fake_spawn.processes) == 1

    def test_start_builds_command(self, supervisor, fake_spawn, manifest, temp_dir):
        """The spawned command reads the manifest and writes into output_dir."""
        out = temp_dir / "custom"
        supervisor.start("lobby", manifest, out)

        cmd = fake_spawn.processes[0].cmd
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == str(manifest)
        assert cmd[-1] == str(out / "stream.m3u8")
        assert cmd[cmd.index("-c:v") + 1] == "libx264"

    def test_start_with_options(self, supervisor, fake_spawn, manifest):
        """Per-call options reach the command."""
        from hlsstreamer.config import StreamConfig

        supervisor.start("lobby", manifest, cfg=StreamConfig(segment_duration=4, resolution="1280x720"))

        cmd = fake_spawn.processes[0].cmd
        assert cmd[cmd.index("-hls_time") + 1] == "4"
        assert "pad=1280:720" in cmd[cmd.index("-vf") + 1]

    def test_start_with_encoder_override(self, supervisor, fake_spawn, manifest):
        """An explicit encoder brings its hardware flags."""
        from hlsstreamer.config import StreamConfig

        supervisor.start("lobby", manifest, cfg=StreamConfig(encoder="h264_qsv"))

        cmd = fake_spawn.processes[0].cmd
        assert cmd[1:4] == ["-hide_banner", "-hwaccel", "qsv"]
        assert supervisor.get("lobby").encoder == "h264_qsv"

    def test_invalid_options_spawn_nothing(self, supervisor, fake_spawn, manifest):
        """Validation happens before any process is created."""
        from hlsstreamer.config import ConfigError, StreamConfig

        with pytest.raises(ConfigError):
            supervisor.start("lobby", manifest, cfg=StreamConfig(fps=0))
        with pytest.raises(ConfigError):
            supervisor.start("../escape", manifest)

        assert fake_spawn.processes == []
        assert len(supervisor) == 0

    def test_spawn_failure(self, supervisor, fake_spawn, manifest):
        """An OS error from spawning raises StreamStartError and registers nothing."""
        from hlsstreamer.supervisor import StreamStartError

        fake_spawn.error = FileNotFoundError(2, "No such file or directory", "ffmpeg")

        with pytest.raises(StreamStartError) as exc:
            supervisor.start("lobby", manifest)

        assert exc.value.stream_id == "lobby"
        assert isinstance(exc.value, RuntimeError)
        assert "lobby" not in supervisor

    def test_segment_timeout_still_succeeds(self, supervisor, fake_spawn, manifest, fast_settings):
        """No segment within the timeout: start returns, process keeps running."""
        fake_spawn.write_segment = False

        start = time.monotonic()
        supervisor.start("lobby", manifest)

        assert time.monotonic() - start >= fast_settings.segment_wait_timeout
        assert "lobby" in supervisor
        assert fake_spawn.processes[0].alive

    def test_stale_segments_are_cleared(self, supervisor, fake_spawn, manifest, fast_settings):
        """Leftover segments from a previous run do not count as health."""
        out = fast_settings.output_root / "lobby"
        out.mkdir(parents=True)
        (out / "stream_007.ts").write_bytes(b"")
        fake_spawn.write_segment = False

        supervisor.start("lobby", manifest)

        assert not (out / "stream_007.ts").exists()

    def test_restart_leaves_one_process(self, supervisor, fake_spawn, manifest):
        """Starting an id twice stops the first process."""
        supervisor.start("lobby", manifest)
        supervisor.start("lobby", manifest)

        first, second = fake_spawn.processes
        assert first.terminate_calls == 1
        assert not first.alive
        assert second.alive
        assert len(supervisor) == 1
        assert supervisor.get("lobby").process is second

    def test_concurrent_starts_same_id(self, supervisor, fake_spawn, manifest):
        """Concurrent starts of one id end with a single live process."""
        threads = [threading.Thread(target=supervisor.start, args=("lobby", manifest)) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        alive = [p for p in fake_spawn.processes if p.alive]
        assert len(fake_spawn.processes) == 4
        assert len(alive) == 1
        assert supervisor.get("lobby").process is alive[0]


class TestStop:
    """Tests for stop() and stop_all()."""

    def test_stop(self, supervisor, fake_spawn, manifest):
        """Test stopping a running stream."""
        supervisor.start("lobby", manifest)
        stream = supervisor.get("lobby")

        supervisor.stop("lobby")

        assert "lobby" not in supervisor
        assert stream.exited.wait(2)
        assert fake_spawn.processes[0].terminate_calls == 1
        assert fake_spawn.processes[0].kill_calls == 0

    def test_stop_unknown_is_noop(self, supervisor, fake_spawn):
        """Stopping an absent id does nothing."""
        supervisor.stop("ghost")
        assert len(supervisor) == 0

    def test_stop_twice(self, supervisor, fake_spawn, manifest):
        """A second stop is a no-op."""
        supervisor.start("lobby", manifest)
        supervisor.stop("lobby")
        supervisor.stop("lobby")

        assert fake_spawn.processes[0].terminate_calls == 1

    def test_force_kill_after_grace(self, supervisor, fake_spawn, manifest):
        """A process ignoring SIGTERM is killed after the grace period."""
        fake_spawn.ignore_term = True
        supervisor.start("lobby", manifest)
        stream = supervisor.get("lobby")

        supervisor.stop("lobby")

        assert "lobby" not in supervisor
        assert stream.exited.wait(2)
        proc = fake_spawn.processes[0]
        assert proc.terminate_calls == 1
        assert proc.kill_calls == 1

    def test_no_kill_after_clean_exit(self, supervisor, fake_spawn, manifest, fast_settings):
        """The kill timer does nothing once the process has exited."""
        supervisor.start("lobby", manifest)
        supervisor.stop("lobby")

        time.sleep(fast_settings.stop_grace_period * 3)
        assert fake_spawn.processes[0].kill_calls == 0

    def test_stop_all(self, supervisor, fake_spawn, manifest):
        """stop_all empties the registry."""
        for sid in ("a", "b", "c"):
            supervisor.start(sid, manifest)

        supervisor.stop_all(wait=True)

        assert len(supervisor) == 0
        assert supervisor.list() == []
        assert not any(p.alive for p in fake_spawn.processes)

    def test_stop_all_subset(self, supervisor, fake_spawn, manifest):
        """stop_all with ids stops only those streams."""
        for sid in ("a", "b", "c"):
            supervisor.start(sid, manifest)

        supervisor.stop_all(["a", "b", "ghost"])

        assert [s.stream_id for s in supervisor.list()] == ["c"]
        assert fake_spawn.processes[2].alive

    def test_stop_all_empty(self, supervisor):
        """Nothing registered, nothing to do."""
        supervisor.stop_all()
        assert len(supervisor) == 0

    def test_context_manager_stops_everything(self, fast_settings, fake_spawn, manifest):
        """Leaving the with-block stops all streams."""
        from hlsstreamer.supervisor import StreamSupervisor

        with StreamSupervisor(fast_settings) as sup:
            sup.start("a", manifest)
            sup.start("b", manifest)

        assert len(sup) == 0
        assert not any(p.alive for p in fake_spawn.processes)


class TestRuntimeExit:
    """Tests for processes exiting on their own."""

    def test_exit_removes_entry(self, supervisor, fake_spawn, manifest):
        """A crashed process disappears from the registry."""
        supervisor.start("lobby", manifest)

        fake_spawn.processes[0].exit(1)

        assert supervisor.wait("lobby", timeout=2) is True
        assert _wait_until(lambda: "lobby" not in supervisor)

    def test_exit_logs_stderr_tail(self, supervisor, fake_spawn, manifest, caplog):
        """A non-zero exit is logged with the last diagnostic lines."""
        fake_spawn.stderr_chunks = [b"[hls @ 0x1] Failed to open segment\n"]
        supervisor.start("lobby", manifest)
        stream = supervisor.get("lobby")

        with caplog.at_level(logging.INFO, logger="hlsstreamer"):
            fake_spawn.processes[0].exit(1)
            assert stream.exited.wait(2)

        assert "exited with code 1" in caplog.text
        assert "Failed to open segment" in caplog.text

    def test_old_exit_does_not_remove_new_entry(self, supervisor, fake_spawn, manifest):
        """A restarted id survives the exit of its predecessor."""
        supervisor.start("lobby", manifest)
        old = supervisor.get("lobby")
        supervisor.start("lobby", manifest)

        assert old.exited.wait(2)
        assert supervisor.get("lobby").process is fake_spawn.processes[1]

    def test_error_lines_are_logged(self, supervisor, fake_spawn, manifest, caplog):
        """stderr lines reporting errors are logged as they arrive."""
        fake_spawn.stderr_chunks = [b"[aac @ 0x2] Error while encoding\n"]

        with caplog.at_level(logging.ERROR, logger="hlsstreamer"):
            supervisor.start("lobby", manifest)
            assert _wait_until(lambda: "Error while encoding" in caplog.text)

        assert "[ffmpeg lobby]" in caplog.text


class TestList:
    """Tests for list()."""

    def test_list_reports_status(self, supervisor, fake_spawn, manifest, fast_settings):
        """Test the status of a running stream."""
        from hlsstreamer.supervisor import StreamState

        fake_spawn.stderr_chunks = [b"frame=  120 fps=30 time=00:00:04.00 bitrate=1500kbits/s speed=1.0x\r"]
        supervisor.start("lobby", manifest)
        time.sleep(0.02)

        (status,) = supervisor.list()
        assert status.stream_id == "lobby"
        assert status.state is StreamState.RUNNING
        assert status.encoder == "libx264"
        assert status.pid == fake_spawn.processes[0].pid
        assert status.uptime_ms >= 15
        assert _wait_until(lambda: supervisor.list()[0].stats.get("frame") == 120)

        data = supervisor.list()[0].to_dict()
        assert data["id"] == "lobby"
        assert data["outputDir"] == str(fast_settings.output_root / "lobby")
        assert data["state"] == "running"
        assert data["stats"]["current_time_ms"] == 4000

    def test_uptime_grows(self, supervisor, fake_spawn, manifest):
        """Uptime is measured from spawn."""
        supervisor.start("lobby", manifest)
        first = supervisor.list()[0].uptime_ms
        time.sleep(0.05)
        assert supervisor.list()[0].uptime_ms >= first + 40

    def test_wait_unknown(self, supervisor):
        """Waiting on an unknown id returns immediately."""
        assert supervisor.wait("ghost", timeout=0) is True

    def test_detect_capabilities_cached(self, supervisor):
        """The supervisor exposes the prober's cached snapshot."""
        first = supervisor.detect_capabilities()
        assert supervisor.detect_capabilities() is first
        assert first.encoder == "libx264"


class TestSpawn:
    """Tests for the real process launch."""

    def test_spawn_pipes(self, fast_settings, monkeypatch):
        """ffmpeg gets stderr piped and no stdin."""
        from hlsstreamer.supervisor import StreamSupervisor

        calls = []
        monkeypatch.setattr(subprocess, "Popen", lambda cmd, **kwargs: calls.append((cmd, kwargs)) or "proc")

        assert StreamSupervisor(fast_settings)._spawn(["ffmpeg", "-version"]) == "proc"
        cmd, kwargs = calls[0]
        assert cmd == ["ffmpeg", "-version"]
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["stderr"] is subprocess.PIPE


class TestIdLocks:
    """Tests for the per-id lock table."""

    def test_stop_unknown_ids_leaves_no_locks(self, supervisor):
        """Stopping ids that never existed does not grow the lock table."""
        for i in range(100):
            supervisor.stop(f"ghost{i}")

        assert supervisor._id_locks == {}

    def test_start_stop_cycle_releases_lock(self, supervisor, fake_spawn, manifest):
        """No lock entry survives a completed start or stop."""
        supervisor.start("lobby", manifest)
        assert supervisor._id_locks == {}

        supervisor.stop("lobby")
        assert supervisor._id_locks == {}

    def test_concurrent_starts_release_lock(self, supervisor, fake_spawn, manifest):
        """Waiters share one entry, removed once the last one is done."""
        threads = [threading.Thread(target=supervisor.start, args=("lobby", manifest)) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert supervisor._id_locks == {}
        assert len(supervisor) == 1


FFMPEG_STANDIN = """#!/bin/sh
trap '' TERM
for last; do :; done
echo "standin encoder running" >&2
: > "$(dirname "$last")/stream_000.ts"
while :; do sleep 0.05 </dev/null >/dev/null 2>&1; done
"""


@pytest.mark.skipif(os.name != "posix" or not shutil.which("sh"), reason="needs a POSIX shell")
class TestRealProcess:
    """Supervising a real child process in place of ffmpeg."""

    def test_stop_kills_process_ignoring_sigterm(self, temp_dir, manifest):
        """SIGTERM is ignored, so stop ends in SIGKILL and the entry is gone."""
        from hlsstreamer.config import Settings
        from hlsstreamer.supervisor import StreamSupervisor

        script = temp_dir / "ffmpeg"
        script.write_text(FFMPEG_STANDIN)
        script.chmod(0o755)
        settings = Settings(
            ffmpeg_path=str(script),
            use_gpu=False,
            output_root=temp_dir / "output",
            segment_wait_timeout=5.0,
            segment_poll_interval=0.02,
            stop_grace_period=0.3,
        )

        with StreamSupervisor(settings) as sup:
            sup.start("real", manifest)
            stream = sup.get("real")
            proc = stream.process

            assert (temp_dir / "output" / "real" / "stream_000.ts").exists()
            assert proc.poll() is None

            sup.stop("real")

            assert "real" not in sup
            assert stream.exited.wait(5)
            assert proc.returncode == -signal.SIGKILL
            assert "standin encoder running" in stream.diagnostics.tail()
