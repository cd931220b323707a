"""
Pytest configuration and shared fixtures for hlsstreamer tests.
"""

import subprocess
import sys
import tempfile
import threading
from pathlib import Path
from typing import Generator, List, Optional

import pytest

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Tests never inherit GPU or ffmpeg settings from the host."""
    for name in ("NO_GPU", "USE_GPU", "FFMPEG_PATH", "NO_COLOR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_dir(temp_dir: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = temp_dir / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def mock_xdg_dirs(temp_dir: Path, monkeypatch):
    """Mock XDG directories to use temporary paths."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(temp_dir / "state"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(temp_dir / "cache"))


@pytest.fixture
def default_stream_config():
    """Return a default StreamConfig instance for testing."""
    from hlsstreamer.config import StreamConfig

    return StreamConfig()


class FakeStderr:
    """Blocking stderr pipe: returns queued chunks, then EOF once the process exits."""

    def __init__(self, process: "FakeProcess", chunks: Optional[List[bytes]] = None):
        self._process = process
        self._chunks = list(chunks or [])
        self.closed = False

    def read1(self, size: int = -1) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        self._process.exited.wait(10)
        return b""

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stands in for subprocess.Popen in supervisor tests."""

    _next_pid = 1000

    def __init__(self, cmd: List[str], ignore_term: bool = False, stderr_chunks: Optional[List[bytes]] = None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.cmd = cmd
        self.ignore_term = ignore_term
        self.returncode: Optional[int] = None
        self.exited = threading.Event()
        self.terminate_calls = 0
        self.kill_calls = 0
        self.stderr = FakeStderr(self, stderr_chunks)

    def poll(self) -> Optional[int]:
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        if not self.exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.cmd, timeout)
        return self.returncode

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self.exited.set()

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_term:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)

    @property
    def alive(self) -> bool:
        return self.returncode is None


@pytest.fixture
def fast_settings(temp_dir: Path):
    """Settings with tiny timeouts and temporary directories."""
    from hlsstreamer.config import Settings

    return Settings(
        ffmpeg_path="ffmpeg",
        use_gpu=False,
        output_root=temp_dir / "output",
        playlists_dir=temp_dir / "playlists",
        segment_wait_timeout=0.3,
        segment_poll_interval=0.02,
        stop_grace_period=0.1,
    )


@pytest.fixture
def fake_spawn(monkeypatch):
    """
    Replace StreamSupervisor._spawn with a FakeProcess factory.

    The fixture value records every spawned process. Set ``.write_segment``
    to make each spawn drop a first segment into the output directory, and
    ``.ignore_term`` to spawn processes that ignore SIGTERM.
    """
    from hlsstreamer.supervisor import StreamSupervisor

    class Recorder:
        def __init__(self):
            self.processes: List[FakeProcess] = []
            self.write_segment = True
            self.ignore_term = False
            self.stderr_chunks: List[bytes] = []
            self.error: Optional[OSError] = None

    recorder = Recorder()

    def spawn(self, cmd):
        if recorder.error is not None:
            raise recorder.error
        proc = FakeProcess(cmd, ignore_term=recorder.ignore_term, stderr_chunks=list(recorder.stderr_chunks))
        if recorder.write_segment:
            playlist = Path(cmd[-1])
            (playlist.parent / "stream_000.ts").write_bytes(b"\x47")
        recorder.processes.append(proc)
        return proc

    monkeypatch.setattr(StreamSupervisor, "_spawn", spawn)
    return recorder
