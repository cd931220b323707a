"""
Stream supervisor for hlsstreamer.

Owns the registry of running ffmpeg processes keyed by stream id:
- starts a stream and waits for its first segment
- stops streams (SIGTERM, then SIGKILL after a grace period)
- removes registry entries when a process exits on its own
- reports uptime and encoder stats for every running stream
"""

import logging
import re
import shlex
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from hlsstreamer.capabilities import CapabilityProber, CapabilitySnapshot
from hlsstreamer.command import PLAYLIST_NAME, SEGMENT_SUFFIX, build_hls_cmd
from hlsstreamer.config import ConfigError, Settings, StreamConfig, load_settings
from hlsstreamer.encoders import select_encoder
from hlsstreamer.progress import StreamDiagnostics

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Response headers used by the HTTP layer serving the stream files
PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp2t"
PLAYLIST_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
SEGMENT_CACHE_HEADERS = {"Cache-Control": "max-age=10"}

_STREAM_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class StreamStartError(RuntimeError):
    """ffmpeg could not be launched for a stream."""

    def __init__(self, stream_id: str, reason: str):
        super().__init__(f"Failed to start stream {stream_id}: {reason}")
        self.stream_id = stream_id
        self.reason = reason


class StreamState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def playback_path_for(stream_id: str) -> str:
    return f"/stream/{stream_id}/{PLAYLIST_NAME}"


def check_stream_id(stream_id: str) -> str:
    """Stream ids end up in paths and URLs, so only allow a safe charset."""
    if not isinstance(stream_id, str) or not _STREAM_ID_RE.match(stream_id) or stream_id in (".", ".."):
        raise ConfigError("stream_id", f"invalid stream id {stream_id!r}")
    return stream_id


@dataclass
class StreamInfo:
    """Returned by a successful start."""

    stream_id: str
    playback_path: str
    output_dir: Path

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.stream_id,
            "playbackPath": self.playback_path,
            "outputDir": str(self.output_dir),
        }


@dataclass
class StreamStatus:
    """One entry of StreamSupervisor.list()."""

    stream_id: str
    output_dir: Path
    uptime_ms: int
    state: StreamState
    encoder: str
    pid: Optional[int]
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.stream_id,
            "outputDir": str(self.output_dir),
            "uptimeMs": self.uptime_ms,
            "state": self.state.value,
            "encoder": self.encoder,
            "pid": self.pid,
            "stats": dict(self.stats),
        }


@dataclass(eq=False)
class RunningStream:
    """A registered ffmpeg process."""

    stream_id: str
    process: Any  # subprocess.Popen
    output_dir: Path
    encoder: str
    diagnostics: StreamDiagnostics
    started_at: float = field(default_factory=time.monotonic)
    state: StreamState = StreamState.STARTING
    exited: threading.Event = field(default_factory=threading.Event)
    kill_timer: Optional[threading.Timer] = None

    def uptime_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def status(self) -> StreamStatus:
        return StreamStatus(
            stream_id=self.stream_id,
            output_dir=self.output_dir,
            uptime_ms=self.uptime_ms(),
            state=self.state,
            encoder=self.encoder,
            pid=getattr(self.process, "pid", None),
            stats=self.diagnostics.stats,
        )


class _IdLock:
    """Per-id lock plus the number of callers holding or waiting on it."""

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


# -------------------- SEGMENT WAIT --------------------


def has_segment(output_dir: Path) -> bool:
    try:
        return any(p.suffix == SEGMENT_SUFFIX for p in output_dir.iterdir())
    except OSError:
        # Directory might not exist yet
        return False


def wait_for_segments(
    output_dir: PathLike,
    timeout: float = 10.0,
    interval: float = 0.5,
    stop_event: Optional[threading.Event] = None,
) -> bool:
    """
    Poll output_dir until a media segment appears.

    Args:
        output_dir: Directory ffmpeg writes segments to.
        timeout: Seconds to wait before giving up.
        interval: Seconds between directory scans.
        stop_event: Ends the wait early once set (the process exited).

    Returns:
        True if a segment appeared, False on timeout or early stop.
    """
    output_dir = Path(output_dir)
    deadline = time.monotonic() + timeout
    while True:
        if has_segment(output_dir):
            logger.info(f"Segments detected in {output_dir}")
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(f"Timeout waiting for segments in {output_dir} ({timeout}s)")
            return False
        if stop_event is not None:
            if stop_event.is_set():
                return False
            stop_event.wait(min(interval, remaining))
        else:
            time.sleep(min(interval, remaining))


def clear_stale_output(output_dir: Path) -> None:
    """Remove a previous run's playlist and segments so the health wait is meaningful."""
    for path in output_dir.glob("stream_*" + SEGMENT_SUFFIX):
        path.unlink(missing_ok=True)
    (output_dir / PLAYLIST_NAME).unlink(missing_ok=True)


# -------------------- SUPERVISOR --------------------


class StreamSupervisor:
    """
    Starts, stops and tracks ffmpeg HLS streams.

    Registry reads and writes happen under one lock. Start and stop calls for
    the same stream id are additionally serialised by a per-id lock, so an id
    never has two live processes.

    Example:
        >>> supervisor = StreamSupervisor()
        >>> info = supervisor.start("lobby", "playlists/lobby_concat.txt", "output/lobby")
        >>> supervisor.list()
        >>> supervisor.stop("lobby")
    """

    def __init__(self, settings: Optional[Settings] = None, prober: Optional[CapabilityProber] = None):
        self.settings = (settings if settings is not None else load_settings()).validate()
        self.ffmpeg = self.settings.resolve_ffmpeg()
        self.prober = prober or CapabilityProber(
            self.ffmpeg,
            use_gpu=self.settings.use_gpu,
            probe_timeout=self.settings.probe_timeout,
            encoder_test_timeout=self.settings.encoder_test_timeout,
        )
        self._streams: Dict[str, RunningStream] = {}
        self._lock = threading.Lock()
        self._id_locks: Dict[str, _IdLock] = {}

    def __enter__(self) -> "StreamSupervisor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop_all(wait=True)

    # -------------------- capabilities --------------------

    def detect_capabilities(self) -> CapabilitySnapshot:
        """Detected capabilities (probed once, then cached). Never raises."""
        return self.prober.detect()

    # -------------------- registry helpers --------------------

    @contextmanager
    def _id_lock(self, stream_id: str) -> Iterator[None]:
        """Hold the per-id lock. The entry only lives while someone holds or waits on it."""
        with self._lock:
            entry = self._id_locks.get(stream_id)
            if entry is None:
                entry = self._id_locks[stream_id] = _IdLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._id_locks[stream_id]

    def get(self, stream_id: str) -> Optional[RunningStream]:
        with self._lock:
            return self._streams.get(stream_id)

    def _discard(self, stream: RunningStream) -> bool:
        """Remove stream from the registry if it is still the registered entry."""
        with self._lock:
            if self._streams.get(stream.stream_id) is stream:
                del self._streams[stream.stream_id]
                return True
        return False

    def __contains__(self, stream_id: str) -> bool:
        return self.get(stream_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._streams)

    # -------------------- start --------------------

    def _spawn(self, cmd: List[str]) -> subprocess.Popen:
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )

    def start(
        self,
        stream_id: str,
        manifest: PathLike,
        output_dir: Optional[PathLike] = None,
        cfg: Optional[StreamConfig] = None,
    ) -> StreamInfo:
        """
        Start (or restart) an HLS stream.

        Args:
            stream_id: Unique stream identifier.
            manifest: Concat manifest listing the source files.
            output_dir: Output directory (settings.output_root / stream_id if not provided).
            cfg: Stream options (settings.stream if not provided).

        Returns:
            StreamInfo with the playback path and output directory.

        Raises:
            ConfigError: Invalid stream id or options.
            StreamStartError: ffmpeg could not be launched.
        """
        check_stream_id(stream_id)
        if cfg is None:
            cfg = StreamConfig.from_options(base=self.settings.stream)
        else:
            cfg.validate()
        out = Path(output_dir) if output_dir is not None else self.settings.output_root / stream_id

        with self._id_lock(stream_id):
            previous = self._stop_locked(stream_id)
            if previous is not None:
                previous.exited.wait(self.settings.stop_grace_period + 1.0)

            snapshot = self.detect_capabilities()

            try:
                out.mkdir(parents=True, exist_ok=True)
                clear_stale_output(out)
            except OSError as e:
                raise StreamStartError(stream_id, str(e)) from e

            encoder, is_hardware = select_encoder(snapshot, cfg.use_gpu, cfg.encoder)
            logger.info(f"Stream {stream_id} using encoder: {encoder} ({'GPU' if is_hardware else 'CPU'})")

            cmd = build_hls_cmd(self.ffmpeg, manifest, out, cfg, encoder, is_hardware)
            logger.info(f"Starting stream: {stream_id}")
            logger.debug(f"Command: {shlex.join(cmd)}")

            diagnostics = StreamDiagnostics(self.settings.diagnostics_lines)
            try:
                process = self._spawn(cmd)
            except OSError as e:
                logger.error(f"Failed to start stream {stream_id}: {e}")
                raise StreamStartError(stream_id, str(e)) from e

            stream = RunningStream(
                stream_id=stream_id,
                process=process,
                output_dir=out,
                encoder=encoder,
                diagnostics=diagnostics,
            )
            with self._lock:
                self._streams[stream_id] = stream

            watcher = threading.Thread(
                target=self._watch,
                args=(stream,),
                daemon=True,
                name=f"hls-{stream_id}",
            )
            watcher.start()

        wait_for_segments(
            out,
            timeout=self.settings.segment_wait_timeout,
            interval=self.settings.segment_poll_interval,
            stop_event=stream.exited,
        )
        with self._lock:
            if stream.state is StreamState.STARTING:
                stream.state = StreamState.RUNNING

        return StreamInfo(stream_id=stream_id, playback_path=playback_path_for(stream_id), output_dir=out)

    # -------------------- process watching --------------------

    def _watch(self, stream: RunningStream) -> None:
        """Drain stderr, then report the exit. Runs on the stream's watcher thread."""
        proc = stream.process
        code: Optional[int] = None
        try:
            if proc.stderr is not None:
                for chunk in iter(lambda: proc.stderr.read1(4096), b""):
                    text = chunk.decode("utf-8", errors="replace")
                    for line in stream.diagnostics.feed(text):
                        logger.error(f"[ffmpeg {stream.stream_id}] {line}")
                for line in stream.diagnostics.flush():
                    logger.error(f"[ffmpeg {stream.stream_id}] {line}")
            code = proc.wait()
        except (OSError, ValueError) as e:
            logger.error(f"Lost track of stream {stream.stream_id}: {e}")
            code = proc.poll()
        finally:
            if proc.stderr is not None:
                try:
                    proc.stderr.close()
                except OSError:
                    pass
            self._on_exit(stream, code)

    def _on_exit(self, stream: RunningStream, code: Optional[int]) -> None:
        if stream.kill_timer is not None:
            stream.kill_timer.cancel()
        removed = self._discard(stream)

        if stream.state is StreamState.STOPPING or code == 0:
            logger.info(f"Stream {stream.stream_id} exited with code {code}")
        else:
            logger.error(f"Stream {stream.stream_id} exited with code {code}")
            tail = stream.diagnostics.tail()
            if tail:
                logger.error(f"ffmpeg stderr:\n{tail}")
        if removed:
            logger.debug(f"Stream {stream.stream_id} removed from registry")
        stream.exited.set()

    # -------------------- stop --------------------

    def _force_kill(self, stream: RunningStream) -> None:
        if stream.exited.is_set() or stream.process.poll() is not None:
            return
        logger.warning(f"Stream {stream.stream_id} ignored SIGTERM, killing")
        try:
            stream.process.kill()
        except OSError as e:
            logger.error(f"Error killing stream {stream.stream_id}: {e}")

    def _stop_locked(self, stream_id: str) -> Optional[RunningStream]:
        """Unregister and signal a stream. Caller holds the stream's id lock."""
        with self._lock:
            stream = self._streams.pop(stream_id, None)
            if stream is not None:
                stream.state = StreamState.STOPPING
        if stream is None:
            return None

        logger.info(f"Stopping stream: {stream_id}")
        try:
            if stream.process.poll() is None:
                stream.process.terminate()
        except OSError as e:
            logger.error(f"Error stopping stream {stream_id}: {e}")

        if not stream.exited.is_set():
            timer = threading.Timer(self.settings.stop_grace_period, self._force_kill, args=(stream,))
            timer.daemon = True
            stream.kill_timer = timer
            timer.start()
        return stream

    def stop(self, stream_id: str) -> None:
        """
        Stop a stream. Stopping an unknown stream is a no-op.

        The registry entry is removed immediately; the process gets SIGTERM and
        is killed if it is still alive after the grace period.
        """
        with self._id_lock(stream_id):
            if self._stop_locked(stream_id) is None:
                logger.info(f"Stream {stream_id} not found (already stopped?)")

    def stop_all(self, stream_ids: Optional[Iterable[str]] = None, wait: bool = False) -> None:
        """
        Stop several streams concurrently and return once every stop completed.

        Args:
            stream_ids: Streams to stop (all registered streams if not provided).
            wait: Also wait for each process to exit (bounded by the grace period).
        """
        with self._lock:
            targets = list(self._streams) if stream_ids is None else list(stream_ids)
            pending = [self._streams[s] for s in targets if s in self._streams]
        if not targets:
            return

        logger.info(f"Stopping {len(targets)} streams")
        with ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="hls-stop") as executor:
            for future in [executor.submit(self.stop, sid) for sid in targets]:
                future.result()

        if wait:
            for stream in pending:
                stream.exited.wait(self.settings.stop_grace_period + 1.0)

    # -------------------- queries --------------------

    def list(self) -> List[StreamStatus]:
        """Status of every registered stream."""
        with self._lock:
            streams = list(self._streams.values())
        return [s.status() for s in streams]

    def wait(self, stream_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the stream's process exits. True if it is gone."""
        stream = self.get(stream_id)
        if stream is None:
            return True
        return stream.exited.wait(timeout)
