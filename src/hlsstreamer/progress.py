"""
ffmpeg diagnostics for running streams.

Keeps a bounded tail of each engine's stderr and extracts live encoding
statistics from its status lines.
"""

import re
import threading
from collections import deque
from typing import Any, Deque, Dict, List

def parse_ffmpeg_progress(line: str) -> Dict[str, Any]:
    """
    Parse an FFmpeg status line.

    Args:
        line: A line from FFmpeg stderr output.

    Returns:
        Dict with the metrics found on the line (missing ones are omitted):
        - frame: int
        - fps: float
        - current_time_ms: int
        - bitrate: str (e.g., "2500kbits/s")
        - speed: str (e.g., "1.0x")
        - size_bytes: int
    """
    result: Dict[str, Any] = {}

    # Accept both dot and comma as decimal separator
    m = re.search(r"time=\s*(\d+):(\d+):(\d+)[\.,](\d+)", line)
    if m:
        h, mi, s, cs = int(m.group(1)), int(m.group(2)), int(m.group(3)), int(m.group(4))
        result["current_time_ms"] = (h * 3600 + mi * 60 + s) * 1000 + cs * 10

    m = re.search(r"fps=\s*([0-9.]+)", line)
    if m:
        try:
            result["fps"] = float(m.group(1))
        except ValueError:
            pass

    m = re.search(r"speed=\s*([0-9.]+)x", line)
    if m:
        result["speed"] = f"{float(m.group(1)):.1f}x"

    m = re.search(r"bitrate=\s*([^\s]+)", line)
    if m:
        result["bitrate"] = m.group(1)

    m = re.search(r"frame=\s*(\d+)", line)
    if m:
        result["frame"] = int(m.group(1))

    m = re.search(r"size=\s*(\d+)(?:kB|KiB)", line)
    if m:
        result["size_bytes"] = int(m.group(1)) * 1024

    return result


def is_error_line(line: str) -> bool:
    """True for stderr lines that report an error."""
    return "error" in line.lower()


class StreamDiagnostics:
    """Thread-safe stderr tail plus the latest stats of one ffmpeg process."""

    def __init__(self, max_lines: int = 50):
        self._lines: Deque[str] = deque(maxlen=max(1, max_lines))
        self._stats: Dict[str, Any] = {}
        self._pending = ""
        self._lock = threading.Lock()

    def feed(self, chunk: str) -> List[str]:
        """
        Record a chunk of stderr output.

        Chunks may end mid-line; the incomplete remainder is held until the
        next chunk or flush().

        Returns:
            The complete lines in this chunk that reported errors.
        """
        with self._lock:
            data = self._pending + chunk
            parts = re.split(r"[\r\n]", data)
            self._pending = parts.pop()
        return self._record(parts)

    def flush(self) -> List[str]:
        """Record whatever partial line is still pending."""
        with self._lock:
            pending, self._pending = self._pending, ""
        return self._record([pending])

    def _record(self, lines: List[str]) -> List[str]:
        errors = []
        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            stats = parse_ffmpeg_progress(line)
            with self._lock:
                if stats:
                    self._stats.update(stats)
                else:
                    self._lines.append(line)
            if not stats and is_error_line(line):
                errors.append(line)
        return errors

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._stats)

    def tail(self, max_chars: int = 1000) -> str:
        """Most recent diagnostic output, at most max_chars long."""
        with self._lock:
            text = "\n".join(self._lines)
        return text[-max_chars:]
