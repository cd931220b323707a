"""
hlsstreamer - Continuous HLS streaming of local video files through ffmpeg.

Supervises ffmpeg processes that read a concat manifest of video files and
publish a rolling HLS playlist, using NVENC, AMF or Quick Sync when a working
GPU encoder is found and libx264 otherwise.

Example usage:
    # As a command-line tool
    $ hlsstreamer episode1.mkv episode2.mkv --stream-id lobby

    # As a Python module
    from hlsstreamer import StreamSupervisor, write_concat_manifest

    manifest = write_concat_manifest("playlists", "lobby", ["/videos/a.mkv"])
    with StreamSupervisor() as supervisor:
        info = supervisor.start("lobby", manifest)
"""

__version__ = "0.3.0"
__license__ = "MIT"
__url__ = "https://github.com/hlsstreamer/hlsstreamer"
__description__ = "Continuous HLS streaming of local video files through ffmpeg"

# Public API exports
from hlsstreamer.capabilities import CapabilityProber, CapabilitySnapshot, EncoderType, HardwareEncoders
from hlsstreamer.command import build_hls_args, build_hls_cmd
from hlsstreamer.config import ConfigError, Settings, StreamConfig, get_app_dirs, load_settings
from hlsstreamer.encoders import select_encoder
from hlsstreamer.playlist import validate_files, write_concat_manifest
from hlsstreamer.progress import StreamDiagnostics, parse_ffmpeg_progress
from hlsstreamer.supervisor import StreamInfo, StreamStartError, StreamStatus, StreamSupervisor

__all__ = [
    # Version info
    "__version__",
    "__license__",
    "__url__",
    # Config
    "ConfigError",
    "Settings",
    "StreamConfig",
    "get_app_dirs",
    "load_settings",
    # Capabilities
    "CapabilityProber",
    "CapabilitySnapshot",
    "EncoderType",
    "HardwareEncoders",
    "select_encoder",
    # Commands
    "build_hls_args",
    "build_hls_cmd",
    # Playlists
    "validate_files",
    "write_concat_manifest",
    # Supervisor
    "StreamDiagnostics",
    "StreamInfo",
    "StreamStartError",
    "StreamStatus",
    "StreamSupervisor",
    "parse_ffmpeg_progress",
]
