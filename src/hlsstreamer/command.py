"""
ffmpeg command building for HLS output.

Every function here is pure: identical inputs always produce identical
argument lists, and nothing touches the filesystem. Arguments are kept as a
list and never joined into a shell string.
"""

import os
import sys
from pathlib import Path
from typing import List, Optional, Union

from hlsstreamer.capabilities import AMF_ENCODER, NVENC_ENCODER, QSV_ENCODER, VAAPI_ENCODER
from hlsstreamer.config import StreamConfig

PathLike = Union[str, Path]

PLAYLIST_NAME = "stream.m3u8"
SEGMENT_PATTERN = "stream_%03d.ts"
SEGMENT_SUFFIX = ".ts"

VAAPI_DEVICE = "/dev/dri/renderD128"
BUFFER_SIZE = "3000k"
AUDIO_SAMPLE_RATE = "48000"
AUDIO_CHANNELS = "2"
PIXEL_FORMAT = "yuv420p"
HLS_LIST_SIZE = "10"
HLS_FLAGS = "delete_segments+omit_endlist"


def playlist_path(output_dir: PathLike) -> str:
    return os.path.join(str(output_dir), PLAYLIST_NAME)


def segment_path_pattern(output_dir: PathLike) -> str:
    return os.path.join(str(output_dir), SEGMENT_PATTERN)


def hwaccel_args_for(encoder: str, platform: str = sys.platform) -> List[str]:
    """Hardware decode flags; these must come before the input."""
    if encoder == NVENC_ENCODER:
        return ["-hwaccel", "cuda", "-hwaccel_output_format", "cuda"]
    if encoder == QSV_ENCODER:
        return ["-hwaccel", "qsv"]
    if encoder == AMF_ENCODER:
        # AMF decodes through DirectX, only available on Windows
        if platform == "win32":
            return ["-hwaccel", "d3d11va"]
        return []
    if encoder == VAAPI_ENCODER:
        return ["-hwaccel", "vaapi", "-vaapi_device", VAAPI_DEVICE]
    return []


def input_args_for(manifest: PathLike) -> List[str]:
    """Concat demuxer input, read at native frame rate."""
    return ["-f", "concat", "-safe", "0", "-re", "-i", str(manifest)]


def video_args_for(encoder: str, cfg: StreamConfig) -> List[str]:
    """Get ffmpeg video encoding arguments for the specified encoder."""
    rate = [
        "-b:v",
        cfg.video_bitrate,
        "-maxrate",
        cfg.video_bitrate,
        "-bufsize",
        BUFFER_SIZE,
    ]

    if encoder == NVENC_ENCODER:
        # Presets: p1 (fastest) to p7 (slowest/best quality)
        return ["-c:v", encoder, "-preset", "p4", "-tune", "hq"] + rate + ["-rc", "vbr"]
    if encoder == QSV_ENCODER:
        return ["-c:v", encoder, "-preset", "medium"] + rate
    if encoder == AMF_ENCODER:
        # Quality modes: speed, balanced, quality
        return ["-c:v", encoder, "-quality", "balanced"] + rate
    if encoder == VAAPI_ENCODER:
        return ["-c:v", encoder] + rate
    return ["-c:v", encoder, "-preset", cfg.preset] + rate


def audio_args_for(cfg: StreamConfig) -> List[str]:
    return [
        "-c:a",
        "aac",
        "-b:a",
        cfg.audio_bitrate,
        "-ar",
        AUDIO_SAMPLE_RATE,
        "-ac",
        AUDIO_CHANNELS,
    ]


def video_filter_for(encoder: str, is_hardware: bool, resolution: str) -> str:
    """
    Build the scaling filter chain.

    NVENC scales on the GPU and downloads frames back to nv12. Every other
    path scales on the CPU keeping the aspect ratio and letterboxes to the
    exact target size ("1920x1080" for scale, "1920:1080" for pad).
    """
    if is_hardware and encoder == NVENC_ENCODER:
        return f"scale_cuda={resolution}:force_original_aspect_ratio=decrease,hwdownload,format=nv12"
    pad_resolution = resolution.replace("x", ":")
    return (
        f"scale={resolution}:force_original_aspect_ratio=decrease,"
        f"pad={pad_resolution}:(ow-iw)/2:(oh-ih)/2:black"
    )


def hls_args_for(output_dir: PathLike, cfg: StreamConfig) -> List[str]:
    """HLS muxer flags; the playlist never ends and old segments are deleted."""
    return [
        "-f",
        "hls",
        "-hls_time",
        cfg.segment_duration_arg,
        "-hls_list_size",
        HLS_LIST_SIZE,
        "-hls_flags",
        HLS_FLAGS,
        "-hls_segment_type",
        "mpegts",
        "-hls_segment_filename",
        segment_path_pattern(output_dir),
        "-y",
        playlist_path(output_dir),
    ]


def build_hls_args(
    manifest: PathLike,
    output_dir: PathLike,
    cfg: StreamConfig,
    encoder: str,
    is_hardware: bool,
    platform: str = sys.platform,
) -> List[str]:
    """
    Build the ffmpeg arguments (without the executable) for an HLS stream.

    Args:
        manifest: Concat manifest listing the source files.
        output_dir: Directory receiving stream.m3u8 and its segments.
        cfg: Validated stream options.
        encoder: Video encoder name.
        is_hardware: Whether hardware acceleration flags apply.
        platform: Target platform (sys.platform format).

    Returns:
        Ordered list of arguments.
    """
    args = ["-hide_banner"]

    if is_hardware:
        args += hwaccel_args_for(encoder, platform)

    args += input_args_for(manifest)
    args += video_args_for(encoder, cfg)
    args += audio_args_for(cfg)
    args += ["-vf", video_filter_for(encoder, is_hardware, cfg.resolution)]
    args += ["-pix_fmt", PIXEL_FORMAT, "-r", cfg.fps_arg]
    args += hls_args_for(output_dir, cfg)
    return args


def build_hls_cmd(
    ffmpeg: str,
    manifest: PathLike,
    output_dir: PathLike,
    cfg: StreamConfig,
    encoder: str,
    is_hardware: bool,
    platform: Optional[str] = None,
) -> List[str]:
    """Same as build_hls_args, with the ffmpeg executable prepended."""
    return [ffmpeg] + build_hls_args(
        manifest, output_dir, cfg, encoder, is_hardware, platform if platform is not None else sys.platform
    )
