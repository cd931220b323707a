"""
Command-line interface for hlsstreamer.

This is the main entry point for the application.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from hlsstreamer import __license__, __url__, __version__
from hlsstreamer.capabilities import CapabilitySnapshot
from hlsstreamer.config import (
    ConfigError,
    Settings,
    StreamConfig,
    get_app_dirs,
    load_settings,
    save_default_config,
)
from hlsstreamer.playlist import validate_files, write_concat_manifest
from hlsstreamer.supervisor import StreamStartError, StreamSupervisor, check_stream_id

logger = logging.getLogger("hlsstreamer")


def _should_use_color() -> bool:
    """Check if color output should be used."""
    # Check NO_COLOR environment variable (https://no-color.org/)
    if os.getenv("NO_COLOR"):
        return False
    try:
        if not sys.stdout.isatty():
            return False
    except (AttributeError, ValueError):
        return False
    return True


def make_console(stderr: bool = False) -> Console:
    use_color = _should_use_color()
    return Console(stderr=stderr, force_terminal=use_color if use_color else None, no_color=not use_color)


def setup_logging(debug: bool = False, console: Optional[Console] = None) -> None:
    """Route log records through rich, DEBUG level with --debug."""
    handler = RichHandler(
        console=console or make_console(stderr=True),
        show_path=debug,
        markup=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


# -------------------- ARGUMENT PARSING --------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hlsstreamer",
        description="Stream a list of local video files as a continuous HLS feed using ffmpeg.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --detect                       # Show GPU / encoder capabilities
  %(prog)s ep1.mkv ep2.mkv                # Stream two files back to back
  %(prog)s *.mp4 --stream-id lobby        # Custom stream id
  %(prog)s *.mp4 --no-gpu --preset fast   # Force CPU encoding
  %(prog)s *.mp4 --encoder h264_qsv       # Force a specific encoder
  %(prog)s --show-dirs                    # Show config/cache directories
        """,
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}\nLicense: {__license__}\nURL: {__url__}",
    )
    parser.add_argument("files", nargs="*", help="Video files to stream, in playback order")

    stream_group = parser.add_argument_group("Stream settings")
    stream_group.add_argument("--stream-id", default="stream", help="Stream identifier (default: stream)")
    stream_group.add_argument("--output-root", type=Path, help="Directory holding per-stream output")
    stream_group.add_argument("--playlists-dir", type=Path, help="Directory for concat manifests")

    enc_group = parser.add_argument_group("Encoding")
    enc_group.add_argument("--segment-duration", type=float, help="HLS segment length in seconds (default: 6)")
    enc_group.add_argument("--video-bitrate", help="Video bitrate, e.g. 1500k")
    enc_group.add_argument("--audio-bitrate", help="Audio bitrate, e.g. 128k")
    enc_group.add_argument("--resolution", help="Output size WIDTHxHEIGHT (default: 1920x1080)")
    enc_group.add_argument("--fps", type=float, help="Output frame rate (default: 30)")
    enc_group.add_argument("--preset", help="libx264 preset (default: veryfast)")
    enc_group.add_argument("--encoder", help="Force a video encoder, e.g. h264_nvenc or libx264")
    enc_group.add_argument("--no-gpu", action="store_true", help="Disable hardware encoding")
    enc_group.add_argument("--ffmpeg", help="Path to the ffmpeg executable (default: $FFMPEG_PATH or PATH)")

    util_group = parser.add_argument_group("Utilities")
    util_group.add_argument("--detect", action="store_true", help="Print detected capabilities and exit")
    util_group.add_argument("--show-dirs", action="store_true", help="Print application directories and exit")
    util_group.add_argument("-d", "--debug", action="store_true", help="Enable debug output")

    return parser


_STREAM_FLAGS = {
    "segment_duration": "segment_duration",
    "video_bitrate": "video_bitrate",
    "audio_bitrate": "audio_bitrate",
    "resolution": "resolution",
    "fps": "fps",
    "preset": "preset",
    "encoder": "encoder",
}


def build_settings(args: argparse.Namespace, config_dir: Optional[Path] = None) -> Settings:
    """Settings from config files and environment, then CLI flags on top."""
    settings = load_settings(config_dir)
    settings.debug = args.debug
    if args.ffmpeg:
        settings.ffmpeg_path = args.ffmpeg
    if args.no_gpu:
        settings.use_gpu = False
    if args.output_root is not None:
        settings.output_root = args.output_root
    if args.playlists_dir is not None:
        settings.playlists_dir = args.playlists_dir

    overrides: Dict[str, Any] = {}
    for dest, option in _STREAM_FLAGS.items():
        value = getattr(args, dest)
        if value is not None:
            overrides[option] = value
    if args.no_gpu:
        overrides["use_gpu"] = False
    settings.stream = StreamConfig.from_options(overrides, base=settings.stream)
    return settings.validate()


# -------------------- OUTPUT --------------------


def print_capabilities(console: Console, snapshot: CapabilitySnapshot, ffmpeg: str) -> None:
    table = Table(title="Encoding capabilities")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("ffmpeg", ffmpeg)
    table.add_row("GPU type", snapshot.encoder_type.value)
    table.add_row("Selected encoder", snapshot.encoder)
    table.add_row(
        "Hardware acceleration",
        "[green]enabled[/green]" if snapshot.hw_accel_available else "[yellow]disabled (using CPU)[/yellow]",
    )
    for name, present in snapshot.to_dict()["hwEncoders"].items():
        table.add_row(f"  {name}", "built in" if present else "[dim]-[/dim]")
    console.print(table)

    if snapshot.hw_accel_available:
        console.print(f"Streams will use [bold]{snapshot.encoder}[/bold] for hardware acceleration.")
    else:
        console.print("No GPU detected. Streams will use CPU encoding (libx264).")


def print_dirs(console: Console, dirs: Dict[str, Path]) -> None:
    for name, path in dirs.items():
        console.print(f"[cyan]{name:>10}[/cyan]: {path}")


# -------------------- STREAMING --------------------


def run_stream(console: Console, supervisor: StreamSupervisor, files: List[str], stream_id: str) -> int:
    """Start one stream and keep it alive until Ctrl+C or ffmpeg exits."""
    settings = supervisor.settings
    validation = validate_files(files)
    if validation.existing == 0:
        console.print("[red]None of the given files exist.[/red]")
        return 1

    sources = [str(Path(f).resolve()) for f in files]
    manifest = write_concat_manifest(settings.playlists_dir, stream_id, sources)
    output_dir = settings.output_root / stream_id

    try:
        info = supervisor.start(stream_id, manifest, output_dir, settings.stream)
    except StreamStartError as e:
        console.print(f"[red]✗ {e}[/red]")
        return 1

    console.print(f"[green]▶[/green] Stream [bold]{info.stream_id}[/bold] started")
    console.print(f"  [dim]playlist:[/dim] {info.output_dir / 'stream.m3u8'}")
    console.print(f"  [dim]path:[/dim]     {info.playback_path}")
    console.print("  [dim]Press Ctrl+C to stop[/dim]")

    try:
        while not supervisor.wait(stream_id, timeout=1.0):
            pass
    except KeyboardInterrupt:
        console.print("\n🛑 Stopping...")
        supervisor.stop_all(wait=True)
        return 130

    console.print(f"Stream [bold]{stream_id}[/bold] ended")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    console = make_console()
    setup_logging(args.debug)

    app_dirs = get_app_dirs()
    save_default_config(app_dirs["config"])

    if args.show_dirs:
        print_dirs(console, app_dirs)
        return 0

    try:
        settings = build_settings(args, app_dirs["config"])
        check_stream_id(args.stream_id)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        return 2

    supervisor = StreamSupervisor(settings)
    logger.debug(f"Using ffmpeg: {supervisor.ffmpeg}")

    if args.detect:
        print_capabilities(console, supervisor.detect_capabilities(), supervisor.ffmpeg)
        return 0

    if not args.files:
        parser.print_usage(sys.stderr)
        console.print("[red]No input files given.[/red]")
        return 2

    return run_stream(console, supervisor, args.files, args.stream_id)


if __name__ == "__main__":
    sys.exit(main())
