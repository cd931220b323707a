"""
Concat manifest writer.

Writes the text file read by ffmpeg's concat demuxer:

    file '/absolute/path/to/episode1.mkv'
    file '/absolute/path/to/it'\\''s here.mp4'
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

CONCAT_SUFFIX = "_concat.txt"


@dataclass
class FileValidation:
    """Which of the requested source files exist."""

    total: int
    existing: int
    missing: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"total": self.total, "existing": self.existing, "missing": list(self.missing)}


def escape_concat_path(path: PathLike) -> str:
    """Quote a path for a concat manifest line (forward slashes, '\\'' for quotes)."""
    normalized = str(path).replace("\\", "/")
    return "'" + normalized.replace("'", "'\\''") + "'"


def format_concat_manifest(files: Iterable[PathLike]) -> str:
    lines = [f"file {escape_concat_path(f)}" for f in files]
    return "\n".join(lines) + "\n"


def concat_manifest_path(playlists_dir: PathLike, playlist_id: str) -> Path:
    return Path(playlists_dir) / f"{playlist_id}{CONCAT_SUFFIX}"


def write_concat_manifest(playlists_dir: PathLike, playlist_id: str, files: Sequence[PathLike]) -> Path:
    """
    Write the concat manifest for a playlist.

    Args:
        playlists_dir: Directory holding manifests (created if needed).
        playlist_id: Playlist identifier, used in the file name.
        files: Source media files, played back to back.

    Returns:
        Path to the written manifest.
    """
    if not files:
        raise ValueError("files must be a non-empty list")

    path = concat_manifest_path(playlists_dir, playlist_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_concat_manifest(files), encoding="utf-8")

    logger.info(f"Created concat file: {path} ({len(files)} files)")
    return path


def validate_files(files: Sequence[PathLike]) -> FileValidation:
    """Report missing source files. Missing files are logged, not fatal."""
    missing = [str(f) for f in files if not Path(f).is_file()]
    if missing:
        logger.warning(f"{len(missing)} files not found:")
        for name in missing:
            logger.warning(f"  - {name}")
    return FileValidation(total=len(files), existing=len(files) - len(missing), missing=missing)


def list_concat_manifests(playlists_dir: PathLike) -> List[str]:
    try:
        return sorted(p.name for p in Path(playlists_dir).iterdir() if p.name.endswith(CONCAT_SUFFIX))
    except OSError:
        return []


def delete_concat_manifest(playlists_dir: PathLike, playlist_id: str) -> bool:
    path = concat_manifest_path(playlists_dir, playlist_id)
    try:
        path.unlink()
    except OSError as e:
        logger.error(f"Failed to delete concat file: {e}")
        return False
    logger.info(f"Deleted concat file: {path}")
    return True
