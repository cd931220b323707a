"""
Configuration management for hlsstreamer.

Handles:
- XDG Base Directory compliance
- TOML/INI configuration file loading
- Stream options (StreamConfig) with boundary validation
- Supervisor settings (Settings) and environment overrides
- Locating the ffmpeg executable
"""

import configparser
import os
import re
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

# Try TOML support (Python 3.11+ or tomli package)
try:
    import tomllib  # Python 3.11+

    TOML_AVAILABLE = True
except ImportError:
    try:
        import tomli as tomllib  # pip install tomli

        TOML_AVAILABLE = True
    except ImportError:
        TOML_AVAILABLE = False


SOFTWARE_ENCODER = "libx264"

_BITRATE_RE = re.compile(r"^\d+(\.\d+)?[kKmM]?$")
_RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_]+$")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Invalid configuration value; ``field`` names the offending option."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


# -------------------- XDG DIRECTORIES --------------------


def get_xdg_config_home() -> Path:
    """Get XDG config home directory."""
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def get_xdg_state_home() -> Path:
    """Get XDG state home directory."""
    return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))


def get_xdg_cache_home() -> Path:
    """Get XDG cache home directory."""
    return Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))


def get_app_dirs() -> Dict[str, Path]:
    """Return all application directories, creating them if needed."""
    dirs = {
        "config": get_xdg_config_home() / "hlsstreamer",
        "state": get_xdg_state_home() / "hlsstreamer",
        "cache": get_xdg_cache_home() / "hlsstreamer",
        "playlists": get_xdg_cache_home() / "hlsstreamer" / "playlists",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


# -------------------- ENVIRONMENT --------------------


def _env_flag(name: str, environ: Optional[Mapping[str, str]] = None) -> Optional[bool]:
    """Read a boolean environment flag. Returns None when unset or unrecognised."""
    env = os.environ if environ is None else environ
    raw = env.get(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


def gpu_disabled_by_env(environ: Optional[Mapping[str, str]] = None) -> bool:
    """True when NO_GPU=true or USE_GPU=false is set."""
    return _env_flag("NO_GPU", environ) is True or _env_flag("USE_GPU", environ) is False


def find_ffmpeg(environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Locate the ffmpeg executable.

    Order:
    1. FFMPEG_PATH environment variable
    2. A bundled binary in ./bin next to the working directory
    3. ffmpeg from PATH
    """
    env = os.environ if environ is None else environ
    custom = env.get("FFMPEG_PATH")
    if custom:
        return custom

    name = "ffmpeg.exe" if sys.platform == "win32" else "ffmpeg"
    bundled = Path.cwd() / "bin" / name
    if bundled.is_file():
        return str(bundled)
    return name


# -------------------- STREAM OPTIONS --------------------


def _format_number(value: float) -> str:
    """Render 6.0 as "6" and 29.97 as "29.97"."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


@dataclass
class StreamConfig:
    """Per-stream encoding options supplied by the caller."""

    segment_duration: float = 6
    video_bitrate: str = "1500k"
    audio_bitrate: str = "128k"
    resolution: str = "1920x1080"
    fps: float = 30
    preset: str = "veryfast"
    encoder: Optional[str] = None  # Explicit encoder, bypasses selection
    use_gpu: bool = True

    def validate(self) -> "StreamConfig":
        """Raise ConfigError for the first invalid field. Returns self."""
        _check_positive("segment_duration", self.segment_duration)
        _check_positive("fps", self.fps)
        for name in ("video_bitrate", "audio_bitrate"):
            value = getattr(self, name)
            if not isinstance(value, str) or not _BITRATE_RE.match(value):
                raise ConfigError(name, f"invalid bitrate {value!r} (expected e.g. '1500k')")
        self.dimensions()
        if not isinstance(self.preset, str) or not _TOKEN_RE.match(self.preset):
            raise ConfigError("preset", f"invalid preset {self.preset!r}")
        if self.encoder is not None and (not isinstance(self.encoder, str) or not _TOKEN_RE.match(self.encoder)):
            raise ConfigError("encoder", f"invalid encoder {self.encoder!r}")
        if not isinstance(self.use_gpu, bool):
            raise ConfigError("use_gpu", "must be a boolean")
        return self

    def dimensions(self) -> Tuple[int, int]:
        """Parse the WIDTHxHEIGHT resolution."""
        m = _RESOLUTION_RE.match(self.resolution) if isinstance(self.resolution, str) else None
        if not m or int(m.group(1)) <= 0 or int(m.group(2)) <= 0:
            raise ConfigError("resolution", f"invalid resolution {self.resolution!r} (expected WIDTHxHEIGHT)")
        return int(m.group(1)), int(m.group(2))

    @property
    def segment_duration_arg(self) -> str:
        return _format_number(self.segment_duration)

    @property
    def fps_arg(self) -> str:
        return _format_number(self.fps)

    # JSON option names used by HTTP callers
    OPTION_NAMES = {
        "segmentDuration": "segment_duration",
        "videoBitrate": "video_bitrate",
        "audioBitrate": "audio_bitrate",
        "resolution": "resolution",
        "fps": "fps",
        "preset": "preset",
        "encoder": "encoder",
        "useGPU": "use_gpu",
    }

    @classmethod
    def from_options(cls, options: Optional[Mapping[str, Any]] = None, base: Optional["StreamConfig"] = None) -> "StreamConfig":
        """
        Build a validated StreamConfig from request options.

        Accepts both the camelCase option names (``segmentDuration``) and the
        attribute names (``segment_duration``). Unknown keys are rejected.

        Args:
            options: Mapping of option name to value (None for defaults).
            base: Defaults to start from (plain StreamConfig() if omitted).
        """
        values: Dict[str, Any] = {}
        if base is not None:
            values = {f.name: getattr(base, f.name) for f in fields(cls)}
        attr_names = {f.name for f in fields(cls)}
        for key, value in (options or {}).items():
            attr = cls.OPTION_NAMES.get(key, key)
            if attr not in attr_names:
                raise ConfigError(key, "unknown option")
            values[attr] = value
        return cls(**values).validate()


def _check_positive(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(name, f"must be a number, got {value!r}")
    if value <= 0:
        raise ConfigError(name, f"must be positive, got {value!r}")


# -------------------- SUPERVISOR SETTINGS --------------------


@dataclass
class Settings:
    """All configuration options for hlsstreamer."""

    # ffmpeg
    ffmpeg_path: Optional[str] = None  # None = locate automatically
    use_gpu: bool = True
    probe_timeout: float = 5.0
    encoder_test_timeout: float = 5.0

    # Output
    output_root: Path = Path("output")
    playlists_dir: Path = Path("playlists")

    # Supervisor
    segment_wait_timeout: float = 10.0
    segment_poll_interval: float = 0.5
    stop_grace_period: float = 2.0
    diagnostics_lines: int = 50

    # Debug
    debug: bool = False

    # Default stream options
    stream: StreamConfig = field(default_factory=StreamConfig)

    def validate(self) -> "Settings":
        """Raise ConfigError for the first invalid field. Returns self."""
        if self.ffmpeg_path is not None and (not isinstance(self.ffmpeg_path, str) or not self.ffmpeg_path):
            raise ConfigError("ffmpeg_path", f"invalid ffmpeg path {self.ffmpeg_path!r}")
        for name in ("use_gpu", "debug"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigError(name, "must be a boolean")
        for name in (
            "probe_timeout",
            "encoder_test_timeout",
            "segment_wait_timeout",
            "segment_poll_interval",
            "stop_grace_period",
        ):
            _check_positive(name, getattr(self, name))
        lines = self.diagnostics_lines
        if isinstance(lines, bool) or not isinstance(lines, int) or lines < 1:
            raise ConfigError("diagnostics_lines", f"must be an integer >= 1, got {lines!r}")
        for name in ("output_root", "playlists_dir"):
            if not isinstance(getattr(self, name), Path):
                raise ConfigError(name, "must be a path")
        self.stream.validate()
        return self

    def resolve_ffmpeg(self) -> str:
        """Return the configured ffmpeg path, locating it if unset."""
        return self.ffmpeg_path or find_ffmpeg()


def apply_env_overrides(settings: Settings, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Apply FFMPEG_PATH / NO_GPU / USE_GPU on top of settings."""
    env = os.environ if environ is None else environ
    if env.get("FFMPEG_PATH"):
        settings.ffmpeg_path = env["FFMPEG_PATH"]
    if gpu_disabled_by_env(env):
        settings.use_gpu = False
    return settings


# -------------------- CONFIG FILE LOADING --------------------


def _parse_ini_value(value: str):
    """Parse INI value: bool, int, float, or string."""
    v = value.strip()
    if not v:
        return ""
    if v.lower() in ("true", "yes", "on"):
        return True
    if v.lower() in ("false", "no", "off"):
        return False
    try:
        return int(v)
    except ValueError:
        pass
    try:
        return float(v)
    except ValueError:
        pass
    return v


def _load_ini_config(path: Path) -> Dict[str, Any]:
    """Load INI file and convert to nested dict."""
    cp = configparser.ConfigParser()
    cp.read(path)
    result: Dict[str, Any] = {}
    for section in cp.sections():
        result[section] = {}
        for key, value in cp.items(section):
            result[section][key] = _parse_ini_value(value)
    return result


def _load_single_config(config_dir: Path) -> Dict[str, Any]:
    """Load config from a single directory (TOML or INI file)."""
    toml_path = config_dir / "config.toml"
    ini_path = config_dir / "config.ini"

    if TOML_AVAILABLE and toml_path.exists():
        try:
            with toml_path.open("rb") as f:
                return dict(tomllib.load(f))
        except (OSError, tomllib.TOMLDecodeError) as e:
            print(f"Warning: Failed to load {toml_path}: {e}", file=sys.stderr)
            return {}
    elif ini_path.exists():
        try:
            return _load_ini_config(ini_path)
        except (OSError, configparser.Error) as e:
            print(f"Warning: Failed to load {ini_path}: {e}", file=sys.stderr)
            return {}
    return {}


def _deep_merge_dicts(base: dict, override: dict) -> dict:
    """Deep merge two dicts, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def load_config_file(config_dir: Path, system_config_dir: Path = Path("/etc/hlsstreamer")) -> dict:
    """
    Load config with priority:
    1. User config: ~/.config/hlsstreamer/config.toml (highest priority)
    2. System config: /etc/hlsstreamer/config.toml (lowest priority, optional)
    """
    system_config = {}
    if system_config_dir.exists():
        system_config = _load_single_config(system_config_dir)

    user_config = _load_single_config(config_dir)

    if system_config and user_config:
        return _deep_merge_dicts(system_config, user_config)
    return user_config or system_config or {}


_FILE_MAPPINGS = {
    ("ffmpeg", "path"): "ffmpeg_path",
    ("ffmpeg", "use_gpu"): "use_gpu",
    ("ffmpeg", "probe_timeout"): "probe_timeout",
    ("ffmpeg", "encoder_test_timeout"): "encoder_test_timeout",
    ("output", "root"): "output_root",
    ("output", "playlists"): "playlists_dir",
    ("supervisor", "segment_wait_timeout"): "segment_wait_timeout",
    ("supervisor", "segment_poll_interval"): "segment_poll_interval",
    ("supervisor", "stop_grace_period"): "stop_grace_period",
    ("supervisor", "diagnostics_lines"): "diagnostics_lines",
}

_STREAM_FILE_KEYS = {
    "segment_duration",
    "video_bitrate",
    "audio_bitrate",
    "resolution",
    "fps",
    "preset",
    "encoder",
    "use_gpu",
}


def apply_config_to_settings(file_config: dict, settings: Settings) -> None:
    """
    Apply file config values to a Settings instance.

    The ``[stream]`` section supplies default stream options and is validated
    like request options. Every other section is checked by Settings.validate(),
    so a bad file value raises ConfigError naming the field.
    """
    for (section, key), attr_name in _FILE_MAPPINGS.items():
        if section in file_config and key in file_config[section]:
            value = file_config[section][key]
            if attr_name in ("output_root", "playlists_dir"):
                if not isinstance(value, str) or not value:
                    raise ConfigError(attr_name, f"invalid path {value!r}")
                value = Path(value)
            setattr(settings, attr_name, value)

    stream_section = file_config.get("stream") or {}
    if stream_section:
        options = {k: v for k, v in stream_section.items() if k in _STREAM_FILE_KEYS}
        settings.stream = StreamConfig.from_options(options, base=settings.stream)
    settings.validate()


def _get_default_config_toml() -> str:
    """Return default config as TOML string."""
    return """# hlsstreamer configuration file
# This file is auto-generated on first run

[ffmpeg]
# path = "/usr/local/bin/ffmpeg"
use_gpu = true
probe_timeout = 5.0
encoder_test_timeout = 5.0

[output]
root = "output"
playlists = "playlists"

[supervisor]
segment_wait_timeout = 10.0
segment_poll_interval = 0.5
stop_grace_period = 2.0
diagnostics_lines = 50

[stream]
segment_duration = 6
video_bitrate = "1500k"
audio_bitrate = "128k"
resolution = "1920x1080"
fps = 30
preset = "veryfast"
"""


def _get_default_config_ini() -> str:
    """Return default config as INI string."""
    return """# hlsstreamer configuration file
# This file is auto-generated on first run

[ffmpeg]
# path = /usr/local/bin/ffmpeg
use_gpu = true
probe_timeout = 5.0
encoder_test_timeout = 5.0

[output]
root = output
playlists = playlists

[supervisor]
segment_wait_timeout = 10.0
segment_poll_interval = 0.5
stop_grace_period = 2.0
diagnostics_lines = 50

[stream]
segment_duration = 6
video_bitrate = 1500k
audio_bitrate = 128k
resolution = 1920x1080
fps = 30
preset = veryfast
"""


def save_default_config(config_dir: Path) -> Path:
    """Create default config file (TOML if available, else INI). Returns path."""
    config_dir.mkdir(parents=True, exist_ok=True)

    if TOML_AVAILABLE:
        path = config_dir / "config.toml"
        if not path.exists():
            path.write_text(_get_default_config_toml())
        return path
    path = config_dir / "config.ini"
    if not path.exists():
        path.write_text(_get_default_config_ini())
    return path


def load_settings(config_dir: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from defaults, config files and the environment.

    Priority (lowest to highest): defaults, system config, user config,
    environment variables.
    """
    settings = Settings()
    if config_dir is not None:
        file_config = load_config_file(config_dir)
        if file_config:
            apply_config_to_settings(file_config, settings)
    return apply_env_overrides(settings, environ)
