"""
Hardware encoder detection for hlsstreamer.

Lists the encoders compiled into ffmpeg, then proves each hardware encoder
works by encoding a tiny synthetic clip. The outcome is computed once per
prober and shared by every caller.
"""

import logging
import subprocess
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from hlsstreamer.config import SOFTWARE_ENCODER, gpu_disabled_by_env

logger = logging.getLogger(__name__)

NVENC_ENCODER = "h264_nvenc"
AMF_ENCODER = "h264_amf"
QSV_ENCODER = "h264_qsv"
VAAPI_ENCODER = "h264_vaapi"
VIDEOTOOLBOX_ENCODER = "h264_videotoolbox"


class EncoderType(Enum):
    CPU = "CPU"
    NVIDIA = "NVIDIA GPU"
    AMD = "AMD GPU"
    INTEL_QSV = "Intel Quick Sync"


@dataclass(frozen=True)
class HardwareEncoders:
    """Hardware encoders present in the ffmpeg build (not necessarily usable)."""

    nvenc: bool = False
    amf: bool = False
    qsv: bool = False
    vaapi: bool = False
    videotoolbox: bool = False

    def any(self) -> bool:
        return self.nvenc or self.amf or self.qsv or self.vaapi or self.videotoolbox


@dataclass(frozen=True)
class CapabilitySnapshot:
    """Result of capability detection. Never mutated once created."""

    encoder_type: EncoderType = EncoderType.CPU
    encoder: str = SOFTWARE_ENCODER
    hw_encoders: HardwareEncoders = field(default_factory=HardwareEncoders)
    hw_accel_available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.encoder_type.value,
            "encoder": self.encoder,
            "hwEncoders": asdict(self.hw_encoders),
            "hwAccelAvailable": self.hw_accel_available,
        }


CPU_SNAPSHOT = CapabilitySnapshot()

# Probe order: NVIDIA first, then AMD, then Intel
VENDOR_PRIORITY = (
    ("nvenc", NVENC_ENCODER, EncoderType.NVIDIA),
    ("amf", AMF_ENCODER, EncoderType.AMD),
    ("qsv", QSV_ENCODER, EncoderType.INTEL_QSV),
)


# -------------------- PROBING PRIMITIVES --------------------


def run_quiet(cmd: List[str], timeout: float = 10.0) -> bool:
    """Run a command quietly, return True if successful."""
    try:
        p = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=timeout)
        return p.returncode == 0
    except (OSError, subprocess.SubprocessError):
        return False


def list_encoders(ffmpeg: str, timeout: float = 5.0) -> Optional[str]:
    """Return the text of `ffmpeg -encoders`, or None if introspection failed."""
    try:
        result = subprocess.run(
            [ffmpeg, "-hide_banner", "-encoders"], capture_output=True, text=True, timeout=timeout
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"Encoder listing timed out after {timeout}s")
        return None
    except OSError as e:
        logger.warning(f"Could not run {ffmpeg}: {e}")
        return None
    if result.returncode != 0:
        logger.warning(f"Encoder listing failed (rc={result.returncode})")
        return None
    return result.stdout


def _has_encoder(listing: str, name: str) -> bool:
    # Format is like: " V....D h264_nvenc   NVIDIA NVENC H.264 encoder"
    for line in listing.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == name:
            return True
    return False


def parse_hw_encoders(listing: str) -> HardwareEncoders:
    """Parse an encoder listing into per-vendor presence flags."""
    return HardwareEncoders(
        nvenc=_has_encoder(listing, NVENC_ENCODER),
        amf=_has_encoder(listing, AMF_ENCODER),
        qsv=_has_encoder(listing, QSV_ENCODER),
        vaapi=_has_encoder(listing, VAAPI_ENCODER),
        videotoolbox=_has_encoder(listing, VIDEOTOOLBOX_ENCODER),
    )


def probe_encoder(ffmpeg: str, encoder: str, timeout: float = 5.0) -> bool:
    """Test if an encoder actually works by encoding a single black clip."""
    cmd = [
        ffmpeg,
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "lavfi",
        "-i",
        "color=black:s=64x64:d=0.1",
        "-c:v",
        encoder,
        "-f",
        "null",
        "-",
    ]
    return run_quiet(cmd, timeout=timeout)


# -------------------- PROBER --------------------


class CapabilityProber:
    """
    Detects and caches hardware encoding capabilities.

    The first call to detect() runs the probe while holding a lock; concurrent
    callers block on that lock and then reuse the cached snapshot, so ffmpeg is
    introspected at most once per prober.
    """

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        use_gpu: bool = True,
        probe_timeout: float = 5.0,
        encoder_test_timeout: float = 5.0,
    ):
        self.ffmpeg = ffmpeg
        self.use_gpu = use_gpu
        self.probe_timeout = probe_timeout
        self.encoder_test_timeout = encoder_test_timeout
        self._snapshot: Optional[CapabilitySnapshot] = None
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> Optional[CapabilitySnapshot]:
        """Cached snapshot, or None if detection has not run yet."""
        return self._snapshot

    def detect(self) -> CapabilitySnapshot:
        """Return the capability snapshot, probing on first use. Never raises."""
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self._probe()
            return self._snapshot

    def _probe(self) -> CapabilitySnapshot:
        if not self.use_gpu or gpu_disabled_by_env():
            logger.info("GPU disabled via configuration, using CPU encoding")
            return CPU_SNAPSHOT

        logger.info("Detecting GPU capabilities...")
        try:
            listing = list_encoders(self.ffmpeg, timeout=self.probe_timeout)
            if listing is None:
                logger.warning("GPU detection failed, falling back to CPU encoding")
                return CPU_SNAPSHOT

            hw = parse_hw_encoders(listing)
            snapshot = CapabilitySnapshot(hw_encoders=hw)
            for flag, encoder, encoder_type in VENDOR_PRIORITY:
                if not getattr(hw, flag):
                    continue
                logger.info(f"Testing {encoder_type.value} ({encoder})...")
                if probe_encoder(self.ffmpeg, encoder, timeout=self.encoder_test_timeout):
                    logger.info(f"{encoder} is working")
                    snapshot = CapabilitySnapshot(
                        encoder_type=encoder_type,
                        encoder=encoder,
                        hw_encoders=hw,
                        hw_accel_available=True,
                    )
                    break
                logger.warning(f"{encoder} found but not functional (no GPU or driver issue)")
        except Exception as e:  # never propagates
            logger.warning(f"GPU detection failed, falling back to CPU encoding: {e}")
            return CPU_SNAPSHOT

        logger.info(
            f"GPU detection: type={snapshot.encoder_type.value} encoder={snapshot.encoder} "
            f"hwaccel={'enabled' if snapshot.hw_accel_available else 'disabled (using CPU)'}"
        )
        if not snapshot.hw_accel_available and hw.any():
            logger.info("GPU encoders are built into ffmpeg but no working GPU was found")
        return snapshot
