"""Encoder selection policy."""

from typing import Optional, Tuple

from hlsstreamer.capabilities import CapabilitySnapshot
from hlsstreamer.config import SOFTWARE_ENCODER


def is_hardware_encoder(encoder: str) -> bool:
    """Every encoder other than the software one is treated as hardware."""
    return encoder != SOFTWARE_ENCODER


def select_encoder(
    snapshot: CapabilitySnapshot,
    wants_gpu: bool = True,
    override: Optional[str] = None,
) -> Tuple[str, bool]:
    """
    Pick the video encoder for a stream.

    Priority:
    1. Explicit override, used verbatim
    2. The detected encoder when GPU use is wanted (already libx264 if no
       hardware encoder proved functional)
    3. libx264

    Args:
        snapshot: Detected capabilities.
        wants_gpu: Caller allows hardware encoding.
        override: Encoder name that bypasses detection.

    Returns:
        Tuple of (encoder, is_hardware).
    """
    if override:
        return override, is_hardware_encoder(override)
    if wants_gpu:
        return snapshot.encoder, is_hardware_encoder(snapshot.encoder)
    return SOFTWARE_ENCODER, False
