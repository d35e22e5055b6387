"""
Decoder configuration.

Paths and log level come from the environment. Format thresholds live in
DecoderConfig so a caller (or a test) can switch the empirical heuristics
without touching module globals.
"""

import os
from dataclasses import dataclass, replace
from typing import Optional, Tuple

# Base paths
ARCHIVE_PATH = os.environ.get("TY_ARCHIVE_PATH", "")
OUTPUT_DIR = os.environ.get("TY_OUTPUT_DIR", os.path.join(os.getcwd(), "output"))
LOG_LEVEL = os.environ.get("TY_LOG_LEVEL", "INFO")
UV_SHIFT = os.environ.get("TY_UV_SHIFT", "auto")

UV_SHIFT_MODES = ("auto", "never", "always")
STRIP_HYPOTHESES = ("include", "exclude2", "exclude1")


@dataclass(frozen=True)
class DecoderConfig:
    """Tunables for header parsing, geometry decoding and strip assembly."""

    # Header sanity
    max_header_count: int = 1000
    legacy_offset_limit: int = 10000

    # Platform detection
    marker_scan_window: int = 1000
    strip_marker_search: int = 10000

    # PC vertex block search
    pc_vertex_stride: int = 48
    block_search_window: int = 5
    block_min_valid: int = 4
    position_limit: float = 1000.0
    nonzero_threshold: float = 0.0001
    normal_min: float = 0.2
    normal_max: float = 1.8

    # Filters
    position_epsilon: float = 1e-5
    box_quantize_scale: float = 1000.0
    box_max_points: int = 8
    collision_prefixes: Tuple[str, ...] = ("CM_", "cm_")

    # Empirical heuristics (format-ambiguous, keep switchable)
    uv_shift_mode: str = "auto"
    strip_hypotheses: Tuple[str, ...] = STRIP_HYPOTHESES

    # Fallback decoder
    fallback_max_vertices: int = 100000

    def __post_init__(self):
        if self.uv_shift_mode not in UV_SHIFT_MODES:
            raise ValueError(f"uv_shift_mode must be one of {UV_SHIFT_MODES}, got {self.uv_shift_mode!r}")
        unknown = [h for h in self.strip_hypotheses if h not in STRIP_HYPOTHESES]
        if unknown:
            raise ValueError(f"Unknown strip hypotheses: {unknown}")

    def with_overrides(self, **changes) -> "DecoderConfig":
        return replace(self, **changes)


def default_config(uv_shift_mode: Optional[str] = None) -> DecoderConfig:
    """Build the default config. The UV mode falls back to TY_UV_SHIFT."""
    return DecoderConfig(uv_shift_mode=uv_shift_mode or UV_SHIFT)
