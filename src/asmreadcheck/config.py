"""Scan settings.

A :class:`ScanConfig` is built once (usually from CLI flags), validated eagerly
and then passed explicitly to every stage. Nothing reads settings from global
state, so a contig can be analysed in isolation with just a config value.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigError
from .models import CHANNEL_ORDER, CHANNELS, Direction

DEFAULT_Z_THRESHOLD = 3.0

_MEM_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)B?\s*$", re.IGNORECASE)
_MEM_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_memory(text: str) -> int:
    """Parse a size like ``512M`` or ``4G`` into bytes."""
    m = _MEM_RE.match(text)
    if m is None:
        raise ConfigError(f"Cannot parse memory size: {text!r} (expected e.g. 512M, 4G)")
    return int(float(m.group(1)) * _MEM_UNITS[m.group(2).upper()])


def parse_threshold(spec: str) -> Tuple[str, float]:
    """Parse a ``CHANNEL=VALUE`` threshold override."""
    if "=" not in spec:
        raise ConfigError(f"Threshold must look like CHANNEL=VALUE, got {spec!r}")
    name, value = spec.split("=", 1)
    name = name.strip()
    try:
        return name, float(value)
    except ValueError:
        raise ConfigError(f"Threshold value for {name!r} is not a number: {value!r}") from None


def _default_thresholds() -> Dict[str, float]:
    return {name: DEFAULT_Z_THRESHOLD for name in CHANNEL_ORDER}


@dataclass(frozen=True)
class ScanConfig:
    """Immutable settings for a scan.

    ``z_thresholds`` may be given signed or as magnitudes. A sign must agree
    with the channel's declared direction (e.g. ``coverage=-3`` for the LOW
    coverage channel); a positive threshold on a LOW channel is read as a
    magnitude. After validation ``threshold(channel)`` always returns the
    magnitude.
    """

    min_mapping_quality: int = 10
    window_width: int = 200
    window_step: int = 50
    z_thresholds: Mapping[str, float] = field(default_factory=_default_thresholds)
    merge_gap: int = 100
    min_window_coverage_fraction: float = 0.5
    channels: Tuple[str, ...] = CHANNEL_ORDER

    min_dist_to_end: int = 100
    clipping_ratio: float = 1.0
    min_clip_length: int = 1
    count_hard_clips: bool = True

    include_secondary: bool = False
    include_supplementary: bool = False
    skip_duplicates: bool = True
    skip_qcfail: bool = True

    workers: int = 1
    max_memory_bytes: Optional[int] = None
    window_chunk: int = 4096

    def __post_init__(self) -> None:
        object.__setattr__(self, "channels", tuple(self.channels))
        merged = _default_thresholds()
        merged.update(dict(self.z_thresholds))
        object.__setattr__(self, "z_thresholds", merged)
        self.validate()

    def validate(self) -> None:
        if self.window_width <= 0:
            raise ConfigError(f"window_width must be > 0, got {self.window_width}")
        if self.window_step <= 0:
            raise ConfigError(f"window_step must be > 0, got {self.window_step}")
        if self.window_step > self.window_width:
            raise ConfigError(
                f"window_step ({self.window_step}) must be <= window_width ({self.window_width})"
            )
        if self.min_mapping_quality < 0:
            raise ConfigError("min_mapping_quality must be >= 0")
        if self.merge_gap < 0:
            raise ConfigError("merge_gap must be >= 0")
        if not 0.0 <= self.min_window_coverage_fraction <= 1.0:
            raise ConfigError("min_window_coverage_fraction must be in [0, 1]")
        if self.min_dist_to_end < 0:
            raise ConfigError("min_dist_to_end must be >= 0")
        if self.clipping_ratio < 0:
            raise ConfigError("clipping_ratio must be >= 0")
        if self.min_clip_length < 1:
            raise ConfigError("min_clip_length must be >= 1")
        if self.workers < 1:
            raise ConfigError("workers must be >= 1")
        if self.max_memory_bytes is not None and self.max_memory_bytes <= 0:
            raise ConfigError("max_memory_bytes must be > 0")
        if self.window_chunk < 1:
            raise ConfigError("window_chunk must be >= 1")

        if not self.channels:
            raise ConfigError("At least one channel must be enabled")
        for name in self.channels:
            if name not in CHANNELS:
                raise ConfigError(f"Unknown channel {name!r}; known: {', '.join(CHANNEL_ORDER)}")
        if len(set(self.channels)) != len(self.channels):
            raise ConfigError("Channels must not repeat")

        for name, value in self.z_thresholds.items():
            if name not in CHANNELS:
                raise ConfigError(f"Threshold given for unknown channel {name!r}")
            if not math.isfinite(value) or value == 0:
                raise ConfigError(f"Threshold for {name} must be a non-zero finite number")
            direction = CHANNELS[name].direction
            if value < 0 and direction is not Direction.LOW:
                raise ConfigError(
                    f"Negative threshold {value} for {name}, which flags "
                    f"{direction.value} deviations; use a positive value"
                )

    def threshold(self, channel: str) -> float:
        return abs(float(self.z_thresholds[channel]))

    @property
    def enabled_channels(self) -> Tuple[str, ...]:
        """Enabled channels in canonical order."""
        return tuple(c for c in CHANNEL_ORDER if c in self.channels)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["z_thresholds"] = dict(self.z_thresholds)
        d["channels"] = list(self.channels)
        return d
