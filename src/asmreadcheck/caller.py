"""Anomaly calling: thresholds, per-channel region building, cross-channel merge."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional

import numpy as np

from .config import ScanConfig
from .models import CHANNELS, Direction, FlaggedRegion, sort_channels
from .windows import WindowTable

logger = logging.getLogger(__name__)


class RegionState(str, Enum):
    SCANNING = "scanning"
    FLAGGED = "flagged"
    MERGING = "merging"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChannelRegion:
    """Union of consecutive flagged windows of one channel.

    ``peak_z`` is the largest |z| among the windows, ``n_windows`` how many
    windows were merged.
    """

    contig: str
    channel: str
    start: int
    end: int
    peak_z: float
    n_windows: int


def flag_windows(table: WindowTable, config: ScanConfig, contig_length: int) -> np.ndarray:
    """Boolean mask of windows deviating in the channel's declared direction.

    Insufficient windows (NaN z) never flag. Windows reaching into the first
    or last ``min_dist_to_end`` bases are ignored, since read depth tapers off
    towards contig ends. A contig no longer than twice the margin keeps all
    its windows.
    """
    z = table.z_scores
    t = config.threshold(table.channel)
    direction = CHANNELS[table.channel].direction
    with np.errstate(invalid="ignore"):
        if direction is Direction.LOW:
            mask = z <= -t
        elif direction is Direction.HIGH:
            mask = z >= t
        else:
            mask = np.abs(z) >= t
    mask &= table.sufficient

    margin = config.min_dist_to_end
    if margin > 0 and contig_length > 2 * margin:
        near_start = table.starts < margin
        near_end = table.ends > contig_length - margin
        mask &= ~(near_start | near_end)
    return mask


class _RegionBuilder:
    """Consumes flagged windows of one channel once, in coordinate order.

    scanning -> flagged (first window opens a region) -> merging (each
    overlapping or abutting window extends it) -> closed (a window beyond the
    current end, or the end of input, emits it). A closed region is never
    reopened.
    """

    def __init__(self, contig: str, channel: str, contig_length: int) -> None:
        self.contig = contig
        self.channel = channel
        self.contig_length = contig_length
        self.state = RegionState.SCANNING
        self.regions: List[ChannelRegion] = []
        self._start = 0
        self._end = 0
        self._peak = 0.0
        self._n = 0
        self._last_start = -1

    def feed(self, start: int, end: int, z: float) -> None:
        if start < self._last_start:
            raise ValueError("Windows must be fed in coordinate order")
        self._last_start = start
        if self.state in (RegionState.FLAGGED, RegionState.MERGING):
            if start <= self._end:
                self.state = RegionState.MERGING
                self._end = max(self._end, end)
                self._peak = max(self._peak, abs(z))
                self._n += 1
                return
            self._close()
        self.state = RegionState.FLAGGED
        self._start, self._end, self._peak, self._n = start, end, abs(z), 1

    def _close(self) -> None:
        self.regions.append(
            ChannelRegion(
                contig=self.contig,
                channel=self.channel,
                start=max(self._start, 0),
                end=min(self._end, self.contig_length),
                peak_z=self._peak,
                n_windows=self._n,
            )
        )
        self.state = RegionState.CLOSED

    def finish(self) -> List[ChannelRegion]:
        if self.state in (RegionState.FLAGGED, RegionState.MERGING):
            self._close()
        return self.regions


def call_channel_regions(
    table: WindowTable, config: ScanConfig, contig_length: int
) -> List[ChannelRegion]:
    mask = flag_windows(table, config, contig_length)
    builder = _RegionBuilder(table.contig, table.channel, contig_length)
    for i in np.flatnonzero(mask).tolist():
        builder.feed(int(table.starts[i]), int(table.ends[i]), float(table.z_scores[i]))
    return builder.finish()


def combine_confidence(channel_z: Mapping[str, float], config: ScanConfig) -> float:
    """Noisy-OR of per-channel evidence, each scaled by its threshold.

    ``1 - 2 ** (-sum(|z_c| / t_c))``: increases with every |z_c|, stays in
    [0, 1), and a single channel exactly at threshold gives 0.5.
    """
    total = sum(abs(z) / config.threshold(c) for c, z in channel_z.items())
    return float(1.0 - 2.0 ** (-total))


def _make_region(
    contig: str, start: int, end: int, channel_z: Dict[str, float], config: ScanConfig
) -> FlaggedRegion:
    ordered = tuple((c, float(channel_z[c])) for c in sort_channels(channel_z))
    return FlaggedRegion(
        contig=contig,
        start=start,
        end=end,
        channels=frozenset(channel_z),
        confidence=combine_confidence(channel_z, config),
        channel_z=ordered,
    )


def to_flagged(region: ChannelRegion, config: ScanConfig) -> FlaggedRegion:
    return _make_region(
        region.contig, region.start, region.end, {region.channel: region.peak_z}, config
    )


def merge_regions(
    regions: Iterable[FlaggedRegion],
    config: ScanConfig,
    merge_gap: Optional[int] = None,
) -> List[FlaggedRegion]:
    """Union regions per contig that overlap or lie within ``merge_gap`` bases.

    The result is sorted by start within each contig (contigs in order of
    first appearance), pairwise further apart than the gap, and therefore
    a fixed point: merging it again returns the same regions.
    """
    gap = config.merge_gap if merge_gap is None else int(merge_gap)
    by_contig: Dict[str, List[FlaggedRegion]] = {}
    for r in regions:
        by_contig.setdefault(r.contig, []).append(r)

    merged: List[FlaggedRegion] = []
    for contig, lst in by_contig.items():
        lst.sort(key=lambda r: (r.start, r.end))
        cur_start = cur_end = None
        cur_z: Dict[str, float] = {}
        for r in lst:
            if cur_start is not None and r.start <= cur_end + gap:
                cur_end = max(cur_end, r.end)
            else:
                if cur_start is not None:
                    merged.append(_make_region(contig, cur_start, cur_end, cur_z, config))
                cur_start, cur_end, cur_z = r.start, r.end, {}
            for channel, z in (r.channel_z or tuple((c, 0.0) for c in r.channels)):
                cur_z[channel] = max(cur_z.get(channel, 0.0), abs(z))
        if cur_start is not None:
            merged.append(_make_region(contig, cur_start, cur_end, cur_z, config))
    return merged


def call_regions(
    tables: Mapping[str, WindowTable], config: ScanConfig, contig_length: int
) -> List[FlaggedRegion]:
    """Per-channel regions from every table, merged across channels."""
    per_channel: List[FlaggedRegion] = []
    for channel in config.enabled_channels:
        table = tables.get(channel)
        if table is None:
            continue
        found = call_channel_regions(table, config, contig_length)
        if found:
            logger.debug("%s/%s: %d channel regions", table.contig, channel, len(found))
        per_channel.extend(to_flagged(r, config) for r in found)
    merged = merge_regions(per_channel, config)
    for r in merged:
        if r.end > contig_length:
            raise ValueError(
                f"Region [{r.start}, {r.end}) on {r.contig} exceeds contig length {contig_length}"
            )
    return merged
