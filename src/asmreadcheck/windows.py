"""Sliding-window statistics over per-base signals.

Windows are processed in chunks of rows from a strided view, so scratch memory
is bounded by ``window_chunk * window_width`` regardless of contig length.
Window variance is computed in two passes (mean first, then squared
deviations), which stays accurate on long high-coverage contigs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .accumulator import SignalSet
from .config import ScanConfig
from .errors import ScanCancelled
from .models import WindowStat

logger = logging.getLogger(__name__)

# Relative spread below which a channel's window means are treated as constant.
_FLAT_TOLERANCE = 1e-12


@dataclass(frozen=True)
class WindowTable:
    """Columnar window statistics for one channel of one contig."""

    contig: str
    channel: str
    starts: np.ndarray
    ends: np.ndarray
    n_valid: np.ndarray
    means: np.ndarray
    variances: np.ndarray
    sufficient: np.ndarray
    z_scores: np.ndarray
    baseline_mean: float
    baseline_std: float

    def __len__(self) -> int:
        return int(self.starts.size)

    def stat(self, i: int) -> WindowStat:
        return WindowStat(
            contig=self.contig,
            channel=self.channel,
            window_start=int(self.starts[i]),
            window_end=int(self.ends[i]),
            mean=float(self.means[i]),
            variance=float(self.variances[i]),
            z_score=float(self.z_scores[i]),
            n_valid=int(self.n_valid[i]),
            sufficient=bool(self.sufficient[i]),
        )

    def __iter__(self) -> Iterator[WindowStat]:
        for i in range(len(self)):
            yield self.stat(i)


def window_starts(length: int, width: int, step: int) -> np.ndarray:
    """Start coordinates of all windows on a contig.

    A contig shorter than ``width`` gets a single window over its whole length.
    Otherwise windows start every ``step`` bases, plus one final window flush
    with the contig end when the regular grid stops short of it.
    """
    if length <= 0:
        return np.zeros(0, dtype=np.int64)
    if length <= width:
        return np.zeros(1, dtype=np.int64)
    starts = np.arange(0, length - width + 1, step, dtype=np.int64)
    if starts[-1] + width < length:
        starts = np.append(starts, np.int64(length - width))
    return starts


def _window_moments(
    values: np.ndarray,
    starts: np.ndarray,
    width: int,
    *,
    chunk: int,
    cancel=None,
) -> tuple:
    n_windows = starts.size
    n_valid = np.zeros(n_windows, dtype=np.int64)
    means = np.full(n_windows, np.nan)
    variances = np.full(n_windows, np.nan)
    if n_windows == 0:
        return n_valid, means, variances

    view = sliding_window_view(values, width)
    for c0 in range(0, n_windows, chunk):
        if cancel is not None and cancel.is_set():
            raise ScanCancelled("Cancelled during window statistics")
        rows = view[starts[c0 : c0 + chunk]]
        valid = ~np.isnan(rows)
        n = valid.sum(axis=1)
        with np.errstate(invalid="ignore", divide="ignore"):
            m = np.where(valid, rows, 0.0).sum(axis=1) / n
            dev = np.where(valid, rows - m[:, None], 0.0)
            v = (dev * dev).sum(axis=1) / n
        n_valid[c0 : c0 + chunk] = n
        means[c0 : c0 + chunk] = m
        variances[c0 : c0 + chunk] = v
    return n_valid, means, variances


def _zscores(means: np.ndarray, sufficient: np.ndarray) -> tuple:
    """z of each window mean against the contig's own distribution of window means."""
    z = np.full(means.shape, np.nan)
    baseline = means[sufficient]
    if baseline.size == 0:
        return z, float("nan"), float("nan")
    mu = float(baseline.mean())
    sd = float(baseline.std())
    if baseline.size < 2 or sd <= _FLAT_TOLERANCE * max(1.0, abs(mu)):
        z[sufficient] = 0.0
        return z, mu, sd
    z[sufficient] = (means[sufficient] - mu) / sd
    return z, mu, sd


def channel_windows(
    contig: str,
    channel: str,
    values: np.ndarray,
    config: ScanConfig,
    *,
    cancel=None,
) -> WindowTable:
    """Window statistics and z-scores for one per-base signal vector."""
    length = int(values.size)
    starts = window_starts(length, config.window_width, config.window_step)
    width = min(config.window_width, length)
    n_valid, means, variances = _window_moments(
        values, starts, width, chunk=config.window_chunk, cancel=cancel
    )
    if width > 0:
        sufficient = (n_valid > 0) & (n_valid >= config.min_window_coverage_fraction * width)
    else:
        sufficient = np.zeros(0, dtype=bool)
    z, mu, sd = _zscores(means, sufficient)
    return WindowTable(
        contig=contig,
        channel=channel,
        starts=starts,
        ends=starts + width,
        n_valid=n_valid,
        means=means,
        variances=variances,
        sufficient=sufficient,
        z_scores=z,
        baseline_mean=mu,
        baseline_std=sd,
    )


def compute_windows(
    signals: SignalSet,
    config: ScanConfig,
    *,
    cancel=None,
) -> Dict[str, WindowTable]:
    """Window tables for every enabled channel of a contig."""
    tables: Dict[str, WindowTable] = {}
    for channel in config.enabled_channels:
        table = channel_windows(
            signals.contig, channel, signals.signals[channel], config, cancel=cancel
        )
        logger.debug(
            "%s/%s: %d windows (%d sufficient), baseline mean=%.4g sd=%.4g",
            signals.contig,
            channel,
            len(table),
            int(table.sufficient.sum()),
            table.baseline_mean,
            table.baseline_std,
        )
        tables[channel] = table
    return tables
