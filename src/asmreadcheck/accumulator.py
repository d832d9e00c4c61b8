"""Per-contig signal accumulation.

All raw sums are integers. Span contributions go into difference arrays and
point contributions are added with ``numpy.add.at``, so the result does not
depend on the order records arrive in.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .config import ScanConfig
from .extractor import RecordEvidence, encode_bases, extract_evidence, skip_reason
from .models import (
    CLIP_FRACTION,
    COVERAGE,
    INSERT_SIZE_ZSCORE,
    MISMATCH_FRACTION,
    ORIENTATION_ANOMALY,
    AlignmentRecord,
    ClipSite,
    ZeroCoverageRange,
)

logger = logging.getLogger(__name__)

# Rough peak bytes per contig base while a contig is being analysed:
# raw int64 arrays, five float64 signal vectors and window scratch space.
BYTES_PER_BASE = 120


def estimate_contig_bytes(length: int) -> int:
    return int(length) * BYTES_PER_BASE


def _new_counts() -> Dict[str, int]:
    return {
        "reads_total": 0,
        "reads_used": 0,
        "reads_unmapped": 0,
        "reads_skipped_secondary": 0,
        "reads_skipped_supplementary": 0,
        "reads_skipped_duplicates": 0,
        "reads_skipped_qcfail": 0,
        "reads_skipped_low_mapq": 0,
        "reads_zero_span": 0,
        "reads_discordant": 0,
        "reads_insert_sampled": 0,
        "positions_out_of_bounds": 0,
        "clips_at_contig_edge": 0,
        "zero_length_ops": 0,
    }


@dataclass
class SignalSet:
    """Finalized per-base signals for one contig.

    ``signals`` maps channel name to a float64 vector of contig length, with
    NaN where the position has no data. ``total_aligned_bases`` and
    ``total_insert_samples`` are the per-position denominators.
    """

    contig: str
    length: int
    signals: Dict[str, np.ndarray]
    coverage: np.ndarray
    clips: np.ndarray
    total_aligned_bases: np.ndarray
    total_insert_samples: np.ndarray
    insert_mean: float
    insert_std: float
    counts: Dict[str, int] = field(default_factory=dict)

    def clip_sites(self, *, clipping_ratio: float, min_dist_to_end: int) -> List[ClipSite]:
        """Positions whose clip count reaches ``clipping_ratio`` of coverage."""
        out: List[ClipSite] = []
        for pos in np.flatnonzero(self.clips).tolist():
            if not (pos > min_dist_to_end and self.length - pos > min_dist_to_end):
                continue
            cov = int(self.coverage[pos])
            clip = int(self.clips[pos])
            ratio = clip / cov if cov > 0 else math.inf
            if ratio >= clipping_ratio:
                out.append(ClipSite(self.contig, self.length, pos, cov, clip, ratio))
        return out

    def zero_coverage_ranges(self) -> List[ZeroCoverageRange]:
        """Maximal runs of zero coverage as half-open ranges."""
        if self.length == 0:
            return []
        zero = (self.coverage == 0).astype(np.int8)
        edges = np.diff(np.concatenate(([0], zero, [0])))
        starts = np.flatnonzero(edges == 1)
        ends = np.flatnonzero(edges == -1)
        return [
            ZeroCoverageRange(self.contig, self.length, int(s), int(e))
            for s, e in zip(starts.tolist(), ends.tolist())
        ]


class SignalAccumulator:
    """Owns the raw per-position arrays of one contig during its single pass."""

    def __init__(
        self,
        contig: str,
        length: int,
        config: ScanConfig,
        reference: Optional[str] = None,
    ) -> None:
        if length < 0:
            raise ValueError(f"Contig length must be >= 0, got {length}")
        self.contig = contig
        self.length = int(length)
        self.config = config
        self.want_mismatches = MISMATCH_FRACTION in config.channels
        self._reference = encode_bases(reference) if reference is not None else None

        n = self.length
        self._coverage_diff = np.zeros(n + 1, dtype=np.int64)
        self._discordant_diff = np.zeros(n + 1, dtype=np.int64)
        self._insert_sum_diff = np.zeros(n + 1, dtype=np.int64)
        self._insert_count_diff = np.zeros(n + 1, dtype=np.int64)
        self._clips = np.zeros(n, dtype=np.int64)
        self._mismatches = np.zeros(n, dtype=np.int64)
        self._aligned_bases = np.zeros(n, dtype=np.int64)

        # Contig-wide insert size distribution, exact integer moments.
        self._insert_n = 0
        self._insert_total = 0
        self._insert_total_sq = 0

        self.counts = _new_counts()
        self._finalized = False

    def add_record(self, record: AlignmentRecord) -> None:
        if self._finalized:
            raise RuntimeError("Accumulator already finalized")
        self.counts["reads_total"] += 1
        reason = skip_reason(record, self.config)
        if reason is not None:
            self.counts[reason] += 1
            return
        ev = extract_evidence(
            record,
            self.length,
            self.config,
            self._reference,
            want_mismatches=self.want_mismatches,
        )
        self.counts["zero_length_ops"] += ev.zero_length_ops
        self.counts["positions_out_of_bounds"] += ev.dropped_positions
        if ev.is_empty:
            self.counts["reads_zero_span"] += 1
            return
        self.add_evidence(ev)

    def add_records(self, records: Iterable[AlignmentRecord]) -> None:
        for record in records:
            self.add_record(record)

    def add_evidence(self, ev: RecordEvidence) -> None:
        self.counts["reads_used"] += 1
        self.counts["clips_at_contig_edge"] += ev.clips_at_contig_edge

        for start, end in ev.blocks:
            self._coverage_diff[start] += 1
            self._coverage_diff[end] -= 1
            if ev.discordant:
                self._discordant_diff[start] += 1
                self._discordant_diff[end] -= 1
        if ev.discordant:
            self.counts["reads_discordant"] += 1

        if ev.clip_positions:
            np.add.at(self._clips, np.asarray(ev.clip_positions, dtype=np.int64), 1)
        if ev.compared_positions.size:
            np.add.at(self._aligned_bases, ev.compared_positions, 1)
        if ev.mismatch_positions.size:
            np.add.at(self._mismatches, ev.mismatch_positions, 1)

        if ev.insert_size is not None and ev.insert_span is not None:
            start, end = ev.insert_span
            size = int(ev.insert_size)
            self._insert_sum_diff[start] += size
            self._insert_sum_diff[end] -= size
            self._insert_count_diff[start] += 1
            self._insert_count_diff[end] -= 1
            self._insert_n += 1
            self._insert_total += size
            self._insert_total_sq += size * size
            self.counts["reads_insert_sampled"] += 1

    def insert_distribution(self) -> Tuple[float, float]:
        """Mean and population std of contig insert sizes (NaN when unsampled)."""
        n = self._insert_n
        if n == 0:
            return math.nan, math.nan
        # Exact integer arithmetic: no cancellation in the variance numerator.
        var_num = n * self._insert_total_sq - self._insert_total * self._insert_total
        return self._insert_total / n, math.sqrt(var_num) / n

    def finalize(self) -> SignalSet:
        """Convert raw sums into per-base signals, NaN where there is no data."""
        self._finalized = True
        n = self.length
        coverage = np.cumsum(self._coverage_diff[:n])
        discordant = np.cumsum(self._discordant_diff[:n])
        insert_sum = np.cumsum(self._insert_sum_diff[:n])
        insert_count = np.cumsum(self._insert_count_diff[:n])

        covered = coverage > 0
        signals: Dict[str, np.ndarray] = {}
        signals[COVERAGE] = coverage.astype(np.float64)
        signals[CLIP_FRACTION] = _safe_ratio(self._clips, coverage)
        signals[MISMATCH_FRACTION] = _safe_ratio(self._mismatches, self._aligned_bases)

        mu, sigma = self.insert_distribution()
        mean_insert = _safe_ratio(insert_sum, insert_count)
        if sigma > 0:
            signals[INSERT_SIZE_ZSCORE] = (mean_insert - mu) / sigma
        else:
            # Every sampled pair has the same insert: no deviation anywhere.
            signals[INSERT_SIZE_ZSCORE] = np.where(insert_count > 0, 0.0, np.nan)

        orientation = discordant.astype(np.float64)
        orientation[~covered] = np.nan
        signals[ORIENTATION_ANOMALY] = orientation

        signals = {name: signals[name] for name in self.config.enabled_channels}

        logger.debug(
            "%s: %d reads used of %d, %d out-of-bounds positions dropped",
            self.contig,
            self.counts["reads_used"],
            self.counts["reads_total"],
            self.counts["positions_out_of_bounds"],
        )
        return SignalSet(
            contig=self.contig,
            length=n,
            signals=signals,
            coverage=coverage,
            clips=self._clips,
            total_aligned_bases=self._aligned_bases,
            total_insert_samples=insert_count,
            insert_mean=mu,
            insert_std=sigma,
            counts=dict(self.counts),
        )


def _safe_ratio(num: np.ndarray, den: np.ndarray) -> np.ndarray:
    out = np.full(num.shape, np.nan, dtype=np.float64)
    np.divide(num, den, out=out, where=den > 0)
    return out


def accumulate_signals(
    contig: str,
    length: int,
    records: Iterable[AlignmentRecord],
    config: ScanConfig,
    reference: Optional[str] = None,
) -> SignalSet:
    """One streaming pass over ``records`` into finalized signals."""
    acc = SignalAccumulator(contig, length, config, reference)
    acc.add_records(records)
    return acc.finalize()
