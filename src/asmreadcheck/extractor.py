"""Per-record evidence extraction.

Each alignment record is walked once along its CIGAR and turned into the raw,
purely additive contributions it makes to a contig's signal channels. Nothing
here depends on other records, so accumulation is order independent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np

from .config import ScanConfig
from .models import (
    ALIGNED_OPS,
    CIGAR_EQ,
    CIGAR_H,
    CIGAR_I,
    CIGAR_S,
    CIGAR_X,
    CLIP_OPS,
    REF_ONLY_OPS,
    AlignmentRecord,
)

logger = logging.getLogger(__name__)

# Raw (pre-finalization) channels a record can contribute to.
RAW_COVERAGE = "coverage"
RAW_CLIPS = "clips"
RAW_MISMATCHES = "mismatches"
RAW_ALIGNED_BASES = "aligned_bases"
RAW_INSERT_SUM = "insert_sum"
RAW_INSERT_SAMPLES = "insert_samples"
RAW_DISCORDANT = "discordant"

_N = ord("N")
_EMPTY = np.zeros(0, dtype=np.int64)


def encode_bases(seq: str) -> np.ndarray:
    """Uppercase a base string into a uint8 array for vectorised comparison."""
    return np.frombuffer(seq.upper().encode("ascii"), dtype=np.uint8)


@dataclass
class RecordEvidence:
    """Contributions of one record, already clipped to the contig bounds.

    ``blocks`` are aligned (M/=/X) reference spans; coverage and, for
    discordant pairs, orientation evidence apply over them. ``insert_span``
    is the read's whole reference span.
    """

    blocks: List[Tuple[int, int]] = field(default_factory=list)
    clip_positions: List[int] = field(default_factory=list)
    compared_positions: np.ndarray = field(default_factory=lambda: _EMPTY)
    mismatch_positions: np.ndarray = field(default_factory=lambda: _EMPTY)
    insert_size: Optional[int] = None
    insert_span: Optional[Tuple[int, int]] = None
    discordant: bool = False
    dropped_positions: int = 0
    clips_at_contig_edge: int = 0
    zero_length_ops: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.blocks

    def contributions(self) -> Iterator[Tuple[int, str, int]]:
        """Flatten into ``(position, raw_channel, delta)`` triples.

        This is the unvectorised view of what the accumulator folds in; it is
        convenient for inspection and tests, not for bulk processing.
        """
        for start, end in self.blocks:
            for pos in range(start, end):
                yield pos, RAW_COVERAGE, 1
                if self.discordant:
                    yield pos, RAW_DISCORDANT, 1
        for pos in self.clip_positions:
            yield pos, RAW_CLIPS, 1
        for pos in self.compared_positions.tolist():
            yield pos, RAW_ALIGNED_BASES, 1
        for pos in self.mismatch_positions.tolist():
            yield pos, RAW_MISMATCHES, 1
        if self.insert_size is not None and self.insert_span is not None:
            for pos in range(*self.insert_span):
                yield pos, RAW_INSERT_SUM, self.insert_size
                yield pos, RAW_INSERT_SAMPLES, 1


def skip_reason(record: AlignmentRecord, config: ScanConfig) -> Optional[str]:
    """Return the counter name explaining why a record is excluded, or None."""
    if record.is_unmapped or record.reference_start < 0:
        return "reads_unmapped"
    if record.is_secondary and not config.include_secondary:
        return "reads_skipped_secondary"
    if record.is_supplementary and not config.include_supplementary:
        return "reads_skipped_supplementary"
    if record.is_duplicate and config.skip_duplicates:
        return "reads_skipped_duplicates"
    if record.is_qcfail and config.skip_qcfail:
        return "reads_skipped_qcfail"
    if record.mapping_quality < config.min_mapping_quality:
        return "reads_skipped_low_mapq"
    return None


def is_discordant(record: AlignmentRecord) -> bool:
    """Pair orientation/placement inconsistent with the library.

    A paired read whose mate is unmapped carries no orientation evidence.
    """
    if not record.is_paired or record.mate_is_unmapped:
        return False
    if not record.mate_on_same_contig:
        return True
    if not record.is_proper_pair:
        return True
    return record.is_reverse == record.mate_is_reverse


def insert_size_of(record: AlignmentRecord) -> Optional[int]:
    """Fragment span for properly oriented pairs, else None."""
    if not record.is_paired or record.mate_is_unmapped or record.mate_start < 0:
        return None
    if is_discordant(record):
        return None
    span = record.reference_end - record.reference_start
    if span <= 0:
        return None
    return abs(record.mate_start - record.reference_start) + span


def _end_clip_length(cigar: List[Tuple[int, int]], *, count_hard: bool, reverse: bool) -> int:
    ops = reversed(cigar) if reverse else iter(cigar)
    total = 0
    for op, length in ops:
        if op not in CLIP_OPS:
            break
        if op == CIGAR_H and not count_hard:
            continue
        total += length
    return total


def _compare_block(
    ev_compared: List[np.ndarray],
    ev_mismatch: List[np.ndarray],
    *,
    op: int,
    lo: int,
    hi: int,
    qlo: int,
    query: Optional[np.ndarray],
    reference: Optional[np.ndarray],
) -> None:
    positions = np.arange(lo, hi, dtype=np.int64)
    if query is not None and reference is not None and qlo + (hi - lo) <= len(query):
        qb = query[qlo : qlo + (hi - lo)]
        rb = reference[lo:hi]
        compared = (qb != _N) & (rb != _N)
        ev_compared.append(positions[compared])
        ev_mismatch.append(positions[compared & (qb != rb)])
        return
    # Without both sequences only the explicit =/X ops are informative.
    if op == CIGAR_EQ:
        ev_compared.append(positions)
    elif op == CIGAR_X:
        ev_compared.append(positions)
        ev_mismatch.append(positions)


def extract_evidence(
    record: AlignmentRecord,
    contig_length: int,
    config: ScanConfig,
    reference: Optional[np.ndarray] = None,
    *,
    want_mismatches: bool = True,
) -> RecordEvidence:
    """Walk one record's CIGAR and collect its per-position contributions.

    Parameters
    ----------
    record:
        A record that already passed :func:`skip_reason`.
    contig_length:
        Length of the contig the record is mapped to.
    reference:
        Contig bases as produced by :func:`encode_bases`, or None.
    want_mismatches:
        Skip base comparison entirely when the mismatch channel is disabled.
    """
    ev = RecordEvidence()
    cigar = []
    for op, length in record.cigar:
        if length <= 0:
            ev.zero_length_ops += 1
            continue
        cigar.append((op, length))

    query: Optional[np.ndarray] = None
    if want_mismatches and record.query_sequence:
        query = encode_bases(record.query_sequence)

    compared: List[np.ndarray] = []
    mismatched: List[np.ndarray] = []

    ref_pos = record.reference_start
    query_pos = 0
    for op, length in cigar:
        if op in ALIGNED_OPS:
            ref_end = ref_pos + length
            lo = max(ref_pos, 0)
            hi = min(ref_end, contig_length)
            if hi > lo:
                ev.blocks.append((lo, hi))
                if want_mismatches:
                    _compare_block(
                        compared,
                        mismatched,
                        op=op,
                        lo=lo,
                        hi=hi,
                        qlo=query_pos + (lo - ref_pos),
                        query=query,
                        reference=reference,
                    )
            ev.dropped_positions += length - max(hi - lo, 0)
            ref_pos = ref_end
            query_pos += length
        elif op in REF_ONLY_OPS:
            ref_pos += length
        elif op in (CIGAR_I, CIGAR_S):
            query_pos += length
        # H and P consume neither

    if not ev.blocks:
        return ev

    if compared:
        ev.compared_positions = np.concatenate(compared)
    if mismatched:
        ev.mismatch_positions = np.concatenate(mismatched)

    read_start = record.reference_start
    read_end = ref_pos
    hard = config.count_hard_clips
    if _end_clip_length(cigar, count_hard=hard, reverse=False) >= config.min_clip_length:
        _place_clip(ev, read_start, contig_length, at_edge=read_start == 0)
    if _end_clip_length(cigar, count_hard=hard, reverse=True) >= config.min_clip_length:
        _place_clip(ev, read_end - 1, contig_length, at_edge=read_end == contig_length)

    ev.discordant = is_discordant(record)
    size = insert_size_of(record)
    if size is not None:
        lo = max(read_start, 0)
        hi = min(read_end, contig_length)
        if hi > lo:
            ev.insert_size = size
            ev.insert_span = (lo, hi)
    return ev


def _place_clip(ev: RecordEvidence, pos: int, contig_length: int, *, at_edge: bool) -> None:
    # A read hanging over the contig end is expected, not a breakpoint.
    if at_edge:
        ev.clips_at_contig_edge += 1
    elif 0 <= pos < contig_length:
        ev.clip_positions.append(pos)
    else:
        ev.dropped_positions += 1
