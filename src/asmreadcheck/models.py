from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

# SAM CIGAR op codes (as used by pysam.AlignedSegment.cigartuples)
CIGAR_M = 0
CIGAR_I = 1
CIGAR_D = 2
CIGAR_N = 3
CIGAR_S = 4
CIGAR_H = 5
CIGAR_P = 6
CIGAR_EQ = 7
CIGAR_X = 8

ALIGNED_OPS = frozenset({CIGAR_M, CIGAR_EQ, CIGAR_X})
REF_ONLY_OPS = frozenset({CIGAR_D, CIGAR_N})
CLIP_OPS = frozenset({CIGAR_S, CIGAR_H})

# Sentinel for positions/windows without usable data.
NO_DATA = float("nan")


class Direction(str, Enum):
    """Which side of the contig baseline counts as anomalous for a channel."""

    LOW = "low"
    HIGH = "high"
    BOTH = "both"


@dataclass(frozen=True)
class Channel:
    name: str
    direction: Direction
    description: str


COVERAGE = "coverage"
CLIP_FRACTION = "clip_fraction"
MISMATCH_FRACTION = "mismatch_fraction"
INSERT_SIZE_ZSCORE = "insert_size_zscore"
ORIENTATION_ANOMALY = "orientation_anomaly"

CHANNELS: Dict[str, Channel] = {
    COVERAGE: Channel(COVERAGE, Direction.LOW, "Aligned read depth"),
    CLIP_FRACTION: Channel(CLIP_FRACTION, Direction.HIGH, "Clipped read ends per covering read"),
    MISMATCH_FRACTION: Channel(
        MISMATCH_FRACTION, Direction.HIGH, "Mismatching bases per compared base (N excluded)"
    ),
    INSERT_SIZE_ZSCORE: Channel(
        INSERT_SIZE_ZSCORE, Direction.BOTH, "Mean insert size of overlapping pairs as a contig z-score"
    ),
    ORIENTATION_ANOMALY: Channel(
        ORIENTATION_ANOMALY, Direction.HIGH, "Discordant pairs covering the position"
    ),
}

# Canonical channel order (output columns, channel lists).
CHANNEL_ORDER: Tuple[str, ...] = tuple(CHANNELS)


def sort_channels(names) -> List[str]:
    return sorted(names, key=CHANNEL_ORDER.index)


@dataclass(frozen=True)
class Contig:
    """An assembled sequence. ``sequence`` is only needed for the mismatch channel."""

    name: str
    length: int
    sequence: Optional[str] = None


@dataclass(frozen=True)
class AlignmentRecord:
    """One read mapped onto a contig.

    Coordinates are 0-based half-open. ``cigar`` uses SAM op codes, as in
    ``pysam.AlignedSegment.cigartuples``.
    """

    query_name: str
    reference_start: int
    cigar: Tuple[Tuple[int, int], ...]
    mapping_quality: int = 60
    query_sequence: Optional[str] = None
    is_paired: bool = False
    is_reverse: bool = False
    mate_is_reverse: bool = False
    is_proper_pair: bool = False
    mate_is_unmapped: bool = False
    mate_start: int = -1
    mate_on_same_contig: bool = True
    is_unmapped: bool = False
    is_secondary: bool = False
    is_supplementary: bool = False
    is_duplicate: bool = False
    is_qcfail: bool = False

    @property
    def reference_end(self) -> int:
        end = self.reference_start
        for op, length in self.cigar:
            if op in ALIGNED_OPS or op in REF_ONLY_OPS:
                end += length
        return end

    @classmethod
    def from_pysam(cls, read) -> "AlignmentRecord":
        """Convert a ``pysam.AlignedSegment`` without needing its header."""
        cigar = tuple((int(op), int(length)) for op, length in (read.cigartuples or ()))
        return cls(
            query_name=str(read.query_name),
            reference_start=int(read.reference_start) if read.reference_start is not None else -1,
            cigar=cigar,
            mapping_quality=int(read.mapping_quality),
            query_sequence=read.query_sequence,
            is_paired=bool(read.is_paired),
            is_reverse=bool(read.is_reverse),
            mate_is_reverse=bool(read.mate_is_reverse),
            is_proper_pair=bool(read.is_proper_pair),
            mate_is_unmapped=bool(read.mate_is_unmapped),
            mate_start=int(read.next_reference_start),
            mate_on_same_contig=read.next_reference_id == read.reference_id,
            is_unmapped=bool(read.is_unmapped),
            is_secondary=bool(read.is_secondary),
            is_supplementary=bool(read.is_supplementary),
            is_duplicate=bool(read.is_duplicate),
            is_qcfail=bool(read.is_qcfail),
        )


@dataclass(frozen=True)
class WindowStat:
    """Summary of one channel over one window. ``z_score`` is NaN when insufficient."""

    contig: str
    channel: str
    window_start: int
    window_end: int
    mean: float
    variance: float
    z_score: float
    n_valid: int
    sufficient: bool


@dataclass(frozen=True)
class FlaggedRegion:
    """A candidate misassembly.

    Attributes
    ----------
    contig:
        Contig name.
    start, end:
        0-based half-open span, ``0 <= start < end <= contig length``.
    channels:
        Channels whose windows contributed to the region.
    confidence:
        ``1 - 2 ** (-sum(|z_c| / threshold_c))`` over contributing channels,
        in [0, 1). A single channel exactly at its threshold scores 0.5.
    channel_z:
        Peak |z| per contributing channel, in canonical channel order.
    """

    contig: str
    start: int
    end: int
    channels: FrozenSet[str]
    confidence: float
    channel_z: Tuple[Tuple[str, float], ...] = ()

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValueError(f"Region start must be < end, got [{self.start}, {self.end})")
        if self.start < 0:
            raise ValueError(f"Region start must be >= 0, got {self.start}")

    @property
    def channel_names(self) -> str:
        return ",".join(sort_channels(self.channels))

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class ClipSite:
    """A position where clipped read ends reach ``clipping_ratio`` of coverage."""

    contig: str
    contig_length: int
    pos: int
    coverage: int
    clip_count: int
    clip_ratio: float

    @property
    def relative_pos(self) -> float:
        return self.pos / float(self.contig_length)


@dataclass(frozen=True)
class ZeroCoverageRange:
    contig: str
    contig_length: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class ContigFailure:
    """A contig that produced no result. ``kind`` is 'input', 'resource' or 'error'."""

    contig: str
    kind: str
    reason: str


@dataclass
class ContigResult:
    """Everything produced for one successfully processed contig."""

    contig: str
    length: int
    regions: List[FlaggedRegion] = field(default_factory=list)
    clip_sites: List[ClipSite] = field(default_factory=list)
    zero_coverage: List[ZeroCoverageRange] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
