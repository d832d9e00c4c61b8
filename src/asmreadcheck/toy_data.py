from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Tuple

import pysam

from .utils import ensure_outdir, write_json

_READ_LEN = 100
_INSERT = 250
_PAIR_STEP = 10

FLAG_PAIRED = 0x1
FLAG_PROPER = 0x2
FLAG_REVERSE = 0x10
FLAG_MATE_REVERSE = 0x20
FLAG_READ1 = 0x40
FLAG_READ2 = 0x80


def _write_fasta(path: Path, contigs: List[Tuple[str, str]]) -> None:
    lines = []
    for name, seq in contigs:
        lines.append(f">{name}")
        for i in range(0, len(seq), 60):
            lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _random_seq(rng: random.Random, n: int) -> str:
    return "".join(rng.choice("ACGT") for _ in range(n))


def _make_read(
    name: str,
    tid: int,
    start0: int,
    seq: str,
    cigar: List[Tuple[int, int]],
    flag: int,
    mate_start0: int,
    tlen: int,
    mapq: int = 60,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = flag
    a.reference_id = tid
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = cigar
    a.next_reference_id = tid
    a.next_reference_start = mate_start0
    a.template_length = tlen
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def _pair(
    name: str,
    tid: int,
    ref: str,
    start0: int,
    *,
    discordant: bool = False,
) -> List[pysam.AlignedSegment]:
    """A read pair; with ``discordant`` both mates map forward and lose the proper flag."""
    mate0 = start0 + _INSERT - _READ_LEN
    s1 = ref[start0 : start0 + _READ_LEN]
    s2 = ref[mate0 : mate0 + _READ_LEN]
    cig = [(0, _READ_LEN)]
    if discordant:
        f1 = FLAG_PAIRED | FLAG_READ1
        f2 = FLAG_PAIRED | FLAG_READ2
    else:
        f1 = FLAG_PAIRED | FLAG_PROPER | FLAG_READ1 | FLAG_MATE_REVERSE
        f2 = FLAG_PAIRED | FLAG_PROPER | FLAG_READ2 | FLAG_REVERSE
    return [
        _make_read(f"{name}/1", tid, start0, s1, cig, f1, mate0, _INSERT),
        _make_read(f"{name}/2", tid, mate0, s2, cig, f2, start0, -_INSERT),
    ]


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny assembly and an indexed BAM of read pairs mapped to it.

    ``ctg1`` carries planted problems: a join at 2000 where reads crossing it
    are soft-clipped, a block of discordant pairs starting at 1000-1250 and an
    uncovered gap at 4000-4300 with full depth on both sides. ``ctg2`` is clean.

    Returns
    -------
    dict
        Paths to the generated files plus the planted coordinates.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(7)

    contigs = [("ctg1", _random_seq(rng, 8000)), ("ctg2", _random_seq(rng, 2000))]
    ref_fa = outdir_p / "toy_assembly.fa"
    _write_fasta(ref_fa, contigs)
    pysam.faidx(str(ref_fa))

    join = 2000
    gap = (4000, 4300)
    discordant_span = (1000, 1250)

    reads: List[pysam.AlignedSegment] = []
    for tid, (name, ref) in enumerate(contigs):
        for start0 in range(0, len(ref) - _INSERT + 1, _PAIR_STEP):
            discordant = name == "ctg1" and discordant_span[0] <= start0 < discordant_span[1]
            pair = _pair(f"{name}_{start0}", tid, ref, start0, discordant=discordant)
            if name == "ctg1":
                pair = [_clip_at_join(r, ref, join, rng) for r in pair]
                # Mates of reads dropped in the gap are kept.
                pair = [r for r in pair if not _overlaps(r, gap)]
            reads.extend(pair)

    reads.sort(key=lambda r: (r.reference_id, r.reference_start))

    bam_path = outdir_p / "reads.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": len(seq)} for name, seq in contigs],
    }
    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)
    pysam.index(str(bam_path))

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "outdir": str(outdir_p),
        "planted_join": f"ctg1:{join}",
        "planted_gap": f"ctg1:{gap[0]}-{gap[1]}",
        "planted_discordant": f"ctg1:{discordant_span[0]}-{discordant_span[1]}",
    }
    write_json(outdir_p / "toy_summary.json", summary)
    return summary


def _clip_at_join(
    read: pysam.AlignedSegment, ref: str, join: int, rng: random.Random
) -> pysam.AlignedSegment:
    """Soft-clip the part of a read that continues past ``join`` with foreign sequence."""
    start0 = read.reference_start
    if not start0 < join < start0 + _READ_LEN:
        return read
    kept = join - start0
    seq = ref[start0:join] + _random_seq(rng, _READ_LEN - kept)
    qual = read.query_qualities
    read.query_sequence = seq
    read.query_qualities = qual
    read.cigartuples = [(0, kept), (4, _READ_LEN - kept)]
    return read


def _overlaps(read: pysam.AlignedSegment, span: Tuple[int, int]) -> bool:
    return read.reference_start < span[1] and read.reference_end > span[0]
