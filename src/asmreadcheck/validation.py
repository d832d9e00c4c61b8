from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List

from .errors import GlobalInputError
from .models import Contig

logger = logging.getLogger(__name__)


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM/CRAM has an index; raise GlobalInputError with fix instructions."""
    bam = Path(bam_path)
    if not bam.exists():
        raise GlobalInputError(f"Alignment file not found: {bam}")
    index_suffix = ".crai" if bam.suffix == ".cram" else ".bai"
    idx1 = bam.with_suffix(bam.suffix + index_suffix)
    idx2 = bam.with_suffix(index_suffix)
    csi = bam.with_suffix(bam.suffix + ".csi")
    if idx1.exists() or idx2.exists() or csi.exists():
        return
    raise GlobalInputError(
        "Alignment file is not indexed. Run: samtools sort -o sorted.bam "
        + str(bam)
        + " && samtools index sorted.bam"
    )


def check_fasta_index(fasta_path: str | Path) -> None:
    """Ensure a FASTA is faidx-indexed (pysam would otherwise try to write one)."""
    fa = Path(fasta_path)
    if not fa.exists():
        raise GlobalInputError(f"Reference FASTA not found: {fa}")
    fai = fa.with_suffix(fa.suffix + ".fai")
    if fai.exists():
        return
    raise GlobalInputError("Reference FASTA is not indexed. Run: samtools faidx " + str(fa))


def compare_contig_lengths(contigs: Iterable[Contig], ref_lengths: Dict[str, int]) -> List[str]:
    """Names of contigs whose reference length disagrees with the alignment header.

    Contigs absent from the reference are not reported here; they fail
    individually when their bases are requested.
    """
    mismatched = []
    for c in contigs:
        ref_len = ref_lengths.get(c.name)
        if ref_len is not None and ref_len != c.length:
            mismatched.append(c.name)
    return mismatched


def check_reference_matches(contigs: List[Contig], ref_lengths: Dict[str, int]) -> None:
    """Fail fast when the FASTA clearly belongs to a different assembly."""
    names = {c.name for c in contigs}
    shared = names.intersection(ref_lengths)
    if not shared:
        raise GlobalInputError(
            "No contig names shared between alignment header and reference FASTA. "
            "Was the BAM made against this assembly?"
        )
    missing = len(names) - len(shared)
    if missing:
        logger.warning("%d contig(s) from the alignment header are missing in the FASTA", missing)
    mismatched = compare_contig_lengths(contigs, ref_lengths)
    if mismatched:
        logger.warning(
            "%d contig(s) differ in length between BAM and FASTA (e.g. %s); they will be skipped",
            len(mismatched),
            mismatched[0],
        )
