"""Adapters that feed alignment records and contig bases to the scanner.

Sources are picklable and open their pysam handles lazily, so every worker
process ends up with its own reader and issues independent region queries.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

import pysam

from .errors import GlobalInputError, InputError
from .models import AlignmentRecord, Contig

logger = logging.getLogger(__name__)


class BamAlignmentSource:
    """Records from a coordinate-sorted, indexed BAM/CRAM via pysam."""

    def __init__(self, path: str | Path, *, reference_filename: Optional[str] = None) -> None:
        self.path = str(path)
        self.reference_filename = reference_filename
        self._bam: Optional[pysam.AlignmentFile] = None

    def __getstate__(self) -> Dict[str, object]:
        state = dict(self.__dict__)
        state["_bam"] = None
        return state

    def _open(self) -> pysam.AlignmentFile:
        if self._bam is None:
            mode = "rc" if self.path.endswith(".cram") else "rb"
            try:
                self._bam = pysam.AlignmentFile(
                    self.path, mode, reference_filename=self.reference_filename
                )
            except (OSError, ValueError) as e:
                raise GlobalInputError(f"Cannot open alignment file {self.path}: {e}") from e
        return self._bam

    def contigs(self) -> List[Contig]:
        bam = self._open()
        return [
            Contig(name=name, length=int(length))
            for name, length in zip(bam.header.references, bam.header.lengths)
        ]

    def records_overlapping(self, contig: str) -> Iterator[AlignmentRecord]:
        bam = self._open()
        try:
            it = bam.fetch(contig)
        except (OSError, ValueError, KeyError) as e:
            raise InputError(f"Cannot fetch reads for {contig}: {e}", contig=contig) from e
        for read in it:
            yield AlignmentRecord.from_pysam(read)

    def close(self) -> None:
        if self._bam is not None:
            self._bam.close()
            self._bam = None


class FastaReferenceSource:
    """Contig bases from an indexed FASTA via ``pysam.FastaFile``."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._fasta: Optional[pysam.FastaFile] = None

    def __getstate__(self) -> Dict[str, object]:
        state = dict(self.__dict__)
        state["_fasta"] = None
        return state

    def _open(self) -> pysam.FastaFile:
        if self._fasta is None:
            try:
                self._fasta = pysam.FastaFile(self.path)
            except (OSError, ValueError) as e:
                raise GlobalInputError(f"Cannot open reference FASTA {self.path}: {e}") from e
        return self._fasta

    def lengths(self) -> Dict[str, int]:
        fa = self._open()
        return {name: int(length) for name, length in zip(fa.references, fa.lengths)}

    def sequence_of(self, contig: str) -> str:
        fa = self._open()
        if contig not in fa.references:
            raise InputError(f"Contig {contig} is missing from reference {self.path}", contig=contig)
        return fa.fetch(contig)

    def close(self) -> None:
        if self._fasta is not None:
            self._fasta.close()
            self._fasta = None


class InMemoryAlignmentSource:
    """Records held in memory, keyed by contig. Mostly for tests and demos."""

    def __init__(
        self,
        contigs: Iterable[Contig],
        records: Mapping[str, Iterable[AlignmentRecord]],
    ) -> None:
        self._contigs = list(contigs)
        self._records = {name: list(recs) for name, recs in records.items()}

    def contigs(self) -> List[Contig]:
        return list(self._contigs)

    def records_overlapping(self, contig: str) -> Iterator[AlignmentRecord]:
        return iter(self._records.get(contig, ()))

    def close(self) -> None:
        pass


class InMemoryReferenceSource:
    def __init__(self, sequences: Mapping[str, str]) -> None:
        self._sequences = dict(sequences)

    def lengths(self) -> Dict[str, int]:
        return {name: len(seq) for name, seq in self._sequences.items()}

    def sequence_of(self, contig: str) -> str:
        if contig not in self._sequences:
            raise InputError(f"Contig {contig} is missing from reference", contig=contig)
        return self._sequences[contig]

    def close(self) -> None:
        pass
