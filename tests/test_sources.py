import pickle
from pathlib import Path

import pysam
import pytest

from asmreadcheck.errors import GlobalInputError, InputError
from asmreadcheck.models import AlignmentRecord
from asmreadcheck.sources import BamAlignmentSource, FastaReferenceSource
from asmreadcheck.validation import check_bam_index, check_fasta_index, check_reference_matches


def make_read(name: str, seq: str, start: int, flag: int = 0) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = flag
    a.reference_id = 0
    a.reference_start = start
    a.mapping_quality = 60
    a.cigartuples = [(4, 5), (0, len(seq) - 5)]
    a.next_reference_id = 0
    a.next_reference_start = start + 100
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def write_bam(tmp_path: Path) -> Path:
    header = {"HD": {"VN": "1.6", "SO": "coordinate"}, "SQ": [{"SN": "ctg1", "LN": 500}]}
    bam_path = tmp_path / "reads.bam"
    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        bam.write(make_read("r1", "ACGTACGTACGTACGTACGT", 10, flag=0x1 | 0x20))
        bam.write(make_read("r2", "ACGTACGTACGTACGTACGT", 50, flag=0x10))
    pysam.index(str(bam_path))
    return bam_path


def write_fasta(tmp_path: Path, seq: str = "A" * 500) -> Path:
    fa = tmp_path / "asm.fa"
    fa.write_text(">ctg1\n" + seq + "\n")
    pysam.faidx(str(fa))
    return fa


def test_bam_source_reads_header_and_records(tmp_path: Path):
    source = BamAlignmentSource(write_bam(tmp_path))
    contigs = source.contigs()
    assert [(c.name, c.length) for c in contigs] == [("ctg1", 500)]

    records = list(source.records_overlapping("ctg1"))
    assert [r.query_name for r in records] == ["r1", "r2"]
    r1 = records[0]
    assert isinstance(r1, AlignmentRecord)
    assert r1.cigar == ((4, 5), (0, 15))
    assert r1.reference_end == 25
    assert r1.is_paired and r1.mate_is_reverse
    assert r1.mate_start == 110
    assert r1.mate_on_same_contig
    assert records[1].is_reverse
    source.close()


def test_bam_source_survives_pickling(tmp_path: Path):
    source = BamAlignmentSource(write_bam(tmp_path))
    source.contigs()
    clone = pickle.loads(pickle.dumps(source))
    assert len(list(clone.records_overlapping("ctg1"))) == 2
    clone.close()
    source.close()


def test_unknown_contig_is_an_input_error(tmp_path: Path):
    source = BamAlignmentSource(write_bam(tmp_path))
    with pytest.raises(InputError):
        list(source.records_overlapping("nope"))
    source.close()


def test_fasta_source(tmp_path: Path):
    source = FastaReferenceSource(write_fasta(tmp_path, "ACGT" * 125))
    assert source.lengths() == {"ctg1": 500}
    assert source.sequence_of("ctg1")[:8] == "ACGTACGT"
    with pytest.raises(InputError):
        source.sequence_of("ctg2")
    source.close()


def test_index_checks(tmp_path: Path):
    bam = write_bam(tmp_path)
    check_bam_index(bam)
    Path(str(bam) + ".bai").unlink()
    with pytest.raises(GlobalInputError):
        check_bam_index(bam)

    fa = write_fasta(tmp_path)
    check_fasta_index(fa)
    Path(str(fa) + ".fai").unlink()
    with pytest.raises(GlobalInputError):
        check_fasta_index(fa)


def test_reference_must_share_contigs(tmp_path: Path):
    contigs = BamAlignmentSource(write_bam(tmp_path)).contigs()
    check_reference_matches(contigs, {"ctg1": 500})
    with pytest.raises(GlobalInputError):
        check_reference_matches(contigs, {"other": 500})
