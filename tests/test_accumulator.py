import math
import random

import numpy as np
import pytest

from asmreadcheck.accumulator import SignalAccumulator, accumulate_signals, estimate_contig_bytes
from asmreadcheck.config import ScanConfig
from asmreadcheck.models import (
    CLIP_FRACTION,
    COVERAGE,
    INSERT_SIZE_ZSCORE,
    MISMATCH_FRACTION,
    ORIENTATION_ANOMALY,
    AlignmentRecord,
)


def rec(name, start, cigar, **kw) -> AlignmentRecord:
    return AlignmentRecord(query_name=name, reference_start=start, cigar=tuple(cigar), **kw)


def pair(name, start, insert, read_len=50, *, proper=True):
    mate = start + insert - read_len
    r1 = rec(
        f"{name}/1",
        start,
        [(0, read_len)],
        is_paired=True,
        is_proper_pair=proper,
        mate_is_reverse=proper,
        mate_start=mate,
    )
    r2 = rec(
        f"{name}/2",
        mate,
        [(0, read_len)],
        is_paired=True,
        is_proper_pair=proper,
        is_reverse=proper,
        mate_start=start,
    )
    return [r1, r2]


def test_coverage_and_clip_fraction():
    records = [
        rec("a", 100, [(0, 100)]),
        rec("b", 150, [(0, 100)]),
        rec("c", 150, [(4, 10), (0, 50)]),
    ]
    s = accumulate_signals("c1", 1000, records, ScanConfig())
    cov = s.signals[COVERAGE]
    assert cov[99] == 0
    assert cov[100] == 1
    assert cov[150] == 3
    assert cov[199] == 3
    assert cov[210] == 1
    assert cov[250] == 0

    clip = s.signals[CLIP_FRACTION]
    assert clip[150] == pytest.approx(1 / 3)
    assert clip[160] == 0
    assert math.isnan(clip[50])
    assert s.counts["reads_used"] == 3


def test_mismatch_channel_without_reference_has_no_data():
    s = accumulate_signals("c1", 100, [rec("a", 0, [(0, 100)])], ScanConfig())
    assert np.isnan(s.signals[MISMATCH_FRACTION]).all()


def test_mismatch_fraction_with_reference():
    ref = "ACGT" * 5
    records = [
        rec("a", 0, [(0, 20)], query_sequence="ACGT" * 5),
        rec("b", 0, [(0, 20)], query_sequence="ACGA" + "ACGT" * 4),
    ]
    s = accumulate_signals("c1", 20, records, ScanConfig(), ref)
    mm = s.signals[MISMATCH_FRACTION]
    assert mm[3] == pytest.approx(0.5)
    assert mm[0] == 0


def test_orientation_is_nan_without_coverage():
    records = pair("p", 100, 300, proper=False)
    s = accumulate_signals("c1", 1000, records, ScanConfig())
    orient = s.signals[ORIENTATION_ANOMALY]
    assert orient[120] == 1
    assert math.isnan(orient[10])
    assert s.counts["reads_discordant"] == 2


def test_insert_zscore():
    records = pair("a", 0, 200) + pair("b", 500, 200) + pair("c", 1000, 400)
    acc = SignalAccumulator("c1", 2000, ScanConfig())
    acc.add_records(records)
    mu, sigma = acc.insert_distribution()
    assert mu == pytest.approx(800 / 3)
    s = acc.finalize()
    z = s.signals[INSERT_SIZE_ZSCORE]
    assert z[1010] > 1.0
    assert z[10] < 0
    assert math.isnan(z[300])
    assert s.counts["reads_insert_sampled"] == 6


def test_constant_insert_gives_zero_zscore():
    records = pair("a", 0, 200) + pair("b", 500, 200)
    s = accumulate_signals("c1", 1000, records, ScanConfig())
    z = s.signals[INSERT_SIZE_ZSCORE]
    assert z[10] == 0
    assert math.isnan(z[300])


def test_filters_are_counted():
    records = [
        rec("ok", 0, [(0, 10)]),
        rec("lowq", 0, [(0, 10)], mapping_quality=3),
        rec("dup", 0, [(0, 10)], is_duplicate=True),
        rec("off", 200, [(0, 10)]),
    ]
    s = accumulate_signals("c1", 100, records, ScanConfig())
    assert s.counts["reads_total"] == 4
    assert s.counts["reads_used"] == 1
    assert s.counts["reads_skipped_low_mapq"] == 1
    assert s.counts["reads_skipped_duplicates"] == 1
    assert s.counts["reads_zero_span"] == 1
    assert s.counts["positions_out_of_bounds"] == 10


def test_disabled_channels_are_not_kept():
    cfg = ScanConfig(channels=("coverage", "clip_fraction"))
    s = accumulate_signals("c1", 100, [rec("a", 0, [(0, 100)])], cfg)
    assert set(s.signals) == {COVERAGE, CLIP_FRACTION}


def test_record_order_does_not_matter():
    rng = random.Random(11)
    ref = "".join(rng.choice("ACGT") for _ in range(3000))
    records = []
    for i in range(400):
        start = rng.randrange(0, 2900)
        read_len = rng.randrange(20, 100)
        lead = rng.choice([0, 0, 5])
        cigar = ([(4, lead)] if lead else []) + [(0, read_len)]
        seq = "N" * lead + "".join(rng.choice("ACGT") for _ in range(read_len))
        records.append(
            rec(
                f"r{i}",
                start,
                cigar,
                query_sequence=seq,
                is_paired=True,
                is_proper_pair=rng.random() < 0.9,
                mate_is_reverse=True,
                mate_start=start + rng.randrange(100, 400),
            )
        )
    shuffled = list(records)
    rng.shuffle(shuffled)

    a = accumulate_signals("c1", 3000, records, ScanConfig(), ref)
    b = accumulate_signals("c1", 3000, shuffled, ScanConfig(), ref)
    for channel in a.signals:
        np.testing.assert_array_equal(a.signals[channel], b.signals[channel])
    assert a.counts == b.counts


def test_clip_sites_and_ratio():
    records = [rec(f"c{i}", 500, [(4, 10), (0, 100)]) for i in range(4)]
    records += [rec(f"m{i}", 450, [(0, 100)]) for i in range(2)]
    s = accumulate_signals("c1", 1000, records, ScanConfig())
    assert s.clip_sites(clipping_ratio=1.0, min_dist_to_end=100) == []
    sites = s.clip_sites(clipping_ratio=0.5, min_dist_to_end=100)
    assert len(sites) == 1
    site = sites[0]
    assert (site.pos, site.coverage, site.clip_count) == (500, 6, 4)
    assert site.relative_pos == pytest.approx(0.5)
    assert s.clip_sites(clipping_ratio=0.5, min_dist_to_end=600) == []


def test_zero_coverage_ranges():
    records = [rec("a", 100, [(0, 100)]), rec("b", 300, [(0, 100)])]
    s = accumulate_signals("c1", 1000, records, ScanConfig())
    ranges = [(z.start, z.end) for z in s.zero_coverage_ranges()]
    assert ranges == [(0, 100), (200, 300), (400, 1000)]


def test_finalized_accumulator_rejects_records():
    acc = SignalAccumulator("c1", 100, ScanConfig())
    acc.finalize()
    with pytest.raises(RuntimeError):
        acc.add_record(rec("a", 0, [(0, 10)]))


def test_memory_estimate_scales_with_length():
    assert estimate_contig_bytes(2000) == 2 * estimate_contig_bytes(1000)
