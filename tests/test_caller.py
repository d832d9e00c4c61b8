import numpy as np
import pytest

from asmreadcheck.caller import (
    RegionState,
    _RegionBuilder,
    call_channel_regions,
    call_regions,
    combine_confidence,
    flag_windows,
    merge_regions,
)
from asmreadcheck.config import ScanConfig
from asmreadcheck.models import FlaggedRegion
from asmreadcheck.windows import WindowTable


def make_table(channel, starts, z, *, width=200, sufficient=None, contig="c1") -> WindowTable:
    starts = np.asarray(starts, dtype=np.int64)
    z = np.asarray(z, dtype=float)
    if sufficient is None:
        sufficient = ~np.isnan(z)
    return WindowTable(
        contig=contig,
        channel=channel,
        starts=starts,
        ends=starts + width,
        n_valid=np.full(starts.size, width),
        means=z.copy(),
        variances=np.zeros(starts.size),
        sufficient=np.asarray(sufficient, dtype=bool),
        z_scores=z,
        baseline_mean=0.0,
        baseline_std=1.0,
    )


def region(start, end, channel="coverage", z=4.0, contig="c1") -> FlaggedRegion:
    return FlaggedRegion(
        contig=contig,
        start=start,
        end=end,
        channels=frozenset({channel}),
        confidence=0.6,
        channel_z=((channel, z),),
    )


def test_direction_is_respected():
    cfg = ScanConfig(min_dist_to_end=0)
    cov = make_table("coverage", [0, 500, 1000], [-4.0, 4.0, -1.0])
    assert flag_windows(cov, cfg, 5000).tolist() == [True, False, False]

    clip = make_table("clip_fraction", [0, 500, 1000], [-4.0, 4.0, 3.0])
    assert flag_windows(clip, cfg, 5000).tolist() == [False, True, True]

    insert = make_table("insert_size_zscore", [0, 500, 1000], [-4.0, 4.0, 2.0])
    assert flag_windows(insert, cfg, 5000).tolist() == [True, True, False]


def test_insufficient_windows_never_flag():
    cfg = ScanConfig(min_dist_to_end=0)
    table = make_table("coverage", [0, 500], [-10.0, np.nan], sufficient=[False, False])
    assert not flag_windows(table, cfg, 5000).any()


def test_windows_near_contig_ends_are_ignored():
    cfg = ScanConfig(min_dist_to_end=250)
    table = make_table("coverage", [0, 50, 1000, 4800], [-5.0, -5.0, -5.0, -5.0])
    assert flag_windows(table, cfg, 5000).tolist() == [False, False, True, False]

    # A window only has to reach into the margin to be ignored.
    cfg = ScanConfig(min_dist_to_end=200)
    table = make_table("coverage", [0, 200, 1000, 4600, 4700], [-5.0] * 5)
    assert flag_windows(table, cfg, 5000).tolist() == [False, True, True, True, False]


def test_short_contig_keeps_its_window():
    cfg = ScanConfig(min_dist_to_end=200)
    table = make_table("coverage", [0], [-5.0])
    assert flag_windows(table, cfg, 300).tolist() == [True]


def test_builder_merges_overlapping_windows():
    builder = _RegionBuilder("c1", "coverage", 5000)
    assert builder.state is RegionState.SCANNING
    builder.feed(0, 200, -3.5)
    assert builder.state is RegionState.FLAGGED
    builder.feed(50, 250, -5.0)
    builder.feed(200, 400, -3.1)
    assert builder.state is RegionState.MERGING
    builder.feed(1000, 1200, -4.0)
    regions = builder.finish()
    assert [(r.start, r.end, r.n_windows) for r in regions] == [(0, 400, 3), (1000, 1200, 1)]
    assert regions[0].peak_z == 5.0
    assert builder.state is RegionState.CLOSED


def test_builder_rejects_out_of_order_windows():
    builder = _RegionBuilder("c1", "coverage", 5000)
    builder.feed(500, 700, -4.0)
    with pytest.raises(ValueError):
        builder.feed(100, 300, -4.0)


def test_channel_regions_from_table():
    cfg = ScanConfig(min_dist_to_end=0)
    table = make_table("clip_fraction", [0, 50, 100, 150, 200], [0.0, 4.0, 6.0, 0.5, 0.0])
    regions = call_channel_regions(table, cfg, 5000)
    assert [(r.start, r.end) for r in regions] == [(50, 300)]
    assert regions[0].peak_z == 6.0


def test_confidence_formula():
    cfg = ScanConfig()
    assert combine_confidence({"coverage": 3.0}, cfg) == pytest.approx(0.5)
    assert combine_confidence({"coverage": -3.0}, cfg) == pytest.approx(0.5)
    one = combine_confidence({"coverage": 4.0}, cfg)
    two = combine_confidence({"coverage": 4.0, "clip_fraction": 3.5}, cfg)
    assert 0.5 < one < two < 1.0
    assert combine_confidence({"coverage": 6.0}, cfg) > one


def test_confidence_uses_channel_thresholds():
    cfg = ScanConfig(z_thresholds={"coverage": -2.0})
    assert combine_confidence({"coverage": 2.0}, cfg) == pytest.approx(0.5)


def test_merge_within_gap_unions_channels():
    cfg = ScanConfig(merge_gap=100)
    merged = merge_regions(
        [region(1000, 1200, "coverage", 4.0), region(1250, 1400, "clip_fraction", 5.0)], cfg
    )
    assert len(merged) == 1
    m = merged[0]
    assert (m.start, m.end) == (1000, 1400)
    assert m.channels == frozenset({"coverage", "clip_fraction"})
    assert m.channel_names == "coverage,clip_fraction"
    assert m.confidence == pytest.approx(1 - 2 ** -(4.0 / 3 + 5.0 / 3))


def test_merge_keeps_distant_regions_and_contigs_apart():
    cfg = ScanConfig(merge_gap=100)
    merged = merge_regions(
        [
            region(1000, 1200),
            region(1301, 1400, "clip_fraction"),
            region(1000, 1200, contig="c2"),
        ],
        cfg,
    )
    assert [(r.contig, r.start, r.end) for r in merged] == [
        ("c1", 1000, 1200),
        ("c1", 1301, 1400),
        ("c2", 1000, 1200),
    ]


def test_merge_is_idempotent():
    cfg = ScanConfig(merge_gap=100)
    regions = [
        region(5000, 5100, "coverage", 3.2),
        region(100, 300, "clip_fraction", 4.0),
        region(350, 500, "coverage", 3.5),
        region(480, 900, "orientation_anomaly", 7.0),
        region(1200, 1300, "coverage", 3.0),
    ]
    once = merge_regions(regions, cfg)
    twice = merge_regions(once, cfg)
    assert once == twice
    assert [(r.start, r.end) for r in once] == [(100, 900), (1200, 1300), (5000, 5100)]


def test_call_regions_merges_across_channels():
    cfg = ScanConfig(min_dist_to_end=0, merge_gap=100)
    tables = {
        "coverage": make_table("coverage", [1000, 1050], [-4.0, -3.5]),
        "clip_fraction": make_table("clip_fraction", [1300], [9.0]),
    }
    regions = call_regions(tables, cfg, 5000)
    assert len(regions) == 1
    r = regions[0]
    assert (r.start, r.end) == (1000, 1500)
    assert dict(r.channel_z) == {"coverage": 4.0, "clip_fraction": 9.0}


def test_region_must_be_non_empty():
    with pytest.raises(ValueError):
        region(100, 100)


def test_call_regions_clamps_to_contig_end():
    cfg = ScanConfig(min_dist_to_end=0)
    tables = {
        "coverage": make_table("coverage", [700, 850], [-4.0, -5.0]),
        "clip_fraction": make_table("clip_fraction", [900], [6.0]),
    }
    regions = call_regions(tables, cfg, 1000)
    assert [(r.start, r.end) for r in regions] == [(700, 1000)]
    assert all(0 <= r.start < r.end <= 1000 for r in merge_regions(regions, cfg))
