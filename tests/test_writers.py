import gzip
import json
from pathlib import Path

import pytest

from asmreadcheck.models import ClipSite, FlaggedRegion, ZeroCoverageRange
from asmreadcheck.utils import write_json
from asmreadcheck.writers import TsvRegionWriter, write_clip_sites, write_zero_coverage


def _lines(path: Path):
    with gzip.open(path, "rt") as fh:
        return [line.rstrip("\n").split("\t") for line in fh]


def test_region_writer(tmp_path: Path):
    path = tmp_path / "regions.tsv.gz"
    region = FlaggedRegion(
        contig="ctg1",
        start=100,
        end=400,
        channels=frozenset({"clip_fraction", "coverage"}),
        confidence=0.75,
        channel_z=(("coverage", 4.0), ("clip_fraction", 3.5)),
    )
    with TsvRegionWriter(path) as writer:
        writer.emit("ctg1", [region])
        writer.emit("ctg2", [])
        with pytest.raises(ValueError):
            writer.emit("ctg2", [region])
    assert writer.rows == 1

    rows = _lines(path)
    assert rows[0] == ["contig", "start", "end", "confidence", "channels", "channel_z"]
    assert rows[1] == [
        "ctg1",
        "100",
        "400",
        "0.750000",
        "coverage,clip_fraction",
        "coverage:4.000,clip_fraction:3.500",
    ]


def test_clip_and_zero_coverage_tables(tmp_path: Path):
    clip_path = tmp_path / "clipping.tsv.gz"
    n = write_clip_sites(clip_path, [ClipSite("ctg1", 1000, 500, 4, 4, 1.0)])
    assert n == 1
    assert _lines(clip_path)[1] == ["ctg1", "1000", "500", "0.500000", "4", "4", "1.000000"]

    zero_path = tmp_path / "zero.tsv.gz"
    write_zero_coverage(zero_path, [ZeroCoverageRange("ctg1", 1000, 200, 300)])
    assert _lines(zero_path)[1] == ["ctg1", "1000", "200", "300", "100"]


def test_json_replaces_nan(tmp_path: Path):
    path = tmp_path / "x.json"
    write_json(path, {"a": float("nan"), "b": [1.0, float("inf")], "c": "ok"})
    data = json.loads(path.read_text())
    assert data == {"a": None, "b": [1.0, None], "c": "ok"}
