"""Tabular outputs for flagged regions, clip hotspots and zero-coverage runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, TextIO

from .models import ClipSite, FlaggedRegion, ZeroCoverageRange
from .utils import open_textmaybe_gzip

logger = logging.getLogger(__name__)

REGION_COLUMNS = ["contig", "start", "end", "confidence", "channels", "channel_z"]
CLIP_COLUMNS = ["contig", "length", "pos", "relative_pos", "cov", "clipping", "clipping_ratio"]
ZERO_COV_COLUMNS = ["contig", "length", "start", "end", "range_size"]


def _format_channel_z(region: FlaggedRegion) -> str:
    return ",".join(f"{name}:{z:.3f}" for name, z in region.channel_z)


class TsvRegionWriter:
    """Writes one row per flagged region; ``emit`` is called once per contig."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fh: TextIO = open_textmaybe_gzip(self.path, "wt")
        self._fh.write("\t".join(REGION_COLUMNS) + "\n")
        self.rows = 0

    def emit(self, contig: str, regions: Sequence[FlaggedRegion]) -> None:
        for r in regions:
            if r.contig != contig:
                raise ValueError(f"Region on {r.contig} emitted for contig {contig}")
            self._fh.write(
                f"{r.contig}\t{r.start}\t{r.end}\t{r.confidence:.6f}\t"
                f"{r.channel_names}\t{_format_channel_z(r)}\n"
            )
            self.rows += 1

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "TsvRegionWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class CollectingWriter:
    """Keeps emitted regions in memory, in emission order."""

    def __init__(self) -> None:
        self.emitted: Dict[str, List[FlaggedRegion]] = {}
        self.order: List[str] = []

    def emit(self, contig: str, regions: Sequence[FlaggedRegion]) -> None:
        self.order.append(contig)
        self.emitted[contig] = list(regions)


def write_clip_sites(path: str | Path, sites: Iterable[ClipSite]) -> int:
    n = 0
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(CLIP_COLUMNS) + "\n")
        for s in sites:
            fh.write(
                f"{s.contig}\t{s.contig_length}\t{s.pos}\t{s.relative_pos:.6f}\t"
                f"{s.coverage}\t{s.clip_count}\t{s.clip_ratio:.6f}\n"
            )
            n += 1
    return n


def write_zero_coverage(path: str | Path, ranges: Iterable[ZeroCoverageRange]) -> int:
    n = 0
    with open_textmaybe_gzip(path, "wt") as fh:
        fh.write("\t".join(ZERO_COV_COLUMNS) + "\n")
        for z in ranges:
            fh.write(f"{z.contig}\t{z.contig_length}\t{z.start}\t{z.end}\t{z.length}\n")
            n += 1
    return n
