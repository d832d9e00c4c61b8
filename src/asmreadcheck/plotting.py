from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def plot_channel_counts(
    *,
    channel_counts: Dict[str, int],
    out_png: str | Path,
    title: str = "Flagged regions per channel",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = list(channel_counts)
    values = [int(channel_counts[k]) for k in labels]

    plt.figure()
    plt.bar(labels, values)
    plt.ylabel("Region count")
    plt.title(title)
    plt.xticks(rotation=20, ha="right")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_region_length_hist(
    *,
    lengths: List[int],
    out_png: str | Path,
    title: str = "Flagged region length",
    nbins: int = 30,
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    if lengths:
        plt.hist(lengths, bins=nbins)
    else:
        plt.text(0.5, 0.5, "No regions flagged", ha="center", va="center")
    plt.xlabel("Region length (bp)")
    plt.ylabel("Region count")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_confidence_hist(
    *,
    confidences: List[float],
    out_png: str | Path,
    title: str = "Region confidence",
    nbins: int = 20,
) -> None:
    """Histogram of region confidence on the fixed [0, 1] scale."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    edges = [i / nbins for i in range(nbins + 1)]
    plt.figure()
    plt.hist(confidences, bins=edges)
    plt.xlim(0.0, 1.0)
    plt.xlabel("Confidence")
    plt.ylabel("Region count")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
