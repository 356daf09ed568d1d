from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)

_KINDS = ["SNP", "INS", "DEL"]


def plot_support_fraction_hist(
    *,
    bin_edges: List[float],
    counts: List[int],
    out_png: str | Path,
    title: str = "Best alternate support fraction per site",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    widths = [bin_edges[i + 1] - bin_edges[i] for i in range(len(counts))]
    centers = [bin_edges[i] + widths[i] / 2.0 for i in range(len(counts))]

    plt.figure()
    plt.bar(centers, counts, width=widths, align="center")
    plt.xlabel("Supporting reads / depth")
    plt.ylabel("Site count")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_record_counts(
    *,
    records: Dict[str, Dict[str, int]],
    out_png: str | Path,
    title: str = "Pileup records by kind",
) -> None:
    """Grouped bars of record counts per kind for the reporting and assembly passes."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    reporting = [int(records.get("reporting", {}).get(k, 0)) for k in _KINDS]
    assembly = [int(records.get("assembly", {}).get(k, 0)) for k in _KINDS]
    xs = list(range(len(_KINDS)))
    width = 0.4

    plt.figure()
    plt.bar([x - width / 2 for x in xs], reporting, width=width, label="Reporting")
    plt.bar([x + width / 2 for x in xs], assembly, width=width, label="Assembly filter")
    plt.xticks(xs, _KINDS)
    plt.ylabel("Record count")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
