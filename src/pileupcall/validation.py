from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

_REGION_RE = re.compile(r"^(?P<contig>[^:]+)(?::(?P<start>[\d,]+)(?:-(?P<end>[\d,]+))?)?$")


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM has an index; raise ValueError with fix instructions."""
    bam = Path(bam_path)
    bai1 = bam.with_suffix(bam.suffix + ".bai")
    bai2 = bam.with_suffix(".bai")
    if bai1.exists() or bai2.exists():
        return
    raise ValueError(
        "BAM is not indexed. Run: samtools index " + str(bam)
    )


def check_fasta_index(ref_path: str | Path) -> None:
    """Ensure a FASTA has a .fai index; raise ValueError with fix instructions."""
    ref = Path(ref_path)
    fai = ref.with_suffix(ref.suffix + ".fai")
    if not fai.exists():
        raise ValueError(
            "Reference FASTA is not indexed. Run: samtools faidx " + str(ref)
        )


def check_contigs_match(bam_contigs: Iterable[str], ref_contigs: Iterable[str]) -> None:
    """Raise ValueError if no BAM contig is present in the reference."""
    bam_set = set(bam_contigs)
    ref_set = set(ref_contigs)
    if not bam_set.intersection(ref_set):
        raise ValueError(
            "Contig mismatch between BAM and reference (e.g., chr1 vs 1). "
            "Use the reference the reads were aligned to."
        )
    missing = sorted(bam_set - ref_set)
    if missing:
        logger.warning(
            "%d BAM contig(s) are absent from the reference and will be skipped: %s",
            len(missing),
            ", ".join(missing[:5]) + (" ..." if len(missing) > 5 else ""),
        )


def parse_region(region: Optional[str]) -> Tuple[Optional[str], Optional[int], Optional[int]]:
    """Parse ``ctg``, ``ctg:start`` or ``ctg:start-end`` (1-based inclusive).

    Returns (contig, start0, end0) with 0-based half-open coordinates; (None, None, None) for no region.
    """
    if region is None or region == "":
        return None, None, None
    m = _REGION_RE.match(region.strip())
    if m is None:
        raise ValueError(f"Invalid region '{region}'. Expected ctg, ctg:start or ctg:start-end")
    contig = m.group("contig")
    start = m.group("start")
    end = m.group("end")
    start0 = int(start.replace(",", "")) - 1 if start else None
    end0 = int(end.replace(",", "")) if end else None
    if start0 is not None and start0 < 0:
        raise ValueError(f"Region start must be >= 1: '{region}'")
    if start0 is not None and end0 is not None and end0 <= start0:
        raise ValueError(f"Region end must be >= start: '{region}'")
    return contig, start0, end0
