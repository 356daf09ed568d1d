from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"

# 0-based positions of planted events
SNP_POS0 = 60
INSERTION_POS0 = 100  # insertion follows this base
INSERTION_BASES = "AC"
DELETION_POS0 = 140  # deletion follows this base
DELETION_LENGTH = 2

_Event = Tuple[int, str, object]


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _append_op(cigar: List[Tuple[int, int]], op: int, length: int) -> None:
    if length <= 0:
        return
    if cigar and cigar[-1][0] == op:
        cigar[-1] = (op, cigar[-1][1] + length)
    else:
        cigar.append((op, length))


def _build_alignment(
    ref_seq: str, start0: int, end0: int, events: Sequence[_Event]
) -> Tuple[str, List[Tuple[int, int]]]:
    """Read sequence and CIGAR for a read spanning [start0, end0) carrying ``events``.

    Events are (pos0, kind, payload) with kind 'snp' (payload: alt base), 'ins' (payload:
    inserted bases after pos0) or 'del' (payload: length deleted after pos0).
    """
    seq: List[str] = []
    cigar: List[Tuple[int, int]] = []
    pos = start0
    for pos0, kind, payload in sorted(events, key=lambda e: e[0]):
        if kind == "snp":
            seq.append(ref_seq[pos:pos0] + str(payload))
            _append_op(cigar, 0, pos0 - pos + 1)
            pos = pos0 + 1
        elif kind == "ins":
            seq.append(ref_seq[pos : pos0 + 1] + str(payload))
            _append_op(cigar, 0, pos0 + 1 - pos)
            _append_op(cigar, 1, len(str(payload)))
            pos = pos0 + 1
        elif kind == "del":
            seq.append(ref_seq[pos : pos0 + 1])
            _append_op(cigar, 0, pos0 + 1 - pos)
            _append_op(cigar, 2, int(payload))
            pos = pos0 + 1 + int(payload)
        else:
            raise ValueError(f"Unknown event kind: {kind}")
    seq.append(ref_seq[pos:end0])
    _append_op(cigar, 0, end0 - pos)
    return "".join(seq), cigar


def _make_read(
    name: str,
    start0: int,
    seq: str,
    cigar: List[Tuple[int, int]],
    mapq: int = 60,
    flag: int = 0,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = flag
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = cigar
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def make_toy_data(*, outdir: str | Path) -> Dict[str, object]:
    """Create a tiny reference and BAM with planted pileup events.

    Ten reads cover every planted site:
    - a SNP carried by 8 reads
    - a 2-base insertion carried by 6 reads
    - a 2-base deletion carried by 7 reads

    The outputs include:
    - toy_ref.fa (+ .fai)
    - toy.bam (+ .bai)

    Returns
    -------
    dict
        Paths to the generated files and the expected 1-based event positions.
    """
    outdir_p = ensure_outdir(outdir)

    rng = random.Random(7)
    ref_seq = "".join(rng.choice("ACGT") for _ in range(200))
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, TOY_CONTIG, ref_seq)
    pysam.faidx(str(ref_fa))

    snp_alt = _mutate_base(ref_seq[SNP_POS0])

    bam_path = outdir_p / "toy.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": TOY_CONTIG, "LN": len(ref_seq)}],
    }

    reads: List[pysam.AlignedSegment] = []
    for i in range(10):
        start0 = 40 + i
        end0 = start0 + 120
        events: List[_Event] = []
        if i < 8:
            events.append((SNP_POS0, "snp", snp_alt))
        if i % 2 == 0 or i == 9:
            events.append((INSERTION_POS0, "ins", INSERTION_BASES))
        if i < 7:
            events.append((DELETION_POS0, "del", DELETION_LENGTH))
        seq, cigar = _build_alignment(ref_seq, start0, end0, events)
        # properly paired (0x1 | 0x2), first in pair
        reads.append(_make_read(f"toy_{i}", start0, seq, cigar, flag=0x1 | 0x2 | 0x40))

    reads.sort(key=lambda r: r.reference_start)

    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)

    pysam.index(str(bam_path))

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "outdir": str(outdir_p),
        "contig": TOY_CONTIG,
        "snp": {"pos": SNP_POS0 + 1, "ref": ref_seq[SNP_POS0], "alt": snp_alt},
        "insertion": {
            "pos": INSERTION_POS0 + 1,
            "ref": ref_seq[INSERTION_POS0],
            "alt": ref_seq[INSERTION_POS0] + INSERTION_BASES,
        },
        "deletion": {
            "pos": DELETION_POS0 + 1,
            "ref": ref_seq[DELETION_POS0 : DELETION_POS0 + 1 + DELETION_LENGTH],
            "alt": ref_seq[DELETION_POS0],
        },
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
