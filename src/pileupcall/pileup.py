from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional

import pysam

from .models import DELETION_BASE, PileupElement, Site

logger = logging.getLogger(__name__)


class ReferenceContext:
    """Reference base and span lookup by 1-based inclusive coordinates.

    Backed by an indexed FASTA (``from_fasta``) or by in-memory sequences (``from_sequences``).
    Bases are returned uppercase.
    """

    def __init__(
        self,
        *,
        fasta: Optional[pysam.FastaFile] = None,
        sequences: Optional[Mapping[str, str]] = None,
    ) -> None:
        if (fasta is None) == (sequences is None):
            raise ValueError("Provide exactly one of fasta or sequences")
        self._fasta = fasta
        self._sequences: Dict[str, str] = {k: v.upper() for k, v in (sequences or {}).items()}

    @classmethod
    def from_fasta(cls, path: str) -> "ReferenceContext":
        return cls(fasta=pysam.FastaFile(str(path)))

    @classmethod
    def from_sequences(cls, sequences: Mapping[str, str]) -> "ReferenceContext":
        return cls(sequences=sequences)

    @property
    def contigs(self) -> List[str]:
        if self._fasta is not None:
            return list(self._fasta.references)
        return list(self._sequences)

    def bases(self, contig: str, start: int, end: int) -> str:
        """Reference bases in [start, end], 1-based inclusive."""
        if start < 1 or end < start:
            raise ValueError(f"Invalid reference span {contig}:{start}-{end}")
        if self._fasta is not None:
            return self._fasta.fetch(contig, start - 1, end).upper()
        try:
            seq = self._sequences[contig]
        except KeyError:
            raise KeyError(f"Contig '{contig}' not found in reference") from None
        return seq[start - 1 : end]

    def base(self, contig: str, pos: int) -> str:
        return self.bases(contig, pos, pos)

    def close(self) -> None:
        if self._fasta is not None:
            self._fasta.close()


def insertion_after_deletion(read: pysam.AlignedSegment, pos0: int) -> Optional[str]:
    """Bases inserted right after a deletion whose last deleted base is ``pos0``, if any."""
    seq = read.query_sequence
    cigar = read.cigartuples
    if seq is None or cigar is None:
        return None
    ref_pos = read.reference_start
    query_pos = 0
    for i, (op, length) in enumerate(cigar):
        if op == 2:  # D
            if ref_pos <= pos0 < ref_pos + length:
                last = pos0 == ref_pos + length - 1
                if last and i + 1 < len(cigar) and cigar[i + 1][0] == 1:
                    return seq[query_pos : query_pos + cigar[i + 1][1]].upper()
                return None
            ref_pos += length
        elif op in (0, 7, 8):  # M, =, X
            ref_pos += length
            query_pos += length
        elif op == 3:  # N
            ref_pos += length
        elif op in (1, 4):  # I, S
            query_pos += length
        if ref_pos > pos0:
            return None
    return None


def pileup_element_from_read(
    pread: pysam.PileupRead, pos0: Optional[int] = None
) -> Optional[PileupElement]:
    """Convert a pysam pileup read to a PileupElement; None for reference skips.

    ``pos0`` is the 0-based column position, needed to see an insertion that follows a deletion.
    """
    if pread.is_refskip:
        return None
    read = pread.alignment
    if pread.is_del:
        following = insertion_after_deletion(read, pos0) if pos0 is not None else None
        return PileupElement(base=DELETION_BASE, read=read, inserted_bases=following)

    qpos = pread.query_position
    seq = read.query_sequence
    if qpos is None or seq is None:
        return None

    inserted: Optional[str] = None
    deleted = 0
    # pysam reports the indel following this base: >0 insertion, <0 deletion
    if pread.indel > 0:
        inserted = seq[qpos + 1 : qpos + 1 + pread.indel].upper()
    elif pread.indel < 0:
        deleted = -pread.indel

    return PileupElement(
        base=seq[qpos].upper(),
        read=read,
        inserted_bases=inserted,
        deleted_length=deleted,
    )


@dataclass
class ReadFilter:
    """Which reads enter a pileup. Counters record what was skipped."""

    skip_duplicates: bool = True
    include_secondary: bool = False
    include_supplementary: bool = True
    min_mapq: int = 0
    counts: Dict[str, int] = field(
        default_factory=lambda: {
            "elements_skipped_duplicates": 0,
            "elements_skipped_secondary": 0,
            "elements_skipped_supplementary": 0,
            "elements_skipped_qcfail": 0,
            "elements_skipped_mapq": 0,
        }
    )

    def keep(self, read: pysam.AlignedSegment) -> bool:
        if read.is_unmapped:
            return False
        if read.is_qcfail:
            self.counts["elements_skipped_qcfail"] += 1
            return False
        if read.is_secondary and not self.include_secondary:
            self.counts["elements_skipped_secondary"] += 1
            return False
        if read.is_supplementary and not self.include_supplementary:
            self.counts["elements_skipped_supplementary"] += 1
            return False
        if self.skip_duplicates and read.is_duplicate:
            self.counts["elements_skipped_duplicates"] += 1
            return False
        if read.mapping_quality < self.min_mapq:
            self.counts["elements_skipped_mapq"] += 1
            return False
        return True


def iter_sites(
    bam: pysam.AlignmentFile,
    reference: ReferenceContext,
    *,
    contig: Optional[str] = None,
    start0: Optional[int] = None,
    end0: Optional[int] = None,
    read_filter: Optional[ReadFilter] = None,
    min_baseq: int = 0,
) -> Iterator[Site]:
    """Yield one Site per covered reference position of a BAM.

    ``start0``/``end0`` are 0-based half-open; yielded sites use 1-based coordinates.
    Columns left empty after filtering are skipped.
    """
    read_filter = read_filter or ReadFilter()
    ref_contigs = set(reference.contigs)

    columns = bam.pileup(
        contig,
        start0,
        end0,
        truncate=contig is not None,
        stepper="nofilter",
        ignore_overlaps=False,
        ignore_orphans=False,
        min_base_quality=min_baseq,
        max_depth=1_000_000,
    )
    for column in columns:
        chrom = column.reference_name
        if chrom not in ref_contigs:
            continue
        elements: List[PileupElement] = []
        for pread in column.pileups:
            if not read_filter.keep(pread.alignment):
                continue
            element = pileup_element_from_read(pread, column.reference_pos)
            if element is not None:
                elements.append(element)
        if not elements:
            continue

        pos1 = column.reference_pos + 1
        yield Site(
            contig=chrom,
            start=pos1,
            end=pos1,
            ref_base=reference.base(chrom, pos1),
            elements=elements,
            reference=reference,
        )
