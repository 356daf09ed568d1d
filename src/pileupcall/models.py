from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Sequence, Union

import pysam

if TYPE_CHECKING:
    from .pileup import ReferenceContext

DELETION_BASE = "D"

KIND_SNP = "SNP"
KIND_INSERTION = "INS"
KIND_DELETION = "DEL"


@dataclass(frozen=True)
class PileupElement:
    """One read's contribution to a site.

    Attributes
    ----------
    base:
        Observed read base (uppercase), or ``"D"`` when the read carries a deletion here.
    read:
        The owning alignment.
    inserted_bases:
        Bases of an insertion starting immediately after this base, if any.
    deleted_length:
        Length of a deletion starting immediately after this base (0 if none).
    """

    base: str
    read: pysam.AlignedSegment
    inserted_bases: Optional[str] = None
    deleted_length: int = 0

    @property
    def is_deletion(self) -> bool:
        return self.base == DELETION_BASE

    @property
    def is_before_insertion(self) -> bool:
        return bool(self.inserted_bases)

    @property
    def is_before_deletion(self) -> bool:
        return self.deleted_length > 0


@dataclass(frozen=True)
class Site:
    """A single reference position with its pileup.

    Coordinates are 1-based, inclusive (``start == end`` for a single base).
    """

    contig: str
    start: int
    end: int
    ref_base: str
    elements: Sequence[PileupElement]
    reference: Optional["ReferenceContext"] = None

    @property
    def depth(self) -> int:
        return len(self.elements)

    def reference_bases(self, start: int, end: int) -> str:
        if self.reference is None:
            raise ValueError(
                f"Site {self.contig}:{self.start} has no reference context for span lookup"
            )
        return self.reference.bases(self.contig, start, end)


@dataclass(frozen=True)
class Candidate:
    """Most-supported alternate value at a site (base, inserted sequence or deletion length)."""

    allele: Union[str, int]
    support: int


@dataclass(frozen=True)
class AlleleRecord:
    """A two-allele pileup call. Coordinates are 1-based, inclusive."""

    contig: str
    start: int
    end: int
    ref: str
    alt: str
    kind: str  # 'SNP', 'INS' or 'DEL'
    support: int
    depth: int

    @property
    def support_fraction(self) -> float:
        return self.support / self.depth if self.depth > 0 else 0.0


@dataclass
class PileupAlleleCalls:
    """Records passing the reporting pass and the assembly-suppression pass."""

    reporting: List[AlleleRecord] = field(default_factory=list)
    assembly: List[AlleleRecord] = field(default_factory=list)

    def extend(self, other: "PileupAlleleCalls") -> None:
        self.reporting.extend(other.reporting)
        self.assembly.extend(other.assembly)
