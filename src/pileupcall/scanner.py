from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Hashable, Optional

import pysam

from .badreads import is_bad_read
from .config import BadReadRules, PileupDetectionConfig
from .mismatch import MismatchAnnotations
from .models import DELETION_BASE, Candidate, Site


@dataclass
class SiteCounts:
    """Alternate-allele tallies for one site. Rebuilt for every site."""

    depth: int = 0
    substitutions: Counter = field(default_factory=Counter)  # base -> reads
    insertions: Counter = field(default_factory=Counter)  # inserted bases -> reads
    deletions: Counter = field(default_factory=Counter)  # deleted length -> reads
    total_alt_reads: int = 0
    bad_alt_reads: int = 0
    bad_alt_reads_assembly: int = 0

    @property
    def has_alt_evidence(self) -> bool:
        return self.total_alt_reads > 0


def best_candidate(counts: Counter) -> Optional[Candidate]:
    """Arg-max of a count table.

    Ties go to the allele first encountered in pileup order.
    """
    if not counts:
        return None
    allele, support = counts.most_common(1)[0]
    return Candidate(allele=allele, support=int(support))


def _tally_alt(
    counts: SiteCounts,
    table: Counter,
    allele: Hashable,
    read: pysam.AlignedSegment,
    reporting: BadReadRules,
    assembly: BadReadRules,
    annotations: MismatchAnnotations,
) -> None:
    table[allele] += 1
    counts.total_alt_reads += 1
    if is_bad_read(read, reporting, annotations):
        counts.bad_alt_reads += 1
    if is_bad_read(read, assembly, annotations):
        counts.bad_alt_reads_assembly += 1


def scan_site(
    site: Site,
    config: PileupDetectionConfig,
    annotations: MismatchAnnotations,
) -> SiteCounts:
    """Tally substitutions, insertions and deletions observed at ``site``.

    A read with a substitution next to an indel counts once for each.
    """
    reporting = config.reporting_rules()
    assembly = config.assembly_rules()
    counts = SiteCounts(depth=site.depth)

    for element in site.elements:
        base = element.base
        if base != site.ref_base and base != DELETION_BASE:
            _tally_alt(counts, counts.substitutions, base, element.read, reporting, assembly, annotations)

        if not config.detect_indels:
            continue
        if element.is_before_insertion:
            _tally_alt(
                counts,
                counts.insertions,
                element.inserted_bases,
                element.read,
                reporting,
                assembly,
                annotations,
            )
        if element.is_before_deletion:
            _tally_alt(
                counts,
                counts.deletions,
                element.deleted_length,
                element.read,
                reporting,
                assembly,
                annotations,
            )

    return counts
