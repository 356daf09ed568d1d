from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import numpy as np

from .config import PileupDetectionConfig
from .mismatch import MismatchAnnotations
from .models import (
    KIND_DELETION,
    KIND_INSERTION,
    KIND_SNP,
    AlleleRecord,
    Candidate,
    PileupAlleleCalls,
    Site,
)
from .scanner import SiteCounts, best_candidate, scan_site

logger = logging.getLogger(__name__)


def _fraction(numerator: int, denominator: int) -> float:
    """Single-precision ratio, widened to a double for comparison against thresholds."""
    return float(np.float32(numerator) / np.float32(denominator))


def passes_filters(
    config: PileupDetectionConfig,
    *,
    is_indel: bool,
    depth: int,
    bad_reads: int,
    total_alt_reads: int,
    candidate: Candidate,
    bad_read_threshold: float,
) -> bool:
    """Decide whether a candidate clears one pass.

    - support / depth must exceed the SNP (or indel) threshold
    - depth must reach ``pileup_absolute_depth``
    - the fraction of bad alternate-supporting reads must not exceed ``bad_read_threshold``
      (a threshold <= 0 disables this check)
    """
    if depth <= 0 or total_alt_reads <= 0:
        return False
    threshold = config.indel_threshold if is_indel else config.snp_threshold
    if _fraction(candidate.support, depth) <= threshold:
        return False
    if depth < config.pileup_absolute_depth:
        return False
    if bad_read_threshold <= 0.0:
        return True
    return _fraction(bad_reads, total_alt_reads) <= bad_read_threshold


def passes_reporting_filters(
    config: PileupDetectionConfig, counts: SiteCounts, candidate: Candidate, *, is_indel: bool
) -> bool:
    return passes_filters(
        config,
        is_indel=is_indel,
        depth=counts.depth,
        bad_reads=counts.bad_alt_reads,
        total_alt_reads=counts.total_alt_reads,
        candidate=candidate,
        bad_read_threshold=config.bad_read_threshold,
    )


def fails_assembly_filters(
    config: PileupDetectionConfig, counts: SiteCounts, candidate: Candidate, *, is_indel: bool
) -> bool:
    """True if the candidate should be flagged to adjust downstream assembly."""
    return passes_filters(
        config,
        is_indel=is_indel,
        depth=counts.depth,
        bad_reads=counts.bad_alt_reads_assembly,
        total_alt_reads=counts.total_alt_reads,
        candidate=candidate,
        bad_read_threshold=config.assembly_bad_read_threshold,
    )


def build_snp_record(site: Site, candidate: Candidate) -> AlleleRecord:
    return AlleleRecord(
        contig=site.contig,
        start=site.start,
        end=site.end,
        ref=site.ref_base,
        alt=str(candidate.allele),
        kind=KIND_SNP,
        support=candidate.support,
        depth=site.depth,
    )


def build_insertion_record(site: Site, candidate: Candidate) -> AlleleRecord:
    return AlleleRecord(
        contig=site.contig,
        start=site.start,
        end=site.end,
        ref=site.ref_base,
        alt=site.ref_base + str(candidate.allele),
        kind=KIND_INSERTION,
        support=candidate.support,
        depth=site.depth,
    )


def build_deletion_record(site: Site, candidate: Candidate) -> AlleleRecord:
    length = int(candidate.allele)
    end = site.end + length
    return AlleleRecord(
        contig=site.contig,
        start=site.start,
        end=end,
        ref=site.reference_bases(site.start, end),
        alt=site.ref_base,
        kind=KIND_DELETION,
        support=candidate.support,
        depth=site.depth,
    )


def _emit(
    calls: PileupAlleleCalls,
    config: PileupDetectionConfig,
    site: Site,
    counts: SiteCounts,
    candidate: Optional[Candidate],
    *,
    is_indel: bool,
    builder,
) -> None:
    if candidate is None:
        return
    if passes_reporting_filters(config, counts, candidate, is_indel=is_indel):
        rec = builder(site, candidate)
        logger.debug("Pileup call %s:%d %s>%s (%s)", rec.contig, rec.start, rec.ref, rec.alt, rec.kind)
        calls.reporting.append(rec)
    if fails_assembly_filters(config, counts, candidate, is_indel=is_indel):
        rec = builder(site, candidate)
        logger.debug(
            "Assembly filter allele %s:%d %s>%s (%s)", rec.contig, rec.start, rec.ref, rec.alt, rec.kind
        )
        calls.assembly.append(rec)


def evaluate_counts(
    site: Site,
    counts: SiteCounts,
    config: PileupDetectionConfig,
) -> PileupAlleleCalls:
    """Turn the tallies of one site into reporting and assembly-suppression records."""
    calls = PileupAlleleCalls()
    snp = best_candidate(counts.substitutions)
    _emit(calls, config, site, counts, snp, is_indel=False, builder=build_snp_record)
    if config.detect_indels:
        for table, builder in (
            (counts.insertions, build_insertion_record),
            (counts.deletions, build_deletion_record),
        ):
            _emit(calls, config, site, counts, best_candidate(table), is_indel=True, builder=builder)
    return calls


def evaluate_site(
    site: Site,
    config: PileupDetectionConfig,
    annotations: MismatchAnnotations,
) -> PileupAlleleCalls:
    return evaluate_counts(site, scan_site(site, config, annotations), config)


def detect_pileup_alleles(
    sites: Iterable[Site],
    config: PileupDetectionConfig,
    annotations: MismatchAnnotations,
) -> PileupAlleleCalls:
    """Detect candidate alleles visible in the pileups of ``sites``.

    Every read in every site must already be annotated in ``annotations``.

    Returns
    -------
    PileupAlleleCalls
        ``reporting`` holds records that pass the reporting pass; ``assembly`` holds records
        that should be flagged to adjust downstream assembly. Both may be empty.
    """
    calls = PileupAlleleCalls()
    for site in sites:
        calls.extend(evaluate_site(site, config, annotations))
    return calls


def candidates_for(counts: SiteCounts) -> List[Candidate]:
    """Winning SNP, insertion and deletion candidates present in ``counts``."""
    out = []
    for table in (counts.substitutions, counts.insertions, counts.deletions):
        cand = best_candidate(table)
        if cand is not None:
            out.append(cand)
    return out
