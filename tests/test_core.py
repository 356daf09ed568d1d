from typing import List, Optional

import pysam
import pytest

from pileupcall.config import PileupDetectionConfig
from pileupcall.detector import detect_pileup_alleles, evaluate_site, passes_filters
from pileupcall.mismatch import MismatchAnnotations, MissingMismatchAnnotationError
from pileupcall.models import AlleleRecord, Candidate, PileupElement, Site
from pileupcall.pileup import ReferenceContext
from pileupcall.scanner import best_candidate, scan_site

PROPER_PAIR = 0x1 | 0x2


def make_read(name: str, flag: int = PROPER_PAIR, nm: int = 0, start: int = 100) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = "A" * 50
    a.flag = flag
    a.reference_id = 0
    a.reference_start = start
    a.mapping_quality = 60
    a.cigartuples = [(0, 50)]  # M
    a.query_qualities = pysam.qualitystring_to_array("I" * 50)
    a.set_tag("NM", nm, value_type="i")
    return a


def make_site(
    ref_base: str,
    bases: List[str],
    *,
    insertions: Optional[List[Optional[str]]] = None,
    deletions: Optional[List[int]] = None,
    flags: Optional[List[int]] = None,
    reference: Optional[ReferenceContext] = None,
    pos: int = 101,
    annotate: bool = True,
) -> tuple[Site, MismatchAnnotations]:
    annotations = MismatchAnnotations()
    elements = []
    for i, base in enumerate(bases):
        read = make_read(f"r{i}", flag=flags[i] if flags else PROPER_PAIR)
        if annotate:
            annotations.annotate(read)
        elements.append(
            PileupElement(
                base=base,
                read=read,
                inserted_bases=insertions[i] if insertions else None,
                deleted_length=deletions[i] if deletions else 0,
            )
        )
    site = Site(
        contig="chr1",
        start=pos,
        end=pos,
        ref_base=ref_base,
        elements=elements,
        reference=reference,
    )
    return site, annotations


def test_snp_reported_when_support_clears_threshold():
    site, ann = make_site("A", ["T"] * 8 + ["A"] * 2)
    config = PileupDetectionConfig(snp_threshold=0.5, pileup_absolute_depth=5)

    calls = evaluate_site(site, config, ann)

    assert calls.reporting == [
        AlleleRecord(contig="chr1", start=101, end=101, ref="A", alt="T", kind="SNP", support=8, depth=10)
    ]
    assert len(calls.assembly) == 1


def test_snp_dropped_when_depth_below_minimum():
    site, ann = make_site("A", ["T"] * 8 + ["A"] * 2)
    config = PileupDetectionConfig(snp_threshold=0.5, pileup_absolute_depth=20)

    calls = evaluate_site(site, config, ann)

    assert calls.reporting == []
    assert calls.assembly == []


def test_reference_only_site_emits_nothing():
    site, ann = make_site("C", ["C"] * 12)
    config = PileupDetectionConfig(snp_threshold=0.0, detect_indels=True)

    calls = evaluate_site(site, config, ann)
    assert calls.reporting == []
    assert calls.assembly == []


def test_insertion_alt_is_prefixed_with_reference_base():
    site, ann = make_site("G", ["G"] * 10, insertions=["AC"] * 6 + [None] * 4)
    config = PileupDetectionConfig(indel_threshold=0.5, detect_indels=True)

    calls = evaluate_site(site, config, ann)

    assert len(calls.reporting) == 1
    rec = calls.reporting[0]
    assert rec.kind == "INS"
    assert rec.ref == "G"
    assert rec.alt == "GAC"
    assert rec.end == 101


def test_deletion_uses_extended_reference_span():
    # position 101 (1-based) is the "G" of "GTA"
    seq = "C" * 100 + "GTA" + "C" * 20
    reference = ReferenceContext.from_sequences({"chr1": seq})
    site, ann = make_site(
        "G", ["G"] * 10, deletions=[2] * 7 + [0] * 3, reference=reference
    )
    config = PileupDetectionConfig(indel_threshold=0.5, detect_indels=True)

    calls = evaluate_site(site, config, ann)

    assert len(calls.reporting) == 1
    rec = calls.reporting[0]
    assert rec.kind == "DEL"
    assert rec.ref == "GTA"
    assert rec.alt == "G"
    assert rec.start == 101
    assert rec.end == 103


def test_indels_ignored_when_detection_disabled():
    site, ann = make_site("G", ["G"] * 10, insertions=["AC"] * 10)
    config = PileupDetectionConfig(indel_threshold=0.1, detect_indels=False)

    counts = scan_site(site, config, ann)
    assert not counts.insertions
    assert counts.total_alt_reads == 0
    assert evaluate_site(site, config, ann).reporting == []


def test_substitution_and_adjacent_insertion_are_counted_separately():
    site, ann = make_site("G", ["T", "G"], insertions=["A", None])
    config = PileupDetectionConfig(detect_indels=True)

    counts = scan_site(site, config, ann)
    assert counts.substitutions == {"T": 1}
    assert counts.insertions == {"A": 1}
    assert counts.total_alt_reads == 2


def test_substitution_counts_bounded_by_depth_without_indels():
    site, ann = make_site("A", ["C", "G", "T", "D", "A", "C"])
    counts = scan_site(site, PileupDetectionConfig(), ann)
    assert sum(counts.substitutions.values()) <= counts.depth
    assert "D" not in counts.substitutions
    assert counts.substitutions == {"C": 2, "G": 1, "T": 1}


def test_bad_reads_block_reporting_but_not_disabled_assembly_pass():
    # three of eight alt reads are not properly paired: 3/8 > 0.2
    flags = [0] * 3 + [PROPER_PAIR] * 7
    site, ann = make_site("A", ["T"] * 8 + ["A"] * 2, flags=flags)
    config = PileupDetectionConfig(snp_threshold=0.5, bad_read_threshold=0.2)

    counts = scan_site(site, config, ann)
    assert counts.bad_alt_reads == 3
    assert counts.bad_alt_reads_assembly == 0

    calls = evaluate_site(site, config, ann)
    assert calls.reporting == []
    assert [r.alt for r in calls.assembly] == ["T"]


def test_bad_read_fraction_within_tolerance_passes():
    flags = [0] * 1 + [PROPER_PAIR] * 9
    site, ann = make_site("A", ["T"] * 8 + ["A"] * 2, flags=flags)
    config = PileupDetectionConfig(snp_threshold=0.5, bad_read_threshold=0.2)

    calls = evaluate_site(site, config, ann)
    assert [r.alt for r in calls.reporting] == ["T"]


def test_tie_goes_to_first_allele_encountered():
    site, ann = make_site("A", ["C", "T", "T", "C"])
    counts = scan_site(site, PileupDetectionConfig(), ann)
    assert best_candidate(counts.substitutions) == Candidate(allele="C", support=2)


def test_best_candidate_empty_table():
    site, ann = make_site("A", ["A", "A"])
    counts = scan_site(site, PileupDetectionConfig(), ann)
    assert best_candidate(counts.substitutions) is None


def test_passes_filters_monotonic_in_support():
    config = PileupDetectionConfig(snp_threshold=0.3, pileup_absolute_depth=5, bad_read_threshold=0.5)
    results = [
        passes_filters(
            config,
            is_indel=False,
            depth=10,
            bad_reads=1,
            total_alt_reads=10,
            candidate=Candidate(allele="T", support=support),
            bad_read_threshold=config.bad_read_threshold,
        )
        for support in range(0, 11)
    ]
    first_pass = results.index(True)
    assert all(results[first_pass:])
    assert not any(results[:first_pass])
    # 3/10 in single precision is just above 0.3
    assert first_pass == 3


def test_single_alt_read_at_default_snp_threshold_is_reported():
    site, ann = make_site("A", ["T"] + ["A"] * 9)

    calls = evaluate_site(site, PileupDetectionConfig(), ann)

    assert [(r.ref, r.alt, r.support, r.depth) for r in calls.reporting] == [("A", "T", 1, 10)]
    assert len(calls.assembly) == 1


def test_bad_read_fraction_exactly_at_threshold_blocks():
    config = PileupDetectionConfig(snp_threshold=0.5, bad_read_threshold=0.1)
    kwargs = dict(is_indel=False, depth=10, total_alt_reads=10, candidate=Candidate(allele="T", support=10))
    assert passes_filters(config, bad_reads=0, bad_read_threshold=0.1, **kwargs)
    # 1/10 in single precision is just above 0.1
    assert not passes_filters(config, bad_reads=1, bad_read_threshold=0.1, **kwargs)
    assert passes_filters(config, bad_reads=1, bad_read_threshold=0.125, **kwargs)


def test_passes_filters_requires_alt_reads():
    config = PileupDetectionConfig(snp_threshold=0.0)
    assert not passes_filters(
        config,
        is_indel=False,
        depth=10,
        bad_reads=0,
        total_alt_reads=0,
        candidate=Candidate(allele="T", support=1),
        bad_read_threshold=0.5,
    )


def test_missing_annotation_is_fatal_when_classifier_enabled():
    site, ann = make_site("A", ["T"] * 4, annotate=False)
    config = PileupDetectionConfig(bad_read_threshold=0.5)
    with pytest.raises(MissingMismatchAnnotationError):
        scan_site(site, config, ann)


def test_missing_annotation_ignored_when_classifiers_disabled():
    site, ann = make_site("A", ["T"] * 4, annotate=False)
    counts = scan_site(site, PileupDetectionConfig(), ann)
    assert counts.substitutions == {"T": 4}


def test_detect_pileup_alleles_concatenates_sites_in_order():
    site1, ann1 = make_site("A", ["T"] * 5, pos=10)
    site2, _ = make_site("C", ["G"] * 5, pos=11)
    config = PileupDetectionConfig(snp_threshold=0.5)

    calls = detect_pileup_alleles([site1, site2], config, ann1)
    assert [(r.start, r.alt) for r in calls.reporting] == [(10, "T"), (11, "G")]
    assert [(r.start, r.alt) for r in calls.assembly] == [(10, "T"), (11, "G")]
