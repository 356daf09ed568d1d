from typing import Optional

import pysam
import pytest

from pileupcall.mismatch import (
    MismatchAnnotations,
    MismatchComputationError,
    MissingMismatchAnnotationError,
    count_edit_distance,
    mismatch_percentage,
)

REF = "ACGTTGCAAC" * 10


def make_read(
    seq: str,
    cigar: list,
    *,
    start: int = 0,
    nm: Optional[int] = None,
    name: str = "r1",
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start
    a.mapping_quality = 60
    a.cigartuples = cigar
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    if nm is not None:
        a.set_tag("NM", nm, value_type="i")
    return a


def test_percentage_from_nm_tag():
    read = make_read("A" * 100, [(0, 100)], nm=3)
    ann = MismatchAnnotations()
    assert ann.annotate(read) == 30
    assert ann.percentage(read) == 30
    assert ann.fraction(read) == pytest.approx(0.03)


def test_indel_lengths_are_subtracted():
    # 98 aligned bases, NM=5 of which 2 are inserted bases -> 3 mismatches
    read = make_read("A" * 100, [(0, 50), (1, 2), (0, 48)], nm=5)
    assert mismatch_percentage(5, read) == 3000 // 98


def test_negative_adjusted_count_truncates_toward_zero():
    read = make_read("A" * 100, [(0, 48), (1, 2), (0, 50)], nm=0)
    assert mismatch_percentage(0, read) == -20


def test_annotation_is_idempotent():
    read = make_read("A" * 100, [(0, 100)], nm=8)
    ann = MismatchAnnotations()
    first = ann.annotate(read)
    read.set_tag("NM", 50, value_type="i")
    second = ann.annotate(read)
    assert first == second == 80
    assert len(ann) == 1


def test_edit_distance_computed_from_reference():
    seq = list(REF[10:40])
    seq[3] = "A" if seq[3] != "A" else "C"
    seq[20] = "A" if seq[20] != "A" else "C"
    read = make_read("".join(seq), [(0, 30)], start=10)
    assert count_edit_distance(read, REF, 0) == 2

    ann = MismatchAnnotations()
    assert ann.annotate(read, REF[10:40], 10) == 2000 // 30


def test_edit_distance_counts_deleted_and_inserted_bases():
    # 5M 2D 5M: read skips REF[5:7]
    seq = REF[0:5] + REF[7:12]
    read = make_read(seq, [(0, 5), (2, 2), (0, 5)])
    assert count_edit_distance(read, REF, 0) == 2

    seq_ins = REF[0:5] + "GG" + REF[5:10]
    read_ins = make_read(seq_ins, [(0, 5), (1, 2), (0, 5)], name="r2")
    assert count_edit_distance(read_ins, REF, 0) == 2

    ann = MismatchAnnotations()
    assert ann.annotate(read_ins, REF[:10]) == 0


def test_edit_distance_ignores_soft_clips_and_case():
    seq = "tt" + REF[0:10].lower()
    read = make_read(seq, [(4, 2), (0, 10)])
    assert count_edit_distance(read, REF, 0) == 0


def test_reference_must_cover_read():
    read = make_read(REF[50:80], [(0, 30)], start=50)
    with pytest.raises(MismatchComputationError):
        count_edit_distance(read, REF[:60], 0)


def test_zero_aligned_bases_is_an_error():
    read = make_read("A" * 10, [(4, 10)], nm=0)
    with pytest.raises(MismatchComputationError):
        MismatchAnnotations().annotate(read)


def test_no_nm_and_no_reference_is_an_error():
    read = make_read("A" * 10, [(0, 10)])
    with pytest.raises(MismatchComputationError):
        MismatchAnnotations().annotate(read)


def test_missing_annotation_raises():
    read = make_read("A" * 10, [(0, 10)], nm=0)
    ann = MismatchAnnotations()
    assert read not in ann
    with pytest.raises(MissingMismatchAnnotationError):
        ann.percentage(read)


def test_discard_ended_before():
    early = make_read("A" * 10, [(0, 10)], start=0, nm=0, name="early")
    late = make_read("A" * 10, [(0, 10)], start=100, nm=0, name="late")
    ann = MismatchAnnotations()
    ann.annotate(early)
    ann.annotate(late)

    assert ann.discard_ended_before(0, 50) == 1
    assert early not in ann
    assert late in ann
