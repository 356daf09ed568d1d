import pysam
import pytest

from pileupcall.badreads import is_bad_read_for_assembly, is_bad_read_for_reporting
from pileupcall.config import PileupDetectionConfig
from pileupcall.mismatch import MismatchAnnotations, MissingMismatchAnnotationError

PROPER_PAIR = 0x1 | 0x2
SECONDARY = 0x100


def make_read(
    name: str = "r1",
    *,
    flag: int = PROPER_PAIR,
    nm: int = 0,
    tlen: int = 300,
    sa: bool = False,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = "C" * 100
    a.flag = flag
    a.reference_id = 0
    a.reference_start = 1000
    a.mapping_quality = 60
    a.cigartuples = [(0, 100)]
    a.template_length = tlen
    a.set_tag("NM", nm, value_type="i")
    if sa:
        a.set_tag("SA", "chr2,500,+,100M,60,0;", value_type="Z")
    return a


def annotated(read: pysam.AlignedSegment) -> MismatchAnnotations:
    ann = MismatchAnnotations()
    ann.annotate(read)
    return ann


def test_disabled_threshold_never_flags():
    read = make_read(flag=SECONDARY, nm=50, tlen=5000, sa=True)
    config = PileupDetectionConfig(bad_read_threshold=0.0, template_length_mean=300, template_length_std=10)
    # no annotation needed when disabled
    assert not is_bad_read_for_reporting(read, config, MismatchAnnotations())
    assert not is_bad_read_for_reporting(
        read, PileupDetectionConfig(bad_read_threshold=-1.0), MismatchAnnotations()
    )


def test_clean_read_is_good():
    read = make_read()
    config = PileupDetectionConfig(bad_read_threshold=0.4)
    assert not is_bad_read_for_reporting(read, config, annotated(read))


def test_improper_pair_is_bad_unless_check_disabled():
    read = make_read(flag=0x1)
    ann = annotated(read)
    assert is_bad_read_for_reporting(read, PileupDetectionConfig(bad_read_threshold=0.4), ann)
    assert not is_bad_read_for_reporting(
        read, PileupDetectionConfig(bad_read_threshold=0.4, bad_read_proper_pair=False), ann
    )


@pytest.mark.parametrize("flag,sa", [(PROPER_PAIR | SECONDARY, False), (PROPER_PAIR, True)])
def test_secondary_or_supplementary_is_bad(flag, sa):
    read = make_read(flag=flag, sa=sa)
    ann = annotated(read)
    assert is_bad_read_for_reporting(read, PileupDetectionConfig(bad_read_threshold=0.4), ann)
    assert not is_bad_read_for_reporting(
        read,
        PileupDetectionConfig(bad_read_threshold=0.4, bad_read_secondary_or_supplementary=False),
        ann,
    )


def test_mismatch_fraction_must_exceed_threshold():
    config = PileupDetectionConfig(bad_read_threshold=0.4, bad_read_edit_distance=0.08)
    at_limit = make_read("at", nm=8)  # 80 -> 0.08
    above = make_read("above", nm=9)  # 90 -> 0.09
    assert not is_bad_read_for_reporting(at_limit, config, annotated(at_limit))
    assert is_bad_read_for_reporting(above, config, annotated(above))


def test_template_length_outside_window_is_bad():
    config = PileupDetectionConfig(
        bad_read_threshold=0.4, template_length_mean=300.0, template_length_std=20.0
    )
    # window is 300 +/- 45
    for tlen, bad in [(300, False), (255, False), (345, False), (254, True), (400, True)]:
        read = make_read(f"t{tlen}", tlen=tlen)
        assert is_bad_read_for_reporting(read, config, annotated(read)) is bad


def test_template_length_check_needs_mean_and_std():
    read = make_read(tlen=5000)
    ann = annotated(read)
    assert not is_bad_read_for_reporting(
        read, PileupDetectionConfig(bad_read_threshold=0.4, template_length_mean=300.0), ann
    )
    assert not is_bad_read_for_reporting(
        read, PileupDetectionConfig(bad_read_threshold=0.4, template_length_std=20.0), ann
    )


def test_assembly_classifier_only_checks_mismatches():
    config = PileupDetectionConfig(
        assembly_bad_read_threshold=0.4,
        assembly_bad_read_edit_distance=0.12,
        template_length_mean=300.0,
        template_length_std=1.0,
    )
    messy_but_clean = make_read("a", flag=SECONDARY, tlen=9000, sa=True, nm=2)
    mismatched = make_read("b", nm=13)
    assert not is_bad_read_for_assembly(messy_but_clean, config, annotated(messy_but_clean))
    assert is_bad_read_for_assembly(mismatched, config, annotated(mismatched))


def test_assembly_classifier_disabled_by_threshold():
    read = make_read(nm=50)
    config = PileupDetectionConfig(assembly_bad_read_threshold=0.0)
    assert not is_bad_read_for_assembly(read, config, annotated(read))


def test_missing_annotation_fails_when_mismatch_check_is_reached():
    read = make_read()
    config = PileupDetectionConfig(bad_read_threshold=0.4)
    with pytest.raises(MissingMismatchAnnotationError):
        is_bad_read_for_reporting(read, config, MismatchAnnotations())
    with pytest.raises(MissingMismatchAnnotationError):
        is_bad_read_for_assembly(read, PileupDetectionConfig(assembly_bad_read_threshold=0.4), MismatchAnnotations())
