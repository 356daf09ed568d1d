"""Heuristics flagging reads whose alternate-allele support should be discounted.

A read is "bad" if any enabled check fires:

- it is not properly paired
- it is a secondary alignment or carries a supplementary alignment (``SA``) tag
- its mismatch fraction exceeds the edit-distance threshold
- its inferred template length is more than 2.25 standard deviations from the mean

The reporting pass uses all checks; the assembly pass only uses the mismatch check.
"""

from __future__ import annotations

import pysam

from .config import TEMPLATE_LENGTH_STD_MULTIPLIER, BadReadRules, PileupDetectionConfig
from .mismatch import MismatchAnnotations


def template_length(read: pysam.AlignedSegment) -> int:
    """Signed inferred insert size (TLEN) of the read."""
    return int(read.template_length)


def is_supplementary_or_secondary(read: pysam.AlignedSegment) -> bool:
    return bool(read.is_secondary) or read.has_tag("SA")


def is_bad_read(
    read: pysam.AlignedSegment,
    rules: BadReadRules,
    annotations: MismatchAnnotations,
) -> bool:
    """Evaluate ``read`` against one threshold set.

    Raises MissingMismatchAnnotationError if the mismatch check is reached for an
    unannotated read.
    """
    if not rules.enabled:
        return False
    if rules.check_proper_pair and not read.is_proper_pair:
        return True
    if rules.check_secondary_or_supplementary and is_supplementary_or_secondary(read):
        return True
    if annotations.fraction(read) > rules.edit_distance:
        return True
    if rules.checks_template_length:
        tlen = template_length(read)
        margin = TEMPLATE_LENGTH_STD_MULTIPLIER * rules.template_length_std
        if (
            tlen < rules.template_length_mean - margin
            or tlen > rules.template_length_mean + margin
        ):
            return True
    return False


def is_bad_read_for_reporting(
    read: pysam.AlignedSegment,
    config: PileupDetectionConfig,
    annotations: MismatchAnnotations,
) -> bool:
    return is_bad_read(read, config.reporting_rules(), annotations)


def is_bad_read_for_assembly(
    read: pysam.AlignedSegment,
    config: PileupDetectionConfig,
    annotations: MismatchAnnotations,
) -> bool:
    return is_bad_read(read, config.assembly_rules(), annotations)
