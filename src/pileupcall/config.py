from __future__ import annotations

import argparse
from dataclasses import asdict, dataclass
from typing import Any, Dict

# Reads whose inferred template length falls outside mean +/- this many standard deviations are bad.
TEMPLATE_LENGTH_STD_MULTIPLIER = 2.25


@dataclass(frozen=True)
class BadReadRules:
    """Threshold set consulted by the bad-read classifier for one filter pass.

    ``read_fraction_threshold <= 0`` disables the classifier entirely, and the same value
    bounds the fraction of bad alternate-supporting reads tolerated at a site.
    """

    read_fraction_threshold: float
    edit_distance: float
    check_proper_pair: bool = False
    check_secondary_or_supplementary: bool = False
    template_length_mean: float = 0.0
    template_length_std: float = 0.0

    @property
    def enabled(self) -> bool:
        return self.read_fraction_threshold > 0.0

    @property
    def checks_template_length(self) -> bool:
        return self.template_length_mean > 0 and self.template_length_std > 0


@dataclass(frozen=True)
class PileupDetectionConfig:
    """Tunables for pileup allele detection. Immutable for the duration of a scan."""

    detect_indels: bool = False
    snp_threshold: float = 0.1
    indel_threshold: float = 0.5
    pileup_absolute_depth: int = 0
    bad_read_threshold: float = 0.0
    assembly_bad_read_threshold: float = 0.0
    bad_read_proper_pair: bool = True
    bad_read_secondary_or_supplementary: bool = True
    bad_read_edit_distance: float = 0.08
    assembly_bad_read_edit_distance: float = 0.12
    template_length_mean: float = 0.0
    template_length_std: float = 0.0

    def validate(self) -> "PileupDetectionConfig":
        """Raise ValueError on out-of-range options; return self for chaining."""
        for name in (
            "snp_threshold",
            "indel_threshold",
            "bad_read_edit_distance",
            "assembly_bad_read_edit_distance",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be a fraction in [0, 1], got {value}")
        for name in ("bad_read_threshold", "assembly_bad_read_threshold"):
            value = getattr(self, name)
            if value > 1.0:
                raise ValueError(f"{name} must be <= 1 (use <= 0 to disable), got {value}")
        if self.pileup_absolute_depth < 0:
            raise ValueError(
                f"pileup_absolute_depth must be >= 0, got {self.pileup_absolute_depth}"
            )
        if self.template_length_std < 0:
            raise ValueError(f"template_length_std must be >= 0, got {self.template_length_std}")
        return self

    def reporting_rules(self) -> BadReadRules:
        return BadReadRules(
            read_fraction_threshold=self.bad_read_threshold,
            edit_distance=self.bad_read_edit_distance,
            check_proper_pair=self.bad_read_proper_pair,
            check_secondary_or_supplementary=self.bad_read_secondary_or_supplementary,
            template_length_mean=self.template_length_mean,
            template_length_std=self.template_length_std,
        )

    def assembly_rules(self) -> BadReadRules:
        # Only the mismatch check applies for the assembly pass.
        return BadReadRules(
            read_fraction_threshold=self.assembly_bad_read_threshold,
            edit_distance=self.assembly_bad_read_edit_distance,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "PileupDetectionConfig":
        """Build a config from the ``pileupcall detect`` argparse namespace."""
        return cls(
            detect_indels=bool(args.detect_indels),
            snp_threshold=float(args.snp_threshold),
            indel_threshold=float(args.indel_threshold),
            pileup_absolute_depth=int(args.pileup_absolute_depth),
            bad_read_threshold=float(args.bad_read_threshold),
            assembly_bad_read_threshold=float(args.assembly_bad_read_threshold),
            bad_read_proper_pair=not bool(args.no_bad_read_proper_pair),
            bad_read_secondary_or_supplementary=not bool(args.no_bad_read_secondary_or_supplementary),
            bad_read_edit_distance=float(args.bad_read_edit_distance),
            assembly_bad_read_edit_distance=float(args.assembly_bad_read_edit_distance),
            template_length_mean=float(args.template_length_mean),
            template_length_std=float(args.template_length_std),
        ).validate()
