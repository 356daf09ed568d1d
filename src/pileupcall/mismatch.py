from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import pysam

logger = logging.getLogger(__name__)

ReadKey = Tuple[str, int, int, int]

# CIGAR operations (pysam integer codes)
_ALIGNMENT_OPS = (0, 7, 8)  # M, =, X
_INDEL_OPS = (1, 2)  # I, D

# Fixed-point scale of the stored mismatch percentage (80 == 8.0%).
MISMATCH_SCALE = 1000


class MismatchComputationError(ValueError):
    """Raised when a read's mismatch percentage cannot be computed."""


class MissingMismatchAnnotationError(KeyError):
    """Raised when a read is classified before it was annotated."""


def read_key(read: pysam.AlignedSegment) -> ReadKey:
    """Identity of a read within one pileup pass."""
    return (
        str(read.query_name),
        int(read.flag),
        int(read.reference_id),
        int(read.reference_start),
    )


def aligned_length(read: pysam.AlignedSegment) -> int:
    """Total length of M/=/X operations."""
    return sum(length for op, length in (read.cigartuples or []) if op in _ALIGNMENT_OPS)


def indel_length(read: pysam.AlignedSegment) -> int:
    """Total length of I/D operations."""
    return sum(length for op, length in (read.cigartuples or []) if op in _INDEL_OPS)


def count_edit_distance(
    read: pysam.AlignedSegment,
    reference_bases: str,
    reference_offset: int,
) -> int:
    """Compute the NM edit distance of a read against reference bases.

    Mismatching aligned bases plus every inserted and deleted base.

    Parameters
    ----------
    reference_bases:
        Reference sequence covering at least the aligned span of the read.
    reference_offset:
        0-based reference coordinate of ``reference_bases[0]``.
    """
    seq = read.query_sequence
    if seq is None or read.cigartuples is None:
        raise MismatchComputationError(f"Read {read.query_name} has no sequence or CIGAR")

    ref = reference_bases.upper()
    edits = 0
    ref_pos = read.reference_start - reference_offset
    query_pos = 0

    for op, length in read.cigartuples:
        if op in _ALIGNMENT_OPS:
            if ref_pos < 0 or ref_pos + length > len(ref):
                raise MismatchComputationError(
                    f"Reference bases do not cover read {read.query_name} "
                    f"(offset {reference_offset}, {len(ref)} bases)"
                )
            for i in range(length):
                if seq[query_pos + i].upper() != ref[ref_pos + i]:
                    edits += 1
            ref_pos += length
            query_pos += length
        elif op == 1:  # I
            edits += length
            query_pos += length
        elif op == 2:  # D
            edits += length
            ref_pos += length
        elif op == 3:  # N
            ref_pos += length
        elif op == 4:  # S
            query_pos += length
        # H, P consume neither

    return edits


def mismatch_percentage(edit_distance: int, read: pysam.AlignedSegment) -> int:
    """Fixed-point (x1000) fraction of aligned bases that are mismatches.

    The edit distance is first reduced by the total indel length so only substitutions count.
    Division truncates toward zero.
    """
    aligned = aligned_length(read)
    if aligned <= 0:
        raise MismatchComputationError(
            f"Read {read.query_name} has no aligned bases; cannot compute mismatch percentage"
        )
    scaled = MISMATCH_SCALE * (edit_distance - indel_length(read))
    pct = abs(scaled) // aligned
    return -pct if scaled < 0 else pct


class MismatchAnnotations:
    """Precomputed mismatch percentages keyed by read identity.

    Every read must be annotated before the bad-read classifier sees it.
    Annotating the same read twice is a no-op.
    """

    def __init__(self) -> None:
        self._values: Dict[ReadKey, int] = {}
        self._ends: Dict[ReadKey, int] = {}

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, read: pysam.AlignedSegment) -> bool:
        return read_key(read) in self._values

    def annotate(
        self,
        read: pysam.AlignedSegment,
        reference_bases: Optional[str] = None,
        reference_offset: Optional[int] = None,
    ) -> int:
        """Attach the mismatch percentage for ``read`` and return it.

        Uses the NM tag when present; otherwise the edit distance is computed against
        ``reference_bases`` (starting at 0-based ``reference_offset``, default: read start).
        """
        key = read_key(read)
        if key in self._values:
            return self._values[key]

        if read.has_tag("NM"):
            nm = int(read.get_tag("NM"))
        elif reference_bases is not None:
            offset = read.reference_start if reference_offset is None else reference_offset
            nm = count_edit_distance(read, reference_bases, offset)
        else:
            raise MismatchComputationError(
                f"Read {read.query_name} has no NM tag and no reference bases were provided"
            )

        value = mismatch_percentage(nm, read)
        self._values[key] = value
        self._ends[key] = int(read.reference_end) if read.reference_end is not None else -1
        return value

    def percentage(self, read: pysam.AlignedSegment) -> int:
        try:
            return self._values[read_key(read)]
        except KeyError:
            raise MissingMismatchAnnotationError(
                f"Read {read.query_name} was not annotated with a mismatch percentage; "
                "annotate every read before classification"
            ) from None

    def fraction(self, read: pysam.AlignedSegment) -> float:
        return self.percentage(read) / float(MISMATCH_SCALE)

    def discard_ended_before(self, reference_id: int, pos0: int) -> int:
        """Forget reads on ``reference_id`` (and earlier contigs) ending at or before ``pos0``."""
        stale = [
            k
            for k, end in self._ends.items()
            if k[2] < reference_id or (k[2] == reference_id and end <= pos0)
        ]
        for k in stale:
            del self._values[k]
            del self._ends[k]
        if stale:
            logger.debug("Discarded %d stale mismatch annotations", len(stale))
        return len(stale)
