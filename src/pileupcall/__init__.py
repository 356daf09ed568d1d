"""PileupCall: pileup-based allele detection to supplement assembly-based variant discovery.

Public API is intentionally small; most users should use the CLI:

    pileupcall detect --bam ... --ref ... --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
