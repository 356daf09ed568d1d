from __future__ import annotations

import dataclasses
import logging
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import numpy as np
import pysam
from tqdm import tqdm

from .config import PileupDetectionConfig
from .detector import candidates_for, evaluate_counts
from .mismatch import MismatchAnnotations, MismatchComputationError, ReadKey, read_key
from .models import AlleleRecord, PileupAlleleCalls, Site
from .pileup import ReadFilter, ReferenceContext, iter_sites
from .scanner import scan_site
from .utils import ensure_outdir, write_json

logger = logging.getLogger(__name__)

REPORTING_VCF = "pileup_calls.vcf.gz"
ASSEMBLY_VCF = "assembly_filter_alleles.vcf.gz"

# Sites between pruning passes over the annotation cache.
_PRUNE_EVERY = 10_000


def annotate_site_reads(
    site: Site,
    annotations: MismatchAnnotations,
    reference: ReferenceContext,
    counts: Dict[str, int],
    rejected: Optional[Set[ReadKey]] = None,
) -> Site:
    """Annotate every read of ``site``; drop elements whose read cannot be annotated.

    Reads that fail are recorded in ``rejected`` and dropped silently at later sites.
    """
    if rejected is None:
        rejected = set()
    kept = []
    for element in site.elements:
        read = element.read
        if read not in annotations:
            key = read_key(read)
            if key in rejected:
                continue
            try:
                if read.has_tag("NM"):
                    annotations.annotate(read)
                else:
                    end = read.reference_end
                    if end is None or end <= read.reference_start:
                        raise MismatchComputationError(
                            f"Read {read.query_name} has no aligned reference span"
                        )
                    span = reference.bases(site.contig, read.reference_start + 1, end)
                    annotations.annotate(read, span, read.reference_start)
                counts["reads_annotated"] += 1
            except MismatchComputationError as e:
                rejected.add(key)
                counts["reads_rejected_annotation"] += 1
                logger.warning("Skipping read at %s:%d: %s", site.contig, site.start, e)
                continue
        kept.append(element)
    if len(kept) == len(site.elements):
        return site
    return dataclasses.replace(site, elements=kept)


def _vcf_header(bam: pysam.AlignmentFile) -> pysam.VariantHeader:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.add_meta("source", "pileupcall")
    for name, length in zip(bam.header.references, bam.header.lengths):
        header.contigs.add(name, length=length)
    header.info.add("PILEUP_KIND", number=1, type="String", description="Pileup allele kind (SNP, INS or DEL)")
    header.info.add("SUPPORT", number=1, type="Integer", description="Reads supporting the alternate allele")
    header.info.add("DP", number=1, type="Integer", description="Pileup depth at the site")
    return header


def write_records_vcf(
    records: Iterable[AlleleRecord],
    *,
    bam: pysam.AlignmentFile,
    out_vcf_gz: str | Path,
) -> Path:
    """Write records to a bgzipped, tabix-indexed VCF."""
    out_vcf_gz = Path(out_vcf_gz)
    plain = out_vcf_gz.with_suffix("")
    header = _vcf_header(bam)

    with pysam.VariantFile(str(plain), "w", header=header) as vcf:
        for rec in sorted(records, key=lambda r: (header.contigs[r.contig].id, r.start, r.end)):
            vr = vcf.new_record(
                contig=rec.contig,
                start=rec.start - 1,
                stop=rec.end,
                alleles=(rec.ref, rec.alt),
            )
            vr.info["PILEUP_KIND"] = rec.kind
            vr.info["SUPPORT"] = int(rec.support)
            vr.info["DP"] = int(rec.depth)
            vcf.write(vr)

    pysam.tabix_compress(str(plain), str(out_vcf_gz), force=True)
    pysam.tabix_index(str(out_vcf_gz), preset="vcf", force=True)
    plain.unlink()
    return out_vcf_gz


def _count_kinds(records: List[AlleleRecord]) -> Dict[str, int]:
    out = {"SNP": 0, "INS": 0, "DEL": 0}
    for r in records:
        out[r.kind] = out.get(r.kind, 0) + 1
    return out


def call_bam(
    *,
    bam_path: str,
    ref_path: str,
    outdir: str | Path,
    config: PileupDetectionConfig,
    region: Optional[str] = None,
    contig: Optional[str] = None,
    start0: Optional[int] = None,
    end0: Optional[int] = None,
    skip_duplicates: bool = True,
    include_secondary: bool = False,
    include_supplementary: bool = True,
    min_mapq: int = 0,
    min_baseq: int = 0,
    progress: bool = True,
) -> Dict[str, object]:
    """Main workhorse: pileup the BAM, detect alleles, write VCFs, and return summary dict."""
    t0 = time.time()
    outdir_path = ensure_outdir(outdir)

    bam = pysam.AlignmentFile(bam_path, "rb")
    reference = ReferenceContext.from_fasta(ref_path)
    read_filter = ReadFilter(
        skip_duplicates=skip_duplicates,
        include_secondary=include_secondary,
        include_supplementary=include_supplementary,
        min_mapq=min_mapq,
    )
    annotations = MismatchAnnotations()
    rejected: Set[ReadKey] = set()

    # Streaming histogram of best-candidate support fractions
    fraction_bins = np.linspace(0.0, 1.0, 21)
    fraction_counts = np.zeros(len(fraction_bins) - 1, dtype=np.int64)

    counts = {
        "sites_scanned": 0,
        "sites_with_alt_evidence": 0,
        "reads_annotated": 0,
        "reads_rejected_annotation": 0,
    }
    calls = PileupAlleleCalls()

    it: Iterable[Site] = iter_sites(
        bam,
        reference,
        contig=contig,
        start0=start0,
        end0=end0,
        read_filter=read_filter,
        min_baseq=min_baseq,
    )
    if progress:
        it = tqdm(it, unit="site", desc="Scanning pileups")

    for site in it:
        counts["sites_scanned"] += 1
        site = annotate_site_reads(site, annotations, reference, counts, rejected)
        if site.depth == 0:
            continue

        site_counts = scan_site(site, config, annotations)
        if site_counts.has_alt_evidence:
            counts["sites_with_alt_evidence"] += 1
            best = max(c.support for c in candidates_for(site_counts))
            fraction_counts += np.histogram([best / site.depth], bins=fraction_bins)[0]

        calls.extend(evaluate_counts(site, site_counts, config))

        if counts["sites_scanned"] % _PRUNE_EVERY == 0:
            annotations.discard_ended_before(bam.get_tid(site.contig), site.start - 1)

    logger.info(
        "Scanned %d sites: %d reporting records, %d assembly-suppression records",
        counts["sites_scanned"],
        len(calls.reporting),
        len(calls.assembly),
    )

    reporting_vcf = write_records_vcf(calls.reporting, bam=bam, out_vcf_gz=outdir_path / REPORTING_VCF)
    assembly_vcf = write_records_vcf(calls.assembly, bam=bam, out_vcf_gz=outdir_path / ASSEMBLY_VCF)

    bam.close()
    reference.close()

    dt = time.time() - t0

    summary = {
        "bam_path": bam_path,
        "ref_path": ref_path,
        "region": region,
        "config": config.to_dict(),
        "read_filters": {
            "skip_duplicates": bool(skip_duplicates),
            "include_secondary": bool(include_secondary),
            "include_supplementary": bool(include_supplementary),
            "min_mapq": int(min_mapq),
            "min_baseq": int(min_baseq),
        },
        "counts": {**counts, **read_filter.counts},
        "records": {
            "reporting": _count_kinds(calls.reporting),
            "assembly": _count_kinds(calls.assembly),
        },
        "reporting_vcf": str(reporting_vcf),
        "assembly_vcf": str(assembly_vcf),
        "support_fraction_hist": {
            "bin_edges": fraction_bins.tolist(),
            "counts": fraction_counts.tolist(),
        },
        "runtime_seconds": float(dt),
    }

    write_json(outdir_path / "summary.json", summary)
    return summary
