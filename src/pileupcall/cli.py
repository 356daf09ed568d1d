from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import pysam

from . import __version__
from .caller import ASSEMBLY_VCF, REPORTING_VCF, call_bam
from .config import PileupDetectionConfig
from .plotting import plot_record_counts, plot_support_fraction_hist
from .report import render_report
from .toy_data import make_toy_data
from .utils import ensure_outdir
from .validation import check_bam_index, check_contigs_match, check_fasta_index, parse_region


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    sys.stderr.write(f"{err.__class__.__name__}: {err}\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _bam_contigs(bam_path: str) -> list[str]:
    with pysam.AlignmentFile(bam_path, "rb") as bam:
        return list(bam.header.references)


def _fasta_contigs(ref_path: str) -> list[str]:
    with pysam.FastaFile(ref_path) as fa:
        return list(fa.references)


def build_parser() -> argparse.ArgumentParser:
    defaults = PileupDetectionConfig()

    p = argparse.ArgumentParser(
        prog="pileupcall",
        description=(
            "PileupCall: detect candidate SNPs and indels directly from read pileups, "
            "as a supplement to assembly-based variant discovery."
        ),
    )
    p.add_argument("--version", action="version", version=f"pileupcall {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference and BAM with a planted SNP, insertion and deletion.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # detect
    # -----------------
    d = sub.add_parser(
        "detect",
        help="Scan BAM pileups and emit candidate alleles (reporting + assembly filtering VCFs).",
    )
    d.add_argument("--bam", required=True, type=_path_exists, help="Input BAM (sorted, indexed).")
    d.add_argument("--ref", required=True, type=_path_exists, help="Reference FASTA (indexed).")
    d.add_argument("--outdir", required=True, help="Output directory.")
    d.add_argument("--region", default=None, help="Optional region ctg[:start[-end]] (1-based).")

    # Detection thresholds
    d.add_argument("--detect-indels", action="store_true", help="Also detect insertions and deletions.")
    d.add_argument(
        "--snp-threshold",
        type=float,
        default=defaults.snp_threshold,
        help="Support fraction a SNP must exceed.",
    )
    d.add_argument(
        "--indel-threshold",
        type=float,
        default=defaults.indel_threshold,
        help="Support fraction an indel must exceed.",
    )
    d.add_argument(
        "--pileup-absolute-depth",
        type=int,
        default=defaults.pileup_absolute_depth,
        help="Minimum pileup depth at a site.",
    )

    # Bad-read heuristics
    d.add_argument(
        "--bad-read-threshold",
        type=float,
        default=defaults.bad_read_threshold,
        help="Max fraction of bad alt-supporting reads for reporting (<= 0 disables).",
    )
    d.add_argument(
        "--assembly-bad-read-threshold",
        type=float,
        default=defaults.assembly_bad_read_threshold,
        help="Max fraction of bad alt-supporting reads for assembly filtering (<= 0 disables).",
    )
    d.add_argument(
        "--no-bad-read-proper-pair",
        action="store_true",
        help="Do not count improperly paired reads as bad.",
    )
    d.add_argument(
        "--no-bad-read-secondary-or-supplementary",
        action="store_true",
        help="Do not count secondary / SA-tagged reads as bad.",
    )
    d.add_argument(
        "--bad-read-edit-distance",
        type=float,
        default=defaults.bad_read_edit_distance,
        help="Mismatch fraction above which a read is bad (reporting).",
    )
    d.add_argument(
        "--assembly-bad-read-edit-distance",
        type=float,
        default=defaults.assembly_bad_read_edit_distance,
        help="Mismatch fraction above which a read is bad (assembly filtering).",
    )
    d.add_argument(
        "--template-length-mean",
        type=float,
        default=defaults.template_length_mean,
        help="Expected template length (<= 0 disables the template length check).",
    )
    d.add_argument(
        "--template-length-std",
        type=float,
        default=defaults.template_length_std,
        help="Template length standard deviation (<= 0 disables the template length check).",
    )

    # Read filters
    d.add_argument("--keep-duplicates", action="store_true", help="Do not skip duplicate reads.")
    d.add_argument("--include-secondary", action="store_true", help="Include secondary alignments.")
    d.add_argument(
        "--exclude-supplementary", action="store_true", help="Exclude supplementary alignments."
    )
    d.add_argument("--min-mapq", type=int, default=0, help="Minimum mapping quality.")
    d.add_argument("--min-baseq", type=int, default=0, help="Minimum base quality in pileups.")

    d.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    d.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")
    d.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    d.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "PileupCall quickstart (copy/paste):",
        "",
        "1) SNPs only, default thresholds:",
        "   pileupcall detect \\",
        "     --bam sample.bam \\",
        "     --ref ref.fa \\",
        "     --outdir results/",
        f"   Outputs: results/{REPORTING_VCF}, results/{ASSEMBLY_VCF}, results/report.html",
        "",
        "2) SNPs and indels in one region, with bad-read filtering:",
        "   pileupcall detect \\",
        "     --bam sample.bam --ref ref.fa --outdir results_chr20/ \\",
        "     --region chr20:1000000-2000000 \\",
        "     --detect-indels --bad-read-threshold 0.4 --assembly-bad-read-threshold 0.4",
        "",
        "3) Try it on toy data:",
        "   pileupcall make-toy-data --outdir toy/",
        "   pileupcall detect --bam toy/toy.bam --ref toy/toy_ref.fa --outdir toy_out/ --detect-indels",
        "",
        "Tip: use --dry-run to validate inputs without scanning.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_detect(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "detect.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("pileupcall")
    logger.info("pileupcall %s", __version__)

    try:
        config = PileupDetectionConfig.from_args(args)
        contig, start0, end0 = parse_region(args.region)

        check_bam_index(args.bam)
        check_fasta_index(args.ref)
        bam_contigs = _bam_contigs(args.bam)
        check_contigs_match(bam_contigs, _fasta_contigs(args.ref))
        if contig is not None and contig not in bam_contigs:
            raise ValueError(f"Region contig '{contig}' is not present in the BAM header")

        if args.dry_run:
            print("Dry-run: inputs look OK.")
            print(f"Region: {args.region or 'all'}")
            print(f"Indel detection: {'on' if config.detect_indels else 'off'}")
            print("Planned outputs:")
            print(f"  {REPORTING_VCF} -> {outdir / REPORTING_VCF}")
            print(f"  {ASSEMBLY_VCF} -> {outdir / ASSEMBLY_VCF}")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)

        if args.resume and (outdir / "summary.json").exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outdir / "report.html"))
            return 0

        run = call_bam(
            bam_path=args.bam,
            ref_path=args.ref,
            outdir=outdir,
            config=config,
            region=args.region,
            contig=contig,
            start0=start0,
            end0=end0,
            skip_duplicates=not bool(args.keep_duplicates),
            include_secondary=bool(args.include_secondary),
            include_supplementary=not bool(args.exclude_supplementary),
            min_mapq=int(args.min_mapq),
            min_baseq=int(args.min_baseq),
            progress=not bool(args.no_progress),
        )

        plots_dir = outdir / "plots"
        record_counts_png = plots_dir / "record_counts.png"
        support_png = plots_dir / "support_fraction_hist.png"
        plot_record_counts(records=run["records"], out_png=record_counts_png)
        plot_support_fraction_hist(
            bin_edges=run["support_fraction_hist"]["bin_edges"],
            counts=run["support_fraction_hist"]["counts"],
            out_png=support_png,
        )
        plots_rel = {
            "record_counts": str(Path("plots") / record_counts_png.name),
            "support_fraction_hist": str(Path("plots") / support_png.name),
        }

        report_path = render_report(outdir=outdir, version=__version__, run=run, plots=plots_rel)

        logger.info("Report written: %s", report_path)
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "detect":
        return cmd_detect(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
