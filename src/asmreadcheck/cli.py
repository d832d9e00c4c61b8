from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from . import __version__
from .accumulator import estimate_contig_bytes
from .config import ScanConfig, parse_memory, parse_threshold
from .errors import ConfigError, GlobalInputError
from .models import CHANNEL_ORDER, MISMATCH_FRACTION
from .plotting import plot_channel_counts, plot_confidence_hist, plot_region_length_hist
from .report import render_report
from .scanner import plan_workers, scan_assembly
from .sources import BamAlignmentSource, FastaReferenceSource
from .toy_data import make_toy_data
from .utils import ensure_outdir, format_bytes, write_json
from .validation import check_bam_index, check_fasta_index, check_reference_matches
from .writers import TsvRegionWriter, write_clip_sites, write_zero_coverage

EXIT_CANCELLED = 130


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
    if log_path is not None and log_path.exists():
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="asmreadcheck",
        description=(
            "asmreadcheck: flag likely misassemblies from reads mapped back to an assembly "
            "(coverage collapse, clipped or mismatching reads, discordant pairs)."
        ),
    )
    p.add_argument("--version", action="version", version=f"asmreadcheck {__version__}")

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
        help="Generate a tiny assembly and BAM with planted misassembly signals.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # scan
    # -----------------
    s = sub.add_parser(
        "scan",
        help="Scan an assembly for misassembly signals from a BAM of reads mapped to it.",
    )
    s.add_argument(
        "--bam", required=True, type=_path_exists, help="Reads mapped to the assembly (sorted, indexed)."
    )
    s.add_argument(
        "--ref",
        default=None,
        type=_path_exists,
        help="Assembly FASTA (faidx-indexed). Required for the mismatch_fraction channel.",
    )
    s.add_argument("--outdir", required=True, help="Output directory.")
    s.add_argument(
        "--contig",
        action="append",
        default=None,
        help="Only scan this contig (repeatable). Default: all contigs in the BAM header.",
    )

    # Read filters
    s.add_argument("--min-mapq", type=int, default=10, help="Ignore reads below this MAPQ.")
    s.add_argument("--keep-duplicates", action="store_true", help="Do not skip duplicate reads.")
    s.add_argument("--include-secondary", action="store_true", help="Include secondary alignments.")
    s.add_argument(
        "--include-supplementary", action="store_true", help="Include supplementary alignments."
    )
    s.add_argument(
        "--min-clip-length", type=int, default=1, help="Shortest read-end clip counted as a clip event."
    )
    s.add_argument(
        "--ignore-hard-clips", action="store_true", help="Only count soft clips as clip events."
    )

    # Windows and calling
    s.add_argument("--window-width", type=int, default=200, help="Window width in bp.")
    s.add_argument("--window-step", type=int, default=50, help="Window step in bp (<= width).")
    s.add_argument(
        "--channels",
        default=",".join(CHANNEL_ORDER),
        help=f"Comma-separated channels to use (default: {','.join(CHANNEL_ORDER)}).",
    )
    s.add_argument(
        "--threshold",
        action="append",
        default=[],
        metavar="CHANNEL=Z",
        help="Per-channel z threshold, e.g. coverage=-3 or clip_fraction=4 (repeatable).",
    )
    s.add_argument(
        "--merge-gap",
        type=int,
        default=100,
        help="Merge regions from different channels closer than this many bp.",
    )
    s.add_argument(
        "--min-window-data-fraction",
        type=float,
        default=0.5,
        help="Windows with a smaller fraction of informative positions are never flagged.",
    )
    s.add_argument(
        "--min-dist-to-end",
        type=int,
        default=100,
        help="Ignore windows and clip hotspots within this distance of contig ends.",
    )
    s.add_argument(
        "--clipping-ratio",
        type=float,
        default=1.0,
        help="Report clip hotspots where clipped read ends / coverage reaches this ratio.",
    )

    # Resources
    s.add_argument("--workers", type=int, default=1, help="Contigs analysed in parallel.")
    s.add_argument(
        "--max-memory",
        default=None,
        help="Memory budget, e.g. 8G. Caps workers; contigs that cannot fit are skipped.",
    )

    # Outputs
    s.add_argument("--no-report", action="store_true", help="Skip the HTML report and plots.")
    s.add_argument("--no-progress", action="store_true", help="Hide the progress bar.")
    s.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    s.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")
    s.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


def _config_from_args(args: argparse.Namespace) -> ScanConfig:
    thresholds = dict(parse_threshold(t) for t in args.threshold)
    channels = tuple(c.strip() for c in args.channels.split(",") if c.strip())
    return ScanConfig(
        min_mapping_quality=int(args.min_mapq),
        window_width=int(args.window_width),
        window_step=int(args.window_step),
        z_thresholds=thresholds,
        merge_gap=int(args.merge_gap),
        min_window_coverage_fraction=float(args.min_window_data_fraction),
        channels=channels,
        min_dist_to_end=int(args.min_dist_to_end),
        clipping_ratio=float(args.clipping_ratio),
        min_clip_length=int(args.min_clip_length),
        count_hard_clips=not bool(args.ignore_hard_clips),
        include_secondary=bool(args.include_secondary),
        include_supplementary=bool(args.include_supplementary),
        skip_duplicates=not bool(args.keep_duplicates),
        workers=int(args.workers),
        max_memory_bytes=parse_memory(args.max_memory) if args.max_memory else None,
    )


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "asmreadcheck quickstart (copy/paste):",
        "",
        "1) Reads mapped back to the assembly (all channels):",
        "   asmreadcheck scan \\",
        "     --bam reads_vs_assembly.bam \\",
        "     --ref assembly.fa \\",
        "     --outdir results/",
        "   Outputs: results/report.html, results/regions.tsv.gz, results/summary.json",
        "",
        "2) Long reads, no reference bases (coverage + clipping only):",
        "   asmreadcheck scan \\",
        "     --bam longreads.bam \\",
        "     --channels coverage,clip_fraction \\",
        "     --window-width 1000 --window-step 250 \\",
        "     --outdir results_lr/",
        "",
        "3) Try it on synthetic data:",
        "   asmreadcheck make-toy-data --outdir toy/",
        "   asmreadcheck scan --bam toy/reads.bam --ref toy/toy_assembly.fa --outdir toy_scan/",
        "",
        "Tip: use --dry-run to validate inputs, and --workers/--max-memory for large assemblies.",
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


def cmd_scan(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "scan.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("asmreadcheck")
    logger.info("asmreadcheck %s", __version__)

    try:
        config = _config_from_args(args)

        check_bam_index(args.bam)
        if args.ref:
            check_fasta_index(args.ref)

        alignments = BamAlignmentSource(args.bam, reference_filename=args.ref)
        contigs = alignments.contigs()
        unknown = sorted(set(args.contig or ()) - {c.name for c in contigs})
        if unknown:
            raise GlobalInputError(f"Requested contigs not in alignment header: {', '.join(unknown)}")
        reference = None
        if args.ref:
            reference = FastaReferenceSource(args.ref)
            check_reference_matches(contigs, reference.lengths())
        elif MISMATCH_FRACTION in config.channels:
            logger.warning("No --ref given: the mismatch_fraction channel will have no data.")

        regions_path = outdir / "regions.tsv.gz"
        clipping_path = outdir / "clipping.tsv.gz"
        zero_cov_path = outdir / "zero_coverage.tsv.gz"

        if args.dry_run:
            selected = [c for c in contigs if not args.contig or c.name in args.contig]
            lengths = [c.length for c in selected]
            workers = plan_workers(config, lengths)
            print("Dry-run: inputs look OK.")
            print(f"Contigs to scan: {len(selected)} ({sum(lengths)} bp)")
            print(f"Channels: {', '.join(config.enabled_channels)}")
            print(f"Workers: {workers}")
            if lengths:
                print(f"Peak memory per worker: ~{format_bytes(estimate_contig_bytes(max(lengths)))}")
            print("Planned outputs:")
            print(f"  regions -> {regions_path}")
            print(f"  clipping -> {clipping_path}")
            print(f"  zero coverage -> {zero_cov_path}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            if not args.no_report:
                print(f"  report.html -> {outdir / 'report.html'}")
            return 0

        outdir = ensure_outdir(outdir)

        if args.resume and (outdir / "summary.json").exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outdir / "report.html" if (outdir / "report.html").exists() else regions_path))
            return 0

        write_json(outdir / "config.json", config.to_dict())

        cancel = threading.Event()

        def _on_sigint(signum, frame) -> None:
            logger.warning("Interrupt received; finishing in-flight contigs and stopping.")
            cancel.set()

        previous = signal.signal(signal.SIGINT, _on_sigint)
        try:
            with TsvRegionWriter(regions_path) as writer:
                result = scan_assembly(
                    alignments,
                    config,
                    reference=reference,
                    contigs=args.contig,
                    writer=writer,
                    cancel=cancel,
                    progress=not args.no_progress,
                )
        finally:
            signal.signal(signal.SIGINT, previous)
            alignments.close()
            if reference is not None:
                reference.close()

        write_clip_sites(clipping_path, (s for c in result.contigs for s in c.clip_sites))
        write_zero_coverage(zero_cov_path, (z for c in result.contigs for z in c.zero_coverage))

        summary = result.summary()
        summary["bam_path"] = str(args.bam)
        summary["ref_path"] = str(args.ref) if args.ref else None
        summary["version"] = __version__
        write_json(outdir / "summary.json", summary)

        for f in result.failures:
            sys.stderr.write(f"Skipped contig {f.contig} ({f.kind}): {f.reason}\n")

        output_path = regions_path
        if not args.no_report:
            plots_dir = outdir / "plots"
            plots_dir.mkdir(parents=True, exist_ok=True)
            channel_png = plots_dir / "channel_counts.png"
            lengths_png = plots_dir / "region_lengths.png"
            confidence_png = plots_dir / "confidence.png"
            regions = result.regions
            plot_channel_counts(channel_counts=summary["channel_region_counts"], out_png=channel_png)
            plot_region_length_hist(lengths=[r.length for r in regions], out_png=lengths_png)
            plot_confidence_hist(confidences=[r.confidence for r in regions], out_png=confidence_png)

            output_path = render_report(
                outdir=outdir,
                version=__version__,
                summary=summary,
                config=config.to_dict(),
                regions=regions,
                bam_path=str(args.bam),
                ref_path=str(args.ref) if args.ref else None,
                outputs={
                    "regions": str(regions_path),
                    "clipping": str(clipping_path),
                    "zero_coverage": str(zero_cov_path),
                },
                plots={
                    "channel_counts": str(Path("plots") / channel_png.name),
                    "region_lengths": str(Path("plots") / lengths_png.name),
                    "confidence": str(Path("plots") / confidence_png.name),
                },
            )
            logger.info("Report written: %s", output_path)

        if result.cancelled:
            sys.stderr.write("Scan cancelled; outputs cover completed contigs only.\n")
            return EXIT_CANCELLED

        print(str(output_path))
        return 0
    except ConfigError as e:
        return _handle_error(e, log_path=None)
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "scan":
        return cmd_scan(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
