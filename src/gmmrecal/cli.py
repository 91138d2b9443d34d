from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import pysam

from . import __version__
from .config import DEFAULT_TRANCHES, ApplyConfig, RecalibrationConfig
from .errors import ConfigurationError
from .filtering import FilterApplier
from .models import RecalMode
from .plotting import plot_em_traces, plot_lod_hist, plot_tranche_counts
from .recalibrator import run_recalibration
from .report import render_report
from .toy_data import make_toy_data
from .tranches import read_tranches, write_tranches
from .utils import dataclass_to_jsonable, ensure_outdir, write_json
from .validation import check_vcf_contigs, check_vcf_index
from .vcfio import (
    ResourceLabeler,
    TrainingResource,
    apply_recalibration,
    load_annotation_records,
    write_recal_file,
)


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
    msg = f"{err.__class__.__name__}: {err}"
    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _vcf_contigs(vcf_path: str) -> List[Tuple[str, Optional[int]]]:
    with pysam.VariantFile(vcf_path) as vcf:
        return [(name, vcf.header.contigs[name].length) for name in vcf.header.contigs]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="gmmrecal",
        description=(
            "gmmrecal: Gaussian-mixture variant quality score recalibration. "
            "Trains good/bad annotation models on a call set, builds truth-sensitivity "
            "tranches and applies VQSLOD filters, per site or per allele."
        ),
    )
    p.add_argument("--version", action="version", version=f"gmmrecal {__version__}")

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
        help="Generate a small annotated call set and truth/known resources for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--n-sites", type=int, default=1200, help="Number of variant sites.")
    t.add_argument("--seed", type=int, default=7, help="Random seed.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # recalibrate
    # -----------------
    r = sub.add_parser(
        "recalibrate",
        help="Train the good/bad Gaussian mixture models and write a recal file plus tranches.",
    )
    r.add_argument("--vcf", required=True, type=_path_exists, help="Annotated call set (.vcf/.vcf.gz).")
    r.add_argument(
        "--resource",
        action="append",
        default=[],
        required=True,
        help="Labelled resource, e.g. truth,known=false,training=true,truth=true:truth.vcf.gz (repeatable).",
    )
    r.add_argument(
        "--aggregate",
        action="append",
        default=[],
        type=_path_exists,
        help="Additional call set used for modelling only, never counted in tranches (repeatable).",
    )
    r.add_argument(
        "-an",
        "--use-annotation",
        dest="annotations",
        action="append",
        required=True,
        help="INFO annotation to model (repeatable, order matters).",
    )
    r.add_argument("--mode", choices=[m.value for m in RecalMode], default="SNP", help="Variant type to recalibrate.")
    r.add_argument(
        "--tranche",
        "-tranche",
        dest="tranches",
        type=float,
        action="append",
        default=None,
        help=f"Target truth sensitivity in percent (repeatable; default {list(DEFAULT_TRANCHES)}).",
    )
    r.add_argument("--max-gaussians", type=int, default=8, help="Max clusters in the positive model.")
    r.add_argument("--max-negative-gaussians", type=int, default=2, help="Max clusters in the negative model.")
    r.add_argument("--max-iterations", type=int, default=150, help="EM iteration cap.")
    r.add_argument("--prior-counts", type=float, default=20.0, help="Pseudo-count of the covariance prior.")
    r.add_argument("--std-threshold", type=float, default=10.0, help="Exclude training records beyond this many SDs.")
    r.add_argument("--bad-fraction", type=float, default=0.03, help="Fraction of worst records for the negative model.")
    r.add_argument("--min-num-bad", type=int, default=1000, help="Minimum number of worst records for the negative model.")
    r.add_argument("--seed", type=int, default=0, help="Random seed (seeding and imputation).")
    r.add_argument("--use-allele-specific", action="store_true", help="Score each alternate allele separately.")
    r.add_argument("--ignore-filter", action="append", default=[], help="Input FILTER value to treat as PASS (repeatable).")
    r.add_argument("--ignore-all-filters", action="store_true", help="Use every input record regardless of FILTER.")
    r.add_argument("--outdir", required=True, help="Output directory.")
    r.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    r.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # apply
    # -----------------
    a = sub.add_parser(
        "apply",
        help="Apply a recal file and tranches (or a flat VQSLOD cutoff) to a call set.",
    )
    a.add_argument("--vcf", required=True, type=_path_exists, help="Call set to filter.")
    a.add_argument("--recal", required=True, type=_path_exists, help="Recal file written by 'recalibrate'.")
    a.add_argument("--tranches-file", type=_path_exists, default=None, help="Tranches CSV written by 'recalibrate'.")
    a.add_argument("--ts-filter-level", type=float, default=None, help="Truth sensitivity level to pass at (percent).")
    a.add_argument("--lod-cutoff", type=float, default=None, help="Flat VQSLOD cutoff (instead of tranches).")
    a.add_argument("--mode", choices=[m.value for m in RecalMode], default="SNP", help="Variant type to filter.")
    a.add_argument("--use-allele-specific", action="store_true", help="Filter each alternate allele separately.")
    a.add_argument("--ignore-filter", action="append", default=[], help="Input FILTER value to treat as PASS (repeatable).")
    a.add_argument("--ignore-all-filters", action="store_true", help="Filter every record regardless of input FILTER.")
    a.add_argument("--exclude-filtered", action="store_true", help="Drop filtered records from the output.")
    a.add_argument("--output", required=True, help="Output VCF (.vcf or .vcf.gz).")
    a.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "gmmrecal quickstart (copy/paste):",
        "",
        "1) Toy data:",
        "   gmmrecal make-toy-data --outdir toy/",
        "",
        "2) Train SNP models and build tranches:",
        "   gmmrecal recalibrate \\",
        "     --vcf toy/calls.vcf.gz \\",
        "     --resource truth,known=false,training=true,truth=true:toy/truth.vcf.gz \\",
        "     --resource dbsnp,known=true,training=false,truth=false:toy/dbsnp.vcf.gz \\",
        "     -an QD -an FS -an MQ --mode SNP --min-num-bad 100 \\",
        "     --outdir results/",
        "   Outputs: results/report.html, results/recal.vcf.gz, results/tranches.csv, results/summary.json",
        "",
        "3) Filter the call set at 99.0% truth sensitivity:",
        "   gmmrecal apply \\",
        "     --vcf toy/calls.vcf.gz \\",
        "     --recal results/recal.vcf.gz \\",
        "     --tranches-file results/tranches.csv \\",
        "     --ts-filter-level 99.0 --mode SNP \\",
        "     --output results/filtered.vcf.gz",
        "",
        "Tip: run SNP and INDEL passes one after the other on the same file; with",
        "--use-allele-specific, mixed sites stay unfiltered until both passes have run.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir, n_sites=int(args.n_sites), seed=int(args.seed))
    print(json.dumps(summary, indent=2))
    return 0


def cmd_recalibrate(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "recalibrate.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("gmmrecal")
    logger.info("gmmrecal %s", __version__)

    try:
        config = RecalibrationConfig(
            annotations=tuple(args.annotations),
            mode=RecalMode(args.mode),
            max_gaussians=int(args.max_gaussians),
            max_negative_gaussians=int(args.max_negative_gaussians),
            max_iterations=int(args.max_iterations),
            prior_counts=float(args.prior_counts),
            std_threshold=float(args.std_threshold),
            bad_fraction=float(args.bad_fraction),
            min_num_bad=int(args.min_num_bad),
            tranches=tuple(args.tranches) if args.tranches else DEFAULT_TRANCHES,
            seed=int(args.seed),
        )
        resources = [TrainingResource.parse(s) for s in args.resource]
        for res in resources:
            if not Path(res.path).exists():
                raise FileNotFoundError(f"Resource {res.name} not found: {res.path}")
        check_vcf_index(args.vcf)
        check_vcf_contigs([args.vcf] + [res.path for res in resources])

        if args.dry_run:
            print("Dry-run: inputs look OK.")
            print(f"Annotations: {', '.join(config.annotations)}")
            print(f"Resources: {', '.join(res.name for res in resources)}")
            print("Planned outputs:")
            print(f"  recal.vcf.gz -> {outdir / 'recal.vcf.gz'}")
            print(f"  tranches.csv -> {outdir / 'tranches.csv'}")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)
        labeler = ResourceLabeler(resources)
        load_kwargs = dict(
            labeler=labeler,
            mode=config.mode,
            use_allele_specific=bool(args.use_allele_specific),
            ignore_filters=frozenset(args.ignore_filter),
            ignore_all_filters=bool(args.ignore_all_filters),
        )
        records, load_stats = load_annotation_records(args.vcf, config.annotations, **load_kwargs)
        for agg in args.aggregate:
            extra, _ = load_annotation_records(agg, config.annotations, is_aggregate=True, **load_kwargs)
            records.extend(extra)

        result = run_recalibration(records, config, progress=args.verbose > 0)

        contigs = _vcf_contigs(args.vcf)
        recal_vcf = write_recal_file(
            outdir / "recal.vcf",
            [r for r in result.records if not r.is_aggregate],
            annotation_names=config.annotations,
            contigs=contigs,
            use_allele_specific=bool(args.use_allele_specific),
        )
        tranches_csv = outdir / "tranches.csv"
        write_tranches(tranches_csv, result.tranches)

        config_json = dict(dataclass_to_jsonable(config))
        config_json["mode"] = config.mode.value
        config_json["annotations"] = list(config.annotations)
        config_json["tranches"] = list(config.tranches)

        run = {
            "config": config_json,
            "use_allele_specific": bool(args.use_allele_specific),
            "resources": [dataclass_to_jsonable(res) for res in resources],
            "load_stats": load_stats,
            "counts": result.counts,
            "normalization": dataclass_to_jsonable(result.normalization),
            "models": {"positive": result.positive.to_dict(), "negative": result.negative.to_dict()},
            "tranches": [dict(dataclass_to_jsonable(t), mode=t.mode.value) for t in result.tranches],
            "recal_vcf": recal_vcf,
            "tranches_csv": str(tranches_csv),
        }
        write_json(outdir / "summary.json", run)

        plots_dir = outdir / "plots"
        plots_dir.mkdir(parents=True, exist_ok=True)

        lod_png = plots_dir / "lod_hist.png"
        tranche_png = plots_dir / "tranche_counts.png"
        em_png = plots_dir / "em_traces.png"

        calls = [r for r in result.records if not r.is_aggregate]
        plot_lod_hist(
            lods=[r.lod for r in calls],
            truth_lods=[r.lod for r in calls if r.at_truth_site],
            cutoffs=[t.min_vqslod for t in result.tranches],
            out_png=lod_png,
        )
        plot_tranche_counts(tranches=result.tranches, out_png=tranche_png)
        plot_em_traces(
            traces={
                "positive": result.positive.log_likelihood_trace,
                "negative": result.negative.log_likelihood_trace,
            },
            out_png=em_png,
        )

        plots_rel = {
            "lod_hist": str(Path("plots") / lod_png.name),
            "tranche_counts": str(Path("plots") / tranche_png.name),
            "em_traces": str(Path("plots") / em_png.name),
        }

        report_path = render_report(
            outdir=outdir,
            version=__version__,
            run=run,
            tranches=result.tranches,
            vcf_path=args.vcf,
            plots=plots_rel,
        )

        logger.info("Report written: %s", report_path)
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_apply(args: argparse.Namespace) -> int:
    output = Path(args.output).expanduser().resolve()
    log_path = _log_path(output.parent, "apply.log")
    _setup_logging(args.verbose, logfile=log_path)

    logger = logging.getLogger("gmmrecal")
    logger.info("gmmrecal %s", __version__)

    try:
        config = ApplyConfig(
            mode=RecalMode(args.mode),
            ts_filter_level=args.ts_filter_level,
            lod_cutoff=args.lod_cutoff,
            use_allele_specific=bool(args.use_allele_specific),
            ignore_filters=frozenset(args.ignore_filter),
            ignore_all_filters=bool(args.ignore_all_filters),
            exclude_filtered=bool(args.exclude_filtered),
        )
        tranches = None
        if args.tranches_file is not None:
            tranches = [t for t in read_tranches(args.tranches_file) if t.mode is config.mode]
            if not tranches:
                raise ConfigurationError(f"No {config.mode.value} tranches in {args.tranches_file}")
        applier = FilterApplier(
            config.mode,
            tranches=tranches,
            ts_filter_level=config.ts_filter_level,
            lod_cutoff=config.lod_cutoff,
        )
        ensure_outdir(output.parent)
        counts = apply_recalibration(args.vcf, args.recal, output, applier, config)

        summary_path = output.parent / f"{output.name.split('.')[0]}.apply_summary.json"
        write_json(summary_path, {"config": {"mode": config.mode.value}, "counts": counts})
        print(str(output))
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
    if args.cmd == "recalibrate":
        return cmd_recalibrate(args)
    if args.cmd == "apply":
        return cmd_apply(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
