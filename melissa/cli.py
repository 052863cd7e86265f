"""Command-line interface for the Melissa package."""

import argparse
import logging

from .config import MelissaOptions
from .imputer import MelissaImputer
from .mapper import RegionMapper, binarise_files
from .utils import setup_logger


def _add_annotation_args(parser):
    parser.add_argument(
        "--anno", "-a", required=True,
        help="Tab-delimited annotation file: chromosome, start, end, strand, id[, name]"
    )
    parser.add_argument(
        "--chrom-size",
        help="Tab-delimited chromosome size file (optional)"
    )
    parser.add_argument(
        "--chr-discarded", nargs="*", default=None,
        help="Chromosomes to discard"
    )
    parser.add_argument(
        "--is-centre", action="store_true",
        help="Annotation start/end are pre-centred; use their midpoint as centre"
    )
    parser.add_argument(
        "--no-window", action="store_true",
        help="Use the whole annotated region instead of the upstream/downstream window"
    )
    parser.add_argument(
        "--upstream", type=int, default=-5000,
        help="Window start relative to the region centre (default: -5000)"
    )
    parser.add_argument(
        "--downstream", type=int, default=5000,
        help="Window end relative to the region centre (default: 5000)"
    )
    parser.add_argument(
        "--basis", choices=["rbf", "polynomial"], default="rbf",
        help="Basis for region profiles (default: rbf)"
    )
    parser.add_argument(
        "--basis-dim", type=int, default=4,
        help="Number of basis coefficients including the intercept (default: 4)"
    )


def _add_prepare_args(parser):
    parser.add_argument(
        "--met-dir", "-m", required=True,
        help="Directory of binarised methylation files (*.gz), one per cell"
    )
    parser.add_argument(
        "--cov", type=int, default=5,
        help="Minimum number of CpGs per cell and region (default: 5)"
    )
    parser.add_argument(
        "--sd-thresh", type=float, default=-1.0,
        help="Minimum standard deviation of methylation within a region (default: -1, off)"
    )


def _add_fit_args(parser):
    parser.add_argument(
        "--clusters", "-k", type=int, default=3,
        help="Number of cell clusters (default: 3)"
    )
    parser.add_argument(
        "--restarts", type=int, default=5,
        help="Number of EM restarts (default: 5)"
    )
    parser.add_argument(
        "--init", choices=["kmeans", "random"], default="kmeans",
        help="Prototype initialisation (default: kmeans)"
    )
    parser.add_argument(
        "--max-iter", type=int, default=300,
        help="Maximum number of EM iterations (default: 300)"
    )
    parser.add_argument(
        "--tol", type=float, default=1e-5,
        help="Relative convergence tolerance (default: 1e-5)"
    )
    parser.add_argument(
        "--ridge", type=float, default=0.1,
        help="Ridge penalty of the region GLMs (default: 0.1)"
    )
    parser.add_argument(
        "--seed", type=int, default=0,
        help="Random seed (default: 0)"
    )
    parser.add_argument(
        "--region-train-prop", type=float, default=0.5,
        help="Fraction of covered regions per cell kept whole for training (default: 0.5)"
    )
    parser.add_argument(
        "--cpg-train-prop", type=float, default=0.5,
        help="Fraction of CpGs kept for training in the other regions (default: 0.5)"
    )
    parser.add_argument(
        "--output-dir", "-o", required=True,
        help="Directory for the model, responsibilities, predictions and metrics"
    )


def _add_jobs_arg(parser):
    parser.add_argument(
        "--jobs", "-j", type=int, default=1,
        help="Number of parallel jobs for processing (default: 1)"
    )


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Melissa: cluster single cells and impute CpG methylation states"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Binarise command
    binarise_parser = subparsers.add_parser("binarise", help="Binarise Bismark coverage files")
    binarise_parser.add_argument(
        "--indir", "-i", required=True,
        help="Directory of Bismark coverage files"
    )
    binarise_parser.add_argument(
        "--outdir", "-o",
        help="Output directory (default: [indir]/binarised)"
    )
    _add_jobs_arg(binarise_parser)

    # Prepare command
    prepare_parser = subparsers.add_parser("prepare", help="Map cells onto annotated regions")
    _add_prepare_args(prepare_parser)
    _add_annotation_args(prepare_parser)
    prepare_parser.add_argument(
        "--output", "-o", required=True,
        help="Path to output CSV file with columns cell, region, position, label"
    )
    _add_jobs_arg(prepare_parser)

    # Impute command
    impute_parser = subparsers.add_parser("impute", help="Cluster cells and impute held-out CpGs")
    impute_parser.add_argument(
        "--input", "-i", required=True,
        help="Path to CSV file with columns cell, region, position, label"
    )
    _add_annotation_args(impute_parser)
    _add_fit_args(impute_parser)
    _add_jobs_arg(impute_parser)

    # Pipeline command (prepare and impute in one go)
    pipeline_parser = subparsers.add_parser("pipeline", help="Run full pipeline (prepare and impute)")
    _add_prepare_args(pipeline_parser)
    _add_annotation_args(pipeline_parser)
    _add_fit_args(pipeline_parser)
    pipeline_parser.add_argument(
        "--prepared-output",
        help="Path to save the intermediate observation CSV file (optional)"
    )
    _add_jobs_arg(pipeline_parser)

    # Debug mode
    parser.add_argument(
        "--debug", action="store_true",
        help="Enable debug logging"
    )

    return parser.parse_args(argv)


def build_options(args):
    """Map parsed arguments onto run options."""
    return MelissaOptions(
        n_clusters=getattr(args, "clusters", 3),
        n_restarts=getattr(args, "restarts", 5),
        init=getattr(args, "init", "kmeans"),
        basis_type=args.basis,
        basis_dim=args.basis_dim,
        upstream=args.upstream,
        downstream=args.downstream,
        min_cpgcov=getattr(args, "cov", 5),
        sd_thresh=getattr(args, "sd_thresh", -1.0),
        tol=getattr(args, "tol", 1e-5),
        max_iter=getattr(args, "max_iter", 300),
        ridge=getattr(args, "ridge", 0.1),
        random_state=getattr(args, "seed", 0),
        n_jobs=args.jobs,
    )


def _make_mapper(args, opts):
    return RegionMapper(
        opts=opts,
        anno_file=args.anno,
        chrom_size_file=args.chrom_size,
        chr_discarded=args.chr_discarded,
        is_centre=args.is_centre,
        is_window=not args.no_window,
        n_jobs=args.jobs,
        verbose=False,
    )


def _make_imputer(args, opts):
    return MelissaImputer(
        opts=opts,
        region_train_prop=args.region_train_prop,
        cpg_train_prop=args.cpg_train_prop,
        verbose=False,
    )


def binarise_command(args):
    """Run the binarisation command."""
    logger = setup_logger(level=logging.DEBUG if args.debug else logging.INFO)

    logger.info("Starting binarisation of coverage files")
    outputs = binarise_files(args.indir, outdir=args.outdir, n_jobs=args.jobs)
    logger.info(f"Binarisation complete: {len(outputs)} files")
    return outputs


def prepare_command(args):
    """Run the data preparation command."""
    logger = setup_logger(level=logging.DEBUG if args.debug else logging.INFO)

    logger.info("Starting region mapping")
    opts = build_options(args)
    mapper = _make_mapper(args, opts)
    mapper.load_annotation()
    data = mapper.create_data_object(args.met_dir)

    frame = data.to_frame()
    logger.info(f"Saving {len(frame)} observations to {args.output}")
    frame.to_csv(args.output, index=False)
    logger.info("Preparation complete")

    return data


def impute_command(args):
    """Run the clustering and imputation command."""
    logger = setup_logger(level=logging.DEBUG if args.debug else logging.INFO)

    logger.info("Starting Melissa imputation")
    opts = build_options(args)
    mapper = _make_mapper(args, opts)
    mapper.load_annotation()

    imputer = _make_imputer(args, opts)
    result = imputer.impute(mapper.regions, input_file=args.input, output_dir=args.output_dir)

    logger.info("Imputation complete")
    return result


def pipeline_command(args):
    """Run the full pipeline (preparation and imputation)."""
    logger = setup_logger(level=logging.DEBUG if args.debug else logging.INFO)

    logger.info("Starting full Melissa pipeline")
    opts = build_options(args)

    # Step 1: Preparation
    logger.info("Step 1: region mapping")
    mapper = _make_mapper(args, opts)
    mapper.load_annotation()
    data = mapper.create_data_object(args.met_dir)

    if args.prepared_output:
        data.to_frame().to_csv(args.prepared_output, index=False)
        logger.info(f"Saved prepared observations to {args.prepared_output}")

    # Step 2: Clustering and imputation
    logger.info("Step 2: clustering and imputation")
    imputer = _make_imputer(args, opts)
    result = imputer.run(data, output_dir=args.output_dir)

    logger.info("Pipeline complete")
    return result


def main():
    """Main entry point for the command-line interface."""
    args = parse_args()

    if args.command == "binarise":
        binarise_command(args)
    elif args.command == "prepare":
        prepare_command(args)
    elif args.command == "impute":
        impute_command(args)
    elif args.command == "pipeline":
        pipeline_command(args)
    else:
        print("Please specify a command: binarise, prepare, impute, or pipeline")
        print("Use --help for more information")


if __name__ == "__main__":
    main()
