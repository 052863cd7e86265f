"""Module for binarising coverage files and mapping CpGs onto annotated regions."""

import os
import glob
import logging
from multiprocessing import Pool

import numpy as np
import pandas as pd

from .basis import RegionConfig
from .config import MelissaOptions
from .data import RawMethylationData
from .utils import (
    cell_name_from_file,
    effective_n_jobs,
    normalize_chromosome,
    optimize_dtypes,
    setup_logger,
)

logger = logging.getLogger(__name__)

COVERAGE_COLUMNS = ["chrom", "pos", "met_prcg", "met_reads", "unmet_reads"]
MET_COLUMNS = ["chrom", "pos", "label"]
ANNO_COLUMNS = ["chrom", "start", "end", "strand", "id", "name"]


def binarise_coverage_file(infile, outfile):
    """
    Binarise a Bismark coverage file.

    Parameters:
    -----------
    infile : str
        Coverage file with columns chr, pos, met_prcg, met_reads, unmet_reads
    outfile : str
        Gzipped, tab-separated output with columns chr, pos, rate

    Returns:
    --------
    str
        Path of the output file
    """
    cell = cell_name_from_file(infile)
    if os.path.exists(outfile):
        logger.info(f"Sample {cell} already processed, skipping")
        return outfile
    if not os.path.exists(infile):
        raise FileNotFoundError(f"Coverage file not found: {infile}")

    logger.info(f"Processing {cell}")
    df = pd.read_csv(infile, sep="\t", header=None, names=COVERAGE_COLUMNS, compression="infer")

    total = df["met_reads"] + df["unmet_reads"]
    no_reads = total <= 0
    if no_reads.any():
        logger.warning(f"{cell}: dropping {int(no_reads.sum())} CpG sites without reads")
        df, total = df[~no_reads], total[~no_reads]

    fraction = df["met_reads"] / total
    out = pd.DataFrame({
        "chrom": df["chrom"].map(normalize_chromosome),
        "pos": df["pos"].astype(np.int64),
        "rate": np.round(fraction),
    })

    out_of_range = int(((out["rate"] > 1) | (out["rate"] < 0)).sum())
    if out_of_range:
        logger.warning(f"{cell}: {out_of_range} CpG sites have a methylation rate outside [0, 1]")
    non_binary = float((~fraction.isin([0.0, 1.0])).mean()) * 100 if len(fraction) else 0.0
    logger.info(f"{cell}: {non_binary:.3f}% of sites had a non-binary methylation rate")

    out["rate"] = out["rate"].astype(int)
    out = out.sort_values(["chrom", "pos"], kind="mergesort")
    out.to_csv(outfile, sep="\t", header=False, index=False, compression="gzip")
    logger.info(f"Saved {len(out)} binarised sites to {outfile}")
    return outfile


def _worker_binarise(args):
    """Worker function for parallel binarisation."""
    infile, outfile = args
    return binarise_coverage_file(infile, outfile)


def binarise_files(indir, outdir=None, n_jobs=1):
    """
    Binarise every coverage file in a directory.

    Parameters:
    -----------
    indir : str
        Directory of Bismark coverage files, one per cell
    outdir : str, optional
        Output directory (default: ``indir/binarised``)
    n_jobs : int, default=1
        Number of parallel jobs

    Returns:
    --------
    list of str
        Paths of the binarised files
    """
    if not os.path.isdir(indir):
        raise FileNotFoundError(f"Input directory not found: {indir}")
    if outdir is None:
        outdir = os.path.join(indir, "binarised")
    os.makedirs(outdir, exist_ok=True)

    args_list = []
    for filename in sorted(os.listdir(indir)):
        infile = os.path.join(indir, filename)
        if not os.path.isfile(infile):
            continue
        name = filename if filename.endswith(".gz") else f"{filename}.gz"
        args_list.append((infile, os.path.join(outdir, name)))
    logger.info(f"Found {len(args_list)} coverage files in {indir}")

    n_jobs = effective_n_jobs(n_jobs)
    if n_jobs > 1 and len(args_list) > 1:
        logger.info(f"Using {n_jobs} parallel jobs for binarisation")
        with Pool(n_jobs) as pool:
            return pool.map(_worker_binarise, args_list)
    return [_worker_binarise(args) for args in args_list]


class RegionMapper:
    """Maps binarised single-cell CpG calls onto annotated genomic regions."""

    def __init__(self, opts=None, anno_file=None, chrom_size_file=None, chr_discarded=None,
                 is_centre=False, is_window=True, n_jobs=1, verbose=True):
        """
        Initialize the region mapper.

        Parameters:
        -----------
        opts : MelissaOptions, optional
            Window, basis and filter options (defaults are used if omitted)
        anno_file : str, optional
            Tab-delimited annotation: chromosome, start, end, strand, id and
            an optional name
        chrom_size_file : str, optional
            Tab-delimited chromosome sizes; regions on other chromosomes are
            dropped and windows are clipped to the chromosome
        chr_discarded : list of str, optional
            Chromosomes to discard
        is_centre : bool, default=False
            Whether start and end are pre-centred (centre is their midpoint).
            Otherwise the centre is the start, or the end on the '-' strand
        is_window : bool, default=True
            Whether to use the fixed upstream/downstream window from opts
            instead of the whole region
        n_jobs : int, default=1
            Number of parallel jobs for mapping cells
        verbose : bool, default=True
            Whether to log detailed information
        """
        self.opts = opts if opts is not None else MelissaOptions()
        self.anno_file = anno_file
        self.chrom_size_file = chrom_size_file
        self.chr_discarded = [normalize_chromosome(c) for c in (chr_discarded or [])]
        self.is_centre = is_centre
        self.is_window = is_window
        self.n_jobs = effective_n_jobs(n_jobs)
        self.regions = []

        if verbose:
            setup_logger()

    def _read_chrom_sizes(self):
        if not os.path.exists(self.chrom_size_file):
            raise FileNotFoundError(f"Chromosome size file not found: {self.chrom_size_file}")
        sizes = pd.read_csv(self.chrom_size_file, sep="\t", header=None, usecols=[0, 1],
                            names=["chrom", "size"])
        return {normalize_chromosome(c): int(s) for c, s in zip(sizes["chrom"], sizes["size"])}

    def _centre(self, start, end, strand):
        if self.is_centre:
            return (start + end) / 2.0
        return end if strand == "-" else start

    @staticmethod
    def _to_offsets(lo, hi, centre, strand):
        """Genomic interval -> sorted strand-oriented offsets from the centre."""
        if strand == "-":
            return centre - hi, centre - lo
        return lo - centre, hi - centre

    @staticmethod
    def _to_genomic(upstream, downstream, centre, strand):
        if strand == "-":
            return centre - downstream, centre - upstream
        return centre + upstream, centre + downstream

    def load_annotation(self, file_path=None):
        """
        Load the region annotation.

        Parameters:
        -----------
        file_path : str, optional
            Annotation file; if None, uses the file given at initialization

        Returns:
        --------
        self
        """
        if file_path:
            self.anno_file = file_path
        if not self.anno_file:
            raise ValueError("No annotation file provided")
        if not os.path.exists(self.anno_file):
            raise FileNotFoundError(f"Annotation file not found: {self.anno_file}")

        logger.info(f"Loading annotation file: {self.anno_file}")
        anno = pd.read_csv(self.anno_file, sep="\t", header=None, dtype={0: str, 4: str})
        if anno.shape[1] < 5:
            raise ValueError(f"Annotation needs at least 5 columns, found {anno.shape[1]}")
        anno = anno.iloc[:, :6]
        anno.columns = ANNO_COLUMNS[:anno.shape[1]]
        anno["chrom"] = anno["chrom"].map(normalize_chromosome)
        logger.info(f"Loaded annotation with {len(anno)} entries")

        if anno.duplicated(subset="id").any():
            dup_count = anno.duplicated(subset="id").sum()
            logger.info(f"Removing {dup_count} duplicate region entries")
            anno = anno.drop_duplicates(subset="id", keep="first")

        if self.chr_discarded:
            discarded = anno["chrom"].isin(self.chr_discarded)
            logger.info(f"Discarding {int(discarded.sum())} regions on chromosomes {self.chr_discarded}")
            anno = anno[~discarded]

        chrom_sizes = self._read_chrom_sizes() if self.chrom_size_file else None
        basis = self.opts.basis()
        regions, n_skipped = [], 0
        for row in anno.itertuples(index=False):
            strand = row.strand if row.strand in ("+", "-") else "+"
            start, end = int(row.start), int(row.end)
            centre = self._centre(start, end, strand)
            if self.is_window:
                upstream, downstream = self.opts.upstream, self.opts.downstream
            else:
                upstream, downstream = self._to_offsets(start, end, centre, strand)

            if chrom_sizes is not None:
                if row.chrom not in chrom_sizes:
                    n_skipped += 1
                    continue
                lo, hi = self._to_genomic(upstream, downstream, centre, strand)
                lo, hi = max(lo, 1), min(hi, chrom_sizes[row.chrom])
                upstream, downstream = self._to_offsets(lo, hi, centre, strand)

            if upstream >= downstream:
                logger.debug(f"Region {row.id}: empty window after clipping, skipping")
                n_skipped += 1
                continue
            regions.append(RegionConfig(
                region_id=str(row.id),
                basis=basis,
                upstream=upstream,
                downstream=downstream,
                chrom=row.chrom,
                start=start,
                end=end,
                strand=strand,
                centre=float(centre),
                name=str(row.name) if "name" in anno.columns and pd.notna(row.name) else None,
            ))

        if n_skipped:
            logger.info(f"Skipped {n_skipped} regions on unknown chromosomes or with empty windows")
        self.regions = regions
        logger.info(f"Created {len(regions)} annotation regions")
        return self

    def read_met(self, file_path):
        """
        Read a binarised methylation file.

        Parameters:
        -----------
        file_path : str
            Tab-separated (optionally gzipped) file with chr, pos and label

        Returns:
        --------
        pandas.DataFrame
            Columns 'chrom', 'pos' and 'label', sorted by chromosome and position
        """
        if not os.path.exists(file_path):
            raise FileNotFoundError(f"Methylation file not found: {file_path}")
        met = pd.read_csv(file_path, sep="\t", header=None, usecols=[0, 1, 2], names=MET_COLUMNS,
                          dtype={"chrom": str}, compression="infer")
        met["chrom"] = met["chrom"].map(normalize_chromosome)
        met = optimize_dtypes(met)
        return met.sort_values(["chrom", "pos"], kind="mergesort").reset_index(drop=True)

    def map_cell(self, met_df):
        """
        Map one cell's CpGs onto the annotation regions.

        Positions become strand-oriented offsets from each region centre.
        Regions with fewer than ``opts.min_cpgcov`` CpGs, or whose label
        sample standard deviation is below a positive ``opts.sd_thresh``,
        are left missing.

        Parameters:
        -----------
        met_df : pandas.DataFrame
            Output of ``read_met``

        Returns:
        --------
        dict
            region id -> (n, 2) array of (offset, label)
        dict
            Counts of mapped and filtered observations
        """
        if not self.regions:
            raise ValueError("No annotation regions loaded. Run load_annotation() first.")

        by_chrom = {
            chrom: (group["pos"].to_numpy(dtype=float), group["label"].to_numpy(dtype=float))
            for chrom, group in met_df.groupby("chrom", sort=False)
        }
        met = {}
        counts = {"mapped_cpgs": 0, "coverage_filtered_regions": 0, "sd_filtered_regions": 0}
        for region in self.regions:
            if region.chrom not in by_chrom:
                continue
            pos, labels = by_chrom[region.chrom]
            lo, hi = self._to_genomic(region.upstream, region.downstream, region.centre, region.strand)
            left, right = np.searchsorted(pos, lo, side="left"), np.searchsorted(pos, hi, side="right")
            if right <= left:
                continue

            offsets = pos[left:right] - region.centre
            if region.strand == "-":
                offsets = -offsets
            region_labels = labels[left:right]
            if offsets.shape[0] < self.opts.min_cpgcov:
                counts["coverage_filtered_regions"] += 1
                continue
            if self.opts.sd_thresh > 0 and (
                region_labels.shape[0] < 2 or np.std(region_labels, ddof=1) < self.opts.sd_thresh
            ):
                counts["sd_filtered_regions"] += 1
                continue

            order = np.argsort(offsets, kind="mergesort")
            met[region.region_id] = np.column_stack([offsets[order], region_labels[order]])
            counts["mapped_cpgs"] += offsets.shape[0]
        return met, counts

    def _worker_map_file(self, file_path):
        """Worker function for parallel processing."""
        return self.map_cell(self.read_met(file_path))

    def create_data_object(self, met_dir):
        """
        Create the Melissa data object for all cells in a directory.

        Parameters:
        -----------
        met_dir : str
            Directory of binarised ``*.gz`` files, one per cell; the cell
            name is the file name up to its first dot

        Returns:
        --------
        RawMethylationData
        """
        if not os.path.isdir(met_dir):
            raise FileNotFoundError(f"Methylation directory not found: {met_dir}")
        if not self.regions:
            self.load_annotation()

        files = sorted(glob.glob(os.path.join(met_dir, "*.gz")))
        if not files:
            raise ValueError(f"No '*.gz' methylation files found in {met_dir}")
        cell_names = [cell_name_from_file(f) for f in files]
        duplicates = sorted({c for c in cell_names if cell_names.count(c) > 1})
        if duplicates:
            raise ValueError(f"Several files map to the same cell name: {', '.join(duplicates)}")
        logger.info(f"Mapping {len(files)} cells onto {len(self.regions)} regions")

        if self.n_jobs > 1 and len(files) > 1:
            logger.info(f"Using {self.n_jobs} parallel jobs for processing")
            with Pool(self.n_jobs) as pool:
                results = pool.map(self._worker_map_file, files)
        else:
            results = [self._worker_map_file(f) for f in files]

        met, diagnostics = {}, {}
        for cell, (cell_met, counts) in zip(cell_names, results):
            met[cell] = cell_met
            for key, value in counts.items():
                diagnostics[key] = diagnostics.get(key, 0) + value
        logger.info(
            f"Mapped {diagnostics.get('mapped_cpgs', 0)} CpGs; filtered "
            f"{diagnostics.get('coverage_filtered_regions', 0)} cell-regions by coverage and "
            f"{diagnostics.get('sd_filtered_regions', 0)} by variability"
        )
        return RawMethylationData(met, self.regions, opts=self.opts, diagnostics=diagnostics)
