"""Melissa: joint clustering and imputation of single-cell DNA methylation."""

__version__ = "0.1.0"

from .basis import PolynomialBasis, RBFBasis, RegionConfig, encode, make_basis
from .config import MelissaOptions
from .data import (
    EncodedRegionData,
    MelissaModel,
    RawMethylationData,
    filter_by_cpg_coverage,
    filter_by_variability,
    filter_regions_across_cells,
    partition_dataset,
)
from .exceptions import (
    DidNotConverge,
    EMFailedError,
    InsufficientDataError,
    InvalidConfigError,
    MelissaError,
    NumericDivergence,
)
from .imputer import MelissaImputer, evaluate, evaluate_clustering, impute, impute_test_met
from .mapper import RegionMapper, binarise_coverage_file, binarise_files
from .optimizer import EMOptimizer, fit_melissa
