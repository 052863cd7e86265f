"""Utility functions for the Melissa package."""

import logging
from multiprocessing import cpu_count

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

def setup_logger(level=logging.INFO):
    """
    Set up the logger for the package.

    Parameters:
    -----------
    level : int, default=logging.INFO
        Logging level

    Returns:
    --------
    logging.Logger
        Configured logger
    """
    logger = logging.getLogger("melissa")
    logger.setLevel(level)

    # Create handler if not already set up
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger

def effective_n_jobs(n_jobs):
    """Clip a requested job count to the available CPUs; values <= 0 mean one job."""
    return min(n_jobs, cpu_count()) if n_jobs > 0 else 1

def normalize_chromosome(chr_):
    """
    Normalize chromosome format by dropping any 'chr' prefix.

    Parameters:
    -----------
    chr_ : str
        Chromosome identifier

    Returns:
    --------
    str
        Normalized chromosome identifier ('unknown' for missing values)
    """
    if pd.isna(chr_) or str(chr_).upper() in ['NA', '']:
        return "unknown"
    chr_ = str(chr_)
    if chr_.upper().startswith('CHR'):
        return chr_[3:]
    return chr_

def optimize_dtypes(df):
    """
    Optimize data types in DataFrame to reduce memory usage.

    Parameters:
    -----------
    df : pandas.DataFrame
        DataFrame to optimize

    Returns:
    --------
    pandas.DataFrame
        Optimized DataFrame
    """
    for col in df.columns:
        if df[col].dtype == 'float64':
            df[col] = df[col].astype('float32')
        elif df[col].dtype == 'int64':
            df[col] = df[col].astype('int32')
    return df

def cell_name_from_file(filename):
    """Cell name of a methylation file: the base name up to its first dot."""
    base = str(filename).replace('\\', '/').split('/')[-1]
    return base.split('.')[0]

def read_only(array):
    """Return a non-writeable copy of an array."""
    out = np.array(array, dtype=float, copy=True)
    out.setflags(write=False)
    return out
