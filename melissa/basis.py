"""Basis functions and the region profile encoder.

A region is modelled on a fixed window of signed offsets around its centre.
CpG positions inside the window are scaled to [-1, 1] and expanded by a basis
whose first column is always the intercept, so every cell and every cluster
shares the same design for a given region.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .exceptions import InvalidConfigError

logger = logging.getLogger(__name__)

BASIS_TYPES = ("rbf", "polynomial")


def _check_dim(dim):
    if isinstance(dim, bool) or not isinstance(dim, (int, np.integer)) or dim <= 0:
        raise InvalidConfigError(f"Basis dimensionality must be a positive integer, got {dim!r}")


@dataclass(frozen=True)
class PolynomialBasis:
    """Polynomial basis ``[1, x, x^2, ..., x^(dim-1)]``."""

    dim: int = 3

    def __post_init__(self):
        _check_dim(self.dim)

    def design(self, x):
        x = np.asarray(x, dtype=float).ravel()
        return np.vander(x, self.dim, increasing=True)


@dataclass(frozen=True)
class RBFBasis:
    """
    Gaussian radial basis with an intercept column.

    The ``dim - 1`` centres are spread evenly over [-1, 1]. When ``gamma`` is
    not given it defaults to ``(dim - 1)^2 / 4``, i.e. M^2 over the squared
    width of the scaled window.
    """

    dim: int = 4
    gamma: Optional[float] = None

    def __post_init__(self):
        _check_dim(self.dim)
        if self.gamma is not None and not self.gamma > 0:
            raise InvalidConfigError(f"RBF gamma must be positive, got {self.gamma!r}")

    @property
    def n_centres(self):
        return self.dim - 1

    @property
    def centres(self):
        if self.n_centres == 1:
            return np.zeros(1)
        return np.linspace(-1.0, 1.0, self.n_centres)

    @property
    def width(self):
        if self.gamma is not None:
            return float(self.gamma)
        return max(self.n_centres, 1) ** 2 / 4.0

    def design(self, x):
        x = np.asarray(x, dtype=float).ravel()
        intercept = np.ones((x.shape[0], 1))
        if self.n_centres == 0:
            return intercept
        rbf = np.exp(-self.width * (x[:, None] - self.centres[None, :]) ** 2)
        return np.hstack([intercept, rbf])


def make_basis(basis_type="rbf", dim=4, gamma=None):
    """
    Build a basis object from its configuration.

    Parameters:
    -----------
    basis_type : str, default='rbf'
        Either 'rbf' or 'polynomial'
    dim : int, default=4
        Number of coefficients, including the intercept
    gamma : float, optional
        RBF width (ignored for polynomial bases)

    Returns:
    --------
    PolynomialBasis or RBFBasis
    """
    if basis_type == "rbf":
        return RBFBasis(dim=dim, gamma=gamma)
    if basis_type == "polynomial":
        return PolynomialBasis(dim=dim)
    raise InvalidConfigError(f"Unknown basis type {basis_type!r}, expected one of {BASIS_TYPES}")


@dataclass(frozen=True)
class RegionConfig:
    """
    Genomic region with its modelling window and basis.

    ``upstream`` and ``downstream`` are signed offsets from ``centre``;
    observation positions handed to the encoder are offsets on the same
    scale (already strand-oriented).
    """

    region_id: str
    basis: object
    upstream: float = -5000
    downstream: float = 5000
    chrom: str = "unknown"
    start: int = 0
    end: int = 0
    strand: str = "+"
    centre: Optional[float] = None
    name: Optional[str] = None

    def __post_init__(self):
        if not hasattr(self.basis, "dim") or not hasattr(self.basis, "design"):
            raise InvalidConfigError(f"Region {self.region_id}: basis must provide 'dim' and 'design'")
        if not (np.isfinite(self.upstream) and np.isfinite(self.downstream)):
            raise InvalidConfigError(f"Region {self.region_id}: window bounds must be finite")
        if self.upstream >= self.downstream:
            raise InvalidConfigError(
                f"Region {self.region_id}: window is inverted or empty "
                f"(upstream={self.upstream}, downstream={self.downstream})"
            )

    @property
    def dim(self):
        return self.basis.dim

    def contains(self, positions):
        positions = np.asarray(positions, dtype=float)
        inside = np.isfinite(positions)
        inside[inside] = (positions[inside] >= self.upstream) & (positions[inside] <= self.downstream)
        return inside

    def scale(self, positions):
        """Map window offsets linearly onto [-1, 1]."""
        positions = np.asarray(positions, dtype=float)
        return 2.0 * (positions - self.upstream) / (self.downstream - self.upstream) - 1.0

    def design(self, positions):
        """Design matrix for positions that must lie inside the window."""
        positions = np.atleast_1d(np.asarray(positions, dtype=float))
        if not np.all(self.contains(positions)):
            raise ValueError(
                f"Positions outside the window [{self.upstream}, {self.downstream}] "
                f"of region {self.region_id}"
            )
        return self.basis.design(self.scale(positions))


@dataclass(frozen=True)
class EncodedRegion:
    """Design matrix and labels of one cell in one region."""

    design: np.ndarray
    labels: np.ndarray
    positions: np.ndarray
    n_out_of_window: int = 0
    n_invalid_label: int = 0

    @property
    def n_obs(self):
        return int(self.labels.shape[0])

    @property
    def n_dropped(self):
        return self.n_out_of_window + self.n_invalid_label


def empty_region(dim):
    return EncodedRegion(np.zeros((0, dim)), np.zeros(0), np.zeros(0))


def encode(region_config, observations):
    """
    Encode one cell's observations in a region.

    Observations outside the window, with a non-finite position or with a
    label other than 0/1 are dropped and counted on the result.

    Parameters:
    -----------
    region_config : RegionConfig
        Region window and basis
    observations : array-like
        (n, 2) sequence of (relative position, label) pairs

    Returns:
    --------
    EncodedRegion
        Design matrix (n_kept x dim), labels, kept positions and drop counts
    """
    obs = np.asarray(observations, dtype=float)
    if obs.size == 0:
        return empty_region(region_config.dim)
    if obs.ndim != 2 or obs.shape[1] != 2:
        raise ValueError(
            f"Observations for region {region_config.region_id} must be an (n, 2) array, "
            f"got shape {obs.shape}"
        )

    positions, labels = obs[:, 0], obs[:, 1]
    in_window = region_config.contains(positions)
    valid_label = np.isin(labels, (0.0, 1.0))
    keep = in_window & valid_label

    encoded = EncodedRegion(
        design=region_config.basis.design(region_config.scale(positions[keep])),
        labels=labels[keep],
        positions=positions[keep],
        n_out_of_window=int(np.count_nonzero(~in_window)),
        n_invalid_label=int(np.count_nonzero(in_window & ~valid_label)),
    )
    if encoded.n_dropped:
        logger.debug(
            f"Region {region_config.region_id}: dropped {encoded.n_out_of_window} out-of-window "
            f"and {encoded.n_invalid_label} non-binary observations"
        )
    return encoded
