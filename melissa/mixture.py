"""Mixture of region-profile GLMs over cells."""

import logging

import numpy as np
from scipy.special import expit, logsumexp

from .glm import bernoulli_loglik

logger = logging.getLogger(__name__)


class MixtureModel:
    """
    K cluster prototypes per region plus mixing weights.

    A cell's log-likelihood under cluster k is the sum, over the regions the
    cell has observations in, of the Bernoulli log-likelihood of its labels
    under prototype k. Regions without observations contribute zero, so cells
    with sparse coverage are still assigned from whatever they cover.

    Parameters:
    -----------
    regions : sequence of RegionConfig
        Region windows and bases
    prototypes : sequence of numpy.ndarray
        One (K x dim_r) coefficient array per region
    weights : numpy.ndarray
        Mixing weights over the K clusters
    """

    def __init__(self, regions, prototypes, weights):
        self.regions = tuple(regions)
        self.prototypes = [np.asarray(p, dtype=float) for p in prototypes]
        self.weights = np.asarray(weights, dtype=float)

        if len(self.prototypes) != len(self.regions):
            raise ValueError(
                f"Got {len(self.prototypes)} prototype arrays for {len(self.regions)} regions"
            )
        K = self.weights.shape[0]
        for region, proto in zip(self.regions, self.prototypes):
            if proto.shape != (K, region.dim):
                raise ValueError(
                    f"Prototypes for region {region.region_id} have shape {proto.shape}, "
                    f"expected {(K, region.dim)}"
                )
        if np.any(self.weights < 0) or not np.isclose(self.weights.sum(), 1.0):
            raise ValueError("Mixing weights must be non-negative and sum to 1")

    @property
    def n_clusters(self):
        return self.weights.shape[0]

    @property
    def n_regions(self):
        return len(self.regions)

    def region_log_likelihood(self, region_index, encoded_region):
        """Per-cluster log-likelihood of one cell's observations in one region."""
        if encoded_region.n_obs == 0:
            return np.zeros(self.n_clusters)
        eta = encoded_region.design @ self.prototypes[region_index].T
        return bernoulli_loglik(eta, encoded_region.labels[:, None]).sum(axis=0)

    def cell_log_likelihood(self, cell_profiles):
        """Per-cluster log-likelihood of a cell given its encoded regions."""
        ll = np.zeros(self.n_clusters)
        for r, encoded_region in enumerate(cell_profiles):
            ll += self.region_log_likelihood(r, encoded_region)
        return ll

    def log_likelihood_matrix(self, data):
        """
        Log-likelihood of every cell under every cluster.

        Parameters:
        -----------
        data : EncodedRegionData
            Encoded observations for all cells

        Returns:
        --------
        numpy.ndarray
            (N x K) log-likelihoods, without the mixing weights
        """
        ll = np.zeros((data.n_cells, self.n_clusters))
        for r in range(self.n_regions):
            design, labels, cell_idx = data.region_stack(r)
            if labels.shape[0] == 0:
                continue
            eta = design @ self.prototypes[r].T
            np.add.at(ll, cell_idx, bernoulli_loglik(eta, labels[:, None]))
        return ll

    def _log_weights(self):
        with np.errstate(divide="ignore"):
            return np.log(self.weights)

    def responsibilities(self, data):
        """
        E-step: posterior cluster probabilities for every cell.

        Returns:
        --------
        numpy.ndarray
            (N x K) responsibility matrix, rows summing to one
        float
            Total log-likelihood, the sum over cells of the log-sum-exp term
        """
        log_resp = self.log_likelihood_matrix(data) + self._log_weights()
        log_norm = logsumexp(log_resp, axis=1)
        resp = np.exp(log_resp - log_norm[:, None])
        return resp, float(log_norm.sum())

    def cell_responsibility(self, cell_profiles):
        log_resp = self.cell_log_likelihood(cell_profiles) + self._log_weights()
        return np.exp(log_resp - logsumexp(log_resp))

    def predict_rate(self, cluster, region, position):
        """
        Methylation rate of a cluster prototype at window offsets.

        Parameters:
        -----------
        cluster : int
            Cluster index
        region : int
            Region index
        position : float or array-like
            Offsets inside the region window

        Returns:
        --------
        float or numpy.ndarray
            Probabilities in [0, 1]
        """
        design = self.regions[region].design(position)
        rates = expit(design @ self.prototypes[region][cluster])
        if np.ndim(position) == 0:
            return float(rates[0])
        return rates

    def penalty(self, ridge):
        """Ridge penalty summed over every prototype."""
        return 0.5 * ridge * float(sum(np.sum(p ** 2) for p in self.prototypes))
