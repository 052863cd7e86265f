"""EM fitting of the Melissa mixture with independent restarts."""

import logging
import time
import warnings
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing import Pool

import numpy as np
from sklearn.cluster import KMeans

from .config import MelissaOptions
from .data import EncodedRegionData, MelissaModel, RawMethylationData
from .exceptions import DidNotConverge, EMFailedError, InvalidConfigError
from .glm import RidgeLogisticGLM
from .mixture import MixtureModel

logger = logging.getLogger(__name__)


class EMState(Enum):
    INITIALIZING = "initializing"
    E_STEP = "e_step"
    M_STEP = "m_step"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass
class RestartResult:
    """Outcome of one EM restart. On failure the parameters are the last stable ones."""

    restart: int
    state: EMState
    prototypes: list
    weights: np.ndarray
    responsibilities: np.ndarray
    log_likelihood: float
    objective: float
    n_iter: int
    converged: bool
    log_likelihood_trace: list = field(default_factory=list)
    objective_trace: list = field(default_factory=list)
    n_glm_nonconverged: int = 0


class EMOptimizer:
    """
    Expectation-Maximisation for the mixture of region-profile GLMs.

    Each restart moves through the states INITIALIZING -> (E_STEP <-> M_STEP)
    -> CONVERGED or FAILED. The tracked quantity is the total log-likelihood,
    which the M-step never decreases: a ridge refit of a prototype is only
    accepted when its weighted log-likelihood is at least that of the
    prototype it replaces.

    Parameters:
    -----------
    opts : MelissaOptions, optional
        Run options (defaults are used if omitted)
    """

    def __init__(self, opts=None):
        self.opts = opts if opts is not None else MelissaOptions()
        self.glm = RidgeLogisticGLM.from_options(self.opts)

    # ---- Initialisation ----

    def _cell_signature(self, cell_profiles):
        blocks = []
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DidNotConverge)
            for profile in cell_profiles:
                if profile.n_obs == 0:
                    blocks.append(np.full(profile.design.shape[1], np.nan))
                else:
                    blocks.append(self.glm.fit(profile.design, profile.labels).coef)
        return np.concatenate(blocks)

    def cell_signatures(self, data):
        """
        Local GLM coefficients of every cell, concatenated over regions.

        Missing regions are filled with the across-cell mean of the region's
        coefficients, or zeros when no cell covers the region.

        Returns:
        --------
        numpy.ndarray
            (N x sum of region dims) signature matrix
        """
        if self.opts.n_jobs > 1 and data.n_cells > 1:
            with Pool(self.opts.n_jobs) as pool:
                rows = pool.map(self._cell_signature, data.profiles)
        else:
            rows = [self._cell_signature(p) for p in data.profiles]

        signatures = np.vstack(rows)
        covered = ~np.isnan(signatures)
        counts = covered.sum(axis=0)
        col_means = np.where(counts > 0, np.nansum(signatures, axis=0) / np.maximum(counts, 1), 0.0)
        return np.where(covered, signatures, col_means[None, :])

    def _split_by_region(self, flat, data):
        prototypes, offset = [], 0
        for region in data.regions:
            prototypes.append(np.array(flat[:, offset:offset + region.dim], dtype=float))
            offset += region.dim
        return prototypes

    def initialize(self, data, rng, signatures=None):
        """
        Seed the prototypes of one restart.

        With ``init='kmeans'`` the cluster centres of a k-means run on the
        cell signatures become the prototypes; with ``init='random'`` the
        coefficients are drawn uniformly within ``coef_bound``.
        """
        K = self.opts.n_clusters
        if self.opts.init == "kmeans":
            if signatures is None:
                signatures = self.cell_signatures(data)
            km = KMeans(n_clusters=K, n_init=1, random_state=int(rng.integers(2 ** 31 - 1)))
            km.fit(signatures)
            return self._split_by_region(km.cluster_centers_, data)

        bound = self.opts.coef_bound
        return [rng.uniform(-bound, bound, size=(K, region.dim)) for region in data.regions]

    def _warm_start_prototypes(self, warm_start, data):
        if warm_start is None:
            return None
        prototypes = warm_start.prototypes if isinstance(warm_start, MelissaModel) else warm_start
        prototypes = [np.array(p, dtype=float) for p in prototypes]
        if len(prototypes) != data.n_regions:
            raise InvalidConfigError(
                f"Warm start has {len(prototypes)} regions, data has {data.n_regions}"
            )
        for region, proto in zip(data.regions, prototypes):
            if proto.shape != (self.opts.n_clusters, region.dim):
                raise InvalidConfigError(
                    f"Warm start prototypes for region {region.region_id} have shape {proto.shape}, "
                    f"expected {(self.opts.n_clusters, region.dim)}"
                )
        return prototypes

    # ---- EM steps ----

    def e_step(self, mixture, data):
        """Responsibilities, total log-likelihood and penalised objective."""
        resp, ll = mixture.responsibilities(data)
        return resp, ll, ll - mixture.penalty(self.opts.ridge)

    def m_step(self, data, resp, prototypes):
        """
        Update mixing weights and refit every cluster/region prototype.

        The ridge fit is only a proposal: it replaces the current prototype
        when it does not lower that prototype's weighted log-likelihood, so
        the total log-likelihood never decreases.

        Returns:
        --------
        numpy.ndarray
            New mixing weights (mean responsibility per cluster)
        list of numpy.ndarray
            New prototypes
        int
            Number of prototype fits that hit the GLM iteration limit
        """
        weights = resp.mean(axis=0)
        weights = weights / weights.sum()
        n_nonconverged = 0
        new_prototypes = []
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DidNotConverge)
            for r in range(data.n_regions):
                design, labels, cell_idx = data.region_stack(r)
                proto = prototypes[r].copy()
                for k in range(self.opts.n_clusters):
                    w = resp[cell_idx, k]
                    current = self.glm.loglik(proto[k], design, labels, w)
                    fit = self.glm.fit(design, labels, weights=w, init=proto[k])
                    if not fit.converged:
                        n_nonconverged += 1
                    if self.glm.loglik(fit.coef, design, labels, w) >= current:
                        proto[k] = fit.coef
                new_prototypes.append(proto)
        return weights, new_prototypes, n_nonconverged

    def run(self, data, seed=None, restart=0, warm_start=None, signatures=None):
        """
        Run one EM restart to convergence or failure.

        Parameters:
        -----------
        data : EncodedRegionData
            Encoded observations
        seed : int or numpy.random.SeedSequence, optional
            Seed of this restart
        restart : int, default=0
            Restart number, for logging
        warm_start : list of numpy.ndarray, optional
            Initial prototypes
        signatures : numpy.ndarray, optional
            Precomputed cell signatures for k-means initialisation

        Returns:
        --------
        RestartResult
        """
        opts = self.opts
        rng = np.random.default_rng(seed)
        K = opts.n_clusters

        state = EMState.INITIALIZING
        if warm_start is not None:
            prototypes = [np.array(p, dtype=float) for p in warm_start]
        else:
            prototypes = self.initialize(data, rng, signatures)
        weights = np.full(K, 1.0 / K)

        ll_trace, obj_trace = [], []
        stable = None
        n_iter, n_nonconverged, converged = 0, 0, False
        state = EMState.E_STEP

        while state in (EMState.E_STEP, EMState.M_STEP):
            if state is EMState.E_STEP:
                mixture = MixtureModel(data.regions, prototypes, weights)
                resp, ll, obj = self.e_step(mixture, data)
                ll_trace.append(ll)
                obj_trace.append(obj)
                current = (prototypes, weights, resp, ll, obj)

                if stable is not None:
                    previous = stable[3]
                    scale = max(1.0, abs(previous))
                    delta = ll - previous
                    if delta < -opts.tol * scale:
                        logger.warning(
                            f"Restart {restart}: log-likelihood decreased by {-delta:.3g} at iteration "
                            f"{n_iter}; keeping the last stable state"
                        )
                        state = EMState.FAILED
                        break
                    if delta < opts.tol * scale:
                        stable = current
                        converged = True
                        state = EMState.CONVERGED
                        break

                stable = current
                if n_iter >= opts.max_iter:
                    logger.info(f"Restart {restart}: reached max_iter={opts.max_iter} before converging")
                    state = EMState.CONVERGED
                    break
                state = EMState.M_STEP
            else:
                weights, prototypes, n_bad = self.m_step(data, resp, prototypes)
                n_nonconverged += n_bad
                n_iter += 1
                state = EMState.E_STEP

        prototypes, weights, resp, ll, obj = stable
        if n_nonconverged:
            logger.debug(f"Restart {restart}: {n_nonconverged} prototype fits hit the GLM iteration limit")
        logger.info(
            f"Restart {restart}: {state.value} after {n_iter} iterations, log-likelihood {ll:.4f}"
        )
        return RestartResult(
            restart=restart,
            state=state,
            prototypes=prototypes,
            weights=weights,
            responsibilities=resp,
            log_likelihood=ll,
            objective=obj,
            n_iter=n_iter,
            converged=converged,
            log_likelihood_trace=ll_trace,
            objective_trace=obj_trace,
            n_glm_nonconverged=n_nonconverged,
        )

    def _worker_run(self, args):
        """Worker function for parallel restarts."""
        data, seed, restart, warm_start, signatures = args
        return self.run(data, seed=seed, restart=restart, warm_start=warm_start, signatures=signatures)

    def fit(self, data, warm_start=None):
        """
        Fit the model with independent restarts and keep the best one.

        Parameters:
        -----------
        data : RawMethylationData or EncodedRegionData
            Observations; raw data is encoded first
        warm_start : MelissaModel or list of numpy.ndarray, optional
            Initial prototypes; a warm-started fit runs a single restart

        Returns:
        --------
        MelissaModel
            Restart with the highest final log-likelihood
        """
        start_time = time.time()
        opts = self.opts

        if isinstance(data, RawMethylationData):
            data = data.encode(opts.n_jobs)
        elif not isinstance(data, EncodedRegionData):
            raise TypeError(f"Expected RawMethylationData or EncodedRegionData, got {type(data).__name__}")
        if data.n_cells == 0:
            raise ValueError("No cells to cluster")

        warm = self._warm_start_prototypes(warm_start, data)
        seeds = np.random.SeedSequence(opts.random_state).spawn(opts.n_restarts)
        if warm is not None:
            seeds = seeds[:1]

        signatures = None
        if warm is None and opts.init == "kmeans":
            if data.n_cells < opts.n_clusters:
                raise InvalidConfigError(
                    f"k-means initialisation needs at least {opts.n_clusters} cells, got {data.n_cells}"
                )
            signatures = self.cell_signatures(data)

        args_list = [(data, seed, i, warm, signatures) for i, seed in enumerate(seeds)]
        logger.info(
            f"Fitting {opts.n_clusters} clusters on {data.n_cells} cells and {data.n_regions} regions "
            f"with {len(args_list)} restart(s)"
        )

        if opts.n_jobs > 1 and len(args_list) > 1:
            logger.info(f"Using {opts.n_jobs} parallel jobs for restarts")
            with Pool(opts.n_jobs) as pool:
                results = pool.map(self._worker_run, args_list)
        else:
            results = [self._worker_run(args) for args in args_list]

        usable = [r for r in results if r.state is not EMState.FAILED]
        if not usable:
            best_failed = max(results, key=lambda r: r.log_likelihood)
            raise EMFailedError(
                f"All {len(results)} EM restarts failed; the best failed restart is attached",
                result=best_failed,
            )
        best = max(usable, key=lambda r: r.log_likelihood)

        logger.info(
            f"Selected restart {best.restart} with log-likelihood {best.log_likelihood:.4f} "
            f"({time.time() - start_time:.2f} seconds)"
        )
        return MelissaModel(
            regions=data.regions,
            cell_names=data.cell_names,
            prototypes=best.prototypes,
            weights=best.weights,
            responsibilities=best.responsibilities,
            log_likelihood=best.log_likelihood,
            log_likelihood_trace=best.log_likelihood_trace,
            objective_trace=best.objective_trace,
            n_iter=best.n_iter,
            converged=best.converged,
            state=best.state.value,
            opts=opts,
            restart_log_likelihoods=[r.log_likelihood for r in results],
        )


def fit_melissa(data, opts=None, warm_start=None):
    """
    Convenience function to cluster cells and learn region prototypes.

    Parameters:
    -----------
    data : RawMethylationData or EncodedRegionData
        Observations
    opts : MelissaOptions, optional
        Run options; defaults to the options attached to ``data``
    warm_start : MelissaModel or list of numpy.ndarray, optional
        Initial prototypes

    Returns:
    --------
    MelissaModel
    """
    if opts is None:
        opts = data.opts if getattr(data, "opts", None) is not None else MelissaOptions()
    return EMOptimizer(opts).fit(data, warm_start=warm_start)
