"""Ridge-penalised logistic regression for a single region profile."""

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from scipy.special import expit, logit

from .exceptions import DidNotConverge, NumericDivergence

logger = logging.getLogger(__name__)

RATE_EPS = 1e-3


def predict_rates(coef, design):
    """Methylation rates of a design matrix under a coefficient vector."""
    return expit(np.asarray(design, dtype=float) @ np.asarray(coef, dtype=float))


def bernoulli_loglik(eta, labels):
    """Elementwise Bernoulli log-likelihood of labels under logits ``eta``."""
    return -(labels * np.logaddexp(0.0, -eta) + (1.0 - labels) * np.logaddexp(0.0, eta))


def constant_rate_coef(rate, dim):
    """Coefficient vector whose intercept reproduces ``rate`` everywhere."""
    coef = np.zeros(dim)
    if dim > 0:
        coef[0] = logit(np.clip(rate, RATE_EPS, 1.0 - RATE_EPS))
    return coef


@dataclass
class GLMFit:
    coef: np.ndarray
    converged: bool
    n_iter: int
    objective: float
    n_retries: int = 0
    fallback: bool = False


class RidgeLogisticGLM:
    """
    Weighted logistic regression with a ridge penalty, fitted by damped IRLS.

    The first column of every design matrix is taken to be the intercept,
    which is where constant-rate fits place their coefficient.

    Parameters:
    -----------
    ridge : float, default=0.1
        Strength of the L2 penalty on the coefficients
    max_iter : int, default=50
        Maximum Newton iterations per attempt
    tol : float, default=1e-6
        Relative tolerance on the coefficient update
    min_obs : int, default=3
        Minimum (weighted) number of observations for a shape fit
    max_retries : int, default=3
        Retries with a reduced step after a numeric divergence
    step_shrink : float, default=0.5
        Factor applied to the step size on each retry
    """

    def __init__(self, ridge=0.1, max_iter=50, tol=1e-6, min_obs=3, max_retries=3,
                 step_shrink=0.5):
        self.ridge = ridge
        self.max_iter = max_iter
        self.tol = tol
        self.min_obs = min_obs
        self.max_retries = max_retries
        self.step_shrink = step_shrink

    @classmethod
    def from_options(cls, opts):
        return cls(
            ridge=opts.ridge,
            max_iter=opts.glm_max_iter,
            tol=opts.glm_tol,
            min_obs=opts.min_obs,
            max_retries=opts.glm_max_retries,
            step_shrink=opts.glm_step_shrink,
        )

    def loglik(self, coef, design, labels, weights=None):
        """Weighted Bernoulli log-likelihood of a coefficient vector, without the penalty."""
        if weights is None:
            weights = np.ones(len(labels))
        eta = np.asarray(design, dtype=float) @ np.asarray(coef, dtype=float)
        return float(np.sum(weights * bernoulli_loglik(eta, labels)))

    def objective(self, coef, design, labels, weights=None):
        """Penalised negative log-likelihood minimised by ``fit``."""
        coef = np.asarray(coef, dtype=float)
        if weights is None:
            weights = np.ones(len(labels))
        eta = np.asarray(design, dtype=float) @ coef
        nll = -np.sum(weights * bernoulli_loglik(eta, labels))
        return float(nll + 0.5 * self.ridge * coef @ coef)

    def fit(self, design, labels, weights=None, init=None):
        """
        Fit the coefficient vector of a region profile.

        Parameters:
        -----------
        design : numpy.ndarray
            (n x dim) design matrix, intercept in column 0
        labels : numpy.ndarray
            Binary methylation labels
        weights : numpy.ndarray, optional
            Non-negative observation weights (all ones if omitted)
        init : numpy.ndarray, optional
            Starting coefficients

        Returns:
        --------
        GLMFit
            Fitted coefficients and diagnostics
        """
        X = np.asarray(design, dtype=float)
        y = np.asarray(labels, dtype=float)
        if X.ndim != 2 or X.shape[0] != y.shape[0]:
            raise ValueError(f"Design matrix of shape {X.shape} does not match {y.shape[0]} labels")
        w = np.ones(y.shape[0]) if weights is None else np.asarray(weights, dtype=float)
        if w.shape != y.shape or np.any(w < 0):
            raise ValueError("Weights must be non-negative and match the labels")

        dim = X.shape[1]
        if w.sum() < self.min_obs or np.unique(y[w > 0]).size < 2:
            return self._constant_fit(X, y, w)

        beta0 = np.zeros(dim)
        if init is not None and np.all(np.isfinite(init)):
            beta0 = np.asarray(init, dtype=float).copy()

        step = 1.0
        for attempt in range(self.max_retries + 1):
            try:
                coef, objective, converged, n_iter = self._irls(X, y, w, beta0, step)
            except NumericDivergence as err:
                logger.debug(f"GLM attempt {attempt + 1} diverged ({err}); shrinking step to {step * self.step_shrink}")
                step *= self.step_shrink
                beta0 = np.zeros(dim)
                continue
            if not converged:
                warnings.warn(
                    f"GLM fit stopped after {n_iter} iterations without converging",
                    DidNotConverge,
                    stacklevel=2,
                )
            return GLMFit(coef, converged, n_iter, objective, n_retries=attempt)

        logger.warning(
            f"GLM fit diverged {self.max_retries + 1} times; falling back to a constant-rate coefficient"
        )
        fit = self._constant_fit(X, y, w)
        fit.n_retries = self.max_retries + 1
        fit.fallback = True
        return fit

    def _constant_fit(self, X, y, w):
        total = w.sum()
        rate = float(np.sum(w * y) / total) if total > 0 else 0.5
        coef = constant_rate_coef(rate, X.shape[1])
        return GLMFit(coef, True, 0, self.objective(coef, X, y, w))

    def _irls(self, X, y, w, beta, step):
        dim = X.shape[1]
        penalty = self.ridge * np.eye(dim)
        best_coef, best_obj = beta, self.objective(beta, X, y, w)
        if not np.isfinite(best_obj):
            raise NumericDivergence("non-finite objective at the starting point")

        for iteration in range(1, self.max_iter + 1):
            p = expit(X @ beta)
            s = np.clip(w * p * (1.0 - p), 1e-10, None)
            hessian = (X * s[:, None]).T @ X + penalty
            gradient = X.T @ (w * (y - p)) - self.ridge * beta
            try:
                delta = np.linalg.solve(hessian, gradient)
            except np.linalg.LinAlgError:
                delta = np.linalg.lstsq(hessian, gradient, rcond=None)[0]

            beta_new = beta + step * delta
            if not np.all(np.isfinite(beta_new)):
                raise NumericDivergence(f"non-finite coefficients at iteration {iteration}")
            obj = self.objective(beta_new, X, y, w)
            if not np.isfinite(obj):
                raise NumericDivergence(f"non-finite objective at iteration {iteration}")
            if obj <= best_obj:
                best_coef, best_obj = beta_new, obj

            if np.linalg.norm(beta_new - beta) < self.tol * (1.0 + np.linalg.norm(beta)):
                return best_coef, best_obj, True, iteration
            beta = beta_new

        return best_coef, best_obj, False, self.max_iter
