from dataclasses import dataclass, asdict
from typing import Optional

from .basis import BASIS_TYPES, make_basis
from .exceptions import InvalidConfigError
from .utils import effective_n_jobs

INIT_METHODS = ("kmeans", "random")


@dataclass
class MelissaOptions:
    """
    Options for one Melissa run.

    Passed explicitly to the data preparation, encoding and fitting
    components; nothing is read from module-level state.
    """

    # Mixture
    n_clusters: int = 3
    n_restarts: int = 5
    init: str = "kmeans"
    coef_bound: float = 2.0

    # Basis
    basis_type: str = "rbf"
    basis_dim: int = 4
    rbf_gamma: Optional[float] = None

    # Region windows and filters
    upstream: int = -5000
    downstream: int = 5000
    min_cpgcov: int = 5
    sd_thresh: float = -1.0

    # EM convergence
    tol: float = 1e-5
    max_iter: int = 300
    random_state: int = 0

    # Local GLM
    ridge: float = 0.1
    min_obs: int = 3
    glm_max_iter: int = 50
    glm_tol: float = 1e-6
    glm_max_retries: int = 3
    glm_step_shrink: float = 0.5

    n_jobs: int = 1

    def __post_init__(self):
        if self.n_clusters < 1:
            raise InvalidConfigError("n_clusters must be at least 1")
        if self.n_restarts < 1:
            raise InvalidConfigError("n_restarts must be at least 1")
        if self.init not in INIT_METHODS:
            raise InvalidConfigError(f"init must be one of {INIT_METHODS}, got {self.init!r}")
        if not self.coef_bound > 0:
            raise InvalidConfigError("coef_bound must be positive")
        if self.basis_type not in BASIS_TYPES:
            raise InvalidConfigError(f"basis_type must be one of {BASIS_TYPES}, got {self.basis_type!r}")
        # Validates dimensionality and gamma
        make_basis(self.basis_type, self.basis_dim, self.rbf_gamma)
        if self.upstream >= self.downstream:
            raise InvalidConfigError(
                f"Window is inverted or empty (upstream={self.upstream}, downstream={self.downstream})"
            )
        if self.min_cpgcov < 0:
            raise InvalidConfigError("min_cpgcov must be non-negative")
        if not self.tol > 0:
            raise InvalidConfigError("tol must be positive")
        if self.max_iter < 1 or self.glm_max_iter < 1:
            raise InvalidConfigError("max_iter and glm_max_iter must be at least 1")
        if self.ridge < 0:
            raise InvalidConfigError("ridge must be non-negative")
        if self.min_obs < 1:
            raise InvalidConfigError("min_obs must be at least 1")
        if not self.glm_tol > 0:
            raise InvalidConfigError("glm_tol must be positive")
        if self.glm_max_retries < 0:
            raise InvalidConfigError("glm_max_retries must be non-negative")
        if not 0 < self.glm_step_shrink < 1:
            raise InvalidConfigError("glm_step_shrink must lie in (0, 1)")
        self.n_jobs = effective_n_jobs(self.n_jobs)

    def basis(self):
        """Basis object shared by every region built from these options."""
        return make_basis(self.basis_type, self.basis_dim, self.rbf_gamma)

    def to_dict(self):
        return asdict(self)
