"""
Data objects passed between the stages of a Melissa run.

``RawMethylationData`` holds per-cell observations as produced by data
preparation, ``EncodedRegionData`` holds their basis design matrices, and
``MelissaModel`` is the read-only result of fitting. Each stage only accepts
the type produced by the previous one.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from multiprocessing import Pool
from typing import Optional

import numpy as np
import pandas as pd

from .basis import PolynomialBasis, RBFBasis, RegionConfig, encode
from .config import MelissaOptions
from .exceptions import InvalidConfigError
from .mixture import MixtureModel
from .utils import effective_n_jobs, read_only

logger = logging.getLogger(__name__)

FRAME_COLUMNS = ["cell", "region", "position", "label"]


def _as_observations(obs):
    if obs is None:
        return np.zeros((0, 2))
    obs = np.asarray(obs, dtype=float)
    if obs.size == 0:
        return np.zeros((0, 2))
    if obs.ndim != 2 or obs.shape[1] != 2:
        raise ValueError(f"Observations must be an (n, 2) array, got shape {obs.shape}")
    return obs


class RawMethylationData:
    """
    Per-cell, per-region CpG observations before encoding.

    Parameters:
    -----------
    met : dict
        cell name -> region id -> (n, 2) array of (relative position, label);
        absent or empty regions are missing for that cell
    regions : sequence of RegionConfig
        Region annotation with windows and bases
    opts : MelissaOptions, optional
        Options used to create the data
    diagnostics : dict, optional
        Counts of observations removed by preparation and filtering
    """

    def __init__(self, met, regions, opts=None, diagnostics=None):
        self.regions = tuple(regions)
        region_ids = [r.region_id for r in self.regions]
        if len(set(region_ids)) != len(region_ids):
            raise InvalidConfigError("Region identifiers must be unique")
        self._region_index = {rid: i for i, rid in enumerate(region_ids)}

        self.met = {}
        for cell, cell_met in met.items():
            unknown = set(cell_met) - set(region_ids)
            if unknown:
                raise ValueError(f"Cell {cell} has observations for unknown regions: {sorted(unknown)[:5]}")
            self.met[str(cell)] = {rid: _as_observations(cell_met.get(rid)) for rid in region_ids}

        self.opts = opts
        self.diagnostics = dict(diagnostics or {})

    @property
    def cell_names(self):
        return list(self.met)

    @property
    def region_ids(self):
        return [r.region_id for r in self.regions]

    @property
    def n_cells(self):
        return len(self.met)

    @property
    def n_regions(self):
        return len(self.regions)

    def region_index(self, region_id):
        return self._region_index[region_id]

    def n_observations(self):
        return int(sum(obs.shape[0] for cell_met in self.met.values() for obs in cell_met.values()))

    def coverage_matrix(self):
        """Number of CpGs per cell (rows) and region (columns)."""
        counts = [[self.met[cell][rid].shape[0] for rid in self.region_ids] for cell in self.met]
        return pd.DataFrame(counts, index=self.cell_names, columns=self.region_ids, dtype=int)

    def _encode_cell(self, cell):
        cell_met = self.met[cell]
        return [encode(region, cell_met[region.region_id]) for region in self.regions]

    def encode(self, n_jobs=None):
        """
        Encode every cell's regions into basis design matrices.

        Parameters:
        -----------
        n_jobs : int, optional
            Number of worker processes (defaults to opts.n_jobs, or 1)

        Returns:
        --------
        EncodedRegionData
        """
        if n_jobs is None:
            n_jobs = self.opts.n_jobs if self.opts is not None else 1
        n_jobs = effective_n_jobs(n_jobs)

        cells = self.cell_names
        if n_jobs > 1 and len(cells) > 1:
            logger.info(f"Encoding {len(cells)} cells with {n_jobs} parallel jobs")
            with Pool(n_jobs) as pool:
                profiles = pool.map(self._encode_cell, cells)
        else:
            profiles = [self._encode_cell(cell) for cell in cells]

        encoded = EncodedRegionData(cells, self.regions, profiles, self.opts)
        logger.info(
            f"Encoded {encoded.n_obs} observations over {encoded.n_cells} cells and "
            f"{encoded.n_regions} regions; dropped {encoded.n_dropped}"
        )
        return encoded

    def to_frame(self):
        """Long-format table with one row per observation."""
        rows = []
        for cell, cell_met in self.met.items():
            for rid, obs in cell_met.items():
                for position, label in obs:
                    rows.append((cell, rid, position, int(label)))
        return pd.DataFrame(rows, columns=FRAME_COLUMNS)

    @classmethod
    def from_frame(cls, df, regions, opts=None, cell_names=None):
        """
        Build the data object from a long-format table.

        Parameters:
        -----------
        df : pandas.DataFrame
            Columns 'cell', 'region', 'position' and 'label'
        regions : sequence of RegionConfig
            Region annotation
        opts : MelissaOptions, optional
            Options attached to the data
        cell_names : sequence of str, optional
            Cells to include even when they have no rows in ``df``

        Returns:
        --------
        RawMethylationData
        """
        missing = [c for c in FRAME_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        region_ids = {r.region_id for r in regions}
        df = df.assign(cell=df["cell"].astype(str), region=df["region"].astype(str))
        known = df["region"].isin(region_ids)
        diagnostics = {}
        if not known.all():
            n_unknown = int((~known).sum())
            logger.warning(f"Dropping {n_unknown} rows for regions missing from the annotation")
            diagnostics["unknown_region_rows"] = n_unknown
            df = df[known]

        met = {str(cell): {} for cell in (cell_names or [])}
        for (cell, rid), group in df.groupby(["cell", "region"], sort=False):
            met.setdefault(cell, {})[rid] = group[["position", "label"]].to_numpy(dtype=float)
        return cls(met, regions, opts=opts, diagnostics=diagnostics)

    def _derive(self, met, regions=None, **counts):
        diagnostics = dict(self.diagnostics)
        for key, value in counts.items():
            diagnostics[key] = diagnostics.get(key, 0) + value
        return RawMethylationData(met, regions if regions is not None else self.regions,
                                  opts=self.opts, diagnostics=diagnostics)

    def __repr__(self):
        return (
            f"RawMethylationData(n_cells={self.n_cells}, n_regions={self.n_regions}, "
            f"n_observations={self.n_observations()})"
        )


class EncodedRegionData:
    """
    Encoded observations for all cells, with per-region stacked matrices.

    ``profiles[n][r]`` is the EncodedRegion of cell n in region r.
    ``region_stack(r)`` returns the rows of every cell in region r stacked
    together with the index of the cell each row came from.
    """

    def __init__(self, cell_names, regions, profiles, opts=None):
        self.cell_names = tuple(cell_names)
        self.regions = tuple(regions)
        self.profiles = [list(p) for p in profiles]
        self.opts = opts

        if len(self.profiles) != len(self.cell_names):
            raise ValueError("Need one profile list per cell")
        for cell, cell_profiles in zip(self.cell_names, self.profiles):
            if len(cell_profiles) != len(self.regions):
                raise ValueError(f"Cell {cell} has {len(cell_profiles)} regions, expected {len(self.regions)}")

        self._stacks = []
        for r, region in enumerate(self.regions):
            blocks = [cell_profiles[r] for cell_profiles in self.profiles]
            design = np.vstack([np.zeros((0, region.dim))] + [b.design for b in blocks])
            labels = np.concatenate([np.zeros(0)] + [b.labels for b in blocks])
            cell_idx = np.concatenate(
                [np.zeros(0, dtype=int)] + [np.full(b.n_obs, n, dtype=int) for n, b in enumerate(blocks)]
            )
            self._stacks.append((design, labels, cell_idx))

    @property
    def n_cells(self):
        return len(self.cell_names)

    @property
    def n_regions(self):
        return len(self.regions)

    @property
    def n_obs(self):
        return int(sum(stack[1].shape[0] for stack in self._stacks))

    @property
    def n_dropped(self):
        return int(sum(p.n_dropped for cell_profiles in self.profiles for p in cell_profiles))

    def region_stack(self, r):
        return self._stacks[r]

    def cell_profiles(self, n):
        return self.profiles[n]


def _basis_to_dict(basis):
    if isinstance(basis, RBFBasis):
        return {"type": "rbf", "dim": basis.dim, "gamma": basis.gamma}
    return {"type": "polynomial", "dim": basis.dim}


def _basis_from_dict(payload):
    if payload["type"] == "rbf":
        return RBFBasis(dim=payload["dim"], gamma=payload.get("gamma"))
    return PolynomialBasis(dim=payload["dim"])


@dataclass(frozen=True, eq=False)
class MelissaModel:
    """
    Fitted Melissa model.

    Immutable: every array is a read-only copy, the options are a snapshot
    taken at construction, and a new fit produces a new object.
    """

    regions: tuple
    cell_names: tuple
    prototypes: tuple
    weights: np.ndarray
    responsibilities: np.ndarray
    log_likelihood: float
    log_likelihood_trace: tuple = ()
    objective_trace: tuple = ()
    n_iter: int = 0
    converged: bool = False
    state: str = "converged"
    opts: Optional[MelissaOptions] = None
    restart_log_likelihoods: tuple = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "regions", tuple(self.regions))
        object.__setattr__(self, "cell_names", tuple(self.cell_names))
        object.__setattr__(self, "prototypes", tuple(read_only(p) for p in self.prototypes))
        object.__setattr__(self, "weights", read_only(self.weights))
        object.__setattr__(self, "responsibilities", read_only(self.responsibilities))
        object.__setattr__(self, "log_likelihood_trace", tuple(float(v) for v in self.log_likelihood_trace))
        object.__setattr__(self, "objective_trace", tuple(float(v) for v in self.objective_trace))
        object.__setattr__(self, "restart_log_likelihoods", tuple(float(v) for v in self.restart_log_likelihoods))
        if self.opts is not None:
            object.__setattr__(self, "opts", replace(self.opts))
        if self.responsibilities.shape != (len(self.cell_names), self.weights.shape[0]):
            raise ValueError(
                f"Responsibilities of shape {self.responsibilities.shape} do not match "
                f"{len(self.cell_names)} cells and {self.weights.shape[0]} clusters"
            )
        if len(self.prototypes) != len(self.regions):
            raise ValueError(f"Got prototypes for {len(self.prototypes)} regions, expected {len(self.regions)}")
        for region, proto in zip(self.regions, self.prototypes):
            if proto.shape != (self.n_clusters, region.dim):
                raise ValueError(
                    f"Prototypes for region {region.region_id} have shape {proto.shape}, "
                    f"expected {(self.n_clusters, region.dim)}"
                )
        if not np.allclose(self.responsibilities.sum(axis=1), 1.0, atol=1e-6):
            raise ValueError("Responsibility rows must sum to 1")
        if not np.isclose(self.weights.sum(), 1.0, atol=1e-6):
            raise ValueError("Mixing weights must sum to 1")

    @property
    def n_clusters(self):
        return self.weights.shape[0]

    @property
    def n_cells(self):
        return len(self.cell_names)

    @property
    def n_regions(self):
        return len(self.regions)

    def mixture(self):
        return MixtureModel(self.regions, self.prototypes, self.weights)

    def cell_index(self, cell):
        if isinstance(cell, (int, np.integer)):
            if not 0 <= cell < self.n_cells:
                raise KeyError(f"Cell index {cell} out of range")
            return int(cell)
        try:
            return self.cell_names.index(str(cell))
        except ValueError:
            raise KeyError(f"Unknown cell {cell!r}") from None

    def region_index(self, region):
        if isinstance(region, (int, np.integer)):
            if not 0 <= region < self.n_regions:
                raise KeyError(f"Region index {region} out of range")
            return int(region)
        for r, config in enumerate(self.regions):
            if config.region_id == str(region):
                return r
        raise KeyError(f"Unknown region {region!r}")

    def predict_rate(self, cluster, region, position):
        """Rate of a cluster prototype at window offsets of a region (index or id)."""
        return self.mixture().predict_rate(cluster, self.region_index(region), position)

    def cluster_assignments(self):
        """Most probable cluster of every cell."""
        return self.responsibilities.argmax(axis=1)

    def responsibilities_frame(self):
        frame = pd.DataFrame(
            self.responsibilities,
            index=pd.Index(self.cell_names, name="cell"),
            columns=[f"cluster_{k}" for k in range(self.n_clusters)],
        )
        frame["cluster"] = self.cluster_assignments()
        return frame

    def to_dict(self):
        return {
            "cell_names": list(self.cell_names),
            "regions": [
                {
                    "region_id": r.region_id,
                    "chrom": r.chrom,
                    "start": int(r.start),
                    "end": int(r.end),
                    "strand": r.strand,
                    "centre": None if r.centre is None else float(r.centre),
                    "name": r.name,
                    "upstream": float(r.upstream),
                    "downstream": float(r.downstream),
                    "basis": _basis_to_dict(r.basis),
                }
                for r in self.regions
            ],
            "prototypes": [p.tolist() for p in self.prototypes],
            "weights": self.weights.tolist(),
            "responsibilities": self.responsibilities.tolist(),
            "diagnostics": {
                "log_likelihood": self.log_likelihood,
                "log_likelihood_trace": list(self.log_likelihood_trace),
                "objective_trace": list(self.objective_trace),
                "n_iter": self.n_iter,
                "converged": self.converged,
                "state": self.state,
                "restart_log_likelihoods": list(self.restart_log_likelihoods),
            },
            "opts": self.opts.to_dict() if self.opts is not None else None,
        }

    @classmethod
    def from_dict(cls, payload):
        regions = [
            RegionConfig(
                region_id=r["region_id"],
                basis=_basis_from_dict(r["basis"]),
                upstream=r["upstream"],
                downstream=r["downstream"],
                chrom=r["chrom"],
                start=r["start"],
                end=r["end"],
                strand=r["strand"],
                centre=r["centre"],
                name=r["name"],
            )
            for r in payload["regions"]
        ]
        diagnostics = payload["diagnostics"]
        opts = MelissaOptions(**payload["opts"]) if payload.get("opts") else None
        return cls(
            regions=regions,
            cell_names=payload["cell_names"],
            prototypes=[np.asarray(p, dtype=float) for p in payload["prototypes"]],
            weights=np.asarray(payload["weights"], dtype=float),
            responsibilities=np.asarray(payload["responsibilities"], dtype=float),
            log_likelihood=diagnostics["log_likelihood"],
            log_likelihood_trace=diagnostics["log_likelihood_trace"],
            objective_trace=diagnostics["objective_trace"],
            n_iter=diagnostics["n_iter"],
            converged=diagnostics["converged"],
            state=diagnostics["state"],
            opts=opts,
            restart_log_likelihoods=diagnostics["restart_log_likelihoods"],
        )

    def save_json(self, path):
        with open(path, "w") as fh:
            json.dump(self.to_dict(), fh, indent=2)
        logger.info(f"Saved model to {path}")

    @classmethod
    def load_json(cls, path):
        with open(path) as fh:
            return cls.from_dict(json.load(fh))


# ---- Dataset filters and partitioning ----

def filter_by_cpg_coverage(data, min_cpgcov=10):
    """
    Mark cell-regions with fewer than ``min_cpgcov`` CpGs as missing.

    Parameters:
    -----------
    data : RawMethylationData
        Input data
    min_cpgcov : int, default=10
        Minimum number of CpGs a cell needs in a region

    Returns:
    --------
    RawMethylationData
        Filtered copy; removed counts are added to its diagnostics
    """
    met, n_regions, n_cpgs = {}, 0, 0
    for cell, cell_met in data.met.items():
        met[cell] = {}
        for rid, obs in cell_met.items():
            if 0 < obs.shape[0] < min_cpgcov:
                n_regions += 1
                n_cpgs += obs.shape[0]
                obs = None
            met[cell][rid] = obs
    logger.info(f"CpG coverage filter (min {min_cpgcov}): removed {n_regions} cell-regions with {n_cpgs} CpGs")
    return data._derive(met, coverage_filtered_regions=n_regions, coverage_filtered_cpgs=n_cpgs)


def _drop_regions(data, keep_mask, reason):
    kept = [r for r, keep in zip(data.regions, keep_mask) if keep]
    dropped = [r.region_id for r, keep in zip(data.regions, keep_mask) if not keep]
    n_cpgs = int(sum(data.met[cell][rid].shape[0] for cell in data.met for rid in dropped))
    met = {cell: {r.region_id: cell_met[r.region_id] for r in kept} for cell, cell_met in data.met.items()}
    logger.info(f"{reason}: removed {len(dropped)} of {data.n_regions} regions ({n_cpgs} CpGs)")
    counts = {f"{reason.replace(' ', '_')}_regions": len(dropped), f"{reason.replace(' ', '_')}_cpgs": n_cpgs}
    return data._derive(met, regions=kept, **counts)


def filter_regions_across_cells(data, min_cell_cov_prcg=0.5):
    """Keep regions covered in at least this fraction of cells."""
    if not 0 <= min_cell_cov_prcg <= 1:
        raise ValueError("min_cell_cov_prcg must lie in [0, 1]")
    coverage = data.coverage_matrix()
    covered_fraction = (coverage > 0).mean(axis=0).to_numpy() if data.n_cells else np.zeros(data.n_regions)
    return _drop_regions(data, covered_fraction >= min_cell_cov_prcg, "cell coverage")


def filter_by_variability(data, min_var=0.1):
    """
    Keep regions whose mean methylation varies across cells.

    The variance is taken over the per-cell mean methylation levels of the
    cells covering the region; regions covered by fewer than two cells have
    zero variance.
    """
    keep = []
    for rid in data.region_ids:
        means = [obs[:, 1].mean() for obs in (data.met[cell][rid] for cell in data.met) if obs.shape[0]]
        variance = float(np.var(means)) if len(means) > 1 else 0.0
        keep.append(variance >= min_var)
    return _drop_regions(data, np.asarray(keep, dtype=bool), "variability")


def partition_dataset(data, region_train_prop=0.5, cpg_train_prop=0.5, random_state=0):
    """
    Split observations into training and held-out test data.

    For each cell, ``region_train_prop`` of its covered regions stay entirely
    in the training set. In the remaining regions ``cpg_train_prop`` of the
    CpGs are kept for training and the rest form the test set.

    Parameters:
    -----------
    data : RawMethylationData
        Data to split
    region_train_prop : float, default=0.5
        Fraction of covered regions per cell kept whole for training
    cpg_train_prop : float, default=0.5
        Fraction of CpGs kept for training in the other regions
    random_state : int, default=0
        Random seed

    Returns:
    --------
    RawMethylationData
        Training data
    RawMethylationData
        Test data
    """
    for name, value in (("region_train_prop", region_train_prop), ("cpg_train_prop", cpg_train_prop)):
        if not 0 <= value <= 1:
            raise ValueError(f"{name} must lie in [0, 1], got {value}")

    rng = np.random.default_rng(random_state)
    train, test = {}, {}
    n_test = 0
    for cell, cell_met in data.met.items():
        train[cell], test[cell] = {}, {}
        covered = [rid for rid, obs in cell_met.items() if obs.shape[0]]
        n_keep = int(round(region_train_prop * len(covered)))
        whole = set(rng.permutation(covered)[:n_keep].tolist()) if covered else set()
        for rid, obs in cell_met.items():
            if rid in whole or obs.shape[0] == 0:
                train[cell][rid] = obs
                continue
            order = rng.permutation(obs.shape[0])
            n_train = int(round(cpg_train_prop * obs.shape[0]))
            train[cell][rid] = obs[np.sort(order[:n_train])]
            test[cell][rid] = obs[np.sort(order[n_train:])]
            n_test += obs.shape[0] - n_train

    logger.info(f"Partitioned {data.n_observations()} CpGs: {n_test} held out for testing")
    train_data = RawMethylationData(train, data.regions, opts=data.opts, diagnostics=data.diagnostics)
    test_data = RawMethylationData(test, data.regions, opts=data.opts, diagnostics=data.diagnostics)
    return train_data, test_data
