"""Module for imputing held-out CpG states from a fitted Melissa model."""

import json
import os
import time
import logging

import numpy as np
import pandas as pd
from scipy.optimize import linear_sum_assignment
from scipy.special import expit
from sklearn.metrics import (
    accuracy_score,
    adjusted_rand_score,
    f1_score,
    precision_score,
    recall_score,
    roc_auc_score,
)

from .config import MelissaOptions
from .data import FRAME_COLUMNS, MelissaModel, RawMethylationData, partition_dataset
from .exceptions import InsufficientDataError
from .optimizer import fit_melissa
from .utils import optimize_dtypes, setup_logger

logger = logging.getLogger(__name__)


def _check_model(model):
    if not isinstance(model, MelissaModel):
        raise TypeError(f"Expected a fitted MelissaModel, got {type(model).__name__}")


def _mixture_rates(model, cell_index, region_index, positions):
    design = model.regions[region_index].design(positions)
    rates = expit(design @ model.prototypes[region_index].T)
    return np.clip(rates @ model.responsibilities[cell_index], 0.0, 1.0)


def impute(model, cell, region, position):
    """
    Predicted methylation probability of a CpG in a cell.

    The prediction averages the cluster prototypes of the region, weighted by
    the cell's responsibilities.

    Parameters:
    -----------
    model : MelissaModel
        Fitted model
    cell : str or int
        Cell name or index
    region : str or int
        Region id or index
    position : float or array-like
        Offsets inside the region window

    Returns:
    --------
    float or numpy.ndarray
        Probabilities in [0, 1]
    """
    _check_model(model)
    rates = _mixture_rates(model, model.cell_index(cell), model.region_index(region), position)
    if np.ndim(position) == 0:
        return float(rates[0])
    return rates


def impute_test_met(model, test_data):
    """
    Predict every observation of a held-out data set.

    Observations outside their region window are skipped and counted.

    Parameters:
    -----------
    model : MelissaModel
        Fitted model
    test_data : RawMethylationData
        Held-out observations for cells known to the model

    Returns:
    --------
    pandas.DataFrame
        Columns 'cell', 'region', 'position', 'label' and 'prediction'
    """
    _check_model(model)
    if not isinstance(test_data, RawMethylationData):
        raise TypeError(f"Expected RawMethylationData, got {type(test_data).__name__}")

    frames, n_skipped = [], 0
    for cell, cell_met in test_data.met.items():
        n = model.cell_index(cell)
        for rid, obs in cell_met.items():
            if obs.shape[0] == 0:
                continue
            r = model.region_index(rid)
            inside = model.regions[r].contains(obs[:, 0])
            n_skipped += int(np.count_nonzero(~inside))
            obs = obs[inside]
            if obs.shape[0] == 0:
                continue
            frames.append(pd.DataFrame({
                "cell": cell,
                "region": rid,
                "position": obs[:, 0],
                "label": obs[:, 1].astype(int),
                "prediction": _mixture_rates(model, n, r, obs[:, 0]),
            }))

    if n_skipped:
        logger.warning(f"Skipped {n_skipped} held-out CpGs outside their region window")
    if not frames:
        return pd.DataFrame(columns=FRAME_COLUMNS + ["prediction"])
    predictions = pd.concat(frames, ignore_index=True)
    logger.info(f"Imputed {len(predictions)} held-out CpGs")
    return predictions


def evaluate(predictions, ground_truth, threshold=0.5):
    """
    Score imputed probabilities against the observed binary states.

    Parameters:
    -----------
    predictions : array-like
        Predicted probabilities
    ground_truth : array-like
        Observed labels (0/1)
    threshold : float, default=0.5
        Probabilities at or above this value count as methylated

    Returns:
    --------
    dict
        'auc', 'accuracy', 'f_measure', 'precision', 'recall' and 'n'
    """
    p = np.asarray(predictions, dtype=float).ravel()
    y = np.asarray(ground_truth).ravel()
    if p.shape[0] == 0:
        raise ValueError("Cannot evaluate an empty set of predictions")
    if p.shape != y.shape:
        raise ValueError(f"Got {p.shape[0]} predictions for {y.shape[0]} labels")
    if np.unique(y).size < 2:
        raise InsufficientDataError("Evaluation needs both methylated and unmethylated CpGs")

    y = y.astype(int)
    y_hat = (p >= threshold).astype(int)
    return {
        "auc": float(roc_auc_score(y, p)),
        "accuracy": float(accuracy_score(y, y_hat)),
        "f_measure": float(f1_score(y, y_hat, zero_division=0)),
        "precision": float(precision_score(y, y_hat, zero_division=0)),
        "recall": float(recall_score(y, y_hat, zero_division=0)),
        "n": int(y.shape[0]),
    }


def evaluate_clustering(true_labels, assignments):
    """
    Compare a cluster assignment with known cell types.

    The error is the fraction of cells outside the best one-to-one matching
    between true labels and clusters.

    Returns:
    --------
    dict
        'ari' (adjusted Rand index) and 'error'
    """
    true_labels = np.asarray(true_labels).ravel()
    assignments = np.asarray(assignments).ravel()
    if true_labels.shape[0] == 0:
        raise ValueError("Cannot evaluate an empty clustering")
    if true_labels.shape != assignments.shape:
        raise ValueError(f"Got {assignments.shape[0]} assignments for {true_labels.shape[0]} labels")

    contingency = pd.crosstab(true_labels, assignments).to_numpy()
    rows, cols = linear_sum_assignment(-contingency)
    matched = contingency[rows, cols].sum()
    return {
        "ari": float(adjusted_rand_score(true_labels, assignments)),
        "error": float(1.0 - matched / true_labels.shape[0]),
    }


class MelissaImputer:
    """Clusters cells and imputes held-out CpG states with Melissa."""

    def __init__(self, opts=None, region_train_prop=0.5, cpg_train_prop=0.5, threshold=0.5,
                 verbose=True):
        """
        Initialize the imputer.

        Parameters:
        -----------
        opts : MelissaOptions, optional
            Options for fitting (defaults are used if omitted)
        region_train_prop : float, default=0.5
            Fraction of covered regions per cell kept whole for training
        cpg_train_prop : float, default=0.5
            Fraction of CpGs kept for training in the remaining regions
        threshold : float, default=0.5
            Probability threshold for the binary evaluation metrics
        verbose : bool, default=True
            Whether to log detailed information
        """
        self.opts = opts if opts is not None else MelissaOptions()
        self.region_train_prop = region_train_prop
        self.cpg_train_prop = cpg_train_prop
        self.threshold = threshold
        self.model = None

        if verbose:
            setup_logger()

    def fit(self, data, warm_start=None):
        """Fit the model on (training) data and keep it on the imputer."""
        self.model = fit_melissa(data, self.opts, warm_start=warm_start)
        return self.model

    def run(self, data, output_dir=None):
        """
        Partition, fit, impute the held-out CpGs and evaluate.

        Parameters:
        -----------
        data : RawMethylationData
            All observations
        output_dir : str, optional
            Directory for the model, responsibilities, predictions and metrics

        Returns:
        --------
        dict
            'model', 'predictions' and 'metrics'
        """
        start_time = time.time()
        train, test = partition_dataset(
            data,
            region_train_prop=self.region_train_prop,
            cpg_train_prop=self.cpg_train_prop,
            random_state=self.opts.random_state,
        )

        model = self.fit(train)
        predictions = impute_test_met(model, test)
        metrics = evaluate(predictions["prediction"], predictions["label"], self.threshold)
        logger.info(
            f"Held-out AUC {metrics['auc']:.3f}, F-measure {metrics['f_measure']:.3f} "
            f"on {metrics['n']} CpGs"
        )

        if output_dir:
            self.save_outputs(output_dir, model, predictions, metrics)

        end_time = time.time()
        logger.info(f"Imputation run took {end_time - start_time:.2f} seconds")
        return {"model": model, "predictions": predictions, "metrics": metrics}

    def save_outputs(self, output_dir, model, predictions, metrics):
        os.makedirs(output_dir, exist_ok=True)
        model.save_json(os.path.join(output_dir, "model.json"))
        model.responsibilities_frame().to_csv(os.path.join(output_dir, "responsibilities.csv"))
        predictions.to_csv(os.path.join(output_dir, "predictions.csv"), index=False)
        with open(os.path.join(output_dir, "metrics.json"), "w") as fh:
            json.dump(metrics, fh, indent=2)
        logger.info(f"Saved outputs to {output_dir}")

    def impute(self, regions, input_file=None, input_df=None, output_dir=None):
        """
        Run imputation on a long-format observation table.

        Parameters:
        -----------
        regions : sequence of RegionConfig
            Region annotation the positions refer to
        input_file : str, optional
            CSV with columns 'cell', 'region', 'position' and 'label'
        input_df : pandas.DataFrame, optional
            The same table in memory (either input_file or input_df must be provided)
        output_dir : str, optional
            Directory for the outputs

        Returns:
        --------
        dict
            See ``run``
        """
        if input_file is None and input_df is None:
            raise ValueError("Either input_file or input_df must be provided")

        if input_df is None:
            if not os.path.exists(input_file):
                raise FileNotFoundError(f"Input file not found: {input_file}")
            logger.info(f"Reading methylation observations from {input_file}")
            df = optimize_dtypes(pd.read_csv(input_file))
        else:
            df = input_df.copy()

        data = RawMethylationData.from_frame(df, regions, opts=self.opts)
        logger.info(f"Loaded {data!r}")
        return self.run(data, output_dir=output_dir)
