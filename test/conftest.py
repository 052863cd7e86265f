"""Pytest configuration file for Melissa tests."""

import gzip
import os

import numpy as np
import pandas as pd
import pytest

from melissa.basis import PolynomialBasis, RegionConfig
from melissa.config import MelissaOptions
from melissa.data import RawMethylationData


def pattern_labels(positions, group):
    """Group 0 is methylated upstream of the centre, group 1 downstream."""
    if group == 0:
        return (positions < 0).astype(float)
    return (positions >= 0).astype(float)


@pytest.fixture(scope="session")
def fast_opts():
    """Small, quick options matching the synthetic regions."""
    return MelissaOptions(
        n_clusters=2,
        n_restarts=2,
        basis_type="polynomial",
        basis_dim=3,
        upstream=-1000,
        downstream=1000,
        max_iter=50,
        min_cpgcov=1,
    )


@pytest.fixture(scope="session")
def regions():
    """Three regions sharing a quadratic polynomial basis."""
    basis = PolynomialBasis(dim=3)
    return [
        RegionConfig(region_id=f"region{r}", basis=basis, upstream=-1000, downstream=1000)
        for r in range(3)
    ]


@pytest.fixture(scope="session")
def make_met():
    """Factory for two-pattern observations: cell -> region -> (n, 2) array."""
    def _make(n_per_group=2, n_regions=3, n_obs=40, flip=0.05, seed=0):
        rng = np.random.default_rng(seed)
        met, truth = {}, []
        for group in (0, 1):
            for i in range(n_per_group):
                cell = f"cell_{group}_{i}"
                met[cell] = {}
                for r in range(n_regions):
                    positions = np.sort(rng.uniform(-1000, 1000, n_obs))
                    labels = pattern_labels(positions, group)
                    flips = rng.random(n_obs) < flip
                    labels[flips] = 1.0 - labels[flips]
                    met[cell][f"region{r}"] = np.column_stack([positions, labels])
                truth.append(group)
        return met, np.array(truth)
    return _make


@pytest.fixture(scope="session")
def two_pattern_data(regions, make_met, fast_opts):
    """Four cells in two groups over three regions."""
    met, _ = make_met()
    return RawMethylationData(met, regions, opts=fast_opts)


@pytest.fixture(scope="session")
def true_groups(make_met):
    _, truth = make_met()
    return truth


@pytest.fixture(scope="session")
def fitted_model(two_pattern_data, fast_opts):
    """Model fitted once on the four-cell data."""
    from melissa.optimizer import fit_melissa
    return fit_melissa(two_pattern_data, fast_opts)


@pytest.fixture
def annotation_file(tmp_path):
    """Annotation with two regions on chr1 ('+' and '-') and one on chr2."""
    anno = pd.DataFrame([
        ["chr1", 10000, 12000, "+", "geneA", "A"],
        ["chr1", 30000, 32000, "-", "geneB", "B"],
        ["chr2", 5000, 7000, "+", "geneC", "C"],
    ])
    path = tmp_path / "anno.tsv"
    anno.to_csv(path, sep="\t", header=False, index=False)
    return str(path)


@pytest.fixture
def met_dir(tmp_path):
    """Directory of binarised cells; cell_a is methylated near geneA, cell_b is not."""
    directory = tmp_path / "binarised"
    directory.mkdir()
    rng = np.random.default_rng(1)
    positions = np.arange(9100, 10900, 100)
    for cell, label in (("cell_a", 1), ("cell_b", 0)):
        rows = [("1", int(p), label) for p in positions]
        rows += [("1", int(p), int(rng.integers(2))) for p in np.arange(31100, 31900, 100)]
        rows += [("2", 5100, 1), ("2", 5200, 0)]
        frame = pd.DataFrame(rows)
        with gzip.open(os.path.join(directory, f"{cell}.tsv.gz"), "wt") as fh:
            frame.to_csv(fh, sep="\t", header=False, index=False)
    return str(directory)
