"""Tests for the data objects, filters and partitioning."""

import json
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from melissa.basis import RBFBasis, RegionConfig
from melissa.data import (
    EncodedRegionData,
    MelissaModel,
    RawMethylationData,
    filter_by_cpg_coverage,
    filter_by_variability,
    filter_regions_across_cells,
    partition_dataset,
)
from melissa.exceptions import InvalidConfigError
from melissa.optimizer import fit_melissa


def test_raw_data_shapes(two_pattern_data):
    assert two_pattern_data.n_cells == 4
    assert two_pattern_data.n_regions == 3
    assert two_pattern_data.n_observations() == 4 * 3 * 40
    coverage = two_pattern_data.coverage_matrix()
    assert coverage.shape == (4, 3)
    assert (coverage.to_numpy() == 40).all()


def test_raw_data_validation(regions):
    with pytest.raises(ValueError):
        RawMethylationData({"c": {"unknown": np.zeros((1, 2))}}, regions)
    with pytest.raises(InvalidConfigError):
        RawMethylationData({}, [regions[0], regions[0]])
    with pytest.raises(ValueError):
        RawMethylationData({"c": {"region0": np.zeros((3, 3))}}, regions)


def test_missing_regions_are_empty(regions):
    data = RawMethylationData({"c": {"region1": [[0.0, 1.0]]}}, regions)
    assert data.met["c"]["region0"].shape == (0, 2)
    assert data.met["c"]["region1"].shape == (1, 2)


def test_frame_conversion(two_pattern_data, regions):
    """Test the long-format table keeps every observation."""
    frame = two_pattern_data.to_frame()
    assert list(frame.columns) == ["cell", "region", "position", "label"]
    assert len(frame) == two_pattern_data.n_observations()

    extra = pd.DataFrame([["cell_0_0", "elsewhere", 0.0, 1]], columns=frame.columns)
    rebuilt = RawMethylationData.from_frame(pd.concat([frame, extra]), regions, cell_names=["lonely"])
    assert rebuilt.diagnostics["unknown_region_rows"] == 1
    assert rebuilt.n_observations() == two_pattern_data.n_observations()
    assert "lonely" in rebuilt.cell_names
    np.testing.assert_allclose(rebuilt.met["cell_1_0"]["region2"], two_pattern_data.met["cell_1_0"]["region2"])

    with pytest.raises(ValueError):
        RawMethylationData.from_frame(frame.drop(columns="label"), regions)


def test_encode_stacks(two_pattern_data):
    encoded = two_pattern_data.encode(n_jobs=1)
    assert isinstance(encoded, EncodedRegionData)
    assert encoded.n_obs == two_pattern_data.n_observations()
    assert encoded.n_dropped == 0

    design, labels, cell_idx = encoded.region_stack(1)
    assert design.shape == (160, 3)
    assert labels.shape == (160,)
    np.testing.assert_array_equal(np.bincount(cell_idx), [40, 40, 40, 40])


def test_encode_parallel_matches_sequential(two_pattern_data):
    sequential = two_pattern_data.encode(n_jobs=1)
    parallel = two_pattern_data.encode(n_jobs=2)
    for r in range(sequential.n_regions):
        for a, b in zip(sequential.region_stack(r), parallel.region_stack(r)):
            np.testing.assert_array_equal(a, b)


def test_encode_counts_dropped(regions):
    data = RawMethylationData({"c": {"region0": [[0.0, 1.0], [5000.0, 1.0], [10.0, 0.3]]}}, regions)
    encoded = data.encode(n_jobs=1)
    assert encoded.n_obs == 1
    assert encoded.n_dropped == 2


def test_filter_by_cpg_coverage(regions):
    data = RawMethylationData({
        "a": {"region0": [[0.0, 1.0]] * 2, "region1": [[0.0, 1.0]] * 5},
        "b": {"region0": [[0.0, 0.0]] * 6},
    }, regions)
    filtered = filter_by_cpg_coverage(data, min_cpgcov=3)

    assert filtered.met["a"]["region0"].shape[0] == 0
    assert filtered.met["a"]["region1"].shape[0] == 5
    assert filtered.met["b"]["region0"].shape[0] == 6
    assert filtered.diagnostics["coverage_filtered_regions"] == 1
    assert filtered.diagnostics["coverage_filtered_cpgs"] == 2


def test_filter_regions_across_cells(regions):
    data = RawMethylationData({
        "a": {"region0": [[0.0, 1.0]], "region1": [[0.0, 1.0]]},
        "b": {"region0": [[0.0, 0.0]]},
        "c": {"region0": [[0.0, 0.0]]},
    }, regions)
    filtered = filter_regions_across_cells(data, min_cell_cov_prcg=0.5)

    assert filtered.region_ids == ["region0"]
    assert filtered.diagnostics["cell_coverage_regions"] == 2
    assert filtered.diagnostics["cell_coverage_cpgs"] == 1
    with pytest.raises(ValueError):
        filter_regions_across_cells(data, min_cell_cov_prcg=1.5)


def test_filter_by_variability(regions):
    data = RawMethylationData({
        "a": {"region0": [[0.0, 1.0]], "region1": [[0.0, 1.0]], "region2": [[0.0, 1.0]]},
        "b": {"region0": [[0.0, 0.0]], "region1": [[0.0, 1.0]]},
    }, regions)
    filtered = filter_by_variability(data, min_var=0.1)
    assert filtered.region_ids == ["region0"]
    assert filtered.diagnostics["variability_regions"] == 2


def test_partition_dataset(two_pattern_data):
    """Test that partitioning neither loses nor duplicates observations."""
    train, test = partition_dataset(two_pattern_data, region_train_prop=0.5, cpg_train_prop=0.5,
                                    random_state=1)
    assert train.n_observations() + test.n_observations() == two_pattern_data.n_observations()
    assert test.n_observations() > 0

    for cell in two_pattern_data.cell_names:
        for rid in two_pattern_data.region_ids:
            merged = np.vstack([train.met[cell][rid], test.met[cell][rid]])
            original = two_pattern_data.met[cell][rid]
            np.testing.assert_allclose(np.sort(merged[:, 0]), np.sort(original[:, 0]))

    again, _ = partition_dataset(two_pattern_data, random_state=1)
    for cell in train.cell_names:
        for rid in train.region_ids:
            np.testing.assert_array_equal(again.met[cell][rid], train.met[cell][rid])


def test_partition_all_training(two_pattern_data):
    train, test = partition_dataset(two_pattern_data, region_train_prop=1.0)
    assert test.n_observations() == 0
    with pytest.raises(ValueError):
        partition_dataset(two_pattern_data, cpg_train_prop=-0.1)


def test_model_is_read_only(fitted_model):
    with pytest.raises(ValueError):
        fitted_model.responsibilities[0, 0] = 0.5
    with pytest.raises(ValueError):
        fitted_model.prototypes[0][0, 0] = 1.0
    with pytest.raises(AttributeError):
        fitted_model.log_likelihood = 0.0


def test_model_lookup(fitted_model):
    assert fitted_model.cell_index("cell_1_0") == 2
    assert fitted_model.cell_index(3) == 3
    assert fitted_model.region_index("region2") == 2
    with pytest.raises(KeyError):
        fitted_model.cell_index("nobody")
    with pytest.raises(KeyError):
        fitted_model.region_index(7)

    frame = fitted_model.responsibilities_frame()
    assert list(frame.columns) == ["cluster_0", "cluster_1", "cluster"]
    assert list(frame.index) == list(fitted_model.cell_names)


def test_model_json(fitted_model, tmp_path):
    """Test that a saved model loads back with the same parameters."""
    path = tmp_path / "model.json"
    fitted_model.save_json(path)
    with open(path) as fh:
        payload = json.load(fh)
    assert payload["diagnostics"]["n_iter"] == fitted_model.n_iter

    loaded = MelissaModel.load_json(path)
    assert loaded.cell_names == fitted_model.cell_names
    assert loaded.regions == fitted_model.regions
    np.testing.assert_allclose(loaded.responsibilities, fitted_model.responsibilities)
    assert loaded.predict_rate(0, "region0", 100.0) == pytest.approx(fitted_model.predict_rate(0, 0, 100.0))


def test_model_json_keeps_rbf_basis():
    region = RegionConfig(region_id="r", basis=RBFBasis(dim=3, gamma=2.0), strand="-", centre=100.0)
    model = MelissaModel(
        regions=[region],
        cell_names=["c"],
        prototypes=[np.zeros((1, 3))],
        weights=np.ones(1),
        responsibilities=np.ones((1, 1)),
        log_likelihood=-1.0,
    )
    loaded = MelissaModel.from_dict(model.to_dict())
    assert loaded.regions[0] == region


def test_model_shape_validation():
    region = RegionConfig(region_id="r", basis=RBFBasis(dim=3))
    with pytest.raises(ValueError):
        MelissaModel(
            regions=[region],
            cell_names=["a", "b"],
            prototypes=[np.zeros((1, 3))],
            weights=np.ones(1),
            responsibilities=np.ones((1, 1)),
            log_likelihood=0.0,
        )


@pytest.mark.parametrize("prototypes,weights,responsibilities", [
    ([np.zeros((1, 2))], np.ones(1), np.ones((1, 1))),
    ([np.zeros((1, 3)), np.zeros((1, 3))], np.ones(1), np.ones((1, 1))),
    ([np.zeros((2, 3))], np.array([0.5, 0.5]), np.array([[0.5, 0.2]])),
    ([np.zeros((2, 3))], np.array([0.7, 0.7]), np.array([[0.5, 0.5]])),
])
def test_model_rejects_inconsistent_parameters(prototypes, weights, responsibilities):
    """Test that a model cannot hold parameters no fit could produce."""
    region = RegionConfig(region_id="r", basis=RBFBasis(dim=3))
    with pytest.raises(ValueError):
        MelissaModel(
            regions=[region],
            cell_names=["a"],
            prototypes=prototypes,
            weights=weights,
            responsibilities=responsibilities,
            log_likelihood=0.0,
        )


def test_model_keeps_its_own_options(two_pattern_data, fast_opts):
    """Test that changing the caller's options leaves the fitted model alone."""
    opts = replace(fast_opts)
    model = fit_melissa(two_pattern_data, opts)
    opts.n_clusters = 7
    opts.ridge = 5.0

    assert model.opts is not opts
    assert model.opts.n_clusters == 2
    assert model.opts.ridge == fast_opts.ridge
