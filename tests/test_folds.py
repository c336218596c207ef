import numpy as np
import pytest

from geodiv.cv.folds import (
    FoldAssignment, RandomStrategy, SpatialBlockStrategy, assign_folds, generate_spatial_blocks,
    select_strategy,
)
from geodiv.errors import DegenerateBlockError, InsufficientDataError, InvalidConfigurationError

from conftest import make_samples


def assert_partition(folds: FoldAssignment, n_samples: int):
    assert len(folds.fold_ids) == n_samples
    assert set(np.unique(folds.fold_ids)) == set(range(folds.n_folds))
    seen = np.concatenate([valid for _, valid in folds.splits()])
    assert sorted(seen.tolist()) == list(range(n_samples))
    for train, valid in folds.splits():
        assert len(valid) > 0
        assert not set(train) & set(valid)


@pytest.mark.parametrize("n, k", [(10, 2), (11, 3), (23, 5), (50, 7), (20, 5)])
def test_random_folds_are_balanced_partitions(n, k):
    rng = np.random.default_rng(n)
    samples = make_samples(rng.uniform(0, 1, n), rng.uniform(0, 1, n), rng.normal(size=n), cov1=rng.normal(size=n))
    folds = RandomStrategy(n_folds=k, seed=5).generate(samples)
    assert_partition(folds, n)
    sizes = folds.fold_sizes()
    assert sizes.max() - sizes.min() <= 1
    assert folds.strategy == "random"


def test_random_folds_are_stratified_by_response():
    n, k = 50, 5
    response = np.arange(n, dtype=float)
    samples = make_samples(np.zeros(n) + np.arange(n) * 0.01, np.zeros(n), response, cov1=response)
    folds = RandomStrategy(n_folds=k, seed=1).generate(samples)
    # every consecutive group of k responses covers each fold once
    for start in range(0, n, k):
        assert sorted(folds.fold_ids[start:start + k].tolist()) == list(range(k))


def test_uneven_sample_count_keeps_strata_spread():
    n, k = 53, 5
    response = np.arange(n, dtype=float)[::-1]
    samples = make_samples(np.arange(n) * 0.01, np.zeros(n), response, cov1=response)
    folds = RandomStrategy(n_folds=k, seed=4).generate(samples)
    sizes = folds.fold_sizes()
    assert sizes.max() - sizes.min() <= 1
    by_response = folds.fold_ids[np.argsort(response)]
    # the first n // k - 1 strata hold exactly k samples each
    for start in range(0, (n // k - 1) * k, k):
        assert sorted(by_response[start:start + k].tolist()) == list(range(k))


def test_random_folds_are_reproducible(linear_samples):
    a = RandomStrategy(n_folds=5, seed=99).generate(linear_samples)
    b = RandomStrategy(n_folds=5, seed=99).generate(linear_samples)
    c = RandomStrategy(n_folds=5, seed=100).generate(linear_samples)
    assert np.array_equal(a.fold_ids, b.fold_ids)
    assert not np.array_equal(a.fold_ids, c.fold_ids)


def test_random_folds_need_enough_samples():
    samples = make_samples([0, 1, 2], [0, 0, 0], [1, 2, 3], cov1=[1, 2, 3])
    with pytest.raises(InsufficientDataError):
        RandomStrategy(n_folds=5).generate(samples)


def test_spatial_blocks_cover_samples_once(clustered_samples):
    blocks = generate_spatial_blocks(clustered_samples.coords, 50_000)
    indices = sorted(i for block in blocks for i in block.sample_indices)
    assert indices == list(range(len(clustered_samples)))
    assert all(block.n_samples > 0 for block in blocks)
    assert all(block.geometry.area == pytest.approx(50_000 ** 2) for block in blocks)


@pytest.mark.parametrize("selection", ["random", "systematic"])
def test_spatial_folds_keep_blocks_whole(clustered_samples, selection):
    folds = SpatialBlockStrategy(n_folds=5, block_size_m=50_000, selection=selection, seed=2).generate(clustered_samples)
    assert_partition(folds, len(clustered_samples))
    assert folds.strategy == "spatial_block"
    assert (folds.fold_sizes() > 0).sum() == 5
    for block, fold in zip(folds.blocks, folds.block_folds):
        assert set(folds.fold_ids[list(block.sample_indices)]) == {fold}
    shares = np.bincount(folds.block_folds, minlength=5)
    assert shares.max() - shares.min() <= 1


def test_systematic_selection_deals_blocks_in_order(clustered_samples):
    folds = SpatialBlockStrategy(n_folds=2, block_size_m=50_000, selection="systematic").generate(clustered_samples)
    assert list(folds.block_folds) == [i % 2 for i in range(len(folds.blocks))]


def test_spatial_folds_are_reproducible(clustered_samples):
    a = SpatialBlockStrategy(n_folds=3, seed=4).generate(clustered_samples)
    b = SpatialBlockStrategy(n_folds=3, seed=4).generate(clustered_samples)
    assert np.array_equal(a.fold_ids, b.fold_ids)
    assert a.block_folds == b.block_folds


def test_too_few_blocks_is_degenerate(clustered_samples):
    with pytest.raises(DegenerateBlockError):
        SpatialBlockStrategy(n_folds=5, block_size_m=5_000_000).generate(clustered_samples)


def test_min_fold_size_policy(clustered_samples):
    with pytest.raises(DegenerateBlockError):
        SpatialBlockStrategy(n_folds=5, min_fold_size=5).generate(clustered_samples)


@pytest.mark.parametrize("kwargs", [
    {"n_folds": 1}, {"block_size_m": 0}, {"selection": "checkerboard"}, {"min_fold_size": 0},
])
def test_invalid_spatial_configuration(kwargs):
    with pytest.raises(InvalidConfigurationError):
        SpatialBlockStrategy(**kwargs)


def test_strategy_follows_autocorrelation_flag(clustered_samples):
    assert isinstance(select_strategy(True), SpatialBlockStrategy)
    assert isinstance(select_strategy(False), RandomStrategy)
    folds = assign_folds(clustered_samples, False, n_folds=5, seed=1)
    assert folds.strategy == "random"
    assert folds.blocks is None


def test_clustered_scenario_yields_five_spatial_folds(clustered_samples):
    folds = assign_folds(clustered_samples, True, n_folds=5, block_size_m=50_000, seed=1)
    assert folds.strategy == "spatial_block"
    assert (folds.fold_sizes() > 0).sum() == 5


def test_fold_assignment_rejects_empty_fold():
    with pytest.raises(DegenerateBlockError):
        FoldAssignment(fold_ids=np.array([0, 0, 2]), n_folds=3, strategy="random")


def test_fold_frame_lists_blocks(clustered_samples):
    folds = SpatialBlockStrategy(n_folds=5).generate(clustered_samples)
    frame = folds.to_frame(clustered_samples.ids)
    assert list(frame.columns) == ["id", "fold", "block"]
    assert len(frame) == len(clustered_samples)
