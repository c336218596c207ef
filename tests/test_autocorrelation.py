import numpy as np
import pandas as pd
import pytest

from geodiv.eda import autocorrelation as ac
from geodiv.errors import InsufficientDataError, InvalidConfigurationError, InvalidSampleSetError

from conftest import make_samples, scattered_noise_samples


def test_neighbor_graph_is_row_standardized(clustered_samples):
    w = ac.build_neighbor_graph(clustered_samples.coords, k=5)
    assert w.transform.lower() == "r"
    for i in w.neighbors:
        assert len(w.neighbors[i]) == 5
        assert sum(w.weights[i]) == pytest.approx(1.0)


def test_geo_distance_matrix_is_symmetric_great_circle():
    coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
    dist = ac.geo_distance_matrix(coords)
    assert np.allclose(dist, dist.T)
    assert np.allclose(np.diag(dist), 0.0)
    assert dist[0, 1] == pytest.approx(111_195, rel=1e-3)


def test_dissimilarity_defaults_to_response_difference(clustered_samples):
    dis = ac.dissimilarity_matrix(clustered_samples)
    r = clustered_samples.response
    assert dis[0, 5] == pytest.approx(abs(r[0] - r[5]))
    assert np.allclose(dis, dis.T)


def test_dissimilarity_uses_bray_curtis_for_community(clustered_samples):
    n = len(clustered_samples)
    community = pd.DataFrame(np.ones((n, 3)), index=list(clustered_samples.ids), columns=["a", "b", "c"])
    community.iloc[0] = [3.0, 0.0, 0.0]
    dis = ac.dissimilarity_matrix(clustered_samples, community.iloc[::-1])
    # rows are re-aligned by id; [3,0,0] vs [1,1,1] -> |2|+1+1 / 6
    assert dis[0, 1] == pytest.approx(4.0 / 6.0)
    assert dis[1, 2] == pytest.approx(0.0)


def test_community_must_cover_every_sample(clustered_samples):
    n = len(clustered_samples)
    community = pd.DataFrame(np.ones((n, 3)), index=[f"x{i}" for i in range(n)], columns=["a", "b", "c"])
    with pytest.raises(InvalidSampleSetError, match="no rows for sample ids"):
        ac.dissimilarity_matrix(clustered_samples, community)


def test_community_array_row_count_must_match(clustered_samples):
    with pytest.raises(InvalidSampleSetError):
        ac.dissimilarity_matrix(clustered_samples, np.ones((len(clustered_samples) - 1, 3)))


def test_community_rejects_missing_abundances(clustered_samples):
    n = len(clustered_samples)
    community = pd.DataFrame(np.ones((n, 3)), index=list(clustered_samples.ids), columns=["a", "b", "c"])
    community.iloc[2, 1] = np.nan
    with pytest.raises(InvalidSampleSetError, match="NaN"):
        ac.dissimilarity_matrix(clustered_samples, community)


def test_mantel_perfect_correlation_is_significant():
    rng = np.random.default_rng(0)
    coords = rng.uniform(0, 5, size=(15, 2))
    geo = ac.geo_distance_matrix(coords)
    r, p = ac.mantel_test(geo * 2.0, geo, permutations=199, seed=1)
    assert r == pytest.approx(1.0)
    assert p == pytest.approx(1 / 200)


def test_mantel_is_reproducible_and_parallel_safe():
    rng = np.random.default_rng(1)
    a = rng.random((12, 12))
    a = a + a.T
    np.fill_diagonal(a, 0)
    b = rng.random((12, 12))
    b = b + b.T
    np.fill_diagonal(b, 0)
    first = ac.mantel_test(a, b, permutations=2500, seed=9)
    second = ac.mantel_test(a, b, permutations=2500, seed=9, n_jobs=2)
    assert first == second


def test_clustered_response_is_autocorrelated(clustered_samples):
    result = ac.detect_autocorrelation(clustered_samples, k=5, alpha=0.05, permutations=999, seed=42)
    assert result.moran_i > 0
    assert result.moran_p < 0.05
    assert result.autocorrelated


def test_independent_noise_is_rarely_flagged():
    # Both tests run at alpha, so pure noise is flagged in roughly
    # 1 - (1 - alpha)**2 (about 10%) of draws; check the rate over fixed seeds.
    flagged = [
        ac.detect_autocorrelation(scattered_noise_samples(seed), k=5, alpha=0.05, permutations=199, seed=seed)
        .autocorrelated
        for seed in range(20)
    ]
    assert sum(flagged) <= 6


def test_alternating_response_is_not_autocorrelated(alternating_transect):
    result = ac.detect_autocorrelation(alternating_transect, k=5, alpha=0.05, permutations=999, seed=42)
    assert result.moran_i < 0
    assert result.moran_p > 0.05
    assert result.mantel_p > 0.05
    assert not result.autocorrelated


@pytest.mark.parametrize("moran_p, mantel_p, expected", [
    (0.01, 0.50, True),
    (0.50, 0.01, True),
    (0.01, 0.01, True),
    (0.50, 0.50, False),
    (0.05, 0.05, False),
])
def test_flag_is_either_test_below_alpha(moran_p, mantel_p, expected):
    result = ac.AutocorrelationResult(0.0, moran_p, 0.0, mantel_p, alpha=0.05, n_neighbors=5, permutations=99)
    assert result.autocorrelated is expected


def test_too_few_samples_for_k():
    samples = make_samples([0, 1, 2, 3, 4], [0, 0, 0, 0, 0], [1, 2, 3, 4, 5], cov1=[0, 1, 2, 3, 4])
    with pytest.raises(InsufficientDataError):
        ac.detect_autocorrelation(samples, k=5, permutations=9)


@pytest.mark.parametrize("kwargs", [{"k": 0}, {"alpha": 0.0}, {"alpha": 1.5}, {"permutations": 0}])
def test_invalid_configuration(clustered_samples, kwargs):
    with pytest.raises(InvalidConfigurationError):
        ac.detect_autocorrelation(clustered_samples, **kwargs)
