"""
Spatial autocorrelation detection.

Runs two independent spatial-dependence tests on a SampleSet and combines
them into a single flag:

1.  Global Moran's I of the response over a k-nearest-neighbour graph with
    row-standardized weights, using the analytic (normal approximation)
    p-value for positive autocorrelation.
2.  A Mantel test correlating pairwise community dissimilarity with pairwise
    great-circle distance, with the p-value taken from the empirical
    distribution of correlations under joint row/column permutation.

The samples are flagged as autocorrelated when either p-value falls below alpha.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from libpysal.weights import KNN
from esda.moran import Moran
from scipy.spatial.distance import pdist, squareform
from scipy.stats import norm
from sklearn.metrics.pairwise import haversine_distances

from geodiv.errors import InsufficientDataError, InvalidConfigurationError, InvalidSampleSetError
from geodiv.models.geodiv import SampleSet
from geodiv.utils.seeding import derive_seed

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_008.8
PERMUTATION_BATCH = 1000


@dataclass(frozen=True)
class AutocorrelationResult:
    """Outcome of both spatial-dependence tests."""
    moran_i: float
    moran_p: float
    mantel_r: float
    mantel_p: float
    alpha: float
    n_neighbors: int
    permutations: int

    @property
    def autocorrelated(self) -> bool:
        return bool(self.moran_p < self.alpha or self.mantel_p < self.alpha)


def _validate(n_samples: int, k: int, alpha: float, permutations: int) -> None:
    if int(k) < 1:
        raise InvalidConfigurationError(f"Neighbour count k must be >= 1, got {k}")
    if not 0 < alpha < 1:
        raise InvalidConfigurationError(f"Significance level alpha must be in (0, 1), got {alpha}")
    if int(permutations) < 1:
        raise InvalidConfigurationError(f"Permutation count must be >= 1, got {permutations}")
    if n_samples <= k:
        raise InsufficientDataError(
            f"Autocorrelation tests need more samples than neighbours: n={n_samples}, k={k}"
        )


def build_neighbor_graph(coords: np.ndarray, k: int = 5):
    """
    Build a k-nearest-neighbour graph with row-standardized weights.

    Parameters
    ----------
    coords : np.ndarray
        (N, 2) array of lon/lat
    k : int
        Number of neighbours per sample

    Returns
    -------
    libpysal.weights.W
        Weights object with ``transform == "r"``
    """
    coords = np.asarray(coords, dtype=float)
    if len(coords) <= k:
        raise InsufficientDataError(f"Need more than k={k} samples to build a neighbour graph, got {len(coords)}")

    weights = KNN.from_array(coords, k=k)
    weights.transform = "r"

    if weights.islands:
        logger.warning(f"{len(weights.islands)} observations have no neighbors (islands). IDs: {weights.islands}")

    return weights


def morans_test(response: np.ndarray, weights) -> tuple:
    """Global Moran's I and its one-sided analytic p-value for positive autocorrelation."""
    mi = Moran(np.asarray(response, dtype=float), weights, transformation="r", permutations=0)
    moran_i = float(mi.I)
    if not np.isfinite(mi.z_norm):
        logger.warning("Moran's I is undefined for a constant response; treating as not autocorrelated")
        return moran_i, 1.0
    return moran_i, float(norm.sf(mi.z_norm))


def geo_distance_matrix(coords: np.ndarray) -> np.ndarray:
    """Pairwise great-circle distances in metres for (lon, lat) coordinates."""
    coords = np.asarray(coords, dtype=float)
    latlon = np.radians(coords[:, [1, 0]])
    dist = haversine_distances(latlon) * EARTH_RADIUS_M
    np.fill_diagonal(dist, 0.0)
    return dist


def dissimilarity_matrix(samples: SampleSet,
                         community: Optional[Union[pd.DataFrame, np.ndarray]] = None) -> np.ndarray:
    """
    Pairwise community dissimilarity matrix.

    Bray-Curtis over community abundance rows when ``community`` is given.
    A DataFrame must be indexed by sample id and cover every sample; an array
    must follow the SampleSet order. Otherwise the absolute difference of the
    response values.
    """
    if community is None:
        return squareform(pdist(samples.response.reshape(-1, 1), metric="cityblock"))

    if isinstance(community, pd.DataFrame):
        missing = [i for i in samples.ids if i not in community.index]
        if missing:
            raise InvalidSampleSetError(f"Community table has no rows for sample ids {missing}")
        if community.index.duplicated().any():
            dupes = list(community.index[community.index.duplicated()])
            raise InvalidSampleSetError(f"Community table has duplicated sample ids {dupes}")
        abundances = community.loc[list(samples.ids)].to_numpy(dtype=float)
    else:
        abundances = np.asarray(community, dtype=float)

    if abundances.ndim != 2 or abundances.shape[0] != len(samples):
        raise InvalidSampleSetError(
            f"Community matrix has shape {abundances.shape} for {len(samples)} samples"
        )
    if not np.all(np.isfinite(abundances)):
        raise InvalidSampleSetError("Community abundances contain NaN or infinite values")
    if np.any(abundances.sum(axis=1) == 0):
        logger.warning("Some samples have zero total abundance; Bray-Curtis is undefined for those pairs")

    # 0/0 only arises between two empty samples, which are identical
    dist = squareform(pdist(abundances, metric="braycurtis"))
    return np.nan_to_num(dist, nan=0.0)


def _permutation_batch(z_dis: np.ndarray, z_geo: np.ndarray, iu: tuple, n_perm: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    n = z_dis.shape[0]
    out = np.empty(n_perm)
    for i in range(n_perm):
        p = rng.permutation(n)
        out[i] = np.dot(z_dis[p[iu[0]], p[iu[1]]], z_geo)
    return out / len(z_geo)


def mantel_test(dissimilarity: np.ndarray, geo_distance: np.ndarray, permutations: int = 9999,
                seed: int = 0, n_jobs: int = 1) -> tuple:
    """
    One-sided permutation Mantel test (Pearson).

    Returns
    -------
    tuple
        (r, p) with ``p = (#{r_perm >= r_obs} + 1) / (permutations + 1)``
    """
    dissimilarity = np.asarray(dissimilarity, dtype=float)
    geo_distance = np.asarray(geo_distance, dtype=float)
    if dissimilarity.shape != geo_distance.shape or dissimilarity.shape[0] != dissimilarity.shape[1]:
        raise InvalidConfigurationError(
            f"Mantel matrices must be square and equally sized: {dissimilarity.shape} vs {geo_distance.shape}"
        )
    n = dissimilarity.shape[0]
    if n < 3:
        raise InsufficientDataError(f"Mantel test needs at least 3 samples, got {n}")

    iu = np.triu_indices(n, k=1)
    dis_v, geo_v = dissimilarity[iu], geo_distance[iu]
    if dis_v.std() == 0 or geo_v.std() == 0:
        logger.warning("Mantel correlation undefined for a constant distance matrix; treating as not significant")
        return float("nan"), 1.0

    # Joint row/column permutation keeps the multiset of off-diagonal values,
    # so both matrices can be standardized once up front
    z_dis = (dissimilarity - dis_v.mean()) / dis_v.std()
    z_geo = (geo_v - geo_v.mean()) / geo_v.std()
    r_obs = float(np.dot(z_dis[iu], z_geo) / len(z_geo))

    batches = []
    remaining, b = int(permutations), 0
    while remaining > 0:
        size = min(PERMUTATION_BATCH, remaining)
        batches.append((size, derive_seed(seed, "detector.mantel", b)))
        remaining -= size
        b += 1

    results = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_permutation_batch)(z_dis, z_geo, iu, size, batch_seed) for size, batch_seed in batches
    )
    r_perm = np.concatenate(results)
    exceed = int(np.sum(r_perm >= r_obs - 1e-12))
    return r_obs, (exceed + 1) / (len(r_perm) + 1)


def detect_autocorrelation(samples: SampleSet, k: int = 5, alpha: float = 0.05, permutations: int = 9999,
                           community: Optional[Union[pd.DataFrame, np.ndarray]] = None,
                           seed: int = 0, n_jobs: int = 1) -> AutocorrelationResult:
    """
    Run Moran's I and the Mantel test and combine them.

    Parameters
    ----------
    samples : SampleSet
        Read-only sample data
    k : int
        Neighbour count for the Moran graph
    alpha : float
        Significance level applied to both tests
    permutations : int
        Mantel permutation draws
    community : pd.DataFrame or np.ndarray, optional
        Community abundance rows for Bray-Curtis dissimilarity
    seed : int
        Root seed; Mantel draws derive their own sub-seeds from it
    n_jobs : int
        joblib workers for permutation batches

    Returns
    -------
    AutocorrelationResult
    """
    _validate(len(samples), k, alpha, permutations)
    logger.info(f"Testing spatial autocorrelation on {len(samples)} samples (k={k}, alpha={alpha})")

    weights = build_neighbor_graph(samples.coords, k=k)
    moran_i, moran_p = morans_test(samples.response, weights)
    logger.info(f"Moran's I: {moran_i:.4f} (p-value: {moran_p:.4f})")

    dis = dissimilarity_matrix(samples, community)
    geo = geo_distance_matrix(samples.coords)
    mantel_r, mantel_p = mantel_test(dis, geo, permutations=permutations, seed=seed, n_jobs=n_jobs)
    logger.info(f"Mantel r: {mantel_r:.4f} (p-value: {mantel_p:.4f}, {permutations} permutations)")

    result = AutocorrelationResult(
        moran_i=moran_i, moran_p=moran_p, mantel_r=mantel_r, mantel_p=mantel_p,
        alpha=alpha, n_neighbors=int(k), permutations=int(permutations),
    )
    logger.info(f"Spatial autocorrelation {'detected' if result.autocorrelated else 'not detected'}")
    return result
