import numpy as np
import pandas as pd
import pytest

from geodiv.cv.folds import RandomStrategy
from geodiv.models.geodiv import ModelParameters, SampleSet
from geodiv.models.xgboost import SpatialXGBoostTrainer


def make_samples(lon, lat, response, **covariates) -> SampleSet:
    frame = pd.DataFrame({"site": [f"s{i:03d}" for i in range(len(lon))], "lon": lon, "lat": lat, "shannon": response})
    for name, values in covariates.items():
        frame[name] = values
    return SampleSet.from_frame(frame, "site", ["lon", "lat"], "shannon", list(covariates))


def clustered_frame(n_per_cluster=4, seed=7) -> pd.DataFrame:
    """Five tight clusters ~2 degrees of longitude apart; response tracks cov1."""
    rng = np.random.default_rng(seed)
    rows = []
    for c, center in enumerate([10.0, 12.0, 14.0, 16.0, 18.0]):
        for j in range(n_per_cluster):
            cov1 = c + rng.uniform(0, 0.5)
            rows.append({
                "site": f"c{c}_{j}",
                "lon": center + rng.uniform(-0.01, 0.01),
                "lat": 45.0 + rng.uniform(-0.01, 0.01),
                "cov1": cov1,
                "cov2": rng.normal(),
                "shannon": 3.0 * cov1 + rng.normal(0, 0.05),
            })
    return pd.DataFrame(rows)


@pytest.fixture
def clustered_samples() -> SampleSet:
    frame = clustered_frame()
    return SampleSet.from_frame(frame, "site", ["lon", "lat"], "shannon", ["cov1", "cov2"])


def scattered_noise_samples(seed, n=30) -> SampleSet:
    """Uniformly scattered sites whose response is independent normal noise."""
    rng = np.random.default_rng(seed)
    return make_samples(
        rng.uniform(0, 5, n), rng.uniform(40, 45, n), rng.normal(size=n), cov1=rng.normal(size=n),
    )


@pytest.fixture
def alternating_transect() -> SampleSet:
    """Samples along a transect whose response alternates between neighbours."""
    n = 20
    lon = np.arange(n) * 0.5
    lat = np.zeros(n)
    response = (np.arange(n) % 2).astype(float)
    return make_samples(lon, lat, response, cov1=np.linspace(0, 1, n))


@pytest.fixture
def linear_samples() -> SampleSet:
    """Response = 2 * cov1 + small noise on scattered sites."""
    rng = np.random.default_rng(11)
    n = 200
    cov1 = rng.uniform(0, 1, n)
    return make_samples(
        rng.uniform(-5, 5, n), rng.uniform(40, 50, n), 2.0 * cov1 + rng.normal(0, 0.01, n),
        cov1=cov1, cov2=rng.normal(size=n),
    )


@pytest.fixture
def fast_params() -> ModelParameters:
    return ModelParameters(learning_rate=0.3, max_depth=3, subsample=1.0, colsample_bytree=1.0)


@pytest.fixture
def trained(linear_samples, fast_params):
    folds = RandomStrategy(n_folds=5, seed=3).generate(linear_samples)
    trainer = SpatialXGBoostTrainer(params=fast_params, max_rounds=200, early_stopping_rounds=10, seed=3)
    return trainer.fit(linear_samples.X, linear_samples.response, folds, schema=linear_samples.schema)
