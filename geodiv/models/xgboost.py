"""
Spatial XGBoost Trainer
Boosted-tree regression trained under a fixed fold assignment with
early stopping on the fold-averaged validation RMSE.

All folds advance one boosting round at a time in lockstep; each round's
fold-averaged train/validation RMSE is appended to an immutable
EvaluationLog, and the stopping decision and best round are pure functions
of that log. The deployed model is retrained on every sample with exactly
the best round count.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, List, Union

import numpy as np
import pandas as pd
import xgboost as xgb
from joblib import Parallel, delayed
from sklearn.metrics import mean_squared_error

from geodiv.cv.folds import FoldAssignment
from geodiv.errors import (
    InsufficientDataError, InvalidConfigurationError, InvalidSampleSetError, NonConvergenceError,
    FeatureMismatchError,
)
from geodiv.models.geodiv import (
    EvaluationLog, EvaluationRecord, FeatureSchema, ModelParameters, SampleSet,
)
from geodiv.utils.seeding import derive_seed

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class TrainedModel:
    """Deployed booster with its round count, hyperparameters and feature schema."""
    booster: xgb.Booster
    trained_rounds: int
    params: ModelParameters
    schema: FeatureSchema

    def _matrix(self, X: Union[pd.DataFrame, np.ndarray]) -> xgb.DMatrix:
        if isinstance(X, pd.DataFrame):
            values = self.schema.order(X).to_numpy(dtype=float)
        else:
            values = np.asarray(X, dtype=float)
            if values.ndim != 2 or values.shape[1] != len(self.schema):
                raise FeatureMismatchError(
                    f"Expected {len(self.schema)} features in schema order, got array of shape {values.shape}"
                )
        return xgb.DMatrix(values, feature_names=list(self.schema))

    def predict(self, X: Union[pd.DataFrame, np.ndarray]) -> np.ndarray:
        """Predict the response; DataFrame columns are resolved by name against the schema."""
        return self.booster.predict(self._matrix(X), iteration_range=(0, self.trained_rounds))

    def feature_importance(self, importance_type: str = "gain") -> pd.Series:
        scores = self.booster.get_score(importance_type=importance_type)
        return pd.Series({name: float(scores.get(name, 0.0)) for name in self.schema}, name=importance_type)


@dataclass(frozen=True)
class TrainingResult:
    """Output of a cross-validated training run."""
    model: TrainedModel
    log: EvaluationLog
    best_iteration: int
    stopped_round: int
    fold_scores: Tuple[float, ...]


class _FoldState:
    """Working booster for one fold; lives only inside a training run."""

    def __init__(self, fold: int, X: np.ndarray, y: np.ndarray, train_idx: np.ndarray,
                 valid_idx: np.ndarray, params: dict, feature_names: List[str]):
        self.fold = fold
        self.y_train = y[train_idx]
        self.y_valid = y[valid_idx]
        self.dtrain = xgb.DMatrix(X[train_idx], label=self.y_train, feature_names=feature_names)
        self.dvalid = xgb.DMatrix(X[valid_idx], label=self.y_valid, feature_names=feature_names)
        self.booster = xgb.Booster(params, [self.dtrain, self.dvalid])

    def advance(self, iteration: int) -> Tuple[float, float]:
        self.booster.update(self.dtrain, iteration)
        train_rmse = np.sqrt(mean_squared_error(self.y_train, self.booster.predict(self.dtrain)))
        valid_rmse = np.sqrt(mean_squared_error(self.y_valid, self.booster.predict(self.dvalid)))
        return float(train_rmse), float(valid_rmse)


def best_iteration(log: EvaluationLog) -> Optional[int]:
    """Round with the minimal aggregated validation metric (first one on ties)."""
    best = log.best_record()
    return None if best is None else best.round


def should_stop(log: EvaluationLog, early_stopping_rounds: int) -> bool:
    """True once ``early_stopping_rounds`` rounds have passed without improving on the best."""
    best = log.best_record()
    if best is None:
        return False
    return log[-1].round - best.round >= early_stopping_rounds


class SpatialXGBoostTrainer:
    """
    Cross-validated XGBoost regressor with early stopping.

    Parameters
    ----------
    params : ModelParameters
        Learning rate, depth and subsampling ratios
    max_rounds : int
        Upper bound on boosting rounds
    early_stopping_rounds : int
        Rounds without improvement before stopping
    min_samples : int
        Smallest sample count accepted for training
    seed : int
        Root seed; per-fold and final-model seeds are derived from it
    n_jobs : int
        joblib threads used to advance folds in parallel
    nthread : int, optional
        xgboost threads per booster
    """

    def __init__(self, params: Optional[ModelParameters] = None, max_rounds: int = 1000,
                 early_stopping_rounds: int = 20, min_samples: int = 10, seed: int = 0,
                 n_jobs: int = 1, nthread: Optional[int] = None):
        if int(max_rounds) < 1:
            raise InvalidConfigurationError(f"max_rounds must be >= 1, got {max_rounds}")
        if int(early_stopping_rounds) < 1:
            raise InvalidConfigurationError(f"early_stopping_rounds must be >= 1, got {early_stopping_rounds}")
        if int(min_samples) < 2:
            raise InvalidConfigurationError(f"min_samples must be >= 2, got {min_samples}")

        self.params = params or ModelParameters()
        self.max_rounds = int(max_rounds)
        self.early_stopping_rounds = int(early_stopping_rounds)
        self.min_samples = int(min_samples)
        self.seed = int(seed)
        self.n_jobs = n_jobs
        self.nthread = nthread

    def _validate_inputs(self, X: pd.DataFrame, y: np.ndarray, folds: FoldAssignment,
                         schema: FeatureSchema) -> Tuple[np.ndarray, np.ndarray]:
        values = schema.order(X).to_numpy(dtype=float)
        y = np.asarray(y, dtype=float).ravel()

        if len(values) < self.min_samples:
            raise InsufficientDataError(f"Training needs at least {self.min_samples} samples, got {len(values)}")
        if len(y) != len(values) or len(folds) != len(values):
            raise InvalidSampleSetError(
                f"Row counts differ: X={len(values)}, y={len(y)}, folds={len(folds)}"
            )
        if not np.all(np.isfinite(values)):
            raise InvalidSampleSetError("Covariate matrix contains NaN or infinite values")
        if not np.all(np.isfinite(y)):
            raise InvalidSampleSetError("Response contains NaN or infinite values")
        return values, y

    def _map_folds(self, states: List[_FoldState], iteration: int) -> List[Tuple[float, float]]:
        if self.n_jobs == 1:
            return [state.advance(iteration) for state in states]
        return Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(state.advance)(iteration) for state in states
        )

    def fit(self, X: pd.DataFrame, y: np.ndarray, folds: FoldAssignment,
            schema: Optional[FeatureSchema] = None) -> TrainingResult:
        """
        Train under ``folds`` with early stopping, then retrain on everything.

        Parameters
        ----------
        X : pd.DataFrame
            Covariates; columns are resolved by name against ``schema``
        y : np.ndarray
            Response values
        folds : FoldAssignment
            Fold id per row
        schema : FeatureSchema, optional
            Feature order; defaults to the columns of ``X``

        Returns
        -------
        TrainingResult
        """
        schema = schema or FeatureSchema(tuple(X.columns))
        values, y = self._validate_inputs(X, y, folds, schema)
        feature_names = list(schema)

        self._log_start(len(values), folds)

        states = []
        for fold, (train_idx, valid_idx) in enumerate(folds.splits()):
            fold_params = self.params.to_xgb_params(derive_seed(self.seed, "trainer.fold", fold), self.nthread)
            states.append(_FoldState(fold, values, y, train_idx, valid_idx, fold_params, feature_names))
            logger.info(f"  Fold {fold + 1}: Train size: {len(train_idx)}, Validation size: {len(valid_idx)}")

        log = EvaluationLog()
        fold_history: List[Tuple[float, ...]] = []
        for iteration in range(self.max_rounds):
            scores = self._map_folds(states, iteration)
            fold_history.append(tuple(valid for _, valid in scores))
            record = EvaluationRecord(
                round=iteration + 1,
                train_metric=float(np.mean([train for train, _ in scores])),
                validation_metric=float(np.mean([valid for _, valid in scores])),
            )
            log = log.append(record)
            if record.round % 50 == 0:
                logger.debug(f"  Round {record.round}: train-rmse={record.train_metric:.5f} "
                             f"valid-rmse={record.validation_metric:.5f}")
            if should_stop(log, self.early_stopping_rounds):
                logger.info(f"Early stopping at round {record.round}")
                break

        best = best_iteration(log)
        stopped_round = log[-1].round
        if best <= 1:
            raise NonConvergenceError(
                f"Validation RMSE never improved past round 1 (stopped at round {stopped_round})"
            )
        best_record = log[best - 1]
        logger.info(f"Best iteration: {best} (valid-rmse={best_record.validation_metric:.5f}, "
                    f"train-rmse={best_record.train_metric:.5f})")

        model = self.retrain(values, y, best, schema)
        return TrainingResult(
            model=model,
            log=log,
            best_iteration=best,
            stopped_round=stopped_round,
            fold_scores=fold_history[best - 1],
        )

    def _log_start(self, n_samples: int, folds: FoldAssignment) -> None:
        logger.info(
            f"Training XGBoost on {n_samples} samples with {folds.n_folds} '{folds.strategy}' folds "
            f"(max_rounds={self.max_rounds}, early_stopping_rounds={self.early_stopping_rounds})"
        )

    def retrain(self, values: np.ndarray, y: np.ndarray, rounds: int, schema: FeatureSchema) -> TrainedModel:
        """Fit the deployed booster on all samples for exactly ``rounds`` rounds."""
        logger.info(f"Training final XGBoost model on full dataset for {rounds} rounds...")
        dall = xgb.DMatrix(values, label=y, feature_names=list(schema))
        params = self.params.to_xgb_params(derive_seed(self.seed, "trainer.final"), self.nthread)
        booster = xgb.train(params, dall, num_boost_round=rounds)
        logger.info("Final XGBoost model training complete.")
        return TrainedModel(booster=booster, trained_rounds=rounds, params=self.params, schema=schema)


def train_model(samples: SampleSet, folds: FoldAssignment, params: Optional[ModelParameters] = None,
                **kwargs) -> TrainingResult:
    """Train on a SampleSet using its own feature schema."""
    trainer = SpatialXGBoostTrainer(params=params, **kwargs)
    return trainer.fit(samples.X, samples.response, folds, schema=samples.schema)
