"""
Geodiv core types and base model
Samples, feature schema, model parameters and the evaluation log, plus the
config-driven SpatialModel base class that loads YAML and sets up logging.
"""
import yaml
import logging
from pathlib import Path
from typing import Optional, Tuple, Dict, Any, Union, List, Iterator, Sequence
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from geodiv.errors import (
    FeatureMismatchError, InvalidConfigurationError, InvalidSampleSetError,
    InsufficientDataError,
)


@dataclass(frozen=True)
class Sample:
    """A single survey site."""
    id: Any
    lon: float
    lat: float
    response: float
    covariates: Dict[str, float]


@dataclass(frozen=True)
class FeatureSchema:
    """Ordered, named covariate schema shared by training and prediction."""
    names: Tuple[str, ...]

    def __post_init__(self):
        names = tuple(str(n) for n in self.names)
        if not names:
            raise FeatureMismatchError("Feature schema must name at least one covariate")
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise FeatureMismatchError(f"Feature schema has duplicate names: {duplicates}")
        object.__setattr__(self, 'names', names)

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def order(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Return ``frame`` restricted to the schema columns in schema order."""
        missing = [n for n in self.names if n not in frame.columns]
        if missing:
            raise FeatureMismatchError(
                f"Columns {missing} required by the feature schema are missing. "
                f"Available columns: {list(frame.columns)}"
            )
        if frame.columns.duplicated().any():
            dupes = list(frame.columns[frame.columns.duplicated()])
            raise FeatureMismatchError(f"Cannot resolve duplicated columns {dupes} against the schema")
        return frame.loc[:, list(self.names)]


@dataclass(frozen=True, eq=False)
class SampleSet:
    """
    Read-only, ordered collection of samples.

    Invariants: non-empty, unique ids, no missing coordinates, responses or covariates.
    """
    ids: Tuple[Any, ...]
    coords: np.ndarray
    response: np.ndarray
    X: pd.DataFrame
    schema: FeatureSchema

    def __post_init__(self):
        n = len(self.ids)
        if n == 0:
            raise InsufficientDataError("SampleSet must contain at least one sample")
        if len(set(self.ids)) != n:
            raise InvalidSampleSetError("Sample ids must be unique")
        if self.coords.shape != (n, 2) or self.response.shape != (n,) or len(self.X) != n:
            raise InvalidSampleSetError(
                f"Inconsistent SampleSet shapes: ids={n}, coords={self.coords.shape}, "
                f"response={self.response.shape}, X={self.X.shape}"
            )
        if not np.all(np.isfinite(self.coords)):
            raise InvalidSampleSetError("Coordinates contain NaN or infinite values")
        if not np.all(np.isfinite(self.response)):
            raise InvalidSampleSetError("Response contains NaN or infinite values")
        if self.X.isna().any().any():
            bad = list(self.X.columns[self.X.isna().any()])
            raise InvalidSampleSetError(f"Covariates {bad} contain missing values")
        self.coords.setflags(write=False)
        self.response.setflags(write=False)

    @classmethod
    def from_frame(cls, df: pd.DataFrame, id_field: str, coord_cols: Sequence[str],
                   target: str, predictors: Sequence[str]) -> "SampleSet":
        """Build a SampleSet from a sample table."""
        required = [id_field] + list(coord_cols) + [target] + list(predictors)
        missing = [col for col in required if col not in df.columns]
        if missing:
            raise InvalidSampleSetError(f"Columns {missing} not found in sample table. Available columns: {list(df.columns)}")
        if len(coord_cols) != 2:
            raise InvalidConfigurationError(f"coord_cols must name [lon, lat], got {list(coord_cols)}")

        schema = FeatureSchema(tuple(predictors))
        X = schema.order(df).astype(float).reset_index(drop=True)
        return cls(
            ids=tuple(df[id_field].tolist()),
            coords=df[list(coord_cols)].to_numpy(dtype=float).copy(),
            response=df[target].to_numpy(dtype=float).copy(),
            X=X,
            schema=schema,
        )

    def __len__(self) -> int:
        return len(self.ids)

    def __getitem__(self, i: int) -> Sample:
        return Sample(
            id=self.ids[i],
            lon=float(self.coords[i, 0]),
            lat=float(self.coords[i, 1]),
            response=float(self.response[i]),
            covariates={name: float(self.X.iat[i, j]) for j, name in enumerate(self.schema)},
        )

    def __iter__(self) -> Iterator[Sample]:
        for i in range(len(self)):
            yield self[i]


@dataclass(frozen=True)
class ModelParameters:
    """Boosted-tree hyperparameters."""
    learning_rate: float = 0.1
    max_depth: int = 6
    subsample: float = 0.8
    colsample_bytree: float = 0.8

    def __post_init__(self):
        if not 0 < self.learning_rate <= 1:
            raise InvalidConfigurationError(f"learning_rate must be in (0, 1], got {self.learning_rate}")
        if int(self.max_depth) < 1:
            raise InvalidConfigurationError(f"max_depth must be >= 1, got {self.max_depth}")
        for name in ('subsample', 'colsample_bytree'):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise InvalidConfigurationError(f"{name} must be in (0, 1], got {value}")

    @classmethod
    def from_config(cls, xgb_params: Optional[Dict[str, Any]]) -> "ModelParameters":
        xgb_params = dict(xgb_params or {})
        unknown = set(xgb_params) - {'learning_rate', 'eta', 'max_depth', 'subsample', 'colsample_bytree'}
        if unknown:
            raise InvalidConfigurationError(f"Unsupported xgb_params: {sorted(unknown)}")
        if 'eta' in xgb_params:
            xgb_params['learning_rate'] = xgb_params.pop('eta')
        return cls(**xgb_params)

    def to_xgb_params(self, seed: int, nthread: Optional[int] = None) -> Dict[str, Any]:
        params = {
            'objective': 'reg:squarederror',
            'eval_metric': 'rmse',
            'tree_method': 'hist',
            'eta': float(self.learning_rate),
            'max_depth': int(self.max_depth),
            'subsample': float(self.subsample),
            'colsample_bytree': float(self.colsample_bytree),
            'seed': int(seed),
            'verbosity': 0,
        }
        if nthread is not None:
            params['nthread'] = int(nthread)
        return params


@dataclass(frozen=True)
class EvaluationRecord:
    """Fold-averaged metrics after one boosting round (rounds are 1-based)."""
    round: int
    train_metric: float
    validation_metric: float


@dataclass(frozen=True)
class EvaluationLog:
    """Append-only sequence of evaluation records."""
    records: Tuple[EvaluationRecord, ...] = field(default_factory=tuple)

    def append(self, record: EvaluationRecord) -> "EvaluationLog":
        return EvaluationLog(self.records + (record,))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[EvaluationRecord]:
        return iter(self.records)

    def __getitem__(self, i: int) -> EvaluationRecord:
        return self.records[i]

    def best_record(self) -> Optional[EvaluationRecord]:
        """First record holding the minimal validation metric."""
        best = None
        for record in self.records:
            if best is None or record.validation_metric < best.validation_metric:
                best = record
        return best

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(r.round, r.train_metric, r.validation_metric) for r in self.records],
            columns=['round', 'train_metric', 'validation_metric'],
        )


class SpatialModel:
    """
    A base class for config-driven spatial models.

    Loads and validates the YAML configuration and sets up logging. Subclasses
    implement the actual stages.
    """
    required_sections = ['data', 'model', 'training', 'cv', 'output']
    required_data_fields = ['id_field', 'target', 'predictors', 'coord_cols']

    def __init__(self, config_path: Union[str, Path] = "config.yaml"):
        self.config: Optional[Dict] = None
        self.logger: Optional[logging.Logger] = None
        self._handlers: List[logging.Handler] = []
        self.name: Optional[str] = None

        self.feature_names: Optional[List[str]] = None
        self.target_name: Optional[str] = None
        self.coord_cols: Optional[List[str]] = None
        self.id_field: Optional[str] = None
        self.seed: int = 0

        # Initialize
        self._load_config(config_path)
        self._validate_config()
        self._setup_logging()
        self._finish_setup()

    def __del__(self):
        """Destructor to clean up resources."""
        self._close_logging()

    def _load_config(self, config_path: Union[str, Path]) -> None:
        """Load configuration from YAML file."""
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                self.config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidConfigurationError(f"Error parsing YAML configuration: {e}")

        if not isinstance(self.config, dict):
            raise InvalidConfigurationError(f"Configuration must be a mapping, got {type(self.config).__name__}")

    def _validate_config(self) -> None:
        """Validate the loaded configuration."""
        for section in self.required_sections:
            if section not in self.config:
                raise InvalidConfigurationError(f"Missing required configuration section: {section}")

        data_cfg = self.config['data']
        for data_field in self.required_data_fields:
            if data_field not in data_cfg:
                raise InvalidConfigurationError(f"Missing required data configuration field: {data_field}")

    def _setup_logging(self) -> None:
        """Set up file and console logging."""
        log_config = self.config.get('logging', {}) or {}
        log_dir = Path(log_config.get('logdir', 'logs'))
        log_dir.mkdir(parents=True, exist_ok=True)

        log_path = log_dir / log_config.get('logpath', 'geodiv.log')
        log_level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Stage modules log under the package root, so attach handlers there
        self.logger = logging.getLogger("geodiv")
        self.logger.setLevel(log_level)
        # A newer model takes over the shared logger; release the previous file handle
        for handler in self.logger.handlers[:]:
            handler.close()
            self.logger.removeHandler(handler)

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        self.logger.addHandler(file_handler)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)
        self._handlers = [file_handler, console_handler]

        self.logger.info("--- Logging initialized ---")

    def _close_logging(self) -> None:
        """Close the logging handlers this model attached."""
        handlers = getattr(self, "_handlers", None)
        if self.logger and handlers:
            if all(h in self.logger.handlers for h in handlers):
                self.logger.info("--- Closing logging ---")
            for handler in handlers:
                self.logger.removeHandler(handler)
                handler.close()
            self._handlers = []

    def _finish_setup(self) -> None:
        """Finalize setup by extracting configuration details."""
        model_cfg = self.config['model']
        data_cfg = self.config['data']

        self.name = model_cfg.get('name', 'Diversity Model')
        self.feature_names = list(data_cfg.get('predictors') or [])
        self.target_name = data_cfg.get('target')
        self.coord_cols = list(data_cfg.get('coord_cols') or [])
        self.id_field = data_cfg.get('id_field')
        self.seed = int(self.config.get('seed', 0))

        if not self.feature_names or not self.target_name or len(self.coord_cols) != 2 or not self.id_field:
            raise InvalidConfigurationError(
                "Predictors, target, two coordinate columns and the ID field must be specified in the configuration."
            )

        self.logger.info(f"Model: {self.name} initialized")

    def _validate_columns(self, df: pd.DataFrame, cols: List[str], df_name: str) -> None:
        """Validate that required columns exist in DataFrame."""
        missing = [col for col in cols if col not in df.columns]
        if missing:
            raise InvalidSampleSetError(f"Columns {missing} not found in {df_name}. Available columns: {list(df.columns)}")
