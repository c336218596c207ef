"""
Diversity Model Pipeline
Config-driven run of the full decision-and-validation pipeline:
autocorrelation detection -> fold selection -> cross-validated XGBoost
training -> overfitting diagnostics -> grid prediction.

Each stage stores its output on the model object, so when a later stage
fails the earlier results stay available for inspection and retry.
"""
import argparse
import joblib
import yaml
from pathlib import Path
from typing import Optional, Dict, Any, Union

import numpy as np
import pandas as pd
from rasterio.transform import Affine

from geodiv.cv.folds import FoldAssignment, assign_folds
from geodiv.eda.autocorrelation import AutocorrelationResult, detect_autocorrelation
from geodiv.errors import GeodivError, InvalidConfigurationError
from geodiv.models.diagnostics import DiagnosticsRecord, diagnose
from geodiv.models.geodiv import SpatialModel, SampleSet, ModelParameters, EvaluationLog
from geodiv.models.xgboost import SpatialXGBoostTrainer, TrainingResult
from geodiv.prediction.surface import PredictionSurface, check_grid_coverage, predict_surface, DEFAULT_NODATA
from geodiv.preprocessing.grid import load_covariate_grid, load_validity_mask
from geodiv.utils.seeding import derive_seed


class DiversityModel(SpatialModel):
    """
    Spatially cross-validated XGBoost model of a diversity response.
    """

    def __init__(self, config_path: Union[str, Path] = "config.yaml"):
        super().__init__(config_path)

        self.samples: Optional[SampleSet] = None
        self.community: Optional[pd.DataFrame] = None
        self.autocorrelation: Optional[AutocorrelationResult] = None
        self.folds: Optional[FoldAssignment] = None
        self.training: Optional[TrainingResult] = None
        self.diagnostics: Optional[DiagnosticsRecord] = None
        self.surface: Optional[PredictionSurface] = None

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.config.get(name) or {}
        if not isinstance(section, dict):
            raise InvalidConfigurationError(f"Configuration section '{name}' must be a mapping")
        return section

    def load_samples(self, samples_path: Optional[Union[str, Path]] = None,
                     community_path: Optional[Union[str, Path]] = None) -> SampleSet:
        """Load the sample table (and optional community table) into a SampleSet."""
        data_cfg = self._section('data')
        datadir = Path(data_cfg.get('datadir', '.'))

        if samples_path is None:
            if 'samples_path' not in data_cfg:
                raise InvalidConfigurationError("Missing required data configuration field: samples_path")
            samples_path = datadir / data_cfg['samples_path']
        self.logger.info(f"Loading samples from {samples_path}")
        df = pd.read_csv(samples_path)
        self.logger.info(f"Loaded samples: {df.shape}")

        self.samples = SampleSet.from_frame(
            df, id_field=self.id_field, coord_cols=self.coord_cols,
            target=self.target_name, predictors=self.feature_names,
        )

        community_path = community_path or (
            datadir / data_cfg['community_path'] if data_cfg.get('community_path') else None
        )
        if community_path is not None:
            self.logger.info(f"Loading community abundances from {community_path}")
            community = pd.read_csv(community_path)
            self._validate_columns(community, [self.id_field], "community CSV")
            self.community = community.set_index(self.id_field)

        return self.samples

    def detect(self) -> AutocorrelationResult:
        if self.samples is None:
            self.load_samples()
        cfg = self._section('autocorrelation')
        self.autocorrelation = detect_autocorrelation(
            self.samples,
            k=int(cfg.get('n_neighbors', 5)),
            alpha=float(cfg.get('alpha', 0.05)),
            permutations=int(cfg.get('permutations', 9999)),
            community=self.community,
            seed=derive_seed(self.seed, "detector"),
            n_jobs=int(cfg.get('n_jobs', 1)),
        )
        return self.autocorrelation

    def select_folds(self) -> FoldAssignment:
        if self.autocorrelation is None:
            self.detect()
        cfg = self._section('cv')
        self.folds = assign_folds(
            self.samples,
            self.autocorrelation.autocorrelated,
            n_folds=int(cfg.get('n_folds', 5)),
            block_size_m=float(cfg.get('block_size_m', 50_000)),
            selection=str(cfg.get('selection', 'random')),
            seed=derive_seed(self.seed, "selector"),
            min_fold_size=int(cfg.get('min_fold_size', 1)),
        )
        return self.folds

    def fit(self) -> TrainingResult:
        if self.folds is None:
            self.select_folds()
        model_cfg = self._section('model')
        train_cfg = self._section('training')
        trainer = SpatialXGBoostTrainer(
            params=ModelParameters.from_config(model_cfg.get('xgb_params')),
            max_rounds=int(train_cfg.get('max_rounds', 1000)),
            early_stopping_rounds=int(train_cfg.get('early_stopping_rounds', 20)),
            min_samples=int(train_cfg.get('min_samples', 10)),
            seed=derive_seed(self.seed, "trainer"),
            n_jobs=int(train_cfg.get('n_jobs', 1)),
            nthread=train_cfg.get('nthread'),
        )
        self.training = trainer.fit(self.samples.X, self.samples.response, self.folds, schema=self.samples.schema)
        return self.training

    def diagnose(self) -> DiagnosticsRecord:
        log = self.training.log if self.training is not None else None
        cfg = self._section('diagnostics')
        threshold = float(cfg.get('gap_threshold', 0.1))
        if threshold < 0:
            raise InvalidConfigurationError(f"gap_threshold must be >= 0, got {threshold}")
        self.diagnostics = diagnose(log if log is not None else EvaluationLog(), gap_threshold=threshold)
        self.logger.info(f"Diagnostics: {self.diagnostics.to_dict()}")
        return self.diagnostics

    def predict_surface(self) -> Optional[PredictionSurface]:
        """Predict onto the configured covariate grid; returns None when no grid is configured."""
        if self.training is None:
            raise InvalidConfigurationError("No trained model available. Call fit() first.")
        cfg = self._section('prediction')
        source = cfg.get('layer_paths') or cfg.get('grid_path')
        if not source:
            self.logger.info("No prediction grid configured; skipping surface prediction")
            return None

        expected_transform = cfg.get('expected_transform')
        if expected_transform is not None:
            if len(expected_transform) != 6:
                raise InvalidConfigurationError(
                    f"expected_transform must list six affine coefficients, got {expected_transform}"
                )
            expected_transform = Affine(*[float(c) for c in expected_transform])
        expected_shape = cfg.get('expected_shape')
        if expected_shape is not None:
            expected_shape = tuple(int(s) for s in expected_shape)

        grid = load_covariate_grid(source)
        check_grid_coverage(grid, self.samples.coords, crs=self._section('data').get('crs', 'EPSG:4326'))
        mask = load_validity_mask(cfg['mask_path'], grid) if cfg.get('mask_path') else None
        self.surface = predict_surface(
            self.training.model, grid, mask=mask,
            nodata=float(cfg.get('nodata', DEFAULT_NODATA)),
            driver_layer=cfg.get('driver_layer'),
            expected_transform=expected_transform,
            expected_shape=expected_shape,
        )
        return self.surface

    def run(self) -> Dict[str, Any]:
        """Run every stage; failures are logged and re-raised with earlier outputs kept."""
        try:
            self.load_samples()
            self.detect()
            self.select_folds()
            self.fit()
            self.diagnose()
            self.predict_surface()
        except GeodivError as e:
            self.logger.error(f"Pipeline aborted: {e.__class__.__name__}: {e}")
            raise

        return {
            'autocorrelation': self.autocorrelation,
            'folds': self.folds,
            'training': self.training,
            'diagnostics': self.diagnostics,
            'surface': self.surface,
        }

    def save(self, output_dir: Optional[Union[str, Path]] = None) -> Dict[str, str]:
        """
        Save the trained model and associated artifacts.

        Parameters
        ----------
        output_dir : Optional[str]
            Directory to save model artifacts

        Returns
        -------
        Dict[str, str]
            Paths to saved artifacts
        """
        if self.training is None:
            raise InvalidConfigurationError("No trained model to save. Call fit() first.")

        out_cfg = self._section('output')
        output_dir = Path(output_dir or out_cfg.get('outdir', 'outputs'))
        output_dir.mkdir(parents=True, exist_ok=True)
        saved_paths = {}

        model_path = output_dir / out_cfg.get('model', 'geodiv_model.pkl')
        joblib.dump(self.training.model, model_path)
        saved_paths["model"] = str(model_path)
        self.logger.info(f"Trained model saved to {model_path}")

        booster_path = output_dir / 'xgboost_booster.json'
        self.training.model.booster.save_model(str(booster_path))
        saved_paths["booster"] = str(booster_path)

        log_path = output_dir / out_cfg.get('log', 'evaluation_log.csv')
        self.training.log.to_frame().to_csv(log_path, index=False)
        saved_paths["log"] = str(log_path)

        if self.folds is not None:
            folds_path = output_dir / 'fold_assignment.csv'
            self.folds.to_frame(self.samples.ids).to_csv(folds_path, index=False)
            saved_paths["folds"] = str(folds_path)

        if self.surface is not None:
            surface_path = output_dir / out_cfg.get('surface', 'prediction_surface.tif')
            self.surface.to_geotiff(surface_path)
            saved_paths["surface"] = str(surface_path)

        config_path = output_dir / 'geodiv_config.yaml'
        with open(config_path, 'w') as f:
            yaml.dump(self.config, f, default_flow_style=False)
        saved_paths["config"] = str(config_path)

        saved_paths["report"] = str(self._generate_report(output_dir))
        return saved_paths

    def _generate_report(self, output_dir: Path) -> Path:
        """Write a plain-text summary of every stage."""
        report_path = output_dir / self._section('output').get('report', 'geodiv_report.txt')
        with open(report_path, "w") as f:
            f.write("=" * 70 + "\n")
            f.write("Spatial Diversity Model Report\n")
            f.write(f"Model: {self.name}\n")
            f.write(f"Generated: {pd.Timestamp.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
            f.write("=" * 70 + "\n\n")

            f.write("DATA SUMMARY\n")
            f.write("-" * 20 + "\n")
            f.write(f"Samples: {len(self.samples)}\n")
            f.write(f"Features: {', '.join(self.samples.schema)}\n\n")

            if self.autocorrelation is not None:
                a = self.autocorrelation
                f.write("SPATIAL AUTOCORRELATION\n")
                f.write("-" * 30 + "\n")
                f.write(f"Moran's I: {a.moran_i:.4f} (p-value: {a.moran_p:.4f}, k={a.n_neighbors})\n")
                f.write(f"Mantel r: {a.mantel_r:.4f} (p-value: {a.mantel_p:.4f}, {a.permutations} permutations)\n")
                f.write(f"Autocorrelated: {a.autocorrelated} (alpha={a.alpha})\n\n")

            if self.folds is not None:
                f.write("CROSS-VALIDATION\n")
                f.write("-" * 25 + "\n")
                f.write(f"Strategy: {self.folds.strategy}\n")
                f.write(f"Fold sizes: {self.folds.fold_sizes().tolist()}\n")
                if self.folds.blocks is not None:
                    f.write(f"Spatial blocks: {len(self.folds.blocks)}\n")
                f.write("\n")

            t = self.training
            best = t.log[t.best_iteration - 1]
            f.write("TRAINING RESULTS\n")
            f.write("-" * 25 + "\n")
            f.write(f"Best Iteration: {t.best_iteration}\n")
            f.write(f"Stopped at round: {t.stopped_round}\n")
            f.write(f"Mean CV train RMSE: {best.train_metric:.4f}\n")
            f.write(f"Mean CV validation RMSE: {best.validation_metric:.4f}\n")
            f.write(f"Fold validation RMSE: {', '.join(f'{s:.4f}' for s in t.fold_scores)}\n\n")

            if self.diagnostics is not None:
                d = self.diagnostics
                f.write("OVERFITTING DIAGNOSTICS\n")
                f.write("-" * 30 + "\n")
                f.write(f"Gap at best iteration: {d.gap_at_best:.4f}\n")
                f.write(f"Gap trend (per round): {d.gap_trend:.6f}\n")
                f.write(f"Overfitting: {d.overfitting} (threshold {d.gap_threshold})\n\n")

            f.write("FEATURE IMPORTANCES (gain)\n")
            f.write("-" * 30 + "\n")
            for feature, importance in t.model.feature_importance().sort_values(ascending=False).items():
                f.write(f"{feature:30s}: {importance:.4f}\n")

            if self.surface is not None:
                f.write("\nPREDICTION SURFACE\n")
                f.write("-" * 25 + "\n")
                valid = self.surface.valid
                f.write(f"Valid cells: {int(valid.sum())} of {valid.size}\n")
                if valid.any():
                    f.write(f"Predicted range: {np.min(self.surface.values[valid]):.4f} - "
                            f"{np.max(self.surface.values[valid]):.4f}\n")
                if self.surface.driver_layer is not None:
                    corr = self.surface.driver_correlation
                    f.write(f"Correlation with '{self.surface.driver_layer}': "
                            f"{'undefined' if corr is None else f'{corr:.4f}'}\n")

        self.logger.info(f"Report saved to {report_path}")
        return report_path


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Spatially cross-validated diversity model")
    parser.add_argument("--config", default="config.yaml", help="Path to the YAML configuration")
    parser.add_argument("--output-dir", default=None, help="Override output.outdir")
    args = parser.parse_args(argv)

    model = DiversityModel(args.config)
    model.run()
    model.save(args.output_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
