"""
Spatial Predictor
Projects a trained model onto every valid cell of a covariate grid.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds
from scipy.stats import pearsonr

from geodiv.errors import FeatureMismatchError
from geodiv.models.xgboost import TrainedModel
from geodiv.preprocessing.grid import CovariateGrid, write_raster

logger = logging.getLogger(__name__)

DEFAULT_NODATA = -9999.0


@dataclass(frozen=True, eq=False)
class PredictionSurface:
    """Predicted response on the covariate grid; cells outside ``mask`` hold ``nodata``."""
    values: np.ndarray
    mask: np.ndarray
    transform: Affine
    crs: Optional[object]
    nodata: float = DEFAULT_NODATA
    driver_layer: Optional[str] = None
    driver_correlation: Optional[float] = None

    @property
    def valid(self) -> np.ndarray:
        return self.mask

    def to_geotiff(self, path: Union[str, Path]) -> Path:
        return write_raster(path, self.values, self.transform, self.crs, nodata=self.nodata)


def _check_grid(model: TrainedModel, grid: CovariateGrid, mask: np.ndarray,
                expected_transform: Optional[Affine], expected_shape: Optional[Tuple[int, int]]) -> None:
    missing = [name for name in model.schema if name not in grid.layers]
    if missing:
        raise FeatureMismatchError(
            f"Covariate grid is missing required layers {missing}. Available layers: {list(grid.names)}"
        )
    if len(set(grid.names)) != len(grid.names):
        raise FeatureMismatchError(f"Cannot resolve duplicated grid layers: {list(grid.names)}")

    shape = grid.shape
    if np.shape(mask) != shape:
        raise FeatureMismatchError(f"Validity mask shape {np.shape(mask)} does not match grid shape {shape}")
    if expected_shape is not None and tuple(expected_shape) != shape:
        raise FeatureMismatchError(f"Grid extent {shape} does not match expected {tuple(expected_shape)}")
    if expected_transform is not None and not grid.transform.almost_equals(expected_transform):
        raise FeatureMismatchError(
            f"Grid resolution/origin {grid.transform} does not match expected {expected_transform}"
        )


def check_grid_coverage(grid: CovariateGrid, coords: np.ndarray, crs="EPSG:4326") -> int:
    """
    Check that the grid shares the sample CRS and overlaps the samples.

    Parameters
    ----------
    grid : CovariateGrid
        Covariate grid to predict on
    coords : np.ndarray
        Sample coordinates as (x, y) columns in ``crs``
    crs : Any
        Coordinate reference system of the sample coordinates

    Returns
    -------
    int
        Number of samples falling inside the grid bounds
    """
    sample_crs = CRS.from_user_input(crs)
    if grid.crs is None:
        raise FeatureMismatchError(f"Covariate grid has no CRS; samples are in {sample_crs.to_string()}")
    if CRS.from_user_input(grid.crs) != sample_crs:
        raise FeatureMismatchError(
            f"Covariate grid CRS {CRS.from_user_input(grid.crs).to_string()} does not match "
            f"sample CRS {sample_crs.to_string()}"
        )

    height, width = grid.shape
    west, south, east, north = array_bounds(height, width, grid.transform)
    coords = np.asarray(coords, dtype=float)
    inside = ((coords[:, 0] >= west) & (coords[:, 0] <= east)
              & (coords[:, 1] >= south) & (coords[:, 1] <= north))
    n_inside = int(inside.sum())
    if n_inside == 0:
        raise FeatureMismatchError(
            f"No sample falls inside the grid bounds ({west}, {south}, {east}, {north})"
        )
    if n_inside < len(coords):
        logger.warning(f"{len(coords) - n_inside} of {len(coords)} samples lie outside the prediction grid")
    return n_inside


def driver_correlation(values: np.ndarray, driver: np.ndarray, valid: np.ndarray) -> Optional[float]:
    """Pearson r between the surface and a driver layer over valid cells."""
    x, y = values[valid], np.asarray(driver)[valid]
    finite = np.isfinite(y)
    x, y = x[finite], y[finite]
    if len(x) < 3 or np.std(x) == 0 or np.std(y) == 0:
        return None
    return float(pearsonr(x, y)[0])


def predict_surface(model: TrainedModel, grid: CovariateGrid, mask: Optional[np.ndarray] = None,
                    nodata: float = DEFAULT_NODATA, driver_layer: Optional[str] = None,
                    expected_transform: Optional[Affine] = None,
                    expected_shape: Optional[Tuple[int, int]] = None) -> PredictionSurface:
    """
    Predict the response for every valid grid cell.

    Parameters
    ----------
    model : TrainedModel
        Deployed model; its schema fixes which layers are read and in what order
    grid : CovariateGrid
        Named covariate layers
    mask : np.ndarray, optional
        Boolean validity mask; defaults to cells where every layer is finite
    nodata : float
        Sentinel written to invalid cells
    driver_layer : str, optional
        Layer to correlate with the surface as an advisory check
    expected_transform, expected_shape : optional
        Reference resolution/extent the grid must match

    Returns
    -------
    PredictionSurface
    """
    if mask is None:
        mask = grid.finite_mask()
    mask = np.asarray(mask, dtype=bool)
    _check_grid(model, grid, mask, expected_transform, expected_shape)
    if driver_layer is not None and driver_layer not in grid.layers:
        raise FeatureMismatchError(f"Driver layer '{driver_layer}' is not in the covariate grid")

    stack = np.stack([np.asarray(grid.layers[name], dtype=float) for name in model.schema], axis=-1)
    finite = np.all(np.isfinite(stack), axis=-1)
    valid = mask & finite
    dropped = int((mask & ~finite).sum())
    if dropped:
        logger.warning(f"{dropped} masked-valid cells have missing covariates and are set to nodata")

    values = np.full(mask.shape, nodata, dtype="float64")
    n_valid = int(valid.sum())
    logger.info(f"Predicting {n_valid} of {valid.size} grid cells with {len(model.schema)} covariates")
    if n_valid:
        values[valid] = model.predict(stack[valid])

    corr = None
    if driver_layer is not None:
        corr = driver_correlation(values, grid.layers[driver_layer], valid)
        if corr is None:
            logger.warning(f"Correlation with driver layer '{driver_layer}' is undefined")
        else:
            logger.info(f"Correlation between surface and driver layer '{driver_layer}': {corr:.4f}")

    return PredictionSurface(
        values=values, mask=valid, transform=grid.transform, crs=grid.crs, nodata=nodata,
        driver_layer=driver_layer, driver_correlation=corr,
    )
