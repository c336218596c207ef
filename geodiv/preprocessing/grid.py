"""
Covariate grid I/O.
Reads named covariate layers and validity masks with rasterio and writes
single-band GeoTIFFs.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union, Mapping

import numpy as np
import rasterio
from rasterio.transform import Affine

from geodiv.errors import FeatureMismatchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CovariateGrid:
    """
    Named covariate layers on one raster grid.

    Parameters
    ----------
    layers : Mapping[str, np.ndarray]
        Layer name -> 2-D array, all sharing ``shape``
    transform : Affine
        Pixel-to-CRS transform shared by every layer
    crs : Any
        Coordinate reference system (anything rasterio accepts)
    """
    layers: Mapping[str, np.ndarray]
    transform: Affine
    crs: Optional[object] = None

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self.layers)

    @property
    def shape(self) -> Tuple[int, int]:
        shapes = {np.shape(a) for a in self.layers.values()}
        if len(shapes) != 1:
            raise FeatureMismatchError(f"Covariate layers have differing shapes: {sorted(shapes)}")
        return shapes.pop()

    @property
    def resolution(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    def finite_mask(self) -> np.ndarray:
        """Cells where every layer holds a finite value."""
        mask = np.ones(self.shape, dtype=bool)
        for values in self.layers.values():
            mask &= np.isfinite(values)
        return mask


def _read_band(src, band: int) -> np.ndarray:
    values = src.read(band).astype("float64")
    if src.nodata is not None:
        values[values == src.nodata] = np.nan
    return values


def load_covariate_grid(source: Union[str, Path, Mapping[str, Union[str, Path]]]) -> CovariateGrid:
    """
    Read covariate layers with rasterio.

    ``source`` is either one multiband raster whose band descriptions name the
    layers, or a mapping of layer name -> single-band raster path. Every input
    must share transform, shape and CRS. Nodata cells become NaN.
    """
    layers: Dict[str, np.ndarray] = {}
    reference = None

    if isinstance(source, Mapping):
        for name, path in source.items():
            logger.info(f"Reading covariate layer '{name}' from {path}")
            with rasterio.open(path) as src:
                grid_key = (src.transform, (src.height, src.width), src.crs)
                if reference is None:
                    reference = grid_key
                elif grid_key != reference:
                    raise FeatureMismatchError(
                        f"Layer '{name}' grid {grid_key[1]} @ {grid_key[0]} does not match "
                        f"{reference[1]} @ {reference[0]}"
                    )
                layers[str(name)] = _read_band(src, 1)
    else:
        logger.info(f"Reading covariate stack from {source}")
        with rasterio.open(source) as src:
            reference = (src.transform, (src.height, src.width), src.crs)
            descriptions = list(src.descriptions)
            if any(not d for d in descriptions):
                raise FeatureMismatchError(
                    f"Cannot resolve layer names in {source}: bands without descriptions {descriptions}"
                )
            if len(set(descriptions)) != len(descriptions):
                raise FeatureMismatchError(f"Duplicate band descriptions in {source}: {descriptions}")
            for band, name in enumerate(descriptions, start=1):
                layers[name] = _read_band(src, band)

    if not layers:
        raise FeatureMismatchError(f"No covariate layers found in {source}")

    transform, shape, crs = reference
    logger.info(f"Loaded {len(layers)} covariate layers on a {shape[0]}x{shape[1]} grid")
    return CovariateGrid(layers=layers, transform=transform, crs=crs)


def load_validity_mask(path: Union[str, Path], grid: Optional[CovariateGrid] = None) -> np.ndarray:
    """Read a mask raster; non-zero, non-nodata cells are valid."""
    with rasterio.open(path) as src:
        if grid is not None and (src.transform != grid.transform or (src.height, src.width) != grid.shape):
            raise FeatureMismatchError(
                f"Validity mask grid {(src.height, src.width)} @ {src.transform} does not match the covariate grid"
            )
        values = src.read(1)
        valid = values != 0
        if src.nodata is not None:
            valid &= values != src.nodata
    return valid


def write_raster(path: Union[str, Path], values: np.ndarray, transform: Affine, crs=None,
                 nodata: Optional[float] = None) -> Path:
    """Write a single-band float32 GeoTIFF."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    meta = {
        "driver": "GTiff",
        "height": values.shape[0],
        "width": values.shape[1],
        "count": 1,
        "dtype": "float32",
        "transform": transform,
        "crs": crs,
        "nodata": nodata,
    }
    with rasterio.open(path, "w", **meta) as dest:
        dest.write(values.astype("float32"), 1)
    logger.info(f"Raster written to {path}")
    return path
