"""
Cross-validation fold generation.

Two strategies share one ``generate(samples) -> FoldAssignment`` capability:

- SpatialBlockStrategy: tiles the sample extent with square blocks in a
  projected (UTM) CRS and deals whole blocks to folds, so a block is never
  split between training and validation.
- RandomStrategy: response-stratified random partition with fold sizes
  within one of each other.

``select_strategy`` picks between them once, from the autocorrelation flag.
"""
import logging
from dataclasses import dataclass
from typing import ClassVar, Iterator, Optional, Tuple, Union, List

import numpy as np
import pandas as pd
import geopandas as gpd
from shapely.geometry import Polygon, box
from sklearn.model_selection import StratifiedKFold

from geodiv.errors import DegenerateBlockError, InsufficientDataError, InvalidConfigurationError
from geodiv.models.geodiv import SampleSet
from geodiv.utils.seeding import derive_seed, stage_rng

logger = logging.getLogger(__name__)

SELECTION_MODES = ("random", "systematic")


@dataclass(frozen=True)
class SpatialBlock:
    """A square, geographically contiguous cell of the blocking grid."""
    block_id: int
    row: int
    col: int
    geometry: Polygon
    sample_indices: Tuple[int, ...]

    @property
    def n_samples(self) -> int:
        return len(self.sample_indices)


@dataclass(frozen=True, eq=False)
class FoldAssignment:
    """Fold id in ``[0, n_folds)`` for every sample; no fold is empty."""
    fold_ids: np.ndarray
    n_folds: int
    strategy: str
    blocks: Optional[Tuple[SpatialBlock, ...]] = None
    block_folds: Optional[Tuple[int, ...]] = None

    def __post_init__(self):
        fold_ids = np.asarray(self.fold_ids, dtype=int)
        if fold_ids.ndim != 1 or fold_ids.size == 0:
            raise InsufficientDataError("A fold assignment needs at least one sample")
        if fold_ids.min() < 0 or fold_ids.max() >= self.n_folds:
            raise InvalidConfigurationError(f"Fold ids must lie in [0, {self.n_folds})")
        empty = [f for f, c in enumerate(np.bincount(fold_ids, minlength=self.n_folds)) if c == 0]
        if empty:
            raise DegenerateBlockError(f"Folds {empty} received no samples")
        fold_ids.setflags(write=False)
        object.__setattr__(self, 'fold_ids', fold_ids)

    def __len__(self) -> int:
        return len(self.fold_ids)

    def fold_sizes(self) -> np.ndarray:
        return np.bincount(self.fold_ids, minlength=self.n_folds)

    def splits(self) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
        """Yield ``(train_idx, validation_idx)`` per fold."""
        for fold in range(self.n_folds):
            yield np.flatnonzero(self.fold_ids != fold), np.flatnonzero(self.fold_ids == fold)

    def to_frame(self, ids=None) -> pd.DataFrame:
        frame = pd.DataFrame({'fold': self.fold_ids})
        if ids is not None:
            frame.insert(0, 'id', list(ids))
        if self.blocks is not None:
            block_of = np.empty(len(self.fold_ids), dtype=int)
            for block in self.blocks:
                block_of[list(block.sample_indices)] = block.block_id
            frame['block'] = block_of
        return frame


def _validate_folds(n_folds: int) -> None:
    if int(n_folds) < 2:
        raise InvalidConfigurationError(f"Fold count must be >= 2, got {n_folds}")


def project_coords(coords: np.ndarray) -> Tuple[np.ndarray, str]:
    """Project lon/lat coordinates into the estimated UTM CRS (metres)."""
    points = gpd.GeoSeries(gpd.points_from_xy(coords[:, 0], coords[:, 1]), crs="EPSG:4326")
    utm_crs = points.estimate_utm_crs()
    projected = points.to_crs(utm_crs)
    return np.column_stack([projected.x.to_numpy(), projected.y.to_numpy()]), utm_crs.to_string()


def generate_spatial_blocks(coords: np.ndarray, block_size_m: float = 50_000.0) -> List[SpatialBlock]:
    """
    Tile the sample extent with square blocks and return the non-empty ones.

    Blocks are anchored at the lower-left corner of the projected extent and
    numbered in row-major order (south to north, west to east).
    """
    if not block_size_m > 0:
        raise InvalidConfigurationError(f"Block size must be positive, got {block_size_m}")

    xy, crs = project_coords(np.asarray(coords, dtype=float))
    xmin, ymin = xy.min(axis=0)
    cols = np.floor((xy[:, 0] - xmin) / block_size_m).astype(int)
    rows = np.floor((xy[:, 1] - ymin) / block_size_m).astype(int)

    cells = {}
    for i, (r, c) in enumerate(zip(rows, cols)):
        cells.setdefault((int(r), int(c)), []).append(i)

    blocks = []
    for block_id, (r, c) in enumerate(sorted(cells)):
        geometry = box(
            xmin + c * block_size_m, ymin + r * block_size_m,
            xmin + (c + 1) * block_size_m, ymin + (r + 1) * block_size_m,
        )
        blocks.append(SpatialBlock(block_id, r, c, geometry, tuple(cells[(r, c)])))

    logger.info(f"Generated {len(blocks)} non-empty {block_size_m:.0f} m blocks in {crs}")
    return blocks


@dataclass(frozen=True)
class SpatialBlockStrategy:
    """Deal whole spatial blocks to folds."""
    n_folds: int = 5
    block_size_m: float = 50_000.0
    selection: str = "random"
    seed: int = 0
    min_fold_size: int = 1
    name: ClassVar[str] = "spatial_block"

    def __post_init__(self):
        _validate_folds(self.n_folds)
        if self.selection not in SELECTION_MODES:
            raise InvalidConfigurationError(f"Unknown block selection mode '{self.selection}'; use one of {SELECTION_MODES}")
        if not self.block_size_m > 0:
            raise InvalidConfigurationError(f"Block size must be positive, got {self.block_size_m}")
        if int(self.min_fold_size) < 1:
            raise InvalidConfigurationError(f"min_fold_size must be >= 1, got {self.min_fold_size}")

    def generate(self, samples: SampleSet) -> FoldAssignment:
        logger.info(f"Creating {self.n_folds} spatial block folds ({self.selection} selection)...")
        blocks = generate_spatial_blocks(samples.coords, self.block_size_m)
        if len(blocks) < self.n_folds:
            raise DegenerateBlockError(
                f"Only {len(blocks)} non-empty blocks of {self.block_size_m:.0f} m for {self.n_folds} folds; "
                f"reduce block_size_m or n_folds"
            )

        order = np.arange(len(blocks))
        if self.selection == "random":
            order = stage_rng(self.seed, "cv.blocks").permutation(len(blocks))

        block_folds = np.empty(len(blocks), dtype=int)
        block_folds[order] = np.arange(len(blocks)) % self.n_folds

        fold_ids = np.empty(len(samples), dtype=int)
        for block, fold in zip(blocks, block_folds):
            fold_ids[list(block.sample_indices)] = fold

        sizes = np.bincount(fold_ids, minlength=self.n_folds)
        logger.info(f"Fold distribution: {dict(enumerate(sizes.tolist()))}")
        small = [f for f, s in enumerate(sizes) if s < self.min_fold_size]
        if small:
            raise DegenerateBlockError(
                f"Folds {small} hold fewer than min_fold_size={self.min_fold_size} samples: {sizes.tolist()}"
            )

        return FoldAssignment(
            fold_ids=fold_ids, n_folds=self.n_folds, strategy=self.name,
            blocks=tuple(blocks), block_folds=tuple(int(f) for f in block_folds),
        )


@dataclass(frozen=True)
class RandomStrategy:
    """Response-stratified random folds, sizes within one of N/k."""
    n_folds: int = 5
    seed: int = 0
    name: ClassVar[str] = "random"

    def __post_init__(self):
        _validate_folds(self.n_folds)

    def generate(self, samples: SampleSet) -> FoldAssignment:
        n = len(samples)
        if n < self.n_folds:
            raise InsufficientDataError(f"Cannot split {n} samples into {self.n_folds} folds")
        logger.info(f"Creating {self.n_folds} random stratified folds...")

        # Response-quantile strata of at least k samples; ties ranked at random
        rng = stage_rng(self.seed, "cv.random")
        order = np.lexsort((rng.random(n), samples.response))
        n_strata = n // self.n_folds
        strata = np.empty(n, dtype=int)
        strata[order] = np.minimum(np.arange(n) // self.n_folds, n_strata - 1)

        skf = StratifiedKFold(n_splits=self.n_folds, shuffle=True,
                              random_state=derive_seed(self.seed, "cv.random", "split"))
        fold_ids = np.empty(n, dtype=int)
        for fold, (_, test_idx) in enumerate(skf.split(np.zeros((n, 1)), strata)):
            fold_ids[test_idx] = fold

        logger.info(f"Fold distribution: {dict(enumerate(np.bincount(fold_ids).tolist()))}")
        return FoldAssignment(fold_ids=fold_ids, n_folds=self.n_folds, strategy=self.name)


FoldStrategy = Union[SpatialBlockStrategy, RandomStrategy]


def select_strategy(autocorrelated: bool, n_folds: int = 5, block_size_m: float = 50_000.0,
                    selection: str = "random", seed: int = 0, min_fold_size: int = 1) -> FoldStrategy:
    """Pick the fold strategy matching the autocorrelation outcome."""
    if autocorrelated:
        return SpatialBlockStrategy(n_folds=n_folds, block_size_m=block_size_m, selection=selection,
                                    seed=seed, min_fold_size=min_fold_size)
    return RandomStrategy(n_folds=n_folds, seed=seed)


def assign_folds(samples: SampleSet, autocorrelated: bool, **kwargs) -> FoldAssignment:
    """Select a strategy and generate the fold assignment in one call."""
    strategy = select_strategy(autocorrelated, **kwargs)
    logger.info(f"Using '{strategy.name}' cross-validation strategy")
    return strategy.generate(samples)
