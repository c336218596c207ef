"""
Deterministic sub-seed derivation.

Every random choice in the pipeline is seeded from a root seed plus a stage
identifier, so stages never read ambient random state.
"""
import zlib
from typing import Union

import numpy as np


def derive_seed(root_seed: int, stage: str, *keys: Union[int, str]) -> int:
    """
    Derive a 32-bit seed for ``stage`` from ``root_seed``.

    Parameters
    ----------
    root_seed : int
        Pipeline-wide seed
    stage : str
        Stage identifier, e.g. ``"cv.blocks"``
    *keys : int or str
        Extra discriminators such as a fold index or permutation batch

    Returns
    -------
    int
        Seed in ``[0, 2**32)``
    """
    entropy = [int(root_seed) & 0xFFFFFFFF, zlib.crc32(stage.encode("utf-8"))]
    for key in keys:
        if isinstance(key, str):
            entropy.append(zlib.crc32(key.encode("utf-8")))
        else:
            entropy.append(int(key) & 0xFFFFFFFF)
    return int(np.random.SeedSequence(entropy).generate_state(1)[0])


def stage_rng(root_seed: int, stage: str, *keys: Union[int, str]) -> np.random.Generator:
    """Return a numpy Generator seeded by :func:`derive_seed`."""
    return np.random.default_rng(derive_seed(root_seed, stage, *keys))
