"""
Overfitting diagnostics derived from an EvaluationLog.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple, Dict, Any

import numpy as np

from geodiv.models.geodiv import EvaluationLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticsRecord:
    """Generalization-gap summary; an empty log yields the neutral defaults."""
    best_iteration: Optional[int] = None
    gap_at_best: Optional[float] = None
    gap_trend: float = 0.0
    overfitting: bool = False
    gap_threshold: float = 0.1
    gaps: Tuple[float, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "best_iteration": self.best_iteration,
            "gap_at_best": self.gap_at_best,
            "gap_trend": self.gap_trend,
            "overfitting": self.overfitting,
            "gap_threshold": self.gap_threshold,
        }


def generalization_gaps(log: EvaluationLog) -> np.ndarray:
    """Per-round train metric minus validation metric."""
    return np.array([r.train_metric - r.validation_metric for r in log], dtype=float)


def diagnose(log: EvaluationLog, gap_threshold: float = 0.1) -> DiagnosticsRecord:
    """
    Summarize the generalization gap of a training run.

    ``gap_trend`` is the least-squares slope of |gap| against round number,
    positive when train and validation metrics drift apart. Overfitting is
    flagged when |gap| at the best round exceeds ``gap_threshold``.
    """
    if len(log) == 0:
        return DiagnosticsRecord(gap_threshold=gap_threshold)

    gaps = generalization_gaps(log)
    best = log.best_record()
    gap_at_best = float(gaps[best.round - log[0].round])

    finite = np.isfinite(gaps)
    if finite.sum() >= 2:
        rounds = np.array([r.round for r in log], dtype=float)[finite]
        gap_trend = float(np.polyfit(rounds, np.abs(gaps[finite]), 1)[0])
    else:
        gap_trend = 0.0

    overfitting = bool(np.isfinite(gap_at_best) and abs(gap_at_best) > gap_threshold)
    if overfitting:
        logger.warning(f"Generalization gap {gap_at_best:.4f} at round {best.round} exceeds {gap_threshold}")

    return DiagnosticsRecord(
        best_iteration=best.round,
        gap_at_best=gap_at_best,
        gap_trend=gap_trend,
        overfitting=overfitting,
        gap_threshold=gap_threshold,
        gaps=tuple(float(g) for g in gaps),
    )
