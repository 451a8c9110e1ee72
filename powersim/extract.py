"""Per-trial statistics extracted from a fitted-model handle."""

from __future__ import annotations

from dataclasses import dataclass

import math
import numpy as np

import scipy.stats as sps

from powersim.fitting import FittedModel, TTestFit


@dataclass(frozen=True)
class TrialStats:
    is_singular: bool
    converged: bool
    estimate: float
    std_error: float
    statistic: float
    p_value: float


def wald_p_value(z: float) -> float:
    """Two-sided p-value treating z as standard normal: 2 * (1 - Phi(|z|))."""
    return float(2.0 * (1.0 - sps.norm.cdf(abs(z))))


def extract_tidy(fit: TTestFit, term: str = "mean") -> TrialStats:
    row = fit.tidy(term)
    return TrialStats(
        is_singular=fit.is_singular(),
        converged=fit.converged(),
        estimate=row["estimate"],
        std_error=row["std_error"],
        statistic=row["statistic"],
        p_value=row["p_value"],
    )


def extract_wald(fit: FittedModel, term: str) -> TrialStats:
    """Wald z-test for one fixed effect.

    The statistic is referred to the standard normal rather than a t
    distribution, so p-values are slightly liberal in small samples.
    """
    est = fit.estimate(term)
    var = float(fit.covariance().loc[term, term])
    se = math.sqrt(var) if var >= 0 else float("nan")
    z = est / se if se > 0 else float("nan")
    return TrialStats(
        is_singular=bool(fit.is_singular()),
        converged=bool(fit.converged()),
        estimate=float(est),
        std_error=se,
        statistic=float(z),
        p_value=wald_p_value(z) if np.isfinite(z) else float("nan"),
    )
