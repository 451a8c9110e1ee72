"""
Monte Carlo power for a single parameter setting.

A ``Design`` bundles the three steps of one simulated study: generate a
dataset, fit the model, extract the statistics for the term of interest.
``run_setting`` repeats that cycle ``nmc`` times with one generator and
``summarize_trials`` reduces the per-trial records to counts.

Power is computed over ALL trials. Singular and non-converged fits are
counted as diagnostics only; they are not excluded from the denominator.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import math
import numpy as np
import pandas as pd

import scipy.stats as sps

from powersim.extract import TrialStats, extract_tidy, extract_wald
from powersim.fitting import fit_crossed, fit_one_sample, fit_single_factor
from powersim.generate import (
    CrossedParams,
    OneSampleParams,
    SingleFactorParams,
    generate_crossed,
    generate_one_sample,
    generate_single_factor,
)


@dataclass(frozen=True)
class Design:
    name: str
    params_type: type
    generate: Callable[[Any, np.random.Generator], pd.DataFrame]
    analyze: Callable[[pd.DataFrame], Any]
    extract: Callable[[Any, str], TrialStats]
    term: str
    size_fields: Tuple[str, ...]

    def run_trial(self, params, rng: np.random.Generator) -> Tuple[pd.DataFrame, Any, TrialStats]:
        data = self.generate(params, rng)
        model = self.analyze(data)
        return data, model, self.extract(model, self.term)


DESIGNS: Dict[str, Design] = {
    "one-sample": Design(
        name="one-sample",
        params_type=OneSampleParams,
        generate=generate_one_sample,
        analyze=fit_one_sample,
        extract=extract_tidy,
        term="mean",
        size_fields=("nsubj",),
    ),
    "single": Design(
        name="single",
        params_type=SingleFactorParams,
        generate=generate_single_factor,
        analyze=fit_single_factor,
        extract=extract_wald,
        term="Intercept",
        size_fields=("nsubj", "ntrials"),
    ),
    "crossed": Design(
        name="crossed",
        params_type=CrossedParams,
        generate=generate_crossed,
        analyze=fit_crossed,
        extract=extract_wald,
        term="X_i",
        size_fields=("nsubj", "nitem"),
    ),
}


def get_design(name: str) -> Design:
    try:
        return DESIGNS[name]
    except KeyError:
        raise ValueError(f"unknown design '{name}'; choose from {', '.join(DESIGNS)}") from None


@dataclass
class Trial:
    """One Monte Carlo run. ``data`` and ``model`` are kept only on request."""

    run_id: int
    stats: TrialStats
    data: Optional[pd.DataFrame] = None
    model: Optional[Any] = None


def _z_two_sided(alpha: float) -> float:
    return float(sps.norm.ppf(1.0 - alpha / 2.0))


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for binomial proportion k/n (two-sided alpha)."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z = _z_two_sided(alpha)
    phat = k / n
    denom = 1.0 + (z * z) / n
    center = (phat + (z * z) / (2.0 * n)) / denom
    half = (z / denom) * math.sqrt(max(0.0, phat * (1.0 - phat) / n + (z * z) / (4.0 * n * n)))
    return max(0.0, center - half), min(1.0, center + half)


@dataclass(frozen=True)
class PowerSummary:
    n_singular: int
    n_nonconverged: int
    n_significant: int
    n_total: int

    @property
    def power(self) -> float:
        return self.n_significant / self.n_total if self.n_total > 0 else float("nan")

    def wilson_interval(self, alpha_ci: float = 0.05) -> Tuple[float, float]:
        return binomial_wilson_ci(self.n_significant, self.n_total, alpha=alpha_ci)

    def as_row(self) -> Dict[str, float]:
        ci_low, ci_high = self.wilson_interval()
        return {
            "n_singular": self.n_singular,
            "n_nonconverged": self.n_nonconverged,
            "n_significant": self.n_significant,
            "n_total": self.n_total,
            "power": self.power,
            "ci_low": ci_low,
            "ci_high": ci_high,
        }


def summarize_trials(stats: Iterable[TrialStats], alpha: float = 0.05) -> PowerSummary:
    """Count singular, non-converged and significant trials.

    NaN p-values count as non-significant.
    """
    n_singular = n_nonconverged = n_significant = n_total = 0
    for s in stats:
        n_total += 1
        n_singular += bool(s.is_singular)
        n_nonconverged += not s.converged
        n_significant += bool(s.p_value < alpha)
    return PowerSummary(
        n_singular=n_singular,
        n_nonconverged=n_nonconverged,
        n_significant=n_significant,
        n_total=n_total,
    )


def run_setting(
    design: Design,
    params,
    nmc: int,
    rng: np.random.Generator,
    alpha: float = 0.05,
    *,
    keep_trials: bool = False,
    quiet: bool = False,
) -> Tuple[PowerSummary, List[Trial]]:
    """Generate, analyze and extract ``nmc`` times for one parameter setting."""
    if not quiet:
        print(f"[info] computing stats over {nmc} runs for {params.describe()}", file=sys.stderr)
    trials: List[Trial] = []
    for run_id in range(1, nmc + 1):
        data, model, stats = design.run_trial(params, rng)
        if keep_trials:
            trials.append(Trial(run_id, stats, data=data, model=model))
        else:
            trials.append(Trial(run_id, stats))
    return summarize_trials((t.stats for t in trials), alpha), trials
