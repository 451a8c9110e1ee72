"""
Model fitting for simulated datasets.

Every fit returns a handle exposing the same four queries, regardless of the
engine underneath:

    estimate(name)   point estimate of a fixed effect
    covariance()     covariance matrix of the fixed effects (DataFrame)
    is_singular()    degenerate random-effects covariance estimate
    converged()      optimizer finished without complaint (heuristic)

Mixed models are fitted with statsmodels MixedLM (REML). Non-convergence and
boundary (singular) estimates are expected during a long simulation and are
not errors: all warnings raised while fitting are recorded on the handle by
``capture_diagnostics`` and never reach the caller. Exceptions still
propagate.

Convergence heuristic
---------------------
statsmodels offers no structured optimizer status beyond a boolean, so
``converged()`` means "no optimizer complaint was recorded": no
ConvergenceWarning other than a boundary notice or a retry notice, and no
``converged=False`` on the result. This is an approximation, not a verified
convergence check.

Crossed designs
---------------
MixedLM only expresses crossed random factors as independent variance
components inside a single group covering all rows. The crossed fit therefore
estimates the subject intercept SD, subject slope SD, item intercept SD and
residual SD; the subject intercept-slope correlation is not estimated.
"""

from __future__ import annotations

import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol

import math
import numpy as np
import pandas as pd

import scipy.stats as sps
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import ConvergenceWarning


SINGULAR_TOL = 1e-4

SINGLE_FACTOR_FORMULA = "dv ~ 1"
CROSSED_FORMULA = "RT ~ 1 + X_i"
CROSSED_VC = {
    "subj_id": "0 + C(subj_id)",
    "subj_slope": "0 + C(subj_id):X_i",
    "item_id": "0 + C(item_id)",
}


class FittedModel(Protocol):
    def estimate(self, name: str) -> float: ...

    def covariance(self) -> pd.DataFrame: ...

    def is_singular(self) -> bool: ...

    def converged(self) -> bool: ...


@dataclass
class Diagnostics:
    """Warnings recorded while fitting, sorted into three bins."""

    optimizer_messages: List[str] = field(default_factory=list)
    boundary_messages: List[str] = field(default_factory=list)
    other_messages: List[str] = field(default_factory=list)

    def record(self, message: warnings.WarningMessage) -> None:
        text = str(message.message)
        if issubclass(message.category, ConvergenceWarning):
            if "boundary" in text.lower():
                self.boundary_messages.append(text)
            elif text.startswith("Retrying"):
                self.other_messages.append(text)
            else:
                self.optimizer_messages.append(text)
        else:
            self.other_messages.append(f"{message.category.__name__}: {text}")

    def __len__(self) -> int:
        return len(self.optimizer_messages) + len(self.boundary_messages) + len(self.other_messages)


@contextmanager
def capture_diagnostics() -> Iterator[Diagnostics]:
    """Record every warning raised in the block instead of emitting it."""
    diagnostics = Diagnostics()
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            yield diagnostics
        finally:
            for message in caught:
                diagnostics.record(message)


class TTestFit:
    """One-sample t-test against ``popmean``; never singular, always converged."""

    term = "mean"

    def __init__(self, sample, popmean: float = 0.0):
        self.sample = np.asarray(sample, dtype=float)
        self.popmean = popmean
        # plain floats only; scipy's result object does not pickle
        result = sps.ttest_1samp(self.sample, popmean)
        self.statistic = float(result.statistic)
        self.pvalue = float(result.pvalue)

    def estimate(self, name: str = "mean") -> float:
        if name != self.term:
            raise KeyError(name)
        return float(np.mean(self.sample))

    def covariance(self) -> pd.DataFrame:
        se = float(sps.sem(self.sample))
        return pd.DataFrame([[se * se]], index=[self.term], columns=[self.term])

    def is_singular(self) -> bool:
        return False

    def converged(self) -> bool:
        return True

    def tidy(self, term: str = "mean", conf_level: float = 0.95) -> Dict[str, float]:
        n = len(self.sample)
        df = n - 1
        est = self.estimate(term)
        se = float(sps.sem(self.sample))
        half = float(sps.t.ppf(0.5 + conf_level / 2.0, df)) * se
        return {
            "estimate": est,
            "std_error": se,
            "statistic": self.statistic,
            "p_value": self.pvalue,
            "df": float(df),
            "conf_low": est - half,
            "conf_high": est + half,
        }


class MixedFit:
    """Handle around a statsmodels MixedLMResults plus its fit diagnostics."""

    def __init__(self, result, diagnostics: Diagnostics, group_name: Optional[str] = None):
        self.result = result
        self.diagnostics = diagnostics
        self.group_name = group_name

    def estimate(self, name: str) -> float:
        return float(self.result.fe_params[name])

    def covariance(self) -> pd.DataFrame:
        names = list(self.result.fe_params.index)
        cov = self.result.cov_params()
        if isinstance(cov, pd.DataFrame):
            return cov.loc[names, names]
        k = len(names)
        return pd.DataFrame(np.asarray(cov)[:k, :k], index=names, columns=names)

    def _relative_variances(self) -> List[float]:
        scale = float(self.result.scale)
        rel: List[float] = []
        cov_re = np.asarray(self.result.cov_re, dtype=float)
        if cov_re.size:
            if not np.all(np.isfinite(cov_re)):
                return [float("nan")]
            rel.append(float(np.linalg.eigvalsh(cov_re / scale).min()))
        vcomp = np.asarray(getattr(self.result, "vcomp", []), dtype=float)
        rel.extend(float(v) / scale for v in vcomp)
        return rel

    def is_singular(self, tol: float = SINGULAR_TOL) -> bool:
        """True if any random-effect SD, relative to the residual SD, is below ``tol``."""
        if not float(self.result.scale) > 0:
            return True
        rel = self._relative_variances()
        # NaN compares False, so test the complement
        return any(not (v >= tol * tol) for v in rel)

    def converged(self) -> bool:
        return no_optimizer_complaints(self)

    def variance_components(self) -> Dict[str, float]:
        """Random-effect SDs (and correlations where estimated) plus the residual SD."""
        out: Dict[str, float] = {}
        cov_re = self.result.cov_re
        if cov_re.size:
            names = list(cov_re.index)
            cov = np.asarray(cov_re, dtype=float)
            sds = np.sqrt(np.clip(np.diag(cov), 0.0, None))
            group = self.group_name or "Group"
            for name, sd in zip(names, sds):
                key = group if name in ("Group", "Intercept") else f"{group}:{name}"
                out[key] = float(sd)
            for i in range(len(names)):
                for j in range(i + 1, len(names)):
                    denom = sds[i] * sds[j]
                    out[f"{group} corr {names[i]}:{names[j]}"] = (
                        float(cov[i, j] / denom) if denom > 0 else float("nan")
                    )
        vcomp = np.asarray(getattr(self.result, "vcomp", []), dtype=float)
        if vcomp.size:
            for name, var in zip(self.result.model.exog_vc.names, vcomp):
                out[name] = math.sqrt(max(0.0, float(var)))
        out["Residual"] = math.sqrt(max(0.0, float(self.result.scale)))
        return out


def no_optimizer_complaints(fit: MixedFit) -> bool:
    """Convergence heuristic: nothing in the recorded diagnostics complains.

    Known approximation; a fit the optimizer silently stopped early on is
    still reported as converged.
    """
    if fit.diagnostics.optimizer_messages:
        return False
    return bool(getattr(fit.result, "converged", True))


def fit_one_sample(data: pd.DataFrame) -> TTestFit:
    return TTestFit(data["dv"])


def fit_single_factor(data: pd.DataFrame) -> MixedFit:
    """dv ~ 1 with a random intercept per subject (sub_id)."""
    with capture_diagnostics() as diagnostics:
        model = smf.mixedlm(SINGLE_FACTOR_FORMULA, data, groups=data["sub_id"])
        result = model.fit(reml=True)
    return MixedFit(result, diagnostics, group_name="sub_id")


def fit_crossed(data: pd.DataFrame) -> MixedFit:
    """RT ~ 1 + X_i with subject intercepts, subject slopes and item intercepts."""
    data = data.assign(all_obs=1)
    with capture_diagnostics() as diagnostics:
        model = smf.mixedlm(
            CROSSED_FORMULA,
            data,
            groups="all_obs",
            vc_formula=CROSSED_VC,
        )
        result = model.fit(reml=True)
    return MixedFit(result, diagnostics)
