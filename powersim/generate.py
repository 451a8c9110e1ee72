"""
Data-generating processes for Monte Carlo power simulation.

Each generator turns a set of population parameters plus draws from a
``numpy.random.Generator`` into one synthetic dataset (a pandas DataFrame,
one row per observation). The generator is passed in explicitly; nothing
here touches global random state, so a single seeded generator threaded
through a whole sweep reproduces every dataset exactly.

Designs
-------
- One-sample:   dv = N(eff, sd), one row per subject.
- Single factor (random intercepts for subjects):
      dv = eff + b_subj + e
  with b_subj ~ N(0, subj_sd^2) shared by all of a subject's trials and
  e ~ N(0, err_sd^2) independent per row.
- Crossed subjects x items with a by-subject random slope:
      RT = mu + S_0s + O_0i + (eff + S_1s) * X_i + e
  where (S_0s, S_1s) ~ MVN(0, [[sri^2, rcor*sri*srs], [rcor*sri*srs, srs^2]]),
  O_0i ~ N(0, iri^2) independently of the subject effects, e ~ N(0, err^2),
  and X_i is the deviation-coded item category (ingroup = -0.5,
  outgroup = +0.5). Every subject meets every item exactly once.

Notes
-----
- Generators do not validate their inputs. Malformed values surface as
  errors from numpy/pandas while the table is being built (e.g. an odd
  number of items cannot be split into two balanced categories).
- Draw order for the crossed design is fixed: item intercepts, then subject
  intercept/slope pairs, then residuals.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class OneSampleParams:
    eff: float
    nsubj: int
    sd: float = 1.0

    def describe(self) -> str:
        return f"eff={self.eff}; nsubj={self.nsubj}; sd={self.sd}"


@dataclass(frozen=True)
class SingleFactorParams:
    eff: float
    nsubj: int
    ntrials: int
    subj_sd: float = 1.0   # SD of by-subject random intercepts
    err_sd: float = 1.0    # residual SD

    def describe(self) -> str:
        return f"nsubj={self.nsubj}; ntrials={self.ntrials}; eff={self.eff}"


@dataclass(frozen=True)
class CrossedParams:
    eff: float
    nsubj: int
    nitem: int
    mu: float = 800.0      # grand mean
    iri_sd: float = 80.0   # by-item random intercept SD
    sri_sd: float = 100.0  # by-subject random intercept SD
    srs_sd: float = 40.0   # by-subject random slope SD
    rcor: float = 0.2      # correlation between subject intercepts and slopes
    err_sd: float = 200.0  # residual SD

    def describe(self) -> str:
        return f"nsubj={self.nsubj}; nitem={self.nitem}; eff={self.eff}"


def generate_one_sample(params: OneSampleParams, rng: np.random.Generator) -> pd.DataFrame:
    return pd.DataFrame({
        "subj_id": np.arange(1, params.nsubj + 1),
        "dv": rng.normal(params.eff, params.sd, size=params.nsubj),
    })


def generate_single_factor(params: SingleFactorParams, rng: np.random.Generator) -> pd.DataFrame:
    """Subjects x trials with a random intercept per subject.

    Returns columns: sub_id, rand_int, err, dv (nsubj * ntrials rows).
    """
    nsubj, ntrials = params.nsubj, params.ntrials
    rand_int = rng.normal(0.0, params.subj_sd, size=nsubj)
    err = rng.normal(0.0, params.err_sd, size=nsubj * ntrials)
    df = pd.DataFrame({
        "sub_id": np.repeat(np.arange(1, nsubj + 1), ntrials),
        "rand_int": np.repeat(rand_int, ntrials),
        "err": err,
    })
    df["dv"] = params.eff + df["rand_int"] + df["err"]
    return df


def make_items(nitem: int, iri_sd: float, rng: np.random.Generator) -> pd.DataFrame:
    """Item table: first half ingroup (X_i = -0.5), second half outgroup (+0.5)."""
    half = nitem // 2
    return pd.DataFrame({
        "item_id": np.arange(1, nitem + 1),
        "category": np.repeat(["ingroup", "outgroup"], half),
        "X_i": np.repeat([-0.5, 0.5], half),
        "O_0i": rng.normal(0.0, iri_sd, size=nitem),
    })


def make_subjects(nsubj: int, sri_sd: float, srs_sd: float, rcor: float,
                  rng: np.random.Generator) -> pd.DataFrame:
    """Subject table with correlated random intercepts (S_0s) and slopes (S_1s)."""
    cov = rcor * sri_sd * srs_sd
    sigma = np.array([[sri_sd ** 2, cov], [cov, srs_sd ** 2]], dtype=float)
    draws = rng.multivariate_normal(np.zeros(2), sigma, size=nsubj)
    return pd.DataFrame({
        "subj_id": np.arange(1, nsubj + 1),
        "S_0s": draws[:, 0],
        "S_1s": draws[:, 1],
    })


def generate_crossed(params: CrossedParams, rng: np.random.Generator) -> pd.DataFrame:
    """Fully crossed subjects x items dataset (nsubj * nitem rows)."""
    items = make_items(params.nitem, params.iri_sd, rng)
    subjects = make_subjects(params.nsubj, params.sri_sd, params.srs_sd, params.rcor, rng)

    trials = subjects.merge(items, how="cross")
    trials["err"] = rng.normal(0.0, params.err_sd, size=len(trials))
    trials["RT"] = (params.mu + trials["S_0s"] + trials["O_0i"]
                    + (params.eff + trials["S_1s"]) * trials["X_i"] + trials["err"])
    return trials[["subj_id", "item_id", "category", "X_i",
                   "S_0s", "S_1s", "O_0i", "err", "RT"]]
