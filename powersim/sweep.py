"""
Power simulation sweep over effect sizes and sample sizes.

For each parameter setting the generate -> fit -> extract cycle is run
``nmc`` times and reduced to counts of singular, non-converged and
significant fits; one row per setting goes into the results table, in the
order the settings were given.

Seeding
-------
- Serial (n_jobs=1): one generator seeded once before the sweep, advancing
  through every draw of every setting in order. The whole sweep is
  reproducible from the seed; a single setting run on its own is not.
- Parallel (n_jobs>1): each setting gets its own generator, seeded with one
  integer per setting drawn from a generator seeded with ``seed``. Results
  depend on the seed only, not on the number of workers, but differ from the
  serial stream.

Failures are not caught: an error while fitting any trial ends the sweep and
no results file is written.

Usage
-----
1) Random-intercept design, 10 subjects x 10 trials, 5 effects in [0, 1.5]:
   python3 -m powersim.sweep 1000

2) One-sample t-test, 20 subjects, effects 0..1.2:
   python3 -m powersim.sweep 1000 --design one-sample --nsubj 20 --eff-stop 1.2

3) Crossed subjects x items, sample-size grid over subjects:
   python3 -m powersim.sweep 200 --design crossed --nsubj 40,60,80 \
     --nitem 40 --eff-start 0 --eff-stop 80 --eff-steps 3 --n-jobs -1
"""

from __future__ import annotations

import argparse
import os
import sys
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import numpy as np
import pandas as pd

from powersim.power import DESIGNS, Design, PowerSummary, Trial, get_design, run_setting


DEFAULT_SEED = 1451
DEFAULT_EFF_STOP = {"one-sample": 1.2, "single": 1.5, "crossed": 80.0}


@dataclass
class SweepResult:
    table: pd.DataFrame
    settings: List[Any]
    trials: List[List[Trial]] = field(default_factory=list)


@dataclass(frozen=True)
class _SettingWorkerInput:
    index: int
    design: str
    params: Any
    nmc: int
    seed: int
    alpha: float
    keep_trials: bool
    quiet: bool


@dataclass
class _SettingWorkerResult:
    index: int
    summary: PowerSummary
    trials: List[Trial]


def validate_probability(value: float, name: str, allow_zero: bool = True, allow_one: bool = True) -> None:
    """Validate a probability-like value in [0,1] with optional strictness."""
    if value is None or not (value == value):  # NaN check
        raise ValueError(f"{name} must be a real number in [0,1]")
    if (not allow_zero and value <= 0.0) or (allow_zero and value < 0.0):
        raise ValueError(f"{name} must be >= 0{'' if allow_zero else ' (strict)'}")
    if (not allow_one and value >= 1.0) or (allow_one and value > 1.0):
        raise ValueError(f"{name} must be <= 1{'' if allow_one else ' (strict)'}")


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate user-provided n_jobs into an actual worker count."""
    if n_jobs is None or n_jobs == 0:
        return 1
    if n_jobs < 0:
        cpu = os.cpu_count() or 1
        # Example: -1 -> cpu, -2 -> cpu-1
        return max(1, cpu + 1 + n_jobs)
    return max(1, int(n_jobs))


def _generate_setting_seeds(base_seed: Optional[int], num_settings: int) -> List[int]:
    if num_settings <= 0:
        return []
    rng = np.random.default_rng(base_seed)
    seeds = rng.integers(0, 2**63 - 1, size=num_settings, dtype=np.int64)
    # Python ints for pickle friendliness
    return [int(s) for s in seeds]


def _parse_csv_numbers(s: Optional[str], cast=float) -> Optional[list]:
    """Parse a comma-separated list of numbers into a list with the given cast.

    Returns None if s is None. Strips whitespace and ignores empty items.
    """
    if s is None:
        return None
    items = []
    for part in str(s).split(','):
        part = part.strip()
        if not part:
            continue
        items.append(cast(part))
    return items


def effect_grid(start: float, stop: float, steps: int) -> np.ndarray:
    """``steps`` evenly spaced effect sizes from start to stop inclusive."""
    return np.linspace(start, stop, steps)


def build_settings(design: Design, effects: Sequence[float], nsubj: Sequence[int] = (10,), **fixed) -> List[Any]:
    """One parameter record per (nsubj, eff); sample sizes outer, effects inner."""
    settings = []
    for n in nsubj:
        for eff in effects:
            settings.append(design.params_type(eff=float(eff), nsubj=int(n), **fixed))
    return settings


def _run_setting_worker(payload: _SettingWorkerInput) -> _SettingWorkerResult:
    rng = np.random.default_rng(payload.seed)
    summary, trials = run_setting(
        get_design(payload.design),
        payload.params,
        payload.nmc,
        rng,
        payload.alpha,
        keep_trials=payload.keep_trials,
        quiet=payload.quiet,
    )
    return _SettingWorkerResult(index=payload.index, summary=summary, trials=trials)


def _run_parallel(payloads: List[_SettingWorkerInput], max_workers: int) -> List[_SettingWorkerResult]:
    try:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(_run_setting_worker, payloads))
    except (PermissionError, NotImplementedError, OSError):
        # Fallback to thread-based parallelism when processes are not allowed
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(_run_setting_worker, payloads))


def _results_table(design: Design, settings: Sequence[Any], summaries: Sequence[PowerSummary]) -> pd.DataFrame:
    rows = []
    for idx, (params, summary) in enumerate(zip(settings, summaries), start=1):
        row = {"id": idx, "eff": params.eff}
        for name in design.size_fields:
            row[name] = getattr(params, name)
        row.update(summary.as_row())
        rows.append(row)
    return pd.DataFrame(rows)


def run_sweep(
    design,
    settings: Sequence[Any],
    nmc: int,
    seed: Optional[int] = DEFAULT_SEED,
    alpha: float = 0.05,
    *,
    n_jobs: Optional[int] = 1,
    keep_trials: bool = False,
    quiet: bool = False,
) -> SweepResult:
    """Run ``nmc`` trials for every setting and tabulate power, one row per setting."""
    if isinstance(design, str):
        design = get_design(design)
    if nmc <= 0:
        raise ValueError("nmc must be a positive integer")
    settings = list(settings)

    worker_count = min(_resolve_n_jobs(n_jobs), max(1, len(settings)))
    if worker_count <= 1:
        rng = np.random.default_rng(seed)
        summaries = []
        all_trials = []
        for params in settings:
            summary, trials = run_setting(design, params, nmc, rng, alpha, keep_trials=keep_trials, quiet=quiet)
            summaries.append(summary)
            all_trials.append(trials)
    else:
        seeds = _generate_setting_seeds(seed, len(settings))
        payloads = [
            _SettingWorkerInput(
                index=idx,
                design=design.name,
                params=params,
                nmc=nmc,
                seed=seeds[idx],
                alpha=alpha,
                keep_trials=keep_trials,
                quiet=quiet,
            )
            for idx, params in enumerate(settings)
        ]
        results = sorted(_run_parallel(payloads, worker_count), key=lambda r: r.index)
        summaries = [r.summary for r in results]
        all_trials = [r.trials for r in results]

    table = _results_table(design, settings, summaries)
    return SweepResult(table=table, settings=settings, trials=all_trials if keep_trials else [])


def results_filename(design: Design, nmc: int, settings: Sequence[Any], ext: str = "pkl") -> str:
    """File name encoding design, run count and sample sizes."""
    parts = [f"power-simulation-results_{design.name}", f"nmc{nmc}"]
    for name in design.size_fields:
        values = []
        for params in settings:
            v = getattr(params, name)
            if v not in values:
                values.append(v)
        parts.append(name + "-".join(str(v) for v in values))
    return "_".join(parts) + f".{ext}"


def save_results(result: SweepResult, path: str, everything: bool = False) -> str:
    """Pickle the results table, or the table plus every kept trial.

    The pickle is written next to ``path`` first and moved into place only
    once complete, so a failed save leaves no file behind.
    """
    tmp_path = f"{path}.tmp"
    try:
        if everything:
            pd.to_pickle({"table": result.table, "settings": result.settings, "trials": result.trials}, tmp_path)
        else:
            result.table.to_pickle(tmp_path)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
    return path


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Monte Carlo power simulation for (mixed-effects) linear models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("nmc", type=int, help="Monte Carlo runs per parameter setting")
    p.add_argument("--design", choices=list(DESIGNS), default="single",
                   help="Data-generating process and matching model")
    p.add_argument("--eff-start", type=float, default=0.0, help="Smallest effect size")
    p.add_argument("--eff-stop", type=float, default=None,
                   help="Largest effect size (default: 1.2 one-sample, 1.5 single, 80 crossed)")
    p.add_argument("--eff-steps", type=int, default=5, help="Number of effect sizes in the grid")
    p.add_argument("--nsubj", type=str, default="10",
                   help="Number of subjects; comma-separated for a sample-size grid (e.g. '10,20,40')")
    p.add_argument("--ntrials", type=int, default=10, help="Trials per subject (design=single)")
    p.add_argument("--nitem", type=int, default=50, help="Number of items, even (design=crossed)")
    p.add_argument("--alpha", type=float, default=0.05, help="Significance level (two-sided)")
    p.add_argument("--seed", type=int, default=DEFAULT_SEED, help="Random seed for the whole sweep")
    p.add_argument("--n-jobs", type=int, default=1,
                   help="Worker processes across settings (-1 uses all cores); changes the random stream")
    p.add_argument("--out", type=str, default=None, help="Output file (default encodes run parameters)")
    p.add_argument("--save-all", action="store_true",
                   help="Also save every simulated dataset and fitted model (large file)")
    p.add_argument("--quiet", action="store_true", help="Suppress progress messages")
    return p


def _fixed_params(design: Design, args: argparse.Namespace) -> dict:
    if design.name == "single":
        return {"ntrials": args.ntrials}
    if design.name == "crossed":
        return {"nitem": args.nitem}
    return {}


def _validate_args(args: argparse.Namespace, nsubj: Optional[list]) -> None:
    if args.nmc < 1:
        raise ValueError(f"number of Monte Carlo runs must be >= 1, got {args.nmc}")
    if args.eff_steps < 1:
        raise ValueError(f"--eff-steps must be >= 1, got {args.eff_steps}")
    if not nsubj:
        raise ValueError("--nsubj needs at least one value")
    if any(n < 1 for n in nsubj):
        raise ValueError(f"--nsubj values must be >= 1, got {nsubj}")
    if args.design == "single" and args.ntrials < 1:
        raise ValueError(f"--ntrials must be >= 1, got {args.ntrials}")
    if args.design == "crossed" and (args.nitem < 2 or args.nitem % 2):
        raise ValueError(f"--nitem must be a positive even number, got {args.nitem}")
    validate_probability(args.alpha, "alpha", allow_zero=False, allow_one=False)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _build_parser().parse_args(argv)

    try:
        design = get_design(args.design)
        nsubj = _parse_csv_numbers(args.nsubj, cast=int)
        _validate_args(args, nsubj)
        eff_stop = args.eff_stop if args.eff_stop is not None else DEFAULT_EFF_STOP[design.name]
        effects = effect_grid(args.eff_start, eff_stop, args.eff_steps)
        settings = build_settings(design, effects, nsubj=nsubj, **_fixed_params(design, args))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    result = run_sweep(
        design,
        settings,
        args.nmc,
        seed=args.seed,
        alpha=args.alpha,
        n_jobs=args.n_jobs,
        keep_trials=args.save_all,
        quiet=args.quiet,
    )

    print(result.table.to_string(index=False))

    outfile = args.out or results_filename(design, args.nmc, settings)
    save_results(result, outfile, everything=args.save_all)
    print(f"[info] results saved to '{outfile}'", file=sys.stderr)


if __name__ == "__main__":
    main()
