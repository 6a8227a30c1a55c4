"""Kaplan-Meier product-limit estimator and the Kaplan-Meier Mean Covariate variant.

Product-limit estimate at each distinct time t_j with d_j events among
n_j records at risk:

    S(t) = prod_{t_j <= t} (1 - d_j / n_j)

All events at a time form one simultaneous step; censorings at a time
leave the risk set only after that time's events. Confidence intervals use
Greenwood's variance on the log scale, as R's survfit(conf.type="log"):

    Var(log S(t)) = sum_{t_j <= t} d_j / (n_j * (n_j - d_j))

Every curve starts with the point (time=0, surv=1) so that step functions
drawn from it begin at full survival.
"""
from __future__ import annotations
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from survival_vpc.config import check_symmetric_ci


def _distinct_time_counts(time: np.ndarray, event: np.ndarray):
    uniq, inv = np.unique(time, return_inverse=True)
    n_event = np.bincount(inv, weights=event, minlength=len(uniq))
    n_total = np.bincount(inv, minlength=len(uniq)).astype(float)
    # at risk just before t_j: everyone not removed at an earlier time
    n_risk = len(time) - (np.cumsum(n_total) - n_total)
    return uniq, n_risk, n_event, n_total - n_event


def kaplan_meier(
    time,
    event,
    ci: Optional[Sequence[float]] = None,
    reverse_prob: bool = False
) -> pd.DataFrame:
    """Compute a Kaplan-Meier survival curve for one stratum.

    Args:
        time: Event or censoring times
        event: Event indicator (1 = event, 0 = censored)
        ci: Optional symmetric (lower, upper) quantiles, e.g. (0.05, 0.95)
            for a 90% interval
        reverse_prob: Report 1 - survival (cumulative incidence); bounds are
            reflected too

    Returns:
        DataFrame with one row per distinct time, preceded by (0, 1):
        - time, surv, n_risk, n_event, n_censor
        - lower, upper (only when ci is given)

    Raises:
        AsymmetricCIError: If ci is not symmetric around 0.5

    Example:
        >>> km = kaplan_meier([3, 5, 7, 10], [1, 0, 1, 0])
        >>> km[["time", "surv"]].values.tolist()
        [[0.0, 1.0], [3.0, 0.75], [5.0, 0.75], [7.0, 0.375], [10.0, 0.375]]
    """
    if ci is not None:
        _, ci_hi = check_symmetric_ci(ci)

    t = np.asarray(time, dtype=float)
    e = np.asarray(event, dtype=float)
    if t.shape != e.shape:
        raise ValueError(f"time and event must have the same length, got {t.shape} and {e.shape}")

    uniq, n_risk, n_event, n_censor = _distinct_time_counts(t, e)
    surv = np.cumprod(1.0 - n_event / n_risk)

    curve = pd.DataFrame({
        "time": np.concatenate([[0.0], uniq]),
        "surv": np.concatenate([[1.0], surv]),
        "n_risk": np.concatenate([[float(len(t))], n_risk]),
        "n_event": np.concatenate([[0.0], n_event]),
        "n_censor": np.concatenate([[0.0], n_censor]),
    })

    if ci is not None:
        lower, upper = _greenwood_log_ci(surv, n_risk, n_event, stats.norm.ppf(ci_hi))
        curve["lower"] = np.concatenate([[1.0], lower])
        curve["upper"] = np.concatenate([[1.0], upper])

    if reverse_prob:
        curve = reverse_probability(curve)
    return curve


def _greenwood_log_ci(surv, n_risk, n_event, z: float):
    denom = n_risk * (n_risk - n_event)
    terms = np.divide(n_event, denom, out=np.zeros_like(surv), where=denom > 0)
    se_log = np.sqrt(np.cumsum(terms))

    lower = surv * np.exp(-z * se_log)
    upper = np.minimum(surv * np.exp(z * se_log), 1.0)
    # survival of exactly 0 has no log-scale interval
    zero = surv <= 0
    lower[zero] = 0.0
    upper[zero] = 0.0
    return lower, upper


def reverse_probability(curve: pd.DataFrame) -> pd.DataFrame:
    """Return a copy with surv replaced by 1 - surv and bounds reflected."""
    out = curve.copy()
    out["surv"] = 1.0 - curve["surv"]
    if "lower" in curve.columns and "upper" in curve.columns:
        out["lower"] = 1.0 - curve["upper"]
        out["upper"] = 1.0 - curve["lower"]
    return out


def kmmc(time, covariate) -> pd.DataFrame:
    """Kaplan-Meier Mean Covariate curve for one stratum.

    At each distinct time t the value is the mean covariate over the risk
    set, i.e. over records with time >= t. Records with a missing covariate
    are ignored.

    Returns:
        DataFrame with time, surv (the risk-set mean) and n_risk, preceded
        by time 0 holding the mean over all records

    Example:
        >>> kmmc([1, 2, 3], [10.0, 20.0, 60.0])["surv"].tolist()
        [30.0, 30.0, 40.0, 60.0]
    """
    t = np.asarray(time, dtype=float)
    x = np.asarray(covariate, dtype=float)
    keep = ~np.isnan(x)
    t, x = t[keep], x[keep]

    uniq, inv = np.unique(t, return_inverse=True)
    sums = np.bincount(inv, weights=x, minlength=len(uniq))
    counts = np.bincount(inv, minlength=len(uniq)).astype(float)
    risk_sums = np.cumsum(sums[::-1])[::-1]
    risk_counts = np.cumsum(counts[::-1])[::-1]

    overall = x.mean() if x.size else np.nan
    return pd.DataFrame({
        "time": np.concatenate([[0.0], uniq]),
        "surv": np.concatenate([[overall], risk_sums / risk_counts]),
        "n_risk": np.concatenate([[float(x.size)], risk_counts]),
    })


def _strata_in_order(df: pd.DataFrame, strat_col: str) -> list:
    col = df[strat_col]
    if isinstance(col.dtype, pd.CategoricalDtype):
        present = set(col.dropna().unique())
        return [s for s in col.cat.categories if s in present]
    return list(pd.unique(col))


def _per_stratum(df: pd.DataFrame, strat_col: str, estimate) -> pd.DataFrame:
    if strat_col not in df.columns:
        df = df.assign(**{strat_col: "all"})
    strata = _strata_in_order(df, strat_col)
    pieces = []
    for s in strata:
        curve = estimate(df.loc[df[strat_col] == s])
        curve.insert(0, "strat", s)
        pieces.append(curve)
    if not pieces:
        return pd.DataFrame(columns=["strat", "time", "surv"])
    out = pd.concat(pieces, ignore_index=True)
    out["strat"] = pd.Categorical(out["strat"], categories=strata)
    return out


def compute_kaplan(
    df: pd.DataFrame,
    ci: Optional[Sequence[float]] = None,
    reverse_prob: bool = False,
    strat_col: str = "strat"
) -> pd.DataFrame:
    """Kaplan-Meier curves for every stratum of a canonical table.

    Args:
        df: Table with time, dv and a stratum column
        ci: Optional symmetric quantile bounds for a confidence interval
        reverse_prob: Report 1 - survival
        strat_col: Stratum column name

    Returns:
        Concatenated curves with a leading 'strat' column, strata in the
        order of the input's categories (first appearance)
    """
    if ci is not None:
        check_symmetric_ci(ci)
    return _per_stratum(
        df, strat_col,
        lambda part: kaplan_meier(part["time"], part["dv"], ci=ci, reverse_prob=reverse_prob),
    )


def compute_kmmc(
    df: pd.DataFrame,
    covariate: str,
    strat_col: str = "strat"
) -> pd.DataFrame:
    """Kaplan-Meier Mean Covariate curves for every stratum."""
    return _per_stratum(
        df, strat_col,
        lambda part: kmmc(part["time"], part[covariate]),
    )
