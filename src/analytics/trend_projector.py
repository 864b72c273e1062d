"""Linear trend fitting and bounded projection for a single metric."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import stats as sp_stats
from statsmodels.tsa.stattools import adfuller

from constants import METRIC_BOUNDS, TREND_MIN_RELIABLE_POINTS

log = logging.getLogger("trend_projector")


@dataclass(frozen=True)
class TrendFit:
    slope: float
    intercept: float
    last_value: float
    n: int
    r_squared: float
    stationary: Optional[bool] = None

    @property
    def low_confidence(self) -> bool:
        return self.n < TREND_MIN_RELIABLE_POINTS


def linear_slope(values: Sequence[float]) -> float:
    """OLS slope of values against their index positions 0..n-1."""
    return fit_trend(values).slope


def fit_trend(values: Sequence[float]) -> TrendFit:
    """Fit y = a + b·i over i = 0..n-1.

    n < 2 gives a flat fit (slope 0).  Fits with n < 7 are still returned
    but flagged ``low_confidence``.  The ADF stationarity flag is only
    computed once there are at least 8 points.
    """
    y = np.asarray([v for v in values if v is not None], dtype=np.float64)
    n = len(y)
    if n == 0:
        raise ValueError("fit_trend requires at least one value")
    if n < 2:
        return TrendFit(slope=0.0, intercept=float(y[0]), last_value=float(y[0]), n=n, r_squared=0.0)

    x = np.arange(n, dtype=np.float64)
    if np.std(y) < 1e-10:
        slope, intercept, r = 0.0, float(y[0]), 0.0
    else:
        slope, intercept, r, _p, _se = sp_stats.linregress(x, y)

    stationary = None
    if n >= 8 and np.std(y) >= 1e-10:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", FutureWarning)
                adf_p = adfuller(y, maxlag=1)[1]
            stationary = bool(adf_p < 0.05)
        except Exception as e:
            log.debug("ADF test skipped, stationarity unknown: %s", e)

    return TrendFit(
        slope=float(slope),
        intercept=float(intercept),
        last_value=float(y[-1]),
        n=n,
        r_squared=float(r) ** 2,
        stationary=stationary,
    )


def clamp(value: float, bounds: Optional[Tuple[float, float]]) -> float:
    if bounds is None:
        return value
    lo, hi = bounds
    return max(lo, min(hi, value))


def project(fit: TrendFit, horizon: float, metric: Optional[str] = None,
            bounds: Optional[Tuple[float, float]] = None) -> float:
    """projected(h) = last_value + slope·h, clamped to the metric's range."""
    if bounds is None and metric is not None:
        bounds = METRIC_BOUNDS.get(metric)
    return clamp(fit.last_value + fit.slope * horizon, bounds)
