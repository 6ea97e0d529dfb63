"""
estimation.py
~~~~~~~~~~~~~
30-day price projection for a single symbol.

Pipeline:
  1. Resample the raw history onto a fixed grid of evenly spaced instants
     (linear interpolation between the bracketing samples).
  2. Fit price = slope * days + intercept by ordinary least squares.
  3. Extrapolate PROJECTION_DAYS past the last grid point (never below 0).
  4. Label confidence from R² and the number of *original* samples.

Everything here is pure: no I/O, no shared state.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import numpy as np

from jobmaster.schemas import PriceSample

# ─── Constants ───────────────────────────────────────────────────────────────
DEFAULT_TARGET_POINTS: int = 100
DEFAULT_PROJECTION_DAYS: float = 30.0
SINGLE_SAMPLE_WINDOW_DAYS: int = 30
MS_PER_DAY: float = 24 * 60 * 60 * 1000.0

HIGH_CONFIDENCE_R2: float = 0.8
HIGH_CONFIDENCE_MIN_SAMPLES: int = 10
MEDIUM_CONFIDENCE_R2: float = 0.6
MEDIUM_CONFIDENCE_MIN_SAMPLES: int = 5

# ─── Custom Exceptions ───────────────────────────────────────────────────────
class InsufficientDataError(ValueError): pass


@dataclass
class RegressionFit:
    slope: float
    intercept: float
    r_squared: float


@dataclass
class PriceEstimate:
    current_price: float
    estimated_price: float
    estimated_growth: float
    slope: float
    intercept: float
    r_squared: float
    confidence: str
    interpolated_points: int
    original_data_points: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentPrice":       self.current_price,
            "estimatedPrice":     self.estimated_price,
            "estimatedGrowth":    self.estimated_growth,
            "slope":              self.slope,
            "intercept":          self.intercept,
            "rSquared":           self.r_squared,
            "confidence":         self.confidence,
            "interpolatedPoints": self.interpolated_points,
            "originalDataPoints": self.original_data_points,
        }


def _epoch_ms(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp() * 1000.0


# ─── Step 1: Interpolation ───────────────────────────────────────────────────

def _interpolate_grid(
    samples: Sequence[PriceSample],
    target_points: int,
    now: Optional[datetime],
) -> tuple[np.ndarray, np.ndarray]:
    """Return (epoch_ms, price) arrays of length target_points, ascending in time."""
    if not samples:
        raise InsufficientDataError("No price data to interpolate")
    if target_points < 2:
        raise ValueError(f"target_points must be >= 2, got {target_points}")

    ordered = sorted(samples, key=lambda s: _epoch_ms(s.timestamp))
    ys = np.array([float(s.price) for s in ordered], dtype=float)
    if not np.isfinite(ys).all():
        raise InsufficientDataError("Price history contains non-finite prices")

    if len(ordered) == 1:
        # Flat series over the trailing window ending now
        end = _epoch_ms(now or datetime.now(timezone.utc))
        start = end - SINGLE_SAMPLE_WINDOW_DAYS * MS_PER_DAY
        times = np.linspace(start, end, target_points)
        prices = np.full(target_points, ys[0])
        return times, prices

    xs = np.array([_epoch_ms(s.timestamp) for s in ordered], dtype=float)
    times = np.linspace(xs[0], xs[-1], target_points)

    # First pair (j, j+1) with xs[j] <= t <= xs[j+1]
    left = np.clip(np.searchsorted(xs, times, side="left") - 1, 0, len(xs) - 2)
    right = left + 1
    span = xs[right] - xs[left]
    with np.errstate(divide="ignore", invalid="ignore"):
        fraction = np.where(span > 0, (times - xs[left]) / span, 0.0)
    prices = ys[left] + (ys[right] - ys[left]) * fraction
    return times, prices


def interpolate_prices(
    samples: Sequence[PriceSample],
    target_points: int = DEFAULT_TARGET_POINTS,
    now: Optional[datetime] = None,
) -> list[PriceSample]:
    """
    Resample a price history onto target_points evenly spaced instants.
    Input order does not matter. A single sample becomes a flat series over
    the last 30 days (ending at `now`).
    """
    times, prices = _interpolate_grid(samples, target_points, now)
    return [
        PriceSample(
            timestamp=datetime.fromtimestamp(t / 1000.0, tz=timezone.utc),
            price=float(p),
        )
        for t, p in zip(times, prices)
    ]


# ─── Step 2: Regression ──────────────────────────────────────────────────────

def _fit(days: np.ndarray, prices: np.ndarray) -> RegressionFit:
    n = len(days)
    if n < 2:
        raise InsufficientDataError("At least 2 points are required for linear regression")
    if not np.isfinite(prices).all():
        raise InsufficientDataError("Cannot fit non-finite prices")

    if np.ptp(prices) == 0:
        # Constant series: a perfect flat fit (the mean would only add rounding noise)
        return RegressionFit(slope=0.0, intercept=float(prices[0]), r_squared=1.0)

    mean_x, mean_y = days.mean(), prices.mean()
    sxx = ((days - mean_x) ** 2).sum()
    if sxx == 0:
        # Every point at the same instant: no trend can be measured
        slope = 0.0
    else:
        slope = ((days - mean_x) * (prices - mean_y)).sum() / sxx
    intercept = mean_y - slope * mean_x

    predicted = slope * days + intercept
    ss_res = ((prices - predicted) ** 2).sum()
    ss_tot = ((prices - mean_y) ** 2).sum()
    r_squared = 1.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot

    return RegressionFit(
        slope=float(slope),
        intercept=float(intercept),
        r_squared=float(np.clip(r_squared, 0.0, 1.0)),
    )


def fit_linear_regression(points: Sequence[PriceSample]) -> RegressionFit:
    """OLS fit of price against elapsed days since the first point."""
    if len(points) < 2:
        raise InsufficientDataError("At least 2 points are required for linear regression")
    times = np.array([_epoch_ms(p.timestamp) for p in points], dtype=float)
    prices = np.array([float(p.price) for p in points], dtype=float)
    return _fit((times - times[0]) / MS_PER_DAY, prices)


# ─── Step 3 & 4: Projection + Confidence ─────────────────────────────────────

def label_confidence(r_squared: float, sample_count: int) -> str:
    if r_squared > HIGH_CONFIDENCE_R2 and sample_count >= HIGH_CONFIDENCE_MIN_SAMPLES:
        return "high"
    if r_squared > MEDIUM_CONFIDENCE_R2 and sample_count >= MEDIUM_CONFIDENCE_MIN_SAMPLES:
        return "medium"
    return "low"


def estimate_price(
    samples: Sequence[PriceSample],
    target_points: int = DEFAULT_TARGET_POINTS,
    projection_days: float = DEFAULT_PROJECTION_DAYS,
    now: Optional[datetime] = None,
) -> PriceEstimate:
    """
    Project the price `projection_days` after the last sample.

    Raises:
        InsufficientDataError: If `samples` is empty or holds a non-finite price.
    """
    times, prices = _interpolate_grid(samples, target_points, now)
    days = (times - times[0]) / MS_PER_DAY
    fit = _fit(days, prices)

    current_price = float(prices[-1])
    days_since_start = float(days[-1])
    projected = fit.slope * (days_since_start + projection_days) + fit.intercept
    estimated_price = max(0.0, float(projected))

    if current_price == 0:
        estimated_growth = 0.0
    else:
        estimated_growth = (estimated_price - current_price) / current_price * 100

    return PriceEstimate(
        current_price=current_price,
        estimated_price=estimated_price,
        estimated_growth=float(estimated_growth),
        slope=fit.slope,
        intercept=fit.intercept,
        r_squared=fit.r_squared,
        confidence=label_confidence(fit.r_squared, len(samples)),
        interpolated_points=len(prices),
        original_data_points=len(samples),
    )
