import numpy as np
import pandas as pd
from scipy import integrate, stats
from statsmodels.stats.stattools import durbin_watson
from typing import Tuple, Optional, Any
from netpolicy.exceptions import (
    DataIntegrityError,
    InsufficientEligibleDatesError,
    NetpolicyConfigError,
)

# A fake cutoff needs at least this many records on each side; closer to the
# series boundary the segmented design is collinear.
MIN_RECORDS_PER_SIDE = 2


def t_test(
    estimate: float,
    std_err: float,
    df_resid: int,
    exact_fit: bool = False,
    tolerance: float = 0.0,
) -> Tuple[float, float]:
    """Two-sided t-test of ``estimate = 0`` given a standard error.

    Parameters
    ----------
    estimate : float
        Coefficient estimate.
    std_err : float
        Its (robust) standard error.
    df_resid : int
        Residual degrees of freedom for the Student's t reference.
    exact_fit : bool, default False
        Whether the model reproduces the response up to rounding. The
        standard error is then rounding noise and is not used: an estimate
        with ``|estimate| <= tolerance`` gets ``(0, 1)``, any other estimate
        ``(+/-inf, 0)``.
    tolerance : float, default 0.0
        Magnitude below which an estimate from an exact fit counts as zero.

    Returns
    -------
    Tuple[float, float]
        ``(t_stat, p_value)``. Outside an exact fit both are NaN when the
        standard error is zero or not finite.
    """
    if df_resid <= 0:
        raise NetpolicyConfigError("df_resid must be positive.")
    if exact_fit:
        if abs(estimate) <= tolerance:
            return 0.0, 1.0
        return float(np.copysign(np.inf, estimate)), 0.0
    if not np.isfinite(std_err) or std_err <= 0:
        return np.nan, np.nan
    t_stat = float(estimate / std_err)
    p_value = float(2 * stats.t.sf(np.abs(t_stat), df_resid))
    return t_stat, p_value


def _imhof_lower_tail(weights: np.ndarray) -> float:
    """P(sum_i w_i z_i^2 < 0) for iid standard normal z_i (Imhof, 1961)."""

    def integrand(u: float) -> float:
        if u == 0.0:
            return 0.5 * float(np.sum(weights))
        theta = 0.5 * np.sum(np.arctan(weights * u))
        rho = np.prod((1.0 + (weights * u) ** 2) ** 0.25)
        return float(np.sin(theta) / (u * rho))

    integral, _ = integrate.quad(integrand, 0.0, np.inf, limit=200)
    return 0.5 - integral / np.pi


def durbin_watson_test(residuals: Any, design_matrix: Any) -> Tuple[float, float, str]:
    """Durbin-Watson statistic with its p-value against positive autocorrelation.

    The p-value is P(DW <= d) under white-noise errors, computed exactly from
    the eigenvalues of ``M A M`` (``M`` the residual-maker of the design and
    ``A`` the first-difference quadratic form) by Imhof's numerical
    inversion. When the exact value falls outside [0, 1] a normal
    approximation built from the same eigenvalues is used instead.

    Parameters
    ----------
    residuals : array-like
        OLS residuals, shape (n,).
    design_matrix : array-like
        Regressor matrix including the constant, shape (n, k).

    Returns
    -------
    Tuple[float, float, str]
        ``(statistic, p_value, method)`` with method "exact" or "normal".
        Statistic and p-value are NaN when the residuals are identically zero.
    """
    resid = np.asarray(residuals, dtype=float)
    X = np.asarray(design_matrix, dtype=float)
    n, k = X.shape
    if resid.shape[0] != n:
        raise DataIntegrityError("residuals and design_matrix must have the same number of rows.")

    if not np.any(resid):
        return np.nan, np.nan, "exact"
    dw_stat = float(durbin_watson(resid))

    # First-difference quadratic form: e'Ae = sum (e_t - e_{t-1})^2
    D = np.diff(np.eye(n), axis=0)
    A = D.T @ D
    Q, _ = np.linalg.qr(X)
    M = np.eye(n) - Q @ Q.T
    eigenvalues = np.sort(np.linalg.eigvalsh(M @ A @ M))[k:]

    p_value = _imhof_lower_tail(eigenvalues - dw_stat)
    if np.isfinite(p_value) and 0.0 <= p_value <= 1.0:
        return dw_stat, float(p_value), "exact"

    m = n - k
    mean = np.mean(eigenvalues)
    var = 2.0 / (m * (m + 2)) * (np.sum(eigenvalues ** 2) - np.sum(eigenvalues) ** 2 / m)
    return dw_stat, float(stats.norm.cdf(dw_stat, loc=mean, scale=np.sqrt(var))), "normal"


def placebo_eligible_dates(
    dates: Any,
    intervention_date: pd.Timestamp,
    buffer_months: int = 6,
) -> pd.DatetimeIndex:
    """Dates usable as fake cutoffs for the in-time placebo test.

    A date is eligible if it lies strictly more than `buffer_months` before or
    strictly more than `buffer_months` after the true intervention, and leaves
    at least two records on each side of it.

    The second condition removes the first two and the last position of the
    series. A cutoff there makes the segmented design singular: at the first
    position the intervention flag equals the constant, at the second
    ``time_since_intervention`` equals ``time_index - 1``, and at the last the
    flag equals ``time_since_intervention``. Such fits would raise
    :class:`~netpolicy.exceptions.SingularDesignError` rather than silently
    dropping a term.

    Parameters
    ----------
    dates : array-like of datetime
        Series dates sorted ascending.
    intervention_date : pd.Timestamp
        True intervention date.
    buffer_months : int
        Exclusion buffer in calendar months.

    Returns
    -------
    pd.DatetimeIndex
        Eligible dates in series order.
    """
    if buffer_months < 0:
        raise NetpolicyConfigError("buffer_months must be non-negative.")
    dates = pd.DatetimeIndex(dates)
    intervention_date = pd.Timestamp(intervention_date)
    lower = intervention_date - pd.DateOffset(months=buffer_months)
    upper = intervention_date + pd.DateOffset(months=buffer_months)
    outside_buffer = np.asarray((dates < lower) | (dates > upper))

    positions = np.arange(len(dates))
    interior = (positions >= MIN_RECORDS_PER_SIDE) & (positions <= len(dates) - MIN_RECORDS_PER_SIDE)
    return dates[outside_buffer & interior]


def validate_eligible_dates(eligible_dates: Any, min_eligible_dates: int = 10) -> None:
    """Raise if too few fake cutoffs survive the exclusion buffer."""
    n_eligible = len(eligible_dates)
    if n_eligible < min_eligible_dates:
        raise InsufficientEligibleDatesError(
            f"Only {n_eligible} eligible placebo dates remain; at least {min_eligible_dates} are required. "
            "The series is too short relative to the exclusion buffer."
        )


def draw_placebo_dates(eligible_dates: Any, n_draws: int, seed: Optional[int] = 42) -> pd.DatetimeIndex:
    """Draw fake cutoffs uniformly with replacement.

    All draws are generated up front from a single seeded generator, so the
    sequence depends only on `seed`, `n_draws` and the order of
    `eligible_dates`.

    Examples
    --------
    >>> eligible = pd.date_range("2019-06-01", periods=5, freq="MS")
    >>> a = draw_placebo_dates(eligible, 100, seed=7)
    >>> b = draw_placebo_dates(eligible, 100, seed=7)
    >>> bool((a == b).all())
    True
    """
    eligible_dates = pd.DatetimeIndex(eligible_dates)
    if len(eligible_dates) == 0:
        raise InsufficientEligibleDatesError("No eligible placebo dates to draw from.")
    if n_draws < 1:
        raise NetpolicyConfigError("n_draws must be at least 1.")
    rng = np.random.default_rng(seed)
    draw_positions = rng.integers(0, len(eligible_dates), size=n_draws)
    return eligible_dates[draw_positions]


def empirical_p_value(placebo_effects: Any, actual_effect: float) -> float:
    """Share of placebo effects at least as large in magnitude as the actual one."""
    placebo_effects = np.asarray(placebo_effects, dtype=float)
    if placebo_effects.size == 0:
        raise DataIntegrityError("placebo_effects cannot be empty.")
    return float(np.mean(np.abs(placebo_effects) >= np.abs(actual_effect)))
