import warnings
import numpy as np
import pandas as pd
import statsmodels.api as sm
from typing import Sequence, Tuple, Optional
from netpolicy.exceptions import InsufficientDataError, SingularDesignError, UnbalancedCutoffError
from netpolicy.config_models import (
    CoefficientResult,
    DurbinWatsonResult,
    ITSModelResult,
    ParallelTrendsResult,
    ManualDIDResult,
    DIDModelResult,
)
from netpolicy.utils.datautils import (
    KEY_TIME_INDEX,
    KEY_INTERVENTION,
    KEY_TIME_SINCE,
    KEY_TREATED,
    KEY_POST,
)
from netpolicy.utils.inferutils import t_test, durbin_watson_test

KEY_CONST = "const"
KEY_TREATED_POST = "treated_post"
KEY_TIME_TREATED = "time_treated"

# Regressors after the constant, in design-matrix column order
ITS_REGRESSORS = (KEY_TIME_INDEX, KEY_INTERVENTION, KEY_TIME_SINCE)
DID_REGRESSORS = (KEY_TREATED, KEY_POST, KEY_TREATED_POST)
PRETREND_REGRESSORS = (KEY_TIME_INDEX, KEY_TREATED, KEY_TIME_TREATED)

ITS_COEF_NAMES = ("Intercept", "Time", "Level_Change", "Slope_Change")
DID_COEF_NAMES = ("Intercept", "Treated", "Post", "Treated:Post")

# Residuals (and estimates) below this fraction of the response scale are rounding noise
EXACT_FIT_RTOL = 1e-8


def build_design_matrix(frame: pd.DataFrame, regressors: Sequence[str]) -> pd.DataFrame:
    """Constant column followed by `regressors`, as floats, in the given order."""
    design = pd.DataFrame({KEY_CONST: np.ones(len(frame))}, index=frame.index)
    for name in regressors:
        design[name] = frame[name].astype(float)
    return design


def check_design(design: pd.DataFrame, model_name: str) -> None:
    """Raise if the design leaves no residual degrees of freedom or is rank-deficient.

    Parameters
    ----------
    design : pd.DataFrame
        Design matrix, shape (n, k).
    model_name : str
        Used in error messages only.

    Raises
    ------
    InsufficientDataError
        If n <= k.
    SingularDesignError
        If the columns of `design` are linearly dependent.
    """
    n_obs, n_cols = design.shape
    if n_obs <= n_cols:
        raise InsufficientDataError(
            f"{model_name} needs more than {n_cols} observations; got {n_obs} "
            f"(residual degrees of freedom {n_obs - n_cols})."
        )
    rank = np.linalg.matrix_rank(design.to_numpy())
    if rank < n_cols:
        constant_columns = [
            col for col in design.columns[1:] if np.ptp(design[col].to_numpy()) == 0
        ]
        detail = f" Constant columns: {', '.join(constant_columns)}." if constant_columns else ""
        raise SingularDesignError(
            f"{model_name} design matrix is rank-deficient (rank {rank} < {n_cols}).{detail} "
            "The cutoff may coincide with the series boundary."
        )


def fit_ols(response: pd.Series, design: pd.DataFrame, model_name: str):
    """Ordinary least squares on a checked design. Returns statsmodels results."""
    check_design(design, model_name)
    try:
        return sm.OLS(response.astype(float), design).fit()
    except np.linalg.LinAlgError as e:
        raise SingularDesignError(f"{model_name} least-squares fit failed: {e}") from e


def exact_fit_tolerance(response: pd.Series) -> float:
    """Absolute tolerance for treating residuals or estimates as zero."""
    return EXACT_FIT_RTOL * max(float(np.max(np.abs(np.asarray(response, dtype=float)))), 1.0)


def is_exact_fit(ols_results, response: pd.Series) -> bool:
    """Whether the fit reproduces `response` up to rounding (root-mean-square residual)."""
    resid = np.asarray(ols_results.resid, dtype=float)
    return bool(np.sqrt(np.mean(resid ** 2)) <= exact_fit_tolerance(response))


def _coefficients(
    names: Sequence[str],
    estimates: np.ndarray,
    std_errs: np.ndarray,
    df_resid: int,
    ci_multiplier: Optional[float] = None,
    exact_fit: bool = False,
    tolerance: float = 0.0,
) -> Tuple[CoefficientResult, ...]:
    results = []
    for name, estimate, std_err in zip(names, estimates, std_errs):
        if exact_fit:
            std_err = 0.0
        t_stat, p_value = t_test(
            float(estimate), float(std_err), df_resid, exact_fit=exact_fit, tolerance=tolerance
        )
        ci_lower = ci_upper = None
        if ci_multiplier is not None:
            ci_lower = float(estimate - ci_multiplier * std_err)
            ci_upper = float(estimate + ci_multiplier * std_err)
        results.append(CoefficientResult(
            name=name,
            estimate=float(estimate),
            std_err=float(std_err),
            t_stat=t_stat,
            p_value=p_value,
            ci_lower=ci_lower,
            ci_upper=ci_upper,
        ))
    return tuple(results)


def _read_only(values: np.ndarray) -> np.ndarray:
    values = np.array(values, dtype=float)
    values.setflags(write=False)
    return values


def fit_segmented_regression(series: pd.DataFrame, outcome: str, nw_lags: int = 3) -> ITSModelResult:
    """Fit the ITS segmented regression for one outcome.

    ``outcome ~ const + time_index + intervention_flag + time_since_intervention``

    Point estimates, R-squared and the Durbin-Watson diagnostic come from the
    ordinary least-squares fit. Standard errors are Newey-West (Bartlett
    kernel, `nw_lags` lags, no small-sample adjustment, no
    prewhitening); t statistics and two-sided p-values use a Student's t
    reference with n - 4 degrees of freedom. When the fit is exact up to
    rounding, standard errors are reported as 0, zero estimates get p = 1,
    non-zero estimates p = 0, and the Durbin-Watson diagnostic is NaN.

    Parameters
    ----------
    series : pd.DataFrame
        Output of :func:`netpolicy.utils.datautils.build_series`. Not modified.
    outcome : str
        Response column.
    nw_lags : int, default 3
        Newey-West lag truncation.

    Returns
    -------
    ITSModelResult
        Coefficients, fit statistics, Durbin-Watson diagnostic and read-only
        fitted and counterfactual arrays aligned with `series`.

    Raises
    ------
    InsufficientDataError
        If the series has 4 or fewer records.
    SingularDesignError
        If the design is rank-deficient, e.g. no record on one side of the
        cutoff.
    """
    design = build_design_matrix(series, ITS_REGRESSORS)
    ols_results = fit_ols(series[outcome], design, "ITS")
    hac_results = ols_results.get_robustcov_results(
        cov_type="HAC", maxlags=nw_lags, use_correction=False
    )

    n_obs, n_cols = design.shape
    df_resid = n_obs - n_cols
    params = np.asarray(ols_results.params, dtype=float)
    robust_se = np.asarray(hac_results.bse, dtype=float)
    exact_fit = is_exact_fit(ols_results, series[outcome])
    intercept, time_trend, level_change, slope_change = _coefficients(
        ITS_COEF_NAMES, params, robust_se, df_resid,
        exact_fit=exact_fit, tolerance=exact_fit_tolerance(series[outcome]),
    )

    if exact_fit:
        dw_stat, dw_p, dw_method = np.nan, np.nan, "exact"
    else:
        dw_stat, dw_p, dw_method = durbin_watson_test(ols_results.resid, design)

    # Counterfactual: same coefficients, intervention terms switched off
    counterfactual_design = design.copy()
    counterfactual_design[KEY_INTERVENTION] = 0.0
    counterfactual_design[KEY_TIME_SINCE] = 0.0

    return ITSModelResult(
        outcome=outcome,
        intercept=intercept,
        time_trend=time_trend,
        level_change=level_change,
        slope_change=slope_change,
        r_squared=float(ols_results.rsquared),
        adj_r_squared=float(ols_results.rsquared_adj),
        durbin_watson=DurbinWatsonResult(statistic=dw_stat, p_value=dw_p, method=dw_method),
        nobs=n_obs,
        df_resid=df_resid,
        nw_lags=nw_lags,
        fitted=_read_only(design.to_numpy() @ params),
        counterfactual=_read_only(counterfactual_design.to_numpy() @ params),
    )


def estimate_level_change(series: pd.DataFrame, outcome: str) -> float:
    """Level-change coefficient of the segmented regression (point estimate only)."""
    design = build_design_matrix(series, ITS_REGRESSORS)
    ols_results = fit_ols(series[outcome], design, "ITS")
    return float(np.asarray(ols_results.params)[design.columns.get_loc(KEY_INTERVENTION)])


def _check_cells(panel: pd.DataFrame) -> None:
    counts = panel.groupby([KEY_TREATED, KEY_POST]).size()
    for treated_flag in (0, 1):
        for post_flag in (0, 1):
            if counts.get((treated_flag, post_flag), 0) == 0:
                group = "treated" if treated_flag else "control"
                window = "post" if post_flag else "pre"
                raise UnbalancedCutoffError(
                    f"The {group} group has no observations in the {window}-cutoff window."
                )


def manual_did(panel: pd.DataFrame, outcome: str) -> ManualDIDResult:
    """Difference of differences from the four (treated, post) cell means."""
    _check_cells(panel)
    means = panel.groupby([KEY_TREATED, KEY_POST])[outcome].mean()
    treated_pre, treated_post = float(means[(1, 0)]), float(means[(1, 1)])
    control_pre, control_post = float(means[(0, 0)]), float(means[(0, 1)])
    treated_change = treated_post - treated_pre
    control_change = control_post - control_pre
    return ManualDIDResult(
        treated_pre=treated_pre,
        treated_post=treated_post,
        control_pre=control_pre,
        control_post=control_post,
        treated_change=treated_change,
        control_change=control_change,
        att=treated_change - control_change,
    )


def fit_parallel_trends(
    panel: pd.DataFrame,
    outcome: str,
    time_column_name: str,
    alpha: float = 0.05,
) -> ParallelTrendsResult:
    """Test for a differential pre-period trend between treated and control.

    Restricted to ``post == 0`` rows, each group gets its own sequential time
    index (1, 2, ...) and the outcome is regressed on
    ``const + time_index + treated + time_index * treated``. The interaction
    is reported with ordinary least-squares inference; ``violated`` is set
    when its p-value is below `alpha`.

    The test is a diagnostic and never blocks the DID estimate: when the
    pre-period is too short or collinear to fit, a warning is issued and the
    result holds NaN statistics with ``violated=False``.
    """
    pre = panel[panel[KEY_POST] == 0].sort_values([KEY_TREATED, time_column_name]).copy()
    pre[KEY_TIME_INDEX] = pre.groupby(KEY_TREATED).cumcount() + 1
    pre[KEY_TIME_TREATED] = pre[KEY_TIME_INDEX] * pre[KEY_TREATED]

    design = build_design_matrix(pre, PRETREND_REGRESSORS)
    try:
        ols_results = fit_ols(pre[outcome], design, "Parallel-trends")
    except (InsufficientDataError, SingularDesignError) as e:
        warnings.warn(
            f"Parallel-trends pre-test for '{outcome}' could not be estimated: {str(e)}",
            UserWarning
        )
        return ParallelTrendsResult(coefficient=np.nan, std_err=np.nan, p_value=np.nan, violated=False)

    position = design.columns.get_loc(KEY_TIME_TREATED)
    coefficient = float(np.asarray(ols_results.params)[position])
    std_err = float(np.asarray(ols_results.bse)[position])
    exact_fit = is_exact_fit(ols_results, pre[outcome])
    if exact_fit:
        std_err = 0.0
    _, p_value = t_test(
        coefficient, std_err, int(ols_results.df_resid),
        exact_fit=exact_fit, tolerance=exact_fit_tolerance(pre[outcome]),
    )
    return ParallelTrendsResult(
        coefficient=coefficient,
        std_err=std_err,
        p_value=p_value,
        violated=bool(p_value < alpha),
    )


def fit_did_regression(
    panel: pd.DataFrame,
    outcome: str,
    time_column_name: str,
    alpha: float = 0.05,
    ci_multiplier: float = 1.96,
    treated_label: str = "Fixed",
    control_label: str = "Cellular",
) -> DIDModelResult:
    """Fit the two-group DID regression for one outcome.

    ``outcome ~ const + treated + post + treated * post``

    Standard errors are HC1 (squared residuals scaled by n/(n-k)). t
    statistics and p-values use a Student's t reference with n - 4 degrees of
    freedom; confidence intervals are ``estimate +/- ci_multiplier * SE``.
    The parallel-trends pre-test and the cell-mean cross-check are computed
    on the same panel.

    Parameters
    ----------
    panel : pd.DataFrame
        Output of :func:`netpolicy.utils.datautils.stack_did_panel`. Not modified.
    outcome : str
        Response column.
    time_column_name : str
        Date column, used to order records within each group for the pre-test.
    alpha : float, default 0.05
        Threshold below which the parallel-trends pre-test is flagged.
    ci_multiplier : float, default 1.96
        Normal-approximation multiplier for the confidence intervals.
    treated_label, control_label : str
        Group labels carried into the result.

    Returns
    -------
    DIDModelResult

    Raises
    ------
    UnbalancedCutoffError
        If a (group, window) cell is empty.
    InsufficientDataError
        If the panel has 4 or fewer records.
    SingularDesignError
        If the design is rank-deficient.
    """
    _check_cells(panel)
    frame = panel.copy()
    frame[KEY_TREATED_POST] = frame[KEY_TREATED] * frame[KEY_POST]

    design = build_design_matrix(frame, DID_REGRESSORS)
    ols_results = fit_ols(frame[outcome], design, "DID")
    hc1_results = ols_results.get_robustcov_results(cov_type="HC1")

    n_obs, n_cols = design.shape
    intercept, treated, post, interaction = _coefficients(
        DID_COEF_NAMES,
        np.asarray(ols_results.params, dtype=float),
        np.asarray(hc1_results.bse, dtype=float),
        n_obs - n_cols,
        ci_multiplier=ci_multiplier,
        exact_fit=is_exact_fit(ols_results, frame[outcome]),
        tolerance=exact_fit_tolerance(frame[outcome]),
    )

    return DIDModelResult(
        outcome=outcome,
        intercept=intercept,
        treated=treated,
        post=post,
        interaction=interaction,
        parallel_trends=fit_parallel_trends(panel, outcome, time_column_name, alpha=alpha),
        manual=manual_did(panel, outcome),
        nobs=n_obs,
        n_treated=int((frame[KEY_TREATED] == 1).sum()),
        n_control=int((frame[KEY_TREATED] == 0).sum()),
        n_pre=int((frame[KEY_POST] == 0).sum()),
        n_post=int((frame[KEY_POST] == 1).sum()),
        treated_label=treated_label,
        control_label=control_label,
    )
