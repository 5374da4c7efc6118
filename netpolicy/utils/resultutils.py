import os
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from matplotlib import rc_context
from typing import Optional, Dict, List, Sequence, Union
from netpolicy.exceptions import DataIntegrityError, NetpolicyPlottingError
from netpolicy.config_models import (
    CoefficientResult,
    ITSModelResult,
    PlaceboResults,
    DIDModelResult,
)
from netpolicy.utils.datautils import KEY_TREATED, KEY_POST

PERIOD_PRE = "Pre"
PERIOD_POST = "Post"


# --- Result tables ---

def its_results_table(results: Sequence[ITSModelResult]) -> pd.DataFrame:
    """One row per outcome: coefficients, Newey-West SEs and p-values, fit and DW."""
    rows = []
    for result in results:
        row = {"Variable": result.outcome}
        for prefix, coef in (
            ("Intercept", result.intercept),
            ("Time_Coef", result.time_trend),
            ("Level_Change", result.level_change),
            ("Slope_Change", result.slope_change),
        ):
            row[prefix] = coef.estimate
            row[f"{prefix}_SE"] = coef.std_err
            row[f"{prefix}_P"] = coef.p_value
        row.update({
            "R_Squared": result.r_squared,
            "Adj_R_Squared": result.adj_r_squared,
            "DW_Stat": result.durbin_watson.statistic,
            "DW_P": result.durbin_watson.p_value,
        })
        rows.append(row)
    return pd.DataFrame(rows)


def its_timeseries_table(series: pd.DataFrame, results: Sequence[ITSModelResult]) -> pd.DataFrame:
    """The ITS series with ``<outcome>_Predicted`` and ``<outcome>_Counterfactual`` columns.

    Returns a new DataFrame; `series` is not modified.
    """
    table = series.copy()
    for result in results:
        if len(result.fitted) != len(table):
            raise DataIntegrityError(
                f"Fitted values for '{result.outcome}' do not align with the series "
                f"({len(result.fitted)} vs {len(table)} rows)."
            )
        table[f"{result.outcome}_Predicted"] = np.asarray(result.fitted)
        table[f"{result.outcome}_Counterfactual"] = np.asarray(result.counterfactual)
    return table


def placebo_table(results: PlaceboResults) -> pd.DataFrame:
    """One row per placebo replication."""
    return pd.DataFrame(
        {
            "Iteration": [rep.iteration for rep in results.replications],
            "Fake_Date": [rep.fake_date for rep in results.replications],
            "Level_Change": [rep.level_change for rep in results.replications],
        }
    )


def _coef_row(label: str, coef: CoefficientResult) -> Dict[str, float]:
    return {
        "Term": label,
        "Estimate": coef.estimate,
        "SE": coef.std_err,
        "T_Stat": coef.t_stat,
        "P_Value": coef.p_value,
        "CI_Lower": coef.ci_lower,
        "CI_Upper": coef.ci_upper,
    }


def did_results_table(result: DIDModelResult) -> pd.DataFrame:
    """Coefficient rows of the DID regression followed by an ``ATT`` row and the pre-trend row.

    The ``ATT`` row repeats the interaction term. The ``PreTrend`` row holds
    the parallel-trends interaction with its OLS standard error and p-value
    and no confidence interval.
    """
    rows = [
        _coef_row(coef.name, coef)
        for coef in (result.intercept, result.treated, result.post, result.interaction)
    ]
    rows.append(_coef_row("ATT", result.interaction))
    trends = result.parallel_trends
    rows.append({
        "Term": "PreTrend",
        "Estimate": trends.coefficient,
        "SE": trends.std_err,
        "T_Stat": np.nan,
        "P_Value": trends.p_value,
        "CI_Lower": np.nan,
        "CI_Upper": np.nan,
    })
    table = pd.DataFrame(rows)
    table.insert(0, "Variable", result.outcome)
    return table


def did_summary_table(results: Sequence[DIDModelResult]) -> pd.DataFrame:
    """One row per outcome: ATT inference, manual cross-check and pre-trend diagnostic."""
    return pd.DataFrame(
        [
            {
                "Variable": result.outcome,
                "ATT": result.interaction.estimate,
                "SE": result.interaction.std_err,
                "P_Value": result.interaction.p_value,
                "CI_Lower": result.interaction.ci_lower,
                "CI_Upper": result.interaction.ci_upper,
                "Manual_ATT": result.manual.att,
                "PreTrends_Coef": result.parallel_trends.coefficient,
                "PreTrends_P": result.parallel_trends.p_value,
                "Parallel_Trends_Violated": result.parallel_trends.violated,
            }
            for result in results
        ]
    )


# --- Descriptive comparisons ---

def prepost_comparison(
    series: pd.DataFrame,
    time_column_name: str,
    outcome_column_names: Sequence[str],
    cutoff: pd.Timestamp,
) -> pd.DataFrame:
    """N, mean, median and SD of each outcome before and after `cutoff`.

    Returns
    -------
    pd.DataFrame
        Two rows (``Pre`` then ``Post``) with columns ``Period``, ``N`` and,
        per outcome, ``Mean_<outcome>``, ``Median_<outcome>``, ``SD_<outcome>``.
        SD uses ``ddof=1``.
    """
    period = np.where(series[time_column_name] < pd.Timestamp(cutoff), PERIOD_PRE, PERIOD_POST)
    rows = []
    for label in (PERIOD_PRE, PERIOD_POST):
        subset = series[period == label]
        row = {"Period": label, "N": len(subset)}
        for outcome in outcome_column_names:
            row[f"Mean_{outcome}"] = subset[outcome].mean()
            row[f"Median_{outcome}"] = subset[outcome].median()
            row[f"SD_{outcome}"] = subset[outcome].std()
        rows.append(row)
    return pd.DataFrame(rows)


def prepost_differences(comparison: pd.DataFrame, outcome_column_names: Sequence[str]) -> pd.DataFrame:
    """Absolute and relative (percent) change of the median between periods."""
    pre = comparison.set_index("Period").loc[PERIOD_PRE]
    post = comparison.set_index("Period").loc[PERIOD_POST]
    rows = []
    for outcome in outcome_column_names:
        pre_median = pre[f"Median_{outcome}"]
        post_median = post[f"Median_{outcome}"]
        absolute = post_median - pre_median
        relative = absolute / pre_median * 100 if pre_median != 0 else np.nan
        rows.append({
            "Variable": outcome,
            "Pre_Median": pre_median,
            "Post_Median": post_median,
            "Absolute_Change": absolute,
            "Relative_Change_Pct": relative,
        })
    return pd.DataFrame(rows)


def did_cell_means(panel: pd.DataFrame, outcome_column_names: Sequence[str]) -> pd.DataFrame:
    """N and mean outcome per (treated, post) cell."""
    grouped = panel.groupby([KEY_TREATED, KEY_POST])
    table = grouped.size().rename("N").to_frame()
    for outcome in outcome_column_names:
        table[f"Mean_{outcome}"] = grouped[outcome].mean()
    return table.reset_index()


def did_event_summary(
    result: DIDModelResult,
) -> pd.DataFrame:
    """Pre/Post rows of treated mean, control mean and their difference."""
    manual = result.manual
    treated_col = f"{result.treated_label}_Mean"
    control_col = f"{result.control_label}_Mean"
    return pd.DataFrame(
        {
            "Period": [PERIOD_PRE, PERIOD_POST],
            treated_col: [manual.treated_pre, manual.treated_post],
            control_col: [manual.control_pre, manual.control_post],
            "Difference": [
                manual.treated_pre - manual.control_pre,
                manual.treated_post - manual.control_post,
            ],
        }
    )


# --- Interpretation text ---

def significance_text(p_value: float, alpha: float = 0.05) -> str:
    if np.isfinite(p_value) and p_value < alpha:
        return f"statistically significant at α={alpha:g}"
    return f"not statistically significant at α={alpha:g}"


def interpret_its(result: ITSModelResult, alpha: float = 0.05, unit: str = "Mbps") -> List[str]:
    """Human-readable lines for one ITS fit."""
    level, slope = result.level_change, result.slope_change
    lines = [
        f"{result.outcome}:",
        f"  Immediate effect (level change): {level.estimate:.2f} {unit} (p = {level.p_value:.4f}), "
        f"{significance_text(level.p_value, alpha)}",
        f"  Trend change (slope change): {slope.estimate:.2f} {unit}/month (p = {slope.p_value:.4f}), "
        f"{significance_text(slope.p_value, alpha)}",
        f"  Model fit: R² = {result.r_squared:.3f}, Adjusted R² = {result.adj_r_squared:.3f}",
    ]
    dw = result.durbin_watson
    if np.isfinite(dw.p_value) and dw.p_value < alpha:
        lines.append(
            f"  Durbin-Watson = {dw.statistic:.3f} (p = {dw.p_value:.4f}): residuals show positive serial correlation"
        )
    return lines


def interpret_placebo(results: PlaceboResults) -> str:
    return (
        f"{results.p_value * 100:.1f}% of random intervention dates produce effects >= actual "
        f"(placebo p = {results.p_value:.4f}, {len(results.replications)} draws)"
    )


def interpret_did(
    result: DIDModelResult,
    alpha: float = 0.05,
    treatment_name: str = "Tariff reform",
    unit: str = "Mbps",
) -> List[str]:
    """Human-readable lines for one DID fit, including the parallel-trends caveat."""
    att = result.interaction
    lines = [
        f"ATT ({result.outcome}): {att.estimate:.2f} {unit} (SE = {att.std_err:.2f}, p = {att.p_value:.4f})",
        f"  95% CI: [{att.ci_lower:.2f}, {att.ci_upper:.2f}]",
    ]
    if np.isfinite(att.p_value) and att.p_value < alpha:
        direction = "increased" if att.estimate > 0 else "decreased"
        lines.append(
            f"  {treatment_name} {direction} {result.treated_label} {result.outcome} by "
            f"{abs(att.estimate):.2f} {unit} (statistically significant)"
        )
    else:
        lines.append(f"  No statistically significant effect detected at α={alpha:g}")

    trends = result.parallel_trends
    lines.append(
        f"  Pre-treatment differential trend: {trends.coefficient:.4f} (p = {trends.p_value:.4f})"
    )
    if trends.violated:
        lines.append(
            "  Caution: parallel trends assumption violated (p < "
            f"{alpha:g}); the DID estimate may be biased"
        )
    return lines


# --- Plotting ---

def plot_its(
    series: pd.DataFrame,
    result: ITSModelResult,
    time_column_name: str,
    intervention_date: pd.Timestamp,
    treatment_name_label: str = "Intervention",
    observed_color: str = "black",
    fitted_color: str = "#0072B2",
    counterfactual_color: str = "red",
    save_plot_config: Union[bool, Dict[str, str]] = False,
) -> None:
    """Plot the observed outcome with its fitted and counterfactual ITS series.

    Parameters
    ----------
    series : pd.DataFrame
        The series the model was fitted on.
    result : ITSModelResult
        Fit whose `fitted` and `counterfactual` arrays align with `series`.
    time_column_name : str
        Date column used for the x-axis.
    intervention_date : pd.Timestamp
        Position of the vertical dashed line.
    treatment_name_label : str
        Legend label for the intervention line.
    observed_color, fitted_color, counterfactual_color : str
        Line colors.
    save_plot_config : Union[bool, Dict[str, str]], default False
        - If ``False``: the plot is displayed with `plt.show()` and not saved.
        - If ``True``: saved as ``ITS_<outcome>.png`` in the working directory.
        - If a ``dict``: may hold 'filename', 'extension', 'directory' and
          'display' (set to ``False`` to skip `plt.show()`).

    Raises
    ------
    DataIntegrityError
        If the fitted arrays do not align with `series`.
    NetpolicyPlottingError
        If the figure cannot be written.
    """
    dates = pd.DatetimeIndex(series[time_column_name])
    observed = series[result.outcome].to_numpy(dtype=float)
    if len(result.fitted) != len(observed) or len(result.counterfactual) != len(observed):
        raise DataIntegrityError("Fitted and counterfactual series must match the observed series length.")

    plot_theme_settings = {
        "figure.facecolor": "white",
        "figure.figsize": (11, 5),
        "figure.dpi": 100,
        "lines.linewidth": 1.2,
        "font.size": 14,
        "axes.grid": True,
        "axes.facecolor": "white",
        "axes.spines.top": False,
        "axes.spines.right": False,
        "axes.titleweight": "bold",
        "axes.labelweight": "bold",
        "grid.alpha": 0.1,
        "legend.framealpha": 0.5,
        "legend.loc": "best",
        "legend.fontsize": "small",
    }

    with rc_context(rc=plot_theme_settings):
        plt.axvline(
            x=pd.Timestamp(intervention_date),
            color="grey",
            linestyle="--",
            linewidth=1.8,
            label=f"{treatment_name_label}, {pd.Timestamp(intervention_date).strftime('%Y-%m')}",
        )
        plt.plot(dates, observed, label="Observed", color=observed_color, linewidth=1.5)
        plt.plot(dates, result.fitted, label="Fitted", color=fitted_color, linewidth=1.5)
        plt.plot(dates, result.counterfactual, label="Counterfactual", color=counterfactual_color,
                 linestyle="--", linewidth=1.5)

        plt.xlabel(time_column_name)
        plt.ylabel(result.outcome)
        plt.title(
            f"Interrupted Time Series: {result.outcome}, "
            f"{dates.min().strftime('%Y-%m')} to {dates.max().strftime('%Y-%m')}",
            loc="left",
        )
        plt.legend()

        if save_plot_config:
            if isinstance(save_plot_config, dict):
                filename = save_plot_config.get("filename", f"ITS_{result.outcome}")
                extension = save_plot_config.get("extension", "png")
                directory = save_plot_config.get("directory", os.getcwd())
            else:
                filename = f"ITS_{result.outcome}"
                extension = "png"
                directory = os.getcwd()

            os.makedirs(directory, exist_ok=True)
            filepath = os.path.join(directory, f"{filename}.{extension}")
            try:
                plt.savefig(filepath)
            except OSError as e:
                plt.close()
                raise NetpolicyPlottingError(f"Failed to save plot to {filepath}. Original error: {e}") from e

        if not save_plot_config or (isinstance(save_plot_config, dict) and save_plot_config.get("display", True)):
            plt.show()

        plt.close()


# --- Export ---

def save_tables(tables: Dict[str, pd.DataFrame], directory: str, prefix: Optional[str] = None) -> Dict[str, str]:
    """Write each table to ``<directory>/<prefix>_<name>.csv``.

    Returns
    -------
    Dict[str, str]
        Table name to written file path.
    """
    os.makedirs(directory, exist_ok=True)
    paths = {}
    for name, table in tables.items():
        stem = f"{prefix}_{name}" if prefix else name
        path = os.path.join(directory, f"{stem}.csv")
        table.to_csv(path, index=False)
        paths[name] = path
    return paths
