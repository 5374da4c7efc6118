"""End-to-end runners for the two Azerbaijan policy studies.

Each outcome variable is estimated in its own estimator call, so a failure
for one variable (e.g. missing upload speeds) is recorded in the run's
``execution_summary`` without aborting the others.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union
import pandas as pd

from .estimators.its import ITS
from .estimators.placebo import PLACEBO
from .estimators.did import DID
from .exceptions import NetpolicyError
from .config_models import (
    ONLINEAZ_DATE,
    TARIFF_DATE,
    DEFAULT_OUTCOMES,
    DEFAULT_NW_LAGS,
    DEFAULT_N_PLACEBO,
    DEFAULT_SEED,
    DEFAULT_BUFFER_MONTHS,
    DEFAULT_MIN_ELIGIBLE_DATES,
    DEFAULT_ALPHA,
    DID_CI_MULTIPLIER,
)
from .utils.resultutils import (
    its_results_table,
    its_timeseries_table,
    placebo_table,
    did_summary_table,
    did_cell_means,
    did_event_summary,
    prepost_comparison,
    prepost_differences,
    interpret_its,
    interpret_placebo,
    interpret_did,
    save_tables,
)


@dataclass(frozen=True)
class StudyOutput:
    """
    Results of one policy study.

    Attributes
    ----------
    name : str
        Study identifier, also the file prefix for saved tables.
    results : Dict[str, Any]
        Estimator outputs keyed by outcome (and ``"placebo"`` for the ITS study).
    tables : Dict[str, pd.DataFrame]
        Result tables for reporting, keyed by table name.
    summary : List[str]
        Interpretation lines.
    execution_summary : Dict[str, Any]
        ``errors`` maps a failed step to ``"<ErrorClass>: message"``;
        ``saved_files`` maps table names to written paths.
    """
    name: str
    results: Dict[str, Any]
    tables: Dict[str, pd.DataFrame]
    summary: List[str]
    execution_summary: Dict[str, Any] = field(default_factory=dict)


def _error_text(error: Exception) -> str:
    return f"{type(error).__name__}: {error}"


def run_onlineaz_analysis(
    df: pd.DataFrame,
    time: str = "Date",
    outcomes: Sequence[str] = tuple(DEFAULT_OUTCOMES),
    metric_col: Optional[str] = "MetricType",
    metric_kind: Optional[str] = "median",
    intervention_date: Any = ONLINEAZ_DATE,
    nw_lags: int = DEFAULT_NW_LAGS,
    placebo_outcome: str = "DownloadSpeed",
    n_placebo: int = DEFAULT_N_PLACEBO,
    seed: int = DEFAULT_SEED,
    buffer_months: int = DEFAULT_BUFFER_MONTHS,
    min_eligible_dates: int = DEFAULT_MIN_ELIGIBLE_DATES,
    alpha: float = DEFAULT_ALPHA,
    output_dir: Optional[str] = None,
    display_graphs: bool = False,
    save: Union[bool, Dict[str, str]] = False,
) -> StudyOutput:
    """
    Impact of the "Onlayn Azərbaycan" deployment on fixed-internet speeds.

    Runs the ITS estimator per outcome, the placebo test on
    `placebo_outcome`, and a pre/post comparison of the outcomes that fitted.

    Parameters
    ----------
    df : pd.DataFrame
        Cleaned Azerbaijan fixed-internet records (may hold several metric kinds).
    output_dir : str, optional
        If given, every table is written there as ``onlineaz_<table>.csv``.

    Other parameters are forwarded to :class:`netpolicy.ITS` and
    :class:`netpolicy.PLACEBO`.

    Returns
    -------
    StudyOutput
        Tables ``its_results``, ``its_timeseries``, ``placebo_distribution``,
        ``prepost_comparison`` and ``prepost_differences`` (those whose inputs
        succeeded).
    """
    shared = {
        "df": df,
        "time": time,
        "metric_col": metric_col,
        "metric_kind": metric_kind,
        "intervention_date": intervention_date,
        "nw_lags": nw_lags,
        "alpha": alpha,
    }
    errors: Dict[str, str] = {}
    its_outputs = {}
    for outcome in outcomes:
        try:
            its_outputs[outcome] = ITS({
                **shared,
                "outcomes": [outcome],
                "display_graphs": display_graphs,
                "save": save,
            }).fit()
        except NetpolicyError as e:
            errors[outcome] = _error_text(e)

    placebo_output = None
    try:
        placebo_output = PLACEBO({
            **shared,
            "outcomes": [placebo_outcome],
            "outcome": placebo_outcome,
            "n_placebo": n_placebo,
            "seed": seed,
            "buffer_months": buffer_months,
            "min_eligible_dates": min_eligible_dates,
        }).fit()
    except NetpolicyError as e:
        errors["placebo"] = _error_text(e)

    tables: Dict[str, pd.DataFrame] = {}
    summary: List[str] = []
    model_results = {outcome: out.results[outcome] for outcome, out in its_outputs.items()}
    if its_outputs:
        series = next(iter(its_outputs.values())).series
        fitted_outcomes = list(its_outputs)
        tables["its_results"] = its_results_table(list(model_results.values()))
        tables["its_timeseries"] = its_timeseries_table(series, list(model_results.values()))
        comparison = prepost_comparison(series, time, fitted_outcomes, pd.Timestamp(intervention_date))
        tables["prepost_comparison"] = comparison
        tables["prepost_differences"] = prepost_differences(comparison, fitted_outcomes)

        summary.append("Interrupted Time Series Results:")
        for result in model_results.values():
            summary.extend(interpret_its(result, alpha=alpha))
        for row in tables["prepost_differences"].itertuples(index=False):
            summary.append(
                f"{row.Variable}: median {row.Pre_Median:.2f} -> {row.Post_Median:.2f} Mbps "
                f"({row.Absolute_Change:+.2f} Mbps, {row.Relative_Change_Pct:+.1f}%)"
            )

    if placebo_output is not None:
        tables["placebo_distribution"] = placebo_table(placebo_output.results)
        summary.append(f"Placebo test ({placebo_outcome}): {interpret_placebo(placebo_output.results)}")

    for step, message in errors.items():
        summary.append(f"{step} failed: {message}")

    results: Dict[str, Any] = dict(its_outputs)
    if placebo_output is not None:
        results["placebo"] = placebo_output

    execution_summary: Dict[str, Any] = {"errors": errors}
    if output_dir is not None:
        execution_summary["saved_files"] = save_tables(tables, output_dir, prefix="onlineaz")

    return StudyOutput(
        name="onlineaz",
        results=results,
        tables=tables,
        summary=summary,
        execution_summary=execution_summary,
    )


def run_tariff_analysis(
    treated_df: pd.DataFrame,
    control_df: pd.DataFrame,
    time: str = "Date",
    outcomes: Sequence[str] = tuple(DEFAULT_OUTCOMES),
    metric_col: Optional[str] = "MetricType",
    metric_kind: Optional[str] = "median",
    cutoff_date: Any = TARIFF_DATE,
    ci_multiplier: float = DID_CI_MULTIPLIER,
    treated_label: str = "Fixed",
    control_label: str = "Cellular",
    alpha: float = DEFAULT_ALPHA,
    output_dir: Optional[str] = None,
) -> StudyOutput:
    """
    Impact of the August 2024 fixed-internet tariff reform.

    Fixed internet is the treated population and cellular internet the
    control. The DID estimator runs once per outcome.

    Parameters
    ----------
    treated_df, control_df : pd.DataFrame
        Cleaned Azerbaijan fixed and cellular records.
    output_dir : str, optional
        If given, every table is written there as ``tariff_<table>.csv``.

    Returns
    -------
    StudyOutput
        Tables ``did_results``, ``did_summary``, ``did_cell_means`` and
        ``did_event_summary``. ``execution_summary["parallel_trends_violated"]``
        maps each fitted outcome to its pre-test flag.
    """
    errors: Dict[str, str] = {}
    did_outputs = {}
    for outcome in outcomes:
        try:
            did_outputs[outcome] = DID({
                "df": treated_df,
                "control_df": control_df,
                "time": time,
                "outcomes": [outcome],
                "metric_col": metric_col,
                "metric_kind": metric_kind,
                "cutoff_date": cutoff_date,
                "ci_multiplier": ci_multiplier,
                "treated_label": treated_label,
                "control_label": control_label,
                "alpha": alpha,
            }).fit()
        except NetpolicyError as e:
            errors[outcome] = _error_text(e)

    tables: Dict[str, pd.DataFrame] = {}
    summary: List[str] = []
    model_results = {outcome: out.results[outcome] for outcome, out in did_outputs.items()}
    if did_outputs:
        fitted_outcomes = list(did_outputs)
        panel = did_outputs[fitted_outcomes[0]].panel
        tables["did_results"] = pd.concat([out.table for out in did_outputs.values()], ignore_index=True)
        tables["did_summary"] = did_summary_table(list(model_results.values()))
        tables["did_cell_means"] = did_cell_means(panel, fitted_outcomes)
        tables["did_event_summary"] = pd.concat(
            [did_event_summary(result).assign(Variable=outcome) for outcome, result in model_results.items()],
            ignore_index=True,
        )

        summary.append(f"Treatment: {treated_label} internet; control: {control_label} internet")
        for result in model_results.values():
            summary.extend(interpret_did(result, alpha=alpha))

    for step, message in errors.items():
        summary.append(f"{step} failed: {message}")

    execution_summary: Dict[str, Any] = {
        "errors": errors,
        "parallel_trends_violated": {
            outcome: result.parallel_trends_violated for outcome, result in model_results.items()
        },
    }
    if output_dir is not None:
        execution_summary["saved_files"] = save_tables(tables, output_dir, prefix="tariff")

    return StudyOutput(
        name="tariff",
        results=dict(did_outputs),
        tables=tables,
        summary=summary,
        execution_summary=execution_summary,
    )
