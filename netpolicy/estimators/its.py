import warnings
from dataclasses import dataclass
from typing import Dict, Union, Optional
import numpy as np
import pandas as pd

from ..utils.datautils import build_series
from ..utils.estutils import fit_segmented_regression
from ..utils.resultutils import its_results_table, its_timeseries_table, plot_its
from ..exceptions import (
    NetpolicyError,
    DataIntegrityError,
    NetpolicyPlottingError,
)
from ..config_models import ITSConfig, ITSModelResult


@dataclass(frozen=True)
class ITSOutput:
    """
    Container for the results of the Interrupted Time Series estimator.

    Attributes
    ----------
    results : Dict[str, ITSModelResult]
        Segmented-regression fit per outcome, keyed by outcome column.
    series : pd.DataFrame
        The prepared series (sorted, with ``time_index``,
        ``intervention_flag`` and ``time_since_intervention``).
    table : pd.DataFrame
        One row per outcome with coefficients, robust SEs, p-values, fit
        statistics and the Durbin-Watson diagnostic.
    timeseries : pd.DataFrame
        `series` augmented with ``<outcome>_Predicted`` and
        ``<outcome>_Counterfactual`` columns.
    """
    results: Dict[str, ITSModelResult]
    series: pd.DataFrame
    table: pd.DataFrame
    timeseries: pd.DataFrame


class ITS:
    """
    Interrupted Time Series (ITS) estimator.

    Fits the segmented regression

    ``y = b0 + b1 * time_index + b2 * intervention_flag + b3 * time_since_intervention``

    separately for each outcome, where ``b2`` is the immediate level change and
    ``b3`` the change in slope after the intervention. Inference uses
    Newey-West standard errors with Student's t p-values on n - 4 degrees of
    freedom. The counterfactual extrapolates the pre-intervention trend.

    Parameters
    ----------
    config : ITSConfig or dict
        Configuration object or dictionary containing:
        - df : pd.DataFrame
            Cleaned monthly records for one population.
        - time : str, default "Date"
            Date column.
        - outcomes : List[str], default ["DownloadSpeed", "UploadSpeed"]
            Outcomes fitted independently.
        - metric_col, metric_kind : str, default "MetricType", "median"
            Aggregation-kind filter.
        - intervention_date : date-like, default 2022-01-01
        - nw_lags : int, default 3
        - alpha : float, default 0.05
            Threshold for the Durbin-Watson warning.
        - display_graphs : bool, default False
        - save : Union[bool, dict], default False

    Examples
    --------
    >>> import pandas as pd
    >>> from netpolicy import ITS
    >>> df = pd.DataFrame({
    ...     "Date": pd.date_range("2020-01-01", periods=24, freq="MS"),
    ...     "DownloadSpeed": [20 + 0.5 * t + (10 if t >= 12 else 0) for t in range(24)],
    ... })
    >>> out = ITS({"df": df, "outcomes": ["DownloadSpeed"], "metric_kind": None,
    ...            "intervention_date": "2021-01-01"}).fit()  # doctest: +SKIP
    >>> round(out.results["DownloadSpeed"].level_change.estimate, 6)  # doctest: +SKIP
    10.0
    """

    def __init__(self, config: Union[ITSConfig, dict]) -> None:
        if isinstance(config, dict):
            config = ITSConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.time: str = config.time
        self.outcomes = list(config.outcomes)
        self.metric_col: Optional[str] = config.metric_col
        self.metric_kind: Optional[str] = config.metric_kind
        self.intervention_date: pd.Timestamp = config.intervention_date
        self.nw_lags: int = config.nw_lags
        self.alpha: float = config.alpha
        self.display_graphs: bool = config.display_graphs
        self.save: Union[bool, dict] = config.save

    def fit(self) -> ITSOutput:
        """
        Fit the segmented regression for every configured outcome.

        Returns
        -------
        ITSOutput

        Raises
        ------
        DataIntegrityError
            If the records are malformed (missing columns, duplicate dates,
            missing outcomes).
        InsufficientDataError
            If the series has 4 or fewer records.
        SingularDesignError
            If the intervention date leaves no record on one side of the
            cutoff.
        """
        # Step 1: Build the series
        series = build_series(
            self.df, self.time, self.intervention_date, self.outcomes,
            metric_column_name=self.metric_col, metric_kind=self.metric_kind,
        )

        # Step 2: Fit each outcome
        results: Dict[str, ITSModelResult] = {}
        for outcome in self.outcomes:
            try:
                result = fit_segmented_regression(series, outcome, nw_lags=self.nw_lags)
            except NetpolicyError:
                raise
            except Exception as e:
                raise NetpolicyError(f"Unexpected error during ITS estimation for '{outcome}': {str(e)}") from e

            dw = result.durbin_watson
            if np.isfinite(dw.p_value) and dw.p_value < self.alpha:
                warnings.warn(
                    f"Durbin-Watson test for '{outcome}' indicates positive serial correlation "
                    f"(DW={dw.statistic:.3f}, p={dw.p_value:.4f}).",
                    UserWarning
                )
            results[outcome] = result

        table = its_results_table(list(results.values()))
        timeseries = its_timeseries_table(series, list(results.values()))

        # Step 3: Plotting
        if self.display_graphs:
            for outcome, result in results.items():
                try:
                    plot_its(
                        series,
                        result,
                        time_column_name=self.time,
                        intervention_date=self.intervention_date,
                        save_plot_config=self.save,
                    )
                except (NetpolicyPlottingError, DataIntegrityError) as e:
                    warnings.warn(f"Plotting failed: {str(e)}", UserWarning)
                except Exception as e:
                    warnings.warn(f"Unexpected plotting error: {str(e)}", UserWarning)

        return ITSOutput(results=results, series=series, table=table, timeseries=timeseries)
