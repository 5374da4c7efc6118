import warnings
from dataclasses import dataclass
from typing import Dict, Union, Optional
import pandas as pd

from ..utils.datautils import prepare_records, stack_did_panel
from ..utils.estutils import fit_did_regression
from ..utils.resultutils import did_results_table, did_summary_table, did_cell_means
from ..exceptions import NetpolicyError
from ..config_models import DIDConfig, DIDModelResult


@dataclass(frozen=True)
class DIDOutput:
    """
    Container for the results of the Difference-in-Differences estimator.

    Attributes
    ----------
    results : Dict[str, DIDModelResult]
        DID fit per outcome, keyed by outcome column.
    panel : pd.DataFrame
        The stacked two-group panel with ``group``, ``treated`` and ``post``.
    table : pd.DataFrame
        Coefficient rows for every outcome, including the ``ATT`` and
        ``PreTrend`` rows.
    summary : pd.DataFrame
        One row per outcome with the ATT, its CI, the manual cross-check and
        the parallel-trends diagnostic.
    cell_means : pd.DataFrame
        N and mean outcome per (treated, post) cell.
    """
    results: Dict[str, DIDModelResult]
    panel: pd.DataFrame
    table: pd.DataFrame
    summary: pd.DataFrame
    cell_means: pd.DataFrame


class DID:
    """
    Two-group Difference-in-Differences (DID) estimator.

    For each outcome fits ``y = a + g * treated + d * post + theta * treated * post``
    with HC1 standard errors; ``theta`` is the ATT. A pre-period test for
    differential trends is run alongside and a warning is issued when it
    rejects at `alpha`; the estimate is reported either way with the
    ``parallel_trends_violated`` flag set. The four cell means give a
    manual ATT for cross-checking.

    Parameters
    ----------
    config : DIDConfig or dict
        Configuration object or dictionary containing:
        - df : pd.DataFrame
            Treated population records.
        - control_df : pd.DataFrame
            Control population records.
        - cutoff_date : date-like, default 2024-08-01
        - outcomes, time, metric_col, metric_kind, alpha
            As for :class:`netpolicy.ITS`.
        - ci_multiplier : float, default 1.96
        - treated_label, control_label : str, default "Fixed", "Cellular"
    """

    def __init__(self, config: Union[DIDConfig, dict]) -> None:
        if isinstance(config, dict):
            config = DIDConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.control_df: pd.DataFrame = config.control_df
        self.time: str = config.time
        self.outcomes = list(config.outcomes)
        self.metric_col: Optional[str] = config.metric_col
        self.metric_kind: Optional[str] = config.metric_kind
        self.cutoff_date: pd.Timestamp = config.cutoff_date
        self.alpha: float = config.alpha
        self.ci_multiplier: float = config.ci_multiplier
        self.treated_label: str = config.treated_label
        self.control_label: str = config.control_label

    def fit(self) -> DIDOutput:
        """
        Fit the DID regression for every configured outcome.

        Returns
        -------
        DIDOutput

        Raises
        ------
        DataIntegrityError
            If either population's records are malformed.
        UnbalancedCutoffError
            If a group has no records before or after the cutoff.
        InsufficientDataError, SingularDesignError
            If a regression cannot be estimated.
        """
        # Step 1: Build the panel
        records = {}
        for label, frame in ((self.treated_label, self.df), (self.control_label, self.control_df)):
            records[label] = prepare_records(
                frame, self.time, self.outcomes,
                metric_column_name=self.metric_col, metric_kind=self.metric_kind,
            )
        panel = stack_did_panel(
            records[self.treated_label], records[self.control_label], self.time, self.cutoff_date,
            treated_label=self.treated_label, control_label=self.control_label,
        )

        # Step 2: Fit each outcome
        results: Dict[str, DIDModelResult] = {}
        for outcome in self.outcomes:
            try:
                result = fit_did_regression(
                    panel, outcome, self.time,
                    alpha=self.alpha,
                    ci_multiplier=self.ci_multiplier,
                    treated_label=self.treated_label,
                    control_label=self.control_label,
                )
            except NetpolicyError:
                raise
            except Exception as e:
                raise NetpolicyError(f"Unexpected error during DID estimation for '{outcome}': {str(e)}") from e

            if result.parallel_trends_violated:
                warnings.warn(
                    f"Parallel trends assumption violated for '{outcome}' "
                    f"(differential pre-trend {result.parallel_trends.coefficient:.4f}, "
                    f"p={result.parallel_trends.p_value:.4f}). The DID estimate may be biased.",
                    UserWarning
                )
            results[outcome] = result

        table = pd.concat([did_results_table(r) for r in results.values()], ignore_index=True)
        return DIDOutput(
            results=results,
            panel=panel,
            table=table,
            summary=did_summary_table(list(results.values())),
            cell_means=did_cell_means(panel, self.outcomes),
        )
