import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Union, Optional, List
import pandas as pd

from ..utils.datautils import build_series, assign_intervention
from ..utils.estutils import estimate_level_change
from ..utils.inferutils import (
    placebo_eligible_dates,
    validate_eligible_dates,
    draw_placebo_dates,
    empirical_p_value,
)
from ..utils.resultutils import placebo_table
from ..exceptions import NetpolicyError
from ..config_models import PlaceboConfig, PlaceboReplication, PlaceboResults


@dataclass(frozen=True)
class PlaceboOutput:
    """
    Container for the in-time placebo test.

    Attributes
    ----------
    results : PlaceboResults
        Actual level change, every replication and the empirical p-value.
    eligible_dates : pd.DatetimeIndex
        Fake cutoffs the draws were taken from, in series order.
    table : pd.DataFrame
        One row per replication (``Iteration``, ``Fake_Date``, ``Level_Change``).
    """
    results: PlaceboResults
    eligible_dates: pd.DatetimeIndex
    table: pd.DataFrame


class PLACEBO:
    """
    In-time placebo (randomization inference) test for an ITS level change.

    Fake intervention dates are drawn uniformly with replacement from the
    dates lying more than `buffer_months` away from the true intervention.
    At each fake date the intervention flags are rebuilt and the segmented
    regression is refitted; only its level-change coefficient is kept. The
    empirical p-value is the share of placebo level changes at least as
    large in magnitude as the actual one.

    All fake dates are drawn before any refit, so results are identical
    with and without `parallel`.

    Parameters
    ----------
    config : PlaceboConfig or dict
        Configuration object or dictionary. Besides the ITS fields it holds
        `outcome`, `n_placebo` (default 100), `seed` (default 42),
        `buffer_months` (default 6), `min_eligible_dates` (default 10),
        `parallel` (default False) and `cores`.
    """

    def __init__(self, config: Union[PlaceboConfig, dict]) -> None:
        if isinstance(config, dict):
            config = PlaceboConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.time: str = config.time
        self.outcome: str = config.outcome
        self.metric_col: Optional[str] = config.metric_col
        self.metric_kind: Optional[str] = config.metric_kind
        self.intervention_date: pd.Timestamp = config.intervention_date
        self.n_placebo: int = config.n_placebo
        self.seed: int = config.seed
        self.buffer_months: int = config.buffer_months
        self.min_eligible_dates: int = config.min_eligible_dates
        self.parallel: bool = config.parallel
        self.cores: Optional[int] = config.cores

    def _level_change_at(self, series: pd.DataFrame, fake_date: pd.Timestamp) -> float:
        return estimate_level_change(assign_intervention(series, self.time, fake_date), self.outcome)

    def fit(self) -> PlaceboOutput:
        """
        Run the placebo replications.

        Returns
        -------
        PlaceboOutput

        Raises
        ------
        DataIntegrityError
            If the records are malformed.
        InsufficientEligibleDatesError
            If fewer than `min_eligible_dates` dates survive the buffer.
        InsufficientDataError, SingularDesignError
            If the actual-date fit cannot be estimated.
        """
        # Step 1: Series and actual effect
        series = build_series(
            self.df, self.time, self.intervention_date, [self.outcome],
            metric_column_name=self.metric_col, metric_kind=self.metric_kind,
        )
        actual_level_change = self._level_change_at(series, self.intervention_date)

        # Step 2: Eligible dates and draws
        eligible = placebo_eligible_dates(series[self.time], self.intervention_date, self.buffer_months)
        validate_eligible_dates(eligible, self.min_eligible_dates)
        if len(eligible) < self.n_placebo:
            warnings.warn(
                f"{len(eligible)} eligible placebo dates for {self.n_placebo} draws; "
                "duplicate fake dates will occur.",
                UserWarning
            )
        fake_dates = draw_placebo_dates(eligible, self.n_placebo, seed=self.seed)

        # Step 3: Refit at every fake date
        try:
            if self.parallel:
                with ThreadPoolExecutor(max_workers=self.cores) as executor:
                    effects: List[float] = list(
                        executor.map(lambda d: self._level_change_at(series, d), fake_dates)
                    )
            else:
                effects = [self._level_change_at(series, d) for d in fake_dates]
        except NetpolicyError:
            raise
        except Exception as e:
            raise NetpolicyError(f"Unexpected error during placebo replications: {str(e)}") from e

        replications = [
            PlaceboReplication(iteration=i + 1, fake_date=fake_date, level_change=effect)
            for i, (fake_date, effect) in enumerate(zip(fake_dates, effects))
        ]
        results = PlaceboResults(
            outcome=self.outcome,
            intervention_date=self.intervention_date,
            actual_level_change=actual_level_change,
            replications=replications,
            p_value=empirical_p_value(effects, actual_level_change),
            n_eligible=len(eligible),
            seed=self.seed,
            buffer_months=self.buffer_months,
        )
        return PlaceboOutput(results=results, eligible_dates=eligible, table=placebo_table(results))
