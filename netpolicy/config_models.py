from typing import List, Optional, Any, Dict, Union
import pandas as pd
import numpy as np
from pydantic import BaseModel, Field, model_validator
from netpolicy.exceptions import DataIntegrityError, NetpolicyConfigError


# --- Study constants ---

ONLINEAZ_DATE = pd.Timestamp("2022-01-01")  # "Onlayn Azərbaycan" wide deployment
TARIFF_DATE = pd.Timestamp("2024-08-01")  # fixed-internet tariff reform

DEFAULT_OUTCOMES = ["DownloadSpeed", "UploadSpeed"]
DEFAULT_NW_LAGS = 3
DEFAULT_N_PLACEBO = 100
DEFAULT_SEED = 42
DEFAULT_BUFFER_MONTHS = 6
DEFAULT_MIN_ELIGIBLE_DATES = 10
DEFAULT_ALPHA = 0.05
DID_CI_MULTIPLIER = 1.96


def _to_timestamp(value: Any, field_name: str) -> pd.Timestamp:
    try:
        stamp = pd.Timestamp(value)
    except (TypeError, ValueError) as e:
        raise NetpolicyConfigError(f"'{field_name}' is not a valid date: {value!r}") from e
    if pd.isna(stamp):
        raise NetpolicyConfigError(f"'{field_name}' cannot be missing.")
    return stamp


class BasePanelConfig(BaseModel):
    """
    Base Pydantic model for estimator configurations.
    Holds the cleaned population records and the columns the estimators read.
    """
    df: pd.DataFrame = Field(..., description="Cleaned monthly records for one population (country x internet type).")
    time: str = Field(default="Date", description="Name of the first-of-month date column.")
    outcomes: List[str] = Field(default_factory=lambda: list(DEFAULT_OUTCOMES), min_length=1, description="Outcome columns analysed independently.")
    metric_col: Optional[str] = Field(default="MetricType", description="Column holding the metric-aggregation kind (mean/median).")
    metric_kind: Optional[str] = Field(default="median", description="Aggregation kind to keep. None disables the filter.")
    alpha: float = Field(default=DEFAULT_ALPHA, gt=0, lt=1, description="Significance threshold for interpretation text and diagnostics.")
    display_graphs: bool = Field(default=False, description="Whether to display plots of results.")
    save: Union[bool, Dict[str, str]] = Field(default=False, description="Configuration for saving plots. If False (default), plots are not saved. If True, plots are saved with default names. If a dict, it may hold 'filename', 'extension', 'directory' and 'display'.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'

    @model_validator(mode='after')
    def check_df_and_columns(self) -> "BasePanelConfig":
        df = self.df

        if df.empty:
            raise DataIntegrityError("Input DataFrame 'df' cannot be empty.")

        required_columns = {self.time, *self.outcomes}
        if self.metric_kind is not None and self.metric_col is not None:
            required_columns.add(self.metric_col)
        missing_columns = required_columns - set(df.columns)
        if missing_columns:
            raise DataIntegrityError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )

        if len(set(self.outcomes)) != len(self.outcomes):
            raise NetpolicyConfigError("'outcomes' must not contain duplicates.")
        return self


class ITSConfig(BasePanelConfig):
    """Configuration for the Interrupted Time Series (ITS) estimator."""
    intervention_date: Any = Field(default=ONLINEAZ_DATE, description="First month the intervention is in effect.")
    nw_lags: int = Field(default=DEFAULT_NW_LAGS, ge=0, description="Newey-West lag truncation.")

    @model_validator(mode='after')
    def normalize_intervention_date(self) -> "ITSConfig":
        self.intervention_date = _to_timestamp(self.intervention_date, "intervention_date")
        return self


class PlaceboConfig(ITSConfig):
    """
    Configuration for the in-time placebo (randomization inference) test.

    Fake intervention dates are drawn with replacement from the dates lying
    more than `buffer_months` away from the true intervention.
    """
    outcome: str = Field(default="DownloadSpeed", description="Outcome whose level change is tested.")
    n_placebo: int = Field(default=DEFAULT_N_PLACEBO, ge=1, description="Number of placebo replications.")
    seed: int = Field(default=DEFAULT_SEED, description="Seed for the fake-date draws.")
    buffer_months: int = Field(default=DEFAULT_BUFFER_MONTHS, ge=0, description="Exclusion buffer around the true intervention, in months.")
    min_eligible_dates: int = Field(default=DEFAULT_MIN_ELIGIBLE_DATES, ge=1, description="Minimum number of eligible fake dates.")
    parallel: bool = Field(default=False, description="Whether to refit placebo replications in a thread pool.")
    cores: Optional[int] = Field(default=None, ge=1, description="Number of workers when parallel is True. Defaults to the executor's choice if None.")

    @model_validator(mode='before')
    @classmethod
    def default_outcomes_to_outcome(cls, data: Any) -> Any:
        # Only the tested outcome needs to be present in df
        if isinstance(data, dict) and "outcomes" not in data:
            data = {**data, "outcomes": [data.get("outcome", "DownloadSpeed")]}
        return data

    @model_validator(mode='after')
    def check_outcome(self) -> "PlaceboConfig":
        if self.outcome not in self.df.columns:
            raise DataIntegrityError(
                f"Missing required columns in DataFrame 'df': {self.outcome}"
            )
        return self


class DIDConfig(BasePanelConfig):
    """
    Configuration for the two-group Difference-in-Differences (DID) estimator.

    `df` holds the treated population and `control_df` the control population;
    both are filtered with the same `metric_col`/`metric_kind` rule.
    """
    control_df: pd.DataFrame = Field(..., description="Cleaned monthly records for the control population.")
    cutoff_date: Any = Field(default=TARIFF_DATE, description="First month of the post-treatment window.")
    ci_multiplier: float = Field(default=DID_CI_MULTIPLIER, gt=0, description="Normal-approximation multiplier for confidence intervals.")
    treated_label: str = Field(default="Fixed", description="Label of the treated population.")
    control_label: str = Field(default="Cellular", description="Label of the control population.")

    @model_validator(mode='after')
    def check_control_df(self) -> "DIDConfig":
        control_df = self.control_df
        if control_df.empty:
            raise DataIntegrityError("Input DataFrame 'control_df' cannot be empty.")

        required_columns = {self.time, *self.outcomes}
        if self.metric_kind is not None and self.metric_col is not None:
            required_columns.add(self.metric_col)
        missing_columns = required_columns - set(control_df.columns)
        if missing_columns:
            raise DataIntegrityError(
                f"Missing required columns in DataFrame 'control_df': {', '.join(sorted(missing_columns))}"
            )

        if self.treated_label == self.control_label:
            raise NetpolicyConfigError("'treated_label' and 'control_label' must differ.")

        self.cutoff_date = _to_timestamp(self.cutoff_date, "cutoff_date")
        return self


# --- Pydantic Models for Estimator Results ---

class CoefficientResult(BaseModel):
    """A single regression coefficient with its (robust) inference."""
    name: str
    estimate: float
    std_err: float
    t_stat: float
    p_value: float
    ci_lower: Optional[float] = None
    ci_upper: Optional[float] = None

    model_config = {"frozen": True}


class DurbinWatsonResult(BaseModel):
    """Durbin-Watson statistic with its one-sided (positive autocorrelation) p-value."""
    statistic: float
    p_value: float
    method: str = Field(default="exact", description="'exact' (Imhof) or 'normal' approximation.")

    model_config = {"frozen": True}


class ITSModelResult(BaseModel):
    """Segmented-regression fit for one outcome."""
    outcome: str
    intercept: CoefficientResult
    time_trend: CoefficientResult
    level_change: CoefficientResult
    slope_change: CoefficientResult
    r_squared: float
    adj_r_squared: float
    durbin_watson: DurbinWatsonResult
    nobs: int
    df_resid: int
    nw_lags: int
    fitted: np.ndarray = Field(..., description="Predicted series using the observed intervention flags.")
    counterfactual: np.ndarray = Field(..., description="Predicted series with the intervention terms set to zero.")

    model_config = {"arbitrary_types_allowed": True, "frozen": True}


class PlaceboReplication(BaseModel):
    """One placebo draw: the fake cutoff and the level change estimated there."""
    iteration: int
    fake_date: pd.Timestamp
    level_change: float

    model_config = {"arbitrary_types_allowed": True, "frozen": True}


class PlaceboResults(BaseModel):
    """Randomization-inference summary for a level-change effect."""
    outcome: str
    intervention_date: pd.Timestamp
    actual_level_change: float
    replications: List[PlaceboReplication]
    p_value: float = Field(..., ge=0, le=1)
    n_eligible: int = Field(..., description="Number of fake cutoffs drawn from: dates outside the exclusion buffer, minus the first two and the last record of the series, where the segmented design is singular.")
    seed: int
    buffer_months: int

    model_config = {"arbitrary_types_allowed": True, "frozen": True}


class ParallelTrendsResult(BaseModel):
    """Pre-period differential-trend test (diagnostic, not a gate)."""
    coefficient: float
    std_err: float
    p_value: float
    violated: bool

    model_config = {"frozen": True}


class ManualDIDResult(BaseModel):
    """Four cell means and the resulting difference of differences."""
    treated_pre: float
    treated_post: float
    control_pre: float
    control_post: float
    treated_change: float
    control_change: float
    att: float

    model_config = {"frozen": True}


class DIDModelResult(BaseModel):
    """Regression DID for one outcome with HC1 inference."""
    outcome: str
    intercept: CoefficientResult
    treated: CoefficientResult
    post: CoefficientResult
    interaction: CoefficientResult
    parallel_trends: ParallelTrendsResult
    manual: ManualDIDResult
    nobs: int
    n_treated: int
    n_control: int
    n_pre: int
    n_post: int
    treated_label: str
    control_label: str

    model_config = {"frozen": True}

    @property
    def att(self) -> float:
        return self.interaction.estimate

    @property
    def parallel_trends_violated(self) -> bool:
        return self.parallel_trends.violated
