import warnings
import numpy as np
import pandas as pd
from typing import Optional, List, Sequence, Any
from netpolicy.exceptions import DataIntegrityError, UnbalancedCutoffError

# Derived column names added by the panel builder
KEY_TIME_INDEX = "time_index"
KEY_INTERVENTION = "intervention_flag"
KEY_TIME_SINCE = "time_since_intervention"
KEY_TREATED = "treated"
KEY_POST = "post"
KEY_GROUP = "group"


def prepare_records(
    df: pd.DataFrame,
    time_column_name: str,
    outcome_column_names: Sequence[str],
    metric_column_name: Optional[str] = None,
    metric_kind: Optional[str] = None,
) -> pd.DataFrame:
    """Filter, validate and sort one population's monthly records.

    Parameters
    ----------
    df : pd.DataFrame
        Cleaned records for a single population (country x internet type).
    time_column_name : str
        Name of the first-of-month date column.
    outcome_column_names : Sequence[str]
        Outcome columns that must be present and free of missing values.
    metric_column_name : str, optional
        Column holding the metric-aggregation kind (e.g. "median").
    metric_kind : str, optional
        Aggregation kind to keep. If None, no filtering is applied.

    Returns
    -------
    pd.DataFrame
        A new DataFrame sorted ascending by date with a fresh RangeIndex. The
        date column is converted to ``datetime64``.

    Raises
    ------
    DataIntegrityError
        If required columns are missing, dates cannot be parsed, the filter
        leaves no rows, a date appears more than once, or an outcome is
        missing or non-finite.
    """
    required_columns = {time_column_name, *outcome_column_names}
    if metric_kind is not None and metric_column_name is not None:
        required_columns.add(metric_column_name)
    missing_columns = required_columns - set(df.columns)
    if missing_columns:
        raise DataIntegrityError(
            f"Missing required columns in DataFrame: {', '.join(sorted(missing_columns))}"
        )

    records = df
    if metric_kind is not None and metric_column_name is not None:
        records = records[records[metric_column_name] == metric_kind]
    records = records.copy()

    if records.empty:
        raise DataIntegrityError(
            f"No records left after filtering '{metric_column_name}' == '{metric_kind}'."
        )

    try:
        records[time_column_name] = pd.to_datetime(records[time_column_name])
    except (ValueError, TypeError) as e:
        raise DataIntegrityError(f"Could not parse dates in column '{time_column_name}': {e}") from e
    if records[time_column_name].isna().any():
        raise DataIntegrityError(f"Missing dates in column '{time_column_name}'.")

    duplicated = records[time_column_name].duplicated(keep=False)
    if duplicated.any():
        dup_dates = sorted(records.loc[duplicated, time_column_name].dt.strftime("%Y-%m-%d").unique())
        raise DataIntegrityError(
            f"Duplicate dates found for the same population and metric kind: {', '.join(dup_dates)}"
        )

    for outcome in outcome_column_names:
        values = pd.to_numeric(records[outcome], errors="coerce")
        if not np.all(np.isfinite(values.to_numpy(dtype=float))):
            raise DataIntegrityError(f"Missing or non-numeric values in outcome column '{outcome}'.")
        records[outcome] = values.astype(float)

    if not records[time_column_name].is_monotonic_increasing:
        warnings.warn(
            f"Records were not sorted by '{time_column_name}'; auto-sorting applied.",
            UserWarning
        )
        records = records.sort_values(time_column_name)

    records = records.reset_index(drop=True)

    # Months are expected to be contiguous; the post-period index stays
    # sequential regardless, so gaps only produce a warning.
    months = records[time_column_name].dt.year * 12 + records[time_column_name].dt.month
    if (months.diff().dropna() > 1).any():
        warnings.warn(
            f"Calendar gaps detected in '{time_column_name}'; time indices remain sequential.",
            UserWarning
        )

    return records


def compute_time_since_intervention(dates: Any, cutoff: pd.Timestamp) -> np.ndarray:
    """Sequential post-period index relative to a cutoff.

    Zero before the cutoff. The first record with ``date >= cutoff`` gets 1 and
    each later record adds 1, whatever the calendar spacing, i.e.
    ``position - position_of_first_cutoff_row + 1``.

    Parameters
    ----------
    dates : array-like of datetime
        Dates sorted ascending.
    cutoff : pd.Timestamp
        Intervention date.

    Returns
    -------
    np.ndarray
        Integer array of the same length as `dates`.
    """
    dates = pd.DatetimeIndex(dates)
    post_mask = np.asarray(dates >= pd.Timestamp(cutoff))
    positions = np.arange(len(dates))
    if not post_mask.any():
        return np.zeros(len(dates), dtype=int)
    first_post_position = int(np.argmax(post_mask))
    return np.where(post_mask, positions - first_post_position + 1, 0).astype(int)


def assign_intervention(series: pd.DataFrame, time_column_name: str, cutoff: pd.Timestamp) -> pd.DataFrame:
    """Return a copy of `series` with intervention columns set for `cutoff`.

    The input is never modified; placebo replications rely on this to reuse
    one series across many fake cutoffs.
    """
    cutoff = pd.Timestamp(cutoff)
    out = series.copy()
    out[KEY_INTERVENTION] = (out[time_column_name] >= cutoff).astype(int)
    out[KEY_TIME_SINCE] = compute_time_since_intervention(out[time_column_name], cutoff)
    return out


def build_series(
    df: pd.DataFrame,
    time_column_name: str,
    cutoff: pd.Timestamp,
    outcome_column_names: Sequence[str],
    metric_column_name: Optional[str] = None,
    metric_kind: Optional[str] = None,
) -> pd.DataFrame:
    """Build the time-ordered ITS series for one population.

    Parameters
    ----------
    df : pd.DataFrame
        Cleaned records for a single population.
    time_column_name : str
        Name of the first-of-month date column.
    cutoff : pd.Timestamp
        Intervention date used for the derived flags.
    outcome_column_names : Sequence[str]
        Outcome columns to validate.
    metric_column_name, metric_kind : str, optional
        Aggregation-kind filter (e.g. keep only "median" rows).

    Returns
    -------
    pd.DataFrame
        Sorted records with three derived columns:

        - ``time_index``: 1-based sequential integer.
        - ``intervention_flag``: 1 if ``date >= cutoff`` else 0.
        - ``time_since_intervention``: see :func:`compute_time_since_intervention`.

    Raises
    ------
    DataIntegrityError
        See :func:`prepare_records`.

    Examples
    --------
    >>> df = pd.DataFrame({
    ...     "Date": pd.date_range("2021-10-01", periods=6, freq="MS"),
    ...     "DownloadSpeed": [10.0, 11.0, 12.0, 20.0, 22.0, 24.0],
    ... })
    >>> s = build_series(df, "Date", pd.Timestamp("2022-01-01"), ["DownloadSpeed"])
    >>> s["time_since_intervention"].tolist()
    [0, 0, 0, 1, 2, 3]
    """
    records = prepare_records(
        df, time_column_name, outcome_column_names,
        metric_column_name=metric_column_name, metric_kind=metric_kind
    )
    records[KEY_TIME_INDEX] = np.arange(1, len(records) + 1)
    return assign_intervention(records, time_column_name, cutoff)


def stack_did_panel(
    treated_records: pd.DataFrame,
    control_records: pd.DataFrame,
    time_column_name: str,
    cutoff: pd.Timestamp,
    treated_label: str = "Fixed",
    control_label: str = "Cellular",
) -> pd.DataFrame:
    """Stack treated and control records into a two-group DID panel.

    Each row is tagged with ``treated`` (1/0), ``post`` (1 if date >= cutoff)
    and a ``group`` label. Group sizes need not match.

    Raises
    ------
    UnbalancedCutoffError
        If either group has no observations before or after the cutoff.
    """
    cutoff = pd.Timestamp(cutoff)
    frames: List[pd.DataFrame] = []
    for records, treated_flag, label in (
        (treated_records, 1, treated_label),
        (control_records, 0, control_label),
    ):
        tagged = records.copy()
        tagged[KEY_GROUP] = label
        tagged[KEY_TREATED] = treated_flag
        tagged[KEY_POST] = (tagged[time_column_name] >= cutoff).astype(int)

        n_post = int(tagged[KEY_POST].sum())
        n_pre = len(tagged) - n_post
        if n_pre == 0 or n_post == 0:
            window = "pre" if n_pre == 0 else "post"
            raise UnbalancedCutoffError(
                f"Group '{label}' has no observations in the {window}-cutoff window "
                f"(cutoff {cutoff.strftime('%Y-%m-%d')})."
            )
        frames.append(tagged)

    return pd.concat(frames, ignore_index=True)
