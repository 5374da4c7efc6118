import pytest
import numpy as np
import pandas as pd

from netpolicy.utils.datautils import (
    prepare_records,
    compute_time_since_intervention,
    assign_intervention,
    build_series,
    stack_did_panel,
    KEY_TIME_INDEX,
    KEY_INTERVENTION,
    KEY_TIME_SINCE,
    KEY_TREATED,
    KEY_POST,
    KEY_GROUP,
)
from netpolicy.exceptions import DataIntegrityError, UnbalancedCutoffError

OUTCOMES = ["DownloadSpeed", "UploadSpeed"]


# --- prepare_records ---

def test_prepare_records_filters_metric_kind(onlineaz_df):
    records = prepare_records(onlineaz_df, "Date", OUTCOMES, "MetricType", "median")
    assert len(records) == 78
    assert (records["MetricType"] == "median").all()
    assert isinstance(records.index, pd.RangeIndex)


def test_prepare_records_no_filter_keeps_all_rows(scenario_a_df):
    records = prepare_records(scenario_a_df, "Date", OUTCOMES)
    assert len(records) == len(scenario_a_df)


def test_prepare_records_missing_column(scenario_a_df):
    with pytest.raises(DataIntegrityError, match="Missing required columns"):
        prepare_records(scenario_a_df.drop(columns=["UploadSpeed"]), "Date", OUTCOMES)


def test_prepare_records_empty_after_filter(scenario_a_df):
    with pytest.raises(DataIntegrityError, match="No records left"):
        prepare_records(scenario_a_df, "Date", OUTCOMES, "MetricType", "p90")


def test_prepare_records_duplicate_dates(scenario_a_df):
    df = pd.concat([scenario_a_df, scenario_a_df.iloc[[3]]], ignore_index=True)
    with pytest.raises(DataIntegrityError, match="Duplicate dates.*2020-04-01"):
        prepare_records(df, "Date", OUTCOMES, "MetricType", "median")


def test_prepare_records_missing_outcome(scenario_a_df):
    df = scenario_a_df.copy()
    df.loc[5, "UploadSpeed"] = np.nan
    with pytest.raises(DataIntegrityError, match="UploadSpeed"):
        prepare_records(df, "Date", OUTCOMES)
    # Only the requested outcomes are checked
    records = prepare_records(df, "Date", ["DownloadSpeed"])
    assert len(records) == 24


def test_prepare_records_unparseable_dates(scenario_a_df):
    df = scenario_a_df.copy()
    df["Date"] = df["Date"].astype(str)
    df.loc[2, "Date"] = "not a date"
    with pytest.raises(DataIntegrityError, match="Could not parse dates"):
        prepare_records(df, "Date", OUTCOMES)


def test_prepare_records_sorts_with_warning(scenario_a_df):
    shuffled = scenario_a_df.sample(frac=1.0, random_state=3)
    with pytest.warns(UserWarning, match="auto-sorting applied"):
        records = prepare_records(shuffled, "Date", OUTCOMES)
    assert records["Date"].is_monotonic_increasing
    np.testing.assert_allclose(records["DownloadSpeed"], scenario_a_df["DownloadSpeed"])


def test_prepare_records_warns_on_calendar_gap(scenario_a_df):
    with pytest.warns(UserWarning, match="Calendar gaps"):
        prepare_records(scenario_a_df.drop(index=[7]), "Date", OUTCOMES)


def test_prepare_records_does_not_mutate_input(scenario_a_df):
    df = scenario_a_df.copy()
    df["Date"] = df["Date"].dt.strftime("%Y-%m-%d")
    before = df.copy()
    prepare_records(df, "Date", OUTCOMES)
    pd.testing.assert_frame_equal(df, before)


# --- time_since_intervention ---

@pytest.mark.parametrize("k", [1, 2, 5, 11, 18, 23])
def test_time_since_intervention_starts_at_cutoff_row(k):
    dates = pd.date_range("2021-01-01", periods=24, freq="MS")
    since = compute_time_since_intervention(dates, dates[k])
    expected = np.concatenate([np.zeros(k, dtype=int), np.arange(1, 24 - k + 1)])
    np.testing.assert_array_equal(since, expected)
    assert since[k] == 1


def test_time_since_intervention_cutoff_between_records():
    dates = pd.DatetimeIndex(["2021-01-01", "2021-02-01", "2021-04-01", "2021-05-01"])
    since = compute_time_since_intervention(dates, pd.Timestamp("2021-03-01"))
    np.testing.assert_array_equal(since, [0, 0, 1, 2])


def test_time_since_intervention_ignores_calendar_gaps():
    dates = pd.DatetimeIndex(["2021-01-01", "2021-02-01", "2021-03-01", "2021-07-01", "2022-01-01"])
    since = compute_time_since_intervention(dates, pd.Timestamp("2021-02-01"))
    np.testing.assert_array_equal(since, [0, 1, 2, 3, 4])


def test_time_since_intervention_cutoff_after_series():
    dates = pd.date_range("2021-01-01", periods=5, freq="MS")
    since = compute_time_since_intervention(dates, pd.Timestamp("2030-01-01"))
    np.testing.assert_array_equal(since, np.zeros(5))


# --- build_series / assign_intervention ---

def test_build_series_derived_columns(scenario_a_df):
    series = build_series(scenario_a_df, "Date", pd.Timestamp("2021-01-01"), OUTCOMES, "MetricType", "median")
    np.testing.assert_array_equal(series[KEY_TIME_INDEX], np.arange(1, 25))
    np.testing.assert_array_equal(series[KEY_INTERVENTION], [0] * 12 + [1] * 12)
    np.testing.assert_array_equal(series[KEY_TIME_SINCE], [0] * 12 + list(range(1, 13)))


def test_assign_intervention_returns_copy(scenario_a_df):
    series = build_series(scenario_a_df, "Date", pd.Timestamp("2021-01-01"), OUTCOMES)
    before = series.copy()
    moved = assign_intervention(series, "Date", pd.Timestamp("2020-06-01"))
    pd.testing.assert_frame_equal(series, before)
    assert moved[KEY_INTERVENTION].sum() == 19
    assert moved.loc[5, KEY_TIME_SINCE] == 1
    np.testing.assert_array_equal(moved[KEY_TIME_INDEX], series[KEY_TIME_INDEX])


# --- stack_did_panel ---

def test_stack_did_panel_tags_groups(scenario_b_dfs):
    treated, control, cutoff = scenario_b_dfs
    panel = stack_did_panel(treated, control, "Date", cutoff)
    assert len(panel) == 40
    assert set(panel[KEY_GROUP]) == {"Fixed", "Cellular"}
    assert panel.loc[panel[KEY_GROUP] == "Fixed", KEY_TREATED].eq(1).all()
    assert panel.loc[panel[KEY_GROUP] == "Cellular", KEY_TREATED].eq(0).all()
    assert panel[KEY_POST].sum() == 20
    assert panel.loc[panel["Date"] == cutoff, KEY_POST].eq(1).all()


def test_stack_did_panel_unequal_group_sizes(scenario_b_dfs):
    treated, control, cutoff = scenario_b_dfs
    panel = stack_did_panel(treated.iloc[4:], control, "Date", cutoff)
    assert len(panel) == 36


def test_stack_did_panel_empty_post_window(scenario_b_dfs):
    treated, control, cutoff = scenario_b_dfs
    with pytest.raises(UnbalancedCutoffError, match="'Cellular'.*post-cutoff"):
        stack_did_panel(treated, control[control["Date"] < cutoff], "Date", cutoff)


def test_stack_did_panel_empty_pre_window(scenario_b_dfs):
    treated, control, cutoff = scenario_b_dfs
    with pytest.raises(UnbalancedCutoffError, match="'Fixed'.*pre-cutoff"):
        stack_did_panel(treated[treated["Date"] >= cutoff], control, "Date", cutoff)
