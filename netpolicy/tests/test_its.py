import pytest
import numpy as np
import pandas as pd
from unittest.mock import patch

from netpolicy import ITS
from netpolicy.estimators.its import ITSOutput
from netpolicy.config_models import ITSConfig, ITSModelResult
from netpolicy.exceptions import DataIntegrityError, InsufficientDataError, SingularDesignError


@pytest.fixture
def scenario_a_config(scenario_a_df):
    return {
        "df": scenario_a_df,
        "intervention_date": "2021-01-01",
        "display_graphs": False,
    }


def test_its_creation(scenario_a_config):
    estimator = ITS(config=ITSConfig(**scenario_a_config))
    assert isinstance(estimator, ITS)
    assert estimator.intervention_date == pd.Timestamp("2021-01-01")
    assert estimator.nw_lags == 3


def test_its_fit_smoke(onlineaz_df):
    results = ITS({"df": onlineaz_df}).fit()
    assert isinstance(results, ITSOutput)
    assert set(results.results) == {"DownloadSpeed", "UploadSpeed"}
    assert all(isinstance(r, ITSModelResult) for r in results.results.values())
    assert len(results.series) == 78
    assert list(results.table["Variable"]) == ["DownloadSpeed", "UploadSpeed"]
    assert "DownloadSpeed_Counterfactual" in results.timeseries.columns


def test_its_scenario_a(scenario_a_config):
    results = ITS(scenario_a_config).fit()
    fit = results.results["DownloadSpeed"]
    assert fit.level_change.estimate == pytest.approx(10.0, abs=1e-8)
    assert fit.slope_change.estimate == pytest.approx(1.5, abs=1e-8)
    assert fit.r_squared == pytest.approx(1.0, abs=1e-10)


def test_its_counterfactual_continuity(onlineaz_df):
    results = ITS({"df": onlineaz_df, "outcomes": ["DownloadSpeed"]}).fit()
    ts = results.timeseries
    last_pre = ts.index[ts["Date"] < pd.Timestamp("2022-01-01")][-1]
    assert ts.loc[last_pre, "DownloadSpeed_Counterfactual"] == pytest.approx(
        ts.loc[last_pre, "DownloadSpeed_Predicted"], abs=1e-10
    )
    first_post = last_pre + 1
    assert ts.loc[first_post, "DownloadSpeed_Predicted"] - ts.loc[first_post, "DownloadSpeed_Counterfactual"] == pytest.approx(
        results.results["DownloadSpeed"].level_change.estimate + results.results["DownloadSpeed"].slope_change.estimate
    )


def test_its_does_not_mutate_input(onlineaz_df):
    before = onlineaz_df.copy()
    ITS({"df": onlineaz_df}).fit()
    pd.testing.assert_frame_equal(onlineaz_df, before)


def test_its_warns_on_serial_correlation(make_records):
    dates = pd.date_range("2019-01-01", periods=48, freq="MS")
    wave = 3 * np.sin(np.arange(48) * 2 * np.pi / 16)
    df = make_records(dates, 20 + 0.2 * np.arange(48) + wave, 5 + wave / 3)
    with pytest.warns(UserWarning, match="Durbin-Watson.*positive serial correlation"):
        results = ITS({"df": df, "intervention_date": "2021-01-01"}).fit()
    assert results.results["DownloadSpeed"].durbin_watson.p_value < 0.05


def test_its_missing_outcome_column(scenario_a_df):
    with pytest.raises(DataIntegrityError, match="Missing required columns.*UploadSpeed"):
        ITS({"df": scenario_a_df.drop(columns=["UploadSpeed"])})


def test_its_duplicate_dates(scenario_a_config, scenario_a_df):
    df = pd.concat([scenario_a_df, scenario_a_df.iloc[[0]]], ignore_index=True)
    with pytest.raises(DataIntegrityError, match="Duplicate dates"):
        ITS({**scenario_a_config, "df": df}).fit()


def test_its_insufficient_data(scenario_a_config, scenario_a_df):
    with pytest.raises(InsufficientDataError):
        ITS({**scenario_a_config, "df": scenario_a_df.iloc[10:14]}).fit()


def test_its_intervention_at_series_end(scenario_a_config):
    with pytest.raises(SingularDesignError):
        ITS({**scenario_a_config, "intervention_date": "2025-01-01"}).fit()


@patch("netpolicy.utils.resultutils.plt.show")
def test_its_plots_when_requested(mock_show, scenario_a_config):
    ITS({**scenario_a_config, "display_graphs": True}).fit()
    assert mock_show.call_count == 2


@patch("netpolicy.estimators.its.plot_its", side_effect=RuntimeError("backend down"))
def test_its_plotting_failure_is_a_warning(mock_plot, scenario_a_config):
    with pytest.warns(UserWarning, match="Unexpected plotting error: backend down"):
        results = ITS({**scenario_a_config, "display_graphs": True}).fit()
    assert "DownloadSpeed" in results.results
