# netpolicy/tests/conftest.py
import pytest
import numpy as np
import pandas as pd


def _records(dates, download, upload, metric_kind="median", country="Azerbaijan", internet_type="Fixed"):
    return pd.DataFrame({
        "Date": pd.DatetimeIndex(dates),
        "Country": country,
        "InternetType": internet_type,
        "MetricType": metric_kind,
        "DownloadSpeed": np.asarray(download, dtype=float),
        "UploadSpeed": np.asarray(upload, dtype=float),
    })


@pytest.fixture
def make_records():
    """Factory for single-population records in the cleaned-panel layout."""
    return _records


@pytest.fixture
def scenario_a_df() -> pd.DataFrame:
    """24 noise-free months, cutoff at month 13: pre-slope 0.5, level +10, slope change +1.5."""
    dates = pd.date_range("2020-01-01", periods=24, freq="MS")
    t = np.arange(1, 25)
    post = (t >= 13).astype(int)
    since = np.where(post == 1, t - 12, 0)
    download = 20 + 0.5 * t + 10 * post + 1.5 * since
    upload = 5 + 0.2 * t + 2 * post + 0.1 * since
    return _records(dates, download, upload)


@pytest.fixture
def linear_df() -> pd.DataFrame:
    """30 noise-free months on a single line, no break anywhere."""
    dates = pd.date_range("2020-01-01", periods=30, freq="MS")
    t = np.arange(1, 31)
    return _records(dates, 12 + 0.75 * t, 3 + 0.1 * t)


@pytest.fixture
def onlineaz_df() -> pd.DataFrame:
    """April 2019 to September 2025 with a break in January 2022, median and mean rows."""
    rng = np.random.default_rng(1)
    dates = pd.date_range("2019-04-01", periods=78, freq="MS")
    t = np.arange(1, 79)
    post = (dates >= pd.Timestamp("2022-01-01")).astype(int)
    since = np.where(post == 1, t - int(np.argmax(post)), 0)
    download = 20 + 0.3 * t + 8 * post + 0.5 * since + rng.normal(0, 1.5, 78)
    upload = 10 + 0.15 * t + 3 * post + 0.2 * since + rng.normal(0, 0.8, 78)
    median_rows = _records(dates, download, upload, metric_kind="median")
    mean_rows = _records(dates, download * 1.2, upload * 1.2, metric_kind="mean")
    return pd.concat([median_rows, mean_rows], ignore_index=True)


@pytest.fixture
def scenario_b_dfs():
    """Two balanced 20-month groups, cutoff at month 11; treated jumps +5 at the cutoff.

    Both groups share the same zigzag around a flat level, so pre-period trends
    are identical and the residual variance is non-zero.
    """
    dates = pd.date_range("2023-09-01", periods=20, freq="MS")
    zigzag = np.tile([0.3, -0.3], 10)
    post = (np.arange(1, 21) >= 11).astype(int)
    treated = _records(dates, 60 + zigzag + 5 * post, 12 + zigzag + 2 * post, internet_type="Fixed")
    control = _records(dates, 50 + zigzag, 10 + zigzag, internet_type="Cellular")
    return treated, control, pd.Timestamp("2024-07-01")


@pytest.fixture
def scenario_b_exact_dfs():
    """Noise-free two-group panel: control flat at 50, treated flat at 60 then 65 from month 11."""
    dates = pd.date_range("2023-09-01", periods=20, freq="MS")
    post = (np.arange(1, 21) >= 11).astype(int)
    treated = _records(dates, 60.0 + 5 * post, 12.0 + 2 * post, internet_type="Fixed")
    control = _records(dates, np.full(20, 50.0), np.full(20, 10.0), internet_type="Cellular")
    return treated, control, pd.Timestamp("2024-07-01")
