"""
Closing Price Reconciler

A CLI tool that fetches the latest closing price of every stock listed in a Tokyo Stock
Exchange issues sheet, together with its percentage change over 1 day, 1 week, 2 weeks,
1 month and 6 months.

USAGE
    python src/closing_price_reconciler.py --file "data_j.xls"
    python src/closing_price_reconciler.py --file "data_j.xls" --source yfinance --batch-size 3

ARGUMENTS
    --file (required)
        Path to the listed-issues sheet (.xls, .xlsx or .csv). Column 2 holds the stock
        code and column 3 the stock name, as in the JPX "data_j.xls" download.

    --output (optional)
        Directory path for output CSV file. Defaults to script location.

    --source (optional)
        Quote source: "chart" (Yahoo Finance chart endpoint, default) or "yfinance".

    --proxy (optional)
        URL prefix to route chart requests through (the request URL is appended encoded).

    --batch-size (optional)
        Number of stocks fetched concurrently per batch. Defaults to 5.

    --batch-delay (optional)
        Pause in seconds between batches. Defaults to 1.5.

    --log-level (optional)
        Logging level for diagnostics. Defaults to WARNING.

REFERENCE DATE
    The closing price is taken for a single reference date shared by every stock in a run.
    While the Tokyo session is open (09:00 to 15:00 JST) today's close does not exist yet,
    so the previous calendar day is used; otherwise today is used. Each stock then anchors
    on its latest trading day on or before that date.

DEPENDENCIES
    requests - HTTP library for Yahoo Finance chart API calls.
    yfinance - Alternative quote source built on the same Yahoo Finance data.
    pandas   - Reads .xls/.xlsx sheets (with xlrd and openpyxl as engines).
"""

import argparse
import csv
import logging
import math
import os
import re
import sys
import threading
import time
import zipfile
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas
import requests
import xlrd
import yfinance
from openpyxl.utils.exceptions import InvalidFileException

logger = logging.getLogger(__name__)

# Exception Classes

class InputFileError(Exception):
    """Raised when the listed-issues sheet cannot be parsed."""
    pass


class CliArgumentError(Exception):
    """Raised when CLI arguments are invalid."""
    pass


class InvalidTickerError(Exception):
    """Raised when a stock has no usable ticker symbol."""
    pass


class QuoteTransportError(Exception):
    """Raised when the quote service is unreachable or answers with a non-success status."""
    pass


class QuoteDataError(Exception):
    """Raised when the quote service answers without usable price data."""
    pass


class RunInProgressError(Exception):
    """Raised when a batch run is started while another one is still running."""
    pass


# Constants

YAHOO_CHART_URL: str = "https://query1.finance.yahoo.com/v8/finance/chart/"  # Yahoo Finance chart API endpoint
YAHOO_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/134.0.6998.166 Safari/537.36"  # Browser user agent expected by Yahoo
TICKER_SUFFIX: str = ".T"  # Yahoo Finance suffix for Tokyo Stock Exchange listings
TICKER_CODE_LENGTH: int = 4  # Number of leading code characters that form the ticker
TICKER_CODE_PATTERN: str = r"^[A-Za-z0-9]+$"  # Allowed characters in a ticker code

BATCH_SIZE: int = 5  # Stocks fetched concurrently per batch
BATCH_DELAY_SECONDS: float = 1.5  # Pause between batches (Yahoo implicit rate limit)

SECONDS_PER_DAY: int = 86400  # Seconds in one calendar day
WINDOW_DAYS_BEFORE: int = 200  # History requested before the reference date (covers the 6 month lookback)
WINDOW_DAYS_AFTER: int = 14  # History requested after the reference date
LIST_N_LOOKBACK_DAYS: List[int] = [7, 14, 30, 180]  # Calendar-day lookbacks matched to the nearest trading day

EXCHANGE_TIMEZONE: timezone = timezone(timedelta(hours=9), "JST")  # Tokyo Stock Exchange local time (UTC+9)
SESSION_OPEN_MINUTES: int = 9 * 60  # 09:00 local, start of the trading session
SESSION_CLOSE_MINUTES: int = 15 * 60  # 15:00 local, end of the trading session (exclusive)

RUN_STATE_IDLE: str = "idle"  # Run created but not started
RUN_STATE_RUNNING: str = "running"  # Run is fetching prices
RUN_STATE_COMPLETED: str = "completed"  # Every stock has a result

NOT_AVAILABLE: str = "N/A"  # Placeholder for missing values in output
OUTPUT_FILENAME_PREFIX: str = "closing_prices"  # Output file name prefix, followed by the run date
LIST_S_SHEET_EXTENSIONS: List[str] = [".xls", ".xlsx", ".csv"]  # Accepted input file extensions

# Column indices of the JPX listed-issues sheet (data_j.xls)
COL_DATE: int = 0  # Date (YYYYMMDD)
COL_CODE: int = 1  # Stock code
COL_NAME: int = 2  # Stock name
COL_MARKET: int = 3  # Market / product category
COL_SECTOR33_NAME: int = 5  # 33-sector category
COL_SECTOR17_NAME: int = 7  # 17-sector category
COL_SCALE_NAME: int = 9  # Size category

# Sheet columns copied to the output, in order
LIST_TUPLE_DISPLAY_COLUMNS: List[Tuple[int, str]] = [
    (COL_DATE, "Date"),
    (COL_CODE, "Code"),
    (COL_NAME, "Name"),
    (COL_MARKET, "Market"),
    (COL_SECTOR33_NAME, "Sector (33)"),
    (COL_SECTOR17_NAME, "Sector (17)"),
    (COL_SCALE_NAME, "Size"),
]

# Result columns appended to the output, in order
LIST_TUPLE_RESULT_COLUMNS: List[Tuple[str, str]] = [
    ("n_price", "Close"),
    ("n_change_1d", "1 Day (%)"),
    ("n_change_7d", "1 Week (%)"),
    ("n_change_14d", "2 Weeks (%)"),
    ("n_change_30d", "1 Month (%)"),
    ("n_change_180d", "6 Months (%)"),
]


# Data Records

@dataclass(frozen=True)
class Instrument:
    """A unique stock from the input sheet, keyed by its raw code."""

    s_ticker: Optional[str]  # Yahoo Finance ticker (e.g. "7203.T"), None if the code is unusable
    s_raw_code: str  # Code exactly as it appears in the sheet
    s_name: str  # Display name


@dataclass(frozen=True)
class PricePoint:
    """A single trading day with a recorded close."""

    n_timestamp: int  # Unix timestamp in seconds
    n_close: float  # Closing price


@dataclass(frozen=True)
class PriceResult:
    """Outcome of resolving one stock. Exactly one of n_price and s_error is set."""

    n_price: Optional[float]
    s_actual_date: Optional[str]
    n_change_1d: Optional[float]
    n_change_7d: Optional[float]
    n_change_14d: Optional[float]
    n_change_30d: Optional[float]
    n_change_180d: Optional[float]
    s_error: Optional[str]

    @classmethod
    def failed(cls, s_error: str) -> "PriceResult":
        """Build a result carrying only an error message."""
        return cls(
            n_price=None,
            s_actual_date=None,
            n_change_1d=None,
            n_change_7d=None,
            n_change_14d=None,
            n_change_30d=None,
            n_change_180d=None,
            s_error=s_error,
        )


@dataclass
class ReconciliationRun:
    """State and output of one batch run. A new run replaces the previous one entirely."""

    s_reference_date: str = ""  # Shared reference date (YYYYMMDD)
    dict_results: Dict[str, PriceResult] = field(default_factory=dict)  # Raw code -> result
    list_dict_errors: List[Dict[str, str]] = field(default_factory=list)  # Failures in completion order
    s_state: str = RUN_STATE_IDLE  # idle -> running -> completed


# Reference Date Functions

def get_reference_date(dt_now: Optional[datetime] = None) -> str:
    """
    Decide which calendar date's close should be reported.

    During the Tokyo trading session (09:00 inclusive to 15:00 exclusive, JST) the day's
    close is not final yet, so the previous calendar day is returned. Otherwise today.

    Args:
        dt_now: Current instant. Defaults to now. Naive values are treated as UTC.

    Returns:
        Reference date in YYYYMMDD format.
    """
    if dt_now is None:
        dt_now = datetime.now(timezone.utc)
    elif dt_now.tzinfo is None:
        dt_now = dt_now.replace(tzinfo=timezone.utc)

    dt_local: datetime = dt_now.astimezone(EXCHANGE_TIMEZONE)  # Current time at the exchange
    n_minutes: int = dt_local.hour * 60 + dt_local.minute  # Minutes since local midnight

    if SESSION_OPEN_MINUTES <= n_minutes < SESSION_CLOSE_MINUTES:
        dt_local = dt_local - timedelta(days=1)

    return dt_local.strftime("%Y%m%d")


def format_date_string(s_yyyymmdd: str) -> str:
    """Convert YYYYMMDD to YYYY/MM/DD."""
    s_value: str = str(s_yyyymmdd)
    return f"{s_value[0:4]}/{s_value[4:6]}/{s_value[6:8]}"


def parse_date_value(value_date: Any) -> date:
    """
    Parse a reference date value.

    Args:
        value_date: YYYYMMDD string, YYYYMMDD number, or ISO date string.

    Returns:
        Parsed date.

    Raises:
        ValueError: If the value is not a recognisable date.
    """
    s_value: str = str(value_date).strip()  # Value as trimmed string

    if re.match(r"^\d{8}$", s_value):
        return date(int(s_value[0:4]), int(s_value[4:6]), int(s_value[6:8]))

    # Numbers stored as YYYYMMDD (e.g. 20250110.0 from a sheet)
    try:
        n_value: int = int(float(s_value))
    except ValueError:
        n_value = 0

    if 19000000 < n_value < 21000000:
        return date(n_value // 10000, (n_value % 10000) // 100, n_value % 100)

    return datetime.fromisoformat(s_value).date()


def get_target_timestamp(s_reference_date: str) -> int:
    """Return Unix seconds of local midnight at the exchange on the given date."""
    date_reference: date = parse_date_value(s_reference_date)
    dt_midnight: datetime = datetime(date_reference.year, date_reference.month, date_reference.day, tzinfo=EXCHANGE_TIMEZONE)

    return int(dt_midnight.timestamp())


def format_timestamp_date(n_timestamp: int) -> str:
    """Format a Unix timestamp as the exchange-local calendar date YYYY/MM/DD."""
    return datetime.fromtimestamp(n_timestamp, EXCHANGE_TIMEZONE).strftime("%Y/%m/%d")


# Trading Day Series

def _is_absent_close(n_close: Optional[float]) -> bool:
    return n_close is None or (isinstance(n_close, float) and math.isnan(n_close))


class TradingDaySeries:
    """Ascending, de-duplicated daily closes of one stock, holidays and halts removed."""

    def __init__(self, list_points: List[PricePoint]) -> None:
        self.list_points: List[PricePoint] = list_points

    @classmethod
    def from_raw(cls, list_n_timestamps: List[int], list_n_closes: List[Optional[float]]) -> "TradingDaySeries":
        """
        Build a series from the provider's parallel arrays.

        Absent closes are dropped (never treated as zero). Points are sorted by timestamp;
        when a timestamp repeats, its first occurrence is kept.

        Args:
            list_n_timestamps: Unix timestamps in seconds.
            list_n_closes: Closing prices, None (or NaN) where nothing was recorded.

        Returns:
            TradingDaySeries containing only valid observations.
        """
        list_points: List[PricePoint] = []  # Valid observations in provider order

        # Loop through each timestamp and keep the ones with a recorded close
        for n_index, n_timestamp in enumerate(list_n_timestamps):
            if n_index >= len(list_n_closes):
                break
            n_close: Optional[float] = list_n_closes[n_index]  # Close for this timestamp
            if _is_absent_close(n_close):
                continue
            list_points.append(PricePoint(n_timestamp=int(n_timestamp), n_close=float(n_close)))

        list_points.sort(key=lambda point: point.n_timestamp)  # Stable, so equal timestamps keep provider order

        list_unique_points: List[PricePoint] = []  # Points with repeated timestamps removed
        for point in list_points:
            if list_unique_points and list_unique_points[-1].n_timestamp == point.n_timestamp:
                continue
            list_unique_points.append(point)

        return cls(list_unique_points)

    def __len__(self) -> int:
        return len(self.list_points)

    def find_closest(self, n_target_timestamp: int) -> Optional[float]:
        """
        Find the close nearest to a target timestamp.

        Prefers the most recent close on or before the target. If the series starts after
        the target, falls back to the nearest close in either direction. Ties go to the
        earliest point.

        Args:
            n_target_timestamp: Target Unix timestamp in seconds.

        Returns:
            Closing price, or None if the series is empty.
        """
        n_best_index: int = -1  # Index of best match so far
        n_best_diff: float = math.inf  # Distance of best match so far

        # Most recent observation on or before the target
        for n_index, point in enumerate(self.list_points):
            n_diff: int = n_target_timestamp - point.n_timestamp  # Seconds before the target
            if 0 <= n_diff < n_best_diff:
                n_best_diff = n_diff
                n_best_index = n_index

        # Nothing on or before the target, take the nearest overall
        if n_best_index == -1:
            for n_index, point in enumerate(self.list_points):
                n_diff = abs(n_target_timestamp - point.n_timestamp)
                if n_diff < n_best_diff:
                    n_best_diff = n_diff
                    n_best_index = n_index

        if n_best_index == -1:
            return None

        return self.list_points[n_best_index].n_close

    def find_anchor_index(self, n_target_timestamp: int) -> Optional[int]:
        """
        Find the index of the trading day reported as the current close.

        Args:
            n_target_timestamp: Reference date as Unix timestamp in seconds.

        Returns:
            Index of the last point on or before the target, 0 if every point is after
            the target, or None if the series is empty.
        """
        if not self.list_points:
            return None

        # Loop backwards from the latest trading day
        for n_index in range(len(self.list_points) - 1, -1, -1):
            if self.list_points[n_index].n_timestamp <= n_target_timestamp:
                return n_index

        return 0


# Percentage Calculation Functions

def round_half_away_from_zero(n_value: float) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    n_absolute: float = abs(n_value)  # Magnitude to round
    n_magnitude: int = math.floor(n_absolute)  # Whole part of the magnitude

    # Fraction compared directly since n_absolute + 0.5 can round up to the next integer
    if n_absolute - n_magnitude >= 0.5:
        n_magnitude += 1

    return n_magnitude if n_value >= 0 else -n_magnitude


def calculate_change_rate(n_current_price: Optional[float], n_past_price: Optional[float]) -> Optional[float]:
    """
    Calculate the percentage change from a past price to the current price.

    Args:
        n_current_price: Current price.
        n_past_price: Past price to compare against.

    Returns:
        Percentage change rounded to 2 decimal places (e.g., 10.0 for a 10% increase),
        or None if either price is missing or the past price is zero.
    """
    if n_current_price is None or n_past_price is None or n_past_price == 0:
        return None

    n_ratio: float = (n_current_price - n_past_price) / n_past_price  # Relative change

    return round_half_away_from_zero(n_ratio * 10000) / 100


# Quote Clients

class QuoteClient(ABC):
    """Source of raw daily price history for one ticker."""

    @abstractmethod
    def fetch_daily_closes(self, s_ticker: str, n_start_timestamp: int, n_end_timestamp: int) -> Tuple[List[int], List[Optional[float]]]:
        """
        Fetch daily closes for a ticker within a time window.

        Args:
            s_ticker: Ticker symbol (e.g., "7203.T").
            n_start_timestamp: Window start, Unix seconds.
            n_end_timestamp: Window end, Unix seconds.

        Returns:
            Tuple of (timestamps, closes) as parallel lists. Closes may contain None.

        Raises:
            QuoteTransportError: If the service is unreachable or answers with an error status.
            QuoteDataError: If the answer holds no usable chart data.
        """
        pass


def parse_chart_payload(dict_payload: Dict[str, Any]) -> Tuple[List[int], List[Optional[float]]]:
    """
    Extract timestamps and closes from a Yahoo Finance chart response.

    Args:
        dict_payload: Decoded JSON response.

    Returns:
        Tuple of (timestamps, closes).

    Raises:
        QuoteDataError: "no data" if the result object is missing, "no chart data" if the
            timestamp or close arrays are missing or empty.
    """
    dict_chart: Any = dict_payload.get("chart") if isinstance(dict_payload, dict) else None  # Chart envelope
    if not isinstance(dict_chart, dict):
        raise QuoteDataError("no data")

    list_dict_result: Any = dict_chart.get("result")  # Result list, one entry per ticker
    if not isinstance(list_dict_result, list) or len(list_dict_result) == 0:
        raise QuoteDataError("no data")

    dict_result: Any = list_dict_result[0]  # Result for the requested ticker
    if not isinstance(dict_result, dict):
        raise QuoteDataError("no data")

    list_n_timestamps: List[int] = dict_result.get("timestamp") or []  # Trading day timestamps

    list_n_closes: List[Optional[float]] = []  # Closing prices aligned with timestamps
    dict_indicators: Any = dict_result.get("indicators")  # Indicator block
    if isinstance(dict_indicators, dict):
        list_dict_quote: Any = dict_indicators.get("quote")  # Quote series list
        if isinstance(list_dict_quote, list) and len(list_dict_quote) > 0 and isinstance(list_dict_quote[0], dict):
            list_n_closes = list_dict_quote[0].get("close") or []

    if len(list_n_timestamps) == 0 or len(list_n_closes) == 0:
        raise QuoteDataError("no chart data")

    return list_n_timestamps, list_n_closes


class YahooChartClient(QuoteClient):
    """Quote client calling the Yahoo Finance chart API directly (or through a URL-prefix proxy)."""

    def __init__(self, s_proxy_prefix: Optional[str] = None, n_timeout_seconds: Optional[float] = None) -> None:
        self.s_proxy_prefix: Optional[str] = s_proxy_prefix  # Proxy URL prefix, None for direct calls
        self.n_timeout_seconds: Optional[float] = n_timeout_seconds  # Request timeout, None waits indefinitely

    def build_request_url(self, s_ticker: str, n_start_timestamp: int, n_end_timestamp: int) -> str:
        """Build the chart request URL, wrapped in the proxy prefix when one is set."""
        dict_params: Dict[str, Any] = {"period1": n_start_timestamp, "period2": n_end_timestamp, "interval": "1d"}  # Query parameters
        s_api_url: str = requests.Request("GET", YAHOO_CHART_URL + requests.utils.quote(s_ticker, safe=""), params=dict_params).prepare().url

        if self.s_proxy_prefix:
            return self.s_proxy_prefix + requests.utils.quote(s_api_url, safe="")

        return s_api_url

    def fetch_daily_closes(self, s_ticker: str, n_start_timestamp: int, n_end_timestamp: int) -> Tuple[List[int], List[Optional[float]]]:
        s_url: str = self.build_request_url(s_ticker, n_start_timestamp, n_end_timestamp)  # Full request URL
        dict_headers: Dict[str, str] = {"Accept": "application/json", "User-Agent": YAHOO_USER_AGENT}  # HTTP request headers

        logger.debug(f"Requesting chart for {s_ticker}: {s_url}")

        try:
            response_api = requests.get(s_url, headers=dict_headers, timeout=self.n_timeout_seconds)
        except requests.RequestException as e:
            raise QuoteTransportError(str(e)) from e

        if not response_api.ok:
            raise QuoteTransportError(f"HTTP {response_api.status_code}")

        return parse_chart_payload(response_api.json())


class YFinanceChartClient(QuoteClient):
    """Quote client backed by the yfinance library."""

    def fetch_daily_closes(self, s_ticker: str, n_start_timestamp: int, n_end_timestamp: int) -> Tuple[List[int], List[Optional[float]]]:
        dt_start: datetime = datetime.fromtimestamp(n_start_timestamp, timezone.utc)  # Window start
        dt_end: datetime = datetime.fromtimestamp(n_end_timestamp, timezone.utc)  # Window end

        logger.debug(f"Requesting yfinance history for {s_ticker} from {dt_start:%Y-%m-%d} to {dt_end:%Y-%m-%d}")

        ticker_stock = yfinance.Ticker(s_ticker)  # yfinance Ticker object for the stock
        df_history = ticker_stock.history(start=dt_start, end=dt_end, interval="1d", auto_adjust=False)  # Unadjusted daily history

        if df_history is None or df_history.empty or "Close" not in df_history.columns:
            raise QuoteDataError("no chart data")

        list_n_timestamps: List[int] = []  # Trading day timestamps
        list_n_closes: List[Optional[float]] = []  # Closing prices, None where missing

        # Loop through each row of the close column
        for ts_index, n_close in df_history["Close"].items():
            list_n_timestamps.append(int(ts_index.timestamp()))
            list_n_closes.append(None if pandas.isna(n_close) else float(n_close))

        return list_n_timestamps, list_n_closes


def build_quote_client(s_source: str, s_proxy_prefix: Optional[str] = None) -> QuoteClient:
    """
    Create the quote client for a source name.

    Args:
        s_source: "chart" or "yfinance".
        s_proxy_prefix: Proxy URL prefix (chart source only).

    Returns:
        QuoteClient instance.

    Raises:
        ValueError: If the source is unknown.
    """
    if s_source == "chart":
        return YahooChartClient(s_proxy_prefix=s_proxy_prefix)
    if s_source == "yfinance":
        return YFinanceChartClient()

    raise ValueError(f"Unknown quote source: {s_source}")


# Single Stock Resolution

def fetch_closing_price(s_ticker: Optional[str], s_reference_date: str, quote_client: QuoteClient) -> PriceResult:
    """
    Resolve the closing price and percentage changes of one stock.

    The anchor is the latest trading day on or before the reference date (or the first
    trading day if the history starts later). The 1 day change compares against the
    trading day just before the anchor; the longer changes compare against the nearest
    trading day to the anchor minus 7, 14, 30 and 180 calendar days.

    Never raises. Every failure is returned as a result with s_error set.

    Args:
        s_ticker: Ticker symbol, None or empty if the stock code was unusable.
        s_reference_date: Reference date in YYYYMMDD format.
        quote_client: Source of daily price history.

    Returns:
        PriceResult for the stock.
    """
    try:
        if not s_ticker:
            raise InvalidTickerError("invalid ticker")

        n_target_timestamp: int = get_target_timestamp(s_reference_date)  # Reference date as Unix seconds
        n_start_timestamp: int = n_target_timestamp - WINDOW_DAYS_BEFORE * SECONDS_PER_DAY  # Window start
        n_end_timestamp: int = n_target_timestamp + WINDOW_DAYS_AFTER * SECONDS_PER_DAY  # Window end

        list_n_timestamps: List[int]
        list_n_closes: List[Optional[float]]
        list_n_timestamps, list_n_closes = quote_client.fetch_daily_closes(s_ticker, n_start_timestamp, n_end_timestamp)

        series_trading_days: TradingDaySeries = TradingDaySeries.from_raw(list_n_timestamps, list_n_closes)
        if len(series_trading_days) == 0:
            raise QuoteDataError("no valid close data")

        n_anchor_index: int = series_trading_days.find_anchor_index(n_target_timestamp)  # Index of reported trading day
        point_anchor: PricePoint = series_trading_days.list_points[n_anchor_index]  # Reported trading day

        # 1 day change is trading-day based, not calendar based
        n_price_1d: Optional[float] = None  # Close on the previous trading day
        if n_anchor_index >= 1:
            n_price_1d = series_trading_days.list_points[n_anchor_index - 1].n_close

        dict_n_changes: Dict[int, Optional[float]] = {}  # Lookback days -> percentage change
        for n_days in LIST_N_LOOKBACK_DAYS:
            n_past_price: Optional[float] = series_trading_days.find_closest(point_anchor.n_timestamp - n_days * SECONDS_PER_DAY)
            dict_n_changes[n_days] = calculate_change_rate(point_anchor.n_close, n_past_price)

        return PriceResult(
            n_price=round_half_away_from_zero(point_anchor.n_close * 10) / 10,
            s_actual_date=format_timestamp_date(point_anchor.n_timestamp),
            n_change_1d=calculate_change_rate(point_anchor.n_close, n_price_1d),
            n_change_7d=dict_n_changes[7],
            n_change_14d=dict_n_changes[14],
            n_change_30d=dict_n_changes[30],
            n_change_180d=dict_n_changes[180],
            s_error=None,
        )
    except (InvalidTickerError, QuoteTransportError, QuoteDataError) as e:
        logger.warning(f"Could not resolve {s_ticker}: {e}")
        return PriceResult.failed(str(e))
    except Exception as e:
        logger.warning(f"Unexpected error resolving {s_ticker}: {e}", exc_info=True)
        return PriceResult.failed(str(e) or type(e).__name__)


# Batch Processing

def chunk_instruments(list_instruments: List[Instrument], n_batch_size: int) -> List[List[Instrument]]:
    """Split instruments into consecutive batches of at most n_batch_size."""
    if n_batch_size <= 0:
        raise ValueError("Batch size must be positive.")

    return [list_instruments[n_index:n_index + n_batch_size] for n_index in range(0, len(list_instruments), n_batch_size)]


class BatchOrchestrator:
    """
    Resolves many stocks in fixed-size concurrent batches with a pause between batches.

    Within a batch every fetch starts together and the batch only ends once all of them
    have settled. Fetches run on worker threads and only return their result; the run's
    results, error list and progress counter are updated on the calling thread.
    """

    def __init__(
        self,
        quote_client: QuoteClient,
        n_batch_size: int = BATCH_SIZE,
        n_batch_delay_seconds: float = BATCH_DELAY_SECONDS,
        fn_sleep: Callable[[float], None] = time.sleep,
        fn_clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        if n_batch_size <= 0:
            raise ValueError("Batch size must be positive.")
        if n_batch_delay_seconds < 0:
            raise ValueError("Batch delay cannot be negative.")

        self.quote_client: QuoteClient = quote_client
        self.n_batch_size: int = n_batch_size
        self.n_batch_delay_seconds: float = n_batch_delay_seconds
        self.fn_sleep: Callable[[float], None] = fn_sleep
        self.fn_clock: Optional[Callable[[], datetime]] = fn_clock  # Current time source, None for wall clock
        self.run_current: Optional[ReconciliationRun] = None  # Latest run, replaced on every invocation
        self._lock_state = threading.Lock()

    def run(
        self,
        list_instruments: List[Instrument],
        fn_progress: Optional[Callable[[int, int, str], None]] = None
    ) -> ReconciliationRun:
        """
        Resolve closing prices for all instruments.

        Args:
            list_instruments: Deduplicated instruments to resolve.
            fn_progress: Optional callback receiving (completed, total, detail). Called once
                at start with completed=0 and once after each stock settles.

        Returns:
            The completed ReconciliationRun.

        Raises:
            ValueError: If list_instruments is empty.
            RunInProgressError: If another run on this orchestrator has not finished.
        """
        if not list_instruments:
            raise ValueError("No instruments to reconcile.")

        with self._lock_state:
            if self.run_current is not None and self.run_current.s_state == RUN_STATE_RUNNING:
                raise RunInProgressError("A closing price run is already in progress.")
            run_new: ReconciliationRun = ReconciliationRun()  # Replaces any previous run
            run_new.s_state = RUN_STATE_RUNNING
            self.run_current = run_new

        try:
            self._execute(run_new, list_instruments, fn_progress)
        except Exception:
            run_new.s_state = RUN_STATE_IDLE
            raise

        return run_new

    def _execute(
        self,
        run_active: ReconciliationRun,
        list_instruments: List[Instrument],
        fn_progress: Optional[Callable[[int, int, str], None]]
    ) -> None:
        dt_now: Optional[datetime] = self.fn_clock() if self.fn_clock else None  # None uses wall clock
        run_active.s_reference_date = get_reference_date(dt_now)

        n_total: int = len(list_instruments)  # Number of stocks in this run
        n_completed: int = 0  # Stocks settled so far
        list_list_batches: List[List[Instrument]] = chunk_instruments(list_instruments, self.n_batch_size)

        logger.info(f"Reference date {run_active.s_reference_date}: {n_total} stocks in {len(list_list_batches)} batches")
        self._report(fn_progress, 0, n_total, f"Reference date: {format_date_string(run_active.s_reference_date)} - preparing...")

        with ThreadPoolExecutor(max_workers=self.n_batch_size) as executor:
            # Loop through each batch in input order
            for n_batch_index, list_batch in enumerate(list_list_batches):
                dict_future_to_instrument: Dict[Future, Instrument] = {
                    executor.submit(fetch_closing_price, instrument.s_ticker, run_active.s_reference_date, self.quote_client): instrument
                    for instrument in list_batch
                }

                # Settle every fetch of the batch before moving on
                for future in as_completed(dict_future_to_instrument):
                    instrument: Instrument = dict_future_to_instrument[future]  # Stock that just settled
                    try:
                        result_price: PriceResult = future.result()
                    except Exception as e:
                        result_price = PriceResult.failed(str(e) or type(e).__name__)

                    run_active.dict_results[instrument.s_raw_code] = result_price

                    if result_price.s_error is not None:
                        run_active.list_dict_errors.append({
                            "code": instrument.s_raw_code,
                            "name": instrument.s_name,
                            "ticker": instrument.s_ticker or NOT_AVAILABLE,
                            "error": result_price.s_error
                        })

                    n_completed += 1
                    self._report(fn_progress, n_completed, n_total, f"{instrument.s_name} ({instrument.s_ticker or NOT_AVAILABLE}) done")

                logger.info(f"Batch {n_batch_index + 1}/{len(list_list_batches)} complete ({len(list_batch)} stocks)")

                # Add delay between batches (Yahoo rate limit)
                if n_batch_index < len(list_list_batches) - 1:
                    self.fn_sleep(self.n_batch_delay_seconds)

        run_active.s_state = RUN_STATE_COMPLETED
        logger.info(f"Run complete: {n_total - len(run_active.list_dict_errors)} resolved, {len(run_active.list_dict_errors)} failed")

    @staticmethod
    def _report(fn_progress: Optional[Callable[[int, int, str], None]], n_completed: int, n_total: int, s_detail: str) -> None:
        if fn_progress is not None:
            fn_progress(n_completed, n_total, s_detail)


# Input Sheet Functions

def to_ticker(raw_code: Any) -> Optional[str]:
    """
    Build a Yahoo Finance ticker from a sheet stock code.

    Args:
        raw_code: Stock code cell (e.g., "1301" or "130A0").

    Returns:
        Ticker such as "1301.T", or None if the code is too short or not alphanumeric.
    """
    s_code: str = str(raw_code).strip()  # Trimmed code
    if len(s_code) < TICKER_CODE_LENGTH:
        return None

    s_ticker_code: str = s_code[:TICKER_CODE_LENGTH]  # Leading code characters
    if not re.match(TICKER_CODE_PATTERN, s_ticker_code):
        return None

    return s_ticker_code + TICKER_SUFFIX


def get_unique_instruments(list_list_rows: List[List[str]]) -> List[Instrument]:
    """
    Collect unique stocks from sheet rows, in first-seen order.

    Rows without a code, with an already seen code, or whose code gives no valid ticker
    are skipped.

    Args:
        list_list_rows: Data rows of the sheet (header excluded).

    Returns:
        List of Instrument records.
    """
    dict_seen: Dict[str, Instrument] = {}  # Raw code -> instrument

    # Loop through each row of the sheet
    for list_row in list_list_rows:
        if len(list_row) <= COL_CODE:
            continue

        s_raw_code: str = str(list_row[COL_CODE]).strip()  # Stock code as written
        if not s_raw_code or s_raw_code in dict_seen:
            continue

        s_ticker: Optional[str] = to_ticker(s_raw_code)  # Yahoo Finance ticker
        if not s_ticker:
            continue

        s_name: str = str(list_row[COL_NAME]).strip() if len(list_row) > COL_NAME else ""  # Stock name
        dict_seen[s_raw_code] = Instrument(s_ticker=s_ticker, s_raw_code=s_raw_code, s_name=s_name)

    return list(dict_seen.values())


def _clean_cell(value_cell: Any) -> str:
    if value_cell is None:
        return ""
    if isinstance(value_cell, float):
        if math.isnan(value_cell):
            return ""
        if value_cell.is_integer():
            return str(int(value_cell))
    return str(value_cell).strip()


def read_spreadsheet_rows(s_input_file_path: str) -> Dict[str, Any]:
    """
    Read the first sheet of an .xls/.xlsx workbook or a .csv file.

    Args:
        s_input_file_path: Path to the input file.

    Returns:
        Dictionary containing:
            - list_s_header: Header row
            - list_list_rows: Data rows with at least one non-empty cell

    Raises:
        InputFileError: If the file type is unsupported, unreadable, or has no data rows.
        FileNotFoundError: If the file does not exist.
    """
    s_extension: str = os.path.splitext(s_input_file_path)[1].lower()  # File extension
    list_list_raw: List[List[str]] = []  # All rows as cleaned strings

    if s_extension == ".csv":
        try:
            with open(s_input_file_path, 'r', encoding='utf-8-sig', newline='') as file_input:
                reader_csv = csv.reader(file_input)
                for list_row in reader_csv:
                    list_list_raw.append([_clean_cell(value_cell) for value_cell in list_row])
        except UnicodeDecodeError as e:
            raise InputFileError(f"Could not decode {s_input_file_path} as UTF-8: {e}")
    elif s_extension in (".xls", ".xlsx"):
        if not os.path.exists(s_input_file_path):
            raise FileNotFoundError(s_input_file_path)
        try:
            df_sheet = pandas.read_excel(s_input_file_path, sheet_name=0, header=None, dtype=object)
        except (ValueError, ImportError, xlrd.XLRDError, zipfile.BadZipFile, InvalidFileException) as e:
            raise InputFileError(f"Could not read workbook {s_input_file_path}: {e}")
        for tuple_row in df_sheet.itertuples(index=False, name=None):
            list_list_raw.append([_clean_cell(value_cell) for value_cell in tuple_row])
    else:
        raise InputFileError(f"Unsupported file type: {s_extension or s_input_file_path}. Expected .xls, .xlsx or .csv.")

    if len(list_list_raw) < 2:
        raise InputFileError("Not enough data. A header row and at least one data row are required.")

    list_s_header: List[str] = list_list_raw[0]  # First row
    list_list_rows: List[List[str]] = [list_row for list_row in list_list_raw[1:] if any(s_cell != "" for s_cell in list_row)]

    return {"list_s_header": list_s_header, "list_list_rows": list_list_rows}


# Output Functions

def _format_sheet_cell(list_row: List[str], n_column: int) -> str:
    s_value: str = str(list_row[n_column]).strip() if len(list_row) > n_column else ""  # Cell text
    if n_column == COL_DATE and re.match(r"^\d{8}$", s_value):
        return format_date_string(s_value)
    return s_value


def format_price(n_price: float) -> str:
    """Format a price, whole numbers without a trailing ".0" (3910.0 -> "3910", 1234.6 -> "1234.6")."""
    if float(n_price).is_integer():
        return str(int(n_price))
    return str(n_price)


def format_output_row(list_row: List[str], result_price: Optional[PriceResult]) -> List[str]:
    """
    Format a sheet row and its price result as an output CSV row.

    Args:
        list_row: Original sheet row.
        result_price: Result for the row's stock code, None if the stock was not fetched.

    Returns:
        List of strings: display columns, close price and five percentage changes.
    """
    list_s_cells: List[str] = [_format_sheet_cell(list_row, n_column) for n_column, _ in LIST_TUPLE_DISPLAY_COLUMNS]

    if result_price is not None and result_price.n_price is not None:
        list_s_cells.append(format_price(result_price.n_price))
    else:
        list_s_cells.append(NOT_AVAILABLE)

    # Loop through each percentage change column
    for s_attribute, _ in LIST_TUPLE_RESULT_COLUMNS[1:]:
        n_change: Optional[float] = getattr(result_price, s_attribute) if result_price is not None else None
        list_s_cells.append(f"{n_change:.2f}" if n_change is not None else NOT_AVAILABLE)

    return list_s_cells


def write_output_csv(s_output_file_path: str, list_list_rows: List[List[str]], dict_results: Dict[str, PriceResult]) -> None:
    """
    Write every sheet row with its price columns to a CSV file (UTF-8 with BOM, CRLF).

    Args:
        s_output_file_path: Path to output CSV file.
        list_list_rows: Sheet data rows, duplicates included.
        dict_results: Results keyed by raw stock code.
    """
    with open(s_output_file_path, 'w', newline='', encoding='utf-8-sig') as file_output:
        writer_csv = csv.writer(file_output, lineterminator="\r\n")

        writer_csv.writerow([s_label for _, s_label in LIST_TUPLE_DISPLAY_COLUMNS] + [s_label for _, s_label in LIST_TUPLE_RESULT_COLUMNS])

        # Loop through each sheet row
        for list_row in list_list_rows:
            s_code: str = str(list_row[COL_CODE]).strip() if len(list_row) > COL_CODE else ""  # Row stock code
            writer_csv.writerow(format_output_row(list_row, dict_results.get(s_code)))


def generate_output_filename(s_output_directory_path: str, s_date_stamp: str) -> str:
    """
    Generate output filename with versioning if file already exists.

    Args:
        s_output_directory_path: Directory path for output file.
        s_date_stamp: Date stamp (YYYYMMDD) included in the file name.

    Returns:
        Full path to output file with appropriate version suffix.
    """
    s_base_name: str = f"{OUTPUT_FILENAME_PREFIX}_{s_date_stamp}"  # File name without extension
    s_output_base_name_path: str = os.path.join(s_output_directory_path, f"{s_base_name}.csv")  # Default output file path before versioning

    if not os.path.exists(s_output_base_name_path):
        return s_output_base_name_path

    n_version: int = 1  # Starting version number

    while True:
        s_versioned_path: str = os.path.join(s_output_directory_path, f"{s_base_name}_v{n_version}.csv")  # Full versioned path

        if not os.path.exists(s_versioned_path):
            return s_versioned_path

        n_version += 1


def summarise_run(run_finished: ReconciliationRun) -> Dict[str, int]:
    """Count resolved stocks, stocks without a price, and logged errors."""
    n_success: int = sum(1 for result_price in run_finished.dict_results.values() if result_price.n_price is not None)

    return {
        "n_success": n_success,
        "n_not_available": len(run_finished.dict_results) - n_success,
        "n_errors": len(run_finished.list_dict_errors),
    }


def print_progress(n_completed: int, n_total: int, s_detail: str) -> None:
    """Progress callback printing one line per update."""
    n_percent: int = round_half_away_from_zero(n_completed / n_total * 100) if n_total > 0 else 0
    print(f"  [{n_completed}/{n_total}] {n_percent}% {s_detail}")


def print_output_terminal(run_finished: ReconciliationRun) -> None:
    """
    Print the run summary and error log to terminal.

    Args:
        run_finished: Completed run.
    """
    dict_n_summary: Dict[str, int] = summarise_run(run_finished)  # Result counts

    print()
    print(f"Reference Date: {format_date_string(run_finished.s_reference_date)}")
    print(f"Fetched: {dict_n_summary['n_success']}, N/A: {dict_n_summary['n_not_available']}, Errors: {dict_n_summary['n_errors']}")

    if run_finished.list_dict_errors:
        print()
        print("Errors:")
        for dict_error in run_finished.list_dict_errors:
            print(f"  {dict_error['code']} {dict_error['name']} ({dict_error['ticker']}) - {dict_error['error']}")


# CLI Functions

def parse_arguments(list_s_args: List[str]) -> Dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        list_s_args: List of command-line argument strings.

    Returns:
        Dictionary containing parsed arguments.

    Raises:
        CliArgumentError: If arguments are invalid or missing.
    """
    parser_args = argparse.ArgumentParser(description="Fetch closing prices and percentage changes for listed stocks.", add_help=False)

    parser_args.add_argument("--file", dest="s_input_file_path", type=str, help="Path to listed-issues sheet (.xls, .xlsx, .csv)")
    parser_args.add_argument("--output", dest="s_output_directory_path", type=str, help="Output directory path")
    parser_args.add_argument("--source", dest="s_source", type=str, default="chart", choices=["chart", "yfinance"], help="Quote source")
    parser_args.add_argument("--proxy", dest="s_proxy_prefix", type=str, help="URL prefix for proxied chart requests")
    parser_args.add_argument("--batch-size", dest="n_batch_size", type=int, default=BATCH_SIZE, help="Stocks per concurrent batch")
    parser_args.add_argument("--batch-delay", dest="n_batch_delay_seconds", type=float, default=BATCH_DELAY_SECONDS, help="Seconds between batches")
    parser_args.add_argument("--log-level", dest="s_log_level", type=str, default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], help="Logging level")

    try:
        namespace_args = parser_args.parse_args(list_s_args)
    except SystemExit:
        raise CliArgumentError("Invalid command-line arguments provided.")

    s_input_file_path: Optional[str] = namespace_args.s_input_file_path  # Path to input sheet

    if not s_input_file_path:
        raise CliArgumentError("Missing required argument --file.")

    if os.path.splitext(s_input_file_path)[1].lower() not in LIST_S_SHEET_EXTENSIONS:
        raise CliArgumentError(f"Unsupported input file: {s_input_file_path}. Expected .xls, .xlsx or .csv.")

    if namespace_args.n_batch_size <= 0:
        raise CliArgumentError(f"--batch-size must be a positive integer, got: {namespace_args.n_batch_size}")

    if namespace_args.n_batch_delay_seconds < 0:
        raise CliArgumentError(f"--batch-delay cannot be negative, got: {namespace_args.n_batch_delay_seconds}")

    if namespace_args.s_proxy_prefix and namespace_args.s_source != "chart":
        raise CliArgumentError("--proxy is only supported with --source chart.")

    dict_args: Dict[str, Any] = {
        "s_input_file_path": s_input_file_path,
        "s_output_directory_path": namespace_args.s_output_directory_path,
        "s_source": namespace_args.s_source,
        "s_proxy_prefix": namespace_args.s_proxy_prefix,
        "n_batch_size": namespace_args.n_batch_size,
        "n_batch_delay_seconds": namespace_args.n_batch_delay_seconds,
        "s_log_level": namespace_args.s_log_level,
    }

    return dict_args


def main() -> None:
    """Main entry point for the closing price reconciler."""
    list_s_args: List[str] = sys.argv[1:]  # Command line arguments

    try:
        dict_args: Dict[str, Any] = parse_arguments(list_s_args)
    except CliArgumentError as e:
        print(f"Error: {str(e)}")
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, dict_args["s_log_level"]),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    s_input_file_path: str = dict_args["s_input_file_path"]  # Input sheet path
    s_output_directory_path: Optional[str] = dict_args["s_output_directory_path"]  # Output directory

    # Set default output directory to script location
    if not s_output_directory_path:
        s_output_directory_path = os.path.dirname(os.path.abspath(__file__))

    try:
        dict_sheet: Dict[str, Any] = read_spreadsheet_rows(s_input_file_path)
    except InputFileError as e:
        print(f"Error: {str(e)}")
        sys.exit(1)
    except FileNotFoundError:
        print(f"Error: File not found: {s_input_file_path}")
        sys.exit(1)

    list_list_rows: List[List[str]] = dict_sheet["list_list_rows"]  # Sheet data rows
    list_instruments: List[Instrument] = get_unique_instruments(list_list_rows)  # Unique stocks to fetch

    if not list_instruments:
        print("Error: No valid stock codes found in the input file.")
        sys.exit(1)

    quote_client: QuoteClient = build_quote_client(dict_args["s_source"], dict_args["s_proxy_prefix"])
    orchestrator_batch: BatchOrchestrator = BatchOrchestrator(
        quote_client,
        n_batch_size=dict_args["n_batch_size"],
        n_batch_delay_seconds=dict_args["n_batch_delay_seconds"]
    )

    print(f"Fetching closing prices for {len(list_instruments)} stocks ({len(list_list_rows)} rows)...")

    run_finished: ReconciliationRun = orchestrator_batch.run(list_instruments, fn_progress=print_progress)

    print_output_terminal(run_finished)

    s_output_file_path: str = generate_output_filename(s_output_directory_path, datetime.now().strftime("%Y%m%d"))
    write_output_csv(s_output_file_path, list_list_rows, run_finished.dict_results)

    print()
    print(f"Results saved to: {s_output_file_path}")


if __name__ == "__main__":
    main()
