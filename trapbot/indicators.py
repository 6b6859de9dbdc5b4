"""
Indicator Module
================
ATR, SMA, ADX/DI and RSI using Polars expressions (Wilder's smoothing).

Used by the broker connectors to build the point-in-time indicator
snapshot consumed by the engine.
"""

from dataclasses import dataclass
from typing import Optional

import polars as pl
from loguru import logger


@dataclass
class IndicatorSnapshot:
    """Two most recent values of each indicator (current, previous)."""
    atr: float
    atr_prev: float
    ma: float
    ma_prev: float
    adx: float
    adx_prev: float
    plus_di: float
    minus_di: float
    rsi: float
    rsi_prev: float
    htf_ma: Optional[float] = None


def add_atr(df: pl.DataFrame, period: int = 14) -> pl.DataFrame:
    """Add 'atr' column (Wilder's smoothing of True Range)."""
    alpha = 1.0 / period

    df = df.with_columns([
        pl.col("close").shift(1).alias("_prev_close"),
    ])
    df = df.with_columns([
        pl.max_horizontal(
            pl.col("high") - pl.col("low"),
            (pl.col("high") - pl.col("_prev_close")).abs(),
            (pl.col("low") - pl.col("_prev_close")).abs(),
        ).alias("_tr"),
    ])
    df = df.with_columns([
        pl.col("_tr").ewm_mean(alpha=alpha, adjust=False, min_periods=period).alias("atr"),
    ])
    return df.drop(["_prev_close", "_tr"])


def add_sma(df: pl.DataFrame, period: int = 50, name: str = "ma") -> pl.DataFrame:
    """Add simple moving average of close."""
    return df.with_columns([
        pl.col("close").rolling_mean(window_size=period).alias(name),
    ])


def add_rsi(df: pl.DataFrame, period: int = 14) -> pl.DataFrame:
    """Add 'rsi' column. RSI = 100 - 100 / (1 + avg_gain / avg_loss)."""
    alpha = 1.0 / period

    df = df.with_columns([
        pl.col("close").diff().alias("_delta"),
    ])
    df = df.with_columns([
        pl.when(pl.col("_delta") > 0).then(pl.col("_delta")).otherwise(0.0).alias("_gains"),
        pl.when(pl.col("_delta") < 0).then(-pl.col("_delta")).otherwise(0.0).alias("_losses"),
    ])
    df = df.with_columns([
        pl.col("_gains").ewm_mean(alpha=alpha, adjust=False, min_periods=period).alias("_avg_gain"),
        pl.col("_losses").ewm_mean(alpha=alpha, adjust=False, min_periods=period).alias("_avg_loss"),
    ])
    df = df.with_columns([
        pl.when((pl.col("_avg_loss") == 0) & (pl.col("_avg_gain") == 0))
            .then(50.0)
            .when(pl.col("_avg_loss") == 0)
            .then(100.0)
            .otherwise(100.0 - (100.0 / (1.0 + pl.col("_avg_gain") / pl.col("_avg_loss"))))
            .alias("rsi"),
    ])
    return df.drop(["_delta", "_gains", "_losses", "_avg_gain", "_avg_loss"])


def add_adx(df: pl.DataFrame, period: int = 14) -> pl.DataFrame:
    """
    Add 'adx', 'plus_di' and 'minus_di' columns.

    +DM = up move when up move > down move and > 0
    -DM = down move when down move > up move and > 0
    DI  = 100 * smoothed DM / smoothed TR
    ADX = Wilder's smoothing of DX = 100 * |+DI - -DI| / (+DI + -DI)
    """
    alpha = 1.0 / period

    df = df.with_columns([
        (pl.col("high") - pl.col("high").shift(1)).alias("_up"),
        (pl.col("low").shift(1) - pl.col("low")).alias("_down"),
        pl.max_horizontal(
            pl.col("high") - pl.col("low"),
            (pl.col("high") - pl.col("close").shift(1)).abs(),
            (pl.col("low") - pl.col("close").shift(1)).abs(),
        ).alias("_tr"),
    ])
    df = df.with_columns([
        pl.when((pl.col("_up") > pl.col("_down")) & (pl.col("_up") > 0))
            .then(pl.col("_up")).otherwise(0.0).alias("_pdm"),
        pl.when((pl.col("_down") > pl.col("_up")) & (pl.col("_down") > 0))
            .then(pl.col("_down")).otherwise(0.0).alias("_mdm"),
    ])
    df = df.with_columns([
        pl.col("_tr").ewm_mean(alpha=alpha, adjust=False, min_periods=period).alias("_atr_s"),
        pl.col("_pdm").ewm_mean(alpha=alpha, adjust=False, min_periods=period).alias("_pdm_s"),
        pl.col("_mdm").ewm_mean(alpha=alpha, adjust=False, min_periods=period).alias("_mdm_s"),
    ])
    df = df.with_columns([
        (100.0 * pl.col("_pdm_s") / pl.col("_atr_s")).alias("plus_di"),
        (100.0 * pl.col("_mdm_s") / pl.col("_atr_s")).alias("minus_di"),
    ])
    df = df.with_columns([
        pl.when((pl.col("plus_di") + pl.col("minus_di")) == 0)
            .then(0.0)
            .otherwise(
                100.0 * (pl.col("plus_di") - pl.col("minus_di")).abs()
                / (pl.col("plus_di") + pl.col("minus_di"))
            )
            .alias("_dx"),
    ])
    df = df.with_columns([
        pl.col("_dx").ewm_mean(alpha=alpha, adjust=False, min_periods=period).alias("adx"),
    ])
    return df.drop(["_up", "_down", "_tr", "_pdm", "_mdm", "_atr_s", "_pdm_s", "_mdm_s", "_dx"])


def compute_snapshot(
    df: pl.DataFrame,
    atr_period: int = 14,
    ma_period: int = 50,
    adx_period: int = 14,
    rsi_period: int = 14,
    htf_df: Optional[pl.DataFrame] = None,
    htf_ma_period: int = 50,
) -> Optional[IndicatorSnapshot]:
    """
    Build an IndicatorSnapshot from closed bars (oldest first).

    Returns None when there is not enough history for every indicator.
    """
    needed = max(atr_period, ma_period, adx_period * 2, rsi_period) + 2
    if len(df) < needed:
        logger.debug(f"Indicator snapshot needs {needed} bars, got {len(df)}")
        return None

    df = add_atr(df, atr_period)
    df = add_sma(df, ma_period)
    df = add_adx(df, adx_period)
    df = add_rsi(df, rsi_period)

    last = df.tail(2).select(["atr", "ma", "adx", "plus_di", "minus_di", "rsi"]).to_dicts()
    prev, curr = last[0], last[1]
    if any(v is None for v in curr.values()) or any(v is None for v in prev.values()):
        return None

    htf_ma = None
    if htf_df is not None:
        if len(htf_df) < htf_ma_period:
            return None
        htf_ma = add_sma(htf_df, htf_ma_period)["ma"].tail(1).item()
        if htf_ma is None:
            return None

    return IndicatorSnapshot(
        atr=curr["atr"],
        atr_prev=prev["atr"],
        ma=curr["ma"],
        ma_prev=prev["ma"],
        adx=curr["adx"],
        adx_prev=prev["adx"],
        plus_di=curr["plus_di"],
        minus_di=curr["minus_di"],
        rsi=curr["rsi"],
        rsi_prev=prev["rsi"],
        htf_ma=htf_ma,
    )
