"""
Configuration Module for Liquidity Trap Bot
===========================================
Defines strategy, risk and adaptive-control parameters.

All options can be overridden from the environment (.env) via
TradingConfig.from_env().
"""

from dataclasses import dataclass, field
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SignalConfig:
    """Liquidity zone and trap candle detection."""
    lookback_bars: int = 20             # Bars scanned for swing highs/lows
    wick_ratio: float = 1.5             # Wick must exceed body * ratio
    body_ratio: float = 0.3             # Body must exceed avg bar size * ratio
    use_volume_profile: bool = True     # Blend zones toward volume nodes
    profile_lookback_bars: int = 100    # Bars used to build the volume profile
    profile_buckets: int = 24           # Number of price buckets
    allow_range_trades: bool = True     # Trade traps in ranging markets


@dataclass
class RiskConfig:
    """Position sizing and entry limits."""
    base_risk_percent: float = 1.0      # % of balance risked per trade
    max_positions: int = 2              # Maximum concurrent positions
    sl_atr_multiplier: float = 0.5      # SL buffer beyond the zone = ATR * mult
    reward_ratio: float = 2.0           # TP distance = SL distance * ratio
    extreme_volatility_multiplier: float = 3.0  # Skip entries when ATR > avg bar * mult
    magic_number: int = 20240611        # Order identification


@dataclass
class TrailingConfig:
    """ATR trailing stop."""
    enabled: bool = True
    start_multiplier: float = 1.0       # Start once profit >= initial risk * mult
    step_atr_multiplier: float = 1.0    # New SL = price -/+ ATR * mult


@dataclass
class IndicatorConfig:
    """Indicator periods and base thresholds."""
    timeframe: str = "M15"
    atr_period: int = 14
    ma_period: int = 50
    adx_period: int = 14
    rsi_period: int = 14
    adx_threshold: float = 25.0
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    use_mtf: bool = False               # Require higher-timeframe MA confirmation
    mtf_timeframe: str = "H4"
    mtf_ma_period: int = 50


@dataclass
class PauseConfig:
    """Trading pause after a losing streak."""
    enabled: bool = True
    trigger_losses: int = 5             # Pause after N consecutive losses
    auto_reset_bars: int = 24           # Resume after N bars (0 = never)


@dataclass
class AdaptiveConfig:
    """Risk and threshold tightening after losses."""
    enabled: bool = True
    trigger_losses: int = 3             # Tighten after N consecutive losses
    adx_enabled: bool = True
    adx_increment: float = 5.0
    rsi_enabled: bool = True
    rsi_tighten: float = 5.0


@dataclass
class TradingConfig:
    """
    Main trading configuration.
    Validated on creation; MT5 credentials are only checked for live trading.
    """
    # MT5 Connection
    mt5_login: int = field(default_factory=lambda: int(os.getenv("MT5_LOGIN", "0")))
    mt5_password: str = field(default_factory=lambda: os.getenv("MT5_PASSWORD", ""))
    mt5_server: str = field(default_factory=lambda: os.getenv("MT5_SERVER", ""))
    mt5_path: Optional[str] = field(default_factory=lambda: os.getenv("MT5_PATH"))

    symbol: str = "EURUSD"

    signal: SignalConfig = field(default_factory=SignalConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    trailing: TrailingConfig = field(default_factory=TrailingConfig)
    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    pause: PauseConfig = field(default_factory=PauseConfig)
    adaptive: AdaptiveConfig = field(default_factory=AdaptiveConfig)

    # Runtime
    loop_interval_seconds: float = 5.0
    analytics_every_bars: int = 4       # Recompute analytics every N new bars
    state_file: str = "data/adaptive_state.json"
    report_dir: str = "data/trade_logs"

    def __post_init__(self):
        self._validate()

    def _validate(self):
        """Raise ValueError on inconsistent settings."""
        problems = []

        if self.signal.lookback_bars < 5:
            problems.append("lookback_bars must be >= 5")
        if self.signal.profile_buckets < 2:
            problems.append("profile_buckets must be >= 2")
        if self.signal.wick_ratio <= 0 or self.signal.body_ratio <= 0:
            problems.append("wick_ratio and body_ratio must be positive")
        if self.risk.base_risk_percent <= 0:
            problems.append("base_risk_percent must be positive")
        if self.risk.max_positions < 1:
            problems.append("max_positions must be >= 1")
        if self.risk.reward_ratio <= 0:
            problems.append("reward_ratio must be positive")
        if self.indicators.rsi_oversold >= self.indicators.rsi_overbought:
            problems.append("rsi_oversold must be below rsi_overbought")
        if self.pause.trigger_losses < 1 or self.adaptive.trigger_losses < 1:
            problems.append("loss trigger counts must be >= 1")
        if self.pause.auto_reset_bars < 0:
            problems.append("auto_reset_bars must be >= 0")

        if problems:
            raise ValueError(f"Invalid configuration: {'; '.join(problems)}")

    def validate_credentials(self):
        """
        Validate that MT5 credentials are set.
        Raises ValueError if critical settings are missing.
        """
        missing = []
        if self.mt5_login == 0:
            missing.append("MT5_LOGIN")
        if not self.mt5_password:
            missing.append("MT5_PASSWORD")
        if not self.mt5_server:
            missing.append("MT5_SERVER")

        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}. "
                f"Please set them in your .env file."
            )

    @classmethod
    def from_env(cls) -> "TradingConfig":
        """Create configuration from environment variables."""
        config = cls(symbol=os.getenv("SYMBOL", "EURUSD"))

        if os.getenv("TIMEFRAME"):
            config.indicators.timeframe = os.getenv("TIMEFRAME")

        if os.getenv("RISK_PERCENT"):
            config.risk.base_risk_percent = float(os.getenv("RISK_PERCENT"))

        if os.getenv("MAX_POSITIONS"):
            config.risk.max_positions = int(os.getenv("MAX_POSITIONS"))

        if os.getenv("REWARD_RATIO"):
            config.risk.reward_ratio = float(os.getenv("REWARD_RATIO"))

        if os.getenv("LOOKBACK_BARS"):
            config.signal.lookback_bars = int(os.getenv("LOOKBACK_BARS"))

        config.signal.allow_range_trades = _env_bool("ALLOW_RANGE_TRADES", config.signal.allow_range_trades)
        config.trailing.enabled = _env_bool("TRAILING_ENABLED", config.trailing.enabled)
        config.indicators.use_mtf = _env_bool("USE_MTF", config.indicators.use_mtf)
        config.pause.enabled = _env_bool("LOSS_PAUSE_ENABLED", config.pause.enabled)
        config.adaptive.enabled = _env_bool("ADAPTIVE_RISK_ENABLED", config.adaptive.enabled)

        if os.getenv("LOSS_PAUSE_TRIGGER"):
            config.pause.trigger_losses = int(os.getenv("LOSS_PAUSE_TRIGGER"))

        if os.getenv("LOSS_PAUSE_RESET_BARS"):
            config.pause.auto_reset_bars = int(os.getenv("LOSS_PAUSE_RESET_BARS"))

        if os.getenv("ADAPTIVE_TRIGGER"):
            config.adaptive.trigger_losses = int(os.getenv("ADAPTIVE_TRIGGER"))

        config._validate()
        return config

    def __repr__(self) -> str:
        return (
            f"TradingConfig(\n"
            f"  symbol={self.symbol},\n"
            f"  timeframe={self.indicators.timeframe},\n"
            f"  risk={self.risk.base_risk_percent}%,\n"
            f"  max_positions={self.risk.max_positions},\n"
            f"  rr=1:{self.risk.reward_ratio},\n"
            f"  pause={self.pause.enabled} ({self.pause.trigger_losses} losses),\n"
            f"  adaptive={self.adaptive.enabled} ({self.adaptive.trigger_losses} losses)\n"
            f")"
        )


def get_config() -> TradingConfig:
    """Get the trading configuration from the environment."""
    return TradingConfig.from_env()
