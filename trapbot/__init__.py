"""
Liquidity Trap Trading Bot
==========================
Automated false-breakout strategy around swing highs/lows.

Tech Stack:
- Polars (bar frames, indicators, swing detection)
- NumPy (volume profile, drawdown)
- MetaTrader5 (Broker connection)
- Loguru (logging)

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import TradingConfig, get_config
from .mt5_connector import BrokerConnector, MT5Connector, PositionSide
from .paper_connector import PaperConnector
from .liquidity_detector import LiquidityTrapDetector
from .regime_detector import MarketConditionClassifier, TrendRegime, VolatilityRegime
from .adaptive_risk import AdaptiveRiskController, AdaptiveState
from .risk_engine import PositionSizer
from .position_manager import PositionLifecycleManager, PositionRecord
from .risk_metrics import PerformanceAnalytics
from .trade_logger import TradeLogger
from .engine import LiquidityTrapEngine, EngineInitError

__all__ = [
    "TradingConfig",
    "get_config",
    "BrokerConnector",
    "MT5Connector",
    "PaperConnector",
    "PositionSide",
    "LiquidityTrapDetector",
    "MarketConditionClassifier",
    "TrendRegime",
    "VolatilityRegime",
    "AdaptiveRiskController",
    "AdaptiveState",
    "PositionSizer",
    "PositionLifecycleManager",
    "PositionRecord",
    "PerformanceAnalytics",
    "TradeLogger",
    "LiquidityTrapEngine",
    "EngineInitError",
]
