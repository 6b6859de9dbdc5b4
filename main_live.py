"""
Main Live Trading Orchestrator
==============================
Asynchronous loop around the liquidity trap engine.

Pipeline (per closed bar):
1. Fetch bars + indicators -> Polars
2. Classify market, derive adaptive risk
3. Detect liquidity zones and trap candles
4. Size, execute and manage positions
5. Report performance

The only suspension point is the sleep between polls; every engine step
runs to completion synchronously.
"""

import asyncio
import os
import sys
import traceback

from loguru import logger

# Configure logging
logger.remove()
logger.add(
    sys.stdout,
    format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{message}</cyan>",
    level="INFO",
)
logger.add(
    "logs/trapbot_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
    rotation="1 day",
    retention="30 days",
    level="DEBUG",
)

# Create directories
os.makedirs("logs", exist_ok=True)
os.makedirs("data", exist_ok=True)

from trapbot.config import TradingConfig, get_config
from trapbot.engine import EngineInitError, LiquidityTrapEngine
from trapbot.mt5_connector import BrokerConnector, MT5Connector
from trapbot.paper_connector import PaperConnector
from trapbot.trade_logger import TradeLogger


class TradingBot:
    """Owns the engine and the polling loop."""

    def __init__(self, config: TradingConfig, simulation: bool = False):
        self.config = config
        self.simulation = simulation
        self._running = False
        self._loop_count = 0

        self.connector = self._create_connector()
        self.engine = LiquidityTrapEngine(
            config=config,
            connector=self.connector,
            trade_logger=TradeLogger(config.report_dir),
        )

    def _create_connector(self) -> BrokerConnector:
        if self.simulation:
            return PaperConnector.with_synthetic_history(
                symbol=self.config.symbol,
                indicators=self.config.indicators,
                magic=self.config.risk.magic_number,
            )

        self.config.validate_credentials()
        return MT5Connector(
            login=self.config.mt5_login,
            password=self.config.mt5_password,
            server=self.config.mt5_server,
            symbol=self.config.symbol,
            magic=self.config.risk.magic_number,
            indicators=self.config.indicators,
            path=self.config.mt5_path,
        )

    async def start(self):
        """Initialize the engine and enter the main loop."""
        logger.info("=" * 60)
        logger.info("LIQUIDITY TRAP BOT")
        logger.info("=" * 60)
        logger.info(f"Symbol: {self.config.symbol} ({self.config.indicators.timeframe})")
        logger.info(f"Risk: {self.config.risk.base_risk_percent}% | Max positions: {self.config.risk.max_positions}")
        logger.info(f"Simulation: {self.simulation}")
        logger.info("=" * 60)

        self.engine.initialize()

        account = self.connector.get_account_info()
        if account is not None:
            logger.info(f"Account Balance: {account.balance:,.2f} {account.currency}")

        self._running = True
        logger.info("Starting main trading loop...")
        await self._main_loop()

    async def stop(self):
        """Stop the loop and shut the engine down."""
        logger.info("Stopping trading bot...")
        self._running = False
        self.engine.shutdown()

    async def _main_loop(self):
        while self._running:
            if self.simulation:
                self.connector.advance()

            try:
                opened = self.engine.poll()
            except Exception as e:
                logger.error(f"Loop error: {e}")
                logger.debug(traceback.format_exc())
                opened = None

            self._loop_count += 1
            if opened is not None:
                logger.info(f"Status: {self.engine.get_status()['adaptive']}")

            await asyncio.sleep(0.2 if self.simulation else self.config.loop_interval_seconds)


async def main() -> int:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Liquidity Trap Trading Bot")
    parser.add_argument("--simulation", "-s", action="store_true", help="Run against the paper connector")
    parser.add_argument("--symbol", type=str, help="Trading symbol (override)")
    args = parser.parse_args()

    try:
        config = get_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.symbol:
        config.symbol = args.symbol

    try:
        bot = TradingBot(config=config, simulation=args.simulation)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        await bot.start()
    except EngineInitError as e:
        logger.error(f"Initialization failed: {e}")
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Interrupted by user")
    finally:
        await bot.stop()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
