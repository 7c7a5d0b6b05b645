"""
Live Execution Module for the grid engine.

Runs the same evaluation pass as the backtester against Binance USDM
perpetual futures, one ledger per symbol.
"""
from live.executor import BinanceExecutor, ExchangeExecution
from live.runner import LiveRunner
from live.state import StateManager
from live.logger import TradeLogger, setup_logging
