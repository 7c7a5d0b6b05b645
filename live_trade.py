#!/usr/bin/env python3
"""
Grid Engine Live Trading CLI.

Usage:
  python3 live_trade.py --coin BTC --capital 1000 --leverage 10
  python3 live_trade.py --coin BTC ETH --dry-run
  python3 live_trade.py --coin BTC --resume
  python3 live_trade.py --coin SOL --testnet --dry-run --log-level DEBUG

Environment Variables:
  BINANCE_API_KEY      Your Binance API key
  BINANCE_API_SECRET   Your Binance API secret
"""
import argparse
import os
import sys
import signal

from dotenv import load_dotenv

from config import STRATEGY_PARAMS, LIVE_CONFIG
from core.errors import ConfigError
from engine.schema import StrategyConfig
from live.executor import BinanceExecutor
from live.logger import setup_logging
from live.runner import LiveRunner
from live.state import StateManager


def main():
    parser = argparse.ArgumentParser(
        description="Grid Engine Live Trader — Binance USDM Perpetual Futures",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dry-run with BTC (no real orders)
  python3 live_trade.py --coin BTC --dry-run

  # Live trade ETH with $5000 capital at 10x leverage
  python3 live_trade.py --coin ETH --capital 5000 --leverage 10

  # Resume from saved ledger state
  python3 live_trade.py --coin BTC --resume
""")
    parser.add_argument("--coin", nargs='+', required=True,
                        help="Coin(s) to trade (e.g. BTC ETH SOL)")
    parser.add_argument("--capital", type=float, default=None,
                        help="Capital per symbol in USDT (default: from config)")
    parser.add_argument("--leverage", type=float, default=None,
                        help="Leverage multiplier (default: from config)")
    parser.add_argument("--interval", type=int, default=None,
                        help="Seconds between evaluation passes")
    parser.add_argument("--dry-run", action="store_true",
                        help="Simulate orders without sending to exchange")
    parser.add_argument("--resume", action="store_true",
                        help="Resume from saved state files")
    parser.add_argument("--testnet", action="store_true",
                        help="Use Binance Futures testnet")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")

    args = parser.parse_args()

    live_config = LIVE_CONFIG.copy()
    live_config['dry_run'] = args.dry_run or live_config.get('dry_run', False)
    live_config['log_level'] = args.log_level
    if args.interval:
        live_config['interval_seconds'] = args.interval

    # ─── Logging Setup ─────────────────────────────────────────
    setup_logging(live_config['log_dir'], args.log_level, filename='live.log')

    # ─── API Keys ──────────────────────────────────────────────
    load_dotenv()  # .env must load before os.environ.get
    api_key = os.environ.get('BINANCE_API_KEY', '')
    api_secret = os.environ.get('BINANCE_API_SECRET', '')
    if (not api_key or not api_secret) and not live_config['dry_run']:
        print("ERROR: Set BINANCE_API_KEY and BINANCE_API_SECRET environment variables.")
        print("Or use --dry-run for simulation mode.")
        sys.exit(1)

    # ─── Build Configs ─────────────────────────────────────────
    strategy_config = STRATEGY_PARAMS.copy()
    if args.capital:
        strategy_config['total_capital'] = args.capital
    if args.leverage:
        strategy_config['leverage'] = args.leverage
    try:
        StrategyConfig.from_params(strategy_config)
    except ConfigError as e:
        print(f"ERROR: Invalid configuration: {e}")
        sys.exit(1)

    symbols = [f"{c.upper()}/USDT:USDT" for c in args.coin]

    # ─── Initialize Components ─────────────────────────────────
    executor = BinanceExecutor(api_key, api_secret, live_config,
                               dry_run=live_config['dry_run'], testnet=args.testnet)
    mode_str = 'DRY-RUN' if live_config['dry_run'] else ('TESTNET' if args.testnet else 'LIVE')
    print(f"\nConnecting to Binance {mode_str}...")
    if not executor.connect():
        print("ERROR: Failed to connect to exchange.")
        sys.exit(1)

    runner = LiveRunner(
        executor=executor,
        symbols=symbols,
        strategy_config=strategy_config,
        live_config=live_config,
        state_manager=StateManager(live_config['state_dir']),
    )

    # ─── Signal Handlers ───────────────────────────────────────
    def handle_signal(signum, frame):
        print(f"\nReceived {signal.Signals(signum).name}, initiating graceful shutdown...")
        runner.shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    # ─── Banner ────────────────────────────────────────────────
    border = '=' * 62
    print(f"\n{border}")
    print(f"  GRID ENGINE LIVE TRADER | {mode_str}")
    print(border)
    print(f"  Symbols:    {', '.join(symbols)}")
    print(f"  Capital:    ${strategy_config['total_capital']:,.2f} per symbol")
    print(f"  Leverage:   {strategy_config['leverage']}x")
    print(f"  Levels:     {strategy_config['level_count']} @ {strategy_config['spacing_pct']}%")
    print(f"  Real:       {strategy_config['min_real_positions']}-"
          f"{strategy_config['max_real_positions']}")
    print(f"  Interval:   {live_config['interval_seconds']}s ({live_config['timeframe']} candles)")
    print(f"  Resume:     {args.resume}")
    print(f"{border}\n")

    if not runner.initialize(resume=args.resume):
        print("ERROR: Failed to initialize runner. Check logs for details.")
        sys.exit(1)

    print("Starting live loop... (Ctrl+C to stop)\n")
    runner.run()
    print("\nLive trader stopped.")


if __name__ == "__main__":
    main()
