"""
StateManager — Persistence layer for live trading state.

One ledger snapshot per symbol, written atomically (temp file, then
rename) so a crash mid-write never leaves a half-written state. Closed
trades are appended to CSV and JSON lines files.
"""
import csv
import json
import logging
import os
import time
from typing import Optional

from engine.ledger import serialize_state

logger = logging.getLogger('state')


def _safe_name(symbol: str) -> str:
    return symbol.replace('/', '').replace(':', '_')


class StateManager:

    TRADE_CSV_HEADERS = [
        'position_id', 'symbol', 'side', 'entry_price', 'exit_price', 'size',
        'leverage', 'opened_at', 'closed_at', 'level_id', 'realized_pnl',
        'fees', 'funding', 'net_pnl', 'exit_reason',
    ]

    def __init__(self, state_dir: str):
        self.state_dir = state_dir
        os.makedirs(state_dir, exist_ok=True)
        logger.info(f"StateManager initialized: {state_dir}")

    def state_path(self, symbol: str) -> str:
        return os.path.join(self.state_dir, f'{_safe_name(symbol)}_state.json')

    def _trade_paths(self, symbol: str):
        base = os.path.join(self.state_dir, _safe_name(symbol))
        return f'{base}_trades.csv', f'{base}_trades.jsonl'

    # ─── Ledger snapshot ─────────────────────────────────────────

    def save_ledger_state(self, symbol: str, state: dict):
        """Write the ledger snapshot (canonical JSON) atomically."""
        path = self.state_path(symbol)
        tmp_path = path + '.tmp'
        try:
            with open(tmp_path, 'w') as f:
                f.write(serialize_state(state))
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def load_ledger_state(self, symbol: str) -> Optional[dict]:
        """Saved snapshot, or None if absent. A corrupt file is quarantined."""
        path = self.state_path(symbol)
        if not os.path.exists(path):
            logger.info(f"[{symbol}] No saved state found — starting fresh")
            return None
        try:
            with open(path, 'r') as f:
                state = json.load(f)
        except (json.JSONDecodeError, ValueError) as e:
            corrupt_path = f"{path}.corrupt.{int(time.time())}"
            os.replace(path, corrupt_path)
            logger.error(f"[{symbol}] State file corrupted ({e}), moved to {corrupt_path}")
            return None
        logger.info(f"[{symbol}] State loaded from {path}")
        return state

    # ─── Trade log ───────────────────────────────────────────────

    def save_trade(self, trade: dict):
        """Append one closed trade (ClosedTrade.to_dict()) to CSV and JSONL."""
        csv_path, jsonl_path = self._trade_paths(trade['symbol'])
        new_file = not os.path.exists(csv_path)
        with open(csv_path, 'a', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=self.TRADE_CSV_HEADERS,
                                    extrasaction='ignore')
            if new_file:
                writer.writeheader()
            writer.writerow(trade)
        with open(jsonl_path, 'a') as f:
            f.write(json.dumps(trade, default=str) + '\n')

    def load_trades(self, symbol: str) -> list:
        _, jsonl_path = self._trade_paths(symbol)
        if not os.path.exists(jsonl_path):
            return []
        with open(jsonl_path, 'r') as f:
            return [json.loads(line) for line in f if line.strip()]
