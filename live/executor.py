"""
BinanceExecutor — Exchange API interaction layer.

Wraps ccxt for USDM perpetual futures in hedge mode. The grid engine
only needs market orders (level fills and exits), candles, balance and
the current funding rate.

Order methods retry transient network errors with exponential backoff
and raise ExternalOrderFailure once the exchange has definitely refused.
Dry-run mode logs orders and fills them at the reference price.
"""
import time
import logging

import ccxt

from core.errors import ExternalOrderFailure
from engine.types import Fill, SIDE_LONG, side_sign

logger = logging.getLogger('executor')


class BinanceExecutor:

    def __init__(self, api_key: str = '', api_secret: str = '', config: dict = None,
                 dry_run: bool = False, testnet: bool = False, exchange=None):
        """
        Args:
            exchange: pre-built ccxt exchange (tests inject a fake here)
        """
        config = config or {}
        self.config = config
        self.dry_run = dry_run
        self.testnet = testnet
        self._max_retries = config.get('max_retry_attempts', 3)
        self._retry_delay = config.get('retry_delay_seconds', 2)
        self._dry_run_counter = 0

        if exchange is None:
            exchange_cls = getattr(ccxt, config.get('exchange_id', 'binance'))
            exchange = exchange_cls({
                'apiKey': api_key,
                'secret': api_secret,
                'enableRateLimit': True,
                'options': {
                    'defaultType': config.get('market_type', 'future'),
                    'hedgeMode': True,
                },
            })
            if testnet:
                exchange.set_sandbox_mode(True)
        self.exchange = exchange
        self._markets_loaded = False

    # ─── Connection ──────────────────────────────────────────────

    def connect(self) -> bool:
        """Load markets. Authenticated checks are skipped in dry-run."""
        try:
            self.exchange.load_markets()
        except ccxt.BaseError as e:
            logger.error(f"Failed to connect: {e}")
            return False
        self._markets_loaded = True
        logger.info("Markets loaded successfully")
        return True

    def set_leverage(self, symbol: str, leverage: float) -> bool:
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would set {symbol} leverage to {leverage}x")
            return True
        try:
            self.exchange.set_leverage(int(leverage), symbol)
            logger.info(f"Leverage set to {leverage}x for {symbol}")
            return True
        except ccxt.BaseError as e:
            logger.warning(f"Failed to set leverage: {e}")
            return False

    # ─── Account & Market Data ───────────────────────────────────

    def get_balance(self) -> dict:
        """USDT balance {total, free, used}."""
        def _fetch():
            bal = self.exchange.fetch_balance()
            return {
                'total': float(bal.get('total', {}).get('USDT', 0) or 0),
                'free': float(bal.get('free', {}).get('USDT', 0) or 0),
                'used': float(bal.get('used', {}).get('USDT', 0) or 0),
            }
        result = self._retry(_fetch)
        return result if result else {'total': 0.0, 'free': 0.0, 'used': 0.0}

    def get_latest_candles(self, symbol: str, timeframe: str, limit: int = 200) -> list:
        """Most recent N candles as [ts, O, H, L, C, V] rows."""
        result = self._retry(lambda: self.exchange.fetch_ohlcv(symbol, timeframe, limit=limit))
        return result if result else []

    def get_funding_rate(self, symbol: str) -> float:
        try:
            info = self.exchange.fetch_funding_rate(symbol)
        except ccxt.BaseError as e:
            logger.warning(f"Failed to fetch funding rate: {e}")
            return 0.0
        return float(info.get('fundingRate', 0) or 0)

    def get_ticker_price(self, symbol: str) -> float:
        try:
            t = self.exchange.fetch_ticker(symbol)
        except ccxt.BaseError as e:
            logger.warning(f"Failed to fetch ticker: {e}")
            return 0.0
        return float(t.get('last', 0) or 0)

    # ─── Orders ──────────────────────────────────────────────────

    def place_market_order(self, symbol: str, side: str, amount: float,
                           position_side: str, ref_price: float = 0.0) -> dict:
        """
        Market order in hedge mode. `side` is 'buy'/'sell', `position_side`
        'LONG'/'SHORT'. Returns {'id', 'price', 'amount', 'fee'}.

        Raises ExternalOrderFailure when the order cannot be placed.
        """
        amount = self._amount_precision(symbol, amount)
        if amount <= 0:
            raise ExternalOrderFailure(symbol, side, f"invalid amount {amount}")

        if self.dry_run:
            return self._dry_run_order(symbol, side, amount, position_side, ref_price)

        def _place():
            return self.exchange.create_order(
                symbol, 'market', side, amount, None, {'positionSide': position_side})

        try:
            order = self._retry(_place, raise_errors=True)
        except ccxt.BaseError as e:
            raise ExternalOrderFailure(symbol, side, str(e)) from e
        if not order:
            raise ExternalOrderFailure(symbol, side, "no order returned")

        price = float(order.get('average') or order.get('price') or ref_price or 0)
        if price <= 0:
            price = self.get_ticker_price(symbol)
        fee = order.get('fee') or {}
        logger.info(f"MARKET {side.upper()} {amount} {symbol} [{position_side}] "
                    f"@ {price} → id={order.get('id')}")
        return {
            'id': str(order.get('id')),
            'price': price,
            'amount': float(order.get('filled') or amount),
            'fee': float(fee.get('cost') or 0.0) if fee.get('currency', 'USDT') == 'USDT' else None,
        }

    # ─── Precision ───────────────────────────────────────────────

    def _amount_precision(self, symbol: str, amount: float) -> float:
        if not self._markets_loaded:
            return amount
        try:
            return float(self.exchange.amount_to_precision(symbol, amount))
        except ccxt.BaseError:
            return amount

    # ─── Retry Logic ─────────────────────────────────────────────

    def _retry(self, func, max_retries: int = None, raise_errors: bool = False):
        """
        Retry wrapper with exponential backoff on network / rate-limit errors.
        Other exchange errors are final. With raise_errors the last error
        propagates instead of returning None.
        """
        retries = self._max_retries if max_retries is None else max_retries
        for attempt in range(retries + 1):
            try:
                return func()
            except ccxt.RateLimitExceeded as e:
                if attempt < retries:
                    delay = 10 * (attempt + 1)
                    logger.warning(f"Rate limited. Waiting {delay}s...")
                    time.sleep(delay)
                    continue
                logger.error(f"Rate limit exceeded after {retries} retries: {e}")
                if raise_errors:
                    raise
                return None
            except (ccxt.NetworkError, ccxt.ExchangeNotAvailable) as e:
                if attempt < retries:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(f"Network error (attempt {attempt + 1}): {e}. "
                                   f"Retrying in {delay}s...")
                    time.sleep(delay)
                    continue
                logger.error(f"Network error after {retries} retries: {e}")
                if raise_errors:
                    raise
                return None
            except ccxt.ExchangeError as e:
                logger.error(f"Exchange error: {e}")
                if raise_errors:
                    raise
                return None
        return None

    # ─── Dry-Run ─────────────────────────────────────────────────

    def _dry_run_order(self, symbol, side, amount, position_side, ref_price):
        self._dry_run_counter += 1
        order_id = f"DRY_{self._dry_run_counter}_{int(time.time() * 1000)}"
        logger.info(f"[DRY-RUN] MARKET {side.upper()} {amount} {symbol} "
                    f"[{position_side}] @ {ref_price}")
        return {'id': order_id, 'price': float(ref_price), 'amount': amount, 'fee': None}


class ExchangeExecution:
    """
    Execution port used by GridStrategy in live mode: turns level opens and
    position exits into hedge-mode market orders and reports Fills.
    """

    def __init__(self, executor: BinanceExecutor, taker_fee: float = 0.0005):
        self.executor = executor
        self.taker_fee = taker_fee

    def _to_fill(self, order: dict, size: float, ref_price: float) -> Fill:
        price = order['price'] or ref_price
        fee = order['fee'] if order.get('fee') is not None else size * price * self.taker_fee
        return Fill(price=price, fee=fee, slippage_cost=abs(price - ref_price) * size)

    def open(self, symbol: str, side: str, size: float, leverage: float,
             price: float) -> Fill:
        order = self.executor.place_market_order(
            symbol, 'buy' if side == SIDE_LONG else 'sell', size,
            position_side=side.upper(), ref_price=price)
        return self._to_fill(order, size, price)

    def close(self, position, price: float) -> Fill:
        order = self.executor.place_market_order(
            position.symbol, 'sell' if side_sign(position.side) > 0 else 'buy',
            position.size, position_side=position.side.upper(), ref_price=price)
        return self._to_fill(order, position.size, price)
