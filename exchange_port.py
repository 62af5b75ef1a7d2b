"""Exchange access for the trading agent.

:class:`ExchangePort` documents the capability set the trading core relies
on.  :class:`CcxtExchange` implements it on top of a ``ccxt`` client with a
bounded retry policy for transient failures, symbol aliasing (``BTC`` versus
``XBT``), quote-market discovery, cost-based market buys with a quantity
fallback, precision-aware market sells and a dry-run mode that simulates
fills at the last traded price.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, TypeVar

import ccxt

from log_utils import setup_logger
from trade_constants import DEFAULT_MAKER_FEE, DEFAULT_TAKER_FEE

logger = setup_logger(__name__)

_T = TypeVar("_T")

RETRY_DELAYS = (0.1, 0.25, 0.5)
MAX_ATTEMPTS = 3
DEFAULT_OHLCV_LIMIT = 220
SYMBOL_PRIORITY = ["BTC", "XBT", "ETH", "SOL", "XRP", "ADA", "DOT"]
_BALANCE_META_KEYS = {"free", "used", "total", "info", "timestamp", "datetime"}
_SYMBOL_ALIASES = (("BTC", "XBT"), ("XBT", "BTC"))

_TRANSIENT_ERRORS: Tuple[type, ...] = (ccxt.NetworkError,)


class ExchangeError(Exception):
    """Base class for exchange failures surfaced to the trading core."""


class TransientExchangeError(ExchangeError):
    """Network, rate-limit or availability failure that survived all retries."""


class InvalidOrderError(ExchangeError):
    """Order parameters the exchange cannot accept; never retried."""


class BelowMinimumError(InvalidOrderError):
    """Order amount is below the market's ``limits.amount.min``."""

    def __init__(self, symbol: str, amount: float, minimum: float) -> None:
        super().__init__(
            f"Order amount {amount:.8f} is below minimum {minimum} for {symbol}"
        )
        self.symbol = symbol
        self.amount = amount
        self.minimum = minimum


@dataclass
class OrderFill:
    """Normalised view of a market order reply."""

    symbol: str
    side: str
    filled: float
    average: float
    cost: float
    fee: Optional[float] = None
    fee_currency: Optional[str] = None
    order_id: Optional[str] = None
    simulated: bool = False

    @property
    def fee_reported(self) -> bool:
        return self.fee is not None and self.fee > 0


class ExchangePort(Protocol):
    """Capabilities the trading core needs from an exchange."""

    quote_currency: str

    def load_markets(self, reload: bool = False) -> Dict[str, Dict[str, Any]]: ...

    def fetch_ohlcv(self, symbol: str, timeframe: str = "1m", limit: int = DEFAULT_OHLCV_LIMIT) -> List[List[Any]]: ...

    def fetch_ticker(self, symbol: str) -> Dict[str, Any]: ...

    def last_price(self, symbol: str) -> float: ...

    def fetch_balance(self) -> Dict[str, Any]: ...

    def base_balances(self) -> Dict[str, Dict[str, float]]: ...

    def min_amount(self, symbol: str) -> float: ...

    def market_buy_cost(self, symbol: str, cost: float) -> OrderFill: ...

    def market_sell(self, symbol: str, qty: float) -> OrderFill: ...

    def fetch_trading_fees(self, symbol: Optional[str] = None) -> Dict[str, float]: ...

    def normalize_symbol(self, symbol: str) -> str: ...


def _call_exchange_with_retries(
    action: Callable[[], _T],
    description: str,
    max_attempts: int = MAX_ATTEMPTS,
    delays: Sequence[float] = RETRY_DELAYS,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[bool, Optional[_T], Optional[Exception]]:
    """Execute ``action`` retrying transient exchange failures.

    Parameters
    ----------
    action : Callable
        Callable executed with no arguments that performs the exchange
        request.
    description : str
        Human readable description for logging.
    max_attempts : int, optional
        Number of attempts before giving up, by default 3.
    delays : sequence of float, optional
        Pause in seconds after each failed attempt.

    Returns
    -------
    Tuple[bool, Optional[_T], Optional[Exception]]
        ``(success, result, exception)``.  Non-transient errors end the
        loop immediately and are returned for the caller to classify.
    """

    last_exception: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return True, action(), None
        except _TRANSIENT_ERRORS as exc:
            last_exception = exc
            rate_limited = isinstance(exc, ccxt.RateLimitExceeded)
            logger.warning(
                "Attempt %d/%d to %s failed%s: %s",
                attempt,
                max_attempts,
                description,
                " due to rate limit" if rate_limited else "",
                exc,
            )
            if attempt >= max_attempts:
                break
            sleep(delays[min(attempt - 1, len(delays) - 1)])
        except Exception as exc:
            return False, None, exc
    return False, None, last_exception


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _precision_decimals(precision: Any) -> int:
    """Translate a ccxt amount precision into a number of decimals.

    Markets report either a decimal count (``8``) or a tick size
    (``1e-8``).
    """
    step = _as_float(precision, 8.0)
    if step <= 0:
        return 8
    if step < 1:
        return int(abs(round(math.log10(step))))
    return int(step)


def extract_fee(order: Mapping[str, Any]) -> Tuple[Optional[float], Optional[str]]:
    """Return ``(fee_cost, currency)`` reported on ``order`` or ``(None, None)``."""

    fee = order.get("fee") or {}
    cost = _as_float(fee.get("cost")) if isinstance(fee, Mapping) else 0.0
    if cost > 0:
        return cost, fee.get("currency")
    fees = order.get("fees") or []
    total = 0.0
    currency = None
    for item in fees:
        if isinstance(item, Mapping):
            total += _as_float(item.get("cost"))
            currency = currency or item.get("currency")
    if total > 0:
        return total, currency
    return None, None


def parse_fill(order: Mapping[str, Any], symbol: str, side: str) -> OrderFill:
    """Build an :class:`OrderFill` tolerating partially populated replies."""

    info = order.get("info") or {}
    if not isinstance(info, Mapping):
        info = {}
    filled = _as_float(order.get("filled")) or _as_float(order.get("amount")) or _as_float(info.get("vol"))
    average = _as_float(order.get("average")) or _as_float(order.get("price")) or _as_float(info.get("price"))
    cost = _as_float(order.get("cost")) or _as_float(info.get("cost"))
    if not average and filled and cost:
        average = cost / filled
    if not cost and filled and average:
        cost = filled * average
    fee, currency = extract_fee(order)
    return OrderFill(
        symbol=symbol,
        side=side,
        filled=filled,
        average=average,
        cost=cost,
        fee=fee,
        fee_currency=currency,
        order_id=order.get("id"),
    )


class CcxtExchange:
    """ccxt-backed implementation of :class:`ExchangePort`."""

    def __init__(
        self,
        exchange_id: str = "kraken",
        api_key: str = "",
        api_secret: str = "",
        quote_currency: str = "CAD",
        dry_run: bool = False,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if client is None:
            exchange_cls = getattr(ccxt, exchange_id)
            client = exchange_cls(
                {
                    "apiKey": api_key,
                    "secret": api_secret,
                    "enableRateLimit": True,
                    "options": {"defaultType": "spot"},
                }
            )
        self.client = client
        self.quote_currency = quote_currency.upper()
        self.dry_run = dry_run
        self._sleep = sleep
        self._markets: Dict[str, Dict[str, Any]] = {}
        self._quote_markets: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "CcxtExchange":
        return cls(
            exchange_id=settings.exchange_id,
            api_key=settings.api_key,
            api_secret=settings.api_secret,
            quote_currency=settings.quote_currency,
            dry_run=settings.dry_run,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _call(self, action: Callable[[], _T], description: str) -> _T:
        success, result, error = _call_exchange_with_retries(
            action, description, sleep=self._sleep
        )
        if success:
            return result  # type: ignore[return-value]
        if isinstance(error, ExchangeError):
            raise error
        if isinstance(error, ccxt.InvalidOrder):
            raise InvalidOrderError(f"{description}: {error}") from error
        if isinstance(error, _TRANSIENT_ERRORS):
            raise TransientExchangeError(f"{description}: {error}") from error
        raise ExchangeError(f"{description}: {error}") from error

    # ------------------------------------------------------------------
    # Markets
    # ------------------------------------------------------------------
    def load_markets(self, reload: bool = False) -> Dict[str, Dict[str, Any]]:
        if self._markets and not reload:
            return self._markets
        markets = self._call(lambda: self.client.load_markets(reload), "load markets")
        self._markets = dict(markets or {})
        self._quote_markets = None
        return self._markets

    def market(self, symbol: str) -> Dict[str, Any]:
        markets = self.load_markets()
        if symbol not in markets:
            raise InvalidOrderError(f"Unknown market {symbol}")
        return markets[symbol]

    def discover_quote_markets(self) -> List[Dict[str, Any]]:
        """Active spot markets in the quote currency, priority assets first."""

        if self._quote_markets is not None:
            return self._quote_markets
        candidates = [
            market
            for market in self.load_markets().values()
            if market.get("quote") == self.quote_currency
            and market.get("active") is not False
            and market.get("spot", True)
        ]

        def _rank(market: Mapping[str, Any]) -> int:
            base = market.get("base")
            return SYMBOL_PRIORITY.index(base) if base in SYMBOL_PRIORITY else len(SYMBOL_PRIORITY)

        # sorted() is stable so non-priority markets keep catalogue order.
        self._quote_markets = sorted(candidates, key=_rank)
        logger.info(
            "Found %d %s markets: %s",
            len(self._quote_markets),
            self.quote_currency,
            ", ".join(m.get("symbol", "?") for m in self._quote_markets),
        )
        return self._quote_markets

    def normalize_symbol(self, symbol: str) -> str:
        markets = self.load_markets()
        if symbol in markets:
            return symbol
        for source, target in _SYMBOL_ALIASES:
            if source in symbol:
                alias = symbol.replace(source, target)
                if alias in markets:
                    logger.info("Normalized %s to %s", symbol, alias)
                    return alias
        logger.warning("Symbol %s not found, using as-is", symbol)
        return symbol

    def validate_symbols(self, symbols: Iterable[str]) -> List[str]:
        """Normalise ``symbols`` keeping those tradable in the quote currency.

        Falls back to the top three discovered markets when none validate.
        """

        quote_markets = self.discover_quote_markets()
        known = {market.get("symbol") for market in quote_markets}
        valid: List[str] = []
        for symbol in symbols:
            normalized = self.normalize_symbol(symbol)
            if normalized in known:
                if normalized not in valid:
                    valid.append(normalized)
                logger.info("%s -> %s validated", symbol, normalized)
            else:
                logger.warning("%s not found in %s markets", symbol, self.quote_currency)
        if not valid and quote_markets:
            valid = [market["symbol"] for market in quote_markets[:3]]
            logger.info(
                "No valid symbols provided, using top %s markets: %s",
                self.quote_currency,
                ", ".join(valid),
            )
        return valid

    def min_amount(self, symbol: str) -> float:
        limits = self.market(symbol).get("limits") or {}
        amount = limits.get("amount") or {}
        return _as_float(amount.get("min"))

    def round_amount(self, symbol: str, qty: float) -> float:
        precision = (self.market(symbol).get("precision") or {}).get("amount")
        decimals = _precision_decimals(precision)
        return round(qty, decimals)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------
    def fetch_ohlcv(self, symbol: str, timeframe: str = "1m", limit: int = DEFAULT_OHLCV_LIMIT) -> List[List[Any]]:
        fetch_limit = max(int(limit), DEFAULT_OHLCV_LIMIT)
        rows = self._call(
            lambda: self.client.fetch_ohlcv(symbol, timeframe, None, fetch_limit),
            f"fetch {timeframe} candles for {symbol}",
        )
        return list(rows or [])

    def fetch_ticker(self, symbol: str) -> Dict[str, Any]:
        return self._call(lambda: self.client.fetch_ticker(symbol), f"fetch ticker for {symbol}")

    def last_price(self, symbol: str) -> float:
        ticker = self.fetch_ticker(symbol) or {}
        price = _as_float(ticker.get("last")) or _as_float(ticker.get("close"))
        if price <= 0:
            raise InvalidOrderError(f"Ticker for {symbol} has no price")
        return price

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------
    def fetch_balance(self) -> Dict[str, Any]:
        return self._call(self.client.fetch_balance, "fetch balance") or {}

    def quote_balance(self) -> float:
        """Quote-currency balance across the response shapes exchanges use."""

        balance = self.fetch_balance()
        currency = self.quote_currency
        for key in ("total", "free", "used", "info"):
            section = balance.get(key)
            if isinstance(section, Mapping) and section.get(currency) is not None:
                return _as_float(section.get(currency))
        direct = balance.get(currency)
        if isinstance(direct, Mapping):
            return _as_float(direct.get("total"))
        return _as_float(direct)

    def base_balances(self) -> Dict[str, Dict[str, float]]:
        """Non-zero balances of every asset other than the quote currency."""

        balance = self.fetch_balance()
        bases: Dict[str, Dict[str, float]] = {}
        for currency, amounts in balance.items():
            if currency in _BALANCE_META_KEYS or currency == self.quote_currency:
                continue
            if not isinstance(amounts, Mapping):
                continue
            entry = {key: _as_float(amounts.get(key)) for key in ("free", "used", "total")}
            if any(value > 0 for value in entry.values()):
                bases[currency] = entry
        return bases

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def _simulated_fill(self, symbol: str, side: str, qty: float, price: float) -> OrderFill:
        logger.info("[DRY-RUN] %s %s %.8f @ %.2f", side.upper(), symbol, qty, price)
        return OrderFill(
            symbol=symbol,
            side=side,
            filled=qty,
            average=price,
            cost=qty * price,
            order_id=f"sim-{side}-{int(time.time() * 1000)}",
            simulated=True,
        )

    def market_buy_cost(self, symbol: str, cost: float) -> OrderFill:
        """Buy ``cost`` worth of quote currency at market.

        Tries the exchange's cost-based market order first and falls back to
        a quantity order sized at ``cost / ticker.last``.
        """

        if not cost or cost <= 0 or math.isnan(cost):
            raise InvalidOrderError(f"Invalid buy cost {cost!r} for {symbol}")
        price = self.last_price(symbol)
        estimated_qty = cost / price
        minimum = self.min_amount(symbol)
        if minimum and estimated_qty < minimum:
            raise BelowMinimumError(symbol, estimated_qty, minimum)

        if self.dry_run:
            return self._simulated_fill(symbol, "buy", estimated_qty, price)

        logger.info("Market BUY: %s with %.2f %s", symbol, cost, self.quote_currency)
        try:
            order = self._call(
                lambda: self.client.create_order(symbol, "market", "buy", None, None, {"cost": cost}),
                f"buy {symbol} by cost",
            )
        except InvalidOrderError:
            raise
        except ExchangeError as exc:
            logger.warning("Cost-based buy unsupported for %s (%s), using quantity order", symbol, exc)
            order = self._call(
                lambda: self.client.create_market_buy_order(symbol, estimated_qty),
                f"buy {symbol} by quantity",
            )
        fill = parse_fill(order or {}, symbol, "buy")
        if fill.filled <= 0 or fill.average <= 0:
            raise ExchangeError(
                f"Buy order for {symbol} returned no fill (filled={fill.filled}, average={fill.average})"
            )
        logger.info(
            "Market BUY executed: %s %.8f @ %.2f fee=%s",
            symbol,
            fill.filled,
            fill.average,
            fill.fee if fill.fee_reported else "n/a",
        )
        return fill

    def market_sell(self, symbol: str, qty: float) -> OrderFill:
        """Sell ``qty`` at market after rounding to the market precision."""

        if not qty or qty <= 0 or math.isnan(qty):
            raise InvalidOrderError(f"Invalid sell amount {qty!r} for {symbol}")
        rounded = self.round_amount(symbol, qty)
        minimum = self.min_amount(symbol)
        if minimum and rounded < minimum:
            raise BelowMinimumError(symbol, rounded, minimum)

        if self.dry_run:
            return self._simulated_fill(symbol, "sell", rounded, self.last_price(symbol))

        logger.info("Market SELL: %s %.8f (requested %.8f)", symbol, rounded, qty)
        order = self._call(
            lambda: self.client.create_market_sell_order(symbol, rounded),
            f"sell {symbol}",
        )
        fill = parse_fill(order or {}, symbol, "sell")
        if fill.filled <= 0:
            fill.filled = rounded
        if fill.average <= 0:
            fill.average = self.last_price(symbol)
            fill.cost = fill.filled * fill.average
        logger.info(
            "Market SELL executed: %s %.8f @ %.2f fee=%s",
            symbol,
            fill.filled,
            fill.average,
            fill.fee if fill.fee_reported else "n/a",
        )
        return fill

    # ------------------------------------------------------------------
    # Fees
    # ------------------------------------------------------------------
    def fetch_trading_fees(self, symbol: Optional[str] = None) -> Dict[str, float]:
        """Return ``{"taker": ..., "maker": ...}`` with default fallbacks."""

        try:
            fees = self._call(self.client.fetch_trading_fees, "fetch trading fees") or {}
        except ExchangeError as exc:
            logger.warning("Fee schedule unavailable (%s), using defaults", exc)
            fees = {}
        entry: Mapping[str, Any] = {}
        if "taker" in fees or "maker" in fees:
            entry = fees
        elif symbol and isinstance(fees.get(symbol), Mapping):
            entry = fees[symbol]
        else:
            for value in fees.values():
                if isinstance(value, Mapping) and ("taker" in value or "maker" in value):
                    entry = value
                    break
        if not entry and symbol and symbol in self._markets:
            entry = self._markets[symbol]
        taker = _as_float(entry.get("taker")) or DEFAULT_TAKER_FEE
        maker = _as_float(entry.get("maker")) or DEFAULT_MAKER_FEE
        return {"taker": taker, "maker": maker}


__all__ = [
    "BelowMinimumError",
    "CcxtExchange",
    "ExchangeError",
    "ExchangePort",
    "InvalidOrderError",
    "OrderFill",
    "TransientExchangeError",
    "extract_fee",
    "parse_fill",
]
