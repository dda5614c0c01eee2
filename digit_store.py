"""
=============================================================
DIGIT STREAM STORE - Rolling Last-Digit Windows
=============================================================
Keeps a bounded window of last digits per symbol, fed by
ticks_history batches and live tick messages.

Fitur:
- Digit extraction at the symbol's decimal precision
- History ingestion once per symbol (idempotent)
- Front eviction once a window exceeds 1000 digits
- Runtime precision overrides (active_symbols pip)
=============================================================
"""

import logging
import threading
from collections import deque
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP, InvalidOperation
from typing import Deque, Dict, Iterable, List, Optional

from symbols import get_decimals

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def extract_last_digit(price: float, decimals: int = 2) -> int:
    """
    Extract the last digit of a price formatted to a fixed precision.

    The price goes through its shortest repr before quantizing, so
    1234.5599999999 style noise never leaks into the digit.

    Args:
        price: Tick quote
        decimals: Instrument decimal precision

    Returns:
        Digit 0-9
    """
    if decimals <= 0:
        return abs(int(Decimal(repr(float(price))).to_integral_value(rounding=ROUND_FLOOR))) % 10

    try:
        quantum = Decimal(1).scaleb(-decimals)
        formatted = str(Decimal(repr(float(price))).quantize(quantum, rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Cannot extract digit from price {price!r}: {e}")

    return int(formatted[-1])


class DigitStreamStore:
    """
    Per-symbol rolling digit windows.

    Only ingestion writes to the windows; readers receive copies.
    """

    MAX_DIGITS = 1000

    def __init__(self, max_digits: int = MAX_DIGITS):
        self.max_digits = max_digits
        self._windows: Dict[str, Deque[int]] = {}
        self._subscribed: set = set()
        self._decimals: Dict[str, int] = {}
        self._lock = threading.RLock()

    def decimals_for(self, symbol: str) -> int:
        return self._decimals.get(symbol, get_decimals(symbol))

    def set_decimals(self, symbol: str, decimals: int) -> None:
        """Override the precision of a symbol"""
        with self._lock:
            self._decimals[symbol] = int(decimals)

    def extract(self, symbol: str, price: float) -> int:
        return extract_last_digit(price, self.decimals_for(symbol))

    def is_subscribed(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._subscribed

    def ingest_history(self, symbol: str, prices: Iterable[float]) -> bool:
        """
        Append digits of a history batch.

        Args:
            symbol: Symbol the batch belongs to
            prices: Historical quotes, oldest first

        Returns:
            True if the batch was ingested, False if the symbol was
            already subscribed and the batch was ignored
        """
        with self._lock:
            if symbol in self._subscribed:
                logger.debug(f"History for {symbol} ignored (already subscribed)")
                return False

            window = self._windows.setdefault(symbol, deque())
            decimals = self.decimals_for(symbol)
            for price in prices:
                window.append(extract_last_digit(float(price), decimals))
            while len(window) > self.max_digits:
                window.popleft()

            self._subscribed.add(symbol)

        logger.info(f"📊 {symbol}: {len(window)} digits loaded from history")
        return True

    def ingest_tick(self, symbol: str, price: float) -> int:
        """Append the digit of one tick and return it"""
        with self._lock:
            digit = self.extract(symbol, price)
            window = self._windows.setdefault(symbol, deque())
            window.append(digit)
            if len(window) > self.max_digits:
                window.popleft()
        return digit

    def has_symbol(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._windows

    def get_digits(self, symbol: str, count: Optional[int] = None) -> List[int]:
        """Copy of the window, optionally only the most recent `count` digits"""
        with self._lock:
            window = self._windows.get(symbol)
            if not window:
                return []
            digits = list(window)
        if count is not None:
            return digits[-count:] if count > 0 else []
        return digits

    def last_digits(self, symbol: str, n: int) -> List[int]:
        """Most recent n digits, oldest first; fewer while warming up"""
        return self.get_digits(symbol, n)

    def last_digit(self, symbol: str) -> Optional[int]:
        with self._lock:
            window = self._windows.get(symbol)
            return window[-1] if window else None

    def size(self, symbol: str) -> int:
        with self._lock:
            return len(self._windows.get(symbol, ()))

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._windows.keys())

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
            self._subscribed.clear()
        logger.info("🧹 Digit windows cleared")
