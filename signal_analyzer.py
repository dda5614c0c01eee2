"""
=============================================================
SIGNAL ANALYZER - Digit Bias Detection & Auto-Strategy Flags
=============================================================
Rolling statistics over the last-digit stream of each symbol.

Fitur:
1. Digit histogram (percentages 0-9)
2. Over 3 / Under 6 / Even / Odd percentages
3. Chi-square bias test with discrete p-value lookup
4. Confidence score 0-100 with reason list
5. Strong signal classification + edge-triggered alerts
6. Entry point digit sets
7. Auto-strategy readiness / entry / recovery flags (1000 digits)

Window sizes:
- Signal analysis: most recent 500 digits (needs >= 500)
- Auto-strategy analysis: full window (needs >= 1000)
=============================================================
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from digit_store import DigitStreamStore
from symbols import get_symbol_name

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SIGNAL_WINDOW = 500
AUTO_STRATEGY_WINDOW = 1000

STRONG_THRESHOLD = 66.0
MODERATE_THRESHOLD = 61.0
EVEN_HIGH = 56.0
EVEN_LOW = 44.0
HOT_DIGIT_THRESHOLD = 14.0
READY_THRESHOLD = 10.5
UNIFORM_PERCENT = 10.0

STRONG_OVER_3 = "Strong Over 3"
STRONG_UNDER_6 = "Strong Under 6"

# (statistic threshold, p-value) for 9 degrees of freedom, strictest first
CHI_SQUARE_TABLE: Tuple[Tuple[float, float], ...] = (
    (21.67, 0.01),
    (19.02, 0.025),
    (16.92, 0.05),
    (14.68, 0.1),
    (12.24, 0.2),
    (4.17, 0.9),
    (2.70, 0.98),
)


@dataclass(frozen=True)
class ChiSquareResult:
    statistic: float
    p_value: float
    interpretation: str

    def to_dict(self) -> dict:
        return {
            "statistic": round(self.statistic, 4),
            "p_value": self.p_value,
            "interpretation": self.interpretation,
        }


@dataclass(frozen=True)
class SignalSnapshot:
    """Result of one signal analysis pass for one symbol"""
    symbol: str
    name: str
    percentages: Tuple[float, ...]
    counts: Tuple[int, ...]
    over_3: float
    under_6: float
    even: float
    odd: float
    chi_square: ChiSquareResult
    confidence: int
    hot_digits: Tuple[int, ...]
    strong_signal: bool
    strong_signal_type: str
    reasons: Tuple[str, ...]
    entry_points_over3: Tuple[int, ...]
    entry_points_under6: Tuple[int, ...]
    last_digit: Optional[int]
    ticks_analyzed: int
    update_time: datetime = field(default_factory=datetime.now)

    @property
    def is_over(self) -> bool:
        return self.strong_signal_type == STRONG_OVER_3

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "percentages": {f"digit_{d}": round(p, 2) for d, p in enumerate(self.percentages)},
            "counts": list(self.counts),
            "over_3": round(self.over_3, 2),
            "under_6": round(self.under_6, 2),
            "even": round(self.even, 2),
            "odd": round(self.odd, 2),
            "chi_square": self.chi_square.to_dict(),
            "confidence": self.confidence,
            "hot_digits": list(self.hot_digits),
            "strong_signal": self.strong_signal,
            "strong_signal_type": self.strong_signal_type,
            "reasons": list(self.reasons),
            "entry_points_over3": list(self.entry_points_over3),
            "entry_points_under6": list(self.entry_points_under6),
            "last_digit": self.last_digit,
            "ticks_analyzed": self.ticks_analyzed,
            "update_time": self.update_time.isoformat(),
        }


@dataclass(frozen=True)
class AutoStrategySnapshot:
    """Long-window readiness/entry/recovery flags for one symbol"""
    symbol: str
    over1_ready: bool
    under8_ready: bool
    over1_entry: bool
    under8_entry: bool
    recovery_under8: bool
    recovery_over1: bool
    last_digit: int
    last_10: Tuple[int, ...]
    last_5: Tuple[int, ...]
    most_appearing: int
    least_appearing: int
    percentages: Tuple[float, ...]
    update_time: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "over1_ready": self.over1_ready,
            "under8_ready": self.under8_ready,
            "over1_entry": self.over1_entry,
            "under8_entry": self.under8_entry,
            "recovery_under8": self.recovery_under8,
            "recovery_over1": self.recovery_over1,
            "last_digit": self.last_digit,
            "last_10": list(self.last_10),
            "last_5": list(self.last_5),
            "most_appearing": self.most_appearing,
            "least_appearing": self.least_appearing,
            "percentages": [round(p, 2) for p in self.percentages],
            "update_time": self.update_time.isoformat(),
        }


def digit_counts(digits: Sequence[int]) -> List[int]:
    counter = Counter(digits)
    return [counter.get(d, 0) for d in range(10)]


def chi_square_test(counts: Sequence[int]) -> ChiSquareResult:
    """
    Chi-square goodness of fit against a uniform digit distribution.

    The p-value is a coarse lookup over CHI_SQUARE_TABLE: the first
    threshold the statistic reaches wins, otherwise p = 1.0.
    """
    total = sum(counts)
    if total == 0:
        return ChiSquareResult(statistic=0.0, p_value=1.0, interpretation="No Data")

    expected = total / 10
    statistic = sum((observed - expected) ** 2 / expected for observed in counts)

    p_value = 1.0
    for threshold, p in CHI_SQUARE_TABLE:
        if statistic >= threshold:
            p_value = p
            break

    if p_value < 0.01:
        interpretation = "STRONG BIAS DETECTED"
    elif p_value < 0.05:
        interpretation = "Bias detected"
    else:
        interpretation = "Uniform (fair)"

    return ChiSquareResult(statistic=statistic, p_value=p_value, interpretation=interpretation)


def is_low_run(digits: Sequence[int], ceiling: int = 4, length: int = 5) -> bool:
    """True if the last `length` digits are all <= ceiling"""
    recent = list(digits)[-length:]
    return len(recent) == length and all(d <= ceiling for d in recent)


def is_high_run(digits: Sequence[int], floor: int = 6, length: int = 5) -> bool:
    """True if the last `length` digits are all >= floor"""
    recent = list(digits)[-length:]
    return len(recent) == length and all(d >= floor for d in recent)


def _entry_points(percentages: Sequence[float], band: range) -> Tuple[int, ...]:
    points = tuple(d for d in band if percentages[d] >= UNIFORM_PERCENT)
    if points:
        return points
    return (max(band, key=lambda d: percentages[d]),)


def analyze_digits(symbol: str, digits: Sequence[int],
                   now: Optional[datetime] = None) -> Optional[SignalSnapshot]:
    """
    Run the signal analysis over the most recent 500 digits.

    Args:
        symbol: Symbol being analysed
        digits: Digit window, oldest first
        now: Timestamp for the snapshot

    Returns:
        SignalSnapshot, or None while fewer than 500 digits are buffered
    """
    if len(digits) < SIGNAL_WINDOW:
        return None

    recent = list(digits)[-SIGNAL_WINDOW:]
    total = len(recent)
    counts = digit_counts(recent)
    percentages = tuple(c / total * 100 for c in counts)

    over_3 = sum(counts[4:]) / total * 100
    under_6 = sum(counts[:6]) / total * 100
    even = sum(counts[d] for d in range(0, 10, 2)) / total * 100
    odd = 100 - even

    chi = chi_square_test(counts)

    confidence = 0
    reasons: List[str] = []
    strong_signal = False
    strong_type = ""

    if over_3 >= STRONG_THRESHOLD:
        confidence += 35
        strong_signal = True
        strong_type = STRONG_OVER_3
        reasons.append("Strong Over 3 (> 66%)")
    elif over_3 >= MODERATE_THRESHOLD:
        confidence += 15
        reasons.append("Moderate Over 3")

    if under_6 >= STRONG_THRESHOLD:
        confidence += 35
        strong_signal = True
        strong_type = STRONG_UNDER_6
        reasons.append("Strong Under 6 (> 66%)")
    elif under_6 >= MODERATE_THRESHOLD:
        confidence += 15
        reasons.append("Moderate Under 6")

    if even >= EVEN_HIGH or even <= EVEN_LOW:
        confidence += 15
        reasons.append("Strong Even/Odd Bias")

    if chi.p_value < 0.01:
        confidence += 20
        reasons.append("Strong Statistical Bias")
    elif chi.p_value < 0.05:
        confidence += 10
        reasons.append("Statistical Bias")

    hot_digits = tuple(d for d in range(10) if percentages[d] >= HOT_DIGIT_THRESHOLD)
    if hot_digits:
        confidence += 15
        reasons.append("Hot Digit(s)")

    return SignalSnapshot(
        symbol=symbol,
        name=get_symbol_name(symbol),
        percentages=percentages,
        counts=tuple(counts),
        over_3=over_3,
        under_6=under_6,
        even=even,
        odd=odd,
        chi_square=chi,
        confidence=max(0, min(100, confidence)),
        hot_digits=hot_digits,
        strong_signal=strong_signal,
        strong_signal_type=strong_type,
        reasons=tuple(reasons),
        entry_points_over3=_entry_points(percentages, range(0, 4)),
        entry_points_under6=_entry_points(percentages, range(6, 10)),
        last_digit=recent[-1],
        ticks_analyzed=total,
        update_time=now or datetime.now(),
    )


def analyze_auto_strategy(symbol: str, digits: Sequence[int],
                          now: Optional[datetime] = None) -> Optional[AutoStrategySnapshot]:
    """
    Compute auto-strategy flags over the full window.

    Returns None while fewer than 1000 digits are buffered.
    """
    if len(digits) < AUTO_STRATEGY_WINDOW:
        return None

    window = list(digits)
    total = len(window)
    counts = digit_counts(window)
    percentages = tuple(c / total * 100 for c in counts)

    over1_ready = sum(percentages[0:3]) / 3 <= READY_THRESHOLD
    under8_ready = sum(percentages[7:10]) / 3 <= READY_THRESHOLD

    last_10 = tuple(window[-10:])
    last_5 = tuple(window[-5:])
    current = window[-1]

    # stable: ties keep the lower digit first
    ranked = sorted(range(10), key=lambda d: -counts[d])
    most_appearing = ranked[0]
    least_appearing = ranked[-1]
    not_extreme = current != most_appearing and current != least_appearing

    low_band_hits = sum(1 for d in last_10 if d <= 3)
    high_band_hits = sum(1 for d in last_10 if d >= 7)

    over1_entry = over1_ready and low_band_hits > 2 and current in (5, 6) and not_extreme
    under8_entry = under8_ready and high_band_hits > 2 and current in (7, 4) and not_extreme

    return AutoStrategySnapshot(
        symbol=symbol,
        over1_ready=over1_ready,
        under8_ready=under8_ready,
        over1_entry=over1_entry,
        under8_entry=under8_entry,
        recovery_under8=is_low_run(window, ceiling=4),
        recovery_over1=is_high_run(window, floor=6),
        last_digit=current,
        last_10=last_10,
        last_5=last_5,
        most_appearing=most_appearing,
        least_appearing=least_appearing,
        percentages=percentages,
        update_time=now or datetime.now(),
    )


class StrongSignalTracker:
    """
    Edge detector for strong signals.

    Fires once when a symbol goes from non-strong to strong and
    re-arms only after the symbol drops back below the threshold.
    """

    def __init__(self):
        self._previous: Dict[str, bool] = {}
        self._notified: set = set()

    def update(self, snapshot: SignalSnapshot) -> bool:
        symbol = snapshot.symbol
        was_strong = self._previous.get(symbol, False)
        self._previous[symbol] = snapshot.strong_signal

        if snapshot.strong_signal and not was_strong and symbol not in self._notified:
            self._notified.add(symbol)
            return True

        if not snapshot.strong_signal and was_strong:
            self._notified.discard(symbol)

        return False

    def reset(self) -> None:
        self._previous.clear()
        self._notified.clear()


class SignalAnalyzer:
    """
    Runs both analyses over every buffered symbol.

    The snapshot maps are replaced wholesale on each pass; callers
    only ever get copies of them.
    """

    def __init__(self, store: DigitStreamStore):
        self.store = store
        self.tracker = StrongSignalTracker()
        self._signals: Dict[str, SignalSnapshot] = {}
        self._auto: Dict[str, AutoStrategySnapshot] = {}
        self.last_update: Optional[datetime] = None
        self._lock = threading.RLock()

    def run(self, now: Optional[datetime] = None) -> List[SignalSnapshot]:
        """
        Analyse all symbols once.

        Returns:
            Snapshots that just crossed into a strong signal
        """
        now = now or datetime.now()
        signals: Dict[str, SignalSnapshot] = {}
        auto: Dict[str, AutoStrategySnapshot] = {}
        alerts: List[SignalSnapshot] = []

        for symbol in self.store.symbols():
            digits = self.store.get_digits(symbol)

            snapshot = analyze_digits(symbol, digits, now)
            if snapshot is not None:
                signals[symbol] = snapshot
                if self.tracker.update(snapshot):
                    alerts.append(snapshot)

            auto_snapshot = analyze_auto_strategy(symbol, digits, now)
            if auto_snapshot is not None:
                auto[symbol] = auto_snapshot

        with self._lock:
            self._signals = signals
            self._auto = auto
            self.last_update = now

        for snapshot in alerts:
            logger.info(
                f"🔥 Strong signal {snapshot.symbol}: {snapshot.strong_signal_type} "
                f"(confidence {snapshot.confidence}%)"
            )
        return alerts

    def get_signals(self) -> Dict[str, SignalSnapshot]:
        with self._lock:
            return dict(self._signals)

    def get_signal(self, symbol: str) -> Optional[SignalSnapshot]:
        with self._lock:
            return self._signals.get(symbol)

    def get_auto_strategy(self) -> Dict[str, AutoStrategySnapshot]:
        with self._lock:
            return dict(self._auto)

    def reset(self) -> None:
        with self._lock:
            self._signals = {}
            self._auto = {}
            self.last_update = None
        self.tracker.reset()
