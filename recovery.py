"""
=============================================================
RECOVERY COORDINATOR - Cross-Bot Loss Recovery
=============================================================
Per-symbol recovery state shared by every auto bot.

A qualifying auto-bot loss arms its symbol; while any symbol is
armed no new auto entry may start anywhere. Each analysis tick
the armed symbols are re-checked against their digit-run
condition; the first match disarms the symbol and yields one
recovery trade.

Modes:
- Over 1 loss  -> awaiting-high-run       (last 5 >= 6) -> Under 6
- Under 8 loss -> awaiting-low-run        (last 5 <= 4) -> Over 4
- Over 3 loss  -> arena-awaiting-low-run  (last 5 <= 4) -> Over 4
- Under 6 loss -> arena-awaiting-high-run (last 5 >= 5) -> Under 5
=============================================================
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from bot_models import Bot, BotKind, PredictionType
from signal_analyzer import is_high_run, is_low_run

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RUN_LENGTH = 5


class RecoveryMode(Enum):
    NONE = "none"
    AWAITING_HIGH_RUN = "awaiting-high-run"
    AWAITING_LOW_RUN = "awaiting-low-run"
    ARENA_AWAITING_LOW_RUN = "arena-awaiting-low-run"
    ARENA_AWAITING_HIGH_RUN = "arena-awaiting-high-run"


@dataclass(frozen=True)
class RecoveryPlan:
    """Run condition and adjusted trade of a recovery mode"""
    mode: RecoveryMode
    low_run: bool
    threshold: int
    prediction: PredictionType
    digit: int
    name: str

    def is_triggered(self, digits: Sequence[int]) -> bool:
        if self.low_run:
            return is_low_run(digits, ceiling=self.threshold, length=RUN_LENGTH)
        return is_high_run(digits, floor=self.threshold, length=RUN_LENGTH)


RECOVERY_PLANS: Dict[RecoveryMode, RecoveryPlan] = {
    RecoveryMode.AWAITING_HIGH_RUN: RecoveryPlan(
        RecoveryMode.AWAITING_HIGH_RUN, False, 6, PredictionType.UNDER, 6, "Recovery Under 6"),
    RecoveryMode.AWAITING_LOW_RUN: RecoveryPlan(
        RecoveryMode.AWAITING_LOW_RUN, True, 4, PredictionType.OVER, 4, "Recovery Over 4"),
    RecoveryMode.ARENA_AWAITING_LOW_RUN: RecoveryPlan(
        RecoveryMode.ARENA_AWAITING_LOW_RUN, True, 4, PredictionType.OVER, 4, "Recovery Over 4 (Arena)"),
    RecoveryMode.ARENA_AWAITING_HIGH_RUN: RecoveryPlan(
        RecoveryMode.ARENA_AWAITING_HIGH_RUN, False, 5, PredictionType.UNDER, 5, "Recovery Under 5 (Arena)"),
}

# (bot kind, prediction, barrier) of each strategy's entry contract
_ENTRY_CONTRACTS: Dict[Tuple[BotKind, PredictionType, int], RecoveryMode] = {
    (BotKind.AUTO_STRATEGY, PredictionType.OVER, 1): RecoveryMode.AWAITING_HIGH_RUN,
    (BotKind.AUTO_STRATEGY, PredictionType.UNDER, 8): RecoveryMode.AWAITING_LOW_RUN,
    (BotKind.AUTO_ARENA, PredictionType.OVER, 3): RecoveryMode.ARENA_AWAITING_LOW_RUN,
    (BotKind.AUTO_ARENA, PredictionType.UNDER, 6): RecoveryMode.ARENA_AWAITING_HIGH_RUN,
}


@dataclass
class RecoveryState:
    symbol: str
    mode: RecoveryMode
    bot_id: str
    armed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "mode": self.mode.value,
            "bot_id": self.bot_id,
            "armed_at": self.armed_at.isoformat(),
        }


class RecoveryCoordinator:
    """Owns the symbol -> recovery state table"""

    def __init__(self):
        self._states: Dict[str, RecoveryState] = {}
        self._lock = threading.RLock()

    @staticmethod
    def mode_for_loss(bot: Bot) -> Optional[RecoveryMode]:
        """
        Recovery mode a losing bot qualifies for.

        Only first-entry auto bots qualify; recovery bots never
        escalate further.
        """
        if not bot.is_auto or bot.is_recovery:
            return None
        key = (bot.kind, bot.config.prediction_type, int(bot.config.last_digit_prediction))
        return _ENTRY_CONTRACTS.get(key)

    def arm(self, symbol: str, mode: RecoveryMode, bot_id: str) -> RecoveryState:
        with self._lock:
            state = RecoveryState(symbol=symbol, mode=mode, bot_id=bot_id)
            self._states[symbol] = state
        logger.warning(f"🚑 Recovery armed for {symbol}: {mode.value} (bot {bot_id})")
        return state

    def get(self, symbol: str) -> Optional[RecoveryState]:
        with self._lock:
            return self._states.get(symbol)

    def mode(self, symbol: str) -> RecoveryMode:
        state = self.get(symbol)
        return state.mode if state else RecoveryMode.NONE

    def is_armed(self, symbol: Optional[str] = None) -> bool:
        """Armed state of one symbol, or of any symbol when omitted"""
        with self._lock:
            if symbol is None:
                return bool(self._states)
            return symbol in self._states

    def armed_symbols(self) -> List[str]:
        with self._lock:
            return list(self._states.keys())

    def check(self, symbol: str, digits: Sequence[int]) -> Optional[Tuple[RecoveryState, RecoveryPlan]]:
        """
        Evaluate the run condition of an armed symbol.

        On a match the symbol is disarmed and the state with its plan
        is returned; the caller fires exactly one recovery trade.
        """
        with self._lock:
            state = self._states.get(symbol)
            if state is None:
                return None
            plan = RECOVERY_PLANS[state.mode]
            if not plan.is_triggered(digits):
                return None
            del self._states[symbol]

        logger.info(f"🚑 Recovery run on {symbol}: {list(digits)[-RUN_LENGTH:]} -> {plan.name}")
        return state, plan

    def clear(self) -> int:
        with self._lock:
            count = len(self._states)
            self._states.clear()
        if count:
            logger.info(f"🧹 Cleared {count} recovery state(s)")
        return count

    def snapshot(self) -> Dict[str, dict]:
        with self._lock:
            return {symbol: state.to_dict() for symbol, state in self._states.items()}
