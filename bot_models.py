"""
=============================================================
BOT MODELS - Bots, Trades & Configuration
=============================================================
Data model shared by the engine, the staking controller and
the recovery coordinator.

Bot families:
- MANUAL: the single continuous "speed" bot
- SIGNAL: one bot per started signal
- AUTO_STRATEGY: control-centre bots (Over 1 / Under 8)
- AUTO_ARENA: arena auto-trade bots (Over 3 / Under 6)

Prediction → contract type:
- MATCHES → DIGITMATCH    - DIFFERS → DIGITDIFF
- EVEN → DIGITEVEN        - ODD → DIGITODD
- OVER → DIGITOVER        - UNDER → DIGITUNDER
=============================================================
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ConfigurationError(ValueError):
    """Invalid bot configuration"""


class InvalidPredictionError(ConfigurationError):
    """Unknown prediction type, no contract type can be derived"""


class TradeNotAuthorizedError(Exception):
    """The authorization hook refused a bot start"""


class BotStatus(Enum):
    IDLE = "idle"
    WAITING = "waiting"
    RUNNING = "running"
    STOPPED = "stopped"


class BotKind(Enum):
    MANUAL = "manual"
    SIGNAL = "signal"
    AUTO_STRATEGY = "auto_strategy"
    AUTO_ARENA = "auto_arena"


class BotFamily(Enum):
    """Owner family of an outstanding contract"""
    MANUAL = "speed"
    SIGNAL = "signal"


class PredictionType(Enum):
    MATCHES = "matches"
    DIFFERS = "differs"
    EVEN = "even"
    ODD = "odd"
    OVER = "over"
    UNDER = "under"


class StopLossType(Enum):
    AMOUNT = "amount"
    CONSECUTIVE_LOSSES = "consecutive_losses"


class EntryPointType(Enum):
    SINGLE = "single"
    CONSECUTIVE = "consecutive"


class StopReason(Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS_AMOUNT = "stop_loss_amount"
    STOP_LOSS_CONSECUTIVE = "stop_loss_consecutive"
    TRADE_COUNT_REACHED = "trade_count_reached"
    MANUAL = "manual"
    RECOVERY = "recovery"
    HARD_STOP = "hard_stop"
    TRANSPORT_ERROR = "transport_error"
    CONFIGURATION_ERROR = "configuration_error"
    DISCONNECTED = "disconnected"


CONTRACT_TYPES: Dict[PredictionType, str] = {
    PredictionType.MATCHES: "DIGITMATCH",
    PredictionType.DIFFERS: "DIGITDIFF",
    PredictionType.EVEN: "DIGITEVEN",
    PredictionType.ODD: "DIGITODD",
    PredictionType.OVER: "DIGITOVER",
    PredictionType.UNDER: "DIGITUNDER",
}

BARRIERLESS = {PredictionType.EVEN, PredictionType.ODD}

MAX_BULK_BATCH = 10


def parse_prediction(value: Any) -> PredictionType:
    """Accept a PredictionType or its string value"""
    if isinstance(value, PredictionType):
        return value
    try:
        return PredictionType(str(value).lower())
    except ValueError:
        raise InvalidPredictionError(f"Unknown prediction type: {value!r}")


def contract_type_for(prediction: Any) -> str:
    """Map a prediction kind to the venue contract type"""
    return CONTRACT_TYPES[parse_prediction(prediction)]


def _enum_value(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ConfigurationError(f"Invalid {field_name}: {value!r}")


@dataclass
class BotConfig:
    """Trading configuration of a bot"""
    market: str
    prediction_type: PredictionType = PredictionType.OVER
    last_digit_prediction: int = 3
    ticks: int = 1
    initial_stake: float = 1.0
    take_profit: Optional[float] = None
    stop_loss_type: StopLossType = StopLossType.CONSECUTIVE_LOSSES
    stop_loss_amount: Optional[float] = None
    stop_loss_consecutive: Optional[int] = None
    use_martingale: bool = False
    martingale_factor: float = 2.1
    use_bulk_trading: bool = False
    bulk_trade_count: int = 1
    use_entry_point: bool = False
    entry_point_type: EntryPointType = EntryPointType.SINGLE
    entry_range_start: int = 0
    entry_range_end: int = 9
    max_trades: Optional[int] = None

    def validate(self) -> "BotConfig":
        """
        Check the configuration.

        Raises:
            ConfigurationError: on any invalid field
        """
        if not self.market:
            raise ConfigurationError("Market is required")
        self.prediction_type = parse_prediction(self.prediction_type)
        self.stop_loss_type = _enum_value(StopLossType, self.stop_loss_type, "stop loss type")
        self.entry_point_type = _enum_value(EntryPointType, self.entry_point_type, "entry point type")

        if not 0 <= int(self.last_digit_prediction) <= 9:
            raise ConfigurationError(f"Predicted digit must be 0-9, got {self.last_digit_prediction}")
        if int(self.ticks) < 1:
            raise ConfigurationError("Duration must be at least 1 tick")
        if float(self.initial_stake) <= 0:
            raise ConfigurationError("Stake must be positive")
        if self.use_martingale and float(self.martingale_factor) <= 1:
            raise ConfigurationError("Martingale factor must be greater than 1")
        if self.use_bulk_trading and int(self.bulk_trade_count) < 1:
            raise ConfigurationError("Bulk trade count must be at least 1")
        if not (0 <= self.entry_range_start <= 9 and 0 <= self.entry_range_end <= 9):
            raise ConfigurationError("Entry range must be within 0-9")
        if self.max_trades is not None and int(self.max_trades) < 1:
            raise ConfigurationError("Max trades must be at least 1")
        return self

    @property
    def contract_type(self) -> str:
        return contract_type_for(self.prediction_type)

    @property
    def barrier(self) -> Optional[int]:
        if parse_prediction(self.prediction_type) in BARRIERLESS:
            return None
        return int(self.last_digit_prediction)

    def bulk_batch_size(self) -> int:
        if not self.use_bulk_trading:
            return 1
        return max(1, min(int(self.bulk_trade_count), MAX_BULK_BATCH))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        """Build and validate a config from a JSON body"""
        known = {name for name in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        try:
            config = cls(**data)
        except TypeError as e:
            raise ConfigurationError(str(e))
        return config.validate()

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


@dataclass
class Trade:
    """One contract owned by a bot"""
    contract_id: str
    market: str
    stake: float
    payout: float = 0.0
    profit: float = 0.0
    is_win: Optional[bool] = None
    entry_digit: Optional[int] = None
    exit_digit: Optional[int] = None
    description: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_resolved(self) -> bool:
        return self.is_win is not None

    def to_dict(self) -> dict:
        return {
            "contract_id": self.contract_id,
            "market": self.market,
            "stake": self.stake,
            "payout": self.payout,
            "profit": self.profit,
            "is_win": self.is_win,
            "entry_digit": self.entry_digit,
            "exit_digit": self.exit_digit,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Bot:
    """Bot state machine data"""
    id: str
    name: str
    kind: BotKind
    config: BotConfig
    signal_type: str = ""
    status: BotStatus = BotStatus.IDLE
    profit: float = 0.0
    trades: List[Trade] = field(default_factory=list)
    consecutive_losses: int = 0
    next_stake: float = 0.0
    purchases_dispatched: int = 0
    trades_completed: int = 0
    total_stake: float = 0.0
    wins: int = 0
    losses: int = 0
    parent_bot_id: Optional[str] = None
    stop_reason: Optional[StopReason] = None
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not self.next_stake:
            self.next_stake = float(self.config.initial_stake)

    @property
    def market(self) -> str:
        return self.config.market

    @property
    def family(self) -> BotFamily:
        return BotFamily.MANUAL if self.kind == BotKind.MANUAL else BotFamily.SIGNAL

    @property
    def is_auto(self) -> bool:
        return self.kind in (BotKind.AUTO_STRATEGY, BotKind.AUTO_ARENA)

    @property
    def is_recovery(self) -> bool:
        return self.parent_bot_id is not None

    @property
    def is_running(self) -> bool:
        return self.status == BotStatus.RUNNING

    @property
    def is_active(self) -> bool:
        return self.status in (BotStatus.RUNNING, BotStatus.WAITING)

    def find_trade(self, contract_id: str) -> Optional[Trade]:
        for trade in self.trades:
            if trade.contract_id == contract_id:
                return trade
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "market": self.market,
            "signal_type": self.signal_type,
            "status": self.status.value,
            "profit": round(self.profit, 2),
            "consecutive_losses": self.consecutive_losses,
            "next_stake": self.next_stake,
            "trades_completed": self.trades_completed,
            "total_stake": round(self.total_stake, 2),
            "wins": self.wins,
            "losses": self.losses,
            "parent_bot_id": self.parent_bot_id,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "config": self.config.to_dict(),
            "trades": [t.to_dict() for t in self.trades],
        }


@dataclass
class SignalBotDefaults:
    """Global defaults applied to every signal-derived bot"""
    initial_stake: float = 1.0
    take_profit: float = 10.0
    stop_loss_consecutive: int = 3
    use_martingale: bool = True
    martingale_factor: float = 2.1
    auto_trade: bool = False
    max_trades: Optional[int] = None

    def update(self, **changes: Any) -> None:
        """Apply a partial update, validating each field"""
        for key, value in changes.items():
            if key not in self.__dataclass_fields__:
                raise ConfigurationError(f"Unknown signal default: {key}")
            setattr(self, key, value)
        if float(self.initial_stake) <= 0:
            raise ConfigurationError("Stake must be positive")
        if float(self.take_profit) <= 0:
            raise ConfigurationError("Take profit must be positive")
        if int(self.stop_loss_consecutive) < 1:
            raise ConfigurationError("Stop loss must be at least 1 loss")
        if float(self.martingale_factor) <= 1:
            raise ConfigurationError("Martingale factor must be greater than 1")

    def build_config(self, market: str, prediction: PredictionType, digit: int,
                     ticks: int = 1, auto: bool = False,
                     max_trades: Optional[int] = None) -> BotConfig:
        """
        Config for a signal-derived bot.

        Auto bots run without martingale and stop after one loss so
        every loss goes through the recovery coordinator.
        """
        return BotConfig(
            market=market,
            prediction_type=prediction,
            last_digit_prediction=digit,
            ticks=ticks,
            initial_stake=float(self.initial_stake),
            take_profit=float(self.take_profit),
            stop_loss_type=StopLossType.CONSECUTIVE_LOSSES,
            stop_loss_consecutive=1 if auto else int(self.stop_loss_consecutive),
            use_martingale=False if auto else bool(self.use_martingale),
            martingale_factor=float(self.martingale_factor),
            use_bulk_trading=False,
            max_trades=max_trades if max_trades is not None else self.max_trades,
        ).validate()

    def to_dict(self) -> dict:
        return asdict(self)
