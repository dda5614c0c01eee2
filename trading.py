"""
=============================================================
TRADING ENGINE - Digit Signal Bots & Autonomous Execution
=============================================================
Single mutation point of the system. Every venue message and
every analysis tick goes through TradingEngine under one lock,
so no two state transitions ever interleave.

Bot families:
- Manual "speed" bot: one instance, optional entry point,
  optional bulk trading
- Signal bots: one per start call, configured from the global
  signal defaults
- Auto bots (arena + control centre): global serial execution,
  single-loss stop, losses routed to the recovery coordinator

Message routing:
- history                -> digit store, then tick subscription
- tick                   -> digit store, manual entry watcher
- buy                    -> contract tracker + trade record
- proposal_open_contract -> settlement (exactly once)
- error                  -> transport error handling
- active_symbols         -> digit precision overrides
=============================================================
"""

import copy
import itertools
import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from bot_models import (
    Bot,
    BotConfig,
    BotFamily,
    BotKind,
    BotStatus,
    ConfigurationError,
    EntryPointType,
    PredictionType,
    SignalBotDefaults,
    StopReason,
    Trade,
    TradeNotAuthorizedError,
)
from contract_tracker import ContractTracker, Settlement
from deriv_ws import build_buy_request, build_history_request, build_tick_subscription
from digit_store import DigitStreamStore
from event_bus import (
    BotUpdateEvent,
    EventBus,
    NotificationEvent,
    SignalEvent,
    StatusEvent,
    TradeEvent,
    get_event_bus,
)
from money_manager import StakeController
from recovery import RECOVERY_PLANS, RUN_LENGTH, RecoveryCoordinator, RecoveryPlan, RecoveryState
from signal_analyzer import SignalAnalyzer, SignalSnapshot
from symbols import decimals_from_pip, get_symbol_name

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

Authorizer = Callable[[Optional[SignalSnapshot]], bool]
NotificationCallback = Callable[[NotificationEvent], None]

IGNORED_ERROR_CODES = {"AlreadySubscribed", "AuthorizationRequired"}

_STOP_MESSAGES = {
    StopReason.TAKE_PROFIT: ("success", "Take-Profit Hit"),
    StopReason.STOP_LOSS_AMOUNT: ("warning", "Stop-Loss Hit"),
    StopReason.STOP_LOSS_CONSECUTIVE: ("warning", "Stop-Loss Hit"),
    StopReason.TRADE_COUNT_REACHED: ("info", "Trades Complete"),
    StopReason.MANUAL: ("info", "Bot Stopped"),
    StopReason.RECOVERY: ("warning", "Recovery Mode"),
    StopReason.HARD_STOP: ("warning", "Hard Stop"),
    StopReason.TRANSPORT_ERROR: ("error", "Connection Error"),
    StopReason.CONFIGURATION_ERROR: ("error", "Invalid Configuration"),
    StopReason.DISCONNECTED: ("warning", "Disconnected"),
}


def entry_condition_met(config: BotConfig, digits: Sequence[int]) -> bool:
    """
    Entry point check of the manual bot.

    Args:
        config: Manual bot configuration
        digits: Digits observed since the bot started, oldest first
    """
    if not digits:
        return False
    if config.entry_point_type == EntryPointType.SINGLE:
        return digits[-1] == config.entry_range_start
    if len(digits) < 2:
        return False
    low, high = config.entry_range_start, config.entry_range_end
    return all(low <= d <= high for d in digits[-2:])


class TradingEngine:
    """
    Signal-analysis and autonomous-execution engine.

    The channel only needs a send(payload) -> bool method; incoming
    messages are pushed in through handle_message().
    """

    MANUAL_BOT_ID = "speed"
    AUTO_COOLDOWN = 30.0  # seconds between control-centre entries per symbol
    MAX_NOTIFICATIONS = 200

    def __init__(
        self,
        channel=None,
        currency: str = "USD",
        authorizer: Optional[Authorizer] = None,
        on_notification: Optional[NotificationCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        event_bus: Optional[EventBus] = None,
        store: Optional[DigitStreamStore] = None,
        symbols: Optional[Iterable[str]] = None,
    ):
        self.channel = channel
        self.currency = currency
        self.authorizer = authorizer
        self.on_notification = on_notification
        self.clock = clock
        self.event_bus = event_bus or get_event_bus()

        self.store = store or DigitStreamStore()
        self.analyzer = SignalAnalyzer(self.store)
        self.tracker = ContractTracker()
        self.recovery = RecoveryCoordinator()
        self.stakes = StakeController()
        self.signal_defaults = SignalBotDefaults()

        self._bots: "OrderedDict[str, Bot]" = OrderedDict()
        self._manual_bot: Optional[Bot] = None
        self._entry_digits: List[int] = []
        self._symbols: List[str] = list(symbols or [])
        self._auto_cooldowns: Dict[str, float] = {}
        self._ids = itertools.count(1)

        self.auto_strategy_enabled = False
        self.pending_alert: Optional[SignalSnapshot] = None
        self.notifications: deque = deque(maxlen=self.MAX_NOTIFICATIONS)
        self.is_connected = False

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._analysis_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Channel wiring
    # ------------------------------------------------------------------

    def attach(self, channel) -> None:
        """Use a DerivWebSocket-like channel for sending and receiving"""
        self.channel = channel
        channel.add_listener(self.handle_message)
        channel.on_connection_status_callback = self.on_connection_status

    def subscribe_symbols(self, symbols: Iterable[str]) -> None:
        """
        Request history for new symbols; resubscribe ticks for known ones.

        History is fetched once per symbol, the tick stream follows
        when the history batch arrives.
        """
        with self._lock:
            for symbol in symbols:
                if symbol not in self._symbols:
                    self._symbols.append(symbol)
                if self.store.is_subscribed(symbol):
                    self._send(build_tick_subscription(symbol))
                else:
                    self._send(build_history_request(symbol))

    def _send(self, payload: dict) -> bool:
        if self.channel is None:
            logger.warning("Cannot send: no channel attached")
            return False
        return bool(self.channel.send(payload))

    def on_connection_status(self, state: str) -> None:
        with self._lock:
            if state == "ready":
                self.is_connected = True
                self._send({"active_symbols": "brief", "product_type": "basic"})
                if self._symbols:
                    self.subscribe_symbols(list(self._symbols))
            elif state in ("disconnected", "failed"):
                self.is_connected = False
                stopped = 0
                for bot in self._bots.values():
                    if bot.is_active:
                        self._stop_bot(bot, StopReason.DISCONNECTED, notify=False)
                        stopped += 1
                if stopped:
                    self._notify("warning", "Disconnected", f"Connection lost, {stopped} bot(s) stopped")
            self._publish_status()

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    def handle_message(self, data: dict) -> None:
        """Route one venue message; never raises"""
        msg_type = data.get("msg_type", "")
        with self._lock:
            try:
                if data.get("error"):
                    self._handle_error(data)
                    return

                handler = {
                    "history": self._handle_history,
                    "tick": self._handle_tick,
                    "buy": self._handle_buy,
                    "proposal_open_contract": self._handle_settlement,
                    "active_symbols": self._handle_active_symbols,
                }.get(msg_type)

                if handler:
                    handler(data)
            except Exception as e:
                logger.error(f"Error handling {msg_type or 'unknown'} message: {type(e).__name__}: {e}")

    def _handle_error(self, data: dict) -> None:
        error = data.get("error") or {}
        code = error.get("code", "")
        message = error.get("message", "Unknown error")

        if code in IGNORED_ERROR_CODES:
            logger.debug(f"Ignoring venue error [{code}]: {message}")
            return

        logger.error(f"❌ Deriv Error [{code}]: {message}")

        bot_id = (data.get("passthrough") or {}).get("bot_id")
        rejected = self._bots.get(bot_id) if bot_id else None
        if rejected is not None:
            self._handle_rejected_purchase(rejected, code, message)
            return

        dropped = self.tracker.drop_oldest()
        manual = self._manual_bot
        if manual is not None and manual.is_active:
            self._stop_bot(manual, StopReason.TRANSPORT_ERROR, notify=False)

        affected = f" (contract {dropped.contract_id}, bot {dropped.bot_id})" if dropped else ""
        self._notify("error", "Venue Error", f"[{code}] {message}{affected}",
                     bot=self._bots.get(dropped.bot_id) if dropped else None)

    def _handle_rejected_purchase(self, bot: Bot, code: str, message: str) -> None:
        """A purchase of one bot was refused; only that bot is affected"""
        self._notify("error", "Purchase Rejected", f"{bot.name} on {bot.market}: [{code}] {message}", bot=bot)
        # bot with contracts in flight keeps going, their settlements drive it
        if bot.is_active and self.tracker.count(bot_id=bot.id) == 0:
            self._stop_bot(bot, StopReason.TRANSPORT_ERROR, notify=False)

    def _handle_history(self, data: dict) -> None:
        symbol = (data.get("echo_req") or {}).get("ticks_history")
        prices = (data.get("history") or {}).get("prices") or []
        if not symbol:
            logger.warning("History message without symbol ignored")
            return

        if self.store.ingest_history(symbol, prices):
            self._send(build_tick_subscription(symbol))

    def _handle_tick(self, data: dict) -> None:
        tick = data.get("tick") or {}
        symbol = tick.get("symbol")
        quote = tick.get("quote")
        if not symbol or quote is None:
            return

        digit = self.store.ingest_tick(symbol, float(quote))

        bot = self._manual_bot
        if bot is not None and bot.status == BotStatus.WAITING and bot.market == symbol:
            self._entry_digits.append(digit)
            del self._entry_digits[:-2]
            if entry_condition_met(bot.config, self._entry_digits):
                logger.info(f"🎯 Entry point hit on {symbol} (digit {digit})")
                self._entry_digits = []
                bot.status = BotStatus.RUNNING
                self._publish_bot(bot)
                self._dispatch_initial(bot)

    def _handle_active_symbols(self, data: dict) -> None:
        for item in data.get("active_symbols") or []:
            symbol, pip = item.get("symbol"), item.get("pip")
            if symbol and pip:
                self.store.set_decimals(symbol, decimals_from_pip(float(pip)))

    def _handle_buy(self, data: dict) -> None:
        buy = data.get("buy") or {}
        contract_id = buy.get("contract_id")
        if not contract_id:
            return

        passthrough = data.get("passthrough") or {}
        bot_id = passthrough.get("bot_id", "")
        stake = float(passthrough.get("stake", buy.get("buy_price", 0)) or 0)
        family = BotFamily(passthrough.get("bot_family", BotFamily.SIGNAL.value))

        self.tracker.record(contract_id, stake, family, bot_id)

        bot = self._bots.get(bot_id)
        if bot is None:
            logger.warning(f"⚠️ Buy ack {contract_id} for unknown bot {bot_id}")
            return

        trade = Trade(
            contract_id=str(contract_id),
            market=bot.market,
            stake=float(buy.get("buy_price", stake) or stake),
            description=buy.get("longcode", ""),
        )
        bot.trades.insert(0, trade)
        bot.total_stake += trade.stake

        logger.info(f"📥 {bot.name}: contract {contract_id} opened (${trade.stake:.2f})")
        self.event_bus.publish("trade", TradeEvent(
            contract_id=trade.contract_id, bot_id=bot.id, symbol=bot.market,
            stake=trade.stake, status="open",
        ))

    def _handle_settlement(self, data: dict) -> None:
        settlement = Settlement.from_message(data)
        if settlement is None:
            return

        entry = self.tracker.get(settlement.contract_id)
        if entry is None:
            logger.debug(f"Stale settlement {settlement.contract_id} ignored")
            return
        if not settlement.is_sold:
            return
        if self.tracker.resolve(settlement.contract_id) is None:
            return

        bot = self._bots.get(entry.bot_id)
        if bot is None:
            logger.warning(f"⚠️ Settlement {settlement.contract_id} for removed bot {entry.bot_id}")
            return

        trade = bot.find_trade(settlement.contract_id)
        if trade is not None and trade.is_resolved:
            return
        if trade is None:
            trade = Trade(contract_id=settlement.contract_id, market=bot.market, stake=entry.stake,
                          description=settlement.longcode)
            bot.trades.insert(0, trade)

        underlying = settlement.underlying or bot.market
        trade.payout = settlement.payout
        trade.profit = settlement.profit
        trade.is_win = settlement.is_win
        if settlement.entry_tick is not None:
            trade.entry_digit = self.store.extract(underlying, settlement.entry_tick)
        if settlement.exit_tick is not None:
            trade.exit_digit = self.store.extract(underlying, settlement.exit_tick)
        if settlement.longcode and not trade.description:
            trade.description = settlement.longcode

        was_running = bot.is_running
        update = self.stakes.apply_settlement(bot, entry.stake, settlement.profit, settlement.is_win)

        result = "WIN" if update.is_win else "LOSS"
        logger.info(
            f"{'✅' if update.is_win else '❌'} {bot.name}: {result} {settlement.profit:+.2f} "
            f"| total {bot.profit:+.2f} | exit digit {trade.exit_digit} | next stake {update.next_stake:.2f}"
        )
        self.event_bus.publish("trade", TradeEvent(
            contract_id=trade.contract_id, bot_id=bot.id, symbol=bot.market, stake=entry.stake,
            status="won" if update.is_win else "lost", profit=settlement.profit, next_stake=update.next_stake,
        ))

        self._after_settlement(bot, settlement.is_win, was_running)

    def _after_settlement(self, bot: Bot, is_win: bool, was_running: bool) -> None:
        if bot.is_recovery:
            self._report_recovery(bot, is_win)

        if not was_running or not bot.is_running:
            self._publish_bot(bot)
            return

        mode = None if is_win else self.recovery.mode_for_loss(bot)
        if mode is not None:
            self._stop_bot(bot, StopReason.RECOVERY, notify=False)
            self.recovery.arm(bot.market, mode, bot.id)
            plan = RECOVERY_PLANS[mode]
            band = f"<= {plan.threshold}" if plan.low_run else f">= {plan.threshold}"
            self._notify("warning", "Recovery Mode",
                         f"{bot.name} lost on {bot.market}. Waiting for {RUN_LENGTH} digits {band} "
                         f"to trade {plan.name}.", bot=bot)
            return

        reason = self.stakes.evaluate_stop(bot, self.tracker.count(family=bot.family))
        if reason is not None:
            self._stop_bot(bot, reason)
            return

        if self.stakes.may_dispatch(bot):
            self._purchase(bot, bot.next_stake)
        else:
            self._publish_bot(bot)

    def _report_recovery(self, bot: Bot, is_win: bool) -> None:
        parent = self._bots.get(bot.parent_bot_id)
        parent_name = parent.name if parent else bot.parent_bot_id
        if is_win:
            self._notify("success", "Recovery Successful",
                         f"{bot.name} won on {bot.market}, {parent_name} recovered.", bot=bot)
        else:
            self._notify("error", "Recovery Failed",
                         f"{bot.name} lost on {bot.market}, {parent_name} remains stopped.", bot=bot)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def _purchase(self, bot: Bot, stake: float) -> bool:
        """Send one purchase for a running bot; no retry on failure"""
        if not bot.is_running:
            return False

        try:
            payload = build_buy_request(
                bot.config, stake, self.currency,
                passthrough={"bot_family": bot.family.value, "bot_id": bot.id, "stake": round(float(stake), 2)},
            )
        except ConfigurationError as e:
            logger.error(f"❌ {bot.name}: cannot build purchase: {e}")
            self._stop_bot(bot, StopReason.CONFIGURATION_ERROR, notify=False)
            self._notify("error", "Invalid Configuration", f"{bot.name} on {bot.market}: {e}", bot=bot)
            return False

        if not self._send(payload):
            self._notify("error", "Purchase Failed", f"Could not send purchase for {bot.name} on {bot.market}",
                         bot=bot)
            if self.tracker.count(bot_id=bot.id) == 0:
                self._stop_bot(bot, StopReason.TRANSPORT_ERROR, notify=False)
            return False

        bot.purchases_dispatched += 1
        parameters = payload["parameters"]
        logger.info(
            f"📤 {bot.name}: {parameters['contract_type']} {parameters.get('barrier', '')} "
            f"on {bot.market} | Stake: ${parameters['amount']:.2f} | {parameters['duration']}t"
        )
        return True

    def _dispatch_initial(self, bot: Bot) -> None:
        for _ in range(self.stakes.initial_batch(bot.config)):
            if not self._purchase(bot, bot.next_stake):
                break
        self._publish_bot(bot)

    # ------------------------------------------------------------------
    # Bot lifecycle
    # ------------------------------------------------------------------

    def _new_bot_id(self, prefix: str, symbol: str) -> str:
        return f"{prefix}-{symbol}-{next(self._ids)}"

    def _launch(self, kind: BotKind, prefix: str, name: str, signal_type: str, config: BotConfig,
                parent_bot_id: Optional[str] = None) -> Bot:
        bot = Bot(
            id=self._new_bot_id(prefix, config.market),
            name=name,
            kind=kind,
            config=config,
            signal_type=signal_type,
            status=BotStatus.RUNNING,
            parent_bot_id=parent_bot_id,
        )
        self._bots[bot.id] = bot
        logger.info(f"🚀 {bot.name} started on {bot.market} ({signal_type}) [{bot.id}]")
        self._dispatch_initial(bot)
        return bot

    def _stop_bot(self, bot: Bot, reason: StopReason, notify: bool = True) -> bool:
        if bot.status == BotStatus.STOPPED:
            return False

        bot.status = BotStatus.STOPPED
        bot.stop_reason = reason
        if bot.kind == BotKind.MANUAL:
            self._entry_digits = []

        logger.info(f"🛑 {bot.name} stopped ({reason.value}) | profit {bot.profit:+.2f}")
        self._publish_bot(bot)

        if notify:
            level, title = _STOP_MESSAGES[reason]
            self._notify(level, title, f"{bot.name} on {bot.market} stopped. Profit: {bot.profit:+.2f}", bot=bot)
        return True

    def _is_authorized(self, snapshot: Optional[SignalSnapshot]) -> bool:
        if self.authorizer is None:
            return True
        try:
            return bool(self.authorizer(snapshot))
        except Exception as e:
            logger.error(f"Authorizer failed, denying trade: {type(e).__name__}: {e}")
            return False

    def start_manual_bot(self, config) -> Bot:
        """
        Start the single manual bot.

        Starting while it is already active is a no-op. Statistics
        (profit, trades, wins, losses) persist across runs.

        Raises:
            ConfigurationError: on an invalid configuration
        """
        if not isinstance(config, BotConfig):
            config = BotConfig.from_dict(dict(config))
        config.validate()

        with self._lock:
            bot = self._manual_bot
            if bot is not None and bot.is_active:
                logger.info("SpeedBot already running")
                return copy.deepcopy(bot)

            if bot is None:
                bot = Bot(id=self.MANUAL_BOT_ID, name="SpeedBot", kind=BotKind.MANUAL,
                          config=config, signal_type="Manual")
                self._bots[bot.id] = bot
                self._manual_bot = bot
            else:
                bot.config = config

            bot.consecutive_losses = 0
            bot.next_stake = float(config.initial_stake)
            bot.purchases_dispatched = 0
            bot.trades_completed = 0
            bot.stop_reason = None
            self._entry_digits = []

            if config.use_entry_point:
                # entry digits come from the tick stream of the chosen market
                if config.market not in self._symbols:
                    self.subscribe_symbols([config.market])
                bot.status = BotStatus.WAITING
                self._publish_bot(bot)
                self._notify("info", "Waiting for Entry",
                             f"SpeedBot waiting for entry point on {config.market}", bot=bot)
            else:
                bot.status = BotStatus.RUNNING
                logger.info(f"🚀 SpeedBot started on {config.market}")
                self._dispatch_initial(bot)

            return copy.deepcopy(bot)

    def stop_manual_bot(self) -> bool:
        with self._lock:
            bot = self._manual_bot
            if bot is None or not bot.is_active:
                return False
            return self._stop_bot(bot, StopReason.MANUAL)

    def start_signal_bot(self, symbol: str, ticks: int = 1) -> Bot:
        """
        Start a signal bot from the current snapshot of a symbol.

        Duplicate starts for a symbol with a running bot are the
        caller's responsibility (see is_symbol_running).

        Raises:
            ConfigurationError: no snapshot yet or invalid defaults
            TradeNotAuthorizedError: the authorizer denied the start
        """
        with self._lock:
            snapshot = self.analyzer.get_signal(symbol)
            if snapshot is None:
                raise ConfigurationError(f"No signal available for {symbol} yet")
            if not self._is_authorized(snapshot):
                self._notify("warning", "Trade Not Authorized", f"Signal bot for {symbol} was refused",
                             symbol=symbol)
                raise TradeNotAuthorizedError(f"Signal bot for {symbol} was refused")

            if snapshot.is_over:
                prediction, digit = PredictionType.OVER, 3
            else:
                prediction, digit = PredictionType.UNDER, 6

            config = self.signal_defaults.build_config(symbol, prediction, digit, ticks=ticks)
            if self.pending_alert is not None and self.pending_alert.symbol == symbol:
                self.pending_alert = None

            bot = self._launch(BotKind.SIGNAL, "signal", snapshot.name,
                               snapshot.strong_signal_type or "Under 6 (manual)", config)
            return copy.deepcopy(bot)

    def stop_signal_bot(self, bot_id: str) -> Bot:
        """
        Raises:
            KeyError: unknown bot id
        """
        with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None or bot.kind == BotKind.MANUAL:
                raise KeyError(bot_id)
            self._stop_bot(bot, StopReason.MANUAL)
            return copy.deepcopy(bot)

    def is_symbol_running(self, symbol: str) -> bool:
        with self._lock:
            return any(b.is_running and b.market == symbol and b.kind != BotKind.MANUAL
                       for b in self._bots.values())

    def can_start_auto(self) -> bool:
        """Serial execution lock: no running auto bot and no armed recovery"""
        with self._lock:
            if self.recovery.is_armed():
                return False
            return not any(b.is_auto and b.is_running for b in self._bots.values())

    def start_auto_bot(self, kind: BotKind, symbol: str, prediction: PredictionType, digit: int,
                       signal_type: str, name: Optional[str] = None,
                       snapshot: Optional[SignalSnapshot] = None) -> Optional[Bot]:
        """
        Start an auto bot if the serial execution lock allows it.

        Returns:
            Copy of the started bot, or None if the start was suppressed
        """
        if kind not in (BotKind.AUTO_ARENA, BotKind.AUTO_STRATEGY):
            raise ConfigurationError(f"{kind.value} is not an auto bot kind")

        with self._lock:
            if not self.can_start_auto():
                logger.debug(f"Auto entry on {symbol} suppressed (serial execution lock)")
                return None
            if self.is_symbol_running(symbol):
                return None
            if not self._is_authorized(snapshot):
                logger.info(f"🚫 Auto entry on {symbol} denied by authorizer")
                return None

            config = self.signal_defaults.build_config(symbol, prediction, digit, ticks=1, auto=True)
            prefix = "auto-arena" if kind == BotKind.AUTO_ARENA else "auto"
            bot = self._launch(kind, prefix, name or f"Auto: {get_symbol_name(symbol)}", signal_type, config)
            self._notify("info", "Auto Bot Started", f"{signal_type} on {symbol}", bot=bot)
            return copy.deepcopy(bot)

    def _start_recovery_bot(self, state: RecoveryState, plan: RecoveryPlan) -> Bot:
        parent = self._bots.get(state.bot_id)
        kind = parent.kind if parent is not None else BotKind.AUTO_STRATEGY
        config = self.signal_defaults.build_config(state.symbol, plan.prediction, plan.digit,
                                                   ticks=1, max_trades=1)
        bot = self._launch(kind, "auto-recovery", plan.name, plan.name, config, parent_bot_id=state.bot_id)
        self._notify("info", "Recovery Trade", f"{plan.name} fired on {state.symbol}", bot=bot)
        return bot

    def set_auto_strategy_enabled(self, enabled: bool) -> None:
        with self._lock:
            self.auto_strategy_enabled = bool(enabled)
            logger.info(f"🤖 Auto-strategy control centre {'ON' if enabled else 'OFF'}")

    def set_signal_defaults(self, **changes) -> SignalBotDefaults:
        """
        Update the global signal-bot defaults.

        Raises:
            ConfigurationError: on an invalid value; nothing is applied
        """
        with self._lock:
            candidate = copy.deepcopy(self.signal_defaults)
            candidate.update(**changes)
            self.signal_defaults = candidate
            if candidate.auto_trade:
                self.pending_alert = None
            logger.info(f"⚙️ Signal defaults updated: {changes}")
            return copy.deepcopy(candidate)

    def hard_stop_auto_bots(self) -> int:
        """Stop every auto bot, clear recovery state and disable auto entry"""
        with self._lock:
            stopped = 0
            for bot in self._bots.values():
                if bot.is_auto and bot.is_active:
                    self._stop_bot(bot, StopReason.HARD_STOP, notify=False)
                    stopped += 1
            self.recovery.clear()
            self.auto_strategy_enabled = False
            self.signal_defaults.auto_trade = False
            self._auto_cooldowns.clear()
            self._notify("warning", "Hard Stop", f"{stopped} auto bot(s) stopped, recovery cleared")
            self._publish_status()
            return stopped

    def reset_manual_stats(self) -> bool:
        """Clear the SpeedBot log; refused while it is active"""
        with self._lock:
            bot = self._manual_bot
            if bot is not None and bot.is_active:
                self._notify("warning", "Bot is running", "Stop the SpeedBot before resetting stats.", bot=bot)
                return False
            if bot is not None:
                bot.trades = []
                bot.profit = 0.0
                bot.total_stake = 0.0
                bot.wins = 0
                bot.losses = 0
                bot.trades_completed = 0
                bot.purchases_dispatched = 0
                bot.consecutive_losses = 0
                self._publish_bot(bot)
            self.tracker.clear(BotFamily.MANUAL)
            self._notify("info", "Stats Reset", "The SpeedBot trade log and statistics have been cleared.")
            return True

    def reset_signal_bots(self) -> int:
        """Remove every signal-family bot and its outstanding contracts"""
        with self._lock:
            doomed = [bot_id for bot_id, b in self._bots.items() if b.kind != BotKind.MANUAL]
            for bot_id in doomed:
                del self._bots[bot_id]
            self.tracker.clear(BotFamily.SIGNAL)
            self.event_bus.clear_history()
            logger.info(f"🧹 Removed {len(doomed)} signal bot(s)")
            return len(doomed)

    def reset_auto_bots(self) -> bool:
        """Remove auto bot records; refused while any auto bot runs"""
        with self._lock:
            if any(b.is_auto and b.is_running for b in self._bots.values()):
                self._notify("warning", "Cannot Reset", "Stop all Auto Bots before resetting history.")
                return False
            doomed = [bot_id for bot_id, b in self._bots.items() if b.is_auto]
            for bot_id in doomed:
                del self._bots[bot_id]
            self._notify("info", "Auto Bot History Cleared", f"{len(doomed)} auto-bot record(s) removed.")
            return True

    # ------------------------------------------------------------------
    # Analysis tick
    # ------------------------------------------------------------------

    def run_analysis(self, now=None) -> List[SignalSnapshot]:
        """
        One analysis pass: snapshots, alerts, recoveries, auto entries.

        Returns:
            Snapshots that just crossed into a strong signal
        """
        with self._lock:
            try:
                alerts = self.analyzer.run(now)
                for snapshot in alerts:
                    self._on_strong_signal(snapshot)

                self._process_recoveries()

                if self.signal_defaults.auto_trade:
                    self._arena_entries()
                if self.auto_strategy_enabled:
                    self._control_centre_entries()

                self._publish_status()
                return alerts
            except Exception as e:
                logger.error(f"Error in analysis pass: {type(e).__name__}: {e}")
                return []

    def _on_strong_signal(self, snapshot: SignalSnapshot) -> None:
        self.event_bus.publish("signal", SignalEvent(
            symbol=snapshot.symbol,
            signal_type=snapshot.strong_signal_type,
            confidence=snapshot.confidence,
            snapshot=snapshot.to_dict(),
        ))
        if self.signal_defaults.auto_trade:
            return
        self.pending_alert = snapshot
        self._notify("info", "Strong Signal",
                     f"{snapshot.name}: {snapshot.strong_signal_type} (confidence {snapshot.confidence}%)",
                     symbol=snapshot.symbol)

    def _process_recoveries(self) -> None:
        for symbol in self.recovery.armed_symbols():
            result = self.recovery.check(symbol, self.store.last_digits(symbol, RUN_LENGTH))
            if result is not None:
                state, plan = result
                self._start_recovery_bot(state, plan)

    def _arena_entries(self) -> None:
        for symbol, snapshot in self.analyzer.get_signals().items():
            if not snapshot.strong_signal:
                continue
            if snapshot.is_over:
                entry_points, prediction, digit = snapshot.entry_points_over3, PredictionType.OVER, 3
            else:
                entry_points, prediction, digit = snapshot.entry_points_under6, PredictionType.UNDER, 6
            if snapshot.last_digit not in entry_points:
                continue
            self.start_auto_bot(
                BotKind.AUTO_ARENA, symbol, prediction, digit,
                signal_type=f"{snapshot.strong_signal_type} (Auto)",
                name=f"{snapshot.strong_signal_type} (Auto)",
                snapshot=snapshot,
            )

    def _control_centre_entries(self) -> None:
        now = self.clock()
        for symbol, auto in self.analyzer.get_auto_strategy().items():
            if not self.can_start_auto():
                return
            last = self._auto_cooldowns.get(symbol)
            if last is not None and now - last < self.AUTO_COOLDOWN:
                continue

            if auto.over1_entry:
                prediction, digit, signal_type = PredictionType.OVER, 1, "Over 1 Strategy"
            elif auto.under8_entry:
                prediction, digit, signal_type = PredictionType.UNDER, 8, "Under 8 Strategy"
            else:
                continue

            bot = self.start_auto_bot(BotKind.AUTO_STRATEGY, symbol, prediction, digit,
                                      signal_type=signal_type, snapshot=self.analyzer.get_signal(symbol))
            if bot is not None:
                self._auto_cooldowns[symbol] = now

    def start_analysis_loop(self, interval: float = 1.0) -> None:
        """Run run_analysis() every `interval` seconds on a daemon thread"""
        if self._analysis_thread and self._analysis_thread.is_alive():
            return
        self._stop_event.clear()

        def loop():
            logger.info(f"📈 Analysis loop started (every {interval}s)")
            while not self._stop_event.wait(interval):
                self.run_analysis()
            logger.info("📈 Analysis loop stopped")

        self._analysis_thread = threading.Thread(target=loop, name="analysis-loop", daemon=True)
        self._analysis_thread.start()

    def stop_analysis_loop(self) -> None:
        self._stop_event.set()
        if self._analysis_thread:
            self._analysis_thread.join(timeout=5)
            self._analysis_thread = None

    # ------------------------------------------------------------------
    # Read-only snapshots
    # ------------------------------------------------------------------

    def get_signals(self) -> Dict[str, SignalSnapshot]:
        return self.analyzer.get_signals()

    def get_auto_strategy(self):
        return self.analyzer.get_auto_strategy()

    @property
    def last_update(self):
        return self.analyzer.last_update

    def get_bots(self) -> List[Bot]:
        with self._lock:
            return [copy.deepcopy(b) for b in self._bots.values()]

    def get_bot(self, bot_id: str) -> Optional[Bot]:
        with self._lock:
            bot = self._bots.get(bot_id)
            return copy.deepcopy(bot) if bot is not None else None

    def get_manual_bot(self) -> Optional[Bot]:
        return self.get_bot(self.MANUAL_BOT_ID)

    def get_recovery_state(self) -> Dict[str, dict]:
        return self.recovery.snapshot()

    def get_notifications(self, limit: Optional[int] = None) -> List[NotificationEvent]:
        with self._lock:
            items = list(self.notifications)
        return items[-limit:] if limit else items

    def get_status(self) -> dict:
        with self._lock:
            running = [b for b in self._bots.values() if b.is_active]
            return {
                "is_connected": self.is_connected,
                "symbols": self.store.symbols(),
                "running_bots": len(running),
                "auto_bot_running": any(b.is_auto and b.is_running for b in running),
                "recovery": self.recovery.snapshot(),
                "auto_strategy_enabled": self.auto_strategy_enabled,
                "signal_defaults": self.signal_defaults.to_dict(),
                "outstanding_contracts": len(self.tracker),
                "pending_alert": self.pending_alert.symbol if self.pending_alert else None,
                "last_update": self.last_update.isoformat() if self.last_update else None,
            }

    def get_status_text(self) -> str:
        """Status summary for Telegram"""
        status = self.get_status()
        lines = [
            "📡 **ENGINE STATUS**\n",
            f"• Connection: {'✅ Connected' if status['is_connected'] else '❌ Disconnected'}",
            f"• Symbols: {len(status['symbols'])}",
            f"• Active bots: {status['running_bots']}",
            f"• Auto control centre: {'ON' if status['auto_strategy_enabled'] else 'OFF'}",
            f"• Arena auto-trade: {'ON' if status['signal_defaults']['auto_trade'] else 'OFF'}",
            f"• Open contracts: {status['outstanding_contracts']}",
        ]
        for symbol, state in status["recovery"].items():
            lines.append(f"• 🚑 {symbol}: {state['mode']}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _notify(self, level: str, title: str, message: str, bot: Optional[Bot] = None,
                symbol: Optional[str] = None) -> NotificationEvent:
        event = NotificationEvent(
            level=level,
            title=title,
            message=message,
            bot_id=bot.id if bot else None,
            symbol=symbol or (bot.market if bot else None),
        )
        self.notifications.append(event)

        log = logger.error if level == "error" else logger.warning if level == "warning" else logger.info
        log(f"🔔 {title}: {message}")

        self.event_bus.publish("notification", event)
        if self.on_notification:
            try:
                self.on_notification(event)
            except Exception as e:
                logger.error(f"Error in notification callback: {type(e).__name__}: {e}")
        return event

    def _publish_bot(self, bot: Bot) -> None:
        self.event_bus.publish("bot", BotUpdateEvent(
            bot_id=bot.id,
            name=bot.name,
            status=bot.status.value,
            profit=round(bot.profit, 2),
            stop_reason=bot.stop_reason.value if bot.stop_reason else None,
        ))

    def _publish_status(self) -> None:
        self.event_bus.publish("status", StatusEvent(
            is_connected=self.is_connected,
            running_bots=sum(1 for b in self._bots.values() if b.is_active),
            recovery_armed=self.recovery.is_armed(),
            last_update=self.last_update.isoformat() if self.last_update else None,
        ))
