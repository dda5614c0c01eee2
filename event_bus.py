"""
=============================================================
EVENT BUS - Async PubSub System for Real-Time Event Broadcasting
=============================================================
This module provides an async event bus for broadcasting engine
events to web clients in real-time.

Features:
- Async PubSub with asyncio.Queue for multiple subscribers
- Thread-safe publishing from sync code (engine callbacks)
- Channels: signal, bot, trade, notification, status
- In-memory snapshots of current state
- Type-safe event dataclasses

Usage:
    from event_bus import get_event_bus, NotificationEvent

    bus = get_event_bus()
    queue = bus.subscribe("notification")
    bus.publish("notification", NotificationEvent(level="info", title="Hi", message="..."))
=============================================================
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class Channel(str, Enum):
    """Supported event channels"""
    SIGNAL = "signal"
    BOT = "bot"
    TRADE = "trade"
    NOTIFICATION = "notification"
    STATUS = "status"


@dataclass
class SignalEvent:
    """Strong signal crossing"""
    symbol: str
    signal_type: str
    confidence: int
    snapshot: dict
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": "signal",
            "symbol": self.symbol,
            "signal_type": self.signal_type,
            "confidence": self.confidence,
            "snapshot": self.snapshot,
            "timestamp": self.timestamp.isoformat()
        }


@dataclass
class BotUpdateEvent:
    """Bot started, stopped or changed"""
    bot_id: str
    name: str
    status: str
    profit: float
    stop_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": "bot_update",
            "bot_id": self.bot_id,
            "name": self.name,
            "status": self.status,
            "profit": self.profit,
            "stop_reason": self.stop_reason,
            "timestamp": self.timestamp.isoformat()
        }


@dataclass
class TradeEvent:
    """Contract opened or settled"""
    contract_id: str
    bot_id: str
    symbol: str
    stake: float
    status: str  # "open", "won" or "lost"
    profit: float = 0.0
    next_stake: Optional[float] = None  # set on settlement
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": "trade",
            "contract_id": self.contract_id,
            "bot_id": self.bot_id,
            "symbol": self.symbol,
            "stake": self.stake,
            "status": self.status,
            "profit": self.profit,
            "next_stake": self.next_stake,
            "timestamp": self.timestamp.isoformat()
        }


@dataclass
class NotificationEvent:
    """User-facing notification"""
    level: str  # "info", "success", "warning", "error"
    title: str
    message: str
    bot_id: Optional[str] = None
    symbol: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": "notification",
            "level": self.level,
            "title": self.title,
            "message": self.message,
            "bot_id": self.bot_id,
            "symbol": self.symbol,
            "timestamp": self.timestamp.isoformat()
        }


@dataclass
class StatusEvent:
    """Engine status"""
    is_connected: bool
    running_bots: int
    recovery_armed: bool
    last_update: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type": "status",
            "is_connected": self.is_connected,
            "running_bots": self.running_bots,
            "recovery_armed": self.recovery_armed,
            "last_update": self.last_update
        }


EventType = Union[
    SignalEvent,
    BotUpdateEvent,
    TradeEvent,
    NotificationEvent,
    StatusEvent
]


class EventBus:
    """
    Async PubSub event bus for real-time event broadcasting.

    Thread-safe for publishing from sync code (the engine runs on the
    websocket and analysis threads). Keeps small snapshots of recent
    state for newly connected clients.

    Attributes:
        MAX_HISTORY: Events kept per history channel (default: 200)
        QUEUE_MAX_SIZE: Maximum queue size per subscriber (default: 1000)
    """

    MAX_HISTORY = 200
    QUEUE_MAX_SIZE = 1000
    VALID_CHANNELS = {c.value for c in Channel}

    def __init__(self):
        self._lock = threading.RLock()

        self._subscribers: Dict[str, Set[asyncio.Queue]] = {
            channel: set() for channel in self.VALID_CHANNELS
        }

        self._last_signals: Dict[str, dict] = {}
        self._bots: Dict[str, dict] = {}
        self._trade_history: deque = deque(maxlen=self.MAX_HISTORY)
        self._notifications: deque = deque(maxlen=self.MAX_HISTORY)
        self._current_status: Optional[dict] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_lock = threading.Lock()

        logger.info("📡 EventBus initialized")

    def _get_event_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        """Get or detect the running event loop (thread-safe)."""
        with self._loop_lock:
            if self._loop is not None and self._loop.is_running():
                return self._loop

            try:
                loop = asyncio.get_running_loop()
                self._loop = loop
                return loop
            except RuntimeError:
                return None

    def set_event_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """
        Explicitly set the event loop for thread-safe publishing.

        Args:
            loop: The asyncio event loop to use for publishing
        """
        with self._loop_lock:
            self._loop = loop
            logger.debug(f"Event loop set: {loop}")

    def subscribe(self, channel: str) -> asyncio.Queue:
        """
        Subscribe to a channel and get an async queue for receiving events.

        Raises:
            ValueError: If channel is not valid
        """
        if channel not in self.VALID_CHANNELS:
            raise ValueError(f"Invalid channel: {channel}. Valid: {self.VALID_CHANNELS}")

        queue: asyncio.Queue = asyncio.Queue(maxsize=self.QUEUE_MAX_SIZE)

        with self._lock:
            self._subscribers[channel].add(queue)
            subscriber_count = len(self._subscribers[channel])

        logger.info(f"📥 New subscriber for '{channel}' (total: {subscriber_count})")
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> bool:
        if channel not in self.VALID_CHANNELS:
            return False

        with self._lock:
            if queue in self._subscribers[channel]:
                self._subscribers[channel].discard(queue)
                logger.info(f"📤 Unsubscribed from '{channel}' (remaining: {len(self._subscribers[channel])})")
                return True
        return False

    def publish(self, channel: str, event_data: Any) -> bool:
        """
        Publish an event to a channel (thread-safe).

        Args:
            channel: Channel name
            event_data: Event dataclass instance or dict

        Returns:
            True if published successfully, False otherwise
        """
        if channel not in self.VALID_CHANNELS:
            logger.warning(f"⚠️ Invalid channel: {channel}")
            return False

        event_dict: dict = event_data.to_dict() if hasattr(event_data, 'to_dict') else dict(event_data)

        self._update_snapshot(event_dict)

        with self._lock:
            subscribers = list(self._subscribers[channel])

        if not subscribers:
            logger.debug(f"No subscribers for '{channel}'")
            return True

        loop = self._get_event_loop()

        if loop is not None and loop.is_running():
            for queue in subscribers:
                try:
                    loop.call_soon_threadsafe(self._enqueue_event, queue, event_dict, channel)
                except RuntimeError as e:
                    logger.warning(f"Failed to publish to subscriber: {e}")
                    self._cleanup_dead_subscriber(channel, queue)
        else:
            for queue in subscribers:
                self._enqueue_event(queue, event_dict, channel)

        logger.debug(f"📢 Published to '{channel}': {event_dict.get('type', 'unknown')}")
        return True

    def _enqueue_event(self, queue: asyncio.Queue, event_dict: dict, channel: str) -> None:
        """Put an event, dropping the oldest one when the queue is full."""
        try:
            queue.put_nowait(event_dict)
        except asyncio.QueueFull:
            logger.warning(f"⚠️ Queue full for '{channel}', dropping oldest event")
            try:
                queue.get_nowait()
                queue.put_nowait(event_dict)
            except (asyncio.QueueEmpty, asyncio.QueueFull) as e:
                logger.debug(f"Could not requeue event on '{channel}': {e}")

    def _cleanup_dead_subscriber(self, channel: str, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers[channel].discard(queue)
            logger.debug(f"🧹 Cleaned up dead subscriber for '{channel}'")

    def _update_snapshot(self, event_dict: dict) -> None:
        """Update internal state snapshots based on event type."""
        event_type = event_dict.get("type", "")

        with self._lock:
            if event_type == "signal":
                symbol = event_dict.get("symbol")
                if symbol:
                    self._last_signals[symbol] = event_dict

            elif event_type == "bot_update":
                bot_id = event_dict.get("bot_id")
                if bot_id:
                    self._bots[bot_id] = event_dict

            elif event_type == "trade":
                self._trade_history.append(event_dict)

            elif event_type == "notification":
                self._notifications.append(event_dict)

            elif event_type == "status":
                self._current_status = event_dict

    def get_snapshot(self) -> dict:
        with self._lock:
            return {
                "signals": dict(self._last_signals),
                "bots": dict(self._bots),
                "trade_history": list(self._trade_history),
                "notifications": list(self._notifications),
                "status": self._current_status,
                "snapshot_time": datetime.now().isoformat()
            }

    def get_trade_history(self, limit: Optional[int] = None) -> List[dict]:
        """Trade events, most recent last"""
        with self._lock:
            history = list(self._trade_history)
            if limit:
                return history[-limit:]
            return history

    def get_subscriber_count(self, channel: Optional[str] = None) -> Union[int, Dict[str, int]]:
        with self._lock:
            if channel:
                return len(self._subscribers.get(channel, set()))
            return {ch: len(subs) for ch, subs in self._subscribers.items()}

    def clear_history(self) -> None:
        with self._lock:
            self._trade_history.clear()
            self._bots.clear()
            logger.info("🧹 Trade history cleared")

    def reset(self) -> None:
        """Reset all state and clear all subscribers."""
        with self._lock:
            self._last_signals.clear()
            self._bots.clear()
            self._trade_history.clear()
            self._notifications.clear()
            self._current_status = None

            for channel in self._subscribers:
                self._subscribers[channel].clear()

        logger.info("🔄 EventBus reset complete")


_event_bus_instance: Optional[EventBus] = None
_instance_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Thread-safe singleton accessor for the global event bus."""
    global _event_bus_instance

    with _instance_lock:
        if _event_bus_instance is None:
            _event_bus_instance = EventBus()
        return _event_bus_instance
