"""
=============================================================
DERIV WEBSOCKET CLIENT - Low Latency Connection
=============================================================
Message channel between the digit engine and the Deriv API.
Uses websocket-client natively for speed.

Features:
- Auto reconnect with exponential backoff
- Token authorization
- Every decoded message fanned out to registered listeners
- Request builders for history, tick and buy requests
- Thread-safe send

Request shapes:
- ticks_history: {symbol, count=1000, style="ticks"}
- ticks:         {symbol, subscribe=1}
- buy:           {amount, basis="stake", contract_type, currency,
                  duration, duration_unit="t", symbol, barrier?}
=============================================================
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import websocket

from bot_models import BotConfig, BARRIERLESS, contract_type_for, parse_prediction

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

HISTORY_COUNT = 1000

MessageListener = Callable[[dict], None]


def build_history_request(symbol: str, count: int = HISTORY_COUNT) -> dict:
    return {
        "ticks_history": symbol,
        "adjust_start_time": 1,
        "count": count,
        "end": "latest",
        "style": "ticks",
    }


def build_tick_subscription(symbol: str) -> dict:
    return {"ticks": symbol, "subscribe": 1}


def build_buy_request(config: BotConfig, stake: float, currency: str = "USD",
                      passthrough: Optional[Dict[str, Any]] = None) -> dict:
    """
    Build a buy request for a digit contract.

    Args:
        config: Bot configuration (market, prediction, duration)
        stake: Stake amount
        currency: Account currency
        passthrough: Echoed back on the buy response

    Returns:
        Request payload

    Raises:
        InvalidPredictionError: if the prediction type is unknown
    """
    prediction = parse_prediction(config.prediction_type)
    stake = round(float(stake), 2)

    parameters = {
        "amount": stake,
        "basis": "stake",
        "contract_type": contract_type_for(prediction),
        "currency": currency,
        "duration": int(config.ticks),
        "duration_unit": "t",
        "symbol": config.market,
    }
    if prediction not in BARRIERLESS:
        parameters["barrier"] = int(config.last_digit_prediction)

    payload = {
        "buy": "1",
        "subscribe": 1,
        "price": stake,
        "parameters": parameters,
    }
    if passthrough:
        payload["passthrough"] = passthrough
    return payload


class DerivWebSocket:
    """
    WebSocket channel to the Deriv API.
    Thread-safe and reconnects automatically with backoff.
    """

    MAX_RECONNECT_ATTEMPTS = 5
    RECONNECT_DELAY = 5  # seconds, base
    MAX_RECONNECT_DELAY = 60  # seconds

    def __init__(self, ws_url: str, token: str = ""):
        """
        Args:
            ws_url: Deriv websocket URL including app_id
            token: API token; empty means unauthenticated (ticks only)
        """
        self.ws_url = ws_url
        self.token = token.strip() if token else ""

        self.ws: Optional[websocket.WebSocketApp] = None
        self.ws_thread: Optional[threading.Thread] = None
        self._is_connected = False
        self._is_connected_lock = threading.Lock()
        self.is_authorized = False
        self._connection_state = "disconnected"
        self._closing = False

        self.lock = threading.Lock()
        self.reconnect_count = 0
        self.request_id = 0

        self._listeners: List[MessageListener] = []
        self.on_connection_status_callback: Optional[Callable[[str], None]] = None

        self._ready_event = threading.Event()

    @property
    def is_connected(self) -> bool:
        with self._is_connected_lock:
            return self._is_connected

    @is_connected.setter
    def is_connected(self, value: bool):
        with self._is_connected_lock:
            self._is_connected = value

    @property
    def connection_state(self) -> str:
        return self._connection_state

    def _update_connection_state(self, state: str):
        """Update connection state and notify the callback"""
        old_state = self._connection_state
        self._connection_state = state
        logger.info(f"Connection state: {old_state} -> {state}")

        if self.on_connection_status_callback:
            try:
                self.on_connection_status_callback(state)
            except Exception as e:
                logger.error(f"Error in connection status callback: {e}")

    def add_listener(self, listener: MessageListener) -> Callable[[], None]:
        """
        Register a listener for every decoded message.

        Returns:
            Function removing the listener again
        """
        with self.lock:
            self._listeners.append(listener)

        def remove():
            with self.lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _next_request_id(self) -> int:
        with self.lock:
            self.request_id += 1
            return self.request_id

    def _on_open(self, ws):
        logger.info("✅ WebSocket connected to Deriv")
        self.is_connected = True
        self.reconnect_count = 0
        self._update_connection_state("connected")

        if self.token:
            self._authorize()
        else:
            logger.warning("⚠️ No DERIV_TOKEN configured, running without purchases")
            self._mark_ready()

    def _on_close(self, ws, close_status_code, close_msg):
        logger.warning(f"⚠️ WebSocket closed: code={close_status_code}, msg={close_msg}")
        self.is_connected = False
        self.is_authorized = False
        self._ready_event.clear()
        self._update_connection_state("disconnected")

        if not self._closing:
            self._attempt_reconnect()

    def _on_error(self, ws, error):
        logger.error(f"❌ WebSocket error: {type(error).__name__}: {error}")

    def _on_message(self, ws, message):
        """Decode a message, handle authorization, fan out to listeners"""
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse message: {e}")
            logger.debug(f"Raw message: {message[:500]}")
            return

        msg_type = data.get("msg_type", "")
        if msg_type not in ("tick", "ping", "proposal_open_contract"):
            logger.debug(f"Received: {msg_type} - {json.dumps(data)[:200]}")

        if msg_type == "authorize":
            self._handle_authorize(data)
            return

        with self.lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(data)
            except Exception as e:
                logger.error(f"Error in message listener: {type(e).__name__}: {e}")

    def _handle_authorize(self, data: dict):
        if "error" in data:
            error = data.get("error", {})
            logger.error(f"❌ Authorization failed [{error.get('code', 'unknown')}]: {error.get('message', '')}")
            self.is_authorized = False
            self._update_connection_state("unauthorized")
            return

        auth_info = data.get("authorize", {})
        self.is_authorized = True
        logger.info(
            f"🔐 Authorized as {auth_info.get('loginid', '?')} "
            f"({auth_info.get('currency', 'USD')}, virtual={auth_info.get('is_virtual', 1)})"
        )
        self._mark_ready()

    def _mark_ready(self):
        self._ready_event.set()
        self._update_connection_state("ready")

    def _authorize(self):
        token_preview = f"{self.token[:4]}...{self.token[-4:]}" if len(self.token) > 8 else "***"
        logger.info(f"🔐 Authorizing ({token_preview})")
        self._update_connection_state("authorizing")
        if not self.send({"authorize": self.token}):
            logger.error("❌ Failed to send authorize request")

    def send(self, payload: dict) -> bool:
        """
        Send a payload as JSON.

        Returns:
            True if sent, False if not connected or the send failed
        """
        if not self.is_connected or not self.ws:
            logger.warning("Cannot send: WebSocket not connected")
            return False

        payload = dict(payload)
        payload.setdefault("req_id", self._next_request_id())

        try:
            with self.lock:
                self.ws.send(json.dumps(payload))
        except Exception as e:
            logger.error(f"Failed to send: {type(e).__name__}: {e}")
            return False

        msg_type = next(iter(payload.keys()), "unknown")
        if msg_type != "authorize":
            logger.debug(f"Sent: {msg_type}")
        return True

    def _attempt_reconnect(self):
        if self.reconnect_count >= self.MAX_RECONNECT_ATTEMPTS:
            logger.error(f"❌ Max reconnect attempts ({self.MAX_RECONNECT_ATTEMPTS}) reached")
            self._update_connection_state("failed")
            return

        self.reconnect_count += 1
        delay = min(self.RECONNECT_DELAY * (2 ** (self.reconnect_count - 1)), self.MAX_RECONNECT_DELAY)
        logger.info(f"🔄 Reconnecting in {delay}s (attempt {self.reconnect_count}/{self.MAX_RECONNECT_ATTEMPTS})")

        def reconnect():
            time.sleep(delay)
            if not self._closing:
                self.connect()

        threading.Thread(target=reconnect, daemon=True).start()

    def connect(self) -> bool:
        """
        Start the websocket in a background thread.

        Returns:
            True if the thread started
        """
        try:
            self._closing = False
            self._update_connection_state("connecting")

            self.ws = websocket.WebSocketApp(
                self.ws_url,
                on_open=self._on_open,
                on_close=self._on_close,
                on_error=self._on_error,
                on_message=self._on_message
            )

            self.ws_thread = threading.Thread(
                target=self.ws.run_forever,
                kwargs={"ping_interval": 30, "ping_timeout": 10},
                daemon=True
            )
            self.ws_thread.start()

            logger.info("🚀 WebSocket thread started")
            return True

        except Exception as e:
            logger.error(f"Failed to connect: {type(e).__name__}: {e}")
            self._update_connection_state("failed")
            return False

    def disconnect(self):
        logger.info("Disconnecting WebSocket...")
        self._closing = True

        if self.ws:
            try:
                self.ws.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {e}")

        self.is_connected = False
        self.is_authorized = False
        self._ready_event.clear()
        self._update_connection_state("disconnected")
        logger.info("WebSocket disconnected")

    def is_ready(self) -> bool:
        return self.is_connected and self._ready_event.is_set()
