"""
=============================================================
DERIV DIGIT SIGNALS - MAIN APPLICATION
=============================================================
Process entry point: Deriv websocket, trading engine,
analysis loop, FastAPI dashboard and Telegram bot.

Commands:
- /start            - Register this chat for notifications
- /signals          - Current digit signals, strongest first
- /bots             - Bots with status and profit
- /stop [bot_id]    - Stop one bot, or every bot without argument
- /autobot on|off   - Auto-strategy control centre
- /status           - Engine status
=============================================================
"""

import asyncio
import hashlib
import queue
import signal
import sys
import threading
import time
import logging
from typing import Dict, Optional

import requests
from telegram import Update
from telegram.ext import ApplicationBuilder, CommandHandler, ContextTypes

from config import AppConfig
from deriv_ws import DerivWebSocket
from event_bus import NotificationEvent, get_event_bus
from symbols import get_symbol_list_text, get_symbol_name
from trading import TradingEngine
from web_server import create_app, run_server

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_LEVEL_ICONS = {"info": "ℹ️", "success": "✅", "warning": "⚠️", "error": "❌"}

_MESSAGE_HASH_TTL = 60  # seconds
_MIN_SEND_INTERVAL = 1.0  # seconds per chat

engine: Optional[TradingEngine] = None
deriv_ws: Optional[DerivWebSocket] = None
notifier: Optional["TelegramNotifier"] = None


class TelegramNotifier:
    """
    Sends engine notifications to one Telegram chat over the Bot API.

    Messages are queued and sent in order by one worker thread using
    requests, so the engine lock is never held across network I/O.
    """

    def __init__(self, token: str, chat_id: Optional[int] = None):
        self.token = token
        self._chat_id = chat_id
        self._chat_lock = threading.Lock()
        self._last_hashes: Dict[str, float] = {}
        self._last_send = 0.0
        self._send_lock = threading.Lock()
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None

    @property
    def chat_id(self) -> Optional[int]:
        with self._chat_lock:
            return self._chat_id

    def set_chat_id(self, chat_id: int) -> None:
        with self._chat_lock:
            self._chat_id = chat_id
        logger.info(f"📌 Notifications go to chat {chat_id}")

    def notify(self, event: NotificationEvent) -> None:
        """on_notification callback of the engine"""
        self._queue.put(format_notification(event))
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        with self._chat_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._drain, name="telegram-notifier", daemon=True)
                self._worker.start()

    def _drain(self) -> None:
        while True:
            message = self._queue.get()
            try:
                self.send_message_sync(message)
            except Exception as e:
                logger.error(f"Telegram notifier error: {type(e).__name__}: {e}")
            finally:
                self._queue.task_done()

    def _is_duplicate(self, message: str, chat_id: int) -> bool:
        now = time.time()
        key = f"{chat_id}:{hashlib.md5(message.encode('utf-8')).hexdigest()}"
        with self._send_lock:
            expired = [k for k, ts in self._last_hashes.items() if now - ts > _MESSAGE_HASH_TTL]
            for k in expired:
                del self._last_hashes[k]
            if key in self._last_hashes:
                return True
            self._last_hashes[key] = now
            return False

    def _wait_rate_limit(self) -> None:
        with self._send_lock:
            wait_time = _MIN_SEND_INTERVAL - (time.time() - self._last_send)
            if wait_time > 0:
                time.sleep(wait_time)
            self._last_send = time.time()

    def send_message_sync(self, message: str) -> bool:
        """
        Send a message with retries, falling back to plain text when
        Markdown cannot be parsed.

        Returns:
            True if Telegram accepted the message
        """
        chat_id = self.chat_id
        if not chat_id:
            logger.debug("No chat_id yet, send /start to the bot first")
            return False

        if self._is_duplicate(message, chat_id):
            logger.debug(f"Skipping duplicate message to chat {chat_id}")
            return True

        self._wait_rate_limit()

        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        max_retries = 3
        max_backoff = 8
        plain_text = False

        for attempt in range(max_retries):
            payload = {"chat_id": chat_id, "text": message}
            if plain_text:
                payload["text"] = message.replace('**', '').replace('*', '').replace('`', '')
            else:
                payload["parse_mode"] = "Markdown"

            try:
                response = requests.post(url, json=payload, timeout=10)

                if response.status_code == 200:
                    return True
                if response.status_code == 400 and "parse" in response.text.lower():
                    logger.warning("Markdown parse error, falling back to plain text")
                    plain_text = True
                    continue
                if response.status_code == 429:
                    retry_after = response.json().get("parameters", {}).get("retry_after", 5)
                    logger.warning(f"Rate limited, waiting {retry_after}s...")
                    time.sleep(retry_after)
                    continue

                logger.error(f"Telegram API error {response.status_code}: {response.text[:200]}")
            except requests.exceptions.Timeout:
                logger.error(f"Telegram API timeout (attempt {attempt + 1}/{max_retries})")
            except requests.exceptions.RequestException as e:
                logger.error(f"Request error (attempt {attempt + 1}/{max_retries}): {e}")

            if attempt < max_retries - 1:
                time.sleep(min(2 ** attempt, max_backoff))

        logger.error("All retry attempts failed for Telegram message")
        return False


def format_notification(event: NotificationEvent) -> str:
    icon = _LEVEL_ICONS.get(event.level, "🔔")
    return f"{icon} **{event.title}**\n{event.message}"


async def safe_reply(update: Update, text: str) -> None:
    """Reply with Markdown, fall back to plain text if parsing fails"""
    try:
        await update.message.reply_text(text, parse_mode="Markdown")
    except Exception as e:
        logger.warning(f"Markdown reply failed ({e}), sending plain text")
        await update.message.reply_text(text.replace('**', '').replace('*', '').replace('`', ''))


def format_signals(limit: int = 10) -> str:
    signals = sorted(engine.get_signals().values(), key=lambda s: s.confidence, reverse=True)
    if not signals:
        return "⏳ Not enough data yet (500 digits needed per symbol)."

    lines = ["📊 **DIGIT SIGNALS**\n"]
    for snap in signals[:limit]:
        badge = f"🔥 {snap.strong_signal_type}" if snap.strong_signal else "·"
        lines.append(
            f"{badge} {snap.name} ({snap.symbol})\n"
            f"   O3 {snap.over_3:.1f}% | U6 {snap.under_6:.1f}% | "
            f"E {snap.even:.1f}% | conf {snap.confidence}%"
        )
    return "\n".join(lines)


def format_bots() -> str:
    bots = engine.get_bots()
    if not bots:
        return "🤖 No bots yet."

    lines = ["🤖 **BOTS**\n"]
    for bot in bots:
        status = bot.status.value.upper()
        reason = f" ({bot.stop_reason.value})" if bot.stop_reason else ""
        lines.append(
            f"• `{bot.id}` {bot.name} on {get_symbol_name(bot.market)}\n"
            f"   {status}{reason} | {bot.wins}W/{bot.losses}L | P/L {bot.profit:+.2f}"
        )
    return "\n".join(lines)


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if notifier is not None and update.effective_chat:
        notifier.set_chat_id(update.effective_chat.id)

    await safe_reply(update, (
        "👋 **Deriv Digit Signals**\n\n"
        "Notifications for this chat are on.\n\n"
        "/signals - current digit signals\n"
        "/bots - bots and profit\n"
        "/stop [bot_id] - stop one bot or everything\n"
        "/autobot on|off - auto-strategy control centre\n"
        "/status - engine status"
    ))
    await safe_reply(update, get_symbol_list_text())


async def signals_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await safe_reply(update, format_signals())


async def bots_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await safe_reply(update, format_bots())


async def stop_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if context.args:
        bot_id = context.args[0]
        if bot_id == TradingEngine.MANUAL_BOT_ID:
            stopped = engine.stop_manual_bot()
            await safe_reply(update, "🛑 SpeedBot stopped." if stopped else "SpeedBot is not running.")
            return
        try:
            bot = engine.stop_signal_bot(bot_id)
        except KeyError:
            await safe_reply(update, f"❌ Unknown bot: `{bot_id}`")
            return
        await safe_reply(update, f"🛑 {bot.name} stopped. P/L {bot.profit:+.2f}")
        return

    count = 1 if engine.stop_manual_bot() else 0
    for bot in engine.get_bots():
        if bot.is_active and not bot.is_auto and bot.id != TradingEngine.MANUAL_BOT_ID:
            engine.stop_signal_bot(bot.id)
            count += 1
    count += engine.hard_stop_auto_bots()
    await safe_reply(update, f"🛑 {count} bot(s) stopped, auto trading disabled.")


async def autobot_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    arg = context.args[0].lower() if context.args else ""
    if arg not in ("on", "off"):
        state = "ON" if engine.auto_strategy_enabled else "OFF"
        await safe_reply(update, f"Usage: /autobot on|off (currently {state})")
        return

    engine.set_auto_strategy_enabled(arg == "on")
    await safe_reply(update, f"🤖 Auto-strategy control centre {arg.upper()}")


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await safe_reply(update, engine.get_status_text())


def shutdown_handler(signum, frame):
    """Graceful shutdown for SIGTERM and SIGINT"""
    signal_name = signal.Signals(signum).name
    logger.info(f"🛑 Received shutdown signal: {signal_name}")

    if notifier is not None:
        notifier.send_message_sync("🛑 **Bot shutting down...**")

    if engine is not None:
        engine.stop_analysis_loop()
        engine.stop_manual_bot()
        engine.hard_stop_auto_bots()

    if deriv_ws is not None:
        try:
            deriv_ws.disconnect()
            logger.info("✅ WebSocket disconnected")
        except Exception as e:
            logger.error(f"Error disconnecting WebSocket: {e}")

    logger.info("🏁 Graceful shutdown complete")
    sys.exit(0)


def main():
    """Main function - entry point aplikasi"""
    global engine, deriv_ws, notifier

    config = AppConfig.from_env()
    config.apply_log_level()

    logger.info("=" * 50)
    logger.info("INITIALIZING DERIV DIGIT SIGNALS")
    logger.info("=" * 50)

    if config.telegram_token:
        notifier = TelegramNotifier(config.telegram_token, config.telegram_chat_id)
    else:
        logger.warning("⚠️ TELEGRAM_BOT_TOKEN not set, Telegram commands disabled")

    engine = TradingEngine(
        currency=config.currency,
        on_notification=notifier.notify if notifier else None,
        symbols=config.symbols,
    )
    deriv_ws = DerivWebSocket(config.ws_url, config.deriv_token)
    engine.attach(deriv_ws)

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)
    logger.info("✅ Signal handlers registered (SIGTERM, SIGINT)")

    web_app = create_app(engine, config.dashboard_secret)

    async def start_bot():
        get_event_bus().set_event_loop(asyncio.get_running_loop())
        logger.info("📡 EventBus loop configured for real-time updates")

        deriv_ws.connect()
        engine.start_analysis_loop(config.analysis_interval)

        web_server_task = asyncio.create_task(run_server(web_app, port=config.port))

        telegram_app = None
        if config.telegram_token:
            telegram_app = ApplicationBuilder().token(config.telegram_token).build()
            telegram_app.add_handler(CommandHandler("start", start_command))
            telegram_app.add_handler(CommandHandler("signals", signals_command))
            telegram_app.add_handler(CommandHandler("bots", bots_command))
            telegram_app.add_handler(CommandHandler("stop", stop_command))
            telegram_app.add_handler(CommandHandler("autobot", autobot_command))
            telegram_app.add_handler(CommandHandler("status", status_command))

            await telegram_app.initialize()
            await telegram_app.bot.delete_webhook(drop_pending_updates=True)
            logger.info("✅ Webhook deleted, starting polling...")
            await telegram_app.start()
            if telegram_app.updater:
                await telegram_app.updater.start_polling(allowed_updates=Update.ALL_TYPES)

        try:
            await web_server_task
        except asyncio.CancelledError:
            pass
        finally:
            engine.stop_analysis_loop()
            if telegram_app is not None:
                if telegram_app.updater:
                    await telegram_app.updater.stop()
                await telegram_app.stop()
                await telegram_app.shutdown()

    logger.info("🤖 Bot is starting...")
    try:
        asyncio.run(start_bot())
    except KeyboardInterrupt:
        logger.info("🛑 Bot stopped by user")


if __name__ == "__main__":
    main()
