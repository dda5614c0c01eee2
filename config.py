"""
=============================================================
CONFIGURATION - Environment Settings
=============================================================
Reads .env (python-dotenv) and the process environment.

Variables:
- DERIV_APP_ID        (default 1089)
- DERIV_TOKEN         API token of the venue account
- TELEGRAM_BOT_TOKEN  Telegram bot token (optional)
- TELEGRAM_CHAT_ID    Chat receiving notifications (optional)
- DASHBOARD_SECRET    Bearer token of the web API
- PORT                Web server port (default 8000)
- ANALYSIS_INTERVAL   Seconds between analysis passes (default 1.0)
- CURRENCY            Purchase currency (default USD)
- SYMBOLS             Comma separated symbols (default: all)
- LOG_LEVEL           Root log level (default INFO)
=============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from symbols import SUPPORTED_SYMBOLS

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_APP_ID = "1089"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ {name}={raw!r} is not a number, using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ {name}={raw!r} is not an integer, using {default}")
        return default


def _parse_symbols(raw: str) -> List[str]:
    if not raw.strip():
        return list(SUPPORTED_SYMBOLS.keys())
    symbols = []
    for item in raw.split(","):
        symbol = item.strip()
        if not symbol:
            continue
        if symbol not in SUPPORTED_SYMBOLS:
            logger.warning(f"⚠️ Unknown symbol {symbol} in SYMBOLS, using default precision")
        symbols.append(symbol)
    return symbols


@dataclass
class AppConfig:
    app_id: str = DEFAULT_APP_ID
    deriv_token: str = ""
    telegram_token: str = ""
    telegram_chat_id: Optional[int] = None
    dashboard_secret: str = ""
    port: int = 8000
    analysis_interval: float = 1.0
    currency: str = "USD"
    symbols: List[str] = field(default_factory=lambda: list(SUPPORTED_SYMBOLS.keys()))
    log_level: str = "INFO"

    @property
    def ws_url(self) -> str:
        return f"wss://ws.derivws.com/websockets/v3?app_id={self.app_id}"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "AppConfig":
        """Load .env then build the config from the environment"""
        load_dotenv(dotenv_path)

        app_id = os.environ.get("DERIV_APP_ID", "").strip()
        if not app_id:
            logger.warning(f"⚠️ DERIV_APP_ID not set or empty, using default: {DEFAULT_APP_ID}")
            app_id = DEFAULT_APP_ID

        chat_id = _env_int("TELEGRAM_CHAT_ID", 0)
        interval = _env_float("ANALYSIS_INTERVAL", 1.0)
        if interval <= 0:
            logger.warning("⚠️ ANALYSIS_INTERVAL must be positive, using 1.0")
            interval = 1.0

        return cls(
            app_id=app_id,
            deriv_token=os.environ.get("DERIV_TOKEN", "").strip(),
            telegram_token=os.environ.get("TELEGRAM_BOT_TOKEN", "").strip(),
            telegram_chat_id=chat_id or None,
            dashboard_secret=os.environ.get("DASHBOARD_SECRET", "").strip(),
            port=_env_int("PORT", 8000),
            analysis_interval=interval,
            currency=os.environ.get("CURRENCY", "USD").strip() or "USD",
            symbols=_parse_symbols(os.environ.get("SYMBOLS", "")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def apply_log_level(self) -> None:
        level = getattr(logging, self.log_level, None)
        if not isinstance(level, int):
            logger.warning(f"⚠️ Unknown LOG_LEVEL {self.log_level}, keeping INFO")
            return
        logging.getLogger().setLevel(level)
