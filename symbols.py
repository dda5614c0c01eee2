"""
=============================================================
TRADING SYMBOLS CONFIGURATION
=============================================================
Instrument table for the synthetic indices analysed by the
digit engine. Each symbol carries the decimal precision used
to extract the last digit of its quotes.
=============================================================
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class SymbolConfig:
    """Configuration for one synthetic index"""
    symbol: str
    name: str
    category: str
    decimals: int


def _volatility(symbol: str, name: str, decimals: int) -> SymbolConfig:
    return SymbolConfig(symbol=symbol, name=name, category="volatility", decimals=decimals)


def _jump(symbol: str, name: str) -> SymbolConfig:
    return SymbolConfig(symbol=symbol, name=name, category="jump", decimals=2)


SUPPORTED_SYMBOLS: Dict[str, SymbolConfig] = {
    "R_10": _volatility("R_10", "Volatility 10 Index", 3),
    "R_25": _volatility("R_25", "Volatility 25 Index", 3),
    "R_50": _volatility("R_50", "Volatility 50 Index", 4),
    "R_75": _volatility("R_75", "Volatility 75 Index", 4),
    "R_100": _volatility("R_100", "Volatility 100 Index", 2),
    "1HZ10V": _volatility("1HZ10V", "Volatility 10 (1s) Index", 2),
    "1HZ25V": _volatility("1HZ25V", "Volatility 25 (1s) Index", 2),
    "1HZ30V": _volatility("1HZ30V", "Volatility 30 (1s) Index", 3),
    "1HZ50V": _volatility("1HZ50V", "Volatility 50 (1s) Index", 2),
    "1HZ75V": _volatility("1HZ75V", "Volatility 75 (1s) Index", 2),
    "1HZ90V": _volatility("1HZ90V", "Volatility 90 (1s) Index", 3),
    "1HZ100V": _volatility("1HZ100V", "Volatility 100 (1s) Index", 2),
    "JD10": _jump("JD10", "Jump 10 Index"),
    "JD25": _jump("JD25", "Jump 25 Index"),
    "JD50": _jump("JD50", "Jump 50 Index"),
    "JD75": _jump("JD75", "Jump 75 Index"),
    "JD100": _jump("JD100", "Jump 100 Index"),
}

DEFAULT_SYMBOL = "R_100"
DEFAULT_DECIMALS = 2


def get_symbol_config(symbol: str) -> Optional[SymbolConfig]:
    """Return the configuration of a symbol, if known"""
    return SUPPORTED_SYMBOLS.get(symbol)


def get_symbol_name(symbol: str) -> str:
    """Human readable name, falling back to the raw symbol"""
    config = get_symbol_config(symbol)
    return config.name if config else symbol


def get_decimals(symbol: str) -> int:
    config = get_symbol_config(symbol)
    return config.decimals if config else DEFAULT_DECIMALS


def get_symbols_by_category(category: str) -> List[SymbolConfig]:
    """All symbols of a category ("volatility" or "jump")"""
    return [s for s in SUPPORTED_SYMBOLS.values() if s.category == category]


def decimals_from_pip(pip: float) -> int:
    """
    Convert a pip size from an active_symbols response into decimals.

    Args:
        pip: Pip size, e.g. 0.001

    Returns:
        Number of decimals, e.g. 3
    """
    text = f"{pip:.10f}".rstrip("0")
    if "." not in text:
        return 0
    return len(text.split(".")[1])


def get_symbol_list_text() -> str:
    """Generate the symbol list shown in Telegram"""
    lines = ["📊 **SUPPORTED INDICES**\n"]

    lines.append("**Volatility:**")
    for sym in get_symbols_by_category("volatility"):
        lines.append(f"• `{sym.symbol}` - {sym.name}")

    lines.append("\n**Jump:**")
    for sym in get_symbols_by_category("jump"):
        lines.append(f"• `{sym.symbol}` - {sym.name}")

    return "\n".join(lines)
