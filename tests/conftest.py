"""
Pytest fixtures for the test suite.
"""
import os
import sys

import pytest

# Add repository root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from event_bus import EventBus
from trading import TradingEngine


def price_for(digit: int, decimals: int = 2) -> float:
    """A quote whose last digit at `decimals` precision is `digit`"""
    return float(f"1234.{'5' * (decimals - 1)}{digit}")


class FakeChannel:
    """Venue channel double recording every payload sent"""

    def __init__(self):
        self.sent = []
        self.accept = True
        self.listeners = []
        self.on_connection_status_callback = None

    def send(self, payload: dict) -> bool:
        if not self.accept:
            return False
        self.sent.append(dict(payload))
        return True

    def add_listener(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def buys(self):
        return [p for p in self.sent if "buy" in p]


class FakeClock:
    """Controllable monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVenue:
    """Drives venue messages (history, ticks, buy acks, settlements) into an engine"""

    def __init__(self, engine: TradingEngine, channel: FakeChannel):
        self.engine = engine
        self.channel = channel
        self._acked = 0
        self._next_id = 5000

    def history(self, symbol: str, digits) -> None:
        self.engine.handle_message({
            "msg_type": "history",
            "echo_req": {"ticks_history": symbol},
            "history": {"prices": [price_for(d) for d in digits]},
        })

    def ticks(self, symbol: str, digits) -> None:
        for d in digits:
            self.engine.handle_message({
                "msg_type": "tick",
                "tick": {"symbol": symbol, "quote": price_for(d)},
            })

    def ack_pending(self):
        """Acknowledge every buy sent since the last call; returns contract ids"""
        contract_ids = []
        buys = self.channel.buys()
        for payload in buys[self._acked:]:
            self._next_id += 1
            self.engine.handle_message({
                "msg_type": "buy",
                "echo_req": payload,
                "passthrough": payload.get("passthrough", {}),
                "buy": {
                    "contract_id": self._next_id,
                    "buy_price": payload["price"],
                    "longcode": "Win payout if the last digit is over 3.",
                },
            })
            contract_ids.append(str(self._next_id))
        self._acked = len(buys)
        return contract_ids

    def settle(self, contract_id: str, won: bool, stake: float = 1.0, profit=None,
               symbol: str = "R_100", is_sold: int = 1) -> None:
        if profit is None:
            profit = round(stake * 0.95, 2) if won else -stake
        self.engine.handle_message({
            "msg_type": "proposal_open_contract",
            "proposal_open_contract": {
                "contract_id": int(contract_id),
                "is_sold": is_sold,
                "status": "won" if won else "lost",
                "profit": profit,
                "payout": round(stake + profit, 2) if won else 0,
                "buy_price": stake,
                "underlying": symbol,
                "entry_tick": price_for(4),
                "exit_tick": price_for(7 if won else 1),
            },
        })

    def error(self, code: str = "InvalidContractProposal", message: str = "Contract proposal failed",
              passthrough=None) -> None:
        data = {"msg_type": "buy", "error": {"code": code, "message": message}}
        if passthrough is not None:
            data["passthrough"] = passthrough
        self.engine.handle_message(data)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def engine(channel, clock, event_bus):
    """Engine wired to a fake channel, fake clock and private event bus."""
    return TradingEngine(channel=channel, clock=clock, event_bus=event_bus)


@pytest.fixture
def venue(engine, channel):
    return FakeVenue(engine, channel)
