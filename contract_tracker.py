"""
=============================================================
CONTRACT TRACKER - Outstanding Contracts & Settlements
=============================================================
Maps venue contract ids to the bot that bought them and makes
settlement processing exactly-once.

Flow:
1. buy ack          -> record(contract_id, stake, family, bot)
2. proposal_open_contract (is_sold) -> resolve(contract_id)
3. duplicate / unknown settlement   -> resolve() returns None
=============================================================
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from bot_models import BotFamily

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class OutstandingContract:
    contract_id: str
    stake: float
    family: BotFamily
    bot_id: str
    opened_at: datetime = field(default_factory=datetime.now)


@dataclass
class Settlement:
    """Parsed proposal_open_contract payload"""
    contract_id: str
    is_sold: bool
    is_win: bool
    profit: float
    payout: float
    buy_price: float
    underlying: str
    entry_tick: Optional[float]
    exit_tick: Optional[float]
    longcode: str = ""

    @classmethod
    def from_message(cls, data: dict) -> Optional["Settlement"]:
        """
        Parse a proposal_open_contract message.

        Returns:
            Settlement, or None if the message carries no contract id
        """
        contract = data.get("proposal_open_contract") or {}
        contract_id = contract.get("contract_id")
        if not contract_id:
            return None

        def _price(key: str) -> Optional[float]:
            value = contract.get(key)
            return float(value) if value not in (None, "") else None

        return cls(
            contract_id=str(contract_id),
            is_sold=bool(contract.get("is_sold")),
            is_win=contract.get("status") == "won",
            profit=float(contract.get("profit", 0) or 0),
            payout=float(contract.get("payout", 0) or 0),
            buy_price=float(contract.get("buy_price", 0) or 0),
            underlying=contract.get("underlying", ""),
            entry_tick=_price("entry_tick"),
            exit_tick=_price("exit_tick"),
            longcode=contract.get("longcode", ""),
        )


class ContractTracker:
    """
    Outstanding contracts keyed by contract id, in purchase order.

    resolve() pops the entry, so a re-delivered settlement finds
    nothing and is dropped.
    """

    def __init__(self):
        self._contracts: "OrderedDict[str, OutstandingContract]" = OrderedDict()
        self._lock = threading.Lock()

    def record(self, contract_id, stake: float, family: BotFamily, bot_id: str) -> OutstandingContract:
        entry = OutstandingContract(
            contract_id=str(contract_id),
            stake=float(stake),
            family=family,
            bot_id=bot_id,
        )
        with self._lock:
            self._contracts[entry.contract_id] = entry
        logger.debug(f"📝 Tracking contract {entry.contract_id} for {bot_id} (${entry.stake:.2f})")
        return entry

    def get(self, contract_id) -> Optional[OutstandingContract]:
        with self._lock:
            return self._contracts.get(str(contract_id))

    def resolve(self, contract_id) -> Optional[OutstandingContract]:
        """Remove and return a contract; None if unknown or already resolved"""
        with self._lock:
            return self._contracts.pop(str(contract_id), None)

    def drop_oldest(self) -> Optional[OutstandingContract]:
        """Drop the oldest outstanding contract (transport error path)"""
        with self._lock:
            if not self._contracts:
                return None
            _, entry = self._contracts.popitem(last=False)
        logger.warning(f"🗑️ Dropped outstanding contract {entry.contract_id} ({entry.bot_id})")
        return entry

    def count(self, family: Optional[BotFamily] = None, bot_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for c in self._contracts.values()
                if (family is None or c.family == family)
                and (bot_id is None or c.bot_id == bot_id)
            )

    def contracts(self) -> List[OutstandingContract]:
        with self._lock:
            return list(self._contracts.values())

    def clear(self, family: Optional[BotFamily] = None) -> int:
        """Forget outstanding contracts, optionally of one family only"""
        with self._lock:
            doomed = [cid for cid, c in self._contracts.items() if family is None or c.family == family]
            for cid in doomed:
                del self._contracts[cid]
        return len(doomed)

    def __contains__(self, contract_id) -> bool:
        with self._lock:
            return str(contract_id) in self._contracts

    def __len__(self) -> int:
        with self._lock:
            return len(self._contracts)
