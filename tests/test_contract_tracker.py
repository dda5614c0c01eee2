"""
Tests for the contract lifecycle tracker.
"""
from bot_models import BotFamily
from contract_tracker import ContractTracker, Settlement


class TestContractTracker:
    def test_resolve_is_exactly_once(self):
        tracker = ContractTracker()
        tracker.record(101, 1.0, BotFamily.SIGNAL, "bot-1")

        first = tracker.resolve("101")
        assert first is not None
        assert first.bot_id == "bot-1"
        assert tracker.resolve(101) is None
        assert len(tracker) == 0

    def test_unknown_contract(self):
        assert ContractTracker().resolve("999") is None

    def test_counts_by_family_and_bot(self):
        tracker = ContractTracker()
        tracker.record(1, 1.0, BotFamily.MANUAL, "speed")
        tracker.record(2, 1.0, BotFamily.SIGNAL, "a")
        tracker.record(3, 1.0, BotFamily.SIGNAL, "b")

        assert tracker.count() == 3
        assert tracker.count(family=BotFamily.SIGNAL) == 2
        assert tracker.count(bot_id="a") == 1
        assert "2" in tracker

    def test_drop_oldest(self):
        tracker = ContractTracker()
        tracker.record(1, 1.0, BotFamily.MANUAL, "speed")
        tracker.record(2, 2.0, BotFamily.SIGNAL, "a")

        dropped = tracker.drop_oldest()
        assert dropped.contract_id == "1"
        assert [c.contract_id for c in tracker.contracts()] == ["2"]
        tracker.drop_oldest()
        assert tracker.drop_oldest() is None

    def test_clear_family(self):
        tracker = ContractTracker()
        tracker.record(1, 1.0, BotFamily.MANUAL, "speed")
        tracker.record(2, 1.0, BotFamily.SIGNAL, "a")

        assert tracker.clear(BotFamily.MANUAL) == 1
        assert tracker.count(family=BotFamily.SIGNAL) == 1


class TestSettlement:
    def test_parse(self):
        settlement = Settlement.from_message({
            "msg_type": "proposal_open_contract",
            "proposal_open_contract": {
                "contract_id": 4242,
                "is_sold": 1,
                "status": "won",
                "profit": 0.95,
                "payout": 1.95,
                "buy_price": 1,
                "underlying": "R_100",
                "entry_tick": 1234.56,
                "exit_tick": 1234.57,
            },
        })
        assert settlement.contract_id == "4242"
        assert settlement.is_sold and settlement.is_win
        assert settlement.profit == 0.95
        assert settlement.exit_tick == 1234.57

    def test_open_contract(self):
        settlement = Settlement.from_message({
            "proposal_open_contract": {"contract_id": 1, "is_sold": 0, "status": "open"},
        })
        assert settlement.is_sold is False
        assert settlement.is_win is False
        assert settlement.exit_tick is None

    def test_missing_contract_id(self):
        assert Settlement.from_message({"proposal_open_contract": {}}) is None
