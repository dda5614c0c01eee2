"""
Tests for martingale staking and stop conditions.
"""
import pytest

from bot_models import Bot, BotConfig, BotKind, BotStatus, PredictionType, StopLossType, StopReason
from money_manager import StakeController, next_stake_after


def make_bot(**overrides) -> Bot:
    config = BotConfig(market="R_100", prediction_type=PredictionType.OVER, last_digit_prediction=3, **overrides)
    return Bot(id="b1", name="Test", kind=BotKind.SIGNAL, config=config.validate(), status=BotStatus.RUNNING)


class TestNextStake:
    def test_martingale_sequence(self):
        config = BotConfig(market="R_100", use_martingale=True, martingale_factor=2.1)
        assert next_stake_after(config, 1.0, is_win=False) == 2.1
        assert next_stake_after(config, 2.1, is_win=False) == 4.41
        assert next_stake_after(config, 4.41, is_win=True) == 1.0

    def test_without_martingale_stake_is_flat(self):
        config = BotConfig(market="R_100", initial_stake=0.5, use_martingale=False)
        assert next_stake_after(config, 0.5, is_win=False) == 0.5


class TestStakeController:
    def setup_method(self):
        self.controller = StakeController()

    def test_apply_settlement_counters(self):
        bot = make_bot(use_martingale=True)

        self.controller.apply_settlement(bot, 1.0, -1.0, is_win=False)
        self.controller.apply_settlement(bot, 2.1, -2.1, is_win=False)
        assert bot.consecutive_losses == 2
        assert bot.next_stake == 4.41
        assert bot.losses == 2

        update = self.controller.apply_settlement(bot, 4.41, 4.19, is_win=True)
        assert bot.consecutive_losses == 0
        assert bot.next_stake == 1.0
        assert bot.wins == 1
        assert bot.trades_completed == 3
        assert bot.profit == pytest.approx(1.09)
        assert update.martingale_applied is False

    def test_take_profit(self):
        bot = make_bot(take_profit=1.0)
        bot.profit = 1.0
        assert self.controller.evaluate_stop(bot, 0) == StopReason.TAKE_PROFIT

    def test_stop_loss_amount(self):
        bot = make_bot(stop_loss_type=StopLossType.AMOUNT, stop_loss_amount=5.0)
        bot.profit = -5.0
        assert self.controller.evaluate_stop(bot, 0) == StopReason.STOP_LOSS_AMOUNT

    def test_stop_loss_consecutive(self):
        bot = make_bot(stop_loss_consecutive=3)
        bot.consecutive_losses = 2
        assert self.controller.evaluate_stop(bot, 0) is None
        bot.consecutive_losses = 3
        assert self.controller.evaluate_stop(bot, 0) == StopReason.STOP_LOSS_CONSECUTIVE

    def test_take_profit_has_priority(self):
        bot = make_bot(take_profit=1.0, stop_loss_consecutive=1)
        bot.profit = 2.0
        bot.consecutive_losses = 1
        assert self.controller.evaluate_stop(bot, 0) == StopReason.TAKE_PROFIT

    def test_bulk_waits_for_outstanding_contracts(self):
        bot = make_bot(use_bulk_trading=True, bulk_trade_count=3)
        bot.trades_completed = 3
        assert self.controller.evaluate_stop(bot, 1) is None
        assert self.controller.evaluate_stop(bot, 0) == StopReason.TRADE_COUNT_REACHED

    def test_max_trades(self):
        bot = make_bot(max_trades=1)
        bot.trades_completed = 1
        assert self.controller.evaluate_stop(bot, 0) == StopReason.TRADE_COUNT_REACHED

    def test_initial_batch(self):
        assert self.controller.initial_batch(make_bot().config) == 1
        assert self.controller.initial_batch(make_bot(use_bulk_trading=True, bulk_trade_count=4).config) == 4
        assert self.controller.initial_batch(make_bot(use_bulk_trading=True, bulk_trade_count=25).config) == 10

    def test_may_dispatch(self):
        bot = make_bot(use_bulk_trading=True, bulk_trade_count=2)
        assert self.controller.may_dispatch(bot)
        bot.purchases_dispatched = 2
        assert not self.controller.may_dispatch(bot)

        stopped = make_bot()
        stopped.status = BotStatus.STOPPED
        assert not self.controller.may_dispatch(stopped)
